"""
arena - HTTP service and SQLite store for the WalletWars coordinator

The FastAPI app lives in arena.server; import it from there so the store
can be used without pulling in the web stack.
"""

from .db import ArenaDB

__all__ = ["ArenaDB"]
