"""
arena/db.py - SQLite storage for the tournament coordinator.

All queries go through ArenaDB. One instance per process lifetime,
backed by a single SQLite file (or :memory: for tests).

Calls are synchronous; the lifecycle controller runs them in worker threads,
so every method takes the connection lock. Status changes are compare-and-swap
updates: they only apply while the row still has the status the caller read.
"""

import sqlite3
import threading
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

TOURNAMENT_COLUMNS = (
    "id", "name", "variant_name", "trading_style", "entry_fee",
    "max_participants", "min_participants", "prize_pool_percentage",
    "duration_days", "registration_opens", "registration_closes",
    "start_time", "end_time", "status", "is_mega", "participant_count",
    "total_prize_pool", "tournament_address", "escrow_address",
    "init_signature", "actual_start_time", "actual_end_time",
    "completed_at", "cancelled_at", "cancellation_reason",
)


class ArenaDB:
    """Thin wrapper around SQLite for tournaments, entries, refunds and payouts."""

    def __init__(self, path: str = "walletwars.db"):
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._lock = threading.Lock()
        self._create_tables()

    def _create_tables(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS tournament_instances (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                variant_name TEXT NOT NULL,
                trading_style TEXT NOT NULL,
                entry_fee TEXT NOT NULL,
                max_participants INTEGER NOT NULL,
                min_participants INTEGER NOT NULL,
                prize_pool_percentage INTEGER NOT NULL,
                duration_days INTEGER NOT NULL,
                registration_opens TEXT NOT NULL,
                registration_closes TEXT NOT NULL,
                start_time TEXT NOT NULL,
                end_time TEXT NOT NULL,
                status TEXT DEFAULT 'scheduled',
                is_mega INTEGER DEFAULT 0,
                participant_count INTEGER DEFAULT 0,
                total_prize_pool TEXT DEFAULT '0',
                tournament_address TEXT,
                escrow_address TEXT,
                init_signature TEXT,
                actual_start_time TEXT,
                actual_end_time TEXT,
                completed_at TEXT,
                cancelled_at TEXT,
                cancellation_reason TEXT,
                created_at TEXT,
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS tournament_entries (
                id TEXT PRIMARY KEY,
                tournament_id TEXT NOT NULL,
                wallet_address TEXT NOT NULL,
                entry_fee_paid TEXT NOT NULL,
                status TEXT DEFAULT 'registered',
                final_rank INTEGER,
                prize_won TEXT,
                registration_signature TEXT,
                created_at TEXT,
                updated_at TEXT,
                UNIQUE (tournament_id, wallet_address)
            );

            CREATE TABLE IF NOT EXISTS tournament_refunds (
                id TEXT PRIMARY KEY,
                entry_id TEXT NOT NULL UNIQUE,
                tournament_id TEXT NOT NULL,
                wallet_address TEXT NOT NULL,
                amount TEXT NOT NULL,
                status TEXT DEFAULT 'pending',
                signature TEXT,
                error TEXT,
                created_at TEXT,
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS prize_distributions (
                id TEXT PRIMARY KEY,
                tournament_id TEXT NOT NULL,
                entry_id TEXT NOT NULL,
                rank INTEGER NOT NULL,
                wallet_address TEXT NOT NULL,
                amount TEXT NOT NULL,
                percentage INTEGER NOT NULL,
                status TEXT DEFAULT 'pending',
                signature TEXT,
                error TEXT,
                created_at TEXT,
                updated_at TEXT,
                UNIQUE (tournament_id, rank)
            );

            CREATE INDEX IF NOT EXISTS idx_instances_status ON tournament_instances (status);
            CREATE INDEX IF NOT EXISTS idx_entries_tournament ON tournament_entries (tournament_id);
            """
        )

    # ------------------------------------------------------------------
    # Tournaments
    # ------------------------------------------------------------------

    def insert_tournament(self, tournament: dict[str, Any]) -> bool:
        """Insert a new instance. Returns False if the id already exists."""
        values = {col: _db_value(tournament.get(col)) for col in TOURNAMENT_COLUMNS}
        if values["status"] is None:
            values["status"] = "scheduled"
        now = _now()
        columns = ", ".join(values) + ", created_at, updated_at"
        placeholders = ", ".join("?" for _ in values) + ", ?, ?"
        with self._lock:
            cursor = self._conn.execute(
                f"INSERT OR IGNORE INTO tournament_instances ({columns}) VALUES ({placeholders})",
                (*values.values(), now, now),
            )
            self._conn.commit()
        return cursor.rowcount == 1

    def get_tournament(self, tournament_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM tournament_instances WHERE id = ?", (tournament_id,)
            ).fetchone()
        return dict(row) if row else None

    def list_tournaments(self, status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        """Tournaments ordered by start time, optionally filtered by status."""
        with self._lock:
            if status is not None:
                rows = self._conn.execute(
                    "SELECT * FROM tournament_instances WHERE status = ? "
                    "ORDER BY start_time ASC LIMIT ?",
                    (status, limit),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM tournament_instances ORDER BY start_time ASC LIMIT ?",
                    (limit,),
                ).fetchall()
        return [dict(r) for r in rows]

    def tournament_exists(self, name: str, start_time: datetime, window_hours: int = 1) -> bool:
        """Is there a non-cancelled instance of this variant within the window of start_time?"""
        low = _iso(start_time - timedelta(hours=window_hours))
        high = _iso(start_time + timedelta(hours=window_hours))
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM tournament_instances WHERE name = ? AND status != 'cancelled' "
                "AND start_time >= ? AND start_time <= ? LIMIT 1",
                (name, low, high),
            ).fetchone()
        return row is not None

    def count_upcoming(self) -> int:
        """Instances not yet closed for registration."""
        with self._lock:
            return self._conn.execute(
                "SELECT COUNT(*) FROM tournament_instances "
                "WHERE status IN ('scheduled', 'registering')"
            ).fetchone()[0]

    def count_by_status(self) -> dict[str, int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS n FROM tournament_instances GROUP BY status"
            ).fetchall()
        return {r["status"]: r["n"] for r in rows}

    def due_tournaments(self, now: datetime) -> list[dict[str, Any]]:
        """Tournaments whose next lifecycle timestamp has passed."""
        ts = _iso(now)
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM tournament_instances WHERE "
                "(status = 'scheduled' AND registration_opens <= ?) OR "
                "(status = 'registering' AND registration_closes <= ?) OR "
                "(status = 'pending_start' AND start_time <= ?) OR "
                "(status = 'active' AND end_time <= ?) OR "
                "status = 'ended' "
                "ORDER BY start_time ASC",
                (ts, ts, ts, ts),
            ).fetchall()
        return [dict(r) for r in rows]

    def unsettled_tournaments(self) -> list[dict[str, Any]]:
        """Tournaments with refunds or payouts still to settle.

        Each row: id, status, refunds (0/1), payouts (0/1). A cancelled
        tournament with registered entries counts as owing refunds.
        """
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT id, status, refunds, payouts FROM (
                SELECT t.id, t.status, t.start_time,
                    ((t.status = 'cancelled' AND EXISTS (
                        SELECT 1 FROM tournament_entries e
                        WHERE e.tournament_id = t.id AND e.status = 'registered'))
                     OR EXISTS (
                        SELECT 1 FROM tournament_refunds r
                        WHERE r.tournament_id = t.id AND r.status = 'pending')) AS refunds,
                    EXISTS (
                        SELECT 1 FROM prize_distributions p
                        WHERE p.tournament_id = t.id AND p.status = 'pending') AS payouts
                FROM tournament_instances t
                )
                WHERE refunds OR payouts
                ORDER BY start_time ASC
                """
            ).fetchall()
        return [dict(r) for r in rows]

    def compare_and_set_status(
        self, tournament_id: str, expected: str, new_status: str, **fields: Any
    ) -> bool:
        """Move a tournament from expected to new_status, writing extra fields.

        Returns False (and changes nothing) if the row is no longer in expected.
        """
        for col in fields:
            if col not in TOURNAMENT_COLUMNS or col in ("id", "status"):
                raise ValueError(f"Unknown tournament column: {col}")
        assignments = "".join(f", {col} = ?" for col in fields)
        params = [_db_value(v) for v in fields.values()]
        with self._lock:
            cursor = self._conn.execute(
                f"UPDATE tournament_instances SET status = ?, updated_at = ?{assignments} "
                "WHERE id = ? AND status = ?",
                (new_status, _now(), *params, tournament_id, expected),
            )
            self._conn.commit()
        return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def add_entry(
        self,
        tournament_id: str,
        wallet_address: str,
        entry_fee_paid: Decimal,
        registration_signature: str | None = None,
        status: str = "registered",
        open_statuses: tuple[str, ...] | None = None,
    ) -> dict[str, Any] | None:
        """Insert an entry. Returns None if the wallet already has one.

        With open_statuses set, the insert only happens while the tournament
        is in one of them (also None otherwise). The status check and the
        insert are one statement, so a concurrent close can't slip between.
        """
        entry_id = str(uuid.uuid4())
        now = _now()
        params = [entry_id, tournament_id, wallet_address, str(entry_fee_paid),
                  status, registration_signature, now, now]
        sql = (
            "INSERT OR IGNORE INTO tournament_entries (id, tournament_id, wallet_address, "
            "entry_fee_paid, status, registration_signature, created_at, updated_at) "
        )
        if open_statuses:
            marks = ", ".join("?" for _ in open_statuses)
            sql += (
                "SELECT ?, ?, ?, ?, ?, ?, ?, ? WHERE EXISTS (SELECT 1 FROM tournament_instances "
                f"WHERE id = ? AND status IN ({marks}))"
            )
            params += [tournament_id, *open_statuses]
        else:
            sql += "VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
        with self._lock:
            cursor = self._conn.execute(sql, params)
            self._conn.commit()
            if cursor.rowcount != 1:
                return None
            row = self._conn.execute(
                "SELECT * FROM tournament_entries WHERE id = ?", (entry_id,)
            ).fetchone()
        return dict(row)

    def get_entry(self, entry_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM tournament_entries WHERE id = ?", (entry_id,)
            ).fetchone()
        return dict(row) if row else None

    def find_entry(self, tournament_id: str, wallet_address: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM tournament_entries WHERE tournament_id = ? AND wallet_address = ?",
                (tournament_id, wallet_address),
            ).fetchone()
        return dict(row) if row else None

    def list_entries(self, tournament_id: str, status: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            if status is not None:
                rows = self._conn.execute(
                    "SELECT * FROM tournament_entries WHERE tournament_id = ? AND status = ? "
                    "ORDER BY created_at ASC, rowid ASC",
                    (tournament_id, status),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM tournament_entries WHERE tournament_id = ? ORDER BY created_at ASC, rowid ASC",
                    (tournament_id,),
                ).fetchall()
        return [dict(r) for r in rows]

    def count_entries(self, tournament_id: str, status: str = "registered") -> int:
        with self._lock:
            return self._conn.execute(
                "SELECT COUNT(*) FROM tournament_entries WHERE tournament_id = ? AND status = ?",
                (tournament_id, status),
            ).fetchone()[0]

    def set_entry_status(self, entry_id: str, expected: str, new_status: str) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE tournament_entries SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (new_status, _now(), entry_id, expected),
            )
            self._conn.commit()
        return cursor.rowcount == 1

    def record_entry_result(self, entry_id: str, final_rank: int, prize_won: Decimal) -> None:
        """Write final rank and prize, and mark the entry finalized."""
        with self._lock:
            self._conn.execute(
                "UPDATE tournament_entries SET final_rank = ?, prize_won = ?, status = 'finalized', "
                "updated_at = ? WHERE id = ?",
                (final_rank, str(prize_won), _now(), entry_id),
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def create_refund(self, entry: dict[str, Any]) -> dict[str, Any]:
        """Create the refund record for an entry, or return the existing one."""
        now = _now()
        with self._lock:
            self._conn.execute(
                "INSERT OR IGNORE INTO tournament_refunds (id, entry_id, tournament_id, "
                "wallet_address, amount, status, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, 'pending', ?, ?)",
                (str(uuid.uuid4()), entry["id"], entry["tournament_id"],
                 entry["wallet_address"], entry["entry_fee_paid"], now, now),
            )
            self._conn.commit()
            row = self._conn.execute(
                "SELECT * FROM tournament_refunds WHERE entry_id = ?", (entry["id"],)
            ).fetchone()
        return dict(row)

    def list_refunds(self, tournament_id: str, status: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            if status is not None:
                rows = self._conn.execute(
                    "SELECT * FROM tournament_refunds WHERE tournament_id = ? AND status = ? "
                    "ORDER BY created_at ASC, rowid ASC",
                    (tournament_id, status),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM tournament_refunds WHERE tournament_id = ? ORDER BY created_at ASC, rowid ASC",
                    (tournament_id,),
                ).fetchall()
        return [dict(r) for r in rows]

    def update_refund(
        self, refund_id: str, status: str, signature: str | None = None, error: str | None = None
    ) -> bool:
        """Settle a pending refund. Refunds that already left pending are not rewritten."""
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE tournament_refunds SET status = ?, signature = ?, error = ?, updated_at = ? "
                "WHERE id = ? AND status = 'pending'",
                (status, signature, error, _now(), refund_id),
            )
            self._conn.commit()
        return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Prize distributions
    # ------------------------------------------------------------------

    def create_prize_distribution(
        self,
        tournament_id: str,
        entry_id: str,
        rank: int,
        wallet_address: str,
        amount: Decimal,
        percentage: int,
    ) -> dict[str, Any]:
        """Create the payout record for a rank, or return the existing one unchanged."""
        now = _now()
        with self._lock:
            self._conn.execute(
                "INSERT OR IGNORE INTO prize_distributions (id, tournament_id, entry_id, rank, "
                "wallet_address, amount, percentage, status, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?)",
                (str(uuid.uuid4()), tournament_id, entry_id, rank, wallet_address,
                 str(amount), percentage, now, now),
            )
            self._conn.commit()
            row = self._conn.execute(
                "SELECT * FROM prize_distributions WHERE tournament_id = ? AND rank = ?",
                (tournament_id, rank),
            ).fetchone()
        return dict(row)

    def list_prize_distributions(
        self, tournament_id: str, status: str | None = None
    ) -> list[dict[str, Any]]:
        with self._lock:
            if status is not None:
                rows = self._conn.execute(
                    "SELECT * FROM prize_distributions WHERE tournament_id = ? AND status = ? "
                    "ORDER BY rank ASC",
                    (tournament_id, status),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM prize_distributions WHERE tournament_id = ? ORDER BY rank ASC",
                    (tournament_id,),
                ).fetchall()
        return [dict(r) for r in rows]

    def update_prize_distribution(
        self, distribution_id: str, status: str, signature: str | None = None, error: str | None = None
    ) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE prize_distributions SET status = ?, signature = ?, error = ?, updated_at = ? "
                "WHERE id = ? AND status = 'pending'",
                (status, signature, error, _now(), distribution_id),
            )
            self._conn.commit()
        return cursor.rowcount == 1

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def _iso(value: datetime) -> str:
    """Normalize to UTC ISO so stored timestamps compare as strings."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return _iso(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bool):
        return int(value)
    if hasattr(value, "value"):  # enums
        return value.value
    return value


def _now() -> str:
    """ISO timestamp in UTC."""
    return datetime.now(timezone.utc).isoformat()
