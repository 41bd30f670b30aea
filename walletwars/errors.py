"""
walletwars/errors.py - Error taxonomy shared by the coordinator.

Four families, and callers branch on the family rather than the message:

  ValidationError   bad parameters, rejected before any external call
  DomainError       the system answered "no" (already registered, not found...)
  TransientError    timeouts, rate limits, open circuits; retry with backoff
  Unavailable       a capability could not be initialized; also retryable

A TransientError never means the operation did not happen. A timed-out refund
may still land onchain.
"""


class WalletWarsError(Exception):
    """Base class for every error raised by the coordinator."""


class ValidationError(WalletWarsError, ValueError):
    """Parameters are invalid. Never retried."""


# ============================================================================
# Domain
# ============================================================================


class DomainError(WalletWarsError):
    """The dependency answered, and the answer was a refusal."""


class NotFound(DomainError):
    """Tournament, entry or onchain account does not exist."""


class InsufficientBalance(DomainError):
    """Wallet balance is below the entry fee."""

    def __init__(self, wallet_address: str, balance_wei: int, required_wei: int):
        self.wallet_address = wallet_address
        self.balance_wei = balance_wei
        self.required_wei = required_wei
        super().__init__(
            f"Insufficient balance for {wallet_address}: "
            f"have {balance_wei} wei, need {required_wei} wei"
        )


class RegistrationClosed(DomainError):
    """Tournament is not accepting entries right now."""


class TournamentFull(DomainError):
    """Tournament already has max_participants entries."""


class ProgramError(DomainError):
    """A declared escrow contract error. Subclasses carry the contract code."""

    code: int = -1
    name: str = "ProgramError"

    def __init__(self, message: str | None = None, code: int | None = None, name: str | None = None):
        if code is not None:
            self.code = code
        if name is not None:
            self.name = name
        super().__init__(message or f"{self.name} ({self.code})")


class AlreadyRegistered(ProgramError):
    code = 6008
    name = "AlreadyRegistered"


class AlreadyRefunded(ProgramError):
    code = 6017
    name = "AlreadyRefunded"


class NotRegistered(ProgramError):
    code = 6016
    name = "NotRegistered"


# ============================================================================
# Infrastructure
# ============================================================================


class TransientError(WalletWarsError):
    """Retryable infrastructure failure. Not a statement about the outcome."""

    # Dependency the error belongs to. Other dependencies' breakers don't count it.
    breaker: str | None = None


class RateLimitExceeded(TransientError):
    """The per-window call budget for a dependency is spent."""

    def __init__(self, name: str, limit: int, retry_after: float):
        self.name = name
        self.breaker = name
        self.limit = limit
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for {name}: {limit} calls per window, "
            f"retry in {retry_after:.1f}s"
        )


class CircuitOpenError(TransientError):
    """Circuit is open and the call was blocked without being attempted."""

    def __init__(self, name: str, time_until_retry: float):
        self.name = name
        self.breaker = name
        self.time_until_retry = time_until_retry
        super().__init__(
            f"Circuit {name} is open. Retry in {time_until_retry:.1f}s"
        )


class Unavailable(TransientError):
    """A capability is missing or unreachable."""


class EscrowUnavailable(Unavailable):
    """The escrow client could not be built (no key, no contract, bad RPC)."""


class EscrowTimeout(Unavailable):
    """A settlement call passed its deadline. The transaction may still land."""
