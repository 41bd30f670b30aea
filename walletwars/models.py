"""
walletwars/models.py - Data types for tournaments, entries and settlement records.

Rows come out of arena.db as dicts; the from_row() constructors turn them into
these dataclasses. Amounts are Decimal in native units (not wei).
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any


# ============================================================================
# Status enums
# ============================================================================


class TournamentStatus(str, Enum):
    SCHEDULED = "scheduled"
    REGISTERING = "registering"
    PENDING_START = "pending_start"
    ACTIVE = "active"
    ENDED = "ended"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


class EntryStatus(str, Enum):
    REGISTERED = "registered"
    REFUNDED = "refunded"
    FINALIZED = "finalized"


class SettlementStatus(str, Enum):
    """Status of a refund or prize payout record."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


# Allowed status edges. Anything not listed is rejected by the controller.
TRANSITIONS: dict[TournamentStatus, tuple[TournamentStatus, ...]] = {
    TournamentStatus.SCHEDULED: (TournamentStatus.REGISTERING,),
    TournamentStatus.REGISTERING: (
        TournamentStatus.PENDING_START,
        TournamentStatus.CANCELLED,
    ),
    TournamentStatus.PENDING_START: (
        TournamentStatus.ACTIVE,
        TournamentStatus.CANCELLED,
    ),
    TournamentStatus.ACTIVE: (TournamentStatus.ENDED,),
    TournamentStatus.ENDED: (TournamentStatus.COMPLETE,),
    TournamentStatus.COMPLETE: (),
    TournamentStatus.CANCELLED: (),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in TRANSITIONS.items() if not targets
)


def can_transition(current: TournamentStatus, target: TournamentStatus) -> bool:
    return target in TRANSITIONS[current]


# ============================================================================
# Config-side types
# ============================================================================


@dataclass
class TournamentVariant:
    """One tournament flavour created on every deployment date."""

    name: str
    trading_style: str = "pure_wallet"
    entry_fee: Decimal = Decimal("0.01")
    max_participants: int = 100
    min_participants: int = 10
    duration_days: int = 7
    prize_pool_percentage: int = 85
    is_mega: bool = False

    @property
    def platform_fee_percentage(self) -> int:
        """Whatever the prize pool doesn't take is the platform's cut."""
        return 100 - self.prize_pool_percentage


# ============================================================================
# Persistent records
# ============================================================================


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _dec(value: Any) -> Decimal | None:
    return Decimal(str(value)) if value is not None else None


@dataclass
class TournamentInstance:
    """One scheduled run of a variant. Owned by the LifecycleController."""

    id: str
    name: str
    variant_name: str
    trading_style: str
    entry_fee: Decimal
    max_participants: int
    min_participants: int
    prize_pool_percentage: int
    duration_days: int
    registration_opens: datetime
    registration_closes: datetime
    start_time: datetime
    end_time: datetime
    status: TournamentStatus = TournamentStatus.SCHEDULED
    is_mega: bool = False
    participant_count: int = 0
    total_prize_pool: Decimal = Decimal("0")
    tournament_address: str | None = None
    escrow_address: str | None = None
    init_signature: str | None = None
    actual_start_time: datetime | None = None
    actual_end_time: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "TournamentInstance":
        return cls(
            id=row["id"],
            name=row["name"],
            variant_name=row["variant_name"],
            trading_style=row["trading_style"],
            entry_fee=Decimal(row["entry_fee"]),
            max_participants=row["max_participants"],
            min_participants=row["min_participants"],
            prize_pool_percentage=row["prize_pool_percentage"],
            duration_days=row["duration_days"],
            registration_opens=_dt(row["registration_opens"]),
            registration_closes=_dt(row["registration_closes"]),
            start_time=_dt(row["start_time"]),
            end_time=_dt(row["end_time"]),
            status=TournamentStatus(row["status"]),
            is_mega=bool(row["is_mega"]),
            participant_count=row["participant_count"] or 0,
            total_prize_pool=_dec(row["total_prize_pool"]) or Decimal("0"),
            tournament_address=row["tournament_address"],
            escrow_address=row["escrow_address"],
            init_signature=row["init_signature"],
            actual_start_time=_dt(row["actual_start_time"]),
            actual_end_time=_dt(row["actual_end_time"]),
            completed_at=_dt(row["completed_at"]),
            cancelled_at=_dt(row["cancelled_at"]),
            cancellation_reason=row["cancellation_reason"],
        )


@dataclass
class TournamentEntry:
    """A participant's paid registration. One per (wallet, tournament)."""

    id: str
    tournament_id: str
    wallet_address: str
    entry_fee_paid: Decimal
    status: EntryStatus = EntryStatus.REGISTERED
    final_rank: int | None = None
    prize_won: Decimal | None = None
    registration_signature: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "TournamentEntry":
        return cls(
            id=row["id"],
            tournament_id=row["tournament_id"],
            wallet_address=row["wallet_address"],
            entry_fee_paid=Decimal(row["entry_fee_paid"]),
            status=EntryStatus(row["status"]),
            final_rank=row["final_rank"],
            prize_won=_dec(row["prize_won"]),
            registration_signature=row["registration_signature"],
        )


@dataclass
class RefundRecord:
    id: str
    entry_id: str
    tournament_id: str
    wallet_address: str
    amount: Decimal
    status: SettlementStatus = SettlementStatus.PENDING
    signature: str | None = None
    error: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "RefundRecord":
        return cls(
            id=row["id"],
            entry_id=row["entry_id"],
            tournament_id=row["tournament_id"],
            wallet_address=row["wallet_address"],
            amount=Decimal(row["amount"]),
            status=SettlementStatus(row["status"]),
            signature=row["signature"],
            error=row["error"],
        )


@dataclass
class PrizeDistributionRecord:
    id: str
    tournament_id: str
    entry_id: str
    rank: int
    wallet_address: str
    amount: Decimal
    percentage: int
    status: SettlementStatus = SettlementStatus.PENDING
    signature: str | None = None
    error: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "PrizeDistributionRecord":
        return cls(
            id=row["id"],
            tournament_id=row["tournament_id"],
            entry_id=row["entry_id"],
            rank=row["rank"],
            wallet_address=row["wallet_address"],
            amount=Decimal(row["amount"]),
            percentage=row["percentage"],
            status=SettlementStatus(row["status"]),
            signature=row["signature"],
            error=row["error"],
        )


# ============================================================================
# Results
# ============================================================================


@dataclass
class Ranking:
    """One ranked participant from the scoring collaborator. List order = rank."""

    entry_id: str
    wallet_address: str
    performance: float = 0.0


@dataclass
class TransitionResult:
    """Outcome of a lifecycle call. applied=False means nothing changed."""

    tournament_id: str
    from_status: TournamentStatus | None
    to_status: TournamentStatus | None
    applied: bool
    detail: str = ""


@dataclass
class BatchSummary:
    """Aggregate of a refund or payout batch."""

    sent: int = 0
    failed: int = 0
    pending: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.sent + self.failed + self.pending
