"""
tests/conftest.py - Shared fixtures: in-memory store, fake escrow, fixed clock.

The fake escrow keeps the contract's bookkeeping in dicts so lifecycle,
refund and deployment tests run without a chain.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from web3 import Web3

from arena.db import ArenaDB
from walletwars.config import SafetyConfig, ScheduleConfig
from walletwars.deployment import DeploymentTrigger
from walletwars.errors import AlreadyRegistered, NotFound, NotRegistered, ValidationError
from walletwars.escrow import (
    InitReceipt,
    RegistrationReceipt,
    SettlementReceipt,
    derive_addresses,
    program_error,
    registration_address,
)
from walletwars.lifecycle import LifecycleController
from walletwars.models import Ranking, TournamentVariant
from walletwars.safety import SafetyRegistry

# Monday
NOW = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)


def wallet(i: int) -> str:
    """Deterministic checksummed test wallet."""
    return Web3.to_checksum_address(f"0x{i:040x}")


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeEscrow:
    """In-memory escrow. Set errors[method] to make that method raise."""

    available = True
    authority = wallet(0xA11CE)

    def __init__(self):
        self.tournaments: dict[str, dict] = {}
        self.registrations: set[tuple[str, str]] = set()
        self.refunded: set[tuple[str, str]] = set()
        self.finalized: dict[str, tuple[list[str], list[int]]] = {}
        self.distributed: dict[tuple[str, int], Decimal] = {}
        self.cancelled: set[str] = set()
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []
        self._tx = 0

    def _enter(self, method: str) -> str:
        self.calls.append(method)
        if method in self.errors:
            raise self.errors[method]
        self._tx += 1
        return f"0x{self._tx:064x}"

    async def initialize_tournament(self, tournament_id, entry_fee, max_players, fee_pct, start_time, end_time):
        sig = self._enter("initialize_tournament")
        addrs = derive_addresses(tournament_id)
        if tournament_id in self.tournaments:
            return InitReceipt(None, addrs.tournament_address, addrs.escrow_address)
        self.tournaments[tournament_id] = {"entry_fee": entry_fee, "fee_pct": fee_pct}
        return InitReceipt(sig, addrs.tournament_address, addrs.escrow_address)

    async def register_player(self, tournament_id, wallet_address, signed_tx):
        sig = self._enter("register_player")
        if tournament_id not in self.tournaments:
            raise NotFound(tournament_id)
        if (tournament_id, wallet_address) in self.registrations:
            raise AlreadyRegistered()
        self.registrations.add((tournament_id, wallet_address))
        return RegistrationReceipt(
            signature=sig,
            entry_fee_paid=self.tournaments[tournament_id]["entry_fee"],
            registration_address=registration_address(tournament_id, wallet_address),
        )

    async def fetch_tournament(self, tournament_id):
        self._enter("fetch_tournament")
        raise NotFound(tournament_id)

    async def is_registered(self, tournament_id, wallet_address):
        self._enter("is_registered")
        return (tournament_id, wallet_address) in self.registrations

    async def finalize_tournament(self, tournament_id, winners, percentages):
        # Same checks as EscrowClient before its call, then the contract's own
        if len(winners) != len(percentages) or not winners:
            raise ValidationError("winners and percentages must be non-empty and the same length")
        if sum(percentages) != 100:
            raise ValidationError(f"Prize percentages sum to {sum(percentages)}, not 100")
        sig = self._enter("finalize_tournament")
        if tournament_id not in self.tournaments:
            raise NotFound(tournament_id)
        if tournament_id in self.finalized:
            if self.finalized[tournament_id] != (list(winners), list(percentages)):
                raise program_error(6010)  # AlreadyFinalized, with other winners
            return SettlementReceipt(None, already_settled=True)
        self.finalized[tournament_id] = (list(winners), list(percentages))
        return SettlementReceipt(sig)

    async def distribute_prize(self, tournament_id, rank, winner_address, amount, percentage):
        sig = self._enter("distribute_prize")
        if (tournament_id, rank) in self.distributed:
            return SettlementReceipt(None, already_settled=True, amount=amount)
        self.distributed[(tournament_id, rank)] = amount
        return SettlementReceipt(sig, amount=amount)

    async def refund_player(self, tournament_id, wallet_address):
        sig = self._enter("refund_player")
        if (tournament_id, wallet_address) not in self.registrations:
            raise NotRegistered()
        if (tournament_id, wallet_address) in self.refunded:
            return SettlementReceipt(None, already_settled=True)
        self.refunded.add((tournament_id, wallet_address))
        return SettlementReceipt(sig)

    async def cancel_tournament(self, tournament_id):
        sig = self._enter("cancel_tournament")
        self.cancelled.add(tournament_id)
        return SettlementReceipt(sig)

    async def collect_platform_fees(self, tournament_id):
        sig = self._enter("collect_platform_fees")
        return SettlementReceipt(sig)


class FakeScoring:
    """Ranks entries in the order given, or by the stored entry order."""

    def __init__(self, db: ArenaDB):
        self._db = db
        self.started: list[str] = []
        self.rankings: list[Ranking] | None = None

    async def snapshot_start(self, tournament):
        self.started.append(tournament.id)

    async def snapshot_end(self, tournament):
        if self.rankings is not None:
            return self.rankings
        return [
            Ranking(entry_id=row["id"], wallet_address=row["wallet_address"], performance=100.0 - i)
            for i, row in enumerate(self._db.list_entries(tournament.id))
        ]


# ======================================================================
# Fixtures
# ======================================================================


@pytest.fixture
def db():
    """Fresh in-memory DB for each test."""
    store = ArenaDB(":memory:")
    yield store
    store.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def safety():
    return SafetyRegistry.from_config(SafetyConfig())


@pytest.fixture
def escrow():
    return FakeEscrow()


@pytest.fixture
def scoring(db):
    return FakeScoring(db)


@pytest.fixture
def schedule():
    return ScheduleConfig()


@pytest.fixture
def controller(db, escrow, safety, schedule, scoring, clock):
    return LifecycleController(db, escrow, safety, schedule=schedule, scoring=scoring, clock=clock)


@pytest.fixture
def silver():
    """0.05 entry fee, 85% prize pool, 10..100 participants."""
    return TournamentVariant("Pure Wallet Silver League", "pure_wallet", Decimal("0.05"), 100, 10, 7, 85)


@pytest.fixture
def trigger(controller, db, safety, schedule, clock):
    variants = [
        TournamentVariant("Pure Wallet Bronze League", "pure_wallet", Decimal("0.01"), 100, 10, 7, 85),
        TournamentVariant("Open Trading Gold Rush", "open_trading", Decimal("0.1"), 100, 10, 7, 80),
    ]
    return DeploymentTrigger(controller, db, safety, schedule, variants, clock=clock)
