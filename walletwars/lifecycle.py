"""
walletwars/lifecycle.py - Tournament state machine.

    scheduled -> registering -> pending_start -> active -> ended -> complete
                      |               |
                      +-> cancelled <-+

The controller is the only writer of a tournament's status. Every status
change is a compare-and-swap in the store, so a repeated or racing call finds
the status already moved and returns TransitionResult(applied=False) without
touching anything else. That is what makes the periodic trigger safe to retry.

Side effects per transition:
  registering -> pending_start   participant count + prize pool, or cancel
  pending_start -> active        baseline snapshot (failure only logged)
  active -> ended                final snapshot + ranking, then payouts
  -> cancelled                   onchain cancel (best effort), then refunds
"""

import asyncio
import logging
import re
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Protocol

from arena.db import ArenaDB

from .config import ScheduleConfig
from .errors import (
    AlreadyRegistered,
    DomainError,
    NotFound,
    RegistrationClosed,
    TournamentFull,
    TransientError,
    ValidationError,
    WalletWarsError,
)
from .escrow import Escrow, require_address, validate_tournament_params
from .models import (
    BatchSummary,
    PrizeDistributionRecord,
    Ranking,
    SettlementStatus,
    TournamentEntry,
    TournamentInstance,
    TournamentStatus,
    TournamentVariant,
    TransitionResult,
)
from .prizes import PrizeCalculator, prize_pool
from .refunds import RefundProcessor
from .safety import SafetyRegistry

logger = logging.getLogger(__name__)

INSUFFICIENT_PARTICIPANTS = "insufficient participants"

# Entries still land while registration is being locked; start_tournament recounts
ENTRY_OPEN_STATUSES = (TournamentStatus.REGISTERING.value, TournamentStatus.PENDING_START.value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def tournament_id_for(variant_name: str, start_time: datetime) -> str:
    """Deterministic id: same variant and start always give the same id."""
    slug = re.sub(r"[^a-z0-9]+", "-", variant_name.lower()).strip("-")
    start = start_time.astimezone(timezone.utc)
    return f"{slug}_{start:%y%m%d_%H%M}"


# ============================================================================
# Scoring collaborator
# ============================================================================


class ScoringService(Protocol):
    """Wallet performance snapshots. Lives outside the coordinator."""

    async def snapshot_start(self, tournament: TournamentInstance) -> None: ...

    async def snapshot_end(self, tournament: TournamentInstance) -> list[Ranking] | None:
        """Ranked entries, best first. None when no ranking is available."""
        ...


class NullScoring:
    """Used when no scoring service is wired in. Tournaments end unranked."""

    async def snapshot_start(self, tournament: TournamentInstance) -> None:
        logger.debug(f"No scoring service, skipping start snapshot for {tournament.id}")

    async def snapshot_end(self, tournament: TournamentInstance) -> list[Ranking] | None:
        logger.debug(f"No scoring service, skipping final snapshot for {tournament.id}")
        return None


# ============================================================================
# Controller
# ============================================================================


class LifecycleController:
    def __init__(
        self,
        db: ArenaDB,
        escrow: Escrow,
        safety: SafetyRegistry,
        schedule: ScheduleConfig | None = None,
        scoring: ScoringService | None = None,
        prizes: PrizeCalculator | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._db = db
        self._escrow = escrow
        self._safety = safety
        self._schedule = schedule or ScheduleConfig()
        self._scoring = scoring or NullScoring()
        self._prizes = prizes or PrizeCalculator()
        self._clock = clock
        self.refunds = RefundProcessor(db, escrow, safety)

    # ------------------------------------------------------------------
    # Store access
    # ------------------------------------------------------------------

    async def _store(self, fn, *args, **kwargs) -> Any:
        return await self._safety.persist(fn, *args, **kwargs)

    async def get_tournament(self, tournament_id: str) -> TournamentInstance:
        row = await self._store(self._db.get_tournament, tournament_id)
        if row is None:
            raise NotFound(f"Tournament {tournament_id} not found")
        return TournamentInstance.from_row(row)

    async def _swap(
        self,
        tournament: TournamentInstance,
        target: TournamentStatus,
        detail: str = "",
        **fields: Any,
    ) -> TransitionResult:
        applied = await self._store(
            self._db.compare_and_set_status,
            tournament.id,
            tournament.status.value,
            target.value,
            **fields,
        )
        if applied:
            logger.info(f"Tournament {tournament.id}: {tournament.status.value} -> {target.value}")
        else:
            logger.debug(f"Tournament {tournament.id} moved on before {target.value}, skipping")
            detail = "status changed concurrently"
        return TransitionResult(tournament.id, tournament.status, target, applied, detail)

    @staticmethod
    def _skip(tournament: TournamentInstance, wanted: str) -> TransitionResult:
        return TransitionResult(
            tournament.id,
            tournament.status,
            tournament.status,
            applied=False,
            detail=f"{wanted} needs a different status (is {tournament.status.value})",
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_tournament(
        self, variant: TournamentVariant, start_time: datetime
    ) -> TournamentInstance:
        """Initialize a variant run on the escrow, then store it as scheduled.

        Retrying with the same variant and start is safe: the id and the
        derived escrow addresses are the same, and the escrow skips
        tournaments it already has.
        """
        start_time = start_time.astimezone(timezone.utc)
        end_time = start_time + timedelta(days=variant.duration_days)
        validate_tournament_params(
            variant.entry_fee,
            variant.max_participants,
            variant.platform_fee_percentage,
            start_time,
            end_time,
        )
        if not 0 < variant.min_participants <= variant.max_participants:
            raise ValidationError(
                f"{variant.name}: min participants {variant.min_participants} "
                f"not within 1..{variant.max_participants}"
            )

        tournament_id = tournament_id_for(variant.name, start_time)
        existing = await self._store(self._db.get_tournament, tournament_id)
        if existing is not None:
            logger.debug(f"Tournament {tournament_id} already exists")
            return TournamentInstance.from_row(existing)

        receipt = await self._escrow.initialize_tournament(
            tournament_id,
            variant.entry_fee,
            variant.max_participants,
            variant.platform_fee_percentage,
            start_time,
            end_time,
        )

        instance = TournamentInstance(
            id=tournament_id,
            name=variant.name,
            variant_name=variant.name,
            trading_style=variant.trading_style,
            entry_fee=variant.entry_fee,
            max_participants=variant.max_participants,
            min_participants=variant.min_participants,
            prize_pool_percentage=variant.prize_pool_percentage,
            duration_days=variant.duration_days,
            registration_opens=start_time - timedelta(days=self._schedule.registration_open_days),
            registration_closes=start_time - timedelta(minutes=self._schedule.registration_close_minutes),
            start_time=start_time,
            end_time=end_time,
            is_mega=variant.is_mega,
            tournament_address=receipt.tournament_address,
            escrow_address=receipt.escrow_address,
            init_signature=receipt.signature,
        )
        await self._store(self._db.insert_tournament, asdict(instance))
        logger.info(
            f"Created {tournament_id} ({variant.entry_fee} fee, starts {start_time.isoformat()}, "
            f"escrow {receipt.escrow_address})"
        )
        return instance

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def open_registration(self, tournament_id: str) -> TransitionResult:
        t = await self.get_tournament(tournament_id)
        if t.status != TournamentStatus.SCHEDULED:
            return self._skip(t, "open_registration")
        return await self._swap(t, TournamentStatus.REGISTERING)

    async def close_registration(self, tournament_id: str) -> TransitionResult:
        """Lock entries. Too few participants cancels and refunds instead."""
        t = await self.get_tournament(tournament_id)
        if t.status != TournamentStatus.REGISTERING:
            return self._skip(t, "close_registration")

        count = await self._store(self._db.count_entries, t.id)
        if count < t.min_participants:
            logger.info(f"Tournament {t.id} has {count}/{t.min_participants} participants, cancelling")
            return await self._cancel(t, INSUFFICIENT_PARTICIPANTS, participant_count=count)

        pool = prize_pool(count, t.entry_fee, t.prize_pool_percentage)
        return await self._swap(
            t,
            TournamentStatus.PENDING_START,
            detail=f"{count} participants, pool {pool}",
            participant_count=count,
            total_prize_pool=pool,
        )

    async def start_tournament(self, tournament_id: str) -> TransitionResult:
        t = await self.get_tournament(tournament_id)
        if t.status != TournamentStatus.PENDING_START:
            return self._skip(t, "start_tournament")

        result = await self._swap(t, TournamentStatus.ACTIVE, actual_start_time=self._clock())
        if result.applied:
            # No entry can be added once active, so this count is final
            count = await self._store(self._db.count_entries, t.id)
            if count != t.participant_count:
                pool = prize_pool(count, t.entry_fee, t.prize_pool_percentage)
                logger.info(f"Tournament {t.id} gained entries while locking: {count} participants, pool {pool}")
                await self._store(
                    self._db.compare_and_set_status,
                    t.id,
                    TournamentStatus.ACTIVE.value,
                    TournamentStatus.ACTIVE.value,
                    participant_count=count,
                    total_prize_pool=pool,
                )
            try:
                await self._scoring.snapshot_start(t)
            except Exception as e:
                # Non-critical: the tournament runs without a baseline
                logger.warning(f"Start snapshot failed for {t.id}: {e}")
                result.detail = f"start snapshot failed: {e}"
        return result

    async def end_tournament(self, tournament_id: str) -> TransitionResult:
        """Close the tournament, rank it and pay out before returning."""
        t = await self.get_tournament(tournament_id)
        if t.status != TournamentStatus.ACTIVE:
            return self._skip(t, "end_tournament")

        result = await self._swap(t, TournamentStatus.ENDED, actual_end_time=self._clock())
        if not result.applied:
            return result

        try:
            rankings = await self._scoring.snapshot_end(t)
        except Exception as e:
            logger.warning(f"Final snapshot failed for {t.id}: {e}")
            result.detail = f"final snapshot failed: {e}"
            return result

        if not rankings:
            result.detail = "no ranking available"
            return result

        summary = await self.distribute_prizes(t.id, rankings)
        result.detail = f"payouts: {summary.sent} sent, {summary.failed} failed, {summary.pending} pending"
        return result

    async def complete_tournament(self, tournament_id: str) -> TransitionResult:
        t = await self.get_tournament(tournament_id)
        if t.status != TournamentStatus.ENDED:
            return self._skip(t, "complete_tournament")
        return await self._swap(t, TournamentStatus.COMPLETE, completed_at=self._clock())

    async def cancel_tournament(self, tournament_id: str, reason: str) -> TransitionResult:
        """Cancel from registering or pending_start and refund every entry."""
        t = await self.get_tournament(tournament_id)
        if t.status not in (TournamentStatus.REGISTERING, TournamentStatus.PENDING_START):
            return self._skip(t, "cancel_tournament")
        return await self._cancel(t, reason)

    async def _cancel(self, t: TournamentInstance, reason: str, **fields: Any) -> TransitionResult:
        result = await self._swap(
            t,
            TournamentStatus.CANCELLED,
            detail=reason,
            cancelled_at=self._clock(),
            cancellation_reason=reason,
            **fields,
        )
        if not result.applied:
            return result

        try:
            await self._escrow.cancel_tournament(t.id)
        except WalletWarsError as e:
            # Refunds go ahead; the contract only needs the flag for its own bookkeeping
            logger.warning(f"Onchain cancel failed for {t.id} (non-critical): {e}")

        summary = await self.refunds.process(t.id)
        result.detail = (
            f"{reason}; refunds: {summary.sent} sent, {summary.failed} failed, "
            f"{summary.pending} pending"
        )
        return result

    async def transition(
        self, tournament_id: str, expected: TournamentStatus | None = None
    ) -> TransitionResult:
        """Take the next step for the tournament's current status.

        With expected set, nothing happens unless the tournament is still in it.
        """
        t = await self.get_tournament(tournament_id)
        if expected is not None and t.status != expected:
            return self._skip(t, f"transition from {expected.value}")

        step = {
            TournamentStatus.SCHEDULED: self.open_registration,
            TournamentStatus.REGISTERING: self.close_registration,
            TournamentStatus.PENDING_START: self.start_tournament,
            TournamentStatus.ACTIVE: self.end_tournament,
            TournamentStatus.ENDED: self.complete_tournament,
        }.get(t.status)
        if step is None:
            return self._skip(t, "transition")
        return await step(tournament_id)

    async def advance_due(self, now: datetime | None = None) -> list[TransitionResult]:
        """Transition every tournament whose next timestamp has passed.

        Tournaments run concurrently. One failing never stops the others.
        """
        now = now or self._clock()
        rows = await self._store(self._db.due_tournaments, now)
        if not rows:
            return []
        return list(await asyncio.gather(*(self._advance_one(row) for row in rows)))

    async def _advance_one(self, row: dict) -> TransitionResult:
        status = TournamentStatus(row["status"])
        try:
            return await self.transition(row["id"], expected=status)
        except Exception as e:
            logger.error(f"Transition of {row['id']} from {status.value} failed: {e}")
            return TransitionResult(row["id"], status, None, applied=False, detail=str(e))

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register_player(
        self, tournament_id: str, wallet_address: str, signed_tx: str | bytes
    ) -> TournamentEntry:
        """Register a wallet with its signed registerPlayer() transaction."""
        wallet = require_address(wallet_address)
        t = await self.get_tournament(tournament_id)

        now = self._clock()
        if t.status != TournamentStatus.REGISTERING:
            raise RegistrationClosed(f"Tournament {t.id} is {t.status.value}, not registering")
        if not t.registration_opens <= now < t.registration_closes:
            raise RegistrationClosed(f"Registration window for {t.id} is closed")

        if await self._store(self._db.find_entry, t.id, wallet) is not None:
            raise AlreadyRegistered(f"{wallet} is already registered for {t.id}")
        if await self._store(self._db.count_entries, t.id) >= t.max_participants:
            raise TournamentFull(f"Tournament {t.id} is full ({t.max_participants})")

        try:
            receipt = await self._escrow.register_player(t.id, wallet, signed_tx)
            fee_paid, signature = receipt.entry_fee_paid, receipt.signature
        except AlreadyRegistered:
            # Paid onchain by an earlier attempt that never got stored
            logger.warning(f"{wallet} registered onchain for {t.id} but not in store, recording it")
            fee_paid, signature = t.entry_fee, None

        row = await self._store(
            self._db.add_entry, t.id, wallet, fee_paid, signature, open_statuses=ENTRY_OPEN_STATUSES
        )
        if row is None:
            if await self._store(self._db.find_entry, t.id, wallet) is not None:
                raise AlreadyRegistered(f"{wallet} is already registered for {t.id}")
            # Closed or cancelled while the escrow call was in flight
            summary = await self.refunds.refund_unadmitted(t.id, wallet, fee_paid, signature)
            refund = "sent" if summary.sent else "failed" if summary.failed else "pending"
            raise RegistrationClosed(
                f"Tournament {t.id} stopped taking entries before {wallet} was recorded; "
                f"entry fee refund {refund}"
            )
        logger.info(f"Registered {wallet} for {t.id}")
        return TournamentEntry.from_row(row)

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    async def distribute_prizes(self, tournament_id: str, rankings: list[Ranking]) -> BatchSummary:
        """Write one payout record per prize rank, then send them.

        Records are insert-once per (tournament, rank); amounts already
        written are never recalculated.
        """
        t = await self.get_tournament(tournament_id)
        if t.status not in (TournamentStatus.ENDED, TournamentStatus.COMPLETE):
            raise DomainError(f"Tournament {t.id} is {t.status.value}, prizes need it ended")

        count = t.participant_count or len(rankings)
        shares = self._prizes.distribute(t.total_prize_pool, count, t.is_mega, ranked=len(rankings))

        records = []
        for rank, ranking in enumerate(rankings, start=1):
            share = shares[rank - 1] if rank <= len(shares) else None
            prize = Decimal("0")
            if share is not None:
                row = await self._store(
                    self._db.create_prize_distribution,
                    t.id,
                    ranking.entry_id,
                    rank,
                    ranking.wallet_address,
                    share.amount,
                    share.percentage,
                )
                record = PrizeDistributionRecord.from_row(row)
                records.append(record)
                prize = record.amount
            await self._store(self._db.record_entry_result, ranking.entry_id, rank, prize)

        logger.info(f"Tournament {t.id}: {len(records)} prize ranks from pool {t.total_prize_pool}")
        pending = [r for r in records if r.status == SettlementStatus.PENDING]
        return await self._send_payouts(t, records, pending)

    async def retry_payouts(self, tournament_id: str) -> BatchSummary:
        """Resend payouts still pending. Ranks already paid onchain are skipped by the escrow."""
        t = await self.get_tournament(tournament_id)
        rows = await self._store(self._db.list_prize_distributions, t.id)
        records = [PrizeDistributionRecord.from_row(r) for r in rows]
        pending = [r for r in records if r.status == SettlementStatus.PENDING]
        if not pending:
            return BatchSummary()
        return await self._send_payouts(t, records, pending)

    async def _send_payouts(
        self,
        t: TournamentInstance,
        records: list[PrizeDistributionRecord],
        pending: list[PrizeDistributionRecord],
    ) -> BatchSummary:
        summary = BatchSummary()
        if not pending:
            return summary

        try:
            await self._escrow.finalize_tournament(
                t.id,
                [r.wallet_address for r in records],
                [r.percentage for r in records],
            )
        except WalletWarsError as e:
            # Nothing can be paid before the winners are recorded onchain
            logger.warning(f"Finalize failed for {t.id}, payouts stay pending: {e}")
            summary.pending = len(pending)
            summary.errors.append(f"finalize: {e}")
            return summary

        for record in pending:
            status, signature, error = SettlementStatus.SENT, None, None
            try:
                receipt = await self._escrow.distribute_prize(
                    t.id, record.rank, record.wallet_address, record.amount, record.percentage
                )
                signature = receipt.signature
            except TransientError as e:
                logger.warning(f"Payout #{record.rank} of {t.id} still pending: {e}")
                summary.pending += 1
                summary.errors.append(f"#{record.rank}: {e}")
                continue
            except (DomainError, ValidationError) as e:
                logger.warning(f"Payout #{record.rank} of {t.id} refused: {e}")
                status, error = SettlementStatus.FAILED, str(e)

            try:
                await self._store(
                    self._db.update_prize_distribution, record.id, status.value, signature, error
                )
            except WalletWarsError as e:
                logger.warning(f"Payout #{record.rank} of {t.id} not recorded: {e}")
                summary.pending += 1
                summary.errors.append(f"#{record.rank}: {e}")
                continue

            if status == SettlementStatus.SENT:
                summary.sent += 1
                logger.info(f"Paid #{record.rank} of {t.id}: {record.amount} to {record.wallet_address}")
            else:
                summary.failed += 1
                summary.errors.append(f"#{record.rank}: {error}")

        return summary

    async def retry_settlements(self) -> dict[str, BatchSummary]:
        """Resend every refund and payout left pending, keyed by tournament id.

        Cancelled tournaments also get refund records for entries that never
        got one. Tournaments run concurrently, one failing never stops the others.
        """
        rows = await self._store(self._db.unsettled_tournaments)
        if not rows:
            return {}
        summaries = await asyncio.gather(*(self._settle_one(row) for row in rows))
        return {row["id"]: summary for row, summary in zip(rows, summaries)}

    async def _settle_one(self, row: dict) -> BatchSummary:
        summary = BatchSummary()
        parts = []
        try:
            if row["refunds"]:
                if row["status"] == TournamentStatus.CANCELLED.value:
                    parts.append(await self.refunds.process(row["id"]))
                else:
                    parts.append(await self.refunds.retry_pending(row["id"]))
            if row["payouts"]:
                parts.append(await self.retry_payouts(row["id"]))
        except WalletWarsError as e:
            logger.warning(f"Settlement retry for {row['id']} failed: {e}")
            summary.errors.append(str(e))

        for part in parts:
            summary.sent += part.sent
            summary.failed += part.failed
            summary.pending += part.pending
            summary.errors.extend(part.errors)
        return summary

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def lifecycle_status(self, tournament_id: str, now: datetime | None = None) -> dict:
        """Timeline, counts and settlement progress for one tournament."""
        now = now or self._clock()
        t = await self.get_tournament(tournament_id)
        registered = await self._store(self._db.count_entries, t.id)
        refunds = await self._store(self._db.list_refunds, t.id)
        payouts = await self._store(self._db.list_prize_distributions, t.id)

        def _counts(rows: list[dict]) -> dict[str, int]:
            out = {s.value: 0 for s in SettlementStatus}
            for row in rows:
                out[row["status"]] += 1
            return out

        can_register = (
            t.status == TournamentStatus.REGISTERING
            and t.registration_opens <= now < t.registration_closes
            and registered < t.max_participants
        )
        return {
            "id": t.id,
            "name": t.name,
            "status": t.status.value,
            "timeline": {
                "registration_opens": t.registration_opens.isoformat(),
                "registration_closes": t.registration_closes.isoformat(),
                "start_time": t.start_time.isoformat(),
                "end_time": t.end_time.isoformat(),
                "actual_start_time": t.actual_start_time.isoformat() if t.actual_start_time else None,
                "actual_end_time": t.actual_end_time.isoformat() if t.actual_end_time else None,
            },
            "can_register": can_register,
            "seconds_until_start": max(0, int((t.start_time - now).total_seconds())),
            "registered": registered,
            "participant_count": t.participant_count,
            "min_participants": t.min_participants,
            "max_participants": t.max_participants,
            "total_prize_pool": str(t.total_prize_pool),
            "refunds": _counts(refunds),
            "payouts": _counts(payouts),
            "cancellation_reason": t.cancellation_reason,
        }
