"""Tests for walletwars.lifecycle: state machine, registration and payouts."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import NOW, wallet
from walletwars.errors import (
    AlreadyRegistered,
    EscrowTimeout,
    EscrowUnavailable,
    NotFound,
    ProgramError,
    RegistrationClosed,
    TournamentFull,
    ValidationError,
)
from walletwars.escrow import derive_addresses
from walletwars.lifecycle import INSUFFICIENT_PARTICIPANTS, tournament_id_for
from walletwars.models import Ranking, TournamentStatus, TournamentVariant

START = NOW + timedelta(days=2)


async def _registering(controller, variant):
    t = await controller.create_tournament(variant, START)
    await controller.open_registration(t.id)
    return t


async def _register(controller, tournament_id, n, first=1):
    return [
        await controller.register_player(tournament_id, wallet(i), "0xsigned")
        for i in range(first, first + n)
    ]


async def _run_to_end(controller, clock, variant, n):
    t = await _registering(controller, variant)
    await _register(controller, t.id, n)
    await controller.close_registration(t.id)
    clock.now = START
    await controller.start_tournament(t.id)
    clock.now = START + timedelta(days=variant.duration_days)
    return t, await controller.end_tournament(t.id)


# ======================================================================
# Creation
# ======================================================================


class TestTournamentId:
    def test_deterministic(self):
        assert tournament_id_for("Pure Wallet Silver League", START) == "pure-wallet-silver-league_260107_1000"
        assert tournament_id_for("Pure Wallet Silver League", START) == tournament_id_for(
            "Pure Wallet Silver League", START
        )

    def test_different_start_different_id(self):
        assert tournament_id_for("Gold", START) != tournament_id_for("Gold", START + timedelta(days=3))


class TestCreateTournament:
    @pytest.mark.asyncio
    async def test_creates_scheduled_instance(self, controller, escrow, db, silver):
        t = await controller.create_tournament(silver, START)
        assert t.status == TournamentStatus.SCHEDULED
        assert t.start_time == START
        assert t.end_time == START + timedelta(days=7)
        assert t.registration_opens == START - timedelta(days=3)
        assert t.registration_closes == START - timedelta(minutes=10)
        assert t.id in escrow.tournaments
        assert escrow.tournaments[t.id]["fee_pct"] == 15

        row = db.get_tournament(t.id)
        assert row is not None
        assert row["status"] == "scheduled"
        assert row["escrow_address"] == derive_addresses(t.id).escrow_address

    @pytest.mark.asyncio
    async def test_create_twice_returns_existing(self, controller, escrow, silver):
        first = await controller.create_tournament(silver, START)
        second = await controller.create_tournament(silver, START)
        assert first.id == second.id
        assert escrow.calls.count("initialize_tournament") == 1

    @pytest.mark.asyncio
    async def test_platform_fee_too_high_rejected(self, controller, escrow):
        variant = TournamentVariant("Greedy Cup", prize_pool_percentage=70)
        with pytest.raises(ValidationError):
            await controller.create_tournament(variant, START)
        assert escrow.calls == []

    @pytest.mark.asyncio
    async def test_min_above_max_rejected(self, controller, escrow):
        variant = TournamentVariant("Odd Cup", max_participants=5, min_participants=10)
        with pytest.raises(ValidationError):
            await controller.create_tournament(variant, START)
        assert escrow.calls == []

    @pytest.mark.asyncio
    async def test_escrow_down_stores_nothing(self, controller, escrow, db, silver):
        escrow.errors["initialize_tournament"] = EscrowUnavailable("no key")
        with pytest.raises(EscrowUnavailable):
            await controller.create_tournament(silver, START)
        assert db.list_tournaments() == []


# ======================================================================
# Registration
# ======================================================================


class TestRegisterPlayer:
    @pytest.mark.asyncio
    async def test_register(self, controller, silver):
        t = await _registering(controller, silver)
        entry = await controller.register_player(t.id, wallet(1), "0xsigned")
        assert entry.wallet_address == wallet(1)
        assert entry.entry_fee_paid == Decimal("0.05")
        assert entry.registration_signature is not None

    @pytest.mark.asyncio
    async def test_lowercase_address_is_checksummed(self, controller, silver):
        t = await _registering(controller, silver)
        entry = await controller.register_player(t.id, wallet(0xABCDEF).lower(), "0xsigned")
        assert entry.wallet_address == wallet(0xABCDEF)

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, controller, db, escrow, silver):
        t = await _registering(controller, silver)
        await controller.register_player(t.id, wallet(1), "0xsigned")
        with pytest.raises(AlreadyRegistered):
            await controller.register_player(t.id, wallet(1), "0xsigned")
        assert db.count_entries(t.id) == 1
        assert escrow.calls.count("register_player") == 1

    @pytest.mark.asyncio
    async def test_onchain_registration_without_entry_is_recorded(self, controller, db, escrow, silver):
        t = await _registering(controller, silver)
        # An earlier attempt paid onchain but never reached the store
        escrow.registrations.add((t.id, wallet(1)))
        entry = await controller.register_player(t.id, wallet(1), "0xsigned")
        assert entry.registration_signature is None
        assert entry.entry_fee_paid == silver.entry_fee
        assert db.count_entries(t.id) == 1

    @pytest.mark.asyncio
    async def test_not_registering(self, controller, silver):
        t = await controller.create_tournament(silver, START)
        with pytest.raises(RegistrationClosed):
            await controller.register_player(t.id, wallet(1), "0xsigned")

    @pytest.mark.asyncio
    async def test_window_closed(self, controller, clock, silver):
        t = await _registering(controller, silver)
        clock.now = START - timedelta(minutes=5)
        with pytest.raises(RegistrationClosed):
            await controller.register_player(t.id, wallet(1), "0xsigned")

    @pytest.mark.asyncio
    async def test_full(self, controller, escrow):
        tiny = TournamentVariant("Tiny Cup", max_participants=2, min_participants=1)
        t = await _registering(controller, tiny)
        await _register(controller, t.id, 2)
        with pytest.raises(TournamentFull):
            await controller.register_player(t.id, wallet(3), "0xsigned")
        assert escrow.calls.count("register_player") == 2

    @pytest.mark.asyncio
    async def test_invalid_wallet(self, controller, escrow, silver):
        t = await _registering(controller, silver)
        with pytest.raises(ValidationError):
            await controller.register_player(t.id, "not-a-wallet", "0xsigned")
        assert "register_player" not in escrow.calls

    @pytest.mark.asyncio
    async def test_unknown_tournament(self, controller):
        with pytest.raises(NotFound):
            await controller.register_player("nope_260101_0000", wallet(1), "0xsigned")


class TestRegistrationRace:
    """Registration closes while a registration is still being confirmed onchain."""

    @staticmethod
    def _hold_escrow(escrow):
        entered, gate = asyncio.Event(), asyncio.Event()
        register = escrow.register_player

        async def slow_register(*args):
            entered.set()
            await gate.wait()
            return await register(*args)

        escrow.register_player = slow_register
        return entered, gate

    @pytest.mark.asyncio
    async def test_cancel_during_confirmation_refunds_late_wallet(self, controller, db, escrow, silver):
        t = await _registering(controller, silver)
        await _register(controller, t.id, 4)
        entered, gate = self._hold_escrow(escrow)

        late = asyncio.create_task(controller.register_player(t.id, wallet(5), "0xsigned"))
        await entered.wait()
        closed = await controller.close_registration(t.id)
        assert closed.to_status == TournamentStatus.CANCELLED
        gate.set()
        with pytest.raises(RegistrationClosed, match="refund sent"):
            await late

        assert len(escrow.registrations) == 5
        refunds = db.list_refunds(t.id)
        assert len(refunds) == 5
        assert all(r["status"] == "sent" for r in refunds)
        assert (t.id, wallet(5)) in escrow.refunded
        assert db.find_entry(t.id, wallet(5))["status"] == "refunded"
        assert (await controller.get_tournament(t.id)).participant_count == 4

    @pytest.mark.asyncio
    async def test_late_refund_left_pending_on_timeout(self, controller, db, escrow, silver):
        t = await _registering(controller, silver)
        entered, gate = self._hold_escrow(escrow)

        late = asyncio.create_task(controller.register_player(t.id, wallet(1), "0xsigned"))
        await entered.wait()
        await controller.cancel_tournament(t.id, "operator")
        escrow.errors["refund_player"] = EscrowTimeout("slow")
        gate.set()
        with pytest.raises(RegistrationClosed, match="refund pending"):
            await late
        assert [r["status"] for r in db.list_refunds(t.id)] == ["pending"]

    @pytest.mark.asyncio
    async def test_lock_during_confirmation_admits_and_recounts(self, controller, db, escrow, clock, silver):
        t = await _registering(controller, silver)
        await _register(controller, t.id, 12)
        entered, gate = self._hold_escrow(escrow)

        late = asyncio.create_task(controller.register_player(t.id, wallet(13), "0xsigned"))
        await entered.wait()
        closed = await controller.close_registration(t.id)
        assert closed.to_status == TournamentStatus.PENDING_START
        assert (await controller.get_tournament(t.id)).participant_count == 12
        gate.set()
        entry = await late
        assert entry.wallet_address == wallet(13)

        clock.now = START
        assert (await controller.start_tournament(t.id)).applied
        after = await controller.get_tournament(t.id)
        assert after.participant_count == 13
        assert after.total_prize_pool == Decimal("0.5525")
        assert db.list_refunds(t.id) == []

    @pytest.mark.asyncio
    async def test_store_refuses_entries_once_active(self, controller, db, clock, silver):
        t = await _registering(controller, silver)
        await _register(controller, t.id, 10)
        await controller.close_registration(t.id)
        clock.now = START
        await controller.start_tournament(t.id)

        row = db.add_entry(t.id, wallet(99), Decimal("0.05"), open_statuses=("registering", "pending_start"))
        assert row is None
        assert db.find_entry(t.id, wallet(99)) is None


# ======================================================================
# Transitions
# ======================================================================


class TestCloseRegistration:
    @pytest.mark.asyncio
    async def test_below_minimum_cancels_and_refunds(self, controller, db, escrow, silver):
        t = await _registering(controller, silver)
        await _register(controller, t.id, 7)

        result = await controller.close_registration(t.id)
        assert result.applied
        assert result.to_status == TournamentStatus.CANCELLED

        after = await controller.get_tournament(t.id)
        assert after.status == TournamentStatus.CANCELLED
        assert after.cancellation_reason == INSUFFICIENT_PARTICIPANTS
        assert after.participant_count == 7
        assert after.cancelled_at is not None

        refunds = db.list_refunds(t.id)
        assert len(refunds) == 7
        assert all(r["status"] == "sent" for r in refunds)
        assert all(r["amount"] == "0.05" for r in refunds)
        assert len(escrow.refunded) == 7
        assert t.id in escrow.cancelled
        assert all(e["status"] == "refunded" for e in db.list_entries(t.id))

    @pytest.mark.asyncio
    async def test_enough_players_locks_pool(self, controller, silver):
        t = await _registering(controller, silver)
        await _register(controller, t.id, 50)

        result = await controller.close_registration(t.id)
        assert result.applied
        assert result.to_status == TournamentStatus.PENDING_START

        after = await controller.get_tournament(t.id)
        assert after.participant_count == 50
        assert after.total_prize_pool == Decimal("2.125")

    @pytest.mark.asyncio
    async def test_second_call_is_noop(self, controller, db, escrow, silver):
        t = await _registering(controller, silver)
        await _register(controller, t.id, 3)
        await controller.close_registration(t.id)

        again = await controller.close_registration(t.id)
        assert not again.applied
        assert len(db.list_refunds(t.id)) == 3
        assert escrow.calls.count("refund_player") == 3

    @pytest.mark.asyncio
    async def test_concurrent_calls_apply_once(self, controller, db, silver):
        t = await _registering(controller, silver)
        await _register(controller, t.id, 4)

        results = await asyncio.gather(
            controller.close_registration(t.id),
            controller.close_registration(t.id),
        )
        assert sum(r.applied for r in results) == 1
        assert len(db.list_refunds(t.id)) == 4


class TestFullRun:
    @pytest.mark.asyncio
    async def test_fifty_players_medium_payout(self, controller, db, escrow, scoring, clock, silver):
        t, ended = await _run_to_end(controller, clock, silver, 50)
        assert ended.applied
        assert ended.to_status == TournamentStatus.ENDED
        assert t.id in scoring.started

        payouts = db.list_prize_distributions(t.id)
        assert [p["percentage"] for p in payouts] == [35, 25, 15, 10, 8, 7]
        amounts = [Decimal(p["amount"]) for p in payouts]
        assert amounts == [
            Decimal("0.74375"),
            Decimal("0.53125"),
            Decimal("0.31875"),
            Decimal("0.2125"),
            Decimal("0.17"),
            Decimal("0.14875"),
        ]
        assert sum(amounts) <= Decimal("2.125")
        assert all(p["status"] == "sent" for p in payouts)
        assert len(escrow.distributed) == 6
        assert escrow.finalized[t.id][1] == [35, 25, 15, 10, 8, 7]

        entries = db.list_entries(t.id)
        assert all(e["status"] == "finalized" for e in entries)
        winner = db.find_entry(t.id, wallet(1))
        assert winner["final_rank"] == 1
        assert Decimal(winner["prize_won"]) == Decimal("0.74375")
        loser = db.find_entry(t.id, wallet(50))
        assert Decimal(loser["prize_won"]) == 0

        completed = await controller.complete_tournament(t.id)
        assert completed.applied
        assert (await controller.get_tournament(t.id)).status == TournamentStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_mega_pays_twenty_ranks(self, controller, db, escrow, clock):
        mega = TournamentVariant("Mega Monthly", "pure_wallet", Decimal("0.1"), 200, 50, 7, 85, is_mega=True)
        t, ended = await _run_to_end(controller, clock, mega, 60)
        assert "20 sent" in ended.detail

        payouts = db.list_prize_distributions(t.id)
        assert len(payouts) == 20
        assert all(p["status"] == "sent" for p in payouts)
        assert sum(escrow.finalized[t.id][1]) == 100
        # 60 * 0.1 * 85% = 5.1
        assert Decimal(payouts[0]["amount"]) == Decimal("1.326")
        assert sum(Decimal(p["amount"]) for p in payouts) <= Decimal("5.1")

    @pytest.mark.asyncio
    async def test_payout_retry_replays_same_winners(self, controller, db, escrow, clock, silver):
        escrow.errors["distribute_prize"] = EscrowTimeout("slow")
        t, _ = await _run_to_end(controller, clock, silver, 10)
        first = escrow.finalized[t.id]
        assert all(p["status"] == "pending" for p in db.list_prize_distributions(t.id))

        del escrow.errors["distribute_prize"]
        summary = await controller.retry_payouts(t.id)
        assert summary.sent == 3
        assert escrow.calls.count("finalize_tournament") == 2
        assert escrow.finalized[t.id] == first

    @pytest.mark.asyncio
    async def test_escrow_refuses_bad_finalize(self, controller, escrow, clock, silver):
        t, _ = await _run_to_end(controller, clock, silver, 10)
        winners, _ = escrow.finalized[t.id]
        with pytest.raises(ValidationError):
            await escrow.finalize_tournament(t.id, winners, [50, 30, 16])
        with pytest.raises(ValidationError):
            await escrow.finalize_tournament(t.id, winners[:2], [50, 30, 20])
        with pytest.raises(ProgramError, match="AlreadyFinalized"):
            await escrow.finalize_tournament(t.id, list(reversed(winners)), [50, 30, 20])

    @pytest.mark.asyncio
    async def test_rerun_pays_nothing_twice(self, controller, db, escrow, scoring, clock, silver):
        t, _ = await _run_to_end(controller, clock, silver, 12)
        assert not (await controller.end_tournament(t.id)).applied

        rankings = await scoring.snapshot_end(t)
        summary = await controller.distribute_prizes(t.id, rankings)
        assert summary.total == 0
        assert len(db.list_prize_distributions(t.id)) == 3
        assert escrow.calls.count("distribute_prize") == 3

    @pytest.mark.asyncio
    async def test_no_ranking_ends_without_payouts(self, controller, db, scoring, clock, silver):
        scoring.rankings = []
        t, ended = await _run_to_end(controller, clock, silver, 10)
        assert ended.applied
        assert ended.detail == "no ranking available"
        assert db.list_prize_distributions(t.id) == []

    @pytest.mark.asyncio
    async def test_fewer_ranked_than_places(self, controller, db, scoring, clock, silver):
        scoring.rankings = [Ranking(f"e{i}", wallet(i)) for i in range(1, 4)]
        t, _ = await _run_to_end(controller, clock, silver, 50)
        payouts = db.list_prize_distributions(t.id)
        assert [p["percentage"] for p in payouts] == [60, 25, 15]

    @pytest.mark.asyncio
    async def test_finalize_timeout_leaves_payouts_pending(self, controller, db, escrow, clock, silver):
        escrow.errors["finalize_tournament"] = EscrowTimeout("slow")
        t, ended = await _run_to_end(controller, clock, silver, 10)
        assert ended.applied
        payouts = db.list_prize_distributions(t.id)
        assert len(payouts) == 3
        assert all(p["status"] == "pending" for p in payouts)

        del escrow.errors["finalize_tournament"]
        summary = await controller.retry_payouts(t.id)
        assert summary.sent == 3
        assert all(p["status"] == "sent" for p in db.list_prize_distributions(t.id))

    @pytest.mark.asyncio
    async def test_refused_payout_marked_failed(self, controller, db, escrow, clock, silver):
        escrow.errors["distribute_prize"] = ProgramError(code=6013, name="NotFinalized")
        t, _ = await _run_to_end(controller, clock, silver, 10)
        payouts = db.list_prize_distributions(t.id)
        assert all(p["status"] == "failed" for p in payouts)
        assert "NotFinalized" in payouts[0]["error"]

        # Failed records are not resent
        summary = await controller.retry_payouts(t.id)
        assert summary.total == 0

    @pytest.mark.asyncio
    async def test_start_snapshot_failure_still_starts(self, controller, scoring, clock, silver):
        async def broken(tournament):
            raise RuntimeError("scoring offline")

        scoring.snapshot_start = broken
        t = await _registering(controller, silver)
        await _register(controller, t.id, 10)
        await controller.close_registration(t.id)
        result = await controller.start_tournament(t.id)
        assert result.applied
        assert "scoring offline" in result.detail
        assert (await controller.get_tournament(t.id)).status == TournamentStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_distribute_before_end_refused(self, controller, silver):
        from walletwars.errors import DomainError

        t = await _registering(controller, silver)
        with pytest.raises(DomainError):
            await controller.distribute_prizes(t.id, [Ranking("e1", wallet(1))])


class TestCancelTournament:
    @pytest.mark.asyncio
    async def test_cancel_registering(self, controller, db, escrow, silver):
        t = await _registering(controller, silver)
        await _register(controller, t.id, 3)
        result = await controller.cancel_tournament(t.id, "operator")
        assert result.applied
        assert "3 sent" in result.detail
        assert (await controller.get_tournament(t.id)).cancellation_reason == "operator"
        assert len(escrow.refunded) == 3

    @pytest.mark.asyncio
    async def test_cancel_scheduled_is_noop(self, controller, silver):
        t = await controller.create_tournament(silver, START)
        result = await controller.cancel_tournament(t.id, "operator")
        assert not result.applied
        assert (await controller.get_tournament(t.id)).status == TournamentStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_onchain_cancel_failure_still_refunds(self, controller, db, escrow, silver):
        escrow.errors["cancel_tournament"] = EscrowTimeout("slow")
        t = await _registering(controller, silver)
        await _register(controller, t.id, 2)
        result = await controller.cancel_tournament(t.id, "operator")
        assert result.applied
        assert all(r["status"] == "sent" for r in db.list_refunds(t.id))


class TestTransition:
    @pytest.mark.asyncio
    async def test_next_step(self, controller, silver):
        t = await controller.create_tournament(silver, START)
        result = await controller.transition(t.id)
        assert result.applied
        assert result.to_status == TournamentStatus.REGISTERING

    @pytest.mark.asyncio
    async def test_expected_mismatch_is_noop(self, controller, silver):
        t = await controller.create_tournament(silver, START)
        result = await controller.transition(t.id, expected=TournamentStatus.ACTIVE)
        assert not result.applied
        assert (await controller.get_tournament(t.id)).status == TournamentStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_terminal_status_is_noop(self, controller, silver):
        t = await _registering(controller, silver)
        await controller.cancel_tournament(t.id, "operator")
        result = await controller.transition(t.id)
        assert not result.applied


class TestAdvanceDue:
    @pytest.mark.asyncio
    async def test_opens_due_registration(self, controller, silver):
        t = await controller.create_tournament(silver, START)
        results = await controller.advance_due(NOW)
        assert [r.tournament_id for r in results] == [t.id]
        assert results[0].applied
        assert (await controller.get_tournament(t.id)).status == TournamentStatus.REGISTERING

    @pytest.mark.asyncio
    async def test_nothing_due(self, controller, silver):
        await controller.create_tournament(silver, NOW + timedelta(days=10))
        assert await controller.advance_due(NOW) == []

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_others(self, controller, silver, monkeypatch):
        good = await controller.create_tournament(silver, START)
        bad = await controller.create_tournament(silver, START + timedelta(hours=2))
        real_open = controller.open_registration

        async def flaky_open(tournament_id):
            if tournament_id == bad.id:
                raise RuntimeError("boom")
            return await real_open(tournament_id)

        monkeypatch.setattr(controller, "open_registration", flaky_open)
        results = {r.tournament_id: r for r in await controller.advance_due(NOW)}
        assert results[good.id].applied
        assert not results[bad.id].applied
        assert results[bad.id].detail == "boom"


class TestRetrySettlements:
    @pytest.mark.asyncio
    async def test_nothing_pending(self, controller, silver):
        await _registering(controller, silver)
        assert await controller.retry_settlements() == {}

    @pytest.mark.asyncio
    async def test_resends_pending_refunds(self, controller, db, escrow, silver):
        escrow.errors["refund_player"] = EscrowTimeout("slow")
        t = await _registering(controller, silver)
        await _register(controller, t.id, 3)
        await controller.close_registration(t.id)
        assert all(r["status"] == "pending" for r in db.list_refunds(t.id))

        del escrow.errors["refund_player"]
        settled = await controller.retry_settlements()
        assert settled[t.id].sent == 3
        assert all(r["status"] == "sent" for r in db.list_refunds(t.id))
        assert await controller.retry_settlements() == {}

    @pytest.mark.asyncio
    async def test_resends_pending_payouts_after_complete(self, controller, db, escrow, clock, silver):
        escrow.errors["finalize_tournament"] = EscrowTimeout("slow")
        t, _ = await _run_to_end(controller, clock, silver, 10)
        await controller.complete_tournament(t.id)

        del escrow.errors["finalize_tournament"]
        settled = await controller.retry_settlements()
        assert settled[t.id].sent == 3
        assert all(p["status"] == "sent" for p in db.list_prize_distributions(t.id))

    @pytest.mark.asyncio
    async def test_cancelled_entry_without_refund_record(self, controller, db, escrow, silver):
        t = await _registering(controller, silver)
        await _register(controller, t.id, 2)
        # Cancelled, but the refund batch never ran
        db.compare_and_set_status(t.id, "registering", "cancelled")

        settled = await controller.retry_settlements()
        assert settled[t.id].sent == 2
        assert len(escrow.refunded) == 2

    @pytest.mark.asyncio
    async def test_still_failing_stays_pending(self, controller, db, escrow, silver):
        escrow.errors["refund_player"] = EscrowUnavailable("rpc down")
        t = await _registering(controller, silver)
        await _register(controller, t.id, 1)
        await controller.close_registration(t.id)

        settled = await controller.retry_settlements()
        assert settled[t.id].pending == 1
        assert [r["status"] for r in db.list_refunds(t.id)] == ["pending"]


class TestLifecycleStatus:
    @pytest.mark.asyncio
    async def test_registering_status(self, controller, silver):
        t = await _registering(controller, silver)
        await _register(controller, t.id, 2)
        status = await controller.lifecycle_status(t.id)
        assert status["status"] == "registering"
        assert status["can_register"] is True
        assert status["registered"] == 2
        assert status["seconds_until_start"] == 2 * 24 * 3600
        assert status["refunds"] == {"pending": 0, "sent": 0, "failed": 0}
        assert status["timeline"]["start_time"] == START.isoformat()

    @pytest.mark.asyncio
    async def test_cancelled_status(self, controller, silver):
        t = await _registering(controller, silver)
        await _register(controller, t.id, 2)
        await controller.close_registration(t.id)
        status = await controller.lifecycle_status(t.id)
        assert status["can_register"] is False
        assert status["refunds"]["sent"] == 2
        assert status["cancellation_reason"] == INSUFFICIENT_PARTICIPANTS
