"""Tests for walletwars.refunds: refund records and their settlement states."""

from decimal import Decimal

import pytest

from conftest import wallet
from walletwars.errors import AlreadyRefunded, CircuitOpenError, EscrowTimeout
from walletwars.refunds import RefundProcessor


TID = "pure-wallet-bronze-league_260107_1000"


@pytest.fixture
def refunds(db, escrow, safety):
    return RefundProcessor(db, escrow, safety)


@pytest.fixture
def entries(db, escrow):
    """Three paid entries of a cancelled tournament."""
    rows = []
    for i in range(1, 4):
        escrow.registrations.add((TID, wallet(i)))
        rows.append(db.add_entry(TID, wallet(i), Decimal("0.01"), f"0xsig{i}"))
    return rows


class TestProcess:
    @pytest.mark.asyncio
    async def test_refunds_every_entry(self, refunds, db, escrow, entries):
        summary = await refunds.process(TID)
        assert (summary.sent, summary.failed, summary.pending) == (3, 0, 0)

        rows = db.list_refunds(TID)
        assert len(rows) == 3
        assert all(r["status"] == "sent" and r["signature"] for r in rows)
        assert {r["wallet_address"] for r in rows} == {wallet(1), wallet(2), wallet(3)}
        assert all(e["status"] == "refunded" for e in db.list_entries(TID))

    @pytest.mark.asyncio
    async def test_second_run_sends_nothing(self, refunds, db, escrow, entries):
        await refunds.process(TID)
        summary = await refunds.process(TID)
        assert summary.total == 0
        assert len(db.list_refunds(TID)) == 3
        assert escrow.calls.count("refund_player") == 3

    @pytest.mark.asyncio
    async def test_no_entries(self, refunds, db):
        summary = await refunds.process(TID)
        assert summary.total == 0
        assert db.list_refunds(TID) == []


class TestSettlementOutcomes:
    @pytest.mark.asyncio
    async def test_timeout_stays_pending_then_retries(self, refunds, db, escrow, entries):
        escrow.errors["refund_player"] = EscrowTimeout("no receipt")
        summary = await refunds.process(TID)
        assert summary.pending == 3
        assert summary.sent == 0
        assert all(r["status"] == "pending" for r in db.list_refunds(TID))

        del escrow.errors["refund_player"]
        summary = await refunds.retry_pending(TID)
        assert summary.sent == 3
        assert all(r["status"] == "sent" for r in db.list_refunds(TID))

    @pytest.mark.asyncio
    async def test_open_circuit_stays_pending(self, refunds, db, escrow, entries):
        escrow.errors["refund_player"] = CircuitOpenError("settlement", 30.0)
        summary = await refunds.process(TID)
        assert summary.pending == 3
        assert len(summary.errors) == 3

    @pytest.mark.asyncio
    async def test_already_refunded_counts_as_sent(self, refunds, db, escrow, entries):
        escrow.errors["refund_player"] = AlreadyRefunded()
        summary = await refunds.process(TID)
        assert summary.sent == 3
        rows = db.list_refunds(TID)
        assert all(r["status"] == "sent" and r["signature"] is None for r in rows)

    @pytest.mark.asyncio
    async def test_not_registered_onchain_fails(self, refunds, db, escrow, entries):
        escrow.registrations.discard((TID, wallet(2)))
        summary = await refunds.process(TID)
        assert summary.sent == 2
        assert summary.failed == 1

        failed = [r for r in db.list_refunds(TID) if r["status"] == "failed"]
        assert [r["wallet_address"] for r in failed] == [wallet(2)]
        assert "NotRegistered" in failed[0]["error"]

    @pytest.mark.asyncio
    async def test_failed_refund_not_resent(self, refunds, db, escrow, entries):
        escrow.registrations.discard((TID, wallet(2)))
        await refunds.process(TID)
        summary = await refunds.retry_pending(TID)
        assert summary.total == 0
        assert escrow.calls.count("refund_player") == 3

    @pytest.mark.asyncio
    async def test_store_failure_leaves_refund_pending(self, refunds, db, escrow, entries, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        await refunds.process(TID)
        # New entry whose refund gets paid but can't be recorded
        escrow.registrations.add((TID, wallet(9)))
        db.add_entry(TID, wallet(9), Decimal("0.01"))
        monkeypatch.setattr(db, "update_refund", broken)

        summary = await refunds.process(TID)
        assert summary.pending == 1
        assert (TID, wallet(9)) in escrow.refunded
        pending = db.list_refunds(TID, "pending")
        assert [r["wallet_address"] for r in pending] == [wallet(9)]


class TestRefundAmount:
    @pytest.mark.asyncio
    async def test_amount_is_fee_paid(self, refunds, db, escrow):
        escrow.registrations.add((TID, wallet(1)))
        db.add_entry(TID, wallet(1), Decimal("0.05"))
        await refunds.process(TID)
        assert db.list_refunds(TID)[0]["amount"] == "0.05"
