"""
walletwars/refunds.py - Entry fee refunds for cancelled tournaments.

One RefundRecord per entry (the store enforces it). A refund moves
pending -> sent when the escrow pays it or reports it already paid, and
pending -> failed when the escrow refuses. Timeouts, open circuits and an
unavailable escrow leave it pending: the refund may still have landed, and
the next retry reads the onchain flag before sending anything.
"""

import logging

from arena.db import ArenaDB

from .errors import (
    AlreadyRefunded,
    DomainError,
    TransientError,
    ValidationError,
    WalletWarsError,
)
from .escrow import Escrow
from .models import BatchSummary, EntryStatus, RefundRecord, SettlementStatus
from .safety import SafetyRegistry

logger = logging.getLogger(__name__)


class RefundProcessor:
    def __init__(self, db: ArenaDB, escrow: Escrow, safety: SafetyRegistry):
        self._db = db
        self._escrow = escrow
        self._safety = safety

    async def process(self, tournament_id: str) -> BatchSummary:
        """Refund every still-registered entry, then send all pending refunds.

        Safe to call again: entries already refunded are skipped and existing
        records are reused.
        """
        summary = BatchSummary()
        entries = await self._safety.persist(
            self._db.list_entries, tournament_id, EntryStatus.REGISTERED.value
        )
        for entry in entries:
            try:
                await self._safety.persist(self._db.create_refund, entry)
                await self._safety.persist(
                    self._db.set_entry_status,
                    entry["id"],
                    EntryStatus.REGISTERED.value,
                    EntryStatus.REFUNDED.value,
                )
            except WalletWarsError as e:
                logger.warning(f"Could not record refund for entry {entry['id']}: {e}")
                summary.pending += 1
                summary.errors.append(f"{entry['wallet_address']}: {e}")

        if entries:
            logger.info(f"Created refunds for {len(entries)} entries of {tournament_id}")

        return await self.retry_pending(tournament_id, summary)

    async def refund_unadmitted(
        self,
        tournament_id: str,
        wallet_address: str,
        amount,
        registration_signature: str | None = None,
    ) -> BatchSummary:
        """Refund a wallet that paid onchain after its tournament stopped taking entries.

        The entry is stored already refunded so it never counts as a
        participant, and the refund record points at it.
        """
        summary = BatchSummary()
        entry = await self._safety.persist(
            self._db.add_entry,
            tournament_id,
            wallet_address,
            amount,
            registration_signature,
            status=EntryStatus.REFUNDED.value,
        )
        if entry is None:
            entry = await self._safety.persist(self._db.find_entry, tournament_id, wallet_address)
        refund = RefundRecord.from_row(await self._safety.persist(self._db.create_refund, entry))
        logger.warning(f"{wallet_address} paid for {tournament_id} after it closed, refunding {amount}")
        if refund.status == SettlementStatus.PENDING:
            await self._send(refund, summary)
        return summary

    async def retry_pending(
        self, tournament_id: str, summary: BatchSummary | None = None
    ) -> BatchSummary:
        """Send every refund of this tournament that is still pending."""
        summary = summary or BatchSummary()
        rows = await self._safety.persist(
            self._db.list_refunds, tournament_id, SettlementStatus.PENDING.value
        )
        for row in rows:
            await self._send(RefundRecord.from_row(row), summary)

        logger.info(
            f"Refunds for {tournament_id}: {summary.sent} sent, "
            f"{summary.failed} failed, {summary.pending} pending"
        )
        return summary

    async def _send(self, refund: RefundRecord, summary: BatchSummary) -> None:
        status = SettlementStatus.SENT
        signature = None
        error = None
        try:
            receipt = await self._escrow.refund_player(refund.tournament_id, refund.wallet_address)
            signature = receipt.signature
        except AlreadyRefunded:
            logger.info(f"Refund to {refund.wallet_address} already on chain")
        except TransientError as e:
            logger.warning(f"Refund to {refund.wallet_address} still pending: {e}")
            summary.pending += 1
            summary.errors.append(f"{refund.wallet_address}: {e}")
            return
        except (DomainError, ValidationError) as e:
            logger.warning(f"Refund to {refund.wallet_address} refused: {e}")
            status = SettlementStatus.FAILED
            error = str(e)

        try:
            await self._safety.persist(
                self._db.update_refund, refund.id, status.value, signature, error
            )
        except WalletWarsError as e:
            # Left pending; a retry finds it already settled onchain
            logger.warning(f"Refund {refund.id} settled but not recorded: {e}")
            summary.pending += 1
            summary.errors.append(f"{refund.wallet_address}: {e}")
            return

        if status == SettlementStatus.SENT:
            summary.sent += 1
        else:
            summary.failed += 1
            summary.errors.append(f"{refund.wallet_address}: {error}")
