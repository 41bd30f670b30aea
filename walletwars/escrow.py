"""
walletwars/escrow.py - TournamentEscrow contract interaction via web3.py.

Wraps initializeTournament(), registerPlayer(), finalizeTournament(),
distributePrize(), refundPlayer(), cancelTournament() and collectPlatformFees()
on the deployed escrow contract, plus the getTournament/getRegistration views.

Every operation:
  1. validates its parameters (ValidationError, nothing sent)
  2. takes one slot from the settlement RateLimiter
  3. runs under the settlement CircuitBreaker with an outer deadline

Payouts and refunds read the contract's settled flags before sending, so a
caller that doesn't know whether an earlier attempt landed can simply call
again. Tournament, escrow and registration addresses are derived from the
tournament id, never generated, so retries always resolve to the same accounts.

The authority key is read from ESCROW_AUTHORITY_KEY. Without it (or without a
configured contract) create_escrow_client() returns an UnavailableEscrow whose
every operation raises EscrowUnavailable.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from .config import AUTHORITY_KEY_ENV, SETTLEMENT, WalletWarsConfig
from .errors import (
    AlreadyRefunded,
    AlreadyRegistered,
    EscrowTimeout,
    EscrowUnavailable,
    InsufficientBalance,
    NotFound,
    NotRegistered,
    ProgramError,
    ValidationError,
)
from .safety import SafetyRegistry

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

MAX_PLATFORM_FEE_PCT = 20
MAX_PLAYERS = 1000

# ============================================================================
# ABI
# ============================================================================

TOURNAMENT_STRUCT = [
    {"name": "authority", "type": "address"},
    {"name": "tournamentId", "type": "string"},
    {"name": "entryFee", "type": "uint64"},
    {"name": "maxPlayers", "type": "uint32"},
    {"name": "currentPlayers", "type": "uint32"},
    {"name": "platformFeePercentage", "type": "uint8"},
    {"name": "totalPrizePool", "type": "uint256"},
    {"name": "platformFeesCollected", "type": "uint256"},
    {"name": "startTime", "type": "int64"},
    {"name": "endTime", "type": "int64"},
    {"name": "isActive", "type": "bool"},
    {"name": "isFinalized", "type": "bool"},
]

REGISTRATION_STRUCT = [
    {"name": "player", "type": "address"},
    {"name": "isRegistered", "type": "bool"},
    {"name": "isRefunded", "type": "bool"},
    {"name": "registrationTime", "type": "int64"},
]

# Declared contract errors, in code order starting at 6000.
PROGRAM_ERROR_NAMES = [
    "InvalidFeePercentage",
    "InvalidEntryFee",
    "InvalidMaxPlayers",
    "InvalidTimeRange",
    "TournamentNotActive",
    "TournamentFinalized",
    "TournamentFull",
    "TournamentEnded",
    "AlreadyRegistered",
    "TournamentNotEnded",
    "AlreadyFinalized",
    "MismatchedWinnersData",
    "InvalidPrizeDistribution",
    "NotFinalized",
    "NoFeesToCollect",
    "TournamentStillActive",
    "NotRegistered",
    "AlreadyRefunded",
]

TOURNAMENT_ESCROW_ABI = [
    {
        "type": "function",
        "name": "initializeTournament",
        "inputs": [
            {"name": "key", "type": "bytes32"},
            {"name": "tournamentId", "type": "string"},
            {"name": "entryFee", "type": "uint64"},
            {"name": "maxPlayers", "type": "uint32"},
            {"name": "platformFeePercentage", "type": "uint8"},
            {"name": "startTime", "type": "int64"},
            {"name": "endTime", "type": "int64"},
        ],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "registerPlayer",
        "inputs": [{"name": "key", "type": "bytes32"}],
        "outputs": [],
        "stateMutability": "payable",
    },
    {
        "type": "function",
        "name": "finalizeTournament",
        "inputs": [
            {"name": "key", "type": "bytes32"},
            {"name": "winnerAddresses", "type": "address[]"},
            {"name": "prizePercentages", "type": "bytes"},
        ],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "distributePrize",
        "inputs": [
            {"name": "key", "type": "bytes32"},
            {"name": "winnerIndex", "type": "uint8"},
            {"name": "prizePercentage", "type": "uint8"},
        ],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "collectPlatformFees",
        "inputs": [{"name": "key", "type": "bytes32"}],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "cancelTournament",
        "inputs": [{"name": "key", "type": "bytes32"}],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "refundPlayer",
        "inputs": [
            {"name": "key", "type": "bytes32"},
            {"name": "player", "type": "address"},
        ],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "getTournament",
        "inputs": [{"name": "key", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "tuple", "components": TOURNAMENT_STRUCT}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "getRegistration",
        "inputs": [
            {"name": "key", "type": "bytes32"},
            {"name": "player", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "tuple", "components": REGISTRATION_STRUCT}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "isPrizeDistributed",
        "inputs": [
            {"name": "key", "type": "bytes32"},
            {"name": "winnerIndex", "type": "uint8"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
    },
] + [{"type": "error", "name": name, "inputs": []} for name in PROGRAM_ERROR_NAMES]


# ============================================================================
# Program errors
# ============================================================================

_KNOWN_ERROR_CLASSES: dict[str, type[ProgramError]] = {
    "AlreadyRegistered": AlreadyRegistered,
    "AlreadyRefunded": AlreadyRefunded,
    "NotRegistered": NotRegistered,
}


def program_error(code: int) -> ProgramError:
    """Build the ProgramError for a contract error code (6000-6017)."""
    name = PROGRAM_ERROR_NAMES[code - 6000]
    cls = _KNOWN_ERROR_CLASSES.get(name)
    if cls is not None:
        return cls()
    return ProgramError(code=code, name=name)


# 4-byte selector (hex, no 0x) -> error code
ERROR_SELECTORS: dict[str, int] = {
    bytes(Web3.keccak(text=f"{name}()")[:4]).hex(): 6000 + i
    for i, name in enumerate(PROGRAM_ERROR_NAMES)
}


def decode_revert(exc: ContractLogicError) -> ProgramError:
    """Map a contract revert to the matching ProgramError subclass."""
    data = getattr(exc, "data", None)
    if not isinstance(data, str):
        data = str(exc.args[0]) if exc.args else ""
    selector = data.removeprefix("0x")[:8].lower()
    code = ERROR_SELECTORS.get(selector)
    if code is not None:
        return program_error(code)
    return ProgramError(f"Contract reverted: {exc}")


# ============================================================================
# Address derivation
# ============================================================================


@dataclass(frozen=True)
class DerivedAddresses:
    tournament_address: str
    escrow_address: str


def _derive(*parts: bytes) -> str:
    digest = Web3.keccak(b"".join(parts))
    return Web3.to_checksum_address("0x" + bytes(digest[-20:]).hex())


def tournament_key(tournament_id: str) -> bytes:
    """bytes32 key the contract indexes tournaments by."""
    return bytes(Web3.keccak(text=tournament_id))


def derive_addresses(tournament_id: str) -> DerivedAddresses:
    """Tournament and escrow account addresses. Same id -> same addresses."""
    raw_id = tournament_id.encode("utf-8")
    return DerivedAddresses(
        tournament_address=_derive(b"tournament", raw_id),
        escrow_address=_derive(b"escrow", raw_id),
    )


def registration_address(tournament_id: str, wallet_address: str) -> str:
    tournament_address = derive_addresses(tournament_id).tournament_address
    return _derive(
        b"registration",
        Web3.to_bytes(hexstr=tournament_address),
        Web3.to_bytes(hexstr=wallet_address),
    )


# ============================================================================
# Data Types
# ============================================================================


@dataclass
class TournamentOnChainView:
    tournament_id: str
    authority: str
    entry_fee: Decimal  # ether
    max_players: int
    current_players: int
    platform_fee_percentage: int
    total_prize_pool: Decimal
    platform_fees_collected: Decimal
    start_time: datetime
    end_time: datetime
    is_active: bool
    is_finalized: bool
    tournament_address: str
    escrow_address: str


@dataclass
class InitReceipt:
    signature: str | None  # None when the tournament already existed
    tournament_address: str
    escrow_address: str


@dataclass
class RegistrationReceipt:
    signature: str
    entry_fee_paid: Decimal
    registration_address: str


@dataclass
class SettlementReceipt:
    """Result of a payout, refund or admin call. already_settled means nothing was sent."""

    signature: str | None
    already_settled: bool = False
    amount: Decimal | None = None


def _ether(wei: int) -> Decimal:
    return Decimal(Web3.from_wei(wei, "ether"))


def require_address(value: str, what: str = "wallet address") -> str:
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ValidationError(f"Invalid {what}: {value!r}")
    return Web3.to_checksum_address(value)


def validate_tournament_params(
    entry_fee: Decimal,
    max_players: int,
    fee_pct: int,
    start_time: datetime,
    end_time: datetime,
) -> None:
    """Same checks the contract makes, done locally before anything is sent."""
    if not 0 < fee_pct <= MAX_PLATFORM_FEE_PCT:
        raise ValidationError(f"Platform fee {fee_pct}% must be between 1 and {MAX_PLATFORM_FEE_PCT}")
    if entry_fee <= 0:
        raise ValidationError(f"Entry fee must be positive, got {entry_fee}")
    if not 0 < max_players <= MAX_PLAYERS:
        raise ValidationError(f"Max players {max_players} must be between 1 and {MAX_PLAYERS}")
    if start_time >= end_time:
        raise ValidationError(f"Start {start_time.isoformat()} is not before end {end_time.isoformat()}")


# ============================================================================
# Escrow interface
# ============================================================================


@runtime_checkable
class Escrow(Protocol):
    """What the lifecycle controller and refund processor need from settlement."""

    async def initialize_tournament(
        self, tournament_id: str, entry_fee: Decimal, max_players: int,
        fee_pct: int, start_time: datetime, end_time: datetime,
    ) -> InitReceipt: ...

    async def register_player(
        self, tournament_id: str, wallet_address: str, signed_tx: str | bytes
    ) -> RegistrationReceipt: ...

    async def fetch_tournament(self, tournament_id: str) -> TournamentOnChainView: ...

    async def is_registered(self, tournament_id: str, wallet_address: str) -> bool: ...

    async def finalize_tournament(
        self, tournament_id: str, winners: list[str], percentages: list[int]
    ) -> SettlementReceipt: ...

    async def distribute_prize(
        self, tournament_id: str, rank: int, winner_address: str,
        amount: Decimal, percentage: int,
    ) -> SettlementReceipt: ...

    async def refund_player(self, tournament_id: str, wallet_address: str) -> SettlementReceipt: ...

    async def cancel_tournament(self, tournament_id: str) -> SettlementReceipt: ...

    async def collect_platform_fees(self, tournament_id: str) -> SettlementReceipt: ...


class UnavailableEscrow:
    """Stand-in used when the settlement client can't be built.

    Every operation raises EscrowUnavailable. Callers treat that as retryable.
    """

    available = False

    def __init__(self, reason: str):
        self.reason = reason

    def _fail(self, *args, **kwargs):
        raise EscrowUnavailable(f"Escrow unavailable: {self.reason}")

    async def initialize_tournament(self, *args, **kwargs) -> InitReceipt:
        self._fail()

    async def register_player(self, *args, **kwargs) -> RegistrationReceipt:
        self._fail()

    async def fetch_tournament(self, *args, **kwargs) -> TournamentOnChainView:
        self._fail()

    async def is_registered(self, *args, **kwargs) -> bool:
        self._fail()

    async def finalize_tournament(self, *args, **kwargs) -> SettlementReceipt:
        self._fail()

    async def distribute_prize(self, *args, **kwargs) -> SettlementReceipt:
        self._fail()

    async def refund_player(self, *args, **kwargs) -> SettlementReceipt:
        self._fail()

    async def cancel_tournament(self, *args, **kwargs) -> SettlementReceipt:
        self._fail()

    async def collect_platform_fees(self, *args, **kwargs) -> SettlementReceipt:
        self._fail()


# ============================================================================
# Client
# ============================================================================


class EscrowClient:
    """Async web3 client for the TournamentEscrow contract.

    Args:
        w3: AsyncWeb3 instance.
        contract_address: Deployed escrow contract.
        account: eth_account LocalAccount holding the tournament authority key.
        safety: SafetyRegistry providing the settlement breaker and limiter.
        chain_id: Chain to sign transactions for.
        call_timeout: Outer deadline per operation, seconds.
        receipt_timeout: How long to wait for a receipt, seconds.
    """

    available = True

    def __init__(
        self,
        w3: AsyncWeb3,
        contract_address: str,
        account,
        safety: SafetyRegistry,
        chain_id: int,
        call_timeout: float = 45.0,
        receipt_timeout: float = 30.0,
    ):
        self._w3 = w3
        self._contract = w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=TOURNAMENT_ESCROW_ABI,
        )
        self._account = account
        self._breaker = safety.breaker(SETTLEMENT)
        self._limiter = safety.limiter(SETTLEMENT)
        self.chain_id = chain_id
        self.call_timeout = call_timeout
        self.receipt_timeout = receipt_timeout
        # Serializes nonce allocation across concurrent tournaments
        self._send_lock = asyncio.Lock()

    @property
    def authority(self) -> str:
        return self._account.address

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _guarded(self, label: str, fn, *args) -> Any:
        """Rate limit + breaker (synchronous), then the call under a deadline."""
        if self._limiter is not None:
            self._limiter.allow()
        return await self._breaker.call(self._with_deadline, label, fn, *args)

    async def _with_deadline(self, label: str, fn, *args) -> Any:
        try:
            return await asyncio.wait_for(fn(*args), timeout=self.call_timeout)
        except asyncio.TimeoutError:
            raise EscrowTimeout(
                f"{label} passed its {self.call_timeout:.0f}s deadline; it may still land"
            ) from None
        except TimeExhausted as e:
            raise EscrowTimeout(f"{label} not confirmed in time: {e}") from e
        except ContractLogicError as e:
            # ContractCustomError is a subclass, so both land here
            raise decode_revert(e) from e
        except (Web3Exception, OSError) as e:
            raise EscrowUnavailable(f"{label} failed: {e}") from e

    async def _transact(self, label: str, call, value_wei: int = 0) -> str:
        """Build, sign, send and confirm one authority transaction."""
        async with self._send_lock:
            tx = await call.build_transaction(
                {
                    "from": self._account.address,
                    "nonce": await self._w3.eth.get_transaction_count(self._account.address, "pending"),
                    "chainId": self.chain_id,
                    "value": value_wei,
                }
            )
            signed = self._account.sign_transaction(tx)
            tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
        logger.info(f"{label} tx sent: {Web3.to_hex(tx_hash)}")
        return await self._confirm(label, tx_hash)

    async def _confirm(self, label: str, tx_hash) -> str:
        receipt = await self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        if receipt["status"] != 1:
            raise ProgramError(f"{label} reverted: {Web3.to_hex(tx_hash)}")
        logger.info(f"{label} confirmed in block {receipt['blockNumber']}")
        return Web3.to_hex(tx_hash)

    async def _read_tournament(self, tournament_id: str) -> TournamentOnChainView | None:
        raw = await self._contract.functions.getTournament(tournament_key(tournament_id)).call()
        if raw[0] == ZERO_ADDRESS:
            return None
        addrs = derive_addresses(tournament_id)
        return TournamentOnChainView(
            tournament_id=raw[1],
            authority=raw[0],
            entry_fee=_ether(raw[2]),
            max_players=raw[3],
            current_players=raw[4],
            platform_fee_percentage=raw[5],
            total_prize_pool=_ether(raw[6]),
            platform_fees_collected=_ether(raw[7]),
            start_time=datetime.fromtimestamp(raw[8], tz=timezone.utc),
            end_time=datetime.fromtimestamp(raw[9], tz=timezone.utc),
            is_active=raw[10],
            is_finalized=raw[11],
            tournament_address=addrs.tournament_address,
            escrow_address=addrs.escrow_address,
        )

    async def _require_tournament(self, tournament_id: str) -> TournamentOnChainView:
        view = await self._read_tournament(tournament_id)
        if view is None:
            raise NotFound(f"Tournament {tournament_id} not found onchain")
        return view

    async def _read_registration(self, tournament_id: str, wallet_address: str) -> tuple:
        # (player, isRegistered, isRefunded, registrationTime); zeroed when absent
        return await self._contract.functions.getRegistration(
            tournament_key(tournament_id), wallet_address
        ).call()

    # ------------------------------------------------------------------
    # Tournament setup
    # ------------------------------------------------------------------

    async def initialize_tournament(
        self,
        tournament_id: str,
        entry_fee: Decimal,
        max_players: int,
        fee_pct: int,
        start_time: datetime,
        end_time: datetime,
    ) -> InitReceipt:
        """Create the tournament onchain. An existing tournament is returned as-is."""
        validate_tournament_params(entry_fee, max_players, fee_pct, start_time, end_time)
        return await self._guarded(
            "initializeTournament", self._initialize,
            tournament_id, entry_fee, max_players, fee_pct, start_time, end_time,
        )

    async def _initialize(self, tournament_id, entry_fee, max_players, fee_pct, start_time, end_time):
        addrs = derive_addresses(tournament_id)
        if await self._read_tournament(tournament_id) is not None:
            logger.info(f"Tournament {tournament_id} already initialized, skipping")
            return InitReceipt(None, addrs.tournament_address, addrs.escrow_address)

        call = self._contract.functions.initializeTournament(
            tournament_key(tournament_id),
            tournament_id,
            Web3.to_wei(entry_fee, "ether"),
            max_players,
            fee_pct,
            int(start_time.timestamp()),
            int(end_time.timestamp()),
        )
        signature = await self._transact(f"initializeTournament({tournament_id})", call)
        return InitReceipt(signature, addrs.tournament_address, addrs.escrow_address)

    async def fetch_tournament(self, tournament_id: str) -> TournamentOnChainView:
        return await self._guarded("getTournament", self._require_tournament, tournament_id)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def is_registered(self, tournament_id: str, wallet_address: str) -> bool:
        """False when the registration account doesn't exist."""
        wallet = require_address(wallet_address)
        return await self._guarded("getRegistration", self._is_registered, tournament_id, wallet)

    async def _is_registered(self, tournament_id: str, wallet: str) -> bool:
        reg = await self._read_registration(tournament_id, wallet)
        return bool(reg[1])

    async def register_player(
        self, tournament_id: str, wallet_address: str, signed_tx: str | bytes
    ) -> RegistrationReceipt:
        """Broadcast the participant's own signed registerPlayer() transaction.

        The transaction is an opaque credential produced by the participant's
        wallet. We only check who signed it before sending.
        """
        wallet = require_address(wallet_address)
        if not signed_tx:
            raise ValidationError("Missing signed registration transaction")
        try:
            signer = Account.recover_transaction(signed_tx)
        except (ValueError, TypeError) as e:
            raise ValidationError(f"Unreadable registration transaction: {e}") from e
        if signer != wallet:
            raise ValidationError(f"Registration transaction signed by {signer}, not {wallet}")

        return await self._guarded("registerPlayer", self._register, tournament_id, wallet, signed_tx)

    async def _register(self, tournament_id: str, wallet: str, signed_tx) -> RegistrationReceipt:
        view = await self._require_tournament(tournament_id)
        if await self._is_registered(tournament_id, wallet):
            raise AlreadyRegistered(f"{wallet} is already registered for {tournament_id}")

        required = Web3.to_wei(view.entry_fee, "ether")
        balance = await self._w3.eth.get_balance(wallet)
        if balance < required:
            raise InsufficientBalance(wallet, balance, required)

        tx_hash = await self._w3.eth.send_raw_transaction(signed_tx)
        logger.info(f"registerPlayer tx sent for {wallet}: {Web3.to_hex(tx_hash)}")
        signature = await self._confirm(f"registerPlayer({tournament_id})", tx_hash)
        return RegistrationReceipt(
            signature=signature,
            entry_fee_paid=view.entry_fee,
            registration_address=registration_address(tournament_id, wallet),
        )

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def finalize_tournament(
        self, tournament_id: str, winners: list[str], percentages: list[int]
    ) -> SettlementReceipt:
        """Record the winner list and shares. Skipped when already finalized."""
        if len(winners) != len(percentages) or not winners:
            raise ValidationError("winners and percentages must be non-empty and the same length")
        if sum(percentages) != 100:
            raise ValidationError(f"Prize percentages sum to {sum(percentages)}, not 100")
        checked = [require_address(w, "winner address") for w in winners]
        return await self._guarded("finalizeTournament", self._finalize, tournament_id, checked, percentages)

    async def _finalize(self, tournament_id, winners, percentages) -> SettlementReceipt:
        view = await self._require_tournament(tournament_id)
        if view.is_finalized:
            return SettlementReceipt(None, already_settled=True)
        call = self._contract.functions.finalizeTournament(
            tournament_key(tournament_id), winners, bytes(percentages)
        )
        signature = await self._transact(f"finalizeTournament({tournament_id})", call)
        return SettlementReceipt(signature)

    async def distribute_prize(
        self,
        tournament_id: str,
        rank: int,
        winner_address: str,
        amount: Decimal,
        percentage: int,
    ) -> SettlementReceipt:
        """Pay one rank. Reads isPrizeDistributed first and never pays twice."""
        if rank < 1:
            raise ValidationError(f"Rank must be >= 1, got {rank}")
        if not 0 < percentage <= 100:
            raise ValidationError(f"Prize percentage {percentage} out of range")
        winner = require_address(winner_address, "winner address")
        return await self._guarded(
            "distributePrize", self._distribute, tournament_id, rank, winner, amount, percentage
        )

    async def _distribute(self, tournament_id, rank, winner, amount, percentage) -> SettlementReceipt:
        key = tournament_key(tournament_id)
        winner_index = rank - 1
        if await self._contract.functions.isPrizeDistributed(key, winner_index).call():
            logger.info(f"Prize rank {rank} of {tournament_id} already distributed")
            return SettlementReceipt(None, already_settled=True, amount=amount)
        call = self._contract.functions.distributePrize(key, winner_index, percentage)
        signature = await self._transact(f"distributePrize({tournament_id}, #{rank} {winner})", call)
        return SettlementReceipt(signature, amount=amount)

    async def refund_player(self, tournament_id: str, wallet_address: str) -> SettlementReceipt:
        """Refund one entry. Reads the isRefunded flag first and never refunds twice."""
        wallet = require_address(wallet_address)
        return await self._guarded("refundPlayer", self._refund, tournament_id, wallet)

    async def _refund(self, tournament_id: str, wallet: str) -> SettlementReceipt:
        reg = await self._read_registration(tournament_id, wallet)
        if not reg[1]:
            raise NotRegistered(f"{wallet} has no registration in {tournament_id}")
        if reg[2]:
            logger.info(f"{wallet} already refunded for {tournament_id}")
            return SettlementReceipt(None, already_settled=True)
        call = self._contract.functions.refundPlayer(tournament_key(tournament_id), wallet)
        signature = await self._transact(f"refundPlayer({tournament_id}, {wallet})", call)
        return SettlementReceipt(signature)

    async def cancel_tournament(self, tournament_id: str) -> SettlementReceipt:
        return await self._guarded("cancelTournament", self._cancel, tournament_id)

    async def _cancel(self, tournament_id: str) -> SettlementReceipt:
        view = await self._require_tournament(tournament_id)
        if not view.is_active:
            return SettlementReceipt(None, already_settled=True)
        call = self._contract.functions.cancelTournament(tournament_key(tournament_id))
        return SettlementReceipt(await self._transact(f"cancelTournament({tournament_id})", call))

    async def collect_platform_fees(self, tournament_id: str) -> SettlementReceipt:
        return await self._guarded("collectPlatformFees", self._collect_fees, tournament_id)

    async def _collect_fees(self, tournament_id: str) -> SettlementReceipt:
        view = await self._require_tournament(tournament_id)
        call = self._contract.functions.collectPlatformFees(tournament_key(tournament_id))
        signature = await self._transact(f"collectPlatformFees({tournament_id})", call)
        return SettlementReceipt(signature, amount=view.platform_fees_collected)


# ============================================================================
# Factory
# ============================================================================


def create_escrow_client(
    config: WalletWarsConfig,
    safety: SafetyRegistry,
    private_key: str | None = None,
) -> EscrowClient | UnavailableEscrow:
    """Pick the settlement implementation once, at startup.

    Args:
        config: Loaded config; uses the [chain] section.
        safety: Registry holding the settlement breaker and limiter.
        private_key: Authority key. Defaults to $ESCROW_AUTHORITY_KEY.
    """
    chain = config.chain
    key = private_key or os.environ.get(AUTHORITY_KEY_ENV)

    reason = None
    account = None
    if not key:
        reason = f"{AUTHORITY_KEY_ENV} not set"
    elif not chain.escrow_contract:
        reason = "no escrow_contract configured in [chain]"
    elif not Web3.is_address(chain.escrow_contract):
        reason = f"escrow_contract is not an address: {chain.escrow_contract!r}"
    else:
        if not key.startswith("0x"):
            key = "0x" + key
        try:
            account = Account.from_key(key)
        except (ValueError, TypeError) as e:
            reason = f"invalid authority key: {e}"

    if reason is not None:
        logger.warning(f"Settlement disabled: {reason}")
        return UnavailableEscrow(reason)

    w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(chain.rpc_url))
    logger.info(f"Escrow client ready: authority {account.address}, contract {chain.escrow_contract}")
    return EscrowClient(
        w3,
        chain.escrow_contract,
        account,
        safety,
        chain_id=chain.chain_id,
        call_timeout=chain.call_timeout,
        receipt_timeout=chain.receipt_timeout,
    )
