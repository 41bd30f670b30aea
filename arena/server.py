"""
arena/server.py - FastAPI service for the WalletWars tournament coordinator.

Endpoints:
    GET    /health                              Service health + settlement status
    GET    /tournaments                         List tournaments (?status=)
    GET    /tournaments/{id}                    Tournament details + lifecycle status
    GET    /tournaments/{id}/entries            Entries of a tournament
    POST   /tournaments/{id}/register           Register a wallet (signed tx)
    POST   /tournaments/{id}/transition         Take the next lifecycle step
    POST   /tournaments/{id}/cancel             Cancel and refund
    POST   /tournaments/{id}/refunds/retry      Resend pending refunds
    POST   /tournaments/{id}/payouts/retry      Resend pending payouts

Operator:
    POST   /admin/deploy                        Run one deployment pass now
    GET    /admin/circuits                      Circuit breaker states
    POST   /admin/circuits/{name}/reset         Force a breaker closed

Errors: 400 bad parameters, 404 unknown tournament, 409 refused by the
tournament state, 503 infrastructure trouble (retry later).
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
from starlette.middleware.cors import CORSMiddleware

from walletwars.config import AUTHORITY_KEY_ENV, WalletWarsConfig, load_config, validate_config
from walletwars.deployment import DeploymentTrigger
from walletwars.errors import DomainError, NotFound, ValidationError, WalletWarsError
from walletwars.escrow import create_escrow_client
from walletwars.lifecycle import LifecycleController
from walletwars.models import (
    BatchSummary,
    TournamentEntry,
    TournamentInstance,
    TournamentStatus,
    TransitionResult,
)
from walletwars.safety import CircuitBreakerState, SafetyRegistry

from .db import ArenaDB

logger = logging.getLogger(__name__)

# Global instances, set during lifespan (or directly by tests)
_db: ArenaDB | None = None
_safety: SafetyRegistry | None = None
_escrow = None
_controller: LifecycleController | None = None
_trigger: DeploymentTrigger | None = None


def get_db() -> ArenaDB:
    assert _db is not None, "DB not initialized"
    return _db


def get_controller() -> LifecycleController:
    assert _controller is not None, "Controller not initialized"
    return _controller


def get_trigger() -> DeploymentTrigger:
    assert _trigger is not None, "Deployment trigger not initialized"
    return _trigger


def get_safety() -> SafetyRegistry:
    assert _safety is not None, "Safety registry not initialized"
    return _safety


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _db, _safety, _escrow, _controller, _trigger

    config_path = getattr(app.state, "config_path", None)
    config = load_config(Path(config_path) if config_path else None)
    db_path = getattr(app.state, "db_path", None) or config.db_path

    _db = ArenaDB(db_path)
    logger.info(f"Tournament DB initialized: {db_path}")

    _safety = SafetyRegistry.from_config(config.safety)
    _escrow = create_escrow_client(config, _safety)
    _controller = LifecycleController(_db, _escrow, _safety, schedule=config.schedule)
    _trigger = DeploymentTrigger(_controller, _db, _safety, config.schedule, config.variants)

    _log_startup_config(config, db_path)

    stop = asyncio.Event()
    task = None
    if getattr(app.state, "run_trigger", True):
        task = asyncio.create_task(_trigger.run_forever(stop=stop))

    yield

    stop.set()
    if task is not None:
        await task
    _db.close()
    _db = _safety = _escrow = _controller = _trigger = None


def _log_startup_config(config: WalletWarsConfig, db_path: str):
    """Log coordinator configuration on startup so operators can verify it."""
    chain = config.chain
    schedule = config.schedule

    logger.info("=" * 50)
    logger.info("WalletWars startup config:")
    logger.info(f"  Chain: {chain.chain_id} | RPC: {chain.rpc_url}")
    logger.info(f"  DB: {db_path}")

    if chain.escrow_contract:
        logger.info(f"  Escrow contract: {chain.escrow_contract}")
    else:
        logger.warning("  Escrow contract: NOT configured ([chain] escrow_contract missing)")

    if getattr(_escrow, "available", False):
        logger.info(f"  Authority wallet: {_escrow.authority}")
    elif os.environ.get(AUTHORITY_KEY_ENV):
        logger.warning(f"  Authority wallet: key set but unusable ({_escrow.reason})")
    else:
        logger.warning(f"  Authority wallet: NOT configured ({AUTHORITY_KEY_ENV} missing)")
        logger.warning("  → Registration, payouts and refunds DISABLED")

    logger.info(
        f"  Schedule: {', '.join(schedule.deployment_days)} at {schedule.deployment_time} UTC, "
        f"{schedule.advance_deployment_days}d lookahead, max {schedule.max_upcoming_tournaments} upcoming"
    )
    logger.info(f"  Variants: {len(config.variants)}")
    logger.info(f"  Settlement rate limit: {config.safety.max_calls_per_minute}/min")
    for name, breaker in config.safety.breakers.items():
        logger.info(f"  Breaker {name}: {breaker.failure_threshold} failures / {breaker.reset_timeout:.0f}s")

    for issue in validate_config(config):
        logger.error(f"  Config problem: {issue}")

    logger.info("=" * 50)


app = FastAPI(title="WalletWars Coordinator", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def _http_error(e: WalletWarsError) -> HTTPException:
    if isinstance(e, ValidationError):
        status = 400
    elif isinstance(e, NotFound):
        status = 404
    elif isinstance(e, DomainError):
        status = 409
    else:
        status = 503
    return HTTPException(status_code=status, detail=str(e))


# ======================================================================
# Request/Response Models
# ======================================================================


class TournamentResponse(BaseModel):
    id: str
    name: str
    trading_style: str
    status: str
    entry_fee: str
    max_participants: int
    min_participants: int
    prize_pool_percentage: int
    participant_count: int
    total_prize_pool: str
    registration_opens: str
    registration_closes: str
    start_time: str
    end_time: str
    is_mega: bool = False
    tournament_address: str | None = None
    escrow_address: str | None = None
    cancellation_reason: str | None = None
    lifecycle: dict[str, Any] | None = None


class EntryResponse(BaseModel):
    id: str
    tournament_id: str
    wallet_address: str
    entry_fee_paid: str
    status: str
    final_rank: int | None = None
    prize_won: str | None = None
    registration_signature: str | None = None


class RegisterRequest(BaseModel):
    wallet_address: str
    signed_tx: str  # hex-encoded registerPlayer() transaction signed by the wallet


class CancelRequest(BaseModel):
    reason: str = "cancelled by operator"


class TransitionResponse(BaseModel):
    tournament_id: str
    from_status: str | None
    to_status: str | None
    applied: bool
    detail: str = ""


class BatchResponse(BaseModel):
    tournament_id: str
    sent: int
    failed: int
    pending: int
    errors: list[str] = []


class DeployResponse(BaseModel):
    created: list[str]
    skipped: list[str]
    failed: list[str]


class CircuitResponse(BaseModel):
    name: str
    state: str
    failures: int
    successes: int
    failure_threshold: int
    reset_timeout: float
    time_until_retry: float


class HealthResponse(BaseModel):
    status: str
    settlement_available: bool
    tournaments: dict[str, int] = {}
    open_circuits: list[str] = []


def _tournament_dict(t: TournamentInstance, lifecycle: dict | None = None) -> dict[str, Any]:
    return {
        "id": t.id,
        "name": t.name,
        "trading_style": t.trading_style,
        "status": t.status.value,
        "entry_fee": str(t.entry_fee),
        "max_participants": t.max_participants,
        "min_participants": t.min_participants,
        "prize_pool_percentage": t.prize_pool_percentage,
        "participant_count": t.participant_count,
        "total_prize_pool": str(t.total_prize_pool),
        "registration_opens": t.registration_opens.isoformat(),
        "registration_closes": t.registration_closes.isoformat(),
        "start_time": t.start_time.isoformat(),
        "end_time": t.end_time.isoformat(),
        "is_mega": t.is_mega,
        "tournament_address": t.tournament_address,
        "escrow_address": t.escrow_address,
        "cancellation_reason": t.cancellation_reason,
        "lifecycle": lifecycle,
    }


def _entry_dict(e: TournamentEntry) -> dict[str, Any]:
    return {
        "id": e.id,
        "tournament_id": e.tournament_id,
        "wallet_address": e.wallet_address,
        "entry_fee_paid": str(e.entry_fee_paid),
        "status": e.status.value,
        "final_rank": e.final_rank,
        "prize_won": str(e.prize_won) if e.prize_won is not None else None,
        "registration_signature": e.registration_signature,
    }


def _transition_dict(r: TransitionResult) -> dict[str, Any]:
    return {
        "tournament_id": r.tournament_id,
        "from_status": r.from_status.value if r.from_status else None,
        "to_status": r.to_status.value if r.to_status else None,
        "applied": r.applied,
        "detail": r.detail,
    }


def _batch_dict(tournament_id: str, s: BatchSummary) -> dict[str, Any]:
    return {
        "tournament_id": tournament_id,
        "sent": s.sent,
        "failed": s.failed,
        "pending": s.pending,
        "errors": s.errors,
    }


def _circuit_dict(s: CircuitBreakerState) -> dict[str, Any]:
    return {
        "name": s.name,
        "state": s.state.value,
        "failures": s.failures,
        "successes": s.successes,
        "failure_threshold": s.failure_threshold,
        "reset_timeout": s.reset_timeout,
        "time_until_retry": s.time_until_retry,
    }


# ======================================================================
# Endpoints
# ======================================================================


@app.get("/health", response_model=HealthResponse)
def health() -> dict[str, Any]:
    """Service health. Reads the DB directly so it works with persistence tripped."""
    db = get_db()
    safety = get_safety()
    return {
        "status": "ok",
        "settlement_available": getattr(_escrow, "available", False),
        "tournaments": db.count_by_status(),
        "open_circuits": [s.name for s in safety.status() if s.state.value != "closed"],
    }


@app.get("/tournaments", response_model=list[TournamentResponse])
def list_tournaments(status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
    db = get_db()
    rows = db.list_tournaments(status=status, limit=limit)
    return [_tournament_dict(TournamentInstance.from_row(r)) for r in rows]


@app.get("/tournaments/{tournament_id}", response_model=TournamentResponse)
async def get_tournament(tournament_id: str) -> dict[str, Any]:
    controller = get_controller()
    try:
        t = await controller.get_tournament(tournament_id)
        status = await controller.lifecycle_status(tournament_id)
    except WalletWarsError as e:
        raise _http_error(e)
    return _tournament_dict(t, status)


@app.get("/tournaments/{tournament_id}/entries", response_model=list[EntryResponse])
def list_entries(tournament_id: str) -> list[dict[str, Any]]:
    db = get_db()
    if db.get_tournament(tournament_id) is None:
        raise HTTPException(status_code=404, detail="Tournament not found")
    return [_entry_dict(TournamentEntry.from_row(r)) for r in db.list_entries(tournament_id)]


@app.post("/tournaments/{tournament_id}/register", response_model=EntryResponse)
async def register(tournament_id: str, req: RegisterRequest) -> dict[str, Any]:
    """Register a wallet. The signed transaction pays the entry fee onchain."""
    controller = get_controller()
    try:
        entry = await controller.register_player(tournament_id, req.wallet_address, req.signed_tx)
    except WalletWarsError as e:
        raise _http_error(e)
    return _entry_dict(entry)


@app.post("/tournaments/{tournament_id}/transition", response_model=TransitionResponse)
async def transition(tournament_id: str) -> dict[str, Any]:
    controller = get_controller()
    try:
        result = await controller.transition(tournament_id)
    except WalletWarsError as e:
        raise _http_error(e)
    return _transition_dict(result)


@app.post("/tournaments/{tournament_id}/cancel", response_model=TransitionResponse)
async def cancel(tournament_id: str, req: CancelRequest | None = None) -> dict[str, Any]:
    controller = get_controller()
    reason = req.reason if req is not None else CancelRequest().reason
    try:
        result = await controller.cancel_tournament(tournament_id, reason)
    except WalletWarsError as e:
        raise _http_error(e)
    return _transition_dict(result)


@app.post("/tournaments/{tournament_id}/refunds/retry", response_model=BatchResponse)
async def retry_refunds(tournament_id: str) -> dict[str, Any]:
    """Create any missing refunds of a cancelled tournament and resend pending ones."""
    controller = get_controller()
    try:
        t = await controller.get_tournament(tournament_id)
        if t.status != TournamentStatus.CANCELLED:
            raise DomainError(f"Tournament {tournament_id} is {t.status.value}, not cancelled")
        summary = await controller.refunds.process(tournament_id)
    except WalletWarsError as e:
        raise _http_error(e)
    return _batch_dict(tournament_id, summary)


@app.post("/tournaments/{tournament_id}/payouts/retry", response_model=BatchResponse)
async def retry_payouts(tournament_id: str) -> dict[str, Any]:
    controller = get_controller()
    try:
        summary = await controller.retry_payouts(tournament_id)
    except WalletWarsError as e:
        raise _http_error(e)
    return _batch_dict(tournament_id, summary)


@app.post("/admin/deploy", response_model=DeployResponse)
async def admin_deploy() -> dict[str, Any]:
    """Run one deployment pass now instead of waiting for the next tick."""
    trigger = get_trigger()
    try:
        report = await trigger.deploy_upcoming()
    except WalletWarsError as e:
        raise _http_error(e)
    return {"created": report.created, "skipped": report.skipped, "failed": report.failed}


@app.get("/admin/circuits", response_model=list[CircuitResponse])
def admin_circuits() -> list[dict[str, Any]]:
    return [_circuit_dict(s) for s in get_safety().status()]


@app.post("/admin/circuits/{name}/reset", response_model=CircuitResponse)
def admin_reset_circuit(name: str) -> dict[str, Any]:
    try:
        state = get_safety().reset(name)
    except WalletWarsError as e:
        raise _http_error(e)
    return _circuit_dict(state)
