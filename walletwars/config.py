"""
walletwars/config.py - Coordinator configuration

Reads the operator config from ~/.walletwars/config.toml (or %APPDATA%\\walletwars
on Windows). Every section is optional; missing values fall back to the
production defaults below.

Example:
    [chain]
    rpc_url = "https://rpc.monad.xyz"
    chain_id = 143
    escrow_contract = "0x..."
    call_timeout = 45

    [safety]
    max_calls_per_minute = 20

    [safety.breakers.settlement]
    failure_threshold = 3
    reset_timeout = 30

    [schedule]
    deployment_days = ["monday", "thursday"]
    deployment_time = "14:00:00"
    advance_deployment_days = 21

    [[variants]]
    name = "Pure Wallet Bronze League"
    trading_style = "pure_wallet"
    entry_fee = "0.01"
    prize_pool_percentage = 85

The escrow authority key is NOT read from this file. Set ESCROW_AUTHORITY_KEY
in the environment of the process that signs settlement transactions.
"""

import logging
import os
import sys
import tomllib
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path

from .models import TournamentVariant

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================


def _get_config_dir() -> Path:
    """Get platform-appropriate config directory."""
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata) / "walletwars"
    return Path.home() / ".walletwars"


CONFIG_DIR = _get_config_dir()
CONFIG_PATH = CONFIG_DIR / "config.toml"

AUTHORITY_KEY_ENV = "ESCROW_AUTHORITY_KEY"

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

# Dependency names used as SafetyRegistry keys.
SETTLEMENT = "settlement"
PERSISTENCE = "persistence"
ORCHESTRATION = "orchestration"


# ============================================================================
# Data Types
# ============================================================================


@dataclass
class ChainConfig:
    """Escrow contract network settings."""

    chain_id: int = 143
    rpc_url: str = "https://rpc.monad.xyz"
    escrow_contract: str | None = None
    platform_wallet: str | None = None
    call_timeout: float = 45.0  # outer deadline per settlement call, seconds
    receipt_timeout: float = 30.0  # transport confirmation wait, seconds


@dataclass
class BreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0  # seconds


def _default_breakers() -> dict[str, BreakerConfig]:
    return {
        SETTLEMENT: BreakerConfig(failure_threshold=3, reset_timeout=30.0),
        PERSISTENCE: BreakerConfig(failure_threshold=5, reset_timeout=60.0),
        ORCHESTRATION: BreakerConfig(failure_threshold=2, reset_timeout=120.0),
    }


@dataclass
class SafetyConfig:
    """Rate limit and circuit breaker settings, one breaker per dependency."""

    max_calls_per_minute: int = 20
    breakers: dict[str, BreakerConfig] = field(default_factory=_default_breakers)


@dataclass
class ScheduleConfig:
    """Weekly deployment cadence and tournament timing."""

    deployment_days: list[str] = field(default_factory=lambda: ["monday", "thursday"])
    deployment_time: str = "14:00:00"  # UTC
    advance_deployment_days: int = 21
    max_tournaments_per_date: int = 6
    max_upcoming_tournaments: int = 36
    registration_open_days: int = 3  # registration opens this many days before start
    registration_close_minutes: int = 10  # and closes this many minutes before start
    check_interval_seconds: int = 3600


def _default_variants() -> list[TournamentVariant]:
    return [
        TournamentVariant("Pure Wallet Bronze League", "pure_wallet", Decimal("0.01"), 100, 10, 7, 85),
        TournamentVariant("Pure Wallet Silver League", "pure_wallet", Decimal("0.05"), 100, 10, 7, 85),
        TournamentVariant("Pure Wallet Gold League", "pure_wallet", Decimal("0.1"), 100, 10, 7, 85),
        TournamentVariant("Open Trading Bronze Battle", "open_trading", Decimal("0.01"), 100, 10, 7, 80),
        TournamentVariant("Open Trading Silver Storm", "open_trading", Decimal("0.05"), 100, 10, 7, 80),
        TournamentVariant("Open Trading Gold Rush", "open_trading", Decimal("0.1"), 100, 10, 7, 80),
    ]


@dataclass
class WalletWarsConfig:
    """Top-level configuration."""

    chain: ChainConfig = field(default_factory=ChainConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    variants: list[TournamentVariant] = field(default_factory=_default_variants)
    db_path: str = "walletwars.db"


# ============================================================================
# Parsing
# ============================================================================


def _parse_chain(data: dict) -> ChainConfig:
    d = ChainConfig()
    return ChainConfig(
        chain_id=data.get("chain_id", d.chain_id),
        rpc_url=data.get("rpc_url", d.rpc_url),
        escrow_contract=data.get("escrow_contract"),
        platform_wallet=data.get("platform_wallet"),
        call_timeout=float(data.get("call_timeout", d.call_timeout)),
        receipt_timeout=float(data.get("receipt_timeout", d.receipt_timeout)),
    )


def _parse_safety(data: dict) -> SafetyConfig:
    safety = SafetyConfig(
        max_calls_per_minute=data.get("max_calls_per_minute", 20),
    )
    for name, breaker_data in data.get("breakers", {}).items():
        if not isinstance(breaker_data, dict):
            continue
        base = safety.breakers.get(name, BreakerConfig())
        safety.breakers[name] = BreakerConfig(
            failure_threshold=breaker_data.get("failure_threshold", base.failure_threshold),
            reset_timeout=float(breaker_data.get("reset_timeout", base.reset_timeout)),
        )
    return safety


def _parse_schedule(data: dict) -> ScheduleConfig:
    d = ScheduleConfig()
    return ScheduleConfig(
        deployment_days=[day.lower() for day in data.get("deployment_days", d.deployment_days)],
        deployment_time=data.get("deployment_time", d.deployment_time),
        advance_deployment_days=data.get("advance_deployment_days", d.advance_deployment_days),
        max_tournaments_per_date=data.get("max_tournaments_per_date", d.max_tournaments_per_date),
        max_upcoming_tournaments=data.get("max_upcoming_tournaments", d.max_upcoming_tournaments),
        registration_open_days=data.get("registration_open_days", d.registration_open_days),
        registration_close_minutes=data.get("registration_close_minutes", d.registration_close_minutes),
        check_interval_seconds=data.get("check_interval_seconds", d.check_interval_seconds),
    )


def _parse_variant(data: dict) -> TournamentVariant:
    # Fees go through str() so a TOML float like 0.05 doesn't become 0.05000000000000000277
    return TournamentVariant(
        name=data["name"],
        trading_style=data.get("trading_style", "pure_wallet"),
        entry_fee=Decimal(str(data.get("entry_fee", "0.01"))),
        max_participants=data.get("max_participants", 100),
        min_participants=data.get("min_participants", 10),
        duration_days=data.get("duration_days", data.get("duration", 7)),
        prize_pool_percentage=data.get("prize_pool_percentage", 85),
        is_mega=data.get("is_mega", False),
    )


def load_config(path: Path | None = None) -> WalletWarsConfig:
    """
    Read config from TOML file.

    Args:
        path: Override config file path (default: ~/.walletwars/config.toml)

    Returns:
        WalletWarsConfig. Missing file or bad TOML returns the defaults.
    """
    config_path = path or CONFIG_PATH

    if not config_path.exists():
        return WalletWarsConfig()

    try:
        with open(config_path, "rb") as f:
            raw = tomllib.load(f)
    except Exception as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return WalletWarsConfig()

    config = WalletWarsConfig()

    if isinstance(raw.get("chain"), dict):
        config.chain = _parse_chain(raw["chain"])
    if isinstance(raw.get("safety"), dict):
        config.safety = _parse_safety(raw["safety"])
    if isinstance(raw.get("schedule"), dict):
        config.schedule = _parse_schedule(raw["schedule"])

    variants = raw.get("variants")
    if isinstance(variants, list) and variants:
        parsed = []
        for variant_data in variants:
            try:
                parsed.append(_parse_variant(variant_data))
            except (KeyError, InvalidOperation, TypeError) as e:
                logger.warning(f"Skipping malformed variant {variant_data!r}: {e}")
        if parsed:
            config.variants = parsed

    if isinstance(raw.get("db_path"), str):
        config.db_path = str(Path(raw["db_path"]).expanduser())

    return config


def validate_config(config: WalletWarsConfig) -> list[str]:
    """Return a list of problems. Empty list means the config is usable."""
    issues = []

    schedule = config.schedule
    if not schedule.deployment_days:
        issues.append("No deployment days configured")
    for day in schedule.deployment_days:
        if day not in WEEKDAYS:
            issues.append(f"Unknown deployment day: {day}")
    try:
        parse_time_of_day(schedule.deployment_time)
    except ValueError:
        issues.append(f"Bad deployment_time: {schedule.deployment_time!r}")

    names = [v.name for v in config.variants]
    if len(names) != len(set(names)):
        issues.append("Duplicate tournament variant names detected")

    for v in config.variants:
        if v.entry_fee <= 0:
            issues.append(f"{v.name}: entry fee must be greater than 0")
        if not 0 < v.platform_fee_percentage <= 20:
            issues.append(
                f"{v.name}: prize pool {v.prize_pool_percentage}% leaves a platform fee "
                f"of {v.platform_fee_percentage}% (must be 1-20%)"
            )
        if not 0 < v.max_participants <= 1000:
            issues.append(f"{v.name}: max participants must be between 1 and 1000")
        if v.min_participants > v.max_participants:
            issues.append(f"{v.name}: min participants exceeds max participants")

    if len(config.variants) > schedule.max_tournaments_per_date:
        issues.append(
            f"{len(config.variants)} variants exceed max_tournaments_per_date "
            f"({schedule.max_tournaments_per_date})"
        )

    for name in (SETTLEMENT, PERSISTENCE, ORCHESTRATION):
        if name not in config.safety.breakers:
            issues.append(f"No circuit breaker configured for {name}")

    return issues


def parse_time_of_day(value: str) -> tuple[int, int, int]:
    """'14:00:00' -> (14, 0, 0). Raises ValueError on junk."""
    parts = [int(p) for p in value.split(":")]
    while len(parts) < 3:
        parts.append(0)
    hours, minutes, seconds = parts[:3]
    if not (0 <= hours < 24 and 0 <= minutes < 60 and 0 <= seconds < 60):
        raise ValueError(value)
    return hours, minutes, seconds
