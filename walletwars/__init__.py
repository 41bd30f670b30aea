"""
WalletWars - Tournament lifecycle and escrow settlement coordinator

Runs timed wallet-trading tournaments whose entry fees and prizes settle
through an onchain escrow contract.
"""

__version__ = "0.1.0"

from .errors import (
    WalletWarsError,
    ValidationError,
    DomainError,
    NotFound,
    InsufficientBalance,
    RegistrationClosed,
    TournamentFull,
    ProgramError,
    AlreadyRegistered,
    AlreadyRefunded,
    NotRegistered,
    TransientError,
    RateLimitExceeded,
    CircuitOpenError,
    Unavailable,
    EscrowUnavailable,
    EscrowTimeout,
)

from .models import (
    TournamentStatus,
    EntryStatus,
    SettlementStatus,
    TournamentVariant,
    TournamentInstance,
    TournamentEntry,
    RefundRecord,
    PrizeDistributionRecord,
    Ranking,
    TransitionResult,
    BatchSummary,
)

from .config import WalletWarsConfig, load_config, validate_config
from .safety import CircuitBreaker, CircuitState, RateLimiter, SafetyRegistry
from .prizes import PrizeCalculator
from .escrow import EscrowClient, UnavailableEscrow, create_escrow_client, derive_addresses
from .lifecycle import LifecycleController, NullScoring, ScoringService
from .refunds import RefundProcessor
from .deployment import DeploymentTrigger

__all__ = [
    # Version
    "__version__",
    # Errors
    "WalletWarsError",
    "ValidationError",
    "DomainError",
    "NotFound",
    "InsufficientBalance",
    "RegistrationClosed",
    "TournamentFull",
    "ProgramError",
    "AlreadyRegistered",
    "AlreadyRefunded",
    "NotRegistered",
    "TransientError",
    "RateLimitExceeded",
    "CircuitOpenError",
    "Unavailable",
    "EscrowUnavailable",
    "EscrowTimeout",
    # Models
    "TournamentStatus",
    "EntryStatus",
    "SettlementStatus",
    "TournamentVariant",
    "TournamentInstance",
    "TournamentEntry",
    "RefundRecord",
    "PrizeDistributionRecord",
    "Ranking",
    "TransitionResult",
    "BatchSummary",
    # Config
    "WalletWarsConfig",
    "load_config",
    "validate_config",
    # Safety
    "CircuitBreaker",
    "CircuitState",
    "RateLimiter",
    "SafetyRegistry",
    # Settlement
    "PrizeCalculator",
    "EscrowClient",
    "UnavailableEscrow",
    "create_escrow_client",
    "derive_addresses",
    # Orchestration
    "LifecycleController",
    "NullScoring",
    "ScoringService",
    "RefundProcessor",
    "DeploymentTrigger",
]
