"""
htlc-resolver - Cross-chain HTLC swap coordinator

Watches two ledgers for HTLC activity, locks the resolver's side of a swap
once the counterparty has locked, and relays the revealed secret so both
sides settle (or both refund).

Usage:
    from resolver import ResolverConfig, ResolverService, OrderRequest

    service = ResolverService(ResolverConfig.from_env())
    service.deposits.deposit("base", USDC, 5_000_000)
    service.coordinator.create_order(OrderRequest(...))
    service.start()
"""

from .core import (
    HTLC,
    HTLCStatus,
    Order,
    OrderStatus,
    EventType,
    LedgerEvent,
    validate_timelock_asymmetry,
    DEFAULT_SAFETY_MARGIN_SECONDS,
    DEFAULT_DEPOSIT_MULTIPLIER,
)
from .commitment import commit, commit_all, verify, generate_secret, register as register_algorithm
from .config import ResolverConfig, LedgerConfig
from .deposits import SafetyDepositLedger, DepositAccount, DepositLock
from .errors import (
    ResolverError,
    TransientLedgerError,
    LedgerUnavailable,
    DeterministicRejection,
    Rejected,
    PolicyViolation,
    UnsafeTimelockSkew,
    InvalidPartialAmount,
    InsufficientDeposit,
    InvariantBroken,
    UnsupportedAlgorithm,
    OrderNotFound,
    InvalidTransition,
)
from .store import OrderStore, MemoryKV, RedisKV
from .swap.coordinator import SwapCoordinator, OrderRequest
from .swap.monitor import EventMonitor, MonitorConfig
from .service import ResolverService

__version__ = "0.1.0"
__all__ = [
    # Core types
    "HTLC",
    "HTLCStatus",
    "Order",
    "OrderStatus",
    "EventType",
    "LedgerEvent",
    "validate_timelock_asymmetry",
    "DEFAULT_SAFETY_MARGIN_SECONDS",
    "DEFAULT_DEPOSIT_MULTIPLIER",
    # Commitments
    "commit",
    "commit_all",
    "verify",
    "generate_secret",
    "register_algorithm",
    # Config
    "ResolverConfig",
    "LedgerConfig",
    # Deposits
    "SafetyDepositLedger",
    "DepositAccount",
    "DepositLock",
    # Errors
    "ResolverError",
    "TransientLedgerError",
    "LedgerUnavailable",
    "DeterministicRejection",
    "Rejected",
    "PolicyViolation",
    "UnsafeTimelockSkew",
    "InvalidPartialAmount",
    "InsufficientDeposit",
    "InvariantBroken",
    "UnsupportedAlgorithm",
    "OrderNotFound",
    "InvalidTransition",
    # Store
    "OrderStore",
    "MemoryKV",
    "RedisKV",
    # Swap
    "SwapCoordinator",
    "OrderRequest",
    "EventMonitor",
    "MonitorConfig",
    "ResolverService",
]
