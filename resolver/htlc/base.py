"""
Ledger adapter capability interface.

Every supported ledger exposes the same small set of HTLC operations plus a
cursor-based event fetch. Implementations are picked at startup from
LedgerConfig.kind (see build_adapter), not by inheritance.
"""

import math
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Callable, Protocol, runtime_checkable

from ..core import HTLC, LedgerEvent

log = logging.getLogger(__name__)


@dataclass
class LedgerReceipt:
    """Result of a lock/claim/refund submission."""
    success: bool
    ledger_id: str
    native_id: Optional[str] = None
    tx_id: Optional[str] = None
    amount: Optional[int] = None
    error: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EventBatch:
    """Finalized raw events after a cursor, plus the cursor to resume from."""
    events: List[Any]
    cursor: int


# =============================================================================
# Clock normalization (native timelock <-> Unix seconds)
# =============================================================================

class SecondsClock:
    """Native timelocks are already Unix seconds."""
    name = "seconds"

    def to_unix(self, native: int) -> int:
        return int(native)

    def to_native(self, unix_ts: int) -> int:
        return int(unix_ts)


class MillisecondsClock:
    """Native timelocks are Unix milliseconds."""
    name = "milliseconds"

    def to_unix(self, native: int) -> int:
        return int(native) // 1000

    def to_native(self, unix_ts: int) -> int:
        return int(unix_ts) * 1000


class BlockHeightClock:
    """Native timelocks are absolute block heights.

    Estimated from the current height and an average block time. to_native
    rounds down so the on-ledger deadline is never later than requested.
    """
    name = "blocks"

    def __init__(self, block_time: int, height_fn: Callable[[], int],
                 time_fn: Optional[Callable[[], int]] = None):
        self.block_time = block_time
        self.height_fn = height_fn
        if time_fn is None:
            from ..core import now_ts
            time_fn = now_ts
        self.time_fn = time_fn

    def to_unix(self, native: int) -> int:
        return self.time_fn() + (int(native) - self.height_fn()) * self.block_time

    def to_native(self, unix_ts: int) -> int:
        delta = int(unix_ts) - self.time_fn()
        return self.height_fn() + math.floor(delta / self.block_time)


# =============================================================================
# Adapter interface
# =============================================================================

@runtime_checkable
class LedgerAdapter(Protocol):
    """Capability set every ledger adapter provides.

    Failure semantics: calls raise LedgerUnavailable (transient, retryable)
    or Rejected (deterministic, not retried).
    """
    ledger_id: str
    hash_algorithm: str
    finality_depth: int
    mode: str           # "poll" or "push"
    signer: str         # submission identity (address / account)
    clock: Any

    def lock(self, receiver: str, asset: str, amount: int, hashlock: str,
             timelock_expiry: int) -> str: ...

    def claim(self, native_id: str, secret: str,
              partial_amount: Optional[int] = None) -> LedgerReceipt: ...

    def refund(self, native_id: str) -> LedgerReceipt: ...

    def get(self, native_id: str) -> Optional[HTLC]: ...

    def fetch_events(self, since: int) -> EventBatch: ...

    def normalize_event(self, raw: Any) -> Optional[LedgerEvent]: ...


# =============================================================================
# Factory
# =============================================================================

_ADAPTER_FACTORIES: Dict[str, Callable] = {}


def register_adapter(kind: str, factory: Callable):
    """Register a factory(LedgerConfig) -> LedgerAdapter for a ledger kind."""
    _ADAPTER_FACTORIES[kind] = factory


def build_adapter(config) -> LedgerAdapter:
    """Build the adapter for a LedgerConfig."""
    # Importing the variants registers them
    from . import evm, rpc, simulated  # noqa: F401

    factory = _ADAPTER_FACTORIES.get(config.kind)
    if factory is None:
        raise ValueError(f"Unknown ledger kind '{config.kind}' for {config.ledger_id}")
    adapter = factory(config)
    log.info(f"Ledger adapter ready: {config.ledger_id} ({config.kind}, "
             f"hash={adapter.hash_algorithm}, finality={adapter.finality_depth})")
    return adapter


def make_clock(config, height_fn: Optional[Callable[[], int]] = None):
    """Clock for a ledger config. Block clocks need a height function."""
    if config.clock == "milliseconds":
        return MillisecondsClock()
    if config.clock == "blocks":
        if height_fn is None:
            raise ValueError(f"{config.ledger_id}: block clock needs a height source")
        return BlockHeightClock(config.block_time, height_fn)
    return SecondsClock()
