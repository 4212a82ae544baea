"""
Ledger adapters.

- base: capability interface, clocks, adapter factory
- evm: web3 HTLC contract adapter
- rpc: JSON-RPC node adapter (native HTLC RPCs)
- simulated: deterministic in-memory ledger
"""

from .base import (
    LedgerAdapter, LedgerReceipt, EventBatch,
    SecondsClock, MillisecondsClock, BlockHeightClock,
    build_adapter, register_adapter,
)
from .simulated import SimulatedLedger, ManualClock

__all__ = [
    "LedgerAdapter", "LedgerReceipt", "EventBatch",
    "SecondsClock", "MillisecondsClock", "BlockHeightClock",
    "build_adapter", "register_adapter",
    "SimulatedLedger", "ManualClock",
]
