"""
Swap orchestration.

- monitor: per-ledger event monitors
- coordinator: order state machine and secret relay
- relay: action locks, submission sequencing, retry
"""

from .coordinator import SwapCoordinator, OrderRequest
from .monitor import EventMonitor, MonitorConfig
from .relay import ActionLocks, SubmissionSequencer, call_with_retry

__all__ = [
    "SwapCoordinator", "OrderRequest",
    "EventMonitor", "MonitorConfig",
    "ActionLocks", "SubmissionSequencer", "call_with_retry",
]
