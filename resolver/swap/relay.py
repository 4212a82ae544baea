"""
Relay plumbing: per-order action locks, per-signer submission sequencing,
and bounded retry for transient ledger failures.
"""

import time
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Tuple, Callable, Any, Optional

from ..errors import TransientLedgerError

log = logging.getLogger(__name__)

# Action names, one in-flight action per (order_id, action)
LOCK_DESTINATION = "lock_destination"
CLAIM_SOURCE = "claim_source"
CLAIM_DESTINATION = "claim_destination"
REFUND_SOURCE = "refund_source"
REFUND_DESTINATION = "refund_destination"


class ActionLocks:
    """
    At most one in-flight claim/refund/lock per (order_id, action).

    Backed by the shared KV (SET NX with a TTL) so several coordinator
    processes do not double-submit; the TTL frees locks left by a crash.
    """

    def __init__(self, kv, ttl: int = 600, owner: str = "resolver"):
        self.kv = kv
        self.ttl = ttl
        self.owner = owner

    @staticmethod
    def _key(order_id: str, action: str) -> str:
        return f"action:{order_id}:{action}"

    def acquire(self, order_id: str, action: str) -> bool:
        return self.kv.set_if_absent(self._key(order_id, action), self.owner, self.ttl)

    def release(self, order_id: str, action: str):
        self.kv.delete(self._key(order_id, action))

    def held(self, order_id: str, action: str) -> bool:
        return self.kv.get(self._key(order_id, action)) is not None

    @contextmanager
    def hold(self, order_id: str, action: str):
        """Yields True if this caller owns the action, False if it is already in flight."""
        acquired = self.acquire(order_id, action)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(order_id, action)


class SubmissionSequencer:
    """One submission at a time per (ledger_id, signer) to avoid nonce collisions."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}

    def _lock_for(self, ledger_id: str, signer: str) -> threading.Lock:
        with self._guard:
            key = (ledger_id, signer or "")
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    @contextmanager
    def slot(self, ledger_id: str, signer: str):
        with self._lock_for(ledger_id, signer):
            yield


def call_with_retry(fn: Callable[[], Any], attempts: int = 5, backoff_initial: float = 1.0,
                    backoff_max: float = 60.0, what: str = "ledger call",
                    sleep: Optional[Callable[[float], None]] = None) -> Any:
    """
    Call fn, retrying TransientLedgerError with capped exponential backoff.

    Deterministic errors propagate immediately. After `attempts` transient
    failures the last one is re-raised.
    """
    sleep = sleep or time.sleep
    delay = backoff_initial
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except TransientLedgerError as e:
            if attempt >= attempts:
                log.warning(f"{what}: giving up after {attempt} attempts: {e}")
                raise
            log.warning(f"{what}: transient failure ({attempt}/{attempts}), retry in {delay:.1f}s: {e}")
            sleep(delay)
            delay = min(delay * 2, backoff_max)
