"""
Deterministic in-memory ledger simulator.

Behaves like an HTLC contract on a chain that mines one block per
transaction: wrong secrets, double claims, early refunds and expired claims
are rejected, partial claims are supported, and events only become visible
once they are finality_depth blocks deep. Transient failures can be injected
per operation, before the operation runs or after it landed. Ids and tx
hashes come from a seeded RNG so runs are reproducible.
"""

import copy
import random
import logging
import threading
from typing import Optional, Dict, Any, List, Callable

from ..core import HTLC, HTLCStatus, EventType, LedgerEvent, HTLC_TERMINAL_STATES, now_ts
from ..commitment import verify, normalize_hex
from ..errors import LedgerUnavailable, Rejected
from .base import LedgerReceipt, EventBatch, SecondsClock, make_clock, register_adapter

log = logging.getLogger(__name__)


class ManualClock:
    """Settable time source for simulations and tests."""

    def __init__(self, start: Optional[int] = None):
        self.now = now_ts() if start is None else start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int):
        self.now += seconds


class SimulatedLedger:
    """In-memory HTLC ledger implementing the LedgerAdapter capabilities."""

    mode = "poll"

    def __init__(self, ledger_id: str, hash_algorithm: str = "sha256",
                 finality_depth: int = 0, signer: str = "resolver", seed: int = 0,
                 time_fn: Optional[Callable[[], int]] = None,
                 supports_partial: bool = True, clock=None):
        self.ledger_id = ledger_id
        self.hash_algorithm = hash_algorithm
        self.finality_depth = finality_depth
        self.signer = signer
        self.supports_partial = supports_partial
        self.clock = clock or SecondsClock()
        self.time_fn = time_fn or now_ts

        self._rng = random.Random(seed)
        self._lock = threading.Lock()
        self._htlcs: Dict[str, HTLC] = {}
        self._log: List[Dict[str, Any]] = []
        self._height = 0
        self._failures: Dict[str, List[str]] = {}
        self._timeouts: Dict[str, List[str]] = {}

        # (operation, native_id, detail) for every accepted submission
        self.submissions: List[tuple] = []

    # -------------------------------------------------------------------------
    # Test hooks
    # -------------------------------------------------------------------------

    def fail_next(self, operation: str, count: int = 1, message: str = "simulated outage"):
        """Make the next `count` calls of operation raise LedgerUnavailable.

        operation: lock | claim | refund | get | fetch
        """
        self._failures.setdefault(operation, []).extend([message] * count)

    def timeout_after(self, operation: str, count: int = 1, message: str = "receipt timeout"):
        """Let the next `count` calls of operation land, then raise LedgerUnavailable.

        Models a submission whose receipt wait timed out. operation: lock | claim | refund
        """
        self._timeouts.setdefault(operation, []).extend([message] * count)

    def mine(self, blocks: int = 1):
        with self._lock:
            self._height += blocks

    @property
    def height(self) -> int:
        return self._height

    def submission_count(self, operation: str, native_id: Optional[str] = None) -> int:
        return sum(1 for op, nid, _ in self.submissions
                   if op == operation and (native_id is None or nid == native_id))

    def _maybe_fail(self, operation: str):
        pending = self._failures.get(operation)
        if pending:
            message = pending.pop(0)
            raise LedgerUnavailable(f"{self.ledger_id}: {message}", ledger_id=self.ledger_id)

    def _maybe_timeout(self, operation: str):
        pending = self._timeouts.get(operation)
        if pending:
            message = pending.pop(0)
            raise LedgerUnavailable(f"{self.ledger_id}: {message}", ledger_id=self.ledger_id)

    def _tx_hash(self) -> str:
        return "0x" + "%064x" % self._rng.getrandbits(256)

    def _record(self, event_type: EventType, native_id: str, **payload) -> Dict[str, Any]:
        self._height += 1
        raw = {
            "type": event_type.value,
            "native_id": native_id,
            "height": self._height,
            "tx": self._tx_hash(),
            "log_index": 0,
            "timestamp": self.time_fn(),
        }
        raw.update(payload)
        self._log.append(raw)
        return raw

    # -------------------------------------------------------------------------
    # Adapter operations
    # -------------------------------------------------------------------------

    def lock(self, receiver: str, asset: str, amount: int, hashlock: str,
             timelock_expiry: int) -> str:
        return self.lock_as(self.signer, receiver, asset, amount, hashlock, timelock_expiry)

    def lock_as(self, sender: str, receiver: str, asset: str, amount: int, hashlock: str,
                timelock_expiry: int) -> str:
        """Lock funds on behalf of an arbitrary sender (counterparty side in tests)."""
        with self._lock:
            self._maybe_fail("lock")
            if amount <= 0:
                raise Rejected(f"{self.ledger_id}: amount must be positive", ledger_id=self.ledger_id)
            if timelock_expiry <= self.time_fn():
                raise Rejected(f"{self.ledger_id}: timelock in the past", ledger_id=self.ledger_id)

            native_id = "%016x" % self._rng.getrandbits(64)
            htlc = HTLC(
                ledger_id=self.ledger_id,
                native_id=native_id,
                sender=sender,
                receiver=receiver,
                asset=asset,
                amount=amount,
                hashlock=normalize_hex(hashlock),
                hash_algorithm=self.hash_algorithm,
                timelock_expiry=self.clock.to_native(timelock_expiry),
            )
            self._htlcs[native_id] = htlc
            raw = self._record(EventType.LOCKED, native_id, htlc=htlc.to_dict())
            self.submissions.append(("lock", native_id, amount))
            log.debug(f"[{self.ledger_id}] lock {native_id} amount={amount} tx={raw['tx'][:18]}")
            self._maybe_timeout("lock")
            return native_id

    def claim(self, native_id: str, secret: str,
              partial_amount: Optional[int] = None) -> LedgerReceipt:
        with self._lock:
            self._maybe_fail("claim")
            htlc = self._htlcs.get(native_id)
            if htlc is None:
                raise Rejected(f"{self.ledger_id}: unknown HTLC {native_id}",
                               ledger_id=self.ledger_id, native_id=native_id)
            if htlc.status in HTLC_TERMINAL_STATES:
                raise Rejected(f"{self.ledger_id}: HTLC {native_id} already {htlc.status.value}",
                               ledger_id=self.ledger_id, native_id=native_id)
            if self.time_fn() >= self.clock.to_unix(htlc.timelock_expiry):
                raise Rejected(f"{self.ledger_id}: HTLC {native_id} expired",
                               ledger_id=self.ledger_id, native_id=native_id)
            if not verify(secret, htlc.hashlock, htlc.hash_algorithm):
                raise Rejected(f"{self.ledger_id}: wrong secret for {native_id}",
                               ledger_id=self.ledger_id, native_id=native_id)

            amount = htlc.locked_remaining if partial_amount is None else partial_amount
            if amount != htlc.locked_remaining and not self.supports_partial:
                raise Rejected(f"{self.ledger_id}: partial claims not supported",
                               ledger_id=self.ledger_id, native_id=native_id)
            if amount <= 0 or amount > htlc.locked_remaining:
                raise Rejected(f"{self.ledger_id}: claim amount {amount} out of range",
                               ledger_id=self.ledger_id, native_id=native_id)

            htlc.locked_remaining -= amount
            htlc.status = HTLCStatus.CLAIMED if htlc.locked_remaining == 0 else HTLCStatus.PARTIALLY_CLAIMED
            htlc.secret = normalize_hex(secret)
            raw = self._record(EventType.CLAIMED, native_id, secret=htlc.secret, amount=amount)
            self.submissions.append(("claim", native_id, amount))
            self._maybe_timeout("claim")
            return LedgerReceipt(success=True, ledger_id=self.ledger_id, native_id=native_id,
                                 tx_id=raw["tx"], amount=amount)

    def refund(self, native_id: str) -> LedgerReceipt:
        with self._lock:
            self._maybe_fail("refund")
            htlc = self._htlcs.get(native_id)
            if htlc is None:
                raise Rejected(f"{self.ledger_id}: unknown HTLC {native_id}",
                               ledger_id=self.ledger_id, native_id=native_id)
            if htlc.status in HTLC_TERMINAL_STATES:
                raise Rejected(f"{self.ledger_id}: HTLC {native_id} already {htlc.status.value}",
                               ledger_id=self.ledger_id, native_id=native_id)
            if self.time_fn() < self.clock.to_unix(htlc.timelock_expiry):
                raise Rejected(f"{self.ledger_id}: timelock not expired for {native_id}",
                               ledger_id=self.ledger_id, native_id=native_id)

            amount = htlc.locked_remaining
            htlc.status = HTLCStatus.REFUNDED
            raw = self._record(EventType.REFUNDED, native_id, amount=amount)
            self.submissions.append(("refund", native_id, amount))
            self._maybe_timeout("refund")
            return LedgerReceipt(success=True, ledger_id=self.ledger_id, native_id=native_id,
                                 tx_id=raw["tx"], amount=amount)

    def get(self, native_id: str) -> Optional[HTLC]:
        with self._lock:
            self._maybe_fail("get")
            htlc = self._htlcs.get(native_id)
            if htlc is None:
                return None
            snapshot = copy.deepcopy(htlc)
        snapshot.timelock_expiry = self.clock.to_unix(snapshot.timelock_expiry)
        if (snapshot.status in (HTLCStatus.LOCKED, HTLCStatus.PARTIALLY_CLAIMED)
                and self.time_fn() >= snapshot.timelock_expiry):
            snapshot.status = HTLCStatus.EXPIRED
        return snapshot

    def find_by_hashlock(self, hashlock: str) -> List[HTLC]:
        """All HTLCs locked against `hashlock`, oldest first."""
        hashlock = normalize_hex(hashlock)
        with self._lock:
            native_ids = [nid for nid, htlc in self._htlcs.items() if htlc.hashlock == hashlock]
        return [self.get(nid) for nid in native_ids]

    def fetch_events(self, since: int) -> EventBatch:
        with self._lock:
            self._maybe_fail("fetch")
            head = self._height - self.finality_depth
            events = [copy.deepcopy(raw) for raw in self._log if since < raw["height"] <= head]
            return EventBatch(events=events, cursor=max(since, head))

    def normalize_event(self, raw: Dict[str, Any]) -> Optional[LedgerEvent]:
        try:
            event_type = EventType(raw["type"])
        except (KeyError, ValueError):
            log.warning(f"[{self.ledger_id}] Unknown raw event: {raw}")
            return None

        event = LedgerEvent(
            ledger_id=self.ledger_id,
            native_id=raw["native_id"],
            event_type=event_type,
            event_id=f"{raw['tx']}:{raw['log_index']}",
            cursor=raw["height"],
            secret=raw.get("secret"),
            amount=raw.get("amount"),
            timestamp=raw.get("timestamp", 0),
        )
        if event_type == EventType.LOCKED:
            htlc = HTLC.from_dict(raw["htlc"])
            htlc.timelock_expiry = self.clock.to_unix(htlc.timelock_expiry)
            htlc.confirmed = True
            event.htlc = htlc
            event.amount = htlc.amount
        return event


def _from_config(config) -> SimulatedLedger:
    return SimulatedLedger(
        config.ledger_id,
        hash_algorithm=config.hash_algorithm,
        finality_depth=config.finality_depth,
        signer=config.resolver_address or "resolver",
        seed=config.seed,
        supports_partial=config.supports_partial,
        clock=make_clock(config),
    )


register_adapter("simulated", _from_config)
