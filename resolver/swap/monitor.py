"""
Per-ledger event monitor.

Turns an adapter's native activity into normalized LedgerEvents for the
coordinator:
- fetch finalized events after the persisted checkpoint
- normalize, drop already-seen events (idempotency key)
- forward to the sink, then mark seen
- advance and persist the checkpoint only after the whole batch went through

Delivery is at-least-once; the coordinator is the idempotent consumer.
Transient fetch failures back off (capped exponential) without moving the
checkpoint, so nothing is lost across restarts.

Push-mode adapters (subscribe / unsubscribe) are subscribed from the
checkpoint when the watch thread starts and drained every push_interval;
their cursor is derived from the last released event.
"""

import time
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Dict, Any

from ..core import LedgerEvent
from ..errors import TransientLedgerError

log = logging.getLogger(__name__)


@dataclass
class MonitorConfig:
    """Monitor configuration."""
    poll_interval: float = 5.0      # seconds between polls (poll-mode ledgers)
    push_interval: float = 0.5      # seconds between drains (push-mode ledgers)
    backoff_initial: float = 1.0
    backoff_max: float = 60.0
    dedup_ttl: int = 7 * 86400      # how long seen-event keys are kept


class EventMonitor:
    """
    Background monitor for one ledger adapter.

    Usage:
        monitor = EventMonitor(adapter, coordinator.handle_event, kv)
        monitor.start()
        ...
        monitor.stop()
    """

    def __init__(self, adapter, sink: Callable[[LedgerEvent], Any], kv,
                 config: MonitorConfig = None, start_cursor: int = 0):
        self.adapter = adapter
        self.sink = sink
        self.kv = kv
        self.config = config or MonitorConfig()
        self.start_cursor = start_cursor

        # Stats
        self.forwarded = 0
        self.duplicates = 0
        self.consecutive_failures = 0
        self.last_error: Optional[str] = None
        self.last_poll: Optional[float] = None

        self._running = False
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def ledger_id(self) -> str:
        return self.adapter.ledger_id

    @property
    def _checkpoint_key(self) -> str:
        return f"checkpoint:{self.ledger_id}"

    @property
    def checkpoint(self) -> int:
        raw = self.kv.get(self._checkpoint_key)
        return int(raw) if raw is not None else self.start_cursor

    def _save_checkpoint(self, cursor: int):
        self.kv.set(self._checkpoint_key, str(cursor))

    # -------------------------------------------------------------------------
    # Poll cycle
    # -------------------------------------------------------------------------

    def poll_once(self) -> int:
        """
        Run one fetch/forward cycle.

        Returns:
            Number of events forwarded

        Raises:
            TransientLedgerError: fetch failed, checkpoint unchanged
            Exception: the sink failed; the checkpoint is parked just before
                the failing event so it is redelivered next cycle
        """
        since = self.checkpoint
        batch = self.adapter.fetch_events(since)
        self.last_poll = time.time()
        forwarded = 0

        for raw in batch.events:
            event = self.adapter.normalize_event(raw)
            if event is None:
                continue

            seen_key = f"seen:{event.idempotency_key}"
            if self.kv.get(seen_key) is not None:
                self.duplicates += 1
                continue

            try:
                self.sink(event)
            except Exception:
                parked = max(since, event.cursor - 1)
                self._save_checkpoint(parked)
                log.warning(f"[{self.ledger_id}] Forwarding {event.event_type.value} "
                            f"{event.native_id} failed, checkpoint parked at {parked}")
                raise

            self.kv.set(seen_key, "1", self.config.dedup_ttl)
            forwarded += 1
            self.forwarded += 1

        if batch.cursor > since:
            self._save_checkpoint(batch.cursor)
        if forwarded:
            log.info(f"[{self.ledger_id}] Forwarded {forwarded} event(s), checkpoint={batch.cursor}")
        return forwarded

    def _backoff_delay(self) -> float:
        delay = self.config.backoff_initial * (2 ** max(0, self.consecutive_failures - 1))
        return min(delay, self.config.backoff_max)

    # -------------------------------------------------------------------------
    # Thread
    # -------------------------------------------------------------------------

    def start(self):
        """Start monitor in background thread."""
        if self._running:
            return

        self._running = True
        self._stop.clear()
        self._thread = threading.Thread(target=self._watch_loop, daemon=True,
                                        name=f"monitor-{self.ledger_id}")
        self._thread.start()
        log.info(f"Event monitor started for {self.ledger_id} "
                 f"(mode={getattr(self.adapter, 'mode', 'poll')}, checkpoint={self.checkpoint})")

    def stop(self):
        """Stop monitor."""
        self._running = False
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
        unsubscribe = getattr(self.adapter, "unsubscribe", None)
        if unsubscribe is not None:
            unsubscribe()
        log.info(f"Event monitor stopped for {self.ledger_id}")

    def _watch_loop(self):
        """Main watch loop."""
        push = getattr(self.adapter, "mode", "poll") == "push"
        interval = self.config.push_interval if push else self.config.poll_interval

        if push:
            try:
                self.adapter.subscribe(self.checkpoint)
            except TransientLedgerError as e:
                # fetch_events subscribes on its own once the ledger is back
                log.warning(f"[{self.ledger_id}] Subscribe failed: {e}")

        while self._running:
            try:
                self.poll_once()
                self.consecutive_failures = 0
                self.last_error = None
                delay = interval
            except TransientLedgerError as e:
                self.consecutive_failures += 1
                self.last_error = str(e)
                delay = self._backoff_delay()
                log.warning(f"[{self.ledger_id}] Fetch failed ({self.consecutive_failures}x), "
                            f"backing off {delay:.1f}s: {e}")
            except Exception as e:
                self.consecutive_failures += 1
                self.last_error = str(e)
                delay = self._backoff_delay()
                log.error(f"[{self.ledger_id}] Monitor error: {e}")

            self._stop.wait(delay)

    def stats(self) -> Dict[str, Any]:
        return {
            "ledger_id": self.ledger_id,
            "running": self._running,
            "checkpoint": self.checkpoint,
            "forwarded": self.forwarded,
            "duplicates": self.duplicates,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "last_poll": self.last_poll,
        }
