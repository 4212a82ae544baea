#!/usr/bin/env python3
"""
Event monitor tests

1. Checkpointed forwarding, finality depth
2. De-duplication after a checkpoint rewind
3. Sink failure parks the checkpoint (at-least-once)
4. Transient fetch failure leaves the checkpoint alone
5. Backoff schedule and background thread
"""

import sys
import os
import threading
import unittest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from resolver.commitment import commit, generate_secret
from resolver.core import EventType
from resolver.errors import LedgerUnavailable
from resolver.htlc.simulated import SimulatedLedger, ManualClock
from resolver.store import MemoryKV
from resolver.swap.monitor import EventMonitor, MonitorConfig

T0 = 1_700_000_000


class MonitorTestCase(unittest.TestCase):

    def setUp(self):
        self.clock = ManualClock(T0)
        self.kv = MemoryKV(time_fn=self.clock)
        self.ledger = SimulatedLedger("src", time_fn=self.clock)
        self.received = []
        self.monitor = EventMonitor(self.ledger, self.received.append, self.kv)

        self.secret = generate_secret()
        self.hashlock = commit(self.secret, "sha256")

    def lock(self, amount=1_000_000):
        return self.ledger.lock_as("bob", "resolver", "BTC", amount, self.hashlock, T0 + 7200)


class TestForwarding(MonitorTestCase):

    def test_forwards_and_checkpoints(self):
        native_id = self.lock()
        self.assertEqual(self.monitor.poll_once(), 1)
        self.assertEqual(self.received[0].event_type, EventType.LOCKED)
        self.assertEqual(self.received[0].native_id, native_id)
        self.assertEqual(self.received[0].htlc.amount, 1_000_000)
        self.assertEqual(self.monitor.checkpoint, 1)

        self.assertEqual(self.monitor.poll_once(), 0)
        self.assertEqual(len(self.received), 1)

    def test_partial_claims_each_forwarded(self):
        native_id = self.lock()
        self.ledger.claim(native_id, self.secret.hex(), 300_000)
        self.ledger.claim(native_id, self.secret.hex(), 700_000)
        self.assertEqual(self.monitor.poll_once(), 3)
        claims = [e for e in self.received if e.event_type == EventType.CLAIMED]
        self.assertEqual([c.amount for c in claims], [300_000, 700_000])
        self.assertEqual(claims[0].secret, self.secret.hex())

    def test_waits_for_finality(self):
        ledger = SimulatedLedger("slow", finality_depth=2, time_fn=self.clock)
        monitor = EventMonitor(ledger, self.received.append, self.kv)
        ledger.lock_as("bob", "resolver", "BTC", 10, self.hashlock, T0 + 7200)

        self.assertEqual(monitor.poll_once(), 0)
        ledger.mine(1)
        self.assertEqual(monitor.poll_once(), 0)
        ledger.mine(1)
        self.assertEqual(monitor.poll_once(), 1)

    def test_checkpoint_survives_restart(self):
        self.lock()
        self.monitor.poll_once()
        restarted = EventMonitor(self.ledger, self.received.append, self.kv)
        self.assertEqual(restarted.checkpoint, 1)
        self.assertEqual(restarted.poll_once(), 0)


class TestDeduplication(MonitorTestCase):

    def test_rewound_checkpoint_does_not_redeliver(self):
        self.lock()
        self.lock()
        self.monitor.poll_once()
        self.kv.set("checkpoint:src", "0")

        self.assertEqual(self.monitor.poll_once(), 0)
        self.assertEqual(self.monitor.duplicates, 2)
        self.assertEqual(len(self.received), 2)


class TestFailureHandling(MonitorTestCase):

    def test_sink_failure_parks_checkpoint(self):
        self.lock()
        self.lock()
        calls = []

        def flaky_sink(event):
            calls.append(event)
            if len(calls) == 2:
                raise RuntimeError("store down")

        monitor = EventMonitor(self.ledger, flaky_sink, self.kv)
        with self.assertRaises(RuntimeError):
            monitor.poll_once()
        # Parked just before the failing event (height 2)
        self.assertEqual(monitor.checkpoint, 1)

        self.assertEqual(monitor.poll_once(), 1)
        self.assertEqual(len(calls), 3)
        self.assertEqual(calls[2].native_id, calls[1].native_id)
        self.assertEqual(monitor.checkpoint, 2)

    def test_transient_fetch_failure(self):
        self.lock()
        self.ledger.fail_next("fetch")
        with self.assertRaises(LedgerUnavailable):
            self.monitor.poll_once()
        self.assertEqual(self.monitor.checkpoint, 0)
        self.assertEqual(self.received, [])

        self.assertEqual(self.monitor.poll_once(), 1)

    def test_backoff_is_capped(self):
        monitor = EventMonitor(self.ledger, self.received.append, self.kv,
                               MonitorConfig(backoff_initial=1.0, backoff_max=60.0))
        monitor.consecutive_failures = 1
        self.assertEqual(monitor._backoff_delay(), 1.0)
        monitor.consecutive_failures = 3
        self.assertEqual(monitor._backoff_delay(), 4.0)
        monitor.consecutive_failures = 12
        self.assertEqual(monitor._backoff_delay(), 60.0)


class TestBackgroundThread(MonitorTestCase):

    def test_thread_delivers_events(self):
        delivered = threading.Event()

        def sink(event):
            self.received.append(event)
            delivered.set()

        monitor = EventMonitor(self.ledger, sink, self.kv, MonitorConfig(poll_interval=0.01))
        self.lock()
        monitor.start()
        try:
            self.assertTrue(delivered.wait(timeout=5))
        finally:
            monitor.stop()
        self.assertFalse(monitor.stats()["running"])
        self.assertEqual(monitor.stats()["forwarded"], 1)


if __name__ == "__main__":
    unittest.main(verbosity=2)
