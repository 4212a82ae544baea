"""
Resolver service: wires config, store, deposits, adapters, coordinator and
monitors together, and runs the periodic expiry sweep / reconciliation.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Any, Optional, List

from .config import ResolverConfig
from .deposits import SafetyDepositLedger
from .htlc.base import build_adapter
from .store import OrderStore, build_kv
from .swap.coordinator import SwapCoordinator
from .swap.monitor import EventMonitor, MonitorConfig

log = logging.getLogger(__name__)


class ResolverService:
    """
    Everything the resolver runs, built from one ResolverConfig.

    Pass `kv` / `adapters` to override what the config would build (tests,
    local simulations).
    """

    def __init__(self, config: ResolverConfig, kv=None,
                 adapters: Optional[Dict[str, Any]] = None, executor=None):
        self.config = config
        self.kv = kv if kv is not None else build_kv(config.redis_url, config.store_path)
        self.store = OrderStore(self.kv, retention=config.order_retention,
                                cas_retries=config.cas_retries)
        self.deposits = SafetyDepositLedger(self.kv, multiplier=config.deposit_multiplier,
                                            retention=config.order_retention)
        if adapters is None:
            adapters = {cfg.ledger_id: build_adapter(cfg) for cfg in config.ledgers}
        self.adapters = adapters

        if executor is None and config.workers > 0:
            executor = ThreadPoolExecutor(max_workers=config.workers, thread_name_prefix="relay")
        self.executor = executor

        self.coordinator = SwapCoordinator(self.store, self.deposits, self.adapters,
                                           config=config, executor=executor)
        self.monitors: List[EventMonitor] = []
        for ledger_id, adapter in self.adapters.items():
            ledger_cfg = config.ledger(ledger_id)
            poll_interval = ledger_cfg.poll_interval if ledger_cfg else MonitorConfig.poll_interval
            self.monitors.append(EventMonitor(adapter, self.coordinator.handle_event, self.kv,
                                              MonitorConfig(poll_interval=poll_interval)))

        self._running = False
        self._stop = threading.Event()
        self.started_at: Optional[float] = None
        self._maintenance_thread: Optional[threading.Thread] = None

    def start(self):
        """Start monitors and the maintenance loop."""
        if self._running:
            return
        self._running = True
        self._stop.clear()
        self.started_at = time.time()
        for monitor in self.monitors:
            monitor.start()
        self._maintenance_thread = threading.Thread(target=self._maintenance_loop, daemon=True,
                                                    name="maintenance")
        self._maintenance_thread.start()
        log.info(f"Resolver started: {len(self.adapters)} ledger(s), "
                 f"safety_margin={self.config.safety_margin}s, "
                 f"deposit_multiplier={self.config.deposit_multiplier}")

    def stop(self):
        self._running = False
        self._stop.set()
        for monitor in self.monitors:
            monitor.stop()
        if self._maintenance_thread:
            self._maintenance_thread.join(timeout=5)
        if self.executor is not None:
            self.executor.shutdown(wait=False)
        log.info("Resolver stopped")

    def run_maintenance(self):
        """One sweep + reconcile pass."""
        try:
            self.coordinator.sweep()
        except Exception as e:
            log.error(f"Expiry sweep error: {e}")
        try:
            self.coordinator.reconcile()
        except Exception as e:
            log.error(f"Reconcile error: {e}")

    def _maintenance_loop(self):
        while self._running:
            self.run_maintenance()
            self._stop.wait(self.config.sweep_interval)

    def status(self) -> Dict[str, Any]:
        uptime = int(time.time() - self.started_at) if self.started_at else 0
        return {
            "running": self._running,
            "uptime_seconds": uptime,
            "ledgers": list(self.adapters),
            "monitors": [m.stats() for m in self.monitors],
        }

    def chains(self) -> List[Dict[str, Any]]:
        """Configured ledgers, as the API exposes them."""
        chains = []
        for ledger_id, adapter in self.adapters.items():
            ledger_cfg = self.config.ledger(ledger_id)
            if ledger_cfg is not None:
                info = ledger_cfg.to_public_dict()
            else:
                info = {"ledger_id": ledger_id, "kind": "custom",
                        "hash_algorithm": adapter.hash_algorithm,
                        "finality_depth": adapter.finality_depth}
            info["mode"] = adapter.mode
            info["signer"] = adapter.signer
            chains.append(info)
        return chains
