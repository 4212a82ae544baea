"""
Resolver configuration.

Defaults live on the dataclasses; from_env() overrides them from environment
variables. Ledgers are described in a JSON file (LEDGERS_CONFIG) as a list of
LedgerConfig objects.
"""

import os
import json
import logging
from dataclasses import dataclass, field, fields
from typing import Optional, Dict, Any, List

from .core import (
    DEFAULT_SAFETY_MARGIN_SECONDS, DEFAULT_DEPOSIT_MULTIPLIER,
    MAX_ORDER_LIFETIME_SECONDS, ORDER_RETENTION_SECONDS, DEFAULT_HASH_ALGORITHM,
)

log = logging.getLogger(__name__)


@dataclass
class LedgerConfig:
    """One ledger the resolver is connected to."""
    ledger_id: str
    kind: str = "simulated"             # evm | rpc | simulated
    rpc_url: str = ""
    contract_address: str = ""
    chain_id: Optional[int] = None
    private_key_env: str = ""           # name of env var holding the signing key
    resolver_address: str = ""
    hash_algorithm: str = DEFAULT_HASH_ALGORITHM
    finality_depth: int = 1
    mode: str = "poll"                  # poll | push (evm log filters)
    poll_interval: float = 5.0          # seconds
    block_time: int = 600               # seconds per block (block-height clocks)
    clock: str = "seconds"              # seconds | milliseconds | blocks
    request_timeout: float = 30.0
    receipt_timeout: int = 120
    supports_partial: bool = True
    rpc_user: str = ""
    rpc_password: str = ""
    seed: int = 0                       # simulated ledgers only

    @property
    def private_key(self) -> Optional[str]:
        if not self.private_key_env:
            return None
        return os.environ.get(self.private_key_env)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            log.warning(f"Ignoring unknown ledger config keys for {data.get('ledger_id')}: {sorted(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_public_dict(self) -> Dict[str, Any]:
        """Safe to expose over the API (no credentials)."""
        return {
            "ledger_id": self.ledger_id,
            "kind": self.kind,
            "hash_algorithm": self.hash_algorithm,
            "finality_depth": self.finality_depth,
            "clock": self.clock,
            "supports_partial": self.supports_partial,
            "resolver_address": self.resolver_address,
        }


@dataclass
class ResolverConfig:
    """Coordinator-wide settings."""
    safety_margin: int = DEFAULT_SAFETY_MARGIN_SECONDS
    deposit_multiplier: float = DEFAULT_DEPOSIT_MULTIPLIER
    max_order_lifetime: int = MAX_ORDER_LIFETIME_SECONDS
    order_retention: int = ORDER_RETENTION_SECONDS
    sweep_interval: int = 60            # seconds between expiry sweeps
    relay_max_attempts: int = 5
    relay_backoff_initial: float = 1.0
    relay_backoff_max: float = 60.0
    cas_retries: int = 8
    workers: int = 4                    # relay thread pool size, 0 = inline
    redis_url: str = ""                 # empty = in-memory store
    store_path: str = ""                # JSON snapshot for the in-memory store
    port: int = 8080
    log_level: str = "INFO"
    ledgers: List[LedgerConfig] = field(default_factory=list)

    def ledger(self, ledger_id: str) -> Optional[LedgerConfig]:
        for cfg in self.ledgers:
            if cfg.ledger_id == ledger_id:
                return cfg
        return None

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None) -> "ResolverConfig":
        env = os.environ if env is None else env
        cfg = cls(
            safety_margin=int(env.get("RESOLVER_SAFETY_MARGIN", DEFAULT_SAFETY_MARGIN_SECONDS)),
            deposit_multiplier=float(env.get("SAFETY_DEPOSIT_MULTIPLIER", DEFAULT_DEPOSIT_MULTIPLIER)),
            max_order_lifetime=int(env.get("RESOLVER_MAX_ORDER_LIFETIME", MAX_ORDER_LIFETIME_SECONDS)),
            order_retention=int(env.get("RESOLVER_ORDER_RETENTION", ORDER_RETENTION_SECONDS)),
            sweep_interval=int(env.get("RESOLVER_SWEEP_INTERVAL", 60)),
            relay_max_attempts=int(env.get("RESOLVER_RELAY_MAX_ATTEMPTS", 5)),
            relay_backoff_initial=float(env.get("RESOLVER_RELAY_BACKOFF_INITIAL", 1.0)),
            relay_backoff_max=float(env.get("RESOLVER_RELAY_BACKOFF_MAX", 60.0)),
            cas_retries=int(env.get("RESOLVER_CAS_RETRIES", 8)),
            workers=int(env.get("RESOLVER_WORKERS", 4)),
            redis_url=env.get("REDIS_URL", ""),
            store_path=env.get("RESOLVER_STORE_PATH", ""),
            port=int(env.get("PORT", 8080)),
            log_level=env.get("LOG_LEVEL", "INFO"),
        )
        path = env.get("LEDGERS_CONFIG", "")
        if path:
            cfg.ledgers = load_ledgers(path)
        return cfg


def load_ledgers(path: str) -> List[LedgerConfig]:
    """Load ledger definitions from a JSON file (list or {"ledgers": [...]})."""
    with open(path) as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("ledgers", [])
    ledgers = [LedgerConfig.from_dict(item) for item in data]
    log.info(f"Loaded {len(ledgers)} ledger configs from {path}")
    return ledgers
