#!/usr/bin/env python3
"""
Configuration tests

1. ResolverConfig.from_env() defaults and overrides
2. Ledger definitions loaded from JSON (including the event mode)
"""

import sys
import os
import json
import tempfile
import unittest
from unittest.mock import patch

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from resolver.config import LedgerConfig, ResolverConfig, load_ledgers
from resolver.core import DEFAULT_SAFETY_MARGIN_SECONDS


class TestResolverConfig(unittest.TestCase):

    def test_defaults(self):
        cfg = ResolverConfig.from_env({})
        self.assertEqual(cfg.safety_margin, DEFAULT_SAFETY_MARGIN_SECONDS)
        self.assertEqual(cfg.deposit_multiplier, 1.5)
        self.assertEqual(cfg.redis_url, "")
        self.assertEqual(cfg.ledgers, [])

    def test_env_overrides(self):
        cfg = ResolverConfig.from_env({
            "RESOLVER_SAFETY_MARGIN": "3600",
            "SAFETY_DEPOSIT_MULTIPLIER": "2.0",
            "RESOLVER_WORKERS": "0",
            "REDIS_URL": "redis://localhost:6379/0",
            "PORT": "9000",
        })
        self.assertEqual(cfg.safety_margin, 3600)
        self.assertEqual(cfg.deposit_multiplier, 2.0)
        self.assertEqual(cfg.workers, 0)
        self.assertEqual(cfg.redis_url, "redis://localhost:6379/0")
        self.assertEqual(cfg.port, 9000)

    def test_relay_backoff_from_env(self):
        cfg = ResolverConfig.from_env({})
        self.assertEqual((cfg.relay_backoff_initial, cfg.relay_backoff_max), (1.0, 60.0))

        cfg = ResolverConfig.from_env({
            "RESOLVER_RELAY_BACKOFF_INITIAL": "0.25",
            "RESOLVER_RELAY_BACKOFF_MAX": "8",
        })
        self.assertEqual(cfg.relay_backoff_initial, 0.25)
        self.assertEqual(cfg.relay_backoff_max, 8.0)


class TestLedgerConfig(unittest.TestCase):

    def write_json(self, data) -> str:
        handle = tempfile.NamedTemporaryFile("w", suffix=".json", delete=False)
        with handle:
            json.dump(data, handle)
        self.addCleanup(os.unlink, handle.name)
        return handle.name

    def test_load_list_and_wrapped_forms(self):
        ledgers = [
            {"ledger_id": "btc", "kind": "rpc", "rpc_url": "http://node:8332", "block_time": 600},
            {"ledger_id": "base", "kind": "evm", "hash_algorithm": "keccak256",
             "contract_address": "0x" + "aa" * 20, "chain_id": 84532, "finality_depth": 3},
        ]
        for data in (ledgers, {"ledgers": ledgers}):
            loaded = load_ledgers(self.write_json(data))
            self.assertEqual([c.ledger_id for c in loaded], ["btc", "base"])
            self.assertEqual(loaded[1].chain_id, 84532)
            self.assertEqual(loaded[1].finality_depth, 3)

    def test_ledger_mode(self):
        loaded = load_ledgers(self.write_json([
            {"ledger_id": "base", "kind": "evm", "mode": "push"},
            {"ledger_id": "btc", "kind": "rpc"},
        ]))
        self.assertEqual([c.mode for c in loaded], ["push", "poll"])

    def test_from_env_reads_ledger_file(self):
        path = self.write_json([{"ledger_id": "sim", "seed": 7}])
        cfg = ResolverConfig.from_env({"LEDGERS_CONFIG": path})
        self.assertEqual(cfg.ledger("sim").seed, 7)
        self.assertIsNone(cfg.ledger("other"))

    def test_unknown_keys_ignored(self):
        cfg = LedgerConfig.from_dict({"ledger_id": "x", "colour": "blue"})
        self.assertEqual(cfg.ledger_id, "x")
        self.assertFalse(hasattr(cfg, "colour"))

    def test_private_key_from_env_only(self):
        cfg = LedgerConfig("base", kind="evm", private_key_env="BASE_KEY")
        with patch.dict(os.environ, {"BASE_KEY": "11" * 32}):
            self.assertEqual(cfg.private_key, "11" * 32)
            self.assertNotIn("private_key", cfg.to_public_dict())
            self.assertNotIn("private_key_env", cfg.to_public_dict())
        self.assertIsNone(LedgerConfig("sim").private_key)


if __name__ == "__main__":
    unittest.main(verbosity=2)
