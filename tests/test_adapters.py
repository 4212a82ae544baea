#!/usr/bin/env python3
"""
Ledger adapter tests

1. EVM adapter against a mocked web3 (tx plumbing, error mapping, logs,
   hashlock lookup, push-mode log filters)
2. JSON-RPC node adapter against an httpx MockTransport
3. Clock normalization and build_adapter()
"""

import sys
import os
import json
import time
import unittest
from unittest.mock import MagicMock, patch

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import httpx
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from resolver.config import LedgerConfig
from resolver.core import EventType, HTLCStatus
from resolver.errors import LedgerUnavailable, Rejected
from resolver.htlc.base import (
    BlockHeightClock, MillisecondsClock, SecondsClock, build_adapter,
)
from resolver.htlc.evm import EVMLedger, ZERO_ADDRESS
from resolver.htlc.rpc import NodeRPC, RPCLedger
from resolver.htlc.simulated import SimulatedLedger
from resolver.store import MemoryKV
from resolver.swap.monitor import EventMonitor

T0 = 1_700_000_000
SIGNER = Web3.to_checksum_address("0x" + "5e" * 20)
CONTRACT = "0x" + "aa" * 20
RECEIVER = "0x" + "bb" * 20
TOKEN = "0x" + "cc" * 20
HTLC_ID = "0x" + "22" * 32
TX_HASH = b"\x01" * 32


def evm_log(name, block, index, **args):
    return {"event": name, "blockNumber": block, "logIndex": index,
            "transactionHash": bytes([block]) * 32, "args": args}


# =============================================================================
# EVM
# =============================================================================

class TestEVMLedger(unittest.TestCase):

    def setUp(self):
        self.w3 = MagicMock()
        self.contract = MagicMock()
        self.w3.eth.contract.return_value = self.contract
        self.w3.eth.get_transaction_count.return_value = 7
        self.w3.eth.gas_price = 1_000_000_000
        self.w3.eth.send_raw_transaction.return_value = TX_HASH
        self.w3.eth.wait_for_transaction_receipt.return_value = {
            "status": 1, "transactionHash": TX_HASH, "logs": [],
        }
        # Token already approved
        self.contract.functions.allowance.return_value.call.return_value = 10 ** 30

        with patch("resolver.htlc.evm.Account") as account_cls:
            account_cls.from_key.return_value = MagicMock(address=SIGNER)
            self.ledger = EVMLedger("base", "http://localhost:8545", CONTRACT,
                                    private_key="11" * 32, chain_id=84532, web3=self.w3)
            account_cls.from_key.assert_called_once_with("0x" + "11" * 32)

    def test_lock_builds_signed_transaction(self):
        self.contract.events.HTLCCreated.return_value.process_receipt.return_value = [
            {"args": {"htlcId": bytes.fromhex("22" * 32)}}
        ]
        native_id = self.ledger.lock(RECEIVER, TOKEN, 1000, "ab" * 32, T0 + 5400)
        self.assertEqual(native_id, HTLC_ID)

        self.contract.functions.create.assert_called_once_with(
            Web3.to_checksum_address(RECEIVER), Web3.to_checksum_address(TOKEN),
            1000, bytes.fromhex("ab" * 32), T0 + 5400,
        )
        tx = self.contract.functions.create.return_value.build_transaction.call_args[0][0]
        self.assertEqual(tx["from"], SIGNER)
        self.assertEqual(tx["nonce"], 7)
        self.assertEqual(tx["gasPrice"], 1_100_000_000)
        self.assertEqual(tx["chainId"], 84532)
        self.w3.eth.get_transaction_count.assert_called_with(SIGNER, "pending")

    def test_lock_approves_token_when_needed(self):
        self.contract.functions.allowance.return_value.call.return_value = 0
        self.contract.events.HTLCCreated.return_value.process_receipt.return_value = [
            {"args": {"htlcId": bytes.fromhex("22" * 32)}}
        ]
        self.ledger.lock(RECEIVER, TOKEN, 1000, "ab" * 32, T0 + 5400)
        self.contract.functions.approve.assert_called_once()
        self.assertEqual(self.w3.eth.send_raw_transaction.call_count, 2)

    def test_claim_full_and_partial(self):
        receipt = self.ledger.claim(HTLC_ID, "0x" + "33" * 32)
        self.assertTrue(receipt.success)
        self.assertEqual(receipt.tx_id, "0x" + TX_HASH.hex())
        self.contract.functions.withdraw.assert_called_once_with(
            bytes.fromhex("22" * 32), bytes.fromhex("33" * 32))

        self.ledger.claim(HTLC_ID, "33" * 32, 400)
        self.contract.functions.withdrawPartial.assert_called_once_with(
            bytes.fromhex("22" * 32), bytes.fromhex("33" * 32), 400)

    def test_partial_claim_unsupported(self):
        self.ledger.supports_partial = False
        with self.assertRaises(Rejected):
            self.ledger.claim(HTLC_ID, "33" * 32, 400)
        self.w3.eth.send_raw_transaction.assert_not_called()

    def test_refund(self):
        receipt = self.ledger.refund(HTLC_ID)
        self.assertTrue(receipt.success)
        self.contract.functions.refund.assert_called_once_with(bytes.fromhex("22" * 32))

    def test_reverted_receipt_is_rejection(self):
        self.w3.eth.wait_for_transaction_receipt.return_value = {"status": 0, "transactionHash": TX_HASH}
        with self.assertRaises(Rejected):
            self.ledger.refund(HTLC_ID)

    def test_contract_revert_is_rejection(self):
        self.w3.eth.wait_for_transaction_receipt.side_effect = ContractLogicError("execution reverted: expired")
        with self.assertRaises(Rejected):
            self.ledger.claim(HTLC_ID, "33" * 32)

    def test_timeouts_are_transient(self):
        self.w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("no receipt")
        with self.assertRaises(LedgerUnavailable):
            self.ledger.claim(HTLC_ID, "33" * 32)

        self.w3.eth.wait_for_transaction_receipt.side_effect = ConnectionError("reset")
        with self.assertRaises(LedgerUnavailable):
            self.ledger.claim(HTLC_ID, "33" * 32)

    def test_no_signing_key(self):
        ledger = EVMLedger("base", "http://localhost:8545", CONTRACT, web3=self.w3,
                           resolver_address=SIGNER)
        self.assertEqual(ledger.signer, SIGNER)
        with self.assertRaises(Rejected):
            ledger.refund(HTLC_ID)

    def _htlc_tuple(self, amount=1000, remaining=1000, timelock=None, withdrawn=False,
                    refunded=False, preimage=b"\x00" * 32, sender=SIGNER):
        timelock = int(time.time()) + 3600 if timelock is None else timelock
        return (sender, RECEIVER, TOKEN, amount, remaining, b"\xab" * 32, timelock,
                withdrawn, refunded, preimage)

    def test_get_status_mapping(self):
        call = self.contract.functions.getHTLC.return_value.call

        call.return_value = self._htlc_tuple()
        htlc = self.ledger.get(HTLC_ID)
        self.assertEqual(htlc.status, HTLCStatus.LOCKED)
        self.assertEqual(htlc.hashlock, "ab" * 32)
        self.assertEqual(htlc.hash_algorithm, "keccak256")
        self.assertIsNone(htlc.secret)

        call.return_value = self._htlc_tuple(remaining=400)
        htlc = self.ledger.get(HTLC_ID)
        self.assertEqual(htlc.status, HTLCStatus.PARTIALLY_CLAIMED)
        self.assertEqual(htlc.locked_remaining, 400)

        call.return_value = self._htlc_tuple(remaining=0, withdrawn=True, preimage=b"\x01" * 32)
        htlc = self.ledger.get(HTLC_ID)
        self.assertEqual(htlc.status, HTLCStatus.CLAIMED)
        self.assertEqual(htlc.secret, "01" * 32)

        call.return_value = self._htlc_tuple(refunded=True)
        self.assertEqual(self.ledger.get(HTLC_ID).status, HTLCStatus.REFUNDED)

        call.return_value = self._htlc_tuple(timelock=1)
        self.assertEqual(self.ledger.get(HTLC_ID).status, HTLCStatus.EXPIRED)

        call.return_value = self._htlc_tuple(sender=ZERO_ADDRESS)
        self.assertIsNone(self.ledger.get(HTLC_ID))

    def test_get_expiry_follows_injected_clock(self):
        call = self.contract.functions.getHTLC.return_value.call
        call.return_value = self._htlc_tuple(timelock=T0 + 60)

        self.ledger.time_fn = lambda: T0 + 59
        self.assertEqual(self.ledger.get(HTLC_ID).status, HTLCStatus.LOCKED)
        self.ledger.time_fn = lambda: T0 + 60
        self.assertEqual(self.ledger.get(HTLC_ID).status, HTLCStatus.EXPIRED)

    def test_find_by_hashlock(self):
        self.w3.eth.block_number = 5000
        ours = self._log("HTLCCreated", 4990, 0, htlcId=b"\x22" * 32, hashlock=b"\xab" * 32)
        other = self._log("HTLCCreated", 4991, 0, htlcId=b"\x44" * 32, hashlock=b"\xcd" * 32)
        created = self.contract.events.HTLCCreated.return_value
        created.get_logs.return_value = [ours, other]
        self.contract.functions.getHTLC.return_value.call.return_value = self._htlc_tuple()

        found = self.ledger.find_by_hashlock("0x" + "ab" * 32)
        self.assertEqual([h.native_id for h in found], [HTLC_ID])
        self.assertEqual(found[0].sender, SIGNER)
        created.get_logs.assert_called_once_with(argument_filters={"sender": SIGNER},
                                                 from_block=3000, to_block=5000)
        self.contract.functions.getHTLC.assert_called_once_with(bytes.fromhex("22" * 32))

    def _log(self, name, block, index, **args):
        return evm_log(name, block, index, **args)

    def test_fetch_events_up_to_finalized_head(self):
        self.w3.eth.block_number = 105
        created = self._log("HTLCCreated", 103, 1, htlcId=b"\x22" * 32)
        withdrawn = self._log("HTLCWithdrawn", 102, 0, htlcId=b"\x22" * 32)
        self.contract.events.HTLCCreated.return_value.get_logs.return_value = [created]
        self.contract.events.HTLCWithdrawn.return_value.get_logs.return_value = [withdrawn]
        self.contract.events.HTLCRefunded.return_value.get_logs.return_value = []

        batch = self.ledger.fetch_events(100)
        self.assertEqual(batch.cursor, 103)
        self.assertEqual(batch.events, [withdrawn, created])
        self.contract.events.HTLCCreated.return_value.get_logs.assert_called_once_with(
            from_block=101, to_block=103)

        self.assertEqual(self.ledger.fetch_events(103).events, [])

    def test_normalize_events(self):
        created = self._log("HTLCCreated", 103, 1, htlcId=b"\x22" * 32, sender=RECEIVER,
                            receiver=SIGNER, token=TOKEN, amount=1000,
                            hashlock=b"\xab" * 32, timelock=T0 + 7200)
        event = self.ledger.normalize_event(created)
        self.assertEqual(event.event_type, EventType.LOCKED)
        self.assertEqual(event.native_id, HTLC_ID)
        self.assertEqual(event.cursor, 103)
        self.assertEqual(event.event_id, "0x" + "67" * 32 + ":1")
        self.assertEqual(event.htlc.amount, 1000)
        self.assertEqual(event.htlc.timelock_expiry, T0 + 7200)
        self.assertTrue(event.htlc.confirmed)

        withdrawn = self._log("HTLCWithdrawn", 104, 0, htlcId=b"\x22" * 32,
                              preimage=b"\x33" * 32, amount=400)
        event = self.ledger.normalize_event(withdrawn)
        self.assertEqual(event.event_type, EventType.CLAIMED)
        self.assertEqual(event.secret, "33" * 32)
        self.assertEqual(event.amount, 400)

        self.assertIsNone(self.ledger.normalize_event(self._log("Approval", 104, 1)))


class TestEVMPushMode(unittest.TestCase):

    def setUp(self):
        self.w3 = MagicMock()
        self.contract = MagicMock()
        self.w3.eth.contract.return_value = self.contract
        self.w3.eth.block_number = 105
        self.filters = {}
        for index, name in enumerate(("HTLCCreated", "HTLCWithdrawn", "HTLCRefunded")):
            event_filter = MagicMock(filter_id=f"0x{index + 1}")
            event_filter.get_new_entries.return_value = []
            getattr(self.contract.events, name).return_value.create_filter.return_value = event_filter
            self.filters[name] = event_filter
        self.ledger = EVMLedger("base", "http://localhost:8545", CONTRACT, resolver_address=SIGNER,
                                finality_depth=2, web3=self.w3, mode="push")

    def create_filter(self, name):
        return getattr(self.contract.events, name).return_value.create_filter

    def test_entries_released_once_final(self):
        created = evm_log("HTLCCreated", 103, 1, htlcId=b"\x22" * 32)
        late = evm_log("HTLCCreated", 105, 0, htlcId=b"\x44" * 32)
        withdrawn = evm_log("HTLCWithdrawn", 102, 0, htlcId=b"\x22" * 32)
        self.filters["HTLCCreated"].get_new_entries.side_effect = [[created, late], [], []]
        self.filters["HTLCWithdrawn"].get_new_entries.side_effect = [[withdrawn], [], []]

        batch = self.ledger.fetch_events(100)
        self.assertEqual(batch.events, [withdrawn, created])
        self.assertEqual(batch.cursor, 103)
        self.create_filter("HTLCCreated").assert_called_once_with(from_block=101)

        # Block 105 is not final yet
        self.assertEqual(self.ledger.fetch_events(103).events, [])
        self.w3.eth.block_number = 107
        batch = self.ledger.fetch_events(103)
        self.assertEqual(batch.events, [late])
        self.assertEqual(batch.cursor, 105)
        self.assertEqual(self.create_filter("HTLCCreated").call_count, 1)
        self.contract.events.HTLCCreated.return_value.get_logs.assert_not_called()

    def test_rewound_cursor_resubscribes(self):
        self.filters["HTLCRefunded"].get_new_entries.side_effect = [
            [evm_log("HTLCRefunded", 103, 0, htlcId=b"\x22" * 32, amount=5)], [],
        ]
        self.assertEqual(self.ledger.fetch_events(100).cursor, 103)

        self.ledger.fetch_events(101)
        self.create_filter("HTLCRefunded").assert_called_with(from_block=102)
        self.assertEqual(self.create_filter("HTLCRefunded").call_count, 2)
        self.w3.eth.uninstall_filter.assert_any_call("0x3")

    def test_lost_filter_is_transient_and_resubscribed(self):
        self.filters["HTLCWithdrawn"].get_new_entries.side_effect = [ValueError("filter not found"), []]
        with self.assertRaises(LedgerUnavailable):
            self.ledger.fetch_events(100)
        batch = self.ledger.fetch_events(100)
        self.assertEqual(batch.cursor, 100)
        self.assertEqual(self.create_filter("HTLCWithdrawn").call_count, 2)

    def test_monitor_checkpoints_pushed_events(self):
        self.filters["HTLCRefunded"].get_new_entries.side_effect = [
            [evm_log("HTLCRefunded", 103, 0, htlcId=b"\x22" * 32, amount=5)], [],
        ]
        kv = MemoryKV()
        received = []
        monitor = EventMonitor(self.ledger, received.append, kv, start_cursor=100)

        self.assertEqual(monitor.poll_once(), 1)
        self.assertEqual(received[0].event_type, EventType.REFUNDED)
        self.assertEqual(received[0].native_id, HTLC_ID)
        self.assertEqual(monitor.checkpoint, 103)
        self.assertEqual(monitor.poll_once(), 0)
        self.assertEqual(monitor.checkpoint, 103)

        monitor.stop()
        self.assertEqual(self.w3.eth.uninstall_filter.call_count, 3)

    def test_mode_from_config(self):
        adapter = build_adapter(LedgerConfig("base", kind="evm", rpc_url="http://localhost:8545",
                                             contract_address=CONTRACT, mode="push"))
        self.assertEqual(adapter.mode, "push")
        with self.assertRaises(ValueError):
            EVMLedger("base", "http://localhost:8545", CONTRACT, mode="websocket")


# =============================================================================
# JSON-RPC node
# =============================================================================

class FakeNode:
    """httpx handler answering JSON-RPC calls from a method table."""

    def __init__(self):
        self.calls = []
        self.results = {"getblockcount": 1010}
        self.errors = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        method, params = payload["method"], payload["params"]
        self.calls.append((method, params))
        if method in self.errors:
            code, message = self.errors[method]
            return httpx.Response(500, json={"result": None, "id": payload["id"],
                                             "error": {"code": code, "message": message}})
        result = self.results.get(method)
        if callable(result):
            result = result(*params)
        return httpx.Response(200, json={"result": result, "error": None, "id": payload["id"]})


class TestRPCLedger(unittest.TestCase):

    def setUp(self):
        self.node = FakeNode()
        client = httpx.Client(transport=httpx.MockTransport(self.node))
        self.ledger = RPCLedger("m1", NodeRPC("http://node:8332", client=client),
                                signer="resolver-m1", finality_depth=1, block_time=600)
        self.ledger.clock = BlockHeightClock(600, self.ledger.block_count, time_fn=lambda: T0)

    def test_lock_converts_timelock_to_height(self):
        self.node.results["htlc_create"] = {"htlc_id": "htlc-1", "txid": "aa" * 32}
        native_id = self.ledger.lock("alice", "M1", 5000, "0x" + "ab" * 32, T0 + 6000)
        self.assertEqual(native_id, "htlc-1")
        self.assertIn(("htlc_create", ["alice", "M1", 5000, "ab" * 32, 1020]), self.node.calls)

    def test_lock_rounds_height_down(self):
        self.node.results["htlc_create"] = "htlc-2"
        self.ledger.lock("alice", "M1", 5000, "ab" * 32, T0 + 6599)
        self.assertEqual(self.node.calls[-1][1][-1], 1020)

    def test_claim_and_refund(self):
        self.node.results["htlc_claim"] = {"txid": "bb" * 32}
        self.node.results["htlc_refund"] = "cc" * 32
        receipt = self.ledger.claim("htlc-1", "0x" + "33" * 32)
        self.assertEqual(receipt.tx_id, "bb" * 32)
        self.assertEqual(self.node.calls[-1], ("htlc_claim", ["htlc-1", "33" * 32]))
        self.assertEqual(self.ledger.refund("htlc-1").tx_id, "cc" * 32)

    def test_partial_claim_unsupported(self):
        with self.assertRaises(Rejected):
            self.ledger.claim("htlc-1", "33" * 32, 100)
        self.assertEqual(self.node.calls, [])

    def test_error_classification(self):
        self.node.errors["htlc_claim"] = (-28, "Loading block index...")
        with self.assertRaises(LedgerUnavailable):
            self.ledger.claim("htlc-1", "33" * 32)

        self.node.errors["htlc_claim"] = (-8, "invalid preimage")
        with self.assertRaises(Rejected):
            self.ledger.claim("htlc-1", "33" * 32)

    def test_transport_failures_are_transient(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        ledger = RPCLedger("m1", NodeRPC("http://node:8332",
                                         client=httpx.Client(transport=httpx.MockTransport(refuse))))
        with self.assertRaises(LedgerUnavailable):
            ledger.refund("htlc-1")

        def bad_gateway(request):
            return httpx.Response(502, text="<html>bad gateway</html>")

        ledger = RPCLedger("m1", NodeRPC("http://node:8332",
                                         client=httpx.Client(transport=httpx.MockTransport(bad_gateway))))
        with self.assertRaises(LedgerUnavailable):
            ledger.refund("htlc-1")

    def test_get(self):
        self.node.results["htlc_get"] = {
            "amount": 5000, "remaining": 2000, "hashlock": "AB" * 32, "expiry_height": 1020,
            "status": "partial", "sender": "bob", "receiver": "resolver-m1", "asset": "M1",
        }
        htlc = self.ledger.get("htlc-1")
        self.assertEqual(htlc.status, HTLCStatus.PARTIALLY_CLAIMED)
        self.assertEqual(htlc.locked_remaining, 2000)
        self.assertEqual(htlc.hashlock, "ab" * 32)
        self.assertEqual(htlc.timelock_expiry, T0 + 6000)

        self.node.errors["htlc_get"] = (-5, "HTLC not found")
        self.assertIsNone(self.ledger.get("htlc-9"))

    def test_find_by_hashlock(self):
        self.node.results["htlc_list"] = [
            {"htlc_id": "htlc-7", "amount": 5000, "hashlock": "AB" * 32, "expiry_height": 1020,
             "status": "active", "sender": "resolver-m1", "receiver": "alice", "asset": "M1"},
        ]
        found = self.ledger.find_by_hashlock("0x" + "ab" * 32)
        self.assertEqual([h.native_id for h in found], ["htlc-7"])
        self.assertEqual(found[0].sender, "resolver-m1")
        self.assertEqual(found[0].status, HTLCStatus.LOCKED)
        self.assertIn(("htlc_list", [None, "ab" * 32]), self.node.calls)

        self.node.results["htlc_list"] = None
        self.assertEqual(self.ledger.find_by_hashlock("ab" * 32), [])

    def test_fetch_and_normalize_events(self):
        raw_events = [
            {"type": "claimed", "htlc_id": "htlc-1", "txid": "t2", "index": 0, "height": 1008,
             "preimage": "33" * 32, "amount": 5000},
            {"type": "locked", "htlc_id": "htlc-1", "txid": "t1", "index": 0, "height": 1003,
             "amount": 5000, "hashlock": "ab" * 32, "expiry_height": 1020,
             "sender": "bob", "receiver": "resolver-m1", "asset": "M1"},
        ]
        self.node.results["htlc_events"] = lambda start, end: list(raw_events)

        batch = self.ledger.fetch_events(1000)
        self.assertEqual(batch.cursor, 1009)
        self.assertIn(("htlc_events", [1001, 1009]), self.node.calls)
        self.assertEqual([e["txid"] for e in batch.events], ["t1", "t2"])

        locked = self.ledger.normalize_event(batch.events[0])
        self.assertEqual(locked.event_type, EventType.LOCKED)
        self.assertEqual(locked.event_id, "t1:0")
        self.assertEqual(locked.htlc.receiver, "resolver-m1")
        self.assertEqual(locked.htlc.timelock_expiry, T0 + 6000)

        claimed = self.ledger.normalize_event(batch.events[1])
        self.assertEqual(claimed.secret, "33" * 32)
        self.assertEqual(claimed.cursor, 1008)

        self.assertIsNone(self.ledger.normalize_event({"type": "mystery"}))

    def test_fetch_nothing_new(self):
        batch = self.ledger.fetch_events(1009)
        self.assertEqual(batch.events, [])
        self.assertEqual(batch.cursor, 1009)


# =============================================================================
# Clocks and factory
# =============================================================================

class TestClocks(unittest.TestCase):

    def test_seconds_and_milliseconds(self):
        self.assertEqual(SecondsClock().to_native(T0), T0)
        self.assertEqual(MillisecondsClock().to_native(T0), T0 * 1000)
        self.assertEqual(MillisecondsClock().to_unix(T0 * 1000 + 999), T0)

    def test_block_height(self):
        clock = BlockHeightClock(600, lambda: 500, time_fn=lambda: T0)
        self.assertEqual(clock.to_unix(506), T0 + 3600)
        self.assertEqual(clock.to_native(T0 + 3600), 506)
        # Never later than requested
        self.assertEqual(clock.to_native(T0 + 3599), 505)


class TestBuildAdapter(unittest.TestCase):

    def test_kinds(self):
        sim = build_adapter(LedgerConfig("sim", kind="simulated", hash_algorithm="blake2b_256",
                                         resolver_address="me"))
        self.assertIsInstance(sim, SimulatedLedger)
        self.assertEqual(sim.hash_algorithm, "blake2b_256")
        self.assertEqual(sim.signer, "me")

        rpc = build_adapter(LedgerConfig("m1", kind="rpc", rpc_url="http://node:8332",
                                         rpc_user="u", rpc_password="p", block_time=60))
        self.assertIsInstance(rpc, RPCLedger)
        self.assertEqual(rpc.clock.block_time, 60)

        evm = build_adapter(LedgerConfig("base", kind="evm", rpc_url="http://localhost:8545",
                                         contract_address=CONTRACT, hash_algorithm="keccak256",
                                         clock="milliseconds", resolver_address=SIGNER))
        self.assertIsInstance(evm, EVMLedger)
        self.assertIsInstance(evm.clock, MillisecondsClock)
        self.assertEqual(evm.signer, SIGNER)

    def test_unknown_kind(self):
        with self.assertRaises(ValueError):
            build_adapter(LedgerConfig("x", kind="carrier-pigeon"))


if __name__ == "__main__":
    unittest.main(verbosity=2)
