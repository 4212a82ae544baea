"""
EVM HTLC adapter.

Talks to a HashedTimelockERC20-style contract with partial withdrawals:
create / withdraw / withdrawPartial / refund / getHTLC, and the
HTLCCreated / HTLCWithdrawn / HTLCRefunded events. Timelocks are Unix
seconds.

Events are read up to head - finality_depth, either by polling eth_getLogs
(mode "poll") or from log filters installed once and drained with
get_new_entries (mode "push"). Pushed entries wait in a queue until they are
finality_depth blocks deep; the cursor handed back is the block of the last
released entry, so a restart resubscribes from there.
"""

import logging
from typing import Optional, Dict, Any, List

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
from eth_account import Account

from ..core import HTLC, HTLCStatus, EventType, LedgerEvent, now_ts
from ..commitment import normalize_hex
from ..errors import LedgerUnavailable, Rejected
from .base import LedgerReceipt, EventBatch, SecondsClock, make_clock, register_adapter

log = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40

# Max blocks per eth_getLogs request
MAX_LOG_RANGE = 2000

HTLC_ABI = [
    {
        "name": "create",
        "type": "function",
        "inputs": [
            {"name": "receiver", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "hashlock", "type": "bytes32"},
            {"name": "timelock", "type": "uint256"}
        ],
        "outputs": [{"name": "htlcId", "type": "bytes32"}]
    },
    {
        "name": "withdraw",
        "type": "function",
        "inputs": [
            {"name": "htlcId", "type": "bytes32"},
            {"name": "preimage", "type": "bytes32"}
        ],
        "outputs": []
    },
    {
        "name": "withdrawPartial",
        "type": "function",
        "inputs": [
            {"name": "htlcId", "type": "bytes32"},
            {"name": "preimage", "type": "bytes32"},
            {"name": "amount", "type": "uint256"}
        ],
        "outputs": []
    },
    {
        "name": "refund",
        "type": "function",
        "inputs": [{"name": "htlcId", "type": "bytes32"}],
        "outputs": []
    },
    {
        "name": "getHTLC",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "htlcId", "type": "bytes32"}],
        "outputs": [
            {"name": "sender", "type": "address"},
            {"name": "receiver", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "remaining", "type": "uint256"},
            {"name": "hashlock", "type": "bytes32"},
            {"name": "timelock", "type": "uint256"},
            {"name": "withdrawn", "type": "bool"},
            {"name": "refunded", "type": "bool"},
            {"name": "preimage", "type": "bytes32"}
        ]
    },
    {
        "name": "HTLCCreated",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "htlcId", "type": "bytes32", "indexed": True},
            {"name": "sender", "type": "address", "indexed": True},
            {"name": "receiver", "type": "address", "indexed": True},
            {"name": "token", "type": "address", "indexed": False},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "hashlock", "type": "bytes32", "indexed": False},
            {"name": "timelock", "type": "uint256", "indexed": False}
        ]
    },
    {
        "name": "HTLCWithdrawn",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "htlcId", "type": "bytes32", "indexed": True},
            {"name": "preimage", "type": "bytes32", "indexed": False},
            {"name": "amount", "type": "uint256", "indexed": False}
        ]
    },
    {
        "name": "HTLCRefunded",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "htlcId", "type": "bytes32", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False}
        ]
    }
]

ERC20_ABI = [
    {
        "name": "approve",
        "type": "function",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"}
        ],
        "outputs": [{"name": "", "type": "bool"}]
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"}
        ],
        "outputs": [{"name": "", "type": "uint256"}]
    }
]

_EVENT_TYPES = {
    "HTLCCreated": EventType.LOCKED,
    "HTLCWithdrawn": EventType.CLAIMED,
    "HTLCRefunded": EventType.REFUNDED,
}


def _b32(value: str) -> bytes:
    raw = bytes.fromhex(normalize_hex(value))
    if len(raw) != 32:
        raise Rejected(f"Expected 32 bytes, got {len(raw)}")
    return raw


def _hex(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return "0x" + normalize_hex(value)


class EVMLedger:
    """
    LedgerAdapter for an EVM HTLC contract.

    Pass `web3` to reuse an existing connection (tests inject a mock).
    `time_fn` decides when an open HTLC reads as EXPIRED in get().
    """

    mode = "poll"

    def __init__(self, ledger_id: str, rpc_url: str, contract_address: str,
                 private_key: Optional[str] = None, chain_id: Optional[int] = None,
                 hash_algorithm: str = "keccak256", finality_depth: int = 2,
                 request_timeout: float = 30.0, receipt_timeout: int = 120,
                 supports_partial: bool = True, resolver_address: str = "",
                 clock=None, web3=None, mode: str = "poll", time_fn=None):
        if mode not in ("poll", "push"):
            raise ValueError(f"{ledger_id}: unknown event mode '{mode}'")
        self.mode = mode
        self.time_fn = time_fn or now_ts
        self.ledger_id = ledger_id
        self.rpc_url = rpc_url
        self.contract_address = contract_address
        self.chain_id = chain_id
        self.hash_algorithm = hash_algorithm
        self.finality_depth = finality_depth
        self.request_timeout = request_timeout
        self.receipt_timeout = receipt_timeout
        self.supports_partial = supports_partial
        self.clock = clock or SecondsClock()
        self._web3 = web3

        # Push mode: installed log filters, entries not final yet, last cursor handed out
        self._filters: Optional[List[Any]] = None
        self._pending: List[Any] = []
        self._push_cursor: Optional[int] = None

        self._account = None
        if private_key:
            if not private_key.startswith("0x"):
                private_key = "0x" + private_key
            self._account = Account.from_key(private_key)
        self.signer = self._account.address if self._account else resolver_address

    @property
    def web3(self):
        """Lazy-load web3 instance."""
        if self._web3 is None:
            self._web3 = Web3(Web3.HTTPProvider(
                self.rpc_url, request_kwargs={"timeout": self.request_timeout}
            ))
        return self._web3

    @property
    def contract(self):
        return self.web3.eth.contract(
            address=Web3.to_checksum_address(self.contract_address), abi=HTLC_ABI
        )

    # -------------------------------------------------------------------------
    # Transaction plumbing
    # -------------------------------------------------------------------------

    def _call(self, what: str, fn, *args, **kwargs):
        """Run a web3 call, mapping failures onto the adapter error taxonomy."""
        try:
            return fn(*args, **kwargs)
        except ContractLogicError as e:
            raise Rejected(f"{self.ledger_id}: {what} reverted: {e}", ledger_id=self.ledger_id)
        except (TimeExhausted, OSError, TimeoutError) as e:
            raise LedgerUnavailable(f"{self.ledger_id}: {what} failed: {e}", ledger_id=self.ledger_id)

    def _send(self, what: str, contract_fn, gas: int) -> Dict[str, Any]:
        """Build, sign, send and wait for a contract transaction."""
        if self._account is None:
            raise Rejected(f"{self.ledger_id}: no signing key configured", ledger_id=self.ledger_id)

        w3 = self.web3
        sender = self._account.address

        def _submit():
            nonce = w3.eth.get_transaction_count(sender, "pending")
            gas_price = int(w3.eth.gas_price * 1.1)
            tx = contract_fn.build_transaction({
                "from": sender,
                "nonce": nonce,
                "gas": gas,
                "gasPrice": gas_price,
                "chainId": self.chain_id or w3.eth.chain_id,
            })
            signed = self._account.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            log.info(f"[{self.ledger_id}] {what} TX: {_hex(tx_hash)}")
            return w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)

        receipt = self._call(what, _submit)
        if receipt["status"] != 1:
            raise Rejected(f"{self.ledger_id}: {what} reverted in {_hex(receipt['transactionHash'])}",
                           ledger_id=self.ledger_id)
        return receipt

    def _ensure_allowance(self, token: str, amount: int):
        w3 = self.web3
        erc20 = w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
        spender = Web3.to_checksum_address(self.contract_address)
        allowance = self._call("allowance", erc20.functions.allowance(self.signer, spender).call)
        if allowance < amount:
            log.info(f"[{self.ledger_id}] Approving {token} for HTLC contract")
            self._send("approve", erc20.functions.approve(spender, 2**256 - 1), gas=100000)

    # -------------------------------------------------------------------------
    # Adapter operations
    # -------------------------------------------------------------------------

    def lock(self, receiver: str, asset: str, amount: int, hashlock: str,
             timelock_expiry: int) -> str:
        self._ensure_allowance(asset, amount)
        fn = self.contract.functions.create(
            Web3.to_checksum_address(receiver),
            Web3.to_checksum_address(asset),
            amount,
            _b32(hashlock),
            self.clock.to_native(timelock_expiry),
        )
        receipt = self._send("create", fn, gas=350000)
        created = self.contract.events.HTLCCreated().process_receipt(receipt)
        if not created:
            raise Rejected(f"{self.ledger_id}: no HTLCCreated event in receipt", ledger_id=self.ledger_id)
        htlc_id = _hex(created[0]["args"]["htlcId"])
        log.info(f"[{self.ledger_id}] HTLC created: {htlc_id} amount={amount}")
        return htlc_id

    def claim(self, native_id: str, secret: str,
              partial_amount: Optional[int] = None) -> LedgerReceipt:
        functions = self.contract.functions
        if partial_amount is not None and self.supports_partial:
            fn = functions.withdrawPartial(_b32(native_id), _b32(secret), partial_amount)
        elif partial_amount is not None:
            raise Rejected(f"{self.ledger_id}: partial claims not supported", ledger_id=self.ledger_id)
        else:
            fn = functions.withdraw(_b32(native_id), _b32(secret))
        receipt = self._send("withdraw", fn, gas=200000)
        return LedgerReceipt(success=True, ledger_id=self.ledger_id, native_id=native_id,
                             tx_id=_hex(receipt["transactionHash"]), amount=partial_amount)

    def refund(self, native_id: str) -> LedgerReceipt:
        receipt = self._send("refund", self.contract.functions.refund(_b32(native_id)), gas=150000)
        return LedgerReceipt(success=True, ledger_id=self.ledger_id, native_id=native_id,
                             tx_id=_hex(receipt["transactionHash"]))

    def get(self, native_id: str) -> Optional[HTLC]:
        result = self._call("getHTLC", self.contract.functions.getHTLC(_b32(native_id)).call)
        (sender, receiver, token, amount, remaining, hashlock, timelock,
         withdrawn, refunded, preimage) = result

        if sender == ZERO_ADDRESS:
            return None

        timelock = self.clock.to_unix(timelock)
        if refunded:
            status = HTLCStatus.REFUNDED
        elif withdrawn or remaining == 0:
            status = HTLCStatus.CLAIMED
        elif self.time_fn() >= timelock:
            status = HTLCStatus.EXPIRED
        elif remaining < amount:
            status = HTLCStatus.PARTIALLY_CLAIMED
        else:
            status = HTLCStatus.LOCKED

        secret = normalize_hex(preimage) if any(preimage) else None
        return HTLC(
            ledger_id=self.ledger_id,
            native_id=_hex(native_id),
            sender=sender,
            receiver=receiver,
            asset=token,
            amount=amount,
            locked_remaining=remaining,
            hashlock=normalize_hex(hashlock),
            hash_algorithm=self.hash_algorithm,
            timelock_expiry=timelock,
            status=status,
            confirmed=True,
            secret=secret,
        )

    def find_by_hashlock(self, hashlock: str) -> List[HTLC]:
        """HTLCs created by our signer against `hashlock` in the last MAX_LOG_RANGE blocks.

        The hashlock is not an indexed topic, so HTLCCreated logs are
        filtered by sender on the node and by hashlock here.
        """
        head = self._call("block_number", lambda: self.web3.eth.block_number)
        filters = {"sender": self.signer} if self.signer else None
        created = self.contract.events.HTLCCreated()
        logs = self._call("get_logs HTLCCreated", created.get_logs, argument_filters=filters,
                          from_block=max(0, head - MAX_LOG_RANGE), to_block=head)
        wanted = normalize_hex(hashlock)
        found = []
        for entry in logs:
            if normalize_hex(entry["args"]["hashlock"]) != wanted:
                continue
            htlc = self.get(_hex(entry["args"]["htlcId"]))
            if htlc is not None:
                found.append(htlc)
        return found

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def fetch_events(self, since: int) -> EventBatch:
        if self.mode == "push":
            return self._drain(since)
        return self._get_logs(since)

    def subscribe(self, since: int):
        """Install one log filter per HTLC event, starting after block `since`."""
        self.unsubscribe()
        events = self.contract.events
        self._filters = [
            self._call(f"create_filter {name}", getattr(events, name)().create_filter,
                       from_block=since + 1)
            for name in _EVENT_TYPES
        ]
        self._pending = []
        self._push_cursor = since
        log.info(f"[{self.ledger_id}] Subscribed to HTLC events from block {since + 1}")

    def unsubscribe(self):
        filters, self._filters = self._filters, None
        self._pending = []
        self._push_cursor = None
        for event_filter in filters or []:
            try:
                self.web3.eth.uninstall_filter(event_filter.filter_id)
            except (Web3Exception, ValueError, OSError) as e:
                log.debug(f"[{self.ledger_id}] uninstall_filter {event_filter.filter_id}: {e}")

    def _drain(self, since: int) -> EventBatch:
        """Release queued filter entries that are finality_depth blocks deep."""
        # A cursor we did not hand out (restart, or the monitor rewound after
        # a failed forward) means the queue no longer lines up: start over
        if self._filters is None or since != self._push_cursor:
            self.subscribe(since)

        try:
            for event_filter in self._filters:
                self._pending.extend(event_filter.get_new_entries())
        except (Web3Exception, ValueError, OSError, TimeoutError) as e:
            # Nodes forget idle filters; the next drain resubscribes from `since`
            self._filters = None
            raise LedgerUnavailable(f"{self.ledger_id}: get_new_entries failed: {e}",
                                    ledger_id=self.ledger_id)

        head = self._call("block_number", lambda: self.web3.eth.block_number) - self.finality_depth
        ready = [entry for entry in self._pending if since < entry["blockNumber"] <= head]
        self._pending = [entry for entry in self._pending if entry["blockNumber"] > head]
        if not ready:
            return EventBatch(events=[], cursor=since)

        ready.sort(key=lambda entry: (entry["blockNumber"], entry["logIndex"]))
        self._push_cursor = ready[-1]["blockNumber"]
        return EventBatch(events=ready, cursor=self._push_cursor)

    def _get_logs(self, since: int) -> EventBatch:
        head = self._call("block_number", lambda: self.web3.eth.block_number) - self.finality_depth
        if head <= since:
            return EventBatch(events=[], cursor=since)

        from_block = since + 1
        to_block = min(head, since + MAX_LOG_RANGE)
        events = self.contract.events
        logs: List[Any] = []
        for name in _EVENT_TYPES:
            event = getattr(events, name)()
            logs.extend(self._call(f"get_logs {name}", event.get_logs,
                                   from_block=from_block, to_block=to_block))
        logs.sort(key=lambda entry: (entry["blockNumber"], entry["logIndex"]))
        return EventBatch(events=logs, cursor=to_block)

    def normalize_event(self, raw) -> Optional[LedgerEvent]:
        event_type = _EVENT_TYPES.get(raw["event"])
        if event_type is None:
            return None
        args = raw["args"]
        native_id = _hex(args["htlcId"])
        event = LedgerEvent(
            ledger_id=self.ledger_id,
            native_id=native_id,
            event_type=event_type,
            event_id=f"{_hex(raw['transactionHash'])}:{raw['logIndex']}",
            cursor=raw["blockNumber"],
        )
        if event_type == EventType.LOCKED:
            event.amount = args["amount"]
            event.htlc = HTLC(
                ledger_id=self.ledger_id,
                native_id=native_id,
                sender=args["sender"],
                receiver=args["receiver"],
                asset=args["token"],
                amount=args["amount"],
                hashlock=normalize_hex(args["hashlock"]),
                hash_algorithm=self.hash_algorithm,
                timelock_expiry=self.clock.to_unix(args["timelock"]),
                confirmed=True,
            )
        elif event_type == EventType.CLAIMED:
            event.secret = normalize_hex(args["preimage"])
            event.amount = args["amount"]
        else:
            event.amount = args.get("amount")
        return event


def _from_config(config) -> EVMLedger:
    return EVMLedger(
        config.ledger_id,
        rpc_url=config.rpc_url,
        contract_address=config.contract_address,
        private_key=config.private_key,
        chain_id=config.chain_id,
        hash_algorithm=config.hash_algorithm,
        finality_depth=config.finality_depth,
        request_timeout=config.request_timeout,
        receipt_timeout=config.receipt_timeout,
        supports_partial=config.supports_partial,
        resolver_address=config.resolver_address,
        clock=make_clock(config),
        mode=config.mode,
    )


register_adapter("evm", _from_config)
