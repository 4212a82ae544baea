"""
JSON-RPC node adapter for ledgers with native HTLC RPCs.

Used for UTXO-style nodes that expose HTLCs directly:
- htlc_create: lock funds (timelock as absolute block height)
- htlc_claim: claim with preimage (optionally a partial amount)
- htlc_refund: refund after timeout
- htlc_get: HTLC record
- htlc_list: HTLC records, filtered by status and hashlock
- htlc_events: HTLC activity between two heights
- getblockcount: chain tip

Calls go over HTTP with httpx. Node errors are split into transient
(warming up, connection, timeout, 5xx) and deterministic rejections.
"""

import logging
import itertools
from typing import Optional, Dict, Any, List

import httpx

from ..core import HTLC, HTLCStatus, EventType, LedgerEvent
from ..commitment import normalize_hex
from ..errors import LedgerUnavailable, Rejected
from .base import LedgerReceipt, EventBatch, BlockHeightClock, register_adapter

log = logging.getLogger(__name__)

# JSON-RPC error codes that mean "try again later"
TRANSIENT_RPC_CODES = {-28, -9, -10}   # warming up, not connected, initial download
NOT_FOUND_RPC_CODES = {-5, -8}

_STATUS_MAP = {
    "active": HTLCStatus.LOCKED,
    "locked": HTLCStatus.LOCKED,
    "partial": HTLCStatus.PARTIALLY_CLAIMED,
    "partially_claimed": HTLCStatus.PARTIALLY_CLAIMED,
    "claimed": HTLCStatus.CLAIMED,
    "refunded": HTLCStatus.REFUNDED,
    "expired": HTLCStatus.EXPIRED,
}


class RPCError(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message


class NodeRPC:
    """Minimal JSON-RPC 1.0 client over httpx."""

    def __init__(self, url: str, user: str = "", password: str = "",
                 timeout: float = 30.0, client: Optional[httpx.Client] = None):
        self.url = url
        auth = (user, password) if user else None
        self._client = client or httpx.Client(timeout=timeout, auth=auth)
        self._ids = itertools.count(1)

    def call(self, method: str, *params) -> Any:
        payload = {"jsonrpc": "1.0", "id": next(self._ids), "method": method, "params": list(params)}
        response = self._client.post(self.url, json=payload)
        # bitcoind-style nodes answer RPC errors with HTTP 500 + a JSON body
        try:
            body = response.json()
        except ValueError:
            response.raise_for_status()
            raise RPCError(0, f"non-JSON response from {self.url}")
        error = body.get("error")
        if error:
            raise RPCError(error.get("code", 0), error.get("message", ""))
        response.raise_for_status()
        return body.get("result")

    def close(self):
        self._client.close()


class RPCLedger:
    """LedgerAdapter backed by a node's native HTLC RPCs."""

    mode = "poll"

    def __init__(self, ledger_id: str, rpc: NodeRPC, signer: str = "",
                 hash_algorithm: str = "sha256", finality_depth: int = 1,
                 block_time: int = 600, supports_partial: bool = False):
        self.ledger_id = ledger_id
        self.rpc = rpc
        self.signer = signer
        self.hash_algorithm = hash_algorithm
        self.finality_depth = finality_depth
        self.supports_partial = supports_partial
        self.clock = BlockHeightClock(block_time, self.block_count)

    def _call(self, method: str, *params) -> Any:
        try:
            return self.rpc.call(method, *params)
        except RPCError as e:
            if e.code in TRANSIENT_RPC_CODES:
                raise LedgerUnavailable(f"{self.ledger_id}: {method}: {e}", ledger_id=self.ledger_id)
            raise Rejected(f"{self.ledger_id}: {method}: {e}", ledger_id=self.ledger_id)
        except (httpx.TransportError, httpx.HTTPStatusError) as e:
            raise LedgerUnavailable(f"{self.ledger_id}: {method}: {e}", ledger_id=self.ledger_id)

    def block_count(self) -> int:
        return int(self._call("getblockcount"))

    def lock(self, receiver: str, asset: str, amount: int, hashlock: str,
             timelock_expiry: int) -> str:
        height = self.clock.to_native(timelock_expiry)
        log.info(f"[{self.ledger_id}] htlc_create amount={amount} expiry_height={height}")
        result = self._call("htlc_create", receiver, asset, amount, normalize_hex(hashlock), height)
        native_id = result["htlc_id"] if isinstance(result, dict) else result
        return str(native_id)

    def claim(self, native_id: str, secret: str,
              partial_amount: Optional[int] = None) -> LedgerReceipt:
        params = [native_id, normalize_hex(secret)]
        if partial_amount is not None:
            if not self.supports_partial:
                raise Rejected(f"{self.ledger_id}: partial claims not supported", ledger_id=self.ledger_id)
            params.append(partial_amount)
        log.info(f"[{self.ledger_id}] Claiming HTLC: {native_id}")
        result = self._call("htlc_claim", *params)
        return LedgerReceipt(success=True, ledger_id=self.ledger_id, native_id=native_id,
                             tx_id=_txid(result), amount=partial_amount)

    def refund(self, native_id: str) -> LedgerReceipt:
        log.info(f"[{self.ledger_id}] Refunding HTLC: {native_id}")
        result = self._call("htlc_refund", native_id)
        return LedgerReceipt(success=True, ledger_id=self.ledger_id, native_id=native_id,
                             tx_id=_txid(result))

    def get(self, native_id: str) -> Optional[HTLC]:
        try:
            record = self.rpc.call("htlc_get", native_id)
        except RPCError as e:
            if e.code in NOT_FOUND_RPC_CODES:
                return None
            if e.code in TRANSIENT_RPC_CODES:
                raise LedgerUnavailable(f"{self.ledger_id}: htlc_get: {e}", ledger_id=self.ledger_id)
            raise Rejected(f"{self.ledger_id}: htlc_get: {e}", ledger_id=self.ledger_id)
        except (httpx.TransportError, httpx.HTTPStatusError) as e:
            raise LedgerUnavailable(f"{self.ledger_id}: htlc_get: {e}", ledger_id=self.ledger_id)
        if not record:
            return None
        return self._record_to_htlc(native_id, record)

    def find_by_hashlock(self, hashlock: str) -> List[HTLC]:
        """HTLCs on the node locked against `hashlock`, in any status."""
        records = self._call("htlc_list", None, normalize_hex(hashlock)) or []
        return [self._record_to_htlc(str(r["htlc_id"]), r) for r in records]

    def _record_to_htlc(self, native_id: str, record: Dict[str, Any]) -> HTLC:
        amount = int(record["amount"])
        return HTLC(
            ledger_id=self.ledger_id,
            native_id=native_id,
            sender=record.get("sender", ""),
            receiver=record.get("receiver", ""),
            asset=record.get("asset", ""),
            amount=amount,
            locked_remaining=int(record.get("remaining", amount)),
            hashlock=normalize_hex(record["hashlock"]),
            hash_algorithm=self.hash_algorithm,
            timelock_expiry=self.clock.to_unix(int(record["expiry_height"])),
            status=_STATUS_MAP.get(record.get("status", "active"), HTLCStatus.LOCKED),
            confirmed=True,
            secret=normalize_hex(record["preimage"]) if record.get("preimage") else None,
        )

    def fetch_events(self, since: int) -> EventBatch:
        head = self.block_count() - self.finality_depth
        if head <= since:
            return EventBatch(events=[], cursor=since)
        events: List[Dict[str, Any]] = self._call("htlc_events", since + 1, head) or []
        events.sort(key=lambda e: (e["height"], e.get("index", 0)))
        return EventBatch(events=events, cursor=head)

    def normalize_event(self, raw: Dict[str, Any]) -> Optional[LedgerEvent]:
        try:
            event_type = EventType(raw["type"])
        except (KeyError, ValueError):
            log.warning(f"[{self.ledger_id}] Skipping unknown HTLC event: {raw}")
            return None

        native_id = raw["htlc_id"]
        event = LedgerEvent(
            ledger_id=self.ledger_id,
            native_id=native_id,
            event_type=event_type,
            event_id=f"{raw['txid']}:{raw.get('index', 0)}",
            cursor=int(raw["height"]),
            amount=raw.get("amount"),
        )
        if event_type == EventType.LOCKED:
            event.htlc = self._record_to_htlc(native_id, raw)
        elif event_type == EventType.CLAIMED:
            event.secret = normalize_hex(raw["preimage"])
        return event


def _txid(result) -> Optional[str]:
    if isinstance(result, dict):
        return result.get("txid")
    return result


def _from_config(config) -> RPCLedger:
    rpc = NodeRPC(config.rpc_url, config.rpc_user, config.rpc_password,
                  timeout=config.request_timeout)
    return RPCLedger(
        config.ledger_id,
        rpc,
        signer=config.resolver_address,
        hash_algorithm=config.hash_algorithm,
        finality_depth=config.finality_depth,
        block_time=config.block_time,
        supports_partial=config.supports_partial,
    )


register_adapter("rpc", _from_config)
