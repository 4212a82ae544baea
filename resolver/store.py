"""
Order store on top of a key-value backend with TTL and conditional writes.

compare_and_swap is the only mutation path for an existing order: it checks
the expected status and version, then conditionally replaces the stored
record. Two writers racing on one order cannot both win; the loser re-reads
and retries through update().

Keys:
    order:<order_id>                -> order JSON
    htlc:<ledger_id>:<native_id>    -> order_id
    hashlock:<ledger_id>:<hashlock> -> order_id (first live order using that hashlock)
"""

import os
import json
import logging
import threading
from typing import Optional, Dict, Any, List, Callable, Protocol, Tuple

import redis

from .core import Order, OrderStatus, HTLCStatus, ORDER_TERMINAL_STATES, ORDER_RETENTION_SECONDS, now_ts
from .errors import InvariantBroken, OrderNotFound

log = logging.getLogger(__name__)


# =============================================================================
# KV backends
# =============================================================================

class KVBackend(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl: Optional[int] = None): ...

    def set_if_absent(self, key: str, value: str, ttl: Optional[int] = None) -> bool: ...

    def compare_and_set(self, key: str, expected: Optional[str], value: str,
                        ttl: Optional[int] = None) -> bool: ...

    def delete(self, key: str): ...

    def scan(self, prefix: str) -> List[str]: ...


class MemoryKV:
    """In-process KV store with lazy expiry and an optional JSON snapshot file."""

    def __init__(self, path: str = "", time_fn: Callable[[], int] = now_ts):
        self.path = path
        self.time_fn = time_fn
        self._data: Dict[str, Tuple[str, Optional[int]]] = {}
        self._lock = threading.Lock()
        if path:
            self._load()

    def _load(self):
        if not os.path.exists(self.path):
            return
        with open(self.path) as f:
            raw = json.load(f)
        self._data = {k: (v["value"], v.get("expires_at")) for k, v in raw.items()}
        log.info(f"Loaded {len(self._data)} keys from {self.path}")

    def _save(self):
        if not self.path:
            return
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp = f"{self.path}.tmp"
        with open(tmp, "w") as f:
            json.dump({k: {"value": v, "expires_at": exp} for k, (v, exp) in self._data.items()}, f)
        os.replace(tmp, self.path)

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self.time_fn() >= expires_at:
            del self._data[key]
            return None
        return value

    def _put(self, key: str, value: str, ttl: Optional[int]):
        expires_at = self.time_fn() + ttl if ttl else None
        self._data[key] = (value, expires_at)
        self._save()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: str, ttl: Optional[int] = None):
        with self._lock:
            self._put(key, value, ttl)

    def set_if_absent(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._put(key, value, ttl)
            return True

    def compare_and_set(self, key: str, expected: Optional[str], value: str,
                        ttl: Optional[int] = None) -> bool:
        with self._lock:
            if self._live(key) != expected:
                return False
            self._put(key, value, ttl)
            return True

    def delete(self, key: str):
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._save()

    def scan(self, prefix: str) -> List[str]:
        with self._lock:
            return [k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None]


class RedisKV:
    """Redis-backed KV. Conditional writes run as a Lua script."""

    CAS_SCRIPT = """
        local current = redis.call('GET', KEYS[1])
        if ARGV[4] == '1' then
            if current then
                return 0
            end
        elseif current ~= ARGV[1] then
            return 0
        end
        if tonumber(ARGV[3]) > 0 then
            redis.call('SET', KEYS[1], ARGV[2], 'EX', ARGV[3])
        else
            redis.call('SET', KEYS[1], ARGV[2])
        end
        return 1
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", client=None):
        self.redis = client or redis.from_url(redis_url, decode_responses=True)
        self._cas = self.redis.register_script(self.CAS_SCRIPT)

    def get(self, key: str) -> Optional[str]:
        return self.redis.get(key)

    def set(self, key: str, value: str, ttl: Optional[int] = None):
        self.redis.set(key, value, ex=ttl or None)

    def set_if_absent(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        return bool(self.redis.set(key, value, nx=True, ex=ttl or None))

    def compare_and_set(self, key: str, expected: Optional[str], value: str,
                        ttl: Optional[int] = None) -> bool:
        expect_absent = "1" if expected is None else "0"
        result = self._cas(keys=[key], args=[expected or "", value, int(ttl or 0), expect_absent])
        return int(result) == 1

    def delete(self, key: str):
        self.redis.delete(key)

    def scan(self, prefix: str) -> List[str]:
        return list(self.redis.scan_iter(match=f"{prefix}*"))


def build_kv(redis_url: str = "", path: str = "") -> KVBackend:
    if redis_url:
        log.info(f"Using Redis store at {redis_url}")
        return RedisKV(redis_url)
    log.info(f"Using in-memory store{' (snapshot ' + path + ')' if path else ''}")
    return MemoryKV(path)


# =============================================================================
# Order store
# =============================================================================

class OrderStore:
    """Durable order records with CAS updates, secondary indexes and expiry sweep."""

    def __init__(self, kv: KVBackend, retention: int = ORDER_RETENTION_SECONDS,
                 cas_retries: int = 8, time_fn: Callable[[], int] = now_ts):
        self.kv = kv
        self.retention = retention
        self.cas_retries = cas_retries
        self.time_fn = time_fn

    @staticmethod
    def _key(order_id: str) -> str:
        return f"order:{order_id}"

    def _ttl(self, order: Order) -> int:
        return max(1, order.expires_at - self.time_fn()) + self.retention

    @staticmethod
    def _encode(order: Order) -> str:
        return json.dumps(order.to_dict(), sort_keys=True)

    def _index(self, order: Order):
        ttl = self._ttl(order)
        for htlc in (order.source_htlc, order.destination_htlc):
            if htlc is not None:
                self.kv.set(f"htlc:{htlc.ledger_id}:{htlc.native_id}", order.order_id, ttl)
        for ledger_id, hashlock in order.hashlocks.items():
            key = f"hashlock:{ledger_id}:{hashlock}"
            if not order.is_terminal:
                self.kv.set_if_absent(key, order.order_id, ttl)
            elif self.kv.get(key) == order.order_id:
                self.kv.delete(key)

    def create(self, order: Order) -> Order:
        """Persist a new order. Raises ValueError if the id already exists."""
        order.updated_at = self.time_fn()
        if not self.kv.set_if_absent(self._key(order.order_id), self._encode(order), self._ttl(order)):
            raise ValueError(f"Order {order.order_id} already exists")
        self._index(order)
        log.info(f"Order {order.order_id} created ({order.source_ledger} -> {order.destination_ledger})")
        return order

    def get(self, order_id: str) -> Optional[Order]:
        raw = self.kv.get(self._key(order_id))
        if raw is None:
            return None
        return Order.from_dict(json.loads(raw))

    def get_by_ledger_htlc(self, ledger_id: str, native_id: str) -> Optional[Order]:
        order_id = self.kv.get(f"htlc:{ledger_id}:{native_id}")
        return self.get(order_id) if order_id else None

    def find_by_hashlock(self, ledger_id: str, hashlock: str) -> Optional[Order]:
        """Live order committed to this hashlock on this ledger."""
        order_id = self.kv.get(f"hashlock:{ledger_id}:{hashlock}")
        return self.get(order_id) if order_id else None

    def compare_and_swap(self, order_id: str, expected_status: OrderStatus, new_order: Order) -> bool:
        """
        Replace an order if it is still in expected_status at new_order.version.

        On success new_order carries the stored version and timestamp.
        """
        key = self._key(order_id)
        raw = self.kv.get(key)
        if raw is None:
            raise OrderNotFound(order_id)

        current = Order.from_dict(json.loads(raw))
        if current.status != expected_status or current.version != new_order.version:
            return False

        stored = new_order.copy()
        stored.version = current.version + 1
        stored.updated_at = self.time_fn()
        if not self.kv.compare_and_set(key, raw, self._encode(stored), self._ttl(stored)):
            return False

        new_order.version = stored.version
        new_order.updated_at = stored.updated_at
        self._index(stored)
        if current.status != stored.status:
            log.info(f"Order {order_id}: {current.status.value} -> {stored.status.value}")
        return True

    def update(self, order_id: str, mutate: Callable[[Order], Optional[bool]],
               retries: Optional[int] = None) -> Order:
        """
        Read / mutate / CAS loop.

        mutate edits a fresh copy in place; returning False means "nothing to
        do" and the current order is returned unchanged.

        Raises:
            OrderNotFound: unknown order id
            InvariantBroken: CAS lost more than `retries` times
        """
        attempts = retries or self.cas_retries
        for _ in range(attempts):
            current = self.get(order_id)
            if current is None:
                raise OrderNotFound(order_id)
            candidate = current.copy()
            if mutate(candidate) is False:
                return current
            if self.compare_and_swap(order_id, current.status, candidate):
                return candidate
        log.error(f"CAS retries exhausted for order {order_id} ({attempts} attempts)")
        raise InvariantBroken(order_id, attempts)

    def list_all(self) -> List[Order]:
        orders = []
        for key in self.kv.scan("order:"):
            order = self.get(key[len("order:"):])
            if order is not None:
                orders.append(order)
        orders.sort(key=lambda o: o.created_at)
        return orders

    def list_active(self) -> List[Order]:
        return [o for o in self.list_all() if not o.is_terminal]

    def sweep_expired(self, now: Optional[int] = None) -> List[Order]:
        """Mark non-terminal orders past their source timelock or lifetime as EXPIRED."""
        now = self.time_fn() if now is None else now
        swept = []

        def _expire(order: Order):
            if order.is_terminal:
                return False
            source_timelock = order.source_timelock
            if not ((source_timelock is not None and now >= source_timelock) or now >= order.expires_at):
                return False
            order.status = OrderStatus.EXPIRED
            order.reason = order.reason or "expired"
            for htlc in (order.source_htlc, order.destination_htlc):
                if htlc is not None and htlc.status in (HTLCStatus.LOCKED, HTLCStatus.PARTIALLY_CLAIMED) \
                        and now >= htlc.timelock_expiry:
                    htlc.status = HTLCStatus.EXPIRED

        for order in self.list_active():
            try:
                updated = self.update(order.order_id, _expire)
            except InvariantBroken:
                continue
            if updated.status == OrderStatus.EXPIRED and order.status != OrderStatus.EXPIRED:
                swept.append(updated)

        if swept:
            log.info(f"Expiry sweep: {len(swept)} order(s) expired")
        return swept

    def metrics(self) -> Dict[str, Any]:
        orders = self.list_all()
        counts = {status.value: 0 for status in OrderStatus}
        for order in orders:
            counts[order.status.value] += 1

        completed = [o for o in orders if o.status == OrderStatus.COMPLETED]
        finished = sum(1 for o in orders if o.status in ORDER_TERMINAL_STATES)
        return {
            "total_orders": len(orders),
            "active_orders": sum(1 for o in orders if not o.is_terminal),
            "completed_orders": counts[OrderStatus.COMPLETED.value],
            "expired_orders": counts[OrderStatus.EXPIRED.value],
            "cancelled_orders": counts[OrderStatus.CANCELLED.value],
            "by_status": counts,
            "total_volume": sum(o.destination_amount for o in completed),
            "success_rate": round(100.0 * len(completed) / finished, 2) if finished else 0.0,
        }
