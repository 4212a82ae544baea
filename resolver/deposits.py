"""
Safety deposit accounting.

Resolver collateral per (ledger, asset): total_deposited, locked and
available = total_deposited - locked. Each accepted order locks
destination_amount * multiplier; the lock is released when the order
completes or its destination HTLC is refunded, or slashed to a counterparty
by an admin when the resolver failed to deliver.

Accounts and per-order locks live in the same KV backend as orders and are
updated with compare-and-set, so available never goes negative even with
several coordinator processes. A lock stays in the KV without expiry while
it holds collateral; once released or slashed it is kept for `retention`
seconds (the order retention) as an audit record, then dropped.
"""

import json
import math
import logging
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any, List, Callable

from .core import DEFAULT_DEPOSIT_MULTIPLIER, ORDER_RETENTION_SECONDS, now_ts
from .errors import InsufficientDeposit, InvariantBroken

log = logging.getLogger(__name__)

LOCK_LOCKED = "locked"
LOCK_RELEASED = "released"
LOCK_SLASHED = "slashed"


@dataclass
class DepositAccount:
    ledger_id: str
    asset: str
    total_deposited: int = 0
    locked: int = 0

    @property
    def available(self) -> int:
        return self.total_deposited - self.locked

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["available"] = self.available
        return data


@dataclass
class DepositLock:
    order_id: str
    ledger_id: str
    asset: str
    amount: int
    state: str = LOCK_LOCKED
    created_at: int = 0
    recipient: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SafetyDepositLedger:
    """Per-(ledger, asset) collateral with lock / unlock / slash per order."""

    def __init__(self, kv, multiplier: float = DEFAULT_DEPOSIT_MULTIPLIER,
                 cas_retries: int = 16, time_fn: Callable[[], int] = now_ts,
                 retention: int = ORDER_RETENTION_SECONDS):
        self.kv = kv
        self.retention = retention
        self.multiplier = multiplier
        self.cas_retries = cas_retries
        self.time_fn = time_fn

    @staticmethod
    def _account_key(ledger_id: str, asset: str) -> str:
        return f"deposit:acct:{ledger_id}:{asset}"

    @staticmethod
    def _lock_key(order_id: str) -> str:
        return f"deposit:lock:{order_id}"

    def required_deposit(self, amount: int, multiplier: Optional[float] = None) -> int:
        """Collateral needed to back `amount` (rounded up)."""
        multiplier = self.multiplier if multiplier is None else multiplier
        return int(math.ceil(amount * multiplier))

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    def account(self, ledger_id: str, asset: str) -> DepositAccount:
        return self._parse(ledger_id, asset, self.kv.get(self._account_key(ledger_id, asset)))

    @staticmethod
    def _parse(ledger_id: str, asset: str, raw: Optional[str]) -> DepositAccount:
        if raw is None:
            return DepositAccount(ledger_id, asset)
        data = json.loads(raw)
        return DepositAccount(ledger_id, asset, data["total_deposited"], data["locked"])

    def accounts(self) -> List[DepositAccount]:
        result = []
        for key in self.kv.scan("deposit:acct:"):
            _, _, ledger_id, asset = key.split(":", 3)
            result.append(self.account(ledger_id, asset))
        result.sort(key=lambda a: (a.ledger_id, a.asset))
        return result

    def _modify(self, ledger_id: str, asset: str,
                fn: Callable[[DepositAccount], None]) -> DepositAccount:
        key = self._account_key(ledger_id, asset)
        for _ in range(self.cas_retries):
            raw = self.kv.get(key)
            account = self._parse(ledger_id, asset, raw)
            fn(account)
            if account.locked < 0 or account.available < 0:
                raise ValueError(f"Deposit account {ledger_id}/{asset} would go negative")
            value = json.dumps({"total_deposited": account.total_deposited, "locked": account.locked})
            if self.kv.compare_and_set(key, raw, value):
                return account
        raise InvariantBroken(key, self.cas_retries)

    def deposit(self, ledger_id: str, asset: str, amount: int) -> DepositAccount:
        if amount <= 0:
            raise ValueError("Deposit amount must be positive")

        def _add(account: DepositAccount):
            account.total_deposited += amount

        account = self._modify(ledger_id, asset, _add)
        log.info(f"Safety deposit +{amount} on {ledger_id}/{asset} (available={account.available})")
        return account

    def withdraw(self, ledger_id: str, asset: str, amount: int) -> DepositAccount:
        """Take back unlocked collateral."""
        if amount <= 0:
            raise ValueError("Withdraw amount must be positive")

        def _sub(account: DepositAccount):
            if account.available < amount:
                raise InsufficientDeposit(ledger_id, asset, amount, account.available)
            account.total_deposited -= amount

        account = self._modify(ledger_id, asset, _sub)
        log.info(f"Safety deposit -{amount} on {ledger_id}/{asset} (available={account.available})")
        return account

    # -------------------------------------------------------------------------
    # Per-order locks
    # -------------------------------------------------------------------------

    def get_lock(self, order_id: str) -> Optional[DepositLock]:
        raw = self.kv.get(self._lock_key(order_id))
        return DepositLock(**json.loads(raw)) if raw else None

    def lock_deposit(self, order_id: str, ledger_id: str, asset: str, amount: int) -> DepositLock:
        """
        Move `amount` from available to locked for an order.

        Idempotent per order id: a second call returns the existing lock.

        Raises:
            InsufficientDeposit: available < amount
        """
        lock = DepositLock(order_id, ledger_id, asset, amount, created_at=self.time_fn())
        key = self._lock_key(order_id)
        if not self.kv.set_if_absent(key, json.dumps(lock.to_dict())):
            return self.get_lock(order_id)

        def _lock(account: DepositAccount):
            if account.available < amount:
                raise InsufficientDeposit(ledger_id, asset, amount, account.available)
            account.locked += amount

        try:
            self._modify(ledger_id, asset, _lock)
        except Exception:
            self.kv.delete(key)
            raise
        log.info(f"Safety deposit locked for {order_id}: {amount} on {ledger_id}/{asset}")
        return lock

    def _close_lock(self, order_id: str, state: str, recipient: Optional[str] = None,
                    slash: bool = False) -> Optional[DepositLock]:
        key = self._lock_key(order_id)
        raw = self.kv.get(key)
        if raw is None:
            return None
        lock = DepositLock(**json.loads(raw))
        if lock.state != LOCK_LOCKED:
            return None
        lock.state = state
        lock.recipient = recipient
        # Only the caller that flips the lock state touches the account
        if not self.kv.compare_and_set(key, raw, json.dumps(lock.to_dict()), self.retention):
            return None

        def _release(account: DepositAccount):
            account.locked -= lock.amount
            if slash:
                account.total_deposited -= lock.amount

        self._modify(lock.ledger_id, lock.asset, _release)
        return lock

    def unlock_deposit(self, order_id: str) -> Optional[DepositLock]:
        """Release an order's lock back to available. None if nothing was locked."""
        lock = self._close_lock(order_id, LOCK_RELEASED)
        if lock:
            log.info(f"Safety deposit unlocked for {order_id}: {lock.amount}")
        return lock

    def slash(self, order_id: str, recipient: str) -> Optional[DepositLock]:
        """Forfeit an order's locked collateral to `recipient`."""
        lock = self._close_lock(order_id, LOCK_SLASHED, recipient=recipient, slash=True)
        if lock:
            log.warning(f"Safety deposit SLASHED for {order_id}: {lock.amount} "
                        f"{lock.ledger_id}/{lock.asset} -> {recipient}")
        return lock

    def locks(self) -> List[DepositLock]:
        result = []
        for key in self.kv.scan("deposit:lock:"):
            lock = self.get_lock(key[len("deposit:lock:"):])
            if lock:
                result.append(lock)
        return result

    def stats(self) -> Dict[str, Any]:
        """Totals per ledger plus the per-account breakdown."""
        per_ledger: Dict[str, Dict[str, int]] = {}
        accounts = self.accounts()
        for account in accounts:
            totals = per_ledger.setdefault(account.ledger_id, {"total_deposited": 0, "locked": 0, "available": 0})
            totals["total_deposited"] += account.total_deposited
            totals["locked"] += account.locked
            totals["available"] += account.available
        locks = self.locks()
        return {
            "accounts": [a.to_dict() for a in accounts],
            "per_ledger": per_ledger,
            "active_locks": sum(1 for lock in locks if lock.state == LOCK_LOCKED),
            "slashed": sum(lock.amount for lock in locks if lock.state == LOCK_SLASHED),
        }
