"""
Core types for the cross-chain HTLC resolver.

An Order spans exactly two HTLCs (source and destination) that commit to the
same secret, possibly under different hash algorithms.
"""

import copy
import time
import uuid
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from .errors import UnsafeTimelockSkew, InvalidPartialAmount, InvalidTransition


class HTLCStatus(Enum):
    """Ledger-side lock lifecycle."""
    LOCKED = "locked"                       # Funds locked, nothing claimed yet
    PARTIALLY_CLAIMED = "partially_claimed" # One or more partial claims, remainder locked
    CLAIMED = "claimed"                     # locked_remaining reached zero
    REFUNDED = "refunded"                   # Sender took the remainder back
    EXPIRED = "expired"                     # Timelock passed, refund pending


class OrderStatus(Enum):
    """Cross-ledger order lifecycle."""
    CREATED = "created"                     # Order known, source lock not seen yet
    SOURCE_LOCKED = "source_locked"         # Source HTLC observed
    DESTINATION_LOCKED = "destination_locked"  # Resolver locked on destination
    SECRET_REVEALED = "secret_revealed"     # Secret seen on one side, relay in progress
    COMPLETED = "completed"                 # Both HTLCs fully claimed
    EXPIRED = "expired"                     # Source timelock passed before completion
    CANCELLED = "cancelled"                 # Rejected by policy or ledger


class EventType(Enum):
    LOCKED = "locked"
    CLAIMED = "claimed"
    REFUNDED = "refunded"


HTLC_TERMINAL_STATES = {HTLCStatus.CLAIMED, HTLCStatus.REFUNDED}
HTLC_OPEN_STATES = {HTLCStatus.LOCKED, HTLCStatus.PARTIALLY_CLAIMED, HTLCStatus.EXPIRED}
ORDER_TERMINAL_STATES = {OrderStatus.COMPLETED, OrderStatus.EXPIRED, OrderStatus.CANCELLED}

SOURCE = "source"
DESTINATION = "destination"


# =============================================================================
# Constants
# =============================================================================

# Minimum gap between destination and source timelocks: destination finality
# plus relay latency. Boundary inclusive.
DEFAULT_SAFETY_MARGIN_SECONDS = 1800

# requiredDeposit = destination_amount * multiplier
DEFAULT_DEPOSIT_MULTIPLIER = 1.5

MAX_ORDER_LIFETIME_SECONDS = 86400      # 24h
ORDER_RETENTION_SECONDS = 7 * 86400     # terminal records kept for audit

DEFAULT_HASH_ALGORITHM = "sha256"


def now_ts() -> int:
    return int(time.time())


def new_order_id() -> str:
    return f"ord_{uuid.uuid4().hex[:16]}"


# =============================================================================
# HTLC
# =============================================================================

@dataclass
class HTLC:
    """A single ledger-side lock. Amounts are integer minor units."""
    ledger_id: str
    native_id: str
    sender: str
    receiver: str
    asset: str
    amount: int
    hashlock: str           # lowercase hex, no 0x
    hash_algorithm: str
    timelock_expiry: int    # Unix seconds
    locked_remaining: Optional[int] = None
    status: HTLCStatus = HTLCStatus.LOCKED

    # Bookkeeping
    confirmed: bool = False             # lock observed by a monitor
    secret: Optional[str] = None        # revealed preimage (hex)
    applied_claims: List[str] = field(default_factory=list)
    claim_history: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self):
        if self.locked_remaining is None:
            self.locked_remaining = self.amount
        if self.locked_remaining > self.amount:
            raise ValueError(
                f"locked_remaining {self.locked_remaining} exceeds amount {self.amount}"
            )

    @property
    def is_terminal(self) -> bool:
        return self.status in HTLC_TERMINAL_STATES

    @property
    def claimed_total(self) -> int:
        return sum(c["amount"] for c in self.claim_history)

    def apply_claim(self, amount: Optional[int] = None, min_partial: Optional[int] = None,
                    event_id: Optional[str] = None) -> bool:
        """
        Apply a (partial) claim to this HTLC.

        Args:
            amount: amount claimed; None means the whole remainder
            min_partial: minimum partial claim; a claim of exactly the
                remainder is always allowed
            event_id: ledger event id, claims are applied once per id

        Returns:
            False if this event id was already applied, True otherwise

        Raises:
            InvalidPartialAmount: amount out of range or HTLC already terminal
        """
        if event_id and event_id in self.applied_claims:
            return False

        if self.is_terminal:
            raise InvalidPartialAmount(amount or 0, 0, min_partial or 0)

        if amount is None:
            amount = self.locked_remaining

        if amount <= 0 or amount > self.locked_remaining:
            raise InvalidPartialAmount(amount, self.locked_remaining, min_partial or 0)
        if min_partial and amount < min_partial and amount != self.locked_remaining:
            raise InvalidPartialAmount(amount, self.locked_remaining, min_partial)

        self.locked_remaining -= amount
        self.status = HTLCStatus.CLAIMED if self.locked_remaining == 0 else HTLCStatus.PARTIALLY_CLAIMED
        self.claim_history.append({"event_id": event_id, "amount": amount})
        if event_id:
            self.applied_claims.append(event_id)
        return True

    def mark_refunded(self):
        # Remainder stays as-is (frozen), it went back to the sender
        if self.status == HTLCStatus.CLAIMED:
            raise InvalidTransition(f"HTLC {self.native_id} already claimed, cannot refund")
        self.status = HTLCStatus.REFUNDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ledger_id": self.ledger_id,
            "native_id": self.native_id,
            "sender": self.sender,
            "receiver": self.receiver,
            "asset": self.asset,
            "amount": self.amount,
            "locked_remaining": self.locked_remaining,
            "hashlock": self.hashlock,
            "hash_algorithm": self.hash_algorithm,
            "timelock_expiry": self.timelock_expiry,
            "status": self.status.value,
            "confirmed": self.confirmed,
            "secret": self.secret,
            "applied_claims": list(self.applied_claims),
            "claim_history": [dict(c) for c in self.claim_history],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HTLC":
        return cls(
            ledger_id=data["ledger_id"],
            native_id=data["native_id"],
            sender=data.get("sender", ""),
            receiver=data.get("receiver", ""),
            asset=data.get("asset", ""),
            amount=int(data["amount"]),
            locked_remaining=int(data.get("locked_remaining", data["amount"])),
            hashlock=data["hashlock"],
            hash_algorithm=data.get("hash_algorithm", DEFAULT_HASH_ALGORITHM),
            timelock_expiry=int(data["timelock_expiry"]),
            status=HTLCStatus(data.get("status", HTLCStatus.LOCKED.value)),
            confirmed=data.get("confirmed", False),
            secret=data.get("secret"),
            applied_claims=list(data.get("applied_claims", [])),
            claim_history=list(data.get("claim_history", [])),
        )


# =============================================================================
# Order
# =============================================================================

@dataclass
class Order:
    """Cross-ledger swap spanning a source and a destination HTLC."""
    order_id: str
    secret_hash: str                    # source-ledger hashlock, correlation key
    source_ledger: str
    destination_ledger: str
    hashlocks: Dict[str, str]           # ledger_id -> hashlock used on that ledger
    hash_algorithms: Dict[str, str]     # ledger_id -> algorithm

    # Destination terms (what the resolver locks)
    destination_receiver: str = ""
    destination_asset: str = ""
    destination_amount: int = 0
    destination_timelock: Optional[int] = None

    # Expected source terms (optional, checked when the lock is observed)
    source_amount: Optional[int] = None
    source_asset: Optional[str] = None

    min_partial_amount: int = 0
    source_htlc: Optional[HTLC] = None
    destination_htlc: Optional[HTLC] = None
    safety_deposit: Optional[Dict[str, Any]] = None   # {ledger_id, asset, amount}

    status: OrderStatus = OrderStatus.CREATED
    reason: Optional[str] = None
    secret: Optional[str] = None
    pending_action: Optional[str] = None
    actions: Dict[str, Dict[str, Any]] = field(default_factory=dict)   # relay action -> {state, tx_id, ...}
    alerts: List[str] = field(default_factory=list)

    created_at: int = 0
    updated_at: int = 0
    expires_at: int = 0
    version: int = 0

    def __post_init__(self):
        if not self.created_at:
            self.created_at = now_ts()
        if not self.updated_at:
            self.updated_at = self.created_at
        if not self.expires_at:
            self.expires_at = self.created_at + MAX_ORDER_LIFETIME_SECONDS

    @property
    def is_terminal(self) -> bool:
        return self.status in ORDER_TERMINAL_STATES

    @property
    def source_timelock(self) -> Optional[int]:
        return self.source_htlc.timelock_expiry if self.source_htlc else None

    def htlc(self, side: str) -> Optional[HTLC]:
        return self.source_htlc if side == SOURCE else self.destination_htlc

    def ledger(self, side: str) -> str:
        return self.source_ledger if side == SOURCE else self.destination_ledger

    def side_of(self, ledger_id: str, native_id: str) -> Optional[str]:
        """Which side of this order a (ledger, native id) refers to, if any."""
        for side in (SOURCE, DESTINATION):
            htlc = self.htlc(side)
            if htlc and htlc.ledger_id == ledger_id and htlc.native_id == native_id:
                return side
        return None

    def fully_claimed(self) -> bool:
        return all(
            h is not None and h.status == HTLCStatus.CLAIMED and h.locked_remaining == 0
            for h in (self.source_htlc, self.destination_htlc)
        )

    def copy(self) -> "Order":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "secret_hash": self.secret_hash,
            "source_ledger": self.source_ledger,
            "destination_ledger": self.destination_ledger,
            "hashlocks": dict(self.hashlocks),
            "hash_algorithms": dict(self.hash_algorithms),
            "destination_receiver": self.destination_receiver,
            "destination_asset": self.destination_asset,
            "destination_amount": self.destination_amount,
            "destination_timelock": self.destination_timelock,
            "source_amount": self.source_amount,
            "source_asset": self.source_asset,
            "min_partial_amount": self.min_partial_amount,
            "source_htlc": self.source_htlc.to_dict() if self.source_htlc else None,
            "destination_htlc": self.destination_htlc.to_dict() if self.destination_htlc else None,
            "safety_deposit": dict(self.safety_deposit) if self.safety_deposit else None,
            "status": self.status.value,
            "reason": self.reason,
            "secret": self.secret,
            "pending_action": self.pending_action,
            "actions": {k: dict(v) for k, v in self.actions.items()},
            "alerts": list(self.alerts),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "expires_at": self.expires_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        return cls(
            order_id=data["order_id"],
            secret_hash=data["secret_hash"],
            source_ledger=data["source_ledger"],
            destination_ledger=data["destination_ledger"],
            hashlocks=dict(data.get("hashlocks", {})),
            hash_algorithms=dict(data.get("hash_algorithms", {})),
            destination_receiver=data.get("destination_receiver", ""),
            destination_asset=data.get("destination_asset", ""),
            destination_amount=int(data.get("destination_amount", 0)),
            destination_timelock=data.get("destination_timelock"),
            source_amount=data.get("source_amount"),
            source_asset=data.get("source_asset"),
            min_partial_amount=int(data.get("min_partial_amount", 0)),
            source_htlc=HTLC.from_dict(data["source_htlc"]) if data.get("source_htlc") else None,
            destination_htlc=(HTLC.from_dict(data["destination_htlc"])
                              if data.get("destination_htlc") else None),
            safety_deposit=data.get("safety_deposit"),
            status=OrderStatus(data.get("status", OrderStatus.CREATED.value)),
            reason=data.get("reason"),
            secret=data.get("secret"),
            pending_action=data.get("pending_action"),
            actions={k: dict(v) for k, v in data.get("actions", {}).items()},
            alerts=list(data.get("alerts", [])),
            created_at=int(data.get("created_at", 0)),
            updated_at=int(data.get("updated_at", 0)),
            expires_at=int(data.get("expires_at", 0)),
            version=int(data.get("version", 0)),
        )


# =============================================================================
# Normalized ledger events
# =============================================================================

@dataclass
class LedgerEvent:
    """Normalized Locked / Claimed / Refunded event from any ledger."""
    ledger_id: str
    native_id: str
    event_type: EventType
    event_id: str = ""                  # e.g. "<tx_hash>:<log_index>"
    cursor: int = 0                     # block height / sequence to checkpoint
    htlc: Optional[HTLC] = None         # lock snapshot (Locked events)
    secret: Optional[str] = None        # revealed preimage (Claimed events)
    amount: Optional[int] = None        # claimed amount (Claimed events)
    timestamp: int = 0

    @property
    def idempotency_key(self) -> str:
        # event_id is part of the key so several partial claims on one HTLC
        # are not collapsed into one
        return f"{self.ledger_id}:{self.native_id}:{self.event_type.value}:{self.event_id}"


# =============================================================================
# Timelock policy
# =============================================================================

def validate_timelock_asymmetry(source_timelock: int, destination_timelock: int,
                                safety_margin: int = DEFAULT_SAFETY_MARGIN_SECONDS) -> bool:
    """Check destination_timelock <= source_timelock - safety_margin.

    Boundary inclusive: a skew of exactly safety_margin is accepted.

    Returns True if valid, raises UnsafeTimelockSkew if not.
    """
    if destination_timelock > source_timelock - safety_margin:
        raise UnsafeTimelockSkew(source_timelock, destination_timelock, safety_margin)
    return True
