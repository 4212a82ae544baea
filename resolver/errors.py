"""
Error taxonomy for the resolver.

Adapters raise TransientLedgerError / DeterministicRejection, the coordinator
raises PolicyViolation subclasses before any funds move, and the order store
raises InvariantBroken when compare-and-swap keeps losing.
"""

from typing import Optional


class ResolverError(Exception):
    """Base class for all resolver errors."""


# =============================================================================
# Ledger errors
# =============================================================================

class TransientLedgerError(ResolverError):
    """Network / RPC failure. Safe to retry with backoff."""

    def __init__(self, message: str, ledger_id: Optional[str] = None):
        super().__init__(message)
        self.ledger_id = ledger_id


class DeterministicRejection(ResolverError):
    """Contract-level rejection (wrong secret, already claimed, expired).

    Never retried: resubmitting the same call gets the same answer.
    """

    def __init__(self, message: str, ledger_id: Optional[str] = None,
                 native_id: Optional[str] = None):
        super().__init__(message)
        self.ledger_id = ledger_id
        self.native_id = native_id


# Adapter-facing names
LedgerUnavailable = TransientLedgerError
Rejected = DeterministicRejection


# =============================================================================
# Policy errors (raised before any funds move)
# =============================================================================

class PolicyViolation(ResolverError):
    """Order or action refused by resolver policy."""

    reason = "PolicyViolation"


class UnsafeTimelockSkew(PolicyViolation):
    """Destination timelock does not leave the safety margin before the source timelock."""

    reason = "UnsafeTimelockSkew"

    def __init__(self, source_timelock: int, destination_timelock: int, safety_margin: int):
        super().__init__(
            f"Unsafe timelock skew: destination={destination_timelock} "
            f"source={source_timelock} margin={safety_margin}s "
            f"(need destination <= {source_timelock - safety_margin})"
        )
        self.source_timelock = source_timelock
        self.destination_timelock = destination_timelock
        self.safety_margin = safety_margin


class InvalidPartialAmount(PolicyViolation):
    """Partial claim below the minimum or above what is still locked."""

    reason = "InvalidPartialAmount"

    def __init__(self, amount: int, locked_remaining: int, min_partial_amount: int):
        super().__init__(
            f"Invalid partial amount {amount}: remaining={locked_remaining}, "
            f"min={min_partial_amount}"
        )
        self.amount = amount
        self.locked_remaining = locked_remaining
        self.min_partial_amount = min_partial_amount


class InsufficientDeposit(PolicyViolation):
    """Not enough available safety deposit to back an order."""

    reason = "InsufficientDeposit"

    def __init__(self, ledger_id: str, asset: str, requested: int, available: int):
        super().__init__(
            f"Insufficient safety deposit on {ledger_id}/{asset}: "
            f"requested={requested} available={available}"
        )
        self.ledger_id = ledger_id
        self.asset = asset
        self.requested = requested
        self.available = available


# =============================================================================
# Internal errors
# =============================================================================

class InvariantBroken(ResolverError):
    """Compare-and-swap retries exhausted (contention or a stuck writer)."""

    def __init__(self, order_id: str, attempts: int):
        super().__init__(f"CAS on order {order_id} lost {attempts} times, manual intervention needed")
        self.order_id = order_id
        self.attempts = attempts


class UnsupportedAlgorithm(ResolverError):
    """Hash algorithm is not in the commitment registry."""

    def __init__(self, algorithm: str):
        super().__init__(f"Unsupported hash algorithm: {algorithm}")
        self.algorithm = algorithm


class OrderNotFound(ResolverError):
    def __init__(self, order_id: str):
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class InvalidTransition(ResolverError):
    """Requested state change is not allowed from the order's current state."""
