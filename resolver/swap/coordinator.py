"""
Swap coordinator: the cross-ledger order state machine and secret relay.

Flow:
    CREATED -> SOURCE_LOCKED          source Locked event observed
    SOURCE_LOCKED -> DESTINATION_LOCKED
                                      timelock asymmetry checked, safety
                                      deposit locked, resolver locks on the
                                      destination ledger
    DESTINATION_LOCKED -> SECRET_REVEALED
                                      Claimed{secret} on either HTLC; the
                                      secret is relayed to the other HTLC
    SECRET_REVEALED -> COMPLETED      both HTLCs observed fully claimed
    * -> EXPIRED                      sweep once the source timelock passed;
                                      open HTLCs are refunded
    EXPIRED -> COMPLETED              a claim submitted in time confirms after
                                      the sweep and settles both HTLCs
    CREATED/SOURCE_LOCKED -> CANCELLED
                                      policy violation or ledger rejection

Every transition is persisted through OrderStore.update (CAS) before the
ledger action it leads to is submitted.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Callable

from ..core import (
    HTLC, HTLCStatus, Order, OrderStatus, EventType, LedgerEvent,
    HTLC_OPEN_STATES, SOURCE, DESTINATION, new_order_id, now_ts,
    validate_timelock_asymmetry,
)
from ..commitment import verify, normalize_hex
from ..config import ResolverConfig
from ..deposits import SafetyDepositLedger, LOCK_LOCKED
from ..errors import (
    DeterministicRejection, TransientLedgerError, UnsafeTimelockSkew,
    InsufficientDeposit, InvalidPartialAmount, InvalidTransition, OrderNotFound,
)
from ..store import OrderStore
from .relay import (
    ActionLocks, SubmissionSequencer, call_with_retry,
    LOCK_DESTINATION, CLAIM_SOURCE, CLAIM_DESTINATION, REFUND_SOURCE, REFUND_DESTINATION,
)

log = logging.getLogger(__name__)

ACTION_PENDING = "pending"
ACTION_SUBMITTED = "submitted"
ACTION_STALLED = "stalled"
ACTION_FAILED = "failed"
ACTION_ABANDONED = "abandoned"

_CLAIM_ACTION = {SOURCE: CLAIM_SOURCE, DESTINATION: CLAIM_DESTINATION}
_REFUND_ACTION = {SOURCE: REFUND_SOURCE, DESTINATION: REFUND_DESTINATION}


def _other(side: str) -> str:
    return DESTINATION if side == SOURCE else SOURCE


def _needs_relay(order: Order, side: str) -> bool:
    """Whether the resolver should claim `side` with the revealed secret.

    The source remainder is always ours to claim. The destination is only
    claimed for the counterparty while nothing was claimed there yet: once
    they claimed, the secret is already public on that ledger and the
    remainder is theirs to take in whatever fills they choose.
    """
    htlc = order.htlc(side)
    if htlc is None:
        return False
    if side == SOURCE:
        return htlc.status in (HTLCStatus.LOCKED, HTLCStatus.PARTIALLY_CLAIMED)
    return htlc.status == HTLCStatus.LOCKED


def _mark_destination_locked(order: Order, htlc: HTLC, at: int):
    order.destination_htlc = htlc
    order.status = OrderStatus.DESTINATION_LOCKED
    order.pending_action = None
    entry = dict(order.actions.get(LOCK_DESTINATION, {}))
    entry.update(state=ACTION_SUBMITTED, at=at, native_id=htlc.native_id)
    order.actions[LOCK_DESTINATION] = entry


@dataclass
class OrderRequest:
    """Order announcement: what the resolver will lock once the source lock shows up."""
    source_ledger: str
    destination_ledger: str
    source_hashlock: str
    destination_receiver: str
    destination_asset: str
    destination_amount: int
    destination_timelock: int
    destination_hashlock: Optional[str] = None   # required when the ledgers hash differently
    source_timelock: Optional[int] = None        # expected, lets the skew check run up front
    source_amount: Optional[int] = None
    source_asset: Optional[str] = None
    min_partial_amount: int = 0
    order_id: Optional[str] = None


class SwapCoordinator:
    """
    Consumes normalized ledger events and drives orders to completion.

    Args:
        store: order store (single source of truth)
        deposits: safety deposit ledger
        adapters: ledger_id -> LedgerAdapter
        config: resolver configuration
        executor: concurrent.futures executor for relay actions; None runs
            them inline (tests, single-threaded tools)
    """

    def __init__(self, store: OrderStore, deposits: SafetyDepositLedger,
                 adapters: Dict[str, Any], config: ResolverConfig = None,
                 executor=None, time_fn: Callable[[], int] = now_ts,
                 sleep: Optional[Callable[[float], None]] = None):
        self.store = store
        self.deposits = deposits
        self.adapters = adapters
        self.config = config or ResolverConfig()
        self.executor = executor
        self.time_fn = time_fn
        self.sleep = sleep or time.sleep
        self.action_locks = ActionLocks(store.kv)
        self.sequencer = SubmissionSequencer()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _adapter(self, ledger_id: str):
        adapter = self.adapters.get(ledger_id)
        if adapter is None:
            raise ValueError(f"Ledger not configured: {ledger_id}")
        return adapter

    def _submit(self, fn: Callable, *args):
        """Run a relay action on the executor (or inline)."""
        if self.executor is None:
            return self._guarded(fn, *args)
        return self.executor.submit(self._guarded, fn, *args)

    def _guarded(self, fn: Callable, *args):
        try:
            return fn(*args)
        except Exception:
            log.exception(f"Relay action {fn.__name__}{args} failed")
            raise

    def _ledger_call(self, ledger_id: str, what: str, fn: Callable[[], Any]) -> Any:
        """Serialize per signer and retry transient failures."""
        adapter = self._adapter(ledger_id)

        def _attempt():
            with self.sequencer.slot(ledger_id, adapter.signer):
                return fn()

        return call_with_retry(
            _attempt,
            attempts=self.config.relay_max_attempts,
            backoff_initial=self.config.relay_backoff_initial,
            backoff_max=self.config.relay_backoff_max,
            what=f"[{ledger_id}] {what}",
            sleep=self.sleep,
        )

    def _set_action(self, order_id: str, action: str, state: str, **extra) -> Order:
        def _mark(order: Order):
            entry = dict(order.actions.get(action, {}))
            entry.update(extra)
            entry["state"] = state
            entry["at"] = self.time_fn()
            if state == ACTION_PENDING:
                entry["attempts"] = entry.get("attempts", 0) + 1
                order.pending_action = action
            elif order.pending_action == action:
                order.pending_action = None
            if state == ACTION_STALLED:
                order.alerts.append(f"stalled: {action} ({extra.get('error', '')})")
            order.actions[action] = entry

        return self.store.update(order_id, _mark)

    # =========================================================================
    # Order creation / cancellation
    # =========================================================================

    def create_order(self, request: OrderRequest) -> Order:
        """
        Validate and persist an order request.

        Raises:
            UnsafeTimelockSkew: destination timelock too close to the source timelock
            ValueError: unknown ledgers, bad amounts, missing hashlock
        """
        if request.source_ledger == request.destination_ledger:
            raise ValueError("Source and destination ledgers must differ")
        source = self._adapter(request.source_ledger)
        destination = self._adapter(request.destination_ledger)

        if request.destination_amount <= 0:
            raise ValueError("destination_amount must be positive")
        if request.min_partial_amount < 0 or request.min_partial_amount > request.destination_amount:
            raise ValueError("min_partial_amount must be within [0, destination_amount]")

        now = self.time_fn()
        if request.destination_timelock <= now:
            raise ValueError("destination_timelock is in the past")
        if request.source_timelock is not None:
            validate_timelock_asymmetry(request.source_timelock, request.destination_timelock,
                                        self.config.safety_margin)

        source_hashlock = normalize_hex(request.source_hashlock)
        if request.destination_hashlock:
            destination_hashlock = normalize_hex(request.destination_hashlock)
        elif source.hash_algorithm == destination.hash_algorithm:
            destination_hashlock = source_hashlock
        else:
            raise ValueError(
                f"destination_hashlock required: {request.source_ledger} uses "
                f"{source.hash_algorithm}, {request.destination_ledger} uses {destination.hash_algorithm}"
            )

        existing = self.store.find_by_hashlock(request.source_ledger, source_hashlock)
        if existing is not None:
            raise ValueError(f"Hashlock already used by live order {existing.order_id}")

        order = Order(
            order_id=request.order_id or new_order_id(),
            secret_hash=source_hashlock,
            source_ledger=request.source_ledger,
            destination_ledger=request.destination_ledger,
            hashlocks={request.source_ledger: source_hashlock,
                       request.destination_ledger: destination_hashlock},
            hash_algorithms={request.source_ledger: source.hash_algorithm,
                             request.destination_ledger: destination.hash_algorithm},
            destination_receiver=request.destination_receiver,
            destination_asset=request.destination_asset,
            destination_amount=request.destination_amount,
            destination_timelock=request.destination_timelock,
            source_amount=request.source_amount,
            source_asset=request.source_asset,
            min_partial_amount=request.min_partial_amount,
            created_at=now,
            expires_at=now + self.config.max_order_lifetime,
        )
        return self.store.create(order)

    def cancel(self, order_id: str, reason: str) -> Order:
        """Cancel an order that has not reached the destination lock yet."""
        def _cancel(order: Order):
            if order.status == OrderStatus.CANCELLED:
                return False
            if order.status not in (OrderStatus.CREATED, OrderStatus.SOURCE_LOCKED):
                raise InvalidTransition(f"Cannot cancel order {order_id} in {order.status.value}")
            order.status = OrderStatus.CANCELLED
            order.reason = reason
            order.pending_action = None

        order = self.store.update(order_id, _cancel)
        if order.safety_deposit:
            self.deposits.unlock_deposit(order_id)
        log.warning(f"Order {order_id} cancelled: {reason}")
        return order

    # =========================================================================
    # Event handling
    # =========================================================================

    def handle_event(self, event: LedgerEvent):
        """
        Apply one normalized ledger event. Safe to call twice with the same event.

        Policy and ledger rejections are recorded on the order; only transient
        and store errors propagate (so the monitor redelivers).
        """
        order = self.store.get_by_ledger_htlc(event.ledger_id, event.native_id)
        if order is None and event.event_type == EventType.LOCKED and event.htlc is not None:
            order = self.store.find_by_hashlock(event.ledger_id, event.htlc.hashlock)
        if order is None:
            log.debug(f"[{event.ledger_id}] {event.event_type.value} {event.native_id}: no matching order")
            return

        if event.event_type == EventType.LOCKED:
            self._on_locked(order, event)
        elif event.event_type == EventType.CLAIMED:
            self._on_claimed(order, event)
        elif event.event_type == EventType.REFUNDED:
            self._on_refunded(order, event)

    # -------------------------------------------------------------------------
    # Locked
    # -------------------------------------------------------------------------

    def _on_locked(self, order: Order, event: LedgerEvent):
        htlc = event.htlc
        if event.ledger_id == order.source_ledger:
            self._on_source_locked(order, htlc)
        elif event.ledger_id == order.destination_ledger:
            self._on_destination_locked(order, htlc)

    def _source_mismatch(self, order: Order, htlc: HTLC) -> Optional[str]:
        ledger = order.source_ledger
        resolver = self._adapter(ledger).signer
        if htlc.hash_algorithm != order.hash_algorithms.get(ledger):
            return f"hash algorithm {htlc.hash_algorithm}"
        if htlc.hashlock != order.hashlocks.get(ledger):
            return "hashlock"
        if resolver and htlc.receiver.lower() != resolver.lower():
            return f"receiver {htlc.receiver}"
        if order.source_asset and htlc.asset.lower() != order.source_asset.lower():
            return f"asset {htlc.asset}"
        if order.source_amount and htlc.amount < order.source_amount:
            return f"amount {htlc.amount} < {order.source_amount}"
        return None

    def _on_source_locked(self, order: Order, htlc: HTLC):
        if order.source_htlc is None:
            # Anyone can lock against a public hashlock: ignore locks that do
            # not pay the agreed terms instead of letting them cancel the order
            mismatch = self._source_mismatch(order, htlc)
            if mismatch:
                log.warning(f"Order {order.order_id}: ignoring source lock {htlc.native_id} ({mismatch})")
                return

        def _attach(o: Order):
            if o.source_htlc is not None:
                if o.source_htlc.native_id != htlc.native_id or o.source_htlc.confirmed:
                    return False
                o.source_htlc.confirmed = True
                return
            if o.status != OrderStatus.CREATED:
                return False
            o.source_htlc = htlc
            o.status = OrderStatus.SOURCE_LOCKED

        updated = self.store.update(order.order_id, _attach)
        if (updated.status == OrderStatus.SOURCE_LOCKED and updated.pending_action is None
                and LOCK_DESTINATION not in updated.actions):
            log.info(f"Order {order.order_id}: source locked {htlc.native_id} "
                     f"amount={htlc.amount} timelock={htlc.timelock_expiry}")
            self._submit(self._lock_destination, order.order_id)

    def _on_destination_locked(self, order: Order, htlc: HTLC):
        adapter = self._adapter(order.destination_ledger)

        def _attach(o: Order):
            if o.destination_htlc is not None:
                if o.destination_htlc.native_id != htlc.native_id or o.destination_htlc.confirmed:
                    return False
                o.destination_htlc.confirmed = True
                return
            # Our own lock seen before lock() returned, or after it timed out
            lock_state = o.actions.get(LOCK_DESTINATION, {}).get("state")
            if o.status != OrderStatus.SOURCE_LOCKED or lock_state not in (ACTION_PENDING, ACTION_STALLED):
                return False
            if htlc.sender != adapter.signer or htlc.amount != o.destination_amount:
                return False
            _mark_destination_locked(o, htlc, self.time_fn())

        updated = self.store.update(order.order_id, _attach)
        if order.destination_htlc is None and updated.destination_htlc is not None:
            log.info(f"Order {order.order_id}: destination lock {htlc.native_id} observed on "
                     f"{order.destination_ledger}")

    def _lock_destination(self, order_id: str):
        """Policy checks, deposit lock, then lock() on the destination ledger."""
        with self.action_locks.hold(order_id, LOCK_DESTINATION) as acquired:
            if not acquired:
                return
            order = self.store.get(order_id)
            if (order is None or order.status != OrderStatus.SOURCE_LOCKED
                    or order.destination_htlc is not None or order.pending_action is not None
                    or LOCK_DESTINATION in order.actions):
                return

            try:
                validate_timelock_asymmetry(order.source_timelock, order.destination_timelock,
                                            self.config.safety_margin)
            except UnsafeTimelockSkew as e:
                log.warning(f"Order {order_id}: {e}")
                self.cancel(order_id, UnsafeTimelockSkew.reason)
                return
            if order.destination_timelock <= self.time_fn():
                self.cancel(order_id, "DestinationTimelockPassed")
                return

            required = self.deposits.required_deposit(order.destination_amount)
            try:
                self.deposits.lock_deposit(order_id, order.destination_ledger,
                                           order.destination_asset, required)
            except InsufficientDeposit as e:
                log.warning(f"Order {order_id}: {e}")
                self.cancel(order_id, InsufficientDeposit.reason)
                return

            def _intent(o: Order):
                if o.status != OrderStatus.SOURCE_LOCKED or o.destination_htlc is not None:
                    return False
                o.safety_deposit = {"ledger_id": o.destination_ledger,
                                    "asset": o.destination_asset, "amount": required}

            self.store.update(order_id, _intent)
            order = self._set_action(order_id, LOCK_DESTINATION, ACTION_PENDING)

            adapter = self._adapter(order.destination_ledger)
            hashlock = order.hashlocks[order.destination_ledger]
            # Submitted once: a lock whose receipt timed out may still land, and
            # every landed lock spends collateral. Stalled locks are found by
            # hashlock (monitor or reconcile), never resubmitted.
            try:
                with self.sequencer.slot(order.destination_ledger, adapter.signer):
                    native_id = adapter.lock(order.destination_receiver, order.destination_asset,
                                             order.destination_amount, hashlock,
                                             order.destination_timelock)
            except DeterministicRejection as e:
                log.error(f"Order {order_id}: destination lock rejected: {e}")
                self._set_action(order_id, LOCK_DESTINATION, ACTION_FAILED, error=str(e))
                self.cancel(order_id, f"Rejected: {e}")
                return
            except TransientLedgerError as e:
                current = self.store.get(order_id)
                if current is not None and current.destination_htlc is not None:
                    log.info(f"Order {order_id}: destination lock already observed, ignoring: {e}")
                    return
                log.warning(f"Order {order_id}: destination lock stalled: {e}")
                self._set_action(order_id, LOCK_DESTINATION, ACTION_STALLED, error=str(e))
                return

            self._record_destination_lock(order_id, self._own_destination_htlc(order, native_id))
            log.info(f"Order {order_id}: destination locked {native_id} on {order.destination_ledger}")

    def _own_destination_htlc(self, order: Order, native_id: str) -> HTLC:
        adapter = self._adapter(order.destination_ledger)
        return HTLC(
            ledger_id=order.destination_ledger,
            native_id=native_id,
            sender=adapter.signer,
            receiver=order.destination_receiver,
            asset=order.destination_asset,
            amount=order.destination_amount,
            hashlock=order.hashlocks[order.destination_ledger],
            hash_algorithm=adapter.hash_algorithm,
            timelock_expiry=order.destination_timelock,
        )

    def _record_destination_lock(self, order_id: str, htlc: HTLC) -> Order:
        def _locked(o: Order):
            if o.destination_htlc is not None or o.status != OrderStatus.SOURCE_LOCKED:
                return False
            _mark_destination_locked(o, htlc, self.time_fn())

        return self.store.update(order_id, _locked)

    def _recover_destination_lock(self, order_id: str):
        """Look up a stalled destination lock by hashlock and attach it if it landed."""
        with self.action_locks.hold(order_id, LOCK_DESTINATION) as acquired:
            if not acquired:
                return
            order = self.store.get(order_id)
            if (order is None or order.status != OrderStatus.SOURCE_LOCKED
                    or order.destination_htlc is not None
                    or order.actions.get(LOCK_DESTINATION, {}).get("state") != ACTION_STALLED):
                return

            adapter = self._adapter(order.destination_ledger)
            find = getattr(adapter, "find_by_hashlock", None)
            if find is None:
                return
            try:
                candidates = find(order.hashlocks[order.destination_ledger])
            except TransientLedgerError as e:
                log.warning(f"Order {order_id}: destination lock lookup failed: {e}")
                return

            for htlc in candidates:
                if htlc.sender == adapter.signer and htlc.amount == order.destination_amount:
                    self._record_destination_lock(order_id, self._own_destination_htlc(order, htlc.native_id))
                    log.info(f"Order {order_id}: stalled destination lock found on-ledger: {htlc.native_id}")
                    return
            log.info(f"Order {order_id}: stalled destination lock not on {order.destination_ledger}")

    # -------------------------------------------------------------------------
    # Claimed
    # -------------------------------------------------------------------------

    def _on_claimed(self, order: Order, event: LedgerEvent):
        side = order.side_of(event.ledger_id, event.native_id)
        if side is None:
            return
        other = _other(side)
        other_ledger = order.ledger(other)

        def _apply(o: Order):
            htlc = o.htlc(side)
            try:
                # Observed claims already happened on-ledger: no minimum check
                if not htlc.apply_claim(event.amount, event_id=event.event_id):
                    return False
            except InvalidPartialAmount as e:
                log.error(f"Order {o.order_id}: cannot apply {side} claim {event.event_id}: {e}")
                return False

            if event.secret:
                htlc.secret = normalize_hex(event.secret)
                if o.secret is None:
                    if verify(htlc.secret, o.hashlocks[other_ledger], o.hash_algorithms[other_ledger]):
                        o.secret = htlc.secret
                    else:
                        o.alerts.append(f"secret from {side} claim does not open {other} hashlock")

            if o.status == OrderStatus.DESTINATION_LOCKED and o.secret:
                o.status = OrderStatus.SECRET_REVEALED
            # A claim submitted before the deadline can confirm after the sweep
            # expired the order: both sides settled still means completed
            if o.fully_claimed() and o.status in (OrderStatus.DESTINATION_LOCKED,
                                                  OrderStatus.SECRET_REVEALED,
                                                  OrderStatus.EXPIRED):
                if o.status == OrderStatus.EXPIRED:
                    o.alerts.append(f"completed after expiry ({o.reason})")
                    o.reason = None
                o.status = OrderStatus.COMPLETED
                o.pending_action = None

        before = order.status
        updated = self.store.update(order.order_id, _apply)
        htlc = updated.htlc(side)
        log.info(f"Order {order.order_id}: {side} claim observed, remaining={htlc.locked_remaining} "
                 f"({before.value} -> {updated.status.value})")

        if updated.status == OrderStatus.COMPLETED:
            if updated.safety_deposit:
                self.deposits.unlock_deposit(order.order_id)
            log.info(f"Order {order.order_id} COMPLETED")
            return

        if updated.status == OrderStatus.SECRET_REVEALED and updated.secret:
            action = _CLAIM_ACTION[other]
            if (_needs_relay(updated, other)
                    and updated.actions.get(action, {}).get("state") != ACTION_SUBMITTED):
                self._submit(self._relay_claim, order.order_id, other)

    def _relay_claim(self, order_id: str, side: str):
        """Claim the whole remainder of `side` with the revealed secret."""
        action = _CLAIM_ACTION[side]
        with self.action_locks.hold(order_id, action) as acquired:
            if not acquired:
                log.debug(f"Order {order_id}: {action} already in flight")
                return
            order = self.store.get(order_id)
            if order is None or order.is_terminal or not order.secret:
                return
            if not _needs_relay(order, side):
                return
            htlc = order.htlc(side)
            if order.actions.get(action, {}).get("state") == ACTION_SUBMITTED:
                return

            self._set_action(order_id, action, ACTION_PENDING)
            adapter = self._adapter(htlc.ledger_id)
            log.info(f"Order {order_id}: relaying secret {order.secret[:16]}... to "
                     f"{htlc.ledger_id} HTLC {htlc.native_id}")
            try:
                receipt = self._ledger_call(htlc.ledger_id, f"claim {htlc.native_id}",
                                            lambda: adapter.claim(htlc.native_id, order.secret))
            except DeterministicRejection as e:
                self._handle_rejected_action(order_id, action, htlc, e, HTLCStatus.CLAIMED)
                return
            except TransientLedgerError as e:
                self._set_action(order_id, action, ACTION_STALLED, error=str(e))
                return
            self._set_action(order_id, action, ACTION_SUBMITTED, tx_id=receipt.tx_id)

    def _handle_rejected_action(self, order_id: str, action: str, htlc: HTLC,
                                error: Exception, done_status: HTLCStatus):
        """A rejection is fine if the ledger already shows the wanted end state."""
        try:
            on_ledger = self._adapter(htlc.ledger_id).get(htlc.native_id)
        except TransientLedgerError:
            on_ledger = None
        if on_ledger is not None and on_ledger.status == done_status:
            log.info(f"Order {order_id}: {action} rejected but HTLC already {done_status.value}")
            self._set_action(order_id, action, ACTION_SUBMITTED, note="already settled on ledger")
            return
        log.error(f"Order {order_id}: {action} rejected: {error}")
        order = self._set_action(order_id, action, ACTION_FAILED, error=str(error))

        def _reason(o: Order):
            o.reason = f"{action} rejected: {error}"
            o.alerts.append(o.reason)

        if not order.is_terminal:
            self.store.update(order_id, _reason)

    def claim_partial(self, order_id: str, side: str, amount: int):
        """
        Resolver-initiated partial claim on one side with the known secret.

        Validated before anything is submitted: min_partial_amount <= amount
        <= locked_remaining (exactly the remainder is always allowed).

        Raises:
            InvalidPartialAmount: amount outside the allowed range
            InvalidTransition: secret unknown or HTLC not claimable
        """
        order = self.store.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        htlc = order.htlc(side)
        if htlc is None or htlc.status not in (HTLCStatus.LOCKED, HTLCStatus.PARTIALLY_CLAIMED):
            raise InvalidTransition(f"Order {order_id}: {side} HTLC is not claimable")
        if not order.secret:
            raise InvalidTransition(f"Order {order_id}: secret not revealed yet")

        # Validate against a scratch copy, the real update comes from the event
        trial = HTLC.from_dict(htlc.to_dict())
        trial.apply_claim(amount, min_partial=order.min_partial_amount)

        adapter = self._adapter(htlc.ledger_id)
        return self._ledger_call(htlc.ledger_id, f"partial claim {htlc.native_id}",
                                 lambda: adapter.claim(htlc.native_id, order.secret, amount))

    # -------------------------------------------------------------------------
    # Refunded
    # -------------------------------------------------------------------------

    def _on_refunded(self, order: Order, event: LedgerEvent):
        side = order.side_of(event.ledger_id, event.native_id)
        if side is None:
            return

        def _apply(o: Order):
            htlc = o.htlc(side)
            if htlc.status == HTLCStatus.REFUNDED:
                return False
            try:
                htlc.mark_refunded()
            except InvalidTransition as e:
                log.error(f"Order {o.order_id}: {e}")
                return False
            o.actions.setdefault(_REFUND_ACTION[side], {})["state"] = ACTION_SUBMITTED
            if o.pending_action == _REFUND_ACTION[side]:
                o.pending_action = None
            settled = all(h is None or h.is_terminal for h in (o.source_htlc, o.destination_htlc))
            if not o.is_terminal and (side == SOURCE or settled):
                o.status = OrderStatus.EXPIRED
                o.reason = o.reason or f"{side} refunded"

        updated = self.store.update(order.order_id, _apply)
        log.info(f"Order {order.order_id}: {side} HTLC {event.native_id} refunded "
                 f"(order {updated.status.value})")
        # Collateral is freed once the destination is settled, or was never
        # locked and the source went back
        destination = updated.destination_htlc
        if updated.safety_deposit and (side == DESTINATION or destination is None
                                       or destination.is_terminal):
            self.deposits.unlock_deposit(order.order_id)

    def _refund(self, order_id: str, side: str):
        action = _REFUND_ACTION[side]
        with self.action_locks.hold(order_id, action) as acquired:
            if not acquired:
                return
            order = self.store.get(order_id)
            if order is None:
                return
            htlc = order.htlc(side)
            if htlc is None or htlc.status not in HTLC_OPEN_STATES:
                return
            if order.actions.get(action, {}).get("state") == ACTION_SUBMITTED:
                return

            self._set_action(order_id, action, ACTION_PENDING)
            adapter = self._adapter(htlc.ledger_id)
            log.info(f"Order {order_id}: refunding {side} HTLC {htlc.native_id}")
            try:
                receipt = self._ledger_call(htlc.ledger_id, f"refund {htlc.native_id}",
                                            lambda: adapter.refund(htlc.native_id))
            except DeterministicRejection as e:
                self._handle_rejected_action(order_id, action, htlc, e, HTLCStatus.REFUNDED)
                return
            except TransientLedgerError as e:
                self._set_action(order_id, action, ACTION_STALLED, error=str(e))
                return
            self._set_action(order_id, action, ACTION_SUBMITTED, tx_id=receipt.tx_id)

    # =========================================================================
    # Periodic maintenance
    # =========================================================================

    def sweep(self, now: Optional[int] = None) -> List[Order]:
        """
        Expire overdue orders and refund HTLCs whose timelock has passed.

        Returns the orders newly marked EXPIRED.
        """
        now = self.time_fn() if now is None else now
        expired = self.store.sweep_expired(now)
        for order in expired:
            log.warning(f"Order {order.order_id} EXPIRED (was not completed before its deadline)")

        for order in self.store.list_all():
            for side in (DESTINATION, SOURCE):
                htlc = order.htlc(side)
                if htlc is None or htlc.status not in HTLC_OPEN_STATES:
                    continue
                if now < htlc.timelock_expiry:
                    continue
                # Source stays claimable by the relay until the order expires
                if not order.is_terminal and side == SOURCE:
                    continue
                if order.actions.get(_REFUND_ACTION[side], {}).get("state") == ACTION_SUBMITTED:
                    continue
                # Our claim on this side already went through
                if order.actions.get(_CLAIM_ACTION[side], {}).get("state") == ACTION_SUBMITTED:
                    continue
                self._submit(self._refund, order.order_id, side)
        return expired

    def reconcile(self) -> int:
        """
        Retry stalled relay work and abandon actions of terminal orders.

        Stalled destination locks are looked up by hashlock and attached if
        they landed. Returns the number of claim/lock actions resubmitted.
        """
        resubmitted = 0
        for order in self.store.list_all():
            if order.is_terminal:
                if order.pending_action:
                    action = order.pending_action
                    self._set_action(order.order_id, action, ACTION_ABANDONED)
                    log.info(f"Order {order.order_id}: abandoned {action} ({order.status.value})")
                continue

            if order.status == OrderStatus.SOURCE_LOCKED and order.pending_action is None \
                    and LOCK_DESTINATION not in order.actions:
                self._submit(self._lock_destination, order.order_id)
                resubmitted += 1
                continue

            # Never resubmitted, only looked up on the ledger
            if (order.status == OrderStatus.SOURCE_LOCKED
                    and order.actions.get(LOCK_DESTINATION, {}).get("state") == ACTION_STALLED
                    and not self.action_locks.held(order.order_id, LOCK_DESTINATION)):
                self._submit(self._recover_destination_lock, order.order_id)
                continue

            if order.status == OrderStatus.SECRET_REVEALED and order.secret:
                for side in (SOURCE, DESTINATION):
                    state = order.actions.get(_CLAIM_ACTION[side], {}).get("state")
                    if not _needs_relay(order, side):
                        continue
                    if state in (None, ACTION_STALLED) and not self.action_locks.held(
                            order.order_id, _CLAIM_ACTION[side]):
                        self._submit(self._relay_claim, order.order_id, side)
                        resubmitted += 1
        if resubmitted:
            log.info(f"Reconcile: resubmitted {resubmitted} action(s)")
        return resubmitted

    # =========================================================================
    # Administration / reporting
    # =========================================================================

    def slash(self, order_id: str, recipient: Optional[str] = None):
        """
        Forfeit the order's safety deposit to the counterparty.

        Only for orders that ended (EXPIRED / CANCELLED) with the counterparty's
        source funds locked and the destination side not delivered.
        """
        order = self.store.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        if order.status not in (OrderStatus.EXPIRED, OrderStatus.CANCELLED):
            raise InvalidTransition(f"Order {order_id} is {order.status.value}, not slashable")
        if order.source_htlc is None:
            raise InvalidTransition(f"Order {order_id}: counterparty never locked")
        destination = order.destination_htlc
        if destination is not None and destination.status == HTLCStatus.CLAIMED:
            raise InvalidTransition(f"Order {order_id}: destination was delivered")
        lock = self.deposits.get_lock(order_id)
        if lock is None or lock.state != LOCK_LOCKED:
            raise InvalidTransition(f"Order {order_id}: no locked deposit")

        recipient = recipient or order.source_htlc.sender
        slashed = self.deposits.slash(order_id, recipient)

        def _note(o: Order):
            o.alerts.append(f"deposit slashed to {recipient}")

        self.store.update(order_id, _note)
        return slashed

    def order_status(self, order_id: str) -> Order:
        order = self.store.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    def alerts(self) -> List[Dict[str, Any]]:
        return [{"order_id": o.order_id, "status": o.status.value, "alerts": list(o.alerts)}
                for o in self.store.list_all() if o.alerts]

    def metrics(self) -> Dict[str, Any]:
        metrics = self.store.metrics()
        metrics["stalled_orders"] = sum(
            1 for o in self.store.list_active()
            if any(a.get("state") == ACTION_STALLED for a in o.actions.values())
        )
        metrics["deposits"] = self.deposits.stats()["per_ledger"]
        return metrics
