"""
Operational endpoints: orders, metrics, safety deposits, ledgers.

server.py builds the ResolverService and hands it over with configure().
Handlers are plain `def` so FastAPI runs them in its threadpool: every call
ends in a KV round-trip (and Redis when configured).
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from resolver.core import Order, OrderStatus
from resolver.errors import (
    InsufficientDeposit, InvalidTransition, OrderNotFound, PolicyViolation,
)
from resolver.swap import OrderRequest

log = logging.getLogger(__name__)

router = APIRouter()

# ---------------------------------------------------------------------------
# Service handle (set by server.py at startup)
# ---------------------------------------------------------------------------

_service = None


def configure(service):
    """Attach the running ResolverService. Called once at startup by server.py."""
    global _service
    _service = service


def get_service():
    if _service is None:
        raise HTTPException(503, "Resolver not initialized")
    return _service


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class OrderCreateRequest(BaseModel):
    source_ledger: str
    destination_ledger: str
    source_hashlock: str = Field(..., min_length=64)
    destination_receiver: str
    destination_asset: str
    destination_amount: int = Field(..., gt=0)
    destination_timelock: int = Field(..., gt=0)
    destination_hashlock: Optional[str] = None
    source_timelock: Optional[int] = None
    source_amount: Optional[int] = Field(None, gt=0)
    source_asset: Optional[str] = None
    min_partial_amount: int = Field(0, ge=0)


class HTLCView(BaseModel):
    ledger_id: str
    native_id: str
    sender: str
    receiver: str
    asset: str
    amount: int
    locked_remaining: int
    hashlock: str
    hash_algorithm: str
    timelock_expiry: int
    status: str
    confirmed: bool = False


class OrderView(BaseModel):
    order_id: str
    status: str
    reason: Optional[str] = None
    secret_hash: str
    source_ledger: str
    destination_ledger: str
    hashlocks: Dict[str, str]
    hash_algorithms: Dict[str, str]
    destination_receiver: str
    destination_asset: str
    destination_amount: int
    destination_timelock: int
    min_partial_amount: int = 0
    source_htlc: Optional[HTLCView] = None
    destination_htlc: Optional[HTLCView] = None
    safety_deposit: Optional[Dict[str, Any]] = None
    secret_revealed: bool = False
    pending_action: Optional[str] = None
    actions: Dict[str, Dict[str, Any]] = {}
    alerts: List[str] = []
    created_at: int
    updated_at: Optional[int] = None
    expires_at: int


class DepositRequest(BaseModel):
    ledger_id: str
    asset: str
    amount: int = Field(..., gt=0)


class SlashRequest(BaseModel):
    recipient: Optional[str] = None


def _order_view(order: Order) -> OrderView:
    data = order.to_dict()
    data["secret_revealed"] = bool(order.secret)
    return OrderView(**data)


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

@router.get("/api/status")
def get_status():
    """Health check."""
    service = get_service()
    status = service.status()
    return {
        "status": "ok",
        **status,
        "active_orders": len(service.store.list_active()),
    }


@router.get("/api/chains")
def get_chains():
    """Configured ledgers (no credentials)."""
    return {"chains": get_service().chains()}


@router.get("/api/metrics")
def get_metrics():
    service = get_service()
    metrics = service.coordinator.metrics()
    metrics["alerts"] = service.coordinator.alerts()
    return metrics


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

@router.get("/api/orders", response_model=List[OrderView])
def list_orders(status: Optional[str] = Query(None, description="Filter by order status")):
    service = get_service()
    if status is not None:
        try:
            wanted = OrderStatus(status)
        except ValueError:
            raise HTTPException(400, f"Unknown status: {status}")
        orders = [o for o in service.store.list_all() if o.status == wanted]
    else:
        orders = service.store.list_all()
    orders.sort(key=lambda o: o.created_at, reverse=True)
    return [_order_view(o) for o in orders]


@router.post("/api/orders", response_model=OrderView)
def create_order(req: OrderCreateRequest):
    """Announce an order: the resolver locks once the source lock is observed."""
    service = get_service()
    try:
        order = service.coordinator.create_order(OrderRequest(**req.model_dump()))
    except PolicyViolation as e:
        raise HTTPException(409, f"{e.reason}: {e}")
    except ValueError as e:
        raise HTTPException(400, str(e))
    log.info(f"Order {order.order_id} created: {order.source_ledger} -> "
             f"{order.destination_ledger} {order.destination_amount} {order.destination_asset}")
    return _order_view(order)


@router.get("/api/orders/{order_id}", response_model=OrderView)
def get_order(order_id: str):
    try:
        order = get_service().coordinator.order_status(order_id)
    except OrderNotFound:
        raise HTTPException(404, f"Order not found: {order_id}")
    return _order_view(order)


# ---------------------------------------------------------------------------
# Safety deposits
# ---------------------------------------------------------------------------

@router.get("/api/deposits")
def get_deposits():
    return get_service().deposits.stats()


@router.post("/api/deposits")
def add_deposit(req: DepositRequest):
    """Credit resolver collateral for (ledger, asset)."""
    service = get_service()
    if req.ledger_id not in service.adapters:
        raise HTTPException(400, f"Ledger not configured: {req.ledger_id}")
    account = service.deposits.deposit(req.ledger_id, req.asset, req.amount)
    return account.to_dict()


@router.post("/api/deposits/withdraw")
def withdraw_deposit(req: DepositRequest):
    """Withdraw collateral that is not locked by an order."""
    try:
        account = get_service().deposits.withdraw(req.ledger_id, req.asset, req.amount)
    except InsufficientDeposit as e:
        raise HTTPException(409, str(e))
    return account.to_dict()


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@router.post("/api/admin/orders/{order_id}/slash")
def slash_order(order_id: str, req: Optional[SlashRequest] = None):
    """Forfeit an order's safety deposit to the counterparty."""
    recipient = req.recipient if req else None
    try:
        lock = get_service().coordinator.slash(order_id, recipient)
    except OrderNotFound:
        raise HTTPException(404, f"Order not found: {order_id}")
    except InvalidTransition as e:
        raise HTTPException(409, str(e))
    if lock is None:
        raise HTTPException(409, f"Order {order_id}: deposit already released")
    log.warning(f"Order {order_id}: deposit slashed to {lock.recipient}")
    return {"success": True, "deposit": lock.to_dict()}
