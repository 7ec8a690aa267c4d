from fastapi import APIRouter, Depends, Query, status
from typing import Optional

from dispatch_engine.core.dependencies import get_core, require_actor, require_role
from dispatch_engine.core.identity import Actor, Role
from dispatch_engine.core.retry import retry_async
from dispatch_engine.schemas.order import (
    OrderClose,
    OrderCreate,
    OrderPage,
    OrderResponse,
    OrderTracking,
    StatusAdvance,
)

router = APIRouter()

@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    order_data: OrderCreate,
    actor: Actor = Depends(require_role(Role.CLIENT)),
    core=Depends(get_core),
):
    """Place an order; dispatch starts in the background."""
    return await retry_async(
        core.lifecycle.create_order, actor.id, order_data.model_dump(exclude_none=True)
    )

@router.get("", response_model=OrderPage)
async def list_orders(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    client_id: Optional[str] = None,
    driver_id: Optional[str] = None,
    actor: Actor = Depends(require_actor),
    core=Depends(get_core),
):
    """Order history: own orders for clients and drivers, any for operators."""
    if actor.role is Role.CLIENT:
        client_id, driver_id = actor.id, None
    elif actor.role is Role.DRIVER:
        client_id, driver_id = None, actor.id
    items, total = await retry_async(
        core.lifecycle.list_orders,
        client_id=client_id,
        driver_id=driver_id,
        status=status_filter,
        page=page,
        limit=limit,
    )
    return OrderPage(items=items, total=total, page=page, limit=limit)

@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    actor: Actor = Depends(require_actor),
    core=Depends(get_core),
):
    return await retry_async(core.lifecycle.get_order_for, order_id, actor)

@router.get("/{order_id}/track", response_model=OrderTracking)
async def track_order(
    order_id: str,
    actor: Actor = Depends(require_actor),
    core=Depends(get_core),
):
    """Snapshot used by clients to re-sync after reconnecting."""
    return await retry_async(core.lifecycle.track_order, order_id, actor)

@router.post("/{order_id}/accept", response_model=OrderResponse)
async def accept_order(
    order_id: str,
    actor: Actor = Depends(require_role(Role.DRIVER)),
    core=Depends(get_core),
):
    return await retry_async(core.lifecycle.accept_order, order_id, actor.id)

@router.post("/{order_id}/reject", response_model=OrderResponse)
async def reject_order(
    order_id: str,
    actor: Actor = Depends(require_role(Role.DRIVER)),
    core=Depends(get_core),
):
    return await retry_async(core.lifecycle.reject_order, order_id, actor.id)

@router.post("/{order_id}/status", response_model=OrderResponse)
async def advance_status(
    order_id: str,
    payload: StatusAdvance,
    actor: Actor = Depends(require_role(Role.DRIVER)),
    core=Depends(get_core),
):
    return await retry_async(core.lifecycle.advance_status, order_id, actor.id, payload.status)

@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: str,
    payload: Optional[OrderClose] = None,
    actor: Actor = Depends(require_role(Role.CLIENT, Role.OPERATOR)),
    core=Depends(get_core),
):
    reason = payload.reason if payload else None
    return await retry_async(core.lifecycle.cancel_order, order_id, actor, reason)

@router.post("/{order_id}/fail", response_model=OrderResponse)
async def fail_order(
    order_id: str,
    payload: Optional[OrderClose] = None,
    actor: Actor = Depends(require_role(Role.OPERATOR)),
    core=Depends(get_core),
):
    reason = payload.reason if payload else None
    return await retry_async(core.lifecycle.fail_order, order_id, actor, reason)
