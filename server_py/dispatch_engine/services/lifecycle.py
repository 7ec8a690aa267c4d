from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import exists, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased

from dispatch_engine.core.config import settings
from dispatch_engine.core.database import utcnow
from dispatch_engine.core.errors import (
    AlreadyAssignedError,
    IllegalTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StaleOfferError,
    TooLateToCancelError,
    UnavailableError,
    ValidationError,
)
from dispatch_engine.core.geo import is_valid_coordinates
from dispatch_engine.core.identity import Actor, Role
from dispatch_engine.core.retry import storage_errors
from dispatch_engine.models.order import (
    CANCELLABLE_STATUSES,
    DRIVER_ACTIVE_STATUSES,
    DRIVER_HELD_STATUSES,
    STATUS_SEQUENCE,
    STATUS_TIMESTAMP_FIELDS,
    Order,
    OrderStatus,
)
from dispatch_engine.services.presence import PresenceTracker
from dispatch_engine.services.realtime import EventKind, RealtimeHub

logger = logging.getLogger(__name__)

_ANY = object()

# Statuses a driver may move an accepted order into, in order
DRIVER_ADVANCE_TARGETS = STATUS_SEQUENCE[STATUS_SEQUENCE.index(OrderStatus.PICKED_UP):]

CODE_ALLOCATION_RETRIES = 5
CANCEL_CAS_RETRIES = 5


class OrderLifecycleManager:
    """Owns the order state machine.

    The only component that writes ``Order.status``. Every transition is a
    single conditional UPDATE on the expected prior (status, driver, version)
    so concurrent callers on the same order resolve to exactly one winner
    without locking unrelated orders.
    """

    def __init__(self, session_factory, hub: RealtimeHub, presence: PresenceTracker) -> None:
        self._session_factory = session_factory
        self._hub = hub
        self._presence = presence
        self._scheduler = None

    def bind_scheduler(self, scheduler) -> None:
        self._scheduler = scheduler

    # ------------------------------------------------------------------
    # Creation and queries
    # ------------------------------------------------------------------

    async def create_order(self, client_id: str, details: Mapping[str, Any]) -> Order:
        fields = _validate_details(details)

        async with storage_errors("order create"):
            order = None
            for _ in range(CODE_ALLOCATION_RETRIES):
                async with self._session_factory() as session:
                    total = (await session.execute(select(func.count()).select_from(Order))).scalar_one()
                    order = Order(
                        client_id=str(client_id),
                        status=OrderStatus.PENDING.value,
                        code_order=f"ORD-{total + 1:06d}",
                        **fields,
                    )
                    session.add(order)
                    try:
                        await session.commit()
                    except IntegrityError:
                        await session.rollback()
                        order = None
                        continue
                    await session.refresh(order)
                    break
            if order is None:
                raise UnavailableError("Could not allocate an order code")

        logger.info("Order %s (%s) created by client %s", order.id, order.code_order, client_id)
        await self._hub.publish(order.id, EventKind.STATUS_CHANGED, serialize_order(order))
        if self._scheduler is not None:
            await self._scheduler.order_created(order.id)
        return order

    async def get_order(self, order_id: str) -> Order:
        async with storage_errors("order lookup"):
            async with self._session_factory() as session:
                order = await session.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found", order_id=order_id)
        return order

    async def get_order_for(self, order_id: str, actor: Actor) -> Order:
        order = await self.get_order(order_id)
        ensure_access(order, actor)
        return order

    async def list_orders(
        self,
        *,
        client_id: Optional[str] = None,
        driver_id: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Order], int]:
        page = max(1, int(page))
        limit = max(1, min(int(limit), settings.ORDER_PAGE_SIZE_MAX))
        conditions = []
        if client_id is not None:
            conditions.append(Order.client_id == client_id)
        if driver_id is not None:
            conditions.append(Order.driver_id == driver_id)
        if status is not None:
            try:
                conditions.append(Order.status == OrderStatus(status).value)
            except ValueError:
                raise ValidationError(f"Unknown order status: {status}") from None

        async with storage_errors("order list"):
            async with self._session_factory() as session:
                total = (
                    await session.execute(select(func.count()).select_from(Order).where(*conditions))
                ).scalar_one()
                result = await session.execute(
                    select(Order)
                    .where(*conditions)
                    .order_by(Order.created_at.desc(), Order.id)
                    .offset((page - 1) * limit)
                    .limit(limit)
                )
                return list(result.scalars()), total

    async def track_order(self, order_id: str, actor: Actor) -> Dict[str, Any]:
        """Order snapshot plus the assigned driver's last known location."""
        order = await self.get_order_for(order_id, actor)
        driver = None
        if order.driver_id is not None:
            presence = await self._presence.get_presence(order.driver_id)
            location = None
            if presence.lat is not None and presence.lng is not None:
                location = {"lat": presence.lat, "lng": presence.lng}
            driver = {
                "id": order.driver_id,
                "status": presence.status,
                "currentLocation": location,
                "locationUpdatedAt": presence.updated_at.isoformat() if presence.updated_at else None,
            }
        return {"order": serialize_order(order), "clientId": order.client_id, "driver": driver}

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def assign_candidate(self, order_id: str, driver_id: str) -> Order:
        """pending -> assigned. Called by the dispatch scheduler only."""
        order = await self._compare_and_set(
            order_id,
            expected=[OrderStatus.PENDING],
            target=OrderStatus.ASSIGNED,
            expected_driver=None,
            driver_id=driver_id,
            exclusive_driver=driver_id,
            exclusive_statuses=DRIVER_HELD_STATUSES,
        )
        if order is None:
            current = await self.get_order(order_id)
            if current.status == OrderStatus.PENDING.value and current.driver_id is None:
                raise StaleOfferError("Driver is already holding another order", order_id=order_id)
            raise AlreadyAssignedError("Order is no longer pending", order_id=order_id)
        await self._announce(order)
        return order

    async def accept_order(self, order_id: str, driver_id: str) -> Order:
        """assigned -> accepted, only for the driver currently offered the order.

        Fails if the driver already carries another order. The driver is marked
        busy before the offer hold is released so the scheduler never sees them
        as free in between.
        """
        order = await self._compare_and_set(
            order_id,
            expected=[OrderStatus.ASSIGNED],
            target=OrderStatus.ACCEPTED,
            expected_driver=driver_id,
            exclusive_driver=driver_id,
        )
        if order is None:
            await self.get_order(order_id)
            raise StaleOfferError("Order is no longer available", order_id=order_id)

        await self._presence.mark_busy(driver_id)
        if self._scheduler is not None:
            await self._scheduler.offer_resolved(order_id)
        await self._announce(order)
        return order

    async def reject_order(self, order_id: str, driver_id: str) -> Order:
        """assigned -> pending; the scheduler moves on to the next candidate."""
        order = await self._compare_and_set(
            order_id,
            expected=[OrderStatus.ASSIGNED],
            target=OrderStatus.PENDING,
            expected_driver=driver_id,
            driver_id=None,
        )
        if order is None:
            await self.get_order(order_id)
            raise StaleOfferError("Order is no longer offered to this driver", order_id=order_id)

        await self._announce(order)
        if self._scheduler is not None:
            await self._scheduler.candidate_declined(order_id, driver_id, reason="rejected")
        return order

    async def expire_offer(self, order_id: str, driver_id: str, epoch: int) -> Optional[Order]:
        """Offer deadline passed: assigned -> pending, unless the order moved on since ``epoch``."""
        order = await self._compare_and_set(
            order_id,
            expected=[OrderStatus.ASSIGNED],
            target=OrderStatus.PENDING,
            expected_driver=driver_id,
            expected_version=epoch,
            driver_id=None,
        )
        if order is not None:
            await self._announce(order)
        return order

    async def advance_status(self, order_id: str, driver_id: str, target: str) -> Order:
        """accepted -> picked_up -> in_transit -> delivered, one step at a time."""
        try:
            target_status = OrderStatus(target)
        except ValueError:
            raise IllegalTransitionError(f"Unknown order status: {target}", order_id=order_id) from None
        if target_status not in DRIVER_ADVANCE_TARGETS:
            raise IllegalTransitionError(
                f"Cannot advance an order to {target_status.value}", order_id=order_id
            )
        predecessor = STATUS_SEQUENCE[STATUS_SEQUENCE.index(target_status) - 1]

        order = await self._compare_and_set(
            order_id,
            expected=[predecessor],
            target=target_status,
            expected_driver=driver_id,
        )
        if order is None:
            current = await self.get_order(order_id)
            if current.driver_id != driver_id:
                raise IllegalTransitionError("Only the assigned driver can advance this order", order_id=order_id)
            raise IllegalTransitionError(
                f"Cannot move from {current.status} to {target_status.value}", order_id=order_id
            )

        if target_status is OrderStatus.DELIVERED:
            await self._presence.release(driver_id)
        await self._announce(order)
        return order

    async def cancel_order(self, order_id: str, actor: Actor, reason: Optional[str] = None) -> Order:
        current = await self.get_order(order_id)
        if actor.role is Role.DRIVER:
            raise PermissionDeniedError("Drivers reject offers instead of cancelling", order_id=order_id)
        if actor.role is Role.CLIENT and current.client_id != actor.id:
            raise PermissionDeniedError("Access denied to this order", order_id=order_id)
        return await self._close(current, OrderStatus.CANCELLED, reason)

    async def fail_order(self, order_id: str, actor: Actor, reason: Optional[str] = None) -> Order:
        """Operator marks an order as failed (e.g. undeliverable before pickup)."""
        if not actor.is_operator:
            raise PermissionDeniedError("Only operators can fail orders", order_id=order_id)
        current = await self.get_order(order_id)
        return await self._close(current, OrderStatus.FAILED, reason)

    async def _close(self, current: Order, target: OrderStatus, reason: Optional[str]) -> Order:
        order_id = current.id
        for _ in range(CANCEL_CAS_RETRIES):
            if OrderStatus(current.status) not in CANCELLABLE_STATUSES:
                raise TooLateToCancelError(
                    f"Order is already {current.status}", order_id=order_id
                )
            order = await self._compare_and_set(
                order_id,
                expected=[OrderStatus(current.status)],
                target=target,
                expected_version=current.version,
                extra={"cancel_reason": reason},
            )
            if order is not None:
                break
            current = await self.get_order(order_id)
        else:
            raise StaleOfferError("Order changed concurrently, retry", order_id=order_id)

        if self._scheduler is not None:
            await self._scheduler.order_closed(order_id)
        if current.status == OrderStatus.ACCEPTED.value and current.driver_id:
            await self._presence.release(current.driver_id)
        await self._announce(order)
        return order

    # ------------------------------------------------------------------

    async def _compare_and_set(
        self,
        order_id: str,
        *,
        expected: Iterable[OrderStatus],
        target: OrderStatus,
        expected_driver: Any = _ANY,
        expected_version: Optional[int] = None,
        driver_id: Any = _ANY,
        extra: Optional[Dict[str, Any]] = None,
        exclusive_driver: Optional[str] = None,
        exclusive_statuses: Iterable[OrderStatus] = DRIVER_ACTIVE_STATUSES,
    ) -> Optional[Order]:
        """Conditional UPDATE; returns the updated order or None if the precondition failed.

        With ``exclusive_driver`` the update also requires that no other order
        holds that driver in one of ``exclusive_statuses``, checked in the same
        statement so two orders can never both win the same driver.
        """
        now = utcnow()
        stmt = update(Order).where(
            Order.id == order_id,
            Order.status.in_([status.value for status in expected]),
        )
        if expected_driver is None:
            stmt = stmt.where(Order.driver_id.is_(None))
        elif expected_driver is not _ANY:
            stmt = stmt.where(Order.driver_id == expected_driver)
        if expected_version is not None:
            stmt = stmt.where(Order.version == expected_version)
        if exclusive_driver is not None:
            other = aliased(Order)
            stmt = stmt.where(
                ~exists().where(
                    other.driver_id == exclusive_driver,
                    other.status.in_([status.value for status in exclusive_statuses]),
                    other.id != order_id,
                )
            )

        values: Dict[str, Any] = {
            "status": target.value,
            "version": Order.version + 1,
            "updated_at": now,
        }
        timestamp_field = STATUS_TIMESTAMP_FIELDS.get(target)
        if timestamp_field is not None:
            # First write wins: re-offers never move assigned_at
            column = getattr(Order, timestamp_field)
            values[timestamp_field] = func.coalesce(column, now)
        if driver_id is not _ANY:
            values["driver_id"] = driver_id
        if extra:
            values.update(extra)

        async with storage_errors("order transition"):
            async with self._session_factory() as session:
                result = await session.execute(
                    stmt.values(**values).execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    return None
                await session.commit()
                order = (
                    await session.execute(select(Order).where(Order.id == order_id))
                ).scalar_one()

        logger.info(
            "Order %s -> %s (driver=%s, version=%s)", order_id, order.status, order.driver_id, order.version
        )
        return order

    async def _announce(self, order: Order) -> None:
        await self._hub.publish(order.id, EventKind.STATUS_CHANGED, serialize_order(order))


def ensure_access(order: Order, actor: Actor) -> None:
    """Client of the order, its current driver, or any operator."""
    if actor.is_operator:
        return
    if actor.role is Role.CLIENT and order.client_id == actor.id:
        return
    if actor.role is Role.DRIVER and order.driver_id == actor.id:
        return
    raise PermissionDeniedError("Access denied to this order", order_id=order.id)


def _validate_details(details: Mapping[str, Any]) -> Dict[str, Any]:
    def text(key: str) -> Optional[str]:
        value = details.get(key)
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    content = text("content")
    dropoff_address = text("dropoff_address")
    payment_method = text("payment_method")

    missing = [
        name
        for name, value in (
            ("content", content),
            ("dropoff_address", dropoff_address),
            ("payment_method", payment_method),
        )
        if value is None
    ]
    if missing:
        raise ValidationError("Missing required fields: " + ", ".join(missing))
    if len(content) > settings.ORDER_CONTENT_MAX_LENGTH:
        raise ValidationError(
            f"Content must be at most {settings.ORDER_CONTENT_MAX_LENGTH} characters"
        )

    amount = details.get("amount") or 0
    try:
        amount = int(amount)
    except (TypeError, ValueError):
        raise ValidationError("Amount must be an integer number of minor units") from None
    if amount < 0:
        raise ValidationError("Amount cannot be negative")

    fields: Dict[str, Any] = {
        "content": content,
        "dropoff_address": dropoff_address,
        "payment_method": payment_method,
        "amount": amount,
    }
    for prefix in ("dropoff", "pickup"):
        lat, lng = details.get(f"{prefix}_lat"), details.get(f"{prefix}_lng")
        if lat is None and lng is None:
            continue
        if lat is None or lng is None or not is_valid_coordinates(lat, lng):
            raise ValidationError(f"Invalid {prefix} coordinates")
        fields[f"{prefix}_lat"] = float(lat)
        fields[f"{prefix}_lng"] = float(lng)
    return fields


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def serialize_order(order: Order) -> dict:
    return {
        "id": order.id,
        "codeOrder": order.code_order,
        "clientId": order.client_id,
        "driverId": order.driver_id,
        "status": order.status,
        "dropoffAddress": order.dropoff_address,
        "dropoff": (
            {"lat": order.dropoff_lat, "lng": order.dropoff_lng}
            if order.dropoff_lat is not None else None
        ),
        "pickup": (
            {"lat": order.pickup_lat, "lng": order.pickup_lng}
            if order.pickup_lat is not None else None
        ),
        "paymentMethod": order.payment_method,
        "amount": order.amount,
        "content": order.content,
        "cancelReason": order.cancel_reason,
        "version": order.version,
        "createdAt": _iso(order.created_at),
        "assignedAt": _iso(order.assigned_at),
        "acceptedAt": _iso(order.accepted_at),
        "pickedUpAt": _iso(order.picked_up_at),
        "inTransitAt": _iso(order.in_transit_at),
        "deliveredAt": _iso(order.delivered_at),
        "cancelledAt": _iso(order.cancelled_at),
        "failedAt": _iso(order.failed_at),
        "updatedAt": _iso(order.updated_at),
    }
