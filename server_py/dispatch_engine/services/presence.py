from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import select

from dispatch_engine.core.database import utcnow
from dispatch_engine.core.errors import InvalidTransitionError, ValidationError
from dispatch_engine.core.geo import is_valid_coordinates
from dispatch_engine.core.identity import Role
from dispatch_engine.core.locks import KeyedLocks
from dispatch_engine.core.retry import storage_errors
from dispatch_engine.models.order import DRIVER_ACTIVE_STATUSES, DRIVER_HELD_STATUSES, Order
from dispatch_engine.models.presence import DriverPresence, DriverStatus, DriverStatusLog
from dispatch_engine.services.geo_index import GeoIndex, NearbyDriver
from dispatch_engine.services.realtime import EventKind, RealtimeHub

logger = logging.getLogger(__name__)

AvailabilityListener = Callable[[str], Awaitable[None]]


class PresenceTracker:
    """Sole writer of driver availability and position.

    Writes for one driver are serialised by a per-driver lock; different
    drivers never contend.
    """

    def __init__(self, session_factory, geo_index: GeoIndex, hub: RealtimeHub) -> None:
        self._session_factory = session_factory
        self._geo = geo_index
        self._hub = hub
        self._writers = KeyedLocks()
        self._listeners: List[AvailabilityListener] = []

    def add_availability_listener(self, listener: AvailabilityListener) -> None:
        self._listeners.append(listener)

    async def set_status(self, driver_id: str, status: str) -> DriverPresence:
        try:
            new_status = DriverStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown driver status: {status}") from None

        async with self._writers.hold(driver_id):
            async with storage_errors("presence status"):
                async with self._session_factory() as session:
                    if new_status is DriverStatus.AVAILABLE:
                        active = await self._active_order_id(session, driver_id)
                        if active is not None:
                            raise InvalidTransitionError(
                                "Driver is carrying an order and cannot become available",
                                order_id=active,
                            )
                    record, previous = await self._write_status(session, driver_id, new_status)
                    await session.commit()
                    self._sync_index(record)

        if new_status is DriverStatus.AVAILABLE and previous != DriverStatus.AVAILABLE.value:
            await self._notify_available(driver_id)
        return record

    async def update_location(self, driver_id: str, lat: float, lng: float) -> DriverPresence:
        if not is_valid_coordinates(lat, lng):
            raise ValidationError("Invalid coordinates")
        lat, lng = float(lat), float(lng)

        async with self._writers.hold(driver_id):
            async with storage_errors("presence location"):
                async with self._session_factory() as session:
                    record = await session.get(DriverPresence, driver_id)
                    if record is None:
                        record = DriverPresence(driver_id=driver_id, status=DriverStatus.OFFLINE.value)
                        session.add(record)
                    record.lat = lat
                    record.lng = lng
                    record.updated_at = utcnow()
                    held_order_id = await self._held_order_id(session, driver_id)
                    await session.commit()
                    self._sync_index(record)

        snapshot = serialize_presence(record)
        if held_order_id is not None:
            await self._hub.publish(held_order_id, EventKind.LOCATION_UPDATE, snapshot)
        await self._hub.notify_role(Role.OPERATOR.value, EventKind.DRIVER_LOCATION, snapshot)
        return record

    async def mark_busy(self, driver_id: str) -> None:
        """Driver accepted an order."""
        async with self._writers.hold(driver_id):
            async with storage_errors("presence busy"):
                async with self._session_factory() as session:
                    record, _ = await self._write_status(session, driver_id, DriverStatus.BUSY)
                    await session.commit()
                    self._sync_index(record)

    async def release(self, driver_id: str) -> None:
        """Order finished or cancelled: a busy driver goes back to available."""
        async with self._writers.hold(driver_id):
            async with storage_errors("presence release"):
                async with self._session_factory() as session:
                    record = await session.get(DriverPresence, driver_id)
                    if record is None or record.status != DriverStatus.BUSY.value:
                        return
                    if await self._active_order_id(session, driver_id) is not None:
                        return
                    record, _ = await self._write_status(session, driver_id, DriverStatus.AVAILABLE)
                    await session.commit()
                    self._sync_index(record)
        await self._notify_available(driver_id)

    async def get_presence(self, driver_id: str) -> DriverPresence:
        async with storage_errors("presence lookup"):
            async with self._session_factory() as session:
                record = await session.get(DriverPresence, driver_id)
        if record is None:
            # Unknown drivers are offline
            return DriverPresence(driver_id=driver_id, status=DriverStatus.OFFLINE.value, updated_at=None)
        return record

    def nearby_drivers(
        self,
        lat: float,
        lng: float,
        *,
        radius_km: Optional[float] = None,
        limit: int = 20,
        exclude=(),
    ) -> List[NearbyDriver]:
        if not is_valid_coordinates(lat, lng):
            raise ValidationError("Invalid coordinates")
        return self._geo.nearest(float(lat), float(lng), limit, radius_km=radius_km, exclude=exclude)

    def is_candidate(self, driver_id: str) -> bool:
        return self._geo.is_candidate(driver_id)

    async def warm_up(self) -> int:
        """Load available drivers with a known position into the GeoIndex."""
        async with storage_errors("presence warm-up"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(DriverPresence).where(DriverPresence.status == DriverStatus.AVAILABLE.value)
                )
                records = list(result.scalars())
        for record in records:
            self._sync_index(record)
        logger.info("GeoIndex warmed up with %s available drivers", len(self._geo))
        return len(self._geo)

    async def _write_status(self, session, driver_id: str, status: DriverStatus):
        record = await session.get(DriverPresence, driver_id)
        previous = record.status if record is not None else DriverStatus.OFFLINE.value
        if record is None:
            record = DriverPresence(driver_id=driver_id)
            session.add(record)
        record.status = status.value
        record.updated_at = utcnow()
        if previous != status.value:
            session.add(DriverStatusLog(driver_id=driver_id, status=status.value, started_at=record.updated_at))
            logger.info("Driver %s status %s -> %s", driver_id, previous, status.value)
        return record, previous

    def _sync_index(self, record: DriverPresence) -> None:
        if record.status == DriverStatus.AVAILABLE.value and record.lat is not None and record.lng is not None:
            self._geo.upsert(record.driver_id, record.lat, record.lng, record.updated_at)
        else:
            self._geo.remove(record.driver_id)

    async def _notify_available(self, driver_id: str) -> None:
        for listener in list(self._listeners):
            await listener(driver_id)

    @staticmethod
    async def _active_order_id(session, driver_id: str) -> Optional[str]:
        result = await session.execute(
            select(Order.id)
            .where(
                Order.driver_id == driver_id,
                Order.status.in_([s.value for s in DRIVER_ACTIVE_STATUSES]),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _held_order_id(session, driver_id: str) -> Optional[str]:
        result = await session.execute(
            select(Order.id)
            .where(
                Order.driver_id == driver_id,
                Order.status.in_([s.value for s in DRIVER_HELD_STATUSES]),
            )
            .order_by(Order.updated_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()


def serialize_presence(record: DriverPresence) -> dict:
    location = None
    if record.lat is not None and record.lng is not None:
        location = {"lat": record.lat, "lng": record.lng}
    return {
        "driverId": record.driver_id,
        "status": record.status,
        "location": location,
        "updatedAt": record.updated_at.isoformat() if record.updated_at else None,
    }
