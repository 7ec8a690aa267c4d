from __future__ import annotations

import heapq
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from dispatch_engine.core.database import utcnow
from dispatch_engine.core.geo import haversine_km


@dataclass(frozen=True)
class DriverPosition:
    driver_id: str
    lat: float
    lng: float
    updated_at: datetime


@dataclass(frozen=True)
class NearbyDriver:
    driver_id: str
    lat: float
    lng: float
    distance_km: float
    updated_at: datetime


class GeoIndex:
    """Last known positions of available drivers.

    Membership is controlled by ``PresenceTracker``: only drivers whose
    status is ``available`` are kept here. Positions older than the
    freshness window are ignored by queries but stay indexed until the next
    ping or status change replaces or removes them.
    """

    def __init__(
        self,
        freshness_seconds: float,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._positions: Dict[str, DriverPosition] = {}
        self._freshness = timedelta(seconds=freshness_seconds)
        self._clock = clock

    def upsert(self, driver_id: str, lat: float, lng: float, updated_at: Optional[datetime] = None) -> None:
        self._positions[driver_id] = DriverPosition(
            driver_id=driver_id,
            lat=float(lat),
            lng=float(lng),
            updated_at=updated_at or self._clock(),
        )

    def remove(self, driver_id: str) -> None:
        self._positions.pop(driver_id, None)

    def get(self, driver_id: str) -> Optional[DriverPosition]:
        return self._positions.get(driver_id)

    def is_fresh(self, position: DriverPosition, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        return now - position.updated_at <= self._freshness

    def is_candidate(self, driver_id: str) -> bool:
        """Indexed (so available) and with a fresh position."""
        position = self._positions.get(driver_id)
        return position is not None and self.is_fresh(position)

    def nearest(
        self,
        lat: float,
        lng: float,
        k: int,
        radius_km: Optional[float] = None,
        exclude: Iterable[str] = (),
    ) -> List[NearbyDriver]:
        """Up to ``k`` fresh drivers by ascending distance, ties broken by driver id."""
        if k <= 0:
            return []
        excluded = set(exclude)
        now = self._clock()
        scored = []
        for position in list(self._positions.values()):
            if position.driver_id in excluded or not self.is_fresh(position, now):
                continue
            distance = haversine_km(lat, lng, position.lat, position.lng)
            if radius_km is not None and distance > radius_km:
                continue
            scored.append((distance, position.driver_id, position))

        return [
            NearbyDriver(
                driver_id=driver_id,
                lat=position.lat,
                lng=position.lng,
                distance_km=round(distance, 3),
                updated_at=position.updated_at,
            )
            for distance, driver_id, position in heapq.nsmallest(k, scored, key=lambda item: (item[0], item[1]))
        ]

    def __contains__(self, driver_id: object) -> bool:
        return driver_id in self._positions

    def __len__(self) -> int:
        return len(self._positions)
