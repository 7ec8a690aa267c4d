from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Collection, Dict, List, Optional, Protocol, Set

from dispatch_engine.core.database import utcnow

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    MESSAGE = "message"
    STATUS_CHANGED = "status_changed"
    LOCATION_UPDATE = "location_update"
    TYPING = "typing"
    MEMBER_JOINED = "member_joined"
    MEMBER_LEFT = "member_left"
    # Personal channel only
    ORDER_OFFERED = "order_offered"
    OFFER_WITHDRAWN = "offer_withdrawn"
    DRIVER_LOCATION = "driver_location_updated"


class Subscriber(Protocol):
    async def send(self, event: dict) -> None:
        ...


@dataclass
class Subscription:
    connection_id: str
    role: str
    subscriber: Subscriber
    actor_id: Optional[str] = None


@dataclass
class Room:
    """Ordered fan-out group: an order room or one actor's personal channel."""

    key: str
    members: Dict[str, Subscription] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    event_seq: int = 0


class RealtimeHub:
    """In-process publish/subscribe, one room per order plus one channel per actor.

    Publishes to the same room (or channel) are serialised by its lock, so
    every subscriber sees events in the order they were accepted. Within one
    publish all members are sent to concurrently. A subscriber whose send
    fails or times out is dropped; it is expected to resubscribe and catch up
    from the conversation log and order snapshot.

    Personal channels carry what an actor must hear about without having
    joined a room: offers, withdrawn offers, messages addressed to them and,
    for operators, the live driver location feed.
    """

    def __init__(self, send_timeout: float = 5.0) -> None:
        self._rooms: Dict[str, Room] = {}
        self._connection_rooms: Dict[str, Set[str]] = {}
        self._channels: Dict[str, Room] = {}
        self._channel_roles: Dict[str, str] = {}
        self._connection_actor: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._send_timeout = send_timeout

    # ------------------------------------------------------------------
    # Order rooms
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        order_id: str,
        connection_id: str,
        role: str,
        subscriber: Subscriber,
        *,
        actor_id: Optional[str] = None,
        announce: bool = True,
    ) -> None:
        async with self._lock:
            room = self._rooms.get(order_id)
            if room is None:
                room = self._rooms[order_id] = Room(key=order_id)
            room.members[connection_id] = Subscription(
                connection_id=connection_id,
                role=role,
                subscriber=subscriber,
                actor_id=actor_id,
            )
            self._connection_rooms.setdefault(connection_id, set()).add(order_id)
        logger.debug("Connection %s joined room %s as %s", connection_id, order_id, role)
        if announce:
            await self.publish(
                order_id,
                EventKind.MEMBER_JOINED,
                {"actorId": actor_id, "role": role},
                exclude=connection_id,
            )

    async def unsubscribe(self, order_id: str, connection_id: str, *, announce: bool = True) -> bool:
        async with self._lock:
            subscription = self._detach(order_id, connection_id)
        if subscription is None:
            return False
        logger.debug("Connection %s left room %s", connection_id, order_id)
        if announce:
            await self.publish(
                order_id,
                EventKind.MEMBER_LEFT,
                {"actorId": subscription.actor_id, "role": subscription.role},
            )
        return True

    async def drop_connection(self, connection_id: str) -> List[str]:
        """Implicit unsubscribe from every room and the personal channel on connection loss."""
        async with self._lock:
            order_ids = list(self._connection_rooms.get(connection_id, ()))
            actor_id = self._connection_actor.get(connection_id)
            if actor_id is not None:
                self._detach_channel(actor_id, connection_id)
        for order_id in order_ids:
            await self.unsubscribe(order_id, connection_id)
        return order_ids

    def _detach(self, order_id: str, connection_id: str) -> Optional[Subscription]:
        room = self._rooms.get(order_id)
        if room is None:
            return None
        subscription = room.members.pop(connection_id, None)
        if not room.members:
            self._rooms.pop(order_id, None)
        rooms = self._connection_rooms.get(connection_id)
        if rooms is not None:
            rooms.discard(order_id)
            if not rooms:
                self._connection_rooms.pop(connection_id, None)
        return subscription

    async def publish(
        self,
        order_id: str,
        kind: EventKind,
        data: Dict[str, Any],
        *,
        exclude: Optional[str] = None,
    ) -> Optional[dict]:
        """Deliver an event to every connection in the order's room.

        Returns the event envelope, or None when nobody is subscribed.
        """
        room = self._rooms.get(order_id)
        if room is None:
            return None
        event, failed = await self._fanout(room, kind, data, order_id, {exclude} if exclude else ())
        if failed:
            async with self._lock:
                for connection_id in failed:
                    self._detach(order_id, connection_id)
        return event

    # ------------------------------------------------------------------
    # Personal channels
    # ------------------------------------------------------------------

    async def register_actor(
        self,
        actor_id: str,
        role: str,
        connection_id: str,
        subscriber: Subscriber,
    ) -> None:
        async with self._lock:
            channel = self._channels.get(actor_id)
            if channel is None:
                channel = self._channels[actor_id] = Room(key=actor_id)
            channel.members[connection_id] = Subscription(
                connection_id=connection_id,
                role=role,
                subscriber=subscriber,
                actor_id=actor_id,
            )
            self._channel_roles[actor_id] = role
            self._connection_actor[connection_id] = actor_id
        logger.debug("Connection %s registered for %s %s", connection_id, role, actor_id)

    def _detach_channel(self, actor_id: str, connection_id: str) -> None:
        self._connection_actor.pop(connection_id, None)
        channel = self._channels.get(actor_id)
        if channel is None:
            return
        channel.members.pop(connection_id, None)
        if not channel.members:
            self._channels.pop(actor_id, None)
            self._channel_roles.pop(actor_id, None)

    async def notify_actor(
        self,
        actor_id: str,
        kind: EventKind,
        data: Dict[str, Any],
        *,
        order_id: Optional[str] = None,
        skip: Collection[str] = (),
    ) -> Optional[dict]:
        """Deliver to every connection the actor registered, except ``skip``.

        Returns the envelope, or None when the actor has no live connection.
        """
        channel = self._channels.get(actor_id)
        if channel is None:
            return None
        event, failed = await self._fanout(channel, kind, data, order_id, skip)
        if failed:
            async with self._lock:
                for connection_id in failed:
                    self._detach_channel(actor_id, connection_id)
        return event

    async def notify_role(self, role: str, kind: EventKind, data: Dict[str, Any]) -> int:
        """Deliver to the personal channel of every connected actor with ``role``."""
        actor_ids = [actor_id for actor_id, actor_role in list(self._channel_roles.items()) if actor_role == role]
        delivered = 0
        for actor_id in actor_ids:
            if await self.notify_actor(actor_id, kind, data) is not None:
                delivered += 1
        return delivered

    # ------------------------------------------------------------------

    async def _fanout(
        self,
        room: Room,
        kind: EventKind,
        data: Dict[str, Any],
        order_id: Optional[str],
        skip: Collection[str],
    ):
        async with room.lock:
            room.event_seq += 1
            event = {
                "type": EventKind(kind).value,
                "orderId": order_id,
                "eventSeq": room.event_seq,
                "timestamp": utcnow().isoformat(),
                "data": data,
            }
            targets = [s for s in list(room.members.values()) if s.connection_id not in skip]
            results = await asyncio.gather(*(self._safe_send(room, s, event) for s in targets))
        failed = [s.connection_id for s, ok in zip(targets, results) if not ok]
        return event, failed

    async def _safe_send(self, room: Room, subscription: Subscription, event: dict) -> bool:
        try:
            await asyncio.wait_for(subscription.subscriber.send(event), timeout=self._send_timeout)
            return True
        except Exception:  # noqa: BLE001
            logger.info(
                "Dropping connection %s from %s after failed delivery",
                subscription.connection_id, room.key,
            )
            return False

    def members(self, order_id: str) -> List[str]:
        room = self._rooms.get(order_id)
        return list(room.members) if room else []

    def rooms_for(self, connection_id: str) -> Set[str]:
        return set(self._connection_rooms.get(connection_id, ()))

    def is_connected(self, actor_id: str) -> bool:
        return actor_id in self._channels

    def __contains__(self, order_id: object) -> bool:
        return order_id in self._rooms
