from __future__ import annotations

import logging
from typing import AsyncIterator, List, Optional, Sequence

from sqlalchemy import asc, func, select
from sqlalchemy.exc import IntegrityError

from dispatch_engine.core.config import settings
from dispatch_engine.core.errors import NotFoundError, UnavailableError, ValidationError
from dispatch_engine.core.locks import KeyedLocks
from dispatch_engine.core.retry import storage_errors
from dispatch_engine.models.message import Message, MessageType
from dispatch_engine.models.order import Order
from dispatch_engine.services.realtime import EventKind, RealtimeHub

logger = logging.getLogger(__name__)

# Retries when another writer grabbed the same (order_id, seq) pair
APPEND_CONFLICT_RETRIES = 5


class ConversationLog:
    """Append-only, per-order ordered message log."""

    def __init__(self, session_factory, hub: RealtimeHub) -> None:
        self._session_factory = session_factory
        self._hub = hub
        self._writers = KeyedLocks()

    async def append(
        self,
        order_id: str,
        sender_id: str,
        content: str,
        *,
        message_type: str = MessageType.TEXT.value,
        recipient_id: Optional[str] = None,
        attachments: Optional[Sequence[str]] = None,
    ) -> Message:
        text = (content or "").strip()
        if not text and not attachments:
            raise ValidationError("Message content is required", order_id=order_id)
        if len(text) > settings.MESSAGE_CONTENT_MAX_LENGTH:
            raise ValidationError("Message content is too long", order_id=order_id)
        try:
            kind = MessageType(message_type or MessageType.TEXT.value)
        except ValueError:
            raise ValidationError(f"Unknown message type: {message_type}", order_id=order_id) from None

        # Single writer per order: sequence assignment and publish happen
        # under the same lock so the room sees messages in sequence order.
        async with self._writers.hold(order_id):
            message = await self._insert_next(
                order_id,
                sender_id=sender_id,
                recipient_id=recipient_id,
                content=text,
                message_type=kind.value,
                attachments=list(attachments) if attachments else None,
            )
            payload = serialize_message(message)
            await self._hub.publish(order_id, EventKind.MESSAGE, payload)
            if message.recipient_id and message.recipient_id != sender_id:
                # Connections already in the room have just received it
                await self._hub.notify_actor(
                    message.recipient_id,
                    EventKind.MESSAGE,
                    payload,
                    order_id=order_id,
                    skip=set(self._hub.members(order_id)),
                )
        return message

    async def _insert_next(self, order_id: str, *, recipient_id: Optional[str], **fields) -> Message:
        async with storage_errors("conversation append"):
            for _ in range(APPEND_CONFLICT_RETRIES):
                async with self._session_factory() as session:
                    order = await session.get(Order, order_id)
                    if order is None:
                        raise NotFoundError("Order not found", order_id=order_id)
                    if recipient_id is None:
                        recipient_id = _other_party(order, fields["sender_id"])

                    result = await session.execute(
                        select(func.max(Message.seq)).where(Message.order_id == order_id)
                    )
                    next_seq = (result.scalar() or 0) + 1
                    message = Message(order_id=order_id, seq=next_seq, recipient_id=recipient_id, **fields)
                    session.add(message)
                    try:
                        await session.commit()
                    except IntegrityError:
                        await session.rollback()
                        logger.warning("Sequence %s for order %s already taken, retrying", next_seq, order_id)
                        continue
                    await session.refresh(message)
                    return message
        raise UnavailableError("Could not allocate a message sequence number", order_id=order_id)

    async def history(
        self,
        order_id: str,
        since_seq: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> AsyncIterator[Message]:
        """Messages with ``seq > since_seq`` in ascending order.

        Lazy and finite: pages are fetched on demand and iteration stops at
        the last stored message. Calling it again restarts from the given
        position.
        """
        page_size = page_size or settings.HISTORY_PAGE_SIZE
        cursor = since_seq or 0
        while True:
            page = await self._fetch_page(order_id, cursor, page_size)
            for message in page:
                yield message
            if len(page) < page_size:
                return
            cursor = page[-1].seq

    async def list_messages(self, order_id: str, since_seq: Optional[int] = None) -> List[Message]:
        return [message async for message in self.history(order_id, since_seq)]

    async def _fetch_page(self, order_id: str, after_seq: int, limit: int) -> List[Message]:
        async with storage_errors("conversation history"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Message)
                    .where(Message.order_id == order_id, Message.seq > after_seq)
                    .order_by(asc(Message.seq))
                    .limit(limit)
                )
                return list(result.scalars())


def _other_party(order: Order, sender_id: str) -> Optional[str]:
    if sender_id == order.client_id:
        return order.driver_id
    if sender_id == order.driver_id:
        return order.client_id
    return None


def serialize_message(message: Message) -> dict:
    """JSON-compatible representation used by the API and the realtime hub."""
    return {
        "id": message.id,
        "orderId": message.order_id,
        "seq": message.seq,
        "senderId": message.sender_id,
        "recipientId": message.recipient_id,
        "content": message.content,
        "messageType": message.message_type,
        "attachments": message.attachments or [],
        "createdAt": message.created_at.isoformat(),
    }
