from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from dispatch_engine.core.errors import DispatchError, ValidationError
from dispatch_engine.core.identity import Actor, Role, decode_actor
from dispatch_engine.core.retry import retry_async
from dispatch_engine.services.realtime import EventKind

logger = logging.getLogger(__name__)

router = APIRouter()


class WebSocketSubscriber:
    """Hub subscriber handle for one websocket connection."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    async def send(self, event: dict) -> None:
        await self.websocket.send_json(event)


def _order_id(data: dict) -> Optional[str]:
    return _text(data.get("orderId"))


def _text(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


async def _join(core, actor: Actor, connection_id: str, subscriber: WebSocketSubscriber, order_id: str) -> None:
    # Raises PermissionDeniedError / NotFoundError for foreign orders
    order = await retry_async(core.lifecycle.get_order_for, order_id, actor)
    await core.hub.subscribe(
        order.id,
        connection_id,
        actor.role.value,
        subscriber,
        actor_id=actor.id,
    )
    await subscriber.send({"type": "joined", "orderId": order.id, "status": order.status})


async def _send_message(core, actor: Actor, data: dict, order_id: str) -> None:
    await retry_async(core.lifecycle.get_order_for, order_id, actor)
    attachments = data.get("attachments") if isinstance(data.get("attachments"), list) else None
    await retry_async(
        core.conversation.append,
        order_id,
        actor.id,
        str(data.get("content") or ""),
        message_type=str(data.get("messageType") or "text"),
        recipient_id=_text(data.get("recipientId")),
        attachments=attachments,
    )


async def _typing(core, actor: Actor, connection_id: str, order_id: str, is_typing: bool) -> None:
    if order_id not in core.hub.rooms_for(connection_id):
        return
    await core.hub.publish(
        order_id,
        EventKind.TYPING,
        {"actorId": actor.id, "isTyping": is_typing},
        exclude=connection_id,
    )


async def _update_location(core, actor: Actor, data: dict) -> None:
    if actor.role is not Role.DRIVER:
        raise ValidationError("Only drivers can update location")
    try:
        lat, lng = float(data.get("lat")), float(data.get("lng"))
    except (TypeError, ValueError):
        raise ValidationError("Invalid coordinates") from None
    await retry_async(core.presence.update_location, actor.id, lat, lng)


@router.websocket("/ws/orders")
async def order_rooms_websocket(websocket: WebSocket) -> None:
    """First frame: {"token": ...}. Then one JSON action per frame."""
    await websocket.accept()
    core = websocket.app.state.core
    connection_id = uuid.uuid4().hex
    subscriber = WebSocketSubscriber(websocket)
    try:
        init_payload = await websocket.receive_json()
        token = init_payload.get("token") if isinstance(init_payload, dict) else None
        actor = decode_actor(token)
        if actor is None:
            await websocket.close(code=4403)
            return
        await core.hub.register_actor(actor.id, actor.role.value, connection_id, subscriber)
        await websocket.send_json({"type": "ready", "connectionId": connection_id, "actorId": actor.id})

        while True:
            data = await websocket.receive_json()
            if not isinstance(data, dict):
                continue
            action = data.get("action")
            order_id = _order_id(data)
            try:
                if action == "join_order_room" and order_id:
                    await _join(core, actor, connection_id, subscriber, order_id)
                elif action == "leave_order_room" and order_id:
                    await core.hub.unsubscribe(order_id, connection_id)
                elif action == "send_message" and order_id:
                    await _send_message(core, actor, data, order_id)
                elif action in ("typing_start", "typing_stop") and order_id:
                    await _typing(core, actor, connection_id, order_id, action == "typing_start")
                elif action == "update_location":
                    await _update_location(core, actor, data)
                else:
                    await websocket.send_json({"type": "error", "detail": "Unknown action", "code": "unknown_action"})
            except DispatchError as exc:
                await websocket.send_json({"type": "error", **exc.to_dict()})
    except WebSocketDisconnect:
        pass
    except Exception:  # noqa: BLE001
        logger.exception("Order room websocket error")
        try:
            await websocket.close(code=1011)
        except Exception:  # noqa: BLE001
            pass
    finally:
        await core.hub.drop_connection(connection_id)
