from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from dispatch_engine.core.dependencies import get_core, require_actor
from dispatch_engine.core.identity import Actor
from dispatch_engine.core.retry import retry_async
from dispatch_engine.schemas.message import MessageCreate, MessageResponse

router = APIRouter()


@router.get("/{order_id}/messages", response_model=List[MessageResponse])
async def get_order_messages(
    order_id: str,
    since_seq: Optional[int] = Query(None, ge=0, alias="sinceSeq"),
    actor: Actor = Depends(require_actor),
    core=Depends(get_core),
):
    """Conversation history in sequence order, optionally after a known sequence."""
    await retry_async(core.lifecycle.get_order_for, order_id, actor)
    messages = await retry_async(core.conversation.list_messages, order_id, since_seq)
    return [MessageResponse.model_validate(m) for m in messages]


@router.post(
    "/{order_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def post_order_message(
    order_id: str,
    payload: MessageCreate,
    actor: Actor = Depends(require_actor),
    core=Depends(get_core),
):
    await retry_async(core.lifecycle.get_order_for, order_id, actor)
    message = await retry_async(
        core.conversation.append,
        order_id,
        actor.id,
        payload.content,
        message_type=payload.message_type,
        recipient_id=payload.recipient_id,
        attachments=payload.attachments,
    )
    return MessageResponse.model_validate(message)
