from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class MessageCreate(BaseModel):
    content: str = ""
    message_type: str = Field(default="text", alias="messageType")
    recipient_id: Optional[str] = Field(default=None, alias="recipientId")
    attachments: Optional[List[str]] = None

    model_config = {
        "populate_by_name": True,
    }


class MessageResponse(BaseModel):
    id: int
    order_id: str = Field(alias="orderId")
    seq: int
    sender_id: str = Field(alias="senderId")
    recipient_id: Optional[str] = Field(default=None, alias="recipientId")
    content: str
    message_type: str = Field(alias="messageType")
    attachments: Optional[List[str]] = None
    created_at: datetime = Field(alias="createdAt")

    model_config = {
        "from_attributes": True,
        "populate_by_name": True,
    }
