from __future__ import annotations

import enum

from sqlalchemy import Column, DateTime, Integer, String, Text, JSON, UniqueConstraint

from dispatch_engine.core.database import Base, utcnow


class MessageType(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    SYSTEM = "system"


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(32), nullable=False, index=True)
    seq = Column(Integer, nullable=False)
    sender_id = Column(String(64), nullable=False)
    recipient_id = Column(String(64), nullable=True)
    content = Column(Text, nullable=False)
    message_type = Column(String(16), nullable=False, default=MessageType.TEXT.value)
    attachments = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("order_id", "seq", name="uq_messages_order_seq"),
    )
