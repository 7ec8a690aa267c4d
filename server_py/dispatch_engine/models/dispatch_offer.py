from sqlalchemy import Column, Integer, String, DateTime, JSON
from dispatch_engine.core.database import Base, utcnow


class DispatchOffer(Base):
    """Ephemeral per-order dispatch state.

    ``candidates`` is the ranked driver list, ``current_index`` points at the
    candidate currently offered. An empty candidate list with
    ``next_requery_at`` set means the order sits in the unassigned pool.
    ``epoch`` is the order version the live offer was made at; timers
    compare it before acting.
    """

    __tablename__ = "dispatch_offers"

    order_id = Column(String(32), primary_key=True)
    candidates = Column(JSON, nullable=False, default=list)
    current_index = Column(Integer, nullable=False, default=0)
    offered_driver_id = Column(String(64), nullable=True, index=True)
    deadline = Column(DateTime, nullable=True)
    epoch = Column(Integer, nullable=True)
    declined = Column(JSON, nullable=False, default=list)
    requery_attempts = Column(Integer, nullable=False, default=0)
    next_requery_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
