import enum
import uuid
from sqlalchemy import Column, Integer, String, DateTime, Float, Text, Index
from dispatch_engine.core.database import Base, utcnow


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


# Linear happy path; cancelled/failed branch off it
STATUS_SEQUENCE = (
    OrderStatus.PENDING,
    OrderStatus.ASSIGNED,
    OrderStatus.ACCEPTED,
    OrderStatus.PICKED_UP,
    OrderStatus.IN_TRANSIT,
    OrderStatus.DELIVERED,
)
CANCELLABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.ASSIGNED, OrderStatus.ACCEPTED})
# Statuses in which the order occupies its driver
DRIVER_HELD_STATUSES = frozenset({
    OrderStatus.ASSIGNED,
    OrderStatus.ACCEPTED,
    OrderStatus.PICKED_UP,
    OrderStatus.IN_TRANSIT,
})
# Statuses in which the driver is carrying the order and cannot go available
DRIVER_ACTIVE_STATUSES = frozenset({
    OrderStatus.ACCEPTED,
    OrderStatus.PICKED_UP,
    OrderStatus.IN_TRANSIT,
})

# Which timestamp column each status stamps
STATUS_TIMESTAMP_FIELDS = {
    OrderStatus.ASSIGNED: "assigned_at",
    OrderStatus.ACCEPTED: "accepted_at",
    OrderStatus.PICKED_UP: "picked_up_at",
    OrderStatus.IN_TRANSIT: "in_transit_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
    OrderStatus.FAILED: "failed_at",
}


def new_order_id() -> str:
    return uuid.uuid4().hex


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(32), primary_key=True, default=new_order_id)
    code_order = Column(String(32), unique=True, index=True, nullable=False)
    client_id = Column(String(64), index=True, nullable=False)
    driver_id = Column(String(64), index=True, nullable=True)
    status = Column(String(16), nullable=False, default=OrderStatus.PENDING.value, index=True)

    # Delivery target
    dropoff_address = Column(String, nullable=False)
    dropoff_lat = Column(Float, nullable=True)
    dropoff_lng = Column(Float, nullable=True)

    # Optional pickup point (used for candidate search when present)
    pickup_lat = Column(Float, nullable=True)
    pickup_lng = Column(Float, nullable=True)

    payment_method = Column(String(32), nullable=False)
    amount = Column(Integer, nullable=False, default=0)  # minor units
    content = Column(Text, nullable=False)
    cancel_reason = Column(String, nullable=True)

    # Lifecycle timestamps, each set at most once
    created_at = Column(DateTime, default=utcnow, nullable=False)
    assigned_at = Column(DateTime, nullable=True)
    accepted_at = Column(DateTime, nullable=True)
    picked_up_at = Column(DateTime, nullable=True)
    in_transit_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)

    # Optimistic concurrency
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_orders_driver_status", "driver_id", "status"),
    )

    @property
    def search_point(self):
        """Pickup point if known, otherwise the dropoff target."""
        if self.pickup_lat is not None and self.pickup_lng is not None:
            return self.pickup_lat, self.pickup_lng
        if self.dropoff_lat is not None and self.dropoff_lng is not None:
            return self.dropoff_lat, self.dropoff_lng
        return None
