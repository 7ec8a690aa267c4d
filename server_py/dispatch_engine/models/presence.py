import enum
from sqlalchemy import Column, Integer, String, DateTime, Float
from dispatch_engine.core.database import Base, utcnow


class DriverStatus(str, enum.Enum):
    OFFLINE = "offline"
    AVAILABLE = "available"
    BUSY = "busy"
    UNAVAILABLE = "unavailable"


class DriverPresence(Base):
    __tablename__ = "driver_presence"

    driver_id = Column(String(64), primary_key=True)
    status = Column(String(16), nullable=False, default=DriverStatus.OFFLINE.value, index=True)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    updated_at = Column(DateTime, default=utcnow, nullable=False)


class DriverStatusLog(Base):
    __tablename__ = "driver_status_log"

    id = Column(Integer, primary_key=True, index=True)
    driver_id = Column(String(64), nullable=False, index=True)
    status = Column(String(16), nullable=False)
    started_at = Column(DateTime, default=utcnow, nullable=False)
