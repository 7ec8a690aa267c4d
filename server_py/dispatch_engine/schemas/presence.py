from datetime import datetime
from pydantic import BaseModel
from typing import Optional

class PresenceStatusUpdate(BaseModel):
    status: str

class LocationUpdate(BaseModel):
    lat: float
    lng: float

class PresenceResponse(BaseModel):
    driver_id: str
    status: str
    lat: Optional[float] = None
    lng: Optional[float] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class NearbyDriverResponse(BaseModel):
    driver_id: str
    lat: float
    lng: float
    distance_km: float
    updated_at: datetime

    class Config:
        from_attributes = True
