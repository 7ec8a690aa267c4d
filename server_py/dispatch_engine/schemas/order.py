from pydantic import BaseModel
from datetime import datetime
from typing import Any, Dict, List, Optional

class OrderCreate(BaseModel):
    # Required fields are checked by the lifecycle manager so that a missing
    # one surfaces as a ValidationError with our error code
    content: Optional[str] = None
    dropoff_address: Optional[str] = None
    dropoff_lat: Optional[float] = None
    dropoff_lng: Optional[float] = None
    pickup_lat: Optional[float] = None
    pickup_lng: Optional[float] = None
    payment_method: Optional[str] = None
    amount: Optional[int] = None

class OrderResponse(BaseModel):
    id: str
    code_order: str
    client_id: str
    driver_id: Optional[str] = None
    status: str
    dropoff_address: str
    dropoff_lat: Optional[float] = None
    dropoff_lng: Optional[float] = None
    pickup_lat: Optional[float] = None
    pickup_lng: Optional[float] = None
    payment_method: str
    amount: int
    content: str
    cancel_reason: Optional[str] = None
    version: int
    created_at: datetime
    assigned_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    in_transit_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class OrderPage(BaseModel):
    items: List[OrderResponse]
    total: int
    page: int
    limit: int

class StatusAdvance(BaseModel):
    status: str

class OrderClose(BaseModel):
    reason: Optional[str] = None

class OrderTracking(BaseModel):
    order: Dict[str, Any]
    clientId: str
    driver: Optional[Dict[str, Any]] = None
