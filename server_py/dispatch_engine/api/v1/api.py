from fastapi import APIRouter
from dispatch_engine.api.v1.endpoints import orders, messages, drivers

api_router = APIRouter()
api_router.include_router(orders.router, prefix="/orders", tags=["orders"])
api_router.include_router(messages.router, prefix="/orders", tags=["messages"])
api_router.include_router(drivers.router, prefix="/drivers", tags=["drivers"])
