from fastapi import APIRouter, Depends, Query
from typing import List, Optional

from dispatch_engine.core.dependencies import get_core, require_actor, require_role
from dispatch_engine.core.identity import Actor, Role
from dispatch_engine.core.retry import retry_async
from dispatch_engine.schemas.presence import (
    LocationUpdate,
    NearbyDriverResponse,
    PresenceResponse,
    PresenceStatusUpdate,
)

router = APIRouter()


@router.get("/nearby", response_model=List[NearbyDriverResponse])
async def get_nearby_drivers(
    lat: float,
    lng: float,
    radius: Optional[float] = Query(None, gt=0, description="Search radius in km"),
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(require_actor),
    core=Depends(get_core),
):
    """Available drivers with a fresh position, nearest first."""
    radius_km = radius if radius is not None else core.config.DISPATCH_SEARCH_RADIUS_KM
    return core.presence.nearby_drivers(lat, lng, radius_km=radius_km, limit=limit)


@router.get("/me", response_model=PresenceResponse)
async def get_my_presence(
    actor: Actor = Depends(require_role(Role.DRIVER)),
    core=Depends(get_core),
):
    return await retry_async(core.presence.get_presence, actor.id)


@router.put("/me/status", response_model=PresenceResponse)
async def update_my_status(
    payload: PresenceStatusUpdate,
    actor: Actor = Depends(require_role(Role.DRIVER)),
    core=Depends(get_core),
):
    return await retry_async(core.presence.set_status, actor.id, payload.status)


@router.put("/me/location", response_model=PresenceResponse)
async def update_my_location(
    payload: LocationUpdate,
    actor: Actor = Depends(require_role(Role.DRIVER)),
    core=Depends(get_core),
):
    return await retry_async(core.presence.update_location, actor.id, payload.lat, payload.lng)


@router.get("/{driver_id}/presence", response_model=PresenceResponse)
async def get_driver_presence(
    driver_id: str,
    actor: Actor = Depends(require_role(Role.OPERATOR)),
    core=Depends(get_core),
):
    return await retry_async(core.presence.get_presence, driver_id)
