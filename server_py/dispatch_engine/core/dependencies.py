from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Callable, Optional
from dispatch_engine.core.identity import Actor, Role, decode_actor

# Bearer scheme; a missing header is handled by require_actor
security = HTTPBearer(auto_error=False)

async def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[Actor]:
    """
    Actor from the JWT issued by the identity layer.
    Returns None when no token is given or it does not verify.
    """
    if not credentials:
        return None
    return decode_actor(credentials.credentials)

async def require_actor(
    current_actor: Optional[Actor] = Depends(get_current_actor)
) -> Actor:
    if current_actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return current_actor

def require_role(*roles: Role) -> Callable:
    """Dependency factory restricting an endpoint to the given roles."""

    async def dependency(actor: Actor = Depends(require_actor)) -> Actor:
        if actor.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not allowed for role " + actor.role.value,
            )
        return actor

    return dependency

def get_core(request: Request):
    """Engine services built at startup (see dispatch_engine.main)."""
    return request.app.state.core
