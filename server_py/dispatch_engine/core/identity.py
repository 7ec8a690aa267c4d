from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from dispatch_engine.core.config import settings


class Role(str, enum.Enum):
    CLIENT = "client"
    DRIVER = "driver"
    OPERATOR = "operator"


# Role names used by older token issuers
_ROLE_ALIASES = {
    "customer": Role.CLIENT,
    "admin": Role.OPERATOR,
}


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as supplied by the identity layer."""

    id: str
    role: Role

    @property
    def is_operator(self) -> bool:
        return self.role is Role.OPERATOR


def parse_role(value: Optional[str]) -> Optional[Role]:
    if not value:
        return None
    text = str(value).strip().lower()
    if text in _ROLE_ALIASES:
        return _ROLE_ALIASES[text]
    try:
        return Role(text)
    except ValueError:
        return None


def decode_actor(token: Optional[str]) -> Optional[Actor]:
    """Returns the actor encoded in a bearer token, or None if it is missing or invalid."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
    subject = payload.get("sub")
    role = parse_role(payload.get("role"))
    if subject is None or role is None:
        return None
    return Actor(id=str(subject), role=role)


def encode_actor(actor_id: str, role: Role, expires_minutes: int = 60 * 24) -> str:
    """Development helper; real tokens come from the identity service."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    return jwt.encode(
        {"sub": str(actor_id), "role": role.value, "exp": expire},
        settings.SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )
