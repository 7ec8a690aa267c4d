from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError

from dispatch_engine.core.config import settings
from dispatch_engine.core.errors import UnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_DB_ERRORS = (OperationalError, InterfaceError, DisconnectionError)


@asynccontextmanager
async def storage_errors(what: str) -> AsyncIterator[None]:
    """Translate driver-level connectivity failures into ``UnavailableError``."""
    try:
        yield
    except TRANSIENT_DB_ERRORS as exc:
        raise UnavailableError(f"{what}: storage unavailable") from exc


def backoff_delay(attempt: int, base: float, ceiling: float) -> float:
    return min(ceiling, base * (2 ** attempt))


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
    **kwargs: Any,
) -> T:
    """Run ``func`` retrying ``UnavailableError`` with bounded exponential backoff.

    The last ``UnavailableError`` is re-raised once the budget is spent.
    Other errors propagate immediately.
    """
    attempts = attempts if attempts is not None else settings.RETRY_ATTEMPTS
    base_delay = base_delay if base_delay is not None else settings.RETRY_BASE_DELAY_SECONDS
    max_delay = max_delay if max_delay is not None else settings.RETRY_MAX_DELAY_SECONDS

    for attempt in range(max(1, attempts)):
        try:
            return await func(*args, **kwargs)
        except UnavailableError:
            if attempt + 1 >= attempts:
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                "%s unavailable (attempt %s/%s), retrying in %.2fs",
                getattr(func, "__name__", "call"), attempt + 1, attempts, delay,
            )
            await asyncio.sleep(delay)
    raise UnavailableError("retry budget exhausted")
