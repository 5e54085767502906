from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable

from tenantauth.logging import get_logger
from tenantauth.service.errors import AuthError, AuthErrorKind
from tenantauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)


async def call_bounded(
    fn: Callable[..., Any],
    *args: Any,
    timeout: float,
    dependency: str,
    **kwargs: Any,
) -> Any:
    """Run a backend call under a deadline.

    Coroutine functions are awaited directly; blocking callables (psycopg,
    the in-memory store) run in a worker thread. Timeouts and
    ``StoreUnavailable`` surface as ``AuthError(DEPENDENCY_UNAVAILABLE)`` and
    are never treated as the answer to the check being performed.
    """
    if inspect.iscoroutinefunction(fn):
        awaitable = fn(*args, **kwargs)
    else:
        awaitable = asyncio.to_thread(fn, *args, **kwargs)
    operation = getattr(fn, "__name__", repr(fn))
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        logger.error(
            "dependency_timeout",
            dependency=dependency,
            operation=operation,
            timeout_seconds=timeout,
        )
        raise AuthError(
            AuthErrorKind.DEPENDENCY_UNAVAILABLE,
            f"{dependency} timed out",
            detail={"dependency": dependency, "operation": operation},
        ) from exc
    except StoreUnavailable as exc:
        logger.error(
            "dependency_unavailable",
            dependency=dependency,
            operation=operation,
            error=exc.message,
        )
        raise AuthError(
            AuthErrorKind.DEPENDENCY_UNAVAILABLE,
            f"{dependency} unavailable",
            detail={"dependency": dependency, "operation": operation},
        ) from exc
