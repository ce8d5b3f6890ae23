"""
Reusable decorators for the server.

- `retry_on_error`: retries async upstream calls with exponential backoff.
- `log_route_usage`: logs each HTTP request served by an aiohttp handler.
"""

import asyncio
import logging
import time
from functools import wraps
from typing import Callable, Type, Union

import aiohttp
from aiohttp import web

from config.settings import MAX_RETRY_ATTEMPTS, RETRY_BASE_DELAY, RETRY_MAX_DELAY

logger = logging.getLogger("pokemmo_link.decorators")


def retry_on_error(
    max_retries: int = MAX_RETRY_ATTEMPTS,
    exceptions: Union[Type[Exception], tuple] = (
        aiohttp.ClientError,
        asyncio.TimeoutError,
    ),
    base_delay: float = RETRY_BASE_DELAY,
    max_delay: float = RETRY_MAX_DELAY,
):
    """
    Retry an async function on the given exceptions with exponential backoff.

    The delay before retry `n` (0-based) is `min(base_delay * 2**n, max_delay)`.

    Args:
        max_retries: Total attempts before giving up.
        exceptions: Exception type or tuple of types that trigger a retry.
        base_delay: Initial delay in seconds.
        max_delay: Upper bound for a single delay.

    Raises:
        Exception: The last exception once every attempt failed.
    """

    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_retries - 1:
                        logger.error(
                            f"{func.__name__} failed after {max_retries} attempts: {e}"
                        )
                        raise

                    delay = min(base_delay * (2**attempt), max_delay)
                    logger.warning(
                        f"{func.__name__} attempt {attempt + 1}/{max_retries} failed: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator


def log_route_usage(func: Callable):
    """
    Log method, path, status and duration of a request handler.

    Works for plain handler functions taking the request as their only
    positional argument.
    """

    @wraps(func)
    async def wrapper(request: web.Request, *args, **kwargs):
        started = time.perf_counter()
        status = 500
        try:
            response = await func(request, *args, **kwargs)
            status = response.status
            return response
        except web.HTTPException as e:
            status = e.status
            raise
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.info(
                f"{request.method} {request.path} -> {status} ({elapsed_ms:.0f}ms)",
                extra={
                    "route": func.__name__,
                    "status": status,
                    "remote": request.remote,
                },
            )

    return wrapper
