"""
Retry helpers for idempotent read calls.

Write paths must not use these: they rely on dedup-by-key instead.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx

logger = logging.getLogger("enspira.common.retry")

T = TypeVar("T")

TRANSIENT_STATUSES = (429, 500, 502, 503, 504)


def backoff_delay(attempt: int, backoff_seconds: float) -> float:
    """Exponential backoff delay for a zero-based retry attempt."""
    return backoff_seconds * (2 ** attempt)


def is_transient(exc: BaseException) -> bool:
    """Transport errors and retryable HTTP statuses."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response is not None and exc.response.status_code in TRANSIENT_STATUSES
    return isinstance(exc, (httpx.RequestError, asyncio.TimeoutError, ConnectionError))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    backoff_seconds: float = 0.5,
    retryable: Callable[[BaseException], bool] = is_transient,
    label: str = "call",
) -> T:
    """Run ``operation`` with up to ``attempts`` tries.

    Non-retryable errors and the last failure are re-raised unchanged.
    Cancellation is never retried.
    """
    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as exc:
            if attempt >= attempts - 1 or not retryable(exc):
                raise
            delay = backoff_delay(attempt, backoff_seconds)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                label, attempt + 1, attempts, exc, delay,
            )
            await asyncio.sleep(delay)
    raise RuntimeError(f"{label} failed without error details")


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    attempts: int = 3,
    backoff_seconds: float = 0.5,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
    json_body: Optional[Dict[str, Any]] = None,
    timeout: Optional[float] = None,
) -> httpx.Response:
    """Execute an HTTP request, retrying transient statuses and transport errors."""

    async def _send() -> httpx.Response:
        kwargs: Dict[str, Any] = {"headers": headers, "params": params, "json": json_body}
        if timeout is not None:
            kwargs["timeout"] = timeout
        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
        return response

    return await retry_async(
        _send,
        attempts=attempts,
        backoff_seconds=backoff_seconds,
        label=f"{method} {url}",
    )
