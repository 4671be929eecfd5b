"""Transient-failure classification and bounded retry for upstream calls."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

import aiohttp
import httpx
from web3.exceptions import ContractLogicError, TimeExhausted

from certregistry.errors import ConfirmationTimeout, RegistryError, UpstreamUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_HTTP_STATUS = {408, 425, 429, 500, 502, 503, 504}

# Substrings JSON-RPC gateways put in errors for overload/outage conditions
_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "bad gateway",
    "gateway",
    "service unavailable",
    "too many requests",
    "rate limit",
    "econnreset",
    "connection reset",
    "header not found",
)


def classify(exc: BaseException) -> str:
    """Short label for an upstream failure, used in logs and error payloads."""
    if isinstance(exc, UpstreamUnavailable):
        return exc.classification
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException, TimeExhausted)):
        return "timeout"
    if isinstance(exc, ContractLogicError):
        return "revert"
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429:
            return "rate-limit"
        if status in (401, 403):
            return "configuration"
        if status >= 500:
            return "gateway"
        return "rejected"
    if isinstance(exc, aiohttp.ClientResponseError):
        if exc.status == 429:
            return "rate-limit"
        if exc.status in (401, 403):
            return "configuration"
        if exc.status >= 500:
            return "gateway"
        return "rejected"
    if isinstance(exc, (httpx.TransportError, aiohttp.ClientError, ConnectionError)):
        return "connection"
    text = str(exc).lower()
    if "timeout" in text or "timed out" in text:
        return "timeout"
    if "rate limit" in text or "too many requests" in text:
        return "rate-limit"
    if any(marker in text for marker in _TRANSIENT_MARKERS):
        return "gateway"
    return "rejected"


def is_transient(exc: BaseException) -> bool:
    """True when retrying the same call may succeed."""
    if isinstance(exc, ConfirmationTimeout):
        return False
    if isinstance(exc, UpstreamUnavailable):
        return exc.retryable
    if isinstance(exc, (RegistryError, ContractLogicError)):
        return False
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in _TRANSIENT_HTTP_STATUS
    if isinstance(exc, aiohttp.ClientResponseError):
        return exc.status in _TRANSIENT_HTTP_STATUS
    if isinstance(exc, (httpx.TransportError, aiohttp.ClientError, ConnectionError)):
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)


def as_upstream_error(service: str, exc: BaseException, attempts: int = 1) -> UpstreamUnavailable:
    """Wrap a raw client exception so the caller gets a classified error."""
    if isinstance(exc, UpstreamUnavailable):
        return exc
    classification = classify(exc)
    return UpstreamUnavailable(
        f"{service} call failed after {attempts} attempt(s): {type(exc).__name__}: {exc}",
        service=service,
        classification=classification,
        attempts=attempts,
        retryable=is_transient(exc),
    )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    service: str,
    description: str,
    attempts: int = 3,
    backoff: float = 1.0,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """Run ``operation`` up to ``attempts`` times while it fails transiently.

    Backoff doubles after each failed attempt. Permanent failures propagate
    unchanged on the first occurrence; exhausting the attempts raises
    ``UpstreamUnavailable`` chained to the last error.
    """
    sleep = sleep or asyncio.sleep
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if not is_transient(e):
                raise
            if attempt == attempts:
                logger.error(
                    "%s: giving up after %d attempts (%s): %s",
                    description, attempts, classify(e), e,
                )
                raise as_upstream_error(service, e, attempts) from e
            delay = backoff * (2 ** (attempt - 1))
            logger.warning(
                "%s: attempt %d/%d failed (%s), retrying in %.1fs: %s",
                description, attempt, attempts, classify(e), delay, e,
            )
            await sleep(delay)
    raise AssertionError("unreachable")
