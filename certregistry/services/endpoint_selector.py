"""Ledger RPC endpoint selection.

Runs once at startup. With a single candidate nothing is probed. With
several, every candidate is asked for the current block height concurrently
and the fastest responder is used exclusively. When nobody answers in time
the first configured candidate is used and the selection is flagged as
degraded. The result is kept for ``/api/rpc-status``; there is no re-probing
during the process lifetime.
"""

import asyncio
import logging
import re
import time
from dataclasses import asdict, dataclass, field
from typing import Awaitable, Callable, Optional
from urllib.parse import urlsplit, urlunsplit

from web3 import AsyncHTTPProvider, AsyncWeb3

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT_MS = 5000

POLICY_SINGLE = "single"
POLICY_FASTEST = "single-fastest"
POLICY_FALLBACK = "single-fallback"

# Path segments this long are API keys (infura, alchemy, ...)
_SECRET_SEGMENT = re.compile(r"^[A-Za-z0-9_-]{20,}$")

Probe = Callable[[str], Awaitable[int]]


@dataclass
class ProbeResult:
    url: str
    status: str  # single / fulfilled / rejected
    latency_ms: Optional[float] = None
    error: Optional[str] = None
    block_number: Optional[int] = None


@dataclass
class EndpointSelection:
    candidates: list[str]
    policy: str
    selected: str
    probes: list[ProbeResult] = field(default_factory=list)
    degraded: bool = False

    @property
    def ranked(self) -> list[ProbeResult]:
        """Successful probes, fastest first."""
        ok = [p for p in self.probes if p.status == "fulfilled"]
        return sorted(ok, key=lambda p: p.latency_ms)

    def as_dict(self, redact: bool = True) -> dict:
        clean = redact_url if redact else (lambda u: u)
        return {
            "rpcUrls": [clean(u) for u in self.candidates],
            "providerType": self.policy,
            "providerUsing": clean(self.selected),
            "degraded": self.degraded,
            "rpcProbeResults": [
                {**asdict(p), "url": clean(p.url)} for p in self.probes
            ],
        }


def redact_url(url: str) -> str:
    """Hide credentials embedded in an RPC URL."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return "<malformed>"
    if not parts.scheme or not parts.netloc:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    segments = [
        "***" if _SECRET_SEGMENT.match(seg) else seg
        for seg in parts.path.split("/")
    ]
    return urlunsplit((parts.scheme, host, "/".join(segments), "", ""))


async def fetch_block_number(url: str) -> int:
    """Cheap read-only call used as the probe."""
    w3 = AsyncWeb3(AsyncHTTPProvider(url))
    try:
        return await w3.eth.block_number
    finally:
        await w3.provider.disconnect()


async def probe_endpoint(
    url: str,
    timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS,
    probe: Probe = fetch_block_number,
) -> ProbeResult:
    """Measure one candidate. Never raises: failures land in ``error``."""
    start = time.perf_counter()
    try:
        height = await asyncio.wait_for(probe(url), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        return ProbeResult(url=url, status="rejected", error=f"timeout after {timeout_ms}ms")
    except Exception as e:
        return ProbeResult(url=url, status="rejected", error=f"{type(e).__name__}: {e}")
    latency = round((time.perf_counter() - start) * 1000, 1)
    return ProbeResult(url=url, status="fulfilled", latency_ms=latency, block_number=height)


async def select_endpoint(
    candidates: list[str],
    timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS,
    probe: Probe = fetch_block_number,
) -> EndpointSelection:
    if not candidates:
        raise ValueError("at least one RPC candidate is required")

    if len(candidates) == 1:
        url = candidates[0]
        logger.info("Using single RPC provider: %s", redact_url(url))
        return EndpointSelection(
            candidates=list(candidates),
            policy=POLICY_SINGLE,
            selected=url,
            probes=[ProbeResult(url=url, status="single")],
        )

    logger.info("Probing %d RPC providers (timeout %dms)", len(candidates), timeout_ms)
    probes = await asyncio.gather(
        *(probe_endpoint(url, timeout_ms, probe) for url in candidates)
    )
    selection = EndpointSelection(
        candidates=list(candidates),
        policy=POLICY_FASTEST,
        selected=candidates[0],
        probes=list(probes),
    )

    for p in probes:
        if p.error:
            logger.warning("RPC probe failed for %s: %s", redact_url(p.url), p.error)

    ranked = selection.ranked
    if not ranked:
        logger.warning(
            "No RPC endpoints responded within %dms; falling back to first configured URL %s",
            timeout_ms, redact_url(candidates[0]),
        )
        selection.policy = POLICY_FALLBACK
        selection.degraded = True
        return selection

    logger.info(
        "RPC probe results (fastest first): %s",
        ", ".join(f"{redact_url(p.url)} ({p.latency_ms}ms)" for p in ranked),
    )
    selection.selected = ranked[0].url
    logger.info("Using fastest RPC provider: %s", redact_url(selection.selected))
    return selection
