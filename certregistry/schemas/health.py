from typing import Optional

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    rpc_provider: str
    rpc_degraded: bool
    indexed_certificates: int
    timestamp: str


class ProbeResultOut(BaseModel):
    url: str
    status: str
    latency_ms: Optional[float] = None
    error: Optional[str] = None
    block_number: Optional[int] = None


class RpcStatusResponse(BaseModel):
    rpcUrls: list[str]
    providerType: str
    providerUsing: str
    degraded: bool
    rpcProbeResults: list[ProbeResultOut]
