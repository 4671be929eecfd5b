import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from certregistry.context import AppContext, get_context
from certregistry.schemas.health import HealthResponse, RpcStatusResponse
from certregistry.services.endpoint_selector import redact_url

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(ctx: AppContext = Depends(get_context)):
    return HealthResponse(
        status="degraded" if ctx.selection.degraded else "healthy",
        service=ctx.settings.service_name,
        version=ctx.settings.service_version,
        rpc_provider=redact_url(ctx.selection.selected),
        rpc_degraded=ctx.selection.degraded,
        indexed_certificates=await ctx.index.count(),
        timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S"),
    )


@router.get("/rpc-status", response_model=RpcStatusResponse)
async def rpc_status(ctx: AppContext = Depends(get_context)):
    """Endpoint selection made at startup, with the raw probe table."""
    return ctx.selection.as_dict()
