"""Admin endpoints, authenticated by the ``X-Admin-Address`` header."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from certregistry.context import AppContext, get_context
from certregistry.errors import NotAuthorized
from certregistry.schemas.certificate import IndexEntryOut, OrphanOut, SweepResponse
from certregistry.schemas.institution import (
    ApprovalResponse,
    InstitutionRequestList,
    InstitutionRequestOut,
    RejectionResponse,
    RejectRequest,
)

logger = logging.getLogger(__name__)


def require_admin(
    x_admin_address: Optional[str] = Header(None),
    ctx: AppContext = Depends(get_context),
) -> str:
    if not ctx.institutions.is_admin(x_admin_address):
        logger.warning("Rejected admin request with header %r", x_admin_address)
        raise NotAuthorized(
            "Admin header missing or incorrect",
            public_message="Unauthorized: admin header missing or incorrect",
        )
    return x_admin_address.lower()


router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


@router.get("/institution-requests", response_model=InstitutionRequestList)
async def list_institution_requests(
    status: Optional[str] = Query(None, pattern="^(pending|approved|rejected)$"),
    ctx: AppContext = Depends(get_context),
):
    requests = await ctx.institutions.list_requests(status)
    return InstitutionRequestList(
        requests=[InstitutionRequestOut.model_validate(r) for r in requests],
    )


@router.post("/institution-requests/{identity}/approve", response_model=ApprovalResponse)
async def approve_institution_request(identity: str, ctx: AppContext = Depends(get_context)):
    return ApprovalResponse(**await ctx.institutions.approve(identity))


@router.post("/institution-requests/{identity}/reject", response_model=RejectionResponse)
async def reject_institution_request(
    identity: str,
    body: Optional[RejectRequest] = None,
    ctx: AppContext = Depends(get_context),
):
    result = await ctx.institutions.reject(identity, note=body.note if body else None)
    return RejectionResponse(**result)


@router.get("/orphans", response_model=list[OrphanOut])
async def list_orphans(ctx: AppContext = Depends(get_context)):
    return [OrphanOut.model_validate(o) for o in await ctx.index.unresolved_orphans()]


@router.post("/orphans/sweep", response_model=SweepResponse)
async def sweep_orphans(ctx: AppContext = Depends(get_context)):
    report = await ctx.reconciler.sweep_orphans()
    return SweepResponse(
        checked=report.checked,
        indexed=report.indexed,
        already_indexed=report.already_indexed,
        still_orphaned=report.still_orphaned,
    )


@router.post("/reconcile/{certificate_id}", response_model=IndexEntryOut)
async def reconcile_certificate(certificate_id: str, ctx: AppContext = Depends(get_context)):
    """Rebuild a missing index entry from the ledger's record."""
    return IndexEntryOut.model_validate(await ctx.reconciler.rebuild_entry(certificate_id))
