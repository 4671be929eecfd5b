"""Certificate endpoints: issue, verify, download."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import FileResponse

from certregistry.context import AppContext, get_context
from certregistry.errors import InvalidInput
from certregistry.schemas.certificate import IssueResponse, VerifyRequest, VerifyResponse

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/certificates", response_model=IssueResponse)
async def issue_certificate(
    file: UploadFile = File(...),
    certificate_id: str = Form("", alias="certificateId"),
    issuer: Optional[str] = Form(None),
    ctx: AppContext = Depends(get_context),
):
    """Upload a PDF, anchor it on the ledger and index it locally."""
    limit = ctx.settings.max_upload_bytes
    if file.size is not None and file.size > limit:
        raise InvalidInput(f"File exceeds the {limit} byte limit")
    # one byte past the limit is enough for the pipeline to reject it
    blob = await file.read(limit + 1)
    result = await ctx.pipeline.issue(
        blob,
        certificate_id,
        issuer,
        content_type=file.content_type or "",
    )
    return IssueResponse(**result.as_dict())


@router.post("/certificates/verify", response_model=VerifyResponse)
async def verify_certificate(body: VerifyRequest, ctx: AppContext = Depends(get_context)):
    """Validity is reported in the body; the status is 200 either way."""
    result = await ctx.verifier.verify(body.certificate_id)
    return VerifyResponse(
        valid=result.valid,
        certificate_id=result.certificate_id,
        storage_id=result.storage_id,
        issuer=result.issuer,
        issue_timestamp=result.issue_timestamp,
        issue_date=result.issue_date,
        reason=result.reason,
    )


@router.get("/certificates/{certificate_id}/file")
async def download_certificate(
    certificate_id: str,
    mode: str = Query("inline", pattern="^(inline|attachment)$"),
    ctx: AppContext = Depends(get_context),
):
    stored = await ctx.verifier.fetch(certificate_id)
    return FileResponse(
        stored.path,
        media_type="application/pdf",
        filename=stored.filename,
        content_disposition_type=mode,
    )
