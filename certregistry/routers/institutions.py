"""Institution registration endpoints."""

import logging

from fastapi import APIRouter, Depends

from certregistry.context import AppContext, get_context
from certregistry.schemas.institution import (
    InstitutionOut,
    RegisterInstitutionRequest,
    RegisterInstitutionResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/institutions", response_model=RegisterInstitutionResponse)
async def register_institution(body: RegisterInstitutionRequest, ctx: AppContext = Depends(get_context)):
    result = await ctx.institutions.register(
        body.institution,
        body.submitter_identity,
        body.signature,
        pin=body.pin_to_store,
    )
    if result["status"] == "registered":
        message = "Admin institution registered"
    else:
        message = "Institution registration submitted and pending admin approval"
    return RegisterInstitutionResponse(**result, message=message)


@router.get("/institutions/{identity}", response_model=InstitutionOut)
async def get_institution(identity: str, ctx: AppContext = Depends(get_context)):
    return InstitutionOut.model_validate(await ctx.institutions.get(identity))
