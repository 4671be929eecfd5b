from datetime import datetime
from typing import Any, Optional, Union

from pydantic import Field

from certregistry.schemas.certificate import CamelModel


class RegisterInstitutionRequest(CamelModel):
    institution: Union[dict[str, Any], str]
    submitter_identity: str = Field(validation_alias="submitterIdentity")
    signature: str = Field(validation_alias="signatureOverInstitutionJSON")
    pin_to_store: bool = Field(False, validation_alias="pinToStore")


class RegisterInstitutionResponse(CamelModel):
    success: bool = True
    status: str
    identity: str
    storage_id: Optional[str] = None
    message: str


class InstitutionOut(CamelModel):
    identity: str
    institution: dict[str, Any] = Field(validation_alias="profile")
    storage_id: Optional[str] = None
    registered_at: datetime


class InstitutionRequestOut(CamelModel):
    identity: str
    institution: dict[str, Any] = Field(validation_alias="profile")
    storage_id: Optional[str] = None
    status: str
    requested_at: datetime
    handled_at: Optional[datetime] = None
    history: list[dict[str, Any]] = []
    note: Optional[str] = None


class InstitutionRequestList(CamelModel):
    success: bool = True
    requests: list[InstitutionRequestOut]


class ApprovalResponse(CamelModel):
    success: bool = True
    identity: str
    status: str
    registered_at: datetime
    storage_id: Optional[str] = None
    on_chain_authorization: str


class RejectRequest(CamelModel):
    note: Optional[str] = None


class RejectionResponse(CamelModel):
    success: bool = True
    identity: str
    status: str
    handled_at: datetime
