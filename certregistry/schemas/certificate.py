from datetime import datetime
from typing import Optional

from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class IssueResponse(CamelModel):
    success: bool = True
    certificate_id: str
    normalized_id: str
    storage_id: str
    issuer: str
    issue_timestamp: int
    tx_hash: str
    message: str = "Certificate issued successfully"


class VerifyRequest(CamelModel):
    certificate_id: str


class VerifyResponse(CamelModel):
    valid: bool
    certificate_id: str
    storage_id: Optional[str] = None
    issuer: Optional[str] = None
    issue_timestamp: Optional[int] = None
    issue_date: Optional[datetime] = None
    reason: Optional[str] = None


class IndexEntryOut(CamelModel):
    normalized_id: str
    certificate_id: str
    content_hash: str
    storage_id: str
    issuer: str
    issue_timestamp: int
    tx_hash: Optional[str] = None


class OrphanOut(CamelModel):
    id: int
    storage_id: str
    certificate_id: Optional[str] = None
    reason: str
    tx_hash: Optional[str] = None
    recorded_at: Optional[datetime] = None


class SweepResponse(CamelModel):
    checked: int
    indexed: list[str]
    already_indexed: list[str]
    still_orphaned: list[str]
