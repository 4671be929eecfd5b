"""Verification (ledger read) and retrieval (local copy) of certificates."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from certregistry.errors import InvalidInput, NotFound, RegistryError
from certregistry.models import CertificateEntry
from certregistry.services.issuance import normalize_certificate_id
from certregistry.services.local_index import LocalIndex
from certregistry.services.retry import as_upstream_error, with_retry

logger = logging.getLogger(__name__)

NOT_VALID_REASON = "Certificate not found"
FILE_NOT_FOUND = "Certificate file not found"


@dataclass
class VerificationResult:
    certificate_id: str
    valid: bool
    storage_id: Optional[str] = None
    issuer: Optional[str] = None
    issue_timestamp: Optional[int] = None
    reason: Optional[str] = None

    @property
    def issue_date(self) -> Optional[datetime]:
        if self.issue_timestamp is None:
            return None
        return datetime.fromtimestamp(self.issue_timestamp, tz=timezone.utc)


@dataclass
class StoredCertificate:
    entry: CertificateEntry
    path: Path

    @property
    def filename(self) -> str:
        return f"certificate_{self.entry.normalized_id}.pdf"


class CertificateVerifier:
    def __init__(self, ledger, index: LocalIndex, *, retry_attempts: int = 3, retry_backoff: float = 1.0):
        self.ledger = ledger
        self.index = index
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff

    async def verify(self, certificate_id: str) -> VerificationResult:
        """Ask the ledger about ``certificate_id``. Touches no local state.

        Unknown and invalid identifiers produce the same answer.
        """
        if not certificate_id or not certificate_id.strip():
            raise InvalidInput("Certificate ID required")
        certificate_id = certificate_id.strip()
        logger.info("Verification request for %s", certificate_id)
        try:
            record = await with_retry(
                lambda: self.ledger.verify_certificate(certificate_id),
                service="ledger",
                description=f"verifyCertificate({certificate_id})",
                attempts=self.retry_attempts,
                backoff=self.retry_backoff,
            )
        except RegistryError:
            raise
        except Exception as e:
            raise as_upstream_error("ledger", e) from e

        if not record.valid:
            logger.info("Certificate %s not valid on the ledger", certificate_id)
            return VerificationResult(certificate_id=certificate_id, valid=False, reason=NOT_VALID_REASON)
        return VerificationResult(
            certificate_id=certificate_id,
            valid=True,
            storage_id=record.storage_id,
            issuer=record.issuer,
            issue_timestamp=record.issue_date,
        )

    async def fetch(self, certificate_id: str) -> StoredCertificate:
        """Locate the local copy of an issued certificate."""
        normalized_id = normalize_certificate_id(certificate_id or "")
        if not normalized_id:
            raise InvalidInput("Certificate ID required")
        entry = await self.index.get(normalized_id)
        if entry is None or not entry.file_path:
            logger.info("Download request for %s: never indexed", normalized_id)
            raise NotFound(
                f"{normalized_id} is not in the local index",
                reason="not_indexed",
                public_message=FILE_NOT_FOUND,
            )
        path = Path(entry.file_path)
        if not path.is_file():
            logger.error(
                "Content loss: %s is indexed (storage_id=%s) but %s is missing on disk",
                normalized_id, entry.storage_id, path,
            )
            raise NotFound(
                f"{path} missing for {normalized_id}",
                reason="file_missing",
                public_message=FILE_NOT_FOUND,
            )
        logger.info("Serving %s from %s", normalized_id, path)
        return StoredCertificate(entry=entry, path=path)
