"""Certificate issuance pipeline.

One call to ``IssuancePipeline.issue`` takes a PDF and an identifier through:

    validate -> duplicate checks -> authorization pre-check
      -> store upload -> self-authorization (admin only)
      -> issueCertificate -> ledger read-back -> local index write

Nothing is written to the index unless the ledger confirmed the issuance and
reports the storage identifier that was just uploaded. An uploaded blob whose
issuance fails stays pinned and is recorded in the orphan log. When sending
or confirming the issuance transaction fails without a revert, the ledger is
read anyway: the transaction may have landed.

Once the issuance transaction is about to be submitted, the rest of the work
runs in a shielded task: a caller that goes away does not stop the read-back
and the index write.
"""

import asyncio
import hashlib
import logging
import os
import re
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

from web3 import Web3

from certregistry.errors import (
    ConsistencyError,
    DuplicateContent,
    DuplicateId,
    InvalidInput,
    LedgerReverted,
    NotAuthorized,
    RegistryError,
)
from certregistry.services.local_index import LocalIndex, remove_unindexed_file
from certregistry.services.retry import as_upstream_error, with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

ACCEPTED_CONTENT_TYPE = "application/pdf"
PDF_MAGIC = b"%PDF-"
DEFAULT_MAX_BLOB_BYTES = 16 * 1024 * 1024

_NON_ALPHANUMERIC = re.compile(r"[^A-Za-z0-9]")


def normalize_certificate_id(identifier: str) -> str:
    """Index key for a certificate identifier: alphanumerics only, upper-cased."""
    return _NON_ALPHANUMERIC.sub("", identifier or "").upper()


def content_hash(blob: bytes) -> str:
    return hashlib.sha256(blob).hexdigest()


@dataclass
class IssuanceResult:
    certificate_id: str
    normalized_id: str
    storage_id: str
    issuer: str
    issue_timestamp: int
    tx_hash: str

    def as_dict(self) -> dict:
        return asdict(self)


class IssuancePipeline:
    def __init__(
        self,
        ledger,
        store,
        index: LocalIndex,
        *,
        upload_dir: Path,
        retry_attempts: int = 3,
        retry_backoff: float = 1.0,
        confirmation_timeout: float = 180.0,
        max_blob_bytes: int = DEFAULT_MAX_BLOB_BYTES,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.ledger = ledger
        self.store = store
        self.index = index
        self.upload_dir = Path(upload_dir)
        self.staging_dir = self.upload_dir / ".staging"
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.confirmation_timeout = confirmation_timeout
        self.max_blob_bytes = max_blob_bytes
        self._sleep = sleep

        # In-process reservations; the ledger's write-once records cover
        # races with other processes.
        self._reserved_ids: set[str] = set()
        self._reserved_hashes: set[str] = set()
        self._in_flight: set[asyncio.Task] = set()

    async def issue(
        self,
        blob: bytes,
        identifier: str,
        issuer_identity: Optional[str] = None,
        *,
        content_type: str = ACCEPTED_CONTENT_TYPE,
        confirmation_timeout: Optional[float] = None,
    ) -> IssuanceResult:
        certificate_id, normalized_id = self._validate(blob, identifier, content_type)
        issuer = self._resolve_issuer(issuer_identity)
        digest = content_hash(blob)
        timeout = confirmation_timeout or self.confirmation_timeout

        self._reserve(certificate_id, normalized_id, digest)
        handed_off = False
        try:
            await self._check_duplicates(certificate_id, normalized_id, digest)
            needs_authorization = await self._check_authorization(issuer)

            staged = self._stage(blob)
            try:
                storage_id = await self._upload(blob, normalized_id)
            except (Exception, asyncio.CancelledError):
                self._discard(staged)
                raise

            try:
                if needs_authorization:
                    await self._authorize(issuer, timeout)
            except (Exception, asyncio.CancelledError) as e:
                await self._abandon(
                    staged, storage_id, certificate_id, normalized_id,
                    reason=f"authorization failed: {e}",
                )
                raise

            task = asyncio.ensure_future(self._complete(
                certificate_id, normalized_id, digest, storage_id, issuer, staged, timeout,
            ))
            handed_off = True
            self._in_flight.add(task)
            task.add_done_callback(self._task_done)
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                logger.warning(
                    "Caller cancelled issuance of %s after submission started; "
                    "finishing ledger confirmation in the background",
                    certificate_id,
                )
                raise
        finally:
            if not handed_off:
                self._release(normalized_id, digest)

    async def drain(self) -> None:
        """Wait for issuances that outlived their callers."""
        if self._in_flight:
            logger.info("Waiting for %d in-flight issuance(s)", len(self._in_flight))
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    # --- validation -------------------------------------------------------

    def _validate(self, blob: bytes, identifier: str, content_type: str) -> tuple[str, str]:
        if not blob or not identifier or not identifier.strip():
            raise InvalidInput("File and Certificate ID required")
        if len(blob) > self.max_blob_bytes:
            raise InvalidInput(f"File exceeds the {self.max_blob_bytes} byte limit")
        declared = (content_type or "").split(";")[0].strip().lower()
        if declared != ACCEPTED_CONTENT_TYPE or not blob.startswith(PDF_MAGIC):
            raise InvalidInput("Only PDF files are supported")
        certificate_id = identifier.strip()
        normalized_id = normalize_certificate_id(certificate_id)
        if not normalized_id:
            raise InvalidInput("Certificate ID must contain letters or digits")
        return certificate_id, normalized_id

    def _resolve_issuer(self, identity: Optional[str]) -> str:
        if not identity or not identity.strip():
            return self.ledger.address
        identity = identity.strip()
        if not Web3.is_address(identity):
            raise InvalidInput(f"Issuer identity {identity!r} is not a valid address")
        return Web3.to_checksum_address(identity)

    def _reserve(self, certificate_id: str, normalized_id: str, digest: str) -> None:
        if normalized_id in self._reserved_ids:
            raise DuplicateId(
                f"Issuance of {certificate_id!r} ({normalized_id}) already in progress",
                public_message="Certificate ID already exists",
            )
        if digest in self._reserved_hashes:
            raise DuplicateContent(
                f"Content {digest} is being issued by another request",
                public_message="This certificate content is already registered under another ID",
            )
        self._reserved_ids.add(normalized_id)
        self._reserved_hashes.add(digest)

    def _release(self, normalized_id: str, digest: str) -> None:
        self._reserved_ids.discard(normalized_id)
        self._reserved_hashes.discard(digest)

    async def _check_duplicates(self, certificate_id: str, normalized_id: str, digest: str) -> None:
        if await self.index.get(normalized_id) is not None:
            raise DuplicateId(
                f"Certificate ID {certificate_id!r} ({normalized_id}) already exists",
                public_message="Certificate ID already exists",
            )
        existing = await self.index.find_by_content_hash(digest)
        if existing is not None and existing.normalized_id != normalized_id:
            raise DuplicateContent(
                f"Content {digest} already registered under {existing.normalized_id}",
                public_message="This certificate content is already registered under another ID",
            )

    async def _check_authorization(self, issuer: str) -> bool:
        """Read-only gate; returns True when the admin must authorize itself first."""
        authorized = await self._call(
            lambda: self.ledger.is_authorized(issuer), f"authorizedIssuers({issuer})",
        )
        needs_authorization = False
        if not authorized:
            admin = await self._call(lambda: self.ledger.admin(), "admin()")
            if admin.lower() != issuer.lower():
                raise NotAuthorized(
                    f"Wallet {issuer} is not authorized to issue certificates. "
                    f"Please contact the contract admin ({admin}) to authorize this wallet.",
                    admin=admin,
                )
            needs_authorization = True
        if not self.ledger.can_sign_for(issuer):
            raise NotAuthorized(
                f"No signing credential held for {issuer}",
                public_message="The server holds no signing credential for this issuer identity",
            )
        return needs_authorization

    # --- side effects ------------------------------------------------------

    def _stage(self, blob: bytes) -> Path:
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        staged = self.staging_dir / f"{uuid.uuid4().hex}.part"
        staged.write_bytes(blob)
        return staged

    def _discard(self, staged: Optional[Path]) -> None:
        if staged is not None and staged.exists():
            staged.unlink()

    async def _upload(self, blob: bytes, normalized_id: str) -> str:
        logger.info("Uploading %s (%d bytes) to the store", normalized_id, len(blob))
        storage_id = await self._call(
            lambda: self.store.pin_file(blob, f"{normalized_id}.pdf", ACCEPTED_CONTENT_TYPE),
            f"pin {normalized_id}.pdf",
            service="store",
        )
        logger.info("Store upload successful for %s: %s", normalized_id, storage_id)
        return storage_id

    async def _authorize(self, issuer: str, timeout: float) -> None:
        logger.info("Authorizing issuer %s (wallet is admin)", issuer)
        signed = await self._call(
            lambda: self.ledger.prepare_authorize(issuer), f"prepare authorizeIssuer({issuer})",
        )
        tx_hash = await self._call(lambda: self.ledger.broadcast(signed), "broadcast authorizeIssuer")
        logger.info("Authorization tx sent: %s", tx_hash)
        receipt = await self._call(
            lambda: self.ledger.wait_for_confirmation(tx_hash, timeout), f"receipt for {tx_hash}",
        )
        if receipt.status == 0:
            raise LedgerReverted("Authorization transaction failed", tx_hash=tx_hash)
        logger.info("Authorization confirmed for %s in tx %s", issuer, tx_hash)

    async def _complete(
        self,
        certificate_id: str,
        normalized_id: str,
        digest: str,
        storage_id: str,
        issuer: str,
        staged: Optional[Path],
        timeout: float,
    ) -> IssuanceResult:
        tx_hash = None
        try:
            tx_hash, pending = await self._submit_issue(certificate_id, storage_id, timeout)

            record = await self._call(
                lambda: self.ledger.verify_certificate(certificate_id),
                f"verifyCertificate({certificate_id})",
            )
            if not record.valid or record.storage_id != storage_id:
                if pending is not None:
                    raise pending
                logger.error(
                    "Consistency check failed for %s: ledger reports valid=%s storage_id=%s, "
                    "expected %s (tx %s)",
                    certificate_id, record.valid, record.storage_id, storage_id, tx_hash,
                )
                raise ConsistencyError(
                    f"Contract verification failed after issuance of {certificate_id}: "
                    f"ledger has {record.storage_id!r}, uploaded {storage_id!r}"
                )
            if pending is not None:
                logger.info("Ledger confirms %s although confirming tx %s failed", certificate_id, tx_hash)

            file_path = self._persist_file(staged, storage_id)
            staged = None
            try:
                await self.index.add(
                    normalized_id=normalized_id,
                    certificate_id=certificate_id,
                    content_hash=digest,
                    storage_id=storage_id,
                    issuer=record.issuer,
                    issue_timestamp=record.issue_date,
                    file_path=file_path,
                    tx_hash=tx_hash,
                )
            except Exception:
                await remove_unindexed_file(self.index, Path(file_path), storage_id)
                raise
        except Exception as e:
            await self._abandon(
                staged, storage_id, certificate_id, normalized_id,
                reason=str(e), tx_hash=getattr(e, "tx_hash", None) or tx_hash,
            )
            raise
        finally:
            self._release(normalized_id, digest)

        logger.info("Certificate %s issued: storage_id=%s tx=%s", certificate_id, storage_id, tx_hash)
        return IssuanceResult(
            certificate_id=certificate_id,
            normalized_id=normalized_id,
            storage_id=storage_id,
            issuer=record.issuer,
            issue_timestamp=record.issue_date,
            tx_hash=tx_hash,
        )

    async def _submit_issue(
        self, certificate_id: str, storage_id: str, timeout: float,
    ) -> tuple[str, Optional[RegistryError]]:
        """Send issueCertificate and wait for it.

        Returns the transaction hash and, when sending or confirming failed
        after the broadcast was attempted, the error. The transaction may have
        landed anyway, so the caller reads the ledger before deciding.
        """
        logger.info("Issuing certificate %s on the ledger (storage_id=%s)", certificate_id, storage_id)
        signed = await self._call(
            lambda: self.ledger.prepare_issue(certificate_id, storage_id),
            f"prepare issueCertificate({certificate_id})",
        )
        tx_hash = self.ledger.tx_hash_of(signed)
        try:
            tx_hash = await self._call(lambda: self.ledger.broadcast(signed), "broadcast issueCertificate")
            logger.info("Issue tx sent: %s; waiting for confirmation", tx_hash)
            receipt = await self._call(
                lambda: self.ledger.wait_for_confirmation(tx_hash, timeout), f"receipt for {tx_hash}",
            )
        except RegistryError as e:
            logger.warning("Issue tx %s outcome unknown (%s); reading the ledger anyway", tx_hash, e)
            return tx_hash, e
        if receipt.status == 0:
            reason = await self.ledger.explain_issue_revert(certificate_id, storage_id)
            logger.error("Issue tx %s reverted: %s", tx_hash, reason or "no reason available")
            raise LedgerReverted(reason or "Certificate issuance transaction reverted", tx_hash=tx_hash)
        logger.info("Issue tx %s confirmed in block %s", tx_hash, receipt.block_number)
        return tx_hash, None

    def _persist_file(self, staged: Optional[Path], storage_id: str) -> str:
        final = self.upload_dir / f"{storage_id}.pdf"
        os.replace(staged, final)
        if not final.exists() or final.stat().st_size == 0:
            raise RuntimeError(f"Failed to save {final} locally or file is empty")
        return str(final)

    async def _abandon(
        self,
        staged: Optional[Path],
        storage_id: str,
        certificate_id: str,
        normalized_id: str,
        *,
        reason: str,
        tx_hash: Optional[str] = None,
    ) -> None:
        self._discard(staged)
        try:
            await self.index.record_orphan(
                storage_id=storage_id,
                certificate_id=certificate_id,
                normalized_id=normalized_id,
                reason=reason,
                tx_hash=tx_hash,
            )
        except Exception:
            logger.exception("Could not record orphaned upload %s for %s", storage_id, certificate_id)

    def _task_done(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        if not task.cancelled():
            # marks the exception retrieved; _complete logged it
            task.exception()

    async def _call(self, operation: Callable[[], Awaitable[T]], description: str, service: str = "ledger") -> T:
        try:
            return await with_retry(
                operation,
                service=service,
                description=description,
                attempts=self.retry_attempts,
                backoff=self.retry_backoff,
                sleep=self._sleep,
            )
        except RegistryError:
            raise
        except Exception as e:
            raise as_upstream_error(service, e) from e
