"""Local certificate index and orphaned-upload log.

All writes go through one asyncio lock, so the duplicate checks and the
insert they guard happen as one step. The unique constraints on the table
back the same invariants at the database level.
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from certregistry.errors import DuplicateContent, DuplicateId
from certregistry.models import CertificateEntry, OrphanedUpload

logger = logging.getLogger(__name__)


def duplicate_from_integrity_error(
    exc: IntegrityError, normalized_id: str, content_hash: str,
) -> Union[DuplicateId, DuplicateContent]:
    """Map a unique-constraint violation on the index to the invariant it guards."""
    if "content_hash" in str(exc.orig):
        return DuplicateContent(
            f"Index rejected content {content_hash} for {normalized_id}: {exc.orig}",
            public_message="This certificate content is already registered under another ID",
        )
    return DuplicateId(
        f"Index rejected {normalized_id}: {exc.orig}",
        public_message="Certificate ID already exists",
    )


async def remove_unindexed_file(index: "LocalIndex", path: Path, storage_id: str) -> None:
    """Delete a stored PDF after a failed index write, unless an entry uses it."""
    try:
        if await index.find_by_storage_id(storage_id) is None and path.exists():
            path.unlink()
            logger.info("Removed %s after the index write failed", path)
    except Exception:
        logger.exception("Could not clean up %s after the index write failed", path)


class LocalIndex:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory
        self._write_lock = asyncio.Lock()

    async def get(self, normalized_id: str) -> Optional[CertificateEntry]:
        async with self._sessions() as session:
            return await session.get(CertificateEntry, normalized_id)

    async def find_by_content_hash(self, content_hash: str) -> Optional[CertificateEntry]:
        async with self._sessions() as session:
            result = await session.execute(
                select(CertificateEntry).where(CertificateEntry.content_hash == content_hash)
            )
            return result.scalar_one_or_none()

    async def find_by_storage_id(self, storage_id: str) -> Optional[CertificateEntry]:
        async with self._sessions() as session:
            result = await session.execute(
                select(CertificateEntry).where(CertificateEntry.storage_id == storage_id)
            )
            return result.scalars().first()

    async def count(self) -> int:
        async with self._sessions() as session:
            return (await session.execute(select(func.count()).select_from(CertificateEntry))).scalar_one()

    async def all(self) -> list[CertificateEntry]:
        async with self._sessions() as session:
            result = await session.execute(
                select(CertificateEntry).order_by(CertificateEntry.issue_timestamp)
            )
            return list(result.scalars())

    async def add(
        self,
        *,
        normalized_id: str,
        certificate_id: str,
        content_hash: str,
        storage_id: str,
        issuer: str,
        issue_timestamp: int,
        file_path: str,
        tx_hash: Optional[str] = None,
    ) -> CertificateEntry:
        """Insert one entry, enforcing both uniqueness invariants."""
        async with self._write_lock:
            async with self._sessions() as session:
                if await session.get(CertificateEntry, normalized_id) is not None:
                    raise DuplicateId(
                        f"Certificate ID {certificate_id!r} ({normalized_id}) already exists",
                        public_message="Certificate ID already exists",
                    )
                clash = (await session.execute(
                    select(CertificateEntry.normalized_id).where(CertificateEntry.content_hash == content_hash)
                )).scalar_one_or_none()
                if clash is not None:
                    raise DuplicateContent(
                        f"Content {content_hash} already registered under {clash}",
                        public_message="This certificate content is already registered under another ID",
                    )
                entry = CertificateEntry(
                    normalized_id=normalized_id,
                    certificate_id=certificate_id,
                    content_hash=content_hash,
                    storage_id=storage_id,
                    issuer=issuer,
                    issue_timestamp=issue_timestamp,
                    file_path=file_path,
                    tx_hash=tx_hash,
                )
                session.add(entry)
                try:
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    raise duplicate_from_integrity_error(e, normalized_id, content_hash) from e
        logger.info("Indexed %s -> %s (issued %d)", normalized_id, storage_id, issue_timestamp)
        return entry

    async def record_orphan(
        self,
        *,
        storage_id: str,
        reason: str,
        certificate_id: Optional[str] = None,
        normalized_id: Optional[str] = None,
        tx_hash: Optional[str] = None,
    ) -> OrphanedUpload:
        async with self._write_lock:
            async with self._sessions() as session:
                orphan = OrphanedUpload(
                    storage_id=storage_id,
                    certificate_id=certificate_id,
                    normalized_id=normalized_id,
                    reason=reason,
                    tx_hash=tx_hash,
                )
                session.add(orphan)
                await session.commit()
        logger.warning(
            "Orphaned upload %s for %s (tx %s): %s",
            storage_id, certificate_id, tx_hash or "-", reason,
        )
        return orphan

    async def unresolved_orphans(self) -> list[OrphanedUpload]:
        async with self._sessions() as session:
            result = await session.execute(
                select(OrphanedUpload)
                .where(OrphanedUpload.resolved_at.is_(None))
                .order_by(OrphanedUpload.id)
            )
            return list(result.scalars())

    async def resolve_orphans(self, storage_id: str, resolution: str) -> int:
        """Mark every open orphan record for ``storage_id`` as resolved."""
        async with self._write_lock:
            async with self._sessions() as session:
                result = await session.execute(
                    select(OrphanedUpload).where(
                        OrphanedUpload.storage_id == storage_id,
                        OrphanedUpload.resolved_at.is_(None),
                    )
                )
                orphans = list(result.scalars())
                now = datetime.now(timezone.utc)
                for orphan in orphans:
                    orphan.resolved_at = now
                    orphan.resolution = resolution
                await session.commit()
        if orphans:
            logger.info("Resolved %d orphan record(s) for %s as %s", len(orphans), storage_id, resolution)
        return len(orphans)
