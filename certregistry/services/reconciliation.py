"""Bring the local index back in line with the ledger.

A crash between the issuance transaction and the index write leaves the
ledger ahead of the index. ``rebuild_entry`` restores such an entry from the
ledger's record and the store's copy of the blob. ``sweep_orphans`` walks the
orphaned-upload log and rebuilds entries whose issuance did land after all.
Nothing is ever unpinned from the store.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from certregistry.errors import ConsistencyError, NotFound, RegistryError
from certregistry.models import CertificateEntry
from certregistry.services.issuance import content_hash, normalize_certificate_id
from certregistry.services.local_index import LocalIndex, remove_unindexed_file
from certregistry.services.retry import as_upstream_error, with_retry

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    checked: int = 0
    indexed: list[str] = field(default_factory=list)
    already_indexed: list[str] = field(default_factory=list)
    still_orphaned: list[str] = field(default_factory=list)


class Reconciler:
    def __init__(self, ledger, store, index: LocalIndex, *, upload_dir: Path, retry_attempts: int = 3):
        self.ledger = ledger
        self.store = store
        self.index = index
        self.upload_dir = Path(upload_dir)
        self.retry_attempts = retry_attempts

    async def rebuild_entry(self, certificate_id: str) -> CertificateEntry:
        certificate_id = (certificate_id or "").strip()
        normalized_id = normalize_certificate_id(certificate_id)
        existing = await self.index.get(normalized_id)
        if existing is not None:
            return existing

        record = await self._retry(
            lambda: self.ledger.verify_certificate(certificate_id), "ledger",
            f"verifyCertificate({certificate_id})",
        )
        if not record.valid:
            raise NotFound(f"Ledger has no valid record for {certificate_id}", reason="not_on_ledger")

        blob = await self._retry(
            lambda: self.store.fetch(record.storage_id), "store", f"fetch {record.storage_id}",
        )
        digest = content_hash(blob)
        clash = await self.index.find_by_content_hash(digest)
        if clash is not None:
            logger.error(
                "Cannot rebuild %s: content of %s already indexed under %s",
                certificate_id, record.storage_id, clash.normalized_id,
            )
            raise ConsistencyError(
                f"Content for {certificate_id} already indexed under {clash.normalized_id}"
            )

        self.upload_dir.mkdir(parents=True, exist_ok=True)
        final = self.upload_dir / f"{record.storage_id}.pdf"
        tmp = final.with_suffix(".part")
        tmp.write_bytes(blob)
        os.replace(tmp, final)

        try:
            entry = await self.index.add(
                normalized_id=normalized_id,
                certificate_id=certificate_id,
                content_hash=digest,
                storage_id=record.storage_id,
                issuer=record.issuer,
                issue_timestamp=record.issue_date,
                file_path=str(final),
            )
        except Exception:
            await remove_unindexed_file(self.index, final, record.storage_id)
            raise
        await self.index.resolve_orphans(record.storage_id, "indexed")
        logger.info("Rebuilt index entry for %s from the ledger", certificate_id)
        return entry

    async def sweep_orphans(self) -> SweepReport:
        report = SweepReport()
        for orphan in await self.index.unresolved_orphans():
            report.checked += 1
            if not orphan.certificate_id:
                report.still_orphaned.append(orphan.storage_id)
                continue

            indexed = await self.index.get(orphan.normalized_id or normalize_certificate_id(orphan.certificate_id))
            if indexed is not None and indexed.storage_id == orphan.storage_id:
                await self.index.resolve_orphans(orphan.storage_id, "already-indexed")
                report.already_indexed.append(orphan.storage_id)
                continue

            try:
                record = await self._retry(
                    lambda: self.ledger.verify_certificate(orphan.certificate_id), "ledger",
                    f"verifyCertificate({orphan.certificate_id})",
                )
                if indexed is None and record.valid and record.storage_id == orphan.storage_id:
                    await self.rebuild_entry(orphan.certificate_id)
                    report.indexed.append(orphan.storage_id)
                    continue
            except RegistryError as e:
                logger.warning("Sweep could not settle orphan %s: %s", orphan.storage_id, e)

            logger.warning(
                "Still orphaned: storage_id=%s certificate=%s tx=%s reason=%s",
                orphan.storage_id, orphan.certificate_id, orphan.tx_hash or "-", orphan.reason,
            )
            report.still_orphaned.append(orphan.storage_id)

        if report.checked:
            logger.info(
                "Orphan sweep: %d checked, %d indexed, %d already indexed, %d still orphaned",
                report.checked, len(report.indexed), len(report.already_indexed), len(report.still_orphaned),
            )
        return report

    async def _retry(self, operation, service: str, description: str):
        try:
            return await with_retry(
                operation, service=service, description=description, attempts=self.retry_attempts,
            )
        except RegistryError:
            raise
        except Exception as e:
            raise as_upstream_error(service, e) from e
