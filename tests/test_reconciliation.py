from pathlib import Path

import pytest

from certregistry.errors import ConsistencyError, NotFound
from certregistry.services.ledger_client import LedgerRecord
from certregistry.services.reconciliation import Reconciler
from tests.conftest import ADMIN, ISSUE_TIMESTAMP, make_pdf


@pytest.fixture
def reconciler(ledger, store, index, settings):
    return Reconciler(ledger, store, index, upload_dir=settings.upload_path, retry_attempts=1)


async def anchor(ledger, store, certificate_id, text):
    """Put a certificate on the ledger and in the store without indexing it."""
    storage_id = await store.pin_file(make_pdf(text), f"{certificate_id}.pdf")
    ledger.records[certificate_id] = LedgerRecord(
        storage_id=storage_id, issuer=ADMIN.address, valid=True, issue_date=ISSUE_TIMESTAMP,
    )
    return storage_id


async def test_rebuild_entry_from_ledger(reconciler, ledger, store, index):
    storage_id = await anchor(ledger, store, "CERT-009", "carol")

    entry = await reconciler.rebuild_entry("CERT-009")
    assert entry.normalized_id == "CERT009"
    assert entry.storage_id == storage_id
    assert entry.issue_timestamp == ISSUE_TIMESTAMP
    assert Path(entry.file_path).read_bytes() == make_pdf("carol")
    assert (await index.get("CERT009")).storage_id == storage_id


async def test_rebuild_returns_existing_entry(reconciler, pipeline):
    issued = await pipeline.issue(make_pdf("alice"), "CERT-001")

    entry = await reconciler.rebuild_entry("cert-001")
    assert entry.storage_id == issued.storage_id


async def test_rebuild_unknown_certificate(reconciler):
    with pytest.raises(NotFound) as exc_info:
        await reconciler.rebuild_entry("CERT-404")
    assert exc_info.value.reason == "not_on_ledger"


async def test_rebuild_refuses_content_already_indexed(reconciler, pipeline, ledger, store):
    issued = await pipeline.issue(make_pdf("alice"), "CERT-001")
    ledger.records["CERT-777"] = LedgerRecord(
        storage_id=issued.storage_id, issuer=ADMIN.address, valid=True, issue_date=ISSUE_TIMESTAMP,
    )
    with pytest.raises(ConsistencyError):
        await reconciler.rebuild_entry("CERT-777")


async def test_sweep_settles_orphans(reconciler, ledger, store, index):
    landed = await anchor(ledger, store, "CERT-010", "dave")
    await index.record_orphan(
        storage_id=landed, certificate_id="CERT-010", normalized_id="CERT010", reason="process restarted",
    )
    await index.record_orphan(
        storage_id="QmNeverIssued", certificate_id="CERT-011", normalized_id="CERT011", reason="revert",
    )

    report = await reconciler.sweep_orphans()
    assert report.checked == 2
    assert report.indexed == [landed]
    assert report.still_orphaned == ["QmNeverIssued"]
    assert (await index.get("CERT010")).storage_id == landed
    assert [o.storage_id for o in await index.unresolved_orphans()] == ["QmNeverIssued"]


async def test_sweep_marks_already_indexed(reconciler, pipeline, index):
    issued = await pipeline.issue(make_pdf("alice"), "CERT-001")
    await index.record_orphan(
        storage_id=issued.storage_id, certificate_id="CERT-001", normalized_id="CERT001", reason="stale",
    )
    report = await reconciler.sweep_orphans()
    assert report.already_indexed == [issued.storage_id]
    assert await index.unresolved_orphans() == []


async def test_failed_rebuild_removes_written_file(reconciler, ledger, store, index, settings):
    await anchor(ledger, store, "CERT-011", "erin")

    async def broken_add(**kwargs):
        raise RuntimeError("disk full")

    index.add = broken_add
    with pytest.raises(RuntimeError):
        await reconciler.rebuild_entry("CERT-011")
    assert not list(settings.upload_path.glob("*.pdf"))
    assert not list(settings.upload_path.glob("*.part"))
