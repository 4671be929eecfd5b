from pathlib import Path

import pytest

from certregistry.errors import InvalidInput, NotFound, UpstreamUnavailable
from certregistry.services.verification import CertificateVerifier
from tests.conftest import ADMIN, ISSUE_TIMESTAMP, make_pdf


@pytest.fixture
def verifier(ledger, index):
    return CertificateVerifier(ledger, index, retry_attempts=2, retry_backoff=0.0)


async def test_verify_issued_certificate(pipeline, verifier):
    issued = await pipeline.issue(make_pdf("alice"), "CERT-001")
    result = await verifier.verify("CERT-001")

    assert result.valid
    assert result.storage_id == issued.storage_id
    assert result.issuer == ADMIN.address
    assert result.issue_timestamp == ISSUE_TIMESTAMP
    assert result.issue_date.year == 2023


async def test_verify_is_idempotent_and_read_only(pipeline, verifier, ledger, index):
    await pipeline.issue(make_pdf("alice"), "CERT-001")
    sent = len(ledger.broadcasts)

    first = await verifier.verify("CERT-001")
    second = await verifier.verify("CERT-001")
    assert first == second
    assert len(ledger.broadcasts) == sent
    assert await index.count() == 1


async def test_unknown_certificate_is_invalid_not_an_error(verifier):
    result = await verifier.verify("NOPE-404")
    assert not result.valid
    assert result.reason == "Certificate not found"
    assert result.storage_id is None
    assert result.issue_date is None


async def test_verify_requires_identifier(verifier):
    with pytest.raises(InvalidInput):
        await verifier.verify("  ")


async def test_verify_ledger_outage(verifier, ledger):
    ledger.failures["verify_certificate"] = [ConnectionError("connection reset")] * 2
    with pytest.raises(UpstreamUnavailable) as exc_info:
        await verifier.verify("CERT-001")
    assert exc_info.value.service == "ledger"
    assert exc_info.value.attempts == 2


async def test_fetch_uses_normalized_id(pipeline, verifier):
    await pipeline.issue(make_pdf("alice"), "CERT-001")
    stored = await verifier.fetch("cert_001")

    assert stored.path.read_bytes() == make_pdf("alice")
    assert stored.filename == "certificate_CERT001.pdf"


async def test_fetch_never_indexed(verifier):
    with pytest.raises(NotFound) as exc_info:
        await verifier.fetch("CERT-404")
    assert exc_info.value.reason == "not_indexed"
    assert exc_info.value.to_payload()["error"] == "Certificate file not found"


async def test_fetch_missing_file_is_distinguished_internally(pipeline, verifier, index):
    await pipeline.issue(make_pdf("alice"), "CERT-001")
    Path((await index.get("CERT001")).file_path).unlink()

    with pytest.raises(NotFound) as exc_info:
        await verifier.fetch("CERT-001")
    assert exc_info.value.reason == "file_missing"
    assert "reason" not in exc_info.value.to_payload()
    assert exc_info.value.to_payload()["error"] == "Certificate file not found"
