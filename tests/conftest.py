import asyncio
import hashlib
import json
from collections import defaultdict
from dataclasses import dataclass

import httpx
import pytest
from eth_account import Account

from certregistry.config import Settings
from certregistry.database import create_engine_for, create_session_factory, init_models
from certregistry.errors import ConfirmationTimeout, LedgerReverted
from certregistry.services.issuance import IssuancePipeline
from certregistry.services.ledger_client import ZERO_ADDRESS, LedgerRecord, TxReceipt
from certregistry.services.local_index import LocalIndex

ADMIN = Account.from_key("0x" + "11" * 32)
OUTSIDER = Account.from_key("0x" + "22" * 32)

ISSUE_TIMESTAMP = 1_700_000_000


def make_pdf(text: str) -> bytes:
    return b"%PDF-1.4\n" + text.encode() + b"\n%%EOF\n"


async def no_sleep(_delay):
    return None


@dataclass
class FakeTx:
    kind: str
    args: tuple
    hash: str


class FakeLedger:
    """In-memory registry contract signing as ``ADMIN``.

    ``failures`` maps a method name to exceptions raised by its next calls;
    ``broadcast_reply`` failures fire after the transaction was accepted.
    A broadcast takes effect immediately unless ``drop_broadcasts`` is set.
    """

    def __init__(self, account=ADMIN):
        self.account = account
        self.contract_admin = ADMIN.address
        self.authorized: set[str] = set()
        self.records: dict[str, LedgerRecord] = {}
        self.receipts: dict[str, TxReceipt] = {}
        self.broadcasts: list[FakeTx] = []
        self.failures: dict[str, list[Exception]] = defaultdict(list)
        self.drop_broadcasts = False
        self.confirmation_timeout = False
        self.hold_issue_confirmation: asyncio.Event | None = None
        self.issue_sent = asyncio.Event()
        self.timestamp = ISSUE_TIMESTAMP
        self._nonce = 0

    def _maybe_fail(self, name):
        if self.failures[name]:
            raise self.failures[name].pop(0)

    @property
    def address(self):
        return self.account.address

    def can_sign_for(self, identity):
        return identity.lower() == self.address.lower()

    async def is_authorized(self, identity):
        self._maybe_fail("is_authorized")
        return identity.lower() in self.authorized

    async def admin(self):
        self._maybe_fail("admin")
        return self.contract_admin

    def _sign(self, kind, *args):
        self._nonce += 1
        digest = hashlib.sha256(f"{kind}:{args}:{self._nonce}".encode()).hexdigest()
        return FakeTx(kind=kind, args=args, hash="0x" + digest)

    async def prepare_authorize(self, identity):
        self._maybe_fail("prepare_authorize")
        if self.address.lower() != self.contract_admin.lower():
            raise LedgerReverted("Only admin can authorize issuers")
        return self._sign("authorize", identity)

    async def prepare_issue(self, certificate_id, storage_id):
        self._maybe_fail("prepare_issue")
        if certificate_id in self.records:
            raise LedgerReverted("Certificate already exists")
        return self._sign("issue", certificate_id, storage_id)

    def tx_hash_of(self, signed):
        return signed.hash

    async def broadcast(self, signed):
        self._maybe_fail("broadcast")
        if all(tx.hash != signed.hash for tx in self.broadcasts):
            self.broadcasts.append(signed)
            if not self.drop_broadcasts:
                self._apply(signed)
            if signed.kind == "issue":
                self.issue_sent.set()
        self._maybe_fail("broadcast_reply")
        return signed.hash

    def _apply(self, signed):
        status = 1
        if signed.kind == "authorize":
            self.authorized.add(signed.args[0].lower())
        else:
            certificate_id, storage_id = signed.args
            if certificate_id in self.records:
                status = 0
            else:
                self.records[certificate_id] = LedgerRecord(
                    storage_id=storage_id, issuer=self.address, valid=True, issue_date=self.timestamp,
                )
        self.receipts[signed.hash] = TxReceipt(tx_hash=signed.hash, status=status, block_number=len(self.broadcasts))

    async def wait_for_confirmation(self, tx_hash, timeout):
        self._maybe_fail("wait_for_confirmation")
        is_issue = any(tx.hash == tx_hash and tx.kind == "issue" for tx in self.broadcasts)
        if is_issue and self.hold_issue_confirmation is not None:
            await self.hold_issue_confirmation.wait()
        if self.confirmation_timeout or tx_hash not in self.receipts:
            raise ConfirmationTimeout(tx_hash, timeout)
        return self.receipts[tx_hash]

    async def explain_issue_revert(self, certificate_id, storage_id):
        return "Certificate already exists" if certificate_id in self.records else None

    async def verify_certificate(self, certificate_id):
        self._maybe_fail("verify_certificate")
        record = self.records.get(certificate_id)
        if record is None:
            return LedgerRecord(storage_id="", issuer=ZERO_ADDRESS, valid=False, issue_date=0)
        return record

    async def close(self):
        return None


class FakeStore:
    def __init__(self):
        self.pins: dict[str, bytes] = {}
        self.json_pins: dict[str, object] = {}
        self.uploads: list[str] = []
        self.failures: dict[str, list[Exception]] = defaultdict(list)

    def _maybe_fail(self, name):
        if self.failures[name]:
            raise self.failures[name].pop(0)

    async def pin_file(self, blob, name, content_type="application/pdf"):
        self._maybe_fail("pin_file")
        cid = "Qm" + hashlib.sha256(blob).hexdigest()[:44]
        self.pins[cid] = blob
        self.uploads.append(name)
        return cid

    async def pin_json(self, payload, name=None):
        self._maybe_fail("pin_json")
        cid = "Qm" + hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()[:44]
        self.json_pins[cid] = payload
        return cid

    async def fetch(self, storage_id):
        self._maybe_fail("fetch")
        if storage_id not in self.pins:
            request = httpx.Request("GET", f"https://gateway.test/ipfs/{storage_id}")
            raise httpx.HTTPStatusError("not found", request=request, response=httpx.Response(404, request=request))
        return self.pins[storage_id]

    async def close(self):
        return None


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        blockchain_rpc_url="http://127.0.0.1:8545",
        blockchain_rpc_urls="",
        admin_address=ADMIN.address,
        data_dir=str(tmp_path / "data"),
        upload_dir=str(tmp_path / "uploads"),
        registry_database_url="",
        retry_backoff_seconds=0.0,
        confirmation_timeout_seconds=5.0,
        reconcile_enabled=False,
        verify_contract_on_startup=False,
    )


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
async def engine(settings):
    engine = create_engine_for(settings)
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessions(engine):
    return create_session_factory(engine)


@pytest.fixture
def index(sessions):
    return LocalIndex(sessions)


@pytest.fixture
def pipeline(ledger, store, index, settings):
    return IssuancePipeline(
        ledger,
        store,
        index,
        upload_dir=settings.upload_path,
        retry_attempts=3,
        retry_backoff=0.0,
        confirmation_timeout=5.0,
        sleep=no_sleep,
    )
