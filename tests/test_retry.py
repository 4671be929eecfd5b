import httpx
import pytest
from web3.exceptions import ContractLogicError

from certregistry.errors import ConfirmationTimeout, DuplicateId, UpstreamUnavailable
from certregistry.services.retry import as_upstream_error, classify, is_transient, with_retry
from tests.conftest import no_sleep


def status_error(code):
    request = httpx.Request("POST", "https://api.test")
    return httpx.HTTPStatusError(str(code), request=request, response=httpx.Response(code, request=request))


class Flaky:
    def __init__(self, *errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.mark.parametrize("exc,transient,label", [
    (httpx.ConnectError("refused"), True, "connection"),
    (httpx.ReadTimeout("slow"), True, "timeout"),
    (status_error(429), True, "rate-limit"),
    (status_error(503), True, "gateway"),
    (status_error(401), False, "configuration"),
    (status_error(400), False, "rejected"),
    (ConnectionError("reset"), True, "connection"),
    (ValueError("502 Bad Gateway"), True, "gateway"),
    (ValueError("nonce too low"), False, "rejected"),
    (ContractLogicError("execution reverted: nope"), False, "revert"),
])
def test_classification(exc, transient, label):
    assert is_transient(exc) is transient
    assert classify(exc) == label


def test_registry_errors_are_never_transient():
    assert not is_transient(DuplicateId("taken"))
    assert not is_transient(ConfirmationTimeout("0xabc", 10))


async def test_retries_until_success():
    op = Flaky(httpx.ConnectError("refused"), status_error(502))
    delays = []

    async def record(delay):
        delays.append(delay)

    assert await with_retry(op, service="store", description="pin", attempts=3, backoff=0.5, sleep=record) == "ok"
    assert op.calls == 3
    assert delays == [0.5, 1.0]


async def test_permanent_error_is_not_retried():
    op = Flaky(DuplicateId("taken"))
    with pytest.raises(DuplicateId):
        await with_retry(op, service="ledger", description="x", sleep=no_sleep)
    assert op.calls == 1


async def test_exhaustion_raises_upstream_unavailable():
    op = Flaky(*[httpx.ConnectError("refused")] * 4)
    with pytest.raises(UpstreamUnavailable) as exc_info:
        await with_retry(op, service="store", description="pin", attempts=3, sleep=no_sleep)

    error = exc_info.value
    assert op.calls == 3
    assert (error.service, error.classification, error.attempts, error.retryable) == ("store", "connection", 3, True)
    assert isinstance(error.__cause__, httpx.ConnectError)
    assert error.to_payload()["code"] == "upstream_unavailable"


def test_configuration_failure_is_reported_as_not_retryable():
    error = as_upstream_error("store", status_error(403))
    assert not error.retryable
    assert "configuration" in error.public_message


def test_public_message_hides_internal_detail():
    error = as_upstream_error("ledger", ConnectionError("https://node/v3/SECRETKEY refused"))
    assert "SECRETKEY" not in error.to_payload()["error"]
    assert "SECRETKEY" in str(error)
