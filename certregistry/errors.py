"""Error taxonomy for the registry.

Every error raised towards a caller derives from ``RegistryError`` and knows
its HTTP status and whether retrying can help. ``public_message`` is what an
untrusted caller sees; ``str(exc)`` may carry internal detail and is only
logged.
"""

from typing import Optional


class RegistryError(Exception):
    """Base exception for all registry errors."""

    status_code = 500
    code = "internal_error"
    retryable = False

    def __init__(self, message: str, *, public_message: Optional[str] = None):
        super().__init__(message)
        self.public_message = public_message or message

    def to_payload(self) -> dict:
        return {
            "error": self.public_message,
            "code": self.code,
            "retryable": self.retryable,
        }


class InvalidInput(RegistryError):
    """Malformed or missing request fields."""

    status_code = 400
    code = "invalid_input"


class DuplicateId(RegistryError):
    """The normalized certificate identifier is already taken."""

    status_code = 400
    code = "duplicate_id"


class DuplicateContent(RegistryError):
    """Byte-identical content is already registered under another identifier."""

    status_code = 400
    code = "duplicate_content"


class NotAuthorized(RegistryError):
    """The identity may not perform the requested action."""

    status_code = 401
    code = "not_authorized"

    def __init__(self, message: str, *, admin: Optional[str] = None, public_message: Optional[str] = None):
        super().__init__(message, public_message=public_message)
        self.admin = admin

    def to_payload(self) -> dict:
        payload = super().to_payload()
        if self.admin:
            payload["admin"] = self.admin
        return payload


class NotFound(RegistryError):
    """Nothing to return. ``reason`` tells operators why; callers never see it."""

    status_code = 404
    code = "not_found"

    def __init__(self, message: str, *, reason: str = "not_indexed", public_message: Optional[str] = None):
        super().__init__(message, public_message=public_message)
        self.reason = reason


class UpstreamUnavailable(RegistryError):
    """The ledger or the store could not be reached or refused to cooperate."""

    status_code = 502
    code = "upstream_unavailable"

    def __init__(
        self,
        message: str,
        *,
        service: str,
        classification: str,
        attempts: int = 1,
        retryable: bool = True,
        public_message: Optional[str] = None,
    ):
        if public_message is None:
            if retryable:
                public_message = (
                    f"The {service} is unavailable ({classification}) after "
                    f"{attempts} attempt(s); try again later"
                )
            else:
                public_message = (
                    f"The {service} rejected the request ({classification}); "
                    f"check the service configuration"
                )
        super().__init__(message, public_message=public_message)
        self.service = service
        self.classification = classification
        self.attempts = attempts
        self.retryable = retryable

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["service"] = self.service
        payload["classification"] = self.classification
        return payload


class ConfirmationTimeout(UpstreamUnavailable):
    """A submitted transaction was not confirmed within the allowed time."""

    def __init__(self, tx_hash: str, timeout: float):
        super().__init__(
            f"Transaction {tx_hash} not confirmed within {timeout:.0f}s",
            service="ledger",
            classification="timeout",
            public_message=(
                f"Transaction {tx_hash} is still pending after {timeout:.0f}s; "
                f"verify the certificate later before resubmitting"
            ),
        )
        self.tx_hash = tx_hash
        self.timeout = timeout

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["txHash"] = self.tx_hash
        return payload


class LedgerReverted(RegistryError):
    """The ledger refused a transaction. Never retried."""

    code = "ledger_reverted"

    def __init__(self, reason: str, *, tx_hash: Optional[str] = None):
        message = f"Contract revert: {reason}"
        if tx_hash:
            message = f"{message} (tx {tx_hash})"
        super().__init__(message)
        self.reason = reason
        self.tx_hash = tx_hash


class ConsistencyError(RegistryError):
    """The ledger disagrees with what was just written."""

    code = "consistency_error"

    def __init__(self, message: str):
        super().__init__(
            message,
            public_message="Ledger state does not match the submitted certificate",
        )
