"""
Error taxonomy for L402 access control.

Every failure the gate can report has an ErrorKind, and STATUS_CODES is the
single table that maps a kind to its HTTP status. Route handlers never pick
status codes for these failures themselves.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Machine-readable failure kinds."""

    MALFORMED_TOKEN = "MalformedToken"
    RESOURCE_MISMATCH = "ResourceMismatch"
    EXPIRED = "Expired"
    BAD_SIGNATURE = "BadSignature"
    NOT_YET_PAID = "NotYetPaid"
    INVALID_PREIMAGE = "InvalidPreimage"
    UPSTREAM_UNAVAILABLE = "UpstreamUnavailable"
    INVOICE_CREATION_FAILED = "InvoiceCreationFailed"
    INVALID_REQUEST = "InvalidRequest"
    RESOURCE_NOT_FOUND = "ResourceNotFound"
    NO_PAYMENT_REQUIRED = "NoPaymentRequired"
    INVALID_VERIFY_URL = "InvalidVerifyUrl"
    STORE_UNAVAILABLE = "StoreUnavailable"


STATUS_CODES: Dict[ErrorKind, int] = {
    ErrorKind.MALFORMED_TOKEN: 401,
    ErrorKind.RESOURCE_MISMATCH: 401,
    ErrorKind.EXPIRED: 401,
    ErrorKind.BAD_SIGNATURE: 401,
    ErrorKind.NOT_YET_PAID: 402,
    ErrorKind.INVALID_PREIMAGE: 401,
    ErrorKind.UPSTREAM_UNAVAILABLE: 503,
    ErrorKind.INVOICE_CREATION_FAILED: 503,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.RESOURCE_NOT_FOUND: 404,
    ErrorKind.NO_PAYMENT_REQUIRED: 400,
    ErrorKind.INVALID_VERIFY_URL: 400,
    ErrorKind.STORE_UNAVAILABLE: 503,
}

# Default human-readable messages, used when a caller gives none.
MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.MALFORMED_TOKEN: "Malformed token",
    ErrorKind.RESOURCE_MISMATCH: "Token was issued for a different resource",
    ErrorKind.EXPIRED: "Token expired",
    ErrorKind.BAD_SIGNATURE: "Invalid token signature",
    ErrorKind.NOT_YET_PAID: "Invoice not yet paid",
    ErrorKind.INVALID_PREIMAGE: "Invalid preimage",
    ErrorKind.UPSTREAM_UNAVAILABLE: "Could not verify payment status",
    ErrorKind.INVOICE_CREATION_FAILED: "Failed to create invoice",
    ErrorKind.INVALID_REQUEST: "Invalid request",
    ErrorKind.RESOURCE_NOT_FOUND: "Resource not found",
    ErrorKind.NO_PAYMENT_REQUIRED: "Resource is free, no payment required",
    ErrorKind.INVALID_VERIFY_URL: "Invalid verify URL",
    ErrorKind.STORE_UNAVAILABLE: "Document store unavailable",
}


def status_for(kind: ErrorKind) -> int:
    """Return the HTTP status code for an error kind."""
    return STATUS_CODES[kind]


class AccessError(Exception):
    """
    A typed access-control failure.

    Attributes:
        kind: The ErrorKind of this failure.
        message: Human-readable description.
        status_code: HTTP status, from STATUS_CODES unless overridden.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.kind = kind
        self.message = message or MESSAGES[kind]
        self.status_code = status_code or status_for(kind)
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.kind.value}


class InvoiceCreationFailed(AccessError):
    """No invoice could be obtained, so no challenge (and no token) exists."""

    def __init__(self, message: Optional[str] = None, status_code: int = 503):
        super().__init__(ErrorKind.INVOICE_CREATION_FAILED, message, status_code)


class UpstreamUnavailable(AccessError):
    """The node or LNURL verify endpoint could not answer. Safe to retry."""

    def __init__(self, message: Optional[str] = None):
        super().__init__(ErrorKind.UPSTREAM_UNAVAILABLE, message)


class LightningBackendError(Exception):
    """Raised by the node and LNURL clients on any transport or protocol failure."""


class LndError(LightningBackendError):
    """LND REST request failed."""


class LnurlError(LightningBackendError):
    """LNURL-pay or LNURL verify request failed."""


class BlockedHostError(LnurlError):
    """An LNURL host resolved to a private, loopback or otherwise internal address."""
