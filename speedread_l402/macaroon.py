"""
Flat HMAC-SHA256 access tokens ("macaroons") for L402.

A token binds one resource to one Lightning payment hash until an expiry.
Structure: { resourceId, paymentHash, expiresAt, sig }

The signature is HMAC-SHA256(secret, "<resourceId>:<paymentHash>:<expiresAt>").
There are no caveat chains and no delegation: a token is either the right
resource, unexpired and unforged, or it is rejected.

The wire format is base64 JSON. It is readable by the client, so it carries
nothing the client does not already know.
"""

from __future__ import annotations

import binascii
import hashlib
import hmac
import json
import logging
import time
from base64 import b64decode, b64encode
from dataclasses import dataclass
from typing import Optional, Union

from .errors import AccessError, ErrorKind

logger = logging.getLogger(__name__)

# Minted tokens are a few hundred characters
MAX_TOKEN_LENGTH = 4096


@dataclass(frozen=True)
class TokenData:
    """Decoded token fields."""
    resource_id: str
    payment_hash: str
    expires_at: int                # Unix timestamp, seconds
    signature: str                 # hex-encoded HMAC


@dataclass(frozen=True)
class AccessToken:
    """A freshly minted token."""
    resource_id: str
    payment_hash: str
    expires_at: int
    signature: str
    raw: str                       # base64 JSON (the wire format)


@dataclass
class VerifyResult:
    """Result of token verification."""
    valid: bool
    payment_hash: Optional[str] = None
    reason: Optional[ErrorKind] = None
    error: Optional[str] = None


def _key(secret: Union[str, bytes]) -> bytes:
    return secret.encode("utf-8") if isinstance(secret, str) else secret


def sign(secret: Union[str, bytes], resource_id: str, payment_hash: str, expires_at: int) -> str:
    """Compute the hex HMAC over the canonical field concatenation."""
    payload = f"{resource_id}:{payment_hash}:{expires_at}"
    return hmac.new(_key(secret), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def mint(
    secret: Union[str, bytes],
    resource_id: str,
    payment_hash: str,
    ttl_seconds: int,
    now: Optional[float] = None,
) -> AccessToken:
    """
    Mint a new access token.

    Args:
        secret: Server's HMAC secret.
        resource_id: Identifier of the protected resource.
        payment_hash: Hex payment hash of the invoice this token is bound to.
        ttl_seconds: Token lifetime. Negative values mint an already-expired token.
        now: Override for the current time (seconds).

    Returns:
        AccessToken with its base64 wire form in ``raw``.
    """
    if not secret:
        raise ValueError("Token secret is required")
    if not resource_id:
        raise ValueError("resource_id is required for a token")
    if not payment_hash:
        raise ValueError("payment_hash is required for a token")

    payment_hash = payment_hash.lower()
    issued = time.time() if now is None else now
    expires_at = int(issued) + int(ttl_seconds)
    signature = sign(secret, resource_id, payment_hash, expires_at)

    payload = {
        "resourceId": resource_id,
        "paymentHash": payment_hash,
        "expiresAt": expires_at,
        "sig": signature,
    }
    raw = b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8")).decode("ascii")

    return AccessToken(
        resource_id=resource_id,
        payment_hash=payment_hash,
        expires_at=expires_at,
        signature=signature,
        raw=raw,
    )


def decode(raw: str) -> TokenData:
    """
    Decode a wire-format token without checking it.

    Accepts the standard and url-safe base64 alphabets, with or without padding.

    Raises:
        AccessError: MalformedToken on any structural problem.
    """
    if not raw or not isinstance(raw, str):
        raise AccessError(ErrorKind.MALFORMED_TOKEN, "Token is missing")
    if len(raw) > MAX_TOKEN_LENGTH:
        raise AccessError(ErrorKind.MALFORMED_TOKEN, "Token is too long")

    try:
        text = raw.strip()
        padded = text + "=" * (-len(text) % 4)
        parsed = json.loads(b64decode(padded, altchars=b"-_", validate=True).decode("utf-8"))
    except (binascii.Error, ValueError, RecursionError) as e:
        raise AccessError(ErrorKind.MALFORMED_TOKEN, "Malformed token encoding") from e

    if not isinstance(parsed, dict):
        raise AccessError(ErrorKind.MALFORMED_TOKEN, "Malformed token payload")

    resource_id = parsed.get("resourceId")
    payment_hash = parsed.get("paymentHash")
    expires_at = parsed.get("expiresAt")
    signature = parsed.get("sig")

    if not isinstance(resource_id, str) or not resource_id:
        raise AccessError(ErrorKind.MALFORMED_TOKEN, "Token missing resourceId")
    if not isinstance(payment_hash, str) or not payment_hash:
        raise AccessError(ErrorKind.MALFORMED_TOKEN, "Token missing paymentHash")
    # bool is an int subclass; true/false is not a timestamp
    if not isinstance(expires_at, int) or isinstance(expires_at, bool):
        raise AccessError(ErrorKind.MALFORMED_TOKEN, "Token missing expiresAt")
    if not isinstance(signature, str) or not signature:
        raise AccessError(ErrorKind.MALFORMED_TOKEN, "Token missing signature")

    return TokenData(
        resource_id=resource_id,
        payment_hash=payment_hash,
        expires_at=expires_at,
        signature=signature,
    )


def verify(
    secret: Union[str, bytes],
    raw: str,
    expected_resource_id: str,
    now: Optional[float] = None,
) -> VerifyResult:
    """
    Verify a token for a resource.

    Args:
        secret: Server's HMAC secret.
        raw: Wire-format token.
        expected_resource_id: The resource being accessed.
        now: Override for the current time (seconds).

    Returns:
        VerifyResult. On success ``payment_hash`` is the lowercase hash the
        caller should check for payment. Never raises for bad input.
    """
    try:
        data = decode(raw)
    except AccessError as e:
        logger.info("Rejected malformed token: %s", e.message)
        return VerifyResult(valid=False, reason=e.kind, error=e.message)

    if data.resource_id != expected_resource_id:
        logger.warning(
            "Token bound to another resource: presented for %s, issued for %s",
            expected_resource_id,
            data.resource_id,
        )
        return VerifyResult(
            valid=False,
            reason=ErrorKind.RESOURCE_MISMATCH,
            error="Token was issued for a different resource",
        )

    current = time.time() if now is None else now
    if data.expires_at < int(current):
        logger.info("Rejected expired token for %s", expected_resource_id)
        return VerifyResult(valid=False, reason=ErrorKind.EXPIRED, error="Token expired")

    expected_sig = sign(secret, data.resource_id, data.payment_hash, data.expires_at)

    # Constant-time comparison
    if not hmac.compare_digest(data.signature.encode("utf-8"), expected_sig.encode("utf-8")):
        logger.warning("Invalid token signature for %s, possible forgery", expected_resource_id)
        return VerifyResult(
            valid=False,
            reason=ErrorKind.BAD_SIGNATURE,
            error="Invalid token signature",
        )

    return VerifyResult(valid=True, payment_hash=data.payment_hash.lower())


def verify_preimage(preimage: Optional[str], payment_hash: Optional[str]) -> bool:
    """
    Verify that a preimage matches a payment hash.
    payment_hash = SHA256(bytes.fromhex(preimage))

    Args:
        preimage: Hex-encoded preimage.
        payment_hash: Hex-encoded payment hash.

    Returns:
        True if the hash of the decoded preimage bytes equals payment_hash.
    """
    if not preimage or not payment_hash:
        return False
    try:
        computed = hashlib.sha256(bytes.fromhex(preimage)).digest()
        expected = bytes.fromhex(payment_hash)
    except (TypeError, ValueError):
        return False
    return hmac.compare_digest(computed, expected)
