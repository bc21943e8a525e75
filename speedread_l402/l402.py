"""
L402 protocol header parsing and formatting.

WWW-Authenticate: L402 macaroon="...", invoice="lnbc..."
Authorization: L402 <macaroon>:<preimage>

The preimage part of the Authorization header may be empty: clients that
paid a platform invoice never learn the preimage, and creator payments may
still be in flight when the client first retries.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class L402Credentials:
    """Parsed L402 authorization credentials."""
    macaroon: str
    preimage: str = ""


def format_challenge(macaroon: str, invoice: str) -> str:
    """
    Format a WWW-Authenticate header value for a 402 response.

    Args:
        macaroon: Base64 access token.
        invoice: Bolt11 invoice string.

    Returns:
        WWW-Authenticate header value.
    """
    return f'L402 macaroon="{macaroon}", invoice="{invoice}"'


def format_challenge_body(
    macaroon: str,
    invoice: str,
    payment_hash: str,
    expires_at: int,
    price_sats: int,
    payment_type: str,
    verify_url: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Format a 402 response body.

    Args:
        macaroon: Base64 access token.
        invoice: Bolt11 invoice string.
        payment_hash: Payment hash (hex).
        expires_at: Token expiry (Unix seconds).
        price_sats: Amount in satoshis.
        payment_type: "platform" or "creator"; tells the client which proof to collect.
        verify_url: LNURL verify URL for creator invoices, when the wallet offers one.
        extra: Additional family-specific fields.

    Returns:
        Dict suitable for a JSON response.
    """
    body: Dict[str, Any] = {
        "paymentHash": payment_hash,
        "paymentRequest": invoice,
        "macaroon": macaroon,
        "expiresAt": expires_at,
        "priceSats": price_sats,
        "paymentType": payment_type,
    }
    if verify_url:
        body["verifyUrl"] = verify_url
    if extra:
        body.update(extra)
    return body


def parse_authorization(auth_header: Optional[str]) -> Optional[L402Credentials]:
    """
    Parse an Authorization: L402 header.

    Format: L402 <macaroon>:<preimage>

    Args:
        auth_header: Full Authorization header value.

    Returns:
        L402Credentials or None if the header is not an L402 credential.
    """
    if not auth_header or not isinstance(auth_header, str):
        return None

    trimmed = auth_header.strip()

    # Check for L402 prefix (case-insensitive)
    if not trimmed.lower().startswith("l402 "):
        return None

    credentials = trimmed[5:].strip()
    colon_idx = credentials.find(":")
    if colon_idx == -1:
        return None

    macaroon = credentials[:colon_idx].strip()
    preimage = credentials[colon_idx + 1:].strip()

    if not macaroon:
        return None

    return L402Credentials(macaroon=macaroon, preimage=preimage)
