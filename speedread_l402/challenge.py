"""
402 challenge construction.

Given an invoice the caller already obtained, mint a token bound to
{resource, payment hash} and build the WWW-Authenticate header and JSON body.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .l402 import format_challenge, format_challenge_body
from .macaroon import AccessToken, mint
from .resources import InvoiceResult, PaymentType


@dataclass
class Challenge:
    """An unpaid-access response."""
    token: AccessToken
    header: str
    body: Dict[str, Any]
    status_code: int = 402

    @property
    def headers(self) -> Dict[str, str]:
        return {"WWW-Authenticate": self.header}


class ChallengeBuilder:
    """Builds 402 challenges signed with the server secret."""

    def __init__(self, secret: Union[str, bytes]):
        if not secret:
            raise ValueError("secret is required for signing tokens")
        self._secret = secret

    def build(
        self,
        resource_id: str,
        price_sats: int,
        invoice: InvoiceResult,
        payment_type: PaymentType,
        ttl: int,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Challenge:
        """
        Build a challenge for one resource and one invoice.

        Args:
            resource_id: The resource the token grants access to.
            price_sats: Price shown to the client.
            invoice: Invoice from the platform node or the creator's LNURL endpoint.
            payment_type: Which proof the client must collect later.
            ttl: Token lifetime in seconds.
            extra: Family-specific body fields.

        Returns:
            Challenge with token, header and body.
        """
        token = mint(self._secret, resource_id, invoice.payment_hash, ttl)
        header = format_challenge(token.raw, invoice.payment_request)
        body = format_challenge_body(
            macaroon=token.raw,
            invoice=invoice.payment_request,
            payment_hash=token.payment_hash,
            expires_at=token.expires_at,
            price_sats=price_sats,
            payment_type=payment_type.value,
            verify_url=invoice.verify_url,
            extra=extra,
        )
        return Challenge(token=token, header=header, body=body)
