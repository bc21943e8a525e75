"""
LND REST client for the platform's own Lightning node.

Creates invoices for platform-custodied purchases and looks them up by
payment hash. The node is the authority for the payment hash of invoices
it issues (``r_hash``), so no BOLT11 decoding happens on this path.

Endpoints:
- POST /v1/invoices
- GET  /v1/invoice/<r_hash base64url>
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from typing import Any, Dict, Optional

import httpx

from .errors import LndError
from .resources import InvoiceResult

logger = logging.getLogger(__name__)


def hash_to_base64url(payment_hash_hex: str) -> str:
    """Convert a hex payment hash to unpadded base64url, as LND expects in paths."""
    try:
        raw = bytes.fromhex(payment_hash_hex)
    except ValueError as e:
        raise LndError(f"Invalid payment hash: {payment_hash_hex!r}") from e
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


class LndClient:
    """
    Async REST client for an LND node (e.g. Voltage).

    Usage::

        lnd = LndClient("node.m.voltageapp.io:8080", macaroon_hex)
        await lnd.connect()
        try:
            invoice = await lnd.create_invoice(500, "SpeedRead: Title")
            paid = await lnd.lookup_invoice(invoice.payment_hash)
        finally:
            await lnd.close()
    """

    def __init__(self, rest_host: str = "", macaroon_hex: str = "", timeout: float = 8.0):
        """
        Initialize the LND client.

        Args:
            rest_host: REST endpoint host[:port]; an http(s):// prefix is stripped.
            macaroon_hex: Invoice (or admin) macaroon, hex-encoded.
            timeout: Per-request timeout in seconds.
        """
        self.rest_host = re.sub(r"^https?://", "", rest_host or "").rstrip("/")
        self._macaroon_hex = macaroon_hex or ""
        self._timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.rest_host and self._macaroon_hex)

    async def connect(self) -> None:
        """Create the underlying HTTP client."""
        self._client = httpx.AsyncClient(
            base_url=f"https://{self.rest_host}" if self.rest_host else "https://localhost",
            headers={
                "Grpc-Metadata-macaroon": self._macaroon_hex,
                "Content-Type": "application/json",
            },
            timeout=self._timeout,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        if not self.is_configured:
            raise LndError(
                "LND configuration missing. Set LND_REST_HOST and LND_MACAROON_HEX."
            )
        if self._client is None:
            raise RuntimeError("LndClient not connected; call connect() first")

        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise LndError(f"LND request failed: {e}") from e

        if resp.status_code >= 300:
            raise LndError(f"LND API error: {resp.status_code} - {resp.text}")

        try:
            data = resp.json()
        except ValueError as e:
            raise LndError("LND returned invalid JSON") from e
        if not isinstance(data, dict):
            raise LndError("LND returned an unexpected response")
        return data

    async def create_invoice(
        self,
        amount_sats: int,
        memo: str = "",
        expiry: int = 3600,
    ) -> InvoiceResult:
        """
        Create a Lightning invoice on the platform node.

        Args:
            amount_sats: Amount in satoshis.
            memo: Invoice description.
            expiry: Invoice expiry in seconds.

        Returns:
            InvoiceResult with the bolt11 string and the lowercase hex payment hash.
        """
        data = await self._request(
            "POST",
            "/v1/invoices",
            json={"value": str(amount_sats), "memo": memo, "expiry": str(expiry)},
        )

        payment_request = data.get("payment_request")
        r_hash = data.get("r_hash")
        if not payment_request or not r_hash:
            raise LndError("LND invoice response missing payment_request or r_hash")

        try:
            payment_hash = base64.b64decode(r_hash).hex()
        except (binascii.Error, ValueError) as e:
            raise LndError("LND returned an undecodable r_hash") from e

        logger.info("Created platform invoice %s for %d sats", payment_hash, amount_sats)
        return InvoiceResult(payment_request=payment_request, payment_hash=payment_hash)

    async def lookup_invoice(self, payment_hash: str) -> bool:
        """
        Check whether an invoice has been settled.

        Args:
            payment_hash: Hex-encoded payment hash.

        Returns:
            True once the node reports the invoice settled.
        """
        data = await self._request("GET", f"/v1/invoice/{hash_to_base64url(payment_hash)}")
        return bool(data.get("settled")) or data.get("state") == "SETTLED"
