"""
LNURL-pay client for creator-custodied payments.

Resolves a Lightning Address (user@domain) to its LNURL-pay endpoint,
requests an invoice for a fixed amount, and polls the LUD-21 ``verify`` URL
that some wallets return alongside the invoice.

Flow:
1. GET https://<domain>/.well-known/lnurlp/<user>  -> pay metadata
2. GET <callback>?amount=<msat>[&comment=...]       -> { pr, verify? }
3. GET <verify>                                     -> { settled, preimage? }

Every outbound URL passes the SSRF guard before it is fetched: the host and
every address it resolves to must be public, and redirects are not followed.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urlparse

import httpx
from bolt11 import decode as decode_bolt11

from .errors import AccessError, BlockedHostError, ErrorKind, LnurlError
from .resources import InvoiceResult

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

LIGHTNING_ADDRESS_RE = re.compile(r"^[a-zA-Z0-9._-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")

BLOCKED_HOSTS = frozenset({
    "localhost",
    "127.0.0.1",
    "0.0.0.0",
    "::1",
    "169.254.169.254",           # cloud metadata
    "metadata.google.internal",
})

PRIVATE_HOST_PATTERNS = (
    re.compile(r"^10\."),
    re.compile(r"^172\.(1[6-9]|2[0-9]|3[0-1])\."),
    re.compile(r"^192\.168\."),
    re.compile(r"^169\.254\."),
    re.compile(r"^fc00:", re.IGNORECASE),
    re.compile(r"^fe80:", re.IGNORECASE),
)


@dataclass(frozen=True)
class PayInfo:
    """LNURL-pay metadata (amounts in millisats)."""
    callback: str
    min_sendable: int
    max_sendable: int
    comment_allowed: int = 0


@dataclass(frozen=True)
class VerifyStatus:
    """LUD-21 verify response."""
    settled: bool
    preimage: Optional[str] = None


def is_valid_lightning_address(address: Optional[str]) -> bool:
    """Check the user@domain.tld shape of a Lightning Address."""
    return bool(address) and bool(LIGHTNING_ADDRESS_RE.match(address.strip()))


def address_domain(address: str) -> str:
    """Return the lowercase domain of a Lightning Address."""
    return address.strip().rsplit("@", 1)[-1].lower()


def lightning_address_to_url(address: str) -> str:
    """
    Convert a Lightning Address to its LNURL-pay endpoint.
    user@domain.com -> https://domain.com/.well-known/lnurlp/user
    """
    user, _, domain = address.strip().partition("@")
    if not user or not domain:
        raise LnurlError("Invalid Lightning Address format")
    return f"https://{domain}/.well-known/lnurlp/{user}"


def _parse_ip(host: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        pass
    # Shorthand IPv4 the resolver also accepts: 127.1, 2130706433, 0x7f000001, 0177.0.0.1
    try:
        return ipaddress.IPv4Address(socket.inet_aton(host))
    except (OSError, ValueError):
        return None


def _is_internal_ip(ip: IPAddress) -> bool:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_unspecified
        or ip.is_multicast
    )


def is_blocked_host(host: Optional[str]) -> bool:
    """Return True for hosts that must never be fetched (SSRF guard)."""
    if not host:
        return True
    host = host.strip("[]").lower().rstrip(".")

    if host in BLOCKED_HOSTS or host.endswith(".localhost") or host.endswith(".internal"):
        return True
    if any(p.match(host) for p in PRIVATE_HOST_PATTERNS):
        return True

    ip = _parse_ip(host)
    return ip is not None and _is_internal_ip(ip)


def _host_and_port(url: str) -> Optional[Tuple[str, int]]:
    parsed = urlparse(url or "")
    if parsed.scheme not in ("http", "https") or is_blocked_host(parsed.hostname):
        return None
    try:
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
    except ValueError:
        return None
    return parsed.hostname, port


def validate_verify_url(url: Optional[str]) -> str:
    """
    Check a verify URL before the server fetches it.

    Only the URL itself is checked here; the addresses its host resolves to
    are checked by LnurlClient right before the request.

    Raises:
        AccessError: InvalidVerifyUrl for non-http(s) URLs or blocked hosts.
    """
    if _host_and_port(url or "") is None:
        raise AccessError(ErrorKind.INVALID_VERIFY_URL)
    return url


def is_trusted_verify_host(verify_url: str, lightning_address: str) -> bool:
    """True when the verify URL is served by the Lightning Address domain (or a subdomain)."""
    host = (urlparse(verify_url).hostname or "").lower()
    domain = address_domain(lightning_address)
    return bool(host) and (host == domain or host.endswith("." + domain))


async def resolve_host(host: str, port: int) -> List[str]:
    """Resolve ``host`` to the addresses a connection would be made to."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


async def ensure_public_host(url: str) -> None:
    """
    Refuse a URL whose host is, or resolves to, an internal address.

    Raises:
        BlockedHostError: The URL is blocked outright, or any resolved address is internal.
        LnurlError: The host could not be resolved.
    """
    target = _host_and_port(url)
    if target is None:
        raise BlockedHostError(f"Blocked LNURL host: {urlparse(url or '').hostname}")
    host, port = target

    try:
        addresses = await resolve_host(host, port)
    except (OSError, UnicodeError) as e:
        raise LnurlError(f"Could not resolve LNURL host {host}: {e}") from e

    for address in addresses:
        if is_blocked_host(address):
            logger.warning("Refusing LNURL host %s: resolves to %s", host, address)
            raise BlockedHostError(f"Blocked LNURL host: {host} resolves to an internal address")


class LnurlClient:
    """
    Async LNURL-pay client.

    Usage::

        lnurl = LnurlClient()
        await lnurl.connect()
        try:
            invoice = await lnurl.request_invoice("alice@getalby.com", 500)
            status = await lnurl.check_verify_url(invoice.verify_url)
        finally:
            await lnurl.close()
    """

    def __init__(self, timeout: float = 8.0):
        self._timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def connect(self) -> None:
        """Create the underlying HTTP client."""
        self._client = httpx.AsyncClient(
            headers={"Accept": "application/json"},
            timeout=self._timeout,
            follow_redirects=False,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        if self._client is None:
            raise RuntimeError("LnurlClient not connected; call connect() first")
        await ensure_public_host(url)

        try:
            resp = await self._client.get(url, params=params)
        except httpx.HTTPError as e:
            raise LnurlError(f"LNURL request failed: {e}") from e

        if resp.status_code >= 300:
            raise LnurlError(f"LNURL endpoint returned {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as e:
            raise LnurlError("LNURL endpoint returned invalid JSON") from e
        if not isinstance(data, dict):
            raise LnurlError("LNURL endpoint returned an unexpected response")
        if str(data.get("status", "")).upper() == "ERROR":
            raise LnurlError(f"LNURL error: {data.get('reason', 'unknown')}")
        return data

    async def fetch_pay_info(self, address: str) -> PayInfo:
        """
        Fetch LNURL-pay metadata for a Lightning Address.

        Args:
            address: Lightning Address (user@domain).

        Returns:
            PayInfo with callback and sendable range.
        """
        if not is_valid_lightning_address(address):
            raise LnurlError("Invalid Lightning Address format")
        if is_blocked_host(address_domain(address)):
            raise LnurlError("Invalid Lightning Address: blocked domain")

        data = await self._get_json(lightning_address_to_url(address))

        if data.get("tag") != "payRequest" or not data.get("callback"):
            raise LnurlError("Invalid LNURL-pay response")

        try:
            return PayInfo(
                callback=str(data["callback"]),
                min_sendable=int(data.get("minSendable", 0)),
                max_sendable=int(data.get("maxSendable", 0)),
                comment_allowed=int(data.get("commentAllowed") or 0),
            )
        except (TypeError, ValueError) as e:
            raise LnurlError("Invalid LNURL-pay amounts") from e

    async def request_invoice(
        self,
        address: str,
        amount_sats: int,
        comment: Optional[str] = None,
    ) -> InvoiceResult:
        """
        Request an invoice that pays the creator's Lightning Address.

        Args:
            address: Creator's Lightning Address.
            amount_sats: Amount in satoshis.
            comment: Optional payer comment, sent only if the wallet allows it.

        Returns:
            InvoiceResult with the bolt11 invoice, its decoded payment hash and
            the verify URL when the wallet offers one.
        """
        pay_info = await self.fetch_pay_info(address)
        amount_msat = amount_sats * 1000

        # maxSendable of 0 means the wallet cannot receive yet
        if pay_info.max_sendable == 0:
            raise LnurlError(
                "Lightning Address cannot receive payments yet (no inbound liquidity)"
            )
        if amount_msat < pay_info.min_sendable or amount_msat > pay_info.max_sendable:
            raise LnurlError(
                f"Amount must be between {pay_info.min_sendable // 1000} "
                f"and {pay_info.max_sendable // 1000} sats"
            )

        params = {"amount": str(amount_msat)}
        if comment and pay_info.comment_allowed and len(comment) <= pay_info.comment_allowed:
            params["comment"] = comment

        data = await self._get_json(pay_info.callback, params=params)

        pr = data.get("pr")
        if not pr or not isinstance(pr, str):
            raise LnurlError("No invoice returned from LNURL endpoint")

        try:
            decoded = decode_bolt11(pr)
        except Exception as e:  # bolt11 raises a variety of decode errors
            raise LnurlError("Invalid BOLT11 invoice returned by LNURL endpoint") from e

        payment_hash = getattr(decoded, "payment_hash", None)
        if not payment_hash:
            raise LnurlError("No payment hash found in invoice")

        invoice_msat = getattr(decoded, "amount_msat", None)
        if invoice_msat is not None and int(invoice_msat) != amount_msat:
            raise LnurlError(
                f"LNURL invoice amount {int(invoice_msat)} msat does not match requested {amount_msat} msat"
            )

        verify_url = data.get("verify") if isinstance(data.get("verify"), str) else None

        logger.info(
            "Created creator invoice %s for %d sats via %s",
            payment_hash,
            amount_sats,
            address_domain(address),
        )
        return InvoiceResult(
            payment_request=pr,
            payment_hash=str(payment_hash).lower(),
            verify_url=verify_url,
        )

    async def check_verify_url(self, verify_url: str) -> VerifyStatus:
        """
        Poll a LUD-21 verify URL.

        Args:
            verify_url: URL returned alongside the invoice.

        Returns:
            VerifyStatus; ``settled`` is True only for an explicit ``true``.

        Raises:
            AccessError: InvalidVerifyUrl when the host resolves to an internal address.
            LnurlError: The endpoint could not be reached or answered with an error.
        """
        try:
            data = await self._get_json(verify_url)
        except BlockedHostError as e:
            raise AccessError(ErrorKind.INVALID_VERIFY_URL) from e
        preimage = data.get("preimage")
        return VerifyStatus(
            settled=data.get("settled") is True,
            preimage=preimage if isinstance(preimage, str) and preimage else None,
        )
