"""
The access gate: one authorization decision for every priced resource.

Documents and pending publishes go through the same gate. What differs
between them (how the resource is looked up, how its price is computed,
which extra fields the challenge carries) is supplied by the caller as a
ProtectedResource and a few options.

    free resource                 -> GRANT
    no credentials                -> CHALLENGE (fresh invoice) or DENY with a price hint
    verifier says PAID            -> GRANT
    PENDING / REJECTED / ERROR    -> DENY carrying the verification
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .challenge import Challenge, ChallengeBuilder
from .errors import (
    AccessError,
    ErrorKind,
    InvoiceCreationFailed,
    LightningBackendError,
)
from .l402 import L402Credentials, parse_authorization
from .resources import InvoiceResult, PaymentType, ProtectedResource
from .stats import GateStats
from .verifier import Outcome, PaymentVerifier, Verification

logger = logging.getLogger(__name__)

INVALID_HEADER_MESSAGE = "Invalid Authorization header. Expected format: L402 <macaroon>:<preimage>"


class Decision(str, Enum):
    GRANT = "grant"
    CHALLENGE = "challenge"
    DENY = "deny"


@dataclass
class GateResult:
    """Outcome of one gated request."""
    decision: Decision
    resource: ProtectedResource
    verification: Optional[Verification] = None
    challenge: Optional[Challenge] = None
    hint: Optional[Dict[str, Any]] = None

    @property
    def granted(self) -> bool:
        return self.decision is Decision.GRANT

    @property
    def status_code(self) -> int:
        if self.decision is Decision.GRANT:
            return 200
        if self.verification is not None:
            return self.verification.status_code
        return 402

    @property
    def headers(self) -> Dict[str, str]:
        return self.challenge.headers if self.challenge is not None else {}

    def body(self) -> Dict[str, Any]:
        """JSON body for a non-granted result."""
        if self.challenge is not None:
            return self.challenge.body
        if self.verification is not None:
            body = self.verification.to_dict()
            body.pop("paid", None)
            return body
        return dict(self.hint or {})


def extract_credentials(
    authorization: Optional[str],
    macaroon: Optional[str] = None,
    preimage: Optional[str] = None,
) -> Optional[L402Credentials]:
    """
    Find the presented token.

    The Authorization header wins; a macaroon passed as a query or body
    field is the fallback for clients that cannot set headers.

    Raises:
        AccessError: MalformedToken when an L402 header is present but unparseable.
    """
    creds = parse_authorization(authorization)
    if creds is not None:
        return creds
    if authorization and authorization.strip().split(" ", 1)[0].lower() == "l402":
        raise AccessError(ErrorKind.MALFORMED_TOKEN, INVALID_HEADER_MESSAGE)
    if macaroon:
        return L402Credentials(macaroon=macaroon.strip(), preimage=(preimage or "").strip())
    return None


def _record_verification(
    stats: Optional[GateStats],
    route: str,
    resource: ProtectedResource,
    verification: Verification,
) -> None:
    if stats is None:
        return
    if verification.outcome is Outcome.PAID:
        stats.record(route, "granted", resource.resource_id, resource.price_sats, verification.payment_hash)
    elif verification.outcome is Outcome.PENDING:
        stats.record(route, "pending", resource.resource_id)
    elif verification.outcome is Outcome.REJECTED:
        reason = verification.reason.value if verification.reason else None
        stats.record(route, "rejected", resource.resource_id, reason=reason)
    else:
        stats.record(route, "errors", resource.resource_id)


class AccessGate:
    """
    Per-resource authorization.

    Args:
        verifier: PaymentVerifier for presented tokens.
        challenges: ChallengeBuilder for unpaid access.
        node: Platform invoice source (``create_invoice(amount_sats, memo, expiry)``).
        lnurl: Creator invoice source (``request_invoice(address, amount_sats, comment)``).
        stats: Optional GateStats to record decisions in.
        invoice_expiry: Expiry of platform invoices, in seconds.
        timeout: Bound on invoice creation round-trips, in seconds.
    """

    def __init__(
        self,
        verifier: PaymentVerifier,
        challenges: ChallengeBuilder,
        node: Any,
        lnurl: Any,
        stats: Optional[GateStats] = None,
        invoice_expiry: int = 3600,
        timeout: float = 8.0,
    ):
        self.verifier = verifier
        self.challenges = challenges
        self.node = node
        self.lnurl = lnurl
        self.stats = stats
        self.invoice_expiry = invoice_expiry
        self.timeout = timeout

    async def _create_invoice(self, resource: ProtectedResource, memo: str) -> InvoiceResult:
        # Each path fails on its own: falling back would change who gets paid.
        if resource.payment_type is PaymentType.CREATOR:
            try:
                return await asyncio.wait_for(
                    self.lnurl.request_invoice(resource.payout_address, resource.price_sats, memo),
                    self.timeout,
                )
            except (LightningBackendError, asyncio.TimeoutError, OSError) as e:
                logger.error("LNURL-pay invoice failed for %s: %s", resource.resource_id, e, exc_info=True)
                raise InvoiceCreationFailed(
                    "Failed to create invoice from creator's Lightning Address",
                    status_code=502,
                ) from e

        try:
            return await asyncio.wait_for(
                self.node.create_invoice(resource.price_sats, memo, self.invoice_expiry),
                self.timeout,
            )
        except (LightningBackendError, asyncio.TimeoutError, OSError) as e:
            logger.error("Platform invoice failed for %s: %s", resource.resource_id, e, exc_info=True)
            raise InvoiceCreationFailed("Failed to create invoice", status_code=503) from e

    async def issue_challenge(
        self,
        resource: ProtectedResource,
        ttl: int,
        memo: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
        route: str = "challenge",
    ) -> Challenge:
        """
        Obtain an invoice for the resource and build a 402 challenge.

        Raises:
            AccessError: NoPaymentRequired for free resources.
            InvoiceCreationFailed: The invoice source failed (502 creator, 503 platform).
        """
        if resource.is_free:
            raise AccessError(ErrorKind.NO_PAYMENT_REQUIRED)

        invoice = await self._create_invoice(resource, memo or f"SpeedRead: {resource.title}")

        body_extra: Dict[str, Any] = {}
        if resource.creator_name:
            body_extra["creatorName"] = resource.creator_name
        body_extra.update(extra or {})

        challenge = self.challenges.build(
            resource_id=resource.resource_id,
            price_sats=resource.price_sats,
            invoice=invoice,
            payment_type=resource.payment_type,
            ttl=ttl,
            extra=body_extra,
        )
        if self.stats is not None:
            self.stats.record(route, "challenged", resource.resource_id)
        return challenge

    async def verify(
        self,
        resource: ProtectedResource,
        macaroon: str,
        preimage: Optional[str] = None,
        verify_url: Optional[str] = None,
        route: str = "verify",
    ) -> Verification:
        """Run the payment verifier for a polling client."""
        verification = await self.verifier.verify(macaroon, resource, preimage, verify_url)
        _record_verification(self.stats, route, resource, verification)
        return verification

    async def authorize(
        self,
        resource: ProtectedResource,
        credentials: Optional[L402Credentials],
        verify_url: Optional[str] = None,
        challenge_ttl: Optional[int] = None,
        memo: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
        route: str = "content",
    ) -> GateResult:
        """
        Decide one resource request.

        Args:
            resource: The requested resource.
            credentials: Presented token and preimage, if any.
            verify_url: LNURL verify URL supplied with the request.
            challenge_ttl: When set, requests without credentials get a fresh
                challenge with this token lifetime; otherwise a price hint.
            memo: Invoice memo for a fresh challenge.
            extra: Extra challenge body fields.
            route: Route family name for stats.

        Returns:
            GateResult.
        """
        if resource.is_free:
            return GateResult(decision=Decision.GRANT, resource=resource)

        if credentials is None or not credentials.macaroon:
            if challenge_ttl is not None:
                challenge = await self.issue_challenge(resource, challenge_ttl, memo, extra, route)
                return GateResult(decision=Decision.CHALLENGE, resource=resource, challenge=challenge)

            if self.stats is not None:
                self.stats.record(route, "challenged", resource.resource_id)
            return GateResult(
                decision=Decision.DENY,
                resource=resource,
                hint={
                    "error": "Payment required",
                    "priceSats": resource.price_sats,
                    "paymentType": resource.payment_type.value,
                    "message": "This resource requires payment. Use POST /api/l402/challenge to get an invoice.",
                },
            )

        verification = await self.verify(
            resource,
            credentials.macaroon,
            credentials.preimage or None,
            verify_url,
            route=route,
        )
        if verification.paid:
            return GateResult(decision=Decision.GRANT, resource=resource, verification=verification)
        return GateResult(decision=Decision.DENY, resource=resource, verification=verification)
