"""
Payment verification for minted tokens.

One verification attempt walks this state machine:

    token invalid                          -> REJECTED(reason)
    platform                               -> NODE_LOOKUP
    creator + verify URL                   -> CALLBACK_POLL
    creator + preimage                     -> PREIMAGE_CHECK
    creator + neither                      -> PENDING (requires preimage)

    NODE_LOOKUP     settled ? PAID : PENDING; node failure -> ERROR
    CALLBACK_POLL   settled ? PAID : PENDING; endpoint failure -> ERROR
    PREIMAGE_CHECK  sha256(preimage) == payment hash ? PAID : REJECTED

The verify callback wins over a client preimage because it is attested by
a third party. Nothing is retried here and nothing is remembered between
attempts: clients poll, and every poll is an independent check.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from .errors import (
    MESSAGES,
    AccessError,
    ErrorKind,
    LightningBackendError,
    status_for,
)
from .lnurl import is_trusted_verify_host, validate_verify_url
from .macaroon import verify as verify_token
from .macaroon import verify_preimage
from .resources import PaymentType, ProtectedResource

logger = logging.getLogger(__name__)

# Failures of a node or LNURL round-trip that mean "ask again later"
UPSTREAM_ERRORS = (LightningBackendError, asyncio.TimeoutError, OSError)


class Outcome(str, Enum):
    PAID = "paid"
    PENDING = "pending"
    REJECTED = "rejected"
    ERROR = "error"


@dataclass
class Verification:
    """Result of one verification attempt."""
    outcome: Outcome
    payment_hash: Optional[str] = None
    reason: Optional[ErrorKind] = None
    error: Optional[str] = None
    requires_preimage: bool = False

    @property
    def paid(self) -> bool:
        return self.outcome is Outcome.PAID

    @property
    def status_code(self) -> int:
        if self.outcome is Outcome.PAID:
            return 200
        if self.outcome is Outcome.PENDING:
            return status_for(ErrorKind.NOT_YET_PAID)
        return status_for(self.reason or ErrorKind.UPSTREAM_UNAVAILABLE)

    def to_dict(self) -> Dict[str, Any]:
        if self.paid:
            return {"paid": True}
        body: Dict[str, Any] = {"paid": False, "error": self.error}
        if self.reason is not None:
            body["code"] = self.reason.value
        if self.requires_preimage:
            body["requiresPreimage"] = True
        return body


def _pending(payment_hash: str, message: str, requires_preimage: bool = False) -> Verification:
    return Verification(
        outcome=Outcome.PENDING,
        payment_hash=payment_hash,
        reason=ErrorKind.NOT_YET_PAID,
        error=message,
        requires_preimage=requires_preimage,
    )


def _rejected(kind: ErrorKind, payment_hash: Optional[str] = None, message: Optional[str] = None) -> Verification:
    return Verification(
        outcome=Outcome.REJECTED,
        payment_hash=payment_hash,
        reason=kind,
        error=message or MESSAGES[kind],
    )


def _error(payment_hash: str) -> Verification:
    return Verification(
        outcome=Outcome.ERROR,
        payment_hash=payment_hash,
        reason=ErrorKind.UPSTREAM_UNAVAILABLE,
        error=MESSAGES[ErrorKind.UPSTREAM_UNAVAILABLE],
    )


class PaymentVerifier:
    """
    Decides paid / unpaid for a previously minted token.

    Args:
        secret: Server's HMAC secret.
        node: Platform node client (``lookup_invoice(payment_hash) -> bool``).
        lnurl: LNURL client (``check_verify_url(url) -> VerifyStatus``).
        timeout: Bound on each upstream round-trip, in seconds.
    """

    def __init__(
        self,
        secret: Union[str, bytes],
        node: Any,
        lnurl: Any,
        timeout: float = 8.0,
    ):
        if not secret:
            raise ValueError("secret is required for verifying tokens")
        self._secret = secret
        self.node = node
        self.lnurl = lnurl
        self.timeout = timeout

    async def verify(
        self,
        token: str,
        resource: ProtectedResource,
        preimage: Optional[str] = None,
        verify_url: Optional[str] = None,
    ) -> Verification:
        """
        Run one verification attempt.

        Args:
            token: Wire-format access token.
            resource: The resource being accessed; its payment type picks the strategy.
            preimage: Hex preimage supplied by the client (creator payments).
            verify_url: LNURL verify URL (creator payments).

        Returns:
            Verification. Upstream failures come back as ERROR, never raised.
        """
        result = verify_token(self._secret, token, resource.resource_id)
        if not result.valid:
            return _rejected(result.reason or ErrorKind.MALFORMED_TOKEN, message=result.error)

        payment_hash = result.payment_hash or ""

        if resource.payment_type is PaymentType.PLATFORM:
            return await self._node_lookup(resource, payment_hash)

        if verify_url:
            return await self._callback_poll(resource, payment_hash, verify_url)

        if preimage:
            return self._preimage_check(resource, payment_hash, preimage)

        logger.debug("Creator payment for %s awaiting proof", resource.resource_id)
        return _pending(payment_hash, "Waiting for payment", requires_preimage=True)

    async def _node_lookup(self, resource: ProtectedResource, payment_hash: str) -> Verification:
        try:
            settled = await asyncio.wait_for(self.node.lookup_invoice(payment_hash), self.timeout)
        except UPSTREAM_ERRORS as e:
            logger.warning("Node lookup failed for %s (%s): %s", resource.resource_id, payment_hash, e)
            return _error(payment_hash)

        if not settled:
            logger.debug("Platform invoice %s not yet paid", payment_hash)
            return _pending(payment_hash, "Invoice not yet paid")

        logger.info("Platform payment %s verified for %s", payment_hash, resource.resource_id)
        return Verification(outcome=Outcome.PAID, payment_hash=payment_hash)

    async def _callback_poll(
        self,
        resource: ProtectedResource,
        payment_hash: str,
        verify_url: str,
    ) -> Verification:
        try:
            validate_verify_url(verify_url)
        except AccessError as e:
            logger.warning("Refused verify URL for %s: %s", resource.resource_id, verify_url)
            return _rejected(e.kind, payment_hash, e.message)

        try:
            status = await asyncio.wait_for(self.lnurl.check_verify_url(verify_url), self.timeout)
        except AccessError as e:
            logger.warning("Refused verify URL for %s after resolving: %s", resource.resource_id, verify_url)
            return _rejected(e.kind, payment_hash, e.message)
        except UPSTREAM_ERRORS as e:
            logger.warning("LNURL verify failed for %s: %s", resource.resource_id, e)
            return _error(payment_hash)

        if not status.settled:
            logger.debug("Creator invoice %s not yet paid", payment_hash)
            return _pending(payment_hash, "Waiting for payment")

        if status.preimage:
            if not verify_preimage(status.preimage, payment_hash):
                logger.warning(
                    "Verify endpoint returned a preimage not matching %s for %s",
                    payment_hash,
                    resource.resource_id,
                )
                return _rejected(ErrorKind.INVALID_PREIMAGE, payment_hash)
        elif not is_trusted_verify_host(verify_url, resource.payout_address or ""):
            # Settled without a preimage is only credible from the address's own domain
            logger.info("Unattested settlement from %s; asking for preimage", verify_url)
            return _pending(payment_hash, "Waiting for payment", requires_preimage=True)

        logger.info("Creator payment %s verified via LNURL for %s", payment_hash, resource.resource_id)
        return Verification(outcome=Outcome.PAID, payment_hash=payment_hash)

    def _preimage_check(
        self,
        resource: ProtectedResource,
        payment_hash: str,
        preimage: str,
    ) -> Verification:
        if not verify_preimage(preimage, payment_hash):
            logger.warning("Invalid preimage presented for %s", resource.resource_id)
            return _rejected(ErrorKind.INVALID_PREIMAGE, payment_hash)

        logger.info("Creator payment %s verified via preimage for %s", payment_hash, resource.resource_id)
        return Verification(outcome=Outcome.PAID, payment_hash=payment_hash)
