"""Shared fakes for the node, LNURL and document store collaborators."""

import hashlib
import secrets
from typing import Dict, List, Optional

import pytest

from speedread_l402.errors import LndError, LnurlError
from speedread_l402.lnurl import VerifyStatus
from speedread_l402.resources import InvoiceResult


SECRET = "test-secret-key-for-hmac-signing-0123456789"


def make_preimage() -> "tuple[str, str]":
    """Return (preimage_hex, payment_hash_hex)."""
    preimage = secrets.token_hex(32)
    return preimage, hashlib.sha256(bytes.fromhex(preimage)).hexdigest()


class FakeNode:
    """Stands in for the platform LND node."""

    def __init__(self):
        self.settled = set()
        self.preimages: Dict[str, str] = {}
        self.invoices: List[InvoiceResult] = []
        self.lookups: List[str] = []
        self.fail_lookup = False
        self.fail_create = False

    async def create_invoice(self, amount_sats: int, memo: str = "", expiry: int = 3600) -> InvoiceResult:
        if self.fail_create:
            raise LndError("LND configuration missing")
        preimage, payment_hash = make_preimage()
        self.preimages[payment_hash] = preimage
        invoice = InvoiceResult(
            payment_request=f"lnbc{amount_sats}0n1fake{len(self.invoices)}",
            payment_hash=payment_hash,
        )
        self.invoices.append(invoice)
        return invoice

    async def lookup_invoice(self, payment_hash: str) -> bool:
        self.lookups.append(payment_hash)
        if self.fail_lookup:
            raise LndError("LND API error: 502")
        return payment_hash in self.settled

    def settle(self, payment_hash: str) -> None:
        self.settled.add(payment_hash)


class FakeLnurl:
    """Stands in for a creator's LNURL-pay wallet."""

    def __init__(self, verify_base: str = "https://getalby.com/lnurlp/alice/verify"):
        self.verify_base = verify_base
        self.preimages: Dict[str, str] = {}
        self.invoices: List[InvoiceResult] = []
        self.verify_calls: List[str] = []
        self.status = VerifyStatus(settled=False)
        self.fail_verify = False
        self.fail_create = False

    async def request_invoice(self, address: str, amount_sats: int, comment: Optional[str] = None) -> InvoiceResult:
        if self.fail_create:
            raise LnurlError("Lightning Address cannot receive payments yet (no inbound liquidity)")
        preimage, payment_hash = make_preimage()
        self.preimages[payment_hash] = preimage
        invoice = InvoiceResult(
            payment_request=f"lnbc{amount_sats}0n1creator{len(self.invoices)}",
            payment_hash=payment_hash,
            verify_url=f"{self.verify_base}/{payment_hash}",
        )
        self.invoices.append(invoice)
        return invoice

    async def check_verify_url(self, verify_url: str) -> VerifyStatus:
        self.verify_calls.append(verify_url)
        if self.fail_verify:
            raise LnurlError("LNURL endpoint returned 500")
        return self.status


@pytest.fixture
def node():
    return FakeNode()


@pytest.fixture
def lnurl():
    return FakeLnurl()
