"""Tests for the LNURL-pay client and SSRF guard."""

import socket
from types import SimpleNamespace

import bolt11
import httpx
import pytest

import speedread_l402.lnurl as lnurl_module
from speedread_l402.errors import AccessError, BlockedHostError, ErrorKind, LnurlError
from speedread_l402.lnurl import (
    LnurlClient,
    ensure_public_host,
    is_blocked_host,
    is_trusted_verify_host,
    is_valid_lightning_address,
    lightning_address_to_url,
    validate_verify_url,
)

PAYMENT_HASH = "cd" * 32
CALLBACK = "https://getalby.com/lnurlp/alice/callback"
VERIFY = "https://getalby.com/lnurlp/alice/verify/abc"
PUBLIC_IP = "93.184.216.34"
# Private key from the BOLT11 test vectors
NODE_KEY = "e126f68f7eafcc8b74f54d269fe206be715000f94dac067d1c04a8ca3b2db734"

system_resolve_host = lnurl_module.resolve_host


def _pay_request(**overrides):
    data = {
        "tag": "payRequest",
        "callback": CALLBACK,
        "minSendable": 1000,
        "maxSendable": 100_000_000,
        "metadata": '[["text/plain","Pay alice"]]',
        "commentAllowed": 50,
    }
    data.update(overrides)
    return data


def _client_with(handler) -> LnurlClient:
    client = LnurlClient()
    client._client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=False)
    return client


@pytest.fixture(autouse=True)
def dns(monkeypatch):
    """Host name -> resolved addresses; unlisted hosts resolve to a public address."""
    answers = {}

    async def resolve(host, port):
        answer = answers.get(host, [PUBLIC_IP])
        if isinstance(answer, Exception):
            raise answer
        return answer

    monkeypatch.setattr(lnurl_module, "resolve_host", resolve)
    return answers


def _encode_invoice(amount_msat, payment_hash=PAYMENT_HASH):
    invoice = bolt11.Bolt11(
        currency="bc",
        date=1700000000,
        amount_msat=amount_msat,
        tags=bolt11.Tags(
            [
                bolt11.Tag(bolt11.TagChar.payment_hash, payment_hash),
                bolt11.Tag(bolt11.TagChar.payment_secret, "11" * 32),
                bolt11.Tag(bolt11.TagChar.description, "SpeedRead: Title"),
            ]
        ),
    )
    return bolt11.encode(invoice, NODE_KEY)


@pytest.fixture
def fake_bolt11(monkeypatch):
    decoded = SimpleNamespace(payment_hash=PAYMENT_HASH.upper(), amount_msat=500_000)
    monkeypatch.setattr(lnurl_module, "decode_bolt11", lambda pr: decoded)
    return decoded


class TestLightningAddress:
    def test_valid(self):
        assert is_valid_lightning_address("alice@getalby.com") is True
        assert is_valid_lightning_address("bob.smith_1@wallet.example.org") is True

    def test_invalid(self):
        assert is_valid_lightning_address("not-an-address") is False
        assert is_valid_lightning_address("alice@localhost") is False
        assert is_valid_lightning_address("") is False
        assert is_valid_lightning_address(None) is False

    def test_to_url(self):
        assert lightning_address_to_url("alice@getalby.com") == "https://getalby.com/.well-known/lnurlp/alice"

    def test_to_url_invalid(self):
        with pytest.raises(LnurlError):
            lightning_address_to_url("alice")


class TestBlockedHosts:
    @pytest.mark.parametrize(
        "host",
        [
            "localhost",
            "127.0.0.1",
            "0.0.0.0",
            "::1",
            "10.1.2.3",
            "172.16.0.1",
            "172.31.255.255",
            "192.168.1.1",
            "169.254.169.254",
            "metadata.google.internal",
            "fe80::1",
            "",
            None,
        ],
    )
    def test_blocked(self, host):
        assert is_blocked_host(host) is True

    @pytest.mark.parametrize(
        "host",
        ["127.1", "2130706433", "0x7f000001", "0177.0.0.1", "10.1", "::ffff:127.0.0.1", "[::ffff:a9fe:a9fe]"],
    )
    def test_blocked_ip_aliases(self, host):
        assert is_blocked_host(host) is True

    @pytest.mark.parametrize("host", ["getalby.com", "api.getalby.com", "172.32.0.1", "8.8.8.8"])
    def test_allowed(self, host):
        assert is_blocked_host(host) is False


class TestVerifyUrl:
    def test_public_https(self):
        assert validate_verify_url(VERIFY) == VERIFY

    @pytest.mark.parametrize(
        "url",
        [
            "ftp://getalby.com/verify",
            "file:///etc/passwd",
            "http://localhost:8080/verify",
            "http://10.0.0.5/verify",
            "http://2130706433:8080/internal-admin",
            "http://0x7f000001/verify",
            "https://getalby.com:99999/verify",
            "not a url",
        ],
    )
    def test_rejected(self, url):
        with pytest.raises(AccessError) as exc_info:
            validate_verify_url(url)
        assert exc_info.value.kind is ErrorKind.INVALID_VERIFY_URL

    def test_trusted_host(self):
        assert is_trusted_verify_host(VERIFY, "alice@getalby.com") is True
        assert is_trusted_verify_host("https://api.getalby.com/v", "alice@getalby.com") is True
        assert is_trusted_verify_host("https://evilgetalby.com/v", "alice@getalby.com") is False
        assert is_trusted_verify_host("https://example.com/v", "alice@getalby.com") is False


class TestRequestInvoice:
    @pytest.mark.asyncio
    async def test_request_invoice(self, fake_bolt11):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/.well-known/lnurlp/alice":
                return httpx.Response(200, json=_pay_request())
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"pr": "lnbc5u1pjcreator", "verify": VERIFY, "routes": []})

        client = _client_with(handler)
        invoice = await client.request_invoice("alice@getalby.com", 500, comment="SpeedRead: Title")

        assert invoice.payment_request == "lnbc5u1pjcreator"
        assert invoice.payment_hash == PAYMENT_HASH
        assert invoice.verify_url == VERIFY
        assert seen["params"] == {"amount": "500000", "comment": "SpeedRead: Title"}

    @pytest.mark.asyncio
    async def test_comment_dropped_when_not_allowed(self, fake_bolt11):
        seen = {}

        def handler(request):
            if request.url.path.startswith("/.well-known"):
                return httpx.Response(200, json=_pay_request(commentAllowed=0))
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"pr": "lnbc5u1pjcreator"})

        invoice = await _client_with(handler).request_invoice("alice@getalby.com", 500, comment="hi")
        assert seen["params"] == {"amount": "500000"}
        assert invoice.verify_url is None

    @pytest.mark.asyncio
    async def test_no_inbound_liquidity(self, fake_bolt11):
        client = _client_with(lambda request: httpx.Response(200, json=_pay_request(maxSendable=0)))
        with pytest.raises(LnurlError, match="inbound liquidity"):
            await client.request_invoice("alice@getalby.com", 500)

    @pytest.mark.asyncio
    async def test_amount_out_of_range(self, fake_bolt11):
        client = _client_with(lambda request: httpx.Response(200, json=_pay_request(minSendable=1_000_000)))
        with pytest.raises(LnurlError, match="between"):
            await client.request_invoice("alice@getalby.com", 500)

    @pytest.mark.asyncio
    async def test_invoice_amount_mismatch(self, monkeypatch):
        monkeypatch.setattr(
            lnurl_module,
            "decode_bolt11",
            lambda pr: SimpleNamespace(payment_hash=PAYMENT_HASH, amount_msat=1_000),
        )

        def handler(request):
            if request.url.path.startswith("/.well-known"):
                return httpx.Response(200, json=_pay_request())
            return httpx.Response(200, json={"pr": "lnbc10n1pjcheap"})

        with pytest.raises(LnurlError, match="does not match"):
            await _client_with(handler).request_invoice("alice@getalby.com", 500)

    @pytest.mark.asyncio
    async def test_undecodable_invoice(self, monkeypatch):
        def broken(pr):
            raise ValueError("bad bech32")

        monkeypatch.setattr(lnurl_module, "decode_bolt11", broken)

        def handler(request):
            if request.url.path.startswith("/.well-known"):
                return httpx.Response(200, json=_pay_request())
            return httpx.Response(200, json={"pr": "lnbcgarbage"})

        with pytest.raises(LnurlError, match="Invalid BOLT11"):
            await _client_with(handler).request_invoice("alice@getalby.com", 500)

    @pytest.mark.asyncio
    async def test_wrong_tag(self, fake_bolt11):
        client = _client_with(lambda request: httpx.Response(200, json=_pay_request(tag="withdrawRequest")))
        with pytest.raises(LnurlError, match="Invalid LNURL-pay"):
            await client.request_invoice("alice@getalby.com", 500)

    @pytest.mark.asyncio
    async def test_error_status(self, fake_bolt11):
        client = _client_with(
            lambda request: httpx.Response(200, json={"status": "ERROR", "reason": "user not found"})
        )
        with pytest.raises(LnurlError, match="user not found"):
            await client.request_invoice("alice@getalby.com", 500)

    @pytest.mark.asyncio
    async def test_blocked_domain(self, fake_bolt11):
        calls = []
        client = _client_with(lambda request: calls.append(request) or httpx.Response(200, json={}))
        with pytest.raises(LnurlError, match="blocked"):
            await client.request_invoice("bob@192.168.1.com", 500)
        assert calls == []

    @pytest.mark.asyncio
    async def test_blocked_callback(self, fake_bolt11):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=_pay_request(callback="http://127.0.0.1/callback"))

        with pytest.raises(LnurlError, match="Blocked"):
            await _client_with(handler).request_invoice("alice@getalby.com", 500)
        assert len(calls) == 1


class TestCheckVerifyUrl:
    @pytest.mark.asyncio
    async def test_settled(self):
        preimage = "ef" * 32
        client = _client_with(
            lambda request: httpx.Response(200, json={"status": "OK", "settled": True, "preimage": preimage, "pr": "lnbc"})
        )
        status = await client.check_verify_url(VERIFY)
        assert status.settled is True
        assert status.preimage == preimage

    @pytest.mark.asyncio
    async def test_not_settled(self):
        client = _client_with(
            lambda request: httpx.Response(200, json={"status": "OK", "settled": False, "preimage": None})
        )
        status = await client.check_verify_url(VERIFY)
        assert status.settled is False
        assert status.preimage is None

    @pytest.mark.asyncio
    async def test_truthy_string_is_not_settled(self):
        client = _client_with(lambda request: httpx.Response(200, json={"settled": "true"}))
        assert (await client.check_verify_url(VERIFY)).settled is False

    @pytest.mark.asyncio
    async def test_http_error(self):
        client = _client_with(lambda request: httpx.Response(500))
        with pytest.raises(LnurlError, match="500"):
            await client.check_verify_url(VERIFY)

    @pytest.mark.asyncio
    async def test_redirect_not_followed(self):
        client = _client_with(
            lambda request: httpx.Response(302, headers={"Location": "http://169.254.169.254/"})
        )
        with pytest.raises(LnurlError, match="302"):
            await client.check_verify_url(VERIFY)

    @pytest.mark.asyncio
    async def test_not_connected(self):
        with pytest.raises(RuntimeError):
            await LnurlClient().check_verify_url(VERIFY)


class TestResolvedHosts:
    @pytest.mark.asyncio
    async def test_public_host(self):
        await ensure_public_host(VERIFY)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "addresses",
        [["127.0.0.1"], ["10.0.0.7"], ["169.254.169.254"], ["::1"], [PUBLIC_IP, "192.168.0.10"]],
    )
    async def test_internal_resolution_blocked(self, dns, addresses):
        dns["127.0.0.1.nip.io"] = addresses
        with pytest.raises(BlockedHostError):
            await ensure_public_host("http://127.0.0.1.nip.io/verify/1")

    @pytest.mark.asyncio
    async def test_unresolvable_host(self, dns):
        dns["nowhere.example"] = socket.gaierror(socket.EAI_NONAME, "Name or service not known")
        with pytest.raises(LnurlError, match="Could not resolve") as exc_info:
            await ensure_public_host("https://nowhere.example/verify")
        assert not isinstance(exc_info.value, BlockedHostError)

    @pytest.mark.asyncio
    async def test_verify_url_resolving_to_loopback_not_fetched(self, dns):
        dns["127.0.0.1.nip.io"] = ["127.0.0.1"]
        calls = []
        client = _client_with(lambda request: calls.append(request) or httpx.Response(200, json={"settled": True}))

        with pytest.raises(AccessError) as exc_info:
            await client.check_verify_url("http://127.0.0.1.nip.io/internal-admin")
        assert exc_info.value.kind is ErrorKind.INVALID_VERIFY_URL
        assert calls == []

    @pytest.mark.asyncio
    async def test_callback_resolving_to_private_address(self, dns, fake_bolt11):
        dns["callback.example.com"] = ["10.0.0.7"]
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=_pay_request(callback="https://callback.example.com/cb"))

        with pytest.raises(LnurlError, match="Blocked"):
            await _client_with(handler).request_invoice("alice@getalby.com", 500)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_system_resolver_expands_numeric_alias(self):
        addresses = await system_resolve_host("2130706433", 80)
        assert "127.0.0.1" in addresses
        assert all(is_blocked_host(address) for address in addresses)


class TestEncodedInvoice:
    def _handler(self, pr):
        def handler(request):
            if request.url.path.startswith("/.well-known"):
                return httpx.Response(200, json=_pay_request())
            return httpx.Response(200, json={"pr": pr, "verify": VERIFY})

        return handler

    @pytest.mark.asyncio
    async def test_payment_hash_read_from_invoice(self):
        payment_hash = "00" * 31 + "01"
        pr = _encode_invoice(500_000, payment_hash)

        invoice = await _client_with(self._handler(pr)).request_invoice("alice@getalby.com", 500)

        assert pr.startswith("lnbc")
        assert invoice.payment_request == pr
        assert invoice.payment_hash == payment_hash
        assert invoice.verify_url == VERIFY

    @pytest.mark.asyncio
    async def test_amount_mismatch_rejected(self):
        pr = _encode_invoice(1_000)
        with pytest.raises(LnurlError, match="does not match"):
            await _client_with(self._handler(pr)).request_invoice("alice@getalby.com", 500)
