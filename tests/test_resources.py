"""Tests for protected resources and document stores."""

import json

import httpx
import pytest

from speedread_l402.errors import AccessError, ErrorKind
from speedread_l402.resources import (
    Document,
    MemoryDocumentStore,
    NewDocument,
    PaymentType,
    ProtectedResource,
    SupabaseDocumentStore,
    count_words,
)

ROW = {
    "id": "6f1c0d7e-0000-4000-8000-000000000001",
    "title": "Paid essay",
    "text_content": "one two three",
    "word_count": 3,
    "is_public": True,
    "price_sats": 250,
    "lightning_address": "alice@getalby.com",
    "creator_name": "Alice",
    "created_at": "2024-01-01T00:00:00Z",
}


def _store_with(handler) -> SupabaseDocumentStore:
    store = SupabaseDocumentStore("https://project.supabase.co/", "service-key")
    store._client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url=f"{store.url}/rest/v1",
    )
    return store


class TestProtectedResource:
    def test_payment_type(self):
        assert ProtectedResource("a", 10).payment_type is PaymentType.PLATFORM
        assert ProtectedResource("a", 10, payout_address="a@b.com").payment_type is PaymentType.CREATOR

    def test_is_free(self):
        assert ProtectedResource("a", 0).is_free is True
        assert ProtectedResource("a", -1).is_free is True
        assert ProtectedResource("a", 1).is_free is False


class TestDocument:
    def test_from_row(self):
        doc = Document.from_row(ROW)
        assert doc.id == ROW["id"]
        assert doc.price_sats == 250
        resource = doc.as_resource()
        assert resource.payment_type is PaymentType.CREATOR
        assert resource.creator_name == "Alice"

    def test_null_columns(self):
        doc = Document.from_row({"id": 7, "title": None, "text_content": None, "price_sats": None})
        assert doc.id == "7"
        assert doc.as_resource().is_free is True
        assert doc.content() == {"id": "7", "title": "", "textContent": "", "wordCount": 0}

    def test_empty_address_is_platform(self):
        doc = Document.from_row(dict(ROW, lightning_address=""))
        assert doc.as_resource().payment_type is PaymentType.PLATFORM

    def test_count_words(self):
        assert count_words("  one two\nthree\tfour ") == 4
        assert count_words("") == 0


class TestMemoryDocumentStore:
    @pytest.mark.asyncio
    async def test_insert_and_get(self):
        store = MemoryDocumentStore()
        doc = await store.insert(NewDocument(title="T", text_content="a b", word_count=2))
        assert doc.id
        assert await store.get(doc.id) == doc
        assert await store.get("missing") is None


class TestSupabaseDocumentStore:
    @pytest.mark.asyncio
    async def test_get(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json=[ROW])

        doc = await _store_with(handler).get(ROW["id"])
        assert doc.title == "Paid essay"
        assert seen["path"] == "/rest/v1/documents"
        assert seen["params"] == {"id": f"eq.{ROW['id']}", "select": "*"}

    @pytest.mark.asyncio
    async def test_get_missing(self):
        assert await _store_with(lambda request: httpx.Response(200, json=[])).get("nope") is None

    @pytest.mark.asyncio
    async def test_get_failure(self):
        store = _store_with(lambda request: httpx.Response(500, json={"message": "boom"}))
        with pytest.raises(AccessError) as exc_info:
            await store.get("x")
        assert exc_info.value.kind is ErrorKind.STORE_UNAVAILABLE
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_insert(self):
        seen = {}

        def handler(request):
            seen["prefer"] = request.headers.get("Prefer")
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json=[dict(seen["body"], id="new-id")])

        new = NewDocument(title="T", text_content="a b", word_count=2, creator_name="L402 Publish")
        doc = await _store_with(handler).insert(new)
        assert doc.id == "new-id"
        assert doc.creator_name == "L402 Publish"
        assert seen["prefer"] == "return=representation"
        assert seen["body"]["text_content"] == "a b"

    @pytest.mark.asyncio
    async def test_not_connected(self):
        with pytest.raises(RuntimeError):
            await SupabaseDocumentStore("https://x.supabase.co", "k").get("x")
