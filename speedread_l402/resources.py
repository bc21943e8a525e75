"""
Protected resources and the document store they come from.

The gate only needs three facts about a resource: its id, its price and
whether a creator payout address is set. The document store is consumed
through a two-method interface (get / insert).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

import httpx

from .errors import AccessError, ErrorKind

logger = logging.getLogger(__name__)


class PaymentType(str, Enum):
    """Who custodies the invoice, and therefore which proof is acceptable."""

    PLATFORM = "platform"
    CREATOR = "creator"


@dataclass(frozen=True)
class ProtectedResource:
    """A priced resource as seen by the access gate."""
    resource_id: str
    price_sats: int
    payout_address: Optional[str] = None   # creator Lightning Address
    title: str = ""
    creator_name: Optional[str] = None

    @property
    def payment_type(self) -> PaymentType:
        return PaymentType.CREATOR if self.payout_address else PaymentType.PLATFORM

    @property
    def is_free(self) -> bool:
        return not self.price_sats or self.price_sats <= 0


@dataclass(frozen=True)
class InvoiceResult:
    """An invoice issued by a platform node or a creator's LNURL endpoint."""
    payment_request: str
    payment_hash: str
    verify_url: Optional[str] = None


@dataclass
class Document:
    """A row of the ``documents`` table."""
    id: str
    title: str
    text_content: str
    word_count: int = 0
    is_public: bool = True
    price_sats: int = 0
    lightning_address: Optional[str] = None
    creator_name: Optional[str] = None

    def as_resource(self) -> ProtectedResource:
        return ProtectedResource(
            resource_id=self.id,
            price_sats=self.price_sats or 0,
            payout_address=self.lightning_address or None,
            title=self.title,
            creator_name=self.creator_name,
        )

    def content(self) -> Dict[str, Any]:
        """The released body of a granted request."""
        return {
            "id": self.id,
            "title": self.title,
            "textContent": self.text_content,
            "wordCount": self.word_count,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Document":
        return cls(
            id=str(row["id"]),
            title=row.get("title") or "",
            text_content=row.get("text_content") or "",
            word_count=row.get("word_count") or 0,
            is_public=bool(row.get("is_public", True)),
            price_sats=row.get("price_sats") or 0,
            lightning_address=row.get("lightning_address"),
            creator_name=row.get("creator_name"),
        )


@dataclass
class NewDocument:
    """Fields for inserting a document."""
    title: str
    text_content: str
    word_count: int
    is_public: bool = True
    price_sats: int = 0
    lightning_address: Optional[str] = None
    creator_name: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "text_content": self.text_content,
            "word_count": self.word_count,
            "is_public": self.is_public,
            "price_sats": self.price_sats,
            "lightning_address": self.lightning_address,
            "creator_name": self.creator_name,
        }


def count_words(text: str) -> int:
    """Count whitespace-separated words."""
    return len(text.split())


class DocumentStore(Protocol):
    """Narrow read/write interface onto the document table."""

    async def get(self, document_id: str) -> Optional[Document]:
        ...

    async def insert(self, new: NewDocument) -> Document:
        ...


class MemoryDocumentStore:
    """In-process document store for tests and local development."""

    def __init__(self, documents: Optional[List[Document]] = None):
        self._documents: Dict[str, Document] = {}
        for doc in documents or []:
            self._documents[doc.id] = doc

    async def get(self, document_id: str) -> Optional[Document]:
        return self._documents.get(document_id)

    async def insert(self, new: NewDocument) -> Document:
        doc = Document(id=str(uuid.uuid4()), **new.to_row())
        self._documents[doc.id] = doc
        return doc

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass


class SupabaseDocumentStore:
    """
    Document store backed by Supabase's PostgREST API.

    Usage::

        store = SupabaseDocumentStore(url, key)
        await store.connect()
        try:
            doc = await store.get("...")
        finally:
            await store.close()
    """

    def __init__(self, url: str, key: str, timeout: float = 8.0):
        self.url = url.rstrip("/")
        self._key = key
        self._timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def connect(self) -> None:
        """Create the underlying HTTP client."""
        self._client = httpx.AsyncClient(
            base_url=f"{self.url}/rest/v1",
            headers={
                "apikey": self._key,
                "Authorization": f"Bearer {self._key}",
                "Accept": "application/json",
            },
            timeout=self._timeout,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("SupabaseDocumentStore not connected; call connect() first")
        return self._client

    async def get(self, document_id: str) -> Optional[Document]:
        client = self._require_client()
        try:
            resp = await client.get(
                "/documents",
                params={"id": f"eq.{document_id}", "select": "*"},
            )
            resp.raise_for_status()
            rows = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Document lookup failed for %s: %s", document_id, e)
            raise AccessError(ErrorKind.STORE_UNAVAILABLE) from e

        if not rows:
            return None
        return Document.from_row(rows[0])

    async def insert(self, new: NewDocument) -> Document:
        client = self._require_client()
        try:
            resp = await client.post(
                "/documents",
                json=new.to_row(),
                headers={"Prefer": "return=representation"},
            )
            resp.raise_for_status()
            rows = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Document insert failed: %s", e)
            raise AccessError(ErrorKind.STORE_UNAVAILABLE, "Failed to create document") from e

        if not rows:
            raise AccessError(ErrorKind.STORE_UNAVAILABLE, "Failed to create document")
        return Document.from_row(rows[0])
