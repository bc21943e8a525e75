"""
Publishing: request validation and pricing.

Publishing text costs 100 sats per MB (minimum 1 sat), paid to the platform.
The pending publish is a resource of its own. Its id is derived from the
title and content, so a token paid for one text cannot publish another.
"""

from __future__ import annotations

import hashlib
import html
import math
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import AccessError, ErrorKind
from .lnurl import is_valid_lightning_address
from .resources import ProtectedResource

SATS_PER_MB = 100
BYTES_PER_MB = 1024 * 1024
PUBLISH_ID_PREFIX = "publish-"


class DocumentRequest(BaseModel):
    """Body of the publish and create endpoints."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: Optional[str] = None
    text_content: Optional[str] = Field(default=None, alias="textContent")
    source: Optional[str] = None
    price_sats: Optional[int] = Field(default=None, alias="priceSats")
    lightning_address: Optional[str] = Field(default=None, alias="lightningAddress")

    @property
    def is_paid(self) -> bool:
        return bool(self.price_sats and self.price_sats > 0)

    @property
    def size_bytes(self) -> int:
        return len((self.text_content or "").encode("utf-8"))


def parse_document_request(payload: Any) -> DocumentRequest:
    """Parse a JSON payload, turning schema errors into InvalidRequest."""
    if not isinstance(payload, dict):
        raise AccessError(ErrorKind.INVALID_REQUEST, "Request body must be a JSON object")
    try:
        return DocumentRequest.model_validate(payload)
    except ValidationError as e:
        raise AccessError(ErrorKind.INVALID_REQUEST, f"Invalid request: {e.errors()[0]['msg']}") from e


def validate_document_request(req: DocumentRequest, max_content_size: int) -> None:
    """
    Check required fields and paywall settings.

    Raises:
        AccessError: InvalidRequest describing the first problem found.
    """
    if not req.title or not req.title.strip():
        raise AccessError(ErrorKind.INVALID_REQUEST, "Title is required")

    if not req.text_content or not req.text_content.strip():
        raise AccessError(ErrorKind.INVALID_REQUEST, "Text content is required")

    if len(req.text_content) > max_content_size:
        raise AccessError(
            ErrorKind.INVALID_REQUEST,
            f"Content too large. Maximum size is {max_content_size // 1000}KB",
        )

    if req.price_sats is not None and req.price_sats < 0:
        raise AccessError(ErrorKind.INVALID_REQUEST, "priceSats cannot be negative")

    if req.is_paid:
        if not req.lightning_address:
            raise AccessError(ErrorKind.INVALID_REQUEST, "Lightning Address is required for paid content")
        if not is_valid_lightning_address(req.lightning_address):
            raise AccessError(
                ErrorKind.INVALID_REQUEST,
                "Invalid Lightning Address format (expected user@domain.com)",
            )


def calculate_cost_sats(size_bytes: int) -> int:
    """Publishing cost: 100 sats per MB, minimum 1 sat."""
    cost = math.ceil(size_bytes / BYTES_PER_MB * SATS_PER_MB)
    return max(cost, 1)


def publish_id(title: str, text_content: str) -> str:
    """Deterministic pending-publish resource id for this exact content."""
    digest = hashlib.sha256(
        title.strip().encode("utf-8") + b"\x00" + text_content.encode("utf-8")
    ).hexdigest()
    return f"{PUBLISH_ID_PREFIX}{digest[:32]}"


def is_publish_id(resource_id: str) -> bool:
    return resource_id.startswith(PUBLISH_ID_PREFIX)


def publish_resource(req: DocumentRequest) -> ProtectedResource:
    """The pending publish as a platform-paid resource."""
    title = (req.title or "").strip()
    return ProtectedResource(
        resource_id=publish_id(title, req.text_content or ""),
        price_sats=calculate_cost_sats(req.size_bytes),
        title=title,
    )


def publish_quote(req: DocumentRequest) -> Dict[str, Any]:
    """Cost breakdown added to the publish challenge body."""
    size = req.size_bytes
    cost = calculate_cost_sats(size)
    size_mb = f"{size / BYTES_PER_MB:.3f}"
    return {
        "publishId": publish_id((req.title or "").strip(), req.text_content or ""),
        "costSats": cost,
        "contentSizeBytes": size,
        "sizeInMB": size_mb,
        "message": (
            f"Publishing costs {cost} sats ({size_mb} MB × {SATS_PER_MB} sats/MB). "
            "Pay the invoice and retry with Authorization: L402 <macaroon>:<preimage>"
        ),
    }


def sanitize(text: str) -> str:
    """Escape HTML-significant characters in stored titles and names."""
    return html.escape(text, quote=True)
