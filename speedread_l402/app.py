"""FastAPI application factory.

Routes:
    POST     /api/l402/challenge              402 challenge for a paid document
    GET|POST /api/documents/{id}/content      gated document content
    POST     /api/l402/verify                 payment polling
    POST     /api/l402/publish                L402-gated publishing
    POST     /api/documents/create            free document creation
    POST     /api/tip/invoice                 tip invoice on the platform node
    GET      /api/tip/check                   tip settlement check
    GET      /api/l402/stats                  gate stats
    GET      /health
"""

from __future__ import annotations

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .challenge import ChallengeBuilder
from .config import Settings, get_settings
from .errors import (
    AccessError,
    ErrorKind,
    InvoiceCreationFailed,
    LightningBackendError,
    UpstreamUnavailable,
)
from .gate import AccessGate, GateResult, extract_credentials
from .lnd import LndClient
from .lnurl import LnurlClient
from .publish import (
    is_publish_id,
    parse_document_request,
    publish_quote,
    publish_resource,
    sanitize,
    validate_document_request,
)
from .resources import (
    Document,
    DocumentStore,
    MemoryDocumentStore,
    NewDocument,
    ProtectedResource,
    SupabaseDocumentStore,
    count_words,
)
from .stats import GateStats
from .verifier import PaymentVerifier

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Connect the clients this app created, and close them on shutdown."""
    owned: List[Any] = app.state.owned_clients
    for client in owned:
        await client.connect()
    logger.info("SpeedRead L402 service started (%d upstream clients)", len(owned))
    try:
        yield
    finally:
        for client in owned:
            await client.close()
        logger.info("SpeedRead L402 service shut down")


def _str_field(data: Dict[str, Any], *names: str) -> Optional[str]:
    """First non-empty string among ``names``."""
    for name in names:
        value = data.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as e:
        raise AccessError(ErrorKind.INVALID_REQUEST, "Request body must be valid JSON") from e
    if not isinstance(payload, dict):
        raise AccessError(ErrorKind.INVALID_REQUEST, "Request body must be a JSON object")
    return payload


def _denied(result: GateResult) -> JSONResponse:
    return JSONResponse(result.body(), status_code=result.status_code, headers=result.headers)


def create_app(
    settings: Optional[Settings] = None,
    *,
    node: Optional[Any] = None,
    lnurl: Optional[Any] = None,
    store: Optional[DocumentStore] = None,
) -> FastAPI:
    """Build and return the FastAPI application.

    Collaborators that are not injected are constructed from ``settings`` and
    connected / closed by the application lifespan. Injected collaborators
    are used as-is.

    Args:
        settings: Optional Settings. If *None*, loaded from the environment.
        node: Platform node client (LndClient or compatible).
        lnurl: LNURL client (LnurlClient or compatible).
        store: Document store (MemoryDocumentStore, SupabaseDocumentStore or compatible).
    """
    if settings is None:
        settings = get_settings()

    owned: List[Any] = []
    if node is None:
        node = LndClient(settings.lnd_rest_host, settings.lnd_macaroon_hex, settings.upstream_timeout)
        owned.append(node)
        if not node.is_configured:
            logger.warning("LND is not configured; platform invoices will fail")
    if lnurl is None:
        lnurl = LnurlClient(settings.upstream_timeout)
        owned.append(lnurl)
    if store is None:
        if settings.supabase_url:
            store = SupabaseDocumentStore(settings.supabase_url, settings.supabase_key, settings.upstream_timeout)
        else:
            logger.warning("No Supabase URL configured; using an in-memory document store")
            store = MemoryDocumentStore()
        owned.append(store)
    documents: DocumentStore = store

    stats = GateStats()
    verifier = PaymentVerifier(settings.macaroon_secret, node, lnurl, settings.upstream_timeout)
    gate = AccessGate(
        verifier=verifier,
        challenges=ChallengeBuilder(settings.macaroon_secret),
        node=node,
        lnurl=lnurl,
        stats=stats,
        invoice_expiry=settings.invoice_expiry,
        timeout=settings.upstream_timeout,
    )

    app = FastAPI(
        title="speedread-l402",
        version=__version__,
        description="L402 Lightning paywall for the SpeedRead document library",
        lifespan=_lifespan,
    )
    app.state.settings = settings
    app.state.owned_clients = owned
    app.state.node = node
    app.state.lnurl = lnurl
    app.state.store = documents
    app.state.gate = gate

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        expose_headers=["WWW-Authenticate"],
    )

    # -- Error handler --
    @app.exception_handler(AccessError)
    async def _access_error_handler(request: Request, exc: AccessError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    async def _get_document(document_id: str) -> Document:
        document = await documents.get(document_id)
        if document is None:
            raise AccessError(ErrorKind.RESOURCE_NOT_FOUND, "Document not found")
        return document

    # -- Base routes --
    @app.get("/health", tags=["base"])
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    # -- L402 --
    @app.post("/api/l402/challenge", tags=["l402"])
    async def l402_challenge(request: Request) -> JSONResponse:
        payload = await _json_body(request)
        document_id = _str_field(payload, "documentId", "resourceId")
        if not document_id:
            raise AccessError(ErrorKind.INVALID_REQUEST, "Document ID is required")

        document = await _get_document(document_id)
        challenge = await gate.issue_challenge(document.as_resource(), settings.access_token_ttl)
        return JSONResponse(challenge.body, status_code=challenge.status_code, headers=challenge.headers)

    @app.post("/api/l402/verify", tags=["l402"])
    async def l402_verify(request: Request) -> JSONResponse:
        payload = await _json_body(request)
        macaroon = _str_field(payload, "macaroon")
        resource_id = _str_field(payload, "resourceId", "documentId")
        if not macaroon or not resource_id:
            raise AccessError(ErrorKind.INVALID_REQUEST, "Macaroon and resource ID are required")

        if is_publish_id(resource_id):
            # Pending publishes are platform-paid and have no stored row yet
            resource = ProtectedResource(resource_id=resource_id, price_sats=0)
        else:
            resource = (await _get_document(resource_id)).as_resource()

        verification = await gate.verify(
            resource,
            macaroon,
            preimage=_str_field(payload, "preimage"),
            verify_url=_str_field(payload, "verifyUrl"),
        )
        body = verification.to_dict()
        if verification.paid:
            body.update({"resourceId": resource_id, "message": "Payment verified. Access granted."})
        return JSONResponse(body, status_code=verification.status_code)

    @app.get("/api/l402/stats", tags=["l402"])
    async def l402_stats() -> Dict[str, Any]:
        return stats.to_dict()

    @app.post("/api/l402/publish", tags=["l402"])
    async def l402_publish(request: Request) -> Any:
        req = parse_document_request(await _json_body(request))
        validate_document_request(req, settings.max_content_size)

        title = (req.title or "").strip()
        resource = publish_resource(req)
        result = await gate.authorize(
            resource,
            extract_credentials(request.headers.get("authorization")),
            challenge_ttl=settings.publish_token_ttl,
            memo=f'SpeedRead publish: "{title[:50]}"',
            extra=publish_quote(req),
            route="publish",
        )
        if not result.granted:
            return _denied(result)

        text = req.text_content or ""
        document = await documents.insert(
            NewDocument(
                title=sanitize(title[:200]),
                text_content=text,
                word_count=count_words(text),
                is_public=True,
                price_sats=req.price_sats if req.is_paid else 0,
                lightning_address=req.lightning_address.strip() if req.is_paid and req.lightning_address else None,
                creator_name=f"From: {sanitize(req.source[:100])}" if req.source else "L402 Publish",
            )
        )
        logger.info(
            "Published document %s (%d words, %d sats)",
            document.id,
            document.word_count,
            resource.price_sats,
        )
        return {
            "id": document.id,
            "shareUrl": f"{settings.app_url.rstrip('/')}/library?read={document.id}",
            "wordCount": document.word_count,
            "costSats": resource.price_sats,
            "message": "Document published successfully!",
        }

    # -- Documents --
    @app.api_route("/api/documents/{document_id}/content", methods=["GET", "POST"], tags=["documents"])
    async def document_content(document_id: str, request: Request) -> Any:
        document = await _get_document(document_id)

        params: Dict[str, Any] = dict(request.query_params)
        if request.method == "POST" and await request.body():
            params.update(await _json_body(request))

        credentials = extract_credentials(
            request.headers.get("authorization"),
            _str_field(params, "macaroon"),
            _str_field(params, "preimage"),
        )
        result = await gate.authorize(
            document.as_resource(),
            credentials,
            verify_url=_str_field(params, "verifyUrl"),
            route="content",
        )
        if not result.granted:
            return _denied(result)
        return document.content()

    @app.post("/api/documents/create", tags=["documents"])
    async def create_document(request: Request) -> Dict[str, Any]:
        req = parse_document_request(await _json_body(request))
        validate_document_request(req, settings.max_content_size)

        text = req.text_content or ""
        document = await documents.insert(
            NewDocument(
                title=sanitize((req.title or "").strip()),
                text_content=text,
                word_count=count_words(text),
                is_public=True,
                price_sats=req.price_sats if req.is_paid else 0,
                lightning_address=req.lightning_address.strip() if req.is_paid and req.lightning_address else None,
                creator_name=f"From: {sanitize(req.source[:100])}" if req.source else "Chrome Extension",
            )
        )
        return {
            "id": document.id,
            "shareUrl": f"{settings.app_url.rstrip('/')}/library?read={document.id}",
            "wordCount": document.word_count,
        }

    # -- Tips --
    @app.post("/api/tip/invoice", tags=["tips"])
    async def tip_invoice(request: Request) -> Dict[str, Any]:
        payload = await _json_body(request)
        amount = payload.get("amount")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < 1:
            raise AccessError(ErrorKind.INVALID_REQUEST, "Invalid amount. Must be at least 1 sat.")
        if amount > settings.max_tip_sats:
            raise AccessError(
                ErrorKind.INVALID_REQUEST,
                f"Maximum tip amount is {settings.max_tip_sats:,} sats.",
            )

        try:
            invoice = await asyncio.wait_for(
                node.create_invoice(
                    amount,
                    f"SpeedRead tip: {amount} sats - Thank you for your support!",
                    settings.invoice_expiry,
                ),
                settings.upstream_timeout,
            )
        except (LightningBackendError, asyncio.TimeoutError, OSError) as e:
            logger.error("Tip invoice failed: %s", e, exc_info=True)
            raise InvoiceCreationFailed("Failed to generate tip invoice") from e

        return {
            "paymentRequest": invoice.payment_request,
            "paymentHash": invoice.payment_hash,
            "amount": amount,
        }

    @app.get("/api/tip/check", tags=["tips"])
    async def tip_check(paymentHash: Optional[str] = None) -> Dict[str, Any]:  # noqa: N803
        if not paymentHash:
            raise AccessError(ErrorKind.INVALID_REQUEST, "Missing paymentHash parameter")
        if not re.fullmatch(r"[0-9a-fA-F]{64}", paymentHash):
            raise AccessError(ErrorKind.INVALID_REQUEST, "paymentHash must be 64 hex characters")
        try:
            paid = await asyncio.wait_for(node.lookup_invoice(paymentHash.lower()), settings.upstream_timeout)
        except (LightningBackendError, asyncio.TimeoutError, OSError) as e:
            logger.warning("Tip check failed for %s: %s", paymentHash, e)
            raise UpstreamUnavailable("Failed to check payment status") from e
        return {"paid": bool(paid)}

    return app
