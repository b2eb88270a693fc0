"""
HTTP surface for automation callers.

Thin FastAPI routes over the reconciliation engine. Every engine error is
rendered as ``{"ok": false, "error": ..., "reason": ...}`` with the status
code its class declares.
"""

import hmac
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .client import RecordStoreClient
from .dedup import ChildSchema, create_child_or_skip
from .errors import NotConfigured, ReconcilerError, Unauthorized
from .helpers import extract_domain_from_email
from .identity import ParentSchema, get_or_create_parent
from .inbox import EmailPayload, InboxSchema, create_intake_items, ingest_email
from .log_config import StructlogMiddleware, generate_trace_id
from .merge_map import build_merge_map, build_placeholders, build_replace_requests, describe_merge
from .promotion import PromotionSchema, promote
from .settings import Settings, settings

logger = structlog.get_logger(__name__)


class ResolveCompanyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    identity_value: str = Field(alias="identityValue")
    display_name_hint: Optional[str] = Field(default=None, alias="displayNameHint")


class PromoteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_id: str = Field(alias="sourceId")
    tasks: List[Any] = Field(default_factory=list)
    decisions: List[Any] = Field(default_factory=list)


class CreateChildRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    trace_key: str = Field(alias="traceKey")
    fields: Dict[str, Any] = Field(default_factory=dict)
    parent_id: Optional[str] = Field(default=None, alias="parentId")


class IntakeRequest(BaseModel):
    inbox_items: List[Dict[str, Any]] = Field(min_length=1)


def get_config(request: Request) -> Settings:
    return request.app.state.config


def get_record_store(request: Request) -> RecordStoreClient:
    return request.app.state.record_store


def get_trace_id(request: Request) -> str:
    return getattr(request.state, "trace_id", None) or generate_trace_id("req")


def _extract_token(request: Request) -> str:
    auth = request.headers.get("authorization", "").strip()
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    if auth:
        return auth
    return request.headers.get("x-intake-token", "").strip()


def _matches(provided: str, expected: str) -> bool:
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def require_intake_token(request: Request) -> None:
    """Accept ``Authorization: Bearer <t>``, a bare token, or ``x-intake-token``."""
    expected = get_config(request).intake_token
    if not expected:
        raise NotConfigured("INTAKE_TOKEN missing on server")

    provided = _extract_token(request)
    if not provided:
        raise Unauthorized("No token provided")
    if not _matches(provided, expected):
        raise Unauthorized("Token mismatch")


def require_inbox_secret(request: Request) -> None:
    expected = get_config(request).inbox_shared_secret
    if not expected:
        raise NotConfigured("INBOX_SHARED_SECRET missing on server")

    provided = request.headers.get("x-inbox-secret", "")
    if not provided or not _matches(provided, expected):
        raise Unauthorized("Unauthorized")


async def handle_reconciler_error(request: Request, exc: ReconcilerError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "REQUEST_FAILED",
        reason=exc.reason,
        status_code=exc.status_code,
        error=exc.message,
        path=request.url.path
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"ok": False, "error": "; ".join(errors) or "Invalid request", "reason": "invalid_request"},
    )


def create_app(
    config: Optional[Settings] = None,
    record_store: Optional[RecordStoreClient] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Settings (defaults to the process settings)
        record_store: Pre-built client; one is created from settings otherwise
    """
    config = config or settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = record_store is None
        app.state.record_store = record_store or RecordStoreClient.from_settings(config)
        logger.info(
            "SERVICE_STARTED",
            base_id=config.airtable_base_id,
            environment=config.environment,
            version=__version__
        )
        try:
            yield
        finally:
            if owned:
                await app.state.record_store.aclose()

    # Interactive docs and the schema are not served in production
    show_docs = not config.is_production()
    app = FastAPI(
        title="Record Reconciler",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if show_docs else None,
        redoc_url="/redoc" if show_docs else None,
        openapi_url="/openapi.json" if show_docs else None,
    )
    app.state.config = config
    app.add_middleware(StructlogMiddleware)
    app.add_exception_handler(ReconcilerError, handle_reconciler_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)

    parent_schema = ParentSchema.from_settings(config)
    child_schema = ChildSchema.from_settings(config)
    promotion_schema = PromotionSchema.from_settings(config)
    inbox_schema = InboxSchema.from_settings(config)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"ok": True, "service": config.service_name, "version": __version__}

    @app.post("/companies/resolve", dependencies=[Depends(require_intake_token)])
    async def resolve_company(
        body: ResolveCompanyRequest,
        client: RecordStoreClient = Depends(get_record_store),
        trace_id: str = Depends(get_trace_id),
    ) -> Dict[str, Any]:
        identity_value = body.identity_value
        if "@" in identity_value:
            identity_value = extract_domain_from_email(identity_value) or ""

        resolution = await get_or_create_parent(
            client,
            identity_value,
            body.display_name_hint,
            schema=parent_schema,
            trace_id=trace_id,
        )
        return resolution.to_response()

    @app.post("/inbox/promote", dependencies=[Depends(require_intake_token)])
    async def promote_inbox_item(
        body: PromoteRequest,
        client: RecordStoreClient = Depends(get_record_store),
        trace_id: str = Depends(get_trace_id),
    ) -> JSONResponse:
        result = await promote(
            client,
            body.source_id,
            body.tasks,
            body.decisions,
            schema=promotion_schema,
            trace_id=trace_id,
        )
        error = result.to_error()
        status_code = error.status_code if error is not None else 200
        return JSONResponse(status_code=status_code, content=result.to_response())

    @app.post("/children", dependencies=[Depends(require_intake_token)])
    async def create_child_item(
        body: CreateChildRequest,
        client: RecordStoreClient = Depends(get_record_store),
        trace_id: str = Depends(get_trace_id),
    ) -> Dict[str, Any]:
        parent_links = {child_schema.parent_field: [body.parent_id]} if body.parent_id else None
        result = await create_child_or_skip(
            client,
            body.trace_key,
            body.fields,
            parent_links,
            schema=child_schema,
            trace_id=trace_id,
        )
        return result.to_response()

    @app.post("/inbox/email", dependencies=[Depends(require_inbox_secret)])
    async def inbox_email(
        payload: EmailPayload,
        client: RecordStoreClient = Depends(get_record_store),
        trace_id: str = Depends(get_trace_id),
    ) -> Dict[str, Any]:
        result = await ingest_email(client, payload, schema=inbox_schema, trace_id=trace_id)
        return result.to_response()

    @app.post("/inbox/intake", dependencies=[Depends(require_intake_token)])
    async def inbox_intake(
        body: IntakeRequest,
        client: RecordStoreClient = Depends(get_record_store),
        trace_id: str = Depends(get_trace_id),
    ) -> Dict[str, Any]:
        created = await create_intake_items(
            client, body.inbox_items, table=config.inbox_table, trace_id=trace_id
        )
        return {"ok": True, "createdCount": len(created), "ids": created}

    @app.post("/merge-fields")
    async def merge_fields(request: Request):
        try:
            raw_body = await request.json()
        except ValueError:
            return JSONResponse(
                status_code=400,
                content={"ok": False, "error": "Invalid JSON body", "reason": "invalid_request"},
            )

        merge = build_merge_map(raw_body)
        placeholders = build_placeholders(merge)
        logger.info("MERGE_FIELDS_BUILT", **describe_merge(merge))
        return {
            "ok": True,
            "merge": merge,
            "placeholders": placeholders,
            "requests": build_replace_requests(placeholders),
        }

    return app
