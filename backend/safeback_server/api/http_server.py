"""
HTTP API for the SafeBack snapshot engine.

Endpoints:
    POST /v1/capture    {workspace_id?, reason?}            -> {snapshot_id, snapshot}
    POST /v1/preview    {snapshot_id}                       -> {preview, confirmation_token,
                                                                confirmation_hash, expires_at}
    POST /v1/restore    {snapshot_id, confirmation_token}   -> {restored_counts, ...}
    POST /v1/providers  {workspace_id?}                     -> {providers}
    GET  /v1/export?snapshot_id=...                          -> {snapshot, payload | download_url}
    GET  /v1/snapshots?limit=...                             -> {snapshots}
    GET  /v1/health                                          -> {status, version, providers}

Invariants:
    - All /v1 operations except health require X-Tenant-ID and X-Actor headers
    - A request only ever operates on the workspace named by X-Tenant-ID
    - Engine errors are returned as {error, error_code, details}

How to change safely:
    - Add optional request fields only; keep response keys stable for the SDK
    - Version the API if breaking changes are needed
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from aiohttp import web
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .._version import __version__
from ..config import HttpConfig
from ..engine.orchestrator import SnapshotOrchestrator
from ..errors import WORKSPACE_ID_PATTERN, ExecutionDenied, SafebackError, ValidationFailure

logger = logging.getLogger(__name__)


class CaptureRequest(BaseModel):
    workspace_id: str | None = None
    reason: str | None = Field(default=None, max_length=500)


class PreviewRequest(BaseModel):
    snapshot_id: str = Field(min_length=1)


class RestoreRequest(BaseModel):
    snapshot_id: str = Field(min_length=1)
    confirmation_token: str = Field(min_length=1)


class ProvidersRequest(BaseModel):
    workspace_id: str | None = None


def create_http_app(
    engine: SnapshotOrchestrator,
    config: HttpConfig | None = None,
) -> web.Application:
    """Create the aiohttp application.

    Args:
        engine: SnapshotOrchestrator instance
        config: HTTP server configuration

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()
    app = web.Application()

    app.router.add_post("/v1/capture", lambda r: handle_capture(r, engine))
    app.router.add_post("/v1/preview", lambda r: handle_preview(r, engine))
    app.router.add_post("/v1/restore", lambda r: handle_restore(r, engine))
    app.router.add_post("/v1/providers", lambda r: handle_providers(r, engine))
    app.router.add_get("/v1/export", lambda r: handle_export(r, engine))
    app.router.add_get("/v1/snapshots", lambda r: handle_list_snapshots(r, engine))
    app.router.add_get("/v1/health", lambda r: handle_health(r, engine))

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                response = e

        origin = request.headers.get("Origin", "*")
        if "*" in config.cors_origins or origin in config.cors_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-Tenant-ID, X-Actor"
        return response

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except SafebackError as e:
            log = logger.error if e.http_status >= 500 else logger.warning
            log(
                f"{request.method} {request.path} failed: {e.message}",
                extra={"error_code": e.code, "status": e.http_status},
            )
            return web.json_response(e.to_dict(), status=e.http_status)
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(
                {"error": str(e), "error_code": "INTERNAL", "details": {}},
                status=500,
            )

    app.middlewares.append(cors_middleware)
    app.middlewares.append(error_middleware)

    return app


def extract_context(request: web.Request) -> tuple[str, str]:
    """Extract (tenant_id, actor) from headers.

    Raises:
        ValidationFailure: If a required header is missing or malformed
    """
    tenant_id = request.headers.get("X-Tenant-ID")
    actor = request.headers.get("X-Actor")
    if not tenant_id:
        raise ValidationFailure("X-Tenant-ID header is required", "X-Tenant-ID")
    if not actor:
        raise ValidationFailure("X-Actor header is required", "X-Actor")
    if not WORKSPACE_ID_PATTERN.fullmatch(tenant_id):
        raise ValidationFailure("X-Tenant-ID is not a valid workspace id", "X-Tenant-ID")
    return tenant_id, actor


async def parse_body(request: web.Request, model: type[BaseModel]) -> Any:
    """Parse and validate a JSON request body."""
    try:
        body = await request.json() if request.can_read_body else {}
    except json.JSONDecodeError:
        raise ValidationFailure("Invalid JSON body")
    try:
        return model.model_validate(body)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field_name = ".".join(str(p) for p in first["loc"]) or None
        raise ValidationFailure(f"{field_name}: {first['msg']}", field_name)


def scoped_workspace(tenant_id: str, requested: str | None) -> str:
    if requested and requested != tenant_id:
        raise ExecutionDenied("cannot operate on another workspace")
    return tenant_id


async def handle_capture(request: web.Request, engine: SnapshotOrchestrator) -> web.Response:
    """Handle POST /v1/capture."""
    tenant_id, actor = extract_context(request)
    body = await parse_body(request, CaptureRequest)
    workspace_id = scoped_workspace(tenant_id, body.workspace_id)

    snapshot = await engine.capture(workspace_id, actor, reason=body.reason)
    return web.json_response(
        {"snapshot_id": snapshot.id, "snapshot": snapshot.to_dict()}, status=201
    )


async def handle_preview(request: web.Request, engine: SnapshotOrchestrator) -> web.Response:
    """Handle POST /v1/preview."""
    tenant_id, actor = extract_context(request)
    body = await parse_body(request, PreviewRequest)

    result = await engine.preview(body.snapshot_id, actor, workspace_id=tenant_id)
    return web.json_response(result.to_dict())


async def handle_restore(request: web.Request, engine: SnapshotOrchestrator) -> web.Response:
    """Handle POST /v1/restore."""
    tenant_id, actor = extract_context(request)
    body = await parse_body(request, RestoreRequest)

    result = await engine.restore(
        body.snapshot_id, body.confirmation_token, actor, workspace_id=tenant_id
    )
    return web.json_response(result.to_dict())


async def handle_providers(request: web.Request, engine: SnapshotOrchestrator) -> web.Response:
    """Handle POST /v1/providers."""
    tenant_id, _ = extract_context(request)
    body = await parse_body(request, ProvidersRequest)
    workspace_id = scoped_workspace(tenant_id, body.workspace_id)

    providers = await engine.effective_providers(workspace_id)
    return web.json_response({"providers": [p.to_dict() for p in providers]})


async def handle_export(request: web.Request, engine: SnapshotOrchestrator) -> web.Response:
    """Handle GET /v1/export?snapshot_id=..."""
    tenant_id, _ = extract_context(request)
    snapshot_id = request.query.get("snapshot_id", "")

    exported = await engine.export(snapshot_id, workspace_id=tenant_id)
    return web.json_response(exported)


async def handle_list_snapshots(request: web.Request, engine: SnapshotOrchestrator) -> web.Response:
    """Handle GET /v1/snapshots?limit=..."""
    tenant_id, _ = extract_context(request)
    try:
        limit = int(request.query.get("limit", "50"))
    except ValueError:
        raise ValidationFailure("limit must be an integer", "limit")
    limit = max(1, min(limit, 500))

    snapshots = await engine.list_snapshots(tenant_id, limit=limit)
    return web.json_response({"snapshots": [s.to_dict() for s in snapshots]})


async def handle_health(request: web.Request, engine: SnapshotOrchestrator) -> web.Response:
    """Handle GET /v1/health."""
    return web.json_response(
        {
            "status": "ok",
            "version": __version__,
            "providers": [p.id for p in engine.registry.all()],
        }
    )
