from __future__ import annotations

import json
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from orgguard.apps.api.errors import (
    http_exception_handler,
    storage_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from orgguard.apps.api.response import API_VERSION, is_enveloped, is_versioned_request, wrap_success
from orgguard.apps.api.routes.admin_dashboard import router as admin_dashboard_router
from orgguard.apps.api.routes.admin_organisations import router as admin_organisations_router
from orgguard.apps.api.routes.audit import router as audit_router
from orgguard.apps.api.routes.billing import router as billing_router
from orgguard.apps.api.routes.health import router as health_router
from orgguard.apps.api.routes.impersonation import router as impersonation_router
from orgguard.apps.api.routes.plans import router as plans_router
from orgguard.apps.api.routes.processor_events import router as processor_events_router
from orgguard.apps.api.routes.super_admins import router as super_admins_router
from orgguard.core.config import get_settings
from orgguard.core.logging import configure_logging


logger = logging.getLogger(__name__)

_ENVELOPE_EXEMPT_PREFIXES = (
    "/v1/openapi.json",
    "/v1/docs",
)


async def _wrap_response(response, request_id: str):
    # call_next hands back a streamed body, so buffer it before inspecting.
    raw_body = getattr(response, "body", None)
    if raw_body is None:
        raw_body = b"".join([chunk async for chunk in response.body_iterator])
    passthrough = Response(
        content=raw_body,
        status_code=response.status_code,
        headers={k: v for k, v in response.headers.items() if k.lower() != "content-length"},
    )
    if not raw_body:
        return passthrough
    try:
        payload = json.loads(raw_body)
    except (TypeError, ValueError):
        return passthrough
    if is_enveloped(payload):
        return passthrough
    wrapped = JSONResponse(content=wrap_success(request_id, payload), status_code=response.status_code)
    for key, value in response.headers.items():
        if key.lower() in {"content-length", "content-type"}:
            continue
        wrapped.headers[key] = value
    return wrapped


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="orgguard API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        # Wrap versioned JSON responses in the standardized success envelope.
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.headers.get("content-type", "").startswith("application/json")
        ):
            response = await _wrap_response(response, request_id)
        response.headers.setdefault("X-Request-Id", request_id)
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
            request_id,
        )
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, storage_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in (
        health_router,
        plans_router,
        billing_router,
        processor_events_router,
        admin_organisations_router,
        admin_dashboard_router,
        impersonation_router,
        audit_router,
        super_admins_router,
    ):
        app.include_router(router, prefix=f"/{API_VERSION}")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    def custom_openapi() -> dict:
        # Document the trusted identity headers on every non-public operation.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="orgguard API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["PrincipalHeader"] = {
            "type": "apiKey",
            "in": "header",
            "name": settings.principal_header,
        }
        public_prefixes = ("/v1/health", "/v1/plans", "/v1/billing/processor-events")
        for path, operations in schema.get("paths", {}).items():
            if path.startswith(public_prefixes):
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"PrincipalHeader": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
