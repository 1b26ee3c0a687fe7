from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from portal.errors import ApiError
from portal.routes._deps import error_response, request_id_from_request, service_from_request, trace_id_from_request
from portal.routes.dashboard import router as dashboard_router
from portal.routes.portal import router as portal_router
from portal.routes.storage import router as storage_router
from portal.schemas import success_envelope
from portal.security import JwtSecurityConfig
from portal.service import PortalService, create_service_from_env

logger = logging.getLogger(__name__)


def create_app(service: PortalService | None = None) -> FastAPI:
    app = FastAPI(title="Delivery Portal API", version="0.1.0")
    app.state.service = service if service is not None else create_service_from_env()
    app.state.security_cfg = JwtSecurityConfig.from_env()
    allow_origins = app.state.service.settings.cors_allow_origins
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.auth_subject = "anonymous"
        response = await call_next(request)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.error_class == "security_sensitive":
            logger.warning(
                "portal_security_blocked code=%s path=%s subject=%s trace_id=%s",
                exc.code,
                request.url.path,
                getattr(request.state, "auth_subject", "anonymous"),
                trace_id_from_request(request),
            )
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health/ready")
    def health_ready(request: Request) -> dict[str, object]:
        data = service_from_request(request).readiness()
        return success_envelope({"status": "ready", **data}, trace_id_from_request(request))

    app.include_router(portal_router)
    app.include_router(dashboard_router)
    app.include_router(storage_router)
    return app


app = create_app()
