from __future__ import annotations

import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from portal.errors import ApiError
from portal.schemas import error_envelope
from portal.security import AuthContext, parse_and_validate_bearer_token
from portal.service import PortalService


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def service_from_request(request: Request) -> PortalService:
    return request.app.state.service


def auth_from_request(request: Request) -> AuthContext:
    cached = getattr(request.state, "auth", None)
    if cached is not None:
        return cached
    auth = parse_and_validate_bearer_token(
        authorization=request.headers.get("Authorization"),
        cfg=request.app.state.security_cfg,
    )
    request.state.auth = auth
    request.state.auth_subject = auth.subject
    return auth


def session_email_from_request(request: Request) -> str:
    auth = auth_from_request(request)
    if not auth.email:
        raise ApiError(
            code="AUTH_UNAUTHORIZED",
            message="session has no email identity",
            error_class="security_sensitive",
            retryable=False,
            http_status=401,
            kind="unauthorized",
        )
    return auth.email


def team_auth_from_request(request: Request) -> AuthContext:
    auth = auth_from_request(request)
    if not auth.team_id:
        raise ApiError(
            code="AUTH_FORBIDDEN",
            message="token carries no team scope",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )
    return auth


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )
