from __future__ import annotations

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Query, Request
from fastapi.responses import JSONResponse

from portal.mailer import send_quietly
from portal.routes._deps import service_from_request, session_email_from_request, trace_id_from_request
from portal.schemas import (
    CreateMessageInput,
    CreateRequestInput,
    LoginLinkInput,
    ReorderBacklogInput,
    UploadSlotInput,
    success_envelope,
)

router = APIRouter(prefix="/api/v1/portal", tags=["portal"])


def _portal_customer(request: Request, portal_id: str) -> dict[str, Any]:
    return service_from_request(request).portal_customer(
        portal_id=portal_id,
        caller_email=session_email_from_request(request),
    )


@router.post("/{portal_id}/verify")
def verify_portal_access(portal_id: str, request: Request):
    data = service_from_request(request).verify_portal(
        portal_id=portal_id,
        caller_email=session_email_from_request(request),
    )
    return success_envelope(data, trace_id_from_request(request))


@router.post("/{portal_id}/login-link")
def send_login_link(portal_id: str, payload: LoginLinkInput, request: Request, background_tasks: BackgroundTasks):
    service = service_from_request(request)
    message = service.login_link_message(portal_id=portal_id, email=payload.email)
    background_tasks.add_task(send_quietly, service.mailer, **message)
    return success_envelope({"sent": True}, trace_id_from_request(request))


@router.get("/{portal_id}/requests")
def list_portal_requests(portal_id: str, request: Request):
    customer = _portal_customer(request, portal_id)
    data = service_from_request(request).portal_request_view(team_id=customer["team_id"], customer_id=customer["id"])
    return success_envelope(data, trace_id_from_request(request))


@router.post("/{portal_id}/requests")
def create_portal_request(portal_id: str, payload: CreateRequestInput, request: Request):
    customer = _portal_customer(request, portal_id)
    outcome = service_from_request(request).create_request(
        team_id=customer["team_id"],
        customer_id=customer["id"],
        payload=payload,
    )
    return JSONResponse(
        status_code=201,
        content=success_envelope(outcome.data, trace_id_from_request(request), meta=outcome.meta),
    )


@router.post("/{portal_id}/requests/reorder")
def reorder_portal_backlog(portal_id: str, payload: ReorderBacklogInput, request: Request):
    customer = _portal_customer(request, portal_id)
    data = service_from_request(request).reorder_backlog(
        team_id=customer["team_id"],
        customer_id=customer["id"],
        request_ids=[str(x) for x in payload.request_ids],
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/{portal_id}/messages")
def list_portal_messages(portal_id: str, request: Request, limit: int = Query(default=100, ge=1, le=200)):
    customer = _portal_customer(request, portal_id)
    messages = service_from_request(request).list_messages(
        team_id=customer["team_id"],
        customer_id=customer["id"],
        limit=limit,
    )
    return success_envelope({"messages": list(reversed(messages))}, trace_id_from_request(request))


@router.post("/{portal_id}/messages")
def create_portal_message(portal_id: str, payload: CreateMessageInput, request: Request):
    customer = _portal_customer(request, portal_id)
    outcome = service_from_request(request).create_client_message(customer=customer, payload=payload)
    return JSONResponse(
        status_code=201,
        content=success_envelope(outcome.data, trace_id_from_request(request), meta=outcome.meta),
    )


@router.post("/{portal_id}/attachments/upload")
def create_portal_upload(portal_id: str, payload: UploadSlotInput, request: Request):
    customer = _portal_customer(request, portal_id)
    data = service_from_request(request).create_upload_slot(
        team_id=customer["team_id"],
        customer_id=customer["id"],
        payload=payload,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/{portal_id}/assets")
def list_portal_assets(portal_id: str, request: Request, page_size: int = Query(default=20, ge=1, le=50)):
    customer = _portal_customer(request, portal_id)
    data = service_from_request(request).list_assets(
        team_id=customer["team_id"],
        customer_id=customer["id"],
        page_size=page_size,
    )
    return success_envelope({"data": data}, trace_id_from_request(request))
