from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from portal.routes._deps import service_from_request, team_auth_from_request, trace_id_from_request
from portal.schemas import CreateMessageInput, TogglePortalInput, UpdateRequestInput, success_envelope

router = APIRouter(prefix="/api/v1/customers", tags=["customer-portal"])


@router.get("/{customer_id}/portal/requests")
def list_customer_requests(customer_id: str, request: Request):
    auth = team_auth_from_request(request)
    service = service_from_request(request)
    service.team_customer(team_id=auth.team_id, customer_id=customer_id)
    data = service.list_requests(team_id=auth.team_id, customer_id=customer_id)
    return success_envelope(data, trace_id_from_request(request))


@router.patch("/{customer_id}/portal/requests/{request_id}")
def update_customer_request(customer_id: str, request_id: str, payload: UpdateRequestInput, request: Request):
    auth = team_auth_from_request(request)
    service = service_from_request(request)
    service.team_customer(team_id=auth.team_id, customer_id=customer_id)
    outcome = service.update_request(
        team_id=auth.team_id,
        customer_id=customer_id,
        request_id=request_id,
        payload=payload,
    )
    return success_envelope(outcome.data, trace_id_from_request(request), meta=outcome.meta)


@router.get("/{customer_id}/portal/messages")
def list_customer_messages(customer_id: str, request: Request, limit: int = Query(default=100, ge=1, le=200)):
    auth = team_auth_from_request(request)
    service = service_from_request(request)
    service.team_customer(team_id=auth.team_id, customer_id=customer_id)
    messages = service.list_messages(team_id=auth.team_id, customer_id=customer_id, limit=limit)
    return success_envelope({"messages": list(reversed(messages))}, trace_id_from_request(request))


@router.post("/{customer_id}/portal/messages")
def create_customer_message(customer_id: str, payload: CreateMessageInput, request: Request):
    auth = team_auth_from_request(request)
    service = service_from_request(request)
    service.team_customer(team_id=auth.team_id, customer_id=customer_id)
    outcome = service.create_team_message(auth=auth, customer_id=customer_id, payload=payload)
    return JSONResponse(
        status_code=201,
        content=success_envelope(outcome.data, trace_id_from_request(request), meta=outcome.meta),
    )


@router.post("/{customer_id}/portal/toggle")
def toggle_customer_portal(customer_id: str, payload: TogglePortalInput, request: Request):
    auth = team_auth_from_request(request)
    data = service_from_request(request).toggle_portal(
        team_id=auth.team_id,
        customer_id=customer_id,
        enabled=payload.enabled,
    )
    return success_envelope(data, trace_id_from_request(request))
