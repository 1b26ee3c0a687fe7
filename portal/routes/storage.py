from __future__ import annotations

import mimetypes
from urllib.parse import quote

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, Response

from portal.errors import ApiError, not_found_error, validation_error
from portal.object_storage import LocalObjectStorage
from portal.routes._deps import service_from_request, trace_id_from_request
from portal.schemas import success_envelope

MAX_OBJECT_BYTES = 50 * 1024 * 1024

router = APIRouter(prefix="/storage", tags=["storage"])


def _local_storage(request: Request) -> LocalObjectStorage:
    storage = service_from_request(request).storage
    if not isinstance(storage, LocalObjectStorage):
        raise not_found_error("REQ_NOT_FOUND", "resource not found")
    return storage


def _link_invalid(exc: Exception) -> ApiError:
    return ApiError(
        code="STORAGE_LINK_INVALID",
        message=str(exc) or "storage link is invalid",
        error_class="security_sensitive",
        retryable=False,
        http_status=403,
    )


@router.get("/objects/{bucket}/{key:path}")
def read_object(
    bucket: str,
    key: str,
    request: Request,
    token: str = Query(default=""),
    download: str | None = Query(default=None),
):
    storage = _local_storage(request)
    try:
        payload, as_attachment = storage.read_signed(bucket=bucket, key=key, token=token)
    except ValueError as exc:
        raise _link_invalid(exc) from exc
    except FileNotFoundError as exc:
        raise not_found_error("STORAGE_OBJECT_NOT_FOUND", "stored object not found") from exc

    content_type, _ = mimetypes.guess_type(key)
    headers = {}
    if as_attachment:
        file_name = download or key.rsplit("/", 1)[-1]
        headers["Content-Disposition"] = f"attachment; filename*=UTF-8''{quote(file_name)}"
    return Response(content=payload, media_type=content_type or "application/octet-stream", headers=headers)


@router.put("/objects/upload/{bucket}/{key:path}")
async def write_object(bucket: str, key: str, request: Request, token: str = Query(default="")):
    storage = _local_storage(request)
    body = await request.body()
    if len(body) > MAX_OBJECT_BYTES:
        raise validation_error("object exceeds the upload size limit")
    try:
        stored_key = storage.write_signed(bucket=bucket, key=key, token=token, content_bytes=body)
    except ValueError as exc:
        raise _link_invalid(exc) from exc
    except FileExistsError as exc:
        raise ApiError(
            code="STORAGE_OBJECT_EXISTS",
            message="object already uploaded; request a new upload slot",
            error_class="business_rule",
            retryable=False,
            http_status=409,
            kind="conflict",
        ) from exc
    return JSONResponse(
        status_code=201,
        content=success_envelope({"path": stored_key}, trace_id_from_request(request)),
    )
