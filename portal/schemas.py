from __future__ import annotations

from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from portal.attachments import MAX_ATTACHMENTS

MAX_ATTACHMENT_BYTES = 25 * 1024 * 1024
MAX_RESOURCES = 10

RequestStatus = Literal["backlog", "in_progress", "in_qa", "awaiting_review", "completed"]


class AttachmentInput(BaseModel):
    name: str = Field(min_length=1, max_length=260)
    path: list[str] = Field(min_length=1, max_length=32)
    size: int = Field(ge=1, le=MAX_ATTACHMENT_BYTES)
    type: str = Field(min_length=1, max_length=120)

    @model_validator(mode="after")
    def _non_empty_segments(self) -> "AttachmentInput":
        if any(not segment for segment in self.path):
            raise ValueError("attachment path segments must not be empty")
        return self


class CreateRequestInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(min_length=3, max_length=160)
    details: str | None = Field(default=None, max_length=2000)
    requested_by: str | None = Field(default=None, max_length=120)
    attachments: list[AttachmentInput] = Field(default_factory=list, max_length=MAX_ATTACHMENTS)


class UpdateRequestInput(BaseModel):
    status: RequestStatus | None = None
    # Entries are checked by the resource normaliser; malformed ones are dropped, not rejected.
    resources: list[Any] | None = Field(default=None, max_length=MAX_RESOURCES)

    @model_validator(mode="after")
    def _status_or_resources(self) -> "UpdateRequestInput":
        if self.status is None and self.resources is None:
            raise ValueError("status or resources is required")
        return self


class ReorderBacklogInput(BaseModel):
    request_ids: list[UUID] = Field(max_length=500)


class CreateMessageInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    message: str = Field(min_length=1, max_length=5000)
    request_id: str | None = None
    sender_name: str | None = Field(default=None, max_length=120)
    attachments: list[AttachmentInput] = Field(default_factory=list, max_length=MAX_ATTACHMENTS)


class UploadSlotInput(BaseModel):
    file_name: str = Field(min_length=1, max_length=260)
    content_type: str | None = Field(default=None, max_length=120)
    scope: Literal["request", "message"] = "request"


class LoginLinkInput(BaseModel):
    email: str = Field(min_length=3, max_length=320)


class TogglePortalInput(BaseModel):
    enabled: bool


def success_envelope(
    data: Any,
    trace_id: str,
    message: str = "ok",
    meta: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
            **(meta or {}),
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
