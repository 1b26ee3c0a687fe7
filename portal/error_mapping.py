"""Classify persistence-layer failures into the portal error taxonomy.

Storage errors are classified once, right where the repository call is made.
A structured SQLSTATE wins when the error (or anything in its cause chain)
exposes one; otherwise the concatenated message/detail/hint text is matched
for the permission and read-only cases that some drivers only report as text.
Anything unrecognised is re-raised untouched and treated as infrastructure.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any

from portal.errors import ApiError

logger = logging.getLogger(__name__)

MAX_CAUSE_DEPTH = 8

SQLSTATE_UNDEFINED_TABLE = "42P01"
SQLSTATE_UNDEFINED_COLUMN = "42703"
SQLSTATE_UNIQUE_VIOLATION = "23505"
SQLSTATE_FOREIGN_KEY_VIOLATION = "23503"
SQLSTATE_INSUFFICIENT_PRIVILEGE = "42501"
SQLSTATE_READ_ONLY_TRANSACTION = "25006"
SQLSTATE_INVALID_TEXT_REPRESENTATION = "22P02"


class PipelineErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    SCHEMA = "schema"
    PERMISSION_DENIED = "permission_denied"
    READ_ONLY_REPLICA = "read_only_replica"


@dataclass(frozen=True)
class StorageFailure:
    kind: PipelineErrorKind
    sqlstate: str | None
    reason: str


_SQLSTATE_KINDS: dict[str, tuple[PipelineErrorKind, str]] = {
    SQLSTATE_UNDEFINED_TABLE: (PipelineErrorKind.SCHEMA, "table_missing"),
    SQLSTATE_UNDEFINED_COLUMN: (PipelineErrorKind.SCHEMA, "column_missing"),
    SQLSTATE_UNIQUE_VIOLATION: (PipelineErrorKind.CONFLICT, "unique_violation"),
    SQLSTATE_FOREIGN_KEY_VIOLATION: (PipelineErrorKind.NOT_FOUND, "foreign_key_violation"),
    SQLSTATE_INSUFFICIENT_PRIVILEGE: (PipelineErrorKind.PERMISSION_DENIED, "permission_denied"),
    SQLSTATE_READ_ONLY_TRANSACTION: (PipelineErrorKind.READ_ONLY_REPLICA, "read_only"),
    SQLSTATE_INVALID_TEXT_REPRESENTATION: (PipelineErrorKind.VALIDATION, "invalid_identifier"),
}

_PERMISSION_PHRASES = ("row-level security policy", "permission denied for table")
_READ_ONLY_PHRASES = ("read-only transaction", "cannot execute insert in a read-only transaction")


def _iter_chain(error: BaseException) -> Iterator[BaseException]:
    current: BaseException | None = error
    seen: set[int] = set()
    for _ in range(MAX_CAUSE_DEPTH):
        if current is None or id(current) in seen:
            return
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _sqlstate_of(error: BaseException) -> str | None:
    for attr in ("sqlstate", "pgcode"):
        value = getattr(error, attr, None)
        if isinstance(value, str) and value:
            return value
    diag = getattr(error, "diag", None)
    value = getattr(diag, "sqlstate", None)
    if isinstance(value, str) and value:
        return value
    value = getattr(error, "code", None)
    if isinstance(value, str) and len(value) == 5 and value.isalnum():
        return value.upper()
    return None


def storage_error_details(error: BaseException) -> dict[str, Any] | None:
    """Return the first SQLSTATE-bearing error in the cause chain, if any."""
    if isinstance(error, ApiError):
        return None
    for current in _iter_chain(error):
        code = _sqlstate_of(current)
        if code is None:
            continue
        diag = getattr(current, "diag", None)
        detail = getattr(current, "detail", None) or getattr(diag, "message_detail", None)
        return {
            "code": code,
            "message": str(current),
            "detail": detail if isinstance(detail, str) else None,
        }
    return None


def storage_error_text(error: BaseException) -> str:
    parts: list[str] = []
    for current in _iter_chain(error):
        message = str(current)
        if message:
            parts.append(message)
        diag = getattr(current, "diag", None)
        for value in (
            getattr(current, "detail", None),
            getattr(current, "hint", None),
            getattr(current, "constraint", None),
            getattr(current, "constraint_name", None),
            getattr(diag, "message_detail", None),
            getattr(diag, "message_hint", None),
            getattr(diag, "constraint_name", None),
        ):
            if isinstance(value, str) and value:
                parts.append(value)
    return " | ".join(parts).lower()


def classify_storage_error(error: BaseException) -> StorageFailure | None:
    if isinstance(error, ApiError):
        return None
    details = storage_error_details(error)
    if details is not None:
        matched = _SQLSTATE_KINDS.get(details["code"])
        if matched is not None:
            kind, reason = matched
            return StorageFailure(kind=kind, sqlstate=details["code"], reason=reason)

    text = storage_error_text(error)
    if any(phrase in text for phrase in _PERMISSION_PHRASES):
        return StorageFailure(kind=PipelineErrorKind.PERMISSION_DENIED, sqlstate=None, reason="permission_denied")
    if any(phrase in text for phrase in _READ_ONLY_PHRASES):
        return StorageFailure(kind=PipelineErrorKind.READ_ONLY_REPLICA, sqlstate=None, reason="read_only")
    return None


ACTIVE_REQUEST_CONFLICT_MESSAGE = (
    "Only one request can be active at a time. "
    "Move the current active request back to backlog or completed first."
)

_READ_ONLY_MESSAGE = (
    "Database is in read-only mode for this connection. "
    "Verify POSTGRES_DSN points to a writable primary."
)

# (subject, reason) -> (code, message); subjects without an entry stay unclassified.
_MESSAGES: dict[tuple[str, str], tuple[str, str]] = {
    ("requests", "table_missing"): (
        "STORAGE_SCHEMA_MISSING",
        "Client requests table is missing. Run database migration 0025_add_client_requests.",
    ),
    ("requests", "column_missing"): (
        "STORAGE_SCHEMA_MISSING",
        "Client request columns are missing. Run database migrations "
        "0026_add_client_request_attachments and 0031_add_client_request_resources.",
    ),
    ("requests", "unique_violation"): ("REQUEST_ACTIVE_CONFLICT", ACTIVE_REQUEST_CONFLICT_MESSAGE),
    ("requests", "foreign_key_violation"): (
        "CUSTOMER_NOT_FOUND",
        "Customer or team record was not found while writing the request.",
    ),
    ("requests", "permission_denied"): (
        "STORAGE_PERMISSION_DENIED",
        "Database policy denied writing this request. "
        "Check client_requests RLS policy for API/server role access.",
    ),
    ("requests", "read_only"): ("STORAGE_READ_ONLY", _READ_ONLY_MESSAGE),
    ("requests", "invalid_identifier"): ("REQ_VALIDATION_FAILED", "Invalid request ID format."),
    ("customers", "unique_violation"): (
        "PORTAL_ID_CONFLICT",
        "Generated portal id collided with an existing portal. Retry enabling the portal.",
    ),
    ("messages", "table_missing"): (
        "STORAGE_SCHEMA_MISSING",
        "Portal messages table is missing. Run database migration 0027_add_client_portal_messages.",
    ),
    ("messages", "column_missing"): (
        "STORAGE_SCHEMA_MISSING",
        "Portal message columns are missing. Run database migration 0027_add_client_portal_messages.",
    ),
    ("messages", "foreign_key_violation"): (
        "CUSTOMER_NOT_FOUND",
        "Customer or team record was not found while creating the message.",
    ),
    ("messages", "permission_denied"): (
        "STORAGE_PERMISSION_DENIED",
        "Database policy denied writing this message. "
        "Check client_portal_messages RLS policy for API/server role access.",
    ),
    ("messages", "read_only"): ("STORAGE_READ_ONLY", _READ_ONLY_MESSAGE),
    ("messages", "invalid_identifier"): (
        "REQ_VALIDATION_FAILED",
        "Invalid request ID format for message association.",
    ),
    ("customers", "table_missing"): (
        "STORAGE_SCHEMA_MISSING",
        "Customers table is missing. Run database migration 0001_portal_baseline.",
    ),
    ("customers", "column_missing"): (
        "STORAGE_SCHEMA_MISSING",
        "Customer portal columns are missing. Run database migration 0001_portal_baseline.",
    ),
    ("assets", "table_missing"): (
        "STORAGE_SCHEMA_MISSING",
        "Documents table is missing. Run database migration 0001_portal_baseline.",
    ),
}

_KIND_SHAPES: dict[PipelineErrorKind, tuple[str, bool, int]] = {
    PipelineErrorKind.NOT_FOUND: ("validation", False, 404),
    PipelineErrorKind.UNAUTHORIZED: ("security_sensitive", False, 401),
    PipelineErrorKind.CONFLICT: ("business_rule", False, 409),
    PipelineErrorKind.VALIDATION: ("validation", False, 400),
    PipelineErrorKind.SCHEMA: ("infrastructure", False, 500),
    PipelineErrorKind.PERMISSION_DENIED: ("security_sensitive", False, 403),
    PipelineErrorKind.READ_ONLY_REPLICA: ("infrastructure", True, 503),
}

_READ_KINDS = frozenset({PipelineErrorKind.SCHEMA})


def map_storage_error(error: BaseException, *, subject: str, operation: str) -> ApiError | None:
    """Map a storage failure for ``subject`` to an ApiError, or None when unclassified.

    Read paths only surface schema problems; a unique violation
    or read-only error on a read means something else is wrong and is left alone.
    """
    failure = classify_storage_error(error)
    if failure is None:
        return None
    if operation == "read" and failure.kind not in _READ_KINDS:
        return None
    entry = _MESSAGES.get((subject, failure.reason))
    if entry is None:
        return None
    code, message = entry
    error_class, retryable, http_status = _KIND_SHAPES[failure.kind]
    return ApiError(
        code=code,
        message=message,
        error_class=error_class,
        retryable=retryable,
        http_status=http_status,
        kind=failure.kind.value,
    )


@contextmanager
def storage_errors(*, subject: str, operation: str, context: dict[str, Any] | None = None) -> Iterator[None]:
    try:
        yield
    except ApiError:
        raise
    except Exception as exc:
        mapped = map_storage_error(exc, subject=subject, operation=operation)
        details = storage_error_details(exc) or {}
        if operation == "write" or mapped is None:
            logger.error(
                "portal_storage_error subject=%s operation=%s code=%s mapped=%s context=%s",
                subject,
                operation,
                details.get("code"),
                mapped.code if mapped is not None else None,
                context or {},
            )
        if mapped is None:
            raise
        raise mapped from exc
