from __future__ import annotations

import json
import re
import uuid
from datetime import UTC, datetime
from typing import Any

_UUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


class StorageConstraintError(Exception):
    """Raised by in-memory repositories with the SQLSTATE Postgres would report."""

    def __init__(self, message: str, *, sqlstate: str, constraint_name: str | None = None) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate
        self.constraint_name = constraint_name


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def is_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value))


def require_uuid(value: str) -> str:
    if not is_uuid(value):
        raise StorageConstraintError(
            f'invalid input syntax for type uuid: "{value}"',
            sqlstate="22P02",
        )
    return value


def iso_or_none(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def json_list(value: Any) -> list[Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return []
    return list(value) if isinstance(value, list) else []


def json_or_none(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return value


def plan_backlog_order(backlog_ids: list[str], requested_ids: list[str]) -> list[str]:
    """Apply a caller-chosen order to the current backlog.

    Unknown and duplicate ids are ignored; backlog items the caller left out keep
    their prior relative order after the reordered ones.
    """
    backlog = set(backlog_ids)
    seen: set[str] = set()
    ordered: list[str] = []
    for request_id in requested_ids:
        if request_id in backlog and request_id not in seen:
            seen.add(request_id)
            ordered.append(request_id)
    ordered.extend(request_id for request_id in backlog_ids if request_id not in seen)
    return ordered
