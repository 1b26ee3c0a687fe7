from __future__ import annotations

import itertools
import json
import threading
from typing import Any

from portal.db.postgres import PostgresTxRunner
from portal.repositories._common import (
    _validate_identifier,
    iso_or_none,
    json_list,
    new_id,
    require_uuid,
    utcnow_iso,
)

DEFAULT_MESSAGE_LIMIT = 100
MAX_MESSAGE_LIMIT = 200

_COLUMNS = (
    "id",
    "team_id",
    "customer_id",
    "request_id",
    "sender_type",
    "sender_user_id",
    "sender_name",
    "message",
    "attachments",
    "created_at",
    "updated_at",
)
_SELECT_COLUMNS = ", ".join(_COLUMNS)


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_MESSAGE_LIMIT
    return max(1, min(MAX_MESSAGE_LIMIT, int(limit)))


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    trimmed = value.strip()
    return trimmed or None


def _message_from_row(row: Any) -> dict[str, Any]:
    return {
        "id": str(row[0]),
        "team_id": row[1],
        "customer_id": str(row[2]),
        "request_id": str(row[3]) if row[3] is not None else None,
        "sender_type": row[4],
        "sender_user_id": row[5],
        "sender_name": row[6],
        "message": row[7],
        "attachments": json_list(row[8]),
        "created_at": iso_or_none(row[9]),
        "updated_at": iso_or_none(row[10]),
    }


class InMemoryMessagesRepository:
    def __init__(self, messages: dict[str, dict[str, Any]] | None = None) -> None:
        self._messages = {} if messages is None else messages
        self._lock = threading.Lock()
        self._seq = itertools.count(1)

    def list(self, *, team_id: str, customer_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                row
                for row in self._messages.values()
                if row.get("team_id") == team_id and row.get("customer_id") == customer_id
            ]
        rows.sort(key=lambda row: (str(row.get("created_at") or ""), row.get("_seq", 0)), reverse=True)
        out = []
        for row in rows[: clamp_limit(limit)]:
            item = dict(row)
            item.pop("_seq", None)
            out.append(item)
        return out

    def create(
        self,
        *,
        team_id: str,
        customer_id: str,
        sender_type: str,
        message: str,
        request_id: str | None = None,
        sender_user_id: str | None = None,
        sender_name: str | None = None,
        attachments: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        request_id = _blank_to_none(request_id)
        if request_id is not None:
            require_uuid(request_id)
        now = utcnow_iso()
        row = {
            "id": new_id(),
            "team_id": team_id,
            "customer_id": customer_id,
            "request_id": request_id,
            "sender_type": sender_type,
            "sender_user_id": sender_user_id,
            "sender_name": _blank_to_none(sender_name),
            "message": message.strip(),
            "attachments": [dict(x) for x in attachments or []],
            "created_at": now,
            "updated_at": now,
        }
        with self._lock:
            self._messages[row["id"]] = {**row, "_seq": next(self._seq)}
        return row


class PostgresMessagesRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "client_portal_messages") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def list(self, *, team_id: str, customer_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        sql = f"""
            SELECT {_SELECT_COLUMNS}
            FROM {self._table_name}
            WHERE team_id = %s AND customer_id = %s
            ORDER BY created_at DESC
            LIMIT %s
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (team_id, customer_id, clamp_limit(limit)))
                rows = cur.fetchall() or []
            return [_message_from_row(row) for row in rows]

        return self._tx_runner.run_in_tx(team_id=team_id, fn=_op)

    def create(
        self,
        *,
        team_id: str,
        customer_id: str,
        sender_type: str,
        message: str,
        request_id: str | None = None,
        sender_user_id: str | None = None,
        sender_name: str | None = None,
        attachments: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._table_name} (
                id, team_id, customer_id, request_id, sender_type, sender_user_id, sender_name, message, attachments
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
            RETURNING {_SELECT_COLUMNS}
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        new_id(),
                        team_id,
                        customer_id,
                        _blank_to_none(request_id),
                        sender_type,
                        sender_user_id,
                        _blank_to_none(sender_name),
                        message.strip(),
                        json.dumps(attachments or [], ensure_ascii=True),
                    ),
                )
                row = cur.fetchone()
            return _message_from_row(row)

        return self._tx_runner.run_in_tx(team_id=team_id, fn=_op)
