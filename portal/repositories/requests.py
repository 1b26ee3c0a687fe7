from __future__ import annotations

import itertools
import json
import threading
from typing import Any

from portal.db.postgres import PostgresTxRunner
from portal.repositories._common import (
    StorageConstraintError,
    _validate_identifier,
    iso_or_none,
    json_list,
    json_or_none,
    new_id,
    plan_backlog_order,
    require_uuid,
    utcnow_iso,
)

REQUEST_STATUSES = ("backlog", "in_progress", "in_qa", "awaiting_review", "completed")
INACTIVE_STATUSES = frozenset({"backlog", "completed"})
SINGLE_ACTIVE_CONSTRAINT = "client_requests_single_active_idx"

_COLUMNS = (
    "id",
    "team_id",
    "customer_id",
    "title",
    "details",
    "status",
    "priority",
    "requested_by",
    "staging_url",
    "resources",
    "attachments",
    "created_at",
    "updated_at",
    "completed_at",
)
_SELECT_COLUMNS = ", ".join(_COLUMNS)


def is_active_status(status: str | None) -> bool:
    return status is not None and status not in INACTIVE_STATUSES


def _request_from_row(row: Any) -> dict[str, Any]:
    return {
        "id": str(row[0]),
        "team_id": row[1],
        "customer_id": str(row[2]),
        "title": row[3],
        "details": row[4],
        "status": row[5],
        "priority": int(row[6] or 0),
        "requested_by": row[7],
        "staging_url": row[8],
        "resources": json_or_none(row[9]),
        "attachments": json_list(row[10]),
        "created_at": iso_or_none(row[11]),
        "updated_at": iso_or_none(row[12]),
        "completed_at": iso_or_none(row[13]),
    }


class InMemoryRequestsRepository:
    def __init__(self, requests: dict[str, dict[str, Any]] | None = None) -> None:
        self._requests = {} if requests is None else requests
        self._lock = threading.Lock()
        self._seq = itertools.count(1)

    @staticmethod
    def _public(row: dict[str, Any]) -> dict[str, Any]:
        item = dict(row)
        item.pop("_seq", None)
        return item

    def _customer_rows(self, *, team_id: str, customer_id: str) -> list[dict[str, Any]]:
        rows = [
            row
            for row in self._requests.values()
            if row.get("team_id") == team_id and row.get("customer_id") == customer_id
        ]
        rows.sort(key=lambda row: (int(row.get("priority") or 0), str(row.get("created_at") or ""), row.get("_seq", 0)))
        return rows

    def list_by_customer(self, *, team_id: str, customer_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [self._public(row) for row in self._customer_rows(team_id=team_id, customer_id=customer_id)]

    def create(
        self,
        *,
        team_id: str,
        customer_id: str,
        title: str,
        details: str | None = None,
        requested_by: str | None = None,
        attachments: list[dict[str, Any]] | None = None,
        resources: list[dict[str, str]] | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            existing = self._customer_rows(team_id=team_id, customer_id=customer_id)
            priority = max((int(row.get("priority") or 0) for row in existing), default=0) + 1
            now = utcnow_iso()
            row = {
                "id": new_id(),
                "team_id": team_id,
                "customer_id": customer_id,
                "title": title,
                "details": details,
                "status": "backlog",
                "priority": priority,
                "requested_by": requested_by,
                "staging_url": None,
                "resources": [dict(x) for x in resources or []],
                "attachments": [dict(x) for x in attachments or []],
                "created_at": now,
                "updated_at": now,
                "completed_at": None,
                "_seq": next(self._seq),
            }
            self._requests[row["id"]] = row
            return self._public(row)

    def update_status_and_resources(
        self,
        *,
        team_id: str,
        customer_id: str,
        request_id: str,
        status: str | None = None,
        resources: list[dict[str, str]] | None = None,
    ) -> dict[str, Any] | None:
        require_uuid(request_id)
        with self._lock:
            row = self._requests.get(request_id)
            if row is None or row.get("team_id") != team_id or row.get("customer_id") != customer_id:
                return None
            if is_active_status(status):
                for other in self._customer_rows(team_id=team_id, customer_id=customer_id):
                    if other["id"] != request_id and is_active_status(other.get("status")):
                        raise StorageConstraintError(
                            f'duplicate key value violates unique constraint "{SINGLE_ACTIVE_CONSTRAINT}"',
                            sqlstate="23505",
                            constraint_name=SINGLE_ACTIVE_CONSTRAINT,
                        )
            now = utcnow_iso()
            if status is not None:
                row["status"] = status
                row["completed_at"] = now if status == "completed" else None
            if resources is not None:
                row["resources"] = [dict(x) for x in resources]
            row["updated_at"] = now
            return self._public(row)

    def reorder_backlog(self, *, team_id: str, customer_id: str, request_ids: list[str]) -> list[str]:
        with self._lock:
            backlog = [
                row for row in self._customer_rows(team_id=team_id, customer_id=customer_id) if row["status"] == "backlog"
            ]
            ordered = plan_backlog_order([row["id"] for row in backlog], list(request_ids))
            now = utcnow_iso()
            for index, request_id in enumerate(ordered, start=1):
                row = self._requests[request_id]
                row["priority"] = index
                row["updated_at"] = now
            return ordered


class PostgresRequestsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "client_requests") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def list_by_customer(self, *, team_id: str, customer_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT {_SELECT_COLUMNS}
            FROM {self._table_name}
            WHERE team_id = %s AND customer_id = %s
            ORDER BY priority ASC, created_at ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (team_id, customer_id))
                rows = cur.fetchall() or []
            return [_request_from_row(row) for row in rows]

        return self._tx_runner.run_in_tx(team_id=team_id, fn=_op)

    def create(
        self,
        *,
        team_id: str,
        customer_id: str,
        title: str,
        details: str | None = None,
        requested_by: str | None = None,
        attachments: list[dict[str, Any]] | None = None,
        resources: list[dict[str, str]] | None = None,
    ) -> dict[str, Any]:
        lock_sql = "SELECT pg_advisory_xact_lock(hashtext(%s))"
        priority_sql = f"""
            SELECT COALESCE(MAX(priority), 0)
            FROM {self._table_name}
            WHERE team_id = %s AND customer_id = %s
        """
        insert_sql = f"""
            INSERT INTO {self._table_name} (
                id, team_id, customer_id, title, details, status, priority, requested_by, resources, attachments
            ) VALUES (%s, %s, %s, %s, %s, 'backlog', %s, %s, %s::jsonb, %s::jsonb)
            RETURNING {_SELECT_COLUMNS}
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                # Serialises concurrent creates for one customer until commit.
                cur.execute(lock_sql, (f"{team_id}:{customer_id}",))
                cur.execute(priority_sql, (team_id, customer_id))
                current = cur.fetchone()
                priority = int((current or [0])[0] or 0) + 1
                cur.execute(
                    insert_sql,
                    (
                        new_id(),
                        team_id,
                        customer_id,
                        title,
                        details,
                        priority,
                        requested_by,
                        json.dumps(resources or [], ensure_ascii=True),
                        json.dumps(attachments or [], ensure_ascii=True),
                    ),
                )
                row = cur.fetchone()
            return _request_from_row(row)

        return self._tx_runner.run_in_tx(team_id=team_id, fn=_op)

    def update_status_and_resources(
        self,
        *,
        team_id: str,
        customer_id: str,
        request_id: str,
        status: str | None = None,
        resources: list[dict[str, str]] | None = None,
    ) -> dict[str, Any] | None:
        assignments = ["updated_at = now()"]
        params: list[Any] = []
        if status is not None:
            assignments.append("status = %s")
            params.append(status)
            assignments.append("completed_at = now()" if status == "completed" else "completed_at = NULL")
        if resources is not None:
            assignments.append("resources = %s::jsonb")
            params.append(json.dumps(resources, ensure_ascii=True))
        sql = f"""
            UPDATE {self._table_name}
            SET {", ".join(assignments)}
            WHERE team_id = %s AND customer_id = %s AND id = %s
            RETURNING {_SELECT_COLUMNS}
        """
        params.extend([team_id, customer_id, request_id])

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                row = cur.fetchone()
            if row is None:
                return None
            return _request_from_row(row)

        return self._tx_runner.run_in_tx(team_id=team_id, fn=_op)

    def reorder_backlog(self, *, team_id: str, customer_id: str, request_ids: list[str]) -> list[str]:
        select_sql = f"""
            SELECT id
            FROM {self._table_name}
            WHERE team_id = %s AND customer_id = %s AND status = 'backlog'
            ORDER BY priority ASC, created_at ASC
            FOR UPDATE
        """
        update_sql = f"""
            UPDATE {self._table_name}
            SET priority = %s, updated_at = now()
            WHERE team_id = %s AND customer_id = %s AND id = %s
        """

        def _op(conn: Any) -> list[str]:
            with conn.cursor() as cur:
                cur.execute(select_sql, (team_id, customer_id))
                backlog_ids = [str(row[0]) for row in cur.fetchall() or []]
                ordered = plan_backlog_order(backlog_ids, [str(x) for x in request_ids])
                for index, request_id in enumerate(ordered, start=1):
                    cur.execute(update_sql, (index, team_id, customer_id, request_id))
            return ordered

        return self._tx_runner.run_in_tx(team_id=team_id, fn=_op)
