from __future__ import annotations

import threading
from typing import Any

from portal.db.postgres import PostgresTxRunner
from portal.repositories._common import StorageConstraintError, _validate_identifier, iso_or_none, utcnow_iso

_SELECT_COLUMNS = "id, team_id, name, email, portal_enabled, portal_id, created_at"


def _customer_from_row(row: Any) -> dict[str, Any]:
    return {
        "id": str(row[0]),
        "team_id": row[1],
        "name": row[2],
        "email": row[3],
        "portal_enabled": bool(row[4]),
        "portal_id": row[5],
        "created_at": iso_or_none(row[6]),
    }


class InMemoryCustomersRepository:
    def __init__(self, customers: dict[str, dict[str, Any]] | None = None) -> None:
        self._customers = {} if customers is None else customers
        self._lock = threading.Lock()

    def upsert(self, *, customer: dict[str, Any]) -> dict[str, Any]:
        item = dict(customer)
        item.setdefault("portal_enabled", False)
        item.setdefault("portal_id", None)
        item.setdefault("created_at", utcnow_iso())
        with self._lock:
            self._customers[str(item["id"])] = item
        return dict(item)

    def get(self, *, team_id: str, customer_id: str) -> dict[str, Any] | None:
        row = self._customers.get(customer_id)
        if row is None or row.get("team_id") != team_id:
            return None
        return dict(row)

    def get_by_portal_id(self, *, portal_id: str) -> dict[str, Any] | None:
        for row in self._customers.values():
            if row.get("portal_enabled") and row.get("portal_id") == portal_id:
                return dict(row)
        return None

    def set_portal(
        self,
        *,
        team_id: str,
        customer_id: str,
        enabled: bool,
        portal_id: str,
    ) -> dict[str, Any] | None:
        with self._lock:
            row = self._customers.get(customer_id)
            if row is None or row.get("team_id") != team_id:
                return None
            if not row.get("portal_id"):
                for other in self._customers.values():
                    if other is not row and other.get("portal_id") == portal_id:
                        raise StorageConstraintError(
                            'duplicate key value violates unique constraint "customers_portal_id_key"',
                            sqlstate="23505",
                            constraint_name="customers_portal_id_key",
                        )
                row["portal_id"] = portal_id
            row["portal_enabled"] = enabled
            return dict(row)


class PostgresCustomersRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "customers") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def upsert(self, *, customer: dict[str, Any]) -> dict[str, Any]:
        item = dict(customer)
        sql = f"""
            INSERT INTO {self._table_name} (id, team_id, name, email, portal_enabled, portal_id)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT(id) DO UPDATE SET
                team_id = EXCLUDED.team_id,
                name = EXCLUDED.name,
                email = EXCLUDED.email,
                portal_enabled = EXCLUDED.portal_enabled,
                portal_id = EXCLUDED.portal_id
            RETURNING {_SELECT_COLUMNS}
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["id"],
                        item["team_id"],
                        item.get("name"),
                        item.get("email"),
                        bool(item.get("portal_enabled", False)),
                        item.get("portal_id"),
                    ),
                )
                row = cur.fetchone()
            return _customer_from_row(row)

        return self._tx_runner.run_in_tx(team_id=item["team_id"], fn=_op)

    def get(self, *, team_id: str, customer_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {_SELECT_COLUMNS}
            FROM {self._table_name}
            WHERE team_id = %s AND id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (team_id, customer_id))
                row = cur.fetchone()
            if row is None:
                return None
            return _customer_from_row(row)

        return self._tx_runner.run_in_tx(team_id=team_id, fn=_op)

    def get_by_portal_id(self, *, portal_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {_SELECT_COLUMNS}
            FROM {self._table_name}
            WHERE portal_id = %s AND portal_enabled = TRUE
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (portal_id,))
                row = cur.fetchone()
            if row is None:
                return None
            return _customer_from_row(row)

        return self._tx_runner.run_in_public_tx(fn=_op)

    def set_portal(
        self,
        *,
        team_id: str,
        customer_id: str,
        enabled: bool,
        portal_id: str,
    ) -> dict[str, Any] | None:
        sql = f"""
            UPDATE {self._table_name}
            SET portal_enabled = %s, portal_id = COALESCE(portal_id, %s)
            WHERE team_id = %s AND id = %s
            RETURNING {_SELECT_COLUMNS}
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (enabled, portal_id, team_id, customer_id))
                row = cur.fetchone()
            if row is None:
                return None
            return _customer_from_row(row)

        return self._tx_runner.run_in_tx(team_id=team_id, fn=_op)
