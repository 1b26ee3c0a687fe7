from __future__ import annotations

from typing import Any

from portal.db.postgres import PostgresTxRunner
from portal.repositories._common import _validate_identifier, iso_or_none, json_or_none

DEFAULT_ASSET_PAGE_SIZE = 20
MAX_ASSET_PAGE_SIZE = 50
PLACEHOLDER_SUFFIX = ".folderPlaceholder"


def clamp_page_size(page_size: int | None) -> int:
    if page_size is None:
        return DEFAULT_ASSET_PAGE_SIZE
    return max(1, min(MAX_ASSET_PAGE_SIZE, int(page_size)))


class InMemoryAssetsRepository:
    def __init__(self, documents: dict[str, dict[str, Any]] | None = None) -> None:
        self._documents = {} if documents is None else documents

    def upsert(self, *, document: dict[str, Any]) -> dict[str, Any]:
        item = dict(document)
        self._documents[str(item["id"])] = item
        return dict(item)

    def list_for_customer(self, *, team_id: str, customer_id: str, page_size: int | None = None) -> list[dict[str, Any]]:
        rows = [
            dict(row)
            for row in self._documents.values()
            if row.get("team_id") == team_id
            and row.get("object_id") == customer_id
            and row.get("path_tokens")
            and not str(row.get("name") or "").endswith(PLACEHOLDER_SUFFIX)
        ]
        rows.sort(key=lambda row: str(row.get("created_at") or ""), reverse=True)
        return rows[: clamp_page_size(page_size)]


class PostgresAssetsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "documents") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def list_for_customer(self, *, team_id: str, customer_id: str, page_size: int | None = None) -> list[dict[str, Any]]:
        sql = f"""
            SELECT id, team_id, object_id, name, title, path_tokens, metadata, created_at
            FROM {self._table_name}
            WHERE team_id = %s
              AND object_id = %s
              AND cardinality(path_tokens) > 0
              AND COALESCE(name, '') NOT LIKE %s
            ORDER BY created_at DESC
            LIMIT %s
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (team_id, customer_id, f"%{PLACEHOLDER_SUFFIX}", clamp_page_size(page_size)))
                rows = cur.fetchall() or []
            return [
                {
                    "id": str(row[0]),
                    "team_id": row[1],
                    "object_id": row[2],
                    "name": row[3],
                    "title": row[4],
                    "path_tokens": list(row[5] or []),
                    "metadata": json_or_none(row[6]),
                    "created_at": iso_or_none(row[7]),
                }
                for row in rows
            ]

        return self._tx_runner.run_in_tx(team_id=team_id, fn=_op)
