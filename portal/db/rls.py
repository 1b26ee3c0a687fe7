from __future__ import annotations

from portal.db.postgres import _import_psycopg
from portal.repositories._common import _validate_identifier


class PostgresRlsManager:
    """Apply RLS team policies on portal tables.

    ``customers`` is left out: portal lookups resolve the team from the portal id,
    so they run before any team scope exists.
    """

    DEFAULT_TABLES: tuple[str, ...] = (
        "client_requests",
        "client_portal_messages",
        "documents",
    )

    def __init__(self, dsn: str, *, tables: list[str] | tuple[str, ...] | None = None) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        target_tables = list(self.DEFAULT_TABLES if tables is None else tables)
        if not target_tables:
            raise ValueError("tables must not be empty")
        self._tables = [_validate_identifier(name) for name in target_tables]

    def apply(self) -> list[str]:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for table in self._tables:
                    policy = f"{table}_team_isolation"
                    cur.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
                    cur.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
                    cur.execute(f"DROP POLICY IF EXISTS {policy} ON {table}")
                    cur.execute(
                        f"""
                        CREATE POLICY {policy} ON {table}
                        USING ({table}.team_id::text = current_setting('app.current_team', true))
                        WITH CHECK ({table}.team_id::text = current_setting('app.current_team', true))
                        """
                    )
            conn.commit()
        return list(self._tables)
