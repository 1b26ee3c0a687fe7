"""Versioned schema for the portal tables.

Migrations are applied ahead of service start (``scripts/apply_migrations.py``).
The running service never alters the schema; readiness only verifies that every
version below has been recorded in ``portal_schema_migrations``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from portal.db.postgres import PostgresTxRunner
from portal.errors import ApiError

logger = logging.getLogger(__name__)

MIGRATIONS_TABLE = "portal_schema_migrations"


@dataclass(frozen=True)
class Migration:
    version: str
    name: str
    statements: tuple[str, ...]

    @property
    def label(self) -> str:
        return f"{self.version}_{self.name}"


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version="0001",
        name="portal_baseline",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS customers (
                id UUID PRIMARY KEY,
                team_id TEXT NOT NULL,
                name TEXT NOT NULL,
                email TEXT,
                portal_enabled BOOLEAN NOT NULL DEFAULT FALSE,
                portal_id TEXT UNIQUE,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """,
            "CREATE INDEX IF NOT EXISTS customers_team_idx ON customers (team_id)",
            """
            CREATE TABLE IF NOT EXISTS documents (
                id UUID PRIMARY KEY,
                team_id TEXT NOT NULL,
                object_id TEXT,
                name TEXT,
                title TEXT,
                path_tokens TEXT[] NOT NULL DEFAULT '{}',
                metadata JSONB,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """,
            "CREATE INDEX IF NOT EXISTS documents_team_object_idx ON documents (team_id, object_id, created_at DESC)",
        ),
    ),
    Migration(
        version="0025",
        name="add_client_requests",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS client_requests (
                id UUID PRIMARY KEY,
                team_id TEXT NOT NULL,
                customer_id UUID NOT NULL REFERENCES customers (id) ON DELETE CASCADE,
                title TEXT NOT NULL,
                details TEXT,
                status TEXT NOT NULL DEFAULT 'backlog'
                    CHECK (status IN ('backlog', 'in_progress', 'in_qa', 'awaiting_review', 'completed')),
                priority INTEGER NOT NULL DEFAULT 0,
                requested_by TEXT,
                staging_url TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                completed_at TIMESTAMPTZ
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS client_requests_customer_order_idx
                ON client_requests (team_id, customer_id, priority, created_at)
            """,
        ),
    ),
    Migration(
        version="0026",
        name="add_client_request_attachments",
        statements=(
            "ALTER TABLE client_requests ADD COLUMN IF NOT EXISTS attachments JSONB NOT NULL DEFAULT '[]'::jsonb",
        ),
    ),
    Migration(
        version="0027",
        name="add_client_portal_messages",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS client_portal_messages (
                id UUID PRIMARY KEY,
                team_id TEXT NOT NULL,
                customer_id UUID NOT NULL REFERENCES customers (id) ON DELETE CASCADE,
                request_id UUID,
                sender_type TEXT NOT NULL CHECK (sender_type IN ('client', 'freelancer')),
                sender_user_id TEXT,
                sender_name TEXT,
                message TEXT NOT NULL,
                attachments JSONB NOT NULL DEFAULT '[]'::jsonb,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS client_portal_messages_customer_created_idx
                ON client_portal_messages (team_id, customer_id, created_at DESC)
            """,
        ),
    ),
    Migration(
        version="0031",
        name="add_client_request_resources",
        statements=(
            # NULL marks rows written before resources existed; reads fall back to staging_url.
            "ALTER TABLE client_requests ADD COLUMN IF NOT EXISTS resources JSONB",
            """
            CREATE UNIQUE INDEX IF NOT EXISTS client_requests_single_active_idx
                ON client_requests (team_id, customer_id)
                WHERE status NOT IN ('backlog', 'completed')
            """,
        ),
    ),
)


class PostgresMigrator:
    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        migrations: tuple[Migration, ...] = MIGRATIONS,
    ) -> None:
        self._tx_runner = tx_runner
        self._migrations = migrations

    def applied_versions(self) -> set[str]:
        def _op(conn: Any) -> set[str]:
            with conn.cursor() as cur:
                cur.execute("SELECT to_regclass(%s)", (MIGRATIONS_TABLE,))
                row = cur.fetchone()
                if row is None or row[0] is None:
                    return set()
                cur.execute(f"SELECT version FROM {MIGRATIONS_TABLE}")
                rows = cur.fetchall() or []
            return {str(r[0]) for r in rows}

        return self._tx_runner.run_in_public_tx(fn=_op)

    def pending(self) -> list[Migration]:
        applied = self.applied_versions()
        return [m for m in self._migrations if m.version not in applied]

    def apply(self) -> list[str]:
        applied: list[str] = []
        for migration in self.pending():

            def _op(conn: Any, migration: Migration = migration) -> None:
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} (
                            version TEXT PRIMARY KEY,
                            name TEXT NOT NULL,
                            applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
                        )
                        """
                    )
                    for statement in migration.statements:
                        cur.execute(statement)
                    cur.execute(
                        f"INSERT INTO {MIGRATIONS_TABLE} (version, name) VALUES (%s, %s)",
                        (migration.version, migration.name),
                    )

            self._tx_runner.run_in_public_tx(fn=_op)
            logger.info("portal_migration_applied migration=%s", migration.label)
            applied.append(migration.label)
        return applied

    def verify(self) -> dict[str, Any]:
        pending = self.pending()
        if pending:
            names = ", ".join(m.label for m in pending)
            raise ApiError(
                code="STORAGE_SCHEMA_MISSING",
                message=f"Database schema is behind. Run database migrations: {names}.",
                error_class="infrastructure",
                retryable=False,
                http_status=500,
                kind="schema",
            )
        return {"schema_version": self._migrations[-1].version, "pending": []}
