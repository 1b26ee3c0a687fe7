#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portal.db.migrations import PostgresMigrator
from portal.db.postgres import PostgresTxRunner


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Apply pending portal schema migrations")
    parser.add_argument("--dsn", default=os.getenv("POSTGRES_DSN", ""), help="PostgreSQL DSN")
    parser.add_argument("--dry-run", action="store_true", help="list pending migrations without applying them")
    args = parser.parse_args(argv)

    dsn = str(args.dsn or "").strip()
    if not dsn:
        raise SystemExit("POSTGRES_DSN is required (pass --dsn or set env)")

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    migrator = PostgresMigrator(tx_runner=PostgresTxRunner(dsn))
    if args.dry_run:
        pending = [m.label for m in migrator.pending()]
        print(json.dumps({"pending": pending, "count": len(pending)}, ensure_ascii=True, sort_keys=True, indent=2))
        return 0

    applied = migrator.apply()
    print(json.dumps({"applied": applied, "count": len(applied)}, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
