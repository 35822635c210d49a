#!/usr/bin/env python3
"""Drop the authgate tables so the next start recreates them empty.

Usage:
    DATABASE_URL=postgresql://localhost/authgate python scripts/db_reset.py
    python scripts/db_reset.py --database-url postgresql://localhost/authgate --yes

Every user, credential and session is deleted. Without --yes the script waits
three seconds before dropping anything, so Ctrl-C can still abort it.
"""
from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path

import psycopg
from psycopg import sql

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from authgate.storage.postgres import AUTH_TABLES  # noqa: E402

COUNTDOWN_SECONDS = 3


def drop_tables(dsn: str, dry_run: bool = False) -> list[str]:
    """Drop the auth tables in dependency order and return their names."""
    if dry_run:
        for table in AUTH_TABLES:
            print(f"[DRY RUN] Would drop table {table}")
        return list(AUTH_TABLES)
    with psycopg.connect(dsn, autocommit=True) as conn:
        for table in AUTH_TABLES:
            conn.execute(
                sql.SQL("DROP TABLE IF EXISTS {} CASCADE").format(sql.Identifier(table))
            )
            print(f"Dropped {table}")
    return list(AUTH_TABLES)


def main():
    parser = argparse.ArgumentParser(
        description="Reset the authgate database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="PostgreSQL connection string (or set DATABASE_URL env var)",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Skip the countdown",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be dropped without making changes",
    )

    args = parser.parse_args()

    if not args.database_url:
        print("Error: --database-url or DATABASE_URL environment variable required")
        sys.exit(1)

    if not args.yes and not args.dry_run:
        print(f"Dropping {', '.join(AUTH_TABLES)}. Press Ctrl-C to abort.")
        try:
            for remaining in range(COUNTDOWN_SECONDS, 0, -1):
                print(f"  {remaining}...")
                time.sleep(1)
        except KeyboardInterrupt:
            print("\nAborted.")
            sys.exit(130)

    try:
        drop_tables(args.database_url, dry_run=args.dry_run)
    except psycopg.Error as e:
        print(f"Error: {e}")
        sys.exit(1)

    print("\nDatabase reset complete.")


if __name__ == "__main__":
    main()
