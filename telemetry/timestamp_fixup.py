"""Promote ``old_created`` into ``created``/``updated`` after an HTTP migration.

A restricted credential cannot write the protected timestamp columns, so the
migration carries the legacy creation time in the ``old_created`` shadow
column. Run this once on the record store host afterwards, then drop the
shadow column from the collection. Without the column the fixup is a no-op.
"""

from __future__ import annotations

import argparse
import logging
import sqlite3
from pathlib import Path
from typing import Iterable, List, Optional

from data_paths import resolve_database_path
from database import (
    SHADOW_CREATED_COLUMN,
    StorageError,
    find_telemetry_table,
    get_db_connection,
    table_columns,
    validate_table_name,
)

LOGGER = logging.getLogger(__name__)

_PENDING_CONDITION = f"{SHADOW_CREATED_COLUMN} IS NOT NULL AND {SHADOW_CREATED_COLUMN} != ''"


def _require_table(conn, table: Optional[str]) -> str:
    if table:
        return validate_table_name(table)
    detected = find_telemetry_table(conn)
    if detected is None:
        raise StorageError("Could not auto-detect the telemetry table; pass --table")
    LOGGER.info("Using table %s", detected)
    return detected


def detect_table(db_path: Path, table: Optional[str] = None) -> str:
    """Return ``table`` validated, or the auto-detected collection table."""

    conn = get_db_connection(db_path)
    try:
        return _require_table(conn, table)
    finally:
        conn.close()


def pending_count(db_path: Path, table: Optional[str] = None) -> int:
    """Number of rows the fixup would touch."""

    conn = get_db_connection(db_path)
    try:
        table = _require_table(conn, table)
        if SHADOW_CREATED_COLUMN not in table_columns(conn, table):
            return 0
        cursor = conn.execute(f"SELECT COUNT(*) FROM {table} WHERE {_PENDING_CONDITION}")
        return int(cursor.fetchone()[0])
    finally:
        conn.close()


def sample_rows(db_path: Path, table: str, limit: int = 3) -> List[tuple]:
    conn = get_db_connection(db_path)
    try:
        validate_table_name(table)
        cursor = conn.execute(
            f"SELECT id, created, {SHADOW_CREATED_COLUMN} FROM {table} "
            f"WHERE {_PENDING_CONDITION} LIMIT ?",
            (limit,),
        )
        return [tuple(row) for row in cursor.fetchall()]
    finally:
        conn.close()


def apply(db_path: Path, table: Optional[str] = None) -> int:
    """Copy the shadow creation time into ``created`` and ``updated``.

    Returns the number of rows updated; ``0`` when the shadow column is absent.
    """

    conn = get_db_connection(db_path)
    try:
        table = _require_table(conn, table)
        if SHADOW_CREATED_COLUMN not in table_columns(conn, table):
            LOGGER.info("Column %s not found in %s; nothing to do", SHADOW_CREATED_COLUMN, table)
            return 0
        with conn:
            cursor = conn.execute(
                f"UPDATE {table} SET created = {SHADOW_CREATED_COLUMN}, "
                f"updated = {SHADOW_CREATED_COLUMN} WHERE {_PENDING_CONDITION}"
            )
        LOGGER.info("Updated timestamps on %d rows in %s", cursor.rowcount, table)
        return cursor.rowcount
    finally:
        conn.close()


def main(argv: Optional[Iterable[str]] = None) -> int:
    """Command line entry point used by ``python -m telemetry.timestamp_fixup``."""

    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--db", type=Path, default=None, help="Record store SQLite file")
    parser.add_argument("--table", default=None, help="Collection table (auto-detected if omitted)")
    parser.add_argument("--dry-run", action="store_true", help="Only report how many rows would change")
    args = parser.parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    db_path = resolve_database_path(args.db)
    if db_path is None:
        LOGGER.error("Could not find the record store database")
        return 1

    try:
        if args.dry_run:
            table = detect_table(db_path, args.table)
            count = pending_count(db_path, table)
            print(f"Records to update: {count}")
            if count:
                for row in sample_rows(db_path, table):
                    print("  ", *row)
            return 0
        count = apply(db_path, args.table)
    except (StorageError, sqlite3.Error) as exc:
        LOGGER.error("%s", exc)
        return 1

    print(f"Records updated: {count}")
    if count:
        print(f"Next: remove the '{SHADOW_CREATED_COLUMN}' field from the collection schema")
    return 0


if __name__ == "__main__":  # pragma: no cover - thin wrapper
    raise SystemExit(main())
