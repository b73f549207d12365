"""Direct SQLite import of a full legacy JSON export.

This path skips the HTTP API entirely: every element of the export becomes one
``INSERT OR IGNORE`` statement and the whole batch runs in a single
transaction with write-ahead logging and ``synchronous=OFF``. The unique
``random_id`` index makes reruns over the same file idempotent row by row.
Use it when the volume makes the HTTP migration impractical; there is no
validation beyond field defaults and no API-level authorisation.
"""

from __future__ import annotations

import argparse
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional

from data_paths import resolve_database_path
from database import StorageError, get_db_connection, table_exists, validate_table_name

from .records import generate_record_id, transform_legacy
from .timestamps import DateRange, now_canonical

LOGGER = logging.getLogger(__name__)

DEFAULT_TABLE = "telemetry"

INSERT_COLUMNS = (
    "id",
    "created",
    "updated",
    "ct_type",
    "disk_size",
    "core_count",
    "ram_size",
    "os_type",
    "os_version",
    "nsapp",
    "method",
    "pve_version",
    "status",
    "random_id",
    "type",
    "error",
    "exit_code",
    "repo_source",
)


class SQLImportError(RuntimeError):
    """Raised when the export cannot be read or written to the store."""


@dataclass
class ScriptStats:
    records: int = 0
    malformed: int = 0
    filtered: int = 0


def sql_literal(value: Any) -> str:
    """Quote ``value`` for literal embedding in an SQLite statement."""

    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


def build_insert(
    raw: Any,
    table: str,
    repo_label: str,
    *,
    id_factory: Callable[[], str] = generate_record_id,
    fallback_created: Optional[str] = None,
) -> str:
    record = transform_legacy(raw, repo_source=repo_label)
    created = record.created or fallback_created or now_canonical()
    values = (
        id_factory(),
        created,
        created,
        record.ct_type,
        record.disk_size,
        record.core_count,
        record.ram_size,
        record.os_type,
        record.os_version,
        record.nsapp,
        record.method,
        record.pve_version,
        record.status,
        record.random_id,
        record.type,
        record.error,
        record.exit_code,
        record.repo_source,
    )
    return (
        f"INSERT OR IGNORE INTO {table} ({','.join(INSERT_COLUMNS)}) "
        f"VALUES ({','.join(sql_literal(value) for value in values)});"
    )


def build_statements(
    records: Iterable[Any],
    table: str,
    repo_label: str = "",
    *,
    date_range: DateRange = DateRange(),
    id_factory: Callable[[], str] = generate_record_id,
) -> tuple[List[str], ScriptStats]:
    validate_table_name(table)
    stats = ScriptStats()
    statements: List[str] = []
    started_at = now_canonical()
    for index, raw in enumerate(records, start=1):
        if not isinstance(raw, dict):
            stats.malformed += 1
            if stats.malformed <= 5:
                LOGGER.warning("Skipping malformed record #%d", index)
            continue
        if not date_range.admits(raw.get("created_at", raw.get("created"))):
            stats.filtered += 1
            continue
        statements.append(
            build_insert(raw, table, repo_label, id_factory=id_factory, fallback_created=started_at)
        )
        stats.records += 1
        if stats.records % 10000 == 0:
            LOGGER.info("%d records processed", stats.records)
    return statements, stats


def render_script(statements: List[str]) -> str:
    header = [
        "-- Auto-generated SQL import for the telemetry record store",
        f"-- Generated: {datetime.now().astimezone().isoformat(timespec='seconds')}",
        "PRAGMA journal_mode=WAL;",
        "PRAGMA synchronous=OFF;",
        "PRAGMA cache_size=100000;",
        "BEGIN TRANSACTION;",
        "",
    ]
    return "\n".join(header + statements + ["", "COMMIT;", ""])


def _load_export(json_path: Path) -> List[Any]:
    try:
        with Path(json_path).open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except (OSError, ValueError) as exc:
        raise SQLImportError(f"Cannot read {json_path}: {exc}") from exc
    if not isinstance(payload, list):
        raise SQLImportError(f"{json_path} must contain a JSON array")
    return payload


def import_file(
    json_path: Path,
    table: str,
    repo_label: str,
    db_path: Path,
    *,
    date_range: DateRange = DateRange(),
) -> int:
    """Insert every record of ``json_path`` into ``table`` of ``db_path``.

    Returns the number of statements executed. Rows whose ``random_id`` is
    already present are ignored by SQLite, so the number of new rows can be
    lower; it is logged.
    """

    validate_table_name(table)
    statements, stats = build_statements(
        _load_export(json_path), table, repo_label, date_range=date_range
    )
    LOGGER.info(
        "Prepared %d inserts (%d malformed, %d filtered by date)",
        stats.records,
        stats.malformed,
        stats.filtered,
    )

    conn = get_db_connection(db_path, bulk=True)
    try:
        if not table_exists(conn, table):
            raise SQLImportError(f"Table {table} does not exist in {db_path}")
        before = conn.total_changes
        try:
            conn.executescript("BEGIN TRANSACTION;\n" + "\n".join(statements) + "\nCOMMIT;")
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.rollback()
            raise SQLImportError(f"Import into {table} failed: {exc}") from exc
        LOGGER.info("Inserted %d new rows into %s", conn.total_changes - before, table)
    finally:
        conn.close()
    return stats.records


def export_script(
    json_path: Path,
    table: str,
    repo_label: str,
    output_path: Path,
    *,
    date_range: DateRange = DateRange(),
) -> int:
    """Write the import as an SQL script for ``sqlite3 data.db < script.sql``."""

    statements, stats = build_statements(
        _load_export(json_path), table, repo_label, date_range=date_range
    )
    Path(output_path).write_text(render_script(statements), encoding="utf-8")
    LOGGER.info("Wrote %d inserts to %s", stats.records, output_path)
    return stats.records


def _parse_day(text: str) -> date:
    try:
        return datetime.strptime(text, "%Y-%m-%d").date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date {text!r} (use YYYY-MM-DD)")


def main(argv: Optional[Iterable[str]] = None) -> int:
    """Command line entry point used by ``python -m telemetry.sql_import``."""

    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("json_file", type=Path, help="Legacy JSON export (array of records)")
    parser.add_argument("--table", default=DEFAULT_TABLE)
    parser.add_argument("--repo-source", default="", help="Value stored in repo_source")
    parser.add_argument("--db", type=Path, default=None, help="Record store SQLite file")
    parser.add_argument(
        "--sql-output",
        type=Path,
        default=None,
        help="Write an SQL script instead of importing directly",
    )
    parser.add_argument("--date-from", type=_parse_day, default=None)
    parser.add_argument("--date-until", type=_parse_day, default=None)
    args = parser.parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        date_range = DateRange(args.date_from, args.date_until)
    except ValueError as exc:
        parser.error(str(exc))

    try:
        if args.sql_output is not None:
            count = export_script(
                args.json_file, args.table, args.repo_source, args.sql_output, date_range=date_range
            )
            print(f"Records exported: {count}")
            print(f"To import: sqlite3 <data.db> < {args.sql_output}")
            return 0

        db_path = resolve_database_path(args.db)
        if db_path is None:
            LOGGER.error("Could not find the record store database")
            return 1
        count = import_file(args.json_file, args.table, args.repo_source, db_path, date_range=date_range)
    except (SQLImportError, StorageError, sqlite3.Error) as exc:
        LOGGER.error("%s", exc)
        return 1

    print(f"Records imported: {count}")
    return 0


if __name__ == "__main__":  # pragma: no cover - thin wrapper
    raise SystemExit(main())
