import logging
import re
import sqlite3
from pathlib import Path
from typing import Iterable, List, Optional, Set, Union

logger = logging.getLogger(__name__)

IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
TELEMETRY_TABLE_PATTERN = re.compile(r'telemetry|installations', re.IGNORECASE)
SHADOW_CREATED_COLUMN = 'old_created'

# Column layout of the PocketBase telemetry collection table.
RECORD_COLUMNS = (
    ('id', "TEXT PRIMARY KEY DEFAULT ('r'||lower(hex(randomblob(7)))) NOT NULL"),
    ('created', "TEXT DEFAULT '' NOT NULL"),
    ('updated', "TEXT DEFAULT '' NOT NULL"),
    ('ct_type', 'NUMERIC DEFAULT 0 NOT NULL'),
    ('disk_size', 'NUMERIC DEFAULT 0 NOT NULL'),
    ('core_count', 'NUMERIC DEFAULT 0 NOT NULL'),
    ('ram_size', 'NUMERIC DEFAULT 0 NOT NULL'),
    ('os_type', "TEXT DEFAULT '' NOT NULL"),
    ('os_version', "TEXT DEFAULT '' NOT NULL"),
    ('nsapp', "TEXT DEFAULT '' NOT NULL"),
    ('method', "TEXT DEFAULT '' NOT NULL"),
    ('pve_version', "TEXT DEFAULT '' NOT NULL"),
    ('status', "TEXT DEFAULT '' NOT NULL"),
    ('random_id', "TEXT DEFAULT '' NOT NULL"),
    ('type', "TEXT DEFAULT '' NOT NULL"),
    ('error', "TEXT DEFAULT '' NOT NULL"),
    ('exit_code', 'NUMERIC DEFAULT 0 NOT NULL'),
    ('repo_source', "TEXT DEFAULT '' NOT NULL"),
)


class StorageError(RuntimeError):
    """Raised when the record store file cannot be used as requested."""


def validate_table_name(table_name: str) -> str:
    """Return ``table_name`` if it is safe to embed in SQL text."""
    if not table_name or not IDENTIFIER_PATTERN.match(table_name):
        raise StorageError(f"Invalid table name: {table_name!r}")
    return table_name


def get_db_connection(db_path: Union[str, Path], *, bulk: bool = False) -> sqlite3.Connection:
    """Open the record store file.

    ``bulk`` trades durability for throughput (synchronous=OFF, large cache)
    and is only meant for one-shot imports.
    """
    conn = sqlite3.connect(str(db_path), timeout=30.0, isolation_level='DEFERRED')
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        if bulk:
            conn.execute("PRAGMA synchronous=OFF;")
            conn.execute("PRAGMA cache_size=100000;")
        else:
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA cache_size=10000;")
        conn.execute("PRAGMA temp_store=MEMORY;")
    except sqlite3.Error as e:
        logger.warning(f"Could not set PRAGMA settings: {e}")
    conn.row_factory = sqlite3.Row
    return conn


def table_exists(conn: sqlite3.Connection, table_name: str) -> bool:
    cursor = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
        (table_name,),
    )
    return cursor.fetchone() is not None


def table_columns(conn: sqlite3.Connection, table_name: str) -> Set[str]:
    validate_table_name(table_name)
    cursor = conn.execute(f"PRAGMA table_info({table_name})")
    return {row[1] for row in cursor.fetchall()}


def list_tables(conn: sqlite3.Connection) -> List[str]:
    cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
    return [row[0] for row in cursor.fetchall() if not str(row[0]).startswith('sqlite_')]


def find_telemetry_table(conn: sqlite3.Connection) -> Optional[str]:
    """Guess the collection table: the first one named like telemetry/installations."""
    for name in list_tables(conn):
        if TELEMETRY_TABLE_PATTERN.search(name):
            return name
    return None


def ensure_records_table(
    conn: sqlite3.Connection,
    table_name: str,
    *,
    extra_columns: Iterable[str] = (),
) -> None:
    """Create the telemetry table with its unique ``random_id`` index.

    Existing tables are backfilled with any missing columns, which is also how
    the transient shadow column is added before an HTTP migration.
    """
    validate_table_name(table_name)
    column_sql = ",\n            ".join(f"{name} {definition}" for name, definition in RECORD_COLUMNS)
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {table_name} (
            {column_sql}
        );
        """
    )

    existing = table_columns(conn, table_name)
    for name, definition in RECORD_COLUMNS[1:]:
        if name not in existing:
            conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {name} {definition}")
    for name in extra_columns:
        validate_table_name(name)
        if name not in existing:
            conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {name} TEXT DEFAULT ''")

    conn.execute(
        f"CREATE UNIQUE INDEX IF NOT EXISTS idx_{table_name}_random_id ON {table_name}(random_id)"
    )
    conn.commit()
