import sqlite3

import pytest

import data_paths
from database import (
    StorageError,
    ensure_records_table,
    find_telemetry_table,
    get_db_connection,
    table_columns,
    validate_table_name,
)


def test_ensure_records_table_backfills_missing_columns():
    conn = sqlite3.connect(":memory:")
    cursor = conn.cursor()

    cursor.execute(
        """
        CREATE TABLE telemetry (
            id TEXT PRIMARY KEY NOT NULL,
            created TEXT DEFAULT '' NOT NULL,
            random_id TEXT DEFAULT '' NOT NULL,
            status TEXT DEFAULT '' NOT NULL
        );
        """
    )
    cursor.execute(
        "INSERT INTO telemetry (id, created, random_id, status) VALUES (?, ?, ?, ?)",
        ("pb1", "2024-01-02 03:04:05.000Z", "abc", "sucess"),
    )

    ensure_records_table(conn, "telemetry", extra_columns=("old_created",))

    column_names = table_columns(conn, "telemetry")
    assert {"repo_source", "exit_code", "pve_version", "old_created"} <= column_names

    cursor.execute("SELECT repo_source, exit_code, old_created FROM telemetry")
    assert [tuple(row) for row in cursor.fetchall()] == [("", 0, "")]

    cursor.execute("PRAGMA index_list(telemetry)")
    index_names = {row[1] for row in cursor.fetchall()}
    assert "idx_telemetry_random_id" in index_names

    with pytest.raises(sqlite3.IntegrityError):
        cursor.execute("INSERT INTO telemetry (id, random_id) VALUES ('pb2', 'abc')")

    conn.close()


def test_new_table_generates_record_ids():
    conn = sqlite3.connect(":memory:")
    ensure_records_table(conn, "telemetry")
    conn.execute("INSERT INTO telemetry (random_id) VALUES ('abc')")

    (record_id,) = conn.execute("SELECT id FROM telemetry").fetchone()
    assert record_id.startswith("r")
    assert len(record_id) == 15
    conn.close()


@pytest.mark.parametrize("name", ["", "1table", "drop table;", "a-b"])
def test_validate_table_name_rejects_unsafe_names(name):
    with pytest.raises(StorageError):
        validate_table_name(name)


def test_find_telemetry_table():
    conn = sqlite3.connect(":memory:")
    conn.execute("CREATE TABLE _collections (id TEXT)")
    conn.execute("CREATE TABLE installations_v2 (id TEXT)")
    assert find_telemetry_table(conn) == "installations_v2"
    conn.close()


def test_get_db_connection_uses_wal(tmp_path):
    conn = get_db_connection(tmp_path / "data.db", bulk=True)
    try:
        assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        assert conn.execute("PRAGMA synchronous").fetchone()[0] == 0
    finally:
        conn.close()


def test_resolve_database_path_prefers_explicit(tmp_path, monkeypatch):
    monkeypatch.delenv("PB_DATA_DB", raising=False)
    db_file = tmp_path / "data.db"
    db_file.write_bytes(b"")

    assert data_paths.resolve_database_path(db_file, candidates=()) == db_file


def test_resolve_database_path_reads_environment(tmp_path, monkeypatch):
    db_file = tmp_path / "env.db"
    db_file.write_bytes(b"")
    monkeypatch.setenv("PB_DATA_DB", str(db_file))

    assert data_paths.resolve_database_path(candidates=()) == db_file


def test_resolve_database_path_falls_back_to_candidates(tmp_path, monkeypatch):
    monkeypatch.delenv("PB_DATA_DB", raising=False)
    candidate = tmp_path / "pb_data" / "data.db"
    candidate.parent.mkdir()
    candidate.write_bytes(b"")

    assert data_paths.resolve_database_path(tmp_path / "missing.db", candidates=(candidate,)) == candidate
    assert data_paths.resolve_database_path(candidates=(tmp_path / "nope.db",)) is None
