import sqlite3

import pytest

from database import StorageError, ensure_records_table
from telemetry import timestamp_fixup


def make_store(db_path, table="telemetry", shadow=True):
    conn = sqlite3.connect(db_path)
    ensure_records_table(conn, table, extra_columns=("old_created",) if shadow else ())
    conn.executemany(
        f"INSERT INTO {table} (random_id, created, updated{', old_created' if shadow else ''}) "
        f"VALUES (?, ?, ?{', ?' if shadow else ''})",
        [
            ("a", "2025-01-01 00:00:00.000Z", "2025-01-01 00:00:00.000Z", "2023-05-05 10:00:00.000Z"),
            ("b", "2025-01-01 00:00:00.000Z", "2025-01-01 00:00:00.000Z", ""),
        ]
        if shadow
        else [("a", "2025-01-01 00:00:00.000Z", "2025-01-01 00:00:00.000Z")],
    )
    conn.commit()
    conn.close()


def read_created(db_path, table="telemetry"):
    conn = sqlite3.connect(db_path)
    try:
        return {
            row[0]: (row[1], row[2])
            for row in conn.execute(f"SELECT random_id, created, updated FROM {table}")
        }
    finally:
        conn.close()


def test_apply_promotes_shadow_timestamps(tmp_path):
    db_path = tmp_path / "data.db"
    make_store(db_path)

    assert timestamp_fixup.pending_count(db_path) == 1
    assert timestamp_fixup.apply(db_path) == 1

    rows = read_created(db_path)
    assert rows["a"] == ("2023-05-05 10:00:00.000Z", "2023-05-05 10:00:00.000Z")
    assert rows["b"] == ("2025-01-01 00:00:00.000Z", "2025-01-01 00:00:00.000Z")


def test_apply_without_shadow_column_is_a_no_op(tmp_path):
    db_path = tmp_path / "data.db"
    make_store(db_path, shadow=False)

    assert timestamp_fixup.apply(db_path, "telemetry") == 0
    assert read_created(db_path)["a"][0] == "2025-01-01 00:00:00.000Z"


def test_table_is_auto_detected(tmp_path):
    db_path = tmp_path / "data.db"
    make_store(db_path, table="installations")

    assert timestamp_fixup.apply(db_path) == 1


def test_auto_detect_failure_raises(tmp_path):
    db_path = tmp_path / "data.db"
    conn = sqlite3.connect(db_path)
    conn.execute("CREATE TABLE users (id TEXT)")
    conn.close()

    with pytest.raises(StorageError):
        timestamp_fixup.apply(db_path)


def test_main_dry_run_leaves_rows_untouched(tmp_path, capsys):
    db_path = tmp_path / "data.db"
    make_store(db_path)

    assert timestamp_fixup.main(["--db", str(db_path), "--table", "telemetry", "--dry-run"]) == 0

    output = capsys.readouterr().out
    assert "Records to update: 1" in output
    assert "2023-05-05 10:00:00.000Z" in output
    assert read_created(db_path)["a"][0] == "2025-01-01 00:00:00.000Z"


def test_main_applies_and_suggests_column_removal(tmp_path, capsys):
    db_path = tmp_path / "data.db"
    make_store(db_path)

    assert timestamp_fixup.main(["--db", str(db_path)]) == 0

    output = capsys.readouterr().out
    assert "Records updated: 1" in output
    assert "old_created" in output


def test_main_reports_missing_database(tmp_path, monkeypatch):
    monkeypatch.delenv("PB_DATA_DB", raising=False)
    missing = tmp_path / "missing.db"
    monkeypatch.setattr(timestamp_fixup, "resolve_database_path", lambda explicit: None)
    assert timestamp_fixup.main(["--db", str(missing)]) == 1


def test_main_dry_run_shows_samples_for_detected_table(tmp_path, capsys):
    db_path = tmp_path / "data.db"
    make_store(db_path, table="installations")

    assert timestamp_fixup.main(["--db", str(db_path), "--dry-run"]) == 0

    output = capsys.readouterr().out
    assert "Records to update: 1" in output
    assert "2023-05-05 10:00:00.000Z" in output


def test_detect_table(tmp_path):
    db_path = tmp_path / "data.db"
    make_store(db_path, table="installations")

    assert timestamp_fixup.detect_table(db_path) == "installations"
    assert timestamp_fixup.detect_table(db_path, "telemetry") == "telemetry"
