import json
from datetime import date

import pytest
import requests

from telemetry import migration
from telemetry.backend import AuthenticationError, ImportOutcome, ImportResult
from telemetry.legacy_api import SourceError
from telemetry.migration import (
    Credentials,
    MigrationConfig,
    MigrationOrchestrator,
    MigrationSetupError,
    SourceUnavailableError,
)


def legacy_entries(count, start=0, **extra):
    return [
        dict({"random_id": f"rid-{index}", "nsapp": "debian", "status": "done",
              "created_at": "2024-01-02T03:04:05Z"}, **extra)
        for index in range(start, start + count)
    ]


class FakeSource:
    def __init__(self, entries, failing_pages=()):
        self.entries = entries
        self.failing_pages = set(failing_pages)
        self.fetched = []

    def total_entries(self):
        return len(self.entries)

    def fetch_page(self, page, limit):
        self.fetched.append(page)
        if page in self.failing_pages:
            raise requests.ConnectionError("connection reset")
        return self.entries[(page - 1) * limit:page * limit]


class FakeTarget:
    """In-memory record store keyed by random_id, like the unique index."""

    base_url = "http://pb:8090"

    def __init__(self, *, healthy=True, superuser_ok=True):
        self.stored = {}
        self.payloads = []
        self.healthy = healthy
        self.superuser_ok = superuser_ok
        self.auth_calls = []

    def authenticate_superuser(self, identity, password):
        self.auth_calls.append(("superuser", identity))
        if not self.superuser_ok:
            raise AuthenticationError("HTTP 400: invalid credentials")
        return "admin-token"

    def authenticate(self, identity, password, *, auth_collection):
        self.auth_calls.append((auth_collection, identity))
        return "svc-token"

    def health_check(self):
        return self.healthy

    def create_record(self, payload):
        self.payloads.append(payload)
        if payload["random_id"] in self.stored:
            return ImportResult(ImportOutcome.CONFLICT, 400)
        self.stored[payload["random_id"]] = payload
        return ImportResult(ImportOutcome.CREATED, 200, f"pb-{len(self.stored)}")


def make_orchestrator(source=None, target=None, **options):
    config = MigrationConfig(page_delay=0.5, **options)
    sleeps = []
    orchestrator = MigrationOrchestrator(
        config,
        target=target or FakeTarget(),
        source=source or FakeSource([]),
        sleep=sleeps.append,
        clock=lambda: 0.0,
    )
    return orchestrator, sleeps


def test_failed_page_is_counted_and_run_continues():
    source = FakeSource(legacy_entries(250), failing_pages={2})
    orchestrator, sleeps = make_orchestrator(source, batch_size=100)

    summary = orchestrator.migrate_from_api()

    assert source.fetched == [1, 2, 3]
    assert summary.migrated == 150
    assert summary.failed == 100
    assert summary.skipped == 0
    assert sleeps == [0.5, 0.5]


def test_failed_last_page_counts_its_actual_size():
    source = FakeSource(legacy_entries(250), failing_pages={3})
    orchestrator, _ = make_orchestrator(source, batch_size=100)

    summary = orchestrator.migrate_from_api()

    assert summary.migrated == 200
    assert summary.failed == 50


def test_rerun_is_idempotent():
    source = FakeSource(legacy_entries(30))
    target = FakeTarget()

    first, _ = make_orchestrator(source, target, batch_size=10)
    second, _ = make_orchestrator(source, target, batch_size=10)
    first_summary = first.migrate_from_api()
    second_summary = second.migrate_from_api()

    assert first_summary.migrated == 30
    assert second_summary.migrated == 0
    assert second_summary.skipped == 30
    assert len(target.stored) == 30


def test_start_page_resumes_run():
    source = FakeSource(legacy_entries(50))
    orchestrator, _ = make_orchestrator(source, batch_size=10, start_page=4)

    summary = orchestrator.migrate_from_api()

    assert source.fetched == [4, 5]
    assert summary.migrated == 20


def test_date_filter_counts_filtered_records():
    entries = legacy_entries(3) + [
        {"random_id": "old", "created_at": "2023-06-01 10:00:00"},
        {"random_id": "broken", "created_at": "not a date"},
    ]
    orchestrator, _ = make_orchestrator(FakeSource(entries), date_from=date(2024, 1, 1))

    summary = orchestrator.migrate_from_api()

    assert summary.migrated == 3
    assert summary.filtered == 2


def test_unreadable_summary_is_fatal():
    class BrokenSource(FakeSource):
        def total_entries(self):
            raise SourceError("Summary request failed with HTTP 502")

    orchestrator, _ = make_orchestrator(BrokenSource([]))
    with pytest.raises(SourceUnavailableError):
        orchestrator.migrate_from_api()


def test_privileged_credential_writes_timestamps():
    target = FakeTarget()
    orchestrator, _ = make_orchestrator(
        FakeSource(legacy_entries(1)), target, privileged=Credentials("admin@example.com", "pw")
    )

    assert orchestrator.authenticate() == "privileged"
    orchestrator.migrate_from_api()

    payload = target.payloads[0]
    assert payload["created"] == "2024-01-02 03:04:05.000Z"
    assert "old_created" not in payload
    assert payload["status"] == "sucess"


def test_restricted_credential_uses_shadow_timestamp():
    target = FakeTarget()
    orchestrator, _ = make_orchestrator(
        FakeSource(legacy_entries(1)), target, restricted=Credentials("svc@example.com", "pw")
    )

    assert orchestrator.authenticate() == "restricted"
    orchestrator.migrate_from_api()

    payload = target.payloads[0]
    assert payload["old_created"] == "2024-01-02 03:04:05.000Z"
    assert "created" not in payload
    assert target.auth_calls == [("telemetry_service_user", "svc@example.com")]


def test_privileged_failure_falls_back_to_restricted():
    target = FakeTarget(superuser_ok=False)
    orchestrator, _ = make_orchestrator(
        target=target,
        privileged=Credentials("admin@example.com", "bad"),
        restricted=Credentials("svc@example.com", "pw"),
    )

    assert orchestrator.authenticate() == "restricted"
    assert orchestrator.privileged is False


def test_privileged_failure_without_fallback_is_fatal():
    orchestrator, _ = make_orchestrator(
        target=FakeTarget(superuser_ok=False), privileged=Credentials("admin@example.com", "bad")
    )
    with pytest.raises(AuthenticationError):
        orchestrator.authenticate()


def test_anonymous_run_requires_reachable_target():
    orchestrator, _ = make_orchestrator(target=FakeTarget(healthy=False))
    with pytest.raises(MigrationSetupError):
        orchestrator.authenticate()

    healthy, _ = make_orchestrator(target=FakeTarget())
    assert healthy.authenticate() == "anonymous"


def test_migrate_from_file_honours_skip_records(tmp_path):
    export = tmp_path / "export.json"
    export.write_text(json.dumps(legacy_entries(25) + ["not a record"]))
    target = FakeTarget()
    orchestrator, sleeps = make_orchestrator(target=target, batch_size=10, skip_records=5)

    summary = orchestrator.migrate_from_file(export)

    assert summary.migrated == 20
    assert summary.failed == 1
    assert "rid-4" not in target.stored
    assert "rid-5" in target.stored
    assert sleeps == [0.5]


def test_migrate_from_file_rejects_non_array(tmp_path):
    export = tmp_path / "export.json"
    export.write_text(json.dumps({"items": []}))
    orchestrator, _ = make_orchestrator()
    with pytest.raises(MigrationSetupError):
        orchestrator.migrate_from_file(export)


def test_repo_source_is_attached():
    target = FakeTarget()
    orchestrator, _ = make_orchestrator(FakeSource(legacy_entries(1)), target, repo_source="community")
    orchestrator.migrate_from_api()
    assert target.payloads[0]["repo_source"] == "community"


def test_config_validation():
    with pytest.raises(ValueError):
        MigrationConfig(batch_size=0)
    with pytest.raises(ValueError):
        MigrationConfig(start_page=0)
    with pytest.raises(ValueError):
        MigrationConfig(date_from=date(2024, 2, 1), date_until=date(2024, 1, 1))


def test_format_duration():
    assert migration.format_duration(5) == "5s"
    assert migration.format_duration(125) == "2m 5s"
    assert migration.format_duration(3725) == "1h 2m 5s"
    assert migration.format_duration(-1) == "calculating..."


def test_main_returns_one_on_setup_error(monkeypatch):
    def fake_run(self):
        raise MigrationSetupError("Target http://pb:8090 is unreachable")

    monkeypatch.setattr(MigrationOrchestrator, "run", fake_run)
    assert migration.main(["--target-url", "http://pb:8090"]) == 1


def test_main_prints_summary(monkeypatch, capsys):
    def fake_run(self):
        summary = migration.MigrationSummary(migrated=3, skipped=1)
        return summary

    monkeypatch.setattr(MigrationOrchestrator, "run", fake_run)
    assert migration.main(["--batch-size", "10", "--repo-source", "community"]) == 0

    output = capsys.readouterr().out
    assert "Successfully migrated: 3" in output
    assert "Skipped (duplicates):  1" in output
    assert "timestamp_fixup" in output


def test_main_rejects_bad_arguments():
    with pytest.raises(SystemExit) as excinfo:
        migration.main(["--batch-size", "0"])
    assert excinfo.value.code == 2


def test_root_script_exposes_cli():
    import migrate

    assert migrate.main is migration.main


def test_non_finite_numbers_do_not_stop_the_run():
    entries = json.loads('[{"random_id": "a", "disk_size": NaN}, {"random_id": "b", "core_count": Infinity}]')
    target = FakeTarget()
    orchestrator, _ = make_orchestrator(FakeSource(entries), target)

    summary = orchestrator.migrate_from_api()

    assert summary.migrated == 2
    assert summary.failed == 0
    assert target.stored["a"]["disk_size"] == 0
    assert target.stored["b"]["core_count"] == 0


def test_migrate_runs_with_injected_clients():
    source = FakeSource(legacy_entries(15))
    target = FakeTarget()
    sleeps = []

    summary = migration.migrate(
        "http://legacy",
        "http://pb:8090",
        "telemetry",
        Credentials("admin@example.com", "pw"),
        batch_size=10,
        target=target,
        source=source,
        sleep=sleeps.append,
        repo_source="community",
    )

    assert summary.migrated == 15
    assert source.fetched == [1, 2]
    assert sleeps == [migration.DEFAULT_PAGE_DELAY]
    assert target.auth_calls == [("superuser", "admin@example.com")]
    assert target.payloads[0]["created"] == "2024-01-02 03:04:05.000Z"
    assert target.payloads[0]["repo_source"] == "community"
