"""Bulk transfer of historical telemetry from the legacy API into the record store.

The migration walks the legacy ``/paginated`` endpoint page by page (or a local
JSON export with ``--json-file``), converts each record and posts it to the
record store. A single bad record or page never aborts the run: failures are
counted and the operator can rerun with ``--start-page`` / ``--skip-records``.
Records already present are reported as skipped thanks to the unique
``random_id`` constraint, so reruns are safe.

When only a restricted credential is available the original creation time is
sent in the ``old_created`` shadow field; promote it afterwards with
``python -m telemetry.timestamp_fixup``.
"""

from __future__ import annotations

import argparse
import json
import logging
import math
import os
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Iterable, List, Mapping, Optional

import requests

from .backend import (
    DEFAULT_AUTH_COLLECTION,
    DEFAULT_COLLECTION,
    AuthenticationError,
    ImportOutcome,
    RecordStoreClient,
)
from .legacy_api import DEFAULT_SOURCE_URL, LegacySourceClient, SourceError
from .records import transform_legacy
from . import timestamps

LOGGER = logging.getLogger(__name__)

DEFAULT_TARGET_URL = "http://localhost:8090"
DEFAULT_BATCH_SIZE = 500
DEFAULT_PAGE_DELAY = 0.1


class MigrationSetupError(RuntimeError):
    """Raised when the migration cannot start; nothing has been transferred yet."""


class SourceUnavailableError(MigrationSetupError):
    """Raised when the legacy API summary cannot be read."""


@dataclass(frozen=True)
class Credentials:
    identity: str = ""
    password: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.identity and self.password)


@dataclass
class MigrationConfig:
    source_url: str = DEFAULT_SOURCE_URL
    target_url: str = DEFAULT_TARGET_URL
    collection: str = DEFAULT_COLLECTION
    auth_collection: str = DEFAULT_AUTH_COLLECTION
    privileged: Credentials = field(default_factory=Credentials)
    restricted: Credentials = field(default_factory=Credentials)
    batch_size: int = DEFAULT_BATCH_SIZE
    start_page: int = 1
    date_from: Optional[date] = None
    date_until: Optional[date] = None
    repo_source: str = ""
    page_delay: float = DEFAULT_PAGE_DELAY
    json_file: Optional[Path] = None
    skip_records: int = 0

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if self.start_page < 1:
            raise ValueError("start_page must be 1 or greater")
        if self.skip_records < 0:
            raise ValueError("skip_records must not be negative")
        if self.date_from and self.date_until and self.date_from > self.date_until:
            raise ValueError("date_from must not be after date_until")

    @property
    def date_range(self) -> timestamps.DateRange:
        return timestamps.DateRange(self.date_from, self.date_until)


@dataclass
class MigrationSummary:
    migrated: int = 0
    skipped: int = 0
    failed: int = 0
    filtered: int = 0

    def record(self, outcome: ImportOutcome) -> None:
        if outcome is ImportOutcome.CREATED:
            self.migrated += 1
        elif outcome is ImportOutcome.CONFLICT:
            self.skipped += 1
        else:
            self.failed += 1

    @property
    def processed(self) -> int:
        return self.migrated + self.skipped + self.failed + self.filtered


def format_duration(seconds: float) -> str:
    if seconds < 0:
        return "calculating..."
    seconds = int(seconds)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class MigrationOrchestrator:
    """Sequential, resumable transfer from the legacy API into the record store."""

    def __init__(
        self,
        config: MigrationConfig,
        *,
        target: Optional[RecordStoreClient] = None,
        source: Optional[LegacySourceClient] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.target = target or RecordStoreClient(config.target_url, config.collection)
        self.source = source or LegacySourceClient(config.source_url)
        self.sleep = sleep
        self.clock = clock
        self.privileged = False
        self.date_range = config.date_range

    # Setup --------------------------------------------------------------

    def authenticate(self) -> str:
        """Obtain the best available credential and return its kind."""

        config = self.config
        if config.privileged.configured:
            LOGGER.info("Authenticating with privileged credential")
            try:
                self.target.authenticate_superuser(
                    config.privileged.identity, config.privileged.password
                )
            except AuthenticationError as exc:
                if not config.restricted.configured:
                    raise
                LOGGER.warning(
                    "Privileged authentication failed (%s); falling back to %s",
                    exc,
                    config.auth_collection,
                )
            else:
                self.privileged = True
                LOGGER.info("Authenticated; original timestamps will be written directly")
                return "privileged"

        if config.restricted.configured:
            LOGGER.info("Authenticating against collection %s", config.auth_collection)
            self.target.authenticate(
                config.restricted.identity,
                config.restricted.password,
                auth_collection=config.auth_collection,
            )
            LOGGER.warning(
                "Restricted credential in use; creation times go to old_created for a later fixup"
            )
            return "restricted"

        LOGGER.warning("No credentials provided, trying without auth")
        if not self.target.health_check():
            raise MigrationSetupError(f"Target {self.target.base_url} is unreachable")
        return "anonymous"

    # Per-record work ----------------------------------------------------

    def _is_filtered(self, raw: Mapping[str, Any]) -> bool:
        return not self.date_range.admits(raw.get("created_at", raw.get("created")))

    def import_record(self, raw: Mapping[str, Any], summary: MigrationSummary) -> Optional[ImportOutcome]:
        """Transform and import one legacy record; ``None`` means it was filtered out."""

        if self._is_filtered(raw):
            summary.filtered += 1
            return None
        record = transform_legacy(raw, repo_source=self.config.repo_source)
        result = self.target.create_record(record.to_payload(privileged=self.privileged))
        summary.record(result.outcome)
        if result.outcome is ImportOutcome.FAILED:
            LOGGER.debug(
                "Import of %s failed (HTTP %s): %s",
                record.random_id,
                result.status_code,
                result.detail,
            )
        return result.outcome

    def _import_batch(self, records: Iterable[Mapping[str, Any]], summary: MigrationSummary, label: str) -> None:
        first_failure_logged = False
        for raw in records:
            before = summary.failed
            self.import_record(raw, summary)
            if summary.failed > before and not first_failure_logged:
                LOGGER.warning("%s sample failure for random_id=%s", label, raw.get("random_id"))
                first_failure_logged = True

    def _log_progress(self, label: str, summary: MigrationSummary, started: float, remaining: int) -> None:
        elapsed = max(self.clock() - started, 1e-6)
        rate = summary.processed / elapsed
        eta = remaining / rate if rate > 0 else -1.0
        LOGGER.info(
            "%s Migrated: %d | Skipped: %d | Failed: %d | Filtered: %d | %.0f rec/s | ETA: %s",
            label,
            summary.migrated,
            summary.skipped,
            summary.failed,
            summary.filtered,
            rate,
            format_duration(eta),
        )

    # Modes --------------------------------------------------------------

    def migrate_from_api(self) -> MigrationSummary:
        config = self.config
        try:
            total = self.source.total_entries()
        except (requests.RequestException, SourceError) as exc:
            raise SourceUnavailableError(f"Failed to get summary: {exc}") from exc

        total_pages = math.ceil(total / config.batch_size) if total > 0 else 0
        LOGGER.info("Total entries in source: %d (%d pages)", total, total_pages)

        summary = MigrationSummary()
        started = self.clock()
        for page in range(config.start_page, total_pages + 1):
            label = f"[Page {page}/{total_pages}]"
            expected = min(config.batch_size, total - (page - 1) * config.batch_size)
            try:
                records = self.source.fetch_page(page, config.batch_size)
            except (requests.RequestException, SourceError) as exc:
                LOGGER.error("%s Failed to fetch: %s", label, exc)
                summary.failed += expected
            else:
                self._import_batch(records, summary, label)

            remaining = max(total - page * config.batch_size, 0)
            self._log_progress(label, summary, started, remaining)
            if page < total_pages and config.page_delay > 0:
                self.sleep(config.page_delay)
        return summary

    def migrate_from_file(self, path: Path) -> MigrationSummary:
        config = self.config
        try:
            with Path(path).open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, ValueError) as exc:
            raise MigrationSetupError(f"Cannot read {path}: {exc}") from exc
        if not isinstance(payload, list):
            raise MigrationSetupError(f"{path} must contain a JSON array")

        summary = MigrationSummary()
        pending: List[Mapping[str, Any]] = []
        for index, entry in enumerate(payload[config.skip_records:], start=config.skip_records + 1):
            if not isinstance(entry, dict):
                LOGGER.warning("Skipping malformed record #%d", index)
                summary.failed += 1
                continue
            pending.append(entry)

        batches = math.ceil(len(pending) / config.batch_size) if pending else 0
        LOGGER.info(
            "Importing %d records from %s in %d batches (skipped first %d)",
            len(pending),
            path,
            batches,
            config.skip_records,
        )
        started = self.clock()
        for number in range(batches):
            chunk = pending[number * config.batch_size:(number + 1) * config.batch_size]
            label = f"[Batch {number + 1}/{batches}]"
            self._import_batch(chunk, summary, label)
            remaining = max(len(pending) - (number + 1) * config.batch_size, 0)
            self._log_progress(label, summary, started, remaining)
            if number + 1 < batches and config.page_delay > 0:
                self.sleep(config.page_delay)
        return summary

    def run(self) -> MigrationSummary:
        self.authenticate()
        if self.config.json_file is not None:
            return self.migrate_from_file(self.config.json_file)
        return self.migrate_from_api()


def migrate(
    source_url: str,
    target_url: str,
    collection: str,
    credentials: Credentials,
    batch_size: int = DEFAULT_BATCH_SIZE,
    *,
    target: Optional[RecordStoreClient] = None,
    source: Optional[LegacySourceClient] = None,
    sleep: Callable[[float], None] = time.sleep,
    **options: Any,
) -> MigrationSummary:
    """Run an API migration with a single credential tried as privileged first.

    ``target``, ``source`` and ``sleep`` replace the HTTP clients and the page
    delay, as in :class:`MigrationOrchestrator`.
    """

    config = MigrationConfig(
        source_url=source_url,
        target_url=target_url,
        collection=collection,
        privileged=options.pop("privileged", credentials),
        restricted=options.pop("restricted", credentials),
        batch_size=batch_size,
        **options,
    )
    return MigrationOrchestrator(config, target=target, source=source, sleep=sleep).run()


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


def _env(*names: str, default: str = "") -> str:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except ValueError:
        return default


def _parse_day(text: str) -> date:
    try:
        return datetime.strptime(text, "%Y-%m-%d").date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date {text!r} (use YYYY-MM-DD)")


def _optional_day(name: str) -> Optional[date]:
    value = os.environ.get(name)
    return _parse_day(value) if value else None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Migrate legacy telemetry records into the record store.",
    )
    parser.add_argument("--source-url", default=_env("MIGRATION_SOURCE_URL", default=DEFAULT_SOURCE_URL))
    parser.add_argument(
        "--target-url", default=_env("POCKETBASE_URL", "PB_URL", default=DEFAULT_TARGET_URL)
    )
    parser.add_argument(
        "--collection",
        default=_env("POCKETBASE_COLLECTION", "PB_TARGET_COLLECTION", default=DEFAULT_COLLECTION),
    )
    parser.add_argument(
        "--auth-collection", default=_env("PB_AUTH_COLLECTION", default=DEFAULT_AUTH_COLLECTION)
    )
    parser.add_argument("--admin-email", default=_env("PB_ADMIN_EMAIL"))
    parser.add_argument("--admin-password", default=_env("PB_ADMIN_PASSWORD"))
    parser.add_argument("--identity", default=_env("PB_IDENTITY"))
    parser.add_argument("--password", default=_env("PB_PASSWORD"))
    parser.add_argument("--batch-size", type=int, default=_env_int("BATCH_SIZE", DEFAULT_BATCH_SIZE))
    parser.add_argument(
        "--start-page",
        type=int,
        default=_env_int("START_PAGE", 1),
        help="Resume from this page (API mode)",
    )
    parser.add_argument("--date-from", type=_parse_day, default=None, help="YYYY-MM-DD (inclusive)")
    parser.add_argument("--date-until", type=_parse_day, default=None, help="YYYY-MM-DD (inclusive)")
    parser.add_argument("--repo-source", default=_env("REPO_SOURCE"))
    parser.add_argument(
        "--json-file",
        type=Path,
        default=Path(os.environ["JSON_FILE"]) if os.environ.get("JSON_FILE") else None,
        help="Import a local JSON export over HTTP instead of reading the legacy API",
    )
    parser.add_argument(
        "--skip-records",
        type=int,
        default=_env_int("SKIP_RECORDS", 0),
        help="Skip the first N records of --json-file",
    )
    parser.add_argument("--page-delay", type=float, default=DEFAULT_PAGE_DELAY)
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def print_summary(summary: MigrationSummary, duration: float, *, shadow_timestamps: bool) -> None:
    print("=" * 57)
    print("        Migration Complete")
    print("=" * 57)
    print(f"Successfully migrated: {summary.migrated}")
    print(f"Skipped (duplicates):  {summary.skipped}")
    print(f"Filtered (date):       {summary.filtered}")
    print(f"Failed:                {summary.failed}")
    print(f"Duration:              {format_duration(duration)}")
    print("=" * 57)
    if shadow_timestamps and summary.migrated:
        print()
        print("Next steps for timestamp migration:")
        print("   1. Run on the record store host: python -m telemetry.timestamp_fixup --db <data.db>")
        print("   2. Remove the old_created field from the collection afterwards")


def main(argv: Optional[Iterable[str]] = None) -> int:
    """Command line entry point used by ``python -m telemetry.migration``."""

    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = MigrationConfig(
            source_url=args.source_url,
            target_url=args.target_url,
            collection=args.collection,
            auth_collection=args.auth_collection,
            privileged=Credentials(args.admin_email, args.admin_password),
            restricted=Credentials(args.identity, args.password),
            batch_size=args.batch_size,
            start_page=args.start_page,
            date_from=args.date_from or _optional_day("DATE_FROM"),
            date_until=args.date_until or _optional_day("DATE_UNTIL"),
            repo_source=args.repo_source,
            page_delay=args.page_delay,
            json_file=args.json_file,
            skip_records=args.skip_records,
        )
    except (ValueError, argparse.ArgumentTypeError) as exc:
        parser.error(str(exc))

    LOGGER.info(
        "Migrating %s -> %s (collection %s, batch size %d)",
        config.json_file or config.source_url,
        config.target_url,
        config.collection,
        config.batch_size,
    )
    orchestrator = MigrationOrchestrator(config)
    started = time.monotonic()
    try:
        summary = orchestrator.run()
    except (MigrationSetupError, AuthenticationError) as exc:
        LOGGER.error("%s", exc)
        return 1

    print_summary(
        summary,
        time.monotonic() - started,
        shadow_timestamps=not orchestrator.privileged,
    )
    return 0


if __name__ == "__main__":  # pragma: no cover - thin wrapper
    raise SystemExit(main())
