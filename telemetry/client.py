"""Runtime telemetry reporting for installer sessions.

Installers report one record per session: :meth:`TelemetryClient.create`
registers the installation as ``installing`` and
:meth:`TelemetryClient.finalize` records how it ended. Reporting must never
change the outcome of an installation, so neither call raises; each returns a
:class:`TelemetryOutcome` that is logged at debug level instead.

The at-most-once guarantee lives in the caller-owned :class:`TelemetrySession`
rather than in module state. A session is not meant to be shared between
threads.
"""

from __future__ import annotations

import contextlib
import enum
import logging
import os
from dataclasses import dataclass, field
from typing import Iterator, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

import requests

from .backend import DEFAULT_COLLECTION, BackendError, ImportOutcome, RecordStoreClient
from .exit_codes import explain
from .records import (
    RECORD_TYPES,
    STATUS_INSTALLING,
    STATUS_SUCCESS,
    TelemetryRecord,
    final_status,
    parse_disk_size,
    unwrap_int,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_API_URL = "https://telemetry.community-scripts.org"
DEFAULT_TIMEOUT = 5.0
_TRUTHY = {"1", "true", "yes", "y", "on"}


class TelemetryConfigError(ValueError):
    """Raised when a :class:`TelemetryConfig` is built from invalid values."""


class SessionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    CREATED = "created"
    FINALIZED = "finalized"


class TelemetryOutcome(enum.Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    ALREADY_FINALIZED = "already_finalized"
    NOT_FOUND = "not_found"
    FAILED = "failed"


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in _TRUTHY


@dataclass
class TelemetryConfig:
    """Everything an installer knows about its session, validated once."""

    random_id: str = ""
    nsapp: str = ""
    type: str = "lxc"
    diagnostics: bool = False
    http_enabled: bool = True
    api_url: str = DEFAULT_API_URL
    collection: str = DEFAULT_COLLECTION
    ct_type: int = 0
    disk_size: int = 0
    core_count: int = 0
    ram_size: int = 0
    os_type: str = ""
    os_version: str = ""
    pve_version: str = ""
    method: str = ""
    timeout: float = DEFAULT_TIMEOUT

    def __post_init__(self) -> None:
        self.random_id = (self.random_id or "").strip()
        self.type = (self.type or "lxc").strip().lower()
        if self.type not in RECORD_TYPES:
            raise TelemetryConfigError(
                f"Unsupported record type {self.type!r}; expected one of {sorted(RECORD_TYPES)}"
            )
        if self.api_url:
            parsed = urlparse(self.api_url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise TelemetryConfigError(f"Invalid telemetry API URL: {self.api_url!r}")
        self.disk_size = parse_disk_size(self.disk_size)
        for name in ("ct_type", "disk_size", "core_count", "ram_size"):
            value = unwrap_int(getattr(self, name))
            if value < 0:
                raise TelemetryConfigError(f"{name} must not be negative")
            setattr(self, name, value)
        if self.timeout <= 0:
            raise TelemetryConfigError("timeout must be positive")

    @property
    def can_send(self) -> bool:
        """HTTP available, diagnostics opted in, and a session token present."""

        return bool(self.http_enabled and self.api_url and self.diagnostics and self.random_id)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TelemetryConfig":
        env = os.environ if environ is None else environ
        return cls(
            random_id=env.get("RANDOM_UUID", ""),
            nsapp=env.get("NSAPP", ""),
            type=env.get("TELEMETRY_TYPE", "lxc"),
            diagnostics=_flag(env.get("DIAGNOSTICS")),
            http_enabled=env.get("TELEMETRY_HTTP", "yes").strip().lower() not in {"0", "no", "false", "off"},
            api_url=env.get("TELEMETRY_API_URL", DEFAULT_API_URL),
            collection=env.get("TELEMETRY_COLLECTION", DEFAULT_COLLECTION),
            ct_type=env.get("CT_TYPE", "0"),
            disk_size=env.get("DISK_SIZE", "0"),
            core_count=env.get("CORE_COUNT", "0"),
            ram_size=env.get("RAM_SIZE", "0"),
            os_type=env.get("OS_TYPE", ""),
            os_version=env.get("OS_VERSION", ""),
            pve_version=env.get("PVE_VERSION", ""),
            method=env.get("METHOD", ""),
        )


@dataclass
class TelemetrySession:
    state: SessionState = SessionState.UNINITIALIZED
    record_id: Optional[str] = None
    outcomes: List[Tuple[str, TelemetryOutcome]] = field(default_factory=list)

    @property
    def finalized(self) -> bool:
        return self.state is SessionState.FINALIZED


class TelemetryClient:
    def __init__(self, config: TelemetryConfig, backend: Optional[RecordStoreClient] = None) -> None:
        self.config = config
        self.backend = backend or RecordStoreClient(
            config.api_url, config.collection, timeout=config.timeout
        )

    def _record(self, session: TelemetrySession, action: str, outcome: TelemetryOutcome) -> TelemetryOutcome:
        session.outcomes.append((action, outcome))
        LOGGER.debug("telemetry %s for %s: %s", action, self.config.random_id or "-", outcome.value)
        return outcome

    def create(self, session: TelemetrySession) -> TelemetryOutcome:
        """Register the installation as ``installing``."""

        if not self.config.can_send:
            return self._record(session, "create", TelemetryOutcome.SKIPPED)
        if session.state is SessionState.FINALIZED:
            return self._record(session, "create", TelemetryOutcome.ALREADY_FINALIZED)
        if session.state is SessionState.CREATED:
            return self._record(session, "create", TelemetryOutcome.SKIPPED)

        config = self.config
        record = TelemetryRecord(
            random_id=config.random_id,
            nsapp=config.nsapp or "unknown",
            type=config.type,
            status=STATUS_INSTALLING,
            ct_type=config.ct_type,
            disk_size=config.disk_size,
            core_count=config.core_count,
            ram_size=config.ram_size,
            os_type=config.os_type,
            os_version=config.os_version,
            pve_version=config.pve_version,
            method=config.method,
        )
        result = self.backend.create_record(record.to_payload())
        if result.outcome is not ImportOutcome.CREATED:
            LOGGER.debug("telemetry create rejected (HTTP %s): %s", result.status_code, result.detail)
            return self._record(session, "create", TelemetryOutcome.FAILED)

        session.state = SessionState.CREATED
        session.record_id = result.record_id
        return self._record(session, "create", TelemetryOutcome.SENT)

    def finalize(self, session: TelemetrySession, status: str, exit_code: int = 0) -> TelemetryOutcome:
        """Store the terminal status at most once per session."""

        if not self.config.can_send:
            return self._record(session, "finalize", TelemetryOutcome.SKIPPED)
        if session.finalized:
            return self._record(session, "finalize", TelemetryOutcome.ALREADY_FINALIZED)

        stored_status = final_status(status)
        if stored_status == STATUS_SUCCESS:
            code, error = 0, ""
        else:
            code = unwrap_int(exit_code)
            error = explain(code)

        record_id = session.record_id
        if not record_id:
            try:
                record_id = self.backend.find_record_id(self.config.random_id)
            except (requests.RequestException, BackendError) as exc:
                LOGGER.debug("telemetry lookup failed: %s", exc)
                session.state = SessionState.FINALIZED
                return self._record(session, "finalize", TelemetryOutcome.FAILED)
            if not record_id:
                session.state = SessionState.FINALIZED
                return self._record(session, "finalize", TelemetryOutcome.NOT_FOUND)
            session.record_id = record_id

        updated = self.backend.update_record(
            record_id, {"status": stored_status, "error": error, "exit_code": code}
        )
        session.state = SessionState.FINALIZED
        return self._record(
            session, "finalize", TelemetryOutcome.SENT if updated else TelemetryOutcome.FAILED
        )


def _exit_status(exc: SystemExit) -> int:
    if exc.code is None:
        return 0
    if isinstance(exc.code, int):
        return exc.code
    return 1


@contextlib.contextmanager
def track_installation(
    client: TelemetryClient, session: Optional[TelemetrySession] = None
) -> Iterator[TelemetrySession]:
    """Report an installation block as created, then done or failed.

    Exceptions raised inside the block propagate unchanged.
    """

    session = session or TelemetrySession()
    client.create(session)
    try:
        yield session
    except SystemExit as exc:
        code = _exit_status(exc)
        client.finalize(session, "done" if code == 0 else "failed", code)
        raise
    except KeyboardInterrupt:
        client.finalize(session, "failed", 130)
        raise
    except Exception:
        client.finalize(session, "failed", 1)
        raise
    else:
        client.finalize(session, "done", 0)
