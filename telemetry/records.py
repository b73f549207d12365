"""Telemetry record model and the transforms applied to legacy records."""

from __future__ import annotations

import math
import re
import secrets
import string
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Mapping, Optional

from . import timestamps

__all__ = [
    "RECORD_TYPES",
    "STATUS_INSTALLING",
    "STATUS_SUCCESS",
    "STATUS_FAILED",
    "STATUS_UNKNOWN",
    "SUCCESS_ALIASES",
    "TelemetryRecord",
    "collapse_ct_type",
    "final_status",
    "generate_record_id",
    "legacy_status",
    "parse_disk_size",
    "transform_legacy",
    "unwrap_int",
    "unwrap_str",
]

RECORD_TYPES = frozenset({"lxc", "vm", "addon", "pve"})

STATUS_INSTALLING = "installing"
# The backend schema spells it this way; do not correct it.
STATUS_SUCCESS = "sucess"
STATUS_FAILED = "failed"
STATUS_UNKNOWN = "unknown"

SUCCESS_ALIASES = frozenset({"done", "success", STATUS_SUCCESS})

RECORD_ID_LENGTH = 15
_RECORD_ID_ALPHABET = string.ascii_lowercase + string.digits
_LEADING_INTEGER = re.compile(r"^\s*(-?\d+)")


@dataclass
class TelemetryRecord:
    """A single installation report as stored by the backend."""

    random_id: str
    nsapp: str = "unknown"
    type: str = "lxc"
    status: str = STATUS_INSTALLING
    ct_type: int = 0
    disk_size: int = 0
    core_count: int = 0
    ram_size: int = 0
    os_type: str = ""
    os_version: str = ""
    pve_version: str = ""
    method: str = ""
    error: str = ""
    exit_code: int = 0
    repo_source: str = ""
    created: str = ""
    updated: str = ""
    old_created: str = ""
    id: Optional[str] = field(default=None, compare=False)

    def to_payload(self, *, privileged: bool = False) -> Dict[str, Any]:
        """Return the JSON body for a create request.

        A privileged credential may write ``created``/``updated`` directly;
        otherwise the original creation time travels in ``old_created`` and is
        promoted later by the timestamp fixup.
        """

        payload = asdict(self)
        payload.pop("id")
        created = payload.pop("created")
        payload.pop("updated")
        shadow = payload.pop("old_created") or created
        if not payload["repo_source"]:
            payload.pop("repo_source")
        if privileged:
            if created:
                payload["created"] = created
                payload["updated"] = self.updated or created
        elif shadow:
            payload["old_created"] = shadow
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TelemetryRecord":
        return cls(
            random_id=unwrap_str(payload.get("random_id")),
            nsapp=unwrap_str(payload.get("nsapp")) or "unknown",
            type=unwrap_str(payload.get("type")) or "lxc",
            status=unwrap_str(payload.get("status")) or STATUS_INSTALLING,
            ct_type=unwrap_int(payload.get("ct_type")),
            disk_size=parse_disk_size(payload.get("disk_size")),
            core_count=unwrap_int(payload.get("core_count")),
            ram_size=unwrap_int(payload.get("ram_size")),
            os_type=unwrap_str(payload.get("os_type")),
            os_version=unwrap_str(payload.get("os_version")),
            pve_version=unwrap_str(payload.get("pve_version")),
            method=unwrap_str(payload.get("method")),
            error=unwrap_str(payload.get("error")),
            exit_code=unwrap_int(payload.get("exit_code")),
            repo_source=unwrap_str(payload.get("repo_source")),
            created=unwrap_str(payload.get("created")),
            updated=unwrap_str(payload.get("updated")),
            old_created=unwrap_str(payload.get("old_created")),
            id=payload.get("id") or None,
        )


# ---------------------------------------------------------------------------
# Scalar helpers for extended-JSON exports
# ---------------------------------------------------------------------------


def _unwrap(value: Any) -> Any:
    if isinstance(value, dict):
        for key in ("$numberLong", "$numberInt", "$numberDouble", "$oid", "$date"):
            if key in value:
                return _unwrap(value[key])
        return None
    return value


def unwrap_int(value: Any, default: int = 0) -> int:
    """Read an integer from a bare scalar or a ``{"$numberLong": ...}`` wrapper."""

    value = _unwrap(value)
    if value is None or value == "" or isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return default
        return int(value)
    match = _LEADING_INTEGER.match(str(value))
    if not match:
        return default
    return int(match.group(1))


def unwrap_str(value: Any) -> str:
    value = _unwrap(value)
    if value is None:
        return ""
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


def parse_disk_size(value: Any) -> int:
    """Strip a unit suffix such as ``"20G"`` down to the bare integer."""

    return unwrap_int(value)


# ---------------------------------------------------------------------------
# Status and class mapping
# ---------------------------------------------------------------------------


def final_status(status: str) -> str:
    """Map the status reported when an installation ends."""

    normalised = (status or "").strip().lower()
    if normalised in SUCCESS_ALIASES:
        return STATUS_SUCCESS
    if normalised == STATUS_FAILED:
        return STATUS_FAILED
    return STATUS_UNKNOWN


def legacy_status(status: str) -> str:
    """Map a stored legacy status; in-flight ``installing`` records stay as they are."""

    normalised = (status or "").strip().lower()
    if normalised == STATUS_INSTALLING:
        return STATUS_INSTALLING
    return final_status(normalised)


def collapse_ct_type(value: Any) -> int:
    # Legacy: 1 = unprivileged, 2 = privileged. Anything above 1 collapses to 1.
    return 1 if unwrap_int(value) > 1 else 0


def generate_record_id() -> str:
    return "".join(secrets.choice(_RECORD_ID_ALPHABET) for _ in range(RECORD_ID_LENGTH))


def transform_legacy(raw: Mapping[str, Any], *, repo_source: str = "") -> TelemetryRecord:
    """Convert a legacy API or export record into a :class:`TelemetryRecord`.

    Missing or malformed fields fall back to defaults instead of rejecting the
    record.
    """

    record_type = unwrap_str(raw.get("type")).strip().lower()
    if record_type not in RECORD_TYPES:
        record_type = "lxc"
    created = timestamps.normalize(raw.get("created_at", raw.get("created")))
    return TelemetryRecord(
        random_id=unwrap_str(raw.get("random_id")).strip(),
        nsapp=unwrap_str(raw.get("nsapp")).strip() or "unknown",
        type=record_type,
        status=legacy_status(unwrap_str(raw.get("status"))),
        ct_type=collapse_ct_type(raw.get("ct_type")),
        disk_size=parse_disk_size(raw.get("disk_size")),
        core_count=unwrap_int(raw.get("core_count")),
        ram_size=unwrap_int(raw.get("ram_size")),
        os_type=unwrap_str(raw.get("os_type")),
        os_version=unwrap_str(raw.get("os_version")),
        pve_version=unwrap_str(raw.get("pve_version", raw.get("pveversion"))),
        method=unwrap_str(raw.get("method")),
        error=unwrap_str(raw.get("error")),
        exit_code=unwrap_int(raw.get("exit_code")),
        repo_source=repo_source,
        created=created,
        updated=created,
    )
