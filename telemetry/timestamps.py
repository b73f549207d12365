"""Best-effort normalisation of the timestamp encodings found in legacy data."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, List, Optional

import pytz
from dateutil.parser import isoparse

__all__ = [
    "CANONICAL_FORMAT",
    "DateRange",
    "format_canonical",
    "normalize",
    "now_canonical",
    "parse",
]

# PocketBase stores datetimes as "2024-01-02 03:04:05.000Z".
CANONICAL_FORMAT = "%Y-%m-%d %H:%M:%S"

_STRPTIME_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%fZ",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S.%f UTC",
    "%Y-%m-%d %H:%M:%S UTC",
)


def _parse_rfc3339(text: str) -> Optional[datetime]:
    # Only accept full date-time values with an explicit zone designator.
    if "T" not in text or not (text.endswith("Z") or text[-6:-5] in {"+", "-"}):
        return None
    return isoparse(text)


def _strptime_parser(fmt: str) -> Callable[[str], Optional[datetime]]:
    def _parse(text: str) -> Optional[datetime]:
        return datetime.strptime(text, fmt)

    return _parse


_PARSERS: List[Callable[[str], Optional[datetime]]] = [_parse_rfc3339] + [
    _strptime_parser(fmt) for fmt in _STRPTIME_FORMATS
]


def _unwrap(raw: Any) -> Any:
    """Strip the extended-JSON ``{"$date": ...}`` wrapper, including the epoch form."""

    if isinstance(raw, str):
        stripped = raw.strip()
        if stripped.startswith("{") and "$date" in stripped:
            try:
                raw = json.loads(stripped)
            except ValueError:
                return stripped
        else:
            return stripped
    if isinstance(raw, dict):
        value = raw.get("$date")
        if isinstance(value, dict):
            value = value.get("$numberLong")
            try:
                return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
            except (TypeError, ValueError, OverflowError, OSError):
                return ""
        return value if value is not None else ""
    return raw


def parse(raw: Any) -> Optional[datetime]:
    """Return ``raw`` as an aware UTC datetime, or ``None`` when no format matches."""

    value = _unwrap(raw)
    if isinstance(value, datetime):
        parsed: Optional[datetime] = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str) and value:
        parsed = None
        for parser in _PARSERS:
            try:
                parsed = parser(value)
            except (ValueError, OverflowError):
                continue
            if parsed is not None:
                break
    else:
        return None

    if parsed is None:
        return None
    if parsed.tzinfo is None:
        return pytz.UTC.localize(parsed)
    return parsed.astimezone(pytz.UTC)


def format_canonical(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = pytz.UTC.localize(moment)
    moment = moment.astimezone(pytz.UTC)
    return f"{moment.strftime(CANONICAL_FORMAT)}.{moment.microsecond // 1000:03d}Z"


def normalize(raw: Any) -> str:
    """Render ``raw`` in the canonical UTC form.

    An empty string means the value could not be parsed and the store should
    assign its own ingestion time.
    """

    parsed = parse(raw)
    if parsed is None:
        return ""
    return format_canonical(parsed)


def now_canonical() -> str:
    return format_canonical(datetime.now(timezone.utc))


@dataclass(frozen=True)
class DateRange:
    """Inclusive day window applied to creation times during imports."""

    start: Optional[date] = None
    end: Optional[date] = None

    def __post_init__(self) -> None:
        if self.start and self.end and self.start > self.end:
            raise ValueError("date range start must not be after its end")

    @property
    def active(self) -> bool:
        return self.start is not None or self.end is not None

    def admits(self, raw: Any) -> bool:
        """Return ``True`` if ``raw`` falls inside the window.

        With an active window, values that cannot be parsed are rejected.
        """

        if not self.active:
            return True
        moment = parse(raw)
        if moment is None:
            return False
        day = moment.date()
        if self.start is not None and day < self.start:
            return False
        if self.end is not None and day > self.end:
            return False
        return True
