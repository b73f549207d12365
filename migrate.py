"""Command-line interface for migrating legacy telemetry into the record store."""
from __future__ import annotations

from telemetry.migration import main


if __name__ == "__main__":  # pragma: no cover - thin wrapper
    raise SystemExit(main())
