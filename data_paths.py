"""Centralized helpers for locating the record store's SQLite file."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Optional

LOGGER = logging.getLogger(__name__)

DEFAULT_DATABASE_PATH = Path("/app/pb_data/data.db")
# Layouts seen across PocketBase container images.
CANDIDATE_DATABASE_PATHS = (
    DEFAULT_DATABASE_PATH,
    Path("/pb_data/data.db"),
    Path("/pb/pb_data/data.db"),
)


def resolve_database_path(
    explicit: Optional[Path] = None,
    candidates: Iterable[Path] = CANDIDATE_DATABASE_PATHS,
) -> Optional[Path]:
    """Return the first existing store file, preferring an explicit path.

    ``PB_DATA_DB`` in the environment takes the place of an explicit path when
    none is given.
    """

    if explicit is None and os.environ.get("PB_DATA_DB"):
        explicit = Path(os.environ["PB_DATA_DB"])

    if explicit is not None:
        explicit = Path(explicit).expanduser()
        if explicit.is_file():
            return explicit
        LOGGER.warning("Database not found at %s; trying standard locations", explicit)

    for candidate in candidates:
        if candidate.is_file():
            LOGGER.info("Using database at %s", candidate)
            return candidate
    return None
