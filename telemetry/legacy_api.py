"""Read-only client for the legacy telemetry API being migrated away from."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

LOGGER = logging.getLogger(__name__)

DEFAULT_SOURCE_URL = "https://api.htl-braunau.at/data"
SUMMARY_TIMEOUT = 10.0
PAGE_TIMEOUT = 60.0


class SourceError(RuntimeError):
    """Raised when the legacy API returns something other than the expected JSON."""


class LegacySourceClient:
    def __init__(
        self,
        base_url: str = DEFAULT_SOURCE_URL,
        *,
        session: Optional[requests.Session] = None,
        page_timeout: float = PAGE_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.page_timeout = page_timeout

    def total_entries(self) -> int:
        """Return ``total_entries`` from ``/summary``.

        Transport errors propagate as :class:`requests.RequestException`.
        """

        response = self.session.request(
            "GET", f"{self.base_url}/summary", timeout=SUMMARY_TIMEOUT
        )
        if response.status_code != 200:
            raise SourceError(f"Summary request failed with HTTP {response.status_code}")
        try:
            payload = response.json()
            return int(payload["total_entries"])
        except (ValueError, KeyError, TypeError) as exc:
            raise SourceError(f"Unexpected summary payload: {exc}") from exc

    def fetch_page(self, page: int, limit: int) -> List[Dict[str, Any]]:
        response = self.session.request(
            "GET",
            f"{self.base_url}/paginated",
            params={"page": page, "limit": limit},
            timeout=self.page_timeout,
        )
        if response.status_code != 200:
            raise SourceError(f"HTTP {response.status_code}: {response.text.strip()[:200]}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceError(f"Page {page} is not valid JSON: {exc}") from exc
        if not isinstance(payload, list):
            raise SourceError(f"Page {page} is not a JSON array")
        return [entry for entry in payload if isinstance(entry, dict)]
