"""HTTP client for the PocketBase-style record store."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional

import requests

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_COLLECTION = "telemetry"
DEFAULT_AUTH_COLLECTION = "telemetry_service_user"
SUPERUSER_AUTH_PATHS = (
    "/api/collections/_superusers/auth-with-password",
    "/api/admins/auth-with-password",
)
UNIQUE_VIOLATION_CODE = "validation_not_unique"


class BackendError(RuntimeError):
    """Raised when the record store rejects or cannot answer a request."""


class AuthenticationError(BackendError):
    """Raised when no token could be obtained for the given credential."""


class ImportOutcome(enum.Enum):
    CREATED = "created"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass(frozen=True)
class ImportResult:
    outcome: ImportOutcome
    status_code: int = 0
    record_id: Optional[str] = None
    detail: str = ""


def _json_body(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def is_unique_violation(status_code: int, body: Any) -> bool:
    """Return ``True`` when a create was refused because ``random_id`` already exists."""

    if status_code == 409:
        return True
    if status_code != 400 or not isinstance(body, Mapping):
        return False
    data = body.get("data")
    if not isinstance(data, Mapping):
        return False
    field_error = data.get("random_id")
    return isinstance(field_error, Mapping) and field_error.get("code") == UNIQUE_VIOLATION_CODE


def classify_create_response(status_code: int, body: Any) -> ImportOutcome:
    if status_code in (200, 201):
        return ImportOutcome.CREATED
    if is_unique_violation(status_code, body):
        return ImportOutcome.CONFLICT
    return ImportOutcome.FAILED


def escape_filter_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class RecordStoreClient:
    """Talks to ``{base_url}/api/collections/{collection}/records``.

    Write helpers never raise for transport problems; they report them through
    their return value so callers can count failures and move on.
    """

    def __init__(
        self,
        base_url: str,
        collection: str = DEFAULT_COLLECTION,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
        token: Optional[str] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.collection = collection
        self.session = session or requests.Session()
        self.timeout = timeout
        self.token = token

    @property
    def records_url(self) -> str:
        return f"{self.base_url}/api/collections/{self.collection}/records"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(
        self,
        method: str,
        url: str,
        *,
        json: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> requests.Response:
        return self.session.request(
            method,
            url,
            json=json,
            params=params,
            headers=self._headers(),
            timeout=self.timeout,
        )

    # Authentication -----------------------------------------------------

    def _authenticate_at(self, path: str, identity: str, password: str) -> requests.Response:
        return self.session.request(
            "POST",
            f"{self.base_url}{path}",
            json={"identity": identity, "password": password},
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
        )

    def _accept_token(self, response: requests.Response) -> str:
        body = _json_body(response)
        token = body.get("token") if isinstance(body, Mapping) else None
        if not token:
            raise AuthenticationError("No token in authentication response")
        self.token = token
        return token

    def authenticate(
        self,
        identity: str,
        password: str,
        *,
        auth_collection: str = DEFAULT_AUTH_COLLECTION,
    ) -> str:
        """Authenticate a collection user (restricted credential)."""

        path = f"/api/collections/{auth_collection}/auth-with-password"
        try:
            response = self._authenticate_at(path, identity, password)
        except requests.RequestException as exc:
            raise AuthenticationError(f"Authentication request failed: {exc}") from exc
        if not 200 <= response.status_code < 300:
            raise AuthenticationError(
                f"HTTP {response.status_code}: {response.text.strip()[:200]}"
            )
        return self._accept_token(response)

    def authenticate_superuser(
        self,
        identity: str,
        password: str,
        *,
        paths: Iterable[str] = SUPERUSER_AUTH_PATHS,
    ) -> str:
        """Authenticate a privileged credential, trying newer endpoints first."""

        last_error = "no endpoint answered"
        for path in paths:
            try:
                response = self._authenticate_at(path, identity, password)
            except requests.RequestException as exc:
                last_error = str(exc)
                continue
            if response.status_code == 404:
                continue
            if not 200 <= response.status_code < 300:
                last_error = f"HTTP {response.status_code}: {response.text.strip()[:200]}"
                continue
            try:
                return self._accept_token(response)
            except AuthenticationError as exc:
                last_error = str(exc)
        raise AuthenticationError(f"All privileged auth endpoints failed: {last_error}")

    def health_check(self) -> bool:
        try:
            response = self._request("GET", f"{self.base_url}/api/health")
        except requests.RequestException as exc:
            LOGGER.debug("Health check failed: %s", exc)
            return False
        return response.status_code < 500

    # Records ------------------------------------------------------------

    def create_record(self, payload: Mapping[str, Any]) -> ImportResult:
        try:
            response = self._request("POST", self.records_url, json=payload)
        except requests.RequestException as exc:
            return ImportResult(ImportOutcome.FAILED, detail=str(exc))

        body = _json_body(response)
        outcome = classify_create_response(response.status_code, body)
        record_id = body.get("id") if isinstance(body, Mapping) else None
        detail = "" if outcome is ImportOutcome.CREATED else response.text.strip()[:200]
        return ImportResult(outcome, response.status_code, record_id, detail)

    def update_record(self, record_id: str, payload: Mapping[str, Any]) -> bool:
        try:
            response = self._request("PATCH", f"{self.records_url}/{record_id}", json=payload)
        except requests.RequestException as exc:
            LOGGER.debug("Update of %s failed: %s", record_id, exc)
            return False
        return response.status_code in (200, 201)

    def find_record_id(self, random_id: str) -> Optional[str]:
        """Return the id of the record created for ``random_id``, if any.

        Raises :class:`requests.RequestException` or :class:`BackendError` when
        the lookup itself fails, so callers can tell "absent" from "unknown".
        """

        params = {
            "filter": f"(random_id='{escape_filter_value(random_id)}')",
            "fields": "id",
            "perPage": 1,
        }
        response = self._request("GET", self.records_url, params=params)
        if not 200 <= response.status_code < 300:
            raise BackendError(f"Lookup failed with HTTP {response.status_code}")
        body = _json_body(response)
        items = body.get("items") if isinstance(body, Mapping) else body
        if not isinstance(items, list) or not items:
            return None
        first = items[0]
        if isinstance(first, Mapping) and first.get("id"):
            return str(first["id"])
        return None
