"""HTTP client for the external practice-management-system API.

One method per resource/action. The client classifies failures but never
retries; retry and re-authentication policy live in ``PmsSession``.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from ...config import Settings, get_settings
from .errors import PmsApiError, PmsTransportError, PmsUnauthorizedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    token: str
    obtained_at: datetime


@dataclass
class Page:
    data: List[Dict[str, Any]] = field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[str] = None


def extract_data_array(data: Any) -> List[Dict[str, Any]]:
    # Current API returns flat lists; older shapes nest the list one level down.
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for value in data.values():
            if isinstance(value, list):
                return value
    return []


def format_since(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat() + "Z" if value.tzinfo is None else value.isoformat()


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


class PmsApiClient:
    def __init__(
        self,
        base_url: str,
        subdomain: str,
        location_id: str,
        api_version: str = "v20240412",
        timeout: float = 30.0,
        http: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.subdomain = subdomain
        self.location_id = location_id
        self.api_version = api_version
        self.timeout = timeout
        self._owns_http = http is None
        self.http = http or httpx.Client()
        self.credential: Optional[Credential] = None

    @classmethod
    def from_config(cls, config, settings: Optional[Settings] = None, http: Optional[httpx.Client] = None) -> "PmsApiClient":
        settings = settings or get_settings()
        return cls(
            base_url=settings.pms_base_url(config.environment),
            subdomain=config.subdomain,
            location_id=str(config.location_id),
            api_version=settings.pms_api_version,
            timeout=settings.pms_request_timeout_seconds,
            http=http,
        )

    def set_credential(self, credential: Credential) -> None:
        self.credential = credential

    def close(self) -> None:
        """Release the connection pool when this client created it."""
        if self._owns_http:
            self.http.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return self.http.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise PmsTransportError(f"{method} {url} timed out after {self.timeout}s", timeout=True) from e
        except httpx.TransportError as e:
            raise PmsTransportError(f"{method} {url} connection failed: {e}") from e
        except httpx.HTTPError as e:
            raise PmsTransportError(f"{method} {url} failed: {e}") from e

    def _raise_for_status(self, response: httpx.Response, what: str) -> None:
        if 200 <= response.status_code < 300:
            return
        body = response.text
        reason = response.reason_phrase or "error"
        if response.status_code == 401:
            raise PmsUnauthorizedError(401, f"{what}: {reason}", body)
        raise PmsApiError(
            response.status_code,
            f"{what}: {reason}",
            body,
            retry_after=_parse_retry_after(response),
        )

    def _json(self, response: httpx.Response, what: str) -> Dict[str, Any]:
        try:
            return response.json()
        except ValueError as e:
            raise PmsApiError(response.status_code, f"{what}: invalid JSON response", response.text) from e

    def request_token(self, api_key: str) -> str:
        url = f"{self.base_url}/authenticates"
        response = self._send(
            "POST",
            url,
            headers={"Nex-Api-Version": self.api_version, "Authorization": api_key},
        )
        self._raise_for_status(response, "Authentication failed")
        payload = self._json(response, "Authentication failed")
        token = (payload.get("data") or {}).get("token")
        if not token:
            raise PmsApiError(response.status_code, "Authentication failed: no token in response", response.text)
        return token

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if self.credential is None:
            raise PmsUnauthorizedError(401, "Not authenticated")

        query: Dict[str, Any] = {"subdomain": self.subdomain, "location_id": self.location_id}
        for key, value in (params or {}).items():
            if value is not None:
                query[key] = value

        headers = {
            "Authorization": f"Bearer {self.credential.token}",
            "Content-Type": "application/json",
            "Nex-Api-Version": self.api_version,
        }
        response = self._send(method, f"{self.base_url}{path}", params=query, headers=headers, json=body)
        what = f"{method} {path}"
        self._raise_for_status(response, what)
        return self._json(response, what)

    def _list(self, path: str, per_page: int, cursor: Optional[str], **params) -> Page:
        payload = self._request("GET", path, params={"per_page": per_page, "end_cursor": cursor, **params})
        page_info = payload.get("page_info") or {}
        next_cursor = page_info.get("end_cursor")
        has_more = bool(page_info.get("has_next_page") and next_cursor)
        return Page(
            data=extract_data_array(payload.get("data")),
            has_more=has_more,
            next_cursor=next_cursor if has_more else None,
        )

    def _create(self, path: str, envelope: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self._request("POST", path, body={envelope: payload})
        data = response.get("data")
        return data if isinstance(data, dict) else {}

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    def list_providers(self, per_page: int = 100, cursor: Optional[str] = None) -> Page:
        return self._list("/providers", per_page, cursor)

    def list_operatories(self, per_page: int = 100, cursor: Optional[str] = None) -> Page:
        return self._list("/operatories", per_page, cursor)

    def list_appointment_types(self, per_page: int = 100, cursor: Optional[str] = None) -> Page:
        return self._list("/appointment_types", per_page, cursor)

    def list_payment_types(self, per_page: int = 10, cursor: Optional[str] = None) -> Page:
        return self._list("/payment_types", per_page, cursor)

    def list_adjustment_types(self, per_page: int = 10, cursor: Optional[str] = None) -> Page:
        return self._list("/adjustment_types", per_page, cursor)

    # ------------------------------------------------------------------
    # Changed entities
    # ------------------------------------------------------------------

    def list_changed_patients(self, updated_since: datetime, per_page: int = 100, cursor: Optional[str] = None) -> Page:
        return self._list("/patients", per_page, cursor, updated_since=format_since(updated_since))

    def list_changed_appointments(
        self,
        updated_since: datetime,
        per_page: int = 100,
        cursor: Optional[str] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> Page:
        return self._list(
            "/appointments",
            per_page,
            cursor,
            updated_since=format_since(updated_since),
            start=start,
            end=end,
        )

    def list_changed_payments(self, updated_since: datetime, per_page: int = 100, cursor: Optional[str] = None) -> Page:
        return self._list("/payments", per_page, cursor, updated_since=format_since(updated_since))

    def list_changed_adjustments(self, updated_since: datetime, per_page: int = 100, cursor: Optional[str] = None) -> Page:
        return self._list("/adjustments", per_page, cursor, updated_since=format_since(updated_since))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_appointment(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._create("/appointments", "appt", payload)

    def create_payment(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._create("/payment_transactions", "payment_transaction", payload)

    def create_adjustment(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._create("/adjustments", "adjustment", payload)
