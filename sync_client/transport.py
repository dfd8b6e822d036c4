from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

from .exceptions import ProtocolError, TransientNetworkError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {401, 408, 429}


class SyncTransport:
    """Calls the server's sync endpoints. Implementations raise TransientNetworkError or ProtocolError."""

    def push_batch(self, device_id: str, user_id: Optional[str], operations: List[Dict[str, Any]]) -> Dict[str, Any]:
        raise NotImplementedError

    def pull_delta(
        self,
        since: Optional[str],
        limit: Optional[int] = None,
        entity_types: Optional[Iterable[str]] = None,
        device_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def get_status(self) -> Dict[str, Any]:
        raise NotImplementedError

    def force(self, device_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    def list_conflicts(self, **filters) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def resolve_conflict(self, conflict_id: str, strategy: str, merged_data: Optional[Dict] = None) -> Dict[str, Any]:
        raise NotImplementedError


def delta_params(since, limit, entity_types, device_id) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    if since:
        params["since"] = since
    if limit:
        params["limit"] = limit
    if entity_types:
        params["entity_types"] = ",".join(entity_types)
    if device_id:
        params["device_id"] = device_id
    return params


def check_response(status_code: int, body: Any, reason: str = "") -> Any:
    """Map an HTTP answer onto the client's error taxonomy; return the JSON body when usable."""
    if status_code >= 500 or status_code in RETRYABLE_STATUS:
        raise TransientNetworkError(f"Server answered {status_code} {reason}".strip(), status_code=status_code)
    if status_code >= 400:
        raise ProtocolError(f"Server rejected the request with {status_code}", status_code=status_code, body=body)
    if body is None:
        raise ProtocolError("Server answered with a non-JSON body", status_code=status_code)
    return body


class HttpSyncTransport(SyncTransport):
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.token_provider = token_provider
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    def _headers(self) -> Dict[str, str]:
        token = self.token_provider() if self.token_provider else self.token
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self.session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except requests.Timeout as exc:
            raise TransientNetworkError(f"Timed out after {self.timeout}s: {url}") from exc
        except requests.ConnectionError as exc:
            raise TransientNetworkError(f"Cannot reach {url}: {exc}") from exc
        try:
            body = response.json()
        except ValueError:
            body = None
        logger.debug("%s %s -> %s", method, url, response.status_code)
        return check_response(response.status_code, body, response.reason or "")

    def push_batch(self, device_id, user_id, operations):
        payload = {"device_id": device_id, "operations": list(operations)}
        if user_id:
            payload["user_id"] = user_id
        return self._request("POST", "api/sync/batch", json=payload)

    def pull_delta(self, since, limit=None, entity_types=None, device_id=None):
        return self._request("GET", "api/sync/delta", params=delta_params(since, limit, entity_types, device_id))

    def get_status(self):
        return self._request("GET", "api/sync/status")

    def force(self, device_id):
        return self._request("POST", "api/sync/force", json={"device_id": device_id})

    def list_conflicts(self, **filters):
        params = {key: value for key, value in filters.items() if value}
        return self._request("GET", "api/sync/conflicts", params=params)

    def resolve_conflict(self, conflict_id, strategy, merged_data=None):
        payload: Dict[str, Any] = {"strategy": strategy}
        if merged_data is not None:
            payload["merged_data"] = merged_data
        return self._request("POST", f"api/sync/conflicts/{conflict_id}/resolve", json=payload)
