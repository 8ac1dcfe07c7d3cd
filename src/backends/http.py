"""HTTP provisioning backend.

Talks to a provisioning service over a small REST API:

    POST   /resources                      create  -> {id, outputs}
    PUT    /resources/{id}                 update  -> {outputs}
    DELETE /resources/{id}                 delete  (404 is success)
    GET    /resources/{id}                 read    -> {status, attributes}
    GET    /types/{type}/immutable         immutable attribute names

Every request carries the deploying account and region as headers; the
token is sent as a bearer credential.
"""

import logging
from typing import Any, Optional

import requests
import urllib3

from backends.base import DEFAULT_IMMUTABLE_ATTRIBUTES
from stack_opr.errors import BackendError

logger = logging.getLogger(__name__)

# Statuses reported by GET /resources/{id}
READY_STATUSES = ('ready', 'available', 'active')
FAILED_STATUSES = ('failed', 'error')

RETRYABLE_STATUS_CODES = (408, 429, 500, 502, 503, 504)


class HttpBackend:
    """Provisioning backend backed by a REST service."""

    def __init__(
        self,
        endpoint: str,
        account: str = '',
        region: str = '',
        token: str = '',
        verify_tls: bool = True,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        """Initialize backend.

        Args:
            endpoint: Service base URL (e.g., https://provisioner:8443)
            account: Deploying account identifier
            region: Target region
            token: Bearer token (optional)
            verify_tls: Verify the service certificate
            timeout: Per-request timeout in seconds
            session: Preconfigured session (tests)
        """
        self.endpoint = endpoint.rstrip('/')
        self.account = account
        self.region = region
        self.timeout = timeout
        self.verify_tls = verify_tls
        self._immutable_cache: dict[str, frozenset[str]] = {}

        if not verify_tls:
            # Self-signed service certificates
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        self.session = session or requests.Session()
        self.session.headers.update({'Accept': 'application/json'})
        if account:
            self.session.headers['X-Account'] = account
        if region:
            self.session.headers['X-Region'] = region
        if token:
            self.session.headers['Authorization'] = f"Bearer {token}"

    def _request(self, method: str, path: str, payload: Optional[dict] = None,
                 context: str = '') -> requests.Response:
        url = f"{self.endpoint}{path}"
        logger.debug(f"{method} {url}")
        try:
            resp = self.session.request(
                method, url, json=payload, timeout=self.timeout, verify=self.verify_tls,
            )
        except requests.exceptions.Timeout as e:
            raise BackendError(context, f"Timeout calling {method} {url}", retryable=True) from e
        except requests.exceptions.ConnectionError as e:
            raise BackendError(context, f"Cannot connect to {self.endpoint}: {e}",
                               retryable=True) from e
        return resp

    def _raise_for_status(self, resp: requests.Response, action: str, context: str = '') -> None:
        if resp.status_code < 400:
            return
        message = _error_message(resp)
        raise BackendError(
            context,
            f"{action} failed (HTTP {resp.status_code}): {message}",
            retryable=resp.status_code in RETRYABLE_STATUS_CODES,
        )

    def _json(self, resp: requests.Response, action: str, context: str = '') -> dict:
        try:
            data = resp.json()
        except ValueError as e:
            raise BackendError(context, f"{action}: invalid JSON response") from e
        if not isinstance(data, dict):
            raise BackendError(context, f"{action}: expected JSON object")
        return data

    def create(self, resource_type: str, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        resp = self._request('POST', '/resources', {'type': resource_type, 'attributes': attributes})
        self._raise_for_status(resp, f"create {resource_type}")
        data = self._json(resp, f"create {resource_type}")
        physical_id = data.get('id')
        if not physical_id:
            raise BackendError('', f"create {resource_type}: response has no 'id'")
        return str(physical_id), dict(data.get('outputs') or {})

    def update(self, physical_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        resp = self._request('PUT', f"/resources/{physical_id}", {'attributes': attributes})
        self._raise_for_status(resp, f"update {physical_id}")
        if not resp.content:
            return {}
        return dict(self._json(resp, f"update {physical_id}").get('outputs') or {})

    def delete(self, physical_id: str) -> None:
        resp = self._request('DELETE', f"/resources/{physical_id}")
        if resp.status_code == 404:
            logger.debug(f"{physical_id} already gone")
            return
        self._raise_for_status(resp, f"delete {physical_id}")

    def _get(self, physical_id: str) -> Optional[dict]:
        resp = self._request('GET', f"/resources/{physical_id}")
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp, f"read {physical_id}")
        return self._json(resp, f"read {physical_id}")

    def is_ready(self, physical_id: str) -> bool:
        data = self._get(physical_id)
        if data is None:
            return False
        status = str(data.get('status', '')).lower()
        if status in FAILED_STATUSES:
            raise BackendError('', f"{physical_id} entered status '{status}'")
        return status in READY_STATUSES

    def read(self, physical_id: str) -> Optional[dict[str, Any]]:
        data = self._get(physical_id)
        if data is None:
            return None
        return dict(data.get('attributes') or {})

    def immutable_attributes(self, resource_type: str) -> frozenset[str]:
        """Ask the service, falling back to the built-in table on 404."""
        if resource_type in self._immutable_cache:
            return self._immutable_cache[resource_type]
        resp = self._request('GET', f"/types/{resource_type}/immutable")
        if resp.status_code == 404:
            names = DEFAULT_IMMUTABLE_ATTRIBUTES.get(resource_type, frozenset())
        else:
            self._raise_for_status(resp, f"immutable attributes for {resource_type}")
            names = frozenset(self._json(resp, resource_type).get('attributes') or ())
        self._immutable_cache[resource_type] = names
        return names

    def health(self) -> bool:
        """True if GET /health answers 200."""
        try:
            resp = self._request('GET', '/health')
        except BackendError:
            return False
        return resp.status_code == 200


def _error_message(resp: requests.Response) -> str:
    """Extract {'error': {'message': ...}} or fall back to raw text."""
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200] or resp.reason or 'no response body'
    if isinstance(data, dict):
        error = data.get('error')
        if isinstance(error, dict):
            return error.get('message', str(error))
        if error:
            return str(error)
    return resp.text[:200]
