"""HTTP client for the Permit.io REST API."""

import json
import logging
import os
import threading
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests
import urllib3
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.permit.io"
DEFAULT_PAGE_SIZE = 100
DEFAULT_TIMEOUT = 30

SESSION_PATH = os.path.join(os.path.expanduser("~"), ".permit", "session.json")

# Retried on transient failures; the API rate-limits per key.
RETRY_STATUSES = (429, 500, 502, 503, 504)


class ExportCancelled(Exception):
    """Raised for any request issued after the client was cancelled."""


class Scope:
    """Organization/project/environment an API key is bound to."""

    def __init__(self, organization_id: str = "", project_id: str = "",
                 environment_id: str = ""):
        self.organization_id = organization_id
        self.project_id = project_id
        self.environment_id = environment_id

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Scope":
        data = data or {}
        return cls(
            organization_id=data.get("organization_id") or "",
            project_id=data.get("project_id") or "",
            environment_id=data.get("environment_id") or "",
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Scope):
            return NotImplemented
        return (self.organization_id, self.project_id, self.environment_id) == \
            (other.organization_id, other.project_id, other.environment_id)

    def __repr__(self) -> str:
        return (f"Scope(organization_id={self.organization_id!r}, "
                f"project_id={self.project_id!r}, environment_id={self.environment_id!r})")


class ScopeValidation:
    """Outcome of checking an API key against a required access level."""

    def __init__(self, valid: bool, error: Optional[str] = None,
                 scope: Optional[Scope] = None):
        self.valid = valid
        self.error = error
        self.scope = scope


def extract_records(payload: Any) -> List[Dict[str, Any]]:
    """Return the records of a list response, bare or wrapped in {"data": [...]}."""
    if isinstance(payload, dict):
        payload = payload.get("data")
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, dict)]


def error_message(exc: Exception) -> str:
    """Best human-readable message for a failed request."""
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        resp = exc.response
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            for field in ("message", "detail", "error"):
                if body.get(field):
                    return f"{resp.status_code}: {body[field]}"
        return f"{resp.status_code}: {resp.reason or 'request failed'}"
    return str(exc) or exc.__class__.__name__


class PermitClient:
    """HTTP client for the Permit.io API (Bearer API key auth)."""

    def __init__(self, token: str, api_url: str = DEFAULT_API_URL,
                 timeout: float = DEFAULT_TIMEOUT, insecure: bool = False,
                 cancel_event: Optional[threading.Event] = None):
        self.base_url = api_url.rstrip("/")
        self.timeout = timeout
        self.project_id = ""
        self.environment_id = ""
        self._cancelled = cancel_event or threading.Event()
        self.session = requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        retry = Retry(total=3, backoff_factor=0.5, status_forcelist=RETRY_STATUSES,
                      allowed_methods=frozenset({"GET"}), respect_retry_after_header=True)
        adapter = HTTPAdapter(max_retries=retry)
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)
        self.session.verify = not insecure
        if insecure:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    # --- cancellation ---

    def cancel(self):
        """Make every further request raise ExportCancelled."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    # --- transport ---

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if self._cancelled.is_set():
            raise ExportCancelled(f"request to {path} abandoned")
        logger.debug(f"GET {path} {params or ''}")
        resp = self.session.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json() if resp.content else None

    def paginate(self, path: str, params: Optional[Dict[str, Any]] = None,
                 per_page: int = DEFAULT_PAGE_SIZE) -> List[Dict[str, Any]]:
        """Fetch every page of a list endpoint.

        Pages are requested until one comes back with fewer than per_page
        records.
        """
        records: List[Dict[str, Any]] = []
        page = 1
        while True:
            query = dict(params or {})
            query["page"] = page
            query["per_page"] = per_page
            batch = extract_records(self.get(path, query))
            records.extend(batch)
            if len(batch) < per_page:
                return records
            page += 1

    # --- scope ---

    def get_scope(self) -> Scope:
        return Scope.from_dict(self.get("/v2/api-key/scope"))

    def bind_scope(self, scope: Scope):
        """Set the project and environment used in schema and facts paths."""
        self.project_id = scope.project_id
        self.environment_id = scope.environment_id

    def _schema(self, path: str) -> str:
        return f"/v2/schema/{self.project_id}/{self.environment_id}{path}"

    def _facts(self, path: str) -> str:
        return f"/v2/facts/{self.project_id}/{self.environment_id}{path}"

    # --- entities ---

    def list_resources(self) -> List[Dict[str, Any]]:
        return self.paginate(self._schema("/resources"))

    def get_resource(self, resource_key: str) -> Optional[Dict[str, Any]]:
        data = self.get(self._schema(f"/resources/{quote(resource_key, safe='')}"))
        return data if isinstance(data, dict) else None

    def list_resource_relations(self, resource_key: str) -> List[Dict[str, Any]]:
        return self.paginate(self._schema(f"/resources/{quote(resource_key, safe='')}/relations"))

    def list_resource_roles(self, resource_key: str) -> List[Dict[str, Any]]:
        return self.paginate(self._schema(f"/resources/{quote(resource_key, safe='')}/roles"))

    def list_roles(self) -> List[Dict[str, Any]]:
        return self.paginate(self._schema("/roles"))

    def list_condition_sets(self) -> List[Dict[str, Any]]:
        return self.paginate(self._schema("/condition_sets"))

    def list_condition_set_rules(self) -> List[Dict[str, Any]]:
        # The endpoint rejects requests that omit any of the filter keys.
        filters = {"user_set": "", "permission": "", "resource_set": ""}
        return self.paginate(self._facts("/set_rules"), filters)


def validate_api_key_scope(token: str, kind: str, api_url: str = DEFAULT_API_URL,
                           timeout: float = DEFAULT_TIMEOUT,
                           insecure: bool = False) -> ScopeValidation:
    """Check that token is an API key with at least `kind` level access.

    kind is one of "organization", "project" or "environment".
    """
    client = PermitClient(token, api_url=api_url, timeout=timeout, insecure=insecure)
    try:
        scope = client.get_scope()
    except requests.RequestException as e:
        return ScopeValidation(False, error_message(e))

    if not scope.organization_id:
        return ScopeValidation(False, "API key scope has no organization", scope)
    if kind in ("project", "environment") and not scope.project_id:
        return ScopeValidation(False, "API key is not scoped to a project", scope)
    if kind == "environment" and not scope.environment_id:
        return ScopeValidation(False, "API key is not scoped to an environment", scope)
    return ScopeValidation(True, None, scope)


def current_token(session_path: str = SESSION_PATH) -> Optional[str]:
    """API key of the active session: PERMIT_API_KEY, else the saved session file."""
    token = os.environ.get("PERMIT_API_KEY")
    if token:
        return token
    if not os.path.exists(session_path):
        return None
    try:
        with open(session_path) as f:
            data = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        logger.warning(f"Failed to read session file {session_path}: {e}")
        return None
    if not isinstance(data, dict):
        return None
    return data.get("token") or None
