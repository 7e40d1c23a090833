"""
Service Client - HTTP/JSON-RPC access to managed nodes and chain endpoints.

Used for:
- Probing the local managed node (health, bootstrap state, node ID, version)
- Querying balances on a chain RPC endpoint

Features:
- Configurable timeouts, retries and backoff
- Standard exception hierarchy (never leaks raw requests errors)
- JSON-RPC 2.0 envelope handling

Usage:
    from core.services import get_service_client, ServiceError

    client = get_service_client("node", base_url="http://127.0.0.1:9650")

    try:
        result = client.call_rpc("/ext/info", "info.getNodeID")
    except ServiceUnavailable:
        # Node is down, report not-ready
        pass
    except ServiceRpcError as e:
        logger.error(f"RPC error {e.code}: {e.message}")

Per-service environment overrides:
    {SERVICE}_TIMEOUT_S
    {SERVICE}_MAX_RETRIES
    {SERVICE}_API_KEY
"""

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import requests

logger = logging.getLogger("core.services")


# =============================================================================
# EXCEPTIONS
# =============================================================================

class ServiceError(Exception):
    """Base error for any remote endpoint problem."""
    pass


class ServiceUnavailable(ServiceError):
    """Endpoint not reachable - connection error, timeout, or all retries exhausted."""

    def __init__(self, service: str, url: str, cause: Optional[Exception] = None):
        self.service = service
        self.url = url
        self.cause = cause
        message = f"'{service}' at {url} is unavailable"
        if cause:
            message += f": {cause}"
        super().__init__(message)


class ServiceHttpError(ServiceError):
    """HTTP 4xx/5xx error from the endpoint."""

    def __init__(self, status: int, body: Optional[str] = None, url: Optional[str] = None):
        self.status = status
        self.body = body
        self.url = url
        truncated = body[:200] if body else ""
        super().__init__(f"HTTP {status}: {truncated}")


class ServiceDecodeError(ServiceError):
    """Response wasn't valid JSON or missing expected fields."""

    def __init__(self, message: str, url: Optional[str] = None):
        self.url = url
        super().__init__(message)


class ServiceAuthError(ServiceError):
    """Authentication failed (401/403)."""

    def __init__(self, service: str, message: str = "Authentication required"):
        self.service = service
        super().__init__(f"Auth error for '{service}': {message}")


class ServiceRpcError(ServiceError):
    """JSON-RPC call returned an error object."""

    def __init__(self, method: str, code: int, message: str):
        self.method = method
        self.code = code
        self.message = message
        super().__init__(f"{method} failed ({code}): {message}")


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class ServiceConfig:
    """Configuration for a remote endpoint."""
    name: str
    base_url: str
    timeout_s: float = 10.0
    max_retries: int = 3
    backoff_factor: float = 2.0  # Exponential backoff multiplier
    api_key: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


# =============================================================================
# SERVICE CLIENT
# =============================================================================

class ServiceClient:
    """
    Low-level HTTP client with retry and JSON-RPC support.

    Usage:
        client = ServiceClient(config)
        result = client.get_json("/ext/health")
        result = client.call_rpc("/ext/bc/C/rpc", "eth_getBalance", [addr, "latest"])
    """

    def __init__(self, config: ServiceConfig):
        self.config = config
        self._session = requests.Session()
        self._rpc_id = 0

        self._session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        self._session.headers.update(config.headers)

    @property
    def service_name(self) -> str:
        return self.config.name

    @property
    def base_url(self) -> str:
        return self.config.base_url

    def _full_url(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return self.config.base_url.rstrip("/") + path

    def _get_headers(self) -> Dict[str, str]:
        headers = {}
        if self.config.api_key:
            headers["X-API-Key"] = self.config.api_key
        return headers

    # =========================================================================
    # PUBLIC METHODS
    # =========================================================================

    def get_json(
        self,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> dict:
        """
        Make a GET request and return JSON response.

        Raises:
            ServiceUnavailable: Connection failed or timeout
            ServiceHttpError: HTTP 4xx/5xx
            ServiceDecodeError: Invalid JSON response
        """
        return self._request_json("GET", path, params=params, timeout=timeout)

    def post_json(
        self,
        path: str,
        json: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> dict:
        """Make a POST request with JSON body and return JSON response."""
        return self._request_json("POST", path, json=json, timeout=timeout)

    def call_rpc(
        self,
        path: str,
        method: str,
        params: Any = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Make a JSON-RPC 2.0 call and return its `result`.

        Args:
            path: Endpoint path (e.g., "/ext/info")
            method: RPC method (e.g., "info.getNodeID")
            params: Positional list or named dict

        Raises:
            ServiceRpcError: Response carried an `error` object
            ServiceDecodeError: Response had neither `result` nor `error`
        """
        self._rpc_id += 1
        body = {
            "jsonrpc": "2.0",
            "id": self._rpc_id,
            "method": method,
            "params": params if params is not None else {},
        }
        response = self.post_json(path, json=body, timeout=timeout)

        if "error" in response and response["error"]:
            error = response["error"]
            raise ServiceRpcError(method, int(error.get("code", -1)), str(error.get("message", "")))
        if "result" not in response:
            raise ServiceDecodeError(f"{method}: response has no result", self._full_url(path))
        return response["result"]

    def close(self):
        self._session.close()

    # =========================================================================
    # CORE REQUEST LOGIC
    # =========================================================================

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> dict:
        """
        Make HTTP request with retry logic.

        Retries on connection errors, timeouts and HTTP 5xx.
        Does NOT retry on HTTP 4xx or JSON decode errors.
        """
        url = self._full_url(path)
        timeout = timeout or self.config.timeout_s
        headers = self._get_headers()

        last_exception: Optional[Exception] = None

        for attempt in range(self.config.max_retries):
            try:
                resp = self._session.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=headers,
                    timeout=timeout,
                )

                if resp.status_code >= 500:
                    last_exception = ServiceHttpError(resp.status_code, resp.text, url)
                    self._log_retry(attempt, url, f"HTTP {resp.status_code}")
                    continue

                if resp.status_code in (401, 403):
                    raise ServiceAuthError(self.service_name, resp.text)

                if resp.status_code >= 400:
                    raise ServiceHttpError(resp.status_code, resp.text, url)

                try:
                    return resp.json()
                except ValueError as e:
                    raise ServiceDecodeError(f"Invalid JSON from {url}: {e}", url)

            except (requests.ConnectionError, requests.Timeout) as e:
                last_exception = e
                self._log_retry(attempt, url, str(e))
                continue

        logger.warning(
            f"'{self.service_name}' unavailable after {self.config.max_retries} attempts: {url}"
        )
        raise ServiceUnavailable(self.service_name, url, last_exception)

    def _log_retry(self, attempt: int, url: str, reason: str):
        """Log retry attempt and sleep."""
        if attempt < self.config.max_retries - 1:
            sleep_time = self.config.backoff_factor ** attempt
            logger.debug(
                f"[{self.service_name}] Attempt {attempt + 1}/{self.config.max_retries} "
                f"failed ({reason}), retrying in {sleep_time:.1f}s..."
            )
            time.sleep(sleep_time)


# =============================================================================
# FACTORY
# =============================================================================

# Default timeouts per endpoint kind
_SERVICE_DEFAULTS = {
    "node": {"timeout": 5, "retries": 1},
    "rpc": {"timeout": 30, "retries": 3},
}


def get_service_config(service_name: str, base_url: str) -> ServiceConfig:
    """
    Build configuration for an endpoint, applying environment overrides.

    Args:
        service_name: Endpoint kind ("node", "rpc")
        base_url: e.g. "http://127.0.0.1:9650"
    """
    defaults = _SERVICE_DEFAULTS.get(service_name, {"timeout": 30, "retries": 3})

    env_prefix = service_name.upper()
    timeout_s = float(os.getenv(f"{env_prefix}_TIMEOUT_S", str(defaults["timeout"])))
    max_retries = int(os.getenv(f"{env_prefix}_MAX_RETRIES", str(defaults["retries"])))
    api_key = os.getenv(f"{env_prefix}_API_KEY")

    return ServiceConfig(
        name=service_name,
        base_url=base_url,
        timeout_s=timeout_s,
        max_retries=max_retries,
        api_key=api_key,
    )


def get_service_client(service_name: str, base_url: str) -> ServiceClient:
    """Get a ServiceClient for an endpoint."""
    return ServiceClient(get_service_config(service_name, base_url))
