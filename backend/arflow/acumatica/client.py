"""Acumatica contract-based REST API client with cookie session login."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..config import settings

logger = logging.getLogger(__name__)


class AcumaticaAPIError(Exception):
    """Base exception for Acumatica API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class AuthenticationError(AcumaticaAPIError):
    """Login was rejected."""

    pass


class AcumaticaClient:
    """Synchronous client for one Acumatica tenant.

    Login stores the ASP.NET session cookies on the underlying
    `httpx.Client`; callers must `logout()` when finished because
    Acumatica licenses concurrent API sessions.
    """

    def __init__(
        self,
        instance_url: str,
        api_version: str,
        company_id: str,
        username: str,
        password: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.instance_url = instance_url.rstrip("/")
        self.api_version = api_version
        self.company_id = company_id
        self._username = username
        self._password = password
        self._timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self._transport = transport
        self._client: Optional[httpx.Client] = None
        self.logged_in = False

    @property
    def entity_path(self) -> str:
        return f"/entity/Default/{self.api_version}"

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.instance_url,
                timeout=httpx.Timeout(self._timeout),
                headers={"Accept": "application/json"},
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "AcumaticaClient":
        self.login()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.logout()

    # === Authentication ===

    def login(self) -> None:
        client = self._get_client()
        try:
            response = client.post(
                "/entity/auth/login",
                json={"name": self._username, "password": self._password, "company": self.company_id},
            )
        except httpx.HTTPError as exc:
            raise AcumaticaAPIError(f"Could not reach Acumatica at {self.instance_url}: {exc}") from exc
        if response.status_code in (401, 403):
            raise AuthenticationError("Invalid Acumatica credentials", status_code=response.status_code,
                                      details=self._error_body(response))
        self._raise_for_status(response, "Login failed")
        self.logged_in = True
        logger.info("acumatica login ok instance=%s company=%s", self.instance_url, self.company_id)

    def logout(self) -> None:
        try:
            if self.logged_in and self._client is not None:
                self._client.post("/entity/auth/logout")
        except httpx.HTTPError as exc:
            logger.warning("acumatica logout failed: %s", exc)
        finally:
            self.logged_in = False
            self.close()

    # === Requests ===

    def request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                json: Any = None) -> Any:
        """Send a request; relative paths are resolved under the entity endpoint."""
        if not path.startswith("/"):
            path = f"{self.entity_path}/{path}"
        client = self._get_client()
        try:
            response = client.request(method, path, params=params, json=json)
        except httpx.HTTPError as exc:
            raise AcumaticaAPIError(f"Acumatica request failed: {exc}") from exc
        self._raise_for_status(response, f"{method} {path} failed")
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.request("GET", path, params=params)

    def put(self, path: str, json: Any, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.request("PUT", path, params=params, json=json)

    def post(self, path: str, json: Any = None) -> Any:
        return self.request("POST", path, json=json)

    # === Helpers ===

    @staticmethod
    def _error_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    def _raise_for_status(self, response: httpx.Response, prefix: str) -> None:
        if response.status_code < 400:
            return
        body = self._error_body(response)
        detail = None
        if isinstance(body, dict):
            detail = (body.get("exceptionMessage") or body.get("message")
                      or body.get("error_description") or body.get("error"))
        message = f"{prefix}: {response.status_code}"
        if detail:
            message = f"{message} {detail}"
        raise AcumaticaAPIError(message, status_code=response.status_code, details=body)
