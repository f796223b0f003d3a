"""Transactional email through the Resend HTTP API."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

import httpx

from .config import settings

logger = logging.getLogger(__name__)


class EmailError(Exception):
    """The mail provider rejected a message or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


def is_configured() -> bool:
    return bool(settings.RESEND_API_KEY)


def config_status() -> Dict[str, Any]:
    missing = [] if settings.RESEND_API_KEY else ["RESEND_API_KEY"]
    return {
        "configured": not missing,
        "api_key_present": bool(settings.RESEND_API_KEY),
        "from_email": settings.EMAIL_FROM,
        "reply_to_email": settings.EMAIL_REPLY_TO or None,
        "missing_config": missing,
    }


class MailClient:
    def __init__(self, api_key: str, base_url: Optional[str] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        self.api_key = api_key
        self.base_url = (base_url or settings.RESEND_API_URL).rstrip("/")
        self._transport = transport

    def send(self, to: Union[str, List[str]], subject: str, html: str, text: Optional[str] = None,
             reply_to: Optional[str] = None) -> Dict[str, Any]:
        """Send one message; returns the provider's response (`{"id": ...}`)."""
        body: Dict[str, Any] = {
            "from": settings.EMAIL_FROM,
            "to": [to] if isinstance(to, str) else list(to),
            "subject": subject,
            "html": html,
        }
        if text:
            body["text"] = text
        reply_to = reply_to or settings.EMAIL_REPLY_TO
        if reply_to:
            body["reply_to"] = reply_to
        try:
            with httpx.Client(base_url=self.base_url, timeout=settings.HTTP_TIMEOUT_SECONDS,
                              headers={"Authorization": f"Bearer {self.api_key}"},
                              transport=self._transport) as client:
                response = client.post("/emails", json=body)
        except httpx.HTTPError as exc:
            raise EmailError(f"Email request failed: {exc}") from exc
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400:
            message = data.get("message") if isinstance(data, dict) else None
            raise EmailError(message or f"Email provider returned HTTP {response.status_code}",
                             status_code=response.status_code, details=data)
        logger.info("email sent id=%s subject=%r", data.get("id"), subject)
        return data


def client() -> MailClient:
    return MailClient(settings.RESEND_API_KEY)
