"""Authorize.net JSON API client.

Authorize.net exposes one endpoint per environment that accepts a JSON
envelope named after the request type. Responses are UTF-8 with a BOM.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import httpx

from ..config import settings

logger = logging.getLogger(__name__)

PRODUCTION_URL = "https://api.authorize.net/xml/v1/request.api"
SANDBOX_URL = "https://apitest.authorize.net/xml/v1/request.api"


class AuthorizeNetError(Exception):
    """Authorize.net rejected a request or could not be reached."""

    def __init__(self, message: str, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.code = code
        self.details = details


class AuthorizeNetClient:
    def __init__(self, api_login_id: str, transaction_key: str, is_production: bool = False,
                 transport: Optional[httpx.BaseTransport] = None):
        self.api_login_id = api_login_id
        self.transaction_key = transaction_key
        self.url = PRODUCTION_URL if is_production else SANDBOX_URL
        self._transport = transport

    def _auth(self) -> Dict[str, str]:
        return {"name": self.api_login_id, "transactionKey": self.transaction_key}

    def _post(self, request_name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        envelope = {request_name: {"merchantAuthentication": self._auth(), **body}}
        try:
            with httpx.Client(timeout=settings.HTTP_TIMEOUT_SECONDS, transport=self._transport) as client:
                response = client.post(self.url, json=envelope)
        except httpx.HTTPError as exc:
            raise AuthorizeNetError(f"Authorize.net request failed: {exc}") from exc
        if response.status_code >= 400:
            raise AuthorizeNetError(f"Authorize.net returned HTTP {response.status_code}")
        try:
            data = json.loads(response.content.decode("utf-8-sig"))
        except ValueError as exc:
            raise AuthorizeNetError("Authorize.net returned an unreadable response") from exc
        return data

    @staticmethod
    def _first_message(data: Dict[str, Any]) -> Dict[str, Any]:
        messages = (data.get("messages") or {}).get("message") or [{}]
        return messages[0]

    def authenticate(self) -> None:
        """Validate the credentials; raises `AuthorizeNetError` when rejected."""
        data = self._post("authenticateTestRequest", {})
        if (data.get("messages") or {}).get("resultCode") != "Ok":
            msg = self._first_message(data)
            raise AuthorizeNetError(msg.get("text") or "Authentication failed", code=msg.get("code"), details=data)

    def charge_card(
        self,
        *,
        amount: float,
        card_number: str,
        expiration_date: str,
        card_code: Optional[str] = None,
        bill_to: Optional[Dict[str, str]] = None,
        invoice_number: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Run an `authCaptureTransaction`.

        Returns `{transaction_id, account_type, account_number, auth_code,
        raw}` on approval and raises `AuthorizeNetError` otherwise.
        """
        credit_card: Dict[str, str] = {"cardNumber": card_number, "expirationDate": expiration_date}
        if card_code:
            credit_card["cardCode"] = card_code
        txn: Dict[str, Any] = {
            "transactionType": "authCaptureTransaction",
            "amount": f"{amount:.2f}",
            "payment": {"creditCard": credit_card},
        }
        if invoice_number or description:
            txn["order"] = {k: v for k, v in (("invoiceNumber", invoice_number), ("description", description)) if v}
        if bill_to:
            txn["billTo"] = bill_to
        data = self._post("createTransactionRequest", {"transactionRequest": txn})
        result = data.get("transactionResponse") or {}
        if result.get("responseCode") == "1":
            logger.info("authorize.net charge approved trans_id=%s", result.get("transId"))
            return {
                "transaction_id": result.get("transId"),
                "account_type": result.get("accountType"),
                "account_number": result.get("accountNumber"),
                "auth_code": result.get("authCode"),
                "raw": result,
            }
        errors = result.get("errors") or []
        if errors:
            message = errors[0].get("errorText") or "Transaction declined"
            code = errors[0].get("errorCode")
        else:
            msg = self._first_message(data)
            message = msg.get("text") or "Transaction declined"
            code = msg.get("code")
        logger.warning("authorize.net charge declined code=%s message=%s", code, message)
        raise AuthorizeNetError(message, code=code, details=result or data)
