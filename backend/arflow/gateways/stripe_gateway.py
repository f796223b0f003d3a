"""Thin wrapper over the `stripe` SDK.

Each call takes the organization's secret key explicitly (`api_key=`)
because credentials are per tenant; nothing here touches the global
`stripe.api_key`. Services call these functions instead of the SDK so
that tests can replace them one by one.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional, Tuple

import stripe

logger = logging.getLogger(__name__)

StripeError = stripe.StripeError
SignatureVerificationError = stripe.SignatureVerificationError

WEBHOOK_EVENTS = [
    "checkout.session.completed",
    "checkout.session.expired",
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
]


def field(obj: Any, key: str, default: Any = None) -> Any:
    """Read `key` from a StripeObject, plain dict or attribute holder."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        value = getattr(obj, key, default)
    return default if value is None else value


def create_checkout_session(
    secret_key: str,
    *,
    amount_cents: int,
    product_name: str,
    description: Optional[str],
    metadata: Dict[str, str],
    embedded: bool,
    success_url: str,
    cancel_url: str,
    customer_email: Optional[str] = None,
    expires_at: Optional[int] = None,
):
    params: Dict[str, Any] = {
        "mode": "payment",
        "line_items": [{
            "price_data": {
                "currency": "usd",
                "product_data": {"name": product_name, **({"description": description} if description else {})},
                "unit_amount": amount_cents,
            },
            "quantity": 1,
        }],
        "metadata": metadata,
        "payment_intent_data": {"metadata": metadata},
    }
    if embedded:
        params["ui_mode"] = "embedded"
        params["return_url"] = success_url
    else:
        params["success_url"] = success_url
        params["cancel_url"] = cancel_url
    if customer_email:
        params["customer_email"] = customer_email
    if expires_at:
        params["expires_at"] = expires_at
    session = stripe.checkout.Session.create(api_key=secret_key, **params)
    logger.info("stripe checkout session created id=%s embedded=%s", field(session, "id"), embedded)
    return session


def retrieve_checkout_session(secret_key: str, session_id: str):
    return stripe.checkout.Session.retrieve(
        session_id, api_key=secret_key, expand=["payment_intent", "payment_intent.payment_method"]
    )


def create_payment_intent(
    secret_key: str,
    *,
    amount_cents: int,
    metadata: Dict[str, str],
    description: Optional[str] = None,
    capture_method: str = "automatic",
):
    """Create an unconfirmed intent for client-side confirmation.

    Automatic payment methods are tried first; accounts without them
    enabled reject the call, in which case a card-only intent is created.
    """
    params: Dict[str, Any] = {
        "amount": amount_cents,
        "currency": "usd",
        "metadata": metadata,
        "capture_method": capture_method,
    }
    if description:
        params["description"] = description
    try:
        return stripe.PaymentIntent.create(
            api_key=secret_key, automatic_payment_methods={"enabled": True}, **params
        )
    except StripeError as exc:
        logger.warning("automatic payment methods rejected, retrying card-only: %s", exc)
        return stripe.PaymentIntent.create(api_key=secret_key, payment_method_types=["card"], **params)


def charge_card(
    secret_key: str,
    *,
    amount_cents: int,
    card_number: str,
    exp_month: int,
    exp_year: int,
    cvc: Optional[str],
    billing_details: Optional[Dict[str, Any]],
    metadata: Dict[str, str],
    description: Optional[str] = None,
    capture_method: str = "automatic",
):
    """Create a card PaymentMethod and a confirmed PaymentIntent for it."""
    card: Dict[str, Any] = {"number": card_number, "exp_month": exp_month, "exp_year": exp_year}
    if cvc:
        card["cvc"] = cvc
    pm_params: Dict[str, Any] = {"type": "card", "card": card}
    if billing_details:
        pm_params["billing_details"] = billing_details
    payment_method = stripe.PaymentMethod.create(api_key=secret_key, **pm_params)
    return stripe.PaymentIntent.create(
        api_key=secret_key,
        amount=amount_cents,
        currency="usd",
        payment_method=field(payment_method, "id"),
        confirm=True,
        capture_method=capture_method,
        automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
        metadata=metadata,
        description=description,
    )


def retrieve_payment_intent(secret_key: str, payment_intent_id: str):
    return stripe.PaymentIntent.retrieve(
        payment_intent_id, api_key=secret_key, expand=["payment_method", "latest_charge"]
    )


def card_details(payment_intent) -> Tuple[Optional[str], Optional[str]]:
    """Return `(last4, BRAND)` from an expanded intent, if present."""
    card = None
    payment_method = field(payment_intent, "payment_method")
    if payment_method is not None and not isinstance(payment_method, str):
        card = field(payment_method, "card")
    if card is None:
        charge = field(payment_intent, "latest_charge")
        if charge is not None and not isinstance(charge, str):
            card = field(field(charge, "payment_method_details"), "card")
    if card is None:
        return None, None
    brand = field(card, "brand")
    return field(card, "last4"), brand.upper() if brand else None


def retrieve_account(secret_key: str):
    return stripe.Account.retrieve(api_key=secret_key)


def ensure_webhook_endpoint(
    secret_key: str, url: str, events: Iterable[str] = WEBHOOK_EVENTS
) -> Tuple[str, Optional[str]]:
    """Return `(endpoint_id, signing_secret)` for `url`, creating it if needed.

    Stripe only reveals the signing secret on creation, so an endpoint
    that already exists yields `None` for the secret.
    """
    existing = stripe.WebhookEndpoint.list(api_key=secret_key, limit=100)
    for endpoint in field(existing, "data", []):
        if field(endpoint, "url") == url:
            return field(endpoint, "id"), None
    created = stripe.WebhookEndpoint.create(api_key=secret_key, url=url, enabled_events=list(events))
    logger.info("stripe webhook endpoint created id=%s url=%s", field(created, "id"), url)
    return field(created, "id"), field(created, "secret")


def construct_event(payload: bytes, signature: str, webhook_secret: str):
    return stripe.Webhook.construct_event(payload, signature, webhook_secret)
