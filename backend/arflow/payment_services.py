"""Payment recording, card processing and payment gateway configuration.

Payments are applied to documents inside the request's transaction:
the payment row, its applications, the documents and the customer's
balance are committed together, and the audit entry is written after.
Card charges go through the organization's active gateway (Stripe or
Authorize.net); gateway failures surface as `GatewayError`.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlmodel import Session

from . import models, repositories
from .acumatica_services import PaymentSyncService
from .config import settings
from .errors import GatewayError, NotFoundError, ValidationError
from .gateways import stripe_gateway
from .gateways.authorize_net import AuthorizeNetClient, AuthorizeNetError
from .services import (
    AuditService,
    apply_amount_to_document,
    check_page,
    page_payload,
    require_admin,
    reverse_amount_on_document,
)
from .utils.encryption import MASK, decrypt, encrypt, mask
from .utils.money import cents, fmt, money, total

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/webhooks/stripe"


def _naive_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return models.utcnow()
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _is_live_key(key: str) -> bool:
    return key.startswith(("sk_live_", "rk_live_"))


def _kept(value: Optional[str]) -> bool:
    """True when a submitted secret should leave the stored one untouched."""
    return not value or value == MASK


class GatewaySettingsService:
    """Per-organization Stripe / Authorize.net configuration."""

    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.GatewayRepository(session)

    # --- stripe ---

    def stripe_settings(self, user: models.User) -> Dict[str, Any]:
        row = self.repo.stripe(user.organization_id)
        if row is None:
            return {"configured": False}
        return {
            "configured": True,
            "secret_key": mask(row.encrypted_secret_key),
            "publishable_key": mask(row.encrypted_publishable_key),
            "webhook_secret": mask(row.encrypted_webhook_secret),
            "webhook_endpoint_id": row.webhook_endpoint_id,
            "is_production": row.is_production,
            "enabled": row.enabled,
            "require_cvv": row.require_cvv,
            "require_billing_address": row.require_billing_address,
            "capture_method": row.capture_method,
            "last_connection_test": row.last_connection_test,
            "connection_error_message": row.connection_error_message,
        }

    def upsert_stripe(self, user: models.User, data: Dict[str, Any]) -> Dict[str, Any]:
        require_admin(user, "manage payment gateways")
        row = self.repo.stripe(user.organization_id)
        if row is None:
            if _kept(data.get("secret_key")) or _kept(data.get("publishable_key")):
                raise ValidationError("Secret key and publishable key are required")
            row = models.StripeIntegration(
                organization_id=user.organization_id,
                encrypted_secret_key=encrypt(data["secret_key"]),
                encrypted_publishable_key=encrypt(data["publishable_key"]),
                enabled=False,
            )
        else:
            if not _kept(data.get("secret_key")):
                row.encrypted_secret_key = encrypt(data["secret_key"])
            if not _kept(data.get("publishable_key")):
                row.encrypted_publishable_key = encrypt(data["publishable_key"])
        if not _kept(data.get("webhook_secret")):
            row.encrypted_webhook_secret = encrypt(data["webhook_secret"])
        for key in ("is_production", "require_cvv", "require_billing_address", "capture_method"):
            if data.get(key) is not None:
                setattr(row, key, data[key])
        if data.get("auto_create_webhook"):
            url = f"{settings.APP_URL}{WEBHOOK_PATH}"
            try:
                endpoint_id, secret = stripe_gateway.ensure_webhook_endpoint(decrypt(row.encrypted_secret_key), url)
            except stripe_gateway.StripeError as exc:
                raise GatewayError(f"Failed to create Stripe webhook endpoint: {exc}") from exc
            row.webhook_endpoint_id = endpoint_id
            if secret:
                row.encrypted_webhook_secret = encrypt(secret)
        self.repo.save(row)
        logger.info("stripe settings saved org_id=%s production=%s", user.organization_id, row.is_production)
        return self.stripe_settings(user)

    def test_stripe(self, user: models.User) -> Dict[str, Any]:
        require_admin(user, "test payment gateways")
        row = self.repo.stripe(user.organization_id)
        if row is None:
            raise NotFoundError("Stripe settings not found")
        secret = decrypt(row.encrypted_secret_key)
        result: Dict[str, Any]
        if _is_live_key(secret) and not row.is_production:
            result = {"success": False, "message": "Live keys cannot be used in test mode"}
        elif not _is_live_key(secret) and row.is_production:
            result = {"success": False, "message": "Test keys cannot be used in production mode"}
        else:
            try:
                account = stripe_gateway.retrieve_account(secret)
                account_id = stripe_gateway.field(account, "id")
                result = {"success": True, "message": f"Connected to Stripe account {account_id}",
                          "account_id": account_id}
            except stripe_gateway.StripeError as exc:
                result = {"success": False, "message": str(exc) or "Stripe connection failed"}
        row.last_connection_test = models.utcnow()
        row.connection_error_message = None if result["success"] else result["message"]
        self.repo.save(row)
        return result

    def toggle_stripe(self, user: models.User, enabled: bool) -> Dict[str, Any]:
        require_admin(user, "manage payment gateways")
        row = self.repo.stripe(user.organization_id)
        if row is None:
            raise NotFoundError("Stripe settings not found")
        row.enabled = enabled
        self.repo.save(row, commit=False)
        if not enabled:
            self._clear_active_if(user.organization_id, models.PaymentGatewayProvider.STRIPE)
        self.session.commit()
        return self.stripe_settings(user)

    def stripe_credentials(self, organization_id: int) -> Optional[Dict[str, Any]]:
        """Decrypted Stripe credentials, or None when Stripe is not enabled."""
        row = self.repo.stripe(organization_id)
        if row is None or not row.enabled:
            return None
        return {
            "secret_key": decrypt(row.encrypted_secret_key),
            "publishable_key": decrypt(row.encrypted_publishable_key),
            "webhook_secret": decrypt(row.encrypted_webhook_secret) if row.encrypted_webhook_secret else None,
            "capture_method": row.capture_method,
            "require_cvv": row.require_cvv,
            "require_billing_address": row.require_billing_address,
        }

    def stripe_publishable_key(self, user: models.User) -> str:
        creds = self.stripe_credentials(user.organization_id)
        if creds is None:
            raise NotFoundError("Stripe is not configured or enabled")
        return creds["publishable_key"]

    # --- authorize.net ---

    def authorize_net_settings(self, user: models.User) -> Dict[str, Any]:
        row = self.repo.authorize_net(user.organization_id)
        if row is None:
            return {"configured": False}
        return {
            "configured": True,
            "api_login_id": row.api_login_id,
            "transaction_key": mask(row.encrypted_transaction_key),
            "is_production": row.is_production,
            "enabled": row.enabled,
            "require_cvv": row.require_cvv,
            "require_billing_address": row.require_billing_address,
            "last_connection_test": row.last_connection_test,
            "connection_error_message": row.connection_error_message,
        }

    def upsert_authorize_net(self, user: models.User, data: Dict[str, Any]) -> Dict[str, Any]:
        require_admin(user, "manage payment gateways")
        row = self.repo.authorize_net(user.organization_id)
        if row is None:
            if _kept(data.get("transaction_key")):
                raise ValidationError("Transaction key is required")
            row = models.AuthorizeNetIntegration(
                organization_id=user.organization_id,
                api_login_id=data["api_login_id"],
                encrypted_transaction_key=encrypt(data["transaction_key"]),
                enabled=False,
            )
        elif not _kept(data.get("transaction_key")):
            row.encrypted_transaction_key = encrypt(data["transaction_key"])
        row.api_login_id = data["api_login_id"]
        for key in ("is_production", "require_cvv", "require_billing_address"):
            if data.get(key) is not None:
                setattr(row, key, data[key])
        self.repo.save(row)
        return self.authorize_net_settings(user)

    def test_authorize_net(self, user: models.User) -> Dict[str, Any]:
        require_admin(user, "test payment gateways")
        row = self.repo.authorize_net(user.organization_id)
        if row is None:
            raise NotFoundError("Authorize.net settings not found")
        client = AuthorizeNetClient(row.api_login_id, decrypt(row.encrypted_transaction_key), row.is_production)
        try:
            client.authenticate()
            result = {"success": True, "message": "Successfully connected to Authorize.net"}
        except AuthorizeNetError as exc:
            result = {"success": False, "message": str(exc)}
        row.last_connection_test = models.utcnow()
        row.connection_error_message = None if result["success"] else result["message"]
        self.repo.save(row)
        return result

    def toggle_authorize_net(self, user: models.User, enabled: bool) -> Dict[str, Any]:
        require_admin(user, "manage payment gateways")
        row = self.repo.authorize_net(user.organization_id)
        if row is None:
            raise NotFoundError("Authorize.net settings not found")
        row.enabled = enabled
        self.repo.save(row, commit=False)
        if not enabled:
            self._clear_active_if(user.organization_id, models.PaymentGatewayProvider.AUTHORIZE_NET)
        self.session.commit()
        return self.authorize_net_settings(user)

    def authorize_net_credentials(self, organization_id: int) -> Optional[Dict[str, Any]]:
        row = self.repo.authorize_net(organization_id)
        if row is None or not row.enabled:
            return None
        return {
            "api_login_id": row.api_login_id,
            "transaction_key": decrypt(row.encrypted_transaction_key),
            "is_production": row.is_production,
            "require_cvv": row.require_cvv,
            "require_billing_address": row.require_billing_address,
        }

    # --- active provider ---

    def _clear_active_if(self, organization_id: int, provider: models.PaymentGatewayProvider) -> None:
        row = self.repo.settings(organization_id)
        if row is not None and row.active_provider == provider:
            row.active_provider = None
            self.repo.save(row, commit=False)

    def active_provider(self, organization_id: int) -> Optional[models.PaymentGatewayProvider]:
        row = self.repo.settings(organization_id)
        return row.active_provider if row else None

    def set_active_provider(self, user: models.User,
                            provider: Optional[models.PaymentGatewayProvider]) -> Dict[str, Any]:
        require_admin(user, "manage payment gateways")
        if provider == models.PaymentGatewayProvider.STRIPE:
            row = self.repo.stripe(user.organization_id)
            if row is None or not row.enabled:
                raise ValidationError("Stripe is not configured or not enabled")
        elif provider == models.PaymentGatewayProvider.AUTHORIZE_NET:
            row = self.repo.authorize_net(user.organization_id)
            if row is None or not row.enabled:
                raise ValidationError("Authorize.net is not configured or not enabled")
        current = self.repo.settings(user.organization_id) or models.PaymentGatewaySettings(
            organization_id=user.organization_id)
        current.active_provider = provider
        self.repo.save(current)
        logger.info("active payment provider org_id=%s provider=%s", user.organization_id, provider)
        return self.provider_statuses(user)

    def provider_statuses(self, user: models.User) -> Dict[str, Any]:
        stripe_row = self.repo.stripe(user.organization_id)
        anet_row = self.repo.authorize_net(user.organization_id)

        def status(row):
            if row is None:
                return {"configured": False, "enabled": False, "is_production": False}
            return {"configured": True, "enabled": row.enabled, "is_production": row.is_production}

        return {
            "active_provider": self.active_provider(user.organization_id),
            "stripe": status(stripe_row),
            "authorize_net": status(anet_row),
        }


class PaymentService:
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.PaymentRepository(session)
        self.doc_repo = repositories.DocumentRepository(session)
        self.customer_repo = repositories.CustomerRepository(session)
        self.gateways = GatewaySettingsService(session)
        self.audit = AuditService(session)

    def load_targets(self, organization_id: int, customer_id: int, amount: float,
                     document_ids: List[int]) -> Tuple[models.Customer, List[models.ARDocument]]:
        """Validate a payment's customer, documents and amount."""
        if amount is None or amount <= 0:
            raise ValidationError("Payment amount must be greater than zero")
        if not document_ids:
            raise ValidationError("At least one document is required")
        customer = self.customer_repo.get(organization_id, customer_id)
        if not customer:
            raise NotFoundError("Customer not found")
        docs = self.doc_repo.get_many(organization_id, list(dict.fromkeys(document_ids)))
        if len(docs) != len(set(document_ids)) or any(d.customer_id != customer.id for d in docs):
            raise NotFoundError("One or more documents not found")
        if any(d.status == models.DocumentStatus.VOID for d in docs):
            raise ValidationError("Cannot apply payments to voided documents")
        balance = total(d.balance_due for d in docs)
        if money(amount) > balance:
            raise ValidationError(f"Payment amount ({fmt(amount)}) exceeds total balance due ({fmt(balance)})")
        return customer, docs

    def next_number(self, organization_id: int) -> str:
        return f"PMT-{self.repo.count_for_org(organization_id) + 1:06d}"

    def apply_greedily(self, payment: models.CustomerPayment, documents: List[models.ARDocument],
                       amount: float) -> List[Dict[str, Any]]:
        """Apply `amount` to `documents` in order; returns what was applied where."""
        remaining = money(amount)
        applied_rows = []
        for doc in documents:
            if remaining <= 0:
                break
            applied = min(remaining, money(doc.balance_due))
            if applied <= 0:
                continue
            self.session.add(models.PaymentApplication(
                organization_id=payment.organization_id,
                payment_id=payment.id,
                ar_document_id=doc.id,
                amount_applied=applied,
            ))
            apply_amount_to_document(doc, applied)
            self.session.add(doc)
            remaining = money(remaining - applied)
            applied_rows.append({"document_id": doc.id, "document_number": doc.document_number, "amount": applied})
        self.session.flush()
        return applied_rows

    def finish(self, user: Optional[models.User], payment: models.CustomerPayment, customer: models.Customer,
                applied_rows: List[Dict[str, Any]]) -> models.CustomerPayment:
        self.customer_repo.refresh_balance(customer)
        self.session.commit()
        self.session.refresh(payment)
        self.audit.log_payment_applied(user, payment, customer, applied_rows)
        self._auto_sync(payment)
        return payment

    def _auto_sync(self, payment: models.CustomerPayment) -> None:
        integration = repositories.AcumaticaRepository(self.session).integration_for_org(payment.organization_id)
        if not integration or not integration.auto_sync_payments:
            return
        if integration.status != models.IntegrationStatus.ACTIVE:
            return
        try:
            PaymentSyncService(self.session).sync_payment(payment)
        except (GatewayError, ValidationError) as exc:
            logger.warning("automatic acumatica sync failed payment=%s: %s", payment.payment_number, exc)

    def create_manual(self, user: models.User, data: Dict[str, Any]) -> models.CustomerPayment:
        require_admin(user, "record payments")
        customer, docs = self.load_targets(user.organization_id, data["customer_id"], data["amount"],
                                           data["document_ids"])
        payment = models.CustomerPayment(
            organization_id=user.organization_id,
            customer_id=customer.id,
            payment_number=self.next_number(user.organization_id),
            payment_date=_naive_utc(data.get("payment_date")),
            amount=money(data["amount"]),
            payment_method=data.get("payment_method") or models.PaymentMethod.CHECK,
            reference_number=data.get("reference_number"),
            notes=data.get("notes"),
            status=models.PaymentStatus.APPLIED,
            source_type=models.RecordSourceType.MANUAL,
        )
        self.repo.save(payment, commit=False)
        applied_rows = self.apply_greedily(payment, docs, payment.amount)
        logger.info("manual payment recorded %s amount=%s", payment.payment_number, payment.amount)
        return self.finish(user, payment, customer, applied_rows)

    def process_credit_card(self, user: models.User, data: Dict[str, Any]) -> models.CustomerPayment:
        require_admin(user, "process card payments")
        customer, docs = self.load_targets(user.organization_id, data["customer_id"], data["amount"],
                                           data["document_ids"])
        provider = self.gateways.active_provider(user.organization_id)
        if provider is None:
            raise ValidationError("No payment gateway configured. Please configure a payment gateway in settings.")
        card = data["card"]
        amount = money(data["amount"])
        number = self.next_number(user.organization_id)
        description = f"Payment {number} - {customer.company_name}"
        if provider == models.PaymentGatewayProvider.AUTHORIZE_NET:
            charge = self._charge_authorize_net(user.organization_id, amount, card, number, description)
        else:
            charge = self._charge_stripe(user.organization_id, customer, amount, card, number, description)
        payment = models.CustomerPayment(
            organization_id=user.organization_id,
            customer_id=customer.id,
            payment_number=number,
            amount=amount,
            payment_method=models.PaymentMethod.CREDIT_CARD,
            notes=data.get("notes"),
            status=models.PaymentStatus.APPLIED,
            source_type=models.RecordSourceType.MANUAL,
            payment_gateway_provider=provider,
            gateway_transaction_id=charge["transaction_id"],
            gateway_response=charge["response"],
            last4_digits=charge["last4"],
            card_type=charge["card_type"],
        )
        self.repo.save(payment, commit=False)
        applied_rows = self.apply_greedily(payment, docs, amount)
        logger.info("card payment recorded %s provider=%s txn=%s", number, provider.value, payment.gateway_transaction_id)
        return self.finish(user, payment, customer, applied_rows)

    @staticmethod
    def _check_card_rules(creds: Dict[str, Any], card: Dict[str, Any]) -> None:
        if creds.get("require_cvv") and not card.get("cvv"):
            raise ValidationError("CVV is required")
        billing = card.get("billing") or {}
        if creds.get("require_billing_address") and not (billing.get("address") and billing.get("zip")):
            raise ValidationError("Billing address is required")

    def _charge_authorize_net(self, organization_id: int, amount: float, card: Dict[str, Any],
                              number: str, description: str) -> Dict[str, Any]:
        creds = self.gateways.authorize_net_credentials(organization_id)
        if creds is None:
            raise ValidationError("Authorize.net is not configured or enabled")
        self._check_card_rules(creds, card)
        billing = card.get("billing") or {}
        bill_to = {
            "firstName": billing.get("first_name"), "lastName": billing.get("last_name"),
            "address": billing.get("address"), "city": billing.get("city"), "state": billing.get("state"),
            "zip": billing.get("zip"), "country": billing.get("country"),
        }
        client = AuthorizeNetClient(creds["api_login_id"], creds["transaction_key"], creds["is_production"])
        try:
            result = client.charge_card(
                amount=amount,
                card_number=card["card_number"],
                expiration_date=card["expiration"],
                card_code=card.get("cvv"),
                bill_to={k: v for k, v in bill_to.items() if v} or None,
                invoice_number=number,
                description=description,
            )
        except AuthorizeNetError as exc:
            raise GatewayError(f"Payment failed: {exc}") from exc
        account_number = result.get("account_number") or card["card_number"]
        return {
            "transaction_id": result["transaction_id"],
            "response": {"auth_code": result.get("auth_code"), "account_type": result.get("account_type")},
            "last4": account_number[-4:],
            "card_type": (result.get("account_type") or "").upper() or None,
        }

    def _charge_stripe(self, organization_id: int, customer: models.Customer, amount: float,
                       card: Dict[str, Any], number: str, description: str) -> Dict[str, Any]:
        creds = self.gateways.stripe_credentials(organization_id)
        if creds is None:
            raise ValidationError("Stripe is not configured or enabled")
        self._check_card_rules(creds, card)
        billing = card.get("billing") or {}
        name = " ".join(p for p in (billing.get("first_name"), billing.get("last_name")) if p)
        address = {"line1": billing.get("address"), "city": billing.get("city"), "state": billing.get("state"),
                   "postal_code": billing.get("zip"), "country": billing.get("country")}
        billing_details = {}
        if name:
            billing_details["name"] = name
        if any(address.values()):
            billing_details["address"] = {k: v for k, v in address.items() if v}
        expiration = card["expiration"]
        try:
            intent = stripe_gateway.charge_card(
                creds["secret_key"],
                amount_cents=cents(amount),
                card_number=card["card_number"],
                exp_month=int(expiration[:2]),
                exp_year=2000 + int(expiration[2:]),
                cvc=card.get("cvv"),
                billing_details=billing_details or None,
                metadata={"organizationId": str(organization_id), "customerId": str(customer.id),
                          "paymentNumber": number},
                description=description,
                capture_method=creds["capture_method"],
            )
        except stripe_gateway.StripeError as exc:
            message = getattr(exc, "user_message", None) or str(exc)
            raise GatewayError(f"Payment failed: {message}") from exc
        status = stripe_gateway.field(intent, "status")
        if status == "requires_action":
            raise GatewayError("Payment requires additional authentication")
        if status != "succeeded":
            raise GatewayError(f"Payment failed with status: {status}")
        last4, brand = stripe_gateway.card_details(intent)
        return {
            "transaction_id": stripe_gateway.field(intent, "id"),
            "response": {"status": status, "amount": stripe_gateway.field(intent, "amount")},
            "last4": last4 or card["card_number"][-4:],
            "card_type": brand,
        }

    def list(self, user: models.User, page: int = 1, page_size: int = 25, **filters):
        check_page(page, page_size)
        rows, count = self.repo.list(user.organization_id, page, page_size, **filters)
        return page_payload(rows, count, page, page_size)

    def get(self, user: models.User, payment_id: int) -> models.CustomerPayment:
        payment = self.repo.get(user.organization_id, payment_id)
        if not payment:
            raise NotFoundError("Payment not found")
        return payment

    def detail(self, user: models.User, payment_id: int) -> Dict[str, Any]:
        payment = self.get(user, payment_id)
        applications = []
        for app in self.repo.applications(payment.id):
            applications.append({"application": app, "document": self.doc_repo.get(user.organization_id,
                                                                                   app.ar_document_id)})
        return {
            "payment": payment,
            "applications": applications,
            "customer": self.customer_repo.get(user.organization_id, payment.customer_id),
        }

    def open_documents(self, user: models.User, customer_id: int) -> List[models.ARDocument]:
        if not self.customer_repo.get(user.organization_id, customer_id):
            raise NotFoundError("Customer not found")
        return self.doc_repo.open_for_customer(user.organization_id, customer_id)

    def apply(self, user: models.User, payment_id: int,
              applications: List[Dict[str, Any]]) -> models.CustomerPayment:
        require_admin(user, "apply payments")
        payment = self.get(user, payment_id)
        if payment.status == models.PaymentStatus.VOID:
            raise ValidationError("Cannot apply a voided payment")
        if not applications:
            raise ValidationError("At least one application is required")
        remaining = money(payment.amount - self.repo.applied_total(payment.id))
        if remaining <= 0:
            raise ValidationError("Payment is already fully applied")
        requested = total(a["amount"] for a in applications)
        if requested > remaining:
            raise ValidationError(
                f"Total applications ({fmt(requested)}) exceed the unapplied amount ({fmt(remaining)})")
        pairs = []
        per_document: Dict[int, float] = {}
        for item in applications:
            amount = money(item["amount"])
            if amount <= 0:
                raise ValidationError("Application amounts must be greater than zero")
            doc = self.doc_repo.get(user.organization_id, item["document_id"])
            if not doc or doc.customer_id != payment.customer_id:
                raise NotFoundError("Document not found")
            if doc.status == models.DocumentStatus.VOID:
                raise ValidationError(f"Cannot apply payments to voided document {doc.document_number}")
            per_document[doc.id] = money(per_document.get(doc.id, 0.0) + amount)
            if per_document[doc.id] > money(doc.balance_due):
                raise ValidationError(
                    f"Amount {fmt(per_document[doc.id])} exceeds balance due {fmt(doc.balance_due)} for {doc.document_number}")
            pairs.append((doc, amount))
        applied_rows = []
        for doc, amount in pairs:
            self.session.add(models.PaymentApplication(
                organization_id=payment.organization_id, payment_id=payment.id,
                ar_document_id=doc.id, amount_applied=amount))
            apply_amount_to_document(doc, amount)
            self.session.add(doc)
            applied_rows.append({"document_id": doc.id, "document_number": doc.document_number, "amount": amount})
        payment.status = models.PaymentStatus.APPLIED
        self.repo.save(payment, commit=False)
        customer = self.customer_repo.get(user.organization_id, payment.customer_id)
        return self.finish(user, payment, customer, applied_rows)

    def update_method(self, user: models.User, payment_id: int, data: Dict[str, Any]) -> models.CustomerPayment:
        require_admin(user, "update payments")
        payment = self.get(user, payment_id)
        if payment.status == models.PaymentStatus.VOID:
            raise ValidationError("Cannot update a voided payment")
        payment.payment_method = data["payment_method"]
        if "reference_number" in data:
            payment.reference_number = data["reference_number"]
        if "notes" in data:
            payment.notes = data["notes"]
        if payment.status == models.PaymentStatus.PENDING and payment.payment_method != models.PaymentMethod.CREDIT_CARD:
            payment.status = models.PaymentStatus.APPLIED
        return self.repo.save(payment)

    def void(self, user: models.User, payment_id: int, reason: str) -> models.CustomerPayment:
        require_admin(user, "void payments")
        payment = self.get(user, payment_id)
        if payment.status != models.PaymentStatus.APPLIED:
            raise ValidationError("Only applied payments can be voided")
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to void a payment")
        restored = []
        for app in self.repo.applications(payment.id):
            doc = self.doc_repo.get(user.organization_id, app.ar_document_id)
            if doc is None:
                continue
            reverse_amount_on_document(doc, app.amount_applied)
            self.session.add(doc)
            restored.append({"document_id": doc.id, "document_number": doc.document_number,
                             "amount": app.amount_applied})
        payment.status = models.PaymentStatus.VOID
        payment.notes = f"{payment.notes or ''}\n\nVoided: {reason}".strip()
        self.repo.save(payment, commit=False)
        customer = self.customer_repo.get(user.organization_id, payment.customer_id)
        self.customer_repo.refresh_balance(customer)
        self.session.commit()
        self.session.refresh(payment)
        self.audit.record(
            user, payment.organization_id, "payment_voided", "payment", payment.id,
            f"Voided payment {payment.payment_number} ({fmt(payment.amount)}): {reason}",
            {"reason": reason, "restored": restored},
        )
        logger.info("payment voided %s", payment.payment_number)
        return payment


class StripePaymentService:
    """Stripe-hosted flows: PaymentIntents, Checkout sessions and webhooks."""

    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.PaymentRepository(session)
        self.doc_repo = repositories.DocumentRepository(session)
        self.customer_repo = repositories.CustomerRepository(session)
        self.gateways = GatewaySettingsService(session)
        self.payments = PaymentService(session)
        self.audit = AuditService(session)

    def _credentials(self, organization_id: int) -> Dict[str, Any]:
        creds = self.gateways.stripe_credentials(organization_id)
        if creds is None:
            raise ValidationError("Stripe is not configured or enabled")
        return creds

    def _pending_payment(self, organization_id: int, customer: models.Customer, amount: float,
                         documents: List[models.ARDocument]) -> models.CustomerPayment:
        payment = models.CustomerPayment(
            organization_id=organization_id,
            customer_id=customer.id,
            payment_number=self.payments.next_number(organization_id),
            amount=money(amount),
            payment_method=models.PaymentMethod.CREDIT_CARD,
            status=models.PaymentStatus.PENDING,
            source_type=models.RecordSourceType.MANUAL,
            payment_gateway_provider=models.PaymentGatewayProvider.STRIPE,
            gateway_response={"document_ids": [d.id for d in documents]},
        )
        return self.repo.save(payment, commit=False)

    @staticmethod
    def _metadata(payment: models.CustomerPayment, documents: List[models.ARDocument]) -> Dict[str, str]:
        return {
            "organizationId": str(payment.organization_id),
            "customerId": str(payment.customer_id),
            "paymentId": str(payment.id),
            "paymentNumber": payment.payment_number,
            "documentIds": ",".join(str(d.id) for d in documents),
        }

    def create_payment_intent(self, user: models.User, data: Dict[str, Any]) -> Dict[str, Any]:
        require_admin(user, "create payments")
        creds = self._credentials(user.organization_id)
        customer, docs = self.payments.load_targets(user.organization_id, data["customer_id"], data["amount"],
                                                    data["document_ids"])
        payment = self._pending_payment(user.organization_id, customer, data["amount"], docs)
        try:
            intent = stripe_gateway.create_payment_intent(
                creds["secret_key"],
                amount_cents=cents(payment.amount),
                metadata=self._metadata(payment, docs),
                description=f"Payment {payment.payment_number} - {customer.company_name}",
                capture_method=creds["capture_method"],
            )
        except stripe_gateway.StripeError as exc:
            self.session.rollback()
            raise GatewayError(f"Failed to create payment intent: {exc}") from exc
        payment.gateway_transaction_id = stripe_gateway.field(intent, "id")
        self.repo.save(payment)
        return {
            "payment_id": payment.id,
            "client_secret": stripe_gateway.field(intent, "client_secret"),
            "payment_intent_id": payment.gateway_transaction_id,
            "publishable_key": creds["publishable_key"],
        }

    def open_checkout(self, organization_id: int, customer: models.Customer, documents: List[models.ARDocument],
                      amount: float, mode: str) -> Tuple[models.CustomerPayment, Any]:
        """Create a PENDING payment and the Stripe Checkout session that will settle it."""
        creds = self._credentials(organization_id)
        payment = self._pending_payment(organization_id, customer, amount, documents)
        numbers = ", ".join(d.document_number for d in documents)
        success_url = f"{settings.APP_URL}/payment/success?session_id={{CHECKOUT_SESSION_ID}}"
        cancel_url = f"{settings.APP_URL}/payment/cancel?session_id={{CHECKOUT_SESSION_ID}}"
        try:
            checkout = stripe_gateway.create_checkout_session(
                creds["secret_key"],
                amount_cents=cents(payment.amount),
                product_name=f"Invoice payment - {customer.company_name}",
                description=f"Payment for {numbers}",
                metadata=self._metadata(payment, documents),
                embedded=mode == "pay_now",
                success_url=success_url,
                cancel_url=cancel_url,
                customer_email=customer.email,
            )
        except stripe_gateway.StripeError as exc:
            self.session.rollback()
            raise GatewayError(f"Failed to create checkout session: {exc}") from exc
        payment.stripe_checkout_session_id = stripe_gateway.field(checkout, "id")
        payment.checkout_session_status = "open"
        payment.checkout_session_url = stripe_gateway.field(checkout, "url")
        payment.session_expires_at = models.utcnow() + timedelta(hours=24)
        payment.checkout_mode = mode
        self.repo.save(payment)
        logger.info("checkout session opened payment=%s session=%s mode=%s",
                    payment.payment_number, payment.stripe_checkout_session_id, mode)
        return payment, checkout

    def create_checkout_session(self, user: models.User, data: Dict[str, Any]) -> Dict[str, Any]:
        require_admin(user, "create payments")
        customer, docs = self.payments.load_targets(user.organization_id, data["customer_id"], data["amount"],
                                                    data["document_ids"])
        mode = data.get("mode") or "generate_link"
        payment, checkout = self.open_checkout(user.organization_id, customer, docs, data["amount"], mode)
        return {
            "payment_id": payment.id,
            "payment_number": payment.payment_number,
            "session_id": payment.stripe_checkout_session_id,
            "client_secret": stripe_gateway.field(checkout, "client_secret"),
            "url": payment.checkout_session_url,
            "mode": mode,
            "expires_at": payment.session_expires_at,
        }

    # --- lookups ---

    def _scoped_by_session(self, user: models.User, session_id: str) -> models.CustomerPayment:
        payment = self.repo.get_by_session_id(session_id)
        if payment is None or payment.organization_id != user.organization_id:
            raise NotFoundError("Payment not found")
        return payment

    def _scoped_by_intent(self, user: models.User, payment_intent_id: str) -> models.CustomerPayment:
        payment = self.repo.get_by_transaction_id(payment_intent_id)
        if payment is None or payment.organization_id != user.organization_id:
            raise NotFoundError("Payment not found")
        return payment

    def _payment_for_metadata(self, obj) -> Optional[models.CustomerPayment]:
        payment_id = stripe_gateway.field(stripe_gateway.field(obj, "metadata", {}), "paymentId")
        if payment_id and str(payment_id).isdigit():
            return self.repo.get_any(int(payment_id))
        return None

    # --- state transitions ---

    def _document_ids(self, payment: models.CustomerPayment, obj) -> List[int]:
        raw = stripe_gateway.field(stripe_gateway.field(obj, "metadata", {}), "documentIds", "")
        ids = [int(p) for p in str(raw).split(",") if p.strip().isdigit()]
        if not ids and payment.gateway_response:
            ids = [int(i) for i in payment.gateway_response.get("document_ids", [])]
        return ids

    def _complete(self, payment: models.CustomerPayment, obj, intent) -> models.CustomerPayment:
        if payment.status == models.PaymentStatus.APPLIED:
            return payment
        if payment.status == models.PaymentStatus.VOID:
            logger.warning("stripe completion for voided payment %s ignored", payment.payment_number)
            return payment
        document_ids = self._document_ids(payment, obj)
        intent_id = intent if isinstance(intent, str) else stripe_gateway.field(intent, "id")
        last4, brand = (None, None)
        if intent is not None and not isinstance(intent, str):
            last4, brand = stripe_gateway.card_details(intent)
        elif intent_id:
            creds = self.gateways.stripe_credentials(payment.organization_id)
            if creds:
                try:
                    last4, brand = stripe_gateway.card_details(
                        stripe_gateway.retrieve_payment_intent(creds["secret_key"], intent_id))
                except stripe_gateway.StripeError as exc:
                    logger.warning("could not load card details for %s: %s", intent_id, exc)
        payment.status = models.PaymentStatus.APPLIED
        if payment.stripe_checkout_session_id:
            payment.checkout_session_status = "complete"
        payment.gateway_transaction_id = intent_id or payment.gateway_transaction_id
        payment.last4_digits = last4
        payment.card_type = brand
        payment.gateway_response = {"document_ids": document_ids, "status": "succeeded",
                                    "completed_at": models.utcnow().isoformat()}
        self.repo.save(payment, commit=False)
        customer = self.customer_repo.get(payment.organization_id, payment.customer_id)
        docs = [d for d in self.doc_repo.get_many(payment.organization_id, document_ids)
                if d.customer_id == payment.customer_id and d.status != models.DocumentStatus.VOID]
        applied_rows = self.payments.apply_greedily(payment, docs, payment.amount)
        logger.info("stripe payment completed %s txn=%s", payment.payment_number, payment.gateway_transaction_id)
        return self.payments.finish(None, payment, customer, applied_rows)

    def _void_pending(self, payment: models.CustomerPayment, session_status: Optional[str] = None,
                      error: Optional[str] = None) -> models.CustomerPayment:
        if payment.status != models.PaymentStatus.PENDING:
            return payment
        payment.status = models.PaymentStatus.VOID
        if session_status:
            payment.checkout_session_status = session_status
        if error:
            payment.gateway_response = {**(payment.gateway_response or {}), "error": error}
        return self.repo.save(payment)

    def handle_checkout_completed(self, checkout) -> Optional[models.CustomerPayment]:
        payment = self.repo.get_by_session_id(stripe_gateway.field(checkout, "id")) or \
            self._payment_for_metadata(checkout)
        if payment is None:
            logger.warning("checkout.session.completed for unknown session %s", stripe_gateway.field(checkout, "id"))
            return None
        return self._complete(payment, checkout, stripe_gateway.field(checkout, "payment_intent"))

    def handle_checkout_expired(self, checkout) -> Optional[models.CustomerPayment]:
        payment = self.repo.get_by_session_id(stripe_gateway.field(checkout, "id"))
        if payment is None:
            return None
        return self._void_pending(payment, session_status="expired")

    def handle_intent_succeeded(self, intent) -> Optional[models.CustomerPayment]:
        payment = self._payment_for_metadata(intent) or \
            self.repo.get_by_transaction_id(stripe_gateway.field(intent, "id"))
        if payment is None:
            logger.warning("payment_intent.succeeded for unknown intent %s", stripe_gateway.field(intent, "id"))
            return None
        return self._complete(payment, intent, intent)

    def handle_intent_failed(self, intent) -> Optional[models.CustomerPayment]:
        payment = self._payment_for_metadata(intent) or \
            self.repo.get_by_transaction_id(stripe_gateway.field(intent, "id"))
        if payment is None:
            return None
        error = stripe_gateway.field(stripe_gateway.field(intent, "last_payment_error"), "message")
        return self._void_pending(payment, error=error or "Payment failed")

    # --- verification ---

    def verify_checkout_session(self, user: models.User, session_id: str) -> Dict[str, Any]:
        payment = self._scoped_by_session(user, session_id)
        creds = self._credentials(user.organization_id)
        try:
            checkout = stripe_gateway.retrieve_checkout_session(creds["secret_key"], session_id)
        except stripe_gateway.StripeError as exc:
            raise GatewayError(f"Failed to retrieve checkout session: {exc}") from exc
        status = stripe_gateway.field(checkout, "status")
        if status == "open":
            return {"status": "pending", "payment": payment}
        if status != "complete":
            raise ValidationError(f"Checkout session is {status}")
        payment = self.handle_checkout_completed(checkout)
        return {"status": "succeeded", "payment": payment}

    def verify_payment(self, user: models.User, payment_intent_id: str) -> Dict[str, Any]:
        payment = self._scoped_by_intent(user, payment_intent_id)
        if payment.status == models.PaymentStatus.PENDING:
            return {"status": "pending", "payment": payment}
        if payment.status != models.PaymentStatus.APPLIED:
            raise ValidationError("Payment failed or was cancelled")
        return {"status": "succeeded", "payment": payment}

    def verify_immediate(self, user: models.User, payment_intent_id: str) -> Dict[str, Any]:
        payment = self._scoped_by_intent(user, payment_intent_id)
        creds = self._credentials(user.organization_id)
        try:
            intent = stripe_gateway.retrieve_payment_intent(creds["secret_key"], payment_intent_id)
        except stripe_gateway.StripeError as exc:
            raise GatewayError(f"Failed to retrieve payment intent: {exc}") from exc
        status = stripe_gateway.field(intent, "status")
        if status == "succeeded":
            payment = self._complete(payment, intent, intent)
        return {"status": status, "payment": payment}

    def mark_session_cancelled(self, user: models.User, session_id: str) -> models.CustomerPayment:
        return self._void_pending(self._scoped_by_session(user, session_id), session_status="expired")

    def requery(self, user: models.User, payment_id: int) -> models.CustomerPayment:
        require_admin(user, "requery payments")
        payment = self.payments.get(user, payment_id)
        if payment.payment_gateway_provider != models.PaymentGatewayProvider.STRIPE:
            raise ValidationError("Only Stripe payments can be requeried")
        creds = self._credentials(user.organization_id)
        try:
            if payment.stripe_checkout_session_id:
                checkout = stripe_gateway.retrieve_checkout_session(creds["secret_key"],
                                                                    payment.stripe_checkout_session_id)
                status = stripe_gateway.field(checkout, "status")
                if status == "complete":
                    return self.handle_checkout_completed(checkout)
                if status == "expired":
                    return self.handle_checkout_expired(checkout)
                payment.checkout_session_status = status
                expires = stripe_gateway.field(checkout, "expires_at")
                if expires:
                    payment.session_expires_at = datetime.fromtimestamp(expires, timezone.utc).replace(tzinfo=None)
                payment.gateway_response = {**(payment.gateway_response or {}), "session_status": status}
                return self.repo.save(payment)
            if payment.gateway_transaction_id:
                intent = stripe_gateway.retrieve_payment_intent(creds["secret_key"], payment.gateway_transaction_id)
                status = stripe_gateway.field(intent, "status")
                if status == "succeeded":
                    return self._complete(payment, intent, intent)
                if status == "canceled":
                    return self._void_pending(payment)
                if status == "requires_payment_method":
                    return self.handle_intent_failed(intent)
                payment.gateway_response = {**(payment.gateway_response or {}), "intent_status": status}
                return self.repo.save(payment)
        except stripe_gateway.StripeError as exc:
            raise GatewayError(f"Failed to requery Stripe: {exc}") from exc
        raise ValidationError("Payment has no Stripe reference to requery")

    # --- webhooks ---

    def _locate(self, obj: Dict[str, Any]) -> Optional[models.CustomerPayment]:
        object_id = obj.get("id")
        if not isinstance(object_id, str):
            object_id = ""
        if object_id.startswith("cs_"):
            payment = self.repo.get_by_session_id(object_id)
        elif object_id.startswith("pi_"):
            payment = self.repo.get_by_transaction_id(object_id)
        else:
            payment = None
        return payment or self._payment_for_metadata(obj)

    def process_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not signature:
            raise ValidationError("Missing stripe-signature header")
        try:
            unverified = json.loads(payload)
        except ValueError as exc:
            raise ValidationError("Invalid webhook payload") from exc
        data = unverified.get("data") if isinstance(unverified, dict) else None
        obj = data.get("object") if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            raise ValidationError("Invalid webhook payload")
        payment = self._locate(obj)
        if payment is None:
            raise NotFoundError("Payment not found for webhook event")
        integration = self.gateways.repo.stripe(payment.organization_id)
        if integration is None:
            raise NotFoundError("Stripe integration not found")
        if not integration.encrypted_webhook_secret:
            raise ValidationError("Webhook secret not configured")
        try:
            event = stripe_gateway.construct_event(payload, signature, decrypt(integration.encrypted_webhook_secret))
        except (stripe_gateway.SignatureVerificationError, ValueError) as exc:
            logger.warning("stripe webhook signature rejected org_id=%s: %s", payment.organization_id, exc)
            raise ValidationError("Invalid webhook signature") from exc
        event_type = stripe_gateway.field(event, "type")
        data_object = stripe_gateway.field(stripe_gateway.field(event, "data"), "object")
        handlers = {
            "checkout.session.completed": self.handle_checkout_completed,
            "checkout.session.expired": self.handle_checkout_expired,
            "payment_intent.succeeded": self.handle_intent_succeeded,
            "payment_intent.payment_failed": self.handle_intent_failed,
        }
        handler = handlers.get(event_type)
        logger.info("stripe webhook received type=%s org_id=%s handled=%s",
                    event_type, payment.organization_id, handler is not None)
        if handler:
            handler(data_object)
        return {"received": True, "event_type": event_type}


class PublicInvoiceService:
    """Unauthenticated access to invoices through their share token."""

    def __init__(self, session: Session):
        self.session = session
        self.doc_repo = repositories.DocumentRepository(session)
        self.customer_repo = repositories.CustomerRepository(session)
        self.org_repo = repositories.OrganizationRepository(session)
        self.gateways = GatewaySettingsService(session)

    def _document(self, token: str) -> models.ARDocument:
        doc = self.doc_repo.get_by_share_token(token)
        if doc is None:
            raise NotFoundError("Invoice not found or sharing is disabled")
        return doc

    def get(self, token: str) -> Dict[str, Any]:
        doc = self._document(token)
        stripe_row = self.gateways.repo.stripe(doc.organization_id)
        return {
            "document": doc,
            "line_items": sorted(doc.line_items, key=lambda li: li.line_number),
            "customer": self.customer_repo.get(doc.organization_id, doc.customer_id),
            "organization": self.org_repo.get(doc.organization_id),
            "can_pay": bool(stripe_row and stripe_row.enabled and doc.balance_due > 0),
        }

    def checkout(self, token: str) -> Dict[str, Any]:
        doc = self._document(token)
        if doc.status == models.DocumentStatus.PAID or doc.balance_due <= 0:
            raise ValidationError("This invoice is already paid")
        if self.gateways.stripe_credentials(doc.organization_id) is None:
            raise ValidationError("Payment gateway not configured")
        customer = self.customer_repo.get(doc.organization_id, doc.customer_id)
        payment, _ = StripePaymentService(self.session).open_checkout(
            doc.organization_id, customer, [doc], doc.balance_due, "generate_link")
        return {"checkout_url": payment.checkout_session_url, "session_id": payment.stripe_checkout_session_id}
