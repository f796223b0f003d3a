"""Business logic services used by HTTP controllers.

This module holds the service classes for the core AR records
(organizations, users, customers, payment terms, document settings,
documents) plus the audit log and dashboard reporting. Services
validate input, enforce the caller's role and organization, execute
domain logic and persist aggregates via repositories. They raise the
errors from `arflow.errors`; controllers never see database details.

Payment and integration services live in `payment_services` and
`acumatica_services`.
"""

import csv
import io
import logging
import re
import secrets
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Optional

from passlib.context import CryptContext
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from . import models, repositories
from .auth import create_access_token
from .config import settings
from .errors import NotFoundError, PermissionDeniedError, ValidationError
from .utils.money import fmt, money, total

logger = logging.getLogger(__name__)

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

DEFAULT_PAGE_SIZE = 25

DEFAULT_PAYMENT_TERMS = [
    {"code": "NET_30", "name": "Net 30", "description": "Payment due within 30 days",
     "days_due": 30, "display_order": 1, "is_default": True},
    {"code": "NET_15", "name": "Net 15", "description": "Payment due within 15 days",
     "days_due": 15, "display_order": 2},
    {"code": "2_10_NET_30", "name": "2% 10 Net 30",
     "description": "2% discount if paid within 10 days, otherwise due in 30 days",
     "days_due": 30, "has_discount": True, "discount_days": 10, "discount_percentage": 2.0,
     "display_order": 3},
]

DEFAULT_DOCUMENT_TYPES = [
    (models.DocumentType.INVOICE, "Invoice", 1),
    (models.DocumentType.QUOTE, "Quote", 2),
    (models.DocumentType.ORDER, "Order", 3),
]

DOCUMENT_PREFIXES = {
    models.DocumentType.INVOICE: "INV",
    models.DocumentType.QUOTE: "QUO",
    models.DocumentType.ORDER: "ORD",
    models.DocumentType.CREDIT_MEMO: "CM",
    models.DocumentType.DEBIT_MEMO: "DM",
}


def require_admin(user: models.User, action: str) -> None:
    if user.role != models.UserRole.ADMIN:
        raise PermissionDeniedError(f"Only admins can {action}")


def page_payload(items: list, total_count: int, page: int, page_size: int) -> Dict[str, Any]:
    return {
        "items": items,
        "total": total_count,
        "page": page,
        "page_size": page_size,
        "total_pages": (total_count + page_size - 1) // page_size if page_size else 0,
    }


def check_page(page: int, page_size: int) -> None:
    if page < 1:
        raise ValidationError("page must be >= 1")
    if page_size < 1 or page_size > 200:
        raise ValidationError("page_size must be between 1 and 200")


def apply_amount_to_document(document: models.ARDocument, amount: float) -> None:
    """Move `amount` from the document's balance to its paid total."""
    document.amount_paid = money(document.amount_paid + amount)
    document.balance_due = money(document.balance_due - amount)
    if document.balance_due <= 0:
        document.balance_due = 0.0
        document.status = models.DocumentStatus.PAID
        document.paid_date = models.utcnow()
    elif document.amount_paid > 0:
        document.status = models.DocumentStatus.PARTIAL


def reverse_amount_on_document(document: models.ARDocument, amount: float) -> None:
    """Undo an earlier application of `amount` to the document."""
    document.amount_paid = max(0.0, money(document.amount_paid - amount))
    document.balance_due = money(document.balance_due + amount)
    document.status = models.DocumentStatus.OPEN if document.amount_paid == 0 else models.DocumentStatus.PARTIAL
    document.paid_date = None


def status_from_balance(amount: float, balance: float) -> models.DocumentStatus:
    if balance <= 0:
        return models.DocumentStatus.PAID
    if balance < amount:
        return models.DocumentStatus.PARTIAL
    return models.DocumentStatus.OPEN


class AuditService:
    """Append-only audit trail; writing an entry never fails the caller."""

    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.AuditLogRepository(session)

    def record(self, user: Optional[models.User], organization_id: int, action: str, entity_type: str,
               entity_id, description: str, details: Optional[dict] = None,
               ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> Optional[models.AuditLog]:
        entry = models.AuditLog(
            organization_id=organization_id,
            user_id=user.id if user else None,
            user_name=user.full_name if user else "System",
            user_email=user.email if user else None,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            description=description,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            return self.repo.save(entry)
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("failed to write audit log action=%s entity=%s:%s", action, entity_type, entity_id)
            return None

    def log_invoice_created(self, user, document: models.ARDocument, customer: models.Customer):
        label = document.document_type.value.replace("_", " ").lower()
        return self.record(
            user, document.organization_id, "invoice_created", "document", document.id,
            f"Created {label} {document.document_number} for {fmt(document.total_amount)} for {customer.company_name}",
            {"document_number": document.document_number, "total_amount": document.total_amount,
             "customer_id": customer.id},
        )

    def log_payment_applied(self, user, payment: models.CustomerPayment, customer: models.Customer,
                            applications: List[Dict[str, Any]]):
        return self.record(
            user, payment.organization_id, "payment_applied", "payment", payment.id,
            f"Applied payment {payment.payment_number} of {fmt(payment.amount)} to "
            f"{len(applications)} document(s) for {customer.company_name}",
            {"payment_number": payment.payment_number, "amount": payment.amount, "applications": applications},
        )

    def log_customer_created(self, user, customer: models.Customer):
        return self.record(
            user, customer.organization_id, "customer_created", "customer", customer.id,
            f"Created customer {customer.company_name}",
            {"company_name": customer.company_name, "email": customer.email},
        )

    def list(self, user: models.User, page: int = 1, page_size: int = 50, search: Optional[str] = None,
             action: Optional[str] = None, entity_type: Optional[str] = None, user_id: Optional[int] = None,
             start_date: Optional[date] = None, end_date: Optional[date] = None):
        require_admin(user, "view audit logs")
        check_page(page, page_size)
        start = datetime.combine(start_date, time.min) if start_date else None
        end = datetime.combine(end_date, time.max) if end_date else None
        rows, count = self.repo.search(user.organization_id, page, page_size, search=search, action=action,
                                       entity_type=entity_type, user_id=user_id, start=start, end=end)
        return page_payload(rows, count, page, page_size)

    def users(self, user: models.User) -> List[Dict[str, Any]]:
        require_admin(user, "view audit logs")
        return [{"id": uid, "name": name, "email": email}
                for uid, name, email in self.repo.distinct_users(user.organization_id)]


class AuthService:
    """Authentication related operations (register + authenticate)."""

    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.org_repo = repositories.OrganizationRepository(session)

    def _unique_slug(self, name: str) -> str:
        base = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "org"
        slug, n = base, 1
        while self.org_repo.slug_exists(slug):
            n += 1
            slug = f"{base}-{n}"
        return slug

    def register(self, email: str, password: str, organization_name: str,
                 first_name: Optional[str] = None, last_name: Optional[str] = None) -> models.User:
        """Create an organization and its first administrator."""
        if self.user_repo.get_by_email(email):
            raise ValidationError("Email already registered")
        org = models.Organization(name=organization_name.strip(), slug=self._unique_slug(organization_name))
        self.org_repo.save(org, commit=False)
        user = models.User(
            organization_id=org.id,
            email=email.strip().lower(),
            password_hash=PWD_CTX.hash(password),
            first_name=first_name,
            last_name=last_name,
            role=models.UserRole.ADMIN,
        )
        self.user_repo.save(user)
        logger.info("organization registered org_id=%s slug=%s", org.id, org.slug)
        return user

    def authenticate(self, email: str, password: str) -> Optional[str]:
        """Verify credentials and return a signed JWT token on success.

        Returns `None` if authentication fails.
        """
        user = self.user_repo.get_by_email(email)
        if not user or not PWD_CTX.verify(password, user.password_hash):
            return None
        return create_access_token(user)


class UserService:
    """Profile, team and organization management."""

    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.org_repo = repositories.OrganizationRepository(session)
        self.customer_repo = repositories.CustomerRepository(session)

    def update_profile(self, user: models.User, first_name: Optional[str], last_name: Optional[str]) -> models.User:
        if first_name is not None:
            user.first_name = first_name.strip() or None
        if last_name is not None:
            user.last_name = last_name.strip() or None
        return self.user_repo.save(user)

    def update_notification_preferences(self, user: models.User, prefs: Dict[str, Optional[bool]]) -> models.User:
        for key in ("email_notifications", "invoice_alerts", "payment_alerts", "statement_alerts"):
            if prefs.get(key) is not None:
                setattr(user, key, bool(prefs[key]))
        return self.user_repo.save(user)

    def list_users(self, user: models.User) -> List[models.User]:
        return self.user_repo.list_for_org(user.organization_id)

    def _check_customer_link(self, user: models.User, role: models.UserRole, customer_id: Optional[int]) -> None:
        if role == models.UserRole.CUSTOMER:
            if not customer_id:
                raise ValidationError("Customer users must be linked to a customer")
            if not self.customer_repo.get(user.organization_id, customer_id):
                raise NotFoundError("Customer not found")

    def create_user(self, user: models.User, data: Dict[str, Any]) -> models.User:
        require_admin(user, "create users")
        if self.user_repo.get_by_email(data["email"]):
            raise ValidationError("Email already registered")
        role = data.get("role") or models.UserRole.ADMIN
        self._check_customer_link(user, role, data.get("customer_id"))
        new_user = models.User(
            organization_id=user.organization_id,
            email=data["email"].strip().lower(),
            password_hash=PWD_CTX.hash(data["password"]),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            role=role,
            customer_id=data.get("customer_id") if role == models.UserRole.CUSTOMER else None,
        )
        return self.user_repo.save(new_user)

    def update_user(self, user: models.User, user_id: int, data: Dict[str, Any]) -> models.User:
        require_admin(user, "update users")
        target = self.user_repo.get_in_org(user.organization_id, user_id)
        if not target:
            raise NotFoundError("User not found")
        role = data.get("role") or target.role
        if target.id == user.id and role != models.UserRole.ADMIN:
            raise ValidationError("You cannot remove your own admin role")
        customer_id = data.get("customer_id", target.customer_id)
        self._check_customer_link(user, role, customer_id)
        for key in ("first_name", "last_name"):
            if data.get(key) is not None:
                setattr(target, key, data[key])
        target.role = role
        target.customer_id = customer_id if role == models.UserRole.CUSTOMER else None
        return self.user_repo.save(target)

    def delete_user(self, user: models.User, user_id: int) -> None:
        require_admin(user, "delete users")
        if user_id == user.id:
            raise ValidationError("You cannot delete your own account")
        target = self.user_repo.get_in_org(user.organization_id, user_id)
        if not target:
            raise NotFoundError("User not found")
        self.user_repo.delete(target)

    def get_organization(self, user: models.User) -> models.Organization:
        org = self.org_repo.get(user.organization_id)
        if not org:
            raise NotFoundError("Organization not found")
        return org

    def update_organization(self, user: models.User, data: Dict[str, Any]) -> models.Organization:
        require_admin(user, "update organization settings")
        org = self.get_organization(user)
        for key, value in data.items():
            if hasattr(org, key) and key not in ("id", "slug", "created_at"):
                setattr(org, key, value)
        return self.org_repo.save(org)


class CustomerService:
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.CustomerRepository(session)
        self.term_repo = repositories.PaymentTermRepository(session)
        self.doc_repo = repositories.DocumentRepository(session)
        self.payment_repo = repositories.PaymentRepository(session)
        self.audit = AuditService(session)

    def get(self, user: models.User, customer_id: int) -> models.Customer:
        customer = self.repo.get(user.organization_id, customer_id)
        if not customer:
            raise NotFoundError("Customer not found")
        return customer

    def _check_term(self, user: models.User, term_id: Optional[int]) -> None:
        if term_id and not self.term_repo.get(user.organization_id, term_id):
            raise ValidationError("Payment term not found")

    def create(self, user: models.User, data: Dict[str, Any]) -> models.Customer:
        require_admin(user, "create customers")
        name = (data.get("company_name") or "").strip()
        if not name:
            raise ValidationError("Company name is required")
        self._check_term(user, data.get("payment_term_id"))
        fields = {k: v for k, v in data.items() if v is not None and k != "company_name"}
        customer = models.Customer(organization_id=user.organization_id, company_name=name, **fields)
        customer.status = data.get("status") or models.CustomerStatus.ACTIVE
        customer.current_balance = 0.0
        customer.portal_enabled = bool(data.get("portal_enabled") or False)
        customer.source_type = models.RecordSourceType.MANUAL
        self.repo.save(customer)
        self.audit.log_customer_created(user, customer)
        return customer

    def update(self, user: models.User, customer_id: int, data: Dict[str, Any]) -> models.Customer:
        require_admin(user, "update customers")
        customer = self.get(user, customer_id)
        if "company_name" in data and not (data["company_name"] or "").strip():
            raise ValidationError("Company name is required")
        self._check_term(user, data.get("payment_term_id"))
        for key, value in data.items():
            setattr(customer, key, value.strip() if key == "company_name" else value)
        return self.repo.save(customer)

    def delete(self, user: models.User, customer_id: int) -> None:
        require_admin(user, "delete customers")
        customer = self.get(user, customer_id)
        if self.repo.document_counts([customer.id]) or self.repo.payment_counts([customer.id]):
            raise ValidationError(
                "Cannot delete customer with existing invoices or payments. "
                "Consider marking as inactive instead."
            )
        self.repo.delete(customer)

    def list(self, user: models.User, search: Optional[str] = None,
             status: Optional[models.CustomerStatus] = None) -> List[Dict[str, Any]]:
        customers = self.repo.list(user.organization_id, search=search, status=status)
        ids = [c.id for c in customers]
        doc_counts = self.repo.document_counts(ids)
        pay_counts = self.repo.payment_counts(ids)
        return [{"customer": c, "document_count": doc_counts.get(c.id, 0),
                 "payment_count": pay_counts.get(c.id, 0)} for c in customers]

    def detail(self, user: models.User, customer_id: int) -> Dict[str, Any]:
        customer = self.get(user, customer_id)
        return {
            "customer": customer,
            "documents": self.doc_repo.recent_for_customer(customer.id, 10),
            "payments": self.payment_repo.recent_for_customer(customer.id, 10),
        }


class PaymentTermService:
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.PaymentTermRepository(session)
        self.customer_repo = repositories.CustomerRepository(session)

    def list(self, user: models.User) -> List[models.PaymentTermType]:
        """Return the organization's terms, seeding the defaults on first use."""
        terms = self.repo.list(user.organization_id)
        if terms:
            return terms
        for term in DEFAULT_PAYMENT_TERMS:
            self.repo.save(models.PaymentTermType(organization_id=user.organization_id, **term), commit=False)
        self.session.commit()
        return self.repo.list(user.organization_id)

    def list_enabled(self, user: models.User) -> List[models.PaymentTermType]:
        return [t for t in self.list(user) if t.enabled]

    @staticmethod
    def _validate(data: Dict[str, Any]) -> None:
        if not data.get("has_discount"):
            return
        days, pct = data.get("discount_days"), data.get("discount_percentage")
        if days is None or pct is None:
            raise ValidationError("Discount days and percentage are required when discount is enabled")
        if days >= data["days_due"]:
            raise ValidationError("Discount days must be less than days due")
        if pct <= 0 or pct > 100:
            raise ValidationError("Discount percentage must be between 0 and 100")

    def upsert(self, user: models.User, data: Dict[str, Any]) -> models.PaymentTermType:
        require_admin(user, "manage payment terms")
        self._validate(data)
        code = data["code"].strip().upper()
        term = self.repo.get_by_code(user.organization_id, code)
        if term is None:
            term = models.PaymentTermType(organization_id=user.organization_id, code=code, name=data["name"])
        for key in ("name", "description", "days_due", "has_discount", "enabled", "display_order", "is_default"):
            setattr(term, key, data.get(key, getattr(term, key)))
        term.discount_days = data.get("discount_days") if data.get("has_discount") else None
        term.discount_percentage = data.get("discount_percentage") if data.get("has_discount") else None
        self.repo.save(term, commit=False)
        if term.is_default:
            self.repo.clear_default(user.organization_id, except_id=term.id)
        self.session.commit()
        self.session.refresh(term)
        return term

    def delete(self, user: models.User, term_id: int) -> None:
        require_admin(user, "manage payment terms")
        term = self.repo.get(user.organization_id, term_id)
        if not term:
            raise NotFoundError("Payment term not found")
        in_use = self.customer_repo.count_using_term(user.organization_id, term.id)
        if in_use:
            raise ValidationError(f"Cannot delete payment term: {in_use} customer(s) are using it")
        self.repo.delete(term)


class DocumentTypeSettingService:
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.DocumentTypeSettingRepository(session)

    def list(self, user: models.User) -> List[models.DocumentTypeSetting]:
        settings_rows = self.repo.list(user.organization_id)
        if settings_rows:
            return settings_rows
        for doc_type, name, order in DEFAULT_DOCUMENT_TYPES:
            self.repo.save(models.DocumentTypeSetting(
                organization_id=user.organization_id, document_type=doc_type,
                display_name=name, display_order=order, enabled=True), commit=False)
        self.session.commit()
        return self.repo.list(user.organization_id)

    def list_enabled(self, user: models.User) -> List[Dict[str, Any]]:
        rows = [s for s in self.repo.list(user.organization_id) if s.enabled]
        if rows:
            return [{"document_type": s.document_type, "display_name": s.display_name,
                     "display_order": s.display_order} for s in rows]
        return [{"document_type": t, "display_name": n, "display_order": o} for t, n, o in DEFAULT_DOCUMENT_TYPES]

    def update(self, user: models.User, data: Dict[str, Any]) -> models.DocumentTypeSetting:
        require_admin(user, "manage document types")
        row = self.repo.get_by_type(user.organization_id, data["document_type"])
        if row is None:
            row = models.DocumentTypeSetting(organization_id=user.organization_id,
                                             document_type=data["document_type"],
                                             display_name=data["display_name"])
        row.enabled = data.get("enabled", True)
        row.display_name = data["display_name"]
        row.display_order = data.get("display_order", row.display_order)
        return self.repo.save(row)


class DocumentService:
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.DocumentRepository(session)
        self.customer_repo = repositories.CustomerRepository(session)
        self.term_repo = repositories.PaymentTermRepository(session)
        self.payment_repo = repositories.PaymentRepository(session)
        self.audit = AuditService(session)

    def get(self, user: models.User, document_id: int) -> models.ARDocument:
        doc = self.repo.get(user.organization_id, document_id)
        if not doc:
            raise NotFoundError("Document not found")
        return doc

    def detail(self, user: models.User, document_id: int) -> Dict[str, Any]:
        doc = self.get(user, document_id)
        return {
            "document": doc,
            "line_items": sorted(doc.line_items, key=lambda li: li.line_number),
            "applications": self.payment_repo.applications_for_document(doc.id),
            "customer": self.customer_repo.get(user.organization_id, doc.customer_id),
        }

    def list(self, user: models.User, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE, **filters):
        check_page(page, page_size)
        rows, count = self.repo.list(user.organization_id, page, page_size, **filters)
        return page_payload(rows, count, page, page_size)

    def type_counts(self, user: models.User) -> Dict[str, int]:
        counts = self.repo.counts_by_type(user.organization_id)
        return {t.value: counts.get(t.value, 0) for t in models.DocumentType}

    @staticmethod
    def build_line_items(items: Iterable[Dict[str, Any]]) -> List[models.ARDocumentLineItem]:
        lines = []
        for n, item in enumerate(items, start=1):
            subtotal = money(item["quantity"] * item["unit_price"])
            discount = money(subtotal * (item.get("discount_percent") or 0) / 100)
            taxable = money(subtotal - discount)
            tax = money(taxable * (item.get("tax_percent") or 0) / 100)
            lines.append(models.ARDocumentLineItem(
                line_number=n,
                description=item["description"],
                quantity=item["quantity"],
                unit_price=item["unit_price"],
                discount_percent=item.get("discount_percent") or 0,
                tax_percent=item.get("tax_percent") or 0,
                line_subtotal=subtotal,
                discount_amount=discount,
                taxable_amount=taxable,
                tax_amount=tax,
                line_total=money(taxable + tax),
            ))
        return lines

    def _resolve_term(self, user: models.User, term_id: Optional[int],
                      customer: models.Customer) -> Optional[models.PaymentTermType]:
        term_id = term_id or customer.payment_term_id
        if not term_id:
            return None
        term = self.term_repo.get(user.organization_id, term_id)
        if not term:
            raise ValidationError("Payment term not found")
        return term

    @staticmethod
    def _apply_terms(doc: models.ARDocument, term: Optional[models.PaymentTermType],
                     explicit_due: Optional[date]) -> None:
        doc.payment_term_id = term.id if term else None
        doc.due_date = explicit_due or doc.document_date + timedelta(days=term.days_due if term else 30)
        doc.early_payment_deadline = None
        doc.discount_percentage = None
        doc.discount_available = None
        doc.applied_payment_term = None
        if term:
            doc.applied_payment_term = {
                "id": term.id, "code": term.code, "name": term.name, "days_due": term.days_due,
                "has_discount": term.has_discount, "discount_days": term.discount_days,
                "discount_percentage": term.discount_percentage,
            }
            if term.has_discount and term.discount_days is not None and term.discount_percentage:
                doc.early_payment_deadline = doc.document_date + timedelta(days=term.discount_days)
                doc.discount_percentage = term.discount_percentage
                doc.discount_available = money(doc.total_amount * term.discount_percentage / 100)

    @staticmethod
    def _set_totals(doc: models.ARDocument, lines: List[models.ARDocumentLineItem]) -> None:
        doc.subtotal = total(li.taxable_amount for li in lines)
        doc.tax_amount = total(li.tax_amount for li in lines)
        doc.total_amount = total(li.line_total for li in lines)

    def create(self, user: models.User, data: Dict[str, Any]) -> models.ARDocument:
        require_admin(user, "create documents")
        items = data.get("line_items") or []
        if not items:
            raise ValidationError("At least one line item is required")
        customer = self.customer_repo.get(user.organization_id, data["customer_id"])
        if not customer:
            raise NotFoundError("Customer not found")
        doc_type = data.get("document_type") or models.DocumentType.INVOICE
        number = (data.get("document_number") or "").strip()
        if not number:
            count = self.repo.count_for_type(user.organization_id, doc_type)
            number = f"{DOCUMENT_PREFIXES[doc_type]}-{count + 1:06d}"
        if self.repo.number_exists(user.organization_id, doc_type, number):
            raise ValidationError(f"Document number {number} already exists")
        term = self._resolve_term(user, data.get("payment_term_id"), customer)
        lines = self.build_line_items(items)
        doc = models.ARDocument(
            organization_id=user.organization_id,
            customer_id=customer.id,
            document_type=doc_type,
            document_number=number,
            reference_number=data.get("reference_number"),
            document_date=data["document_date"],
            description=data.get("description"),
            notes=data.get("notes"),
            customer_notes=data.get("customer_notes"),
            status=models.DocumentStatus.OPEN,
            source_type=models.RecordSourceType.MANUAL,
        )
        self._set_totals(doc, lines)
        doc.amount_paid = 0.0
        doc.balance_due = doc.total_amount
        self._apply_terms(doc, term, data.get("due_date"))
        doc.line_items = lines
        self.repo.save(doc, commit=False)
        self.customer_repo.refresh_balance(customer)
        self.session.commit()
        self.session.refresh(doc)
        self.audit.log_invoice_created(user, doc, customer)
        return doc

    def update(self, user: models.User, document_id: int, data: Dict[str, Any]) -> models.ARDocument:
        require_admin(user, "edit documents")
        doc = self.get(user, document_id)
        if doc.source_type != models.RecordSourceType.MANUAL:
            raise ValidationError(
                "Cannot edit documents created from integrations. Changes should be made in the source system."
            )
        if doc.status == models.DocumentStatus.VOID:
            raise ValidationError("Cannot edit a voided document")
        for key in ("reference_number", "description", "notes", "customer_notes"):
            if key in data:
                setattr(doc, key, data[key])
        if data.get("document_date"):
            doc.document_date = data["document_date"]
        if data.get("line_items") is not None:
            if not data["line_items"]:
                raise ValidationError("At least one line item is required")
            lines = self.build_line_items(data["line_items"])
            doc.line_items = lines
            self._set_totals(doc, lines)
        balance = money(doc.total_amount - doc.amount_paid)
        if balance < 0:
            raise ValidationError(
                f"Document total ({fmt(doc.total_amount)}) cannot be less than the amount already paid "
                f"({fmt(doc.amount_paid)})"
            )
        doc.balance_due = balance
        if doc.amount_paid > 0:
            doc.status = status_from_balance(doc.total_amount, balance)
        else:
            doc.status = models.DocumentStatus.OPEN
        if doc.status != models.DocumentStatus.PAID:
            doc.paid_date = None
        elif doc.paid_date is None:
            doc.paid_date = models.utcnow()
        customer = self.customer_repo.get(user.organization_id, doc.customer_id)
        term_id = data.get("payment_term_id", doc.payment_term_id)
        term = self._resolve_term(user, term_id, customer)
        due = data.get("due_date")
        if due is None and "payment_term_id" not in data and "document_date" not in data:
            due = doc.due_date
        self._apply_terms(doc, term, due)
        self.repo.save(doc, commit=False)
        self.customer_repo.refresh_balance(customer)
        self.session.commit()
        self.session.refresh(doc)
        return doc

    def delete(self, user: models.User, document_id: int) -> None:
        require_admin(user, "delete documents")
        doc = self.get(user, document_id)
        if doc.source_type != models.RecordSourceType.MANUAL:
            raise ValidationError(
                "Cannot delete documents created from integrations. Changes should be made in the source system."
            )
        applications = self.payment_repo.applications_for_document(doc.id)
        if any(a.payment is None or a.payment.status != models.PaymentStatus.VOID for a in applications):
            raise ValidationError("Cannot delete a document with applied payments. Void the payments first.")
        customer = self.customer_repo.get(user.organization_id, doc.customer_id)
        for app in applications:
            self.session.delete(app)
        self.repo.delete(doc, commit=False)
        self.session.flush()
        self.customer_repo.refresh_balance(customer)
        self.session.commit()

    def generate_share_link(self, user: models.User, document_id: int) -> Dict[str, str]:
        require_admin(user, "generate share links")
        doc = self.get(user, document_id)
        if doc.document_type != models.DocumentType.INVOICE:
            raise NotFoundError("Invoice not found")
        token = doc.public_share_token
        if not token or not doc.public_share_enabled:
            token = secrets.token_urlsafe(24)
            doc.public_share_token = token
            doc.public_share_enabled = True
            doc.public_share_created_at = models.utcnow()
            self.repo.save(doc)
        return {"share_token": token, "share_url": f"{settings.APP_URL}/invoice/{token}"}

    def disable_sharing(self, user: models.User, document_id: int) -> None:
        require_admin(user, "manage sharing")
        doc = self.get(user, document_id)
        doc.public_share_enabled = False
        self.repo.save(doc)


class DashboardService:
    """Read-only AR reporting."""

    def __init__(self, session: Session):
        self.session = session
        self.doc_repo = repositories.DocumentRepository(session)
        self.payment_repo = repositories.PaymentRepository(session)
        self.customer_repo = repositories.CustomerRepository(session)
        self.user_repo = repositories.UserRepository(session)

    @staticmethod
    def _window(start: date, end: date):
        if end < start:
            raise ValidationError("Start date must be on or before end date")
        return datetime.combine(start, time.min), datetime.combine(end, time.max)

    def stats(self, user: models.User, start: date, end: date) -> Dict[str, Any]:
        dt_start, dt_end = self._window(start, end)
        org = user.organization_id
        documents = self.doc_repo.in_date_range(org, start, end)
        total_sales = total(d.total_amount for d in documents)
        outstanding = self.doc_repo.outstanding(org)
        payments = self.payment_repo.in_date_range(org, dt_start, dt_end)
        received = total(p.amount for p in payments)
        return {
            "total_sales": total_sales,
            "sales_count": len(documents),
            "total_outstanding": total(d.balance_due for d in outstanding),
            "outstanding_count": len(outstanding),
            "open_count": sum(1 for d in outstanding if d.status == models.DocumentStatus.OPEN),
            "partial_count": sum(1 for d in outstanding if d.status == models.DocumentStatus.PARTIAL),
            "paid_count": self.doc_repo.count_with_status(org, models.DocumentStatus.PAID),
            "payments_received": received,
            "payments_count": len(payments),
            "collection_rate": round(received / total_sales * 100, 2) if total_sales > 0 else 0.0,
            "active_customers": self.customer_repo.count_active(org),
            "user_count": self.user_repo.count_for_org(org),
        }

    def trends(self, user: models.User, start: date, end: date) -> List[Dict[str, Any]]:
        dt_start, dt_end = self._window(start, end)
        buckets: Dict[str, Dict[str, float]] = {}
        for doc in self.doc_repo.in_date_range(user.organization_id, start, end):
            b = buckets.setdefault(doc.document_date.strftime("%Y-%m"), {"sales": 0.0, "payments": 0.0, "count": 0})
            b["sales"] = money(b["sales"] + doc.total_amount)
            b["count"] += 1
        for payment in self.payment_repo.in_date_range(user.organization_id, dt_start, dt_end):
            b = buckets.setdefault(payment.payment_date.strftime("%Y-%m"), {"sales": 0.0, "payments": 0.0, "count": 0})
            b["payments"] = money(b["payments"] + payment.amount)
        return [{
            "month": month,
            "sales": b["sales"],
            "payments": b["payments"],
            "count": b["count"],
            "collection_rate": round(b["payments"] / b["sales"] * 100, 2) if b["sales"] > 0 else 0.0,
        } for month, b in sorted(buckets.items())]

    def top_customers(self, user: models.User, start: date, end: date, limit: int = 10) -> List[Dict[str, Any]]:
        dt_start, dt_end = self._window(start, end)
        sales: Dict[int, List[float]] = {}
        for doc in self.doc_repo.in_date_range(user.organization_id, start, end):
            sales.setdefault(doc.customer_id, []).append(doc.total_amount)
        paid: Dict[int, List[float]] = {}
        for p in self.payment_repo.in_date_range(user.organization_id, dt_start, dt_end):
            paid.setdefault(p.customer_id, []).append(p.amount)
        rows = []
        for customer_id, amounts in sales.items():
            customer = self.customer_repo.get(user.organization_id, customer_id)
            sold = total(amounts)
            received = total(paid.get(customer_id, []))
            if sold <= 0 or customer is None:
                continue
            rows.append({
                "id": customer.id,
                "name": customer.company_name,
                "email": customer.email or "",
                "total_sales": sold,
                "total_payments": received,
                "document_count": len(amounts),
                "collection_rate": round(received / sold * 100, 2),
                "outstanding_balance": customer.current_balance,
            })
        rows.sort(key=lambda r: r["total_sales"], reverse=True)
        return rows[:limit]

    def aging(self, user: models.User, as_of: Optional[date] = None) -> Dict[str, Any]:
        as_of = as_of or models.utcnow().date()
        buckets = {"current": 0.0, "1_30": 0.0, "31_60": 0.0, "61_90": 0.0, "over_90": 0.0}
        for doc in self.doc_repo.outstanding(user.organization_id):
            days = (as_of - doc.due_date).days if doc.due_date else 0
            if days <= 0:
                key = "current"
            elif days <= 30:
                key = "1_30"
            elif days <= 60:
                key = "31_60"
            elif days <= 90:
                key = "61_90"
            else:
                key = "over_90"
            buckets[key] = money(buckets[key] + doc.balance_due)
        return {"as_of": as_of, "buckets": buckets, "total": total(buckets.values())}

    def export_documents_csv(self, user: models.User, start: date, end: date) -> str:
        self._window(start, end)
        out = io.StringIO()
        writer = csv.writer(out)
        writer.writerow(["Document Number", "Type", "Customer", "Document Date", "Due Date",
                         "Total", "Paid", "Balance", "Status"])
        docs = sorted(self.doc_repo.in_date_range(user.organization_id, start, end),
                      key=lambda d: d.document_date, reverse=True)
        names: Dict[int, str] = {}
        for d in docs:
            if d.customer_id not in names:
                c = self.customer_repo.get(user.organization_id, d.customer_id)
                names[d.customer_id] = c.company_name if c else ""
            writer.writerow([d.document_number, d.document_type.value, names[d.customer_id],
                             d.document_date.isoformat(), d.due_date.isoformat() if d.due_date else "",
                             f"{d.total_amount:.2f}", f"{d.amount_paid:.2f}", f"{d.balance_due:.2f}",
                             d.status.value])
        return out.getvalue()

    def export_payments_csv(self, user: models.User, start: date, end: date) -> str:
        dt_start, dt_end = self._window(start, end)
        out = io.StringIO()
        writer = csv.writer(out)
        writer.writerow(["Payment Number", "Customer", "Payment Date", "Amount", "Method",
                         "Reference", "Status", "Transaction ID"])
        names: Dict[int, str] = {}
        for p in reversed(self.payment_repo.in_date_range(user.organization_id, dt_start, dt_end, include_void=True)):
            if p.customer_id not in names:
                c = self.customer_repo.get(user.organization_id, p.customer_id)
                names[p.customer_id] = c.company_name if c else ""
            writer.writerow([p.payment_number, names[p.customer_id], p.payment_date.date().isoformat(),
                             f"{p.amount:.2f}", p.payment_method.value, p.reference_number or "",
                             p.status.value, p.gateway_transaction_id or ""])
        return out.getvalue()

    def search(self, user: models.User, query: str, limit: int = 5) -> Dict[str, Any]:
        query = (query or "").strip()
        if len(query) < 2:
            return {"customers": [], "documents": [], "payments": []}
        return {
            "customers": self.customer_repo.list(user.organization_id, search=query)[:limit],
            "documents": self.doc_repo.search(user.organization_id, query, limit),
            "payments": self.payment_repo.search(user.organization_id, query, limit),
        }
