"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate and is
always scoped by `organization_id` where the aggregate is tenant owned.
`save` commits by default; services that need several writes in one
transaction pass `commit=False` and commit themselves.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlmodel import Session, select

from . import models


def _like(term: str) -> str:
    return f"%{term.strip()}%"


class BaseRepository:
    def __init__(self, session: Session):
        self.session = session

    def save(self, obj, commit: bool = True):
        """Add `obj` to the session; commit and refresh unless told otherwise."""
        if hasattr(obj, "updated_at"):
            obj.updated_at = models.utcnow()
        self.session.add(obj)
        if commit:
            self.session.commit()
            self.session.refresh(obj)
        else:
            self.session.flush()
        return obj

    def delete(self, obj, commit: bool = True) -> None:
        self.session.delete(obj)
        if commit:
            self.session.commit()

    def paginate(self, stmt, page: int, page_size: int) -> Tuple[list, int]:
        """Return one page of `stmt` plus the unpaged row count."""
        total = self.session.exec(select(func.count()).select_from(stmt.order_by(None).subquery())).one()
        rows = self.session.exec(stmt.offset((page - 1) * page_size).limit(page_size)).all()
        return list(rows), int(total)


class OrganizationRepository(BaseRepository):
    def get(self, organization_id: int) -> Optional[models.Organization]:
        return self.session.get(models.Organization, organization_id)

    def slug_exists(self, slug: str) -> bool:
        stmt = select(models.Organization.id).where(models.Organization.slug == slug)
        return self.session.exec(stmt).first() is not None


class UserRepository(BaseRepository):
    """CRUD operations for `User` objects."""

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)

    def get_by_email(self, email: str) -> Optional[models.User]:
        """Return a `User` by (case-insensitive) email or `None` if not found."""
        stmt = select(models.User).where(func.lower(models.User.email) == email.strip().lower())
        return self.session.exec(stmt).first()

    def get_in_org(self, organization_id: int, user_id: int) -> Optional[models.User]:
        user = self.get(user_id)
        if user is None or user.organization_id != organization_id:
            return None
        return user

    def list_for_org(self, organization_id: int) -> List[models.User]:
        stmt = (select(models.User).where(models.User.organization_id == organization_id)
                .order_by(models.User.email))
        return list(self.session.exec(stmt).all())

    def count_for_org(self, organization_id: int) -> int:
        stmt = select(func.count(models.User.id)).where(models.User.organization_id == organization_id)
        return int(self.session.exec(stmt).one())


class CustomerRepository(BaseRepository):
    def get(self, organization_id: int, customer_id: int) -> Optional[models.Customer]:
        customer = self.session.get(models.Customer, customer_id)
        if customer is None or customer.organization_id != organization_id:
            return None
        return customer

    def list(self, organization_id: int, search: Optional[str] = None,
             status: Optional[models.CustomerStatus] = None) -> List[models.Customer]:
        stmt = select(models.Customer).where(models.Customer.organization_id == organization_id)
        if status:
            stmt = stmt.where(models.Customer.status == status)
        if search and search.strip():
            term = _like(search)
            stmt = stmt.where(or_(
                models.Customer.company_name.ilike(term),
                models.Customer.contact_name.ilike(term),
                models.Customer.email.ilike(term),
                models.Customer.customer_number.ilike(term),
            ))
        return list(self.session.exec(stmt.order_by(models.Customer.company_name)).all())

    def document_counts(self, customer_ids: Iterable[int]) -> Dict[int, int]:
        ids = list(customer_ids)
        if not ids:
            return {}
        stmt = (select(models.ARDocument.customer_id, func.count(models.ARDocument.id))
                .where(models.ARDocument.customer_id.in_(ids)).group_by(models.ARDocument.customer_id))
        return {cid: int(n) for cid, n in self.session.exec(stmt).all()}

    def payment_counts(self, customer_ids: Iterable[int]) -> Dict[int, int]:
        ids = list(customer_ids)
        if not ids:
            return {}
        stmt = (select(models.CustomerPayment.customer_id, func.count(models.CustomerPayment.id))
                .where(models.CustomerPayment.customer_id.in_(ids)).group_by(models.CustomerPayment.customer_id))
        return {cid: int(n) for cid, n in self.session.exec(stmt).all()}

    def get_by_external_id(self, organization_id: int, external_id: str,
                           external_system: str) -> Optional[models.Customer]:
        stmt = select(models.Customer).where(
            models.Customer.organization_id == organization_id,
            models.Customer.external_id == external_id,
            models.Customer.external_system == external_system,
        )
        return self.session.exec(stmt).first()

    def count_using_term(self, organization_id: int, payment_term_id: int) -> int:
        stmt = select(func.count(models.Customer.id)).where(
            models.Customer.organization_id == organization_id,
            models.Customer.payment_term_id == payment_term_id,
        )
        return int(self.session.exec(stmt).one())

    def count_active(self, organization_id: int) -> int:
        stmt = select(func.count(models.Customer.id)).where(
            models.Customer.organization_id == organization_id,
            models.Customer.status == models.CustomerStatus.ACTIVE,
        )
        return int(self.session.exec(stmt).one())

    def created_by_sync(self, sync_log_id: int) -> List[models.Customer]:
        stmt = select(models.Customer).where(models.Customer.created_by_sync_log_id == sync_log_id)
        return list(self.session.exec(stmt).all())

    def refresh_balance(self, customer: models.Customer) -> models.Customer:
        """Recompute `current_balance` from the customer's open documents (no commit)."""
        stmt = select(func.coalesce(func.sum(models.ARDocument.balance_due), 0.0)).where(
            models.ARDocument.customer_id == customer.id,
            models.ARDocument.status != models.DocumentStatus.VOID,
        )
        customer.current_balance = round(float(self.session.exec(stmt).one()), 2)
        self.session.add(customer)
        return customer


class PaymentTermRepository(BaseRepository):
    def list(self, organization_id: int, enabled_only: bool = False) -> List[models.PaymentTermType]:
        stmt = select(models.PaymentTermType).where(models.PaymentTermType.organization_id == organization_id)
        if enabled_only:
            stmt = stmt.where(models.PaymentTermType.enabled == True)  # noqa: E712
        stmt = stmt.order_by(models.PaymentTermType.display_order, models.PaymentTermType.name)
        return list(self.session.exec(stmt).all())

    def get(self, organization_id: int, term_id: int) -> Optional[models.PaymentTermType]:
        term = self.session.get(models.PaymentTermType, term_id)
        if term is None or term.organization_id != organization_id:
            return None
        return term

    def get_by_code(self, organization_id: int, code: str) -> Optional[models.PaymentTermType]:
        stmt = select(models.PaymentTermType).where(
            models.PaymentTermType.organization_id == organization_id,
            models.PaymentTermType.code == code,
        )
        return self.session.exec(stmt).first()

    def clear_default(self, organization_id: int, except_id: Optional[int] = None) -> None:
        for term in self.list(organization_id):
            if term.is_default and term.id != except_id:
                term.is_default = False
                self.session.add(term)


class DocumentTypeSettingRepository(BaseRepository):
    def list(self, organization_id: int) -> List[models.DocumentTypeSetting]:
        stmt = (select(models.DocumentTypeSetting)
                .where(models.DocumentTypeSetting.organization_id == organization_id)
                .order_by(models.DocumentTypeSetting.display_order))
        return list(self.session.exec(stmt).all())

    def get_by_type(self, organization_id: int,
                    document_type: models.DocumentType) -> Optional[models.DocumentTypeSetting]:
        stmt = select(models.DocumentTypeSetting).where(
            models.DocumentTypeSetting.organization_id == organization_id,
            models.DocumentTypeSetting.document_type == document_type,
        )
        return self.session.exec(stmt).first()


class DocumentRepository(BaseRepository):
    def get(self, organization_id: int, document_id: int) -> Optional[models.ARDocument]:
        doc = self.session.get(models.ARDocument, document_id)
        if doc is None or doc.organization_id != organization_id:
            return None
        return doc

    def get_many(self, organization_id: int, document_ids: List[int]) -> List[models.ARDocument]:
        """Documents for `document_ids` in the order the ids were given."""
        if not document_ids:
            return []
        stmt = select(models.ARDocument).where(
            models.ARDocument.organization_id == organization_id,
            models.ARDocument.id.in_(document_ids),
        )
        by_id = {d.id: d for d in self.session.exec(stmt).all()}
        return [by_id[i] for i in document_ids if i in by_id]

    def list(self, organization_id: int, page: int, page_size: int,
             document_type: Optional[models.DocumentType] = None,
             status: Optional[models.DocumentStatus] = None,
             customer_id: Optional[int] = None,
             search: Optional[str] = None) -> Tuple[List[models.ARDocument], int]:
        stmt = select(models.ARDocument).where(models.ARDocument.organization_id == organization_id)
        if document_type:
            stmt = stmt.where(models.ARDocument.document_type == document_type)
        if status:
            stmt = stmt.where(models.ARDocument.status == status)
        if customer_id:
            stmt = stmt.where(models.ARDocument.customer_id == customer_id)
        if search and search.strip():
            term = _like(search)
            stmt = stmt.join(models.Customer, models.Customer.id == models.ARDocument.customer_id).where(or_(
                models.ARDocument.document_number.ilike(term),
                models.ARDocument.reference_number.ilike(term),
                models.ARDocument.description.ilike(term),
                models.Customer.company_name.ilike(term),
            ))
        stmt = stmt.order_by(models.ARDocument.document_date.desc(), models.ARDocument.id.desc())
        return self.paginate(stmt, page, page_size)

    def counts_by_type(self, organization_id: int) -> Dict[str, int]:
        stmt = (select(models.ARDocument.document_type, func.count(models.ARDocument.id))
                .where(models.ARDocument.organization_id == organization_id)
                .group_by(models.ARDocument.document_type))
        return {getattr(t, "value", t): int(n) for t, n in self.session.exec(stmt).all()}

    def number_exists(self, organization_id: int, document_type: models.DocumentType, number: str,
                      exclude_id: Optional[int] = None) -> bool:
        stmt = select(models.ARDocument.id).where(
            models.ARDocument.organization_id == organization_id,
            models.ARDocument.document_type == document_type,
            models.ARDocument.document_number == number,
        )
        if exclude_id:
            stmt = stmt.where(models.ARDocument.id != exclude_id)
        return self.session.exec(stmt).first() is not None

    def count_for_type(self, organization_id: int, document_type: models.DocumentType) -> int:
        stmt = select(func.count(models.ARDocument.id)).where(
            models.ARDocument.organization_id == organization_id,
            models.ARDocument.document_type == document_type,
        )
        return int(self.session.exec(stmt).one())

    def get_by_external_id(self, organization_id: int, external_id: str,
                           external_system: str) -> Optional[models.ARDocument]:
        stmt = select(models.ARDocument).where(
            models.ARDocument.organization_id == organization_id,
            models.ARDocument.external_id == external_id,
            models.ARDocument.external_system == external_system,
        )
        return self.session.exec(stmt).first()

    def get_by_share_token(self, token: str) -> Optional[models.ARDocument]:
        stmt = select(models.ARDocument).where(
            models.ARDocument.public_share_token == token,
            models.ARDocument.public_share_enabled == True,  # noqa: E712
            models.ARDocument.document_type == models.DocumentType.INVOICE,
        )
        return self.session.exec(stmt).first()

    def open_for_customer(self, organization_id: int, customer_id: int) -> List[models.ARDocument]:
        stmt = (select(models.ARDocument).where(
            models.ARDocument.organization_id == organization_id,
            models.ARDocument.customer_id == customer_id,
            models.ARDocument.balance_due > 0,
            models.ARDocument.status != models.DocumentStatus.VOID,
        ).order_by(models.ARDocument.due_date, models.ARDocument.id))
        return list(self.session.exec(stmt).all())

    def recent_for_customer(self, customer_id: int, limit: int = 10) -> List[models.ARDocument]:
        stmt = (select(models.ARDocument).where(models.ARDocument.customer_id == customer_id)
                .order_by(models.ARDocument.document_date.desc(), models.ARDocument.id.desc()).limit(limit))
        return list(self.session.exec(stmt).all())

    def in_date_range(self, organization_id: int, start, end) -> List[models.ARDocument]:
        stmt = select(models.ARDocument).where(
            models.ARDocument.organization_id == organization_id,
            models.ARDocument.document_date >= start,
            models.ARDocument.document_date <= end,
        ).order_by(models.ARDocument.document_date)
        return list(self.session.exec(stmt).all())

    def outstanding(self, organization_id: int) -> List[models.ARDocument]:
        stmt = select(models.ARDocument).where(
            models.ARDocument.organization_id == organization_id,
            models.ARDocument.status.in_([models.DocumentStatus.OPEN, models.DocumentStatus.PARTIAL]),
        )
        return list(self.session.exec(stmt).all())

    def count_with_status(self, organization_id: int, status: models.DocumentStatus) -> int:
        stmt = select(func.count(models.ARDocument.id)).where(
            models.ARDocument.organization_id == organization_id,
            models.ARDocument.status == status,
        )
        return int(self.session.exec(stmt).one())

    def created_by_sync(self, sync_log_id: int) -> List[models.ARDocument]:
        stmt = select(models.ARDocument).where(models.ARDocument.sync_log_id == sync_log_id)
        return list(self.session.exec(stmt).all())

    def search(self, organization_id: int, term: str, limit: int) -> List[models.ARDocument]:
        like = _like(term)
        stmt = select(models.ARDocument).where(
            models.ARDocument.organization_id == organization_id,
            or_(models.ARDocument.document_number.ilike(like),
                models.ARDocument.reference_number.ilike(like),
                models.ARDocument.description.ilike(like)),
        ).order_by(models.ARDocument.document_date.desc()).limit(limit)
        return list(self.session.exec(stmt).all())


class PaymentRepository(BaseRepository):
    def get(self, organization_id: int, payment_id: int) -> Optional[models.CustomerPayment]:
        payment = self.session.get(models.CustomerPayment, payment_id)
        if payment is None or payment.organization_id != organization_id:
            return None
        return payment

    def get_any(self, payment_id: int) -> Optional[models.CustomerPayment]:
        """Unscoped lookup for callers without a tenant (webhooks)."""
        return self.session.get(models.CustomerPayment, payment_id)

    def count_for_org(self, organization_id: int) -> int:
        stmt = select(func.count(models.CustomerPayment.id)).where(
            models.CustomerPayment.organization_id == organization_id)
        return int(self.session.exec(stmt).one())

    def list(self, organization_id: int, page: int, page_size: int,
             customer_id: Optional[int] = None,
             status: Optional[models.PaymentStatus] = None,
             payment_method: Optional[models.PaymentMethod] = None,
             search: Optional[str] = None) -> Tuple[List[models.CustomerPayment], int]:
        stmt = select(models.CustomerPayment).where(models.CustomerPayment.organization_id == organization_id)
        if customer_id:
            stmt = stmt.where(models.CustomerPayment.customer_id == customer_id)
        if status:
            stmt = stmt.where(models.CustomerPayment.status == status)
        if payment_method:
            stmt = stmt.where(models.CustomerPayment.payment_method == payment_method)
        if search and search.strip():
            term = _like(search)
            stmt = stmt.join(models.Customer, models.Customer.id == models.CustomerPayment.customer_id).where(or_(
                models.CustomerPayment.payment_number.ilike(term),
                models.CustomerPayment.gateway_transaction_id.ilike(term),
                models.Customer.company_name.ilike(term),
            ))
        stmt = stmt.order_by(models.CustomerPayment.payment_date.desc(), models.CustomerPayment.id.desc())
        return self.paginate(stmt, page, page_size)

    def get_by_session_id(self, session_id: str) -> Optional[models.CustomerPayment]:
        stmt = select(models.CustomerPayment).where(models.CustomerPayment.stripe_checkout_session_id == session_id)
        return self.session.exec(stmt).first()

    def get_by_transaction_id(self, transaction_id: str) -> Optional[models.CustomerPayment]:
        stmt = select(models.CustomerPayment).where(models.CustomerPayment.gateway_transaction_id == transaction_id)
        return self.session.exec(stmt).first()

    def applications(self, payment_id: int) -> List[models.PaymentApplication]:
        stmt = (select(models.PaymentApplication).where(models.PaymentApplication.payment_id == payment_id)
                .order_by(models.PaymentApplication.id))
        return list(self.session.exec(stmt).all())

    def applications_for_document(self, document_id: int) -> List[models.PaymentApplication]:
        stmt = (select(models.PaymentApplication).where(models.PaymentApplication.ar_document_id == document_id)
                .order_by(models.PaymentApplication.id))
        return list(self.session.exec(stmt).all())

    def applied_total(self, payment_id: int) -> float:
        stmt = select(func.coalesce(func.sum(models.PaymentApplication.amount_applied), 0.0)).where(
            models.PaymentApplication.payment_id == payment_id)
        return round(float(self.session.exec(stmt).one()), 2)

    def recent_for_customer(self, customer_id: int, limit: int = 10) -> List[models.CustomerPayment]:
        stmt = (select(models.CustomerPayment).where(models.CustomerPayment.customer_id == customer_id)
                .order_by(models.CustomerPayment.payment_date.desc(), models.CustomerPayment.id.desc()).limit(limit))
        return list(self.session.exec(stmt).all())

    def in_date_range(self, organization_id: int, start: datetime, end: datetime,
                      include_void: bool = False) -> List[models.CustomerPayment]:
        stmt = select(models.CustomerPayment).where(
            models.CustomerPayment.organization_id == organization_id,
            models.CustomerPayment.payment_date >= start,
            models.CustomerPayment.payment_date <= end,
        )
        if not include_void:
            stmt = stmt.where(models.CustomerPayment.status != models.PaymentStatus.VOID)
        return list(self.session.exec(stmt.order_by(models.CustomerPayment.payment_date)).all())

    def search(self, organization_id: int, term: str, limit: int) -> List[models.CustomerPayment]:
        like = _like(term)
        stmt = select(models.CustomerPayment).where(
            models.CustomerPayment.organization_id == organization_id,
            or_(models.CustomerPayment.payment_number.ilike(like),
                models.CustomerPayment.reference_number.ilike(like),
                models.CustomerPayment.gateway_transaction_id.ilike(like)),
        ).order_by(models.CustomerPayment.payment_date.desc()).limit(limit)
        return list(self.session.exec(stmt).all())


class AuditLogRepository(BaseRepository):
    def search(self, organization_id: int, page: int, page_size: int,
               search: Optional[str] = None, action: Optional[str] = None,
               entity_type: Optional[str] = None, user_id: Optional[int] = None,
               start: Optional[datetime] = None,
               end: Optional[datetime] = None) -> Tuple[List[models.AuditLog], int]:
        stmt = select(models.AuditLog).where(models.AuditLog.organization_id == organization_id)
        if action:
            stmt = stmt.where(models.AuditLog.action == action)
        if entity_type:
            stmt = stmt.where(models.AuditLog.entity_type == entity_type)
        if user_id:
            stmt = stmt.where(models.AuditLog.user_id == user_id)
        if start:
            stmt = stmt.where(models.AuditLog.created_at >= start)
        if end:
            stmt = stmt.where(models.AuditLog.created_at <= end)
        if search and search.strip():
            term = _like(search)
            stmt = stmt.where(or_(
                models.AuditLog.description.ilike(term),
                models.AuditLog.user_name.ilike(term),
                models.AuditLog.user_email.ilike(term),
            ))
        stmt = stmt.order_by(models.AuditLog.created_at.desc(), models.AuditLog.id.desc())
        return self.paginate(stmt, page, page_size)

    def distinct_users(self, organization_id: int) -> List[Tuple[Optional[int], Optional[str], Optional[str]]]:
        stmt = (select(models.AuditLog.user_id, models.AuditLog.user_name, models.AuditLog.user_email)
                .where(models.AuditLog.organization_id == organization_id, models.AuditLog.user_id != None)  # noqa: E711
                .distinct().order_by(models.AuditLog.user_name))
        return list(self.session.exec(stmt).all())


class GatewayRepository(BaseRepository):
    """Per-organization payment gateway configuration rows."""

    def stripe(self, organization_id: int) -> Optional[models.StripeIntegration]:
        stmt = select(models.StripeIntegration).where(models.StripeIntegration.organization_id == organization_id)
        return self.session.exec(stmt).first()

    def authorize_net(self, organization_id: int) -> Optional[models.AuthorizeNetIntegration]:
        stmt = select(models.AuthorizeNetIntegration).where(
            models.AuthorizeNetIntegration.organization_id == organization_id)
        return self.session.exec(stmt).first()

    def settings(self, organization_id: int) -> Optional[models.PaymentGatewaySettings]:
        stmt = select(models.PaymentGatewaySettings).where(
            models.PaymentGatewaySettings.organization_id == organization_id)
        return self.session.exec(stmt).first()


class AcumaticaRepository(BaseRepository):
    def integration_for_org(self, organization_id: int) -> Optional[models.AcumaticaIntegration]:
        stmt = select(models.AcumaticaIntegration).where(
            models.AcumaticaIntegration.organization_id == organization_id)
        return self.session.exec(stmt).first()

    def mappings(self, integration_id: int) -> List[models.AcumaticaCustomerMapping]:
        stmt = (select(models.AcumaticaCustomerMapping)
                .where(models.AcumaticaCustomerMapping.integration_id == integration_id)
                .order_by(models.AcumaticaCustomerMapping.acumatica_customer_id))
        return list(self.session.exec(stmt).all())

    def mapping(self, integration_id: int, mapping_id: int) -> Optional[models.AcumaticaCustomerMapping]:
        mapping = self.session.get(models.AcumaticaCustomerMapping, mapping_id)
        if mapping is None or mapping.integration_id != integration_id:
            return None
        return mapping

    def mapping_by_customer_id(self, integration_id: int,
                               acumatica_customer_id: str) -> Optional[models.AcumaticaCustomerMapping]:
        stmt = select(models.AcumaticaCustomerMapping).where(
            models.AcumaticaCustomerMapping.integration_id == integration_id,
            models.AcumaticaCustomerMapping.acumatica_customer_id == acumatica_customer_id,
        )
        return self.session.exec(stmt).first()

    def sync_log(self, integration_id: int, sync_log_id: int) -> Optional[models.IntegrationSyncLog]:
        log = self.session.get(models.IntegrationSyncLog, sync_log_id)
        if log is None or log.integration_id != integration_id:
            return None
        return log

    def sync_history(self, integration_id: int, limit: int = 10) -> List[models.IntegrationSyncLog]:
        stmt = (select(models.IntegrationSyncLog)
                .where(models.IntegrationSyncLog.integration_id == integration_id)
                .order_by(models.IntegrationSyncLog.started_at.desc(), models.IntegrationSyncLog.id.desc())
                .limit(limit))
        return list(self.session.exec(stmt).all())
