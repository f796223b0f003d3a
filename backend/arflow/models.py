"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Every tenant-owned table carries `organization_id`; money columns are
floats rounded to cents by the services that write them.
"""

import enum
from datetime import date, datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON, Column, Text, UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite stores datetimes without a zone)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserRole(str, enum.Enum):
    ADMIN = "ADMIN"
    CUSTOMER = "CUSTOMER"


class DocumentType(str, enum.Enum):
    INVOICE = "INVOICE"
    QUOTE = "QUOTE"
    ORDER = "ORDER"
    CREDIT_MEMO = "CREDIT_MEMO"
    DEBIT_MEMO = "DEBIT_MEMO"


class DocumentStatus(str, enum.Enum):
    OPEN = "OPEN"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    VOID = "VOID"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPLIED = "APPLIED"
    VOID = "VOID"


class PaymentMethod(str, enum.Enum):
    CHECK = "CHECK"
    WIRE = "WIRE"
    ACH = "ACH"
    CREDIT_CARD = "CREDIT_CARD"
    OTHER = "OTHER"


class CustomerStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ON_HOLD = "ON_HOLD"
    COLLECTIONS = "COLLECTIONS"


class RecordSourceType(str, enum.Enum):
    MANUAL = "MANUAL"
    INTEGRATION = "INTEGRATION"
    CSV_IMPORT = "CSV_IMPORT"


class IntegrationStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ERROR = "ERROR"


class DataSourceType(str, enum.Enum):
    REST_API = "REST_API"
    GENERIC_INQUIRY = "GENERIC_INQUIRY"
    DAC_ODATA = "DAC_ODATA"


class UnmappedAction(str, enum.Enum):
    SKIP = "SKIP"
    DEFAULT_USER = "DEFAULT_USER"


class CustomerMappingStatus(str, enum.Enum):
    PENDING = "PENDING"
    MATCHED = "MATCHED"
    PLACEHOLDER = "PLACEHOLDER"
    IGNORED = "IGNORED"


class CustomerMatchType(str, enum.Enum):
    AUTO_EMAIL = "AUTO_EMAIL"
    AUTO_NAME = "AUTO_NAME"
    AUTO_PLACEHOLDER = "AUTO_PLACEHOLDER"
    MANUAL = "MANUAL"
    CREATED_NEW = "CREATED_NEW"


class SyncType(str, enum.Enum):
    MANUAL = "MANUAL"
    SCHEDULED = "SCHEDULED"
    PAYMENT_SYNC = "PAYMENT_SYNC"


class SyncStatus(str, enum.Enum):
    STARTED = "STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    FAILED = "FAILED"


class PaymentGatewayProvider(str, enum.Enum):
    AUTHORIZE_NET = "AUTHORIZE_NET"
    STRIPE = "STRIPE"


class Organization(SQLModel, table=True):
    """A tenant. Every other record belongs to exactly one organization."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    slug: str = Field(index=True, unique=True)
    logo_url: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class User(SQLModel, table=True):
    """A login belonging to one organization.

    CUSTOMER users are portal users linked to a `Customer` record.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key='organization.id', index=True)
    email: str = Field(index=True, unique=True)
    password_hash: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: UserRole = Field(default=UserRole.ADMIN)
    customer_id: Optional[int] = Field(default=None, foreign_key='customer.id')
    email_notifications: bool = True
    invoice_alerts: bool = True
    payment_alerts: bool = True
    statement_alerts: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        name = " ".join(p for p in (self.first_name, self.last_name) if p)
        return name or self.email


class PaymentTermType(SQLModel, table=True):
    """A payment term (e.g. Net 30, 2% 10 Net 30) configured per organization."""
    __table_args__ = (UniqueConstraint("organization_id", "code"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key='organization.id', index=True)
    code: str
    name: str
    description: Optional[str] = None
    days_due: int = 30
    has_discount: bool = False
    discount_days: Optional[int] = None
    discount_percentage: Optional[float] = None
    enabled: bool = True
    display_order: int = 0
    is_default: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class DocumentTypeSetting(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("organization_id", "document_type"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key='organization.id', index=True)
    document_type: DocumentType
    enabled: bool = True
    display_name: str
    display_order: int = 0


class Customer(SQLModel, table=True):
    """A customer (billing account) of an organization."""
    __table_args__ = (UniqueConstraint("organization_id", "external_id", "external_system"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key='organization.id', index=True)
    customer_number: Optional[str] = None
    company_name: str = Field(index=True)
    contact_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    billing_address1: Optional[str] = None
    billing_address2: Optional[str] = None
    billing_city: Optional[str] = None
    billing_state: Optional[str] = None
    billing_zip: Optional[str] = None
    billing_country: Optional[str] = None
    shipping_address1: Optional[str] = None
    shipping_address2: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_state: Optional[str] = None
    shipping_zip: Optional[str] = None
    shipping_country: Optional[str] = None
    credit_limit: Optional[float] = None
    current_balance: float = 0.0
    status: CustomerStatus = Field(default=CustomerStatus.ACTIVE)
    payment_term_id: Optional[int] = Field(default=None, foreign_key='paymenttermtype.id')
    notes: Optional[str] = Field(default=None, sa_column=Column(Text))
    portal_enabled: bool = False
    external_id: Optional[str] = Field(default=None, index=True)
    external_system: Optional[str] = None
    source_type: RecordSourceType = Field(default=RecordSourceType.MANUAL)
    created_by_integration_id: Optional[int] = None
    created_by_sync_log_id: Optional[int] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ARDocument(SQLModel, table=True):
    """An AR document: invoice, quote, order, credit or debit memo."""
    __table_args__ = (UniqueConstraint("organization_id", "external_id", "external_system"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key='organization.id', index=True)
    customer_id: int = Field(foreign_key='customer.id', index=True)
    document_type: DocumentType = Field(default=DocumentType.INVOICE, index=True)
    document_number: str = Field(index=True)
    reference_number: Optional[str] = None
    document_date: date
    due_date: Optional[date] = None
    paid_date: Optional[datetime] = None
    subtotal: float = 0.0
    tax_amount: float = 0.0
    total_amount: float = 0.0
    amount_paid: float = 0.0
    balance_due: float = 0.0
    status: DocumentStatus = Field(default=DocumentStatus.OPEN, index=True)
    description: Optional[str] = None
    notes: Optional[str] = Field(default=None, sa_column=Column(Text))
    customer_notes: Optional[str] = Field(default=None, sa_column=Column(Text))
    payment_term_id: Optional[int] = Field(default=None, foreign_key='paymenttermtype.id')
    applied_payment_term: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    early_payment_deadline: Optional[date] = None
    discount_percentage: Optional[float] = None
    discount_available: Optional[float] = None
    discount_taken: Optional[float] = None
    public_share_token: Optional[str] = Field(default=None, index=True, unique=True)
    public_share_enabled: bool = False
    public_share_created_at: Optional[datetime] = None
    source_type: RecordSourceType = Field(default=RecordSourceType.MANUAL)
    external_system: Optional[str] = None
    external_id: Optional[str] = Field(default=None, index=True)
    integration_id: Optional[int] = None
    sync_log_id: Optional[int] = Field(default=None, index=True)
    external_branch: Optional[str] = None
    raw_external_data: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    line_items: List['ARDocumentLineItem'] = Relationship(
        back_populates='document',
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


class ARDocumentLineItem(SQLModel, table=True):
    """A priced line on an `ARDocument`; amounts are computed on save."""
    id: Optional[int] = Field(default=None, primary_key=True)
    document_id: int = Field(foreign_key='ardocument.id', index=True)
    line_number: int
    description: str
    quantity: float = 1.0
    unit_price: float = 0.0
    discount_percent: float = 0.0
    tax_percent: float = 0.0
    line_subtotal: float = 0.0
    discount_amount: float = 0.0
    taxable_amount: float = 0.0
    tax_amount: float = 0.0
    line_total: float = 0.0
    document: Optional[ARDocument] = Relationship(back_populates='line_items')


class CustomerPayment(SQLModel, table=True):
    """A payment received from a customer, manual or through a gateway."""
    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key='organization.id', index=True)
    customer_id: int = Field(foreign_key='customer.id', index=True)
    payment_number: str = Field(index=True)
    payment_date: datetime = Field(default_factory=utcnow)
    amount: float
    payment_method: PaymentMethod = Field(default=PaymentMethod.CHECK)
    reference_number: Optional[str] = None
    status: PaymentStatus = Field(default=PaymentStatus.PENDING, index=True)
    notes: Optional[str] = Field(default=None, sa_column=Column(Text))
    source_type: RecordSourceType = Field(default=RecordSourceType.MANUAL)
    gateway_transaction_id: Optional[str] = Field(default=None, index=True)
    gateway_response: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    last4_digits: Optional[str] = None
    card_type: Optional[str] = None
    payment_gateway_provider: Optional[PaymentGatewayProvider] = None
    stripe_checkout_session_id: Optional[str] = Field(default=None, index=True)
    checkout_session_status: Optional[str] = None
    checkout_session_url: Optional[str] = None
    session_expires_at: Optional[datetime] = None
    checkout_mode: Optional[str] = None
    acumatica_payment_ref: Optional[str] = None
    acumatica_sync_status: Optional[str] = None
    acumatica_sync_error: Optional[str] = None
    acumatica_synced_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    applications: List['PaymentApplication'] = Relationship(back_populates='payment')


class PaymentApplication(SQLModel, table=True):
    """The portion of a payment applied to one document."""
    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key='organization.id', index=True)
    payment_id: int = Field(foreign_key='customerpayment.id', index=True)
    ar_document_id: int = Field(foreign_key='ardocument.id', index=True)
    amount_applied: float
    applied_at: datetime = Field(default_factory=utcnow)
    payment: Optional[CustomerPayment] = Relationship(back_populates='applications')


class AuditLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key='organization.id', index=True)
    user_id: Optional[int] = Field(default=None, index=True)
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    action: str = Field(index=True)
    entity_type: str = Field(index=True)
    entity_id: Optional[str] = None
    description: str
    details: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)


class AcumaticaIntegration(SQLModel, table=True):
    """Connection and mapping configuration for one Acumatica instance."""
    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key='organization.id', unique=True)
    instance_url: str
    api_version: str = "23.200.001"
    company_id: str
    encrypted_credentials: str
    status: IntegrationStatus = Field(default=IntegrationStatus.INACTIVE)
    last_connection_test: Optional[datetime] = None
    connection_error_message: Optional[str] = None
    data_source_type: DataSourceType = Field(default=DataSourceType.REST_API)
    data_source_entity: str = "SalesInvoice"
    discovered_schema: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    schema_last_updated: Optional[datetime] = None
    field_mappings: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    filter_config: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    unmapped_customer_action: UnmappedAction = Field(default=UnmappedAction.DEFAULT_USER)
    default_customer_user_id: Optional[int] = Field(default=None, foreign_key='user.id')
    sync_frequency: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    default_cash_account: Optional[str] = None
    default_payment_method: Optional[str] = None
    auto_sync_payments: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class AcumaticaCustomerMapping(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("integration_id", "acumatica_customer_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    integration_id: int = Field(foreign_key='acumaticaintegration.id', index=True)
    acumatica_customer_id: str
    acumatica_customer_name: Optional[str] = None
    acumatica_customer_email: Optional[str] = None
    customer_id: Optional[int] = Field(default=None, foreign_key='customer.id')
    status: CustomerMappingStatus = Field(default=CustomerMappingStatus.PENDING)
    match_type: Optional[CustomerMatchType] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class IntegrationSyncLog(SQLModel, table=True):
    """Outcome of one integration run (document import or payment push)."""
    id: Optional[int] = Field(default=None, primary_key=True)
    integration_id: int = Field(foreign_key='acumaticaintegration.id', index=True)
    sync_type: SyncType = Field(default=SyncType.MANUAL)
    status: SyncStatus = Field(default=SyncStatus.STARTED)
    started_at: datetime = Field(default_factory=utcnow, index=True)
    completed_at: Optional[datetime] = None
    triggered_by_id: Optional[int] = None
    invoices_fetched: int = 0
    invoices_processed: int = 0
    invoices_skipped: int = 0
    documents_created: int = 0
    customers_created: int = 0
    errors_count: int = 0
    skip_details: Optional[list] = Field(default=None, sa_column=Column(JSON))
    error_details: Optional[list] = Field(default=None, sa_column=Column(JSON))
    created_records: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    undone_at: Optional[datetime] = None


class AuthorizeNetIntegration(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key='organization.id', unique=True)
    api_login_id: str
    encrypted_transaction_key: str
    is_production: bool = False
    enabled: bool = False
    last_connection_test: Optional[datetime] = None
    connection_error_message: Optional[str] = None
    require_cvv: bool = True
    require_billing_address: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class StripeIntegration(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key='organization.id', unique=True)
    encrypted_secret_key: str
    encrypted_publishable_key: str
    encrypted_webhook_secret: Optional[str] = None
    webhook_endpoint_id: Optional[str] = None
    is_production: bool = False
    enabled: bool = False
    last_connection_test: Optional[datetime] = None
    connection_error_message: Optional[str] = None
    require_cvv: bool = True
    require_billing_address: bool = False
    capture_method: str = "automatic"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PaymentGatewaySettings(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key='organization.id', unique=True)
    active_provider: Optional[PaymentGatewayProvider] = None
    updated_at: datetime = Field(default_factory=utcnow)
