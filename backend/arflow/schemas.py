"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests.
"""

import re
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import (
    AnyHttpUrl,
    BaseModel,
    EmailStr,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from .models import (
    CustomerStatus,
    DataSourceType,
    DocumentType,
    PaymentGatewayProvider,
    PaymentMethod,
    SyncType,
    UnmappedAction,
    UserRole,
)
from .utils.encryption import MASK

_http_url = TypeAdapter(AnyHttpUrl)


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value.strip() if isinstance(value, str) else value


def _check_url(value: Optional[str]) -> Optional[str]:
    """Validate as an http(s) URL but keep the caller's spelling."""
    value = _blank_to_none(value)
    if value is None:
        return None
    try:
        _http_url.validate_python(value)
    except ValidationError:
        raise ValueError("Invalid URL") from None
    return value


# --- auth & users ---

class RegisterIn(BaseModel):
    """Payload for creating an organization together with its first admin."""
    email: EmailStr
    password: str = Field(min_length=8)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    organization_name: str = Field(min_length=1, max_length=150)


class LoginIn(BaseModel):
    email: str
    password: str


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str
    token_type: str = "bearer"


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class NotificationPreferencesIn(BaseModel):
    email_notifications: Optional[bool] = None
    invoice_alerts: Optional[bool] = None
    payment_alerts: Optional[bool] = None
    statement_alerts: Optional[bool] = None


class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: UserRole = UserRole.ADMIN
    customer_id: Optional[int] = None


class UserUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Optional[UserRole] = None
    customer_id: Optional[int] = None


class OrganizationUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=150)
    logo_url: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    website: Optional[str] = None

    @field_validator("email", mode="before")
    @classmethod
    def blank_email(cls, value):
        return _blank_to_none(value)

    @field_validator("website", "logo_url")
    @classmethod
    def valid_urls(cls, value):
        return _check_url(value)


# --- customers ---

class CustomerIn(BaseModel):
    """Create/update payload for a customer. Omitted fields are left unchanged on update."""
    company_name: Optional[str] = Field(default=None, min_length=1, max_length=150)
    customer_number: Optional[str] = None
    contact_name: Optional[str] = None
    email: Optional[EmailStr] = None
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
    credit_limit: Optional[float] = Field(default=None, ge=0)
    status: Optional[CustomerStatus] = None
    payment_term_id: Optional[int] = None
    notes: Optional[str] = None
    portal_enabled: Optional[bool] = None

    @field_validator("email", mode="before")
    @classmethod
    def blank_email(cls, value):
        return _blank_to_none(value)

    @field_validator("website")
    @classmethod
    def valid_url(cls, value):
        return _check_url(value)


# --- settings ---

class PaymentTermIn(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    days_due: int = Field(ge=0)
    has_discount: bool = False
    discount_days: Optional[int] = Field(default=None, ge=0)
    discount_percentage: Optional[float] = None
    enabled: bool = True
    display_order: int = 0
    is_default: bool = False


class DocumentTypeSettingIn(BaseModel):
    document_type: DocumentType
    enabled: bool = True
    display_name: str = Field(min_length=1, max_length=50)
    display_order: int = 0


# --- documents ---

class LineItemIn(BaseModel):
    description: str = Field(min_length=1)
    quantity: float = Field(gt=0)
    unit_price: float = Field(ge=0)
    discount_percent: float = Field(default=0, ge=0, le=100)
    tax_percent: float = Field(default=0, ge=0, le=100)


class DocumentCreate(BaseModel):
    customer_id: int
    document_type: DocumentType = DocumentType.INVOICE
    document_number: Optional[str] = None
    reference_number: Optional[str] = None
    document_date: date
    due_date: Optional[date] = None
    payment_term_id: Optional[int] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    customer_notes: Optional[str] = None
    line_items: List[LineItemIn] = Field(default_factory=list)


class DocumentUpdate(BaseModel):
    reference_number: Optional[str] = None
    document_date: Optional[date] = None
    due_date: Optional[date] = None
    payment_term_id: Optional[int] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    customer_notes: Optional[str] = None
    line_items: Optional[List[LineItemIn]] = None


# --- payments ---

class ManualPaymentIn(BaseModel):
    customer_id: int
    amount: float = Field(gt=0)
    payment_date: Optional[datetime] = None
    payment_method: PaymentMethod = PaymentMethod.CHECK
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    document_ids: List[int] = Field(min_length=1)


class BillingAddressIn(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None


class CardIn(BaseModel):
    card_number: str = Field(min_length=12, max_length=19)
    expiration: str = Field(description="MMYY")
    cvv: Optional[str] = None
    billing: Optional[BillingAddressIn] = None

    @field_validator("card_number")
    @classmethod
    def card_digits(cls, value: str) -> str:
        digits = re.sub(r"[\s-]", "", value)
        if not digits.isdigit():
            raise ValueError("Card number must contain only digits")
        return digits

    @field_validator("expiration")
    @classmethod
    def valid_expiry(cls, value: str) -> str:
        value = value.replace("/", "").strip()
        if not re.fullmatch(r"(0[1-9]|1[0-2])\d{2}", value):
            raise ValueError("Expiration must be in MMYY format")
        return value

    @field_validator("cvv")
    @classmethod
    def valid_cvv(cls, value: Optional[str]) -> Optional[str]:
        if value and not re.fullmatch(r"\d{3,4}", value):
            raise ValueError("CVV must be 3 or 4 digits")
        return value or None


class CreditCardPaymentIn(BaseModel):
    customer_id: int
    amount: float = Field(gt=0)
    document_ids: List[int] = Field(min_length=1)
    card: CardIn
    notes: Optional[str] = None


class ApplicationIn(BaseModel):
    document_id: int
    amount: float


class ApplyPaymentIn(BaseModel):
    applications: List[ApplicationIn]


class PaymentMethodUpdate(BaseModel):
    payment_method: PaymentMethod
    reference_number: Optional[str] = None
    notes: Optional[str] = None


class VoidPaymentIn(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class StripeIntentIn(BaseModel):
    customer_id: int
    amount: float = Field(gt=0)
    document_ids: List[int] = Field(min_length=1)


class CheckoutSessionIn(StripeIntentIn):
    mode: Literal["pay_now", "generate_link"] = "generate_link"


# --- gateway settings ---

class StripeSettingsIn(BaseModel):
    secret_key: Optional[str] = None
    publishable_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    is_production: bool = False
    require_cvv: bool = True
    require_billing_address: bool = False
    capture_method: Literal["automatic", "manual"] = "automatic"
    auto_create_webhook: bool = False

    @model_validator(mode="after")
    def check_key_prefixes(self):
        if self.secret_key not in (None, "", MASK) and not self.secret_key.startswith(("sk_", "rk_")):
            raise ValueError("Secret key must start with sk_ or rk_")
        if self.publishable_key not in (None, "", MASK) and not self.publishable_key.startswith("pk_"):
            raise ValueError("Publishable key must start with pk_")
        if self.webhook_secret not in (None, "", MASK) and not self.webhook_secret.startswith("whsec_"):
            raise ValueError("Webhook secret must start with whsec_")
        return self


class AuthorizeNetSettingsIn(BaseModel):
    api_login_id: str = Field(min_length=1)
    transaction_key: Optional[str] = None
    is_production: bool = False
    require_cvv: bool = True
    require_billing_address: bool = False


class ToggleIn(BaseModel):
    enabled: bool


class ActiveProviderIn(BaseModel):
    provider: Optional[PaymentGatewayProvider] = None


# --- email ---

class InvoiceEmailIn(BaseModel):
    to: EmailStr
    subject: str = Field(min_length=1, max_length=200)
    message: str = ""


class EmailTestIn(BaseModel):
    to: EmailStr


# --- acumatica ---

class AcumaticaConnectionIn(BaseModel):
    instance_url: str
    api_version: str = "23.200.001"
    company_id: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: Optional[str] = None

    @field_validator("instance_url")
    @classmethod
    def valid_url(cls, value):
        url = _check_url(value)
        if not url:
            raise ValueError("Instance URL is required")
        return url.rstrip("/")


class DataSourceIn(BaseModel):
    entity: Literal["SalesInvoice", "SalesOrder"] = "SalesInvoice"
    data_source_type: DataSourceType = DataSourceType.REST_API
    field_mappings: Optional[Dict[str, Any]] = None
    filter_config: Optional[Dict[str, Any]] = None


class CustomerHandlingIn(BaseModel):
    unmapped_customer_action: UnmappedAction
    default_customer_user_id: Optional[int] = None


class CustomerMappingUpdate(BaseModel):
    customer_id: Optional[int] = None
    ignore: bool = False


class SyncIn(BaseModel):
    limit: int = Field(default=1000, ge=1, le=5000)
    sync_type: SyncType = SyncType.MANUAL


class PaymentConfigIn(BaseModel):
    default_cash_account: Optional[str] = None
    default_payment_method: Optional[str] = None
    auto_sync_payments: bool = False


class PaymentMethodFilterIn(BaseModel):
    methods: List[str] = Field(default_factory=list)
