"""Unauthenticated invoice pages reached through share links."""

from fastapi import APIRouter, Depends, Request
from sqlmodel import Session

from .. import serializers
from ..config import settings
from ..database import get_session
from ..payment_services import PublicInvoiceService
from ..utils.rate_limit import InMemoryRateLimiter

router = APIRouter(prefix="/public", tags=["public"])
limiter = InMemoryRateLimiter()


def _throttle(request: Request) -> None:
    limiter.enforce(request, settings.PUBLIC_RATE_LIMIT_PER_MIN)


@router.get("/invoices/{token}", dependencies=[Depends(_throttle)])
def public_invoice(token: str, db: Session = Depends(get_session)):
    result = PublicInvoiceService(db).get(token)
    org = result["organization"]
    customer = result["customer"]
    document = serializers.document_out(result["document"], line_items=result["line_items"])
    for key in ("notes", "public_share_token", "created_by_id", "external_id", "source_type"):
        document.pop(key, None)
    return {
        "document": document,
        "customer": {"company_name": customer.company_name, "email": customer.email} if customer else None,
        "organization": {
            "name": org.name, "logo_url": org.logo_url, "email": org.email, "phone": org.phone,
            "address1": org.address1, "city": org.city, "state": org.state, "zip_code": org.zip_code,
        },
        "can_pay": result["can_pay"],
    }


@router.post("/invoices/{token}/checkout", dependencies=[Depends(_throttle)])
def public_checkout(token: str, db: Session = Depends(get_session)):
    """Start a Stripe Checkout for the invoice's full balance."""
    return PublicInvoiceService(db).checkout(token)
