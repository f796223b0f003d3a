"""Inbound gateway webhooks. No bearer token; Stripe signs the payload."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlmodel import Session

from ..database import get_session
from ..payment_services import StripePaymentService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def raw_body(request: Request) -> bytes:
    """The unparsed request body; signature checks need the exact bytes."""
    return await request.body()


@router.post("/stripe")
def stripe_webhook(payload: bytes = Depends(raw_body), stripe_signature: Optional[str] = Header(default=None),
                   db: Session = Depends(get_session)):
    return StripePaymentService(db).process_webhook(payload, stripe_signature)
