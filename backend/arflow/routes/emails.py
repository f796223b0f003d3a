"""Outbound email: configuration status, test message and invoice sending."""

from fastapi import APIRouter, Depends
from sqlmodel import Session

from .. import models
from ..auth import get_current_user
from ..database import get_session
from ..email_services import EmailService
from ..schemas import EmailTestIn, InvoiceEmailIn

router = APIRouter(prefix="/email", tags=["email"])


@router.get("/config")
def email_config(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return EmailService(db).config_status(user)


@router.post("/test")
def send_test_email(payload: EmailTestIn, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user)):
    return EmailService(db).send_test(user, payload.to)


@router.post("/invoices/{document_id}")
def send_invoice_email(document_id: int, payload: InvoiceEmailIn, db: Session = Depends(get_session),
                       user: models.User = Depends(get_current_user)):
    return EmailService(db).send_invoice(user, document_id, payload.to, payload.subject, payload.message)
