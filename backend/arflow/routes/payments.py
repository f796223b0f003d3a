"""Customer payments: recording, applying, voiding and pushing to Acumatica."""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlmodel import Session

from .. import acumatica_services, models, serializers
from ..auth import get_current_user
from ..database import get_session
from ..payment_services import PaymentService
from ..schemas import (
    ApplyPaymentIn,
    CreditCardPaymentIn,
    ManualPaymentIn,
    PaymentMethodUpdate,
    VoidPaymentIn,
)

router = APIRouter(prefix="/payments", tags=["payments"])


def _payment_detail(detail):
    data = serializers.payment_out(detail["payment"], customer=detail["customer"])
    data["applications"] = [serializers.application_out(row["application"], row["document"])
                            for row in detail["applications"]]
    return data


@router.get("")
def list_payments(page: int = 1, page_size: int = 25, customer_id: Optional[int] = None,
                  status: Optional[models.PaymentStatus] = None,
                  payment_method: Optional[models.PaymentMethod] = None, search: Optional[str] = None,
                  db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    result = PaymentService(db).list(user, page, page_size, customer_id=customer_id, status=status,
                                     payment_method=payment_method, search=search)
    return serializers.page_out(result, serializers.payment_out)


@router.post("", status_code=201)
def record_payment(payload: ManualPaymentIn, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user)):
    """Record a check, ACH, wire or cash payment and apply it to the given documents."""
    svc = PaymentService(db)
    payment = svc.create_manual(user, payload.model_dump())
    return _payment_detail(svc.detail(user, payment.id))


@router.post("/credit-card", status_code=201)
def charge_credit_card(payload: CreditCardPaymentIn, db: Session = Depends(get_session),
                       user: models.User = Depends(get_current_user)):
    """Charge a card through the organization's active gateway."""
    svc = PaymentService(db)
    payment = svc.process_credit_card(user, payload.model_dump())
    return _payment_detail(svc.detail(user, payment.id))


@router.get("/open-documents/{customer_id}")
def open_documents(customer_id: int, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user)):
    return [serializers.document_out(d) for d in PaymentService(db).open_documents(user, customer_id)]


@router.get("/{payment_id}")
def get_payment(payment_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return _payment_detail(PaymentService(db).detail(user, payment_id))


@router.post("/{payment_id}/apply")
def apply_payment(payment_id: int, payload: ApplyPaymentIn, db: Session = Depends(get_session),
                  user: models.User = Depends(get_current_user)):
    svc = PaymentService(db)
    svc.apply(user, payment_id, [a.model_dump() for a in payload.applications])
    return _payment_detail(svc.detail(user, payment_id))


@router.put("/{payment_id}/method")
def update_payment_method(payment_id: int, payload: PaymentMethodUpdate, db: Session = Depends(get_session),
                          user: models.User = Depends(get_current_user)):
    payment = PaymentService(db).update_method(user, payment_id, payload.model_dump(exclude_unset=True))
    return serializers.payment_out(payment)


@router.post("/{payment_id}/void")
def void_payment(payment_id: int, payload: VoidPaymentIn, db: Session = Depends(get_session),
                 user: models.User = Depends(get_current_user)):
    return serializers.payment_out(PaymentService(db).void(user, payment_id, payload.reason))


@router.post("/{payment_id}/acumatica/sync")
def sync_payment(payment_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return acumatica_services.PaymentSyncService(db).sync(user, payment_id)


@router.post("/{payment_id}/acumatica/retry")
def retry_payment_sync(payment_id: int, db: Session = Depends(get_session),
                       user: models.User = Depends(get_current_user)):
    return acumatica_services.PaymentSyncService(db).retry(user, payment_id)


@router.post("/{payment_id}/acumatica/release")
def release_payment(payment_id: int, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user)):
    return acumatica_services.PaymentSyncService(db).release(user, payment_id)
