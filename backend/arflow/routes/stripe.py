"""Stripe-hosted payment flows."""

from fastapi import APIRouter, Depends
from sqlmodel import Session

from .. import models, serializers
from ..auth import get_current_user
from ..database import get_session
from ..payment_services import GatewaySettingsService, StripePaymentService
from ..schemas import CheckoutSessionIn, StripeIntentIn

router = APIRouter(prefix="/stripe", tags=["stripe"])


def _verification(result):
    return {"status": result["status"], "payment": serializers.payment_out(result["payment"])}


@router.get("/publishable-key")
def publishable_key(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return {"publishable_key": GatewaySettingsService(db).stripe_publishable_key(user)}


@router.post("/payment-intents", status_code=201)
def create_payment_intent(payload: StripeIntentIn, db: Session = Depends(get_session),
                          user: models.User = Depends(get_current_user)):
    return StripePaymentService(db).create_payment_intent(user, payload.model_dump())


@router.post("/checkout-sessions", status_code=201)
def create_checkout_session(payload: CheckoutSessionIn, db: Session = Depends(get_session),
                            user: models.User = Depends(get_current_user)):
    """Open a Checkout session, either embedded (pay_now) or as a shareable link."""
    return StripePaymentService(db).create_checkout_session(user, payload.model_dump())


@router.get("/checkout-sessions/{session_id}/verify")
def verify_checkout_session(session_id: str, db: Session = Depends(get_session),
                            user: models.User = Depends(get_current_user)):
    return _verification(StripePaymentService(db).verify_checkout_session(user, session_id))


@router.post("/checkout-sessions/{session_id}/cancel")
def cancel_checkout_session(session_id: str, db: Session = Depends(get_session),
                            user: models.User = Depends(get_current_user)):
    return serializers.payment_out(StripePaymentService(db).mark_session_cancelled(user, session_id))


@router.get("/payment-intents/{payment_intent_id}/verify")
def verify_payment(payment_intent_id: str, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user)):
    return _verification(StripePaymentService(db).verify_payment(user, payment_intent_id))


@router.post("/payment-intents/{payment_intent_id}/verify-immediate")
def verify_immediate(payment_intent_id: str, db: Session = Depends(get_session),
                     user: models.User = Depends(get_current_user)):
    return _verification(StripePaymentService(db).verify_immediate(user, payment_intent_id))


@router.post("/payments/{payment_id}/requery")
def requery_payment(payment_id: int, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user)):
    return serializers.payment_out(StripePaymentService(db).requery(user, payment_id))
