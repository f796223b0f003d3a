"""Payment gateway credentials and the active provider."""

from fastapi import APIRouter, Depends
from sqlmodel import Session

from .. import models
from ..auth import get_current_user
from ..database import get_session
from ..payment_services import GatewaySettingsService
from ..schemas import ActiveProviderIn, AuthorizeNetSettingsIn, StripeSettingsIn, ToggleIn

router = APIRouter(prefix="/gateways", tags=["gateways"])


@router.get("")
def provider_statuses(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return GatewaySettingsService(db).provider_statuses(user)


@router.put("/active")
def set_active_provider(payload: ActiveProviderIn, db: Session = Depends(get_session),
                        user: models.User = Depends(get_current_user)):
    return GatewaySettingsService(db).set_active_provider(user, payload.provider)


@router.get("/stripe")
def stripe_settings(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return GatewaySettingsService(db).stripe_settings(user)


@router.put("/stripe")
def save_stripe(payload: StripeSettingsIn, db: Session = Depends(get_session),
                user: models.User = Depends(get_current_user)):
    """Save Stripe keys. Masked values leave the stored secret untouched."""
    return GatewaySettingsService(db).upsert_stripe(user, payload.model_dump())


@router.post("/stripe/test")
def test_stripe(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return GatewaySettingsService(db).test_stripe(user)


@router.put("/stripe/toggle")
def toggle_stripe(payload: ToggleIn, db: Session = Depends(get_session),
                  user: models.User = Depends(get_current_user)):
    return GatewaySettingsService(db).toggle_stripe(user, payload.enabled)


@router.get("/authorize-net")
def authorize_net_settings(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return GatewaySettingsService(db).authorize_net_settings(user)


@router.put("/authorize-net")
def save_authorize_net(payload: AuthorizeNetSettingsIn, db: Session = Depends(get_session),
                       user: models.User = Depends(get_current_user)):
    return GatewaySettingsService(db).upsert_authorize_net(user, payload.model_dump())


@router.post("/authorize-net/test")
def test_authorize_net(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return GatewaySettingsService(db).test_authorize_net(user)


@router.put("/authorize-net/toggle")
def toggle_authorize_net(payload: ToggleIn, db: Session = Depends(get_session),
                         user: models.User = Depends(get_current_user)):
    return GatewaySettingsService(db).toggle_authorize_net(user, payload.enabled)
