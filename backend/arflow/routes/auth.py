"""Registration, login and the current user's own profile."""

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session

from .. import models, serializers, services
from ..auth import get_current_user
from ..database import get_session
from ..schemas import LoginIn, NotificationPreferencesIn, ProfileUpdate, RegisterIn, TokenOut

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", status_code=201)
def register(payload: RegisterIn, db: Session = Depends(get_session)):
    """Create an organization with its first administrator and sign them in."""
    user = services.AuthService(db).register(
        payload.email, payload.password, payload.organization_name,
        first_name=payload.first_name, last_name=payload.last_name,
    )
    token = services.AuthService(db).authenticate(payload.email, payload.password)
    return {"user": serializers.user_out(user), "access_token": token, "token_type": "bearer"}


@router.post("/login", response_model=TokenOut)
def login(payload: LoginIn, db: Session = Depends(get_session)):
    token = services.AuthService(db).authenticate(payload.email, payload.password)
    if not token:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return TokenOut(access_token=token)


@router.get("/me")
def me(user: models.User = Depends(get_current_user)):
    return serializers.user_out(user)


@router.put("/me")
def update_me(payload: ProfileUpdate, db: Session = Depends(get_session),
              user: models.User = Depends(get_current_user)):
    user = services.UserService(db).update_profile(user, payload.first_name, payload.last_name)
    return serializers.user_out(user)


@router.put("/me/notifications")
def update_notifications(payload: NotificationPreferencesIn, db: Session = Depends(get_session),
                         user: models.User = Depends(get_current_user)):
    user = services.UserService(db).update_notification_preferences(user, payload.model_dump())
    return serializers.user_out(user)
