"""Team members and organization profile."""

from fastapi import APIRouter, Depends, Response
from sqlmodel import Session

from .. import models, serializers, services
from ..auth import get_current_user, require_admin
from ..database import get_session
from ..schemas import OrganizationUpdate, UserCreate, UserUpdate

router = APIRouter(tags=["users"])


@router.get("/users")
def list_users(db: Session = Depends(get_session), user: models.User = Depends(require_admin)):
    return [serializers.user_out(u) for u in services.UserService(db).list_users(user)]


@router.post("/users", status_code=201)
def create_user(payload: UserCreate, db: Session = Depends(get_session),
                user: models.User = Depends(get_current_user)):
    return serializers.user_out(services.UserService(db).create_user(user, payload.model_dump()))


@router.put("/users/{user_id}")
def update_user(user_id: int, payload: UserUpdate, db: Session = Depends(get_session),
                user: models.User = Depends(get_current_user)):
    updated = services.UserService(db).update_user(user, user_id, payload.model_dump(exclude_unset=True))
    return serializers.user_out(updated)


@router.delete("/users/{user_id}", status_code=204)
def delete_user(user_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    services.UserService(db).delete_user(user, user_id)
    return Response(status_code=204)


@router.get("/organization")
def get_organization(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return serializers.organization_out(services.UserService(db).get_organization(user))


@router.put("/organization")
def update_organization(payload: OrganizationUpdate, db: Session = Depends(get_session),
                        user: models.User = Depends(get_current_user)):
    org = services.UserService(db).update_organization(user, payload.model_dump(exclude_unset=True))
    return serializers.organization_out(org)
