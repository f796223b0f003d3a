"""Organization activity log (admins only)."""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from sqlmodel import Session

from .. import models, serializers, services
from ..auth import get_current_user
from ..database import get_session

router = APIRouter(prefix="/audit-logs", tags=["audit"])


@router.get("")
def list_audit_logs(page: int = 1, page_size: int = 50, search: Optional[str] = None,
                    action: Optional[str] = None, entity_type: Optional[str] = None,
                    user_id: Optional[int] = None, start_date: Optional[date] = None,
                    end_date: Optional[date] = None, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user)):
    result = services.AuditService(db).list(user, page, page_size, search=search, action=action,
                                            entity_type=entity_type, user_id=user_id,
                                            start_date=start_date, end_date=end_date)
    return serializers.page_out(result, serializers.audit_out)


@router.get("/users")
def audit_users(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.AuditService(db).users(user)
