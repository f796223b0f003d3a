"""Dashboard figures, aging, CSV exports and global search."""

from datetime import date, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Response
from sqlmodel import Session

from .. import models, serializers, services
from ..auth import get_current_user
from ..database import get_session

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


def _range(start_date: Optional[date], end_date: Optional[date]):
    end = end_date or models.utcnow().date()
    return start_date or end - timedelta(days=30), end


def _csv(content: str, filename: str) -> Response:
    return Response(content=content, media_type="text/csv",
                    headers={"Content-Disposition": f'attachment; filename="{filename}"'})


@router.get("/stats")
def stats(start_date: Optional[date] = None, end_date: Optional[date] = None,
          db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.DashboardService(db).stats(user, *_range(start_date, end_date))


@router.get("/trends")
def trends(start_date: Optional[date] = None, end_date: Optional[date] = None,
           db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.DashboardService(db).trends(user, *_range(start_date, end_date))


@router.get("/top-customers")
def top_customers(start_date: Optional[date] = None, end_date: Optional[date] = None, limit: int = 10,
                  db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    start, end = _range(start_date, end_date)
    return services.DashboardService(db).top_customers(user, start, end, limit)


@router.get("/aging")
def aging(as_of: Optional[date] = None, db: Session = Depends(get_session),
          user: models.User = Depends(get_current_user)):
    return services.DashboardService(db).aging(user, as_of)


@router.get("/export/documents")
def export_documents(start_date: Optional[date] = None, end_date: Optional[date] = None,
                     db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    start, end = _range(start_date, end_date)
    content = services.DashboardService(db).export_documents_csv(user, start, end)
    return _csv(content, f"documents-{start.isoformat()}-{end.isoformat()}.csv")


@router.get("/export/payments")
def export_payments(start_date: Optional[date] = None, end_date: Optional[date] = None,
                    db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    start, end = _range(start_date, end_date)
    content = services.DashboardService(db).export_payments_csv(user, start, end)
    return _csv(content, f"payments-{start.isoformat()}-{end.isoformat()}.csv")


@router.get("/search")
def search(q: str = "", db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    found = services.DashboardService(db).search(user, q)
    return {
        "customers": [serializers.customer_out(c) for c in found["customers"]],
        "documents": [serializers.document_out(d) for d in found["documents"]],
        "payments": [serializers.payment_out(p) for p in found["payments"]],
    }
