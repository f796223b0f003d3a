"""Customer (billing account) endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Response
from sqlmodel import Session

from .. import models, serializers, services
from ..auth import get_current_user
from ..database import get_session
from ..schemas import CustomerIn

router = APIRouter(prefix="/customers", tags=["customers"])


@router.get("")
def list_customers(search: Optional[str] = None, status: Optional[models.CustomerStatus] = None,
                   db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    rows = services.CustomerService(db).list(user, search=search, status=status)
    return [serializers.customer_out(r["customer"], document_count=r["document_count"],
                                     payment_count=r["payment_count"]) for r in rows]


@router.post("", status_code=201)
def create_customer(payload: CustomerIn, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user)):
    customer = services.CustomerService(db).create(user, payload.model_dump(exclude_unset=True))
    return serializers.customer_out(customer)


@router.get("/{customer_id}")
def get_customer(customer_id: int, db: Session = Depends(get_session),
                 user: models.User = Depends(get_current_user)):
    detail = services.CustomerService(db).detail(user, customer_id)
    return serializers.customer_out(
        detail["customer"],
        documents=[serializers.document_out(d) for d in detail["documents"]],
        payments=[serializers.payment_out(p) for p in detail["payments"]],
    )


@router.put("/{customer_id}")
def update_customer(customer_id: int, payload: CustomerIn, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user)):
    customer = services.CustomerService(db).update(user, customer_id, payload.model_dump(exclude_unset=True))
    return serializers.customer_out(customer)


@router.delete("/{customer_id}", status_code=204)
def delete_customer(customer_id: int, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user)):
    services.CustomerService(db).delete(user, customer_id)
    return Response(status_code=204)
