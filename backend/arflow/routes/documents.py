"""AR documents: invoices, quotes, orders, credit and debit memos."""

from typing import Optional

from fastapi import APIRouter, Depends, Response
from sqlmodel import Session

from .. import models, serializers, services
from ..auth import get_current_user
from ..database import get_session
from ..schemas import DocumentCreate, DocumentUpdate

router = APIRouter(prefix="/documents", tags=["documents"])


def _document_detail(detail):
    data = serializers.document_out(detail["document"], customer=detail["customer"],
                                    line_items=detail["line_items"])
    data["applications"] = [serializers.application_out(a) for a in detail["applications"]]
    return data


@router.get("")
def list_documents(page: int = 1, page_size: int = services.DEFAULT_PAGE_SIZE,
                   document_type: Optional[models.DocumentType] = None,
                   status: Optional[models.DocumentStatus] = None,
                   customer_id: Optional[int] = None, search: Optional[str] = None,
                   db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    result = services.DocumentService(db).list(user, page, page_size, document_type=document_type,
                                               status=status, customer_id=customer_id, search=search)
    return serializers.page_out(result, serializers.document_out)


@router.get("/counts")
def document_counts(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.DocumentService(db).type_counts(user)


@router.post("", status_code=201)
def create_document(payload: DocumentCreate, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user)):
    svc = services.DocumentService(db)
    doc = svc.create(user, payload.model_dump())
    return _document_detail(svc.detail(user, doc.id))


@router.get("/{document_id}")
def get_document(document_id: int, db: Session = Depends(get_session),
                 user: models.User = Depends(get_current_user)):
    return _document_detail(services.DocumentService(db).detail(user, document_id))


@router.put("/{document_id}")
def update_document(document_id: int, payload: DocumentUpdate, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user)):
    svc = services.DocumentService(db)
    svc.update(user, document_id, payload.model_dump(exclude_unset=True))
    return _document_detail(svc.detail(user, document_id))


@router.delete("/{document_id}", status_code=204)
def delete_document(document_id: int, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user)):
    services.DocumentService(db).delete(user, document_id)
    return Response(status_code=204)


@router.post("/{document_id}/share")
def share_document(document_id: int, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user)):
    """Return the public link for an invoice, creating it if needed."""
    return services.DocumentService(db).generate_share_link(user, document_id)


@router.delete("/{document_id}/share", status_code=204)
def disable_share(document_id: int, db: Session = Depends(get_session),
                  user: models.User = Depends(get_current_user)):
    services.DocumentService(db).disable_sharing(user, document_id)
    return Response(status_code=204)
