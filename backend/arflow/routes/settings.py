"""Payment terms and document type settings."""

from fastapi import APIRouter, Depends, Response
from sqlmodel import Session

from .. import models, serializers, services
from ..auth import get_current_user
from ..database import get_session
from ..schemas import DocumentTypeSettingIn, PaymentTermIn

router = APIRouter(prefix="/settings", tags=["settings"])


@router.get("/payment-terms")
def list_payment_terms(enabled_only: bool = False, db: Session = Depends(get_session),
                       user: models.User = Depends(get_current_user)):
    svc = services.PaymentTermService(db)
    terms = svc.list_enabled(user) if enabled_only else svc.list(user)
    return [serializers.term_out(t) for t in terms]


@router.post("/payment-terms")
def upsert_payment_term(payload: PaymentTermIn, db: Session = Depends(get_session),
                        user: models.User = Depends(get_current_user)):
    return serializers.term_out(services.PaymentTermService(db).upsert(user, payload.model_dump()))


@router.delete("/payment-terms/{term_id}", status_code=204)
def delete_payment_term(term_id: int, db: Session = Depends(get_session),
                        user: models.User = Depends(get_current_user)):
    services.PaymentTermService(db).delete(user, term_id)
    return Response(status_code=204)


@router.get("/document-types")
def list_document_types(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return [serializers.document_type_out(s) for s in services.DocumentTypeSettingService(db).list(user)]


@router.get("/document-types/enabled")
def enabled_document_types(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.DocumentTypeSettingService(db).list_enabled(user)


@router.put("/document-types")
def update_document_type(payload: DocumentTypeSettingIn, db: Session = Depends(get_session),
                         user: models.User = Depends(get_current_user)):
    row = services.DocumentTypeSettingService(db).update(user, payload.model_dump())
    return serializers.document_type_out(row)
