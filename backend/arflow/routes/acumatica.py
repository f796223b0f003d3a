"""Acumatica ERP integration: connection, schema discovery, sync and payment push."""

from fastapi import APIRouter, Depends, Response
from sqlmodel import Session

from .. import models, serializers
from ..acumatica_services import AcumaticaService, DocumentSyncService, PaymentSyncService
from ..auth import get_current_user
from ..database import get_session
from ..schemas import (
    AcumaticaConnectionIn,
    CustomerHandlingIn,
    CustomerMappingUpdate,
    DataSourceIn,
    PaymentConfigIn,
    PaymentMethodFilterIn,
    SyncIn,
)

router = APIRouter(prefix="/integrations/acumatica", tags=["acumatica"])


@router.get("")
def get_integration(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return AcumaticaService(db).get(user)


@router.put("")
def save_integration(payload: AcumaticaConnectionIn, db: Session = Depends(get_session),
                     user: models.User = Depends(get_current_user)):
    """Store connection details. A masked or empty password keeps the stored one."""
    return AcumaticaService(db).upsert(user, payload.model_dump())


@router.delete("", status_code=204)
def delete_integration(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    AcumaticaService(db).delete(user)
    return Response(status_code=204)


@router.post("/test")
def test_connection(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return AcumaticaService(db).test_connection(user)


@router.put("/data-source")
def configure_data_source(payload: DataSourceIn, db: Session = Depends(get_session),
                          user: models.User = Depends(get_current_user)):
    return AcumaticaService(db).configure_data_source(user, payload.model_dump())


@router.post("/activate")
def activate(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return AcumaticaService(db).activate(user)


@router.post("/deactivate")
def deactivate(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return AcumaticaService(db).deactivate(user)


@router.get("/entities")
def discover_entities(user: models.User = Depends(get_current_user)):
    return AcumaticaService.discover_entities()


@router.get("/entities/{entity}/schema")
def entity_schema(entity: str, refresh: bool = False, db: Session = Depends(get_session),
                  user: models.User = Depends(get_current_user)):
    return AcumaticaService(db).entity_schema(user, entity, refresh)


@router.get("/sample")
def sample_data(limit: int = 5, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return AcumaticaService(db).sample_data(user, limit)


@router.get("/customer-handling")
def customer_handling(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return AcumaticaService(db).customer_handling(user)


@router.put("/customer-handling")
def update_customer_handling(payload: CustomerHandlingIn, db: Session = Depends(get_session),
                             user: models.User = Depends(get_current_user)):
    return AcumaticaService(db).update_customer_handling(user, payload.unmapped_customer_action,
                                                         payload.default_customer_user_id)


@router.get("/customer-mappings")
def customer_mappings(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return [serializers.mapping_out(m) for m in AcumaticaService(db).mappings(user)]


@router.put("/customer-mappings/{mapping_id}")
def update_customer_mapping(mapping_id: int, payload: CustomerMappingUpdate, db: Session = Depends(get_session),
                            user: models.User = Depends(get_current_user)):
    mapping = AcumaticaService(db).update_mapping(user, mapping_id, payload.customer_id, payload.ignore)
    return serializers.mapping_out(mapping)


@router.post("/sync")
def sync_documents(payload: SyncIn, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user)):
    """Pull documents from Acumatica. Per-record failures are reported on the log, not raised."""
    log = DocumentSyncService(db).sync(user, payload.limit, payload.sync_type)
    return serializers.sync_log_out(log)


@router.get("/sync/history")
def sync_history(limit: int = 10, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return [serializers.sync_log_out(log) for log in DocumentSyncService(db).history(user, limit)]


@router.get("/sync/{sync_log_id}")
def sync_status(sync_log_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return DocumentSyncService(db).status(user, sync_log_id)


@router.post("/sync/{sync_log_id}/undo")
def undo_sync(sync_log_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return DocumentSyncService(db).undo(user, sync_log_id)


@router.get("/payment-config")
def payment_config(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return PaymentSyncService(db).payment_config(user)


@router.put("/payment-config")
def save_payment_config(payload: PaymentConfigIn, db: Session = Depends(get_session),
                        user: models.User = Depends(get_current_user)):
    return PaymentSyncService(db).save_payment_config(user, payload.model_dump())


@router.get("/payment-methods")
def payment_methods(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return PaymentSyncService(db).payment_methods_with_cash_accounts(user)


@router.get("/payment-methods/discover")
def discover_payment_methods(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return PaymentSyncService(db).discover_payment_methods(user)


@router.get("/payment-method-filter")
def payment_method_filter(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return PaymentSyncService(db).payment_method_filter(user)


@router.put("/payment-method-filter")
def save_payment_method_filter(payload: PaymentMethodFilterIn, db: Session = Depends(get_session),
                               user: models.User = Depends(get_current_user)):
    return PaymentSyncService(db).save_payment_method_filter(user, payload.methods)
