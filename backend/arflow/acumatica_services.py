"""Acumatica ERP integration: setup, document import and payment push.

Every operation that talks to Acumatica opens its own authenticated
client through `client_for` and logs out when done, whatever the
outcome. Document sync writes one `IntegrationSyncLog` per run and
commits record by record so one bad record does not lose the others.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from . import models, repositories
from .acumatica import schema
from .acumatica.client import AcumaticaAPIError, AcumaticaClient
from .errors import ARFlowError, GatewayError, NotFoundError, ValidationError
from .services import AuditService, require_admin, status_from_balance
from .utils.encryption import MASK, decrypt, encrypt
from .utils.money import money

logger = logging.getLogger(__name__)

EXTERNAL_SYSTEM = "ACUMATICA"


def client_for(integration: models.AcumaticaIntegration) -> AcumaticaClient:
    """Build an (unauthenticated) client from the integration's stored credentials."""
    creds = json.loads(decrypt(integration.encrypted_credentials))
    return AcumaticaClient(
        instance_url=integration.instance_url,
        api_version=integration.api_version,
        company_id=integration.company_id,
        username=creds["username"],
        password=creds["password"],
    )


class _IntegrationMixin:
    session: Session
    repo: repositories.AcumaticaRepository

    def _integration(self, user: models.User) -> models.AcumaticaIntegration:
        integration = self.repo.integration_for_org(user.organization_id)
        if integration is None:
            raise NotFoundError("Acumatica integration not found")
        return integration

    @staticmethod
    def _require_active(integration: models.AcumaticaIntegration) -> None:
        if integration.status != models.IntegrationStatus.ACTIVE:
            raise ValidationError("Integration is not active")


class AcumaticaService(_IntegrationMixin):
    """Connection setup, schema discovery, data source and customer mapping configuration."""

    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.AcumaticaRepository(session)
        self.customer_repo = repositories.CustomerRepository(session)
        self.user_repo = repositories.UserRepository(session)

    def describe(self, integration: Optional[models.AcumaticaIntegration]) -> Dict[str, Any]:
        if integration is None:
            return {"configured": False}
        creds = json.loads(decrypt(integration.encrypted_credentials))
        return {
            "configured": True,
            "id": integration.id,
            "instance_url": integration.instance_url,
            "api_version": integration.api_version,
            "company_id": integration.company_id,
            "username": creds.get("username"),
            "password": MASK,
            "status": integration.status,
            "last_connection_test": integration.last_connection_test,
            "connection_error_message": integration.connection_error_message,
            "data_source_type": integration.data_source_type,
            "data_source_entity": integration.data_source_entity,
            "field_mappings": integration.field_mappings,
            "filter_config": integration.filter_config,
            "unmapped_customer_action": integration.unmapped_customer_action,
            "default_customer_user_id": integration.default_customer_user_id,
            "last_sync_at": integration.last_sync_at,
            "default_cash_account": integration.default_cash_account,
            "default_payment_method": integration.default_payment_method,
            "auto_sync_payments": integration.auto_sync_payments,
        }

    def get(self, user: models.User) -> Dict[str, Any]:
        require_admin(user, "view integrations")
        return self.describe(self.repo.integration_for_org(user.organization_id))

    def upsert(self, user: models.User, data: Dict[str, Any]) -> Dict[str, Any]:
        require_admin(user, "manage integrations")
        integration = self.repo.integration_for_org(user.organization_id)
        password = data.get("password")
        if integration is None:
            if not password or password == MASK:
                raise ValidationError("Password is required")
            integration = models.AcumaticaIntegration(
                organization_id=user.organization_id,
                instance_url=data["instance_url"],
                company_id=data["company_id"],
                encrypted_credentials="",
                status=models.IntegrationStatus.INACTIVE,
            )
        elif not password or password == MASK:
            password = json.loads(decrypt(integration.encrypted_credentials))["password"]
        integration.instance_url = data["instance_url"].rstrip("/")
        integration.api_version = data.get("api_version") or integration.api_version
        integration.company_id = data["company_id"]
        integration.encrypted_credentials = encrypt(json.dumps({"username": data["username"], "password": password}))
        self.repo.save(integration)
        logger.info("acumatica integration saved org_id=%s instance=%s", user.organization_id, integration.instance_url)
        return self.describe(integration)

    def test_connection(self, user: models.User) -> Dict[str, Any]:
        require_admin(user, "manage integrations")
        integration = self._integration(user)
        client = client_for(integration)
        try:
            client.login()
            result = {"success": True, "message": "Successfully connected to Acumatica"}
        except AcumaticaAPIError as exc:
            result = {"success": False, "message": str(exc)}
        finally:
            client.logout()
        integration.last_connection_test = models.utcnow()
        integration.connection_error_message = None if result["success"] else result["message"]
        self.repo.save(integration)
        return result

    def delete(self, user: models.User) -> None:
        require_admin(user, "manage integrations")
        integration = self._integration(user)
        for mapping in self.repo.mappings(integration.id):
            self.session.delete(mapping)
        for log in self.repo.sync_history(integration.id, limit=None):
            self.session.delete(log)
        self.session.flush()
        self.repo.delete(integration)
        logger.info("acumatica integration deleted org_id=%s", user.organization_id)

    def configure_data_source(self, user: models.User, data: Dict[str, Any]) -> Dict[str, Any]:
        require_admin(user, "manage integrations")
        integration = self._integration(user)
        entity = data.get("entity") or "SalesInvoice"
        previous_method_filter = None
        if integration.data_source_entity == entity and integration.filter_config:
            previous_method_filter = integration.filter_config.get("payment_method_filter")
        integration.data_source_entity = entity
        integration.data_source_type = data.get("data_source_type") or models.DataSourceType.REST_API
        integration.field_mappings = data.get("field_mappings") or schema.default_field_mappings(entity)
        filter_config = data.get("filter_config") or schema.default_filter_config(entity)
        if previous_method_filter and "payment_method_filter" not in filter_config:
            filter_config = {**filter_config, "payment_method_filter": previous_method_filter}
        integration.filter_config = filter_config
        self.repo.save(integration)
        return self.describe(integration)

    def activate(self, user: models.User) -> Dict[str, Any]:
        require_admin(user, "manage integrations")
        integration = self._integration(user)
        if not integration.field_mappings or not integration.filter_config:
            raise ValidationError("Configure field mappings and filters before activating the integration")
        integration.status = models.IntegrationStatus.ACTIVE
        self.repo.save(integration)
        return self.describe(integration)

    def deactivate(self, user: models.User) -> Dict[str, Any]:
        require_admin(user, "manage integrations")
        integration = self._integration(user)
        integration.status = models.IntegrationStatus.INACTIVE
        self.repo.save(integration)
        return self.describe(integration)

    # --- schema discovery ---

    @staticmethod
    def discover_entities() -> List[Dict[str, Any]]:
        return list(schema.STANDARD_ENTITIES)

    def entity_schema(self, user: models.User, entity: str, refresh: bool = False) -> List[Dict[str, Any]]:
        require_admin(user, "manage integrations")
        integration = self._integration(user)
        cached = (integration.discovered_schema or {}).get(entity)
        if cached and not refresh:
            return cached
        client = client_for(integration)
        try:
            client.login()
            fields = schema.parse_adhoc_schema(client.get(f"{entity}/$adHocSchema"))
            records = schema.records_from_response(client.get(entity, params=schema.expand_params(entity, 1)))
        except AcumaticaAPIError as exc:
            raise GatewayError(f"Failed to discover Acumatica schema: {exc}") from exc
        finally:
            client.logout()
        fields = schema.enrich_with_samples(fields, records)
        if records:
            known = {f["name"] for f in fields}
            fields.extend(f for f in schema.expanded_fields(records[0], entity) if f["name"] not in known)
        integration.discovered_schema = {**(integration.discovered_schema or {}), entity: fields}
        integration.schema_last_updated = models.utcnow()
        self.repo.save(integration)
        return fields

    def sample_data(self, user: models.User, limit: int = 5) -> List[Dict[str, Any]]:
        """Preview how the configured mappings read the first few records."""
        require_admin(user, "manage integrations")
        integration = self._integration(user)
        if not integration.field_mappings:
            raise ValidationError("Configure field mappings first")
        entity, params = schema.build_document_query(integration.data_source_entity, integration.field_mappings,
                                                     integration.filter_config or {}, limit)
        client = client_for(integration)
        try:
            client.login()
            records = schema.records_from_response(client.get(entity, params=params))
        except AcumaticaAPIError as exc:
            raise GatewayError(f"Failed to fetch sample data: {exc}") from exc
        finally:
            client.logout()
        preview = []
        for record in records:
            try:
                extracted = schema.extract_document(record, integration.field_mappings)
                preview.append({"extracted": extracted.__dict__, "error": None})
            except ValueError as exc:
                preview.append({"extracted": None, "error": str(exc)})
        return preview

    # --- customers ---

    def customer_handling(self, user: models.User) -> Dict[str, Any]:
        require_admin(user, "view integrations")
        integration = self._integration(user)
        return {"unmapped_customer_action": integration.unmapped_customer_action,
                "default_customer_user_id": integration.default_customer_user_id}

    def update_customer_handling(self, user: models.User, action: models.UnmappedAction,
                                 default_customer_user_id: Optional[int]) -> Dict[str, Any]:
        require_admin(user, "manage integrations")
        integration = self._integration(user)
        if action == models.UnmappedAction.DEFAULT_USER:
            if not default_customer_user_id:
                raise ValidationError("A default user is required when unmapped customers are assigned to a user")
            if not self.user_repo.get_in_org(user.organization_id, default_customer_user_id):
                raise NotFoundError("User not found")
            integration.default_customer_user_id = default_customer_user_id
        else:
            integration.default_customer_user_id = None
        integration.unmapped_customer_action = action
        self.repo.save(integration)
        return self.customer_handling(user)

    def mappings(self, user: models.User) -> List[models.AcumaticaCustomerMapping]:
        require_admin(user, "view integrations")
        return self.repo.mappings(self._integration(user).id)

    def update_mapping(self, user: models.User, mapping_id: int, customer_id: Optional[int],
                       ignore: bool = False) -> models.AcumaticaCustomerMapping:
        require_admin(user, "manage integrations")
        integration = self._integration(user)
        mapping = self.repo.mapping(integration.id, mapping_id)
        if mapping is None:
            raise NotFoundError("Customer mapping not found")
        if ignore:
            mapping.customer_id = None
            mapping.status = models.CustomerMappingStatus.IGNORED
        elif customer_id:
            if not self.customer_repo.get(user.organization_id, customer_id):
                raise NotFoundError("Customer not found")
            mapping.customer_id = customer_id
            mapping.status = models.CustomerMappingStatus.MATCHED
        else:
            raise ValidationError("Select a customer or ignore the mapping")
        mapping.match_type = models.CustomerMatchType.MANUAL
        return self.repo.save(mapping)


class DocumentSyncService(_IntegrationMixin):
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.AcumaticaRepository(session)
        self.doc_repo = repositories.DocumentRepository(session)
        self.customer_repo = repositories.CustomerRepository(session)
        self.payment_repo = repositories.PaymentRepository(session)
        self.audit = AuditService(session)

    def sync(self, user: models.User, limit: int = 1000,
             sync_type: models.SyncType = models.SyncType.MANUAL) -> models.IntegrationSyncLog:
        require_admin(user, "sync documents")
        integration = self._integration(user)
        self._require_active(integration)
        if not integration.field_mappings or not integration.filter_config:
            raise ValidationError("Field mappings and filters must be configured before syncing")
        log = self.repo.save(models.IntegrationSyncLog(
            integration_id=integration.id, sync_type=sync_type,
            status=models.SyncStatus.STARTED, triggered_by_id=user.id))
        logger.info("acumatica sync started log_id=%s org_id=%s limit=%s", log.id, user.organization_id, limit)
        client = client_for(integration)
        try:
            entity, params = schema.build_document_query(
                integration.data_source_entity, integration.field_mappings, integration.filter_config, limit)
            client.login()
            records = schema.records_from_response(client.get(entity, params=params))
            log.status = models.SyncStatus.IN_PROGRESS
            log.invoices_fetched = len(records)
            self.repo.save(log)
            self._process(integration, log, records)
        except (AcumaticaAPIError, ValueError) as exc:
            self.session.rollback()
            logger.error("acumatica sync failed log_id=%s: %s", log.id, exc)
            log.status = models.SyncStatus.FAILED
            log.completed_at = models.utcnow()
            log.error_details = [{"invoice_ref": "sync", "error": str(exc)}]
            log.errors_count = max(log.errors_count, 1)
            self.repo.save(log)
        finally:
            client.logout()
        self.audit.record(
            user, user.organization_id, "acumatica_sync", "integration", integration.id,
            f"Acumatica sync {log.status.value.lower()}: {log.documents_created} created, "
            f"{log.invoices_skipped} skipped, {log.errors_count} errors",
            {"sync_log_id": log.id},
        )
        return log

    def _resolve_customer(self, integration: models.AcumaticaIntegration, log: models.IntegrationSyncLog,
                          extracted: schema.ExtractedDocument):
        """Return `(customer, skip_reason, is_new)` for a record's Acumatica customer id."""
        mapping = self.repo.mapping_by_customer_id(integration.id, extracted.customer_id)
        if mapping is not None:
            if mapping.status == models.CustomerMappingStatus.IGNORED:
                return None, f"Ignored customer: {extracted.customer_id}", False
            if mapping.status == models.CustomerMappingStatus.MATCHED and mapping.customer_id:
                customer = self.customer_repo.get(integration.organization_id, mapping.customer_id)
                if customer is not None:
                    return customer, None, False
        customer = self.customer_repo.get_by_external_id(integration.organization_id, extracted.customer_id,
                                                         EXTERNAL_SYSTEM)
        if customer is not None:
            return customer, None, False
        name = extracted.customer_name or extracted.customer_id
        if integration.unmapped_customer_action == models.UnmappedAction.SKIP:
            if mapping is None:
                self.repo.save(models.AcumaticaCustomerMapping(
                    integration_id=integration.id, acumatica_customer_id=extracted.customer_id,
                    acumatica_customer_name=name, status=models.CustomerMappingStatus.PENDING), commit=False)
            return None, f"Unmapped customer: {extracted.customer_id}", False
        customer = self.customer_repo.save(models.Customer(
            organization_id=integration.organization_id,
            company_name=name,
            customer_number=extracted.customer_id,
            external_id=extracted.customer_id,
            external_system=EXTERNAL_SYSTEM,
            source_type=models.RecordSourceType.INTEGRATION,
            created_by_integration_id=integration.id,
            created_by_sync_log_id=log.id,
        ), commit=False)
        mapping = mapping or models.AcumaticaCustomerMapping(
            integration_id=integration.id, acumatica_customer_id=extracted.customer_id,
            acumatica_customer_name=name, match_type=models.CustomerMatchType.AUTO_PLACEHOLDER)
        mapping.customer_id = customer.id
        mapping.status = models.CustomerMappingStatus.MATCHED
        self.repo.save(mapping, commit=False)
        log.customers_created += 1
        return customer, None, True

    def _process(self, integration: models.AcumaticaIntegration, log: models.IntegrationSyncLog,
                 records: List[Dict[str, Any]]) -> None:
        document_type = schema.document_type_for_entity(integration.data_source_entity)
        created: Dict[str, list] = {"document_ids": [], "customer_ids": []}
        skips: List[Dict[str, str]] = []
        errors: List[Dict[str, str]] = []
        touched = set()
        updated = 0
        for record in records:
            ref = schema.get_nested_value(record, (integration.field_mappings.get("unique_id") or {}).get(
                "source_field")) or "unknown"
            try:
                extracted = schema.extract_document(record, integration.field_mappings)
                if not extracted.unique_id:
                    skips.append({"invoice_ref": "unknown", "reason": "Missing unique ID"})
                    continue
                if not extracted.customer_id:
                    skips.append({"invoice_ref": extracted.unique_id, "reason": "Missing customer ID"})
                    continue
                customer, reason, is_new = self._resolve_customer(integration, log, extracted)
                if customer is None:
                    skips.append({"invoice_ref": extracted.unique_id, "reason": reason})
                    self.session.commit()
                    continue
                status = status_from_balance(extracted.amount, extracted.balance)
                is_created = False
                doc = self.doc_repo.get_by_external_id(integration.organization_id, extracted.unique_id,
                                                       EXTERNAL_SYSTEM)
                if doc is not None:
                    doc.total_amount = extracted.amount
                    doc.balance_due = max(0.0, extracted.balance)
                    doc.amount_paid = money(extracted.amount_paid)
                    doc.status = status
                    doc.description = extracted.description
                    doc.raw_external_data = record
                    self.doc_repo.save(doc, commit=False)
                else:
                    doc = self.doc_repo.save(models.ARDocument(
                        organization_id=integration.organization_id,
                        customer_id=customer.id,
                        document_type=document_type,
                        document_number=extracted.unique_id,
                        document_date=extracted.date,
                        due_date=extracted.due_date,
                        subtotal=extracted.amount,
                        tax_amount=0.0,
                        total_amount=extracted.amount,
                        amount_paid=money(extracted.amount_paid),
                        balance_due=max(0.0, extracted.balance),
                        status=status,
                        description=extracted.description,
                        source_type=models.RecordSourceType.INTEGRATION,
                        external_system=EXTERNAL_SYSTEM,
                        external_id=extracted.unique_id,
                        integration_id=integration.id,
                        sync_log_id=log.id,
                        external_branch=extracted.branch,
                        raw_external_data=record,
                    ), commit=False)
                    log.documents_created += 1
                    is_created = True
                self.session.commit()
                touched.add(doc.customer_id)
                if is_created:
                    created["document_ids"].append(doc.id)
                else:
                    updated += 1
                if is_new:
                    created["customer_ids"].append(customer.id)
            except (ValueError, SQLAlchemyError) as exc:
                self.session.rollback()
                logger.warning("acumatica record %s failed: %s", ref, exc)
                errors.append({"invoice_ref": str(ref), "error": str(exc)})
        for customer_id in touched:
            customer = self.customer_repo.get(integration.organization_id, customer_id)
            if customer is not None:
                self.customer_repo.refresh_balance(customer)
        log.invoices_processed = log.documents_created + updated
        log.invoices_skipped = len(skips)
        log.errors_count = len(errors)
        log.skip_details = skips or None
        log.error_details = errors or None
        log.created_records = created
        if errors and log.documents_created == 0:
            log.status = models.SyncStatus.FAILED
        elif errors:
            log.status = models.SyncStatus.PARTIAL_SUCCESS
        else:
            log.status = models.SyncStatus.SUCCESS
        log.completed_at = models.utcnow()
        integration.last_sync_at = models.utcnow()
        self.repo.save(integration, commit=False)
        self.repo.save(log)
        logger.info("acumatica sync finished log_id=%s status=%s fetched=%s created=%s updated=%s skipped=%s errors=%s",
                    log.id, log.status.value, log.invoices_fetched, log.documents_created, updated,
                    len(skips), len(errors))

    def history(self, user: models.User, limit: int = 10) -> List[models.IntegrationSyncLog]:
        require_admin(user, "view integrations")
        integration = self.repo.integration_for_org(user.organization_id)
        if integration is None:
            return []
        return self.repo.sync_history(integration.id, limit)

    def status(self, user: models.User, sync_log_id: int) -> Dict[str, Any]:
        require_admin(user, "view integrations")
        log = self.repo.sync_log(self._integration(user).id, sync_log_id)
        if log is None:
            raise NotFoundError("Sync log not found")
        return {
            "id": log.id,
            "status": log.status,
            "sync_type": log.sync_type,
            "started_at": log.started_at,
            "completed_at": log.completed_at,
            "fetched": log.invoices_fetched,
            "processed": log.invoices_processed,
            "created": log.documents_created,
            "updated": log.invoices_processed - log.documents_created,
            "skipped": log.invoices_skipped,
            "customers_created": log.customers_created,
            "errors": log.errors_count,
            "skip_details": log.skip_details or [],
            "error_details": log.error_details or [],
            "undone_at": log.undone_at,
        }

    def undo(self, user: models.User, sync_log_id: int) -> Dict[str, int]:
        """Remove what a sync run created, keeping anything that has payments since."""
        require_admin(user, "undo syncs")
        integration = self._integration(user)
        log = self.repo.sync_log(integration.id, sync_log_id)
        if log is None:
            raise NotFoundError("Sync log not found")
        if log.undone_at:
            raise ValidationError("This sync has already been undone")
        if log.sync_type == models.SyncType.PAYMENT_SYNC:
            raise ValidationError("Payment syncs cannot be undone")
        result = {"documents_deleted": 0, "documents_kept": 0, "customers_deleted": 0, "customers_kept": 0}
        affected = set()
        for doc in self.doc_repo.created_by_sync(log.id):
            if self.payment_repo.applications_for_document(doc.id):
                result["documents_kept"] += 1
                continue
            affected.add(doc.customer_id)
            self.doc_repo.delete(doc, commit=False)
            result["documents_deleted"] += 1
        self.session.flush()
        removed = set()
        for customer in self.customer_repo.created_by_sync(log.id):
            if self.customer_repo.document_counts([customer.id]) or self.customer_repo.payment_counts([customer.id]):
                result["customers_kept"] += 1
                continue
            for mapping in self.repo.mappings(integration.id):
                if mapping.customer_id == customer.id:
                    self.session.delete(mapping)
            removed.add(customer.id)
            self.customer_repo.delete(customer, commit=False)
            result["customers_deleted"] += 1
        self.session.flush()
        for customer_id in affected - removed:
            customer = self.customer_repo.get(user.organization_id, customer_id)
            if customer is not None:
                self.customer_repo.refresh_balance(customer)
        log.undone_at = models.utcnow()
        self.repo.save(log)
        self.audit.record(
            user, user.organization_id, "sync_undone", "integration", integration.id,
            f"Undid Acumatica sync #{log.id}: {result['documents_deleted']} documents and "
            f"{result['customers_deleted']} customers removed",
            {"sync_log_id": log.id, **result},
        )
        logger.info("acumatica sync undone log_id=%s result=%s", log.id, result)
        return result


class PaymentSyncService(_IntegrationMixin):
    """Payment configuration and pushing ARFlow payments into Acumatica."""

    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.AcumaticaRepository(session)
        self.payment_repo = repositories.PaymentRepository(session)
        self.doc_repo = repositories.DocumentRepository(session)
        self.customer_repo = repositories.CustomerRepository(session)
        self.audit = AuditService(session)

    # --- configuration ---

    def payment_config(self, user: models.User) -> Dict[str, Any]:
        require_admin(user, "view integrations")
        integration = self._integration(user)
        return {
            "default_cash_account": integration.default_cash_account,
            "default_payment_method": integration.default_payment_method,
            "auto_sync_payments": integration.auto_sync_payments,
        }

    def save_payment_config(self, user: models.User, data: Dict[str, Any]) -> Dict[str, Any]:
        require_admin(user, "manage integrations")
        integration = self._integration(user)
        if not data.get("default_cash_account") or not data.get("default_payment_method"):
            raise ValidationError("Default payment method and cash account are required")
        integration.default_cash_account = data["default_cash_account"]
        integration.default_payment_method = data["default_payment_method"]
        integration.auto_sync_payments = bool(data.get("auto_sync_payments"))
        self.repo.save(integration)
        return self.payment_config(user)

    def _fetch_methods(self, integration: models.AcumaticaIntegration, params: Dict[str, str]) -> List[dict]:
        client = client_for(integration)
        try:
            client.login()
            return schema.records_from_response(client.get("PaymentMethod", params=params))
        except AcumaticaAPIError as exc:
            raise GatewayError(f"Failed to fetch payment methods: {exc}") from exc
        finally:
            client.logout()

    def payment_methods_with_cash_accounts(self, user: models.User) -> Dict[str, List[Dict[str, Any]]]:
        require_admin(user, "fetch payment configuration")
        integration = self._integration(user)
        self._require_active(integration)
        methods, accounts = [], []
        for pm in self._fetch_methods(integration, {"$expand": "AllowedCashAccounts"}):
            if schema.unwrap(pm.get("UseInAR")) is not True:
                continue
            if schema.unwrap(pm.get("Active")) is False:
                continue
            method_id = schema.unwrap(pm.get("PaymentMethodID"))
            methods.append({"id": method_id, "description": schema.unwrap(pm.get("Description")) or method_id})
            for ca in pm.get("AllowedCashAccounts") or []:
                account_id = schema.unwrap(ca.get("CashAccount"))
                if schema.unwrap(ca.get("UseInAR")) is not True or not account_id:
                    continue
                accounts.append({
                    "id": account_id,
                    "description": schema.unwrap(ca.get("Description")) or account_id,
                    "branch": schema.unwrap(ca.get("Branch")),
                    "payment_method": method_id,
                    "is_ar_default": bool(schema.unwrap(ca.get("ARDefault"))),
                })
        accounts.sort(key=lambda a: (a["payment_method"], not a["is_ar_default"], a["id"]))
        return {"payment_methods": methods, "cash_accounts": accounts}

    def discover_payment_methods(self, user: models.User) -> List[Dict[str, Any]]:
        require_admin(user, "discover payment methods")
        integration = self._integration(user)
        found = []
        params = {"$select": "PaymentMethodID,Description,Active,UseInAR"}
        for pm in self._fetch_methods(integration, params):
            active = schema.unwrap(pm.get("Active"))
            use_in_ar = schema.unwrap(pm.get("UseInAR"))
            if active is False or use_in_ar is False:
                continue
            found.append({"id": schema.unwrap(pm.get("PaymentMethodID")) or "",
                          "description": schema.unwrap(pm.get("Description")) or ""})
        return found

    def payment_method_filter(self, user: models.User) -> Dict[str, Any]:
        require_admin(user, "view integrations")
        integration = self._integration(user)
        current = (integration.filter_config or {}).get("payment_method_filter") or {}
        return {"field": schema.payment_method_filter_field(integration.data_source_entity),
                "methods": current.get("allowed_values") or []}

    def save_payment_method_filter(self, user: models.User, methods: List[str]) -> Dict[str, Any]:
        require_admin(user, "manage integrations")
        integration = self._integration(user)
        filter_config = dict(integration.filter_config or {})
        cleaned = [m.strip() for m in methods if m and m.strip()]
        if cleaned:
            filter_config["payment_method_filter"] = {
                "field": schema.payment_method_filter_field(integration.data_source_entity),
                "allowed_values": cleaned,
            }
        else:
            filter_config.pop("payment_method_filter", None)
        integration.filter_config = filter_config
        self.repo.save(integration)
        return self.payment_method_filter(user)

    # --- payment push ---

    def _build_payment_body(self, integration: models.AcumaticaIntegration, payment: models.CustomerPayment,
                            customer: models.Customer) -> Dict[str, Any]:
        applications = []
        for app in self.payment_repo.applications(payment.id):
            doc = self.doc_repo.get(payment.organization_id, app.ar_document_id)
            if doc is None:
                continue
            if not doc.external_id:
                raise ValidationError(f"Document {doc.document_number} is not linked to Acumatica")
            applications.append({
                "DocType": schema.wrap(schema.acumatica_doc_type(doc.document_type)),
                "ReferenceNbr": schema.wrap(doc.external_id),
                "AmountPaid": schema.wrap(app.amount_applied),
            })
        return {
            "Type": schema.wrap("Payment"),
            "CustomerID": schema.wrap(customer.external_id),
            "PaymentMethod": schema.wrap(integration.default_payment_method),
            "PaymentAmount": schema.wrap(payment.amount),
            "CashAccount": schema.wrap(integration.default_cash_account),
            "PaymentRef": schema.wrap(payment.payment_number),
            "ApplicationDate": schema.wrap(payment.payment_date.isoformat()),
            "Description": schema.wrap(f"Payment from ARFlow - {payment.payment_number}"),
            "DocumentsToApply": applications,
        }

    def sync_payment(self, payment: models.CustomerPayment,
                     user: Optional[models.User] = None) -> Dict[str, Any]:
        if payment.acumatica_sync_status == "synced" and payment.acumatica_payment_ref:
            return {"success": True, "reference_nbr": payment.acumatica_payment_ref, "already_synced": True}
        integration = self.repo.integration_for_org(payment.organization_id)
        try:
            return self._push_payment(integration, payment, user)
        except ARFlowError as exc:
            self._record_failure(integration, payment, exc)
            raise

    def _record_failure(self, integration: Optional[models.AcumaticaIntegration],
                        payment: models.CustomerPayment, exc: Exception) -> None:
        payment.acumatica_sync_status = "failed"
        payment.acumatica_sync_error = str(exc)
        self.payment_repo.save(payment, commit=False)
        if integration is not None:
            now = models.utcnow()
            self.session.add(models.IntegrationSyncLog(
                integration_id=integration.id, sync_type=models.SyncType.PAYMENT_SYNC,
                status=models.SyncStatus.FAILED, started_at=now, completed_at=now, errors_count=1,
                error_details=[{"invoice_ref": payment.payment_number, "error": str(exc)}]))
        self.session.commit()
        logger.warning("acumatica payment sync failed payment=%s: %s", payment.payment_number, exc)

    def _push_payment(self, integration: Optional[models.AcumaticaIntegration], payment: models.CustomerPayment,
                      user: Optional[models.User]) -> Dict[str, Any]:
        if integration is None:
            raise NotFoundError("Acumatica integration not found")
        self._require_active(integration)
        if not integration.default_cash_account or not integration.default_payment_method:
            raise ValidationError("Acumatica payment configuration is incomplete")
        if payment.status != models.PaymentStatus.APPLIED:
            raise ValidationError("Only applied payments can be synced")
        customer = self.customer_repo.get(payment.organization_id, payment.customer_id)
        if customer is None or not customer.external_id:
            raise ValidationError("Customer is not linked to an Acumatica customer")
        body = self._build_payment_body(integration, payment, customer)
        log = models.IntegrationSyncLog(
            integration_id=integration.id, sync_type=models.SyncType.PAYMENT_SYNC,
            status=models.SyncStatus.IN_PROGRESS, triggered_by_id=user.id if user else None)
        client = client_for(integration)
        try:
            client.login()
            result = client.put("Payment", body) or {}
        except AcumaticaAPIError as exc:
            raise GatewayError(f"Failed to sync payment to Acumatica: {exc}") from exc
        finally:
            client.logout()
        reference = schema.unwrap(result.get("ReferenceNbr"))
        payment.acumatica_payment_ref = reference
        payment.acumatica_sync_status = "synced"
        payment.acumatica_sync_error = None
        payment.acumatica_synced_at = models.utcnow()
        self.payment_repo.save(payment, commit=False)
        log.status = models.SyncStatus.SUCCESS
        log.completed_at = models.utcnow()
        log.invoices_processed = len(body["DocumentsToApply"])
        log.created_records = {"payment_id": payment.id, "reference_nbr": reference}
        self.repo.save(log)
        self.audit.record(
            user, payment.organization_id, "payment_synced", "payment", payment.id,
            f"Synced payment {payment.payment_number} to Acumatica as {reference}",
            {"reference_nbr": reference},
        )
        logger.info("acumatica payment synced payment=%s ref=%s", payment.payment_number, reference)
        return {"success": True, "reference_nbr": reference, "already_synced": False}

    def _payment(self, user: models.User, payment_id: int) -> models.CustomerPayment:
        payment = self.payment_repo.get(user.organization_id, payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        return payment

    def sync(self, user: models.User, payment_id: int) -> Dict[str, Any]:
        require_admin(user, "sync payments")
        return self.sync_payment(self._payment(user, payment_id), user)

    def retry(self, user: models.User, payment_id: int) -> Dict[str, Any]:
        require_admin(user, "sync payments")
        payment = self._payment(user, payment_id)
        payment.acumatica_sync_status = "pending"
        payment.acumatica_sync_error = None
        self.payment_repo.save(payment)
        return self.sync_payment(payment, user)

    def release(self, user: models.User, payment_id: int) -> Dict[str, Any]:
        require_admin(user, "release payments")
        payment = self._payment(user, payment_id)
        if not payment.acumatica_payment_ref:
            raise ValidationError("Payment has not been synced to Acumatica")
        integration = self._integration(user)
        body = {"entity": {"Type": schema.wrap("Payment"),
                           "ReferenceNbr": schema.wrap(payment.acumatica_payment_ref)},
                "parameters": {}}
        client = client_for(integration)
        try:
            client.login()
            result = client.post("Payment/ReleasePayment", body) or {}
        except AcumaticaAPIError as exc:
            raise GatewayError(f"Failed to release payment in Acumatica: {exc}") from exc
        finally:
            client.logout()
        logger.info("acumatica payment released ref=%s", payment.acumatica_payment_ref)
        return {"success": True, "reference_nbr": payment.acumatica_payment_ref,
                "status": schema.unwrap(result.get("Status")) if isinstance(result, dict) else None}
