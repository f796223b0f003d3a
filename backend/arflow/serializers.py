"""Response shaping for API controllers.

Table models are dumped with `model_dump`; anything sensitive is
excluded here so controllers never return a raw row.
"""

from typing import Any, Dict, Iterable, Optional

from . import models


def user_out(user: models.User) -> Dict[str, Any]:
    data = user.model_dump(exclude={"password_hash"})
    data["full_name"] = user.full_name
    return data


def organization_out(org: models.Organization) -> Dict[str, Any]:
    return org.model_dump()


def customer_out(customer: models.Customer, **extra) -> Dict[str, Any]:
    data = customer.model_dump()
    data.update(extra)
    return data


def term_out(term: models.PaymentTermType) -> Dict[str, Any]:
    return term.model_dump()


def document_type_out(row: models.DocumentTypeSetting) -> Dict[str, Any]:
    return row.model_dump()


def line_item_out(item: models.ARDocumentLineItem) -> Dict[str, Any]:
    return item.model_dump(exclude={"document_id"})


def document_out(doc: models.ARDocument, customer: Optional[models.Customer] = None,
                 line_items: Optional[Iterable[models.ARDocumentLineItem]] = None) -> Dict[str, Any]:
    data = doc.model_dump(exclude={"raw_external_data"})
    if customer is not None:
        data["customer"] = {"id": customer.id, "company_name": customer.company_name, "email": customer.email}
    if line_items is not None:
        data["line_items"] = [line_item_out(li) for li in line_items]
    return data


def payment_out(payment: models.CustomerPayment, customer: Optional[models.Customer] = None) -> Dict[str, Any]:
    data = payment.model_dump()
    if customer is not None:
        data["customer"] = {"id": customer.id, "company_name": customer.company_name}
    return data


def application_out(app: models.PaymentApplication, document: Optional[models.ARDocument] = None) -> Dict[str, Any]:
    data = app.model_dump()
    if document is not None:
        data["document_number"] = document.document_number
        data["document_type"] = document.document_type
        data["balance_due"] = document.balance_due
    return data


def audit_out(entry: models.AuditLog) -> Dict[str, Any]:
    return entry.model_dump()


def mapping_out(mapping: models.AcumaticaCustomerMapping) -> Dict[str, Any]:
    return mapping.model_dump()


def sync_log_out(log: models.IntegrationSyncLog) -> Dict[str, Any]:
    return log.model_dump()


def page_out(page: Dict[str, Any], item_out) -> Dict[str, Any]:
    return {**page, "items": [item_out(row) for row in page["items"]]}
