"""Acumatica entity knowledge: default mappings, field extraction, queries.

Acumatica REST responses wrap every scalar as `{"value": ...}` and
nest sections (`FinancialDetails/Branch`). Field mappings stored on the
integration name source fields with `/`-separated paths.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..models import DocumentType, utcnow

SKIP_FIELDS = {"id", "rowNumber", "note", "_links", "custom"}

EXPANSION_MAP: Dict[str, List[str]] = {
    "SalesOrder": ["FinancialSettings", "Details"],
    "SalesInvoice": ["FinancialDetails", "BillingSettings"],
    "Invoice": ["Details", "TaxDetails"],
}

STANDARD_ENTITIES = [
    {
        "name": "SalesInvoice",
        "display_name": "Sales Invoices",
        "description": "Invoices created from Sales Orders with balance tracking",
        "screen_id": "SO303000",
    },
    {
        "name": "SalesOrder",
        "display_name": "Sales Orders",
        "description": "Sales Order documents with unpaid balance",
        "screen_id": "SO301000",
    },
]

TYPE_MAP = {
    "string": "string", "String": "string",
    "decimal": "decimal", "Decimal": "decimal",
    "int": "int", "Int32": "int", "Integer": "int",
    "date": "date", "Date": "date",
    "datetime": "datetime", "DateTime": "datetime",
    "boolean": "boolean", "Boolean": "boolean",
    "guid": "guid", "Guid": "guid",
}

MONETARY_NAMES = ("amount", "total", "balance", "price", "cost", "tax", "discount", "payment", "fee")

_DATETIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_GUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


def default_field_mappings(entity: str) -> Dict[str, Any]:
    if entity == "SalesOrder":
        return {
            "import_level": "INVOICE_TOTAL",
            "amount": {"source_field": "OrderTotal", "source_type": "decimal"},
            "balance": {"source_field": "UnpaidBalance", "source_type": "decimal"},
            "date": {"source_field": "Date", "source_type": "date"},
            "unique_id": {"source_field": "OrderNbr"},
            "customer": {"id_field": "CustomerID"},
            "description": {"source_field": "Description"},
        }
    return {
        "import_level": "INVOICE_TOTAL",
        "amount": {"source_field": "Amount", "source_type": "decimal"},
        "balance": {"source_field": "Balance", "source_type": "decimal"},
        "date": {"source_field": "Date", "source_type": "date"},
        "unique_id": {"source_field": "ReferenceNbr"},
        "customer": {"id_field": "CustomerID"},
        "description": {"source_field": "Description"},
        "branch": {"source_field": "FinancialDetails/Branch"},
    }


def default_filter_config(entity: str, today: Optional[date] = None) -> Dict[str, Any]:
    today = today or utcnow().date()
    try:
        start = today.replace(year=today.year - 3)
    except ValueError:
        # Feb 29 -> Feb 28
        start = today.replace(year=today.year - 3, day=28)
    if entity == "SalesOrder":
        return {
            "status": {"field": "Status", "allowed_values": ["Open", "Hold", "Credit Hold", "Pending Approval"]},
            "date_range": {"field": "Date", "start_date": start.isoformat()},
            "balance_filter": {"field": "UnpaidBalance", "operator": "gt", "value": 0},
        }
    return {
        "status": {"field": "Status", "allowed_values": ["Open", "Balanced", "Closed", "On Hold"]},
        "date_range": {"field": "Date", "start_date": start.isoformat()},
        "balance_filter": {"field": "Balance", "operator": "gt", "value": 0},
    }


def payment_method_filter_field(entity: str) -> str:
    return "PaymentMethod" if entity == "SalesOrder" else "FinancialDetails/PaymentMethod"


def document_type_for_entity(entity: str) -> DocumentType:
    name = (entity or "").lower()
    if "invoice" in name:
        return DocumentType.INVOICE
    if "order" in name:
        return DocumentType.ORDER
    if "credit" in name:
        return DocumentType.CREDIT_MEMO
    if "debit" in name:
        return DocumentType.DEBIT_MEMO
    if "quote" in name:
        return DocumentType.QUOTE
    return DocumentType.INVOICE


def acumatica_doc_type(document_type: DocumentType) -> str:
    return {
        DocumentType.INVOICE: "Invoice",
        DocumentType.CREDIT_MEMO: "Credit Memo",
        DocumentType.DEBIT_MEMO: "Debit Memo",
    }.get(document_type, "Invoice")


# === Value access ===

def unwrap(value: Any) -> Any:
    """Strip the `{"value": x}` wrapper; empty objects become None."""
    if isinstance(value, dict):
        if "value" in value:
            return value["value"]
        if not value:
            return None
    return value


def wrap(value: Any) -> Dict[str, Any]:
    return {"value": value}


def get_nested_value(record: Any, path: Optional[str]) -> Any:
    if not path:
        return None
    value = record
    for part in path.split("/"):
        if value is None:
            return None
        if isinstance(value, list):
            value = value[0] if value else None
            if value is None:
                return None
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return unwrap(value)


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid numeric value: {value!r}")


def _to_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValueError(f"Invalid date value: {value!r}")


@dataclass
class ExtractedDocument:
    unique_id: Optional[str]
    customer_id: Optional[str]
    customer_name: Optional[str]
    amount: float
    balance: float
    date: date
    description: Optional[str]
    branch: Optional[str]

    @property
    def due_date(self) -> date:
        return self.date + timedelta(days=30)

    @property
    def amount_paid(self) -> float:
        return round(self.amount - self.balance, 2)


def _source(mappings: Dict[str, Any], key: str, attr: str = "source_field") -> Optional[str]:
    entry = mappings.get(key) or {}
    return entry.get(attr)


def extract_document(record: Dict[str, Any], mappings: Dict[str, Any]) -> ExtractedDocument:
    """Pull the fields ARFlow needs out of one Acumatica record."""
    unique_id = get_nested_value(record, _source(mappings, "unique_id"))
    customer_id = get_nested_value(record, _source(mappings, "customer", "id_field"))
    customer_name = get_nested_value(record, _source(mappings, "customer", "name_field"))
    amount = _to_float(get_nested_value(record, _source(mappings, "amount"))) or 0.0
    balance = _to_float(get_nested_value(record, _source(mappings, "balance")))
    doc_date = _to_date(get_nested_value(record, _source(mappings, "date"))) or utcnow().date()
    description = get_nested_value(record, _source(mappings, "description"))
    branch = get_nested_value(record, _source(mappings, "branch"))
    return ExtractedDocument(
        unique_id=str(unique_id).strip() if unique_id not in (None, "") else None,
        customer_id=str(customer_id).strip() if customer_id not in (None, "") else None,
        customer_name=str(customer_name).strip() if customer_name else None,
        amount=round(amount, 2),
        balance=round(amount if balance is None else balance, 2),
        date=doc_date,
        description=str(description) if description is not None else None,
        branch=str(branch) if branch is not None else None,
    )


# === Queries ===

def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


def _any_of(field: str, values: List[Any]) -> str:
    clauses = [f"{field} eq {_literal(v)}" for v in values]
    return clauses[0] if len(clauses) == 1 else "(" + " or ".join(clauses) + ")"


def build_filter(filter_config: Dict[str, Any]) -> Optional[str]:
    parts: List[str] = []
    status = filter_config.get("status") or {}
    if status.get("field") and status.get("allowed_values"):
        parts.append(_any_of(status["field"], status["allowed_values"]))
    date_range = filter_config.get("date_range") or {}
    if date_range.get("field"):
        if date_range.get("start_date"):
            parts.append(f"{date_range['field']} ge datetimeoffset'{date_range['start_date']}T00:00:00Z'")
        if date_range.get("end_date"):
            parts.append(f"{date_range['field']} le datetimeoffset'{date_range['end_date']}T23:59:59Z'")
    balance = filter_config.get("balance_filter") or {}
    if balance.get("field"):
        op = balance.get("operator") or "gt"
        if op not in ("gt", "ge", "lt", "le", "eq", "ne"):
            raise ValueError(f"Unsupported balance filter operator: {op}")
        parts.append(f"{balance['field']} {op} {_literal(balance.get('value', 0))}")
    method = filter_config.get("payment_method_filter") or {}
    if method.get("field") and method.get("allowed_values"):
        parts.append(_any_of(method["field"], method["allowed_values"]))
    return " and ".join(parts) if parts else None


def build_document_query(entity: str, field_mappings: Dict[str, Any], filter_config: Dict[str, Any],
                         limit: int) -> Tuple[str, Dict[str, Any]]:
    """Return `(relative_path, params)` for fetching documents of `entity`."""
    params: Dict[str, Any] = {"$top": str(limit)}
    odata_filter = build_filter(filter_config)
    if odata_filter:
        params["$filter"] = odata_filter
    sections = set()
    for entry in field_mappings.values():
        if isinstance(entry, dict):
            for key in ("source_field", "id_field", "name_field"):
                path = entry.get(key)
                if path and "/" in path:
                    sections.add(path.split("/", 1)[0])
    for entry in filter_config.values():
        if isinstance(entry, dict) and entry.get("field") and "/" in entry["field"]:
            sections.add(entry["field"].split("/", 1)[0])
    if sections:
        params["$expand"] = ",".join(sorted(sections))
    return entity, params


def records_from_response(data: Any) -> List[Dict[str, Any]]:
    if data is None:
        return []
    if isinstance(data, dict) and "value" in data and isinstance(data["value"], list):
        return data["value"]
    if isinstance(data, list):
        return data
    return [data]


# === Schema discovery ===

def map_acumatica_type(type_name: Any) -> str:
    return TYPE_MAP.get(type_name, "string") if isinstance(type_name, str) else "string"


def infer_type_from_value(value: Any, field_name: Optional[str] = None) -> str:
    if value is None:
        return "string"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        if field_name and any(name in field_name.lower() for name in MONETARY_NAMES):
            return "decimal"
        return "int" if isinstance(value, int) or float(value).is_integer() else "decimal"
    if isinstance(value, str):
        if _DATETIME_RE.match(value):
            return "datetime"
        if _DATE_RE.match(value):
            return "date"
        if _GUID_RE.match(value):
            return "guid"
    return "string"


def _parent_entity(path: str) -> Optional[str]:
    return path.split("/", 1)[0] if "/" in path else None


def parse_adhoc_schema(schema_data: Any) -> List[Dict[str, Any]]:
    """Turn an `$adHocSchema` payload into field descriptors."""
    if not isinstance(schema_data, dict):
        return []
    properties = schema_data.get("fields") or schema_data.get("properties") or schema_data
    fields = []
    for name, definition in properties.items():
        if definition is None or name in SKIP_FIELDS:
            continue
        definition = definition if isinstance(definition, dict) else {}
        fields.append({
            "name": name,
            "display_name": definition.get("displayName") or name,
            "type": map_acumatica_type(definition.get("type")),
            "description": definition.get("description"),
            "is_required": definition.get("required") is True,
            "is_custom": name.startswith("custom/"),
            "is_nested": "/" in name,
            "parent_entity": _parent_entity(name),
        })
    return fields


def expanded_fields(sample_record: Dict[str, Any], entity: str) -> List[Dict[str, Any]]:
    """Describe the fields of the expandable sections of `sample_record`."""
    fields = []
    for section in EXPANSION_MAP.get(entity, []):
        data = sample_record.get(section)
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict):
            continue
        for name, raw in data.items():
            if name in SKIP_FIELDS:
                continue
            sample = unwrap(raw)
            if isinstance(sample, dict) and not sample:
                sample = None
            fields.append({
                "name": f"{section}/{name}",
                "display_name": f"{section} - {name}",
                "type": infer_type_from_value(sample, name) if sample is not None else "string",
                "description": f"From {section} section",
                "is_required": False,
                "is_custom": False,
                "is_nested": True,
                "parent_entity": section,
                "sample_value": sample,
            })
    return fields


def enrich_with_samples(fields: List[Dict[str, Any]], records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not records:
        return fields
    first = records[0]
    out = []
    for f in fields:
        sample = get_nested_value(first, f["name"])
        if isinstance(sample, dict) and not sample:
            sample = None
        ftype = f["type"]
        if ftype == "string" and sample is not None:
            ftype = infer_type_from_value(sample, f["name"])
        out.append({**f, "type": ftype, "sample_value": sample})
    return out


def expand_params(entity: str, limit: int) -> Dict[str, str]:
    params = {"$top": str(limit)}
    sections = EXPANSION_MAP.get(entity)
    if sections:
        params["$expand"] = ",".join(sections)
    return params
