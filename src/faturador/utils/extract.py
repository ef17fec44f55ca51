"""Ordered field extractors for heterogeneous provider and database records.

The issuing service, its webhooks and the legacy address tables all name the
same datum differently depending on API version and table. Each extractor
reads one location; ``first_non_empty`` applies a chain in order and returns
the first value that is not None or blank.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import Any

Extractor = Callable[[Mapping[str, Any]], Any]


def key(*path: str) -> Extractor:
    """Build an extractor that follows *path* through nested mappings."""

    def _extract(record: Mapping[str, Any]) -> Any:
        current: Any = record
        for part in path:
            if not isinstance(current, Mapping):
                return None
            current = current.get(part)
        return current

    _extract.__name__ = "key_" + "_".join(path)
    return _extract


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def first_non_empty(record: Mapping[str, Any] | None, extractors: Iterable[Extractor]) -> Any:
    """Return the first non-empty value produced by *extractors*, else None."""
    if not record:
        return None
    for extractor in extractors:
        value = extractor(record)
        if not _is_empty(value):
            return value
    return None


# --- Invoice snapshots (submit/get responses and webhook bodies) ---

INVOICE_REFERENCE = (key("id"), key("reference"), key("external_id"))
INVOICE_STATUS = (key("status"),)
INVOICE_FLOW_STATUS = (key("flowStatus"), key("flow_status"))
INVOICE_XML_REF = (key("xml_url"), key("xml"), key("urls", "xml"))
INVOICE_PDF_REF = (key("pdf_url"), key("pdf"), key("urls", "pdf"))
INVOICE_ISSUED_AT = (
    key("issuedOn"),
    key("issuedAt"),
    key("issued_at"),
    key("data_emissao"),
)
INVOICE_ERROR = (key("error"), key("mensagem"), key("message"), key("flowMessage"))

# --- Company registration responses ---

COMPANY_ID = (key("company", "id"), key("id"), key("data", "id"))

# --- Addresses ---

ADDRESS_FISCAL_CODE = (
    key("codigo_municipio"),
    key("codigo_ibge"),
    key("cidade_codigo_ibge"),
    key("ibge"),
)

# --- Tax estimate responses ---

ISS_AMOUNT = (key("taxAmount"), key("value"), key("valor"))
ISS_RATE = (key("rate"), key("aliquota"))
ISS_BASE = (key("baseAmount"), key("base_calculo"))
WITHHOLDING_AMOUNT = (key("amount"), key("value"))

# --- Company listings ---

COMPANY_LIST = (key("data"), key("companies"), key("items"), key("results"))
