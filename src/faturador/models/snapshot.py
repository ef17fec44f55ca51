from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from faturador.utils.extract import (
    INVOICE_ERROR,
    INVOICE_FLOW_STATUS,
    INVOICE_ISSUED_AT,
    INVOICE_PDF_REF,
    INVOICE_REFERENCE,
    INVOICE_STATUS,
    INVOICE_XML_REF,
    first_non_empty,
)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp from the provider; None if absent or malformed."""
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).strip())
    except ValueError:
        return None


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class ProviderSnapshot:
    """Point-in-time view of an invoice as reported by the issuing service."""

    reference: str | None
    status: str | None = None
    flow_status: str | None = None
    flow_message: str | None = None
    xml_ref: str | None = None
    pdf_ref: str | None = None
    issued_at: datetime | None = None
    number: str | None = None
    check_code: str | None = None
    error: Any = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> ProviderSnapshot:
        """Build a snapshot from a submit/get response or a webhook body."""
        status = first_non_empty(data, INVOICE_STATUS)
        error = None
        if status is not None and str(status).strip().upper() in ("ERROR", "ERRO", "REJECTED"):
            error = first_non_empty(data, INVOICE_ERROR)
        elif data.get("error"):
            error = data["error"]
        return cls(
            reference=_str_or_none(first_non_empty(data, INVOICE_REFERENCE)),
            status=_str_or_none(status),
            flow_status=_str_or_none(first_non_empty(data, INVOICE_FLOW_STATUS)),
            flow_message=_str_or_none(data.get("flowMessage")),
            xml_ref=_str_or_none(first_non_empty(data, INVOICE_XML_REF)),
            pdf_ref=_str_or_none(first_non_empty(data, INVOICE_PDF_REF)),
            issued_at=parse_timestamp(first_non_empty(data, INVOICE_ISSUED_AT)),
            number=_str_or_none(data.get("number")),
            check_code=_str_or_none(data.get("checkCode")),
            error=error,
            raw=data,
        )
