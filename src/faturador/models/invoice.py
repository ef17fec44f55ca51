from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class InvoiceStatus(str, Enum):
    """Canonical local status. Values are what the ``status`` column stores."""

    RASCUNHO = "RASCUNHO"
    PROCESSANDO = "PROCESSANDO"
    AUTORIZADA = "AUTORIZADA"
    CANCELADA = "CANCELADA"
    ERRO = "ERRO"

    @property
    def is_terminal(self) -> bool:
        return self in (InvoiceStatus.AUTORIZADA, InvoiceStatus.CANCELADA)


class DocumentKind(str, Enum):
    XML = "xml"
    PDF = "pdf"


@dataclass(frozen=True)
class Participant:
    """Revenue-sharing party (sócio/prestador) of an invoice."""

    invoice_id: str
    party_id: str
    amount: Decimal
    percentage: Decimal | None = None
    name: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> Participant:
        pct = d.get("percentual_participacao")
        return cls(
            invoice_id=str(d["nota_fiscal_id"]),
            party_id=str(d["pessoa_id"]),
            amount=Decimal(str(d["valor_prestado"])),
            percentage=Decimal(str(pct)) if pct is not None else None,
            name=d.get("nome_completo"),
        )


@dataclass(frozen=True)
class Invoice:
    """Service invoice (nota fiscal de serviço) as held locally."""

    id: str
    issuer_id: str
    recipient_id: str
    competence: str  # YYYY-MM
    total_amount: Decimal
    description: str
    status: InvoiceStatus = InvoiceStatus.RASCUNHO

    # Service codes; None falls back to the issuer's defaults
    city_service_code: str | None = None
    federal_service_code: str | None = None
    cnae_code: str | None = None
    nbs_code: str | None = None

    # Provider-side metadata, set only after leaving RASCUNHO
    provider_reference: str | None = None
    provider_name: str | None = None
    document_xml_ref: str | None = None
    document_pdf_ref: str | None = None
    issued_at: datetime | None = None
    error_payload: dict[str, Any] | None = field(default=None, compare=False)

    @classmethod
    def from_dict(cls, d: dict) -> Invoice:
        """Create an Invoice from a ``notas_fiscais`` row dict."""
        return cls(
            id=str(d["id"]),
            issuer_id=str(d["empresa_id"]),
            recipient_id=str(d["tomador_id"]),
            competence=str(d.get("mes_competencia") or ""),
            total_amount=Decimal(str(d.get("valor_total") or "0")),
            description=d.get("discriminacao_final") or "",
            status=InvoiceStatus(d.get("status") or InvoiceStatus.RASCUNHO.value),
            city_service_code=d.get("codigo_servico_municipal"),
            federal_service_code=d.get("codigo_servico_federal"),
            cnae_code=d.get("cnae_code"),
            nbs_code=d.get("nbs_code"),
            provider_reference=d.get("api_ref"),
            provider_name=d.get("api_provider"),
            document_xml_ref=d.get("caminho_xml"),
            document_pdf_ref=d.get("caminho_pdf"),
            issued_at=d.get("data_emissao"),
            error_payload=d.get("mensagem_erro"),
        )
