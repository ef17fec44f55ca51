"""Pre-emission completeness report for a draft invoice.

Unlike ``PayloadBuilder.validate``, which stops at the first problem, this
collects every finding so an operator can fix a draft in one pass.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from faturador.models.invoice import Invoice, Participant
from faturador.models.issuer import Issuer
from faturador.models.recipient import Recipient
from faturador.utils.formatters import format_brl
from faturador.utils.validators import (
    normalize_tax_id,
    validate_cnpj,
    validate_competence,
    validate_participant_sum,
)


class Level(str, Enum):
    OK = "OK"
    AVISO = "AVISO"
    ERRO = "ERRO"


@dataclass(frozen=True)
class Diagnostic:
    level: Level
    field: str
    message: str


@dataclass(frozen=True)
class DraftDiagnosis:
    invoice_id: str
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def errors(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.level is Level.ERRO]

    @property
    def warnings(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.level is Level.AVISO]

    @property
    def ok(self) -> bool:
        return not self.errors


def check_draft(
    invoice: Invoice,
    issuer: Issuer | None,
    recipient: Recipient | None,
    participants: Sequence[Participant],
    *,
    api_configured: bool = True,
) -> DraftDiagnosis:
    found: list[Diagnostic] = []

    def add(level: Level, field_name: str, message: str) -> None:
        found.append(Diagnostic(level, field_name, message))

    if not api_configured:
        add(Level.ERRO, "NFEIO_API_KEY", "Chave da API NFe.io não configurada")

    if issuer is None:
        add(Level.ERRO, "empresa", "Empresa emissora não encontrada")
    else:
        try:
            validate_cnpj(issuer.tax_id)
        except ValueError as exc:
            add(Level.ERRO, "empresa.cnpj", str(exc))
        if not (issuer.municipal_registration or "").strip():
            add(
                Level.AVISO,
                "empresa.inscricao_municipal",
                "Inscrição municipal não informada; algumas prefeituras a exigem",
            )
        if not issuer.provider_company_ref:
            add(
                Level.AVISO,
                "empresa.nfeio_empresa_id",
                "Empresa ainda não cadastrada na NFe.io; será cadastrada na emissão",
            )

    if recipient is None:
        add(Level.ERRO, "tomador", "Tomador não encontrado")
    else:
        if not (recipient.name or "").strip():
            add(
                Level.ERRO,
                "tomador.nome_razao_social",
                "Nome/Razão Social do tomador é obrigatório",
            )
        try:
            normalize_tax_id(recipient.tax_id)
        except ValueError as exc:
            add(Level.ERRO, "tomador.cnpj_cpf", str(exc))

    if invoice.total_amount is None or invoice.total_amount <= 0:
        add(Level.ERRO, "valor_total", "Valor dos serviços deve ser maior que zero")

    try:
        validate_competence(invoice.competence)
    except ValueError as exc:
        add(Level.ERRO, "mes_competencia", str(exc))

    if not (invoice.description or "").strip():
        add(Level.ERRO, "discriminacao_final", "Descrição dos serviços é obrigatória")

    try:
        validate_participant_sum((p.amount for p in participants), invoice.total_amount)
    except ValueError as exc:
        add(Level.ERRO, "participantes", str(exc))

    if not found:
        add(Level.OK, "nota", f"Rascunho pronto para emissão ({format_brl(invoice.total_amount)})")
    return DraftDiagnosis(invoice.id, found)
