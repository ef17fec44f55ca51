from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

from faturador.services.diagnostics import Level, check_draft
from tests.conftest import make_invoice, make_participants


class TestCheckDraft:
    def test_ready(self, invoice, issuer, recipient, participants):
        diagnosis = check_draft(invoice, issuer, recipient, participants)
        assert diagnosis.ok
        assert [d.level for d in diagnosis.diagnostics] == [Level.OK]
        assert diagnosis.diagnostics[0].message == "Rascunho pronto para emissão (R$ 1.500,00)"

    def test_collects_every_problem(self, issuer, recipient):
        invoice = make_invoice(description="", competence="13/2025", total_amount=Decimal("0"))
        diagnosis = check_draft(
            invoice, issuer, replace(recipient, name="", tax_id="000"), [], api_configured=False
        )
        fields = {d.field for d in diagnosis.errors}
        assert fields == {
            "NFEIO_API_KEY",
            "tomador.nome_razao_social",
            "tomador.cnpj_cpf",
            "valor_total",
            "mes_competencia",
            "discriminacao_final",
            "participantes",
        }
        assert not diagnosis.ok

    def test_missing_parties(self, invoice, participants):
        diagnosis = check_draft(invoice, None, None, participants)
        assert {d.field for d in diagnosis.errors} == {"empresa", "tomador"}

    def test_warnings_do_not_block(self, invoice, issuer, recipient, participants):
        issuer = replace(issuer, municipal_registration=None, provider_company_ref=None)
        diagnosis = check_draft(invoice, issuer, recipient, participants)
        assert diagnosis.ok
        assert {d.field for d in diagnosis.warnings} == {
            "empresa.inscricao_municipal",
            "empresa.nfeio_empresa_id",
        }

    def test_participant_mismatch(self, invoice, issuer, recipient):
        diagnosis = check_draft(invoice, issuer, recipient, make_participants("nf-1", "100.00"))
        assert [d.field for d in diagnosis.errors] == ["participantes"]

    def test_bad_issuer_cnpj(self, invoice, issuer, recipient, participants):
        diagnosis = check_draft(invoice, replace(issuer, tax_id="123"), recipient, participants)
        assert [d.field for d in diagnosis.errors] == ["empresa.cnpj"]
