from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from faturador.models.invoice import Invoice, InvoiceStatus, Participant
from faturador.models.issuer import Issuer
from faturador.models.recipient import Address, Recipient
from faturador.models.snapshot import ProviderSnapshot, parse_timestamp
from faturador.utils.extract import (
    ADDRESS_FISCAL_CODE,
    COMPANY_ID,
    INVOICE_PDF_REF,
    INVOICE_REFERENCE,
    first_non_empty,
    key,
)


class TestAddress:
    def test_from_dict_recipient_layout(self):
        addr = Address.from_dict(
            {
                "logradouro": "Rua A",
                "numero": 10,
                "cidade": "Aracaju",
                "estado": "SE",
                "cep": "49010000",
                "cidade_codigo_ibge": "2800308",
            }
        )
        assert addr.number == "10"
        assert addr.city == "Aracaju"
        assert addr.fiscal_city_code == "2800308"
        assert addr.has_fiscal_code

    def test_from_dict_generic_layout(self):
        addr = Address.from_dict(
            {"endereco": "Av. B", "municipio": "Recife", "uf": "PE", "codigo_ibge": 2611606}
        )
        assert addr.street == "Av. B"
        assert addr.state == "PE"
        assert addr.fiscal_city_code == "2611606"

    def test_blank_code_is_missing(self):
        addr = Address.from_dict({"cidade": "X", "codigo_municipio": "  "})
        assert addr.fiscal_city_code is None
        assert not addr.has_fiscal_code

    def test_merge_own_values_win(self):
        mine = Address(city="Aracaju", postal_code="")
        other = Address(city="Recife", postal_code="49010000", fiscal_city_code="2800308")
        merged = mine.merged_with(other)
        assert merged.city == "Aracaju"
        assert merged.postal_code == "49010000"
        assert merged.fiscal_city_code == "2800308"

    def test_merge_with_none(self):
        addr = Address(city="Aracaju")
        assert addr.merged_with(None) is addr


class TestRecipient:
    def test_from_dict(self):
        r = Recipient.from_dict(
            {
                "id": 7,
                "tipo_tomador": "PESSOA",
                "cnpj_cpf": "111.444.777-35",
                "nome_razao_social": "Fulano",
                "cep": "49010-000",
                "codigo_municipio": None,
            }
        )
        assert r.id == "7"
        assert r.kind == "PESSOA"
        assert r.fiscal_city_code is None
        assert r.own_address.postal_code == "49010-000"

    def test_defaults_to_company(self):
        r = Recipient.from_dict({"id": "t", "nome_razao_social": "ACME"})
        assert r.kind == "EMPRESA"
        assert r.tax_id == ""


class TestIssuer:
    def test_from_dict(self):
        issuer = Issuer.from_dict(
            {
                "id": "e1",
                "cnpj": "12345678000199",
                "razao_social": "ACME",
                "nfeio_empresa_id": "co-1",
                "aliquota_iss": "2.5",
                "codigo_servico_municipal": "0401",
            },
            address=Address(city="Aracaju"),
        )
        assert issuer.provider_company_ref == "co-1"
        assert issuer.iss_rate == Decimal("2.5")
        assert issuer.address.city == "Aracaju"

    def test_missing_rate(self):
        issuer = Issuer.from_dict({"id": "e1", "aliquota_iss": ""})
        assert issuer.iss_rate is None


class TestInvoice:
    def test_from_dict(self):
        inv = Invoice.from_dict(
            {
                "id": "nf-9",
                "empresa_id": "e1",
                "tomador_id": "t1",
                "mes_competencia": "2025-06",
                "valor_total": "1500.00",
                "discriminacao_final": "Plantões",
                "status": "PROCESSANDO",
                "api_ref": "nfeio-9",
                "mensagem_erro": {"kind": "server"},
            }
        )
        assert inv.status is InvoiceStatus.PROCESSANDO
        assert inv.total_amount == Decimal("1500.00")
        assert inv.provider_reference == "nfeio-9"
        assert inv.error_payload == {"kind": "server"}

    def test_default_status_is_draft(self):
        inv = Invoice.from_dict({"id": "x", "empresa_id": "e", "tomador_id": "t"})
        assert inv.status is InvoiceStatus.RASCUNHO
        assert inv.total_amount == Decimal("0")

    def test_terminal_statuses(self):
        assert InvoiceStatus.AUTORIZADA.is_terminal
        assert InvoiceStatus.CANCELADA.is_terminal
        assert not InvoiceStatus.ERRO.is_terminal

    def test_participant_from_dict(self):
        p = Participant.from_dict(
            {
                "nota_fiscal_id": "nf-1",
                "pessoa_id": 3,
                "valor_prestado": 500,
                "percentual_participacao": None,
                "nome_completo": "Sócio",
            }
        )
        assert p.party_id == "3"
        assert p.amount == Decimal("500")
        assert p.percentage is None


class TestProviderSnapshot:
    def test_from_submit_response(self):
        snap = ProviderSnapshot.from_response(
            {
                "id": "abc",
                "status": "Issued",
                "flowStatus": "Issued",
                "pdf_url": "https://x/pdf",
                "issuedOn": "2025-06-30T10:00:00-03:00",
                "number": 123,
            }
        )
        assert snap.reference == "abc"
        assert snap.status == "Issued"
        assert snap.pdf_ref == "https://x/pdf"
        assert snap.issued_at == datetime.fromisoformat("2025-06-30T10:00:00-03:00")
        assert snap.number == "123"
        assert snap.error is None

    def test_webhook_alternative_keys(self):
        snap = ProviderSnapshot.from_response(
            {"reference": "r-1", "flow_status": "WaitingSend", "urls": {"xml": "https://x/xml"}}
        )
        assert snap.reference == "r-1"
        assert snap.status is None
        assert snap.flow_status == "WaitingSend"
        assert snap.xml_ref == "https://x/xml"

    def test_error_status_captures_message(self):
        snap = ProviderSnapshot.from_response(
            {"id": "abc", "status": "Error", "message": "CNAE inválido"}
        )
        assert snap.error == "CNAE inválido"

    def test_malformed_timestamp(self):
        assert parse_timestamp("ontem") is None
        assert parse_timestamp(None) is None


class TestExtractors:
    def test_first_non_empty_skips_blank(self):
        record = {"id": "  ", "reference": "nfeio-1"}
        assert first_non_empty(record, INVOICE_REFERENCE) == "nfeio-1"

    def test_nested_path(self):
        assert first_non_empty({"urls": {"pdf": "https://pdf"}}, INVOICE_PDF_REF) == "https://pdf"

    def test_nested_path_through_scalar(self):
        assert key("company", "id")({"company": "co-1"}) is None

    def test_nothing_found(self):
        assert first_non_empty({"other": 1}, COMPANY_ID) is None
        assert first_non_empty(None, COMPANY_ID) is None
        assert first_non_empty({}, COMPANY_ID) is None

    def test_zero_is_a_value(self):
        assert first_non_empty({"codigo_municipio": 0}, ADDRESS_FISCAL_CODE) == 0
