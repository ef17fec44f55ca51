from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

import pytest

from faturador.models.recipient import Address
from faturador.services.exceptions import MissingFiscalCodeError, ValidationError
from faturador.services.payload_builder import PayloadBuilder, sanitize_description
from tests.conftest import make_invoice, make_participants


@pytest.fixture
def builder() -> PayloadBuilder:
    return PayloadBuilder(sandbox=False)


class TestValidate:
    def test_returns_normalized_tax_id(self, builder, invoice, issuer, recipient, participants):
        assert builder.validate(invoice, issuer, recipient, participants) == "11222333000181"

    def test_description_checked_first(self, builder, issuer, recipient):
        invoice = make_invoice(description="  ", total_amount=Decimal("0"))
        with pytest.raises(ValidationError) as exc_info:
            builder.validate(invoice, issuer, replace(recipient, name=""), [])
        assert exc_info.value.field == "discriminacao_final"

    def test_amount_before_recipient(self, builder, issuer, recipient):
        invoice = make_invoice(total_amount=Decimal("0"))
        with pytest.raises(ValidationError) as exc_info:
            builder.validate(invoice, issuer, replace(recipient, name=""), [])
        assert exc_info.value.field == "valor_total"

    def test_recipient_name(self, builder, invoice, issuer, recipient, participants):
        with pytest.raises(ValidationError, match="Razão Social"):
            builder.validate(invoice, issuer, replace(recipient, name=" "), participants)

    def test_recipient_tax_id(self, builder, invoice, issuer, recipient, participants):
        with pytest.raises(ValidationError) as exc_info:
            builder.validate(invoice, issuer, replace(recipient, tax_id="123"), participants)
        assert exc_info.value.field == "tomador.cnpj_cpf"
        assert str(exc_info.value).startswith("Tomador:")

    def test_participant_sum(self, builder, invoice, issuer, recipient):
        with pytest.raises(ValidationError) as exc_info:
            builder.validate(invoice, issuer, recipient, make_participants("nf-1", "1000.00"))
        assert exc_info.value.field == "participantes"

    def test_city_service_code_required(self, builder, invoice, issuer, recipient, participants):
        with pytest.raises(ValidationError) as exc_info:
            builder.validate(invoice, replace(issuer, city_service_code=None), recipient, participants)
        assert exc_info.value.field == "codigo_servico_municipal"

    def test_cnae_required_in_production(self, builder, invoice, issuer, recipient, participants):
        with pytest.raises(ValidationError) as exc_info:
            builder.validate(invoice, replace(issuer, cnae_code=None), recipient, participants)
        assert exc_info.value.field == "cnae_code"

    def test_cnae_optional_in_sandbox(self, invoice, issuer, recipient, participants):
        builder = PayloadBuilder(sandbox=True)
        builder.validate(invoice, replace(issuer, cnae_code=None), recipient, participants)

    def test_invoice_codes_override_issuer(self, builder, issuer):
        invoice = make_invoice(city_service_code="0402", cnae_code="8610-1/01")
        assert builder.city_service_code(invoice, issuer) == "0402"
        assert builder.cnae_code(invoice, issuer) == "8610101"


class TestBuild:
    def test_payload(self, builder, invoice, issuer, recipient, participants, address):
        payload = builder.build(invoice, issuer, recipient, participants, address)

        assert payload["externalId"] == "nf-1"
        assert payload["cityServiceCode"] == "0401"
        assert payload["cnaeCode"] == "8630503"
        assert payload["servicesAmount"] == 1500.0
        assert "issRate" not in payload
        borrower = payload["borrower"]
        assert borrower["federalTaxNumber"] == 11222333000181
        assert borrower["email"] == "financeiro@hospital.example"
        assert "phoneNumber" not in borrower
        assert borrower["address"] == {
            "country": "BRA",
            "street": "Rua das Flores",
            "number": "100",
            "district": "Centro",
            "city": {"name": "Aracaju", "code": "2800308"},
            "state": "SE",
            "postalCode": "49010000",
        }

    def test_leading_zero_tax_id_kept_as_string(
        self, builder, invoice, issuer, recipient, participants, address
    ):
        payload = builder.build(
            invoice, issuer, replace(recipient, tax_id="012.345.678-90"), participants, address
        )
        assert payload["borrower"]["federalTaxNumber"] == "01234567890"

    def test_estimate_rate_wins(self, builder, invoice, issuer, recipient, participants, address):
        issuer = replace(issuer, iss_rate=Decimal("2.0"))
        payload = builder.build(
            invoice,
            issuer,
            recipient,
            participants,
            address,
            iss_rate=Decimal("5.0"),
            iss_amount=Decimal("75.00"),
        )
        assert payload["issRate"] == 5.0
        assert payload["issTaxAmount"] == 75.0

    def test_issuer_rate_fallback(self, builder, invoice, issuer, recipient, participants, address):
        payload = builder.build(
            invoice, replace(issuer, iss_rate=Decimal("2.0")), recipient, participants, address
        )
        assert payload["issRate"] == 2.0
        assert "issTaxAmount" not in payload

    def test_missing_fiscal_code(self, builder, invoice, issuer, recipient, participants):
        with pytest.raises(MissingFiscalCodeError):
            builder.build(invoice, issuer, recipient, participants, Address(city="Aracaju"))

    def test_city_name_placeholder(self, builder, invoice, issuer, recipient, participants):
        payload = builder.build(
            invoice, issuer, recipient, participants, Address(fiscal_city_code="2800308")
        )
        assert payload["borrower"]["address"]["city"] == {"name": "Não informado", "code": "2800308"}


class TestSanitizeDescription:
    def test_strips_tax_disclosure(self):
        text = (
            "Plantões médicos em junho. CONFORME LEI 12.741/2012 o valor aproximado "
            "dos tributos é R$ 100,00. FONTE: IBPT."
        )
        assert sanitize_description(text) == "Plantões médicos em junho."

    def test_collapses_whitespace(self):
        assert sanitize_description("  Serviço   de\n\nconsultoria  ") == "Serviço de consultoria"

    def test_none(self):
        assert sanitize_description(None) == ""
