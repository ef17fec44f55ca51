from __future__ import annotations

from decimal import Decimal

import pytest

from faturador.utils.validators import (
    normalize_tax_id,
    only_digits,
    tax_id_wire_value,
    validate_amount,
    validate_cnpj,
    validate_competence,
    validate_participant_sum,
)


class TestNormalizeTaxId:
    def test_formatted_cpf(self):
        assert normalize_tax_id("111.444.777-35") == "11144477735"

    def test_formatted_cnpj(self):
        assert normalize_tax_id("11.222.333/0001-81") == "11222333000181"

    def test_repeated_digits_rejected(self):
        with pytest.raises(ValueError, match="repetidos"):
            normalize_tax_id("11111111111")

    def test_wrong_length(self):
        with pytest.raises(ValueError, match="11 ou 14"):
            normalize_tax_id("1234567890")

    def test_missing(self):
        with pytest.raises(ValueError, match="não informado"):
            normalize_tax_id(None)
        with pytest.raises(ValueError, match="não informado"):
            normalize_tax_id("--")

    def test_check_digits_not_verified(self):
        assert normalize_tax_id("12345678901") == "12345678901"


class TestTaxIdWireValue:
    def test_numeric(self):
        assert tax_id_wire_value("11144477735") == 11144477735

    def test_leading_zero_kept_as_string(self):
        assert tax_id_wire_value("01234567890") == "01234567890"


class TestOnlyDigits:
    def test_strips(self):
        assert only_digits("49010-000") == "49010000"

    def test_none(self):
        assert only_digits(None) == ""


class TestValidateCnpj:
    def test_valid(self):
        assert validate_cnpj("12.345.678/0001-99") == "12345678000199"

    def test_short(self):
        with pytest.raises(ValueError, match="14 dígitos"):
            validate_cnpj("123")


class TestValidateAmount:
    def test_valid(self):
        assert validate_amount("1500.50") == Decimal("1500.50")

    def test_nan_raises(self):
        with pytest.raises(ValueError, match="invalido"):
            validate_amount("NaN")

    def test_non_numeric_raises(self):
        with pytest.raises(ValueError, match="invalido"):
            validate_amount("abc")

    def test_zero_raises(self):
        with pytest.raises(ValueError, match="positivo"):
            validate_amount("0")


class TestValidateCompetence:
    def test_month(self):
        assert validate_competence("2025-06") == "2025-06"

    def test_date_truncated(self):
        assert validate_competence("2025-12-30") == "2025-12"

    @pytest.mark.parametrize("value", ["2025-13", "06/2025", "", None])
    def test_invalid(self, value):
        with pytest.raises(ValueError, match="Competência"):
            validate_competence(value)


class TestParticipantSum:
    def test_exact(self):
        total = validate_participant_sum([Decimal("1000.00"), Decimal("500.00")], Decimal("1500.00"))
        assert total == Decimal("1500.00")

    def test_within_one_cent(self):
        validate_participant_sum([Decimal("333.33")] * 3, Decimal("1000.00"))

    def test_off_by_more_than_a_cent(self):
        with pytest.raises(ValueError, match="difere"):
            validate_participant_sum([Decimal("1000.00"), Decimal("499.98")], Decimal("1500.00"))

    def test_empty(self):
        with pytest.raises(ValueError, match="sem participantes"):
            validate_participant_sum([], Decimal("10.00"))
