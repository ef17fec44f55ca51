from __future__ import annotations

from decimal import Decimal

from faturador.utils.formatters import format_brl, format_tax_id, mask_tax_id


class TestFormatBrl:
    def test_basic(self):
        assert format_brl("1500.00") == "R$ 1.500,00"

    def test_large(self):
        assert format_brl(Decimal("1234567.8")) == "R$ 1.234.567,80"

    def test_small(self):
        assert format_brl("0.5") == "R$ 0,50"


class TestMaskTaxId:
    def test_cpf(self):
        assert mask_tax_id("111.444.777-35") == "111******35"

    def test_cnpj(self):
        assert mask_tax_id("11222333000181") == "112*********81"

    def test_short(self):
        assert mask_tax_id("123") == "***"


class TestFormatTaxId:
    def test_cpf(self):
        assert format_tax_id("11144477735") == "111.444.777-35"

    def test_cnpj(self):
        assert format_tax_id(11222333000181) == "11.222.333/0001-81"

    def test_other(self):
        assert format_tax_id("abc") == "abc"
