from __future__ import annotations

from decimal import Decimal

from faturador.utils.validators import only_digits


def format_brl(value: object) -> str:
    """Format a numeric value as R$ X.XXX,XX."""
    d = Decimal(str(value))
    formatted = f"{d:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return f"R$ {formatted}"


def mask_tax_id(value: object) -> str:
    """Mask a CPF/CNPJ for logs, keeping the first three and last two digits."""
    digits = only_digits(value)
    if len(digits) <= 5:
        return "*" * len(digits)
    return digits[:3] + "*" * (len(digits) - 5) + digits[-2:]


def format_tax_id(value: object) -> str:
    """Format 11 digits as CPF (000.000.000-00) and 14 as CNPJ (00.000.000/0000-00)."""
    d = only_digits(value)
    if len(d) == 11:
        return f"{d[:3]}.{d[3:6]}.{d[6:9]}-{d[9:]}"
    if len(d) == 14:
        return f"{d[:2]}.{d[2:5]}.{d[5:8]}/{d[8:12]}-{d[12:]}"
    return str(value or "")
