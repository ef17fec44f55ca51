from __future__ import annotations

import re
from collections.abc import Iterable
from decimal import Decimal, InvalidOperation

_NON_DIGITS = re.compile(r"\D")

SUM_TOLERANCE = Decimal("0.01")


def only_digits(value: object) -> str:
    """Strip everything but digits from *value* (None -> '')."""
    if value is None:
        return ""
    return _NON_DIGITS.sub("", str(value))


def normalize_tax_id(value: str | None) -> str:
    """Strip CPF/CNPJ formatting and validate the digit count.

    Returns 11 (CPF) or 14 (CNPJ) digits. Check digits are not verified.
    Raises ValueError for missing, wrong-length or all-repeated-digit values.
    """
    digits = only_digits(value)
    if not digits:
        raise ValueError("CPF/CNPJ não informado")
    if len(digits) not in (11, 14):
        raise ValueError(f"CPF/CNPJ deve ter 11 ou 14 dígitos (recebido: {len(digits)})")
    if len(set(digits)) == 1:
        raise ValueError("CPF/CNPJ inválido: sequência de dígitos repetidos")
    return digits


def tax_id_wire_value(digits: str) -> int | str:
    """Numeric form of a normalized tax id; the digit string when a leading zero would be lost."""
    if digits.startswith("0"):
        return digits
    return int(digits)


def validate_cnpj(value: str | None) -> str:
    """Validate an issuer CNPJ: exactly 14 digits after stripping formatting."""
    digits = only_digits(value)
    if len(digits) != 14:
        raise ValueError(f"CNPJ do prestador deve ter 14 dígitos (recebido: {len(digits)})")
    return digits


def validate_amount(value: object) -> Decimal:
    """Validate a monetary amount. Raises ValueError unless finite and positive."""
    try:
        d = Decimal(str(value))
        if not d.is_finite():
            raise InvalidOperation
    except InvalidOperation:
        raise ValueError(f"Valor numerico invalido: '{value}'") from None
    if d <= 0:
        raise ValueError(f"Valor deve ser positivo: '{value}'")
    return d


def validate_competence(value: str | None) -> str:
    """Validate a competence period. Accepts YYYY-MM or YYYY-MM-DD, returns YYYY-MM."""
    text = (value or "").strip()
    match = re.fullmatch(r"(\d{4})-(\d{2})(?:-\d{2})?", text)
    if not match or not 1 <= int(match.group(2)) <= 12:
        raise ValueError(f"Competência invalida: '{text}'. Use AAAA-MM.")
    return f"{match.group(1)}-{match.group(2)}"


def validate_participant_sum(amounts: Iterable[Decimal], total: Decimal) -> Decimal:
    """Check that participant amounts add up to *total* within one cent.

    Returns the sum. Raises ValueError when there are no participants or the
    difference exceeds the tolerance.
    """
    values = list(amounts)
    if not values:
        raise ValueError("Nota fiscal sem participantes")
    allocated = sum(values, Decimal("0"))
    if abs(allocated - total) > SUM_TOLERANCE:
        raise ValueError(
            f"Soma dos participantes ({allocated:.2f}) difere do valor total ({total:.2f})"
        )
    return allocated
