"""Build the NFe.io service-invoice body from local invoice data.

Validation runs before anything is assembled and stops at the first
violation, in this order: description, total amount, recipient name,
recipient tax id, participant allocation, city service code, CNAE.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from decimal import Decimal
from typing import Any

from faturador.models.invoice import Invoice, Participant
from faturador.models.issuer import Issuer
from faturador.models.recipient import Address, Recipient
from faturador.services.exceptions import MissingFiscalCodeError, ValidationError
from faturador.utils.formatters import mask_tax_id
from faturador.utils.validators import (
    normalize_tax_id,
    only_digits,
    tax_id_wire_value,
    validate_participant_sum,
)

logger = logging.getLogger(__name__)

COUNTRY = "BRA"

# Tax-disclosure boilerplate (Lei 12.741/2012) that municipal systems reject
# or duplicate. Applied in order.
_DISCLOSURE_PATTERNS = (
    re.compile(r"\s*CONFORME\s+LEI\s+12\.?\s*741/2012[^.]*\.", re.IGNORECASE),
    re.compile(r"\s*o\s+valor\s+aproximado\s+dos\s+tributos[^.]*\.", re.IGNORECASE),
    re.compile(r"\s*valor\s+aproximado\s+dos\s+tributos[^.]*\.", re.IGNORECASE),
    re.compile(r"\s*FONTE\s*:\s*IBPT[^.]*\.", re.IGNORECASE),
    re.compile(r"\s*FONTE\s*:\s*empresometro[^.]*\.", re.IGNORECASE),
    re.compile(r"\s*FONTE\s*:\s*IBPT/empresometro[^.]*\.", re.IGNORECASE),
    re.compile(r"\s*\([^)]*IBPT[^)]*\)", re.IGNORECASE),
    re.compile(r"\s*\([^)]*empresometro[^)]*\)", re.IGNORECASE),
    re.compile(r"\s*R\$\s*\d+[.,]\d+\s*\(\d+[.,]\d+%\)", re.IGNORECASE),
    re.compile(r"\s*\(\d+\.\d+\.\w+\)"),
)


def sanitize_description(text: str) -> str:
    """Strip tax-disclosure fragments and collapse whitespace and stray periods."""
    cleaned = (text or "").strip()
    for pattern in _DISCLOSURE_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    cleaned = re.sub(r"\.\s*\.", ".", cleaned)
    cleaned = re.sub(r"^\s*\.\s*", "", cleaned)
    return cleaned


def _first(*values: str | None) -> str:
    for value in values:
        if value and value.strip():
            return value.strip()
    return ""


def _set_if(target: dict[str, Any], key: str, value: Any) -> None:
    if value is None:
        return
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return
    target[key] = value


class PayloadBuilder:
    """Validates a draft and assembles the provider submission body.

    *sandbox* relaxes the CNAE requirement; its absence is only logged.
    """

    def __init__(self, *, sandbox: bool = False) -> None:
        self._sandbox = sandbox

    def validate(
        self,
        invoice: Invoice,
        issuer: Issuer,
        recipient: Recipient,
        participants: Sequence[Participant],
    ) -> str:
        """Run the ordered checks. Returns the normalized recipient tax id.

        Raises ValidationError on the first violation.
        """
        if not (invoice.description or "").strip():
            raise ValidationError(
                "Descrição dos serviços é obrigatória", field="discriminacao_final"
            )
        if invoice.total_amount is None or invoice.total_amount <= 0:
            raise ValidationError(
                "Valor dos serviços deve ser maior que zero", field="valor_total"
            )
        if not (recipient.name or "").strip():
            raise ValidationError(
                "Nome/Razão Social do tomador é obrigatório", field="tomador.nome_razao_social"
            )
        try:
            tax_id = normalize_tax_id(recipient.tax_id)
        except ValueError as exc:
            raise ValidationError(f"Tomador: {exc}", field="tomador.cnpj_cpf") from None
        try:
            validate_participant_sum((p.amount for p in participants), invoice.total_amount)
        except ValueError as exc:
            raise ValidationError(str(exc), field="participantes") from None
        if not self.city_service_code(invoice, issuer):
            raise ValidationError(
                "Código de serviço municipal é obrigatório. Configure-o na empresa ou na nota.",
                field="codigo_servico_municipal",
            )
        if not self.cnae_code(invoice, issuer):
            if not self._sandbox:
                raise ValidationError(
                    "CNAE é obrigatório em ambiente de produção", field="cnae_code"
                )
            logger.info("CNAE not set for invoice %s (sandbox)", invoice.id)
        return tax_id

    @staticmethod
    def city_service_code(invoice: Invoice, issuer: Issuer) -> str:
        return _first(invoice.city_service_code, issuer.city_service_code)

    @staticmethod
    def cnae_code(invoice: Invoice, issuer: Issuer) -> str:
        return only_digits(_first(invoice.cnae_code, issuer.cnae_code))

    def build(
        self,
        invoice: Invoice,
        issuer: Issuer,
        recipient: Recipient,
        participants: Sequence[Participant],
        address: Address,
        *,
        iss_rate: Decimal | None = None,
        iss_amount: Decimal | None = None,
    ) -> dict[str, Any]:
        """Return the JSON body for ``POST /v1/companies/{id}/serviceinvoices``.

        *address* must carry the resolved fiscal city code. *iss_rate* and
        *iss_amount* come from a tax estimate and take precedence over the
        issuer's configured rate.
        """
        tax_id = self.validate(invoice, issuer, recipient, participants)
        if not address.has_fiscal_code:
            raise MissingFiscalCodeError(
                "Código IBGE do município do tomador é obrigatório",
                attempted=[],
            )

        borrower: dict[str, Any] = {
            "name": recipient.name.strip(),
            "federalTaxNumber": tax_id_wire_value(tax_id),
        }
        _set_if(borrower, "email", recipient.email)
        _set_if(borrower, "phoneNumber", recipient.phone)
        borrower["address"] = self._address(address)

        payload: dict[str, Any] = {
            "borrower": borrower,
            "cityServiceCode": self.city_service_code(invoice, issuer),
            "description": sanitize_description(invoice.description),
            "servicesAmount": float(invoice.total_amount),
            "externalId": invoice.id,
        }

        rate = iss_rate if iss_rate else issuer.iss_rate
        if rate:
            payload["issRate"] = float(rate)
        if iss_rate and iss_amount:
            payload["issTaxAmount"] = float(iss_amount)

        _set_if(payload, "cnaeCode", self.cnae_code(invoice, issuer))
        _set_if(
            payload,
            "federalServiceCode",
            _first(invoice.federal_service_code, issuer.federal_service_code),
        )
        _set_if(payload, "nbsCode", _first(invoice.nbs_code, issuer.nbs_code))

        logger.debug(
            "Payload for invoice %s: borrower %s, city %s, service %s",
            invoice.id,
            mask_tax_id(tax_id),
            address.fiscal_city_code,
            payload["cityServiceCode"],
        )
        return payload

    @staticmethod
    def _address(address: Address) -> dict[str, Any]:
        block: dict[str, Any] = {"country": COUNTRY}
        _set_if(block, "street", address.street)
        _set_if(block, "number", address.number)
        _set_if(block, "additionalInformation", address.complement)
        _set_if(block, "district", address.district)
        block["city"] = {
            "name": _first(address.city) or "Não informado",
            "code": address.fiscal_city_code.strip(),  # type: ignore[union-attr]
        }
        _set_if(block, "state", address.state)
        _set_if(block, "postalCode", only_digits(address.postal_code))
        return block
