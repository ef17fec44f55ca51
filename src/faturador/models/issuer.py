from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from faturador.models.recipient import Address


@dataclass(frozen=True)
class Issuer:
    """Issuer (prestador): the company emitting the NFS-e."""

    id: str
    tax_id: str  # CNPJ
    legal_name: str
    municipal_registration: str | None = None
    provider_company_ref: str | None = None
    tax_regime: str | None = None
    state_registration: str | None = None
    email: str | None = None
    phone: str | None = None
    address: Address | None = None

    # Defaults applied when the invoice does not carry its own codes
    city_service_code: str | None = None
    federal_service_code: str | None = None
    cnae_code: str | None = None
    nbs_code: str | None = None
    iss_rate: Decimal | None = None

    @classmethod
    def from_dict(cls, d: dict, address: Address | None = None) -> Issuer:
        """Create an Issuer from an ``empresas`` row dict."""
        rate = d.get("aliquota_iss")
        return cls(
            id=str(d["id"]),
            tax_id=str(d.get("cnpj") or ""),
            legal_name=d.get("razao_social") or "",
            municipal_registration=d.get("inscricao_municipal"),
            provider_company_ref=d.get("nfeio_empresa_id"),
            tax_regime=d.get("regime_tributario"),
            state_registration=d.get("inscricao_estadual"),
            email=d.get("email"),
            phone=d.get("telefone"),
            address=address,
            city_service_code=d.get("codigo_servico_municipal"),
            federal_service_code=d.get("codigo_servico_federal"),
            cnae_code=d.get("cnae_code"),
            nbs_code=d.get("nbs_code"),
            iss_rate=Decimal(str(rate)) if rate not in (None, "") else None,
        )
