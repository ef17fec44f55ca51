from __future__ import annotations

from dataclasses import dataclass

from faturador.utils.extract import ADDRESS_FISCAL_CODE, first_non_empty


@dataclass(frozen=True)
class Address:
    """Postal address with the IBGE municipality code (fiscal city code)."""

    street: str | None = None
    number: str | None = None
    complement: str | None = None
    district: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    fiscal_city_code: str | None = None

    @property
    def has_fiscal_code(self) -> bool:
        return bool(self.fiscal_city_code and self.fiscal_city_code.strip())

    def merged_with(self, other: Address | None) -> Address:
        """Fill this address's empty fields from *other*; own values win."""
        if other is None:
            return self
        values = {}
        for name in self.__dataclass_fields__:
            mine = getattr(self, name)
            values[name] = mine if mine not in (None, "") else getattr(other, name)
        return Address(**values)

    @classmethod
    def from_dict(cls, d: dict) -> Address:
        """Create an Address from an address row.

        Accepts both the ``enderecos_tomador`` layout (cidade/estado/
        cidade_codigo_ibge) and the generic ``enderecos`` layout
        (municipio/uf/codigo_ibge).
        """
        code = first_non_empty(d, ADDRESS_FISCAL_CODE)
        return cls(
            street=d.get("logradouro") or d.get("endereco"),
            number=_str_or_none(d.get("numero")),
            complement=d.get("complemento"),
            district=d.get("bairro"),
            city=d.get("cidade") or d.get("municipio"),
            state=d.get("estado") or d.get("uf"),
            postal_code=_str_or_none(d.get("cep")),
            fiscal_city_code=str(code).strip() if code else None,
        )


@dataclass(frozen=True)
class Recipient:
    """Service taker (tomador): a person (CPF) or a company (CNPJ)."""

    id: str
    kind: str  # PESSOA | EMPRESA
    tax_id: str
    name: str
    email: str | None = None
    phone: str | None = None
    postal_code: str | None = None
    city: str | None = None
    state: str | None = None
    fiscal_city_code: str | None = None

    @property
    def own_address(self) -> Address:
        """Address fields stored directly on the recipient record."""
        return Address(
            city=self.city,
            state=self.state,
            postal_code=self.postal_code,
            fiscal_city_code=self.fiscal_city_code,
        )

    @classmethod
    def from_dict(cls, d: dict) -> Recipient:
        return cls(
            id=str(d["id"]),
            kind=d.get("tipo_tomador") or "EMPRESA",
            tax_id=str(d.get("cnpj_cpf") or ""),
            name=d.get("nome_razao_social") or "",
            email=d.get("email"),
            phone=d.get("telefone"),
            postal_code=_str_or_none(d.get("cep")),
            city=d.get("cidade"),
            state=d.get("uf"),
            fiscal_city_code=_str_or_none(d.get("codigo_municipio")),
        )


def _str_or_none(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
