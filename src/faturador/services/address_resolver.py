"""Recipient address and fiscal city code (IBGE) resolution.

Sources are tried in order and the chain stops at the first one that yields
a fiscal code:

1. the recipient's primary stored address (plus fields on the recipient row)
2. a legacy ``enderecos`` record linked to the recipient
3. ViaCEP, by the postal code known so far
4. the IBGE municipality list, by the city and state known so far

Fields found by earlier steps (street, postal code, city) feed later steps.
A step that fails or raises only advances the chain.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from faturador.models.recipient import Address, Recipient
from faturador.services.exceptions import MissingFiscalCodeError
from faturador.services.municipality_lookup import MunicipalityLookup
from faturador.services.postal_lookup import PostalCodeLookup

logger = logging.getLogger(__name__)


@dataclass
class ResolutionContext:
    """Mutable state carried through the resolution chain."""

    recipient: Recipient
    address: Address = field(default_factory=Address)
    attempted: list[str] = field(default_factory=list)


Step = Callable[[ResolutionContext], Address | None]


class AddressResolver:
    def __init__(
        self,
        repository,
        postal_lookup: PostalCodeLookup,
        municipality_lookup: MunicipalityLookup,
        steps: list[tuple[str, Step]] | None = None,
    ) -> None:
        self._repository = repository
        self._postal = postal_lookup
        self._municipalities = municipality_lookup
        self._steps = steps or [
            ("primary_address", self.primary_address),
            ("legacy_address", self.legacy_address),
            ("postal_code_lookup", self.postal_code_lookup),
            ("municipality_lookup", self.municipality_lookup),
        ]

    @property
    def step_names(self) -> list[str]:
        return [name for name, _ in self._steps]

    def resolve(self, recipient: Recipient) -> Address:
        """Return the recipient's address with a non-empty fiscal city code.

        Raises MissingFiscalCodeError when every source is exhausted.
        """
        ctx = ResolutionContext(recipient=recipient)
        for name, step in self._steps:
            ctx.attempted.append(name)
            try:
                found = step(ctx)
            except Exception:
                logger.warning(
                    "Address step %s failed for recipient %s", name, recipient.id, exc_info=True
                )
                continue
            if found is None:
                continue
            ctx.address = ctx.address.merged_with(found)
            if ctx.address.has_fiscal_code:
                logger.info(
                    "Fiscal city code %s for recipient %s resolved by %s",
                    ctx.address.fiscal_city_code,
                    recipient.id,
                    name,
                )
                return ctx.address

        logger.error(
            "No fiscal city code for recipient %s (tried: %s)",
            recipient.id,
            ", ".join(ctx.attempted),
        )
        raise MissingFiscalCodeError(
            f"Código IBGE do município do tomador '{recipient.name}' não encontrado. "
            "Cadastre o endereço do tomador com CEP ou cidade/UF válidos.",
            attempted=list(ctx.attempted),
        )

    # --- Steps ---

    def primary_address(self, ctx: ResolutionContext) -> Address | None:
        """Primary stored address, completed by the fields on the recipient row."""
        own = ctx.recipient.own_address
        stored = self._repository.get_primary_address(ctx.recipient.id)
        return stored.merged_with(own) if stored is not None else own

    def legacy_address(self, ctx: ResolutionContext) -> Address | None:
        return self._repository.get_legacy_address(ctx.recipient.id)

    def postal_code_lookup(self, ctx: ResolutionContext) -> Address | None:
        if not ctx.address.postal_code:
            logger.debug("No postal code for recipient %s; skipping ViaCEP", ctx.recipient.id)
            return None
        return self._postal.lookup(ctx.address.postal_code)

    def municipality_lookup(self, ctx: ResolutionContext) -> Address | None:
        city, state = ctx.address.city, ctx.address.state
        if not city or not state:
            logger.debug("No city/state for recipient %s; skipping IBGE", ctx.recipient.id)
            return None
        found = self._municipalities.find(city, state)
        if found is None:
            return None
        return Address(city=found.name, state=found.state, fiscal_city_code=found.code)
