from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import requests

from faturador.config import LOOKUP_TIMEOUT, VIACEP_URL
from faturador.models.recipient import Address
from faturador.services.retry import LOOKUP_READ, RetryableHTTPError, retry_call
from faturador.utils.validators import only_digits

logger = logging.getLogger(__name__)


def _check_response(resp: Any, action: str) -> None:
    if not resp.ok:
        body = resp.text[:200] if resp.text else ""
        if resp.status_code in LOOKUP_READ.retryable_status_codes:
            raise RetryableHTTPError(f"Erro ViaCEP {action} ({resp.status_code}): {body}")
        raise RuntimeError(f"Erro ViaCEP {action} ({resp.status_code}): {body}")


def _blank_to_none(value: Any) -> str | None:
    text = str(value).strip() if value is not None else ""
    return text or None


class PostalCodeLookup:
    """Public postal-code (CEP) lookup backed by ViaCEP.

    ViaCEP answers ``{"erro": true}`` with HTTP 200 for unknown codes; that
    case returns None rather than raising.
    """

    def __init__(
        self,
        *,
        base_url: str = VIACEP_URL,
        timeout: float = LOOKUP_TIMEOUT,
        session: requests.Session | None = None,
        sleep_func: Callable[[float], object] = time.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._sleep = sleep_func

    def lookup(self, postal_code: str) -> Address | None:
        """Return the address for *postal_code*, or None if ViaCEP does not know it.

        Raises ValueError for a code without 8 digits and RuntimeError (or a
        requests exception after retries) when the service fails.
        """
        cep = only_digits(postal_code)
        if len(cep) != 8:
            raise ValueError(f"CEP deve ter 8 dígitos: '{postal_code}'")
        url = f"{self._base_url}/{cep}/json/"

        def _do_get() -> dict:
            resp = self._session.get(url, timeout=self._timeout)
            _check_response(resp, "consulta")
            return resp.json()

        data = retry_call(_do_get, LOOKUP_READ, sleep_func=self._sleep)
        if data.get("erro"):
            logger.info("Postal code %s not found", cep)
            return None

        return Address(
            street=_blank_to_none(data.get("logradouro")),
            complement=_blank_to_none(data.get("complemento")),
            district=_blank_to_none(data.get("bairro")),
            city=_blank_to_none(data.get("localidade")),
            state=_blank_to_none(data.get("uf")),
            postal_code=cep,
            fiscal_city_code=_blank_to_none(data.get("ibge")),
        )
