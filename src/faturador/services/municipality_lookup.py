from __future__ import annotations

import logging
import threading
import time
import unicodedata
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import requests

from faturador.config import IBGE_URL, LOOKUP_TIMEOUT
from faturador.services.retry import LOOKUP_READ, RetryableHTTPError, retry_call

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Municipality:
    code: str  # 7-digit IBGE code
    name: str
    state: str


def normalize_name(value: str | None) -> str:
    """Upper-case, accent-free, single-spaced form of a city name."""
    decomposed = unicodedata.normalize("NFD", value or "")
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return " ".join(stripped.upper().split())


def _check_response(resp: Any) -> None:
    if not resp.ok:
        body = resp.text[:200] if resp.text else ""
        if resp.status_code in LOOKUP_READ.retryable_status_codes:
            raise RetryableHTTPError(f"Erro IBGE ({resp.status_code}): {body}")
        raise RuntimeError(f"Erro IBGE ({resp.status_code}): {body}")


class MunicipalityLookup:
    """City name + state -> IBGE municipality code, via the IBGE localidades API.

    The municipality list of each state is fetched once and kept for the
    lifetime of the instance.
    """

    def __init__(
        self,
        *,
        base_url: str = IBGE_URL,
        timeout: float = LOOKUP_TIMEOUT,
        session: requests.Session | None = None,
        sleep_func: Callable[[float], object] = time.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._sleep = sleep_func
        self._cache: dict[str, list[Municipality]] = {}
        self._lock = threading.Lock()

    def _municipalities(self, state: str) -> list[Municipality]:
        with self._lock:
            cached = self._cache.get(state)
        if cached is not None:
            return cached

        url = f"{self._base_url}/estados/{state}/municipios"

        def _do_get() -> list:
            resp = self._session.get(url, timeout=self._timeout)
            _check_response(resp)
            return resp.json()

        data = retry_call(_do_get, LOOKUP_READ, sleep_func=self._sleep)
        result = [
            Municipality(code=str(item["id"]).zfill(7), name=item.get("nome", ""), state=state)
            for item in data or []
            if item.get("id")
        ]
        with self._lock:
            self._cache[state] = result
        logger.debug("Loaded %d municipalities for %s", len(result), state)
        return result

    def find(self, city: str, state: str) -> Municipality | None:
        """Match *city* within *state*: exact normalized name first, then partial.

        Returns None when nothing matches. Raises ValueError for a blank city
        or a state that is not a 2-letter code.
        """
        uf = (state or "").strip().upper()
        target = normalize_name(city)
        if not target:
            raise ValueError("Cidade é obrigatória para buscar o código IBGE")
        if len(uf) != 2 or not uf.isalpha():
            raise ValueError(f"UF inválida: '{state}'")

        candidates = self._municipalities(uf)
        for m in candidates:
            if normalize_name(m.name) == target:
                return m
        for m in candidates:
            name = normalize_name(m.name)
            if name and (target in name or name in target):
                logger.info("Partial municipality match: %r -> %s (%s)", city, m.name, m.code)
                return m
        logger.warning("Municipality not found: %s/%s", city, uf)
        return None
