"""Typed client for the NFe.io service-invoice and company APIs.

No method raises for HTTP or network failures: every call returns a
ClientResult that is either ``ok`` with a value or a classified failure.
Read-only calls retry network errors and 429/5xx answers per
``PROVIDER_READ``; submit, cancel and company registration are sent once.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

import requests

from faturador.config import ENDPOINTS, NFEIO_TIMEOUT
from faturador.models.invoice import DocumentKind
from faturador.models.issuer import Issuer
from faturador.models.snapshot import ProviderSnapshot
from faturador.services.retry import PROVIDER_READ, RetryableHTTPError, retry_call
from faturador.utils.extract import (
    COMPANY_ID,
    COMPANY_LIST,
    ISS_AMOUNT,
    ISS_BASE,
    ISS_RATE,
    WITHHOLDING_AMOUNT,
    first_non_empty,
)
from faturador.utils.validators import only_digits

logger = logging.getLogger(__name__)

_PLACEHOLDER_KEYS = frozenset({"", "your_nfeio_api_key_here"})

AUTH_SUGGESTION = (
    "No painel NFe.io: CONTA -> CHAVE DE ACESSO -> use a \"Chave de Nota Fiscal\" "
    "para emissão. A \"Chave de Dados\" não emite notas."
)

DEFAULT_ESTIMATE_RATE = Decimal("5.0")

TAX_ENDPOINTS = (
    "/tax-rules/{tenant}/engine/calculate",
    "/v1/tax-rules/{tenant}/engine/calculate",
    "/tax-rules/{tenant}/calculate",
    "/v1/tax-rules/{tenant}/calculate",
)

_DOCUMENT_ACCEPT = {
    DocumentKind.XML: "application/xml",
    DocumentKind.PDF: "application/pdf",
}


class FailureKind(str, Enum):
    AUTH = "auth"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    SERVER = "server"
    NETWORK = "network"


@dataclass(frozen=True)
class ClientResult:
    """Outcome of one issuing-service call."""

    ok: bool
    value: Any = None
    kind: FailureKind | None = None
    message: str = ""
    retryable: bool = False
    status_code: int | None = None
    details: Any = None
    suggestion: str | None = None

    @classmethod
    def success(cls, value: Any) -> ClientResult:
        return cls(ok=True, value=value)

    @classmethod
    def failure(
        cls,
        kind: FailureKind,
        message: str,
        *,
        retryable: bool | None = None,
        status_code: int | None = None,
        details: Any = None,
        suggestion: str | None = None,
    ) -> ClientResult:
        if retryable is None:
            retryable = kind in (FailureKind.SERVER, FailureKind.NETWORK)
        return cls(
            ok=False,
            kind=kind,
            message=message,
            retryable=retryable,
            status_code=status_code,
            details=details,
            suggestion=suggestion,
        )

    def error_payload(self) -> dict[str, Any]:
        """Structured diagnostic suitable for persisting with the invoice."""
        payload: dict[str, Any] = {
            "kind": self.kind.value if self.kind else None,
            "message": self.message,
            "status_code": self.status_code,
        }
        if self.suggestion:
            payload["suggestion"] = self.suggestion
        if self.details is not None:
            payload["details"] = self.details
        return payload


@dataclass(frozen=True)
class TaxEstimateRequest:
    amount: Decimal
    tenant_id: str | None
    service_code: str | None = None
    issuer_regime: str | None = None
    recipient_regime: str | None = None
    issuer_state: str | None = None
    recipient_state: str | None = None


@dataclass(frozen=True)
class TaxEstimate:
    """ISS and withholding figures. ``estimated`` means no authoritative calculation."""

    service_amount: Decimal
    iss_amount: Decimal = Decimal("0")
    iss_rate: Decimal = Decimal("0")
    base_amount: Decimal = Decimal("0")
    net_amount: Decimal = Decimal("0")
    withholdings: dict[str, Decimal] = field(default_factory=dict)
    estimated: bool = False
    message: str = ""
    error: dict[str, Any] | None = None


def map_tax_regime(regime: str | None) -> str:
    """Map a local tax-regime label to the tax engine's vocabulary."""
    if not regime:
        return "NationalSimple"
    upper = regime.upper()
    if "SIMPLES" in upper or "NACIONAL" in upper:
        return "NationalSimple"
    if "REAL" in upper:
        return "RealProfit"
    if "PRESUMIDO" in upper:
        return "PresumedProfit"
    if "MEI" in upper or "MICRO" in upper:
        return "IndividualMicroEnterprise"
    if "ISENT" in upper:
        return "Exempt"
    return "NationalSimple"


def company_payload(issuer: Issuer) -> dict[str, Any]:
    """Body for ``POST /v1/companies`` and ``PUT /v1/companies/{id}``."""
    addr = issuer.address
    company: dict[str, Any] = {
        "name": issuer.legal_name.strip(),
        "federalTaxNumber": int(only_digits(issuer.tax_id)),
        "taxRegime": issuer.tax_regime or "SimplesNacional",
        "address": {
            "country": "BRA",
            "state": (addr.state if addr else None) or "",
            "city": {
                "name": (addr.city if addr else None) or "",
                "code": (addr.fiscal_city_code if addr else None) or "",
            },
            "district": (addr.district if addr else None) or "",
            "street": (addr.street if addr else None) or "",
            "number": (addr.number if addr else None) or "",
            "additionalInformation": (addr.complement if addr else None) or "",
            "postalCode": only_digits(addr.postal_code if addr else None),
        },
    }
    if issuer.municipal_registration:
        company["municipalTaxNumber"] = issuer.municipal_registration
    if issuer.state_registration:
        company["stateTaxNumber"] = issuer.state_registration
    if issuer.email:
        company["email"] = issuer.email
    if issuer.phone:
        company["phone"] = only_digits(issuer.phone)
    return {"company": company}


def _to_decimal(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return default


def _withholding_entries(raw: Any) -> list[tuple[str, dict[str, Any]]]:
    """Named withholding entries from either a mapping or a list of objects.

    List items are named by their ``type``/``name`` field, or by position.
    """
    if isinstance(raw, dict):
        return [(str(k), v) for k, v in raw.items() if isinstance(v, dict)]
    if not isinstance(raw, list):
        return []
    entries = []
    for index, entry in enumerate(raw):
        if isinstance(entry, dict):
            name = entry.get("type") or entry.get("name") or str(index)
            entries.append((str(name), entry))
    return entries

def _parse_body(resp: Any) -> Any:
    if not resp.content:
        return {}
    try:
        return resp.json()
    except ValueError:
        return resp.text[:500]


def _extract_message(body: Any) -> tuple[str, str | None]:
    """Best-effort human-readable message and suggestion from an error body."""
    if isinstance(body, str):
        return body or "Erro desconhecido", None
    if not isinstance(body, dict):
        return json.dumps(body, ensure_ascii=False)[:500], None
    errors = body.get("errors")
    if isinstance(errors, list) and errors:
        parts = []
        for e in errors:
            if isinstance(e, str):
                parts.append(e)
            elif isinstance(e, dict) and e.get("message"):
                field_name = e.get("field")
                parts.append(f"{field_name}: {e['message']}" if field_name else str(e["message"]))
            else:
                parts.append(json.dumps(e, ensure_ascii=False))
        suggestions = [
            str(e["suggestion"]) for e in errors if isinstance(e, dict) and e.get("suggestion")
        ]
        return "; ".join(parts), "; ".join(suggestions) or None
    if body.get("message"):
        return str(body["message"]), body.get("suggestion") or None
    if body.get("error"):
        return str(body["error"]), None
    return json.dumps(body, ensure_ascii=False)[:500], None


def classify_response(resp: Any, action: str) -> ClientResult:
    """Turn a non-2xx response into a classified failure."""
    status = resp.status_code
    body = _parse_body(resp)
    message, suggestion = _extract_message(body)
    if status in (401, 403):
        kind = FailureKind.AUTH
        if status == 403:
            message = (
                "Acesso negado pela NFe.io (403). Use a Chave de Nota Fiscal em NFEIO_API_KEY "
                "e confirme que a empresa pertence à sua conta."
            )
            suggestion = AUTH_SUGGESTION
    elif status == 404:
        kind = FailureKind.NOT_FOUND
    elif status == 429 or status >= 500:
        kind = FailureKind.SERVER
    else:
        kind = FailureKind.VALIDATION
    logger.warning("NFe.io %s failed (%d, %s): %s", action, status, kind.value, message)
    return ClientResult.failure(
        kind, message, status_code=status, details=body, suggestion=suggestion
    )


class NFeIOClient:
    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = ENDPOINTS["homologacao"]["nfeio"],
        legal_entity_url: str = ENDPOINTS["homologacao"]["legal_entity"],
        timeout: float = NFEIO_TIMEOUT,
        session: requests.Session | None = None,
        sleep_func: Callable[[float], object] = time.sleep,
    ) -> None:
        self._api_key = (api_key or "").strip()
        self._base_url = base_url.rstrip("/")
        self._legal_entity_url = legal_entity_url.rstrip("/")
        self._timeout = timeout
        self._sleep = sleep_func
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": self._api_key,
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        )

    @property
    def configured(self) -> bool:
        return self._api_key not in _PLACEHOLDER_KEYS

    def close(self) -> None:
        self._session.close()

    # --- Transport ---

    def _send(
        self,
        method: str,
        url: str,
        action: str,
        *,
        json_body: Any = None,
        read_only: bool = False,
        headers: dict[str, str] | None = None,
    ) -> requests.Response | ClientResult:
        """Perform one call. Returns the 2xx response, or a failure result."""
        if not self.configured:
            return ClientResult.failure(
                FailureKind.AUTH,
                "NFEIO_API_KEY não configurada",
                retryable=False,
                suggestion=AUTH_SUGGESTION,
            )

        def _do() -> requests.Response:
            resp = self._session.request(
                method, url, json=json_body, headers=headers, timeout=self._timeout
            )
            if read_only and resp.status_code in PROVIDER_READ.retryable_status_codes:
                raise RetryableHTTPError(f"NFe.io {action} ({resp.status_code})", response=resp)
            return resp

        try:
            resp = retry_call(_do, PROVIDER_READ, sleep_func=self._sleep) if read_only else _do()
        except RetryableHTTPError as exc:
            return classify_response(exc.response, action)
        except requests.exceptions.RequestException as exc:
            logger.warning("NFe.io %s network failure: %s", action, exc)
            return ClientResult.failure(
                FailureKind.NETWORK,
                f"Falha de comunicação com a NFe.io: {exc}",
                retryable=read_only,
            )
        if not resp.ok:
            return classify_response(resp, action)
        return resp

    def _json_call(self, method: str, url: str, action: str, **kwargs: Any) -> ClientResult:
        resp = self._send(method, url, action, **kwargs)
        if isinstance(resp, ClientResult):
            return resp
        body = _parse_body(resp)
        if isinstance(body, dict):
            errors = body.get("errors")
            if isinstance(errors, list) and errors:
                message, suggestion = _extract_message(body)
                logger.warning(
                    "NFe.io %s answered %d with errors: %s", action, resp.status_code, message
                )
                return ClientResult.failure(
                    FailureKind.VALIDATION,
                    message,
                    status_code=resp.status_code,
                    details=body,
                    suggestion=suggestion,
                )
        return ClientResult.success(body)

    def _invoices_url(self, company_ref: str) -> str:
        return f"{self._base_url}/v1/companies/{company_ref}/serviceinvoices"

    @staticmethod
    def _snapshot(result: ClientResult, action: str) -> ClientResult:
        if not result.ok:
            return result
        body = result.value if isinstance(result.value, dict) else {}
        snapshot = ProviderSnapshot.from_response(body)
        if not snapshot.reference:
            logger.error("NFe.io %s response without an invoice id", action)
            message = "Resposta da NFe.io sem identificador da nota"
            suggestion = None
            if action == "submit":
                # the provider may have created the invoice anyway
                suggestion = "Execute a reconciliação antes de reenviar"
                message = f"{message}. {suggestion}."
            return ClientResult.failure(
                FailureKind.SERVER,
                message,
                retryable=False,
                details=result.value,
                suggestion=suggestion,
            )
        return ClientResult.success(snapshot)

    # --- Service invoices ---

    def submit(self, payload: dict[str, Any], company_ref: str) -> ClientResult:
        """Create a service invoice. Value: ProviderSnapshot. Never retried."""
        result = self._json_call(
            "POST", self._invoices_url(company_ref), "submit", json_body=payload
        )
        return self._snapshot(result, "submit")

    def get_by_id(self, company_ref: str, reference: str) -> ClientResult:
        result = self._json_call(
            "GET", f"{self._invoices_url(company_ref)}/{reference}", "get", read_only=True
        )
        return self._snapshot(result, "get")

    def get_by_external_id(self, company_ref: str, external_id: str) -> ClientResult:
        result = self._json_call(
            "GET",
            f"{self._invoices_url(company_ref)}/external/{external_id}",
            "get_external",
            read_only=True,
        )
        return self._snapshot(result, "get_external")

    def cancel(self, company_ref: str, reference: str, reason: str | None = None) -> ClientResult:
        """Request cancellation. Value: ProviderSnapshot (status may be absent). Never retried."""
        body = {"motivo": reason} if reason else None
        result = self._json_call(
            "DELETE", f"{self._invoices_url(company_ref)}/{reference}", "cancel", json_body=body
        )
        if not result.ok:
            return result
        data = result.value if isinstance(result.value, dict) else {}
        return ClientResult.success(ProviderSnapshot.from_response({"id": reference, **data}))

    def fetch_document(
        self, company_ref: str, reference: str, kind: DocumentKind
    ) -> ClientResult:
        """Download the XML or PDF. Value: raw bytes."""
        resp = self._send(
            "GET",
            f"{self._invoices_url(company_ref)}/{reference}/{kind.value}",
            f"document_{kind.value}",
            read_only=True,
            headers={"Accept": _DOCUMENT_ACCEPT[kind]},
        )
        if isinstance(resp, ClientResult):
            return resp
        return ClientResult.success(resp.content)

    # --- Companies ---

    def register_or_update_company(self, issuer: Issuer) -> ClientResult:
        """PUT the company when it has a reference (POST if that 404s), else POST.

        Value: the provider company id.
        """
        if not issuer.legal_name.strip():
            return ClientResult.failure(
                FailureKind.VALIDATION, "Razão social é obrigatória para cadastrar a empresa"
            )
        if len(only_digits(issuer.tax_id)) != 14:
            return ClientResult.failure(
                FailureKind.VALIDATION, "CNPJ da empresa deve ter 14 dígitos"
            )
        payload = company_payload(issuer)
        companies_url = f"{self._base_url}/v1/companies"

        if issuer.provider_company_ref:
            result = self._json_call(
                "PUT",
                f"{companies_url}/{issuer.provider_company_ref}",
                "update_company",
                json_body=payload,
            )
            if result.kind is FailureKind.NOT_FOUND:
                logger.warning(
                    "Company %s unknown to NFe.io; registering a new one",
                    issuer.provider_company_ref,
                )
                result = self._json_call("POST", companies_url, "create_company", json_body=payload)
        else:
            result = self._json_call("POST", companies_url, "create_company", json_body=payload)

        if not result.ok:
            return result
        body = result.value if isinstance(result.value, dict) else {}
        company_id = first_non_empty(body, COMPANY_ID)
        if not company_id:
            logger.error("Company registration response without an id")
            return ClientResult.failure(
                FailureKind.SERVER,
                "Resposta da NFe.io sem ID da empresa",
                retryable=False,
                details=result.value,
            )
        logger.info("Issuer %s registered as NFe.io company %s", issuer.id, company_id)
        return ClientResult.success(str(company_id))

    def list_companies(self) -> ClientResult:
        """Value: list of company dicts, whatever envelope the API used."""
        result = self._json_call(
            "GET", f"{self._base_url}/v1/companies", "list_companies", read_only=True
        )
        if not result.ok:
            return result
        return ClientResult.success(self._unwrap_companies(result.value))

    @staticmethod
    def _unwrap_companies(data: Any) -> list[dict[str, Any]]:
        if isinstance(data, list):
            return data
        if not isinstance(data, dict) or not data:
            return []
        for extractor in COMPANY_LIST:
            value = extractor(data)
            if isinstance(value, list):
                return value
        if data.get("id") or data.get("cnpj") or data.get("federalTaxNumber"):
            return [data]
        for value in data.values():
            if isinstance(value, list):
                return value
        logger.warning("Unrecognized company list envelope; treating body as one company")
        return [data]

    # --- Tax estimate ---

    def tax_estimate(self, request: TaxEstimateRequest) -> ClientResult:
        """Best-effort ISS calculation. Always ``ok``; fallbacks are flagged ``estimated``."""
        amount = request.amount
        if not self.configured:
            logger.warning("NFEIO_API_KEY not set; estimating ISS at %s%%", DEFAULT_ESTIMATE_RATE)
            iss = (amount * DEFAULT_ESTIMATE_RATE / 100).quantize(Decimal("0.01"))
            return ClientResult.success(
                TaxEstimate(
                    service_amount=amount,
                    iss_amount=iss,
                    iss_rate=DEFAULT_ESTIMATE_RATE,
                    base_amount=amount,
                    net_amount=amount - iss,
                    estimated=True,
                    message="Cálculo estimado (chave da API não configurada)",
                )
            )
        if amount is None or amount <= 0:
            return ClientResult.success(
                TaxEstimate(
                    service_amount=amount or Decimal("0"),
                    estimated=True,
                    message=(
                        "Valor do serviço inválido; cálculo será feito pela NFe.io na emissão"
                    ),
                )
            )
        if not request.tenant_id:
            return ClientResult.success(
                TaxEstimate(
                    service_amount=amount,
                    base_amount=amount,
                    net_amount=amount,
                    estimated=True,
                    message=(
                        "Empresa não sincronizada; cálculo será feito pela NFe.io na emissão"
                    ),
                )
            )

        body = self._tax_body(request)
        failure: ClientResult | None = None
        for template in TAX_ENDPOINTS:
            url = self._legal_entity_url + template.format(tenant=request.tenant_id)
            result = self._json_call("POST", url, "tax_estimate", json_body=body)
            if result.ok:
                try:
                    return ClientResult.success(self._parse_estimate(result.value, amount))
                except (AttributeError, TypeError, ValueError, ArithmeticError) as exc:
                    logger.warning("Unparseable tax estimate response: %s", exc)
                    failure = ClientResult.failure(
                        FailureKind.SERVER,
                        f"Resposta de cálculo de impostos inválida: {exc}",
                        retryable=False,
                        details=result.value,
                    )
                    break
            failure = result
            if result.kind is not FailureKind.NOT_FOUND:
                break

        logger.warning(
            "Tax estimate unavailable (non-critical): %s", failure.message if failure else ""
        )
        return ClientResult.success(
            TaxEstimate(
                service_amount=amount,
                base_amount=amount,
                net_amount=amount,
                estimated=True,
                message="Cálculo de impostos será feito pela NFe.io durante a emissão",
                error=failure.error_payload() if failure else None,
            )
        )

    @staticmethod
    def _tax_body(request: TaxEstimateRequest) -> dict[str, Any]:
        issuer_state = (request.issuer_state or "SE").upper()[:2]
        recipient_state = (request.recipient_state or issuer_state).upper()[:2]
        code = only_digits(request.service_code)
        return {
            "issuer": {"taxRegime": map_tax_regime(request.issuer_regime), "state": issuer_state},
            "recipient": {
                "taxRegime": map_tax_regime(request.recipient_regime),
                "state": recipient_state,
            },
            "operationType": "Outgoing",
            "items": [
                {
                    "id": "item-1",
                    "operationCode": int(code) if code else 1718,
                    "sku": request.service_code or None,
                    "origin": "National",
                    "quantity": 1,
                    "unitAmount": float(request.amount),
                }
            ],
            "isProductRegistration": False,
        }

    @staticmethod
    def _parse_estimate(data: Any, amount: Decimal) -> TaxEstimate:
        data = data if isinstance(data, dict) else {}
        iss: dict[str, Any] = {}
        withholdings: dict[str, Decimal] = {}
        items = data.get("items")
        if isinstance(items, list) and items and isinstance(items[0], dict):
            item = items[0]
            if isinstance(item.get("iss"), dict):
                iss = item["iss"]
            for name, entry in _withholding_entries(item.get("withholdings")):
                withholdings[name] = _to_decimal(first_non_empty(entry, WITHHOLDING_AMOUNT))
        elif isinstance(data.get("iss"), dict):
            iss = data["iss"]

        iss_amount = _to_decimal(first_non_empty(iss, ISS_AMOUNT))
        net = amount - iss_amount - sum(withholdings.values(), Decimal("0"))
        return TaxEstimate(
            service_amount=amount,
            iss_amount=iss_amount,
            iss_rate=_to_decimal(first_non_empty(iss, ISS_RATE)),
            base_amount=_to_decimal(first_non_empty(iss, ISS_BASE), default=amount),
            net_amount=net,
            withholdings=withholdings,
            estimated=False,
            message="Cálculo de impostos realizado via NFe.io",
        )
