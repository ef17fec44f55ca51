"""Provider status -> local status, and the guarded writes that follow.

The invoice state machine::

    RASCUNHO    -> PROCESSANDO | ERRO
    PROCESSANDO -> PROCESSANDO | AUTORIZADA | ERRO
    AUTORIZADA  -> CANCELADA
    CANCELADA, ERRO: no way out

A snapshot whose mapped status is not reachable from the stored one is
ignored (logged). When the target is reachable only through an intermediate
state (PROCESSANDO -> CANCELADA passes AUTORIZADA) each step is written in
turn, so the stored history is always a path in the graph.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from faturador.config import REPOLL_DELAY
from faturador.models.invoice import Invoice, InvoiceStatus
from faturador.models.snapshot import ProviderSnapshot
from faturador.services.scheduler import DeferredScheduler

logger = logging.getLogger(__name__)

S = InvoiceStatus

# Primary status vocabulary, NFe.io first, then legacy and webhook variants.
STATUS_TABLE: tuple[tuple[str, InvoiceStatus], ...] = (
    ("ISSUED", S.AUTORIZADA),
    ("CREATED", S.PROCESSANDO),
    ("CANCELLED", S.CANCELADA),
    ("ERROR", S.ERRO),
    ("NONE", S.RASCUNHO),
    ("AUTHORIZED", S.AUTORIZADA),
    ("AUTORIZADA", S.AUTORIZADA),
    ("APPROVED", S.AUTORIZADA),
    ("PROCESSING", S.PROCESSANDO),
    ("PROCESSANDO", S.PROCESSANDO),
    ("PENDING", S.PROCESSANDO),
    ("CANCELED", S.CANCELADA),
    ("CANCELADA", S.CANCELADA),
    ("REJECTED", S.ERRO),
    ("REJEITADA", S.ERRO),
    ("ERRO", S.ERRO),
    ("DRAFT", S.RASCUNHO),
    ("RASCUNHO", S.RASCUNHO),
)

_STATUS_LOOKUP = dict(STATUS_TABLE)

# Secondary flowStatus signal: (match, token, status), first match wins.
FLOW_RULES: tuple[tuple[str, str, InvoiceStatus], ...] = (
    ("equals", "ISSUED", S.AUTORIZADA),
    ("contains", "WAITING", S.PROCESSANDO),
    ("contains", "PULL", S.PROCESSANDO),
    ("equals", "CANCELLED", S.CANCELADA),
    ("contains", "FAILED", S.ERRO),
    ("contains", "ERROR", S.ERRO),
)

TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    S.RASCUNHO: frozenset({S.PROCESSANDO, S.ERRO}),
    S.PROCESSANDO: frozenset({S.PROCESSANDO, S.AUTORIZADA, S.ERRO}),
    S.AUTORIZADA: frozenset({S.CANCELADA}),
    S.CANCELADA: frozenset(),
    S.ERRO: frozenset(),
}


def _flow_status(flow: str) -> InvoiceStatus | None:
    upper = flow.strip().upper()
    for match, token, status in FLOW_RULES:
        if (match == "equals" and upper == token) or (match == "contains" and token in upper):
            return status
    return None


def map_status(status: str | None, flow_status: str | None = None) -> InvoiceStatus:
    """Map provider vocabulary to a local status; unknown values map to PROCESSANDO."""
    if status and status.strip():
        mapped = _STATUS_LOOKUP.get(status.strip().upper())
        if mapped is not None:
            return mapped
    if flow_status and flow_status.strip():
        mapped = _flow_status(flow_status)
        if mapped is not None:
            return mapped
    if status or flow_status:
        logger.warning(
            "Unrecognized provider status %r (flow %r); treating as PROCESSANDO",
            status,
            flow_status,
        )
    return S.PROCESSANDO


def can_transition(current: InvoiceStatus, target: InvoiceStatus) -> bool:
    return target in TRANSITIONS[current]


def transition_path(current: InvoiceStatus, target: InvoiceStatus) -> list[InvoiceStatus] | None:
    """Shortest sequence of states leading from *current* to *target*.

    Returns [] when they are equal and None when *target* is unreachable.
    """
    if current == target:
        return []
    queue: deque[tuple[InvoiceStatus, list[InvoiceStatus]]] = deque([(current, [])])
    seen = {current}
    while queue:
        state, path = queue.popleft()
        for nxt in TRANSITIONS[state]:
            if nxt in seen:
                continue
            if nxt == target:
                return [*path, nxt]
            seen.add(nxt)
            queue.append((nxt, [*path, nxt]))
    return None


def rejection_payload(snapshot: ProviderSnapshot) -> dict[str, Any]:
    """Diagnostic stored with an invoice the provider rejected."""
    payload: dict[str, Any] = {
        "kind": "rejection",
        "message": (
            snapshot.flow_message or _error_text(snapshot.error) or "Nota rejeitada pela NFe.io"
        ),
        "provider_status": snapshot.status,
        "flow_status": snapshot.flow_status,
    }
    if snapshot.error is not None:
        payload["details"] = snapshot.error
    return payload


def _error_text(error: Any) -> str | None:
    if error is None:
        return None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("mensagem") or "") or None
    return str(error)


@dataclass(frozen=True)
class Reconciliation:
    invoice_id: str
    previous: InvoiceStatus
    mapped: InvoiceStatus
    status: InvoiceStatus  # stored status after apply
    changed: bool
    ignored: bool = False


class Reconciler:
    def __init__(
        self,
        repository,
        client,
        scheduler: DeferredScheduler,
        *,
        repoll_delay: float = REPOLL_DELAY,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._repository = repository
        self._client = client
        self._scheduler = scheduler
        self._repoll_delay = repoll_delay
        self._now = now

    def apply(self, invoice: Invoice, snapshot: ProviderSnapshot) -> Reconciliation:
        """Bring the stored invoice in line with *snapshot*.

        Never moves an invoice backwards; an identical snapshot writes nothing.
        """
        current = invoice.status
        mapped = map_status(snapshot.status, snapshot.flow_status)
        path = transition_path(current, mapped)

        if path is None:
            if mapped != current:
                logger.warning(
                    "Ignoring provider status %s for invoice %s in %s",
                    mapped.value,
                    invoice.id,
                    current.value,
                )
            return Reconciliation(invoice.id, current, mapped, current, changed=False, ignored=True)

        xml_ref = snapshot.xml_ref if snapshot.xml_ref != invoice.document_xml_ref else None
        pdf_ref = snapshot.pdf_ref if snapshot.pdf_ref != invoice.document_pdf_ref else None
        issued_at = snapshot.issued_at if invoice.issued_at is None else None
        if issued_at is None and invoice.issued_at is None and mapped == S.AUTORIZADA:
            issued_at = self._now()
        error_payload = rejection_payload(snapshot) if mapped == S.ERRO and path else None

        if not path:
            if not (xml_ref or pdf_ref or issued_at):
                logger.debug("Invoice %s already up to date (%s)", invoice.id, current.value)
                return Reconciliation(invoice.id, current, mapped, current, changed=False)
            path = [current]

        stored = current
        for step in path:
            written = self._repository.apply_status(
                invoice.id,
                step,
                expected=stored,
                xml_ref=xml_ref,
                pdf_ref=pdf_ref,
                issued_at=issued_at,
                error_payload=error_payload if step == S.ERRO else None,
            )
            if not written:
                return Reconciliation(
                    invoice.id, current, mapped, stored, changed=stored != current
                )
            stored = step

        logger.info("Invoice %s reconciled: %s -> %s", invoice.id, current.value, stored.value)
        return Reconciliation(invoice.id, current, mapped, stored, changed=True)

    def repoll(self, invoice_id: str) -> Reconciliation | None:
        """Fetch the provider's current view of a PROCESSANDO invoice and apply it."""
        invoice = self._repository.get_invoice(invoice_id)
        if invoice is None or not invoice.provider_reference:
            logger.debug("Re-poll skipped for %s (no invoice or reference)", invoice_id)
            return None
        if invoice.status != S.PROCESSANDO:
            logger.debug("Re-poll skipped for %s (status %s)", invoice_id, invoice.status.value)
            return None
        issuer = self._repository.get_issuer(invoice.issuer_id)
        if issuer is None or not issuer.provider_company_ref:
            logger.warning("Re-poll of %s: issuer has no provider company", invoice_id)
            return None
        result = self._client.get_by_id(issuer.provider_company_ref, invoice.provider_reference)
        if not result.ok:
            logger.warning("Re-poll of %s failed: %s", invoice_id, result.message)
            return None
        return self.apply(invoice, result.value)

    def schedule_repoll(self, invoice_id: str, delay: float | None = None) -> None:
        """Queue one delayed re-poll; a later call for the same invoice replaces it."""
        self._scheduler.schedule(
            f"repoll:{invoice_id}",
            self._repoll_delay if delay is None else delay,
            lambda: self.repoll(invoice_id),
        )

    def cancel_repoll(self, invoice_id: str) -> bool:
        return self._scheduler.cancel(f"repoll:{invoice_id}")
