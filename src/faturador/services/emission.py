"""Emission orchestration: single and batch submission, cancel, documents,
reconciliation and webhook intake.

Public methods never raise for expected business failures; they return an
outcome object the caller branches on. Each invoice action holds a
per-invoice lock for its whole duration.

Single-draft flow::

    validate -> resolve fiscal code -> ensure issuer company -> tax estimate
    -> build payload -> submit -> mark PROCESSANDO -> reconcile snapshot
    -> schedule one re-poll if still PROCESSANDO

Everything up to and including fiscal-code resolution runs before any call
to the issuing service.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

from faturador.config import PROVIDER_NAME
from faturador.models.invoice import DocumentKind, Invoice, InvoiceStatus
from faturador.models.issuer import Issuer
from faturador.models.recipient import Address
from faturador.models.snapshot import ProviderSnapshot
from faturador.services.address_resolver import AddressResolver
from faturador.services.diagnostics import Diagnostic, DraftDiagnosis, Level, check_draft
from faturador.services.documents import DocumentMetadata, looks_like_pdf, parse_invoice_xml
from faturador.services.exceptions import (
    InvoiceBusyError,
    MissingFiscalCodeError,
    TransientConnectionError,
    ValidationError,
)
from faturador.services.nfeio_client import (
    ClientResult,
    FailureKind,
    NFeIOClient,
    TaxEstimate,
    TaxEstimateRequest,
)
from faturador.services.payload_builder import PayloadBuilder
from faturador.services.reconciler import Reconciler
from faturador.services.webhook import event_type, parse_event, verify_signature
from faturador.utils.formatters import mask_tax_id
from faturador.utils.locks import invoice_guard

logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    VALIDATION = "validation"
    MISSING_FISCAL_CODE = "missing_fiscal_code"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    SERVER = "server"
    NETWORK = "network"
    REJECTION = "rejection"
    BUSY = "busy"
    INVOICE_NOT_FOUND = "invoice_not_found"
    INVALID_STATE = "invalid_state"
    CONFLICT = "conflict"
    PERSISTENCE = "persistence"
    INTERNAL = "internal"


_CLIENT_KINDS = {
    FailureKind.AUTH: OutcomeKind.AUTH,
    FailureKind.VALIDATION: OutcomeKind.VALIDATION,
    FailureKind.NOT_FOUND: OutcomeKind.NOT_FOUND,
    FailureKind.SERVER: OutcomeKind.SERVER,
    FailureKind.NETWORK: OutcomeKind.NETWORK,
}


@dataclass(frozen=True)
class EmissionOutcome:
    """Result of one invoice action."""

    invoice_id: str
    ok: bool
    status: InvoiceStatus | None = None
    reference: str | None = None
    kind: OutcomeKind | None = None
    message: str = ""
    retryable: bool = False
    details: Any = None

    @classmethod
    def succeeded(
        cls,
        invoice_id: str,
        status: InvoiceStatus,
        reference: str | None = None,
        message: str = "",
    ) -> EmissionOutcome:
        return cls(invoice_id, True, status=status, reference=reference, message=message)

    @classmethod
    def failed(
        cls,
        invoice_id: str,
        kind: OutcomeKind,
        message: str,
        *,
        status: InvoiceStatus | None = None,
        reference: str | None = None,
        retryable: bool = False,
        details: Any = None,
    ) -> EmissionOutcome:
        return cls(
            invoice_id,
            False,
            status=status,
            reference=reference,
            kind=kind,
            message=message,
            retryable=retryable,
            details=details,
        )

    @classmethod
    def from_client(
        cls,
        invoice_id: str,
        result: ClientResult,
        *,
        status: InvoiceStatus | None = None,
        message: str | None = None,
    ) -> EmissionOutcome:
        return cls.failed(
            invoice_id,
            _CLIENT_KINDS.get(result.kind, OutcomeKind.SERVER),  # type: ignore[arg-type]
            message or result.message,
            status=status,
            retryable=result.retryable,
            details=result.error_payload(),
        )


@dataclass(frozen=True)
class BatchReport:
    outcomes: list[EmissionOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.ok)


@dataclass(frozen=True)
class DocumentResult:
    invoice_id: str
    kind: DocumentKind
    ok: bool
    content: bytes | None = None
    metadata: DocumentMetadata | None = None
    message: str = ""
    failure: OutcomeKind | None = None
    retryable: bool = False


@dataclass(frozen=True)
class WebhookResult:
    """What to answer the provider. ``status_code`` is the HTTP code to send."""

    accepted: bool
    status_code: int
    message: str
    invoice_id: str | None = None
    status: InvoiceStatus | None = None


class EmissionService:
    def __init__(
        self,
        repository,
        client: NFeIOClient,
        resolver: AddressResolver,
        builder: PayloadBuilder,
        reconciler: Reconciler,
        *,
        webhook_secret: str | None = None,
        provider_name: str = PROVIDER_NAME,
        lock_dir: Path | None = None,
    ) -> None:
        self._repository = repository
        self._client = client
        self._resolver = resolver
        self._builder = builder
        self._reconciler = reconciler
        self._webhook_secret = webhook_secret
        self._provider_name = provider_name
        self._lock_dir = lock_dir

    # --- Public operations ---

    def submit_draft(self, invoice_id: str) -> EmissionOutcome:
        """Submit one RASCUNHO invoice to the issuing service."""
        return self._guarded(invoice_id, self._submit)

    def emit_batch(self, invoice_ids: Iterable[str]) -> BatchReport:
        """Submit drafts one after another. A failing item never stops the batch."""
        report = BatchReport([self.submit_draft(invoice_id) for invoice_id in invoice_ids])
        logger.info(
            "Batch finished: %d emitted, %d failed", report.succeeded, report.failed
        )
        return report

    def cancel(self, invoice_id: str, reason: str | None = None) -> EmissionOutcome:
        """Cancel an AUTORIZADA invoice at the provider."""
        return self._guarded(invoice_id, lambda i: self._cancel(i, reason))

    def reconcile(self, invoice_id: str) -> EmissionOutcome:
        """Align the stored status with the provider's current view."""
        return self._guarded(invoice_id, self._reconcile)

    def fetch_document(self, invoice_id: str, kind: DocumentKind) -> DocumentResult:
        try:
            return self._fetch_document(invoice_id, kind)
        except TransientConnectionError as exc:
            logger.error("Database unavailable fetching %s of %s: %s", kind.value, invoice_id, exc)
            return DocumentResult(
                invoice_id, kind, False, message=str(exc),
                failure=OutcomeKind.PERSISTENCE, retryable=True,
            )
        except Exception as exc:
            logger.exception("Unexpected error fetching %s of %s", kind.value, invoice_id)
            return DocumentResult(
                invoice_id, kind, False, message=f"Erro inesperado: {exc}",
                failure=OutcomeKind.INTERNAL,
            )

    def diagnose(self, invoice_id: str) -> DraftDiagnosis | None:
        """Completeness report for a draft; None if the invoice does not exist.

        Failures while loading the draft are reported as an ERRO diagnostic.
        """
        try:
            invoice = self._repository.get_invoice(invoice_id)
            if invoice is None:
                return None
            issuer = self._repository.get_issuer(invoice.issuer_id)
            recipient = self._repository.get_recipient(invoice.recipient_id)
            participants = self._repository.get_participants(invoice.id)
            return check_draft(
                invoice, issuer, recipient, participants, api_configured=self._client.configured
            )
        except Exception as exc:
            logger.exception("Diagnosis of invoice %s failed", invoice_id)
            return DraftDiagnosis(
                invoice_id,
                [Diagnostic(Level.ERRO, "nota", f"Não foi possível carregar o rascunho: {exc}")],
            )

    def handle_webhook(self, body: bytes, signature: str | None) -> WebhookResult:
        """Verify and apply one provider notification."""
        if self._webhook_secret:
            if not verify_signature(body, signature, self._webhook_secret):
                logger.warning("Webhook rejected: invalid signature")
                return WebhookResult(False, 401, "Assinatura inválida")
        else:
            logger.warning("NFEIO_WEBHOOK_SECRET not set; accepting unsigned webhook")

        try:
            snapshot = parse_event(body)
        except ValidationError as exc:
            logger.warning("Webhook rejected: %s", exc)
            return WebhookResult(False, 400, str(exc))
        if not snapshot.reference:
            logger.warning("Webhook without an invoice reference")
            return WebhookResult(False, 400, "Referência da API não encontrada no payload")

        try:
            invoice = self._repository.find_by_reference(snapshot.reference)
            if invoice is None:
                logger.warning("Webhook for unknown reference %s", snapshot.reference)
                return WebhookResult(True, 200, "Webhook recebido mas nota não encontrada")
            logger.info(
                "Webhook %s for invoice %s (%s)",
                event_type(snapshot),
                invoice.id,
                snapshot.reference,
            )
            result = self._reconciler.apply(invoice, snapshot)
        except TransientConnectionError as exc:
            # 5xx makes the provider deliver again later
            logger.error("Database unavailable handling webhook %s: %s", snapshot.reference, exc)
            return WebhookResult(False, 503, "Erro ao processar webhook")
        except Exception:
            logger.exception("Unexpected error handling webhook %s", snapshot.reference)
            return WebhookResult(False, 500, "Erro ao processar webhook")

        return WebhookResult(
            True, 200, "Webhook processado com sucesso", invoice.id, result.status
        )

    # --- Helpers ---

    def _guarded(self, invoice_id: str, action) -> EmissionOutcome:
        try:
            with invoice_guard(invoice_id, self._lock_dir):
                return action(invoice_id)
        except InvoiceBusyError as exc:
            logger.warning("Invoice %s is busy; action rejected", invoice_id)
            return EmissionOutcome.failed(invoice_id, OutcomeKind.BUSY, str(exc), retryable=True)
        except TransientConnectionError as exc:
            logger.error("Database unavailable for invoice %s: %s", invoice_id, exc)
            return EmissionOutcome.failed(
                invoice_id, OutcomeKind.PERSISTENCE, str(exc), retryable=True
            )
        except Exception as exc:
            logger.exception("Unexpected error processing invoice %s", invoice_id)
            return EmissionOutcome.failed(
                invoice_id, OutcomeKind.INTERNAL, f"Erro inesperado: {exc}"
            )

    def _load(self, invoice_id: str) -> Invoice | EmissionOutcome:
        invoice = self._repository.get_invoice(invoice_id)
        if invoice is None:
            logger.warning("Invoice %s not found", invoice_id)
            return EmissionOutcome.failed(
                invoice_id, OutcomeKind.INVOICE_NOT_FOUND, "Nota fiscal não encontrada"
            )
        return invoice

    def _company_ref(self, invoice: Invoice) -> str | EmissionOutcome:
        issuer = self._repository.get_issuer(invoice.issuer_id)
        if issuer is None or not issuer.provider_company_ref:
            logger.warning("Invoice %s: issuer has no NFe.io company", invoice.id)
            return EmissionOutcome.failed(
                invoice.id,
                OutcomeKind.VALIDATION,
                "Empresa emissora não está cadastrada na NFe.io",
                status=invoice.status,
            )
        return issuer.provider_company_ref

    def _ensure_company(self, invoice: Invoice, issuer: Issuer) -> str | EmissionOutcome:
        """Return the issuer's provider company id, registering it if absent."""
        if issuer.provider_company_ref:
            return issuer.provider_company_ref
        logger.info("Issuer %s has no NFe.io company; registering", issuer.id)
        result = self._client.register_or_update_company(issuer)
        if not result.ok:
            logger.error("Could not register issuer %s: %s", issuer.id, result.message)
            return EmissionOutcome.from_client(
                invoice.id,
                result,
                status=invoice.status,
                message=f"Não foi possível cadastrar a empresa na NFe.io: {result.message}",
            )
        self._repository.set_issuer_company_ref(issuer.id, result.value)
        return result.value

    def _estimate(
        self, invoice: Invoice, issuer: Issuer, address: Address, company_ref: str
    ) -> TaxEstimate | None:
        """Authoritative ISS figures, or None when only an estimate is available."""
        request = TaxEstimateRequest(
            amount=invoice.total_amount,
            tenant_id=company_ref,
            service_code=self._builder.city_service_code(invoice, issuer),
            issuer_regime=issuer.tax_regime,
            issuer_state=issuer.address.state if issuer.address else None,
            recipient_state=address.state,
        )
        result = self._client.tax_estimate(request)
        estimate = result.value if result.ok else None
        if estimate is None or estimate.estimated or estimate.iss_rate <= 0:
            logger.debug("No authoritative tax figures for invoice %s", invoice.id)
            return None
        return estimate

    # --- Submit ---

    def _submit(self, invoice_id: str) -> EmissionOutcome:
        loaded = self._load(invoice_id)
        if isinstance(loaded, EmissionOutcome):
            return loaded
        invoice = loaded
        if invoice.status is not InvoiceStatus.RASCUNHO:
            logger.warning(
                "Invoice %s is %s; only drafts are submitted", invoice.id, invoice.status.value
            )
            return EmissionOutcome.failed(
                invoice.id,
                OutcomeKind.INVALID_STATE,
                f"Nota fiscal está {invoice.status.value}; apenas rascunhos podem ser emitidos",
                status=invoice.status,
                reference=invoice.provider_reference,
            )

        issuer = self._repository.get_issuer(invoice.issuer_id)
        recipient = self._repository.get_recipient(invoice.recipient_id)
        participants = self._repository.get_participants(invoice.id)
        if issuer is None or recipient is None:
            missing = "Empresa emissora" if issuer is None else "Tomador"
            logger.warning("Invoice %s: %s not found", invoice.id, missing)
            return EmissionOutcome.failed(
                invoice.id,
                OutcomeKind.VALIDATION,
                f"{missing} não encontrado(a)",
                status=invoice.status,
            )

        try:
            self._builder.validate(invoice, issuer, recipient, participants)
            address = self._resolver.resolve(recipient)
        except MissingFiscalCodeError as exc:
            logger.warning("Invoice %s blocked: %s", invoice.id, exc)
            return EmissionOutcome.failed(
                invoice.id,
                OutcomeKind.MISSING_FISCAL_CODE,
                str(exc),
                status=invoice.status,
                details={"field": exc.field, "attempted": exc.attempted},
            )
        except ValidationError as exc:
            logger.warning("Invoice %s failed validation (%s): %s", invoice.id, exc.field, exc)
            return EmissionOutcome.failed(
                invoice.id,
                OutcomeKind.VALIDATION,
                str(exc),
                status=invoice.status,
                details={"field": exc.field},
            )

        registered_now = not issuer.provider_company_ref
        company = self._ensure_company(invoice, issuer)
        if isinstance(company, EmissionOutcome):
            return company

        estimate = self._estimate(invoice, issuer, address, company)
        payload = self._builder.build(
            invoice,
            issuer,
            recipient,
            participants,
            address,
            iss_rate=estimate.iss_rate if estimate else None,
            iss_amount=estimate.iss_amount if estimate else None,
        )
        logger.info(
            "Submitting invoice %s (recipient %s) under company %s",
            invoice.id,
            mask_tax_id(recipient.tax_id),
            company,
        )
        result = self._client.submit(payload, company)
        if not result.ok:
            issuer = replace(issuer, provider_company_ref=company)
            return self._submit_failure(invoice, issuer, result, registered_now=registered_now)
        return self._record_submission(invoice, result.value)

    def _submit_failure(
        self,
        invoice: Invoice,
        issuer: Issuer,
        result: ClientResult,
        *,
        registered_now: bool = False,
    ) -> EmissionOutcome:
        if result.kind is FailureKind.NOT_FOUND and registered_now:
            # the company id came from this very call; registering again would loop
            logger.error(
                "Company %s registered for %s was not found on submit",
                issuer.provider_company_ref,
                invoice.id,
            )
            return EmissionOutcome.from_client(
                invoice.id,
                result,
                status=InvoiceStatus.RASCUNHO,
                message=(
                    "Empresa recém-cadastrada não encontrada na NFe.io; "
                    "tente novamente em alguns minutos"
                ),
            )
        if result.kind is FailureKind.NOT_FOUND:
            return self._remediate_company(invoice, issuer, result)

        if result.kind is FailureKind.VALIDATION:
            logger.error("Invoice %s rejected by NFe.io: %s", invoice.id, result.message)
            self._repository.apply_status(
                invoice.id,
                InvoiceStatus.ERRO,
                expected=InvoiceStatus.RASCUNHO,
                error_payload={**result.error_payload(), "kind": OutcomeKind.REJECTION.value},
                provider=self._provider_name,
            )
            return EmissionOutcome.failed(
                invoice.id,
                OutcomeKind.REJECTION,
                result.message,
                status=InvoiceStatus.ERRO,
                details=result.error_payload(),
            )

        if result.kind is FailureKind.NETWORK:
            # The provider may hold the invoice anyway; reconcile() adopts it.
            logger.error("Invoice %s: network failure during submit; draft kept", invoice.id)
            return EmissionOutcome.failed(
                invoice.id,
                OutcomeKind.NETWORK,
                f"{result.message}. Execute a reconciliação antes de reenviar.",
                status=InvoiceStatus.RASCUNHO,
                retryable=False,
                details=result.error_payload(),
            )

        logger.error(
            "Invoice %s submit failed (%s): %s",
            invoice.id,
            result.kind.value if result.kind else "?",
            result.message,
        )
        return EmissionOutcome.from_client(invoice.id, result, status=InvoiceStatus.RASCUNHO)

    def _record_orphan(self, invoice: Invoice, reference: str) -> None:
        """Keep the provider id of a submission whose status update lost the race."""
        try:
            self._repository.record_error_payload(
                invoice.id,
                {
                    "kind": "orphan_reference",
                    "message": "Nota enviada à NFe.io mas status não atualizado",
                    "reference": reference,
                    "provider": self._provider_name,
                },
            )
        except TransientConnectionError as exc:
            logger.error(
                "Could not record orphan reference %s for %s: %s", reference, invoice.id, exc
            )

    def _remediate_company(
        self, invoice: Invoice, issuer: Issuer, result: ClientResult
    ) -> EmissionOutcome:
        """The stored company id is stale: register again, never resubmit."""
        stale = issuer.provider_company_ref
        logger.warning(
            "Company %s unknown to NFe.io while submitting %s; re-registering issuer %s",
            stale,
            invoice.id,
            issuer.id,
        )
        self._repository.clear_issuer_company_ref(issuer.id)
        registered = self._client.register_or_update_company(
            replace(issuer, provider_company_ref=None)
        )
        if not registered.ok:
            logger.error("Re-registration of issuer %s failed: %s", issuer.id, registered.message)
            return EmissionOutcome.from_client(
                invoice.id,
                registered,
                status=InvoiceStatus.RASCUNHO,
                message=(
                    "Empresa não encontrada na NFe.io e não foi possível "
                    f"cadastrá-la novamente: {registered.message}"
                ),
            )
        self._repository.set_issuer_company_ref(issuer.id, registered.value)
        logger.info("Issuer %s re-registered as %s (was %s)", issuer.id, registered.value, stale)
        return EmissionOutcome.failed(
            invoice.id,
            OutcomeKind.NOT_FOUND,
            "Empresa não encontrada na NFe.io; cadastro refeito. Reenvie a nota.",
            status=InvoiceStatus.RASCUNHO,
            retryable=True,
            details={
                **result.error_payload(),
                "stale_company_ref": stale,
                "company_ref": registered.value,
            },
        )

    def _record_submission(self, invoice: Invoice, snapshot: ProviderSnapshot) -> EmissionOutcome:
        """Bind the provider reference, then apply whatever status came back."""
        reference = snapshot.reference
        holder = self._repository.find_by_reference(reference)
        if holder is not None and holder.id != invoice.id:
            logger.error(
                "Provider reference %s already belongs to invoice %s; not binding to %s",
                reference,
                holder.id,
                invoice.id,
            )
            return EmissionOutcome.failed(
                invoice.id,
                OutcomeKind.CONFLICT,
                f"Referência {reference} já vinculada à nota {holder.id}",
                status=invoice.status,
                reference=reference,
            )
        if not self._repository.mark_processing(invoice.id, reference, self._provider_name):
            logger.error(
                "Invoice %s changed while submitting; reference %s not stored",
                invoice.id,
                reference,
            )
            self._record_orphan(invoice, reference)
            return EmissionOutcome.failed(
                invoice.id,
                OutcomeKind.CONFLICT,
                "Nota fiscal foi alterada durante a emissão",
                reference=reference,
            )

        processing = replace(
            invoice,
            status=InvoiceStatus.PROCESSANDO,
            provider_reference=reference,
            provider_name=self._provider_name,
        )
        applied = self._reconciler.apply(processing, snapshot)
        if applied.status is InvoiceStatus.PROCESSANDO:
            self._reconciler.schedule_repoll(invoice.id)
        if applied.status is InvoiceStatus.ERRO:
            return EmissionOutcome.failed(
                invoice.id,
                OutcomeKind.REJECTION,
                snapshot.flow_message or "Nota rejeitada pela NFe.io",
                status=InvoiceStatus.ERRO,
                reference=reference,
            )
        logger.info("Invoice %s submitted as %s (%s)", invoice.id, reference, applied.status.value)
        return EmissionOutcome.succeeded(invoice.id, applied.status, reference)

    # --- Cancel ---

    def _cancel(self, invoice_id: str, reason: str | None) -> EmissionOutcome:
        loaded = self._load(invoice_id)
        if isinstance(loaded, EmissionOutcome):
            return loaded
        invoice = loaded
        if invoice.status is not InvoiceStatus.AUTORIZADA or not invoice.provider_reference:
            logger.warning("Invoice %s cannot be cancelled in %s", invoice.id, invoice.status.value)
            return EmissionOutcome.failed(
                invoice.id,
                OutcomeKind.INVALID_STATE,
                f"Apenas notas autorizadas podem ser canceladas (status: {invoice.status.value})",
                status=invoice.status,
            )
        company = self._company_ref(invoice)
        if isinstance(company, EmissionOutcome):
            return company

        result = self._client.cancel(company, invoice.provider_reference, reason)
        if not result.ok:
            logger.error("Cancel of invoice %s failed: %s", invoice.id, result.message)
            self._repository.record_error_payload(
                invoice.id, {**result.error_payload(), "action": "cancel"}
            )
            return EmissionOutcome.from_client(invoice.id, result, status=InvoiceStatus.AUTORIZADA)

        self._reconciler.cancel_repoll(invoice.id)
        if not self._repository.apply_status(
            invoice.id, InvoiceStatus.CANCELADA, expected=InvoiceStatus.AUTORIZADA
        ):
            return EmissionOutcome.failed(
                invoice.id,
                OutcomeKind.CONFLICT,
                "Status da nota mudou durante o cancelamento",
                reference=invoice.provider_reference,
            )
        logger.info("Invoice %s cancelled (reason: %s)", invoice.id, reason or "-")
        return EmissionOutcome.succeeded(
            invoice.id, InvoiceStatus.CANCELADA, invoice.provider_reference
        )

    # --- Reconcile ---

    def _reconcile(self, invoice_id: str) -> EmissionOutcome:
        loaded = self._load(invoice_id)
        if isinstance(loaded, EmissionOutcome):
            return loaded
        invoice = loaded
        if invoice.status is InvoiceStatus.RASCUNHO:
            return self._adopt(invoice)
        if not invoice.provider_reference:
            return EmissionOutcome.succeeded(
                invoice.id, invoice.status, message="Nota sem referência na NFe.io"
            )

        company = self._company_ref(invoice)
        if isinstance(company, EmissionOutcome):
            return company
        result = self._client.get_by_id(company, invoice.provider_reference)
        if not result.ok:
            logger.warning("Reconcile of %s failed: %s", invoice.id, result.message)
            return EmissionOutcome.from_client(invoice.id, result, status=invoice.status)

        applied = self._reconciler.apply(invoice, result.value)
        return EmissionOutcome.succeeded(
            invoice.id,
            applied.status,
            invoice.provider_reference,
            message="Status atualizado" if applied.changed else "Sem alterações",
        )

    def _adopt(self, invoice: Invoice) -> EmissionOutcome:
        """Find an invoice the provider created for this draft despite a lost answer."""
        issuer = self._repository.get_issuer(invoice.issuer_id)
        if issuer is None or not issuer.provider_company_ref:
            return EmissionOutcome.succeeded(
                invoice.id, invoice.status, message="Rascunho ainda não enviado"
            )
        result = self._client.get_by_external_id(issuer.provider_company_ref, invoice.id)
        if result.kind is FailureKind.NOT_FOUND:
            return EmissionOutcome.succeeded(
                invoice.id, invoice.status, message="Nenhuma nota na NFe.io para este rascunho"
            )
        if not result.ok:
            return EmissionOutcome.from_client(invoice.id, result, status=invoice.status)
        logger.warning(
            "Draft %s already exists at NFe.io as %s; adopting", invoice.id, result.value.reference
        )
        return self._record_submission(invoice, result.value)

    # --- Documents ---

    def _fetch_document(self, invoice_id: str, kind: DocumentKind) -> DocumentResult:
        invoice = self._repository.get_invoice(invoice_id)
        if invoice is None:
            return DocumentResult(
                invoice_id, kind, False, message="Nota fiscal não encontrada",
                failure=OutcomeKind.INVOICE_NOT_FOUND,
            )
        issued = invoice.status in (InvoiceStatus.AUTORIZADA, InvoiceStatus.CANCELADA)
        if not issued or not invoice.provider_reference:
            return DocumentResult(
                invoice_id, kind, False,
                message=f"Documento indisponível para nota {invoice.status.value}",
                failure=OutcomeKind.INVALID_STATE,
            )
        issuer = self._repository.get_issuer(invoice.issuer_id)
        if issuer is None or not issuer.provider_company_ref:
            return DocumentResult(
                invoice_id, kind, False,
                message="Empresa emissora não está cadastrada na NFe.io",
                failure=OutcomeKind.VALIDATION,
            )

        result = self._client.fetch_document(
            issuer.provider_company_ref, invoice.provider_reference, kind
        )
        if not result.ok:
            logger.warning(
                "Download of %s for %s failed: %s", kind.value, invoice_id, result.message
            )
            return DocumentResult(
                invoice_id, kind, False, message=result.message,
                failure=_CLIENT_KINDS.get(result.kind, OutcomeKind.SERVER),
                retryable=result.retryable,
            )

        content: bytes = result.value
        metadata = None
        if kind is DocumentKind.XML:
            try:
                metadata = parse_invoice_xml(content)
            except ValueError:
                logger.warning("Invoice %s XML could not be parsed", invoice_id, exc_info=True)
        elif not looks_like_pdf(content):
            logger.warning("Invoice %s PDF download does not look like a PDF", invoice_id)
        return DocumentResult(invoice_id, kind, True, content=content, metadata=metadata)

