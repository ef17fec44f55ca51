from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from faturador.models.invoice import Invoice, InvoiceStatus, Participant
from faturador.models.issuer import Issuer
from faturador.models.recipient import Address, Recipient
from faturador.models.snapshot import ProviderSnapshot
from faturador.services.address_resolver import AddressResolver
from faturador.services.emission import EmissionService
from faturador.services.municipality_lookup import MunicipalityLookup
from faturador.services.nfeio_client import ClientResult, NFeIOClient, TaxEstimate
from faturador.services.payload_builder import PayloadBuilder
from faturador.services.postal_lookup import PostalCodeLookup
from faturador.services.reconciler import Reconciler
from faturador.services.scheduler import DeferredScheduler


class FakeRepository:
    """In-memory stand-in for InvoiceRepository with the same guards."""

    def __init__(self) -> None:
        self.invoices: dict[str, Invoice] = {}
        self.issuers: dict[str, Issuer] = {}
        self.recipients: dict[str, Recipient] = {}
        self.participants: dict[str, list[Participant]] = {}
        self.primary_addresses: dict[str, Address] = {}
        self.legacy_addresses: dict[str, Address] = {}
        self.history: dict[str, list[InvoiceStatus]] = {}
        self.writes: list[tuple] = []

    def add_invoice(self, invoice: Invoice, participants: list[Participant] | None = None) -> None:
        self.invoices[invoice.id] = invoice
        self.history[invoice.id] = [invoice.status]
        if participants is not None:
            self.participants[invoice.id] = participants

    # --- Reads ---

    def get_invoice(self, invoice_id):
        return self.invoices.get(invoice_id)

    def find_by_reference(self, reference):
        for invoice in self.invoices.values():
            if invoice.provider_reference == reference:
                return invoice
        return None

    def get_participants(self, invoice_id):
        return list(self.participants.get(invoice_id, []))

    def get_issuer(self, issuer_id):
        return self.issuers.get(issuer_id)

    def get_recipient(self, recipient_id):
        return self.recipients.get(recipient_id)

    def get_primary_address(self, recipient_id):
        return self.primary_addresses.get(recipient_id)

    def get_legacy_address(self, recipient_id):
        return self.legacy_addresses.get(recipient_id)

    # --- Writes ---

    def set_issuer_company_ref(self, issuer_id, company_ref):
        self.writes.append(("set_company", issuer_id, company_ref))
        self.issuers[issuer_id] = replace(self.issuers[issuer_id], provider_company_ref=company_ref)

    def clear_issuer_company_ref(self, issuer_id):
        self.writes.append(("clear_company", issuer_id))
        self.issuers[issuer_id] = replace(self.issuers[issuer_id], provider_company_ref=None)

    def mark_processing(self, invoice_id, reference, provider):
        invoice = self.invoices[invoice_id]
        if invoice.status is not InvoiceStatus.RASCUNHO or invoice.provider_reference:
            return False
        self.writes.append(("mark_processing", invoice_id, reference))
        self.invoices[invoice_id] = replace(
            invoice,
            status=InvoiceStatus.PROCESSANDO,
            provider_reference=reference,
            provider_name=provider,
            error_payload=None,
        )
        self.history[invoice_id].append(InvoiceStatus.PROCESSANDO)
        return True

    def apply_status(
        self,
        invoice_id,
        status,
        *,
        expected,
        xml_ref=None,
        pdf_ref=None,
        issued_at=None,
        error_payload=None,
        provider=None,
    ):
        invoice = self.invoices[invoice_id]
        if invoice.status is not expected:
            return False
        self.writes.append(("apply_status", invoice_id, status))
        self.invoices[invoice_id] = replace(
            invoice,
            status=status,
            document_xml_ref=xml_ref or invoice.document_xml_ref,
            document_pdf_ref=pdf_ref or invoice.document_pdf_ref,
            issued_at=issued_at or invoice.issued_at,
            error_payload=error_payload if error_payload is not None else invoice.error_payload,
            provider_name=provider or invoice.provider_name,
        )
        if status is not invoice.status:
            self.history[invoice_id].append(status)
        return True

    def record_error_payload(self, invoice_id, payload):
        self.writes.append(("record_error", invoice_id))
        self.invoices[invoice_id] = replace(self.invoices[invoice_id], error_payload=payload)


class FakeClock:
    """Settable UTC clock; *now* is seconds past a fixed origin."""

    origin = datetime(2025, 7, 1, 12, 0, tzinfo=timezone.utc)

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> datetime:
        return self.origin + timedelta(seconds=self.now)


# --- Domain fixtures ---


@pytest.fixture
def address() -> Address:
    return Address(
        street="Rua das Flores",
        number="100",
        district="Centro",
        city="Aracaju",
        state="SE",
        postal_code="49010-000",
        fiscal_city_code="2800308",
    )


@pytest.fixture
def issuer(address: Address) -> Issuer:
    return Issuer(
        id="emp-1",
        tax_id="12.345.678/0001-99",
        legal_name="ACME SERVICOS MEDICOS LTDA",
        municipal_registration="12345",
        provider_company_ref="co-123",
        tax_regime="SimplesNacional",
        address=address,
        city_service_code="0401",
        cnae_code="8630-5/03",
    )


@pytest.fixture
def recipient() -> Recipient:
    return Recipient(
        id="tom-1",
        kind="EMPRESA",
        tax_id="11.222.333/0001-81",
        name="Hospital Exemplo S.A.",
        email="financeiro@hospital.example",
        postal_code="49010000",
        city="Aracaju",
        state="SE",
    )


def make_invoice(invoice_id: str = "nf-1", **overrides) -> Invoice:
    values = dict(
        id=invoice_id,
        issuer_id="emp-1",
        recipient_id="tom-1",
        competence="2025-06",
        total_amount=Decimal("1500.00"),
        description="Plantões médicos realizados em junho/2025",
    )
    values.update(overrides)
    return Invoice(**values)


def make_participants(invoice_id: str = "nf-1", *amounts: str) -> list[Participant]:
    amounts = amounts or ("1000.00", "500.00")
    return [
        Participant(invoice_id=invoice_id, party_id=f"p-{i}", amount=Decimal(a), name=f"Sócio {i}")
        for i, a in enumerate(amounts, start=1)
    ]


@pytest.fixture
def invoice() -> Invoice:
    return make_invoice()


@pytest.fixture
def participants() -> list[Participant]:
    return make_participants()


def snapshot(reference: str = "nfeio-1", status: str | None = "Created", **kw) -> ProviderSnapshot:
    return ProviderSnapshot(reference=reference, status=status, **kw)


# --- Service fixtures ---


@pytest.fixture
def repo(invoice, issuer, recipient, participants, address) -> FakeRepository:
    r = FakeRepository()
    r.issuers[issuer.id] = issuer
    r.recipients[recipient.id] = recipient
    r.primary_addresses[recipient.id] = address
    r.add_invoice(invoice, participants)
    return r


@pytest.fixture
def client() -> MagicMock:
    mock = MagicMock(spec=NFeIOClient)
    mock.configured = True
    mock.tax_estimate.return_value = ClientResult.success(
        TaxEstimate(service_amount=Decimal("1500.00"), estimated=True)
    )
    mock.submit.return_value = ClientResult.success(snapshot())
    return mock


@pytest.fixture
def postal() -> MagicMock:
    return MagicMock(spec=PostalCodeLookup)


@pytest.fixture
def municipalities() -> MagicMock:
    return MagicMock(spec=MunicipalityLookup)


@pytest.fixture
def resolver(repo, postal, municipalities) -> AddressResolver:
    return AddressResolver(repo, postal, municipalities)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    sched = DeferredScheduler(clock=clock)
    yield sched
    sched.stop()


@pytest.fixture
def reconciler(repo, client, scheduler) -> Reconciler:
    return Reconciler(repo, client, scheduler, repoll_delay=2.0)


@pytest.fixture
def service(repo, client, resolver, reconciler, tmp_path) -> EmissionService:
    return EmissionService(
        repo,
        client,
        resolver,
        PayloadBuilder(sandbox=False),
        reconciler,
        lock_dir=tmp_path / "locks",
    )
