from __future__ import annotations

import logging
from dataclasses import dataclass

from faturador.config import Settings
from faturador.services.address_resolver import AddressResolver
from faturador.services.database import Database
from faturador.services.emission import EmissionService
from faturador.services.municipality_lookup import MunicipalityLookup
from faturador.services.nfeio_client import NFeIOClient
from faturador.services.payload_builder import PayloadBuilder
from faturador.services.postal_lookup import PostalCodeLookup
from faturador.services.reconciler import Reconciler
from faturador.services.repository import InvoiceRepository
from faturador.services.scheduler import DeferredScheduler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Wired service graph. ``close()`` releases the pool and HTTP sessions."""

    settings: Settings
    database: Database
    repository: InvoiceRepository
    client: NFeIOClient
    scheduler: DeferredScheduler
    reconciler: Reconciler
    emission: EmissionService

    def close(self) -> None:
        self.scheduler.stop()
        self.client.close()
        self.database.close()


def build_services(settings: Settings) -> Services:
    database = Database(
        settings.database_url,
        minconn=settings.db_min_connections,
        maxconn=settings.db_max_connections,
    )
    repository = InvoiceRepository(database)
    client = NFeIOClient(
        settings.api_key,
        base_url=settings.nfeio_url,
        legal_entity_url=settings.legal_entity_url,
        timeout=settings.nfeio_timeout,
    )
    if not client.configured:
        logger.warning("NFEIO_API_KEY not configured; issuing calls will fail")

    resolver = AddressResolver(
        repository,
        PostalCodeLookup(timeout=settings.lookup_timeout),
        MunicipalityLookup(timeout=settings.lookup_timeout),
    )
    scheduler = DeferredScheduler()
    reconciler = Reconciler(
        repository, client, scheduler, repoll_delay=settings.repoll_delay
    )
    emission = EmissionService(
        repository,
        client,
        resolver,
        PayloadBuilder(sandbox=settings.is_sandbox),
        reconciler,
        webhook_secret=settings.webhook_secret,
    )
    logger.debug("Services built for environment %s", settings.env)
    return Services(
        settings=settings,
        database=database,
        repository=repository,
        client=client,
        scheduler=scheduler,
        reconciler=reconciler,
        emission=emission,
    )
