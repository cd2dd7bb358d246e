"""
Application wiring.

``build_application()`` turns a ``Settings`` object into the connected
object graph: store, audit ledger, staff directory, gateways and the
lifecycle engine.  Nothing else in the package reads configuration.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from pharmdesk.audit import AuditLedger
from pharmdesk.config import Settings
from pharmdesk.enrichment import AnthropicEnrichmentGateway, EnrichmentGateway
from pharmdesk.identity import Session, StaffDirectory
from pharmdesk.lifecycle import LifecycleEngine
from pharmdesk.notifications import NotificationGateway, build_transport
from pharmdesk.store import SQLiteRecordStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a basic stderr handler on the root logger.

    Does nothing if the root logger already has handlers, so embedding
    applications keep their own setup.
    """
    root = logging.getLogger()
    if root.handlers:
        return
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


@dataclass
class Application:
    settings: Settings
    store: SQLiteRecordStore
    ledger: AuditLedger
    directory: StaffDirectory
    notifier: NotificationGateway
    enrichment: Optional[EnrichmentGateway]
    engine: LifecycleEngine

    def new_session(self) -> Session:
        return Session(self.directory, self.ledger)

    def close(self) -> None:
        """Drain pending notifications and close the database."""
        self.notifier.shutdown(wait=True)
        self.store.close()


def build_application(settings: Optional[Settings] = None) -> Application:
    """Build and connect every collaborator described by ``settings``."""
    settings = settings or Settings()
    configure_logging(settings.log_level)

    store = SQLiteRecordStore(settings.database_path)
    ledger = AuditLedger(store, list_limit=settings.audit_list_limit)
    directory = StaffDirectory(store, ledger, settings.security)

    notifier = NotificationGateway(
        build_transport(settings.notifications),
        max_workers=settings.notifications.max_workers,
    )

    enrichment: Optional[EnrichmentGateway] = None
    if settings.enrichment.api_key:
        enrichment = AnthropicEnrichmentGateway(settings.enrichment)
    else:
        logger.warning("No enrichment API key configured; drug analysis is disabled")

    engine = LifecycleEngine(
        store,
        ledger,
        notifier=notifier,
        enrichment=enrichment,
        attachment_max_bytes=settings.attachment_max_bytes,
    )

    admin = settings.security.bootstrap_admin
    if admin is not None:
        created = directory.bootstrap_admin(admin.name, admin.username, admin.password)
        if created is not None:
            logger.info("Created bootstrap administrator id=%s", created.id)

    logger.info(
        "PharmDesk ready (database=%s, notifications=%s, enrichment=%s)",
        settings.database_path,
        settings.notifications.mode,
        "on" if enrichment else "off",
    )
    return Application(
        settings=settings,
        store=store,
        ledger=ledger,
        directory=directory,
        notifier=notifier,
        enrichment=enrichment,
        engine=engine,
    )
