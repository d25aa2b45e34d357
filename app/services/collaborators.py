from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from app.core.errors import CollaboratorUnavailable
from app.core.settings import settings
from app.services.documents.adapter import GoogleDocsAdapter
from app.services.documents.renderer import DocumentRenderer
from app.services.google_clients import GoogleServices, build_services
from app.services.ledger.adapter import (
    GoogleSheetsLedgerAdapter,
    InMemoryLedgerAdapter,
    LedgerAdapter,
)
from app.services.notifications import NotificationDispatcher, build_dispatcher
from app.services.storage.adapter import (
    GoogleDriveAdapter,
    LocalFileSystemAdapter,
    StorageAdapter,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Collaborators:
    """External clients used by one pipeline run."""

    ledger: LedgerAdapter
    renderer: DocumentRenderer
    storage: StorageAdapter
    notifier: NotificationDispatcher


@lru_cache(maxsize=1)
def get_memory_ledger() -> InMemoryLedgerAdapter:
    """Process-wide ledger for ``LEDGER_PROVIDER=memory``."""
    return InMemoryLedgerAdapter()


def staging_dir() -> Path:
    return Path(settings.local_upload_dir) / "staging"


def build_renderer(documents, storage: StorageAdapter) -> DocumentRenderer:
    return DocumentRenderer(
        documents,
        storage,
        staging_dir=staging_dir(),
        documents_folder_id=settings.documents_folder_id,
        pdf_folder_id=settings.pdf_folder_id,
        image_width_pt=settings.image_width_pt,
        image_height_pt=settings.image_height_pt,
        strict_placeholders=settings.strict_placeholders,
    )


def _build_storage(services: GoogleServices) -> StorageAdapter:
    if settings.storage_provider == "local":
        return LocalFileSystemAdapter(
            base_path=str(Path(settings.local_upload_dir) / "public"),
            base_url=settings.public_base_url,
        )
    return GoogleDriveAdapter(services.drive)


def _build_ledger(services: GoogleServices) -> LedgerAdapter:
    if settings.ledger_provider == "memory":
        return get_memory_ledger()
    return GoogleSheetsLedgerAdapter(services.sheets, settings.spreadsheet_id)


def build_collaborators() -> Collaborators:
    try:
        services = build_services()
        storage = _build_storage(services)
        collaborators = Collaborators(
            ledger=_build_ledger(services),
            renderer=build_renderer(GoogleDocsAdapter(services.drive, services.docs), storage),
            storage=storage,
            notifier=build_dispatcher(),
        )
    except Exception as exc:
        logger.error("Could not initialise external clients: %s", exc)
        raise CollaboratorUnavailable(f"External services unavailable: {exc}") from exc
    logger.debug(
        "Collaborators ready: ledger=%s storage=%s",
        collaborators.ledger.provider,
        collaborators.storage.provider,
    )
    return collaborators
