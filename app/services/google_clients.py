from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

from app.core.settings import settings

logger = logging.getLogger(__name__)

SCOPES = (
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/documents",
)


@dataclass(slots=True)
class GoogleServices:
    sheets: Any
    drive: Any
    docs: Any


def load_credentials(credentials_file: str | None = None):
    # Lazy import to avoid requiring the dependency unless Google is used
    import google.auth
    from google.oauth2 import service_account

    path = credentials_file if credentials_file is not None else settings.google_credentials_file
    if path and os.path.exists(path):
        return service_account.Credentials.from_service_account_file(path, scopes=list(SCOPES))
    logger.info("Credentials file %r not found, using application default credentials", path)
    credentials, _ = google.auth.default(scopes=list(SCOPES))
    return credentials


def build_services(credentials=None) -> GoogleServices:
    """Discovery clients for Sheets, Drive and Docs.

    The underlying HTTP transport is not thread-safe, so every pipeline builds
    its own set.
    """
    from googleapiclient.discovery import build

    credentials = credentials or load_credentials()
    return GoogleServices(
        sheets=build("sheets", "v4", credentials=credentials, cache_discovery=False),
        drive=build("drive", "v3", credentials=credentials, cache_discovery=False),
        docs=build("docs", "v1", credentials=credentials, cache_discovery=False),
    )
