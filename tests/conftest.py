"""Global test fixtures and shared test infrastructure.

Provides:
- Environment variable defaults (must be set before any app import)
- FakeDocumentAdapter / FakeStorageAdapter matching the adapter interfaces
- RecordingNotifier standing in for the messaging gateway
- Ledger row builders and a fixed clock
- Shared pytest fixtures wiring the fakes into a LifecycleOrchestrator
"""

from __future__ import annotations

import os
import tempfile

# Environment defaults must be set before importing the app, which triggers
# pydantic Settings validation on import.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LEDGER_PROVIDER", "memory")
os.environ.setdefault("STORAGE_PROVIDER", "local")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("LOCAL_UPLOAD_DIR", tempfile.mkdtemp(prefix="loan-uploads-"))

from datetime import datetime
from pathlib import Path
from typing import Any, Mapping
from zoneinfo import ZoneInfo

import pytest

from app.core.settings import settings
from app.services.collaborators import Collaborators
from app.services.documents.adapter import DocumentAdapter
from app.services.documents.renderer import DocumentRenderer
from app.services.ledger.adapter import InMemoryLedgerAdapter
from app.services.ledger.regions import APPROVAL_REGION, LOAN_REGION
from app.services.loan_lifecycle import LifecycleOrchestrator
from app.services.storage.adapter import StorageAdapter


FIXED_NOW = datetime(2025, 1, 10, 9, 30, tzinfo=ZoneInfo("Asia/Jakarta"))

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32

LOAN_TEMPLATE = (
    "Formulir Peminjaman <<NMR>> tanggal <<TGL>>\n"
    "Nama: <<NAMA>> Kelas: <<KLS>> NIS: <<NIS>> WA: <<NO>>\n"
    "Alat: <<NMALT>> sejumlah <<JML>>\n"
    "Pinjam <<TGLPMJ>> kembali <<TGLPGN>> selama <<LMPJM>>\n"
    "Keterangan: <<KET>>\n"
    "<<FOTO>>"
)
APPROVAL_TEMPLATE = LOAN_TEMPLATE + "\nDisetujui <<TGLPS>> status <<STS>> oleh <<YNG>>"
RETURN_TEMPLATE = (
    LOAN_TEMPLATE
    + "\nDikembalikan <<TGLBALI>> kondisi <<KNDS>> catatan <<KETALT>>"
    + "\nPersetujuan <<TGLPS>> status <<STS>> oleh <<YNG>>\n<<FOTO2>>"
)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeDocumentAdapter(DocumentAdapter):
    """Keeps documents as plain text; ``fail_steps`` names operations that raise."""

    def __init__(self, templates: Mapping[str, str] | None = None, *, fail_steps=()) -> None:
        self.provider = "fake"
        self.templates = dict(templates or {})
        self.fail_steps = set(fail_steps)
        self.documents: dict[str, str] = {}
        self.titles: dict[str, str] = {}
        self.folders: dict[str, str] = {}
        self.public: set[str] = set()
        self.images: list[tuple[str, str, str]] = []

    def _maybe_fail(self, step: str) -> None:
        if step in self.fail_steps:
            raise RuntimeError(f"{step} failed")

    def text_for(self, title_prefix: str) -> str:
        for doc_id, title in self.titles.items():
            if title.startswith(title_prefix):
                return self.documents[doc_id]
        raise KeyError(title_prefix)

    async def copy_template(self, template_id: str, title: str) -> str:
        self._maybe_fail("copy")
        doc_id = f"doc-{len(self.documents) + 1}"
        self.documents[doc_id] = self.templates.get(template_id, "")
        self.titles[doc_id] = title
        return doc_id

    def document_url(self, doc_id: str) -> str:
        return f"https://docs.test/{doc_id}"

    async def move_to_folder(self, doc_id: str, folder_id: str) -> None:
        self._maybe_fail("move")
        self.folders[doc_id] = folder_id

    async def replace_all_text(self, doc_id: str, replacements: Mapping[str, str]) -> dict[str, int]:
        self._maybe_fail("replace")
        text = self.documents[doc_id]
        changed: dict[str, int] = {}
        for token, value in replacements.items():
            changed[token] = text.count(token)
            text = text.replace(token, value)
        self.documents[doc_id] = text
        return changed

    async def find_placeholder(self, doc_id: str, token: str) -> int | None:
        index = self.documents[doc_id].find(token)
        return None if index == -1 else index

    async def replace_with_image(self, doc_id, index, token, image_uri, width_pt, height_pt) -> None:
        self._maybe_fail("image")
        text = self.documents[doc_id]
        self.documents[doc_id] = text[:index] + f"[image {image_uri}]" + text[index + len(token):]
        self.images.append((doc_id, token, image_uri))

    async def grant_public_read(self, file_id: str) -> None:
        self._maybe_fail("share")
        self.public.add(file_id)

    async def export_pdf(self, doc_id: str) -> bytes:
        self._maybe_fail("export")
        return self.documents[doc_id].encode("utf-8")


class FakeStorageAdapter(StorageAdapter):
    def __init__(self, *, fail_content_types=()) -> None:
        self.provider = "fake"
        self.fail_content_types = set(fail_content_types)
        self.uploads: list[dict[str, Any]] = []

    async def upload_public(self, local_path, name, content_type, folder_id=None) -> str:
        if content_type in self.fail_content_types:
            raise RuntimeError("upload rejected")
        self.uploads.append(
            {
                "name": name,
                "content": Path(local_path).read_bytes(),
                "content_type": content_type,
                "folder_id": folder_id,
            }
        )
        return f"https://files.test/{folder_id or 'public'}/{name}"

    def pdf_texts(self) -> list[str]:
        return [
            upload["content"].decode("utf-8")
            for upload in self.uploads
            if upload["content_type"] == "application/pdf"
        ]


class RecordingNotifier:
    def __init__(self, result: bool = True) -> None:
        self.result = result
        self.sent: list[tuple[str, str]] = []

    @property
    def addresses(self) -> list[str]:
        return [address for address, _ in self.sent]

    async def send(self, address: str, text: str) -> bool:
        self.sent.append((address, text))
        return self.result


# ---------------------------------------------------------------------------
# Ledger row builders
# ---------------------------------------------------------------------------


def loan_row(**overrides) -> list[Any]:
    fields = dict(
        id="0001",
        submitted_at="2025-01-09",
        borrower_name="Siti Aminah",
        class_name="XI IPA 2",
        student_id="12345",
        phone="6281234567890",
        equipment_name="Proyektor",
        quantity="2",
        loan_date="2025-01-10",
        due_date="2025-01-12",
        note="Untuk presentasi",
        duration="2 hari",
        photo_url="https://files.test/photos/loan.png",
        pdf_url="https://files.test/pdf/loan.pdf",
        doc_url="https://docs.test/loan",
        admin_note="",
        approval_status="Pending",
    )
    fields.update(overrides)
    return LOAN_REGION.to_row(fields)


def approval_row(**overrides) -> list[Any]:
    fields = dict(
        id="0001",
        recorded_at="2025-01-11",
        borrower_name="Siti Aminah",
        approver_name="Pak Sebastian",
        loan_id="0001",
        decision="Disetujui",
    )
    fields.update(overrides)
    return APPROVAL_REGION.to_row(fields)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def templates(monkeypatch) -> dict[str, str]:
    monkeypatch.setattr(settings, "loan_template_id", "tpl-loan")
    monkeypatch.setattr(settings, "approval_template_id", "tpl-approval")
    monkeypatch.setattr(settings, "return_template_id", "tpl-return")
    return {
        "tpl-loan": LOAN_TEMPLATE,
        "tpl-approval": APPROVAL_TEMPLATE,
        "tpl-return": RETURN_TEMPLATE,
    }


@pytest.fixture
def ledger() -> InMemoryLedgerAdapter:
    return InMemoryLedgerAdapter()


@pytest.fixture
def documents(templates) -> FakeDocumentAdapter:
    return FakeDocumentAdapter(templates)


@pytest.fixture
def storage() -> FakeStorageAdapter:
    return FakeStorageAdapter()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def staging_path(tmp_path) -> Path:
    return tmp_path / "staging"


@pytest.fixture
def collaborators(ledger, documents, storage, notifier, staging_path) -> Collaborators:
    renderer = DocumentRenderer(documents, storage, staging_dir=staging_path)
    return Collaborators(ledger=ledger, renderer=renderer, storage=storage, notifier=notifier)


@pytest.fixture
def orchestrator(collaborators) -> LifecycleOrchestrator:
    return LifecycleOrchestrator(lambda: collaborators, clock=lambda: FIXED_NOW)


@pytest.fixture
def staged_photo(tmp_path) -> Path:
    path = tmp_path / "uploads" / "1736476200000000000_alat.png"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(PNG_BYTES)
    return path
