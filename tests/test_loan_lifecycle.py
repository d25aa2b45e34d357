import pytest

from app.core.errors import OrdinalConflict, RecordNotFound, RenderError
from app.core.settings import settings
from app.schemas.loan import ApprovalDecision, LoanSubmission, PipelineStage, ReturnReport
from app.services.collaborators import Collaborators
from app.services.documents.renderer import DocumentRenderer
from app.services.ledger.adapter import InMemoryLedgerAdapter
from app.services.ledger.regions import APPROVAL_REGION, LOAN_REGION, RETURN_REGION
from app.services.loan_lifecycle import (
    LifecycleOrchestrator,
    format_duration,
    loan_duration_days,
    parse_quantity,
)

from conftest import FIXED_NOW, FakeStorageAdapter, approval_row, loan_row


class StaleExtentLedger(InMemoryLedgerAdapter):
    """Reports the loan region as empty for the first extent read, like a concurrent writer."""

    def __init__(self, sheets=None, stale_reads: int = 1):
        super().__init__(sheets)
        self.stale_reads = stale_reads

    async def read_range(self, a1_range):
        if a1_range == LOAN_REGION.column_range(LOAN_REGION.count_column) and self.stale_reads:
            self.stale_reads -= 1
            return []
        return await super().read_range(a1_range)


async def _fields(ledger, region, row_number) -> dict[str, str]:
    values = await ledger.read_range(region.row_range(row_number))
    return region.to_fields(values[0] if values else [])


def _submission(**overrides) -> LoanSubmission:
    data = dict(
        borrower_name="Siti Aminah",
        class_name="XI IPA 2",
        student_id="12345",
        phone="081234567890",
        equipment_name="Proyektor",
        quantity=3,
        loan_date="2025-01-10",
        due_date="2025-01-15",
        note="Untuk presentasi",
    )
    data.update(overrides)
    return LoanSubmission(**data)


@pytest.mark.parametrize(
    "raw, expected",
    [("3", 3), (" 12 ", 12), ("abc", 0), ("", 0), (None, 0), ("-2", 0), ("2.5", 0)],
)
def test_parse_quantity_is_lenient(raw, expected) -> None:
    assert parse_quantity(raw) == expected


def test_loan_duration() -> None:
    assert loan_duration_days("2025-01-10", "2025-01-15") == 5
    assert loan_duration_days("2025-01-15", "2025-01-10") == 0
    assert loan_duration_days("10/01/2025", "2025-01-15") == 0
    assert format_duration(5) == "5 hari"


# ---------------------------------------------------------------------------
# Submit
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_submit_writes_loan_row_and_notifies_both(orchestrator, ledger, storage, notifier) -> None:
    loan_id = await orchestrator.submit(_submission())

    assert loan_id == "0001"
    row = await _fields(ledger, LOAN_REGION, 5)
    assert row["id"] == "0001"
    assert row["submitted_at"] == "2025-01-10"
    assert row["phone"] == "6281234567890"
    assert row["quantity"] == "3"
    assert row["duration"] == "5 hari"
    assert row["approval_status"] == "Pending"
    assert row["pdf_url"].endswith("Formulir Peminjaman 0001 - Siti Aminah.pdf")
    assert row["doc_url"] == "https://docs.test/doc-1"

    [pdf_text] = storage.pdf_texts()
    assert "<<NAMA>>" not in pdf_text
    assert "Siti Aminah" in pdf_text
    assert "5 hari" in pdf_text

    assert notifier.addresses == ["6281234567890", settings.approver_no]
    submitter_text, approver_text = (text for _, text in notifier.sent)
    assert submitter_text.startswith("Selamat pagi *Siti Aminah*")
    assert "silakan masukkan: 0001" in approver_text


@pytest.mark.asyncio
async def test_submit_with_invalid_phone_only_notifies_approver(orchestrator, ledger, notifier) -> None:
    await orchestrator.submit(_submission(phone="abc"))

    row = await _fields(ledger, LOAN_REGION, 5)
    assert row["phone"] == "abc"
    assert notifier.addresses == [settings.approver_no]


@pytest.mark.asyncio
async def test_submit_appends_after_existing_rows(orchestrator, ledger) -> None:
    for row_number in (5, 6):
        await ledger.write_range(
            LOAN_REGION.cell("A", row_number), [loan_row(id=f"{row_number - 4:04d}")]
        )

    assert await orchestrator.submit(_submission()) == "0003"
    assert (await _fields(ledger, LOAN_REGION, 7))["borrower_name"] == "Siti Aminah"


@pytest.mark.asyncio
async def test_submit_uploads_photo_and_embeds_it(orchestrator, ledger, storage, documents, staged_photo) -> None:
    await orchestrator.submit(_submission(photo_path=str(staged_photo)))

    row = await _fields(ledger, LOAN_REGION, 5)
    assert row["photo_url"] == f"https://files.test/public/{staged_photo.name}"
    assert documents.images == [("doc-1", "<<FOTO>>", row["photo_url"])]
    assert not staged_photo.exists()


@pytest.mark.asyncio
async def test_submit_continues_when_photo_upload_fails(
    ledger, documents, notifier, staging_path, staged_photo
) -> None:
    storage = FakeStorageAdapter(fail_content_types={"image/png"})
    collaborators = Collaborators(
        ledger=ledger,
        renderer=DocumentRenderer(documents, storage, staging_dir=staging_path),
        storage=storage,
        notifier=notifier,
    )
    orchestrator = LifecycleOrchestrator(lambda: collaborators, clock=lambda: FIXED_NOW)

    assert await orchestrator.submit(_submission(photo_path=str(staged_photo))) == "0001"

    row = await _fields(ledger, LOAN_REGION, 5)
    assert row["photo_url"] == ""
    assert documents.images == []
    assert not staged_photo.exists()
    assert len(notifier.sent) == 2


@pytest.mark.asyncio
async def test_submit_retries_with_fresh_ordinal_on_conflict(documents, storage, notifier, staging_path) -> None:
    ledger = StaleExtentLedger({LOAN_REGION.sheet: {5: loan_row(id="0001", borrower_name="Budi")}})
    collaborators = Collaborators(
        ledger=ledger,
        renderer=DocumentRenderer(documents, storage, staging_dir=staging_path),
        storage=storage,
        notifier=notifier,
    )
    orchestrator = LifecycleOrchestrator(lambda: collaborators, clock=lambda: FIXED_NOW)

    assert await orchestrator.submit(_submission()) == "0002"

    assert (await _fields(ledger, LOAN_REGION, 5))["borrower_name"] == "Budi"
    assert (await _fields(ledger, LOAN_REGION, 6))["borrower_name"] == "Siti Aminah"
    assert sorted(documents.titles.values()) == [
        "Formulir Peminjaman 0001 - Siti Aminah",
        "Formulir Peminjaman 0002 - Siti Aminah",
    ]


@pytest.mark.asyncio
async def test_submit_gives_up_after_configured_retries(
    monkeypatch, documents, storage, notifier, staging_path
) -> None:
    monkeypatch.setattr(settings, "ordinal_conflict_retries", 0)
    ledger = StaleExtentLedger({LOAN_REGION.sheet: {5: loan_row(id="0001", borrower_name="Budi")}})
    collaborators = Collaborators(
        ledger=ledger,
        renderer=DocumentRenderer(documents, storage, staging_dir=staging_path),
        storage=storage,
        notifier=notifier,
    )
    orchestrator = LifecycleOrchestrator(lambda: collaborators, clock=lambda: FIXED_NOW)

    with pytest.raises(OrdinalConflict):
        await orchestrator.submit(_submission())

    assert (await _fields(ledger, LOAN_REGION, 5))["borrower_name"] == "Budi"
    assert notifier.sent == []

    assert await orchestrator.submit(_submission()) == "0002"
    assert await ledger.read_range(LOAN_REGION.column_range("A")) == [["0001"], ["0002"]]


@pytest.mark.asyncio
async def test_submit_aborts_when_rendering_fails(orchestrator, ledger, documents, notifier) -> None:
    documents.fail_steps.add("copy")

    with pytest.raises(RenderError):
        await orchestrator.submit(_submission())

    assert ledger.writes == []
    assert notifier.sent == []

    documents.fail_steps.clear()
    assert await orchestrator.submit(_submission()) == "0001"
    assert await ledger.read_range(LOAN_REGION.column_range("A")) == [["0001"]]


# ---------------------------------------------------------------------------
# Approve
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_status_only_approval_touches_status_cells(orchestrator, ledger, documents, notifier) -> None:
    await ledger.write_range(LOAN_REGION.cell("A", 11), [loan_row(id="0007")])

    loan_id = await orchestrator.approve(
        ApprovalDecision(loan_id="7", approver="Pak Budi", decision="Disetujui", generate_document=False)
    )

    assert loan_id == "0007"
    row = await _fields(ledger, LOAN_REGION, 11)
    assert row["approval_status"] == "Disetujui"
    assert row["approved_at"] == "2025-01-10 09:30:00"
    assert row["approved_by"] == "Pak Budi"
    assert ledger.writes[-1][0] == "'Form Peminjam'!Q11"
    assert await ledger.read_range(APPROVAL_REGION.data_range()) == []
    assert documents.documents == {}
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_approval_with_document_appends_record_and_notifies(
    orchestrator, ledger, documents, storage, notifier
) -> None:
    await ledger.write_range(LOAN_REGION.cell("A", 5), [loan_row(id="0001")])

    await orchestrator.approve(
        ApprovalDecision(loan_id="1", approver="Pak Budi", decision="Disetujui")
    )

    loan = await _fields(ledger, LOAN_REGION, 5)
    assert loan["approval_status"] == "Disetujui"
    approval = await _fields(ledger, APPROVAL_REGION, 6)
    assert approval == {
        "id": "0001",
        "recorded_at": "2025-01-10",
        "borrower_name": "Siti Aminah",
        "approver_name": "Pak Budi",
        "loan_id": "1",
        "decision": "Disetujui",
    }
    assert list(documents.titles.values()) == ["Formulir Approval 0001 - Siti Aminah"]
    assert documents.images == [("doc-1", "<<FOTO>>", "https://files.test/photos/loan.png")]
    [pdf_text] = storage.pdf_texts()
    assert "status Disetujui oleh Pak Budi" in pdf_text

    assert notifier.addresses == ["6281234567890", settings.approver_no]
    submitter_text, approver_text = (text for _, text in notifier.sent)
    assert "Status Persetujuan : Disetujui" in submitter_text
    assert settings.return_form_link in submitter_text
    assert "dengan ID 1 dari Siti Aminah" in approver_text


@pytest.mark.asyncio
async def test_repeat_approvals_append_new_rows(orchestrator, ledger) -> None:
    await ledger.write_range(LOAN_REGION.cell("A", 5), [loan_row(id="0001")])

    await orchestrator.approve(ApprovalDecision(loan_id="1", approver="Pak Budi", decision="Ditolak"))
    await orchestrator.approve(ApprovalDecision(loan_id="0001", approver="Pak Budi", decision="Disetujui"))

    assert (await _fields(ledger, APPROVAL_REGION, 6))["decision"] == "Ditolak"
    second = await _fields(ledger, APPROVAL_REGION, 7)
    assert second["id"] == "0002"
    assert second["decision"] == "Disetujui"


@pytest.mark.asyncio
async def test_approval_falls_back_to_duplicate_row_phone(orchestrator, ledger, notifier) -> None:
    await ledger.write_range(LOAN_REGION.cell("A", 5), [loan_row(id="0001", phone="-")])
    await ledger.write_range(LOAN_REGION.cell("A", 6), [loan_row(id="1", phone="0811111111")])

    await orchestrator.approve(ApprovalDecision(loan_id="0001", approver="Pak Budi", decision="Disetujui"))

    assert notifier.addresses == ["62811111111", settings.approver_no]


@pytest.mark.asyncio
async def test_approval_of_unknown_loan_writes_nothing(orchestrator, ledger, notifier) -> None:
    with pytest.raises(RecordNotFound):
        await orchestrator.approve(ApprovalDecision(loan_id="9", approver="Pak Budi", decision="Disetujui"))

    assert ledger.writes == []
    assert notifier.sent == []


# ---------------------------------------------------------------------------
# Return
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_return_joins_latest_approval_by_tolerant_id(
    orchestrator, ledger, documents, storage, notifier, staged_photo
) -> None:
    await ledger.write_range(LOAN_REGION.cell("A", 11), [loan_row(id="0007")])
    await ledger.write_range(
        APPROVAL_REGION.cell("A", 6),
        [approval_row(id="0001", loan_id="0007", approver_name="Pak Lama", decision="Ditolak")],
    )
    await ledger.write_range(
        APPROVAL_REGION.cell("A", 7),
        [approval_row(id="0002", loan_id="0007", recorded_at="2025-01-11", approver_name="Pak Sebastian")],
    )

    loan_id = await orchestrator.process_return(
        ReturnReport(loan_id="7", condition="Baik", note="Lengkap", photo_path=str(staged_photo))
    )

    assert loan_id == "0007"
    text = documents.text_for("Formulir Pengembalian 0007")
    assert "Persetujuan 2025-01-11 status Disetujui oleh Pak Sebastian" in text
    assert "kondisi Baik catatan Lengkap" in text
    assert "[image https://files.test/photos/loan.png]" in text
    assert f"[image https://files.test/public/{staged_photo.name}]" in text

    returned = await _fields(ledger, RETURN_REGION, 5)
    assert returned == {
        "loan_id": "0007",
        "borrower_name": "Siti Aminah",
        "returned_at": "2025-01-10",
        "condition": "Baik",
        "note": "Lengkap",
        "return_photo_url": f"https://files.test/public/{staged_photo.name}",
    }

    assert notifier.addresses == ["6281234567890", settings.approver_no]
    assert notifier.sent[1][1].startswith("Selamat pagi Pak Sebastian")


@pytest.mark.asyncio
async def test_return_without_approval_row_uses_loan_status(orchestrator, ledger, documents, notifier) -> None:
    await ledger.write_range(
        LOAN_REGION.cell("A", 5),
        [
            loan_row(
                id="0001",
                approval_status="Disetujui",
                approved_at="2025-01-10 10:00:00",
                approved_by="Bu Rina",
            )
        ],
    )

    await orchestrator.process_return(ReturnReport(loan_id="0001", condition="Baik"))

    text = documents.text_for("Formulir Pengembalian 0001")
    assert "Persetujuan 2025-01-10 10:00:00 status Disetujui oleh Bu Rina" in text
    assert "<<FOTO2>>" in text


@pytest.mark.asyncio
async def test_return_for_unknown_loan_aborts_quietly(orchestrator, ledger, notifier, staged_photo) -> None:
    await ledger.write_range(LOAN_REGION.cell("A", 5), [loan_row(id="0001")])
    writes_before = list(ledger.writes)

    with pytest.raises(RecordNotFound):
        await orchestrator.process_return(ReturnReport(loan_id="42", photo_path=str(staged_photo)))

    assert ledger.writes == writes_before
    assert await ledger.read_range(RETURN_REGION.data_range()) == []
    assert notifier.sent == []
    assert not staged_photo.exists()


@pytest.mark.asyncio
async def test_return_uses_fallback_approver_name(orchestrator, ledger, notifier) -> None:
    await ledger.write_range(LOAN_REGION.cell("A", 5), [loan_row(id="0001")])

    await orchestrator.process_return(ReturnReport(loan_id="1", condition="Rusak"))

    assert notifier.sent[1][1].startswith(f"Selamat pagi {settings.approver_fallback_name}")


# ---------------------------------------------------------------------------
# Journaled entry point
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_records_photo_progress_in_payload(orchestrator, staged_photo) -> None:
    payload = _submission(photo_path=str(staged_photo)).model_dump()

    reference = await orchestrator.run(PipelineStage.SUBMIT, payload)

    assert reference == "0001"
    assert payload["photo_path"] is None
    assert payload["photo_url"] == f"https://files.test/public/{staged_photo.name}"


@pytest.mark.asyncio
async def test_rerun_reuses_stored_photo(orchestrator, ledger, storage) -> None:
    payload = _submission(photo_url="https://files.test/public/earlier.png").model_dump()

    await orchestrator.run("submit", payload)

    assert (await _fields(ledger, LOAN_REGION, 5))["photo_url"] == "https://files.test/public/earlier.png"
    assert [upload["content_type"] for upload in storage.uploads] == ["application/pdf"]


@pytest.mark.asyncio
async def test_returns_for_unnamed_borrower_are_not_overwritten(ledger, collaborators) -> None:
    await ledger.write_range(LOAN_REGION.cell("A", 5), [loan_row(id="0001", borrower_name="")])
    await ledger.write_range(LOAN_REGION.cell("A", 6), [loan_row(id="0002", borrower_name="Budi")])

    first = LifecycleOrchestrator(lambda: collaborators, clock=lambda: FIXED_NOW)
    await first.process_return(ReturnReport(loan_id="1", condition="Baik", note="a"))
    # A separate process has no memory of the first return
    second = LifecycleOrchestrator(lambda: collaborators, clock=lambda: FIXED_NOW)
    await second.process_return(ReturnReport(loan_id="2", condition="Rusak", note="b"))

    rows = await ledger.read_range(RETURN_REGION.data_range())
    assert [row[0] for row in rows] == ["0001", "0002"]
    assert rows[0][1] == ""
    assert rows[1][1] == "Budi"
