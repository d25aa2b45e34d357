"""Submit, approve and return pipelines over the loan ledger.

Each pipeline builds its own collaborators, and ordinals are allocated
through the shared :class:`OrdinalSequencer` and committed with a
compare-and-append write. Photo uploads, document relocation, image
placement and notifications are best-effort; everything else aborts the
pipeline with a :class:`LoanServiceError`.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

from app.core.errors import OrdinalConflict, RecordNotFound
from app.core.settings import settings
from app.schemas.loan import (
    ApprovalDecision,
    LoanSubmission,
    PipelineStage,
    ReturnReport,
)
from app.services import notifications as messages
from app.services.collaborators import Collaborators, build_collaborators
from app.services.documents.renderer import ImagePlacement, RenderedDocument
from app.services.ledger.adapter import LedgerAdapter
from app.services.ledger.identity import (
    LedgerIdentityResolver,
    OrdinalSequencer,
    ResolvedRow,
    format_ordinal,
    normalize_record_id,
)
from app.services.ledger.regions import APPROVAL_REGION, LOAN_REGION, RETURN_REGION, Region
from app.services.local_uploads import content_type_for, discard
from app.services.phone import normalize_phone
from app.services.storage.adapter import StorageAdapter

logger = logging.getLogger(__name__)

LOAN_KIND = "Peminjaman"
APPROVAL_KIND = "Approval"
RETURN_KIND = "Pengembalian"

LOAN_PHOTO_TOKEN = "<<FOTO>>"
RETURN_PHOTO_TOKEN = "<<FOTO2>>"

PENDING_STATUS = "Pending"

LEDGER_DATE = "%Y-%m-%d"
LEDGER_TIMESTAMP = "%Y-%m-%d %H:%M:%S"
DOCUMENT_DATE = "%d %B %Y"
DOCUMENT_TIMESTAMP = "%d %B %Y %H:%M"


def parse_quantity(raw: Any) -> int:
    """Lenient integer parse: anything unparseable or negative counts as 0."""
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return 0
    return max(value, 0)


def loan_duration_days(loan_date: str, due_date: str) -> int:
    """Whole days from loan to due date; unparseable dates or a due date before the loan date give 0."""
    try:
        start = datetime.strptime(loan_date.strip(), LEDGER_DATE)
        end = datetime.strptime(due_date.strip(), LEDGER_DATE)
    except (AttributeError, ValueError):
        return 0
    return max((end - start).days, 0)


def format_duration(days: int) -> str:
    return f"{days} hari"


def _loan_ordinal(loan: ResolvedRow) -> int:
    normalized = normalize_record_id(loan.get("id"))
    if normalized.isdigit():
        return int(normalized)
    return loan.row_number - LOAN_REGION.header_offset


def _loan_replacements(loan: dict[str, Any], ordinal: int, now: datetime) -> dict[str, str]:
    return {
        "<<NMR>>": format_ordinal(ordinal),
        "<<TGL>>": now.strftime(DOCUMENT_DATE),
        "<<NAMA>>": loan.get("borrower_name", ""),
        "<<KLS>>": loan.get("class_name", ""),
        "<<NIS>>": loan.get("student_id", ""),
        "<<NO>>": loan.get("phone", ""),
        "<<NMALT>>": loan.get("equipment_name", ""),
        "<<JML>>": str(parse_quantity(loan.get("quantity", 0))),
        "<<TGLPMJ>>": loan.get("loan_date", ""),
        "<<TGLPGN>>": loan.get("due_date", ""),
        "<<LMPJM>>": format_duration(
            loan_duration_days(loan.get("loan_date", ""), loan.get("due_date", ""))
        ),
        "<<KET>>": loan.get("note", ""),
    }


class LifecycleOrchestrator:
    def __init__(
        self,
        collaborator_factory: Callable[[], Collaborators] = build_collaborators,
        *,
        resolver: LedgerIdentityResolver | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.collaborator_factory = collaborator_factory
        self.resolver = resolver or LedgerIdentityResolver()
        self.sequencer = OrdinalSequencer(self.resolver)
        self.clock = clock or messages.local_now

    async def run(self, stage: PipelineStage | str, payload: dict[str, Any]) -> str:
        """Execute one journaled pipeline; ``payload`` is updated in place with progress."""
        stage = PipelineStage(stage)
        if stage is PipelineStage.SUBMIT:
            model = LoanSubmission.model_validate(payload)
            handler = self.submit
        elif stage is PipelineStage.APPROVE:
            model = ApprovalDecision.model_validate(payload)
            handler = self.approve
        else:
            model = ReturnReport.model_validate(payload)
            handler = self.process_return
        try:
            return await handler(model)
        finally:
            payload.update(model.model_dump())

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def submit(self, submission: LoanSubmission) -> str:
        collaborators = self.collaborator_factory()
        photo_url = await self._store_photo(collaborators.storage, submission)
        now = self.clock()
        prefix = settings.country_prefix
        address = normalize_phone(submission.phone, prefix)

        fields: dict[str, Any] = {
            "submitted_at": now.strftime(LEDGER_DATE),
            "borrower_name": submission.borrower_name,
            "class_name": submission.class_name,
            "student_id": submission.student_id,
            "phone": address or submission.phone,
            "equipment_name": submission.equipment_name,
            "quantity": submission.quantity,
            "loan_date": submission.loan_date,
            "due_date": submission.due_date,
            "note": submission.note,
            "duration": format_duration(
                loan_duration_days(submission.loan_date, submission.due_date)
            ),
            "photo_url": photo_url,
            "admin_note": "",
            "approval_status": PENDING_STATUS,
        }
        rendered: dict[str, RenderedDocument] = {}

        async def prepare(ordinal: int) -> list[Any]:
            document = await collaborators.renderer.render(
                LOAN_KIND,
                settings.loan_template_id,
                ordinal,
                submission.borrower_name,
                _loan_replacements({**fields, "phone": submission.phone}, ordinal, now),
                images=[ImagePlacement(LOAN_PHOTO_TOKEN, photo_url)],
            )
            rendered["document"] = document
            return LOAN_REGION.to_row(
                {
                    **fields,
                    "id": format_ordinal(ordinal),
                    "pdf_url": document.pdf_url,
                    "doc_url": document.doc_url,
                },
                through="approval_status",
            )

        ordinal = await self._allocate_and_commit(collaborators.ledger, LOAN_REGION, prepare)
        loan_id = format_ordinal(ordinal)
        document = rendered["document"]
        logger.info("Loan %s recorded for %s", loan_id, submission.borrower_name)

        greeting = messages.current_salutation(now)
        await self._notify(
            collaborators,
            address,
            messages.loan_submitted_message(
                greeting,
                submission.borrower_name,
                submission.equipment_name,
                submission.quantity,
                submission.loan_date,
                submission.due_date,
                document.pdf_url,
            ),
            role="submitter",
        )
        await self._notify(
            collaborators,
            normalize_phone(settings.approver_no, prefix),
            messages.loan_request_approver_message(
                greeting,
                submission.borrower_name,
                submission.equipment_name,
                submission.quantity,
                submission.loan_date,
                submission.due_date,
                document.pdf_url,
                settings.approval_link,
                loan_id,
            ),
            role="approver",
        )
        return loan_id

    # ------------------------------------------------------------------
    # Approve
    # ------------------------------------------------------------------

    async def approve(self, request: ApprovalDecision) -> str:
        """Record a decision on a loan.

        The loan's status cells (approval_status, approved_at, approved_by) are
        always written. With ``generate_document`` the approval form is also
        rendered, an approval row is appended and both parties are notified;
        the status-only variant touches nothing else.
        """
        collaborators = self.collaborator_factory()
        ledger = collaborators.ledger
        loan = await self.resolver.resolve(ledger, LOAN_REGION, request.loan_id)
        now = self.clock()

        await ledger.write_range(
            LOAN_REGION.cell(LOAN_REGION.column_of("approval_status"), loan.row_number),
            [[request.decision, now.strftime(LEDGER_TIMESTAMP), request.approver]],
        )
        logger.info(
            "Loan %s marked %r by %s", loan.get("id"), request.decision, request.approver
        )
        if not request.generate_document:
            return loan.get("id")

        loan_ordinal = _loan_ordinal(loan)
        replacements = _loan_replacements(loan.fields, loan_ordinal, now)
        replacements.update(
            {
                "<<TGLPS>>": now.strftime(DOCUMENT_TIMESTAMP),
                "<<STS>>": request.decision,
                "<<YNG>>": request.approver,
            }
        )
        document = await collaborators.renderer.render(
            APPROVAL_KIND,
            settings.approval_template_id,
            loan_ordinal,
            loan.get("borrower_name"),
            replacements,
            images=[ImagePlacement(LOAN_PHOTO_TOKEN, loan.get("photo_url"))],
        )

        async def prepare(ordinal: int) -> list[Any]:
            return APPROVAL_REGION.to_row(
                {
                    "id": format_ordinal(ordinal),
                    "recorded_at": now.strftime(LEDGER_DATE),
                    "borrower_name": loan.get("borrower_name"),
                    "approver_name": request.approver,
                    "loan_id": request.loan_id,
                    "decision": request.decision,
                }
            )

        await self._allocate_and_commit(ledger, APPROVAL_REGION, prepare)

        greeting = messages.current_salutation(now)
        quantity = parse_quantity(loan.get("quantity"))
        await self._notify(
            collaborators,
            await self._submitter_address(ledger, loan),
            messages.approval_decision_message(
                greeting,
                loan.get("borrower_name"),
                loan.get("equipment_name"),
                quantity,
                loan.get("loan_date"),
                loan.get("due_date"),
                request.decision,
                request.approver,
                settings.return_form_link,
                document.pdf_url,
            ),
            role="submitter",
        )
        await self._notify(
            collaborators,
            normalize_phone(settings.approver_no, settings.country_prefix),
            messages.approval_processed_approver_message(
                greeting,
                request.approver,
                request.loan_id,
                loan.get("borrower_name"),
                request.decision,
                document.pdf_url,
            ),
            role="approver",
        )
        return loan.get("id")

    # ------------------------------------------------------------------
    # Return
    # ------------------------------------------------------------------

    async def process_return(self, report: ReturnReport) -> str:
        collaborators = self.collaborator_factory()
        ledger = collaborators.ledger
        try:
            loan = await self.resolver.resolve(ledger, LOAN_REGION, report.loan_id)
        except RecordNotFound:
            logger.error("Return for unknown loan %r, nothing recorded", report.loan_id)
            discard(report.photo_path)
            report.photo_path = None
            raise

        approval = await self._latest_approval(ledger, loan)
        return_photo_url = await self._store_photo(collaborators.storage, report)
        now = self.clock()
        loan_ordinal = _loan_ordinal(loan)
        loan_id = format_ordinal(loan_ordinal)

        replacements = _loan_replacements(loan.fields, loan_ordinal, now)
        replacements.update(
            {
                "<<TGLBALI>>": now.strftime(DOCUMENT_DATE),
                "<<KNDS>>": report.condition,
                "<<KETALT>>": report.note,
                "<<TGLPS>>": approval["approved_at"],
                "<<STS>>": approval["status"],
                "<<YNG>>": approval["approver"],
            }
        )
        document = await collaborators.renderer.render(
            RETURN_KIND,
            settings.return_template_id,
            loan_ordinal,
            loan.get("borrower_name"),
            replacements,
            images=[
                ImagePlacement(LOAN_PHOTO_TOKEN, loan.get("photo_url")),
                ImagePlacement(RETURN_PHOTO_TOKEN, return_photo_url),
            ],
        )

        async def prepare(ordinal: int) -> list[Any]:
            return RETURN_REGION.to_row(
                {
                    "loan_id": loan_id,
                    "borrower_name": loan.get("borrower_name"),
                    "returned_at": now.strftime(LEDGER_DATE),
                    "condition": report.condition,
                    "note": report.note,
                    "return_photo_url": return_photo_url,
                }
            )

        await self._allocate_and_commit(ledger, RETURN_REGION, prepare)
        logger.info("Return of loan %s recorded", loan_id)

        greeting = messages.current_salutation(now)
        quantity = parse_quantity(loan.get("quantity"))
        await self._notify(
            collaborators,
            await self._submitter_address(ledger, loan),
            messages.return_received_message(
                greeting,
                loan.get("borrower_name"),
                loan.get("equipment_name"),
                quantity,
                loan.get("loan_date"),
                loan.get("due_date"),
                report.condition,
                document.pdf_url,
            ),
            role="submitter",
        )
        await self._notify(
            collaborators,
            normalize_phone(settings.approver_no, settings.country_prefix),
            messages.return_reported_approver_message(
                greeting,
                approval["approver"] or settings.approver_fallback_name,
                loan.get("borrower_name"),
                loan.get("equipment_name"),
                quantity,
                loan.get("loan_date"),
                loan.get("due_date"),
                now.strftime(DOCUMENT_DATE),
                report.condition,
                report.note,
                document.pdf_url,
            ),
            role="approver",
        )
        return loan_id

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _allocate_and_commit(
        self,
        ledger: LedgerAdapter,
        region: Region,
        prepare: Callable[[int], Awaitable[Sequence[Any]]],
    ) -> int:
        retries = max(settings.ordinal_conflict_retries, 0)
        attempt = 0
        while True:
            ordinal = await self.sequencer.next(ledger, region)
            committed = False
            try:
                values = await prepare(ordinal)
                await self.resolver.commit_row(ledger, region, ordinal, values)
                committed = True
            except OrdinalConflict:
                attempt += 1
                if attempt > retries:
                    raise
                logger.warning(
                    "%s ordinal %s already taken, retrying (%d/%d)",
                    region.name,
                    format_ordinal(ordinal),
                    attempt,
                    retries,
                )
            finally:
                if committed:
                    self.sequencer.confirm(region, ordinal)
                else:
                    self.sequencer.release(region, ordinal)
            if committed:
                return ordinal

    async def _latest_approval(self, ledger: LedgerAdapter, loan: ResolvedRow) -> dict[str, str]:
        try:
            record = await self.resolver.resolve(
                ledger,
                APPROVAL_REGION,
                loan.get("id"),
                key_column=APPROVAL_REGION.column_of("loan_id"),
                latest=True,
            )
        except RecordNotFound:
            logger.info("No approval row for loan %s, using its status cells", loan.get("id"))
            return {
                "approved_at": loan.get("approved_at"),
                "status": loan.get("approval_status"),
                "approver": loan.get("approved_by"),
            }
        return {
            "approved_at": record.get("recorded_at"),
            "status": record.get("decision"),
            "approver": record.get("approver_name"),
        }

    async def _submitter_address(self, ledger: LedgerAdapter, loan: ResolvedRow) -> str:
        prefix = settings.country_prefix
        address = normalize_phone(loan.get("phone"), prefix)
        if address:
            return address
        # Duplicate rows for the same id may carry a usable number.
        for row_number in await self.resolver.matching_rows(ledger, LOAN_REGION, loan.get("id")):
            if row_number == loan.row_number:
                continue
            other = await self.resolver.read_row(ledger, LOAN_REGION, row_number, ["phone"])
            address = normalize_phone(other.get("phone"), prefix)
            if address:
                logger.info("Using phone from loan row %d for %s", row_number, loan.get("id"))
                return address
        return ""

    async def _store_photo(self, storage: StorageAdapter, holder: LoanSubmission | ReturnReport) -> str:
        if holder.photo_url is not None:
            return holder.photo_url
        path = holder.photo_path
        url = ""
        if path and Path(path).exists():
            try:
                url = await storage.upload_public(
                    Path(path),
                    Path(path).name,
                    content_type_for(path),
                    settings.photo_folder_id or None,
                )
                logger.info("Photo stored at %s", url)
            except Exception as exc:
                logger.warning("Photo upload failed, continuing without it: %s", exc)
            finally:
                discard(path)
        elif path:
            logger.warning("Staged photo %s is gone, continuing without it", path)
        holder.photo_path = None
        holder.photo_url = url
        return url

    async def _notify(self, collaborators: Collaborators, address: str, text: str, *, role: str) -> bool:
        if not address:
            logger.warning("No valid %s address, notification skipped", role)
            return False
        return await collaborators.notifier.send(address, text)
