from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from fastapi.responses import PlainTextResponse

from app.api import deps
from app.core.errors import PipelineBusy
from app.core.settings import settings
from app.schemas.loan import (
    ApprovalDecision,
    LoanSubmission,
    PipelineStage,
    ReturnReport,
)
from app.services.collaborators import staging_dir
from app.services.loan_lifecycle import LifecycleOrchestrator, parse_quantity
from app.services.local_uploads import PHOTO_EXTENSIONS, StagedFile, discard, stage_upload
from app.services.pipeline_queue import PipelineSupervisor

logger = logging.getLogger(__name__)

router = APIRouter(tags=["loans"])

APPROVAL_FIELDS_REQUIRED = "ID Pinjam, Approver, dan Status Persetujuan harus diisi"
RETURN_ID_REQUIRED = "ID Peminjam harus diisi"


async def _stage_photo(foto: UploadFile | None) -> StagedFile | None:
    if foto is None:
        return None
    try:
        return await stage_upload(
            foto,
            staging_dir(),
            allowed_extensions=PHOTO_EXTENSIONS,
            max_size_bytes=settings.max_upload_bytes,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


async def _enqueue(
    supervisor: PipelineSupervisor,
    stage: PipelineStage,
    payload: dict,
    staged: StagedFile | None,
    reference: str | None = None,
) -> str:
    try:
        return await supervisor.enqueue(stage, payload, reference=reference)
    except PipelineBusy:
        discard(staged.path if staged else None)
        raise


def _accepted(message: str, run_id: str) -> PlainTextResponse:
    return PlainTextResponse(
        message,
        status_code=status.HTTP_202_ACCEPTED,
        headers={"X-Pipeline-Run-Id": run_id},
    )


def _approval_decision(id_pinjam: str, approver: str, decision: str, generate_document: bool) -> ApprovalDecision:
    id_pinjam, approver, decision = id_pinjam.strip(), approver.strip(), decision.strip()
    if not (id_pinjam and approver and decision):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=APPROVAL_FIELDS_REQUIRED)
    return ApprovalDecision(
        loan_id=id_pinjam,
        approver=approver,
        decision=decision,
        generate_document=generate_document,
    )


@router.post(
    "/loans",
    status_code=status.HTTP_202_ACCEPTED,
    response_class=PlainTextResponse,
    summary="Submit an equipment loan request",
)
async def submit_loan(
    nama: str = Form(default=""),
    kelas: str = Form(default=""),
    nis: str = Form(default=""),
    no_wa: str = Form(default="", alias="noWa"),
    nama_alat: str = Form(default="", alias="namaAlat"),
    jumlah_alat: str = Form(default="", alias="jumlahAlat"),
    tanggal_pinjam: str = Form(default="", alias="tanggalPinjam"),
    tanggal_kembali: str = Form(default="", alias="tanggalKembali"),
    keterangan: str = Form(default=""),
    foto: UploadFile | None = File(default=None),
    supervisor: PipelineSupervisor = Depends(deps.get_supervisor),
) -> PlainTextResponse:
    staged = await _stage_photo(foto)
    submission = LoanSubmission(
        borrower_name=nama.strip(),
        class_name=kelas.strip(),
        student_id=nis.strip(),
        phone=no_wa.strip(),
        equipment_name=nama_alat.strip(),
        quantity=parse_quantity(jumlah_alat),
        loan_date=tanggal_pinjam.strip(),
        due_date=tanggal_kembali.strip(),
        note=keterangan.strip(),
        photo_path=str(staged.path) if staged else None,
    )
    run_id = await _enqueue(supervisor, PipelineStage.SUBMIT, submission.model_dump(), staged)
    return _accepted("✅ Data berhasil diterima dan sedang diproses", run_id)


@router.post(
    "/loans/approve",
    response_class=PlainTextResponse,
    summary="Record an approval decision on the loan row only",
)
async def approve_loan_status(
    id_pinjam: str = Form(default="", alias="idPinjam"),
    approver: str = Form(default=""),
    status_persetujuan: str = Form(default="", alias="statusPersetujuan"),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
) -> PlainTextResponse:
    decision = _approval_decision(id_pinjam, approver, status_persetujuan, generate_document=False)
    await orchestrator.approve(decision)
    return PlainTextResponse("✅ Approval berhasil dikirim")


@router.post(
    "/approvals",
    status_code=status.HTTP_202_ACCEPTED,
    response_class=PlainTextResponse,
    summary="Approve a loan, generate the approval form and notify both parties",
)
async def request_approval(
    id_pinjam: str = Form(default="", alias="idPinjam"),
    approver: str = Form(default=""),
    status_persetujuan: str = Form(default="", alias="statusPersetujuan"),
    supervisor: PipelineSupervisor = Depends(deps.get_supervisor),
) -> PlainTextResponse:
    """Like POST /loans/approve this also overwrites the loan row's status cells, then appends an approval row."""
    decision = _approval_decision(id_pinjam, approver, status_persetujuan, generate_document=True)
    run_id = await _enqueue(
        supervisor, PipelineStage.APPROVE, decision.model_dump(), None, reference=decision.loan_id
    )
    return _accepted("✅ Approval diterima dan sedang diproses", run_id)


@router.post(
    "/returns",
    status_code=status.HTTP_202_ACCEPTED,
    response_class=PlainTextResponse,
    summary="Report the return of borrowed equipment",
)
async def submit_return(
    id_peminjam: str = Form(default="", alias="idPeminjam"),
    kondisi_alat: str = Form(default="", alias="kondisiAlat"),
    keterangan_pengembalian: str = Form(default="", alias="keteranganPengembalian"),
    foto: UploadFile | None = File(default=None),
    supervisor: PipelineSupervisor = Depends(deps.get_supervisor),
) -> PlainTextResponse:
    loan_id = id_peminjam.strip()
    if not loan_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=RETURN_ID_REQUIRED)
    staged = await _stage_photo(foto)
    report = ReturnReport(
        loan_id=loan_id,
        condition=kondisi_alat.strip(),
        note=keterangan_pengembalian.strip(),
        photo_path=str(staged.path) if staged else None,
    )
    run_id = await _enqueue(
        supervisor, PipelineStage.RETURN, report.model_dump(), staged, reference=loan_id
    )
    return _accepted("✅ Data pengembalian berhasil diterima dan sedang diproses", run_id)
