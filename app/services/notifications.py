from __future__ import annotations

import logging
from datetime import datetime
from zoneinfo import ZoneInfo

import httpx

from app.core.settings import settings

logger = logging.getLogger(__name__)


def salutation(hour: int) -> str:
    if hour < 11:
        return "Selamat pagi"
    if hour < 15:
        return "Selamat siang"
    if hour < 18:
        return "Selamat sore"
    return "Selamat malam"


def local_now(tz_name: str | None = None) -> datetime:
    return datetime.now(ZoneInfo(tz_name or settings.timezone))


def current_salutation(now: datetime | None = None) -> str:
    return salutation((now or local_now()).hour)


def loan_submitted_message(
    greeting: str,
    borrower_name: str,
    equipment_name: str,
    quantity: int,
    loan_date: str,
    due_date: str,
    pdf_url: str,
) -> str:
    return f"""{greeting} *{borrower_name}* 👋

Terima kasih telah mengajukan izin pinjam alat dengan detail berikut:

🛠️ *Nama Alat*   : _{equipment_name}_
📦 *Jumlah Alat* : _{quantity}_
📅 *Tgl Pinjam*  : _{loan_date}_
📆 *Tgl Kembali* : _{due_date}_

📄 *Berikut adalah dokumen peminjaman alat*: {pdf_url}

⏳ Mohon tunggu persetujuan. Izin akan dikirim melalui WA ini.

🙏 Terima kasih."""


def loan_request_approver_message(
    greeting: str,
    borrower_name: str,
    equipment_name: str,
    quantity: int,
    loan_date: str,
    due_date: str,
    pdf_url: str,
    approval_link: str,
    loan_id: str,
) -> str:
    return f"""{greeting} Bapak/Ibu

{borrower_name} telah mengajukan alat sebagai berikut :
🛠️Nama Alat	: {equipment_name}
📦Jml Alat	: {quantity}
📅Tgl pinjam   : {loan_date}
📅Tgl kembali  : {due_date}

📄Berikut adalah dokumen peminjaman alat: {pdf_url}

Mohon dapat memberikan persetujuan peminjaman alat melalui link berikut:
{approval_link}

🆔Untuk isian ID Peminjaman, silakan masukkan: {loan_id} ✅

Terima kasih 🙏
"""


def approval_decision_message(
    greeting: str,
    borrower_name: str,
    equipment_name: str,
    quantity: int,
    loan_date: str,
    due_date: str,
    decision: str,
    approver: str,
    return_form_link: str,
    document_url: str,
) -> str:
    return f"""{greeting} {borrower_name}

Pengajuan peminjaman alat berikut:

Nama Alat       : {equipment_name}
Jumlah Alat     : {quantity}
Tgl Pinjam      : {loan_date}
Tgl Harus Kembali : {due_date}
Status Persetujuan : {decision}
Pemberi ijin    : Bapak/Ibu {approver}

Silahkan gunakan alat dengan baik.
Jika sudah selesai digunakan silahkan isi formulir pengembalian alat melalui link berikut: {return_form_link}

Dokumen persetujuan:
{document_url}

Terima Kasih 🙏"""


def approval_processed_approver_message(
    greeting: str,
    approver: str,
    loan_id: str,
    borrower_name: str,
    decision: str,
    document_url: str,
) -> str:
    return f"""{greeting} Bapak/Ibu {approver}

Permohonan persetujuan dengan ID {loan_id} dari {borrower_name} telah diproses dengan status: {decision}.

📄 Dokumen persetujuan: {document_url}

Terima kasih."""


def return_received_message(
    greeting: str,
    borrower_name: str,
    equipment_name: str,
    quantity: int,
    loan_date: str,
    due_date: str,
    condition: str,
    pdf_url: str,
) -> str:
    return f"""{greeting} *{borrower_name}* 👋

Terima kasih telah melakukan pengembalian alat dengan detail berikut:

🛠️ *Nama Alat*   : _{equipment_name}_
📦 *Jumlah Alat* : _{quantity}_
📅 *Tgl Pinjam*  : _{loan_date}_
📆 *Tgl Kembali* : _{due_date}_
📋 *Kondisi Alat*: _{condition}_

📄 *Dokumen Pengembalian*: {pdf_url}

🙏 Terima kasih."""


def return_reported_approver_message(
    greeting: str,
    approver_name: str,
    borrower_name: str,
    equipment_name: str,
    quantity: int,
    loan_date: str,
    due_date: str,
    returned_on: str,
    condition: str,
    note: str,
    pdf_url: str,
) -> str:
    return f"""{greeting} {approver_name}

Melaporkan, {borrower_name} telah mengembalikan alat berikut:

Nama Alat       : {equipment_name}
Jumlah Alat     : {quantity}
Tgl Pinjam       : {loan_date}
Tgl Harus Kembali   : {due_date}
Tgl Kembali     : {returned_on}
Kondisi Alat     : {condition}
Keterangan      : {note}

Berikut dokumen pengembalian alat:
{pdf_url}

Terima Kasih 🙏
"""


class NotificationDispatcher:
    """Best-effort sender for the WhatsApp gateway.

    ``send`` never raises: a transport error or a non-2xx answer is logged and
    reported as ``False``. There is no retry.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        sender: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout
        self._transport = transport

    async def send(self, address: str, text: str) -> bool:
        if not address:
            logger.warning("Skipping notification without an address")
            return False
        payload = {
            "api_key": self.api_key,
            "sender": self.sender,
            "number": address,
            "message": text,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("Notification to %s failed: %s", address, exc)
            return False
        if not response.is_success:
            logger.warning(
                "Notification to %s rejected by gateway: %s %s",
                address,
                response.status_code,
                response.reason_phrase,
            )
            return False
        logger.info("Notification sent to %s", address)
        return True


def build_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher(
        settings.messaging_url,
        settings.messaging_api_key,
        settings.messaging_sender or settings.approver_no,
        timeout=settings.messaging_timeout_seconds,
    )
