from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from app.services.ledger.a1 import cell_range, column_letter


@dataclass(frozen=True)
class Region:
    """One fixed-layout block of the loan spreadsheet.

    ``columns`` names the cells of a row from column A onwards; data rows start
    at ``first_data_row`` (everything above is header). ``count_column`` is the
    column whose extent measures how many data rows exist.
    """

    name: str
    sheet: str
    first_data_row: int
    id_column: str
    count_column: str
    columns: tuple[str, ...]

    @property
    def header_offset(self) -> int:
        return self.first_data_row - 1

    @property
    def last_column(self) -> str:
        return column_letter(len(self.columns) - 1)

    def row_for(self, ordinal: int) -> int:
        return ordinal + self.header_offset

    def column_of(self, field: str) -> str:
        return column_letter(self.columns.index(field))

    def column_range(self, column: str) -> str:
        return cell_range(self.sheet, f"{column}{self.first_data_row}", column)

    def data_range(self) -> str:
        return cell_range(self.sheet, f"A{self.first_data_row}", self.last_column)

    def row_range(self, row_number: int) -> str:
        return cell_range(self.sheet, f"A{row_number}", f"{self.last_column}{row_number}")

    def cell(self, column: str, row_number: int) -> str:
        return cell_range(self.sheet, f"{column}{row_number}")

    def to_fields(self, values: Sequence[Any]) -> dict[str, str]:
        fields: dict[str, str] = {}
        for index, name in enumerate(self.columns):
            value = values[index] if index < len(values) else ""
            fields[name] = "" if value is None else str(value).strip()
        return fields

    def to_row(self, fields: Mapping[str, Any], *, through: str | None = None) -> list[Any]:
        end = self.columns.index(through) + 1 if through else len(self.columns)
        return [fields.get(name, "") for name in self.columns[:end]]


LOAN_REGION = Region(
    name="loan",
    sheet="Form Peminjam",
    first_data_row=5,
    id_column="A",
    count_column="B",
    columns=(
        "id",
        "submitted_at",
        "borrower_name",
        "class_name",
        "student_id",
        "phone",
        "equipment_name",
        "quantity",
        "loan_date",
        "due_date",
        "note",
        "duration",
        "photo_url",
        "pdf_url",
        "doc_url",
        "admin_note",
        "approval_status",
        "approved_at",
        "approved_by",
    ),
)

APPROVAL_REGION = Region(
    name="approval",
    sheet="Approval Peminjaman",
    first_data_row=6,
    id_column="A",
    count_column="A",
    columns=("id", "recorded_at", "borrower_name", "approver_name", "loan_id", "decision"),
)

RETURN_REGION = Region(
    name="return",
    sheet="Form Pengembalian",
    first_data_row=5,
    id_column="A",
    count_column="A",
    columns=("loan_id", "borrower_name", "returned_at", "condition", "note", "return_photo_url"),
)

REGIONS = {region.name: region for region in (LOAN_REGION, APPROVAL_REGION, RETURN_REGION)}
