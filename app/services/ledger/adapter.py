from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Sequence

from app.services.ledger.a1 import parse_range


class LedgerAdapter(ABC):
    """Narrow repository over the spreadsheet that holds every loan record."""

    provider: str = "memory"

    @abstractmethod
    async def read_range(self, a1_range: str) -> list[list[str]]:
        """Return the rows of ``a1_range`` as formatted cell strings.

        Trailing empty cells and trailing empty rows are omitted; empty rows in
        the middle of the range come back as ``[]``.
        """

    @abstractmethod
    async def write_range(self, a1_start: str, rows: Sequence[Sequence[Any]]) -> None:
        """Overwrite cells starting at ``a1_start`` with ``rows``."""


class InMemoryLedgerAdapter(LedgerAdapter):
    """Dict-backed ledger with the same read/write semantics as Google Sheets."""

    def __init__(self, sheets: dict[str, dict[int, list[Any]]] | None = None):
        self.provider = "memory"
        # sheet -> row number -> cell values from column A
        self._sheets: dict[str, dict[int, dict[int, str]]] = {}
        self.writes: list[tuple[str, list[list[str]]]] = []
        for sheet, rows in (sheets or {}).items():
            for row_number, values in rows.items():
                self._put_row(sheet, row_number, 0, values)

    def _put_row(self, sheet: str, row_number: int, first_column: int, values: Sequence[Any]) -> None:
        row = self._sheets.setdefault(sheet, {}).setdefault(row_number, {})
        for offset, value in enumerate(values):
            row[first_column + offset] = "" if value is None else str(value)

    async def read_range(self, a1_range: str) -> list[list[str]]:
        target = parse_range(a1_range)
        sheet = self._sheets.get(target.sheet, {})
        columns = range(target.start_column, target.end_column + 1)

        def cells(row_number: int) -> list[str]:
            row = sheet.get(row_number, {})
            values = [row.get(column, "") for column in columns]
            while values and values[-1] == "":
                values.pop()
            return values

        candidates = [
            number
            for number in sheet
            if number >= target.start_row
            and (target.end_row is None or number <= target.end_row)
            and cells(number)
        ]
        if not candidates:
            return []
        return [cells(number) for number in range(target.start_row, max(candidates) + 1)]

    async def write_range(self, a1_start: str, rows: Sequence[Sequence[Any]]) -> None:
        target = parse_range(a1_start)
        for offset, values in enumerate(rows):
            self._put_row(target.sheet, target.start_row + offset, target.start_column, values)
        self.writes.append((a1_start, [[str(value) for value in row] for row in rows]))


class GoogleSheetsLedgerAdapter(LedgerAdapter):
    def __init__(self, sheets_service, spreadsheet_id: str):
        if not spreadsheet_id:
            raise ValueError("SPREADSHEET_ID is not configured")
        self.provider = "google"
        self.spreadsheet_id = spreadsheet_id
        self._values = sheets_service.spreadsheets().values()

    async def read_range(self, a1_range: str) -> list[list[str]]:
        request = self._values.get(spreadsheetId=self.spreadsheet_id, range=a1_range)
        response = await asyncio.to_thread(request.execute)
        return [[str(value) for value in row] for row in (response or {}).get("values", [])]

    async def write_range(self, a1_start: str, rows: Sequence[Sequence[Any]]) -> None:
        request = self._values.update(
            spreadsheetId=self.spreadsheet_id,
            range=a1_start,
            valueInputOption="USER_ENTERED",
            body={"values": [list(row) for row in rows]},
        )
        await asyncio.to_thread(request.execute)
