"""A1 notation helpers shared by the ledger adapters."""

from __future__ import annotations

import re
from dataclasses import dataclass

_REF_RE = re.compile(r"^([A-Z]+)(\d+)?(?::([A-Z]+)(\d+)?)?$")


@dataclass(frozen=True, slots=True)
class A1Range:
    sheet: str
    start_column: int
    start_row: int
    end_column: int
    end_row: int | None


def column_index(letters: str) -> int:
    """``"A"`` -> 0, ``"Z"`` -> 25, ``"AA"`` -> 26."""
    index = 0
    for char in letters.upper():
        if not "A" <= char <= "Z":
            raise ValueError(f"Invalid column letters: {letters!r}")
        index = index * 26 + (ord(char) - ord("A") + 1)
    if index == 0:
        raise ValueError("Column letters must not be empty")
    return index - 1


def column_letter(index: int) -> str:
    if index < 0:
        raise ValueError("Column index must be non-negative")
    letters = ""
    index += 1
    while index:
        index, remainder = divmod(index - 1, 26)
        letters = chr(ord("A") + remainder) + letters
    return letters


def quote_sheet(sheet: str) -> str:
    return "'" + sheet.replace("'", "''") + "'"


def cell_range(sheet: str, start: str, end: str | None = None) -> str:
    ref = f"{start}:{end}" if end else start
    return f"{quote_sheet(sheet)}!{ref}"


def parse_range(a1: str) -> A1Range:
    sheet, sep, ref = a1.rpartition("!")
    if not sep:
        raise ValueError(f"Range {a1!r} has no sheet name")
    if sheet.startswith("'") and sheet.endswith("'"):
        sheet = sheet[1:-1].replace("''", "'")
    match = _REF_RE.match(ref.upper())
    if not match:
        raise ValueError(f"Unsupported A1 reference: {ref!r}")
    start_col, start_row, end_col, end_row = match.groups()
    start_column = column_index(start_col)
    first_row = int(start_row) if start_row else 1
    if end_col is None:
        # Single cell, e.g. "F12".
        return A1Range(sheet, start_column, first_row, start_column, first_row if start_row else None)
    return A1Range(
        sheet,
        start_column,
        first_row,
        column_index(end_col),
        int(end_row) if end_row else None,
    )
