"""Ordinal allocation and tolerant record lookup over ledger regions.

The spreadsheet has no transactions, locks or uniqueness constraints. Within
this process ordinals come from :class:`OrdinalSequencer` (one lock per
region, reconciled against the ledger extent on every allocation); across
processes :meth:`LedgerIdentityResolver.commit_row` refuses to overwrite an
occupied row so the caller can retry with a fresh ordinal.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Sequence

from app.core.errors import OrdinalConflict, RecordNotFound
from app.services.ledger.a1 import column_index
from app.services.ledger.adapter import LedgerAdapter
from app.services.ledger.regions import Region

logger = logging.getLogger(__name__)


def normalize_record_id(value: Any) -> str:
    """Decimal string with leading zeros stripped: ``"0007"`` and ``7`` both give ``"7"``."""
    return str(value if value is not None else "").strip().lstrip("0")


def format_ordinal(ordinal: int) -> str:
    return f"{ordinal:04d}"


@dataclass(slots=True)
class ResolvedRow:
    region: Region
    row_number: int
    fields: dict[str, str] = field(default_factory=dict)

    def get(self, name: str, default: str = "") -> str:
        return self.fields.get(name, default) or default


class RecordIndex:
    """Secondary index: normalized identifier -> ledger row numbers in sheet order."""

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], dict[str, list[int]]] = {}

    def is_built(self, region: Region, column: str) -> bool:
        return (region.name, column) in self._entries

    async def rebuild(self, ledger: LedgerAdapter, region: Region, column: str) -> None:
        values = await ledger.read_range(region.column_range(column))
        entries: dict[str, list[int]] = defaultdict(list)
        for offset, row in enumerate(values):
            raw = row[0] if row else ""
            if not str(raw).strip():
                continue
            entries[normalize_record_id(raw)].append(region.first_data_row + offset)
        self._entries[(region.name, column)] = dict(entries)
        logger.debug(
            "Rebuilt %s index on column %s: %d keys", region.name, column, len(entries)
        )

    def lookup(self, region: Region, column: str, raw_id: Any) -> list[int]:
        return list(self._entries.get((region.name, column), {}).get(normalize_record_id(raw_id), []))

    def record(self, region: Region, column: str, raw_id: Any, row_number: int) -> None:
        entries = self._entries.get((region.name, column))
        if entries is None:
            return
        rows = entries.setdefault(normalize_record_id(raw_id), [])
        if row_number not in rows:
            rows.append(row_number)
            rows.sort()


class LedgerIdentityResolver:
    def __init__(self, index: RecordIndex | None = None) -> None:
        self.index = index or RecordIndex()

    async def allocate_next(self, ledger: LedgerAdapter, region: Region) -> int:
        """Next ordinal for ``region``: current row extent + 1."""
        try:
            values = await ledger.read_range(region.column_range(region.count_column))
        except Exception as exc:
            logger.warning(
                "Reading %s extent failed, treating region as empty: %s", region.name, exc
            )
            return 1
        return len(values) + 1

    async def resolve(
        self,
        ledger: LedgerAdapter,
        region: Region,
        raw_id: Any,
        columns: Sequence[str] | None = None,
        *,
        key_column: str | None = None,
        latest: bool = False,
    ) -> ResolvedRow:
        """Find the row whose identifier matches ``raw_id`` after stripping leading zeros.

        The first matching row in sheet order wins; ``latest=True`` selects the
        last one instead and always rescans the column so rows written by other
        processes are seen.
        """
        rows = await self.matching_rows(ledger, region, raw_id, key_column=key_column, refresh=latest)
        if not rows:
            raise RecordNotFound(
                f"{region.name} record {raw_id!r} not found",
                region=region.name,
                record_id=str(raw_id),
            )
        row_number = rows[-1] if latest else rows[0]
        return await self.read_row(ledger, region, row_number, columns)

    async def matching_rows(
        self,
        ledger: LedgerAdapter,
        region: Region,
        raw_id: Any,
        *,
        key_column: str | None = None,
        refresh: bool = False,
    ) -> list[int]:
        column = key_column or region.id_column
        if not str(raw_id if raw_id is not None else "").strip():
            return []
        if refresh or not self.index.is_built(region, column):
            await self.index.rebuild(ledger, region, column)
            return self.index.lookup(region, column, raw_id)
        rows = self.index.lookup(region, column, raw_id)
        if not rows:
            # Miss may just mean the row was written after the last scan.
            await self.index.rebuild(ledger, region, column)
            rows = self.index.lookup(region, column, raw_id)
        return rows

    async def read_row(
        self,
        ledger: LedgerAdapter,
        region: Region,
        row_number: int,
        columns: Sequence[str] | None = None,
    ) -> ResolvedRow:
        values = await ledger.read_range(region.row_range(row_number))
        fields = region.to_fields(values[0] if values else [])
        if columns is not None:
            fields = {name: fields.get(name, "") for name in columns}
        return ResolvedRow(region=region, row_number=row_number, fields=fields)

    async def commit_row(
        self,
        ledger: LedgerAdapter,
        region: Region,
        ordinal: int,
        values: Sequence[Any],
    ) -> int:
        """Write ``values`` at the row computed for ``ordinal`` if that row is still empty."""
        row_number = region.row_for(ordinal)
        occupied = await ledger.read_range(region.cell(region.count_column, row_number))
        if occupied and occupied[0] and str(occupied[0][0]).strip():
            raise OrdinalConflict(
                f"{region.name} row {row_number} is already occupied",
                region=region.name,
                ordinal=ordinal,
            )
        await ledger.write_range(region.cell("A", row_number), [list(values)])
        id_offset = column_index(region.id_column)
        if id_offset < len(values):
            self.index.record(region, region.id_column, values[id_offset], row_number)
        return row_number


class OrdinalSequencer:
    """Per-region ordinal source, reconciled against the ledger.

    ``next`` reserves an ordinal; the caller must ``confirm`` it once its row
    is written or ``release`` it when the write never happens, so an aborted
    pipeline does not leave a blank row behind.
    """

    def __init__(self, resolver: LedgerIdentityResolver) -> None:
        self.resolver = resolver
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._last_committed: dict[str, int] = {}
        self._reserved: dict[str, set[int]] = defaultdict(set)

    async def next(self, ledger: LedgerAdapter, region: Region) -> int:
        async with self._locks[region.name]:
            observed = await self.resolver.allocate_next(ledger, region)
            ordinal = max(self._last_committed.get(region.name, 0) + 1, observed)
            reserved = self._reserved[region.name]
            while ordinal in reserved:
                ordinal += 1
            reserved.add(ordinal)
            return ordinal

    def confirm(self, region: Region, ordinal: int) -> None:
        self._reserved[region.name].discard(ordinal)
        self._last_committed[region.name] = max(self._last_committed.get(region.name, 0), ordinal)

    def release(self, region: Region, ordinal: int) -> None:
        self._reserved[region.name].discard(ordinal)
