"""
Transparency Service.

Read-only public reporting over the ledger. Nothing here writes and
nothing is cached; every figure is recomputed from ledger entries.
"""

import csv
import io
import json
import logging
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from fiatmint.app.db.session import ensure_utc
from fiatmint.app.models.ledger_entry import LedgerEntry
from fiatmint.app.schemas.ledger import (
    Pagination, DateRange, LedgerFilters, LedgerPage, LedgerSummary,
    TransparencyStats, AverageEntrySize, AuditTrailResponse, AuditLogResponse,
)
from fiatmint.app.services.audit import get_audit_trail
from fiatmint.app.services.ledger import LedgerService, _date_conditions

logger = logging.getLogger(__name__)

CSV_HEADER = ["ID", "Kind", "Reference ID", "Direction", "Amount", "Currency", "Metadata", "Created At"]


def format_amount(amount) -> str:
    """Plain decimal notation without trailing zeros (50.00000000 -> 50)."""
    value = Decimal(str(amount)).normalize()
    return format(value, "f")


class TransparencyService:

    @staticmethod
    async def summary(db: AsyncSession, date_range: Optional[DateRange] = None) -> LedgerSummary:
        return await LedgerService.summarize(db, date_range)

    @staticmethod
    async def stats(db: AsyncSession, date_range: Optional[DateRange] = None) -> TransparencyStats:
        """
        Headline statistics: volumes, net positions, average entry size.

        Volume counts both directions; the average is volume per entry of
        that currency and 0 when the currency has no entries.
        """
        summary = await LedgerService.summarize(db, date_range)

        eur_volume = summary.eur.total_in + summary.eur.total_out
        token_volume = summary.tokens.total_in + summary.tokens.total_out
        eur_count = sum(a.count for a in summary.activity_by_kind if a.currency.value == "EUR")
        token_count = sum(a.count for a in summary.activity_by_kind if a.currency.value == "TOKEN")

        return TransparencyStats(
            total_transactions=summary.total_entries,
            total_eur_volume=eur_volume,
            total_token_volume=token_volume,
            net_eur_position=summary.eur.net,
            net_token_position=summary.tokens.net,
            activity_breakdown=summary.activity_by_kind,
            average_transaction_size=AverageEntrySize(
                eur=eur_volume / eur_count if eur_count else Decimal("0"),
                tokens=token_volume / token_count if token_count else Decimal("0"),
            ),
        )

    @staticmethod
    async def ledger(
        db: AsyncSession,
        filters: Optional[LedgerFilters] = None,
        pagination: Optional[Pagination] = None,
    ) -> LedgerPage:
        return await LedgerService.query(db, filters, pagination)

    @staticmethod
    async def by_kind(db: AsyncSession, kind: str, pagination: Optional[Pagination] = None) -> LedgerPage:
        return await LedgerService.by_kind(db, kind, pagination)

    @staticmethod
    async def by_reference(db: AsyncSession, reference_id: str) -> List[LedgerEntry]:
        return await LedgerService.by_reference(db, reference_id)

    @staticmethod
    async def export_csv(db: AsyncSession, date_range: Optional[DateRange] = None) -> str:
        """
        Export ledger entries as CSV, newest first.

        Metadata is JSON in a single quoted field with embedded quotes
        doubled, or an empty field when the entry has none; timestamps are
        ISO-8601 UTC.
        """
        stmt = select(LedgerEntry)
        conditions = _date_conditions(date_range)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        stmt = stmt.order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())

        entries = (await db.execute(stmt)).scalars().all()

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for entry in entries:
            writer.writerow([
                entry.id,
                entry.kind,
                entry.reference_id,
                entry.direction.value,
                format_amount(entry.amount),
                entry.currency.value,
                json.dumps(entry.meta_data, sort_keys=True) if entry.meta_data is not None else "",
                ensure_utc(entry.created_at).isoformat(),
            ])

        logger.info("Ledger exported", extra={"rows": len(entries)})
        return buffer.getvalue()

    @staticmethod
    async def audit_trail(
        db: AsyncSession,
        action: Optional[str] = None,
        target_id: Optional[str] = None,
        pagination: Optional[Pagination] = None,
    ) -> AuditTrailResponse:
        pagination = pagination or Pagination()
        logs, total = await get_audit_trail(
            db, action=action, target_id=target_id, page=pagination.page, limit=pagination.limit
        )
        return AuditTrailResponse(
            logs=[AuditLogResponse.model_validate(log) for log in logs],
            total=total,
            page=pagination.page,
            limit=pagination.limit,
        )
