"""
Ledger Service.

Append-only store of every fiat and token movement and the queries built on
it. Appends join the caller's transaction (flush, no commit) so a ledger
entry always commits atomically with the state change it records.
All sums use Decimal.
"""

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy import select, func, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fiatmint.app.core.exceptions import PersistenceError, ValidationError
from fiatmint.app.models.ledger_entry import LedgerEntry
from fiatmint.app.models.ledger_enums import Direction, Currency, LedgerKind
from fiatmint.app.schemas.ledger import (
    Pagination, DateRange, LedgerFilters, LedgerPage, LedgerEntryResponse,
    LedgerSummary, CurrencyTotals, KindActivity,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # Stores without native decimals hand back floats; go through str to keep digits.
    return Decimal(str(value))


def _date_conditions(date_range: Optional[DateRange]) -> list:
    conditions = []
    if date_range is None:
        return conditions
    if date_range.start_date:
        conditions.append(LedgerEntry.created_at >= date_range.start_date)
    if date_range.end_date:
        conditions.append(LedgerEntry.created_at <= date_range.end_date)
    return conditions


def _filter_conditions(filters: Optional[LedgerFilters]) -> list:
    if filters is None:
        return []
    conditions = _date_conditions(filters)
    if filters.kind:
        conditions.append(LedgerEntry.kind == filters.kind)
    if filters.currency:
        conditions.append(LedgerEntry.currency == filters.currency)
    if filters.direction:
        conditions.append(LedgerEntry.direction == filters.direction)
    if filters.reference_id:
        conditions.append(LedgerEntry.reference_id == filters.reference_id)
    return conditions


class LedgerService:

    @staticmethod
    async def append(
        db: AsyncSession,
        kind: str,
        reference_id: str,
        direction: Direction,
        amount,
        currency: Currency,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        """
        Append one immutable entry inside the caller's transaction.

        Args:
            db: Database session (caller commits)
            kind: Entry kind (LedgerKind constants or any audit label)
            reference_id: Business event the entry belongs to
            direction: IN or OUT
            amount: Non-negative amount
            currency: EUR or TOKEN
            metadata: JSON-serialisable context

        Returns:
            Flushed LedgerEntry with its id assigned

        Raises:
            ValidationError: negative amount or malformed kind/direction/currency
            PersistenceError: the store refused the write
        """
        try:
            amount = _to_decimal(amount)
            direction = Direction(direction)
            currency = Currency(currency)
        except (ValueError, ArithmeticError) as exc:
            raise ValidationError(f"Malformed ledger entry: {exc}") from exc

        if not amount.is_finite() or amount < ZERO:
            raise ValidationError("Ledger amounts must be non-negative", details={"amount": str(amount)})
        if not kind or not reference_id:
            raise ValidationError("Ledger entries need a kind and a reference_id")

        entry = LedgerEntry(
            kind=kind,
            reference_id=reference_id,
            direction=direction,
            amount=amount,
            currency=currency,
            meta_data=metadata,
        )
        db.add(entry)
        try:
            await db.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not append ledger entry for {reference_id}") from exc

        logger.info(
            "Ledger entry appended",
            extra={
                "entry_id": entry.id,
                "kind": kind,
                "reference_id": reference_id,
                "direction": direction.value,
                "amount": str(amount),
                "currency": currency.value,
            },
        )
        return entry

    @staticmethod
    async def query(
        db: AsyncSession,
        filters: Optional[LedgerFilters] = None,
        pagination: Optional[Pagination] = None,
    ) -> LedgerPage:
        """Filtered ledger page, newest first."""
        pagination = pagination or Pagination()
        conditions = _filter_conditions(filters)

        stmt = select(LedgerEntry)
        count_stmt = select(func.count(LedgerEntry.id))
        if conditions:
            stmt = stmt.where(and_(*conditions))
            count_stmt = count_stmt.where(and_(*conditions))

        stmt = (
            stmt.order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
            .offset(pagination.offset)
            .limit(pagination.limit)
        )

        try:
            entries = (await db.execute(stmt)).scalars().all()
            total = (await db.execute(count_stmt)).scalar() or 0
        except SQLAlchemyError as exc:
            raise PersistenceError("Could not query ledger") from exc

        total_pages = (total + pagination.limit - 1) // pagination.limit
        return LedgerPage(
            entries=[LedgerEntryResponse.model_validate(e) for e in entries],
            total=total,
            page=pagination.page,
            total_pages=total_pages,
            kind=filters.kind if filters else None,
        )

    @staticmethod
    async def by_kind(db: AsyncSession, kind: str, pagination: Optional[Pagination] = None) -> LedgerPage:
        return await LedgerService.query(db, LedgerFilters(kind=kind), pagination)

    @staticmethod
    async def by_reference(db: AsyncSession, reference_id: str) -> List[LedgerEntry]:
        """All entries of one business event in causal (insertion) order."""
        try:
            result = await db.execute(
                select(LedgerEntry)
                .where(LedgerEntry.reference_id == reference_id)
                .order_by(LedgerEntry.created_at.asc(), LedgerEntry.id.asc())
            )
        except SQLAlchemyError as exc:
            raise PersistenceError("Could not query ledger") from exc
        return list(result.scalars().all())

    @staticmethod
    async def find(db: AsyncSession, reference_id: str, kind: str) -> Optional[LedgerEntry]:
        """First entry of a kind for a reference, if any."""
        result = await db.execute(
            select(LedgerEntry)
            .where(LedgerEntry.reference_id == reference_id, LedgerEntry.kind == kind)
            .order_by(LedgerEntry.id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def summarize(db: AsyncSession, date_range: Optional[DateRange] = None) -> LedgerSummary:
        """
        Totals per currency and activity per kind over a date range.

        Amounts are summed in Python with Decimal rather than SQL SUM so the
        result is exact on every backend.
        """
        stmt = select(LedgerEntry.kind, LedgerEntry.direction, LedgerEntry.currency, LedgerEntry.amount)
        conditions = _date_conditions(date_range)
        if conditions:
            stmt = stmt.where(and_(*conditions))

        try:
            rows = (await db.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise PersistenceError("Could not summarize ledger") from exc

        totals = {
            Currency.EUR: {Direction.IN: ZERO, Direction.OUT: ZERO},
            Currency.TOKEN: {Direction.IN: ZERO, Direction.OUT: ZERO},
        }
        by_kind = defaultdict(lambda: {"count": 0, Direction.IN: ZERO, Direction.OUT: ZERO})

        for kind, direction, currency, amount in rows:
            amount = _to_decimal(amount)
            totals[currency][direction] += amount
            bucket = by_kind[(kind, currency)]
            bucket["count"] += 1
            bucket[direction] += amount

        def _currency_totals(currency: Currency) -> CurrencyTotals:
            total_in = totals[currency][Direction.IN]
            total_out = totals[currency][Direction.OUT]
            return CurrencyTotals(total_in=total_in, total_out=total_out, net=total_in - total_out)

        activity = [
            KindActivity(
                kind=kind,
                currency=currency,
                count=bucket["count"],
                total_in=bucket[Direction.IN],
                total_out=bucket[Direction.OUT],
            )
            for (kind, currency), bucket in sorted(by_kind.items(), key=lambda item: (item[0][0], item[0][1].value))
        ]

        return LedgerSummary(
            eur=_currency_totals(Currency.EUR),
            tokens=_currency_totals(Currency.TOKEN),
            activity_by_kind=activity,
            total_entries=len(rows),
        )

    @staticmethod
    async def net_by_reference(db: AsyncSession, reference_id: str) -> Dict[Currency, Decimal]:
        """In minus out per currency for one reference."""
        net = {Currency.EUR: ZERO, Currency.TOKEN: ZERO}
        for entry in await LedgerService.by_reference(db, reference_id):
            amount = _to_decimal(entry.amount)
            net[entry.currency] += amount if entry.direction == Direction.IN else -amount
        return net


__all__ = ["LedgerService", "LedgerKind"]
