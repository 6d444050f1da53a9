"""
Transparency API Endpoints.

Public, read-only views of the ledger. The audit trail is admin-only.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query
from fastapi.responses import Response
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from fiatmint.app.api.v1.params import pagination_params, date_range_params
from fiatmint.app.core.exceptions import ValidationError
from fiatmint.app.core.guards import require_admin
from fiatmint.app.db.session import get_db
from fiatmint.app.models.ledger_enums import Direction, Currency
from fiatmint.app.schemas.ledger import (
    Pagination, DateRange, LedgerFilters, LedgerPage, LedgerSummary, TransparencyStats,
    LedgerEntryResponse, AuditTrailResponse,
)
from fiatmint.app.services.transparency import TransparencyService

router = APIRouter(prefix="/transparency", tags=["Transparency"])


def ledger_filter_params(
    kind: Optional[str] = Query(None, max_length=50),
    currency: Optional[Currency] = Query(None),
    direction: Optional[Direction] = Query(None),
    reference_id: Optional[str] = Query(None, max_length=64),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
) -> LedgerFilters:
    try:
        return LedgerFilters(
            kind=kind, currency=currency, direction=direction, reference_id=reference_id,
            start_date=start_date, end_date=end_date,
        )
    except PydanticValidationError as exc:
        raise ValidationError("Invalid ledger filters", details={"errors": exc.errors(include_url=False, include_context=False)})


@router.get("/summary", response_model=LedgerSummary)
async def get_summary(
    date_range: DateRange = Depends(date_range_params),
    db: AsyncSession = Depends(get_db)
):
    return await TransparencyService.summary(db, date_range)


@router.get("/stats", response_model=TransparencyStats)
async def get_stats(
    date_range: DateRange = Depends(date_range_params),
    db: AsyncSession = Depends(get_db)
):
    return await TransparencyService.stats(db, date_range)


@router.get("/ledger", response_model=LedgerPage)
async def get_ledger(
    filters: LedgerFilters = Depends(ledger_filter_params),
    pagination: Pagination = Depends(pagination_params),
    db: AsyncSession = Depends(get_db)
):
    return await TransparencyService.ledger(db, filters, pagination)


@router.get("/ledger/kind/{kind}", response_model=LedgerPage)
async def get_ledger_by_kind(
    kind: str = Path(..., max_length=50),
    pagination: Pagination = Depends(pagination_params),
    db: AsyncSession = Depends(get_db)
):
    return await TransparencyService.by_kind(db, kind, pagination)


@router.get("/ledger/reference/{reference_id}", response_model=List[LedgerEntryResponse])
async def get_ledger_by_reference(
    reference_id: str = Path(..., max_length=64),
    db: AsyncSession = Depends(get_db)
):
    """All entries of one business event, oldest first."""
    entries = await TransparencyService.by_reference(db, reference_id)
    return [LedgerEntryResponse.model_validate(entry) for entry in entries]


@router.get("/export")
async def export_ledger(
    date_range: DateRange = Depends(date_range_params),
    db: AsyncSession = Depends(get_db)
):
    """Ledger as CSV download."""
    content = await TransparencyService.export_csv(db, date_range)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=ledger-export.csv"},
    )


@router.get("/audit-trail", response_model=AuditTrailResponse)
async def get_audit_trail(
    action: Optional[str] = Query(None, max_length=100),
    target_id: Optional[str] = Query(None, max_length=64),
    pagination: Pagination = Depends(pagination_params),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    return await TransparencyService.audit_trail(db, action=action, target_id=target_id, pagination=pagination)
