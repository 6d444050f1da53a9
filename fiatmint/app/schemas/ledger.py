"""
Ledger and transparency schemas.
"""

from decimal import Decimal
from datetime import datetime
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from fiatmint.app.db.session import ensure_utc
from fiatmint.app.models.ledger_enums import Direction, Currency


class Pagination(BaseModel):
    """Page request. Limit is capped at 100."""
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class DateRange(BaseModel):
    """Inclusive created_at window; either bound may be open."""
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def assume_utc(cls, value):
        # Naive bounds are read as UTC so mixed inputs stay comparable.
        return ensure_utc(value)

    @model_validator(mode="after")
    def check_order(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class LedgerFilters(DateRange):
    kind: Optional[str] = None
    currency: Optional[Currency] = None
    direction: Optional[Direction] = None
    reference_id: Optional[str] = None


class LedgerEntryCreate(BaseModel):
    """Input for a ledger append."""
    kind: str = Field(..., min_length=1, max_length=50)
    reference_id: str = Field(..., min_length=1, max_length=64)
    direction: Direction
    amount: Decimal = Field(..., ge=0)
    currency: Currency
    metadata: Optional[Dict[str, Any]] = None


class LedgerEntryResponse(BaseModel):
    """Schema for displaying a ledger entry."""
    id: int
    kind: str
    reference_id: str
    direction: Direction
    amount: Decimal
    currency: Currency
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="meta_data")
    created_at: datetime

    class Config:
        from_attributes = True
        populate_by_name = True


class LedgerPage(BaseModel):
    entries: List[LedgerEntryResponse]
    total: int
    page: int
    total_pages: int
    kind: Optional[str] = None


class CurrencyTotals(BaseModel):
    total_in: Decimal = Decimal("0")
    total_out: Decimal = Decimal("0")
    net: Decimal = Decimal("0")


class KindActivity(BaseModel):
    """Activity of one ledger kind in one currency."""
    kind: str
    currency: Currency
    count: int
    total_in: Decimal
    total_out: Decimal


class LedgerSummary(BaseModel):
    eur: CurrencyTotals
    tokens: CurrencyTotals
    activity_by_kind: List[KindActivity]
    total_entries: int

    # Flat accessors mirroring the summarize contract
    @property
    def eur_in(self) -> Decimal:
        return self.eur.total_in

    @property
    def eur_out(self) -> Decimal:
        return self.eur.total_out

    @property
    def token_in(self) -> Decimal:
        return self.tokens.total_in

    @property
    def token_out(self) -> Decimal:
        return self.tokens.total_out


class AverageEntrySize(BaseModel):
    eur: Decimal
    tokens: Decimal


class TransparencyStats(BaseModel):
    total_transactions: int
    total_eur_volume: Decimal
    total_token_volume: Decimal
    net_eur_position: Decimal
    net_token_position: Decimal
    activity_breakdown: List[KindActivity]
    average_transaction_size: AverageEntrySize


class AuditLogResponse(BaseModel):
    id: int
    actor_id: Optional[str]
    action: str
    target_type: Optional[str]
    target_id: Optional[str]
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="meta_data")
    timestamp: datetime

    class Config:
        from_attributes = True


class AuditTrailResponse(BaseModel):
    logs: List[AuditLogResponse]
    total: int
    page: int
    limit: int
