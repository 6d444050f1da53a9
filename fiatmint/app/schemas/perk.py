"""
Perk and perk claim schemas.
"""

from decimal import Decimal
from datetime import datetime
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, Field

from fiatmint.app.models.perk_enums import PerkType


class PerkCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    token_cost: Decimal = Field(..., gt=0)
    perk_type: PerkType
    metadata: Optional[Dict[str, Any]] = None


class PerkUpdate(BaseModel):
    """Partial update; omitted fields are left unchanged."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    token_cost: Optional[Decimal] = Field(None, gt=0)
    perk_type: Optional[PerkType] = None
    metadata: Optional[Dict[str, Any]] = None
    active: Optional[bool] = None


class PerkResponse(BaseModel):
    id: str
    name: str
    description: Optional[str]
    token_cost: Decimal
    perk_type: PerkType
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="meta_data")
    active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class PerkClaimResponse(BaseModel):
    id: str
    perk_id: str
    user_id: str
    token_cost: Decimal
    qr_code: str
    claimed_at: datetime
    redeemed_at: Optional[datetime] = None
    redeemed_by: Optional[str] = None

    class Config:
        from_attributes = True


class PerkClaimList(BaseModel):
    claims: List[PerkClaimResponse]
    total: int


class ClaimDebitRequest(BaseModel):
    tx_hash: str = Field(..., min_length=10, max_length=80)


class ClaimDebitResult(BaseModel):
    claim_id: str
    ledger_entry_id: int
    replayed: bool = False
