"""
Mint schemas.
"""

from decimal import Decimal
from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, Field

from fiatmint.app.models.order_enums import IdempotencyStatus


class MintResult(BaseModel):
    order_id: str
    tx_hash: str
    mint_id: Optional[str] = None
    chain_id: Optional[int] = None
    recipient_address: Optional[str] = None
    replayed: bool = False


class AdminMintRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    token_amount: Decimal = Field(..., gt=0)


class ReconcileRequest(BaseModel):
    """Operator decision for an unresolved mint. No tx_hash means it never landed."""
    tx_hash: Optional[str] = Field(None, min_length=10, max_length=80)


class ReconcileResult(BaseModel):
    order_id: str
    status: IdempotencyStatus
    tx_hash: Optional[str] = None


class UnresolvedMint(BaseModel):
    order_id: str
    status: IdempotencyStatus
    created_at: datetime
    error: Optional[str] = None
    request_payload: Optional[dict] = None


class MintResponse(BaseModel):
    id: str
    order_id: str
    user_id: str
    token_amount: Decimal
    recipient_address: str
    tx_hash: str
    chain_id: int
    created_at: datetime

    class Config:
        from_attributes = True


class MintHistory(BaseModel):
    mints: List[MintResponse]
    total: int
    page: int
    limit: int


class DispatchReport(BaseModel):
    dispatched: int
    retried: int
    pending: int


class BalanceResponse(BaseModel):
    address: str
    balance: Decimal


class TransferRequest(BaseModel):
    to_user_id: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(..., gt=0)


class TransferResult(BaseModel):
    tx_hash: str
    amount: Decimal
    from_user_id: str
    to_user_id: str
    from_address: str
    to_address: str


class TokenInfo(BaseModel):
    name: str
    symbol: str
    decimals: int
    total_supply: Decimal
