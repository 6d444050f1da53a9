"""
Checkout, order and settlement schemas.
"""

from decimal import Decimal
from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, Field

from fiatmint.app.models.order_enums import OrderStatus


class CheckoutRequest(BaseModel):
    product_id: str = Field(..., min_length=1, max_length=36)


class CheckoutResponse(BaseModel):
    order_id: str
    checkout_url: str


class SettlementResult(BaseModel):
    """Outcome of settling a confirmed payment. Replays return the original result."""
    order_id: str
    ledger_entry_id: int
    status: str
    replayed: bool = False


class WebhookAck(BaseModel):
    received: bool = True
    status: str
    order_id: Optional[str] = None


class ProductResponse(BaseModel):
    id: str
    name: str
    token_amount: Decimal
    price_eur: Decimal
    active: bool

    class Config:
        from_attributes = True


class MintSummary(BaseModel):
    id: str
    token_amount: Decimal
    tx_hash: str
    chain_id: int
    created_at: datetime

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    """Order with its product and mint."""
    id: str
    user_id: str
    product_id: Optional[str]
    status: OrderStatus
    created_at: datetime
    updated_at: datetime
    product: Optional[ProductResponse] = None
    mint: Optional[MintSummary] = None


class OrderListResponse(BaseModel):
    orders: List[OrderResponse]
    total: int
    page: int
    limit: int
    total_pages: int
