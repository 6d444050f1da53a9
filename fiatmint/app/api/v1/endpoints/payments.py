"""
Payments API Endpoints.

Checkout, provider webhook and order history.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Request, Path, Header
from sqlalchemy.ext.asyncio import AsyncSession

from fiatmint.app.api.v1.params import pagination_params
from fiatmint.app.core.config import settings
from fiatmint.app.core.dependencies import get_current_user, get_payment_gateway
from fiatmint.app.core.exceptions import InvalidStateError, ValidationError
from fiatmint.app.db.session import get_db
from fiatmint.app.domain.settlement.settlement_service import SettlementService
from fiatmint.app.integrations.payment_gateway import (
    verify_webhook_signature, parse_event, parse_checkout_completed, CHECKOUT_COMPLETED,
)
from fiatmint.app.schemas.ledger import Pagination
from fiatmint.app.schemas.settlement import (
    CheckoutRequest, CheckoutResponse, WebhookAck, OrderResponse, OrderListResponse, ProductResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.get("/products", response_model=List[ProductResponse])
async def list_products(db: AsyncSession = Depends(get_db)):
    """Active token bundles, cheapest first."""
    return await SettlementService.list_products(db)


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    current_user: dict = Depends(get_current_user),
    gateway=Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db)
):
    """
    Start a purchase.

    Creates a pending order and returns the hosted checkout URL.
    """
    return await SettlementService.create_checkout(db, body.product_id, current_user["user_id"], gateway)


@router.post("/webhook", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db)
):
    """
    Payment provider webhook.

    - Invalid signature: 400
    - Settled or replayed: 200
    - Order missing/not pending or bad payment data: logged, acknowledged with 200
    - Store failure: 503 so the provider re-delivers
    """
    payload = await request.body()
    verify_webhook_signature(
        payload,
        stripe_signature,
        settings.payment_webhook_secret,
        settings.payment_webhook_tolerance_seconds,
    )
    event = parse_event(payload)

    if event["type"] != CHECKOUT_COMPLETED:
        logger.info("Webhook event ignored", extra={"event_type": event["type"], "event_id": event.get("id")})
        return WebhookAck(status="ignored")

    try:
        confirmed = parse_checkout_completed(event)
        result = await SettlementService.settle(db, confirmed)
    except (InvalidStateError, ValidationError) as exc:
        logger.warning(
            "Payment confirmation discarded",
            extra={"event_id": event.get("id"), "error_code": exc.error_code, "reason": exc.message},
        )
        return WebhookAck(status="discarded", order_id=(exc.details or {}).get("order_id"))

    return WebhookAck(status="replayed" if result.replayed else "settled", order_id=result.order_id)


@router.get("/orders", response_model=OrderListResponse)
async def list_my_orders(
    pagination: Pagination = Depends(pagination_params),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await SettlementService.list_orders(db, current_user["user_id"], pagination)


@router.get("/orders/{order_id}", response_model=OrderResponse)
async def get_my_order(
    order_id: str = Path(...),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await SettlementService.get_order(db, order_id, user_id=current_user["user_id"])
