"""
Outbox dispatcher.

Delivers ``OrderSettled`` events written by settlement to the mint
coordinator. Delivery is at least once; the coordinator's idempotency key
makes a repeated delivery harmless.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Optional, Dict, Any

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from fiatmint.app.core.exceptions import AppException, ExternalServiceError, PersistenceError, ValidationError
from fiatmint.app.db.session import utcnow
from fiatmint.app.domain.minting.mint_coordinator import MintCoordinator
from fiatmint.app.models.order_enums import OutboxEventType
from fiatmint.app.models.outbox import OutboxEvent
from fiatmint.app.models.product import Product
from fiatmint.app.schemas.mint import DispatchReport

logger = logging.getLogger(__name__)


class OutboxDispatcher:

    def __init__(self, coordinator: MintCoordinator, batch_size: int = 50):
        self.coordinator = coordinator
        self.batch_size = batch_size

    async def dispatch_pending(self, db: AsyncSession, limit: Optional[int] = None) -> DispatchReport:
        """
        Deliver undispatched events, oldest first.

        Terminal outcomes (minted, rejected, ambiguous, missing wallet, bad
        payload) mark the event dispatched. Retryable failures leave it
        pending with ``attempts`` and ``last_error`` updated.
        """
        rows = (await db.execute(
            select(OutboxEvent.id, OutboxEvent.event_type, OutboxEvent.aggregate_id, OutboxEvent.payload)
            .where(OutboxEvent.dispatched_at.is_(None))
            .order_by(OutboxEvent.id.asc())
            .limit(limit or self.batch_size)
        )).all()

        dispatched = retried = 0
        for event_id, event_type, aggregate_id, payload in rows:
            if event_type != OutboxEventType.ORDER_SETTLED:
                logger.warning("Unknown outbox event type", extra={"event_id": event_id, "event_type": event_type})
                await self._mark_dispatched(db, event_id, error=f"Unknown event type {event_type}")
                dispatched += 1
                continue

            try:
                await self._deliver(db, payload)
            except (ExternalServiceError, PersistenceError) as exc:
                await db.rollback()
                await self._record_attempt(db, event_id, exc.message)
                retried += 1
                logger.warning(
                    "Outbox delivery will be retried",
                    extra={"event_id": event_id, "order_id": aggregate_id, "error": exc.message},
                )
                continue
            except AppException as exc:
                await db.rollback()
                await self._mark_dispatched(db, event_id, error=f"{exc.error_code}: {exc.message}")
                logger.warning(
                    "Outbox delivery ended without a mint",
                    extra={"event_id": event_id, "order_id": aggregate_id, "error_code": exc.error_code},
                )
            else:
                await self._mark_dispatched(db, event_id)
            dispatched += 1

        pending = (await db.execute(
            select(func.count(OutboxEvent.id)).where(OutboxEvent.dispatched_at.is_(None))
        )).scalar() or 0

        if rows:
            logger.info("Outbox dispatch cycle", extra={"dispatched": dispatched, "retried": retried, "pending": pending})
        return DispatchReport(dispatched=dispatched, retried=retried, pending=pending)

    async def _deliver(self, db: AsyncSession, payload: Dict[str, Any]) -> None:
        order_id = payload.get("order_id")
        user_id = payload.get("user_id")
        if not order_id or not user_id:
            raise ValidationError("OrderSettled event lacks order_id or user_id")

        token_amount = payload.get("token_amount")
        if token_amount is None:
            product = await db.get(Product, payload.get("product_id")) if payload.get("product_id") else None
            if product is None:
                raise ValidationError("Cannot resolve token amount for settled order", details={"order_id": order_id})
            token_amount = product.token_amount

        await self.coordinator.mint(db, order_id, user_id, Decimal(str(token_amount)))

    async def _mark_dispatched(self, db: AsyncSession, event_id: int, error: Optional[str] = None) -> None:
        values = {"dispatched_at": utcnow(), "attempts": OutboxEvent.attempts + 1}
        if error is not None:
            values["last_error"] = error
        await db.execute(update(OutboxEvent).where(OutboxEvent.id == event_id).values(**values))
        await db.commit()

    async def _record_attempt(self, db: AsyncSession, event_id: int, error: str) -> None:
        await db.execute(
            update(OutboxEvent)
            .where(OutboxEvent.id == event_id)
            .values(attempts=OutboxEvent.attempts + 1, last_error=error)
        )
        await db.commit()

    async def run_forever(self, session_factory, interval_seconds: float) -> None:
        """Poll the outbox until cancelled (started from the app lifespan)."""
        logger.info("Outbox worker started", extra={"interval_seconds": interval_seconds})
        while True:
            try:
                async with session_factory() as db:
                    await self.dispatch_pending(db)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Outbox dispatch cycle failed")
            await asyncio.sleep(interval_seconds)
