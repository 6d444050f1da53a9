"""
Settlement Service (Domain Logic).

Turns confirmed payments into settled orders. Must be transactional and
idempotent: the provider delivers every confirmation at least once.
"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fiatmint.app.core.exceptions import (
    ValidationError, InvalidStateError, ResourceNotFoundError, PersistenceError,
)
from fiatmint.app.db.session import utcnow
from fiatmint.app.integrations.payment_gateway import PaymentConfirmed, PaymentGateway
from fiatmint.app.models.ledger_enums import Direction, Currency, LedgerKind
from fiatmint.app.models.mint import Mint
from fiatmint.app.models.order import Order
from fiatmint.app.models.order_enums import OrderStatus, OutboxEventType
from fiatmint.app.models.outbox import OutboxEvent
from fiatmint.app.models.product import Product
from fiatmint.app.schemas.ledger import Pagination
from fiatmint.app.schemas.settlement import (
    SettlementResult, CheckoutResponse, OrderResponse, OrderListResponse, ProductResponse, MintSummary,
)
from fiatmint.app.services.idempotency import IdempotencyService, settle_key
from fiatmint.app.services.ledger import LedgerService

logger = logging.getLogger(__name__)

SETTLE_OPERATION = "settle"


class SettlementService:

    @staticmethod
    async def settle(db: AsyncSession, event: PaymentConfirmed) -> SettlementResult:
        """
        Settle a confirmed payment.

        Flow:
        1. Validate currency and amount
        2. Idempotency check (settle:<order_id>)
        3. Conditional transition Order pending -> completed
        4. Append payment ledger entry (EUR, in)
        5. Write OrderSettled to the outbox
        6. Store the idempotency record and commit everything at once

        Args:
            db: Database session (this method commits)
            event: Confirmed payment from the gateway

        Returns:
            SettlementResult; replays carry replayed=True and the original ids

        Raises:
            ValidationError: currency not EUR or amount not positive
            InvalidStateError: order missing or no longer pending
            PersistenceError: store failure (provider should re-deliver)
        """
        order_id = event.order_id

        # 1. Validate
        if (event.currency or "").upper() != Currency.EUR.value:
            raise ValidationError(
                "Only EUR payments can be settled",
                details={"order_id": order_id, "currency": event.currency},
            )
        amount = Decimal(event.amount_paid)
        if amount <= 0:
            raise ValidationError("Payment amount must be positive", details={"order_id": order_id})

        try:
            # 2. Idempotency check
            replay = await SettlementService._replay(db, order_id)
            if replay:
                return replay

            order = await db.get(Order, order_id, populate_existing=True)
            if order is None:
                raise InvalidStateError(f"Order {order_id} does not exist", details={"order_id": order_id})
            if order.status != OrderStatus.PENDING:
                raise InvalidStateError(
                    f"Order {order_id} is not pending",
                    details={"order_id": order_id, "status": order.status.value},
                )

            user_id = order.user_id
            product_id = order.product_id
            product = await db.get(Product, product_id) if product_id else None
            token_amount = product.token_amount if product else None

            if product is not None and amount != Decimal(product.price_eur):
                logger.warning(
                    "Paid amount differs from product price",
                    extra={"order_id": order_id, "paid": str(amount), "price": str(product.price_eur)},
                )

            # 3. Conditional transition
            transition = await db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == OrderStatus.PENDING)
                .values(status=OrderStatus.COMPLETED, updated_at=utcnow())
            )
            if transition.rowcount != 1:
                await db.rollback()
                replay = await SettlementService._replay(db, order_id)
                if replay:
                    return replay
                raise InvalidStateError(f"Order {order_id} is not pending", details={"order_id": order_id})

            # 4. Ledger
            entry = await LedgerService.append(
                db,
                kind=LedgerKind.PAYMENT,
                reference_id=order_id,
                direction=Direction.IN,
                amount=amount,
                currency=Currency.EUR,
                metadata={
                    "provider_ref": event.provider_ref,
                    "provider": event.provider,
                    "status": "completed",
                },
            )
            entry_id = entry.id

            # 5. Outbox
            db.add(OutboxEvent(
                event_type=OutboxEventType.ORDER_SETTLED,
                aggregate_id=order_id,
                payload={
                    "order_id": order_id,
                    "user_id": user_id,
                    "product_id": product_id,
                    "token_amount": str(token_amount) if token_amount is not None else None,
                },
            ))

            # 6. Idempotency record + commit
            result = SettlementResult(order_id=order_id, ledger_entry_id=entry_id, status=OrderStatus.COMPLETED.value)
            IdempotencyService.record_completed(
                db,
                settle_key(order_id),
                SETTLE_OPERATION,
                response=result.model_dump(exclude={"replayed"}),
                request_payload={"amount_paid": str(amount), "provider_ref": event.provider_ref},
            )
            await db.commit()

        except IntegrityError:
            # A concurrent delivery committed first.
            await db.rollback()
            replay = await SettlementService._replay(db, order_id)
            if replay:
                return replay
            raise PersistenceError(f"Could not settle order {order_id}")
        except SQLAlchemyError as exc:
            await db.rollback()
            raise PersistenceError(f"Could not settle order {order_id}") from exc

        logger.info(
            "Payment settled",
            extra={"order_id": order_id, "amount": str(amount), "ledger_entry_id": entry_id},
        )
        return result

    @staticmethod
    async def _replay(db: AsyncSession, order_id: str) -> Optional[SettlementResult]:
        record = await IdempotencyService.get(db, settle_key(order_id))
        if record is None or not record.response:
            return None
        logger.info("Settlement replayed", extra={"order_id": order_id})
        return SettlementResult(**record.response, replayed=True)

    @staticmethod
    async def create_checkout(
        db: AsyncSession,
        product_id: str,
        user_id: str,
        gateway: PaymentGateway,
    ) -> CheckoutResponse:
        """
        Start a purchase: pending Order plus a hosted checkout session.

        Raises:
            ResourceNotFoundError: product missing or inactive
            ExternalServiceError: gateway failure (the order stays pending)
        """
        product = await db.get(Product, product_id)
        if product is None or not product.active:
            raise ResourceNotFoundError("Product", product_id)

        order = Order(user_id=user_id, product_id=product_id, status=OrderStatus.PENDING)
        db.add(order)
        try:
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            raise PersistenceError("Could not create order") from exc

        order_id = order.id
        logger.info("Order created", extra={"order_id": order_id, "user_id": user_id, "product_id": product_id})

        url = await gateway.create_checkout(
            order_id,
            Decimal(product.price_eur),
            Currency.EUR.value,
            description=product.name,
            metadata={"user_id": user_id, "product_id": product_id, "token_amount": str(product.token_amount)},
        )
        return CheckoutResponse(order_id=order_id, checkout_url=url)

    @staticmethod
    async def _to_response(db: AsyncSession, order: Order) -> OrderResponse:
        product = await db.get(Product, order.product_id) if order.product_id else None
        mint = (await db.execute(select(Mint).where(Mint.order_id == order.id))).scalar_one_or_none()
        return OrderResponse(
            id=order.id,
            user_id=order.user_id,
            product_id=order.product_id,
            status=order.status,
            created_at=order.created_at,
            updated_at=order.updated_at,
            product=ProductResponse.model_validate(product) if product else None,
            mint=MintSummary.model_validate(mint) if mint else None,
        )

    @staticmethod
    async def get_order(db: AsyncSession, order_id: str, user_id: Optional[str] = None) -> OrderResponse:
        """Fetch an order; with user_id, only that user's order is visible."""
        stmt = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        if user_id is not None:
            stmt = stmt.where(Order.user_id == user_id)
        order = (await db.execute(stmt)).scalar_one_or_none()
        if order is None:
            raise ResourceNotFoundError("Order", order_id)
        return await SettlementService._to_response(db, order)

    @staticmethod
    async def list_orders(db: AsyncSession, user_id: str, pagination: Optional[Pagination] = None) -> OrderListResponse:
        pagination = pagination or Pagination()
        orders = (await db.execute(
            select(Order)
            .where(Order.user_id == user_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .offset(pagination.offset)
            .limit(pagination.limit)
            .execution_options(populate_existing=True)
        )).scalars().all()
        total = (await db.execute(
            select(func.count(Order.id)).where(Order.user_id == user_id)
        )).scalar() or 0

        return OrderListResponse(
            orders=[await SettlementService._to_response(db, order) for order in orders],
            total=total,
            page=pagination.page,
            limit=pagination.limit,
            total_pages=(total + pagination.limit - 1) // pagination.limit,
        )

    @staticmethod
    async def list_products(db: AsyncSession, active_only: bool = True) -> list:
        stmt = select(Product).order_by(Product.price_eur.asc())
        if active_only:
            stmt = stmt.where(Product.active.is_(True))
        return list((await db.execute(stmt)).scalars().all())
