"""
Mint Coordinator (Domain Logic).

Exactly-once token minting for settled orders. The idempotency record for
``mint:<order_id>`` is claimed durably before anything is broadcast, and
the outcome of every broadcast ends up in exactly one of four states:

- completed: Mint row, ledger entry and order transition committed together
- failed: the chain rejected the mint; the order is failed, nothing is recorded
- ambiguous: broadcast outcome unknown; an operator must reconcile
- (released): nothing was broadcast; the claim is deleted so a retry is safe
"""

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional, List

from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fiatmint.app.core.exceptions import (
    ValidationError, MissingWalletError, InvalidStateError, MintRejectedError,
    AmbiguousMintError, ResourceNotFoundError, ExternalServiceError, PersistenceError,
)
from fiatmint.app.db.session import utcnow, ensure_utc
from fiatmint.app.integrations.blockchain import (
    BlockchainClient, BlockchainError, BlockchainTimeout, BlockchainRejected, BlockchainUnavailable, read_balance,
)
from fiatmint.app.models.idempotency import IdempotencyRecord
from fiatmint.app.models.ledger_enums import Direction, Currency, LedgerKind
from fiatmint.app.models.mint import Mint
from fiatmint.app.models.order import Order
from fiatmint.app.models.order_enums import OrderStatus, IdempotencyStatus
from fiatmint.app.models.user import User
from fiatmint.app.schemas.ledger import Pagination
from fiatmint.app.schemas.mint import MintResult, ReconcileResult, UnresolvedMint, MintHistory, MintResponse
from fiatmint.app.services.audit import log_event, AuditAction
from fiatmint.app.services.idempotency import IdempotencyService, mint_key
from fiatmint.app.services.ledger import LedgerService

logger = logging.getLogger(__name__)

MINT_OPERATION = "mint"


def _positive_amount(token_amount) -> Decimal:
    try:
        amount = Decimal(str(token_amount))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("Token amount is not a number") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Token amount must be positive", details={"token_amount": str(token_amount)})
    return amount


class MintCoordinator:
    """
    Runs mints against an injected blockchain client.

    Built once at application startup; holds no per-request state.
    """

    def __init__(
        self,
        blockchain: BlockchainClient,
        chain_id: int,
        timeout_seconds: float = 90.0,
        stale_after_seconds: int = 600,
    ):
        self.blockchain = blockchain
        self.chain_id = chain_id
        self.timeout_seconds = timeout_seconds
        self.stale_after_seconds = stale_after_seconds

    async def mint(
        self,
        db: AsyncSession,
        order_id: str,
        user_id: str,
        token_amount,
        recipient_address: Optional[str] = None,
    ) -> MintResult:
        """
        Mint tokens for an order exactly once.

        Flow:
        1. Idempotency check (mint:<order_id>)
        2. Validate order and resolve recipient
        3. Durably claim the key as in_flight
        4. Submit to the chain with a bounded timeout
        5. Record the outcome

        Args:
            db: Database session (this method commits)
            order_id: Settled order being fulfilled
            user_id: Order owner
            token_amount: Tokens to mint
            recipient_address: Explicit recipient; defaults to the user's wallet

        Returns:
            MintResult with the transaction hash (replayed=True on repeat calls)

        Raises:
            InvalidStateError: order failed or an earlier attempt failed
            MintRejectedError: the chain rejected the mint
            AmbiguousMintError: outcome unknown, needs reconciliation
            ExternalServiceError: chain unreachable, nothing broadcast
            MissingWalletError: no recipient available
        """
        key = mint_key(order_id)
        amount = _positive_amount(token_amount)

        try:
            # 1. Idempotency check
            record = await IdempotencyService.get(db, key)
            if record is not None:
                return self._from_record(record, order_id)

            # 2. Order and recipient
            order = await db.get(Order, order_id, populate_existing=True)
            if order is None:
                raise ResourceNotFoundError("Order", order_id)
            if order.status == OrderStatus.FAILED:
                raise InvalidStateError(f"Order {order_id} has failed", details={"order_id": order_id})
            recipient = await self._resolve_recipient(db, user_id, recipient_address)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not prepare mint for order {order_id}") from exc

        # 3. Claim
        record = await IdempotencyService.claim(
            db,
            key,
            MINT_OPERATION,
            request_payload={
                "order_id": order_id,
                "user_id": user_id,
                "token_amount": str(amount),
                "recipient": recipient,
            },
        )
        if record is None:
            existing = await IdempotencyService.get(db, key)
            if existing is None:
                raise ExternalServiceError("blockchain", "Concurrent mint attempt was released, retry")
            return self._from_record(existing, order_id)

        # 4. Submit
        try:
            tx_hash = await asyncio.wait_for(
                self.blockchain.submit_mint(recipient, amount),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, BlockchainTimeout) as exc:
            reason = str(exc) or "No confirmation within timeout"
            await self._mark_ambiguous(db, key, reason)
            logger.error("Mint outcome unknown", extra={"order_id": order_id, "reason": reason})
            raise AmbiguousMintError(order_id, reason)
        except BlockchainRejected as exc:
            await self._record_rejection(db, record, order_id, str(exc))
            raise MintRejectedError(order_id, str(exc))
        except BlockchainUnavailable as exc:
            await IdempotencyService.release(db, key)
            logger.warning("Blockchain unavailable, mint claim released", extra={"order_id": order_id})
            raise ExternalServiceError("blockchain", f"Blockchain unavailable: {exc}")

        # 5. Record success
        return await self._confirm(db, record, order_id, user_id, amount, recipient, tx_hash)

    def _from_record(self, record: IdempotencyRecord, order_id: str) -> MintResult:
        if record.status == IdempotencyStatus.COMPLETED:
            logger.info("Mint replayed", extra={"order_id": order_id})
            return MintResult(order_id=order_id, replayed=True, **(record.response or {}))
        if record.status == IdempotencyStatus.FAILED:
            raise InvalidStateError(
                f"Mint for order {order_id} failed",
                details={"order_id": order_id, "reason": record.error},
            )
        reason = "Mint already in flight" if record.status == IdempotencyStatus.IN_FLIGHT else record.error
        raise AmbiguousMintError(order_id, reason or "Mint outcome unknown")

    async def _resolve_recipient(self, db: AsyncSession, user_id: str, recipient_address: Optional[str]) -> str:
        if recipient_address:
            return recipient_address
        wallet = (await db.execute(
            select(User.wallet_address).where(User.id == user_id)
        )).scalar_one_or_none()
        if not wallet:
            raise MissingWalletError(user_id)
        return wallet

    async def _confirm(
        self,
        db: AsyncSession,
        record: IdempotencyRecord,
        order_id: str,
        user_id: str,
        amount: Decimal,
        recipient: str,
        tx_hash: str,
    ) -> MintResult:
        """Persist a confirmed broadcast: Mint row, ledger entry, order, record."""
        key = record.key
        try:
            mint = Mint(
                order_id=order_id,
                user_id=user_id,
                token_amount=amount,
                recipient_address=recipient,
                tx_hash=tx_hash,
                chain_id=self.chain_id,
            )
            db.add(mint)
            await db.flush()
            mint_id = mint.id

            await LedgerService.append(
                db,
                kind=LedgerKind.MINT,
                reference_id=order_id,
                direction=Direction.OUT,
                amount=amount,
                currency=Currency.TOKEN,
                metadata={"tx_hash": tx_hash, "chain_id": self.chain_id, "user_id": user_id},
            )
            await db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status != OrderStatus.COMPLETED)
                .values(status=OrderStatus.COMPLETED, updated_at=utcnow())
            )

            response = {
                "tx_hash": tx_hash,
                "mint_id": mint_id,
                "chain_id": self.chain_id,
                "recipient_address": recipient,
            }
            IdempotencyService.mark(record, IdempotencyStatus.COMPLETED, response=response)
            await db.commit()
        except (SQLAlchemyError, PersistenceError) as exc:
            await db.rollback()
            logger.error(
                "Mint broadcast but not recorded",
                extra={"order_id": order_id, "tx_hash": tx_hash, "error": str(exc)},
            )
            await self._mark_ambiguous(db, key, f"Broadcast {tx_hash} could not be recorded")
            raise AmbiguousMintError(order_id, f"Transaction {tx_hash} broadcast but not recorded")

        logger.info(
            "Tokens minted",
            extra={"order_id": order_id, "tx_hash": tx_hash, "amount": str(amount), "recipient": recipient},
        )
        return MintResult(order_id=order_id, **response)

    async def _mark_ambiguous(self, db: AsyncSession, key: str, reason: str) -> None:
        try:
            await db.execute(
                update(IdempotencyRecord)
                .where(IdempotencyRecord.key == key, IdempotencyRecord.status != IdempotencyStatus.COMPLETED)
                .values(status=IdempotencyStatus.AMBIGUOUS, error=reason, completed_at=utcnow())
            )
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            # The record stays in_flight and is picked up once stale.
            logger.exception("Could not mark mint ambiguous", extra={"key": key})

    async def _record_rejection(self, db: AsyncSession, record: IdempotencyRecord, order_id: str, reason: str) -> None:
        try:
            IdempotencyService.mark(record, IdempotencyStatus.FAILED, error=reason)
            await self._fail_order(db, order_id)
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            raise PersistenceError(f"Could not record rejected mint for order {order_id}") from exc
        logger.warning("Mint rejected", extra={"order_id": order_id, "reason": reason})

    async def _fail_order(self, db: AsyncSession, order_id: str) -> None:
        await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status != OrderStatus.FAILED)
            .values(status=OrderStatus.FAILED, updated_at=utcnow())
        )

    def _is_stale(self, record: IdempotencyRecord) -> bool:
        cutoff = utcnow() - timedelta(seconds=self.stale_after_seconds)
        return ensure_utc(record.created_at) < cutoff

    async def reconcile(
        self,
        db: AsyncSession,
        order_id: str,
        actor_id: str,
        tx_hash: Optional[str] = None,
    ) -> ReconcileResult:
        """
        Resolve an ambiguous (or stale in_flight) mint by operator decision.

        With ``tx_hash`` the mint is recorded as confirmed; without one the
        attempt is recorded as failed and the order marked failed.

        Raises:
            ResourceNotFoundError: no mint attempt for the order
            InvalidStateError: attempt already resolved or still fresh
            ValidationError: tx_hash already recorded for another mint
        """
        key = mint_key(order_id)
        record = await IdempotencyService.get(db, key)
        if record is None:
            raise ResourceNotFoundError("Mint attempt", order_id)
        if record.status in (IdempotencyStatus.COMPLETED, IdempotencyStatus.FAILED):
            raise InvalidStateError(
                f"Mint for order {order_id} is already resolved",
                details={"order_id": order_id, "status": record.status.value},
            )
        if record.status == IdempotencyStatus.IN_FLIGHT and not self._is_stale(record):
            raise InvalidStateError(f"Mint for order {order_id} is still in flight", details={"order_id": order_id})

        payload = record.request_payload or {}

        if tx_hash:
            taken = (await db.execute(select(Mint.id).where(Mint.tx_hash == tx_hash))).scalar_one_or_none()
            if taken:
                raise ValidationError("Transaction already recorded for another mint", details={"tx_hash": tx_hash})
            await self._confirm(
                db,
                record,
                order_id,
                payload["user_id"],
                Decimal(payload["token_amount"]),
                payload["recipient"],
                tx_hash,
            )
            outcome = IdempotencyStatus.COMPLETED
        else:
            try:
                IdempotencyService.mark(record, IdempotencyStatus.FAILED, error=f"Reconciled as not minted by {actor_id}")
                await self._fail_order(db, order_id)
                await db.commit()
            except SQLAlchemyError as exc:
                await db.rollback()
                raise PersistenceError(f"Could not reconcile mint for order {order_id}") from exc
            outcome = IdempotencyStatus.FAILED

        await log_event(
            db,
            AuditAction.MINT_RECONCILED,
            actor_id=actor_id,
            target_type="order",
            target_id=order_id,
            metadata={"outcome": outcome.value, "tx_hash": tx_hash},
        )
        logger.info("Mint reconciled", extra={"order_id": order_id, "outcome": outcome.value, "actor_id": actor_id})
        return ReconcileResult(order_id=order_id, status=outcome, tx_hash=tx_hash)

    async def admin_mint(self, db: AsyncSession, user_id: str, token_amount, actor_id: str) -> MintResult:
        """
        Operator mint outside the purchase flow.

        Creates a fresh completed order without a product and runs the
        normal exactly-once flow against it.
        """
        amount = _positive_amount(token_amount)
        user = await db.get(User, user_id)
        if user is None:
            raise ResourceNotFoundError("User", user_id)
        if not user.wallet_address:
            raise MissingWalletError(user_id)

        order = Order(user_id=user_id, product_id=None, status=OrderStatus.COMPLETED)
        db.add(order)
        try:
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            raise PersistenceError("Could not create admin mint order") from exc
        order_id = order.id

        result = await self.mint(db, order_id, user_id, amount)

        await log_event(
            db,
            AuditAction.ADMIN_MINT,
            actor_id=actor_id,
            target_type="order",
            target_id=order_id,
            metadata={"user_id": user_id, "token_amount": str(amount), "tx_hash": result.tx_hash},
        )
        return result

    async def list_unresolved(self, db: AsyncSession) -> List[UnresolvedMint]:
        """Ambiguous mints plus in_flight mints older than the stale threshold."""
        records = (await db.execute(
            select(IdempotencyRecord)
            .where(
                IdempotencyRecord.operation == MINT_OPERATION,
                IdempotencyRecord.status.in_([IdempotencyStatus.AMBIGUOUS, IdempotencyStatus.IN_FLIGHT]),
            )
            .order_by(IdempotencyRecord.created_at.asc())
            .execution_options(populate_existing=True)
        )).scalars().all()

        return [
            UnresolvedMint(
                order_id=record.key.split(":", 1)[1],
                status=record.status,
                created_at=ensure_utc(record.created_at),
                error=record.error,
                request_payload=record.request_payload,
            )
            for record in records
            if record.status == IdempotencyStatus.AMBIGUOUS or self._is_stale(record)
        ]

    async def mint_history(self, db: AsyncSession, user_id: str, pagination: Optional[Pagination] = None) -> MintHistory:
        pagination = pagination or Pagination()
        mints = (await db.execute(
            select(Mint)
            .where(Mint.user_id == user_id)
            .order_by(Mint.created_at.desc(), Mint.id.desc())
            .offset(pagination.offset)
            .limit(pagination.limit)
        )).scalars().all()
        total = (await db.execute(select(func.count(Mint.id)).where(Mint.user_id == user_id))).scalar() or 0
        return MintHistory(
            mints=[MintResponse.model_validate(m) for m in mints],
            total=total,
            page=pagination.page,
            limit=pagination.limit,
        )

    async def get_balance(self, address: str) -> Decimal:
        try:
            return await read_balance(self.blockchain, address, self.timeout_seconds)
        except BlockchainError as exc:
            raise ExternalServiceError("blockchain", "Could not read token balance") from exc

