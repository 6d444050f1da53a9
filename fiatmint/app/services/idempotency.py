"""
Idempotency key service.

Centralizes the "have we already done this?" lookup that precedes every
externally-effecting operation. Callers own the surrounding transaction
except for ``claim``, which must be durable before the external call.
"""

import logging
from typing import Optional, Dict, Any

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fiatmint.app.core.exceptions import PersistenceError
from fiatmint.app.db.session import utcnow
from fiatmint.app.models.idempotency import IdempotencyRecord
from fiatmint.app.models.order_enums import IdempotencyStatus

logger = logging.getLogger(__name__)


def settle_key(order_id: str) -> str:
    return f"settle:{order_id}"


def mint_key(order_id: str) -> str:
    return f"mint:{order_id}"


def claim_debit_key(claim_id: str) -> str:
    return f"perk-debit:{claim_id}"


class IdempotencyService:

    @staticmethod
    async def get(db: AsyncSession, key: str) -> Optional[IdempotencyRecord]:
        """Fetch the record for a key, bypassing any stale identity-map copy."""
        result = await db.execute(
            select(IdempotencyRecord)
            .where(IdempotencyRecord.key == key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def record_completed(
        db: AsyncSession,
        key: str,
        operation: str,
        response: Dict[str, Any],
        request_payload: Optional[Dict[str, Any]] = None,
    ) -> IdempotencyRecord:
        """
        Stage a completed record inside the caller's transaction.

        A concurrent duplicate surfaces as IntegrityError at commit.
        """
        record = IdempotencyRecord(
            key=key,
            operation=operation,
            status=IdempotencyStatus.COMPLETED,
            request_payload=request_payload,
            response=response,
            completed_at=utcnow(),
        )
        db.add(record)
        return record

    @staticmethod
    async def claim(
        db: AsyncSession,
        key: str,
        operation: str,
        request_payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[IdempotencyRecord]:
        """
        Durably claim a key as IN_FLIGHT before an external side effect.

        Returns:
            The new record, or None when another caller already holds the key.

        Raises:
            PersistenceError: store failure other than the key conflict
        """
        record = IdempotencyRecord(
            key=key,
            operation=operation,
            status=IdempotencyStatus.IN_FLIGHT,
            request_payload=request_payload,
        )
        db.add(record)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info("Idempotency key already claimed", extra={"key": key})
            return None
        except SQLAlchemyError as exc:
            await db.rollback()
            raise PersistenceError(f"Could not claim idempotency key {key}") from exc
        return record

    @staticmethod
    def mark(
        record: IdempotencyRecord,
        status: IdempotencyStatus,
        response: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        """Move a record to its resolved state (caller commits)."""
        record.status = status
        if response is not None:
            record.response = response
        if error is not None:
            record.error = error
        record.completed_at = utcnow()

    @staticmethod
    async def release(db: AsyncSession, key: str) -> None:
        """
        Drop an IN_FLIGHT claim whose external call provably never happened.

        Only IN_FLIGHT rows are removed; resolved outcomes are permanent.
        """
        await db.execute(
            delete(IdempotencyRecord).where(
                IdempotencyRecord.key == key,
                IdempotencyRecord.status == IdempotencyStatus.IN_FLIGHT,
            )
        )
        await db.commit()
