"""
Perk Service (Domain Logic).

Perk catalog plus the claim -> redeem state machine. A claim is gated on the
holder's on-chain balance but moves no tokens; the debit it authorises is
recorded separately once the transfer is confirmed.
"""

import logging
import secrets
import time
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fiatmint.app.core.exceptions import (
    ResourceNotFoundError, InvalidStateError, MissingWalletError, InsufficientBalanceError,
    AlreadyRedeemedError, ExternalServiceError, PersistenceError,
)
from fiatmint.app.core.config import settings
from fiatmint.app.db.session import utcnow
from fiatmint.app.integrations.blockchain import BlockchainClient, BlockchainError, read_balance
from fiatmint.app.models.ledger_enums import Direction, Currency, LedgerKind
from fiatmint.app.models.perk import Perk, PerkClaim
from fiatmint.app.models.user import User
from fiatmint.app.schemas.perk import PerkCreate, PerkUpdate, ClaimDebitResult
from fiatmint.app.services.audit import log_event, AuditAction
from fiatmint.app.services.idempotency import IdempotencyService, claim_debit_key
from fiatmint.app.services.ledger import LedgerService

logger = logging.getLogger(__name__)

QR_CODE_ATTEMPTS = 3
BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(number: int) -> str:
    digits = []
    while True:
        number, remainder = divmod(number, 36)
        digits.append(BASE36[remainder])
        if number == 0:
            return "".join(reversed(digits))


def generate_qr_code() -> str:
    """``PERK_<base36 millis>_<16 hex>``, upper-cased."""
    return f"PERK_{_base36(int(time.time() * 1000))}_{secrets.token_hex(8)}".upper()


class PerkService:

    # Catalog

    @staticmethod
    async def create_perk(db: AsyncSession, perk_data: PerkCreate, actor_id: str) -> Perk:
        perk = Perk(
            name=perk_data.name,
            description=perk_data.description,
            token_cost=perk_data.token_cost,
            perk_type=perk_data.perk_type,
            meta_data=perk_data.metadata,
        )
        db.add(perk)
        await db.commit()
        await db.refresh(perk)

        await log_event(db, AuditAction.PERK_CREATED, actor_id, "perk", perk.id, {"name": perk.name})
        logger.info("Perk created", extra={"perk_id": perk.id})
        return perk

    @staticmethod
    async def list_perks(db: AsyncSession, active_only: bool = True) -> List[Perk]:
        stmt = select(Perk).order_by(Perk.token_cost.asc(), Perk.created_at.asc())
        if active_only:
            stmt = stmt.where(Perk.active.is_(True))
        return list((await db.execute(stmt)).scalars().all())

    @staticmethod
    async def get_perk(db: AsyncSession, perk_id: str) -> Perk:
        perk = await db.get(Perk, perk_id, populate_existing=True)
        if perk is None:
            raise ResourceNotFoundError("Perk", perk_id)
        return perk

    @staticmethod
    async def update_perk(db: AsyncSession, perk_id: str, perk_data: PerkUpdate, actor_id: str) -> Perk:
        perk = await PerkService.get_perk(db, perk_id)

        changes = perk_data.model_dump(exclude_unset=True)
        if "metadata" in changes:
            changes["meta_data"] = changes.pop("metadata")
        for field, value in changes.items():
            setattr(perk, field, value)

        await db.commit()
        await db.refresh(perk)

        await log_event(
            db, AuditAction.PERK_UPDATED, actor_id, "perk", perk_id,
            {"fields": sorted(perk_data.model_dump(exclude_unset=True).keys())},
        )
        return perk

    @staticmethod
    async def deactivate_perk(db: AsyncSession, perk_id: str, actor_id: str) -> Perk:
        """Soft delete: hidden from the catalog, existing claims stay redeemable."""
        perk = await PerkService.get_perk(db, perk_id)
        perk.active = False
        await db.commit()
        await db.refresh(perk)

        await log_event(db, AuditAction.PERK_DEACTIVATED, actor_id, "perk", perk_id)
        return perk

    @staticmethod
    async def remove_perk(db: AsyncSession, perk_id: str, actor_id: str) -> None:
        """Hard delete, allowed only while nobody has claimed the perk."""
        perk = await PerkService.get_perk(db, perk_id)
        claims = (await db.execute(
            select(func.count(PerkClaim.id)).where(PerkClaim.perk_id == perk_id)
        )).scalar() or 0
        if claims:
            raise InvalidStateError(
                "Perk has claims and cannot be removed; deactivate it instead",
                details={"perk_id": perk_id, "claims": claims},
            )

        await db.delete(perk)
        try:
            await db.commit()
        except IntegrityError as exc:
            # A claim was inserted after the count.
            await db.rollback()
            raise InvalidStateError("Perk has claims and cannot be removed", details={"perk_id": perk_id}) from exc

        await log_event(db, AuditAction.PERK_REMOVED, actor_id, "perk", perk_id)

    # Claim / redeem

    @staticmethod
    async def claim_perk(db: AsyncSession, perk_id: str, user_id: str, blockchain: BlockchainClient) -> PerkClaim:
        """
        Claim a perk for a token holder.

        Flow:
        1. Perk exists and is active
        2. User has a registered wallet
        3. On-chain balance covers the token cost
        4. Persist the claim with a unique QR code

        Raises:
            ResourceNotFoundError: unknown perk
            InvalidStateError: perk inactive
            MissingWalletError: no wallet address
            InsufficientBalanceError: balance below cost
            ExternalServiceError: balance could not be read
        """
        perk = await PerkService.get_perk(db, perk_id)
        if not perk.active:
            raise InvalidStateError("Perk is not available", details={"perk_id": perk_id})
        token_cost = Decimal(perk.token_cost)

        wallet = (await db.execute(select(User.wallet_address).where(User.id == user_id))).scalar_one_or_none()
        if not wallet:
            raise MissingWalletError(user_id)

        try:
            balance = await read_balance(blockchain, wallet, settings.blockchain_read_timeout_seconds)
        except BlockchainError as exc:
            raise ExternalServiceError("blockchain", "Could not read token balance") from exc
        if balance < token_cost:
            raise InsufficientBalanceError(token_cost, balance)

        for attempt in range(1, QR_CODE_ATTEMPTS + 1):
            claim = PerkClaim(perk_id=perk_id, user_id=user_id, token_cost=token_cost, qr_code=generate_qr_code())
            db.add(claim)
            try:
                await db.commit()
                break
            except IntegrityError as exc:
                await db.rollback()
                if attempt == QR_CODE_ATTEMPTS:
                    raise PersistenceError("Could not allocate a unique claim code") from exc
                logger.warning("Claim code collision, regenerating", extra={"perk_id": perk_id})
            except SQLAlchemyError as exc:
                await db.rollback()
                raise PersistenceError("Could not persist perk claim") from exc

        logger.info("Perk claimed", extra={"claim_id": claim.id, "perk_id": perk_id, "user_id": user_id})
        return claim

    @staticmethod
    async def redeem_perk(db: AsyncSession, claim_id: str, staff_user_id: str) -> PerkClaim:
        """
        Mark a claim redeemed exactly once.

        The conditional UPDATE is the arbiter: of any number of concurrent
        callers exactly one sees a changed row, the rest get AlreadyRedeemedError.
        """
        claim = await db.get(PerkClaim, claim_id)
        if claim is None:
            raise ResourceNotFoundError("Perk claim", claim_id)
        if claim.redeemed_at is not None:
            raise AlreadyRedeemedError(claim_id)

        try:
            result = await db.execute(
                update(PerkClaim)
                .where(PerkClaim.id == claim_id, PerkClaim.redeemed_at.is_(None))
                .values(redeemed_at=utcnow(), redeemed_by=staff_user_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise AlreadyRedeemedError(claim_id)
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            raise PersistenceError(f"Could not redeem claim {claim_id}") from exc

        redeemed = (await db.execute(
            select(PerkClaim).where(PerkClaim.id == claim_id).execution_options(populate_existing=True)
        )).scalar_one()

        await log_event(db, AuditAction.PERK_REDEEMED, staff_user_id, "perk_claim", claim_id, {"perk_id": redeemed.perk_id})
        logger.info("Perk redeemed", extra={"claim_id": claim_id, "staff_user_id": staff_user_id})
        return redeemed

    @staticmethod
    async def record_claim_debit(db: AsyncSession, claim_id: str, tx_hash: str, actor_id: Optional[str] = None) -> ClaimDebitResult:
        """
        Record the confirmed token transfer a claim authorised.

        One ``perk_claim`` ledger entry (TOKEN, in) per claim; repeated calls
        return the first entry.
        """
        key = claim_debit_key(claim_id)
        existing = await IdempotencyService.get(db, key)
        if existing is not None and existing.response:
            return ClaimDebitResult(**existing.response, replayed=True)

        claim = await db.get(PerkClaim, claim_id)
        if claim is None:
            raise ResourceNotFoundError("Perk claim", claim_id)

        try:
            entry = await LedgerService.append(
                db,
                kind=LedgerKind.PERK_CLAIM,
                reference_id=claim_id,
                direction=Direction.IN,
                amount=claim.token_cost,
                currency=Currency.TOKEN,
                metadata={"perk_id": claim.perk_id, "user_id": claim.user_id, "tx_hash": tx_hash},
            )
            result = ClaimDebitResult(claim_id=claim_id, ledger_entry_id=entry.id)
            IdempotencyService.record_completed(
                db, key, "perk_debit", response=result.model_dump(exclude={"replayed"}),
                request_payload={"tx_hash": tx_hash},
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            existing = await IdempotencyService.get(db, key)
            if existing is not None and existing.response:
                return ClaimDebitResult(**existing.response, replayed=True)
            raise PersistenceError(f"Could not record debit for claim {claim_id}")
        except SQLAlchemyError as exc:
            await db.rollback()
            raise PersistenceError(f"Could not record debit for claim {claim_id}") from exc

        await log_event(db, AuditAction.CLAIM_DEBIT_RECORDED, actor_id, "perk_claim", claim_id, {"tx_hash": tx_hash})
        return result

    # Claim queries

    @staticmethod
    async def list_user_claims(db: AsyncSession, user_id: str) -> List[PerkClaim]:
        result = await db.execute(
            select(PerkClaim)
            .where(PerkClaim.user_id == user_id)
            .order_by(PerkClaim.claimed_at.desc())
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_claims(db: AsyncSession, perk_id: Optional[str] = None) -> List[PerkClaim]:
        stmt = select(PerkClaim).order_by(PerkClaim.claimed_at.desc())
        if perk_id:
            stmt = stmt.where(PerkClaim.perk_id == perk_id)
        return list((await db.execute(stmt)).scalars().all())

    @staticmethod
    async def get_claim_by_code(db: AsyncSession, qr_code: str) -> PerkClaim:
        claim = (await db.execute(
            select(PerkClaim).where(PerkClaim.qr_code == qr_code.upper())
        )).scalar_one_or_none()
        if claim is None:
            raise ResourceNotFoundError("Perk claim", qr_code)
        return claim
