"""
Vote Service (Domain Logic).

Token-holder governance: campaigns with a time window, one ballot per voter
per campaign and read-side tallies. Only wallets holding tokens may vote,
and every ballot commits together with a zero-amount ``vote`` ledger entry.
The unique constraint on (vote_id, user_id) is the only duplicate check.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import select, func, delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fiatmint.app.core.config import settings
from fiatmint.app.core.exceptions import (
    ResourceNotFoundError, InvalidStateError, ValidationError, AlreadyVotedError, PersistenceError,
    MissingWalletError, InsufficientBalanceError, ExternalServiceError,
)
from fiatmint.app.db.session import utcnow, ensure_utc
from fiatmint.app.integrations.blockchain import BlockchainClient, BlockchainError, read_balance
from fiatmint.app.models.ledger_enums import Direction, Currency, LedgerKind
from fiatmint.app.models.user import User
from fiatmint.app.models.vote import Vote, VoteOption, VoteBallot
from fiatmint.app.schemas.vote import (
    VoteCreate, VoteUpdate, VoteResponse, VoteOptionResponse, VoteResults, OptionResult,
)
from fiatmint.app.services.audit import log_event, AuditAction
from fiatmint.app.services.ledger import LedgerService

logger = logging.getLogger(__name__)


class VoteStatus:
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    CLOSED = "closed"
    INACTIVE = "inactive"


def vote_status(vote: Vote, now: Optional[datetime] = None) -> str:
    """Status from the time window; the active flag overrides everything."""
    if not vote.active:
        return VoteStatus.INACTIVE
    now = now or utcnow()
    if now < ensure_utc(vote.start_at):
        return VoteStatus.SCHEDULED
    if now > ensure_utc(vote.end_at):
        return VoteStatus.CLOSED
    return VoteStatus.ACTIVE


def to_response(vote: Vote) -> VoteResponse:
    return VoteResponse(
        id=vote.id,
        title=vote.title,
        description=vote.description,
        start_at=ensure_utc(vote.start_at),
        end_at=ensure_utc(vote.end_at),
        active=vote.active,
        status=vote_status(vote),
        options=[VoteOptionResponse.model_validate(option) for option in vote.options],
    )


class VoteService:

    @staticmethod
    async def create_vote(db: AsyncSession, vote_data: VoteCreate, actor_id: str) -> Vote:
        """
        Create a campaign with its options.

        The schema already guarantees end_at > start_at and at least two
        distinct, non-empty option labels.
        """
        vote = Vote(
            title=vote_data.title,
            description=vote_data.description,
            start_at=vote_data.start_at,
            end_at=vote_data.end_at,
        )
        db.add(vote)
        await db.flush()
        vote_id = vote.id

        for label in vote_data.options:
            db.add(VoteOption(vote_id=vote_id, label=label.strip()))
        await db.commit()

        await log_event(db, AuditAction.VOTE_CREATED, actor_id, "vote", vote_id, {"options": len(vote_data.options)})
        logger.info("Vote created", extra={"vote_id": vote_id})
        return await VoteService.get_vote(db, vote_id)

    @staticmethod
    async def get_vote(db: AsyncSession, vote_id: str) -> Vote:
        vote = (await db.execute(
            select(Vote).where(Vote.id == vote_id).execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if vote is None:
            raise ResourceNotFoundError("Vote", vote_id)
        return vote

    @staticmethod
    async def list_votes(db: AsyncSession, active_only: bool = False) -> List[Vote]:
        """Newest campaigns first; active_only keeps only those open right now."""
        stmt = select(Vote).order_by(Vote.start_at.desc()).execution_options(populate_existing=True)
        if active_only:
            now = utcnow()
            stmt = stmt.where(Vote.active.is_(True), Vote.start_at <= now, Vote.end_at >= now)
        return list((await db.execute(stmt)).scalars().all())

    @staticmethod
    async def update_vote(db: AsyncSession, vote_id: str, vote_data: VoteUpdate, actor_id: str) -> Vote:
        vote = await VoteService.get_vote(db, vote_id)
        changes = vote_data.model_dump(exclude_unset=True)

        start_at = changes.get("start_at", vote.start_at)
        end_at = changes.get("end_at", vote.end_at)
        if ensure_utc(end_at) <= ensure_utc(start_at):
            raise ValidationError("end_at must be after start_at", details={"vote_id": vote_id})

        for field, value in changes.items():
            setattr(vote, field, value)
        await db.commit()

        await log_event(db, AuditAction.VOTE_UPDATED, actor_id, "vote", vote_id, {"fields": sorted(changes.keys())})
        return await VoteService.get_vote(db, vote_id)

    @staticmethod
    async def deactivate_vote(db: AsyncSession, vote_id: str, actor_id: str) -> Vote:
        """Soft delete: ballots are kept, new ones are refused."""
        vote = await VoteService.get_vote(db, vote_id)
        vote.active = False
        await db.commit()

        await log_event(db, AuditAction.VOTE_DEACTIVATED, actor_id, "vote", vote_id)
        return await VoteService.get_vote(db, vote_id)

    @staticmethod
    async def add_option(db: AsyncSession, vote_id: str, label: str, actor_id: str) -> VoteOption:
        vote = await VoteService.get_vote(db, vote_id)
        label = label.strip()
        if any(option.label == label for option in vote.options):
            raise ValidationError("Option labels must be distinct", details={"label": label})

        option = VoteOption(vote_id=vote_id, label=label)
        db.add(option)
        await db.commit()

        await log_event(db, AuditAction.VOTE_OPTION_ADDED, actor_id, "vote", vote_id, {"option_id": option.id})
        return option

    @staticmethod
    async def remove_option(db: AsyncSession, option_id: str, actor_id: str) -> None:
        """Delete an option that no ballot references yet."""
        option = await db.get(VoteOption, option_id)
        if option is None:
            raise ResourceNotFoundError("Vote option", option_id)
        vote_id = option.vote_id

        ballots = (await db.execute(
            select(func.count(VoteBallot.id)).where(VoteBallot.option_id == option_id)
        )).scalar() or 0
        if ballots:
            raise InvalidStateError(
                "Option already has ballots and cannot be removed",
                details={"option_id": option_id, "ballots": ballots},
            )

        try:
            await db.execute(delete(VoteOption).where(VoteOption.id == option_id))
            await db.commit()
        except IntegrityError as exc:
            # A ballot referencing the option landed after the count.
            await db.rollback()
            raise InvalidStateError("Option already has ballots and cannot be removed", details={"option_id": option_id}) from exc

        await log_event(db, AuditAction.VOTE_OPTION_REMOVED, actor_id, "vote", vote_id, {"option_id": option_id})

    @staticmethod
    async def cast_ballot(
        db: AsyncSession,
        vote_id: str,
        user_id: str,
        option_id: str,
        blockchain: BlockchainClient,
    ) -> VoteBallot:
        """
        Cast one ballot for a token holder.

        The ballot and its ``vote`` ledger entry commit together; a ballot
        moves no tokens so the entry amount is zero.

        Raises:
            ResourceNotFoundError: unknown vote
            InvalidStateError: vote not open (scheduled, closed or inactive)
            ValidationError: option does not belong to the vote
            MissingWalletError: voter has no wallet address
            InsufficientBalanceError: voter holds no tokens
            ExternalServiceError: balance could not be read
            AlreadyVotedError: voter already has a ballot for this vote
        """
        vote = await VoteService.get_vote(db, vote_id)
        status = vote_status(vote)
        if status != VoteStatus.ACTIVE:
            raise InvalidStateError("Vote is not open", details={"vote_id": vote_id, "status": status})

        if option_id not in {option.id for option in vote.options}:
            raise ValidationError("Option does not belong to this vote", details={"vote_id": vote_id, "option_id": option_id})

        wallet = (await db.execute(select(User.wallet_address).where(User.id == user_id))).scalar_one_or_none()
        if not wallet:
            raise MissingWalletError(user_id)
        try:
            balance = await read_balance(blockchain, wallet, settings.blockchain_read_timeout_seconds)
        except BlockchainError as exc:
            raise ExternalServiceError("blockchain", "Could not read token balance") from exc
        if balance <= 0:
            raise InsufficientBalanceError("> 0", balance)

        ballot = VoteBallot(vote_id=vote_id, user_id=user_id, option_id=option_id)
        db.add(ballot)
        try:
            await db.flush()
            await LedgerService.append(
                db,
                kind=LedgerKind.VOTE,
                reference_id=vote_id,
                direction=Direction.IN,
                amount=Decimal("0"),
                currency=Currency.TOKEN,
                metadata={
                    "ballot_id": ballot.id,
                    "user_id": user_id,
                    "option_id": option_id,
                    "voting_power": str(balance),
                },
            )
            await db.commit()
        except IntegrityError as exc:
            await db.rollback()
            duplicate = (await db.execute(
                select(VoteBallot.id).where(VoteBallot.vote_id == vote_id, VoteBallot.user_id == user_id)
            )).scalar_one_or_none()
            if duplicate:
                raise AlreadyVotedError(vote_id, user_id) from exc
            raise PersistenceError("Could not record ballot") from exc
        except (SQLAlchemyError, PersistenceError) as exc:
            await db.rollback()
            raise PersistenceError("Could not record ballot") from exc

        logger.info("Ballot cast", extra={"vote_id": vote_id, "user_id": user_id, "option_id": option_id})
        return ballot

    @staticmethod
    async def get_results(db: AsyncSession, vote_id: str) -> VoteResults:
        """
        Per-option tallies ordered by votes descending.

        percentage = votes / total * 100, and 0 for every option when
        nobody has voted.
        """
        vote = await VoteService.get_vote(db, vote_id)

        ballot_count = func.count(VoteBallot.id)
        rows = (await db.execute(
            select(VoteOption.id, VoteOption.label, ballot_count.label("votes"))
            .outerjoin(VoteBallot, VoteBallot.option_id == VoteOption.id)
            .where(VoteOption.vote_id == vote_id)
            .group_by(VoteOption.id, VoteOption.label, VoteOption.created_at)
            .order_by(ballot_count.desc(), VoteOption.created_at.asc())
        )).all()

        total = sum(row.votes for row in rows)
        results = [
            OptionResult(
                option_id=row.id,
                label=row.label,
                votes=row.votes,
                percentage=(row.votes / total * 100) if total else 0.0,
            )
            for row in rows
        ]
        return VoteResults(
            vote_id=vote_id,
            title=vote.title,
            status=vote_status(vote),
            total_votes=total,
            results=results,
        )

    @staticmethod
    async def list_user_ballots(db: AsyncSession, user_id: str) -> List[VoteBallot]:
        result = await db.execute(
            select(VoteBallot)
            .where(VoteBallot.user_id == user_id)
            .order_by(VoteBallot.cast_at.desc())
        )
        return list(result.scalars().all())
