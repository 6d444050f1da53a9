"""
Governance Votes API Endpoints.
"""

from typing import List

from fastapi import APIRouter, Depends, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from fiatmint.app.core.dependencies import get_current_user, get_blockchain_client
from fiatmint.app.core.guards import require_admin
from fiatmint.app.db.session import get_db
from fiatmint.app.domain.governance.vote_service import VoteService, to_response
from fiatmint.app.schemas.vote import (
    VoteCreate, VoteUpdate, VoteResponse, VoteOptionCreate, VoteOptionResponse,
    BallotCreate, BallotResponse, VoteResults,
)

router = APIRouter(prefix="/votes", tags=["Votes"])


@router.get("", response_model=List[VoteResponse])
async def list_votes(
    active_only: bool = Query(False),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    votes = await VoteService.list_votes(db, active_only=active_only)
    return [to_response(vote) for vote in votes]


@router.post("", response_model=VoteResponse, status_code=status.HTTP_201_CREATED)
async def create_vote(
    body: VoteCreate,
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    vote = await VoteService.create_vote(db, body, actor_id=current_user["user_id"])
    return to_response(vote)


@router.get("/ballots/mine", response_model=List[BallotResponse])
async def list_my_ballots(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await VoteService.list_user_ballots(db, current_user["user_id"])


@router.delete("/options/{option_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_option(
    option_id: str = Path(...),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Remove an option; refused once any ballot references it."""
    await VoteService.remove_option(db, option_id, actor_id=current_user["user_id"])


@router.get("/{vote_id}", response_model=VoteResponse)
async def get_vote(
    vote_id: str = Path(...),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return to_response(await VoteService.get_vote(db, vote_id))


@router.patch("/{vote_id}", response_model=VoteResponse)
async def update_vote(
    body: VoteUpdate,
    vote_id: str = Path(...),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    vote = await VoteService.update_vote(db, vote_id, body, actor_id=current_user["user_id"])
    return to_response(vote)


@router.post("/{vote_id}/deactivate", response_model=VoteResponse)
async def deactivate_vote(
    vote_id: str = Path(...),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    return to_response(await VoteService.deactivate_vote(db, vote_id, actor_id=current_user["user_id"]))


@router.post("/{vote_id}/options", response_model=VoteOptionResponse, status_code=status.HTTP_201_CREATED)
async def add_option(
    body: VoteOptionCreate,
    vote_id: str = Path(...),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    return await VoteService.add_option(db, vote_id, body.label, actor_id=current_user["user_id"])


@router.post("/{vote_id}/ballots", response_model=BallotResponse, status_code=status.HTTP_201_CREATED)
async def cast_ballot(
    body: BallotCreate,
    vote_id: str = Path(...),
    current_user: dict = Depends(get_current_user),
    blockchain=Depends(get_blockchain_client),
    db: AsyncSession = Depends(get_db)
):
    """Cast the caller's single ballot for a vote. Token holders only."""
    return await VoteService.cast_ballot(db, vote_id, current_user["user_id"], body.option_id, blockchain)


@router.get("/{vote_id}/results", response_model=VoteResults)
async def get_results(
    vote_id: str = Path(...),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await VoteService.get_results(db, vote_id)
