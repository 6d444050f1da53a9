"""
Token API Endpoints.

Balance, transfers, token metadata, mint history and operator mints.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fiatmint.app.api.v1.params import pagination_params
from fiatmint.app.core.dependencies import get_current_user, get_mint_coordinator, get_token_service
from fiatmint.app.core.exceptions import MissingWalletError
from fiatmint.app.core.guards import require_admin
from fiatmint.app.db.session import get_db
from fiatmint.app.models.user import User
from fiatmint.app.schemas.ledger import Pagination
from fiatmint.app.schemas.mint import (
    BalanceResponse, MintHistory, MintResult, AdminMintRequest, TransferRequest, TransferResult, TokenInfo,
)

router = APIRouter(prefix="/tokens", tags=["Tokens"])


@router.get("/balance", response_model=BalanceResponse)
async def get_my_balance(
    current_user: dict = Depends(get_current_user),
    coordinator=Depends(get_mint_coordinator),
    db: AsyncSession = Depends(get_db)
):
    """On-chain balance of the caller's registered wallet."""
    wallet = (await db.execute(
        select(User.wallet_address).where(User.id == current_user["user_id"])
    )).scalar_one_or_none()
    if not wallet:
        raise MissingWalletError(current_user["user_id"])
    return BalanceResponse(address=wallet, balance=await coordinator.get_balance(wallet))


@router.get("/info", response_model=TokenInfo)
async def get_token_info(token_service=Depends(get_token_service)):
    """Name, symbol, decimals and total supply of the token contract."""
    return await token_service.token_info()


@router.post("/transfer", response_model=TransferResult)
async def transfer_tokens(
    body: TransferRequest,
    current_user: dict = Depends(get_current_user),
    token_service=Depends(get_token_service),
    db: AsyncSession = Depends(get_db)
):
    return await token_service.transfer(db, current_user["user_id"], body.to_user_id, body.amount)


@router.get("/mints", response_model=MintHistory)
async def get_my_mints(
    pagination: Pagination = Depends(pagination_params),
    current_user: dict = Depends(get_current_user),
    coordinator=Depends(get_mint_coordinator),
    db: AsyncSession = Depends(get_db)
):
    return await coordinator.mint_history(db, current_user["user_id"], pagination)


@router.post("/admin/mint", response_model=MintResult)
async def admin_mint(
    body: AdminMintRequest,
    current_user: dict = Depends(require_admin),
    coordinator=Depends(get_mint_coordinator),
    db: AsyncSession = Depends(get_db)
):
    """
    Mint tokens to a user outside the purchase flow.

    Runs through a fresh order so the usual exactly-once guarantees apply.
    """
    return await coordinator.admin_mint(db, body.user_id, body.token_amount, actor_id=current_user["user_id"])
