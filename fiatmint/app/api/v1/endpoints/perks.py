"""
Perks API Endpoints.

Catalog browsing and claims for members, redemption for staff, catalog
administration for admins.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from fiatmint.app.core.dependencies import get_current_user, get_blockchain_client
from fiatmint.app.core.guards import require_admin, require_staff, has_role
from fiatmint.app.core.exceptions import InsufficientPermissionsError
from fiatmint.app.db.session import get_db
from fiatmint.app.domain.perks.perk_service import PerkService
from fiatmint.app.models.enums import UserRole
from fiatmint.app.schemas.perk import (
    PerkCreate, PerkUpdate, PerkResponse, PerkClaimResponse, ClaimDebitRequest, ClaimDebitResult,
)

router = APIRouter(prefix="/perks", tags=["Perks"])


@router.get("", response_model=List[PerkResponse])
async def list_perks(
    include_inactive: bool = Query(False),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Perk catalog. Only admins may include inactive perks."""
    if include_inactive and not has_role(current_user, UserRole.ADMIN):
        raise InsufficientPermissionsError("Only admins can list inactive perks")
    return await PerkService.list_perks(db, active_only=not include_inactive)


@router.post("", response_model=PerkResponse, status_code=status.HTTP_201_CREATED)
async def create_perk(
    body: PerkCreate,
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    return await PerkService.create_perk(db, body, actor_id=current_user["user_id"])


# Claim routes are declared before /{perk_id} so the literal paths win.

@router.get("/claims/mine", response_model=List[PerkClaimResponse])
async def list_my_claims(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await PerkService.list_user_claims(db, current_user["user_id"])


@router.get("/claims", response_model=List[PerkClaimResponse])
async def list_claims(
    perk_id: Optional[str] = Query(None),
    current_user: dict = Depends(require_staff),
    db: AsyncSession = Depends(get_db)
):
    return await PerkService.list_claims(db, perk_id=perk_id)


@router.get("/claims/by-code/{qr_code}", response_model=PerkClaimResponse)
async def get_claim_by_code(
    qr_code: str = Path(..., min_length=6, max_length=64),
    current_user: dict = Depends(require_staff),
    db: AsyncSession = Depends(get_db)
):
    """Look up a claim from the scanned QR code."""
    return await PerkService.get_claim_by_code(db, qr_code)


@router.post("/claims/{claim_id}/redeem", response_model=PerkClaimResponse)
async def redeem_claim(
    claim_id: str = Path(...),
    current_user: dict = Depends(require_staff),
    db: AsyncSession = Depends(get_db)
):
    """Redeem a claim at the point of service. Succeeds once per claim."""
    return await PerkService.redeem_perk(db, claim_id, current_user["user_id"])


@router.post("/claims/{claim_id}/debit", response_model=ClaimDebitResult)
async def record_claim_debit(
    body: ClaimDebitRequest,
    claim_id: str = Path(...),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Record the confirmed token transfer a claim authorised."""
    return await PerkService.record_claim_debit(db, claim_id, body.tx_hash, actor_id=current_user["user_id"])


@router.get("/{perk_id}", response_model=PerkResponse)
async def get_perk(
    perk_id: str = Path(...),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await PerkService.get_perk(db, perk_id)


@router.patch("/{perk_id}", response_model=PerkResponse)
async def update_perk(
    body: PerkUpdate,
    perk_id: str = Path(...),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    return await PerkService.update_perk(db, perk_id, body, actor_id=current_user["user_id"])


@router.post("/{perk_id}/deactivate", response_model=PerkResponse)
async def deactivate_perk(
    perk_id: str = Path(...),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    return await PerkService.deactivate_perk(db, perk_id, actor_id=current_user["user_id"])


@router.delete("/{perk_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_perk(
    perk_id: str = Path(...),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Hard delete; refused once the perk has claims."""
    await PerkService.remove_perk(db, perk_id, actor_id=current_user["user_id"])


@router.post("/{perk_id}/claim", response_model=PerkClaimResponse, status_code=status.HTTP_201_CREATED)
async def claim_perk(
    perk_id: str = Path(...),
    current_user: dict = Depends(get_current_user),
    blockchain=Depends(get_blockchain_client),
    db: AsyncSession = Depends(get_db)
):
    return await PerkService.claim_perk(db, perk_id, current_user["user_id"], blockchain)
