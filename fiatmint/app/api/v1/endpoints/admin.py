"""
Admin Operations API Endpoints.

Mint reconciliation and manual outbox dispatch.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Body, Query
from sqlalchemy.ext.asyncio import AsyncSession

from fiatmint.app.core.dependencies import get_mint_coordinator, get_outbox_dispatcher
from fiatmint.app.core.guards import require_admin
from fiatmint.app.db.session import get_db
from fiatmint.app.schemas.mint import UnresolvedMint, ReconcileRequest, ReconcileResult, DispatchReport

router = APIRouter(prefix="/admin", tags=["Admin - Operations"])


@router.get("/mints/unresolved", response_model=List[UnresolvedMint])
async def list_unresolved_mints(
    current_user: dict = Depends(require_admin),
    coordinator=Depends(get_mint_coordinator),
    db: AsyncSession = Depends(get_db)
):
    """Mints needing an operator decision (ambiguous or stuck in flight)."""
    return await coordinator.list_unresolved(db)


@router.post("/mints/{order_id}/reconcile", response_model=ReconcileResult)
async def reconcile_mint(
    order_id: str = Path(...),
    body: ReconcileRequest = Body(...),
    current_user: dict = Depends(require_admin),
    coordinator=Depends(get_mint_coordinator),
    db: AsyncSession = Depends(get_db)
):
    """
    Resolve an unresolved mint.

    Send the on-chain tx_hash if the mint landed; omit it if it did not.
    """
    return await coordinator.reconcile(db, order_id, current_user["user_id"], tx_hash=body.tx_hash)


@router.post("/outbox/dispatch", response_model=DispatchReport)
async def dispatch_outbox(
    limit: Optional[int] = Query(None, ge=1, le=500),
    current_user: dict = Depends(require_admin),
    dispatcher=Depends(get_outbox_dispatcher),
    db: AsyncSession = Depends(get_db)
):
    """Run one outbox dispatch cycle now."""
    return await dispatcher.dispatch_pending(db, limit=limit)
