"""
Audit logging service for tracking operator actions.

Provides centralized logging for compliance and security monitoring.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc, func
from fiatmint.app.models.audit_log import AuditLog


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    # Perk catalog and redemption
    PERK_CREATED = "PERK_CREATED"
    PERK_UPDATED = "PERK_UPDATED"
    PERK_DEACTIVATED = "PERK_DEACTIVATED"
    PERK_REMOVED = "PERK_REMOVED"
    PERK_REDEEMED = "PERK_REDEEMED"
    CLAIM_DEBIT_RECORDED = "CLAIM_DEBIT_RECORDED"

    # Governance
    VOTE_CREATED = "VOTE_CREATED"
    VOTE_UPDATED = "VOTE_UPDATED"
    VOTE_DEACTIVATED = "VOTE_DEACTIVATED"
    VOTE_OPTION_ADDED = "VOTE_OPTION_ADDED"
    VOTE_OPTION_REMOVED = "VOTE_OPTION_REMOVED"

    # Minting
    ADMIN_MINT = "ADMIN_MINT"
    MINT_RECONCILED = "MINT_RECONCILED"


async def log_event(
    db: AsyncSession,
    action: str,
    actor_id: Optional[str] = None,
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Log an operator event to the audit log.

    Args:
        db: Database session
        action: Action being performed (use AuditAction constants)
        actor_id: ID of user performing the action
        target_type: Kind of entity acted upon (perk, vote, order, ...)
        target_id: ID of the entity acted upon
        metadata: Additional context as JSON

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        meta_data=metadata,
    )

    db.add(audit_log)
    await db.commit()
    await db.refresh(audit_log)

    return audit_log


async def get_audit_trail(
    db: AsyncSession,
    action: Optional[str] = None,
    target_id: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[AuditLog], int]:
    """
    Retrieve audit trail with optional filtering.

    Returns:
        (logs most recent first, total matching count)
    """
    query = select(AuditLog)
    count_query = select(func.count(AuditLog.id))

    if action:
        query = query.where(AuditLog.action == action)
        count_query = count_query.where(AuditLog.action == action)

    if target_id:
        query = query.where(AuditLog.target_id == target_id)
        count_query = count_query.where(AuditLog.target_id == target_id)

    query = query.order_by(desc(AuditLog.timestamp), desc(AuditLog.id))
    query = query.offset((page - 1) * limit).limit(limit)

    result = await db.execute(query)
    total = (await db.execute(count_query)).scalar() or 0
    return list(result.scalars().all()), total
