"""
Audit Log Database Model.

Tracks operator actions on the economy for compliance and review.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from fiatmint.app.db.session import Base, utcnow


class AuditLog(Base):
    """
    Audit log model for operator actions.

    Events logged:
    - PERK_* / VOTE_* catalog and campaign administration
    - PERK_REDEEMED by staff
    - MINT_RECONCILED / ADMIN_MINT
    - CLAIM_DEBIT_RECORDED
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action (None for system actions)
    actor_id = Column(String(64), index=True, nullable=True)

    # What action was performed
    action = Column(String(100), nullable=False, index=True)

    # What it was performed on
    target_type = Column(String(50), nullable=True)
    target_id = Column(String(64), index=True, nullable=True)

    # Additional context (JSON for flexibility)
    meta_data = Column(JSON, nullable=True)

    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', actor={self.actor_id}, target={self.target_id})>"
