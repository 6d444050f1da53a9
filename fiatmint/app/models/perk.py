"""
Perk and Perk Claim database models.
"""

import uuid

from sqlalchemy import Column, String, Text, Boolean, Numeric, ForeignKey, DateTime, JSON, Enum
from fiatmint.app.db.session import Base, utcnow
from fiatmint.app.models.perk_enums import PerkType


class Perk(Base):
    """Token-gated reward."""
    __tablename__ = "perks"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    token_cost = Column(Numeric(28, 8), nullable=False)
    perk_type = Column(
        Enum(PerkType, values_callable=lambda e: [m.value for m in e], name="perk_type"),
        nullable=False,
    )
    meta_data = Column("metadata", JSON, nullable=True)

    active = Column(Boolean, default=True, nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<Perk(id={self.id}, name='{self.name}', cost={self.token_cost})>"


class PerkClaim(Base):
    """
    Perk Claim model.

    Lifecycle: claimed -> redeemed (terminal).
    ``redeemed_at`` moves from NULL to a timestamp exactly once, guarded by a
    conditional update. The claim authorises a token debit but does not move
    tokens itself.
    """
    __tablename__ = "perk_claims"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    perk_id = Column(String(36), ForeignKey('perks.id'), nullable=False, index=True)
    user_id = Column(String(64), ForeignKey('users.id'), nullable=False, index=True)

    token_cost = Column(Numeric(28, 8), nullable=False)
    qr_code = Column(String(64), nullable=False, unique=True)

    claimed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    redeemed_at = Column(DateTime(timezone=True), nullable=True)
    redeemed_by = Column(String(64), nullable=True)

    def __repr__(self):
        return f"<PerkClaim(id={self.id}, perk={self.perk_id}, redeemed={self.redeemed_at is not None})>"
