"""
Mint database model.

One confirmed on-chain mint per order.
"""

import uuid

from sqlalchemy import Column, String, Integer, ForeignKey, DateTime, Numeric, event
from fiatmint.app.db.session import Base, utcnow
from fiatmint.app.models.ledger_entry import ImmutableRecordError


class Mint(Base):
    """
    Mint model.

    ``order_id`` is unique: the database refuses a second mint for an order.
    Immutable once written.
    """
    __tablename__ = "mints"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    order_id = Column(String(64), ForeignKey('orders.id'), nullable=False, unique=True)
    user_id = Column(String(64), ForeignKey('users.id'), nullable=False, index=True)

    token_amount = Column(Numeric(28, 8), nullable=False)
    recipient_address = Column(String(64), nullable=False)
    tx_hash = Column(String(80), nullable=False, unique=True)
    chain_id = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Mint(order={self.order_id}, tokens={self.token_amount}, tx='{self.tx_hash}')>"


@event.listens_for(Mint, "before_update")
def _reject_mint_update(mapper, connection, target):
    raise ImmutableRecordError(f"Mint {target.id} is immutable")
