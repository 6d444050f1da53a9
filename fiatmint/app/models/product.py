"""
Product database model.

A purchasable token bundle.
"""

import uuid

from sqlalchemy import Column, String, Boolean, Numeric, DateTime
from fiatmint.app.db.session import Base, utcnow


class Product(Base):
    """Token bundle sold for EUR at checkout."""
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)

    token_amount = Column(Numeric(28, 8), nullable=False)
    price_eur = Column(Numeric(18, 2), nullable=False)

    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Product(id={self.id}, name='{self.name}', tokens={self.token_amount}, eur={self.price_eur})>"
