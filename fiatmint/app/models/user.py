"""
User database model.

Identity is owned by the external identity provider; this table only keeps
what the settlement core needs to act on a user's behalf.
"""

from sqlalchemy import Column, String, DateTime
from fiatmint.app.db.session import Base, utcnow


class User(Base):
    """
    Known token holder.

    ``wallet_address`` is the registered recipient for mints and the address
    whose balance gates perk claims.
    """
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    email = Column(String(255), unique=True, index=True, nullable=True)
    wallet_address = Column(String(64), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, wallet='{self.wallet_address}')>"
