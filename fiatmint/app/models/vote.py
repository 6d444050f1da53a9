"""
Governance vote database models.
"""

import uuid

from sqlalchemy import Column, String, Text, Boolean, ForeignKey, DateTime, UniqueConstraint
from sqlalchemy.orm import relationship
from fiatmint.app.db.session import Base, utcnow


class Vote(Base):
    """
    Vote campaign.

    Open between ``start_at`` and ``end_at``; ``active = False`` is an admin
    soft-delete that overrides the time window.
    """
    __tablename__ = "votes"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False)
    active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    options = relationship(
        "VoteOption",
        lazy="selectin",
        order_by="VoteOption.created_at",
        back_populates="vote",
    )

    def __repr__(self):
        return f"<Vote(id={self.id}, title='{self.title}', active={self.active})>"


class VoteOption(Base):
    """Choice within a vote. Removable only while no ballot references it."""
    __tablename__ = "vote_options"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    vote_id = Column(String(36), ForeignKey('votes.id'), nullable=False, index=True)
    label = Column(String(255), nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    vote = relationship("Vote", back_populates="options")

    def __repr__(self):
        return f"<VoteOption(id={self.id}, label='{self.label}')>"


class VoteBallot(Base):
    """
    Vote Ballot model.

    One ballot per (vote, voter) through a DB-level unique constraint.
    """
    __tablename__ = "vote_ballots"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    vote_id = Column(String(36), ForeignKey('votes.id'), nullable=False, index=True)
    option_id = Column(String(36), ForeignKey('vote_options.id'), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)

    cast_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('vote_id', 'user_id', name='uq_vote_ballots_vote_user'),
    )

    def __repr__(self):
        return f"<VoteBallot(vote={self.vote_id}, user={self.user_id}, option={self.option_id})>"
