"""
Outbox Event database model.

Domain events written in the same transaction as the state change that
produced them, then delivered at least once by the dispatcher.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON
from fiatmint.app.db.session import Base, utcnow


class OutboxEvent(Base):
    """
    Transactional outbox table.

    Undelivered events have ``dispatched_at`` NULL. Retryable delivery
    failures bump ``attempts`` and keep the event pending.
    """
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    event_type = Column(String(100), nullable=False, index=True)
    aggregate_id = Column(String(64), nullable=False, index=True)
    payload = Column(JSON, nullable=False)

    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    dispatched_at = Column(DateTime(timezone=True), nullable=True, index=True)

    def __repr__(self):
        return f"<OutboxEvent(id={self.id}, type='{self.event_type}', aggregate='{self.aggregate_id}')>"
