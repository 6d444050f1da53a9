"""
Idempotency Record database model.

Single lookup table consulted before every externally-effecting operation
(settlement, mint, claim debit). The unique key arbitrates concurrent callers.
"""

import uuid

from sqlalchemy import Column, String, Text, DateTime, JSON, Enum
from fiatmint.app.db.session import Base, utcnow
from fiatmint.app.models.order_enums import IdempotencyStatus


class IdempotencyRecord(Base):
    """
    Idempotency record.

    Keys look like ``settle:<order_id>`` or ``mint:<order_id>``.
    ``response`` holds the original successful result returned on replay.
    ``request_payload`` keeps what is needed to finish a reconciliation.
    """
    __tablename__ = "idempotency_keys"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    key = Column(String(128), unique=True, nullable=False)
    operation = Column(String(50), nullable=False, index=True)

    status = Column(
        Enum(IdempotencyStatus, values_callable=lambda e: [m.value for m in e], name="idempotency_status"),
        nullable=False,
        index=True,
    )
    request_payload = Column(JSON, nullable=True)
    response = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<IdempotencyRecord(key='{self.key}', status='{self.status.value}')>"
