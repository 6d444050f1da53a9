"""
Ledger Entry database model.

Append-only record of every fiat and token movement.
"""

from sqlalchemy import Column, Integer, Numeric, DateTime, Enum, String, JSON, Index, event
from fiatmint.app.db.session import Base, utcnow
from fiatmint.app.models.ledger_enums import Direction, Currency


def _values(enum_cls):
    return [member.value for member in enum_cls]


class LedgerEntry(Base):
    """
    Ledger Entry model.

    Immutable record of one value movement.
    Amount is never negative; the sign is carried by direction.
    Entries sharing a reference_id belong to one real-world event and are
    audited as a group. Corrections are new offsetting entries.
    NO updates or deletions allowed.
    """
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    kind = Column(String(50), nullable=False, index=True)
    reference_id = Column(String(64), nullable=False)

    direction = Column(Enum(Direction, values_callable=_values, name="ledger_direction"), nullable=False)
    amount = Column(Numeric(28, 8), nullable=False)
    currency = Column(Enum(Currency, values_callable=_values, name="ledger_currency"), nullable=False, index=True)

    meta_data = Column("metadata", JSON, nullable=True)

    # Timestamps (Immutable - no updated_at)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("ix_ledger_entries_reference_kind", "reference_id", "kind"),
    )

    def __repr__(self):
        return (
            f"<LedgerEntry(id={self.id}, kind='{self.kind}', ref='{self.reference_id}', "
            f"{self.direction.value} {self.amount} {self.currency.value})>"
        )


class ImmutableRecordError(RuntimeError):
    """Raised when code tries to change an append-only record."""


@event.listens_for(LedgerEntry, "before_update")
def _reject_ledger_update(mapper, connection, target):
    raise ImmutableRecordError(f"Ledger entry {target.id} is immutable")


@event.listens_for(LedgerEntry, "before_delete")
def _reject_ledger_delete(mapper, connection, target):
    raise ImmutableRecordError(f"Ledger entry {target.id} cannot be deleted")
