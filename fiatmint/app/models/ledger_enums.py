"""
Ledger enumerations.
"""

import enum


class Direction(str, enum.Enum):
    """Direction of a value movement relative to the platform."""
    IN = "in"  # Value entering the platform
    OUT = "out"  # Value leaving the platform


class Currency(str, enum.Enum):
    """Currencies the ledger records."""
    EUR = "EUR"
    TOKEN = "TOKEN"


class LedgerKind:
    """Standardized ledger entry kinds."""
    PAYMENT = "payment"
    MINT = "mint"
    PERK_CLAIM = "perk_claim"
    ADJUSTMENT = "adjustment"
    VOTE = "vote"
