"""
Order and settlement enumerations.
"""

import enum


class OrderStatus(str, enum.Enum):
    """Order status enumeration."""
    PENDING = "pending"  # Checkout started, waiting for payment
    COMPLETED = "completed"  # Payment settled (and tokens minted)
    FAILED = "failed"  # Mint rejected, terminal


class IdempotencyStatus(str, enum.Enum):
    """State of an externally-effecting operation keyed by idempotency key."""
    IN_FLIGHT = "in_flight"  # Claimed, external call not yet resolved
    COMPLETED = "completed"
    FAILED = "failed"
    AMBIGUOUS = "ambiguous"  # Outcome unknown, manual reconciliation required


class OutboxEventType:
    """Domain events published through the outbox."""
    ORDER_SETTLED = "OrderSettled"
