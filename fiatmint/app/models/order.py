"""
Order database model.

Created when checkout begins, settled by a confirmed payment.
"""

import uuid

from sqlalchemy import Column, String, ForeignKey, DateTime, Enum
from fiatmint.app.db.session import Base, utcnow
from fiatmint.app.models.order_enums import OrderStatus


class Order(Base):
    """
    Order model.

    Lifecycle: pending -> completed (payment settled) or -> failed (mint rejected).
    Never deleted. Operator mints use orders without a product.
    """
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))

    user_id = Column(String(64), ForeignKey('users.id'), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey('products.id'), nullable=True)

    status = Column(
        Enum(OrderStatus, values_callable=lambda e: [m.value for m in e], name="order_status"),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True,
    )

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<Order(id={self.id}, user={self.user_id}, status='{self.status.value}')>"
