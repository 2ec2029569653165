"""
Order model

Only the columns rate calculation reads: the shipping address, the package
weight/dimensions captured at import, and the store the order came from.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Float, Numeric, DateTime, Index

from app.core.database import Base


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_user_id", "user_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False)
    order_number = Column(String(50), nullable=False)
    store_name = Column(String(255), nullable=True)
    status = Column(String(50), default="pending")

    # Customer
    customer_name = Column(String(255), nullable=False)
    customer_email = Column(String(255), nullable=True)

    # Shipping address
    shipping_address_line1 = Column(String(255), nullable=True)
    shipping_address_line2 = Column(String(255), nullable=True)
    shipping_city = Column(String(100), nullable=True)
    shipping_state = Column(String(100), nullable=True)
    shipping_zip = Column(String(20), nullable=True)
    shipping_country = Column(String(2), nullable=True)

    # Package (imperial)
    weight_lbs = Column(Float, nullable=True)
    length_inches = Column(Float, nullable=True)
    width_inches = Column(Float, nullable=True)
    height_inches = Column(Float, nullable=True)

    total_amount = Column(Numeric(10, 2), default=0)
    currency = Column(String(3), default="USD")

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self):
        return f"<Order(id={self.id}, number={self.order_number}, user={self.user_id})>"
