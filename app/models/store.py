"""
Store configuration model

A merchant's connected storefront. ship_from_address is the default origin
for rate requests on orders placed through that store.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON, Index

from app.core.database import Base


class StoreConfiguration(Base):
    __tablename__ = "store_configurations"
    __table_args__ = (
        Index("ix_store_configurations_user_store", "user_id", "store_name"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    store_name = Column(String(255), nullable=False)
    platform = Column(String(50), default="shopify")
    is_active = Column(Boolean, default=True, nullable=False)

    # {"name", "company", "address_line1", "address_line2", "city", "state",
    #  "postal_code", "country", "phone"}
    ship_from_address = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self):
        return f"<StoreConfiguration(id={self.id}, store={self.store_name}, active={self.is_active})>"
