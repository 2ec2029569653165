"""
Carrier configuration model

One row per merchant per carrier. Holds the carrier's API credentials
(OAuth tokens for UPS, API key/secret for Canada Post), the markup the
merchant adds on top of carrier rates, and the sandbox/production switch.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime,
    Numeric, JSON, Index, UniqueConstraint, Enum as SQLEnum
)
import enum

from app.core.database import Base


class CarrierCode(str, enum.Enum):
    """
    Supported shipping carriers.

    FEDEX can be configured but has no rate adapter yet; the factory skips it.
    """
    UPS = "UPS"
    CANADA_POST = "CANADA_POST"
    FEDEX = "FEDEX"


class CarrierConfiguration(Base):
    """
    Per-merchant carrier configuration.

    api_credentials (JSON) keys by carrier:
        UPS: client_id, client_secret, access_token, refresh_token,
             token_expires_at (ISO-8601), account_number,
             enable_negotiated_rates
        CANADA_POST: api_key, api_secret, customer_number, contract_id
    """
    __tablename__ = "carrier_configurations"
    __table_args__ = (
        UniqueConstraint("user_id", "carrier_name", name="uq_carrier_configurations_user_carrier"),
        Index("ix_carrier_configurations_user_active", "user_id", "is_active"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)

    carrier_name = Column(SQLEnum(CarrierCode), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # Credentials and token state (see class docstring)
    api_credentials = Column(JSON, default=dict, nullable=False)
    account_number = Column(String(50), nullable=True)

    # Rate markup: add X% to carrier rates
    markup_percentage = Column(Numeric(5, 2), default=0, nullable=False)

    use_sandbox = Column(Boolean, default=True, nullable=False)
    default_package_type = Column(String(10), default="02")  # UPS Customer Supplied Package

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self):
        return f"<CarrierConfiguration(id={self.id}, carrier={self.carrier_name}, active={self.is_active})>"
