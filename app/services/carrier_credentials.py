"""
Carrier credential store

Loads a merchant's active carrier configurations and persists refreshed
OAuth tokens. Token writes are a plain UPDATE of api_credentials; when two
refreshes race, the last write wins.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.carrier import CarrierConfiguration

logger = logging.getLogger(__name__)


class CarrierCredentialStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_active(self, user_id: int) -> List[CarrierConfiguration]:
        """Active carrier configurations for a merchant."""
        result = await self.db.execute(
            select(CarrierConfiguration).where(
                and_(
                    CarrierConfiguration.user_id == user_id,
                    CarrierConfiguration.is_active == True,  # noqa: E712
                )
            )
        )
        return list(result.scalars().all())

    async def save_tokens(self, config_id: int, api_credentials: Dict[str, Any]) -> None:
        """Overwrite api_credentials for one configuration and commit."""
        await self.db.execute(
            update(CarrierConfiguration)
            .where(CarrierConfiguration.id == config_id)
            .values(
                api_credentials=api_credentials,
                updated_at=datetime.now(timezone.utc),
            )
        )
        await self.db.commit()
        logger.info(f"Persisted refreshed carrier token for configuration {config_id}")
