"""Reference data that must exist before the API serves requests."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.integration import INTEGRATION_CATALOG, Integration

logger = logging.getLogger(__name__)


async def sync_integration_catalog(db: AsyncSession) -> int:
    """Insert or update every catalog integration; returns the number written."""
    for entry in INTEGRATION_CATALOG:
        integration = await db.get(Integration, entry["id"])
        if integration is None:
            db.add(Integration(**entry))
        else:
            for key, value in entry.items():
                setattr(integration, key, value)
    await db.commit()
    logger.info("Integration catalog synced (%s entries)", len(INTEGRATION_CATALOG))
    return len(INTEGRATION_CATALOG)
