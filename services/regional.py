"""
Regional dex pages, materialized on demand.

The first page of an uncached (or reset) region blocks while the region is
built. Later pages are served from whatever is cached while a background task
fills in missing entries.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from services.aggregation import RegionAggregator
from utils.constants import ERROR_REGION_REQUIRED, REGION_DEFAULT_LIMIT, REGION_MAX_LIMIT
from utils.database import Database
from utils.errors import ValidationError
from utils.validators import validate_region

logger = logging.getLogger("pokedex.regional")


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return REGION_DEFAULT_LIMIT
    return max(1, min(limit, REGION_MAX_LIMIT))


class RegionalDexService:
    def __init__(self, db: Database, aggregator: RegionAggregator):
        self.db = db
        self.aggregator = aggregator
        self._building: Dict[str, asyncio.Task] = {}

    def _ensure_in_background(self, region: str) -> asyncio.Task:
        running = self._building.get(region)
        if running is not None and not running.done():
            return running

        async def _run():
            try:
                await self.aggregator.ensure_region(region)
            except Exception as e:
                logger.error(f"Background build of region {region} failed: {e}", exc_info=True)
            finally:
                self._building.pop(region, None)

        task = asyncio.create_task(_run())
        self._building[region] = task
        return task

    async def page(
        self,
        region: Optional[str],
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        reset: bool = False,
    ) -> Dict[str, Any]:
        """
        One page of a region's dex.

        Args:
            region: Region key; required.
            limit: Page size, clamped to 1..200 (default 40).
            offset: Start position, negative values read as 0.
            reset: Drop the cached region and rebuild it first.

        Returns:
            `{data, totalCount, hasMore}`. `totalCount` is the upstream
            species count when upstream answers, else the cached count.

        Raises:
            ValidationError: Missing or malformed region.
        """
        if not region or not region.strip():
            raise ValidationError(ERROR_REGION_REQUIRED)
        region = region.strip().lower()
        is_valid, error_msg = validate_region(region)
        if not is_valid:
            raise ValidationError(error_msg)

        limit = clamp_limit(limit)
        offset = max(0, offset or 0)

        expected_total = await self.aggregator.expected_total(region)

        if reset:
            removed = await self.db.delete_region(region)
            logger.info(f"Reset region {region}, removed {removed} rows")

        cached_count = await self.db.count_regional(region)
        if offset == 0 and (cached_count == 0 or reset):
            await self.aggregator.ensure_region(region)
        elif expected_total is None or cached_count < expected_total:
            self._ensure_in_background(region)

        entries = await self.db.get_regional_page(region, limit, offset)
        total = expected_total if expected_total else await self.db.count_regional(region)

        return {
            "data": [e.to_dict() for e in entries],
            "totalCount": total,
            "hasMore": offset + limit < total,
        }

    async def close(self) -> None:
        tasks = list(self._building.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._building.clear()
