"""Snapshot precondition for irreversible deletion.

A dated partition may only be dropped once the daily snapshot job has
aggregated the day it covers. The snapshot job itself lives elsewhere; this
module only answers "does a snapshot covering this range exist".
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from sqlalchemy import func, select

from ledger_lifecycle.core.logging import get_logger
from ledger_lifecycle.models.farming_snapshot import FarmingSnapshot

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from ledger_lifecycle.services.catalog_reader import DateRange

logger = get_logger(__name__)


class SnapshotStore(Protocol):
    async def has_snapshot(self, session: AsyncSession, date_range: DateRange) -> bool: ...


class FarmingSnapshotStore:
    """Looks for ``farming_snapshots`` rows dated within the partition's range."""

    async def has_snapshot(self, session: AsyncSession, date_range: DateRange) -> bool:
        if date_range.end is None:
            # An unbounded range can never be fully covered by a snapshot
            return False
        stmt = select(func.count()).select_from(FarmingSnapshot).where(
            FarmingSnapshot.snapshot_date >= date_range.start,
            FarmingSnapshot.snapshot_date < date_range.end,
        )
        count = (await session.execute(stmt)).scalar_one()
        logger.debug(
            f"Found {count} snapshots for {date_range}",
            extra={"range": str(date_range), "snapshots": count},
        )
        return int(count) > 0
