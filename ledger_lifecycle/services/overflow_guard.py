"""Overflow guard for the ledger's catch-all partition.

The ledger must never reject a write for lack of a partition. That holds as
long as exactly one overflow partition ``[boundary, MAXVALUE)`` exists and
every dated partition ends at or before ``boundary``. The guard checks this
invariant at the start of every tick and again, under the executor's lock,
before any dated partition is created. It never repairs a violation: a
breached invariant means the partition set was changed outside this service.
"""

from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING

from ledger_lifecycle.core.exceptions import OverflowInvariantError
from ledger_lifecycle.core.logging import get_logger
from ledger_lifecycle.services.catalog_reader import DateRange

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from ledger_lifecycle.services.catalog_reader import CatalogReader, Partition

logger = get_logger(__name__)


class OverflowGuard:
    """Validates the overflow partition invariant."""

    def verify(self, partitions: Sequence[Partition]) -> Partition | None:
        """Check the overflow invariant against a catalog snapshot.

        A missing overflow partition is not a violation here; the planner
        schedules its creation.

        Args:
            partitions: Catalog snapshot

        Returns:
            The overflow partition, or None if there is none

        Raises:
            OverflowInvariantError: More than one overflow partition exists, or
                a dated partition extends past the overflow boundary
        """
        attached = [p for p in partitions if p.attached and isinstance(p.date_range, DateRange)]
        overflows = [p for p in attached if p.is_overflow]

        if len(overflows) > 1:
            names = sorted(p.name for p in overflows)
            raise OverflowInvariantError(
                f"Found {len(overflows)} overflow partitions: {', '.join(names)}",
                details={"overflow_partitions": names},
            )
        if not overflows:
            return None

        overflow = overflows[0]
        boundary = overflow.date_range.start  # type: ignore[union-attr]
        breaching = sorted(
            p.name
            for p in attached
            if not p.is_overflow and p.date_range.end > boundary  # type: ignore[union-attr,operator]
        )
        if breaching:
            raise OverflowInvariantError(
                f"Dated partitions extend past overflow boundary {boundary.isoformat()}: "
                f"{', '.join(breaching)}",
                details={
                    "overflow_partition": overflow.name,
                    "boundary": boundary.isoformat(),
                    "breaching_partitions": breaching,
                },
            )
        return overflow

    async def assert_dated_creation_allowed(
        self,
        session: AsyncSession,
        catalog: CatalogReader,
        day: date,
    ) -> list[Partition]:
        """Re-read the catalog and refuse a dated partition at or past the boundary.

        Returns:
            The catalog snapshot the check was made against

        Raises:
            OverflowInvariantError: The invariant is already broken, or
                ``[day, day+1)`` would end after the overflow boundary
        """
        partitions = list(await catalog.list_partitions(session))
        overflow = self.verify(partitions)
        if overflow is None:
            return partitions
        proposed = DateRange.for_day(day)
        boundary = overflow.date_range.start  # type: ignore[union-attr]
        if proposed.end > boundary:  # type: ignore[operator]
            raise OverflowInvariantError(
                f"Dated partition for {day.isoformat()} would cross overflow boundary "
                f"{boundary.isoformat()}",
                details={"day": day.isoformat(), "boundary": boundary.isoformat()},
            )
        return partitions
