"""Catalog reader for the partitioned ledger table.

Introspects the PostgreSQL system catalog to rebuild the current partition
set on every run. Nothing about partitions is persisted by this service: the
catalog is the single source of truth for which tables exist and which
ranges they own, and the audit log (see ``partition_audit``) is the source of
truth for what has been done to them.

Three kinds of relations are read:
    - Attached children of the ledger table, with their bound expression,
      row estimate and cumulative write statistics
    - Detached dated tables (``<ledger>_YYYY_MM_DD`` no longer in the
      partition tree), which keep moving through later lifecycle stages
    - Archive copies (``archived_<partition>``, ``deep_archive_<partition>``)

Bound expressions are parsed in exactly one place, ``parse_partition_bounds``,
which returns a typed ``DateRange`` or ``UnknownRange``. Unparsable bounds are
reported but never guessed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import text

from ledger_lifecycle.core.exceptions import DB_ERRORS, is_transient_db_error
from ledger_lifecycle.core.logging import get_logger
from ledger_lifecycle.core.retry import retry_async

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)

ARCHIVE_PREFIX = "archived_"
DEEP_ARCHIVE_PREFIX = "deep_archive_"
OVERFLOW_SUFFIX = "future"

_BOUND_PATTERN = re.compile(
    r"^\s*FOR VALUES FROM \('([^']+)'\) TO \((?:'([^']+)'|(MAXVALUE))\)\s*$",
    re.IGNORECASE,
)
# "2026-01-01 00:00:00+00" -> "...+00:00" so fromisoformat accepts short offsets
_SHORT_OFFSET = re.compile(r"(\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?)([+-]\d{2})$")


def sanitize_identifier(name: str) -> str:
    """Sanitize a table name for use in dynamic DDL.

    Args:
        name: Raw table name

    Returns:
        Name containing only lowercase alphanumerics and underscores

    Raises:
        ValueError: If nothing is left after sanitization
    """
    sanitized = re.sub(r"[^a-zA-Z0-9_]", "", name).lower()
    if not sanitized:
        raise ValueError(f"Invalid identifier: {name!r}")
    return sanitized


@dataclass(frozen=True, slots=True)
class DateRange:
    """Half-open time range ``[start, end)``; ``end=None`` means unbounded."""

    start: datetime
    end: datetime | None = None

    def __post_init__(self) -> None:
        if self.start.tzinfo is None:
            raise ValueError("DateRange.start must be timezone-aware")
        if self.end is not None:
            if self.end.tzinfo is None:
                raise ValueError("DateRange.end must be timezone-aware")
            if self.end <= self.start:
                raise ValueError(f"Empty range: {self.start} >= {self.end}")

    @classmethod
    def for_day(cls, day: date) -> DateRange:
        start = datetime.combine(day, time.min, tzinfo=UTC)
        return cls(start=start, end=start + timedelta(days=1))

    @classmethod
    def from_day(cls, day: date) -> DateRange:
        """Unbounded range starting at midnight UTC of ``day``."""
        return cls(start=datetime.combine(day, time.min, tzinfo=UTC))

    @property
    def is_unbounded(self) -> bool:
        return self.end is None

    @property
    def start_date(self) -> date:
        return self.start.astimezone(UTC).date()

    @property
    def end_date(self) -> date | None:
        return None if self.end is None else self.end.astimezone(UTC).date()

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment and (self.end is None or moment < self.end)

    def covers(self, other: DateRange) -> bool:
        """True if ``other`` lies entirely within this range."""
        if self.start > other.start:
            return False
        if self.end is None:
            return True
        return other.end is not None and other.end <= self.end

    def overlaps(self, other: DateRange) -> bool:
        """Half-open overlap test, with a missing end treated as +infinity."""
        self_starts_before_other_ends = other.end is None or self.start < other.end
        other_starts_before_self_ends = self.end is None or other.start < self.end
        return self_starts_before_other_ends and other_starts_before_self_ends

    def __str__(self) -> str:
        end = "MAXVALUE" if self.end is None else self.end.isoformat()
        return f"[{self.start.isoformat()}, {end})"


@dataclass(frozen=True, slots=True)
class UnknownRange:
    """Bound expression that could not be interpreted as a date range."""

    raw: str | None

    def __str__(self) -> str:
        return f"unknown({self.raw!r})"


def _parse_bound_value(value: str) -> datetime:
    value = _SHORT_OFFSET.sub(r"\1\2:00", value.strip())
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def parse_partition_bounds(expression: str | None) -> DateRange | UnknownRange:
    """Parse a ``pg_get_expr(relpartbound)`` expression.

    Accepts ``FOR VALUES FROM ('<date|timestamp>') TO ('<date|timestamp>')``
    and ``... TO (MAXVALUE)``. ``DEFAULT`` partitions, ``MINVALUE`` lower
    bounds and anything else come back as ``UnknownRange``.

    Args:
        expression: Raw bound expression from the catalog

    Returns:
        DateRange normalized to UTC, or UnknownRange carrying the raw text
    """
    if not expression:
        return UnknownRange(raw=expression)

    match = _BOUND_PATTERN.match(expression)
    if match is None:
        return UnknownRange(raw=expression)

    from_str, to_str, maxvalue = match.groups()
    try:
        start = _parse_bound_value(from_str)
        end = None if maxvalue else _parse_bound_value(to_str)
        return DateRange(start=start, end=end)
    except ValueError:
        return UnknownRange(raw=expression)


def dated_partition_pattern(ledger_table: str) -> re.Pattern[str]:
    return re.compile(rf"^{sanitize_identifier(ledger_table)}_(\d{{4}})_(\d{{2}})_(\d{{2}})$")


def range_from_partition_name(name: str, ledger_table: str) -> DateRange | None:
    """Recover the one-day range encoded in a canonical partition name.

    Args:
        name: Table name such as ``transactions_2026_01_31``
        ledger_table: Parent ledger table name

    Returns:
        ``[d, d+1)`` for a canonical dated name, otherwise None
    """
    match = dated_partition_pattern(ledger_table).match(name)
    if match is None:
        return None
    try:
        day = date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError:
        return None
    return DateRange.for_day(day)


def archive_table_names(partition_name: str) -> tuple[str, str]:
    """Names of the archive and deep-archive copies of a partition."""
    return (f"{ARCHIVE_PREFIX}{partition_name}", f"{DEEP_ARCHIVE_PREFIX}{partition_name}")


@dataclass(frozen=True, slots=True)
class Partition:
    """One partition of the ledger table as seen in the catalog.

    Attributes:
        name: Table name
        date_range: Parsed range, or UnknownRange for unparsable bounds
        attached: False once the table has been detached from the ledger
        activity_count: Cumulative inserts/updates/deletes from table statistics
        row_estimate: ``reltuples`` estimate
        archive_tables: Archive copies of this partition that currently exist
        bound_expression: Raw catalog bound expression (attached only)
    """

    name: str
    date_range: DateRange | UnknownRange
    attached: bool = True
    activity_count: int = 0
    row_estimate: int = 0
    archive_tables: tuple[str, ...] = ()
    bound_expression: str | None = None

    @property
    def is_known(self) -> bool:
        return isinstance(self.date_range, DateRange)

    @property
    def is_overflow(self) -> bool:
        return isinstance(self.date_range, DateRange) and self.date_range.end is None

    def age_days(self, today: date) -> int | None:
        """Days between the partition's start date and ``today``."""
        if not isinstance(self.date_range, DateRange):
            return None
        return (today - self.date_range.start_date).days


class CatalogReader:
    """Reads the ledger's partition set from the PostgreSQL catalog."""

    def __init__(
        self,
        ledger_table: str = "transactions",
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self.ledger_table = sanitize_identifier(ledger_table)
        self._session_factory = session_factory
        self._dated_pattern = dated_partition_pattern(self.ledger_table)

    @property
    def overflow_name(self) -> str:
        return f"{self.ledger_table}_{OVERFLOW_SUFFIX}"

    async def list_partitions(self, session: AsyncSession) -> list[Partition]:
        """List attached and detached partitions of the ledger table.

        Partitions are returned ordered by range start; unknown ranges last.

        Args:
            session: Database session (read-only use)

        Returns:
            Partitions with archive tables attached to each record
        """
        archives = await self._list_archive_tables(session)
        partitions: list[Partition] = []

        result = await session.execute(
            text(
                """
                SELECT
                    c.relname AS partition_name,
                    pg_catalog.pg_get_expr(c.relpartbound, c.oid) AS bounds,
                    c.reltuples AS row_estimate,
                    COALESCE(
                        s.n_tup_ins + s.n_tup_upd + s.n_tup_del + s.n_tup_hot_upd, 0
                    ) AS activity
                FROM pg_catalog.pg_class c
                JOIN pg_catalog.pg_inherits i ON c.oid = i.inhrelid
                JOIN pg_catalog.pg_class p ON i.inhparent = p.oid
                JOIN pg_catalog.pg_namespace n ON p.relnamespace = n.oid
                LEFT JOIN pg_catalog.pg_stat_user_tables s ON s.relid = c.oid
                WHERE p.relname = :table_name
                AND n.nspname = current_schema()
                AND c.relkind IN ('r', 'p')
                ORDER BY c.relname
                """
            ),
            {"table_name": self.ledger_table},
        )
        for row in result.fetchall():
            name, bounds, row_estimate, activity = row[0], row[1], row[2], row[3]
            date_range = parse_partition_bounds(bounds)
            if isinstance(date_range, UnknownRange):
                logger.warning(
                    f"Unparsable bound expression for partition {name}: {bounds!r}",
                    extra={"partition": name, "bounds": bounds},
                )
            partitions.append(
                Partition(
                    name=name,
                    date_range=date_range,
                    attached=True,
                    activity_count=int(activity or 0),
                    row_estimate=max(int(row_estimate or 0), 0),
                    archive_tables=archives.get(name, ()),
                    bound_expression=bounds,
                )
            )

        result = await session.execute(
            text(
                """
                SELECT
                    c.relname AS table_name,
                    c.reltuples AS row_estimate,
                    COALESCE(
                        s.n_tup_ins + s.n_tup_upd + s.n_tup_del + s.n_tup_hot_upd, 0
                    ) AS activity
                FROM pg_catalog.pg_class c
                JOIN pg_catalog.pg_namespace n ON c.relnamespace = n.oid
                LEFT JOIN pg_catalog.pg_stat_user_tables s ON s.relid = c.oid
                WHERE n.nspname = current_schema()
                AND c.relkind = 'r'
                AND NOT c.relispartition
                AND c.relname LIKE :prefix
                ORDER BY c.relname
                """
            ),
            {"prefix": f"{self.ledger_table}\\_%"},
        )
        for row in result.fetchall():
            name, row_estimate, activity = row[0], row[1], row[2]
            date_range = range_from_partition_name(name, self.ledger_table)
            if date_range is None:
                continue
            partitions.append(
                Partition(
                    name=name,
                    date_range=date_range,
                    attached=False,
                    activity_count=int(activity or 0),
                    row_estimate=max(int(row_estimate or 0), 0),
                    archive_tables=archives.get(name, ()),
                )
            )

        partitions.sort(key=_partition_sort_key)
        logger.debug(
            f"Catalog lists {len(partitions)} partitions of {self.ledger_table}",
            extra={
                "table": self.ledger_table,
                "attached": sum(1 for p in partitions if p.attached),
                "detached": sum(1 for p in partitions if not p.attached),
            },
        )
        return partitions

    async def _list_archive_tables(self, session: AsyncSession) -> dict[str, tuple[str, ...]]:
        result = await session.execute(
            text(
                """
                SELECT c.relname
                FROM pg_catalog.pg_class c
                JOIN pg_catalog.pg_namespace n ON c.relnamespace = n.oid
                WHERE n.nspname = current_schema()
                AND c.relkind = 'r'
                AND (c.relname LIKE :archive OR c.relname LIKE :deep_archive)
                ORDER BY c.relname
                """
            ),
            {
                "archive": f"archived\\_{self.ledger_table}\\_%",
                "deep_archive": f"deep\\_archive\\_{self.ledger_table}\\_%",
            },
        )
        archives: dict[str, list[str]] = {}
        for row in result.fetchall():
            table_name = row[0]
            for prefix in (DEEP_ARCHIVE_PREFIX, ARCHIVE_PREFIX):
                if table_name.startswith(prefix):
                    source = table_name[len(prefix) :]
                    if self._dated_pattern.match(source):
                        archives.setdefault(source, []).append(table_name)
                    break
        return {source: tuple(names) for source, names in archives.items()}

    async def relation_exists(self, session: AsyncSession, name: str) -> bool:
        """Check whether a table (plain or partitioned) exists in the current schema."""
        result = await session.execute(
            text(
                """
                SELECT c.relname
                FROM pg_catalog.pg_class c
                JOIN pg_catalog.pg_namespace n ON c.relnamespace = n.oid
                WHERE c.relname = :name
                AND n.nspname = current_schema()
                AND c.relkind IN ('r', 'p')
                """
            ),
            {"name": sanitize_identifier(name)},
        )
        return result.scalar_one_or_none() is not None

    async def partition_key(self, session: AsyncSession) -> str | None:
        """Partition key definition of the ledger table, e.g. ``RANGE (created_at)``.

        Returns:
            Key definition, or None if the table is missing or not partitioned
        """
        result = await session.execute(
            text(
                """
                SELECT pg_catalog.pg_get_partkeydef(p.oid)
                FROM pg_catalog.pg_class p
                JOIN pg_catalog.pg_namespace n ON p.relnamespace = n.oid
                WHERE p.relname = :table_name
                AND n.nspname = current_schema()
                AND p.relkind = 'p'
                """
            ),
            {"table_name": self.ledger_table},
        )
        return result.scalar_one_or_none()

    async def is_attached(self, session: AsyncSession, name: str) -> bool:
        """Check whether ``name`` is currently a partition of the ledger table."""
        result = await session.execute(
            text(
                """
                SELECT c.relname
                FROM pg_catalog.pg_class c
                JOIN pg_catalog.pg_inherits i ON c.oid = i.inhrelid
                JOIN pg_catalog.pg_class p ON i.inhparent = p.oid
                JOIN pg_catalog.pg_namespace n ON p.relnamespace = n.oid
                WHERE c.relname = :name
                AND p.relname = :table_name
                AND n.nspname = current_schema()
                """
            ),
            {"name": sanitize_identifier(name), "table_name": self.ledger_table},
        )
        return result.scalar_one_or_none() is not None

    @retry_async(
        max_retries=2,
        base_delay=0.5,
        retry_on=DB_ERRORS,
        retry_if=is_transient_db_error,
        operation_name="catalog_read",
    )
    async def read(self) -> list[Partition]:
        """List partitions in a fresh short-lived session, retrying transient errors."""
        if self._session_factory is None:
            raise RuntimeError("CatalogReader.read() requires a session_factory")
        async with self._session_factory() as session:
            return await self.list_partitions(session)


def _partition_sort_key(partition: Partition) -> tuple[int, datetime, str]:
    if isinstance(partition.date_range, DateRange):
        return (0, partition.date_range.start, partition.name)
    return (1, datetime.min.replace(tzinfo=UTC), partition.name)
