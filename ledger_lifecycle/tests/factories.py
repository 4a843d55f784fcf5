"""Test factories using factory_boy for catalog snapshots and audit rows.

Usage:
    from ledger_lifecycle.tests.factories import PartitionFactory, PartitionLogFactory

    # Dated partition for one day
    partition = PartitionFactory(day=date(2026, 10, 18))

    # Detached partition with recent write activity
    partition = PartitionFactory(day=date(2026, 7, 1), detached=True, activity_count=4)

    # Catch-all partition starting at a boundary
    overflow = OverflowPartitionFactory(boundary=date(2026, 10, 28))

    # Failed audit entry
    entry = PartitionLogFactory(failed=True, operation_type="delete")

Note:
    Partitions are plain catalog values and audit rows are unsaved model
    instances; neither touches a database.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta

import factory
from factory import LazyAttribute, LazyFunction, Sequence
from sqlalchemy.dialects.postgresql.asyncpg import AsyncAdapt_asyncpg_dbapi
from sqlalchemy.exc import DBAPIError

from ledger_lifecycle.models.partition_log import (
    PartitionLog,
    PartitionLogStatus,
    PartitionOperation,
)
from ledger_lifecycle.services.catalog_reader import DateRange, Partition, UnknownRange
from ledger_lifecycle.services.partition_audit import AuditView
from ledger_lifecycle.services.partition_planner import overflow_name_for, partition_name_for

TABLE = "transactions"


def _today() -> date:
    return datetime.now(UTC).date()


class PartitionFactory(factory.Factory):
    """Factory for dated ``[day, day+1)`` partitions.

    Examples:
        partition = PartitionFactory(day=date(2026, 10, 18))
        stray = PartitionFactory(day=date(2026, 10, 21), detached=True)
    """

    class Meta:
        model = Partition

    class Params:
        day = LazyFunction(_today)
        detached = factory.Trait(attached=False)

    name: str = LazyAttribute(lambda o: partition_name_for(o.day, TABLE))
    date_range: DateRange = LazyAttribute(lambda o: DateRange.for_day(o.day))
    attached: bool = True
    activity_count: int = 0
    row_estimate: int = 0
    archive_tables: tuple[str, ...] = ()


class OverflowPartitionFactory(factory.Factory):
    """Factory for the catch-all ``[boundary, MAXVALUE)`` partition."""

    class Meta:
        model = Partition

    class Params:
        boundary = LazyFunction(lambda: _today() + timedelta(days=14))

    name: str = overflow_name_for(TABLE)
    date_range: DateRange = LazyAttribute(lambda o: DateRange.from_day(o.boundary))
    attached: bool = True
    bound_expression: str = LazyAttribute(
        lambda o: f"FOR VALUES FROM ('{o.boundary.isoformat()} 00:00:00+00') TO (MAXVALUE)"
    )


class UnknownPartitionFactory(factory.Factory):
    """Factory for partitions whose bounds cannot be parsed (DEFAULT by default)."""

    class Meta:
        model = Partition

    class Params:
        raw = "DEFAULT"

    name: str = f"{TABLE}_default"
    date_range: UnknownRange = LazyAttribute(lambda o: UnknownRange(raw=o.raw))
    bound_expression: str = LazyAttribute(lambda o: o.raw)


class PartitionLogFactory(factory.Factory):
    """Factory for unsaved ``partition_logs`` rows.

    Examples:
        entry = PartitionLogFactory(operation_type="archive")
        failed = PartitionLogFactory(failed=True)
    """

    class Meta:
        model = PartitionLog

    id: int = Sequence(lambda n: n + 1)
    operation_type: str = PartitionOperation.CREATE.value
    partition_name: str = Sequence(
        lambda n: partition_name_for(date(2026, 1, 1) + timedelta(days=n), TABLE)
    )
    status: str = PartitionLogStatus.SUCCESS.value
    notes: str | None = None
    error_message: str | None = None
    created_at: datetime = LazyFunction(lambda: datetime.now(UTC))

    class Params:
        """Traits for non-success outcomes."""

        failed = factory.Trait(
            status=PartitionLogStatus.ERROR.value,
            error_message="connection reset by peer",
        )
        skipped = factory.Trait(status=PartitionLogStatus.SKIPPED.value)


def day_partitions(first: date, last: date) -> list[Partition]:
    """One attached partition per day in ``[first, last]``."""
    days = (last - first).days + 1
    return [PartitionFactory(day=first + timedelta(days=i)) for i in range(days)]


def midday(day: date) -> datetime:
    return datetime.combine(day, time(12, 0), tzinfo=UTC)


def audit_view(entries: dict[tuple[str, str], datetime] | None = None) -> AuditView:
    return AuditView(latest=dict(entries or {}))


def driver_error(pg_error: Exception, statement: str = "SELECT 1") -> DBAPIError:
    """Wrap an asyncpg error the way the asyncpg dialect surfaces it.

    The dialect re-raises the server error as its own adapted ``Error`` and
    SQLAlchemy wraps that in a generic ``DBAPIError``.
    """
    adapted = AsyncAdapt_asyncpg_dbapi.Error(str(pg_error))
    adapted.__cause__ = pg_error
    return DBAPIError.instance(statement, {}, adapted, AsyncAdapt_asyncpg_dbapi.Error)
