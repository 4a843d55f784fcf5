"""Partition executor: applies one planned lifecycle action.

Each action runs in a single transaction that first sets a ``lock_timeout``
and takes a transaction-scoped advisory lock keyed by the partition name, so
two service instances never work on the same partition at once. Creation and
overflow replacement additionally take a lock on the overflow key, which
serializes them against each other.

The success audit entry is written inside the same transaction as the work.
On failure the transaction rolls back and an ``error`` entry is written
through an independent, always-committed session. Transient database errors
are retried with exponential backoff; every failed attempt is audited.
Precondition failures, invariant violations and other errors are not retried.

``execute()`` never raises: every outcome becomes a ``PartitionLog`` row.

DDL statements are built with f-strings because PostgreSQL cannot bind
identifiers. Every identifier passes through ``sanitize_identifier`` first.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING

from prometheus_client import Counter, Histogram
from sqlalchemy import text

from ledger_lifecycle.core.exceptions import (
    GracePeriodNotElapsedError,
    LedgerLifecycleError,
    OverflowInvariantError,
    PartitionNotFoundError,
    PartitionOverlapError,
    SnapshotMissingError,
    UnparsableBoundError,
    is_transient_db_error,
)
from ledger_lifecycle.core.logging import get_logger, sanitize_error
from ledger_lifecycle.core.retry import RetryContext
from ledger_lifecycle.models.partition_log import PartitionLogStatus, PartitionOperation
from ledger_lifecycle.services.catalog_reader import (
    ARCHIVE_PREFIX,
    DEEP_ARCHIVE_PREFIX,
    DateRange,
    archive_table_names,
    range_from_partition_name,
    sanitize_identifier,
)
from ledger_lifecycle.services.overflow_guard import OverflowGuard
from ledger_lifecycle.services.partition_planner import (
    ActionType,
    PartitionAction,
    missing_days,
    partition_name_for,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from ledger_lifecycle.core.config import Settings
    from ledger_lifecycle.models.partition_log import PartitionLog
    from ledger_lifecycle.services.catalog_reader import CatalogReader
    from ledger_lifecycle.services.partition_audit import PartitionAuditStore
    from ledger_lifecycle.services.snapshot_store import SnapshotStore

logger = get_logger(__name__)

PARTITION_ACTIONS_TOTAL = Counter(
    "ledger_partition_actions_total",
    "Partition lifecycle actions by outcome",
    labelnames=["action", "status"],
)

PARTITION_ACTION_DURATION_SECONDS = Histogram(
    "ledger_partition_action_duration_seconds",
    "Duration of partition lifecycle actions, including retries",
    labelnames=["action"],
    buckets=(0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0),
)

Outcome = tuple[PartitionLogStatus, str]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _bound_literal(day: date) -> str:
    return f"{day.isoformat()} 00:00:00+00"


class PartitionExecutor:
    """Applies planned actions to the database, one transaction per attempt."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: CatalogReader,
        audit: PartitionAuditStore,
        snapshot_store: SnapshotStore,
        guard: OverflowGuard | None = None,
        *,
        index_columns: Sequence[str] = ("user_id", "type", "created_at"),
        deletion_grace_days: int = 7,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        lock_timeout_ms: int = 30000,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.catalog = catalog
        self.audit = audit
        self.snapshot_store = snapshot_store
        self.guard = guard or OverflowGuard()
        self.index_columns = tuple(sanitize_identifier(col) for col in index_columns)
        self.deletion_grace_days = deletion_grace_days
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.lock_timeout_ms = lock_timeout_ms
        self._clock = clock

        self._handlers: dict[
            ActionType, Callable[[AsyncSession, PartitionAction], Awaitable[Outcome]]
        ] = {
            ActionType.CREATE: self._create,
            ActionType.ARCHIVE: self._archive,
            ActionType.DEEP_ARCHIVE: self._deep_archive,
            ActionType.MARK_FOR_DELETION: self._mark_for_deletion,
            ActionType.DELETE: self._delete,
            ActionType.REPLACE_OVERFLOW: self._replace_overflow,
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: CatalogReader,
        audit: PartitionAuditStore,
        snapshot_store: SnapshotStore,
        guard: OverflowGuard | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> PartitionExecutor:
        return cls(
            session_factory,
            catalog,
            audit,
            snapshot_store,
            guard,
            index_columns=settings.ledger_index_columns,
            deletion_grace_days=settings.partition_deletion_grace_days,
            max_retries=settings.partition_executor_max_retries,
            retry_base_delay=settings.partition_executor_retry_base_delay,
            lock_timeout_ms=settings.partition_lock_timeout_ms,
            clock=clock,
        )

    @property
    def ledger_table(self) -> str:
        return self.catalog.ledger_table

    async def execute(self, action: PartitionAction) -> PartitionLog:
        """Apply one action and return the audit entry describing its outcome.

        Args:
            action: Planned action

        Returns:
            The success/skipped entry committed with the work, or the last
            error entry written after a rollback
        """
        operation = action.action_type.operation
        retry = RetryContext(
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            retry_if=is_transient_db_error,
            operation_name=f"partition_{action.action_type.value}",
        )
        started = time.monotonic()

        try:
            while True:
                attempt = retry.attempts + 1
                try:
                    entry = await self._run_in_transaction(action)
                except Exception as e:
                    will_retry = retry.can_retry(e)
                    entry = await self._record_failure(
                        action, operation, e, attempt, retry.max_attempts, will_retry
                    )
                    if will_retry:
                        await retry.wait()
                        continue
                    return entry

                PARTITION_ACTIONS_TOTAL.labels(
                    action=action.action_type.value, status=entry.status
                ).inc()
                logger.info(
                    f"{action.action_type.value} {action.partition_name}: {entry.status}",
                    extra={
                        "action": action.action_type.value,
                        "partition": action.partition_name,
                        "status": entry.status,
                        "notes": entry.notes,
                        "attempt": attempt,
                    },
                )
                return entry
        finally:
            PARTITION_ACTION_DURATION_SECONDS.labels(action=action.action_type.value).observe(
                time.monotonic() - started
            )

    async def _run_in_transaction(self, action: PartitionAction) -> PartitionLog:
        handler = self._handlers[action.action_type]
        async with self._session_factory() as session:
            async with session.begin():
                await self._prepare_transaction(session, action)
                status, notes = await handler(session, action)
                return await self.audit.record(
                    session,
                    action.action_type.operation,
                    action.partition_name,
                    status,
                    notes=notes,
                )

    async def _prepare_transaction(self, session: AsyncSession, action: PartitionAction) -> None:
        if self.lock_timeout_ms > 0:
            # SET LOCAL cannot take bind parameters; the value is an int
            await session.execute(text(f"SET LOCAL lock_timeout = {int(self.lock_timeout_ms)}"))

        keys: list[str] = []
        if action.action_type in (ActionType.CREATE, ActionType.REPLACE_OVERFLOW):
            keys.append(f"{self.ledger_table}:overflow")
        keys.append(f"{self.ledger_table}:{action.partition_name}")
        for key in keys:
            await session.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                {"key": key},
            )

    async def _record_failure(
        self,
        action: PartitionAction,
        operation: PartitionOperation,
        error: BaseException,
        attempt: int,
        max_attempts: int,
        will_retry: bool,
    ) -> PartitionLog:
        message = sanitize_error(error)
        is_transient = is_transient_db_error(error)
        if is_transient:
            notes = f"attempt {attempt}/{max_attempts}: transient error, " + (
                "retrying" if will_retry else "retries exhausted"
            )
        elif isinstance(error, LedgerLifecycleError):
            notes = f"{error.error_code}; not retried"
        else:
            notes = f"{type(error).__name__}; not retried"

        log_extra = {
            "action": action.action_type.value,
            "partition": action.partition_name,
            "attempt": attempt,
            "error_type": type(error).__name__,
        }
        if isinstance(error, OverflowInvariantError):
            level = logging.CRITICAL
        elif will_retry:
            level = logging.WARNING
        else:
            level = logging.ERROR
        logger.log(
            level,
            f"{action.action_type.value} {action.partition_name} failed: {message}",
            extra=log_extra,
        )

        if not will_retry:
            PARTITION_ACTIONS_TOTAL.labels(action=action.action_type.value, status="error").inc()

        return await self.audit.record_independent(
            operation,
            action.partition_name,
            PartitionLogStatus.ERROR,
            notes=notes,
            error_message=message,
        )

    # -------------------------------------------------------------------------
    # DDL helpers
    # -------------------------------------------------------------------------

    async def _create_index_set(self, session: AsyncSession, partition_name: str) -> None:
        name = sanitize_identifier(partition_name)
        for column in self.index_columns:
            await session.execute(
                text(f"CREATE INDEX IF NOT EXISTS idx_{name}_{column} ON {name} ({column})")  # nosemgrep: avoid-sqlalchemy-text
            )

    async def _create_dated_partition(self, session: AsyncSession, day: date) -> str:
        name = partition_name_for(day, self.ledger_table)
        start = _bound_literal(day)
        end = _bound_literal(day + timedelta(days=1))
        await session.execute(
            text(
                f"CREATE TABLE {name} PARTITION OF {self.ledger_table} "
                f"FOR VALUES FROM ('{start}') TO ('{end}')"
            )  # nosemgrep: avoid-sqlalchemy-text
        )
        await self._create_index_set(session, name)
        logger.debug(
            f"Created partition {name}",
            extra={"table": self.ledger_table, "partition": name, "start": start, "end": end},
        )
        return name

    async def _detach(self, session: AsyncSession, partition_name: str) -> None:
        name = sanitize_identifier(partition_name)
        await session.execute(
            text(f"ALTER TABLE {self.ledger_table} DETACH PARTITION {name}")  # nosemgrep: avoid-sqlalchemy-text
        )

    def _range_for(self, action: PartitionAction) -> DateRange:
        if action.date_range is not None:
            return action.date_range
        date_range = range_from_partition_name(action.partition_name, self.ledger_table)
        if date_range is None:
            raise UnparsableBoundError(action.partition_name, None)
        return date_range

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _create(self, session: AsyncSession, action: PartitionAction) -> Outcome:
        day = self._range_for(action).start_date
        partitions = await self.guard.assert_dated_creation_allowed(session, self.catalog, day)

        name = partition_name_for(day, self.ledger_table)
        if await self.catalog.relation_exists(session, name):
            return PartitionLogStatus.SKIPPED, f"partition {name} already exists"

        # The catalog may have changed since planning
        proposed = DateRange.for_day(day)
        for partition in partitions:
            if (
                partition.attached
                and partition.is_known
                and not partition.is_overflow
                and partition.date_range.overlaps(proposed)  # type: ignore[union-attr]
            ):
                raise PartitionOverlapError(name, partition.name)

        await self._create_dated_partition(session, day)
        return (
            PartitionLogStatus.SUCCESS,
            f"created [{_bound_literal(day)}, {_bound_literal(day + timedelta(days=1))}) "
            f"with indexes on {', '.join(self.index_columns)}",
        )

    async def _archive(self, session: AsyncSession, action: PartitionAction) -> Outcome:
        return await self._copy_and_detach(session, action, ARCHIVE_PREFIX)

    async def _deep_archive(self, session: AsyncSession, action: PartitionAction) -> Outcome:
        return await self._copy_and_detach(session, action, DEEP_ARCHIVE_PREFIX)

    async def _copy_and_detach(
        self, session: AsyncSession, action: PartitionAction, prefix: str
    ) -> Outcome:
        name = sanitize_identifier(action.partition_name)
        if not await self.catalog.relation_exists(session, name):
            raise PartitionNotFoundError(name)

        archive = f"{prefix}{name}"
        await session.execute(
            text(f"CREATE TABLE IF NOT EXISTS {archive} (LIKE {name} INCLUDING ALL)")  # nosemgrep: avoid-sqlalchemy-text
        )
        # Rebuild the copy so a repeated archive never duplicates rows
        await session.execute(text(f"TRUNCATE TABLE {archive}"))  # nosemgrep: avoid-sqlalchemy-text
        result = await session.execute(
            text(f"INSERT INTO {archive} SELECT * FROM {name}")  # nosemgrep: avoid-sqlalchemy-text
        )
        copied = max(result.rowcount or 0, 0)

        notes = f"copied {copied} rows into {archive}"
        if await self.catalog.is_attached(session, name):
            await self._detach(session, name)
            notes += f"; detached from {self.ledger_table}"
        return PartitionLogStatus.SUCCESS, notes

    async def _mark_for_deletion(self, session: AsyncSession, action: PartitionAction) -> Outcome:
        name = sanitize_identifier(action.partition_name)
        marked_at = await self.audit.latest_success(
            session, name, PartitionOperation.MARK_FOR_DELETION
        )
        if marked_at is not None:
            return PartitionLogStatus.SKIPPED, f"already marked at {marked_at.isoformat()}"
        if not await self.catalog.relation_exists(session, name):
            raise PartitionNotFoundError(name)
        return (
            PartitionLogStatus.SUCCESS,
            f"marked for deletion; eligible after {self.deletion_grace_days} days",
        )

    async def _delete(self, session: AsyncSession, action: PartitionAction) -> Outcome:
        name = sanitize_identifier(action.partition_name)

        marked_at = await self.audit.latest_success(
            session, name, PartitionOperation.MARK_FOR_DELETION
        )
        if marked_at is None:
            raise GracePeriodNotElapsedError(name, None, self.deletion_grace_days)
        elapsed = self._clock() - marked_at
        days_marked = elapsed.days
        if elapsed < timedelta(days=self.deletion_grace_days):
            raise GracePeriodNotElapsedError(name, days_marked, self.deletion_grace_days)

        date_range = self._range_for(action)
        if not await self.snapshot_store.has_snapshot(session, date_range):
            raise SnapshotMissingError(name)

        dropped: list[str] = []
        for archive in archive_table_names(name):
            if await self.catalog.relation_exists(session, archive):
                dropped.append(archive)
            await session.execute(text(f"DROP TABLE IF EXISTS {archive}"))  # nosemgrep: avoid-sqlalchemy-text

        if await self.catalog.is_attached(session, name):
            await self._detach(session, name)
        if await self.catalog.relation_exists(session, name):
            dropped.append(name)
        await session.execute(text(f"DROP TABLE IF EXISTS {name}"))  # nosemgrep: avoid-sqlalchemy-text

        return (
            PartitionLogStatus.SUCCESS,
            f"dropped {', '.join(dropped) or 'nothing'} after {days_marked} days marked",
        )

    async def _replace_overflow(self, session: AsyncSession, action: PartitionAction) -> Outcome:
        new_boundary = action.new_boundary
        if new_boundary is None:
            raise ValueError("replace_overflow action requires new_boundary")

        partitions = await self.catalog.list_partitions(session)
        overflows = [p for p in partitions if p.attached and p.is_overflow]
        if len(overflows) > 1:
            # verify() raises for this state
            self.guard.verify(partitions)

        current = overflows[0] if overflows else None
        overflow_name = self.catalog.overflow_name
        retired: str | None = None

        if current is not None:
            old_boundary = current.date_range.start_date  # type: ignore[union-attr]
            if old_boundary >= new_boundary:
                return (
                    PartitionLogStatus.SKIPPED,
                    f"overflow boundary already {old_boundary.isoformat()}",
                )
            fill_from = old_boundary
            retired = f"{sanitize_identifier(current.name)}_retired"
            await self._detach(session, current.name)
            await session.execute(
                text(f"ALTER TABLE {sanitize_identifier(current.name)} RENAME TO {retired}")  # nosemgrep: avoid-sqlalchemy-text
            )
            remaining = [p for p in partitions if p.name != current.name]
        else:
            if await self.catalog.relation_exists(session, overflow_name):
                raise OverflowInvariantError(
                    f"Table {overflow_name} exists but is not attached as the overflow partition",
                    details={"table": overflow_name},
                )
            fill_from = action.fill_from or new_boundary
            remaining = list(partitions)

        days, skipped = missing_days(
            remaining, fill_from, new_boundary - timedelta(days=1), self.ledger_table
        )
        for day in days:
            await self._create_dated_partition(session, day)

        await session.execute(
            text(
                f"CREATE TABLE {overflow_name} PARTITION OF {self.ledger_table} "
                f"FOR VALUES FROM ('{_bound_literal(new_boundary)}') TO (MAXVALUE)"
            )  # nosemgrep: avoid-sqlalchemy-text
        )

        moved = 0
        if retired is not None:
            result = await session.execute(
                text(f"INSERT INTO {self.ledger_table} SELECT * FROM {retired}")  # nosemgrep: avoid-sqlalchemy-text
            )
            moved = max(result.rowcount or 0, 0)
            await session.execute(text(f"DROP TABLE {retired}"))  # nosemgrep: avoid-sqlalchemy-text

        # Index names of the retired table stay taken until it is dropped
        await self._create_index_set(session, overflow_name)

        previous = "none" if current is None else fill_from.isoformat()
        notes = (
            f"boundary {previous} -> {new_boundary.isoformat()}; "
            f"created {len(days)} dated partitions; moved {moved} rows"
        )
        if skipped:
            notes += f"; refused {len(skipped)} overlapping days"
        return PartitionLogStatus.SUCCESS, notes
