"""Audit log store for partition lifecycle operations.

Every attempted lifecycle operation leaves one ``partition_logs`` row. The
log is append-only and doubles as durable state: the latest successful
``mark_for_deletion`` row is the only record of when a partition's grace
period started, and the latest successful stage operations tell the planner
which stage has already been applied.

Two write paths exist:
    - ``record()`` adds the row to the caller's session, so a success entry
      commits atomically with the work it describes
    - ``record_independent()`` commits in its own session, so an error entry
      survives the rollback of the failed work

``AuditView`` is the pure, read-only summary the planner consumes.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from ledger_lifecycle.core.logging import get_logger, sanitize_error
from ledger_lifecycle.models.partition_log import (
    PartitionLog,
    PartitionLogStatus,
    PartitionOperation,
)
from ledger_lifecycle.services.lifecycle_policy import PartitionStage

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)

_MAX_NAME_LENGTH = 255

# Stage reached by each successful stage-changing operation
OPERATION_STAGES: dict[PartitionOperation, PartitionStage] = {
    PartitionOperation.CREATE: PartitionStage.ACTIVE,
    PartitionOperation.ARCHIVE: PartitionStage.ARCHIVED,
    PartitionOperation.DEEP_ARCHIVE: PartitionStage.DEEP_ARCHIVED,
    PartitionOperation.MARK_FOR_DELETION: PartitionStage.MARKED_FOR_DELETION,
    PartitionOperation.DELETE: PartitionStage.DELETED,
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class AuditView:
    """Latest successful audit timestamp per (partition, operation).

    Attributes:
        latest: Mapping of ``(partition_name, operation_type)`` to the
            ``created_at`` of the most recent ``success`` entry
    """

    latest: Mapping[tuple[str, str], datetime] = field(default_factory=dict)

    @classmethod
    def from_entries(cls, entries: Iterable[PartitionLog]) -> AuditView:
        """Build a view from raw log rows, ignoring non-success entries."""
        latest: dict[tuple[str, str], datetime] = {}
        for entry in entries:
            if entry.status != PartitionLogStatus.SUCCESS.value:
                continue
            key = (entry.partition_name, entry.operation_type)
            current = latest.get(key)
            if current is None or entry.created_at > current:
                latest[key] = entry.created_at
        return cls(latest=latest)

    def last_success(
        self, partition_name: str, operation: PartitionOperation
    ) -> datetime | None:
        return self.latest.get((partition_name, operation.value))

    def marked_at(self, partition_name: str) -> datetime | None:
        """When the partition was last successfully marked for deletion."""
        return self.last_success(partition_name, PartitionOperation.MARK_FOR_DELETION)

    def applied_stage(self, partition_name: str) -> PartitionStage | None:
        """Furthest stage successfully applied to the partition, if any."""
        applied: PartitionStage | None = None
        for operation, stage in OPERATION_STAGES.items():
            if self.last_success(partition_name, operation) is None:
                continue
            if applied is None or stage.rank > applied.rank:
                applied = stage
        return applied

    def is_deleted(self, partition_name: str) -> bool:
        return self.last_success(partition_name, PartitionOperation.DELETE) is not None


class PartitionAuditStore:
    """Reads and writes the ``partition_logs`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def _build_entry(
        self,
        operation: PartitionOperation,
        partition_name: str,
        status: PartitionLogStatus,
        notes: str | None,
        error_message: str | None,
    ) -> PartitionLog:
        return PartitionLog(
            operation_type=operation.value,
            partition_name=partition_name[:_MAX_NAME_LENGTH],
            status=status.value,
            notes=notes,
            error_message=error_message,
            created_at=self._clock(),
        )

    async def record(
        self,
        session: AsyncSession,
        operation: PartitionOperation,
        partition_name: str,
        status: PartitionLogStatus,
        notes: str | None = None,
        error_message: str | None = None,
    ) -> PartitionLog:
        """Append an entry inside the caller's transaction.

        The entry is flushed but not committed; it becomes durable together
        with the caller's work.
        """
        entry = self._build_entry(operation, partition_name, status, notes, error_message)
        session.add(entry)
        await session.flush()
        return entry

    async def record_independent(
        self,
        operation: PartitionOperation,
        partition_name: str,
        status: PartitionLogStatus,
        notes: str | None = None,
        error_message: str | None = None,
    ) -> PartitionLog:
        """Append an entry in a separate, immediately committed transaction.

        Used for outcomes whose own transaction is being rolled back. If the
        write itself fails, the failure is logged and the unsaved entry is
        returned so callers still get a result.
        """
        entry = self._build_entry(operation, partition_name, status, notes, error_message)
        if self._session_factory is None:
            logger.error(
                "Audit store has no session factory; entry not persisted",
                extra={"operation": operation.value, "partition": partition_name},
            )
            return entry
        try:
            async with self._session_factory() as session:
                session.add(entry)
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                f"Failed to persist audit entry for {partition_name}: {sanitize_error(e)}",
                extra={
                    "operation": operation.value,
                    "partition": partition_name,
                    "status": status.value,
                },
            )
        return entry

    async def load_view(self, session: AsyncSession) -> AuditView:
        """Load the latest success timestamp per (partition, operation)."""
        stmt = (
            select(
                PartitionLog.partition_name,
                PartitionLog.operation_type,
                func.max(PartitionLog.created_at),
            )
            .where(PartitionLog.status == PartitionLogStatus.SUCCESS.value)
            .group_by(PartitionLog.partition_name, PartitionLog.operation_type)
        )
        result = await session.execute(stmt)
        latest = {(row[0], row[1]): row[2] for row in result.all()}
        return AuditView(latest=latest)

    async def latest_success(
        self,
        session: AsyncSession,
        partition_name: str,
        operation: PartitionOperation,
    ) -> datetime | None:
        stmt = select(func.max(PartitionLog.created_at)).where(
            PartitionLog.partition_name == partition_name,
            PartitionLog.operation_type == operation.value,
            PartitionLog.status == PartitionLogStatus.SUCCESS.value,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_logs(
        self,
        session: AsyncSession,
        *,
        operation: PartitionOperation | None = None,
        partition_name: str | None = None,
        status: PartitionLogStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[PartitionLog], int]:
        """List audit entries, newest first.

        Returns:
            Tuple of (entries, total matching count)
        """
        conditions = []
        if operation is not None:
            conditions.append(PartitionLog.operation_type == operation.value)
        if partition_name is not None:
            conditions.append(PartitionLog.partition_name == partition_name)
        if status is not None:
            conditions.append(PartitionLog.status == status.value)

        count_stmt = select(func.count()).select_from(PartitionLog).where(*conditions)
        total = (await session.execute(count_stmt)).scalar_one()

        stmt = (
            select(PartitionLog)
            .where(*conditions)
            .order_by(PartitionLog.created_at.desc(), PartitionLog.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all()), int(total)
