"""Audit log of partition lifecycle operations."""

from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ledger_lifecycle.core.database import Base


class PartitionOperation(str, Enum):
    """Operation types recorded in the partition log."""

    CREATE = "create"
    ARCHIVE = "archive"
    DEEP_ARCHIVE = "deep_archive"
    MARK_FOR_DELETION = "mark_for_deletion"
    DELETE = "delete"
    REPLACE_OVERFLOW = "replace_overflow"


class PartitionLogStatus(str, Enum):
    """Outcome of a logged operation."""

    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class PartitionLog(Base):
    """One row per attempted partition operation.

    The log is append-only. Only ``success`` rows move a partition through
    its lifecycle; ``error`` and ``skipped`` rows exist for operators.
    """

    __tablename__ = "partition_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operation_type: Mapped[str] = mapped_column(String(50), nullable=False)
    partition_name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index("idx_partition_logs_operation_type", "operation_type"),
        Index("idx_partition_logs_partition_name", "partition_name"),
        Index("idx_partition_logs_status", "status"),
        Index("idx_partition_logs_created_at", "created_at"),
        # Latest-success lookups per (partition, operation)
        Index(
            "idx_partition_logs_lookup",
            "partition_name",
            "operation_type",
            "status",
            "created_at",
        ),
        CheckConstraint(
            "status IN ('success', 'error', 'skipped')",
            name="ck_partition_logs_status",
        ),
        CheckConstraint(
            "operation_type IN ('create', 'archive', 'deep_archive', "
            "'mark_for_deletion', 'delete', 'replace_overflow')",
            name="ck_partition_logs_operation_type",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<PartitionLog(id={self.id}, operation_type={self.operation_type!r}, "
            f"partition_name={self.partition_name!r}, status={self.status!r})>"
        )
