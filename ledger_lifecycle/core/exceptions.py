"""Exception hierarchy for partition lifecycle management.

Every application error carries a machine-readable ``error_code`` and an
HTTP ``status_code`` so the operator API can surface it without a lookup
table. Transient infrastructure errors are not wrapped: they stay SQLAlchemy
exceptions and are recognized by ``is_transient_db_error``.
"""

from typing import Any

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

# Error classes the retry helpers catch before asking is_transient_db_error.
DB_ERRORS: tuple[type[BaseException], ...] = (DBAPIError, TimeoutError)

# 55P03 lock_not_available, 57014 query_canceled (lock/statement timeout),
# 40P01 deadlock_detected, 40001 serialization_failure.
TRANSIENT_SQLSTATES = frozenset({"55P03", "57014", "40P01", "40001"})


def get_sqlstate(error: BaseException) -> str | None:
    """Return the PostgreSQL SQLSTATE carried by a wrapped driver error."""
    orig = getattr(error, "orig", None)
    for source in (orig, getattr(orig, "__cause__", None)):
        if source is None:
            continue
        sqlstate = getattr(source, "sqlstate", None) or getattr(source, "pgcode", None)
        if isinstance(sqlstate, str):
            return sqlstate
    return None


def is_transient_db_error(error: BaseException) -> bool:
    """Check whether a database error is worth retrying.

    The asyncpg dialect reports lock timeouts, statement timeouts and
    deadlocks as a plain ``DBAPIError``; those are recognized by SQLSTATE.
    Lost connections surface as ``OperationalError``/``InterfaceError`` or as
    a ``DBAPIError`` with ``connection_invalidated`` set.
    """
    if isinstance(error, OperationalError | InterfaceError | TimeoutError):
        return True
    if not isinstance(error, DBAPIError):
        return False
    if error.connection_invalidated:
        return True
    sqlstate = get_sqlstate(error)
    if sqlstate is None:
        return False
    # Class 08: connection exceptions
    return sqlstate in TRANSIENT_SQLSTATES or sqlstate.startswith("08")


class LedgerLifecycleError(Exception):
    """Base exception for all application-specific errors."""

    default_message: str = "An unexpected error occurred"
    default_error_code: str = "INTERNAL_ERROR"
    default_status_code: int = 500

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.error_code = error_code or self.default_error_code
        self.status_code = status_code or self.default_status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "code": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# Planning conflicts (never retried)
class PartitionPlanningError(LedgerLifecycleError):
    default_message = "Partition plan conflict"
    default_error_code = "PLANNING_CONFLICT"
    default_status_code = 409


class PartitionOverlapError(PartitionPlanningError):
    """Raised when a proposed range overlaps an existing partition."""

    default_error_code = "PARTITION_OVERLAP"

    def __init__(self, partition_name: str, conflicting: str, **kwargs: Any) -> None:
        super().__init__(
            f"Proposed partition {partition_name} overlaps existing partition {conflicting}",
            details={"partition_name": partition_name, "conflicting": conflicting},
            **kwargs,
        )
        self.partition_name = partition_name
        self.conflicting = conflicting


class UnparsableBoundError(PartitionPlanningError):
    """Raised when a partition bound expression cannot be turned into a range."""

    default_error_code = "UNPARSABLE_BOUND"

    def __init__(self, partition_name: str, expression: str | None, **kwargs: Any) -> None:
        super().__init__(
            f"Cannot parse bound expression of {partition_name}: {expression!r}",
            details={"partition_name": partition_name, "expression": expression},
            **kwargs,
        )
        self.partition_name = partition_name
        self.expression = expression


# Invariant violations
class OverflowInvariantError(LedgerLifecycleError):
    """Raised when the catch-all partition invariant is already broken.

    This indicates manual or external corruption of the partition set and is
    never repaired automatically.
    """

    default_message = "Overflow partition invariant violated"
    default_error_code = "OVERFLOW_INVARIANT_VIOLATED"
    default_status_code = 500


# Precondition failures (fail closed)
class DeletionPreconditionError(LedgerLifecycleError):
    default_message = "Deletion precondition not met"
    default_error_code = "DELETION_PRECONDITION_FAILED"
    default_status_code = 412


class SnapshotMissingError(DeletionPreconditionError):
    default_error_code = "SNAPSHOT_MISSING"

    def __init__(self, partition_name: str, **kwargs: Any) -> None:
        super().__init__(
            f"No aggregate snapshot covers partition {partition_name}; refusing to delete",
            details={"partition_name": partition_name},
            **kwargs,
        )
        self.partition_name = partition_name


class GracePeriodNotElapsedError(DeletionPreconditionError):
    default_error_code = "GRACE_PERIOD_NOT_ELAPSED"

    def __init__(
        self,
        partition_name: str,
        days_marked: int | None,
        grace_days: int,
        **kwargs: Any,
    ) -> None:
        if days_marked is None:
            message = f"Partition {partition_name} has not been marked for deletion"
        else:
            message = (
                f"Partition {partition_name} marked {days_marked} days ago; "
                f"grace period is {grace_days} days"
            )
        super().__init__(
            message,
            details={
                "partition_name": partition_name,
                "days_marked": days_marked,
                "grace_days": grace_days,
            },
            **kwargs,
        )
        self.partition_name = partition_name
        self.days_marked = days_marked
        self.grace_days = grace_days


class PartitionNotFoundError(LedgerLifecycleError):
    default_message = "Partition not found"
    default_error_code = "PARTITION_NOT_FOUND"
    default_status_code = 404

    def __init__(self, partition_name: str, **kwargs: Any) -> None:
        super().__init__(
            f"Partition table not found: {partition_name}",
            details={"partition_name": partition_name},
            **kwargs,
        )
        self.partition_name = partition_name


class SchedulerBusyError(LedgerLifecycleError):
    default_message = "A partition maintenance tick is already running"
    default_error_code = "SCHEDULER_BUSY"
    default_status_code = 409
