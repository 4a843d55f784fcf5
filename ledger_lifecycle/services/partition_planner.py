"""Partition planner: decides what the executor should do next.

The planner is a pure function of the catalog snapshot, the lifecycle policy,
the audit view and the current time. It performs no I/O, so every decision it
makes can be unit tested without a database and recomputed from scratch on
every scheduler tick.

Planning steps, in the order the resulting actions must run:
    1. Overflow maintenance: replace the catch-all partition when its
       boundary is closer than the creation horizon (or create it if absent)
    2. Gap detection: one ``create`` per uncovered day in
       ``[today, today + horizon]`` that lies before the overflow boundary
    3. Stage advancement: ``archive`` / ``deep_archive`` /
       ``mark_for_deletion`` when the age-derived stage is ahead of the
       furthest stage the audit log shows as applied
    4. Deletion gating: ``delete`` once the grace period since the latest
       successful mark has elapsed
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from ledger_lifecycle.core.logging import get_logger
from ledger_lifecycle.models.partition_log import PartitionOperation
from ledger_lifecycle.services.catalog_reader import (
    OVERFLOW_SUFFIX,
    DateRange,
    Partition,
    sanitize_identifier,
)
from ledger_lifecycle.services.lifecycle_policy import PartitionStage

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from ledger_lifecycle.services.lifecycle_policy import LifecyclePolicy
    from ledger_lifecycle.services.partition_audit import AuditView

logger = get_logger(__name__)


class Phase(str, Enum):
    """Execution phase of an action within one tick."""

    OVERFLOW = "overflow"
    CREATE = "create"
    ADVANCE = "advance"
    DELETE = "delete"

    @property
    def order(self) -> int:
        return _PHASE_ORDER.index(self)


_PHASE_ORDER = list(Phase)


class ActionType(str, Enum):
    """Kinds of lifecycle action; values match audit operation types."""

    REPLACE_OVERFLOW = "replace_overflow"
    CREATE = "create"
    ARCHIVE = "archive"
    DEEP_ARCHIVE = "deep_archive"
    MARK_FOR_DELETION = "mark_for_deletion"
    DELETE = "delete"

    @property
    def phase(self) -> Phase:
        return _ACTION_PHASES[self]

    @property
    def operation(self) -> PartitionOperation:
        return PartitionOperation(self.value)


_ACTION_PHASES: dict[ActionType, Phase] = {
    ActionType.REPLACE_OVERFLOW: Phase.OVERFLOW,
    ActionType.CREATE: Phase.CREATE,
    ActionType.ARCHIVE: Phase.ADVANCE,
    ActionType.DEEP_ARCHIVE: Phase.ADVANCE,
    ActionType.MARK_FOR_DELETION: Phase.ADVANCE,
    ActionType.DELETE: Phase.DELETE,
}

_STAGE_ACTIONS: dict[PartitionStage, ActionType] = {
    PartitionStage.ARCHIVED: ActionType.ARCHIVE,
    PartitionStage.DEEP_ARCHIVED: ActionType.DEEP_ARCHIVE,
}


@dataclass(frozen=True, slots=True)
class PartitionAction:
    """One planned lifecycle action.

    Attributes:
        action_type: What to do
        partition_name: Target table (the overflow table for replacements)
        date_range: Range of the target partition, when known
        new_boundary: Replacement overflow lower bound (replace_overflow)
        fill_from: First day to backfill with dated partitions (replace_overflow)
        marked_at: Mark timestamp that justified a delete
        reason: Human-readable explanation for logs and dry runs
    """

    action_type: ActionType
    partition_name: str
    date_range: DateRange | None = None
    new_boundary: date | None = None
    fill_from: date | None = None
    marked_at: datetime | None = None
    reason: str = ""

    @property
    def phase(self) -> Phase:
        return self.action_type.phase

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action_type.value,
            "phase": self.phase.value,
            "partition_name": self.partition_name,
            "range": str(self.date_range) if self.date_range else None,
            "new_boundary": self.new_boundary.isoformat() if self.new_boundary else None,
            "fill_from": self.fill_from.isoformat() if self.fill_from else None,
            "marked_at": self.marked_at.isoformat() if self.marked_at else None,
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class SkippedProposal:
    """A proposal the planner refused to emit (e.g. an overlapping range)."""

    partition_name: str
    operation: PartitionOperation
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "partition_name": self.partition_name,
            "operation": self.operation.value,
            "reason": self.reason,
        }


@dataclass(slots=True)
class LifecyclePlan:
    """Planner output.

    Attributes:
        actions: Actions in execution order (phase, then date)
        skipped: Refused proposals, to be audited as ``skipped``
        unparsable: Partitions whose range is unknown; never touched
        held: Partitions kept ACTIVE by the activity override
        invariant_violation: Overflow invariant failure that suppressed the
            overflow and creation phases, if any
    """

    actions: list[PartitionAction] = field(default_factory=list)
    skipped: list[SkippedProposal] = field(default_factory=list)
    unparsable: list[Partition] = field(default_factory=list)
    held: list[str] = field(default_factory=list)
    invariant_violation: str | None = None

    def for_phases(self, phases: Iterable[Phase]) -> list[PartitionAction]:
        wanted = set(phases)
        return [action for action in self.actions if action.phase in wanted]

    def to_dict(self) -> dict[str, Any]:
        return {
            "actions": [action.to_dict() for action in self.actions],
            "skipped": [proposal.to_dict() for proposal in self.skipped],
            "unparsable": [p.name for p in self.unparsable],
            "held": list(self.held),
            "invariant_violation": self.invariant_violation,
        }


def partition_name_for(day: date, ledger_table: str) -> str:
    """Canonical name of the dated partition for ``day``.

    Example: ``transactions_2026_01_31``
    """
    return f"{sanitize_identifier(ledger_table)}_{day:%Y_%m_%d}"


def overflow_name_for(ledger_table: str) -> str:
    return f"{sanitize_identifier(ledger_table)}_{OVERFLOW_SUFFIX}"


def _ceil_date(moment: datetime) -> date:
    moment = moment.astimezone(UTC)
    if moment.time() == time.min:
        return moment.date()
    return moment.date() + timedelta(days=1)


def _attached_known(partitions: Iterable[Partition]) -> list[Partition]:
    return [p for p in partitions if p.attached and p.is_known]


def missing_days(
    partitions: Sequence[Partition],
    first_day: date,
    last_day: date,
    ledger_table: str,
) -> tuple[list[date], list[SkippedProposal]]:
    """Find days in ``[first_day, last_day]`` that need a dated partition.

    A day needs a partition when no attached partition covers ``[d, d+1)``
    and the day lies strictly before the overflow boundary. A proposal that
    overlaps an existing range without being covered by it is refused, as is
    one whose canonical name is already taken by another table.

    Args:
        partitions: Current catalog snapshot
        first_day: First candidate day (inclusive)
        last_day: Last candidate day (inclusive)
        ledger_table: Parent table name, used for partition names

    Returns:
        Tuple of (days to create in ascending order, refused proposals)
    """
    attached = _attached_known(partitions)
    dated = [p for p in attached if not p.is_overflow]
    overflows = [p for p in attached if p.is_overflow]
    names = {p.name for p in partitions}

    days: list[date] = []
    skipped: list[SkippedProposal] = []
    day = first_day
    while day <= last_day:
        proposed = DateRange.for_day(day)
        name = partition_name_for(day, ledger_table)
        day += timedelta(days=1)

        if any(p.date_range.covers(proposed) for p in dated):  # type: ignore[union-attr]
            continue
        # Days at or past the boundary already land in the overflow partition
        if any(p.date_range.start <= proposed.start for p in overflows):  # type: ignore[union-attr]
            continue

        conflict = next(
            (p for p in attached if p.date_range.overlaps(proposed)),  # type: ignore[union-attr]
            None,
        )
        if conflict is not None:
            reason = f"range {proposed} overlaps {conflict.name} {conflict.date_range}"
            logger.warning(
                f"Refusing to create {name}: {reason}",
                extra={"partition": name, "conflicting": conflict.name},
            )
            skipped.append(SkippedProposal(name, PartitionOperation.CREATE, reason))
            continue

        if name in names:
            reason = f"name {name} is already used by a table that does not cover {proposed}"
            logger.warning(f"Refusing to create {name}: {reason}", extra={"partition": name})
            skipped.append(SkippedProposal(name, PartitionOperation.CREATE, reason))
            continue

        days.append(proposed.start_date)

    return days, skipped


class PartitionPlanner:
    """Computes lifecycle actions for the ledger's partitions."""

    def __init__(self, ledger_table: str = "transactions") -> None:
        self.ledger_table = sanitize_identifier(ledger_table)

    def plan(
        self,
        partitions: Sequence[Partition],
        policy: LifecyclePolicy,
        audit: AuditView,
        now: datetime,
    ) -> LifecyclePlan:
        """Plan every action needed to bring the partition set up to date.

        Args:
            partitions: Catalog snapshot
            policy: Lifecycle thresholds
            audit: Latest successful operations per partition
            now: Current time (timezone-aware); ages use its UTC date, the
                deletion grace period uses the elapsed time since the mark

        Returns:
            LifecyclePlan with actions in execution order
        """
        today = now.astimezone(UTC).date()
        plan = LifecyclePlan()
        plan.unparsable = [p for p in partitions if not p.is_known]
        for partition in plan.unparsable:
            logger.warning(
                f"Skipping partition {partition.name} with unknown range",
                extra={"partition": partition.name, "bounds": partition.bound_expression},
            )

        overflow_action = self._plan_overflow(partitions, policy, today)
        if overflow_action is not None:
            plan.actions.append(overflow_action)

        horizon_end = today + timedelta(days=policy.creation_horizon_days)
        days, skipped = missing_days(partitions, today, horizon_end, self.ledger_table)
        plan.skipped.extend(skipped)
        for day in days:
            plan.actions.append(
                PartitionAction(
                    action_type=ActionType.CREATE,
                    partition_name=partition_name_for(day, self.ledger_table),
                    date_range=DateRange.for_day(day),
                    reason=f"no partition covers {day.isoformat()} within the creation horizon",
                )
            )

        advance: list[PartitionAction] = []
        deletes: list[PartitionAction] = []
        for partition in partitions:
            if not partition.is_known or partition.is_overflow:
                continue
            action = self._plan_partition(partition, policy, audit, now, plan)
            if action is None:
                continue
            if action.phase is Phase.DELETE:
                deletes.append(action)
            else:
                advance.append(action)

        plan.actions.extend(advance)
        plan.actions.extend(deletes)

        logger.debug(
            f"Planned {len(plan.actions)} actions for {self.ledger_table}",
            extra={
                "table": self.ledger_table,
                "today": today.isoformat(),
                "actions": [a.action_type.value for a in plan.actions],
                "skipped": len(plan.skipped),
                "unparsable": len(plan.unparsable),
            },
        )
        return plan

    def _plan_overflow(
        self,
        partitions: Sequence[Partition],
        policy: LifecyclePolicy,
        today: date,
    ) -> PartitionAction | None:
        horizon = policy.creation_horizon_days
        attached = _attached_known(partitions)
        overflows = [p for p in attached if p.is_overflow]
        if len(overflows) > 1:
            # Corrupted partition set; the overflow guard reports it
            return None

        dated_ends = [
            _ceil_date(p.date_range.end)  # type: ignore[union-attr,arg-type]
            for p in attached
            if not p.is_overflow
        ]
        target = today + timedelta(days=2 * horizon)
        latest_end = max(dated_ends, default=target)

        if not overflows:
            fill_from = today + timedelta(days=horizon + 1)
            new_boundary = max(target, latest_end, fill_from)
            return PartitionAction(
                action_type=ActionType.REPLACE_OVERFLOW,
                partition_name=overflow_name_for(self.ledger_table),
                new_boundary=new_boundary,
                fill_from=fill_from,
                reason="no overflow partition exists",
            )

        overflow = overflows[0]
        boundary = overflow.date_range.start_date  # type: ignore[union-attr]
        remaining = (boundary - today).days
        if remaining >= horizon:
            return None

        new_boundary = max(target, latest_end)
        return PartitionAction(
            action_type=ActionType.REPLACE_OVERFLOW,
            partition_name=overflow.name,
            date_range=overflow.date_range,  # type: ignore[arg-type]
            new_boundary=new_boundary,
            fill_from=boundary,
            reason=(
                f"overflow boundary {boundary.isoformat()} is {remaining} days away, "
                f"horizon is {horizon}"
            ),
        )

    def _plan_partition(
        self,
        partition: Partition,
        policy: LifecyclePolicy,
        audit: AuditView,
        now: datetime,
        plan: LifecyclePlan,
    ) -> PartitionAction | None:
        if audit.is_deleted(partition.name):
            logger.warning(
                f"Partition {partition.name} is recorded as deleted but still exists; not touching it",
                extra={"partition": partition.name},
            )
            return None

        age = partition.age_days(now.astimezone(UTC).date())
        if age is None:
            return None
        target = policy.derive_stage(age)
        if target is PartitionStage.ACTIVE:
            return None

        if target is PartitionStage.MARKED_FOR_DELETION:
            return self._plan_deletion(partition, policy, audit, now, age)

        applied = audit.applied_stage(partition.name)
        if applied is not None and applied.rank >= target.rank:
            return None

        if (
            target is PartitionStage.ARCHIVED
            and partition.attached
            and partition.activity_count > 0
            and policy.within_activity_window(age)
        ):
            logger.info(
                f"Holding {partition.name} active: {partition.activity_count} recent writes",
                extra={"partition": partition.name, "age_days": age},
            )
            plan.held.append(partition.name)
            return None

        return PartitionAction(
            action_type=_STAGE_ACTIONS[target],
            partition_name=partition.name,
            date_range=partition.date_range,  # type: ignore[arg-type]
            reason=f"age {age} days places it in stage {target.value}",
        )

    def _plan_deletion(
        self,
        partition: Partition,
        policy: LifecyclePolicy,
        audit: AuditView,
        now: datetime,
        age: int,
    ) -> PartitionAction | None:
        marked_at = audit.marked_at(partition.name)
        if marked_at is None:
            return PartitionAction(
                action_type=ActionType.MARK_FOR_DELETION,
                partition_name=partition.name,
                date_range=partition.date_range,  # type: ignore[arg-type]
                reason=f"age {age} days reached the deletion threshold",
            )

        # Whole elapsed days: a mark at T is never deleted before T + grace
        elapsed = now - marked_at
        days_marked = elapsed.days
        if elapsed < timedelta(days=policy.deletion_grace_days):
            logger.debug(
                f"Partition {partition.name} pending deletion: marked {days_marked} days ago",
                extra={
                    "partition": partition.name,
                    "days_marked": days_marked,
                    "grace_days": policy.deletion_grace_days,
                },
            )
            return None

        return PartitionAction(
            action_type=ActionType.DELETE,
            partition_name=partition.name,
            date_range=partition.date_range,  # type: ignore[arg-type]
            marked_at=marked_at,
            reason=f"marked for deletion {days_marked} days ago",
        )
