"""Background scheduler for partition lifecycle maintenance.

Runs two cadences inside the application process:
    - Daily (default 00:05 UTC): overflow maintenance, creation of missing
      near-future partitions, stage advancement
    - Weekly (default Sunday 03:00 UTC): the same sequence followed by the
      deletion pass

Each tick recomputes the plan from the catalog and audit log, so no state is
carried between ticks apart from an in-progress flag that makes an
overlapping tick return immediately. Within a tick, phases always run in the
order overflow, create, advance, delete, and every action is isolated: one
partition's failure is audited and the tick moves on.

An overflow invariant violation found at the start of a tick is logged at
CRITICAL. Overflow replacement and dated-partition creation are then skipped
for that tick; stage advancement and deletion still run.

Usage:
    job = PartitionSchedulerJob.from_settings(get_settings(), get_session_factory())
    await job.start()
    ...
    await job.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from ledger_lifecycle.core.config import parse_hhmm
from ledger_lifecycle.core.exceptions import OverflowInvariantError, SchedulerBusyError
from ledger_lifecycle.core.logging import get_logger, set_cycle_id
from ledger_lifecycle.models.partition_log import PartitionLogStatus
from ledger_lifecycle.services.catalog_reader import CatalogReader
from ledger_lifecycle.services.lifecycle_policy import LifecyclePolicy
from ledger_lifecycle.services.overflow_guard import OverflowGuard
from ledger_lifecycle.services.partition_audit import PartitionAuditStore
from ledger_lifecycle.services.partition_executor import PartitionExecutor
from ledger_lifecycle.services.partition_planner import LifecyclePlan, PartitionPlanner, Phase
from ledger_lifecycle.services.snapshot_store import FarmingSnapshotStore

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from ledger_lifecycle.core.config import Settings
    from ledger_lifecycle.services.catalog_reader import Partition
    from ledger_lifecycle.services.partition_audit import AuditView

logger = get_logger(__name__)

# Delay before the loop resumes after an unexpected error
ERROR_BACKOFF_SECONDS = 60


class CycleKind(str, Enum):
    """Scheduler cadence."""

    DAILY = "daily"
    WEEKLY = "weekly"

    @property
    def phases(self) -> tuple[Phase, ...]:
        if self is CycleKind.WEEKLY:
            return (Phase.OVERFLOW, Phase.CREATE, Phase.ADVANCE, Phase.DELETE)
        return (Phase.OVERFLOW, Phase.CREATE, Phase.ADVANCE)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class CycleReport:
    """Outcome of one scheduler tick."""

    kind: CycleKind
    cycle_id: str
    started_at: datetime
    dry_run: bool = False
    tick_skipped: bool = False
    planned: list[dict[str, Any]] = field(default_factory=list)
    counts: dict[str, int] = field(
        default_factory=lambda: {status.value: 0 for status in PartitionLogStatus}
    )
    errors: list[dict[str, str | None]] = field(default_factory=list)
    invariant_violation: str | None = None
    unparsable: list[str] = field(default_factory=list)
    held: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def has_errors(self) -> bool:
        return bool(self.errors) or self.invariant_violation is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "cycle_id": self.cycle_id,
            "started_at": self.started_at.isoformat(),
            "dry_run": self.dry_run,
            "tick_skipped": self.tick_skipped,
            "planned": self.planned,
            "counts": dict(self.counts),
            "errors": list(self.errors),
            "invariant_violation": self.invariant_violation,
            "unparsable": list(self.unparsable),
            "held": list(self.held),
            "duration_seconds": self.duration_seconds,
        }

    def __repr__(self) -> str:
        return (
            f"<CycleReport(kind={self.kind.value}, cycle_id={self.cycle_id}, "
            f"planned={len(self.planned)}, counts={self.counts}, "
            f"errors={len(self.errors)}, tick_skipped={self.tick_skipped})>"
        )


class PartitionSchedulerJob:
    """Long-lived scheduler that owns the tick-in-progress state."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: CatalogReader,
        audit: PartitionAuditStore,
        planner: PartitionPlanner,
        executor: PartitionExecutor,
        policy: LifecyclePolicy,
        guard: OverflowGuard | None = None,
        *,
        daily_time: str = "00:05",
        weekly_weekday: int = 6,
        weekly_time: str = "03:00",
        run_on_startup: bool = True,
        dry_run: bool = False,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        parse_hhmm(daily_time)
        parse_hhmm(weekly_time)
        if not 0 <= weekly_weekday <= 6:
            raise ValueError(f"weekly_weekday must be 0-6, got {weekly_weekday}")

        self._session_factory = session_factory
        self.catalog = catalog
        self.audit = audit
        self.planner = planner
        self.executor = executor
        self.policy = policy
        self.guard = guard or OverflowGuard()
        self.daily_time = daily_time
        self.weekly_weekday = weekly_weekday
        self.weekly_time = weekly_time
        self.run_on_startup = run_on_startup
        self.dry_run = dry_run
        self._clock = clock
        self._sleep = sleep

        self.running = False
        self._task: asyncio.Task[None] | None = None
        self._tick_in_progress = False
        self._last_report: CycleReport | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = _utcnow,
    ) -> PartitionSchedulerJob:
        """Wire the scheduler and its collaborators from application settings."""
        catalog = CatalogReader(settings.ledger_table, session_factory)
        audit = PartitionAuditStore(session_factory, clock=clock)
        guard = OverflowGuard()
        executor = PartitionExecutor.from_settings(
            settings,
            session_factory,
            catalog,
            audit,
            FarmingSnapshotStore(),
            guard,
            clock=clock,
        )
        return cls(
            session_factory,
            catalog,
            audit,
            PartitionPlanner(settings.ledger_table),
            executor,
            LifecyclePolicy.from_settings(settings),
            guard,
            daily_time=settings.partition_daily_cycle_time,
            weekly_weekday=settings.partition_weekly_cycle_weekday,
            weekly_time=settings.partition_weekly_cycle_time,
            run_on_startup=settings.partition_run_on_startup,
            dry_run=settings.partition_dry_run,
            clock=clock,
        )

    @property
    def is_running(self) -> bool:
        return self.running

    @property
    def is_busy(self) -> bool:
        return self._tick_in_progress

    def today(self) -> date:
        """Current UTC date according to the scheduler clock."""
        return self._clock().date()

    @property
    def last_report(self) -> CycleReport | None:
        return self._last_report

    # -------------------------------------------------------------------------
    # Ticks
    # -------------------------------------------------------------------------

    async def snapshot(self) -> tuple[list[Partition], AuditView]:
        """Read the catalog and the audit view for planning."""
        partitions = await self.catalog.read()
        async with self._session_factory() as session:
            view = await self.audit.load_view(session)
        return partitions, view

    def _runnable_phases(
        self, kind: CycleKind, partitions: list[Partition]
    ) -> tuple[set[Phase], OverflowInvariantError | None]:
        """Phases of ``kind`` that may run against this catalog snapshot.

        A broken overflow invariant suppresses the overflow and creation
        phases; advancement and deletion never touch the overflow.
        """
        phases = set(kind.phases)
        try:
            self.guard.verify(partitions)
        except OverflowInvariantError as e:
            return phases - {Phase.OVERFLOW, Phase.CREATE}, e
        return phases, None

    async def preview(self, kind: CycleKind = CycleKind.DAILY) -> LifecyclePlan:
        """Plan without executing, restricted to what a ``kind`` tick would run."""
        partitions, view = await self.snapshot()
        phases, violation = self._runnable_phases(kind, partitions)
        plan = self.planner.plan(partitions, self.policy, view, self._clock())
        plan.actions = sorted(plan.for_phases(phases), key=lambda a: a.phase.order)
        if violation is not None:
            plan.invariant_violation = violation.message
            plan.skipped = []
            logger.warning(
                f"Overflow invariant violated, preview omits overflow and creation: "
                f"{violation.message}",
                extra={"cycle_kind": kind.value, **violation.details},
            )
        return plan

    async def run_tick(
        self,
        kind: CycleKind = CycleKind.DAILY,
        dry_run: bool | None = None,
        *,
        raise_if_busy: bool = False,
    ) -> CycleReport:
        """Run one maintenance tick.

        Args:
            kind: Which cadence's phases to run
            dry_run: Override the configured dry-run switch
            raise_if_busy: Raise instead of returning a skipped report when
                another tick is in progress

        Returns:
            CycleReport for the tick

        Raises:
            SchedulerBusyError: A tick is in progress and ``raise_if_busy`` is set
        """
        effective_dry_run = self.dry_run if dry_run is None else dry_run
        cycle_id = uuid.uuid4().hex[:12]

        if self._tick_in_progress:
            if raise_if_busy:
                raise SchedulerBusyError()
            logger.warning(
                f"Skipping {kind.value} tick: previous tick still in progress",
                extra={"cycle_kind": kind.value},
            )
            return CycleReport(
                kind=kind,
                cycle_id=cycle_id,
                started_at=self._clock(),
                dry_run=effective_dry_run,
                tick_skipped=True,
            )

        self._tick_in_progress = True
        set_cycle_id(cycle_id)
        try:
            report = await self._run_tick(kind, cycle_id, effective_dry_run)
            self._last_report = report
            return report
        finally:
            self._tick_in_progress = False
            set_cycle_id(None)

    async def _run_tick(self, kind: CycleKind, cycle_id: str, dry_run: bool) -> CycleReport:
        started = time.monotonic()
        now = self._clock()
        today = now.astimezone(UTC).date()
        report = CycleReport(kind=kind, cycle_id=cycle_id, started_at=now, dry_run=dry_run)
        logger.info(
            f"Starting {kind.value} partition tick for {today.isoformat()}",
            extra={"cycle_kind": kind.value, "dry_run": dry_run},
        )

        partitions, view = await self.snapshot()

        phases, violation = self._runnable_phases(kind, partitions)
        if violation is not None:
            report.invariant_violation = violation.message
            logger.critical(
                f"Overflow invariant violated, skipping overflow and creation phases: "
                f"{violation.message}",
                extra={"cycle_kind": kind.value, **violation.details},
            )

        plan = self.planner.plan(partitions, self.policy, view, now)
        actions = sorted(plan.for_phases(phases), key=lambda a: a.phase.order)
        report.planned = [action.to_dict() for action in actions]
        report.unparsable = [p.name for p in plan.unparsable]
        report.held = list(plan.held)
        skipped = plan.skipped if Phase.CREATE in phases else []

        if dry_run:
            for action in actions:
                logger.info(
                    f"[dry run] would {action.action_type.value} {action.partition_name}: "
                    f"{action.reason}",
                    extra={"action": action.action_type.value, "partition": action.partition_name},
                )
            for proposal in skipped:
                logger.info(
                    f"[dry run] would skip {proposal.partition_name}: {proposal.reason}",
                    extra={"partition": proposal.partition_name},
                )
            report.duration_seconds = time.monotonic() - started
            return report

        for proposal in skipped:
            await self.audit.record_independent(
                proposal.operation,
                proposal.partition_name,
                PartitionLogStatus.SKIPPED,
                notes=proposal.reason,
            )
            report.counts[PartitionLogStatus.SKIPPED.value] += 1

        for action in actions:
            entry = await self.executor.execute(action)
            report.counts[entry.status] = report.counts.get(entry.status, 0) + 1
            if entry.status == PartitionLogStatus.ERROR.value:
                report.errors.append(
                    {
                        "action": action.action_type.value,
                        "partition_name": action.partition_name,
                        "error": entry.error_message,
                    }
                )

        report.duration_seconds = time.monotonic() - started
        logger.info(
            f"Finished {kind.value} partition tick: {report.counts}",
            extra={
                "cycle_kind": kind.value,
                "counts": report.counts,
                "errors": len(report.errors),
                "duration_seconds": round(report.duration_seconds, 3),
            },
        )
        return report

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def _next_occurrence(self, now: datetime, hhmm: str, weekday: int | None = None) -> datetime:
        hours, minutes = parse_hhmm(hhmm)
        candidate = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
        if weekday is not None:
            candidate += timedelta(days=(weekday - candidate.weekday()) % 7)
        if candidate <= now:
            candidate += timedelta(days=7 if weekday is not None else 1)
        return candidate

    def next_run(self, now: datetime | None = None) -> tuple[datetime, CycleKind]:
        """Next scheduled tick; the weekly tick wins when both fall together."""
        now = now or self._clock()
        daily = self._next_occurrence(now, self.daily_time)
        weekly = self._next_occurrence(now, self.weekly_time, self.weekly_weekday)
        if weekly <= daily:
            return weekly, CycleKind.WEEKLY
        return daily, CycleKind.DAILY

    async def _scheduler_loop(self) -> None:
        logger.info("Partition scheduler loop started")
        pending_startup = self.run_on_startup

        while self.running:
            try:
                if pending_startup:
                    pending_startup = False
                    kind = CycleKind.DAILY
                else:
                    next_at, kind = self.next_run()
                    wait_seconds = max((next_at - self._clock()).total_seconds(), 0.0)
                    logger.info(
                        f"Next {kind.value} partition tick scheduled for {next_at.isoformat()} "
                        f"({wait_seconds:.0f}s)"
                    )
                    await self._sleep(wait_seconds)

                if self.running:
                    await self.run_tick(kind)

            except asyncio.CancelledError:
                logger.info("Partition scheduler loop cancelled")
                break
            except Exception as e:
                logger.error(f"Error in partition scheduler loop: {e}", exc_info=True)
                await self._sleep(ERROR_BACKOFF_SECONDS)

        logger.info("Partition scheduler loop stopped")

    async def start(self) -> None:
        """Start the scheduler loop. Idempotent."""
        if self.running:
            logger.warning("PartitionSchedulerJob already running")
            return

        logger.info(
            "Starting PartitionSchedulerJob",
            extra={
                "daily_time": self.daily_time,
                "weekly_weekday": self.weekly_weekday,
                "weekly_time": self.weekly_time,
                "dry_run": self.dry_run,
            },
        )
        self.running = True
        self._task = asyncio.create_task(self._scheduler_loop())

    async def stop(self) -> None:
        """Stop the scheduler loop and wait for it to finish."""
        if not self.running:
            logger.debug("PartitionSchedulerJob not running, nothing to stop")
            return

        logger.info("Stopping PartitionSchedulerJob")
        self.running = False

        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

        self._task = None
        logger.info("PartitionSchedulerJob stopped")

    def get_status(self) -> dict[str, Any]:
        next_at, next_kind = self.next_run()
        return {
            "running": self.running,
            "tick_in_progress": self._tick_in_progress,
            "dry_run": self.dry_run,
            "daily_time": self.daily_time,
            "weekly_weekday": self.weekly_weekday,
            "weekly_time": self.weekly_time,
            "next_run": next_at.isoformat() if self.running else None,
            "next_run_kind": next_kind.value if self.running else None,
            "last_report": self._last_report.to_dict() if self._last_report else None,
        }
