"""Admin API routes for the partition lifecycle.

Authentication is handled outside this service; these routes assume the
caller is an operator.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_lifecycle.api.schemas.partitions import (
    CycleReportResponse,
    CycleRequest,
    PartitionLogListResponse,
    PartitionStatusResponse,
    PlanResponse,
)
from ledger_lifecycle.core.config import get_settings
from ledger_lifecycle.core.database import get_db
from ledger_lifecycle.core.exceptions import OverflowInvariantError
from ledger_lifecycle.jobs.partition_scheduler_job import PartitionSchedulerJob
from ledger_lifecycle.models.partition_log import PartitionLogStatus, PartitionOperation
from ledger_lifecycle.services.catalog_reader import DateRange

router = APIRouter(prefix="/api/admin/partitions", tags=["partitions"])


def get_scheduler(request: Request) -> PartitionSchedulerJob:
    """Dependency returning the scheduler created during application startup."""
    scheduler = getattr(request.app.state, "partition_scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Partition scheduler is not initialized",
        )
    return scheduler


@router.get("/status", response_model=PartitionStatusResponse)
async def get_partition_status(
    scheduler: PartitionSchedulerJob = Depends(get_scheduler),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """List partitions with their derived and applied stages.

    Also reports the overflow boundary, any overflow invariant violation,
    the scheduler state and the most recent audit entries.
    """
    settings = get_settings()
    catalog = scheduler.catalog
    today = scheduler.today()

    partitions = await catalog.list_partitions(db)
    view = await scheduler.audit.load_view(db)
    partition_key = await catalog.partition_key(db)
    recent_logs, _ = await scheduler.audit.list_logs(db, limit=20)

    overflow_boundary = None
    invariant_violation = None
    try:
        overflow = scheduler.guard.verify(partitions)
        if overflow is not None and isinstance(overflow.date_range, DateRange):
            overflow_boundary = overflow.date_range.start
    except OverflowInvariantError as e:
        invariant_violation = e.message

    items = []
    for partition in partitions:
        age = partition.age_days(today)
        derived = None
        if age is not None and not partition.is_overflow:
            derived = scheduler.policy.derive_stage(age).value
        applied = view.applied_stage(partition.name)
        items.append(
            {
                "name": partition.name,
                "range": str(partition.date_range),
                "attached": partition.attached,
                "is_overflow": partition.is_overflow,
                "age_days": age,
                "derived_stage": derived,
                "applied_stage": applied.value if applied else None,
                "marked_at": view.marked_at(partition.name),
                "activity_count": partition.activity_count,
                "row_estimate": partition.row_estimate,
                "archive_tables": list(partition.archive_tables),
            }
        )

    return {
        "ledger_table": catalog.ledger_table,
        "partition_key": partition_key,
        "expected_partition_key": f"RANGE ({settings.ledger_partition_column})",
        "today": today.isoformat(),
        "overflow_boundary": overflow_boundary,
        "invariant_violation": invariant_violation,
        "partitions": items,
        "scheduler": scheduler.get_status(),
        "recent_logs": recent_logs,
    }


@router.get("/logs", response_model=PartitionLogListResponse)
async def list_partition_logs(
    operation: PartitionOperation | None = Query(None, description="Filter by operation type"),
    partition_name: str | None = Query(None, description="Filter by partition name"),
    status_filter: PartitionLogStatus | None = Query(
        None, alias="status", description="Filter by status (success/error/skipped)"
    ),
    limit: int = Query(50, ge=1, le=1000, description="Page size"),
    offset: int = Query(0, ge=0, description="Page offset"),
    scheduler: PartitionSchedulerJob = Depends(get_scheduler),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """List partition audit entries, newest first."""
    logs, total = await scheduler.audit.list_logs(
        db,
        operation=operation,
        partition_name=partition_name,
        status=status_filter,
        limit=limit,
        offset=offset,
    )
    return {"logs": logs, "count": total, "limit": limit, "offset": offset}


@router.post("/plan", response_model=PlanResponse)
async def plan_partition_cycle(
    body: CycleRequest | None = None,
    scheduler: PartitionSchedulerJob = Depends(get_scheduler),
) -> dict[str, Any]:
    """Compute the plan for a cycle without executing anything."""
    body = body or CycleRequest()
    plan = await scheduler.preview(body.cycle)
    return {"cycle": body.cycle, **plan.to_dict()}


@router.post("/run", response_model=CycleReportResponse)
async def run_partition_cycle(
    body: CycleRequest | None = None,
    scheduler: PartitionSchedulerJob = Depends(get_scheduler),
) -> dict[str, Any]:
    """Run one maintenance tick now.

    Returns 409 when a tick is already in progress.
    """
    body = body or CycleRequest()
    report = await scheduler.run_tick(body.cycle, dry_run=body.dry_run, raise_if_busy=True)
    return report.to_dict()
