"""Pydantic schemas for partition lifecycle admin endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ledger_lifecycle.jobs.partition_scheduler_job import CycleKind


class PartitionStatusItem(BaseModel):
    """A partition as seen in the catalog, with its derived stage."""

    name: str = Field(..., description="Partition table name")
    range: str = Field(..., description="Half-open range, or unknown(...) for unparsable bounds")
    attached: bool = Field(..., description="Whether the table is attached to the ledger")
    is_overflow: bool = Field(..., description="Whether this is the catch-all partition")
    age_days: int | None = Field(None, description="Days since the range start")
    derived_stage: str | None = Field(None, description="Stage derived from age")
    applied_stage: str | None = Field(None, description="Furthest stage applied per audit log")
    marked_at: datetime | None = Field(None, description="Latest successful mark for deletion")
    activity_count: int = Field(0, description="Cumulative writes from table statistics")
    row_estimate: int = Field(0, description="Planner row estimate")
    archive_tables: list[str] = Field(default_factory=list, description="Archive copies")


class PartitionLogResponse(BaseModel):
    """Schema for a single partition audit entry."""

    model_config = ConfigDict(from_attributes=True)

    id: int | None = Field(None, description="Entry ID")
    operation_type: str = Field(..., description="Lifecycle operation")
    partition_name: str = Field(..., description="Target partition")
    status: str = Field(..., description="success, error or skipped")
    notes: str | None = Field(None, description="Operation notes")
    error_message: str | None = Field(None, description="Sanitized error text")
    created_at: datetime | None = Field(None, description="When the entry was written")


class PartitionLogListResponse(BaseModel):
    logs: list[PartitionLogResponse] = Field(..., description="Audit entries, newest first")
    count: int = Field(..., description="Total count matching filters")
    limit: int = Field(..., description="Page size")
    offset: int = Field(..., description="Page offset")


class PartitionStatusResponse(BaseModel):
    """Current partition set and scheduler state."""

    ledger_table: str = Field(..., description="Partitioned ledger table")
    partition_key: str | None = Field(None, description="Partition key definition")
    expected_partition_key: str = Field(..., description="Configured partition key")
    today: str = Field(..., description="Current UTC date")
    overflow_boundary: datetime | None = Field(None, description="Overflow lower bound")
    invariant_violation: str | None = Field(None, description="Overflow invariant problem")
    partitions: list[PartitionStatusItem] = Field(..., description="Partitions by range start")
    scheduler: dict[str, Any] = Field(..., description="Scheduler status")
    recent_logs: list[PartitionLogResponse] = Field(..., description="Latest audit entries")


class CycleRequest(BaseModel):
    """Body of plan and run requests."""

    cycle: CycleKind = Field(CycleKind.DAILY, description="Which cadence's phases to run")
    dry_run: bool | None = Field(None, description="Override the configured dry-run switch")


class PlanResponse(BaseModel):
    cycle: CycleKind = Field(..., description="Cadence the plan was restricted to")
    actions: list[dict[str, Any]] = Field(..., description="Planned actions in execution order")
    skipped: list[dict[str, Any]] = Field(..., description="Refused proposals")
    unparsable: list[str] = Field(..., description="Partitions with unknown ranges")
    held: list[str] = Field(..., description="Partitions held active by write activity")
    invariant_violation: str | None = Field(
        None, description="Overflow invariant failure that suppressed overflow and creation"
    )


class CycleReportResponse(BaseModel):
    kind: CycleKind
    cycle_id: str
    started_at: datetime
    dry_run: bool
    tick_skipped: bool
    planned: list[dict[str, Any]]
    counts: dict[str, int]
    errors: list[dict[str, str | None]]
    invariant_violation: str | None = None
    unparsable: list[str]
    held: list[str]
    duration_seconds: float
