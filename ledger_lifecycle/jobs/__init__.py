"""Background jobs."""

from ledger_lifecycle.jobs.partition_scheduler_job import (
    CycleKind,
    CycleReport,
    PartitionSchedulerJob,
)

__all__ = [
    "CycleKind",
    "CycleReport",
    "PartitionSchedulerJob",
]
