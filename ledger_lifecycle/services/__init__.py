"""Partition lifecycle services."""

from ledger_lifecycle.services.catalog_reader import (
    CatalogReader,
    DateRange,
    Partition,
    UnknownRange,
    parse_partition_bounds,
)
from ledger_lifecycle.services.lifecycle_policy import LifecyclePolicy, PartitionStage
from ledger_lifecycle.services.overflow_guard import OverflowGuard
from ledger_lifecycle.services.partition_audit import AuditView, PartitionAuditStore
from ledger_lifecycle.services.partition_executor import PartitionExecutor
from ledger_lifecycle.services.partition_planner import (
    ActionType,
    LifecyclePlan,
    PartitionAction,
    PartitionPlanner,
    Phase,
    SkippedProposal,
)
from ledger_lifecycle.services.snapshot_store import FarmingSnapshotStore, SnapshotStore

__all__ = [
    "ActionType",
    "AuditView",
    "CatalogReader",
    "DateRange",
    "FarmingSnapshotStore",
    "LifecyclePlan",
    "LifecyclePolicy",
    "OverflowGuard",
    "Partition",
    "PartitionAction",
    "PartitionAuditStore",
    "PartitionExecutor",
    "PartitionPlanner",
    "PartitionStage",
    "Phase",
    "SkippedProposal",
    "SnapshotStore",
    "UnknownRange",
    "parse_partition_bounds",
]
