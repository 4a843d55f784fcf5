"""Lifecycle policy: age thresholds that map a partition to a stage.

Thresholds are cumulative day boundaries measured from a partition's start
date. With the defaults (90/365/730/731):

    age <= 90          ACTIVE
    91 .. 365          ARCHIVED
    366 .. 730         DEEP_ARCHIVED
    age >= 731         MARKED_FOR_DELETION

``DELETED`` is never derived from age. It is only reached through an audited
delete action once the grace period has elapsed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ledger_lifecycle.core.config import Settings


class PartitionStage(str, Enum):
    """Lifecycle stage of a dated partition, in progression order."""

    ACTIVE = "active"
    ARCHIVED = "archived"
    DEEP_ARCHIVED = "deep_archived"
    MARKED_FOR_DELETION = "marked_for_deletion"
    DELETED = "deleted"

    @property
    def rank(self) -> int:
        return _STAGE_ORDER.index(self)


_STAGE_ORDER = list(PartitionStage)


@dataclass(frozen=True, slots=True)
class LifecyclePolicy:
    """Pure lifecycle configuration.

    Attributes:
        active_days: Partitions up to this age stay attached and writable
        archive_days: Upper age bound of the ARCHIVED stage
        deep_archive_days: Upper age bound of the DEEP_ARCHIVED stage
        delete_threshold_days: Age at which a partition is marked for deletion
        deletion_grace_days: Minimum days between mark and physical deletion
        creation_horizon_days: Days ahead that dated partitions must exist
        activity_window_days: Days past ``active_days`` during which write
            activity holds a partition at ACTIVE
    """

    active_days: int = 90
    archive_days: int = 365
    deep_archive_days: int = 730
    delete_threshold_days: int = 731
    deletion_grace_days: int = 7
    creation_horizon_days: int = 7
    activity_window_days: int = 10

    def __post_init__(self) -> None:
        if not (
            0 < self.active_days
            < self.archive_days
            < self.deep_archive_days
            < self.delete_threshold_days
        ):
            raise ValueError(
                "Lifecycle thresholds must satisfy "
                "0 < active_days < archive_days < deep_archive_days < delete_threshold_days, "
                f"got {self.active_days}/{self.archive_days}/"
                f"{self.deep_archive_days}/{self.delete_threshold_days}"
            )
        if self.deletion_grace_days < 0:
            raise ValueError(f"deletion_grace_days must be >= 0, got {self.deletion_grace_days}")
        if self.creation_horizon_days < 1:
            raise ValueError(
                f"creation_horizon_days must be >= 1, got {self.creation_horizon_days}"
            )
        if self.activity_window_days < 0:
            raise ValueError(
                f"activity_window_days must be >= 0, got {self.activity_window_days}"
            )

    @classmethod
    def from_settings(cls, settings: Settings) -> LifecyclePolicy:
        return cls(
            active_days=settings.partition_active_days,
            archive_days=settings.partition_archive_days,
            deep_archive_days=settings.partition_deep_archive_days,
            delete_threshold_days=settings.partition_delete_threshold_days,
            deletion_grace_days=settings.partition_deletion_grace_days,
            creation_horizon_days=settings.partition_creation_horizon_days,
            activity_window_days=settings.partition_activity_window_days,
        )

    def derive_stage(self, age_days: int) -> PartitionStage:
        """Map a partition age to the stage it should be in.

        Future partitions (negative age) are ACTIVE. Ages between
        ``deep_archive_days`` and ``delete_threshold_days`` (only possible
        when the two are more than a day apart) stay DEEP_ARCHIVED.

        Args:
            age_days: ``today - start_date`` in whole days

        Returns:
            Derived stage, never DELETED
        """
        if age_days <= self.active_days:
            return PartitionStage.ACTIVE
        if age_days <= self.archive_days:
            return PartitionStage.ARCHIVED
        if age_days >= self.delete_threshold_days:
            return PartitionStage.MARKED_FOR_DELETION
        return PartitionStage.DEEP_ARCHIVED

    def within_activity_window(self, age_days: int) -> bool:
        """True while write activity may still hold a partition at ACTIVE."""
        return age_days <= self.active_days + self.activity_window_days
