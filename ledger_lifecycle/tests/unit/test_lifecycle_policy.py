"""Unit tests for the lifecycle policy."""

import pytest

from ledger_lifecycle.core.config import Settings
from ledger_lifecycle.services.lifecycle_policy import LifecyclePolicy, PartitionStage


@pytest.fixture
def policy() -> LifecyclePolicy:
    return LifecyclePolicy(
        active_days=90,
        archive_days=365,
        deep_archive_days=730,
        delete_threshold_days=731,
        deletion_grace_days=7,
    )


@pytest.mark.parametrize(
    ("age", "expected"),
    [
        (-3, PartitionStage.ACTIVE),
        (0, PartitionStage.ACTIVE),
        (90, PartitionStage.ACTIVE),
        (91, PartitionStage.ARCHIVED),
        (365, PartitionStage.ARCHIVED),
        (366, PartitionStage.DEEP_ARCHIVED),
        (730, PartitionStage.DEEP_ARCHIVED),
        (731, PartitionStage.MARKED_FOR_DELETION),
        (800, PartitionStage.MARKED_FOR_DELETION),
    ],
)
def test_derive_stage_uses_cumulative_boundaries(policy, age, expected):
    assert policy.derive_stage(age) is expected


def test_gap_between_deep_archive_and_delete_threshold_stays_deep_archived():
    policy = LifecyclePolicy(
        active_days=10, archive_days=20, deep_archive_days=30, delete_threshold_days=40
    )

    assert policy.derive_stage(35) is PartitionStage.DEEP_ARCHIVED
    assert policy.derive_stage(40) is PartitionStage.MARKED_FOR_DELETION


def test_derive_stage_never_returns_deleted(policy):
    assert all(policy.derive_stage(age) is not PartitionStage.DELETED for age in range(-5, 2000))


def test_stage_rank_follows_progression():
    ranks = [stage.rank for stage in PartitionStage]
    assert ranks == sorted(ranks)
    assert PartitionStage.ACTIVE.rank < PartitionStage.DELETED.rank


@pytest.mark.parametrize(
    "thresholds",
    [
        (90, 90, 730, 731),
        (90, 365, 300, 731),
        (90, 365, 730, 730),
        (0, 365, 730, 731),
    ],
)
def test_policy_rejects_non_ascending_thresholds(thresholds):
    active, archive, deep, delete = thresholds
    with pytest.raises(ValueError, match="Lifecycle thresholds"):
        LifecyclePolicy(
            active_days=active,
            archive_days=archive,
            deep_archive_days=deep,
            delete_threshold_days=delete,
        )


def test_policy_rejects_negative_grace():
    with pytest.raises(ValueError, match="deletion_grace_days"):
        LifecyclePolicy(deletion_grace_days=-1)


def test_policy_rejects_zero_horizon():
    with pytest.raises(ValueError, match="creation_horizon_days"):
        LifecyclePolicy(creation_horizon_days=0)


def test_activity_window(policy):
    assert policy.within_activity_window(95)
    assert policy.within_activity_window(100)
    assert not policy.within_activity_window(101)


def test_from_settings_copies_thresholds():
    settings = Settings(
        partition_active_days=30,
        partition_archive_days=60,
        partition_deep_archive_days=120,
        partition_delete_threshold_days=121,
        partition_deletion_grace_days=3,
        partition_creation_horizon_days=5,
        partition_activity_window_days=2,
    )

    policy = LifecyclePolicy.from_settings(settings)

    assert policy == LifecyclePolicy(
        active_days=30,
        archive_days=60,
        deep_archive_days=120,
        delete_threshold_days=121,
        deletion_grace_days=3,
        creation_horizon_days=5,
        activity_window_days=2,
    )
