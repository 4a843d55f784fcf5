"""Unit tests for the overflow guard."""

from datetime import date, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from ledger_lifecycle.core.exceptions import OverflowInvariantError
from ledger_lifecycle.services.overflow_guard import OverflowGuard
from ledger_lifecycle.tests.factories import (
    OverflowPartitionFactory,
    PartitionFactory,
    UnknownPartitionFactory,
    day_partitions,
)

TODAY = date(2026, 10, 18)


def test_valid_partition_set_returns_overflow():
    overflow = OverflowPartitionFactory(boundary=TODAY + timedelta(days=5))
    partitions = [*day_partitions(TODAY, TODAY + timedelta(days=4)), overflow]

    assert OverflowGuard().verify(partitions) == overflow


def test_missing_overflow_is_not_a_violation():
    assert OverflowGuard().verify(day_partitions(TODAY, TODAY + timedelta(days=2))) is None


def test_two_overflows_violate_invariant():
    partitions = [
        OverflowPartitionFactory(boundary=TODAY + timedelta(days=5)),
        OverflowPartitionFactory(boundary=TODAY + timedelta(days=9), name="transactions_catchall"),
    ]

    with pytest.raises(OverflowInvariantError) as exc_info:
        OverflowGuard().verify(partitions)

    assert exc_info.value.details["overflow_partitions"] == [
        "transactions_catchall",
        "transactions_future",
    ]
    assert exc_info.value.status_code == 500


def test_dated_partition_past_boundary_violates_invariant():
    partitions = [
        *day_partitions(TODAY, TODAY + timedelta(days=6)),
        OverflowPartitionFactory(boundary=TODAY + timedelta(days=5)),
    ]

    with pytest.raises(OverflowInvariantError) as exc_info:
        OverflowGuard().verify(partitions)

    assert exc_info.value.details["breaching_partitions"] == [
        "transactions_2026_10_23",
        "transactions_2026_10_24",
    ]


def test_detached_and_unknown_partitions_are_ignored():
    partitions = [
        PartitionFactory(day=TODAY + timedelta(days=20), attached=False),
        UnknownPartitionFactory(),
        OverflowPartitionFactory(boundary=TODAY + timedelta(days=5)),
    ]

    assert OverflowGuard().verify(partitions) is not None


@pytest.mark.asyncio
async def test_creation_below_boundary_is_allowed():
    catalog = MagicMock()
    catalog.list_partitions = AsyncMock(
        return_value=[OverflowPartitionFactory(boundary=TODAY + timedelta(days=5))]
    )

    await OverflowGuard().assert_dated_creation_allowed(
        MagicMock(), catalog, TODAY + timedelta(days=4)
    )


@pytest.mark.asyncio
async def test_creation_at_boundary_is_refused():
    catalog = MagicMock()
    catalog.list_partitions = AsyncMock(
        return_value=[OverflowPartitionFactory(boundary=TODAY + timedelta(days=5))]
    )

    with pytest.raises(OverflowInvariantError, match="would cross overflow boundary"):
        await OverflowGuard().assert_dated_creation_allowed(
            MagicMock(), catalog, TODAY + timedelta(days=5)
        )


@pytest.mark.asyncio
async def test_creation_without_overflow_is_allowed():
    catalog = MagicMock()
    catalog.list_partitions = AsyncMock(return_value=[])

    await OverflowGuard().assert_dated_creation_allowed(MagicMock(), catalog, TODAY)
