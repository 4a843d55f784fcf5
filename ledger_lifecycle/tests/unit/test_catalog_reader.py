"""Unit tests for the catalog reader."""

from datetime import UTC, date, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from ledger_lifecycle.services.catalog_reader import (
    CatalogReader,
    DateRange,
    Partition,
    UnknownRange,
    parse_partition_bounds,
    range_from_partition_name,
    sanitize_identifier,
)


def _result(rows):
    result = MagicMock()
    result.fetchall.return_value = rows
    return result


# =============================================================================
# Bound parsing
# =============================================================================


def test_parse_timestamptz_bounds():
    parsed = parse_partition_bounds(
        "FOR VALUES FROM ('2026-01-01 00:00:00+00') TO ('2026-01-02 00:00:00+00')"
    )

    assert parsed == DateRange(
        start=datetime(2026, 1, 1, tzinfo=UTC), end=datetime(2026, 1, 2, tzinfo=UTC)
    )


def test_parse_date_bounds():
    parsed = parse_partition_bounds("FOR VALUES FROM ('2026-01-01') TO ('2026-02-01')")

    assert isinstance(parsed, DateRange)
    assert parsed.start_date == date(2026, 1, 1)
    assert parsed.end_date == date(2026, 2, 1)


def test_parse_normalizes_non_utc_offsets():
    parsed = parse_partition_bounds(
        "FOR VALUES FROM ('2026-01-01 01:00:00+01') TO ('2026-01-02 01:00:00+01')"
    )

    assert isinstance(parsed, DateRange)
    assert parsed.start == datetime(2026, 1, 1, tzinfo=UTC)
    assert parsed.end == datetime(2026, 1, 2, tzinfo=UTC)


def test_parse_maxvalue_upper_bound_is_unbounded():
    parsed = parse_partition_bounds("FOR VALUES FROM ('2026-03-01 00:00:00+00') TO (MAXVALUE)")

    assert isinstance(parsed, DateRange)
    assert parsed.end is None
    assert parsed.is_unbounded


@pytest.mark.parametrize(
    "expression",
    [
        None,
        "",
        "DEFAULT",
        "FOR VALUES FROM (MINVALUE) TO ('2026-01-01')",
        "FOR VALUES IN ('a', 'b')",
        "FOR VALUES FROM ('not a date') TO ('2026-01-01')",
        "FOR VALUES FROM ('2026-01-02') TO ('2026-01-01')",
    ],
)
def test_unparsable_bounds_return_unknown(expression):
    parsed = parse_partition_bounds(expression)

    assert isinstance(parsed, UnknownRange)
    assert parsed.raw == expression


# =============================================================================
# DateRange
# =============================================================================


def test_overlap_is_half_open():
    jan1 = DateRange.for_day(date(2026, 1, 1))
    jan2 = DateRange.for_day(date(2026, 1, 2))

    assert not jan1.overlaps(jan2)
    assert not jan2.overlaps(jan1)
    assert jan1.overlaps(jan1)


def test_unbounded_range_overlaps_everything_after_its_start():
    overflow = DateRange.from_day(date(2026, 1, 10))

    assert overflow.overlaps(DateRange.for_day(date(2027, 6, 1)))
    assert overflow.overlaps(DateRange.from_day(date(2025, 1, 1)))
    assert not overflow.overlaps(DateRange.for_day(date(2026, 1, 9)))


def test_covers():
    month = DateRange(start=datetime(2026, 1, 1, tzinfo=UTC), end=datetime(2026, 2, 1, tzinfo=UTC))

    assert month.covers(DateRange.for_day(date(2026, 1, 31)))
    assert not month.covers(DateRange.for_day(date(2026, 2, 1)))
    assert not month.covers(DateRange.from_day(date(2026, 1, 5)))
    assert DateRange.from_day(date(2026, 1, 1)).covers(DateRange.for_day(date(2030, 1, 1)))


def test_contains():
    day = DateRange.for_day(date(2026, 1, 1))

    assert day.contains(datetime(2026, 1, 1, 23, 59, tzinfo=UTC))
    assert not day.contains(datetime(2026, 1, 2, tzinfo=UTC))


def test_date_range_rejects_naive_and_empty_ranges():
    with pytest.raises(ValueError, match="timezone-aware"):
        DateRange(start=datetime(2026, 1, 1))
    with pytest.raises(ValueError, match="Empty range"):
        DateRange(start=datetime(2026, 1, 2, tzinfo=UTC), end=datetime(2026, 1, 1, tzinfo=UTC))


# =============================================================================
# Names
# =============================================================================


def test_range_from_partition_name():
    assert range_from_partition_name("transactions_2026_01_31", "transactions") == (
        DateRange.for_day(date(2026, 1, 31))
    )
    assert range_from_partition_name("transactions_future", "transactions") is None
    assert range_from_partition_name("transactions_2026_02_30", "transactions") is None
    assert range_from_partition_name("archived_transactions_2026_01_31", "transactions") is None


def test_sanitize_identifier():
    assert sanitize_identifier("Transactions; DROP TABLE x") == "transactionsdroptablex"
    with pytest.raises(ValueError, match="Invalid identifier"):
        sanitize_identifier("';--")


def test_partition_age_days():
    partition = Partition(
        name="transactions_2026_01_01", date_range=DateRange.for_day(date(2026, 1, 1))
    )

    assert partition.age_days(date(2026, 1, 11)) == 10
    assert partition.age_days(date(2025, 12, 31)) == -1
    unknown = Partition(name="x", date_range=UnknownRange(raw="DEFAULT"))
    assert unknown.age_days(date.today()) is None


# =============================================================================
# list_partitions
# =============================================================================


@pytest.mark.asyncio
async def test_list_partitions_merges_attached_detached_and_archives():
    session = MagicMock()
    session.execute = AsyncMock(
        side_effect=[
            # archive tables
            _result(
                [
                    ("archived_transactions_2025_01_01",),
                    ("deep_archive_transactions_2025_01_01",),
                    ("archived_transactions_2025_06_01",),
                ]
            ),
            # attached children
            _result(
                [
                    (
                        "transactions_2026_01_01",
                        "FOR VALUES FROM ('2026-01-01 00:00:00+00') TO ('2026-01-02 00:00:00+00')",
                        120.0,
                        42,
                    ),
                    (
                        "transactions_future",
                        "FOR VALUES FROM ('2026-01-02 00:00:00+00') TO (MAXVALUE)",
                        -1.0,
                        None,
                    ),
                    ("transactions_default", "DEFAULT", 0.0, 0),
                ]
            ),
            # detached tables with the ledger prefix
            _result(
                [
                    ("transactions_2025_01_01", 10.0, 0),
                    ("transactions_2025_06_01", 5.0, 3),
                    ("transactions_backup", 1.0, 0),
                ]
            ),
        ]
    )

    partitions = await CatalogReader("transactions").list_partitions(session)

    names = [p.name for p in partitions]
    assert names == [
        "transactions_2025_01_01",
        "transactions_2025_06_01",
        "transactions_2026_01_01",
        "transactions_future",
        "transactions_default",
    ]

    by_name = {p.name: p for p in partitions}
    assert by_name["transactions_2025_01_01"].attached is False
    assert by_name["transactions_2025_01_01"].archive_tables == (
        "archived_transactions_2025_01_01",
        "deep_archive_transactions_2025_01_01",
    )
    assert by_name["transactions_2025_06_01"].activity_count == 3
    assert by_name["transactions_2026_01_01"].activity_count == 42
    assert by_name["transactions_2026_01_01"].row_estimate == 120
    assert by_name["transactions_future"].is_overflow
    assert by_name["transactions_future"].row_estimate == 0
    assert by_name["transactions_future"].activity_count == 0
    assert not by_name["transactions_default"].is_known
    assert session.execute.await_count == 3


@pytest.mark.asyncio
async def test_list_partitions_scopes_queries_to_ledger_table():
    session = MagicMock()
    session.execute = AsyncMock(side_effect=[_result([]), _result([]), _result([])])

    await CatalogReader("Transactions").list_partitions(session)

    params = [call.args[1] for call in session.execute.await_args_list]
    assert params[0] == {
        "archive": "archived\\_transactions\\_%",
        "deep_archive": "deep\\_archive\\_transactions\\_%",
    }
    assert params[1] == {"table_name": "transactions"}
    assert params[2] == {"prefix": "transactions\\_%"}


@pytest.mark.asyncio
async def test_relation_exists():
    session = MagicMock()
    result = MagicMock()
    result.scalar_one_or_none.return_value = "transactions_2026_01_01"
    session.execute = AsyncMock(return_value=result)

    assert await CatalogReader().relation_exists(session, "transactions_2026_01_01") is True

    result.scalar_one_or_none.return_value = None
    assert await CatalogReader().relation_exists(session, "transactions_2026_01_02") is False


@pytest.mark.asyncio
async def test_read_retries_transient_errors(monkeypatch):
    monkeypatch.setattr("ledger_lifecycle.core.retry.asyncio.sleep", AsyncMock())
    session = MagicMock()
    session_cm = MagicMock()
    session_cm.__aenter__ = AsyncMock(return_value=session)
    session_cm.__aexit__ = AsyncMock(return_value=False)
    factory = MagicMock(return_value=session_cm)

    reader = CatalogReader("transactions", session_factory=factory)
    expected = [
        Partition(
            name="transactions_2026_01_01", date_range=DateRange.for_day(date(2026, 1, 1))
        )
    ]
    reader.list_partitions = AsyncMock(  # type: ignore[method-assign]
        side_effect=[OperationalError("SELECT", {}, Exception("connection reset")), expected]
    )

    assert await reader.read() == expected
    assert reader.list_partitions.await_count == 2
    assert factory.call_count == 2


@pytest.mark.asyncio
async def test_read_requires_session_factory():
    with pytest.raises(RuntimeError, match="session_factory"):
        await CatalogReader().read()
