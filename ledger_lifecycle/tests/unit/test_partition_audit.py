"""Unit tests for the audit store and audit view."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from ledger_lifecycle.models.partition_log import (
    PartitionLog,
    PartitionLogStatus,
    PartitionOperation,
)
from ledger_lifecycle.services.lifecycle_policy import PartitionStage
from ledger_lifecycle.services.partition_audit import AuditView, PartitionAuditStore
from ledger_lifecycle.tests.factories import PartitionLogFactory

NOW = datetime(2026, 10, 18, 3, 0, tzinfo=UTC)
NAME = "transactions_2024_08_01"


def _entry(operation: str, created_at: datetime, **kwargs) -> PartitionLog:
    return PartitionLogFactory(
        operation_type=operation, partition_name=NAME, created_at=created_at, **kwargs
    )


def _mark(created_at: datetime, **kwargs) -> PartitionLog:
    return _entry("mark_for_deletion", created_at, **kwargs)


def _factory_for(session):
    session_cm = MagicMock()
    session_cm.__aenter__ = AsyncMock(return_value=session)
    session_cm.__aexit__ = AsyncMock(return_value=False)
    return MagicMock(return_value=session_cm)


# =============================================================================
# AuditView
# =============================================================================


def test_view_keeps_latest_success_only():
    view = AuditView.from_entries(
        [
            _mark(NOW - timedelta(days=9)),
            _mark(NOW - timedelta(days=2)),
            _mark(NOW - timedelta(days=1), failed=True),
            _entry("archive", NOW, skipped=True),
        ]
    )

    assert view.marked_at(NAME) == NOW - timedelta(days=2)
    assert view.last_success(NAME, PartitionOperation.ARCHIVE) is None


def test_failed_mark_is_not_a_mark():
    view = AuditView.from_entries([_mark(NOW, failed=True)])

    assert view.marked_at(NAME) is None


def test_applied_stage_is_furthest_successful_stage():
    view = AuditView.from_entries(
        [
            _entry("create", NOW - timedelta(days=500)),
            _entry("deep_archive", NOW - timedelta(days=100)),
            _entry("archive", NOW - timedelta(days=400)),
        ]
    )

    assert view.applied_stage(NAME) is PartitionStage.DEEP_ARCHIVED
    assert view.applied_stage("transactions_2026_01_01") is None
    assert not view.is_deleted(NAME)


def test_delete_success_marks_partition_deleted():
    view = AuditView.from_entries([_entry("delete", NOW)])

    assert view.is_deleted(NAME)
    assert view.applied_stage(NAME) is PartitionStage.DELETED


# =============================================================================
# PartitionAuditStore
# =============================================================================


@pytest.mark.asyncio
async def test_record_adds_to_callers_session_without_commit():
    session = MagicMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    store = PartitionAuditStore(clock=lambda: NOW)

    entry = await store.record(
        session,
        PartitionOperation.ARCHIVE,
        NAME,
        PartitionLogStatus.SUCCESS,
        notes="copied 10 rows",
    )

    session.add.assert_called_once_with(entry)
    session.flush.assert_awaited_once()
    session.commit.assert_not_awaited()
    assert entry.operation_type == "archive"
    assert entry.status == "success"
    assert entry.created_at == NOW
    assert entry.notes == "copied 10 rows"


@pytest.mark.asyncio
async def test_record_truncates_long_partition_names():
    session = MagicMock()
    session.flush = AsyncMock()
    store = PartitionAuditStore(clock=lambda: NOW)

    entry = await store.record(
        session, PartitionOperation.CREATE, "x" * 300, PartitionLogStatus.SKIPPED
    )

    assert len(entry.partition_name) == 255


@pytest.mark.asyncio
async def test_record_independent_commits_in_own_session():
    session = MagicMock()
    session.commit = AsyncMock()
    factory = _factory_for(session)
    store = PartitionAuditStore(factory, clock=lambda: NOW)

    entry = await store.record_independent(
        PartitionOperation.DELETE,
        NAME,
        PartitionLogStatus.ERROR,
        error_message="snapshot missing",
    )

    factory.assert_called_once()
    session.add.assert_called_once_with(entry)
    session.commit.assert_awaited_once()
    assert entry.error_message == "snapshot missing"


@pytest.mark.asyncio
async def test_record_independent_survives_audit_write_failure():
    session = MagicMock()
    session.commit = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("gone")))
    store = PartitionAuditStore(_factory_for(session), clock=lambda: NOW)

    entry = await store.record_independent(
        PartitionOperation.CREATE, NAME, PartitionLogStatus.ERROR
    )

    assert entry.partition_name == NAME


@pytest.mark.asyncio
async def test_record_independent_without_factory_returns_unsaved_entry():
    store = PartitionAuditStore(clock=lambda: NOW)

    entry = await store.record_independent(
        PartitionOperation.CREATE, NAME, PartitionLogStatus.SKIPPED, notes="overlap"
    )

    assert entry.status == "skipped"


@pytest.mark.asyncio
async def test_load_view_maps_rows():
    result = MagicMock()
    result.all.return_value = [
        (NAME, "archive", NOW - timedelta(days=3)),
        (NAME, "mark_for_deletion", NOW - timedelta(days=1)),
    ]
    session = MagicMock()
    session.execute = AsyncMock(return_value=result)

    view = await PartitionAuditStore().load_view(session)

    assert view.marked_at(NAME) == NOW - timedelta(days=1)
    assert view.applied_stage(NAME) is PartitionStage.MARKED_FOR_DELETION


@pytest.mark.asyncio
async def test_load_view_groups_latest_success_per_operation():
    result = MagicMock()
    result.all.return_value = []
    session = MagicMock()
    session.execute = AsyncMock(return_value=result)

    await PartitionAuditStore().load_view(session)

    stmt = session.execute.await_args.args[0]
    sql = str(stmt.compile(dialect=postgresql.dialect()))
    assert "max(partition_logs.created_at)" in sql
    assert "GROUP BY partition_logs.partition_name, partition_logs.operation_type" in sql
    assert "DISTINCT" not in sql


@pytest.mark.asyncio
async def test_list_logs_returns_rows_and_total():
    rows = [_entry("create", NOW)]
    count_result = MagicMock()
    count_result.scalar_one.return_value = 7
    rows_result = MagicMock()
    rows_result.scalars.return_value.all.return_value = rows
    session = MagicMock()
    session.execute = AsyncMock(side_effect=[count_result, rows_result])

    entries, total = await PartitionAuditStore().list_logs(
        session, operation=PartitionOperation.CREATE, limit=1
    )

    assert entries == rows
    assert total == 7
    assert session.execute.await_count == 2
