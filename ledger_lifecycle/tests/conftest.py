"""Pytest configuration and shared fixtures.

Unit tests never touch a database: sessions are replaced with
``unittest.mock`` fakes. Integration tests under ``integration/`` use a real
PostgreSQL instance and skip when none is reachable.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from collections.abc import Generator


@pytest.fixture(autouse=True)
def isolated_settings(
    monkeypatch: pytest.MonkeyPatch, tmp_path
) -> Generator[None]:
    """Keep settings independent of the developer's .env files."""
    from ledger_lifecycle.core.config import get_settings

    monkeypatch.setenv("LEDGER_RUNTIME_ENV_PATH", str(tmp_path / "runtime.env"))
    monkeypatch.setenv("LOG_FILE_PATH", str(tmp_path / "logs" / "ledger_lifecycle.log"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
