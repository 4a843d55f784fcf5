"""Core infrastructure components."""

from ledger_lifecycle.core.config import Settings, get_settings
from ledger_lifecycle.core.database import (
    Base,
    close_db,
    get_db,
    get_engine,
    get_session,
    get_session_factory,
    init_db,
)
from ledger_lifecycle.core.logging import (
    get_cycle_id,
    get_logger,
    set_cycle_id,
    setup_logging,
)

__all__ = [
    "Base",
    "Settings",
    "close_db",
    "get_cycle_id",
    "get_db",
    "get_engine",
    "get_logger",
    "get_session",
    "get_session_factory",
    "get_settings",
    "init_db",
    "set_cycle_id",
    "setup_logging",
]
