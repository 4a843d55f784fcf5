"""SQLAlchemy models for the ledger partition lifecycle."""

from .farming_snapshot import FarmingSnapshot
from .ledger import LedgerTransaction
from .partition_log import PartitionLog, PartitionLogStatus, PartitionOperation

__all__ = [
    "FarmingSnapshot",
    "LedgerTransaction",
    "PartitionLog",
    "PartitionLogStatus",
    "PartitionOperation",
]
