"""Ledger transaction model.

The ``transactions`` table is range-partitioned by day on ``created_at``.
Partitions are created and retired by the lifecycle services; the parent
carries no indexes of its own because every partition gets its own set.
"""

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import BigInteger, DateTime, Identity, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_lifecycle.core.database import Base


class LedgerTransaction(Base):
    """Append-only ledger entry.

    The primary key includes ``created_at`` because PostgreSQL requires the
    partition key to be part of every unique constraint on a partitioned table.
    """

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        primary_key=True,
        default=lambda: datetime.now(UTC),
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    __table_args__ = {"postgresql_partition_by": "RANGE (created_at)"}

    def __repr__(self) -> str:
        return (
            f"<LedgerTransaction(id={self.id}, user_id={self.user_id!r}, "
            f"type={self.type!r}, created_at={self.created_at})>"
        )
