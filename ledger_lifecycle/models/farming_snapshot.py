"""Per-user aggregate snapshot model.

Snapshots summarize ledger activity for a day. A dated partition may only be
dropped once a snapshot covering its day exists.
"""

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import DateTime, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_lifecycle.core.database import Base


class FarmingSnapshot(Base):
    __tablename__ = "farming_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    total_earned: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False, default=0)
    snapshot_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index("idx_farming_snapshots_snapshot_date", "snapshot_date"),
        Index("idx_farming_snapshots_user_date", "user_id", "snapshot_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<FarmingSnapshot(id={self.id}, user_id={self.user_id!r}, "
            f"snapshot_date={self.snapshot_date})>"
        )
