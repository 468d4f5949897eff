"""Committed national ID card records.

Rows are append-only. ``national_id`` is unique across the registry; the
constraint is what serializes two concurrent submissions of the same card.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from card_intake.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CardRecord(Base):
    __tablename__ = "card_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    national_id: Mapped[str] = mapped_column(String(14), unique=True, nullable=False)
    full_name: Mapped[str] = mapped_column(Text, nullable=False)

    # Attribution snapshot, frozen at insertion time
    submitter_external_id: Mapped[str] = mapped_column(String(64), nullable=False)
    submitter_display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    center: Mapped[str] = mapped_column(String(32), nullable=False)

    inserted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_card_records_center", "center"),
        Index("idx_card_records_inserted_at", "inserted_at"),
    )
