from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from app.core.db import Base, BigIntPK, utcnow


class DomainValidationRecord(Base):
    """Escalating check cadence for one order awaiting domain validation."""

    __tablename__ = "domain_validation_records"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    order_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    # baseline for the time node schedule
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    last_check_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    next_check_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
