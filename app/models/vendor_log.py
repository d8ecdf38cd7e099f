from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.db import Base, BigIntPK, JSONType, utcnow


class VendorCallLog(Base):
    """One outbound CA call and what came back."""

    __tablename__ = "vendor_call_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    vendor: Mapped[str] = mapped_column(String(32), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    api: Mapped[str] = mapped_column(String(64), nullable=False)

    params: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    duration: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, server_default=func.now()
    )


Index("ix_vendor_call_logs_vendor_created", VendorCallLog.vendor, VendorCallLog.created_at.desc())
