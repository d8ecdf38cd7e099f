from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import Boolean, DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.db import Base, BigIntPK, JSONType, utcnow


class Product(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    api_id: Mapped[str] = mapped_column(String(64), nullable=False)  # vendor product id
    source: Mapped[str] = mapped_column(String(32), nullable=False)  # vendor registry key
    brand: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    ca: Mapped[str] = mapped_column(String(64), nullable=False, default="")

    validation_type: Mapped[str] = mapped_column(String(8), nullable=False, default="dv")  # dv/ov/ev

    common_name_types: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    alternative_name_types: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    validation_methods: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    periods: Mapped[List[int]] = mapped_column(JSONType, nullable=False, default=list)

    encryption_alg: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=lambda: ["rsa", "ecdsa"])
    signature_digest_alg: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=lambda: ["sha256"])

    standard_min: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    standard_max: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    wildcard_min: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    wildcard_max: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_min: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    total_max: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    add_san: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    replace_san: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reissue: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    reuse_csr: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    gift_root_domain: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    refund_period: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # days

    # {"12": {"price": 1000, "alternative_standard_price": 200, "alternative_wildcard_price": 500}}
    prices: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    remark: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, server_default=func.now()
    )

    def price_for(self, period: int) -> dict:
        row = self.prices.get(str(period)) or {}
        return {
            "price": int(row.get("price", 0)),
            "alternative_standard_price": int(row.get("alternative_standard_price", 0)),
            "alternative_wildcard_price": int(row.get("alternative_wildcard_price", 0)),
        }
