from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.db import Base, BigIntPK, PydanticJSON, utcnow
from app.schemas.certs import Contact, Organization

if TYPE_CHECKING:
    from app.models.product import Product
    from app.models.user import User


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("users.id"),
        nullable=False,
    )
    product_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("products.id"),
        nullable=False,
    )

    # no FK: certs reference orders, keep the cycle out of DDL ordering
    latest_cert_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    brand: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    period: Mapped[int] = mapped_column(Integer, nullable=False)
    plus: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    purchased_standard_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    purchased_wildcard_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    contact: Mapped[Optional[Contact]] = mapped_column(PydanticJSON(Contact), nullable=True)
    organization: Mapped[Optional[Organization]] = mapped_column(PydanticJSON(Organization), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    user: Mapped["User"] = relationship("User", lazy="selectin")
    product: Mapped["Product"] = relationship("Product", lazy="selectin")
