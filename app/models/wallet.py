from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.db import Base, BigIntPK, JSONType, utcnow


class WalletAccount(Base):
    __tablename__ = "wallet_accounts"

    user_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )

    balance_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    # balance may go down to this (negative) floor
    credit_limit_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, server_default=func.now()
    )


class Transaction(Base):
    """Signed ledger entry against an order; negative amount is a charge."""

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    order_id: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        ForeignKey("orders.id", ondelete="SET NULL"),
        nullable=True,
    )

    type: Mapped[str] = mapped_column(String(16), nullable=False)  # new/renew/reissue/cancel/refund

    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    standard_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    wildcard_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    balance_before_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)

    remark: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # "metadata" is reserved; use "meta" attribute but DB column "metadata"
    meta: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, server_default=func.now()
    )


Index("ix_transactions_order_id", Transaction.order_id, Transaction.id)
Index("ix_transactions_user_created", Transaction.user_id, Transaction.created_at.desc())
