from __future__ import annotations

import hashlib
from datetime import datetime
from typing import List, Optional

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, SmallInteger, String, Text, event, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.db import Base, BigIntPK, JSONType, PydanticJSON, utcnow
from app.schemas.certs import Dcv, ValidationRecord


class CertStatus:
    UNPAID = "unpaid"
    PENDING = "pending"
    PROCESSING = "processing"
    APPROVING = "approving"
    ACTIVE = "active"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    REVOKED = "revoked"
    RENEWED = "renewed"
    REISSUED = "reissued"
    REPLACED = "replaced"
    EXPIRED = "expired"
    FAILED = "failed"

    # vendor side is working on it
    IN_FLIGHT = (PROCESSING, APPROVING)
    TERMINAL = (CANCELLED, REVOKED, RENEWED, REISSUED, REPLACED, EXPIRED, FAILED)


def csr_hash(csr: str) -> str:
    return hashlib.md5(csr.encode("utf-8")).hexdigest()


class Cert(Base):
    __tablename__ = "certs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    order_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
    )
    last_cert_id: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        ForeignKey("certs.id", ondelete="SET NULL"),
        nullable=True,
    )

    action: Mapped[str] = mapped_column(String(16), nullable=False, default="new")  # new/renew/reissue
    channel: Mapped[str] = mapped_column(String(16), nullable=False, default="admin")
    period: Mapped[int] = mapped_column(Integer, nullable=False, default=12)
    params: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    refer_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    unique_value: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    api_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    vendor_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    vendor_cert_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    issuer: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    common_name: Mapped[str] = mapped_column(String(255), nullable=False)
    alternative_names: Mapped[str] = mapped_column(Text, nullable=False)
    standard_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    wildcard_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    dcv: Mapped[Optional[Dcv]] = mapped_column(PydanticJSON(Dcv), nullable=True)
    validation: Mapped[Optional[List[ValidationRecord]]] = mapped_column(
        PydanticJSON(ValidationRecord, many=True), nullable=True
    )

    csr: Mapped[str] = mapped_column(Text, nullable=False)
    csr_md5: Mapped[str] = mapped_column(String(32), nullable=False)
    private_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cert: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    intermediate_cert: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    serial_number: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    fingerprint: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    encryption_alg: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    encryption_bits: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    signature_digest_alg: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    issued_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # 0 not started, 1 in progress, 2 done
    cert_apply_status: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    domain_verify_status: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    org_verify_status: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=CertStatus.UNPAID)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    @property
    def domain_list(self) -> List[str]:
        return [d for d in self.alternative_names.split(",") if d]


Index("ix_certs_order_id", Cert.order_id)
Index("ix_certs_csr_md5", Cert.csr_md5)
Index("ix_certs_status", Cert.status)


@event.listens_for(Cert, "before_insert")
def _set_csr_md5(mapper, connection, target: Cert) -> None:
    target.csr_md5 = csr_hash(target.csr)


@event.listens_for(Cert, "before_update")
def _freeze_csr(mapper, connection, target: Cert) -> None:
    if target.csr_md5 != csr_hash(target.csr):
        raise ValueError(f"Cert {target.id}: csr is immutable once stored")
