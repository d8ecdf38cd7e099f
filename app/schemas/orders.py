from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.certs import Dcv, ValidationRecord


class EncryptionIn(BaseModel):
    alg: Optional[str] = None
    bits: Optional[int] = None
    digest_alg: Optional[str] = None


class ApplyIn(BaseModel):
    """Body shared by new, renew and reissue; renew/reissue carry ``order_id``."""

    model_config = ConfigDict(extra="ignore")

    product_id: Optional[int] = None
    order_id: Optional[int] = None
    user_id: Optional[int] = None  # admin only: apply on behalf of a user

    period: Optional[int] = None
    plus: Optional[int] = None
    channel: Optional[str] = None

    domains: str
    validation_method: str

    csr_generate: bool = False
    csr: Optional[str] = None
    encryption: Optional[EncryptionIn] = None

    refer_id: Optional[str] = None
    unique_value: Optional[str] = None

    contact: Optional[dict] = None
    organization: Optional[dict] = None

    pay: bool = False
    commit: bool = True


class PayIn(BaseModel):
    ids: List[int] = Field(..., min_length=1)
    commit: bool = True
    issue_verify: bool = True


class UpdateDcvIn(BaseModel):
    method: str


class ActionOut(BaseModel):
    code: int
    msg: str = ""
    data: dict = Field(default_factory=dict)
    errors: Any = None


class CertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    action: str
    status: str
    refer_id: str
    api_id: Optional[str] = None
    common_name: str
    alternative_names: str
    standard_count: int
    wildcard_count: int
    dcv: Optional[Dcv] = None
    validation: Optional[List[ValidationRecord]] = None
    cert_apply_status: int
    domain_verify_status: int
    org_verify_status: int
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: datetime


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    product_id: int
    brand: str
    period: int
    amount_cents: int
    purchased_standard_count: int
    purchased_wildcard_count: int
    created_at: datetime

    latest_cert: Optional[CertOut] = None


class TaskOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    subject_id: int
    action: str
    user_id: Optional[int] = None
    status: str
    attempts: int
    result: Optional[dict] = None
    started_at: datetime
    last_execute_at: Optional[datetime] = None
    created_at: datetime


class TaskIdsIn(BaseModel):
    ids: List[int] = Field(..., min_length=1)


class TaskCreateIn(BaseModel):
    subject_ids: List[int] = Field(..., min_length=1)
    action: str
    delay: int = Field(default=0, ge=0)
