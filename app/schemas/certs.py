from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


DNS_METHODS = ("cname", "txt")
FILE_METHODS = ("file", "http", "https")
ALIAS_METHODS = ("admin", "administrator", "webmaster", "hostmaster", "postmaster")
ALL_METHODS = DNS_METHODS + FILE_METHODS + ALIAS_METHODS


class DnsRecord(BaseModel):
    host: str
    type: str = "CNAME"
    value: str


class FileRecord(BaseModel):
    name: str
    path: str = ""
    content: str


class Dcv(BaseModel):
    """Verification instructions shared by every domain of a cert."""

    model_config = ConfigDict(extra="ignore")

    method: str
    dns: Optional[DnsRecord] = None
    file: Optional[FileRecord] = None
    email: Optional[str] = None
    # certum keeps its verification code for later performSanVerification calls
    code: Optional[str] = None

    @property
    def is_dns(self) -> bool:
        return self.method in DNS_METHODS

    @property
    def is_file(self) -> bool:
        return self.method in FILE_METHODS


class ValidationRecord(BaseModel):
    """What one domain owner has to publish, plus the vendor's view of it."""

    model_config = ConfigDict(extra="ignore")

    domain: str
    method: Optional[str] = None
    host: Optional[str] = None
    value: Optional[str] = None
    name: Optional[str] = None
    content: Optional[str] = None
    link: Optional[str] = None
    email: Optional[str] = None
    verified: Optional[int] = None  # 0 pending, 1 verified, 2 failed
    expires_date: Optional[int] = None
    error: Optional[dict] = None


class Contact(BaseModel):
    model_config = ConfigDict(extra="ignore")

    first_name: str = ""
    last_name: str = ""
    title: str = ""
    email: str = ""
    phone: str = ""


class Organization(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    registration_number: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    country: str = ""
    postcode: str = ""


class VendorRequest(BaseModel):
    """Everything an adapter needs to place a new, renew or reissue order."""

    action: str = "new"
    refer_id: str
    product_api_id: str
    period: int
    plus: bool = True
    csr: str
    domains: str
    validation_method: str
    unique_value: str = ""
    encryption_alg: str = "rsa"
    contact: Optional[Contact] = None
    organization: Optional[Organization] = None
    last_api_id: Optional[str] = None
    last_cert: Optional[str] = None
    dcv: Optional[Dcv] = None

    @property
    def domain_list(self) -> List[str]:
        return [d for d in self.domains.split(",") if d]


class ApplyResult(BaseModel):
    api_id: str
    cert_apply_status: int = 0
    vendor_id: Optional[str] = None
    dcv: Optional[Dcv] = None
    validation: Optional[List[ValidationRecord]] = None


class DcvUpdate(BaseModel):
    dcv: Optional[Dcv] = None
    validation: Optional[List[ValidationRecord]] = None


class CertSnapshot(BaseModel):
    """Vendor order state normalized into the canonical vocabulary."""

    status: str
    cert_apply_status: Optional[int] = None
    domain_verify_status: Optional[int] = None
    org_verify_status: Optional[int] = None
    vendor_id: Optional[str] = None
    vendor_cert_id: Optional[str] = None
    alternative_names: Optional[str] = None
    dcv: Optional[Dcv] = None
    validation: Optional[List[ValidationRecord]] = None
    cert: Optional[str] = None
    intermediate_cert: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    contact: Optional[Contact] = None
    extra: dict = Field(default_factory=dict)
