from __future__ import annotations

import hashlib
from typing import Iterable, List, Optional
from uuid import uuid4

from app.schemas.certs import ALIAS_METHODS, DNS_METHODS, FILE_METHODS, Dcv, DnsRecord, FileRecord, ValidationRecord
from app.services import domains as domain_util
from app.services.csr import csr_to_der


WELL_KNOWN_PATH = "/.well-known/pki-validation/"
SECTIGO_DOMAIN = "sectigo.com"


def generate_unique_value() -> str:
    # "cn" + 18 hex chars, within the 16-24 alphanumeric range vendors accept
    return "cn" + uuid4().hex[:18]


def sectigo_dcv(method: str, csr: str, unique_value: str) -> Dcv:
    """Derive the CSR-hash tokens Sectigo checks for cname/http/https validation."""
    der = csr_to_der(csr)
    md5 = hashlib.md5(der).hexdigest()
    sha256 = hashlib.sha256(der).hexdigest()

    name = md5.upper() + ".txt"
    return Dcv(
        method=method,
        dns=DnsRecord(
            host="_" + md5.lower(),
            type="CNAME",
            value=f"{sha256[:32]}.{sha256[32:64]}.{unique_value}.{SECTIGO_DOMAIN}".lower(),
        ),
        file=FileRecord(
            name=name,
            path=WELL_KNOWN_PATH + name,
            content=sha256.upper() + "\n" + SECTIGO_DOMAIN + "\n" + unique_value.lower(),
        ),
    )


def generate_dcv(ca: str, method: str, csr: str, unique_value: str = "") -> Dcv:
    method = method.lower()
    if ca.lower() == "sectigo" and method in ("cname", "http", "https") and unique_value:
        return sectigo_dcv(method, csr, unique_value)
    return Dcv(method=method)


def generate_validation(dcv: Dcv, domains: str | Iterable[str]) -> List[ValidationRecord]:
    method = dcv.method.lower()
    records: List[ValidationRecord] = []

    for domain in domain_util.split(domains):
        record = ValidationRecord(domain=domain, method=method)

        if method in DNS_METHODS and dcv.dns is not None:
            record.host = dcv.dns.host
            record.value = dcv.dns.value

        if method in FILE_METHODS and dcv.file is not None:
            record.name = dcv.file.name
            record.content = dcv.file.content
            scheme = "//" if method == "file" else f"{method}://"
            path = dcv.file.path or WELL_KNOWN_PATH + dcv.file.name
            record.link = f"{scheme}{domain}{path}"

        if method in ALIAS_METHODS:
            record.email = f"{method}@{domain_util.get_root_domain(domain)}"

        records.append(record)
    return records


def merge_validation(
    vendor: Optional[List[ValidationRecord]],
    local: Optional[List[ValidationRecord]],
) -> List[ValidationRecord]:
    """Vendor records win field by field; local records fill the gaps."""
    if not vendor:
        return list(local or [])

    by_domain = {r.domain: r for r in (local or [])}
    merged: List[ValidationRecord] = []
    for item in vendor:
        data = item.model_dump(exclude_none=True)
        base = by_domain.get(item.domain)
        if base is not None:
            for key, value in base.model_dump(exclude_none=True).items():
                data.setdefault(key, value)
        data.setdefault("method", "admin")
        merged.append(ValidationRecord(**data))
    return merged


def is_verifiable_method(method: Optional[str]) -> bool:
    """Methods whose records a DNS/HTTP helper can check on our side."""
    return (method or "").lower() in DNS_METHODS + FILE_METHODS


def merge_dcv(vendor: Optional[Dcv], local: Optional[Dcv]) -> Optional[Dcv]:
    """Same precedence as :func:`merge_validation` for the order-level instructions."""
    if vendor is None:
        return local
    if local is None or local.method != vendor.method:
        return vendor
    data = vendor.model_dump(exclude_none=True)
    for key, value in local.model_dump(exclude_none=True).items():
        data.setdefault(key, value)
    return Dcv(**data)
