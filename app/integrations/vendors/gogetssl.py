from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from loguru import logger

from app.core.config import VendorConfig
from app.core.results import ApiResult
from app.core.store import CounterStore
from app.integrations.vendors.base import AuditLog, VendorAdapter
from app.schemas.certs import (
    ALIAS_METHODS,
    ApplyResult,
    CertSnapshot,
    Contact,
    Dcv,
    DcvUpdate,
    DnsRecord,
    FileRecord,
    ValidationRecord,
    VendorRequest,
)
from app.services import domains as domain_util
from app.services.dcv import WELL_KNOWN_PATH

if TYPE_CHECKING:
    from app.models.cert import Cert


AUTH_KEY_CACHE = "gogetssl:auth_key"
AUTH_KEY_TTL = 3600 * 24 * 365

CANCEL_URI = "/orders/cancel_ssl_order"


def api_method(method: str) -> str:
    method = (method or "").lower()
    if method in ("cname", "txt"):
        return "dns"
    if method in ALIAS_METHODS:
        return "email"
    return method


def parse_dns_record(record: str) -> Optional[DnsRecord]:
    """``_abc.example.com CNAME value`` or ``name   IN   TXT   "value"``."""
    for marker, kind in ((" CNAME ", "cname"), ("   IN   TXT   ", "txt")):
        if marker not in (record or ""):
            continue
        parts = [p.strip() for p in record.split(marker)]
        if len(parts) != 2:
            return None
        name, value = parts
        host = name.split(".", 1)[0] if name.startswith("_") else "@"
        return DnsRecord(host=host, type=kind, value=value.replace('"', "").lower())
    return None


class GoGetSslAdapter(VendorAdapter):
    key = "gogetssl"
    status_map = {
        "pending": "processing",
        "incomplete": "processing",
        "new_order": "processing",
        "unpaid": "processing",
        "reissued": "processing",
        "rejected": "revoked",
    }

    def __init__(self, config: VendorConfig, audit: AuditLog, store: Optional[CounterStore] = None):
        super().__init__(config, audit)
        self.store = store

    @property
    def configured(self) -> bool:
        return bool(self.config.base_url and self.config.username and self.config.password)

    async def auth_key(self) -> str:
        if self.store is not None:
            cached = await self.store.get(AUTH_KEY_CACHE)
            if cached:
                return cached

        response = await self._send(
            "/auth",
            "POST",
            self.config.base_url + "/auth",
            log_params={"user": self.config.username, "pass": self.config.password},
            is_success=lambda r: bool(r.json().get("key")),
            data={"user": self.config.username, "pass": self.config.password},
        )
        key = (self._json(response, "/auth") or {}).get("key") or ""
        if key and self.store is not None:
            await self.store.set(AUTH_KEY_CACHE, key, AUTH_KEY_TTL)
        return key

    async def call(self, method: str, uri: str, data: Optional[dict] = None) -> ApiResult:
        if not self.configured:
            return self.not_configured()

        key = await self.auth_key()
        if not key:
            return ApiResult.failure("CA authentication failed")

        kwargs: dict[str, Any] = {"params": {"auth_key": key}}
        if method == "POST":
            kwargs["data"] = data or {}

        response = await self._send(
            uri,
            method,
            self.config.base_url + uri,
            log_params=data,
            is_success=lambda r: r.status_code == 200 and bool(r.json().get("success")),
            **kwargs,
        )
        if response.status_code != 200:
            return ApiResult.failure(f"Http status code {response.status_code}")

        result = self._json(response, uri) or {}
        if result.get("success"):
            return ApiResult.success(result)

        message = str(result.get("message") or "")
        if result.get("error"):
            if uri == CANCEL_URI and "already" in message:
                return ApiResult.success()
            if "auth_key" in message:
                # stale key; the next call authenticates again
                if self.store is not None:
                    await self.store.delete(AUTH_KEY_CACHE)
                logger.warning("gogetssl rejected cached auth key")
            elif "balance" not in message:
                return ApiResult.failure(message, errors=result if self.config.debug else None)
        return ApiResult.failure(
            "Unknown error. Please contact the administrator.", errors=result if self.config.debug else None
        )

    # request assembly

    def base_params(self, request: VendorRequest) -> dict:
        params = {
            "server_count": "-1",
            "webserver_type": "-1",
            "product_id": request.product_api_id,
            "period": request.period,
            "csr": request.csr,
            "unique_code": request.unique_value,
        }
        names = request.domain_list
        if len(names) > 1:
            params["dns_names"] = ",".join(names[1:])

        method = request.validation_method
        params["dcv_method"] = api_method(method)
        if params["dcv_method"] == "email":
            params["approver_email"] = f"{method}@{domain_util.get_root_domain(names[0])}"
            if len(names) > 2:
                params["approver_emails"] = ",".join(
                    f"{method}@{domain_util.get_root_domain(d)}" for d in names[1:]
                )
        return params

    def order_params(self, request: VendorRequest) -> dict:
        params = self.base_params(request)
        placeholder = self.config.extra.get("placeholder")
        contact = request.contact or Contact(
            first_name=getattr(placeholder, "first_name", "default"),
            last_name=getattr(placeholder, "last_name", "default"),
            title=getattr(placeholder, "title", "IT"),
            email=getattr(placeholder, "email", ""),
            phone=getattr(placeholder, "phone", ""),
        )
        for role in ("admin", "tech"):
            params.update(
                {
                    f"{role}_firstname": contact.first_name,
                    f"{role}_lastname": contact.last_name,
                    f"{role}_phone": contact.phone,
                    f"{role}_title": contact.title or "IT",
                    f"{role}_email": contact.email,
                }
            )

        org = request.organization
        if org is not None:
            params.update(
                {
                    "org_name": org.name,
                    "org_division": "IT",
                    "org_addressline1": org.address,
                    "org_city": org.city,
                    "org_region": org.state,
                    "org_country": org.country,
                    "org_phone": org.phone,
                    "org_postalcode": org.postcode,
                }
            )
            for role in ("admin", "tech"):
                params.update(
                    {
                        f"{role}_organization": org.name,
                        f"{role}_addressline1": org.address,
                        f"{role}_city": org.city,
                        f"{role}_country": org.country,
                    }
                )
            params["admin_fax"] = org.phone
        return params

    @staticmethod
    def applied(result: ApiResult) -> ApiResult:
        if not result.ok:
            return result
        api_id = str((result.data or {}).get("order_id") or "")
        if not api_id:
            return ApiResult.failure("CA did not return an order id")
        return ApiResult.success(ApplyResult(api_id=api_id))

    # response parsing

    @staticmethod
    def parse_dcv(approver_method: Any) -> Optional[Dcv]:
        if not isinstance(approver_method, dict) or not approver_method:
            return None
        method = next(iter(approver_method))
        detail = approver_method[method]

        if method == "dns":
            record = parse_dns_record((detail or {}).get("record", ""))
            if record is None:
                return None
            return Dcv(method=record.type, dns=record)
        if method in ("http", "https", "file"):
            name = (detail or {}).get("filename", "")
            return Dcv(
                method=method,
                file=FileRecord(
                    name=name,
                    path=WELL_KNOWN_PATH + name,
                    content=str((detail or {}).get("content", "")).replace("\r\n", "\n"),
                ),
            )
        if method == "email":
            return Dcv(method=str(detail).split("@")[0])
        return None

    @staticmethod
    def common_validation(common_name: str, dcv: Dcv, dcv_status: Any) -> ValidationRecord:
        record = ValidationRecord(domain=common_name, method=dcv.method)
        if dcv.dns is not None:
            record.host, record.value = dcv.dns.host, dcv.dns.value
        elif dcv.file is not None:
            scheme = "//" if dcv.method == "file" else f"{dcv.method}://"
            record.link = f"{scheme}{common_name}{WELL_KNOWN_PATH}{dcv.file.name}"
            record.name, record.content = dcv.file.name, dcv.file.content
        else:
            record.email = f"{dcv.method}@{domain_util.get_root_domain(common_name)}"
        record.verified = 1 if str(dcv_status) == "2" else 0
        return record

    @staticmethod
    def san_validation(sans: Any) -> list[ValidationRecord]:
        records = []
        for san in sans or []:
            name = san.get("san_name", "")
            method = san.get("validation_method", "")
            record = ValidationRecord(domain=name)
            if method == "dns":
                dns = parse_dns_record(((san.get("validation") or {}).get("dns") or {}).get("record", ""))
                if dns is not None:
                    record.method, record.host, record.value = dns.type, dns.host, dns.value
            elif method in ("http", "https", "file"):
                detail = (san.get("validation") or {}).get(method) or {}
                scheme = "//" if method == "file" else f"{method}://"
                record.method = method
                record.name = str(detail.get("filename", "")).strip()
                record.link = f"{scheme}{name}{WELL_KNOWN_PATH}{record.name}"
                record.content = str(detail.get("content", "")).strip().replace("\r\n", "\n")
            else:
                email = san.get("email", "")
                record.method, record.email = email.split("@")[0], email
            record.verified = 1 if str(san.get("status")) == "2" else 0
            records.append(record)
        return records

    def validation_from(self, data: dict) -> tuple[Optional[Dcv], list[ValidationRecord]]:
        dcv = self.parse_dcv(data.get("approver_method"))
        records = []
        if dcv is not None:
            records.append(self.common_validation(data.get("domain", ""), dcv, data.get("dcv_status", 0)))
        records.extend(self.san_validation(data.get("san")))
        return dcv, records

    def snapshot(self, data: dict) -> CertSnapshot:
        raw = str(data.get("status") or "")
        snap = CertSnapshot(status=self.normalize_status(raw), vendor_id=data.get("partner_order_id") or None)
        snap.cert_apply_status = snap.domain_verify_status = snap.org_verify_status = 0

        if snap.status == "processing" and raw.lower() not in ("pending", "unpaid"):
            snap.cert_apply_status, snap.domain_verify_status, snap.org_verify_status = 2, 1, 1
        if snap.status == "active":
            snap.cert_apply_status, snap.domain_verify_status, snap.org_verify_status = 2, 2, 2

        if snap.cert_apply_status == 2:
            snap.dcv, snap.validation = self.validation_from(data)
            snap.alternative_names = domain_util.join(r.domain for r in snap.validation)

        placeholder = self.config.extra.get("placeholder")
        first, last = data.get("admin_firstname") or "", data.get("admin_lastname") or ""
        if (first or last) and not (placeholder and placeholder.matches(first, last)):
            snap.contact = Contact(
                first_name=first,
                last_name=last,
                title=data.get("admin_title") or "",
                phone=data.get("admin_phone") or "",
                email=data.get("admin_email") or "",
            )

        if data.get("crt_code"):
            snap.cert = str(data["crt_code"]).strip().replace("\r\n", "\n")
        if data.get("ca_code"):
            snap.intermediate_cert = str(data["ca_code"]).strip().replace("\r\n", "\n")
        return snap

    # operations

    async def new(self, request: VendorRequest) -> ApiResult:
        # plus orders carry the bonus period through the renew endpoint
        uri = "/orders/add_ssl_renew_order" if request.plus else "/orders/add_ssl_order"
        return self.applied(await self.call("POST", uri, self.order_params(request)))

    async def renew(self, request: VendorRequest) -> ApiResult:
        return self.applied(await self.call("POST", "/orders/add_ssl_renew_order", self.order_params(request)))

    async def reissue(self, request: VendorRequest) -> ApiResult:
        if not request.last_api_id:
            return ApiResult.failure("Missing previous order id")
        uri = f"/orders/ssl/reissue/{request.last_api_id}"
        return self.applied(await self.call("POST", uri, self.base_params(request)))

    async def get(self, api_id: str, cert: "Cert") -> ApiResult:
        result = await self.call("GET", f"/orders/status/{api_id}")
        if not result.ok:
            return result
        return ApiResult.success(self.snapshot(result.data or {}))

    async def cancel(self, api_id: str, cert: "Cert") -> ApiResult:
        return await self.call("POST", CANCEL_URI, {"order_id": api_id, "reason": "Other"})

    def pending_domains(self, method: str, cert: "Cert") -> tuple[list[str], list[str]]:
        wire = api_method(method)
        domains, methods = [], []
        for record in cert.validation or []:
            if record.verified:
                continue
            domains.append(record.domain)
            methods.append(f"{method}@{domain_util.get_root_domain(record.domain)}" if wire == "email" else wire)
        return domains, methods

    async def _batch_update(self, api_id: str, method: str, cert: "Cert") -> ApiResult:
        domains, methods = self.pending_domains(method, cert)
        if not domains:
            return ApiResult.failure("No unverified domains")
        return await self.call(
            "POST",
            f"/orders/ssl/change_domains_validation_method/{api_id}",
            {"domains": ",".join(domains), "new_methods": ",".join(methods)},
        )

    async def revalidate(self, api_id: str, cert: "Cert") -> ApiResult:
        if cert.dcv is None:
            return ApiResult.failure("No validation method")
        return await self._batch_update(api_id, cert.dcv.method, cert)

    async def update_dcv(self, api_id: str, method: str, cert: "Cert") -> ApiResult:
        result = await self._batch_update(api_id, method, cert)
        if not result.ok:
            return result

        status = await self.call("GET", f"/orders/status/{api_id}")
        if not status.ok:
            return status
        dcv, validation = self.validation_from(status.data or {})
        return ApiResult.success(DcvUpdate(dcv=dcv, validation=validation))
