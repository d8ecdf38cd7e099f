from __future__ import annotations

import json
import math
from typing import TYPE_CHECKING, Any, Optional

from app.core.results import ApiResult
from app.integrations.vendors.base import VendorAdapter
from app.schemas.certs import (
    ALIAS_METHODS,
    DNS_METHODS,
    FILE_METHODS,
    ApplyResult,
    CertSnapshot,
    Contact,
    Dcv,
    DcvUpdate,
    DnsRecord,
    FileRecord,
    Organization,
    ValidationRecord,
    VendorRequest,
)
from app.services import domains as domain_util
from app.services.dcv import WELL_KNOWN_PATH

if TYPE_CHECKING:
    from app.models.cert import Cert


ERROR_CODES = {
    "400": "Request failed: permission denied",
    "-1": "Parameter validation failed, please contact the administrator.",
    "-2": "Unexpected error, please contact the administrator.",
    "-3": "Request failed: incorrect product or pricing",
    "-4": "Insufficient balance",
    "-5": "Order status error, please contact the administrator.",
    "-6": "Order cancellation failed, please contact the administrator.",
    "-7": "Certificate status error, please contact the administrator.",
    "-8": "The order has already been cancelled",
    "2": "The certificate is being issued, please try again later",
}
# codes whose text is safe to show to the customer
PUBLIC_CODES = {"-1", "-2", "-5", "-6", "-7", "-8", "2"}
DCV_ENDPOINTS = {"updateDCV", "batchUpdateDCV", "removeMdcDomain", "batchRemoveMdcDomain"}

PROCESS_STATUS = {"notdone": 0, "processing": 1, "done": 2}

ORGANIZATION_FIELDS = {
    "name": "organizationName",
    "phone": "organizationMobile",
    "address": "organizationAddress",
    "city": "organizationCity",
    "state": "organizationState",
    "country": "organizationCountry",
    "postcode": "organizationPostCode",
}


def first_of(data: dict, key: str) -> str:
    # batch endpoints nest their payload one level deeper
    return str(data.get(key) or (data.get("data") or {}).get(key) or "")


class RacentAdapter(VendorAdapter):
    """Sectigo reseller API: form posts with a JSON ``params`` blob."""

    key = "racent"
    status_map = {"pending": "processing", "complete": "active"}
    to_api = {
        "cname": "CNAME_CSR_HASH",
        "http": "HTTP_CSR_HASH",
        "https": "HTTPS_CSR_HASH",
        **{alias: "EMAIL" for alias in ALIAS_METHODS},
    }
    rewrite_comodo = True

    @property
    def to_standard(self) -> dict[str, str]:
        out = {v: k for k, v in self.to_api.items() if v != "EMAIL"}
        out["EMAIL"] = "email"
        return out

    @property
    def configured(self) -> bool:
        return bool(self.config.base_url and self.config.token)

    async def call(self, uri: str, data: Optional[dict] = None) -> ApiResult:
        if not self.configured:
            return self.not_configured()

        data = dict(data or {})
        log_params = dict(data)
        if isinstance(log_params.get("params"), str):
            log_params["params"] = json.loads(log_params["params"])

        response = await self._send(
            uri,
            "POST",
            f"{self.config.base_url.rstrip('/')}/{uri}",
            log_params=log_params,
            is_success=lambda r: str(r.json().get("code")) == "1",
            data={**data, "api_token": self.config.token},
            headers={"Accept": "application/json"},
        )
        if response.status_code != 200:
            return ApiResult.failure(f"Http status code {response.status_code}")

        result = self._json(response, uri) or {}
        if "code" not in result:
            return ApiResult.failure("No return code")

        payload = result.get("data")
        if "status" in result:
            payload = {**(payload if isinstance(payload, dict) else {}), "status": result["status"]}

        code = str(result["code"])
        if uri in DCV_ENDPOINTS and code == "-6":
            code = "2"
        if code == "1":
            return ApiResult.success(payload)
        if code == "-8" and uri == "cancel":
            return ApiResult.success()

        message = ERROR_CODES.get(code, "") if code in PUBLIC_CODES else ""
        return ApiResult.failure(message or "Unknown error.", errors=result.get("errors"))

    # request assembly

    def api_method(self, method: str) -> str:
        return self.to_api.get(method, method)

    def domain_info(self, method: str, domains: list[str]) -> list[dict]:
        wire = self.api_method(method)
        return [
            {
                "domainName": domain,
                "dcvMethod": wire,
                "dcvEmail": f"{method}@{domain_util.get_root_domain(domain)}" if wire == "EMAIL" else "",
            }
            for domain in domains
        ]

    def base_params(self, request: VendorRequest) -> dict:
        return {
            "csr": request.csr,
            "uniqueValue": request.unique_value,
            "domainInfo": self.domain_info(request.validation_method, request.domain_list),
        }

    @staticmethod
    def organization_info(org: Organization) -> dict:
        info = {api: getattr(org, field) for field, api in ORGANIZATION_FIELDS.items()}
        info.update({"organizationDuns": "", "organizationDivision": "IT"})
        return info

    def administrator(self, contact: Optional[Contact]) -> dict:
        placeholder = self.config.extra.get("placeholder")
        admin = {
            "firstName": getattr(placeholder, "first_name", "default"),
            "lastName": getattr(placeholder, "last_name", "default"),
            "job": getattr(placeholder, "title", "IT"),
            "mobile": getattr(placeholder, "phone", ""),
            "email": getattr(placeholder, "email", ""),
            "organation": "default",
            "address": "shanghai",
            "city": "shanghai",
            "state": "shanghai",
            "country": "CN",
            "postCode": "200000",
        }
        if contact is not None:
            admin.update(
                {
                    "firstName": contact.first_name,
                    "lastName": contact.last_name,
                    "job": contact.title or "IT",
                    "mobile": contact.phone,
                    "email": contact.email,
                }
            )
        return admin

    def order_params(self, request: VendorRequest) -> dict:
        params = self.base_params(request)
        params["Administrator"] = self.administrator(request.contact)

        if request.organization is not None:
            info = self.organization_info(request.organization)
            params["organizationInfo"] = info
            params["Administrator"].update(
                {
                    "organation": info["organizationName"],
                    "country": info["organizationCountry"],
                    "state": info["organizationState"],
                    "city": info["organizationCity"],
                    "address": info["organizationAddress"],
                    "postCode": info["organizationPostCode"],
                }
            )
            params["tech"] = params["Administrator"]
            params["finance"] = params["Administrator"]

        params["originalfromOthers"] = 1 if request.plus else 0
        return params

    @staticmethod
    def encode(params: Any) -> str:
        return json.dumps(params, ensure_ascii=False)

    @staticmethod
    def applied(result: ApiResult) -> ApiResult:
        if not result.ok:
            return result
        api_id = str((result.data or {}).get("certId") or "")
        if not api_id:
            return ApiResult.failure("CA did not return an order id")
        return ApiResult.success(ApplyResult(api_id=api_id))

    # response parsing

    def clean(self, value: str) -> str:
        return value.replace("comodoca.com", "sectigo.com") if self.rewrite_comodo else value

    def record_for(self, domain: str, method: str, host: str, value: str) -> ValidationRecord:
        """One validation entry; ``host`` is the file name for file methods."""
        record = ValidationRecord(domain=domain, method=method)
        if method in DNS_METHODS:
            record.host, record.value = host, self.clean(value)
        elif method in FILE_METHODS:
            scheme = "//" if method == "file" else f"{method}://"
            record.link = f"{scheme}{domain}{WELL_KNOWN_PATH}{host}"
            record.name, record.content = host, self.clean(value)
        else:
            record.email = f"{method}@{domain_util.get_root_domain(domain)}"
        return record

    @staticmethod
    def dcv_for(method: str, host: str, value: str) -> Optional[Dcv]:
        if not method:
            return None
        dcv = Dcv(method=method)
        if method in DNS_METHODS:
            dcv.dns = DnsRecord(host=host, type=method.upper(), value=value)
        elif method in FILE_METHODS:
            dcv.file = FileRecord(name=host, path=WELL_KNOWN_PATH + host, content=value)
        return dcv

    def snapshot(self, data: dict) -> CertSnapshot:
        snap = CertSnapshot(
            status=self.normalize_status(data.get("status")),
            vendor_id=data.get("vendorId") or None,
            vendor_cert_id=data.get("vendorCertId") or None,
            cert_apply_status=PROCESS_STATUS.get((data.get("application") or {}).get("status", "notdone"), 0),
            domain_verify_status=PROCESS_STATUS.get((data.get("dcv") or {}).get("status", "notdone"), 0),
            org_verify_status=PROCESS_STATUS.get((data.get("ov") or {}).get("status", "notdone"), 0),
        )

        if snap.cert_apply_status == 2:
            records = []
            for item in data.get("dcvList") or []:
                domain = item.get("domainName") or ""
                method = self.to_standard.get(item.get("dcvMethod") or "", item.get("dcvMethod") or "")
                if method == "email":
                    method = str(item.get("dcvEmail") or "").split("@")[0]
                if method in FILE_METHODS:
                    record = self.record_for(domain, method, data.get("DCVfileName") or "", data.get("DCVfileContent") or "")
                else:
                    record = self.record_for(domain, method, data.get("DCVdnsHost") or "", data.get("DCVdnsValue") or "")
                if method in ALIAS_METHODS:
                    record.email = item.get("dcvEmail") or record.email
                record.verified = 1 if item.get("is_verify") else 0
                records.append(record)

            if records:
                snap.validation = records
                snap.alternative_names = domain_util.join(domain_util.unique(r.domain for r in records))
                pending = next((r for r in records if not r.verified), None)
                if pending is not None:
                    snap.dcv = self.dcv_for(
                        pending.method,
                        pending.host or pending.name or "",
                        pending.value or pending.content or "",
                    )

        admin = (data.get("applyParams") or {}).get("Administrator") or {}
        placeholder = self.config.extra.get("placeholder")
        if any(admin.values()) and not (
            placeholder and placeholder.matches(admin.get("firstName", ""), admin.get("lastName", ""))
        ):
            snap.contact = Contact(
                first_name=admin.get("firstName") or "",
                last_name=admin.get("lastName") or "",
                title=admin.get("job") or "",
                phone=admin.get("mobile") or "",
                email=admin.get("email") or "",
            )

        if data.get("certificate"):
            snap.cert = str(data["certificate"]).strip().replace("\r\n", "\n")
        if data.get("caCertificate"):
            snap.intermediate_cert = str(data["caCertificate"]).strip().replace("\r\n", "\n")
        return snap

    # operations

    @staticmethod
    def years(period: int) -> int:
        return max(1, math.ceil(period / 12))

    async def new(self, request: VendorRequest) -> ApiResult:
        data = {
            "productCode": request.product_api_id,
            "years": self.years(request.period),
            "refId": request.refer_id,
            "params": self.encode(self.order_params(request)),
        }
        return self.applied(await self.call("place", data))

    async def renew(self, request: VendorRequest) -> ApiResult:
        if not request.last_api_id:
            return ApiResult.failure("Missing previous order id")
        data = {
            "renewId": request.last_api_id,
            "years": self.years(request.period),
            "refId": request.refer_id,
            "params": self.encode(self.order_params(request)),
        }
        return self.applied(await self.call("renew", data))

    async def reissue(self, request: VendorRequest) -> ApiResult:
        if not request.last_api_id:
            return ApiResult.failure("Missing previous order id")
        params = self.base_params(request)
        if request.organization is not None:
            params["organizationInfo"] = self.organization_info(request.organization)
        data = {"certId": request.last_api_id, "refId": request.refer_id, "params": self.encode(params)}
        return self.applied(await self.call("replace", data))

    async def get(self, api_id: str, cert: "Cert") -> ApiResult:
        result = await self.call("collect", {"certId": api_id})
        if not result.ok:
            return result
        return ApiResult.success(self.snapshot(result.data or {}))

    async def cancel(self, api_id: str, cert: "Cert") -> ApiResult:
        return await self.call("cancel", {"certId": api_id, "reason": "Other"})

    async def revalidate(self, api_id: str, cert: "Cert") -> ApiResult:
        if cert.dcv is None:
            return ApiResult.failure("No validation method")
        return await self.update_dcv(api_id, cert.dcv.method, cert)

    async def update_dcv(self, api_id: str, method: str, cert: "Cert") -> ApiResult:
        domains = cert.domain_list
        if not domains:
            return ApiResult.failure("No domains on this certificate")

        if len(domains) > 1:
            result = await self.call(
                "batchUpdateDCV",
                {"certId": api_id, "domainInfo": self.encode(self.domain_info(method, domains))},
            )
            if not result.ok:
                return result
            result = await self.call("collect", {"certId": api_id})
        else:
            info = self.domain_info(method, domains)[0]
            data = {"certId": api_id, "dcvMethod": info["dcvMethod"], "domainName": info["domainName"]}
            if info["dcvMethod"] == "EMAIL":
                data["dcvEmail"] = info["dcvEmail"]
            result = await self.call("updateDCV", data)

        if not result.ok:
            return result

        payload: dict[str, Any] = result.data or {}
        if method in FILE_METHODS:
            host, value = first_of(payload, "DCVfileName"), first_of(payload, "DCVfileContent")
        else:
            host, value = first_of(payload, "DCVdnsHost"), first_of(payload, "DCVdnsValue")

        return ApiResult.success(
            DcvUpdate(
                dcv=self.dcv_for(method, host, self.clean(value)),
                validation=[self.record_for(d, method, host, value) for d in domains],
            )
        )

    async def remove_unverified_domain(self, api_id: str, cert: "Cert") -> ApiResult:
        # the endpoint insists on a domainName even when removing all of them
        return await self.call("batchRemoveMdcDomain", {"certId": api_id, "domainName": "*"})

    async def get_api_id_by_refer_id(self, refer_id: str) -> ApiResult:
        result = await self.call("certIdByrefId", {"refId": refer_id})
        if not result.ok:
            return result
        api_id = str((result.data or {}).get("certId") or "")
        if not api_id:
            return ApiResult.failure("Order not found")
        return ApiResult.success({"api_id": api_id})


class RacentDomesticAdapter(RacentAdapter):
    """Domestic brands validate by TXT record or plain file over the same endpoints."""

    key = "racent_domestic"
    to_api = {
        "txt": "CNAME_CSR_HASH",
        "file": "HTTP_CSR_HASH",
        **{alias: "EMAIL" for alias in ALIAS_METHODS},
    }
    rewrite_comodo = False
