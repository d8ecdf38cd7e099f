from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from app.core.results import ApiResult
from app.integrations.vendors.base import VendorAdapter
from app.schemas.certs import ALIAS_METHODS, ApplyResult, CertSnapshot, Dcv, DcvUpdate, DnsRecord, FileRecord, ValidationRecord, VendorRequest
from app.services import domains as domain_util
from app.services.dcv import WELL_KNOWN_PATH

if TYPE_CHECKING:
    from app.models.cert import Cert


MESSAGES = {
    "invalid_parameters": "Invalid parameters",
    "request_too_fast": "Too many requests, please try again later",
    "service_internal_error": "CA internal error",
    "service_busy": "CA is busy, please try again later",
    "order_not_found": "Order not found",
    "product_not_found": "Product not found",
    "invalid_domain": "Invalid domain",
    "invalid_sans": "Invalid alternative names",
    "invalid_csr": "Invalid CSR",
    "invalid_dcv_method": "Invalid validation method",
    "invalid_organization_info": "Invalid organization information",
    "invalid_user_info": "Invalid contact information",
    "dcv_not_completed": "Domain validation has not completed",
    "duplicate_alternative_order_id": "Duplicate alternative order id",
    "order_need_revoke": "The order must be revoked",
    "cancel_not_allowed": "The order cannot be cancelled",
}
# auth, whitelist and balance problems are not the customer's business
INTERNAL = {"permission_denied", "unauthenticated_request", "ip_limit", "api_key_disabled", "insufficient_balance"}

PROCESSING = {"", "auditing", "submitting", "domain_verifing", "issuing", "reissue", "reissuing"}
APPROVING = {"revoke_approving", "revoke_confirming", "revoking", "cancel_confirm", "confirming"}


def api_method(method: str) -> str:
    if method in ALIAS_METHODS:
        return "email"
    if method in ("txt", "cname"):
        return "dns"
    if method in ("http", "https", "file"):
        return "file"
    return method


class TrustAsiaAdapter(VendorAdapter):
    key = "trustasia"
    status_map = {
        **{s: "processing" for s in PROCESSING},
        **{s: "approving" for s in APPROVING},
        "issued": "active",
        "need_renew": "active",
        "rejected": "failed",
        "overtime": "failed",
        "canceled": "cancelled",
    }

    @property
    def configured(self) -> bool:
        return bool(self.config.base_url and self.config.key_id and self.config.token)

    def normalize_status(self, raw: Any) -> str:
        # an empty status is a freshly placed order
        return super().normalize_status(raw) if raw else "processing"

    async def call(self, method: str, uri: str, params: Optional[dict] = None) -> ApiResult:
        if not self.configured:
            return self.not_configured()

        response = await self._send(
            uri,
            method,
            self.config.base_url.rstrip("/") + uri,
            log_params=params,
            is_success=lambda r: str(r.json().get("code", "")).lower() == "success",
            json=params,
            headers={
                "Accept": "application/json",
                "X-CC-Key-ID": self.config.key_id,
                "X-CC-Auth-Key": self.config.token,
            },
        )

        try:
            result = response.json()
        except ValueError:
            result = {}

        if response.status_code != 200:
            code = str(result.get("code") or "")
            if code in INTERNAL:
                message = "CA internal error, please contact the administrator"
            else:
                message = MESSAGES.get(code, "Unknown CA error, please contact the administrator")
            return ApiResult.failure(message, errors=result if self.config.debug else None, data={"code": code})
        return ApiResult.success(result.get("data"))

    # parsing

    @staticmethod
    def validation_from(dcv_vals: Any) -> Optional[list[ValidationRecord]]:
        records = []
        for item in dcv_vals or []:
            domain = item.get("domain") or ""
            method = item.get("dcv_method") or ""
            record = ValidationRecord(domain=domain)
            if method == "dns":
                record.method = "txt"
                record.host = str(item.get("auth_path") or "").lower()
                record.value = str(item.get("auth_val") or "").lower()
            elif method == "file":
                path = item.get("auth_path") or ""
                record.method = "file"
                record.name = path.replace(WELL_KNOWN_PATH, "")
                record.link = f"//{domain}{path}"
                record.content = item.get("auth_val") or ""
            else:
                email = item.get("approval_email") or ""
                record.method, record.email = email.split("@")[0], email
            record.verified = 1 if item.get("verified") else 0
            records.append(record)
        return records or None

    @staticmethod
    def dcv_from(dcv_vals: Any) -> Optional[Dcv]:
        if not dcv_vals:
            return None
        item = dcv_vals[0]
        method = item.get("dcv_method")
        if method == "dns":
            host = str(item.get("auth_path") or "").lower().split(".")[0]
            return Dcv(method="txt", dns=DnsRecord(host=host, type="TXT", value=str(item.get("auth_val") or "").lower()))
        if method == "file":
            path = item.get("auth_path") or ""
            return Dcv(
                method="file",
                file=FileRecord(name=path.replace(WELL_KNOWN_PATH, ""), path=path, content=item.get("auth_val") or ""),
            )
        if method == "email":
            return Dcv(method=str(item.get("approval_email") or "").split("@")[0])
        return Dcv(method=method or "")

    async def snapshot(self, data: dict) -> CertSnapshot:
        certificate = data.get("certificate") or {}
        snap = CertSnapshot(status=self.normalize_status(data.get("status")))
        snap.validation = self.validation_from(data.get("dcv_val"))
        snap.dcv = self.dcv_from(data.get("dcv_val"))
        snap.alternative_names = domain_util.join(certificate.get("dns_names") or []) or None

        if snap.status == "processing":
            snap.cert_apply_status, snap.domain_verify_status, snap.org_verify_status = 2, 1, 1
        else:
            snap.cert_apply_status, snap.domain_verify_status, snap.org_verify_status = 2, 2, 2

        if certificate.get("pem"):
            snap.cert = str(certificate["pem"]).strip().replace("\r\n", "\n")
        if certificate.get("id"):
            detail = await self.call("GET", f"/certs/{certificate['id']}")
            ica = ((detail.data or {}).get("Certificate") or {}).get("ica_pem") if detail.ok else None
            if ica:
                snap.intermediate_cert = str(ica).strip().replace("\r\n", "\n")
        return snap

    # operations

    def order_params(self, request: VendorRequest, pay_product_id: int) -> dict:
        names = request.domain_list
        return {
            "certificate": {"csr": request.csr, "common_name": names[0] if names else "", "dns_names": names},
            "validity_months": request.period,
            "alternative_order_id": request.refer_id,
            "dcv_method": api_method(request.validation_method),
            "pay_product_id": pay_product_id,
        }

    async def new(self, request: VendorRequest) -> ApiResult:
        # product ids are "<product>-<pay product>"
        product, _, pay_product = request.product_api_id.partition("-")
        try:
            pay_product_id = int(pay_product)
        except ValueError:
            return ApiResult.failure("Invalid product code")

        result = await self.call("POST", f"/orders/{product}", self.order_params(request, pay_product_id))
        api_id = str((result.data or {}).get("id") or "") if result.ok else ""

        if not result.ok and (result.data or {}).get("code") == "duplicate_alternative_order_id":
            # a retried submit already placed the order
            existing = await self.get_api_id_by_refer_id(request.refer_id)
            api_id = (existing.data or {}).get("api_id", "") if existing.ok else ""

        if not api_id:
            return result if not result.ok else ApiResult.failure("CA did not return an order id")

        order = await self.call("GET", f"/orders/{api_id}")
        dcv_vals = (order.data or {}).get("dcv_val") if order.ok else None
        return ApiResult.success(
            ApplyResult(
                api_id=api_id,
                cert_apply_status=2,
                dcv=self.dcv_from(dcv_vals),
                validation=self.validation_from(dcv_vals),
            )
        )

    async def renew(self, request: VendorRequest) -> ApiResult:
        return await self.new(request)

    async def reissue(self, request: VendorRequest) -> ApiResult:
        return ApiResult.failure("This CA does not support reissue")

    async def get(self, api_id: str, cert: "Cert") -> ApiResult:
        result = await self.call("GET", f"/orders/{api_id}")
        if not result.ok:
            return result
        return ApiResult.success(await self.snapshot(result.data or {}))

    async def cancel(self, api_id: str, cert: "Cert") -> ApiResult:
        result = await self.call("PUT", f"/orders/{api_id}/cancel")
        if result.ok or (result.data or {}).get("code") in ("order_need_revoke", "cancel_not_allowed"):
            # free products only: nothing to refund whichever way the CA answers
            return ApiResult.success(msg=result.msg)
        return result

    async def revalidate(self, api_id: str, cert: "Cert") -> ApiResult:
        return await self.call("PUT", f"/orders/{api_id}/dcv-completed")

    async def update_dcv(self, api_id: str, method: str, cert: "Cert") -> ApiResult:
        params: dict = {"dcv_method": api_method(method)}
        if params["dcv_method"] == "email":
            params["approval_emails"] = [
                {"domain": d, "email": f"{method}@{domain_util.get_root_domain(d)}"} for d in cert.domain_list
            ]

        result = await self.call("PUT", f"/orders/{api_id}/dcv-method", params)
        if not result.ok:
            return result
        dcv_vals = (result.data or {}).get("dcv_vals")
        return ApiResult.success(DcvUpdate(dcv=self.dcv_from(dcv_vals), validation=self.validation_from(dcv_vals)))

    async def get_api_id_by_refer_id(self, refer_id: str) -> ApiResult:
        result = await self.call("GET", f"/orders/alternate/{refer_id}")
        if not result.ok:
            return result
        api_id = str((result.data or {}).get("order_id") or "")
        if not api_id:
            return ApiResult.failure("Order not found")
        return ApiResult.success({"api_id": api_id})
