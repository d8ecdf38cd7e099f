"""
Certum partner API adapter.

The partner API is SOAP: every operation is an envelope whose body carries a
``requestHeader.authToken`` with the partner credentials followed by the
operation parameters. Replies carry a ``responseHeader`` with
``successCode`` 0 on success and an ``errors`` list otherwise.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from datetime import date, datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional

import httpx
from loguru import logger

from app.core.results import ApiResult
from app.integrations.vendors.base import VendorAdapter
from app.schemas.certs import ALIAS_METHODS, ApplyResult, CertSnapshot, Dcv, DcvUpdate, DnsRecord, FileRecord, ValidationRecord, VendorRequest
from app.services import domains as domain_util
from app.services.csr import CsrError, format_pem, key_info

if TYPE_CHECKING:
    from app.models.cert import Cert


SOAP_ENV = "http://schemas.xmlsoap.org/soap/envelope/"
PARTNER_NS = "http://gs.certum.pl/service/PartnerApi"

DCV_METHODS = {
    "txt": "DNS_TXT_PREFIX",
    "cname": "DNS_CNAME_PREFIX",
    "file": "FILE",
    "admin": "ADMIN",
    "administrator": "ADMIN",
    "postmaster": "ADMIN",
    "hostmaster": "ADMIN",
    "webmaster": "ADMIN",
}

ALREADY_DONE = {
    "cancelOrder": "already cancel",
    "revokeCertificate": "already revoked",
}


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def to_xml(parent: ET.Element, data: Any) -> None:
    """dict -> child elements, list -> repeated elements, scalars -> text."""
    for key, value in data.items():
        items = value if isinstance(value, list) else [value]
        for item in items:
            child = ET.SubElement(parent, key)
            if isinstance(item, dict):
                to_xml(child, item)
            elif isinstance(item, bool):
                child.text = "true" if item else "false"
            elif item is not None:
                child.text = str(item)


def from_xml(element: ET.Element) -> Any:
    children = list(element)
    if not children:
        return (element.text or "").strip()
    out: dict = {}
    for child in children:
        key = _local(child.tag)
        value = from_xml(child)
        if key in out:
            if not isinstance(out[key], list):
                out[key] = [out[key]]
            out[key].append(value)
        else:
            out[key] = value
    return out


def as_list(value: Any) -> list:
    if value in (None, ""):
        return []
    return value if isinstance(value, list) else [value]


def hash_algorithm(csr: str) -> str:
    try:
        alg, _ = key_info(csr)
    except CsrError:
        return "RSA-SHA256"
    return "ECC-SHA256" if alg == "ecdsa" else "RSA-SHA256"


def shortened_validity_period(days: int = 365) -> str:
    return (date.today() + timedelta(days=days)).isoformat()


class CertumAdapter(VendorAdapter):
    key = "certum"
    status_map = {
        "awaiting": "processing",
        "verification": "processing",
        "accepted": "approving",
        "enrolled": "active",
        "rejected": "cancelled",
    }

    @property
    def configured(self) -> bool:
        return bool(self.config.base_url and self.config.username and self.config.password)

    def envelope(self, operation: str, params: dict) -> bytes:
        ET.register_namespace("soapenv", SOAP_ENV)
        root = ET.Element(f"{{{SOAP_ENV}}}Envelope")
        body = ET.SubElement(root, f"{{{SOAP_ENV}}}Body")
        op = ET.SubElement(body, f"{{{PARTNER_NS}}}{operation}")
        to_xml(
            op,
            {
                "requestHeader": {
                    "authToken": {"userName": self.config.username, "password": self.config.password}
                },
                **params,
            },
        )
        return ET.tostring(root, encoding="utf-8", xml_declaration=True)

    @staticmethod
    def parse(text: str) -> tuple[Optional[dict], Optional[str]]:
        """(operation result, fault string)."""
        try:
            root = ET.fromstring(text)
        except ET.ParseError:
            return None, "Malformed SOAP response"

        body = next((c for c in root if _local(c.tag) == "Body"), None)
        if body is None or not list(body):
            return None, "Empty SOAP body"

        payload = list(body)[0]
        if _local(payload.tag) == "Fault":
            fault = from_xml(payload)
            return None, fault.get("faultstring") if isinstance(fault, dict) else str(fault)
        result = from_xml(payload)
        if not isinstance(result, dict):
            return {}, None
        # some operations wrap the reply in a single <return>/<...Result> element
        if "responseHeader" not in result and len(result) == 1:
            inner = next(iter(result.values()))
            if isinstance(inner, dict) and "responseHeader" in inner:
                result = inner
        return result, None

    @staticmethod
    def error_texts(result: dict) -> list[str]:
        header = result.get("responseHeader") or {}
        errors = header.get("errors") or {}
        texts = []
        for err in as_list(errors.get("Error") if isinstance(errors, dict) else errors):
            if isinstance(err, dict):
                texts.append(err.get("message") or err.get("errorCode") or "")
            else:
                texts.append(str(err))
        return [t for t in texts if t]

    async def call(self, operation: str, params: dict) -> ApiResult:
        if not self.configured:
            return self.not_configured()

        def ok(response: httpx.Response) -> bool:
            result, fault = self.parse(response.text)
            return fault is None and str((result or {}).get("responseHeader", {}).get("successCode")) == "0"

        response = await self._send(
            operation,
            "POST",
            self.config.base_url,
            log_params=params,
            is_success=ok,
            content=self.envelope(operation, params),
            headers={"Content-Type": "text/xml; charset=utf-8", "SOAPAction": operation},
        )

        result, fault = self.parse(response.text)
        if fault is not None:
            logger.warning("certum {} fault: {}", operation, fault)
            return ApiResult.failure("CA request failed", errors=fault if self.config.debug else None)

        errors = self.error_texts(result)
        if errors or str(result.get("responseHeader", {}).get("successCode")) not in ("0", ""):
            message = errors[0] if len(errors) == 1 else "; ".join(errors) or "CA request failed"
            marker = ALREADY_DONE.get(operation)
            if marker and marker in message.lower():
                return ApiResult.success(msg=message)
            return ApiResult.failure(message, errors=errors if self.config.debug else None)

        return ApiResult.success(result)

    # request assembly

    def san_approver(self, method: str) -> dict:
        return {
            "approverMethod": DCV_METHODS.get(method, method),
            "approverEmailPrefix": method.upper() if method in ALIAS_METHODS else "",
            "verificationNotificationEnabled": False,
        }

    @staticmethod
    def san_entries(domains: list[str]) -> dict:
        return {"SANEntry": [{"DNSName": d} for d in domains]}

    def contact_email(self, request: VendorRequest) -> str:
        if request.contact and request.contact.email:
            return request.contact.email
        return self.config.extra.get("default_email", "")

    def new_params(self, request: VendorRequest) -> dict:
        email = self.contact_email(request)
        order = {
            "orderID": request.refer_id,
            "customer": email,
            "productCode": request.product_api_id,
            "CSR": request.csr,
            "hashAlgorithm": hash_algorithm(request.csr),
            "email": email,
            "revocationContactEmail": email,
        }
        if not request.plus:
            order["shortenedValidityPeriod"] = shortened_validity_period()

        params: dict = {
            "orderParameters": order,
            "SANEntries": self.san_entries(request.domain_list),
            "SANApprover": self.san_approver(request.validation_method),
        }

        if request.organization is not None:
            contact = request.contact
            org = request.organization
            params["orderParameters"] = {
                **order,
                "givenName": contact.first_name if contact else "",
                "surname": contact.last_name if contact else "",
                "organization": org.name,
                "locality": org.city,
                "state": org.state,
                "country": org.country,
                "streetAddress": org.address,
                "postalCode": org.postcode,
            }
            params["requestorInfo"] = {
                "email": contact.email if contact else "",
                "firstName": contact.first_name if contact else "",
                "lastName": contact.last_name if contact else "",
                "phone": contact.phone if contact else "",
            }
            params["organizationInfo"] = {"taxIdentificationNumber": org.registration_number}
        return params

    def renew_params(self, request: VendorRequest) -> dict:
        params = {
            "customer": self.contact_email(request),
            "productCode": request.product_api_id,
            "CSR": request.csr,
            "hashAlgorithm": hash_algorithm(request.csr),
            "X509Cert": request.last_cert or "",
            "revocationContactEmail": self.contact_email(request),
        }
        if not request.plus:
            params["shortenedValidityPeriod"] = shortened_validity_period()
        params["SANApprover"] = self.san_approver(request.validation_method)
        return params

    def reissue_params(self, request: VendorRequest) -> dict:
        return {
            "CSR": request.csr,
            "hashAlgorithm": hash_algorithm(request.csr),
            "X509Cert": request.last_cert or "",
            "SANEntries": self.san_entries(request.domain_list),
            "SANApprover": self.san_approver(request.validation_method),
        }

    # dcv

    @staticmethod
    def build_dcv(method: str, code: str) -> Optional[Dcv]:
        if not method:
            return None
        dcv = Dcv(method=method, code=code or None)
        if method == "txt":
            dcv.dns = DnsRecord(host="_certum", type="TXT", value=code)
        elif method == "cname":
            dcv.dns = DnsRecord(host="_certum", type="CNAME", value=f"{code}.certum.pl")
        elif method == "file":
            dcv.file = FileRecord(
                name="certum.txt",
                path="/.well-known/pki-validation/certum.txt",
                content=f"{code}-certum.pl",
            )
        return dcv

    @staticmethod
    def build_validation(method: str, code: str, domains: list[str]) -> list[ValidationRecord]:
        records = []
        for domain in domains:
            record = ValidationRecord(domain=domain, method=method)
            if method == "txt":
                record.host, record.value = "_certum", code
            elif method == "cname":
                record.host, record.value = "_certum", f"{code}.certum.pl"
            elif method == "file":
                record.link = f"//{domain}/.well-known/pki-validation/certum.txt"
                record.name = "certum.txt"
                record.content = f"{code}-certum.pl"
            else:
                record.email = f"{method}@{domain_util.get_root_domain(domain)}"
            records.append(record)
        return records

    def apply_result(self, result: ApiResult, request: VendorRequest) -> ApiResult:
        if not result.ok:
            return result
        api_id = (result.data or {}).get("orderID") or ""
        if not api_id:
            return ApiResult.failure("CA did not return an order id")

        code = ((result.data or {}).get("SANVerification") or {}).get("code") or ""
        method = request.validation_method
        return ApiResult.success(
            ApplyResult(
                api_id=api_id,
                cert_apply_status=2,
                dcv=self.build_dcv(method, code),
                validation=self.build_validation(method, code, request.domain_list),
            )
        )

    # operations

    async def new(self, request: VendorRequest) -> ApiResult:
        result = await self.call("quickOrder", self.new_params(request))
        return self.apply_result(result, request)

    async def renew(self, request: VendorRequest) -> ApiResult:
        result = await self.call("renewCertificate", self.renew_params(request))
        return self.apply_result(result, request)

    async def reissue(self, request: VendorRequest) -> ApiResult:
        result = await self.call("reissueCertificate", self.reissue_params(request))
        return self.apply_result(result, request)

    async def get_api_id_by_refer_id(self, refer_id: str) -> ApiResult:
        # orders are placed with our refer id as their orderID
        result = await self.call("getOrderState", {"orderID": refer_id})
        if result.ok:
            return ApiResult.success({"api_id": refer_id})
        return result

    async def _latest_order(self, api_id: str, full: bool = True) -> Optional[dict]:
        options = {"orderStatus": True}
        if full:
            options.update({"orderDetails": True, "certificateDetails": True})
        result = await self.call("getOrderByOrderID", {"orderID": api_id, "orderOption": options})
        if not result.ok:
            return None
        orders = as_list(((result.data or {}).get("orders") or {}).get("Order"))
        # a reissued order lists every issuance; the last one is current
        return orders[-1] if orders else None

    async def get(self, api_id: str, cert: "Cert") -> ApiResult:
        order = await self._latest_order(api_id)
        if not order:
            return ApiResult.failure("Failed to fetch certificate information, please try again later")

        order_status = order.get("orderStatus") or {}
        details = order.get("certificateDetails") or {}

        snap = CertSnapshot(status=self.normalize_status(order_status.get("orderStatus")))
        if details.get("certificateStatus") in ("REVOKING", "REVOKED"):
            snap.status = "revoked"
        snap.vendor_id = order_status.get("orderID") or None

        if snap.status == "processing":
            snap.cert_apply_status, snap.domain_verify_status, snap.org_verify_status = 2, 1, 1
            await self._fill_san_state(api_id, snap)

        if snap.status in ("approving", "active"):
            snap.cert_apply_status, snap.domain_verify_status, snap.org_verify_status = 2, 2, 2

        if snap.status == "active":
            snap.validation = [
                r.model_copy(update={"verified": 1, "error": None}) for r in (cert.validation or [])
            ] or None
            snap.cert = format_pem(details.get("X509Cert") or "") if details.get("X509Cert") else None
            if not snap.cert:
                return ApiResult.failure("Failed to fetch the certificate, please try again later")

            bundle = await self.call("getCertificate", {"orderID": api_id})
            chain = as_list(((bundle.data or {}).get("caBundle") or {}).get("X509Cert")) if bundle.ok else []
            if chain:
                snap.intermediate_cert = "\n".join(format_pem(c) for c in chain)

        return ApiResult.success(snap)

    async def _fill_san_state(self, api_id: str, snap: CertSnapshot) -> None:
        result = await self.call("getSanVerificationState", {"orderID": api_id})
        if not result.ok:
            return
        sans = as_list(((result.data or {}).get("sanVerifications") or {}).get("sanVerification"))
        if not sans:
            return

        names, records = [], []
        for san in sans:
            fqdn = san.get("FQDN") or ""
            manual = san.get("manualVerification") or {}
            system = san.get("systemVerification") or {}
            record = ValidationRecord(domain=fqdn, verified=1 if manual.get("state") == "VERIFIED" else 0)
            if manual.get("expireDate"):
                try:
                    record.expires_date = int(datetime.fromisoformat(manual["expireDate"][:10]).replace(tzinfo=timezone.utc).timestamp())
                except ValueError:
                    pass
            # any system verification entry is a vendor-side error report
            if system.get("method"):
                record.verified = 2
                record.error = {"system": system["method"], "info": system.get("info")}
            names.append(fqdn)
            records.append(record)

        snap.alternative_names = domain_util.join(domain_util.unique(n for n in names if n))
        snap.validation = records

    async def cancel(self, api_id: str, cert: "Cert") -> ApiResult:
        if cert.serial_number:
            result = await self.call(
                "revokeCertificate", {"revokeCertificateParameters": {"serialNumber": cert.serial_number}}
            )
        else:
            result = await self.call("cancelOrder", {"cancelParameters": {"orderID": api_id}})

        if result.ok:
            return result

        # an issued order can no longer be cancelled, only revoked
        order = await self._latest_order(api_id, full=False)
        if order and self.normalize_status((order.get("orderStatus") or {}).get("orderStatus")) == "active":
            serial = (order.get("orderStatus") or {}).get("serialNumber") or ""
            return await self.call("revokeCertificate", {"revokeCertificateParameters": {"serialNumber": serial}})
        return result

    @staticmethod
    def code_from_dcv(dcv: Optional[Dcv]) -> Optional[str]:
        if dcv is None:
            return None
        if dcv.code:
            return dcv.code
        if dcv.method == "txt" and dcv.dns:
            return dcv.dns.value
        if dcv.method == "cname" and dcv.dns:
            return dcv.dns.value.replace(".certum.pl", "")
        if dcv.method == "file" and dcv.file:
            return dcv.file.content.replace("-certum.pl", "")
        return None

    async def revalidate(self, api_id: str, cert: "Cert") -> ApiResult:
        if cert.dcv is None:
            return ApiResult.failure("No validation method")
        return await self.call("performSanVerification", {"code": self.code_from_dcv(cert.dcv) or ""})

    async def update_dcv(self, api_id: str, method: str, cert: "Cert") -> ApiResult:
        result = await self.call("addSanVerification", {"orderID": api_id, "SANApprover": self.san_approver(method)})
        if not result.ok:
            return result
        code = ((result.data or {}).get("SANVerification") or {}).get("code") or ""
        return ApiResult.success(
            DcvUpdate(
                dcv=self.build_dcv(method, code),
                validation=self.build_validation(method, code, cert.domain_list),
            )
        )
