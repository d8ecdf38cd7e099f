"""
Cross-field checks of an assembled certificate request against its product.

Every check returns messages instead of raising; :func:`validate_params`
collects them into a nested map keyed by field (``basic``, ``contact``,
``organization``, ``domains``, ``period``, ``validation_method``,
``encryption``). An empty map means the request may go ahead.
"""

from __future__ import annotations

import re
from typing import Any, Optional

from app.models.product import Product
from app.schemas.certs import FILE_METHODS
from app.services import domains as domain_util


ACTIONS = ("new", "renew", "reissue")
CHANNELS = ("web", "admin", "api", "acme")

ALNUM_RE = re.compile(r"^[A-Za-z0-9]+$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
DIGITS_RE = re.compile(r"^\d+$")

CONTACT_RULES = {
    "first_name": (1, 16),
    "last_name": (1, 40),
    "title": (2, 16),
    "email": (6, 64),
    "phone": (5, 15),
}
ORGANIZATION_RULES = {
    "name": (2, 64),
    "registration_number": (6, 32),
    "phone": (5, 15),
    "address": (2, 64),
    "city": (2, 64),
    "state": (2, 64),
    "country": (2, 2),
    "postcode": (4, 16),
}


def filter_empty(value: Any) -> Any:
    """Drop empty strings, None, False, 0 and empty containers, recursively."""
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            v = filter_empty(v)
            if v not in (None, "", [], {}):
                out[k] = v
        return out
    if isinstance(value, list):
        return [v for v in (filter_empty(x) for x in value) if v not in (None, "", [], {})]
    if value is False or value == 0 or value == "0":
        return None
    if isinstance(value, str) and not value.strip():
        return None
    return value


def validate_basic(params: dict) -> dict:
    errors: dict = {}

    if params.get("action") not in ACTIONS:
        errors["action"] = "action must be one of " + ",".join(ACTIONS)
    if params.get("channel") not in CHANNELS:
        errors["channel"] = "channel must be one of " + ",".join(CHANNELS)
    if params.get("plus") not in (None, 0, 1, True, False):
        errors["plus"] = "plus must be 0 or 1"

    refer_id = params.get("refer_id")
    if refer_id is not None and not (isinstance(refer_id, str) and ALNUM_RE.match(refer_id) and len(refer_id) == 32):
        errors["refer_id"] = "refer_id must be 32 alphanumeric characters"

    unique_value = params.get("unique_value")
    if unique_value is not None and not (
        isinstance(unique_value, str) and ALNUM_RE.match(unique_value) and 16 <= len(unique_value) <= 24
    ):
        errors["unique_value"] = "unique_value must be 16 to 24 alphanumeric characters"

    if params.get("action") in ("renew", "reissue") and not params.get("order_id"):
        errors["order_id"] = "order_id is required"

    return errors


def _check_fields(data: dict, rules: dict) -> dict:
    errors: dict = {}
    for field, (low, high) in rules.items():
        value = str(data.get(field) or "").strip()
        if not value:
            errors[field] = f"{field} is required"
            continue
        if field == "phone":
            if not DIGITS_RE.match(value) or not low <= len(value) <= high:
                errors[field] = f"{field} must be {low} to {high} digits"
            continue
        if field == "email" and not EMAIL_RE.match(value):
            errors[field] = f"{field} is not a valid email address"
            continue
        if not low <= len(value) <= high:
            errors[field] = (
                f"{field} must be {low} characters" if low == high else f"{field} must be {low} to {high} characters"
            )
    return errors


def validate_contact(contact: dict) -> dict:
    return _check_fields(contact, CONTACT_RULES)


def validate_organization(organization: dict) -> dict:
    return _check_fields(organization, ORGANIZATION_RULES)


def _count_error(count: int, maximum: int, label: str) -> str:
    if count > maximum:
        return f"{label} domain count cannot exceed {maximum}"
    return ""


def validate_sans_max_count(product: Product, domains: str) -> dict:
    # the gifted root counts towards the caps on multi-domain products
    if product.gift_root_domain and product.total_max > 1:
        domains = domain_util.add_gift_domain(domains)
    if product.gift_root_domain and product.total_max == 1:
        domains = domain_util.remove_gift_domain(domains)

    sans = domain_util.get_sans_from_domains(domains)
    standard = sans["standard_count"]
    wildcard = sans["wildcard_count"]

    errors = {
        "standard": _count_error(standard, product.standard_max, "Standard"),
        "wildcard": _count_error(wildcard, product.wildcard_max, "Wildcard"),
        "total": _count_error(standard + wildcard, product.total_max, "Total"),
    }
    if standard + wildcard < product.total_min:
        errors["total"] = errors["total"] or f"Total domain count cannot be less than {product.total_min}"
    return {k: v for k, v in errors.items() if v}


def validate_domain(domain: str, types: list) -> str:
    kind = domain_util.get_type(domain)
    if kind not in types:
        return f"Domain {domain} type {kind} is not allowed"
    return ""


def validate_domains(domains: Any, product: Product, validation_method: str = "") -> dict | str:
    if not isinstance(domains, str):
        return "domains must be a comma separated string"
    if not domain_util.split(domains):
        return "At least one domain is required"

    if product.gift_root_domain and product.total_max == 1:
        domains = domain_util.remove_gift_domain(domains)

    errors: dict = {}
    count_errors = validate_sans_max_count(product, domains)
    if count_errors:
        errors["count"] = count_errors

    items = domain_util.split(domains)
    method = (validation_method or "").lower()
    for index, domain in enumerate(items):
        types = product.common_name_types if index == 0 else product.alternative_name_types
        messages = []

        message = validate_domain(domain, types)
        if message:
            messages.append(message)

        kind = domain_util.get_type(domain)
        if kind == domain_util.WILDCARD and method in FILE_METHODS:
            messages.append(f"Wildcard domain {domain} cannot use the {method} method")
        if kind in (domain_util.IPV4, domain_util.IPV6) and method not in FILE_METHODS:
            messages.append(f"IP address {domain} can only use file based methods")

        if messages:
            errors[index] = messages

    repeated = sorted({d for d in items if items.count(d) > 1})
    if repeated:
        errors["repeat"] = "Duplicate domains: " + ",".join(repeated)

    return filter_empty(errors)


def validate_method_compatibility(domains: str, method: str) -> Optional[str]:
    """Used when the method changes on an existing order."""
    method = method.lower()
    for domain in domain_util.split(domains):
        kind = domain_util.get_type(domain)
        if kind == domain_util.WILDCARD and method in FILE_METHODS:
            return f"Wildcard domain {domain} cannot use the {method} method"
        if kind in (domain_util.IPV4, domain_util.IPV6) and method not in FILE_METHODS:
            return f"IP address {domain} can only use file based methods"
    return None


def validate_period(period: Any, product: Product) -> str:
    try:
        period = int(period)
    except (TypeError, ValueError):
        return "period must be an integer"
    periods = [int(p) for p in product.periods]
    if period not in periods:
        return "period must be one of " + ",".join(str(p) for p in periods)
    return ""


def validate_validation_method(method: Any, product: Product) -> str:
    if not isinstance(method, str):
        return "validation_method must be a string"
    if method and method.lower() not in product.validation_methods:
        return "validation_method must be one of " + ",".join(product.validation_methods)
    return ""


def validate_encryption(encryption: dict, product: Product) -> list:
    errors = []
    alg = encryption.get("alg")
    if alg and alg.lower() not in product.encryption_alg:
        errors.append("Encryption algorithm must be one of " + ",".join(product.encryption_alg).upper())
    digest = encryption.get("digest_alg")
    if digest and digest.lower() not in product.signature_digest_alg:
        errors.append("Digest algorithm must be one of " + ",".join(product.signature_digest_alg).upper())
    return errors


def validate_params(params: dict, product: Product) -> dict:
    errors: dict = {}

    basic = validate_basic(params)
    if basic:
        errors["basic"] = basic

    if isinstance(params.get("contact"), dict):
        errors["contact"] = validate_contact(params["contact"])
    if isinstance(params.get("organization"), dict):
        errors["organization"] = validate_organization(params["organization"])

    if "domains" in params:
        errors["domains"] = validate_domains(params["domains"], product, params.get("validation_method", ""))
    else:
        errors["domains"] = "domains is required"
    if params.get("period") is not None:
        errors["period"] = validate_period(params["period"], product)
    else:
        errors["period"] = "period is required"
    if params.get("validation_method"):
        errors["validation_method"] = validate_validation_method(params["validation_method"], product)
    else:
        errors["validation_method"] = "validation_method is required"
    if isinstance(params.get("encryption"), dict):
        errors["encryption"] = validate_encryption(params["encryption"], product)

    return filter_empty(errors)
