from __future__ import annotations

import ipaddress
import re
from typing import Iterable, List

import idna


STANDARD = "standard"
WILDCARD = "wildcard"
IPV4 = "ipv4"
IPV6 = "ipv6"
INVALID = "invalid"

DOMAIN_RE = re.compile(r"^([a-zA-Z0-9]([a-zA-Z0-9\-_]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,11}$")
PUNYCODE_TLD_RE = re.compile(r"^([a-zA-Z0-9]([a-zA-Z0-9\-_]{0,61}[a-zA-Z0-9])?\.)+xn--[a-zA-Z0-9\-]{1,59}$")

# second level registries under which the registrable domain has three labels
MULTI_LABEL_SUFFIXES = frozenset(
    {
        "com.cn", "net.cn", "org.cn", "gov.cn", "edu.cn", "ac.cn",
        "com.hk", "net.hk", "org.hk", "edu.hk",
        "com.tw", "net.tw", "org.tw",
        "co.uk", "org.uk", "me.uk", "ac.uk", "gov.uk", "ltd.uk", "plc.uk",
        "co.jp", "ne.jp", "or.jp", "ac.jp", "go.jp",
        "co.kr", "or.kr", "ne.kr",
        "com.au", "net.au", "org.au", "edu.au", "gov.au",
        "co.nz", "net.nz", "org.nz",
        "com.br", "net.br", "org.br",
        "com.sg", "net.sg", "org.sg", "edu.sg",
        "com.my", "net.my", "org.my",
        "co.in", "net.in", "org.in", "firm.in",
        "co.za", "org.za",
        "com.mx", "org.mx",
        "com.tr", "net.tr", "org.tr",
        "com.ru", "net.ru", "org.ru",
    }
)


def split(domains: str | Iterable[str]) -> List[str]:
    if isinstance(domains, str):
        items = domains.split(",")
    else:
        items = list(domains)
    return [d.strip().lower() for d in items if d and d.strip()]


def join(domains: Iterable[str]) -> str:
    return ",".join(domains)


def unique(domains: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    out = []
    for d in domains:
        if d not in seen:
            seen.add(d)
            out.append(d)
    return out


def to_unicode(domain: str) -> str:
    domain = domain.strip().lower()
    if "xn--" not in domain:
        return domain
    prefix = ""
    if domain.startswith("*."):
        prefix, domain = "*.", domain[2:]
    try:
        return prefix + idna.decode(domain)
    except (idna.IDNAError, UnicodeError):
        return prefix + domain


def to_ascii(domain: str) -> str:
    domain = domain.strip().lower()
    prefix = ""
    if domain.startswith("*."):
        prefix, domain = "*.", domain[2:]
    if domain.isascii():
        return prefix + domain
    try:
        return prefix + idna.encode(domain, uts46=True).decode("ascii")
    except (idna.IDNAError, UnicodeError):
        return prefix + domain


def convert_to_unicode_domains(domains: str) -> str:
    return join(to_unicode(d) for d in split(domains))


def get_type(domain: str) -> str:
    domain = domain.strip().lower()
    try:
        ip = ipaddress.ip_address(domain)
        return IPV4 if ip.version == 4 else IPV6
    except ValueError:
        pass

    wildcard = domain.startswith("*.")
    name = to_ascii(domain[2:] if wildcard else domain)
    if not (DOMAIN_RE.match(name) or PUNYCODE_TLD_RE.match(name)):
        return INVALID
    return WILDCARD if wildcard else STANDARD


def is_ip(domain: str) -> bool:
    return get_type(domain) in (IPV4, IPV6)


def get_root_domain(domain: str) -> str:
    """Registrable domain: example.com for a.b.example.com, example.com.cn for x.example.com.cn."""
    domain = domain.strip().lower()
    if domain.startswith("*."):
        domain = domain[2:]
    if is_ip(domain):
        return domain

    labels = domain.split(".")
    if len(labels) <= 2:
        return domain
    if ".".join(labels[-2:]) in MULTI_LABEL_SUFFIXES:
        return ".".join(labels[-3:])
    return ".".join(labels[-2:])


def add_gift_domain(domains: str) -> str:
    """Put the bare domain right after every wildcard that lacks it."""
    items = split(domains)
    present = set(items)
    out: List[str] = []
    for d in items:
        out.append(d)
        if d.startswith("*.") and d[2:] not in present:
            out.append(d[2:])
            present.add(d[2:])
    return join(unique(out))


def remove_gift_domain(domains: str) -> str:
    items = split(domains)
    wildcard_bases = {d[2:] for d in items if d.startswith("*.")}
    return join(d for d in items if d not in wildcard_bases)


def get_sans_from_domains(domains: str, gift_root_domain: bool = False) -> dict:
    """
    Count standard and wildcard names. IP literals count as standard.

    With ``gift_root_domain`` the bare domain that accompanies a wildcard is
    free and not counted.
    """
    items = unique(split(domains))
    wildcard_bases = {d[2:] for d in items if d.startswith("*.")}

    standard = wildcard = 0
    for d in items:
        kind = get_type(d)
        if kind == WILDCARD:
            wildcard += 1
        elif gift_root_domain and d in wildcard_bases:
            continue
        else:
            standard += 1
    return {"standard_count": standard, "wildcard_count": wildcard}
