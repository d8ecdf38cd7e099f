from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID


DEFAULT_ALG = "rsa"
DEFAULT_BITS = 2048
DEFAULT_CURVE_BITS = 256
DEFAULT_DIGEST = "sha256"

RSA_BITS = (2048, 4096)
EC_CURVES = {
    256: ec.SECP256R1,  # prime256v1
    384: ec.SECP384R1,
    521: ec.SECP521R1,
}
DIGESTS = {
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}

CN_MAX_LENGTH = 64


class CsrError(Exception):
    pass


@dataclass(frozen=True)
class Encryption:
    alg: str = DEFAULT_ALG
    bits: int = DEFAULT_BITS
    digest_alg: str = DEFAULT_DIGEST


@dataclass(frozen=True)
class GeneratedCsr:
    csr: str
    private_key: str


def normalize_encryption(raw: Optional[dict]) -> Encryption:
    """Unknown or missing values fall back to RSA 2048 with SHA-256."""
    raw = raw or {}
    alg = str(raw.get("alg") or "").lower()
    try:
        bits = int(raw.get("bits") or 0)
    except (TypeError, ValueError):
        bits = 0
    digest = str(raw.get("digest_alg") or "").lower()

    alg = alg if alg in ("rsa", "ecdsa") else DEFAULT_ALG
    if alg == "rsa":
        bits = bits if bits in RSA_BITS else DEFAULT_BITS
    else:
        bits = bits if bits in EC_CURVES else DEFAULT_CURVE_BITS
    digest = digest if digest in DIGESTS else DEFAULT_DIGEST
    return Encryption(alg=alg, bits=bits, digest_alg=digest)


def _pem(data: bytes) -> str:
    return data.decode("ascii").replace("\r\n", "\n").strip()


def generate(common_name: str, encryption: Encryption, organization: Optional[dict] = None) -> GeneratedCsr:
    if len(common_name) > CN_MAX_LENGTH:
        raise CsrError(f"The Common Name (CN) cannot exceed {CN_MAX_LENGTH} characters")

    if encryption.alg == "ecdsa":
        key = ec.generate_private_key(EC_CURVES[encryption.bits]())
    else:
        key = rsa.generate_private_key(public_exponent=65537, key_size=encryption.bits)

    organization = organization or {}
    attrs = [x509.NameAttribute(NameOID.COMMON_NAME, common_name)]
    if organization.get("name"):
        attrs.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization["name"]))
    attrs += [
        x509.NameAttribute(NameOID.COUNTRY_NAME, (organization.get("country") or "CN")[:2].upper()),
        x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, organization.get("state") or "Shanghai"),
        x509.NameAttribute(NameOID.LOCALITY_NAME, organization.get("city") or "Shanghai"),
    ]

    request = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name(attrs))
        .sign(key, DIGESTS[encryption.digest_alg]())
    )

    return GeneratedCsr(
        csr=_pem(request.public_bytes(serialization.Encoding.PEM)),
        private_key=_pem(
            key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            )
        ),
    )


def load_csr(csr: str) -> x509.CertificateSigningRequest:
    if not csr:
        raise CsrError("CSR is empty")
    try:
        return x509.load_pem_x509_csr(csr.strip().encode("ascii"))
    except ValueError as e:
        raise CsrError("CSR parse error") from e


def csr_to_der(csr: str) -> bytes:
    return load_csr(csr).public_bytes(serialization.Encoding.DER)


def _subject_value(name: x509.Name, oid) -> str:
    values = name.get_attributes_for_oid(oid)
    return str(values[0].value) if values else ""


def subject(csr: str) -> dict:
    request = load_csr(csr)
    return {
        "common_name": _subject_value(request.subject, NameOID.COMMON_NAME),
        "organization": _subject_value(request.subject, NameOID.ORGANIZATION_NAME),
        "country": _subject_value(request.subject, NameOID.COUNTRY_NAME),
    }


def check_domain(csr: str, domain: str) -> None:
    if subject(csr)["common_name"] != domain:
        raise CsrError("CSR Common Name does not match the Cert Common Name")


def check_organization(csr: str, organization_name: str) -> None:
    if subject(csr)["organization"] != organization_name:
        raise CsrError("CSR organization name does not match the params organization name")


def match_key(csr: str, private_key: str) -> bool:
    """True when the private key belongs to the CSR's public key."""
    if not csr or not private_key:
        return False
    try:
        request = load_csr(csr)
        key = serialization.load_pem_private_key(private_key.encode("ascii"), password=None)
    except (CsrError, ValueError, TypeError):
        return False

    fmt = (serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)
    return request.public_key().public_bytes(*fmt) == key.public_key().public_bytes(*fmt)


def key_info(csr: str) -> tuple[str, int]:
    public_key = load_csr(csr).public_key()
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        return "ecdsa", public_key.curve.key_size
    return "rsa", public_key.key_size


def prepare(
    *,
    domains: list[str],
    csr: Optional[str],
    csr_generate: bool,
    encryption: Optional[dict] = None,
    private_key: Optional[str] = None,
    organization: Optional[dict] = None,
) -> GeneratedCsr:
    """Generate a fresh CSR/key pair or check a submitted CSR against the order."""
    if not domains:
        raise CsrError("At least one domain is required")

    if csr_generate:
        return generate(domains[0], normalize_encryption(encryption), organization)

    csr = (csr or "").strip()
    check_domain(csr, domains[0])

    if private_key and not match_key(csr, private_key):
        raise CsrError("CSR and private key do not match")

    if organization and organization.get("name"):
        check_organization(csr, organization["name"])

    return GeneratedCsr(csr=csr, private_key=private_key or "")


def format_pem(body: str, label: str = "CERTIFICATE") -> str:
    """Re-wrap a bare or badly wrapped PEM body at 64 columns."""
    marker_begin = f"-----BEGIN {label}-----"
    marker_end = f"-----END {label}-----"
    raw = body.replace(marker_begin, "").replace(marker_end, "")
    raw = "".join(raw.split())
    lines = [raw[i:i + 64] for i in range(0, len(raw), 64)]
    return "\n".join([marker_begin, *lines, marker_end])


def parse_certificate(pem: str) -> dict:
    try:
        certificate = x509.load_pem_x509_certificate(pem.strip().encode("ascii"))
    except ValueError as e:
        raise CsrError("Certificate parse error") from e

    issuer = _subject_value(certificate.issuer, NameOID.COMMON_NAME)
    public_key = certificate.public_key()
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        alg, bits = "ECC", public_key.curve.key_size
    else:
        alg, bits = "RSA", public_key.key_size

    digest = certificate.signature_hash_algorithm
    return {
        "issuer": issuer,
        "serial_number": format(certificate.serial_number, "X"),
        "encryption_alg": alg,
        "encryption_bits": bits,
        "signature_digest_alg": digest.name.upper() if digest else "",
        "fingerprint": certificate.fingerprint(hashes.SHA1()).hex(),
        "issued_at": certificate.not_valid_before_utc.replace(tzinfo=None),
        "expires_at": certificate.not_valid_after_utc.replace(tzinfo=None),
    }
