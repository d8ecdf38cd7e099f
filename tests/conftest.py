"""Shared fixtures: sqlite database per test, in-memory counter store, fakes for audit and mail."""

import os

# settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-secret-key-minimum-32-characters-long")
os.environ.setdefault("DNS_TOOLS_URLS", "https://dns-a.test,https://dns-b.test")

import time
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import app.models  # noqa: F401
from app.core.config import Settings
from app.core.db import Base
from app.integrations.vendors import build_registry
from app.models.cert import Cert, CertStatus
from app.models.order import Order
from app.models.product import Product
from app.models.user import User
from app.models.wallet import WalletAccount
from app.schemas.certs import Dcv
from app.services import csr as csr_util
from app.services.dcv import generate_validation
from app.services.orchestrator import Orchestrator
from app.services.tasks import TaskQueue
from app.services.verify_client import DnsVerifyClient


class MemoryStore:
    """Dict-backed CounterStore with wall clock expiry."""

    def __init__(self):
        self.data: dict[str, tuple[str, float]] = {}

    def _live(self, key: str) -> Optional[str]:
        item = self.data.get(key)
        if item is None:
            return None
        value, expires = item
        if expires <= time.monotonic():
            del self.data[key]
            return None
        return value

    async def incr(self, key: str, ttl: int) -> int:
        current = self._live(key)
        if current is None:
            self.data[key] = ("1", time.monotonic() + ttl)
            return 1
        count = int(current) + 1
        self.data[key] = (str(count), self.data[key][1])
        return count

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        self.data[key] = (value, time.monotonic() + ttl)

    async def add(self, key: str, value: str, ttl: int) -> bool:
        if self._live(key) is not None:
            return False
        await self.set(key, value, ttl)
        return True

    async def ttl(self, key: str) -> int:
        if self._live(key) is None:
            return 0
        return int(self.data[key][1] - time.monotonic())

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


class RecordingAudit:
    def __init__(self):
        self.records = []

    async def record(self, entry) -> None:
        self.records.append(entry)


class RecordingNotifier:
    def __init__(self):
        self.notices = []

    async def send_failure_notice(self, notice) -> None:
        self.notices.append(notice)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        DATABASE_URL=os.environ["DATABASE_URL"],
        JWT_SECRET=os.environ["JWT_SECRET"],
        DNS_TOOLS_URLS="https://dns-a.test,https://dns-b.test",
        TASK_MAX_ATTEMPTS=3,
        TASK_RETRY_BACKOFF=60,
        GOGETSSL_URL="https://gogetssl.test/api",
        GOGETSSL_USERNAME="user",
        GOGETSSL_PASSWORD="secret",
        RACENT_URL="https://racent.test/api/v1",
        RACENT_TOKEN="racent-token",
        TRUSTASIA_URL="https://trustasia.test/v1",
        TRUSTASIA_KEY_ID="key-id",
        TRUSTASIA_AUTH_KEY="auth-key",
        CERTUM_URL="https://certum.test/PartnerApi.svc",
        CERTUM_USERNAME="certum-user",
        CERTUM_PASSWORD="certum-pass",
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def audit() -> RecordingAudit:
    return RecordingAudit()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def queue(session_factory, settings) -> TaskQueue:
    return TaskQueue(session_factory, settings)


@pytest.fixture
def registry(settings, audit, store):
    return build_registry(settings, audit, store)


@pytest.fixture
def orchestrator(session_factory, registry, queue, settings, store) -> Orchestrator:
    verify_client = DnsVerifyClient(settings.dns_tools_urls, timeout=settings.DNS_TOOLS_TIMEOUT)
    return Orchestrator(session_factory, registry, queue, settings, store, verify_client)


async def create_user(session_factory, *, balance_cents=0, credit_limit_cents=0, username="alice") -> int:
    async with session_factory() as db:
        user = User(username=username, role="user", email=f"{username}@example.com")
        db.add(user)
        await db.flush()
        db.add(WalletAccount(user_id=user.id, balance_cents=balance_cents, credit_limit_cents=credit_limit_cents))
        await db.commit()
        return user.id


PRODUCT_DEFAULTS = dict(
    code="ssl-dv",
    name="Test DV SSL",
    api_id="101",
    source="gogetssl",
    brand="sectigo",
    ca="sectigo",
    validation_type="dv",
    common_name_types=["standard", "wildcard"],
    alternative_name_types=["standard", "wildcard"],
    validation_methods=["txt", "cname", "http", "https", "file", "admin"],
    periods=[12],
    encryption_alg=["rsa", "ecdsa"],
    signature_digest_alg=["sha256"],
    standard_min=1,
    standard_max=5,
    wildcard_min=0,
    wildcard_max=5,
    total_min=1,
    total_max=10,
    add_san=True,
    replace_san=True,
    reissue=True,
    renew=True,
    reuse_csr=False,
    gift_root_domain=False,
    refund_period=30,
    status=True,
    prices={"12": {"price": 1000, "alternative_standard_price": 200, "alternative_wildcard_price": 500}},
)


def build_product(**overrides) -> Product:
    return Product(**{**PRODUCT_DEFAULTS, **overrides})


async def create_product(session_factory, **overrides) -> int:
    async with session_factory() as db:
        product = build_product(**overrides)
        db.add(product)
        await db.commit()
        return product.id


_CSR_CACHE: dict[str, csr_util.GeneratedCsr] = {}


def make_csr(common_name: str = "example.com", fresh: bool = False) -> csr_util.GeneratedCsr:
    # RSA key generation is slow; share one pair per name unless asked otherwise
    if fresh:
        return csr_util.generate(common_name, csr_util.Encryption())
    if common_name not in _CSR_CACHE:
        _CSR_CACHE[common_name] = csr_util.generate(common_name, csr_util.Encryption())
    return _CSR_CACHE[common_name]


def self_signed(common_name: str = "example.com", days: int = 365) -> str:
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test Issuing CA")]))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=days))
        .sign(key, hashes.SHA256())
    )
    return certificate.public_bytes(serialization.Encoding.PEM).decode("ascii").strip()


async def create_order(
    session_factory,
    user_id: int,
    product_id: int,
    *,
    status: str = CertStatus.UNPAID,
    domains: str = "example.com",
    method: str = "admin",
    action: str = "new",
    api_id: Optional[str] = None,
    fresh_csr: bool = True,
    **cert_fields,
) -> tuple[int, int]:
    """Order with a single cert in ``status``; returns (order_id, cert_id)."""
    generated = make_csr(domains.split(",")[0], fresh=fresh_csr)
    async with session_factory() as db:
        order = Order(user_id=user_id, product_id=product_id, brand="sectigo", period=12)
        db.add(order)
        await db.flush()
        cert = Cert(
            order_id=order.id,
            action=action,
            period=12,
            refer_id=uuid4().hex,
            common_name=domains.split(",")[0],
            alternative_names=domains,
            standard_count=len(domains.split(",")),
            csr=generated.csr,
            private_key=generated.private_key,
            dcv=Dcv(method=method),
            validation=generate_validation(Dcv(method=method), domains),
            api_id=api_id,
            status=status,
            **cert_fields,
        )
        db.add(cert)
        await db.flush()
        order.latest_cert_id = cert.id
        await db.commit()
        return order.id, cert.id
