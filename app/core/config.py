from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class VendorConfig:
    """Connection details handed to a single vendor adapter."""

    base_url: str
    username: str = ""
    password: str = ""
    token: str = ""
    key_id: str = ""
    timeout: float = 30.0
    debug: bool = False
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PlaceholderContact:
    """Administrator sent to vendors when an order carries no contact."""

    first_name: str = "default"
    last_name: str = "default"
    title: str = "IT"
    email: str = ""
    phone: str = ""

    def matches(self, first_name: str, last_name: str) -> bool:
        return (first_name or "") == self.first_name and (last_name or "") == self.last_name


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    APP_NAME: str = "certflow"
    DEBUG: bool = False

    DATABASE_URL: str
    DATABASE_ECHO: bool = False

    JWT_SECRET: str
    JWT_ALG: str = "HS256"

    REDIS_URL: str = "redis://localhost:6379/0"

    # logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    )
    LOG_SERIALIZE: bool = False

    # task queue
    TASK_WORKERS: int = 4
    TASK_POLL_INTERVAL: float = 1.0
    TASK_MAX_ATTEMPTS: int = 3
    TASK_RETRY_BACKOFF: int = 60
    TASK_LEASE_SECONDS: int = 600

    # validation poller
    POLLER_ENABLED: bool = True
    POLLER_INTERVAL: int = 60
    VALIDATION_MAX_HOURS: int = 48

    # dns verification helper
    DNS_TOOLS_URLS: str = ""
    DNS_TOOLS_TIMEOUT: float = 3.0

    # operator email
    ADMIN_EMAIL: str = ""
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 25
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM: str = "noreply@localhost"
    SMTP_STARTTLS: bool = False

    # throttling
    RATE_LIMIT_PER_IP: int = 120
    RATE_LIMIT_PER_TOKEN: int = 60
    DUPLICATE_WINDOW_SECONDS: int = 60

    # vendors
    VENDOR_TIMEOUT: float = 30.0

    CERTUM_URL: str = "https://gs.certum.pl/service/PartnerApi.svc"
    CERTUM_USERNAME: str = ""
    CERTUM_PASSWORD: str = ""
    CERTUM_DEFAULT_EMAIL: str = ""

    GOGETSSL_URL: str = "https://my.gogetssl.com/api"
    GOGETSSL_USERNAME: str = ""
    GOGETSSL_PASSWORD: str = ""

    RACENT_URL: str = "https://api.racent.com/api/v1"
    RACENT_TOKEN: str = ""

    RACENT_DOMESTIC_URL: str = "https://api.racent.com/api/v1"
    RACENT_DOMESTIC_TOKEN: str = ""

    TRUSTASIA_URL: str = "https://api.trustasia.com/v1"
    TRUSTASIA_KEY_ID: str = ""
    TRUSTASIA_AUTH_KEY: str = ""

    PLACEHOLDER_CONTACT_FIRST_NAME: str = "default"
    PLACEHOLDER_CONTACT_LAST_NAME: str = "default"
    PLACEHOLDER_CONTACT_EMAIL: str = ""
    PLACEHOLDER_CONTACT_PHONE: str = ""

    @property
    def dns_tools_urls(self) -> List[str]:
        return [u.strip().rstrip("/") for u in self.DNS_TOOLS_URLS.split(",") if u.strip()]

    @property
    def placeholder_contact(self) -> PlaceholderContact:
        return PlaceholderContact(
            first_name=self.PLACEHOLDER_CONTACT_FIRST_NAME,
            last_name=self.PLACEHOLDER_CONTACT_LAST_NAME,
            email=self.PLACEHOLDER_CONTACT_EMAIL or self.ADMIN_EMAIL,
            phone=self.PLACEHOLDER_CONTACT_PHONE,
        )

    def vendor_config(self, key: str) -> VendorConfig:
        common = {"timeout": self.VENDOR_TIMEOUT, "debug": self.DEBUG}
        if key == "certum":
            return VendorConfig(
                base_url=self.CERTUM_URL,
                username=self.CERTUM_USERNAME,
                password=self.CERTUM_PASSWORD,
                extra={"default_email": self.CERTUM_DEFAULT_EMAIL or self.ADMIN_EMAIL},
                **common,
            )
        if key == "gogetssl":
            return VendorConfig(
                base_url=self.GOGETSSL_URL,
                username=self.GOGETSSL_USERNAME,
                password=self.GOGETSSL_PASSWORD,
                extra={"placeholder": self.placeholder_contact},
                **common,
            )
        if key == "racent":
            return VendorConfig(
                base_url=self.RACENT_URL,
                token=self.RACENT_TOKEN,
                extra={"placeholder": self.placeholder_contact},
                **common,
            )
        if key == "racent_domestic":
            return VendorConfig(
                base_url=self.RACENT_DOMESTIC_URL,
                token=self.RACENT_DOMESTIC_TOKEN,
                extra={"placeholder": self.placeholder_contact},
                **common,
            )
        if key == "trustasia":
            return VendorConfig(
                base_url=self.TRUSTASIA_URL,
                key_id=self.TRUSTASIA_KEY_ID,
                token=self.TRUSTASIA_AUTH_KEY,
                **common,
            )
        raise KeyError(f"Unknown vendor: {key}")


def get_settings() -> Settings:
    # populate os.environ first so worker subprocesses see the same values
    load_dotenv(".env")
    return Settings()


settings = get_settings()
