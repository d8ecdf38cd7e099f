from __future__ import annotations

import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol

import httpx
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import VendorConfig
from app.core.results import ApiResult, VendorTransportError
from app.models.vendor_log import VendorCallLog
from app.schemas.certs import VendorRequest

if TYPE_CHECKING:
    from app.models.cert import Cert


CANONICAL_STATUSES = frozenset(
    {"processing", "approving", "active", "cancelled", "reissued", "renewed", "revoked", "failed", "expired"}
)

SECRET_KEYS = frozenset({"password", "pass", "auth_key", "api_token", "token", "authKey"})


def canonical_status(raw: Any, mapping: dict[str, str]) -> str:
    """Vendor status through the vendor table; anything unknown is ``failed``."""
    status = str(raw or "").strip().lower()
    status = mapping.get(status, status)
    return status if status in CANONICAL_STATUSES else "failed"


def mask_secrets(data: Any) -> Any:
    if isinstance(data, dict):
        return {k: ("******" if k in SECRET_KEYS else mask_secrets(v)) for k, v in data.items()}
    if isinstance(data, list):
        return [mask_secrets(v) for v in data]
    return data


@dataclass
class CallRecord:
    vendor: str
    url: str
    api: str
    params: Optional[dict]
    response: Optional[str]
    status_code: Optional[int]
    success: bool
    duration: float


class AuditLog(Protocol):
    async def record(self, entry: CallRecord) -> None: ...


class DatabaseAuditLog:
    """Writes call records in their own session so a caller rollback keeps them."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(self, entry: CallRecord) -> None:
        try:
            async with self.session_factory() as db:
                db.add(
                    VendorCallLog(
                        vendor=entry.vendor,
                        url=entry.url,
                        api=entry.api,
                        params=entry.params,
                        response=entry.response,
                        status_code=entry.status_code,
                        status=entry.success,
                        duration=entry.duration,
                    )
                )
                await db.commit()
        except Exception:
            # the audit trail must never turn a vendor answer into a failure
            logger.exception("Failed to store vendor call log for {} {}", entry.vendor, entry.api)


class VendorAdapter(ABC):
    """
    Common operation set every CA vendor implements.

    Vendor-side rejections come back as a failed :class:`ApiResult`.
    Transport problems (timeouts, connection errors, 5xx, undecodable
    bodies) raise :class:`VendorTransportError` so the task queue retries.
    """

    key: str = ""
    status_map: dict[str, str] = {}

    def __init__(self, config: VendorConfig, audit: AuditLog):
        self.config = config
        self.audit = audit

    @property
    def configured(self) -> bool:
        return bool(self.config.base_url)

    def not_configured(self) -> ApiResult:
        return ApiResult.failure("CA API is not configured")

    def normalize_status(self, raw: Any) -> str:
        return canonical_status(raw, self.status_map)

    def error_message(self, msg: Optional[str], fallback: str = "CA request failed") -> str:
        return msg or fallback

    async def _send(
        self,
        api: str,
        method: str,
        url: str,
        *,
        log_params: Optional[dict],
        is_success: Callable[[httpx.Response], bool],
        **kwargs: Any,
    ) -> httpx.Response:
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            await self.audit.record(
                CallRecord(
                    vendor=self.key,
                    url=url,
                    api=api,
                    params=mask_secrets(log_params),
                    response=f"{type(e).__name__}: {e}",
                    status_code=None,
                    success=False,
                    duration=time.monotonic() - started,
                )
            )
            logger.warning("{} {} transport error: {}", self.key, api, e)
            raise VendorTransportError(self.key, f"{api}: {type(e).__name__}") from e

        try:
            success = response.status_code < 500 and is_success(response)
        except ValueError:
            success = False

        await self.audit.record(
            CallRecord(
                vendor=self.key,
                url=url,
                api=api,
                params=mask_secrets(log_params),
                response=response.text,
                status_code=response.status_code,
                success=success,
                duration=time.monotonic() - started,
            )
        )

        if response.status_code >= 500:
            raise VendorTransportError(self.key, f"{api}: HTTP {response.status_code}")
        return response

    def _json(self, response: httpx.Response, api: str) -> Any:
        try:
            return response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise VendorTransportError(self.key, f"{api}: response is not JSON") from e

    @abstractmethod
    async def new(self, request: VendorRequest) -> ApiResult: ...

    @abstractmethod
    async def renew(self, request: VendorRequest) -> ApiResult: ...

    @abstractmethod
    async def reissue(self, request: VendorRequest) -> ApiResult: ...

    @abstractmethod
    async def get(self, api_id: str, cert: "Cert") -> ApiResult:
        """``data`` is a :class:`CertSnapshot` on success."""

    @abstractmethod
    async def cancel(self, api_id: str, cert: "Cert") -> ApiResult: ...

    @abstractmethod
    async def revalidate(self, api_id: str, cert: "Cert") -> ApiResult: ...

    @abstractmethod
    async def update_dcv(self, api_id: str, method: str, cert: "Cert") -> ApiResult: ...

    async def remove_unverified_domain(self, api_id: str, cert: "Cert") -> ApiResult:
        return ApiResult.failure("This CA does not support removing unverified domains")

    async def get_api_id_by_refer_id(self, refer_id: str) -> ApiResult:
        return ApiResult.failure("This CA does not support lookup by refer id")
