"""
Client for the external DNS/HTTP verification helper.

The helper runs on several redundant hosts; every call walks the list in
priority order with a short timeout and falls through to the next host on any
transport problem. When every host is down the outcome is *unknown* and
callers must not block on it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

import httpx
from loguru import logger

from app.schemas.certs import ValidationRecord


@dataclass
class VerifyOutcome:
    # True passed, False rejected, None nobody answered
    passed: Optional[bool]
    msg: str = ""
    errors: Any = field(default_factory=list)

    @property
    def unknown(self) -> bool:
        return self.passed is None


class DnsVerifyClient:
    def __init__(self, urls: Iterable[str], timeout: float = 3.0):
        self.urls: List[str] = [u.rstrip("/") for u in urls if u]
        self.timeout = timeout

    async def _post(self, path: str, payload: dict) -> Optional[dict]:
        last_error = ""
        # the helper hosts use self-signed certificates
        async with httpx.AsyncClient(timeout=self.timeout, verify=False) as client:
            for url in self.urls:
                try:
                    response = await client.post(url + path, json=payload)
                    body = response.json()
                except httpx.HTTPError as e:
                    last_error = f"{type(e).__name__}: {e}"
                    logger.warning("verify helper {} failed: {}", url, last_error)
                    continue
                except ValueError:
                    last_error = "invalid JSON"
                    logger.warning("verify helper {} returned invalid JSON", url)
                    continue
                if not isinstance(body, dict):
                    last_error = "unexpected response"
                    continue
                return body

        if self.urls:
            logger.warning("all verify helpers failed for {}: {}", path, last_error)
        else:
            logger.error("DNS_TOOLS_URLS is not configured")
        return None

    async def verify(self, validation: Iterable[ValidationRecord | dict]) -> VerifyOutcome:
        """Check published DCV records; ``passed`` is None when no helper answered."""
        records = [r.model_dump(exclude_none=True) if isinstance(r, ValidationRecord) else r for r in validation]
        body = await self._post("/api/dcv/verify", {"validation": records})
        if body is None:
            return VerifyOutcome(passed=None, msg="DNS tools unavailable")
        return VerifyOutcome(
            passed=str(body.get("code")) == "1",
            msg=body.get("msg") or "",
            errors=body.get("errors") or [],
        )

    async def issue_verify(self, ca: str, domains: str) -> VerifyOutcome:
        """Ask whether the CA can issue for ``domains`` at all (CAA and the like)."""
        body = await self._post("/api/domain/issue-verify", {"brand": ca, "domains": domains})
        if body is None:
            # an unreachable helper must not block payment
            return VerifyOutcome(passed=True)
        if str(body.get("code")) == "1":
            return VerifyOutcome(passed=True, msg=body.get("msg") or "")

        errors = {}
        for item in body.get("errors") or []:
            if isinstance(item, dict) and item.get("valid") is False:
                domain = item.get("display_domain") or item.get("domain") or ""
                errors[domain] = {"message": item.get("message"), "errors": item.get("errors")}
        return VerifyOutcome(
            passed=False,
            msg=body.get("msg") or "Domain issuance check failed, please contact the administrator",
            errors=errors,
        )
