from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class ApiResult:
    """Canonical vendor response envelope: code 1 is success, 0 is failure."""

    code: int
    data: Any = None
    msg: Optional[str] = None
    errors: Any = None

    @property
    def ok(self) -> bool:
        return self.code == 1

    @classmethod
    def success(cls, data: Any = None, msg: Optional[str] = None) -> "ApiResult":
        return cls(code=1, data=data, msg=msg)

    @classmethod
    def failure(cls, msg: str, errors: Any = None, data: Any = None) -> "ApiResult":
        return cls(code=0, data=data, msg=msg, errors=errors)


@dataclass
class ActionResult:
    """Outcome of an orchestrator or billing operation."""

    ok: bool
    code: int = 1
    message: str = ""
    errors: Any = None
    data: dict = field(default_factory=dict)
    # field level validation detail is shown even outside debug mode
    public: bool = False

    @classmethod
    def success(cls, data: Optional[dict] = None, message: str = "") -> "ActionResult":
        return cls(ok=True, code=1, message=message, data=data or {})

    @classmethod
    def failure(
        cls, message: str, errors: Any = None, data: Optional[dict] = None, public: bool = False
    ) -> "ActionResult":
        return cls(ok=False, code=0, message=message, errors=errors, data=data or {}, public=public)

    @classmethod
    def from_api(cls, result: ApiResult, fallback: str = "CA request failed") -> "ActionResult":
        if result.ok:
            return cls.success()
        return cls.failure(result.msg or fallback, errors=result.errors)

    def as_payload(self, debug: bool = False) -> dict:
        payload: dict = {"code": self.code, "msg": self.message}
        if self.data:
            payload["data"] = self.data
        if self.errors is not None and (debug or self.public):
            payload["errors"] = self.errors
        return payload


class VendorTransportError(Exception):
    """A vendor call failed below the application protocol (timeout, 5xx, bad body)."""

    def __init__(self, vendor: str, message: str):
        super().__init__(f"{vendor}: {message}")
        self.vendor = vendor


class OrchestratorError(Exception):
    pass


class NotFound(OrchestratorError):
    pass


class InvalidState(OrchestratorError):
    pass
