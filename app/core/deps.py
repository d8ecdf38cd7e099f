from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.core.security import decode_token, TokenError
from app.core.store import CounterStore
from app.models.user import User
from app.services.orchestrator import Orchestrator
from app.services.tasks import TaskQueue
from app.services.throttle import RateLimiter, RateLimitExceeded

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Customer or operator behind the bearer token; tokens are issued by the account service."""
    try:
        claims = decode_token(token)
        subject = int(claims["sub"])
    except TokenError:
        raise _unauthorized("Invalid or expired token")
    except (KeyError, TypeError, ValueError):
        raise _unauthorized("Token carries no usable subject")

    user = await db.get(User, subject)
    if user is None or not user.is_active:
        raise _unauthorized("Unknown or disabled account")

    return user


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != "admin":
        raise HTTPException(status_code=403, detail="Admin only")
    return current_user


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def get_queue(request: Request) -> TaskQueue:
    return request.app.state.queue


def get_store(request: Request) -> CounterStore:
    return request.app.state.store


def _bearer(request: Request) -> str | None:
    header = request.headers.get("Authorization") or ""
    scheme, _, value = header.partition(" ")
    return value.strip() if scheme.lower() == "bearer" and value.strip() else None


def _verified_bearer(request: Request) -> str | None:
    token = _bearer(request)
    if token is None:
        return None
    try:
        decode_token(token)
    except TokenError:
        return None
    return token


async def rate_limit(request: Request, store: CounterStore = Depends(get_store)) -> None:
    # unverifiable tokens fall back to the IP bucket
    config = request.app.state.settings
    limiter = RateLimiter(store, per_ip=config.RATE_LIMIT_PER_IP, per_token=config.RATE_LIMIT_PER_TOKEN)
    ip = request.client.host if request.client else None
    try:
        await limiter.check(ip, _verified_bearer(request))
    except RateLimitExceeded as e:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(e))
