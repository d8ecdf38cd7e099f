from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt

from app.core.config import settings


class TokenError(Exception):
    pass


def create_access_token(*, user_id: int, role: str, minutes: int = 30) -> str:
    # tokens are issued by the account service; this is used by operators' tooling and tests
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "type": "access",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=minutes)).timestamp()),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def decode_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except jwt.ExpiredSignatureError as e:
        raise TokenError("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise TokenError("Invalid token") from e

    if payload.get("type", "access") != "access":
        raise TokenError("Not an access token")
    return payload
