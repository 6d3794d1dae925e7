# app/core/security.py
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from fastapi import HTTPException, status
from fastapi.security import HTTPBearer
from jose import JWTError, jwt

from app.core.config import settings

bearer_scheme = HTTPBearer(auto_error=True)


@dataclass(frozen=True)
class TokenClaims:
    user_id: uuid.UUID
    company_id: Optional[uuid.UUID]


def _normalize_token(token: str) -> str:
    """
    Tolerate copy-paste noise: whitespace, surrounding quotes, and a
    duplicated 'Bearer ' prefix.
    """
    if token is None:
        return ""

    t = token.strip()
    if (t.startswith('"') and t.endswith('"')) or (t.startswith("'") and t.endswith("'")):
        t = t[1:-1].strip()
    if t.lower().startswith("bearer "):
        t = t[7:].strip()
    return t


def _unauthorized(detail: str = "Invalid token") -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def create_access_token(
    user_id: uuid.UUID | str,
    company_id: uuid.UUID | str | None = None,
    expires_minutes: Optional[int] = None,
) -> str:
    """Issue an operator token. `cid` pins the token to one tenant."""
    now = datetime.now(timezone.utc)
    expire_dt = now + timedelta(minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode: dict[str, Any] = {
        "sub": str(user_id),
        "exp": int(expire_dt.timestamp()),
        "iat": int(now.timestamp()),
    }
    if company_id is not None:
        to_encode["cid"] = str(company_id)

    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> TokenClaims:
    token = _normalize_token(token)
    if not token:
        raise _unauthorized()

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"require_sub": True, "require_exp": True},
        )
    except JWTError:
        # expired, malformed, bad signature, wrong algorithm
        raise _unauthorized()

    try:
        user_id = uuid.UUID(str(payload.get("sub")))
        cid = payload.get("cid")
        company_id = uuid.UUID(str(cid)) if cid else None
    except ValueError:
        raise _unauthorized("Invalid token subject")

    return TokenClaims(user_id=user_id, company_id=company_id)
