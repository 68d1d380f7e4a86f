# core/security.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import HTTPException, Request, status

from core.config import settings


def _get_required_str(name: str, default: Optional[str] = None) -> str:
    v = getattr(settings, name, None)
    if isinstance(v, str) and v.strip():
        return v.strip()
    if default is not None:
        return default
    raise RuntimeError(f"Missing required setting: {name}")


JWT_SECRET = _get_required_str("JWT_SECRET", default="dev-change-me")
JWT_ALG = _get_required_str("JWT_ALG", default="HS256")

ACCESS_TTL_MIN = int(getattr(settings, "ACCESS_TOKEN_TTL_MIN", 60))
ACCESS_COOKIE = getattr(settings, "ACCESS_COOKIE_NAME", "access_token")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_access_token(
    *,
    sub: str,
    extra: Optional[Dict[str, Any]] = None,
    ttl_minutes: int = ACCESS_TTL_MIN,
) -> str:
    now = utcnow()
    payload: Dict[str, Any] = {
        "typ": "access",
        "sub": sub,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
    }
    if extra:
        payload.update(extra)
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def require_token_type(payload: Dict[str, Any], typ: str) -> Dict[str, Any]:
    if payload.get("typ") != typ:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Wrong token type (need {typ})",
        )
    if not payload.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token missing subject")
    return payload


def get_access_token_from_request(req: Request) -> Optional[str]:
    auth = req.headers.get("authorization") or req.headers.get("Authorization")
    if isinstance(auth, str):
        parts = auth.strip().split()
        if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1].strip():
            return parts[1].strip()

    return req.cookies.get(ACCESS_COOKIE)


def require_access_payload(req: Request) -> Dict[str, Any]:
    token = get_access_token_from_request(req)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    payload = decode_token(token)
    require_token_type(payload, "access")
    return payload


def require_user_id(req: Request) -> str:
    """FastAPI dependency: the authenticated caller's user id (`sub`)."""
    return str(require_access_payload(req)["sub"])
