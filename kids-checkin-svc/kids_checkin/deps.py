from __future__ import annotations
from datetime import datetime
from typing import Any, Callable, Dict, AsyncGenerator
from fastapi import Depends, Header, HTTPException, status
import time
import uuid
import httpx
import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .core.config import get_settings
from .models import UserRole, utcnow
from .services.checkin_requests import CheckInRequestEngine
from .services.notifications import NotificationPort, build_notifier

settings = get_settings()

STAFF_ROLES = {UserRole.STAFF.value, UserRole.ADMIN.value}

_JWKS: Dict[str, Any] | None = None
_JWKS_TS: float = 0.0
_JWKS_TTL: int = 3600

async def fetch_jwks() -> Dict[str, Any]:
    global _JWKS, _JWKS_TS
    now = time.time()
    if _JWKS is None or (now - _JWKS_TS) > _JWKS_TTL:
        async with httpx.AsyncClient() as client:
            r = await client.get(settings.auth_jwks_url, timeout=5.0)
            r.raise_for_status()
            _JWKS = r.json()
            _JWKS_TS = now
    return _JWKS

async def get_signing_key():
    from jwt.algorithms import RSAAlgorithm
    jwks = await fetch_jwks()
    key = jwks["keys"][0]
    return RSAAlgorithm.from_jwk(key)

async def decode_access_token(token: str) -> Dict[str, Any]:
    key = await get_signing_key()
    try:
        payload = jwt.decode(
            token, key=key, algorithms=["RS256"], issuer=settings.token_issuer, options={"verify_aud": False}
        )
    except Exception:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if "sub" not in payload or "role" not in payload:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return payload

async def get_claims(authorization: str | None = Header(default=None)) -> Dict[str, Any]:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    token = authorization.split(" ", 1)[1].strip()
    return await decode_access_token(token)

def actor_id(claims: Dict[str, Any]) -> uuid.UUID:
    try:
        return uuid.UUID(str(claims["sub"]))
    except (KeyError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token subject")

async def require_staff(claims: dict = Depends(get_claims)) -> Dict[str, Any]:
    if claims.get("role") not in STAFF_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Staff role required")
    return claims

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for s in get_session():
        yield s

def get_clock() -> Callable[[], datetime]:
    return utcnow

_notifier: NotificationPort | None = None
def get_notifier() -> NotificationPort:
    global _notifier
    if _notifier is None:
        _notifier = build_notifier(settings)
    return _notifier

async def get_engine(
    db: AsyncSession = Depends(get_db),
    notifier: NotificationPort = Depends(get_notifier),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> CheckInRequestEngine:
    return CheckInRequestEngine(db, notifier=notifier, clock=clock, settings=settings)
