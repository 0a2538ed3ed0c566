"""
Shared dependencies for routes: db engine, session cookie, auth helpers,
ledger client and nonce allocator singletons.
Import these in route modules so main.py stays minimal.
"""
import hmac
from functools import lru_cache
from typing import Dict, Optional

from fastapi import Depends, HTTPException, Request, status
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from claim_settlement.core.config import settings
from claim_settlement.models.user import User
from claim_settlement.services.chain import LedgerClient
from claim_settlement.services.nonce import NonceAllocator, get_allocator

engine = create_engine(settings.database_url, echo=False, future=True, pool_pre_ping=True) if settings.database_url else None


def get_engine() -> Engine:
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database not configured")
    return engine


@lru_cache(maxsize=1)
def get_ledger() -> LedgerClient:
    return LedgerClient.from_settings(settings)


def get_nonce_allocator() -> Optional[NonceAllocator]:
    """The process allocator, or None when the ledger isn't configured (stats still work)."""
    try:
        return get_allocator(get_ledger())
    except Exception:
        return None


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(settings.secret_key, salt="claims-session")


def sign_session(data: Dict) -> str:
    return _serializer().dumps(data)


def read_session(token: Optional[str]) -> Optional[Dict]:
    if not token:
        return None
    try:
        return _serializer().loads(token, max_age=settings.session_ttl_seconds)
    except (BadSignature, SignatureExpired):
        return None


def current_user(request: Request, eng: Engine = Depends(get_engine)) -> Optional[Dict]:
    data = read_session(request.cookies.get(settings.session_cookie))
    if not data or data.get("uid") is None:
        return None
    with Session(eng) as session:
        user = session.get(User, data.get("uid"))
        if not user or not user.is_active:
            return None
        return {
            "id": user.id,
            "username": user.username,
            "wallet_address": user.wallet_address,
            "role": user.role,
        }


def require_user(user: Optional[Dict] = Depends(current_user)) -> Dict:
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return user


def require_admin(user: Optional[Dict] = Depends(current_user)) -> Dict:
    """Require admin authentication. Raises HTTPException if not authenticated or not admin."""
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    if user.get("role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user


def require_cron_secret(request: Request) -> None:
    """Bearer CRON_SECRET check; open when CRON_SECRET is unset (local dev)."""
    if not settings.cron_secret:
        return None
    header = request.headers.get("authorization") or ""
    expected = f"Bearer {settings.cron_secret}"
    if not hmac.compare_digest(header.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return None
