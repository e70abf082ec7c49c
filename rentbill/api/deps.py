# FILE: rentbill/api/deps.py
from __future__ import annotations

from typing import Generator, Optional

from fastapi import Header, HTTPException
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from rentbill.core.config import settings
from rentbill.db.session import SessionLocal
from rentbill.services.order_provider import DbOrderProvider, OrderProvider


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_order_provider() -> OrderProvider:
    return DbOrderProvider()


# =========================================================
# AUTH HELPERS
# =========================================================
def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def _decode_token(raw_token: str) -> dict:
    try:
        return jwt.decode(raw_token,
                          settings.JWT_SECRET,
                          algorithms=[settings.JWT_ALG])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")


def current_user_id(authorization: Optional[str] = Header(None)) -> int:
    """
    Acting user from the identity provider's bearer token (``uid`` or
    ``sub`` claim). Recorded as created_by / requester_id.
    """
    token = _extract_bearer(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    payload = _decode_token(token)
    raw = payload.get("uid", payload.get("sub"))
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token subject")
