# clinic_billing/api/deps.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException
from jose import jwt, JWTError

from clinic_billing.core.config import settings
from clinic_billing.db.session import get_db  # noqa: F401  (re-exported for routers)


@dataclass(frozen=True)
class CurrentUser:
    id: int
    role: str


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


def current_user(authorization: Optional[str] = Header(None)) -> CurrentUser:
    """
    Token issuing lives elsewhere; here we only trust a signed token that
    carries the user id in `sub` and a `role` claim.
    """
    raw = _extract_bearer(authorization)
    if not raw:
        raise HTTPException(status_code=401, detail="Missing token")

    payload = _decode_token(raw)
    sub = payload.get("sub")
    try:
        user_id = int(sub)
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token payload")

    role = str(payload.get("role") or "").strip().upper()
    return CurrentUser(id=user_id, role=role)


def require_billing_user(
        user: CurrentUser = Depends(current_user)) -> CurrentUser:
    if user.role not in settings.BILLING_ROLES:
        raise HTTPException(status_code=403,
                            detail="Forbidden: billing role required")
    return user


def require_admin(user: CurrentUser = Depends(current_user)) -> CurrentUser:
    if user.role != "ADMIN":
        raise HTTPException(status_code=403, detail="Forbidden: admin only")
    return user
