from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from fastapi import Depends, HTTPException
from starlette.requests import Request

from contractsign.config import get_settings
from contractsign.security.jwt import JWTError, decode_hs256

ADMIN_ROLES = {"admin", "superuser"}


@dataclass(frozen=True)
class CurrentUser:
    id: str
    username: str
    email: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    is_superuser: bool = False

    @property
    def is_admin(self) -> bool:
        roles = {str(role).strip().lower() for role in (self.roles or [])}
        return self.is_superuser or bool(roles & ADMIN_ROLES)


SYSTEM_USER = CurrentUser(
    id="system", username="system", roles=["admin"], is_superuser=True
)


def _get_bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("authorization") or request.headers.get("Authorization")
    if not auth:
        return None
    parts = auth.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def _auth_mode() -> str:
    mode = (get_settings().AUTH_MODE or "optional").strip().lower()
    if mode not in {"disabled", "optional", "required"}:
        return "optional"
    return mode


def get_current_user_optional(request: Request) -> Optional[CurrentUser]:
    settings = get_settings()
    mode = _auth_mode()
    if mode == "disabled":
        return SYSTEM_USER

    token = _get_bearer_token(request)
    if not token:
        if mode == "required":
            raise HTTPException(status_code=401, detail="Missing bearer token")
        return None

    try:
        payload = decode_hs256(
            token, secret=settings.JWT_SECRET_KEY, leeway_seconds=settings.AUTH_LEEWAY_SECONDS
        )
    except JWTError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e

    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="Invalid token claims")

    roles = payload.get("roles") or []
    if not isinstance(roles, list):
        raise HTTPException(status_code=401, detail="Invalid roles claim")

    return CurrentUser(
        id=str(sub),
        username=str(payload.get("username") or f"user-{sub}"),
        email=payload.get("email"),
        roles=[str(role) for role in roles],
        is_superuser=bool(payload.get("is_superuser", False)),
    )


def get_current_user(
    user: Optional[CurrentUser] = Depends(get_current_user_optional),
) -> CurrentUser:
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def ensure_admin(user: CurrentUser) -> None:
    roles = {str(role).strip().lower() for role in (getattr(user, "roles", None) or [])}
    if not (roles & ADMIN_ROLES or getattr(user, "is_superuser", False)):
        raise HTTPException(status_code=403, detail="Admin permission required")
