import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException

from myhometech.core.config import get_settings

logger = logging.getLogger(__name__)

ROLE_CLIENT = "CLIENT"
ROLE_TECHNICIAN = "TECHNICIAN"
ROLE_ADMIN = "ADMIN"
ALLOWED_ROLES = {ROLE_CLIENT, ROLE_TECHNICIAN, ROLE_ADMIN}


@dataclass
class CurrentUser:
    id: int
    role: str
    email: Optional[str] = None


def _extract_role(payload: dict) -> Optional[str]:
    raw = payload.get("role")
    if raw is None:
        return None
    role = str(raw).strip().upper()
    if role not in ALLOWED_ROLES:
        return None
    return role


def _extract_identity_id(payload: dict) -> Optional[int]:
    raw = payload.get("sub")
    if raw is None or isinstance(raw, bool):
        return None
    try:
        identity_id = int(str(raw).strip())
    except ValueError:
        return None
    return identity_id if identity_id > 0 else None


def _decode_options(settings):
    """Build shared audience kwargs + options dict."""
    audience = (settings.jwt_audience or "").strip()
    decode_kwargs = {}
    options = {}
    if audience:
        decode_kwargs["audience"] = audience
        options["verify_aud"] = True
    else:
        options["verify_aud"] = False
    return decode_kwargs, options


def decode_token(token: str) -> Optional[dict]:
    settings = get_settings()
    decode_kwargs, options = _decode_options(settings)
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            options=options,
            **decode_kwargs,
        )
    except jwt.InvalidTokenError as exc:
        logger.debug("Token verification failed: %s", exc)
        return None


def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> CurrentUser:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "Missing bearer token")

    token = authorization.split(" ", 1)[1].strip()
    settings = get_settings()
    if not settings.jwt_secret:
        raise HTTPException(500, "JWT_SECRET is not configured")

    payload = decode_token(token)
    if payload is None:
        raise HTTPException(401, "Invalid token")

    identity_id = _extract_identity_id(payload)
    if identity_id is None:
        raise HTTPException(401, "Invalid token")

    role = _extract_role(payload)
    if not role:
        raise HTTPException(403, "Missing role")

    return CurrentUser(id=identity_id, role=role, email=payload.get("email"))


def require_roles(*roles: str):
    def _dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            raise HTTPException(403, "Forbidden")
        return user

    return _dependency
