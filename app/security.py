# app/security.py
"""Security dependencies resolving API keys into an authenticated principal."""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.config import DEV_API_KEY, DEV_API_KEY_ALLOWED, ENV
from app.db import get_db
from app.utils.apikey import find_valid_key
from app.utils.audit import log_audit
from app.utils.errors import error_response
from app.utils.time import utcnow


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, passed explicitly to every service call."""

    user_id: int
    api_key_id: int | None = None

    @property
    def actor(self) -> str:
        return f"user:{self.user_id}"


def _extract_key(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> str | None:
    """Read the key from ``Authorization: Bearer ...`` or ``X-API-Key``."""
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


def _unauthorized(code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=error_response(code, message))


def require_api_key(
    db: Session = Depends(get_db),
    token: str | None = Depends(_extract_key),
    dev_user_id: int | None = Header(default=None, alias="X-User-Id"),
) -> Principal:
    """Validate the API key and return the principal it belongs to."""
    if not token:
        raise _unauthorized("NO_API_KEY", "API key required.")

    # Legacy key: dev/test only, impersonates the user named in X-User-Id.
    if DEV_API_KEY and token == DEV_API_KEY:
        if not DEV_API_KEY_ALLOWED:
            raise _unauthorized("LEGACY_KEY_FORBIDDEN", "Legacy dev key disabled.")
        if dev_user_id is None:
            raise _unauthorized("DEV_USER_REQUIRED", "X-User-Id header required with the dev key.")
        log_audit(
            db,
            actor="legacy-apikey",
            action="LEGACY_API_KEY_USED",
            entity="User",
            entity_id=dev_user_id,
            data={"env": ENV},
        )
        db.commit()
        return Principal(user_id=dev_user_id)

    key = find_valid_key(db, token)
    if key is None:
        raise _unauthorized("UNAUTHORIZED", "Invalid or expired API key")
    if key.user is None or not key.user.is_active:
        raise _unauthorized("UNAUTHORIZED", "API key owner is inactive")

    key.last_used_at = utcnow()
    db.commit()
    return Principal(user_id=key.user_id, api_key_id=key.id)


__all__ = ["Principal", "require_api_key"]
