"""Bearer-token helpers. The requester id is always taken from a verified token."""

from __future__ import annotations

import os
import time
from typing import Any, Dict, Optional

from jose import jwt

from journal_rag.errors import ConfigurationError

ACCESS_TOKEN_TTL_SECONDS = 60 * 60


def _jwt_secret() -> str:
    secret = os.getenv("JWT_SECRET")
    if not secret:
        raise ConfigurationError("JWT_SECRET environment variable is required.")
    return secret


def _jwt_algorithm() -> str:
    return os.getenv("JWT_ALGORITHM", "HS256")


def create_access_token(
    owner_id: str,
    extra_claims: Optional[Dict[str, Any]] = None,
    ttl_seconds: int = ACCESS_TOKEN_TTL_SECONDS,
) -> str:
    """Sign a token whose ``sub`` is the journal owner."""
    now = int(time.time())
    payload: Dict[str, Any] = {"sub": owner_id, "iat": now, "exp": now + ttl_seconds}
    payload.update(extra_claims or {})
    return jwt.encode(payload, _jwt_secret(), algorithm=_jwt_algorithm())


def decode_token(token: str) -> Dict[str, Any]:
    """Verify signature and expiry; raises ``jose.JWTError`` on a bad token."""
    return jwt.decode(token, _jwt_secret(), algorithms=[_jwt_algorithm()])


__all__ = ["ACCESS_TOKEN_TTL_SECONDS", "create_access_token", "decode_token"]
