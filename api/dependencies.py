"""FastAPI dependency injection for the authenticated owner and the pipeline."""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from api.auth import decode_token
from journal_rag.errors import ConfigurationError
from journal_rag.orchestrator import PipelineContext

logger = logging.getLogger(__name__)

# Bearer scheme; Swagger UI shows the "Authorize" button for it
_bearer_scheme = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> Dict[str, Any]:
    """Extract and verify the JWT from the Authorization header.

    Raises:
        HTTPException 401: If the token is invalid, expired, or has no subject.
        ConfigurationError: If no signing secret is configured (mapped to 503).
    """
    try:
        payload = decode_token(credentials.credentials)
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing subject",
        )

    return payload


async def get_current_owner(
    user: Dict[str, Any] = Depends(get_current_user),
) -> str:
    """The journal owner every query is scoped to: the verified token subject."""
    return str(user["sub"])


async def get_pipeline(request: Request) -> PipelineContext:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        logger.error("Pipeline context missing from app state")
        raise ConfigurationError("Query pipeline is not initialised")
    return pipeline
