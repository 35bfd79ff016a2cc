"""Middleware: API key authentication for the classification routes.

When CLASSIFYX_API_KEY is set, ``/classify``, ``/classify-image`` and
``/model`` require the key, sent either as ``Authorization: Bearer <key>`` or
as ``X-API-Key: <key>``. ``/health`` stays open so liveness checks work
without credentials.
"""

from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"

_bearer_scheme = HTTPBearer(auto_error=False)
_header_scheme = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


def presented_key(
    bearer: HTTPAuthorizationCredentials | None,
    header_key: str | None,
) -> str | None:
    """Return the key the client sent, preferring the Authorization header."""
    if bearer is not None:
        return bearer.credentials
    return header_key


def key_matches(presented: str | None, expected: str) -> bool:
    if presented is None:
        return False
    return secrets.compare_digest(presented.encode(), expected.encode())


async def require_api_key(
    request: Request,
    bearer: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
    header_key: Annotated[str | None, Depends(_header_scheme)],
) -> None:
    """Reject the request unless it carries the configured API key."""
    expected: str | None = request.app.state.settings.api_key
    if expected is None:
        return

    if not key_matches(presented_key(bearer, header_key), expected):
        logger.warning("Rejected unauthenticated request to %s", request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
