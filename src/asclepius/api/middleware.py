"""Middleware: optional API key check on every /api/v1 route.

The key may be sent as ``Authorization: Bearer <key>`` or ``X-API-Key: <key>``.
"""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from asclepius.config import Settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"

_bearer_scheme = HTTPBearer(auto_error=False)
_header_scheme = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


def _presented_keys(bearer: HTTPAuthorizationCredentials | None, header_key: str | None) -> list[str]:
    keys = [header_key] if header_key else []
    if bearer is not None:
        keys.append(bearer.credentials)
    return keys


async def verify_api_key(
    request: Request,
    bearer: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
    header_key: Annotated[str | None, Depends(_header_scheme)],
) -> None:
    """Reject the request unless it presents ASCLEPIUS_API_KEY (no-op when unset)."""
    settings: Settings = request.app.state.settings
    expected = settings.api_key
    if expected is None:
        return

    expected_bytes = expected.encode()
    if any(secrets.compare_digest(key.encode(), expected_bytes) for key in _presented_keys(bearer, header_key)):
        return

    client = request.client.host if request.client else "unknown"
    logger.warning("Rejected %s %s from %s: invalid or missing API key", request.method, request.url.path, client)
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing API key",
        headers={"WWW-Authenticate": "Bearer"},
    )
