"""
Bearer token observation for the SCIM server.

Identity providers send a bearer token with every SCIM request. This server
does not authenticate: the token is observed and logged (as a short
fingerprint, never in full) so operators can tell provisioning clients
apart, and the request always proceeds.
"""

import hashlib
import logging
from typing import Annotated, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)

# HTTP Bearer scheme that never rejects a request
security = HTTPBearer(auto_error=False)


def token_fingerprint(token: str) -> str:
    """Return a short, non-reversible identifier for a token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]


def observe_bearer_token(
    request: Request,
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Optional[str]:
    """
    Log the bearer token presented with a SCIM request.

    This function is used as a FastAPI dependency on every SCIM route. It
    never raises: a missing or malformed Authorization header is logged and
    the request continues.

    Returns:
        The token fingerprint, or None when no bearer token was sent
    """
    if credentials is None or not credentials.credentials:
        logger.debug(f"{request.method} {request.url.path} without bearer token")
        return None

    fingerprint = token_fingerprint(credentials.credentials)
    logger.debug(f"{request.method} {request.url.path} bearer token {fingerprint}")
    return fingerprint
