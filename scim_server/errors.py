"""
SCIM Error Types

Typed failures raised by the repository and the PATCH interpreter. Each
error carries the HTTP status it maps to and a human readable detail, which
the envelope builder turns into a SCIM Error response.
"""

from typing import Optional


class SCIMException(Exception):
    """Base class for every failure that is reported to a SCIM client."""

    status: int = 500

    def __init__(self, detail: str, status: Optional[int] = None):
        self.detail = detail
        if status is not None:
            self.status = status
        super().__init__(detail)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(status={self.status}, detail={self.detail!r})"


class BadRequest(SCIMException):
    """Malformed JSON, unsupported filter attribute or missing operation value."""

    status = 400


class Forbidden(SCIMException):
    """PATCH operation the server explicitly does not support."""

    status = 403


class NotFound(SCIMException):
    """Resource id or filter yields no match."""

    status = 404


class Conflict(SCIMException):
    """Uniqueness violation on userName or displayName."""

    status = 409


class InternalError(SCIMException):
    """Storage failure or unexpected exception inside the repository."""

    status = 500
