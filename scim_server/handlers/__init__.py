"""
Request handlers for the SCIM server.
"""

from .auth import observe_bearer_token

__all__ = ["observe_bearer_token"]
