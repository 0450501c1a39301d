"""
Resource Repository

The storage contract every backend (memory, file, sql) implements. The
repository is the single source of truth for Users, Groups and their
Memberships; all derived ``groups``/``members`` views are computed from the
live Membership set on every read.

Every public operation either returns a domain result or raises one of the
typed errors in ``scim_server.errors``. Storage exceptions never escape:
``storage_boundary`` converts them to InternalError.
"""

import functools
import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Sequence, Tuple, TypeVar

from ..errors import BadRequest, InternalError, SCIMException
from ..models.resources import (
    GroupDraft,
    GroupResource,
    ResourceRef,
    UserDraft,
    UserResource,
)
from .patch import GROUP_SCHEMA, USER_SCHEMA, PatchPlan, plan_for_attribute

logger = logging.getLogger(__name__)

T = TypeVar("T")


def storage_boundary(method):
    """
    Wrap a repository method so only SCIM errors leave it.

    Any other exception is handed to the repository's ``translate_error``
    hook, which logs it and returns the SCIM error to raise instead.
    """

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except SCIMException:
            raise
        except Exception as e:
            raise self.translate_error(method.__name__, e) from e

    return wrapper


def page_bounds(start_index: Optional[int], count: Optional[int], total: int) -> Tuple[int, int]:
    """
    Convert SCIM 1-based pagination into a ``[start, stop)`` slice.

    ``start_index`` defaults to 1 and is clamped to at least 1; ``count``
    defaults to everything remaining and is clamped to at least 0.
    """
    start = 1 if start_index is None else max(int(start_index), 1)
    if count is None:
        count = max(total - (start - 1), 0)
    count = max(int(count), 0)
    return start - 1, start - 1 + count


def paginate(items: Sequence[T], start_index: Optional[int], count: Optional[int]) -> List[T]:
    start, stop = page_bounds(start_index, count, len(items))
    return list(items[start:stop])


def require_text(value: Any, attribute: str) -> str:
    """Reject an empty unique key (userName, displayName)."""
    if not isinstance(value, str) or not value.strip():
        raise BadRequest(f"'{attribute}' is required")
    return value


def display_name_for(given_name: Optional[str], family_name: Optional[str]) -> str:
    return f"{given_name or ''} {family_name or ''}".strip()


class ResourceRepository(ABC):
    """
    Polymorphic storage interface for SCIM Users, Groups and Memberships.

    Implementations: InMemoryRepository, FileRepository, SQLRepository.
    Mutations touching more than one row are atomic; a failed call leaves
    no partial state behind.
    """

    backend_name = "abstract"

    def translate_error(self, operation: str, error: Exception) -> SCIMException:
        logger.error(f"{type(self).__name__}.{operation} failed: {error}")
        return InternalError(f"Storage failure during {operation}")

    # Users

    @abstractmethod
    def list_users(self, start_index: Optional[int] = 1, count: Optional[int] = None) -> Tuple[List[UserResource], int]:
        """Return one page of users and the total number of users."""

    @abstractmethod
    def get_user(self, user_id: str) -> UserResource:
        """Return one user or raise NotFound."""

    @abstractmethod
    def filter_users(
        self, attribute: str, value: str, start_index: Optional[int] = 1, count: Optional[int] = None
    ) -> Tuple[List[UserResource], int]:
        """Return users whose ``attribute`` equals ``value``; NotFound if none match."""

    @abstractmethod
    def create_user(self, draft: UserDraft) -> UserResource:
        """Create a user and its requested memberships; Conflict on duplicate userName."""

    @abstractmethod
    def update_user(self, user_id: str, draft: UserDraft) -> UserResource:
        """Replace a user's scalars, and its memberships when ``draft.groups`` is set."""

    @abstractmethod
    def patch_user(self, user_id: str, plan: PatchPlan) -> UserResource:
        """Apply a reduced PATCH plan to a user in one transaction."""

    @abstractmethod
    def delete_user(self, user_id: str) -> None:
        """Delete a user and every membership that references it."""

    @abstractmethod
    def get_memberships_for_user(self, user_id: str) -> List[ResourceRef]:
        """Return ``{value: groupId, display: displayName}`` for each group of a user."""

    @abstractmethod
    def count_users(self) -> int:
        """Return the number of live users."""

    def patch_user_attribute(self, user_id: str, attribute: str, value: Any) -> UserResource:
        """Replace a single attribute, e.g. ``patch_user_attribute(id, "active", False)``."""
        return self.patch_user(user_id, plan_for_attribute(attribute, value, USER_SCHEMA))

    # Groups

    @abstractmethod
    def list_groups(self, start_index: Optional[int] = 1, count: Optional[int] = None) -> Tuple[List[GroupResource], int]:
        """Return one page of groups and the total number of groups."""

    @abstractmethod
    def get_group(self, group_id: str) -> GroupResource:
        """Return one group or raise NotFound."""

    @abstractmethod
    def filter_groups(
        self, attribute: str, value: str, start_index: Optional[int] = 1, count: Optional[int] = None
    ) -> Tuple[List[GroupResource], int]:
        """Return groups whose ``attribute`` equals ``value``; NotFound if none match."""

    @abstractmethod
    def create_group(self, draft: GroupDraft) -> GroupResource:
        """Create a group and its requested memberships; Conflict on duplicate displayName."""

    @abstractmethod
    def update_group(self, group_id: str, draft: GroupDraft) -> GroupResource:
        """Replace a group's scalars, and its members when ``draft.members`` is set."""

    @abstractmethod
    def patch_group(self, group_id: str, plan: PatchPlan) -> GroupResource:
        """Apply a reduced PATCH plan to a group in one transaction."""

    @abstractmethod
    def delete_group(self, group_id: str) -> None:
        """Delete a group and every membership that references it."""

    @abstractmethod
    def get_members_for_group(self, group_id: str) -> List[ResourceRef]:
        """Return ``{value: userId, display: "given family"}`` for each member of a group."""

    @abstractmethod
    def count_groups(self) -> int:
        """Return the number of live groups."""

    def patch_group_attribute(self, group_id: str, attribute: str, value: Any) -> GroupResource:
        return self.patch_group(group_id, plan_for_attribute(attribute, value, GROUP_SCHEMA))

    def close(self) -> None:
        """Release storage handles. The default has nothing to release."""
