"""
In-Memory Repository

Holds Users, Groups and Memberships in process memory. Every mutation runs
against a working copy of the data set under a lock and is swapped in only
when it completes, so a failed call never leaves partial state and readers
always see a committed snapshot.
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..errors import BadRequest, Conflict, NotFound
from ..models.resources import (
    GROUP_FILTER_ATTRIBUTES,
    USER_FILTER_ATTRIBUTES,
    Group,
    GroupDraft,
    GroupResource,
    Membership,
    ResourceRef,
    User,
    UserDraft,
    UserResource,
)
from .filters import check_attribute, strip_quotes
from .patch import PatchPlan, merge_memberships
from .repository import ResourceRepository, paginate, require_text, storage_boundary

logger = logging.getLogger(__name__)


def new_id() -> str:
    return str(uuid.uuid4())


class Dataset:
    """
    The three tables of the store.

    Rows are treated as immutable: an update replaces the row object, so a
    shallow copy of the lists is an independent working copy.
    """

    def __init__(
        self,
        users: Optional[List[User]] = None,
        groups: Optional[List[Group]] = None,
        memberships: Optional[List[Membership]] = None,
    ):
        self.users = users or []
        self.groups = groups or []
        self.memberships = memberships or []

    def copy(self) -> "Dataset":
        return Dataset(list(self.users), list(self.groups), list(self.memberships))

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Dataset":
        return cls(
            users=[User.model_validate(row) for row in document.get("users", [])],
            groups=[Group.model_validate(row) for row in document.get("groups", [])],
            memberships=[Membership.model_validate(row) for row in document.get("memberships", [])],
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "users": [user.model_dump() for user in self.users],
            "groups": [group.model_dump() for group in self.groups],
            "memberships": [membership.model_dump() for membership in self.memberships],
        }

    # Lookups

    def find_user(self, user_id: str) -> Optional[User]:
        return next((user for user in self.users if user.id == user_id), None)

    def find_user_by_name(self, user_name: str) -> Optional[User]:
        return next((user for user in self.users if user.userName == user_name), None)

    def find_group(self, group_id: str) -> Optional[Group]:
        return next((group for group in self.groups if group.id == group_id), None)

    def find_group_by_name(self, display_name: str) -> Optional[Group]:
        return next((group for group in self.groups if group.displayName == display_name), None)

    def group_ids_for_user(self, user_id: str) -> List[str]:
        return [m.groupId for m in self.memberships if m.userId == user_id]

    def user_ids_for_group(self, group_id: str) -> List[str]:
        return [m.userId for m in self.memberships if m.groupId == group_id]

    # Derived views

    def groups_for_user(self, user_id: str) -> List[ResourceRef]:
        refs = []
        for group_id in self.group_ids_for_user(user_id):
            group = self.find_group(group_id)
            if group:
                refs.append(ResourceRef(value=group.id, display=group.display))
        return refs

    def members_for_group(self, group_id: str) -> List[ResourceRef]:
        refs = []
        for user_id in self.user_ids_for_group(group_id):
            user = self.find_user(user_id)
            if user:
                refs.append(ResourceRef(value=user.id, display=user.display))
        return refs

    def hydrate_user(self, user: User) -> UserResource:
        return UserResource(**user.model_dump(), groups=self.groups_for_user(user.id))

    def hydrate_group(self, group: Group) -> GroupResource:
        return GroupResource(**group.model_dump(), members=self.members_for_group(group.id))

    # Mutations

    def replace_user(self, user: User) -> None:
        self.users = [user if row.id == user.id else row for row in self.users]

    def replace_group(self, group: Group) -> None:
        self.groups = [group if row.id == group.id else row for row in self.groups]

    def set_groups_for_user(self, user_id: str, group_ids: List[str]) -> None:
        current = self.group_ids_for_user(user_id)
        self.memberships = [
            m for m in self.memberships if m.userId != user_id or m.groupId in group_ids
        ]
        for group_id in group_ids:
            if group_id not in current:
                self.memberships.append(Membership(id=new_id(), groupId=group_id, userId=user_id))

    def set_members_for_group(self, group_id: str, user_ids: List[str]) -> None:
        current = self.user_ids_for_group(group_id)
        self.memberships = [
            m for m in self.memberships if m.groupId != group_id or m.userId in user_ids
        ]
        for user_id in user_ids:
            if user_id not in current:
                self.memberships.append(Membership(id=new_id(), groupId=group_id, userId=user_id))

    def remove_user(self, user_id: str) -> None:
        self.memberships = [m for m in self.memberships if m.userId != user_id]
        self.users = [user for user in self.users if user.id != user_id]

    def remove_group(self, group_id: str) -> None:
        self.memberships = [m for m in self.memberships if m.groupId != group_id]
        self.groups = [group for group in self.groups if group.id != group_id]

    # Reference resolution

    def resolve_group_ref(self, ref: ResourceRef, strict: bool = True) -> Optional[str]:
        """
        Resolve a group reference by id, then by display name.

        Raises:
            BadRequest: If ``strict`` and no existing group matches
        """
        if ref.value and self.find_group(ref.value):
            return ref.value
        if ref.display:
            group = self.find_group_by_name(ref.display)
            if group:
                return group.id
        if strict:
            raise BadRequest(f"Group with id {ref.value or ref.display} not found")
        return None

    def resolve_user_ref(self, ref: ResourceRef, strict: bool = True) -> Optional[str]:
        if ref.value and self.find_user(ref.value):
            return ref.value
        if strict:
            raise BadRequest(f"User with id {ref.value} not found")
        return None


class InMemoryRepository(ResourceRepository):
    """
    Repository backed by process memory.

    Example usage:
        repo = InMemoryRepository()
        user = repo.create_user(parse_user({"userName": "jane@example.com"}))
        repo.get_user(user.id)
    """

    backend_name = "memory"

    def __init__(self, dataset: Optional[Dataset] = None):
        self._data = dataset or Dataset()
        self._lock = threading.Lock()

    @contextmanager
    def _transaction(self) -> Iterator[Dataset]:
        """
        Yield a working copy of the data set and commit it on success.

        Holding the lock for the whole call serializes mutations; an
        exception inside the block discards the working copy.
        """
        with self._lock:
            working = self._data.copy()
            yield working
            self._commit(working)

    def _commit(self, working: Dataset) -> None:
        self._data = working

    def _snapshot(self) -> Dataset:
        return self._data

    # Users

    @storage_boundary
    def list_users(self, start_index: Optional[int] = 1, count: Optional[int] = None) -> Tuple[List[UserResource], int]:
        data = self._snapshot()
        if not data.users:
            raise NotFound("No users found")
        page = paginate(data.users, start_index, count)
        return [data.hydrate_user(user) for user in page], len(data.users)

    @storage_boundary
    def get_user(self, user_id: str) -> UserResource:
        data = self._snapshot()
        user = data.find_user(str(user_id))
        if user is None:
            raise NotFound("User not found")
        return data.hydrate_user(user)

    @storage_boundary
    def filter_users(
        self, attribute: str, value: str, start_index: Optional[int] = 1, count: Optional[int] = None
    ) -> Tuple[List[UserResource], int]:
        check_attribute(attribute, USER_FILTER_ATTRIBUTES, "User")
        value = strip_quotes(value)
        data = self._snapshot()
        matches = [user for user in data.users if str(getattr(user, attribute)) == value]
        if not matches:
            raise NotFound("No users found matching filter")
        page = paginate(matches, start_index, count)
        return [data.hydrate_user(user) for user in page], len(matches)

    @storage_boundary
    def create_user(self, draft: UserDraft) -> UserResource:
        require_text(draft.userName, "userName")
        with self._transaction() as data:
            if data.find_user_by_name(draft.userName):
                raise Conflict("User Already Exists")
            user = User(id=new_id(), **draft.scalars())
            data.users.append(user)
            if draft.groups:
                group_ids = []
                for ref in draft.groups:
                    group_id = data.resolve_group_ref(ref)
                    if group_id not in group_ids:
                        group_ids.append(group_id)
                data.set_groups_for_user(user.id, group_ids)
            created = data.hydrate_user(user)
        logger.info(f"Created user {created.id} ({created.userName})")
        return created

    @storage_boundary
    def update_user(self, user_id: str, draft: UserDraft) -> UserResource:
        require_text(draft.userName, "userName")
        with self._transaction() as data:
            existing = data.find_user(str(user_id))
            if existing is None:
                raise NotFound("User not found")
            duplicate = data.find_user_by_name(draft.userName)
            if duplicate and duplicate.id != existing.id:
                raise Conflict("User Already Exists")
            user = User(id=existing.id, **draft.scalars())
            data.replace_user(user)
            if draft.groups is not None:
                group_ids = []
                for ref in draft.groups:
                    group_id = data.resolve_group_ref(ref)
                    if group_id not in group_ids:
                        group_ids.append(group_id)
                data.set_groups_for_user(user.id, group_ids)
            updated = data.hydrate_user(user)
        logger.info(f"Updated user {updated.id}")
        return updated

    @storage_boundary
    def patch_user(self, user_id: str, plan: PatchPlan) -> UserResource:
        with self._transaction() as data:
            existing = data.find_user(str(user_id))
            if existing is None:
                raise NotFound("User not found")
            user = existing
            if plan.attributes:
                user = existing.model_copy(update=plan.attributes)
                require_text(user.userName, "userName")
                duplicate = data.find_user_by_name(user.userName)
                if duplicate and duplicate.id != user.id:
                    raise Conflict("User Already Exists")
                data.replace_user(user)
            if plan.touches_members:
                group_ids = merge_memberships(
                    data.group_ids_for_user(user.id), plan, data.resolve_group_ref
                )
                data.set_groups_for_user(user.id, group_ids)
            patched = data.hydrate_user(user)
        logger.info(f"Patched user {patched.id}: {sorted(plan.attributes)}")
        return patched

    @storage_boundary
    def delete_user(self, user_id: str) -> None:
        with self._transaction() as data:
            if data.find_user(str(user_id)) is None:
                raise NotFound("User not found")
            data.remove_user(str(user_id))
        logger.info(f"Deleted user {user_id}")

    @storage_boundary
    def get_memberships_for_user(self, user_id: str) -> List[ResourceRef]:
        return self._snapshot().groups_for_user(str(user_id))

    @storage_boundary
    def count_users(self) -> int:
        return len(self._snapshot().users)

    # Groups

    @storage_boundary
    def list_groups(self, start_index: Optional[int] = 1, count: Optional[int] = None) -> Tuple[List[GroupResource], int]:
        data = self._snapshot()
        if not data.groups:
            raise NotFound("No groups found")
        page = paginate(data.groups, start_index, count)
        return [data.hydrate_group(group) for group in page], len(data.groups)

    @storage_boundary
    def get_group(self, group_id: str) -> GroupResource:
        data = self._snapshot()
        group = data.find_group(str(group_id))
        if group is None:
            raise NotFound("Group not found")
        return data.hydrate_group(group)

    @storage_boundary
    def filter_groups(
        self, attribute: str, value: str, start_index: Optional[int] = 1, count: Optional[int] = None
    ) -> Tuple[List[GroupResource], int]:
        check_attribute(attribute, GROUP_FILTER_ATTRIBUTES, "Group")
        value = strip_quotes(value)
        data = self._snapshot()
        matches = [group for group in data.groups if str(getattr(group, attribute)) == value]
        if not matches:
            raise NotFound("No groups found matching filter")
        page = paginate(matches, start_index, count)
        return [data.hydrate_group(group) for group in page], len(matches)

    @storage_boundary
    def create_group(self, draft: GroupDraft) -> GroupResource:
        require_text(draft.displayName, "displayName")
        with self._transaction() as data:
            if data.find_group_by_name(draft.displayName):
                raise Conflict("Group Already Exists")
            group = Group(id=new_id(), **draft.scalars())
            data.groups.append(group)
            if draft.members:
                user_ids = []
                for ref in draft.members:
                    user_id = data.resolve_user_ref(ref)
                    if user_id not in user_ids:
                        user_ids.append(user_id)
                data.set_members_for_group(group.id, user_ids)
            created = data.hydrate_group(group)
        logger.info(f"Created group {created.id} ({created.displayName})")
        return created

    @storage_boundary
    def update_group(self, group_id: str, draft: GroupDraft) -> GroupResource:
        require_text(draft.displayName, "displayName")
        with self._transaction() as data:
            existing = data.find_group(str(group_id))
            if existing is None:
                raise NotFound("Group not found")
            duplicate = data.find_group_by_name(draft.displayName)
            if duplicate and duplicate.id != existing.id:
                raise Conflict("Group Already Exists")
            group = Group(id=existing.id, **draft.scalars())
            data.replace_group(group)
            if draft.members is not None:
                user_ids = []
                for ref in draft.members:
                    user_id = data.resolve_user_ref(ref)
                    if user_id not in user_ids:
                        user_ids.append(user_id)
                data.set_members_for_group(group.id, user_ids)
            updated = data.hydrate_group(group)
        logger.info(f"Updated group {updated.id}")
        return updated

    @storage_boundary
    def patch_group(self, group_id: str, plan: PatchPlan) -> GroupResource:
        with self._transaction() as data:
            existing = data.find_group(str(group_id))
            if existing is None:
                raise NotFound("Group not found")
            group = existing
            if plan.attributes:
                group = existing.model_copy(update=plan.attributes)
                require_text(group.displayName, "displayName")
                duplicate = data.find_group_by_name(group.displayName)
                if duplicate and duplicate.id != group.id:
                    raise Conflict("Group Already Exists")
                data.replace_group(group)
            if plan.touches_members:
                user_ids = merge_memberships(
                    data.user_ids_for_group(group.id), plan, data.resolve_user_ref
                )
                data.set_members_for_group(group.id, user_ids)
            patched = data.hydrate_group(group)
        logger.info(f"Patched group {patched.id}")
        return patched

    @storage_boundary
    def delete_group(self, group_id: str) -> None:
        with self._transaction() as data:
            if data.find_group(str(group_id)) is None:
                raise NotFound("Group not found")
            data.remove_group(str(group_id))
        logger.info(f"Deleted group {group_id}")

    @storage_boundary
    def get_members_for_group(self, group_id: str) -> List[ResourceRef]:
        return self._snapshot().members_for_group(str(group_id))

    @storage_boundary
    def count_groups(self) -> int:
        return len(self._snapshot().groups)
