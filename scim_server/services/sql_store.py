"""
SQL Repository

Relational backend built on SQLAlchemy. Users, Groups and GroupMemberships
live in three tables; memberships cascade on delete of either endpoint and
are unique per (group, user). Every mutating call runs in one database
transaction that is rolled back on any failure.
"""

import logging
import threading
import uuid
from contextlib import contextmanager, nullcontext
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    delete,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from ..errors import BadRequest, Conflict, NotFound, SCIMException
from ..models.resources import (
    GROUP_FILTER_ATTRIBUTES,
    USER_FILTER_ATTRIBUTES,
    GroupDraft,
    GroupResource,
    ResourceRef,
    UserDraft,
    UserResource,
)
from .filters import check_attribute, strip_quotes
from .patch import PatchPlan, merge_memberships
from .repository import (
    ResourceRepository,
    display_name_for,
    page_bounds,
    require_text,
    storage_boundary,
)

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    __tablename__ = "scim_users"

    # Surrogate key preserves insertion order for pagination
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    user_name: Mapped[str] = mapped_column("userName", String(255), unique=True, nullable=False)
    given_name: Mapped[str] = mapped_column("givenName", String(255), default="")
    middle_name: Mapped[str] = mapped_column("middleName", String(255), default="")
    family_name: Mapped[str] = mapped_column("familyName", String(255), default="")
    email: Mapped[str] = mapped_column(String(255), default="")

    def to_resource(self, groups: List[ResourceRef]) -> UserResource:
        return UserResource(
            id=self.id,
            active=bool(self.active),
            userName=self.user_name,
            givenName=self.given_name or "",
            middleName=self.middle_name or "",
            familyName=self.family_name or "",
            email=self.email or "",
            groups=groups,
        )

    def assign(self, attributes: Dict[str, object]) -> None:
        for attribute, value in attributes.items():
            setattr(self, USER_COLUMNS[attribute], value)


class GroupRow(Base):
    __tablename__ = "scim_groups"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column("displayName", String(255), unique=True, nullable=False)

    def to_resource(self, members: List[ResourceRef]) -> GroupResource:
        return GroupResource(id=self.id, displayName=self.display_name, members=members)

    def assign(self, attributes: Dict[str, object]) -> None:
        for attribute, value in attributes.items():
            setattr(self, GROUP_COLUMNS[attribute], value)


class MembershipRow(Base):
    __tablename__ = "scim_group_memberships"
    __table_args__ = (UniqueConstraint("groupId", "userId", name="uq_membership_group_user"),)

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    group_id: Mapped[str] = mapped_column(
        "groupId", String(255), ForeignKey("scim_groups.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        "userId", String(255), ForeignKey("scim_users.id", ondelete="CASCADE"), nullable=False
    )


# SCIM attribute -> ORM attribute
USER_COLUMNS = {
    "id": "id",
    "active": "active",
    "userName": "user_name",
    "givenName": "given_name",
    "middleName": "middle_name",
    "familyName": "family_name",
    "email": "email",
}
GROUP_COLUMNS = {"id": "id", "displayName": "display_name"}


def _configure_sqlite_connection(dbapi_connection, connection_record):
    # Hand transaction control to the "begin" listener below
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _begin_sqlite_immediate(connection):
    """Take SQLite's write lock at BEGIN so read-modify-write transactions serialize."""
    connection.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create the SQLAlchemy engine for a database URL.

    In-memory SQLite shares one connection across threads so every session
    sees the same database. SQLite ignores ``SELECT ... FOR UPDATE``, so its
    transactions start with ``BEGIN IMMEDIATE`` instead.
    """
    kwargs = {"echo": echo}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, **kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _configure_sqlite_connection)
        event.listen(engine, "begin", _begin_sqlite_immediate)
    return engine


class SQLRepository(ResourceRepository):
    """
    Repository backed by a relational database.

    Example usage:
        repo = SQLRepository("sqlite:///scim.db")
        repo.list_groups()
    """

    backend_name = "sql"

    def __init__(self, database_url: str, echo: bool = False, create_tables: bool = True):
        self.database_url = database_url
        self.engine = build_engine(database_url, echo=echo)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        # SQLite allows one writer, and in-memory databases share one connection
        self._lock = threading.Lock() if self.engine.dialect.name == "sqlite" else None
        if create_tables:
            Base.metadata.create_all(self.engine)
        logger.info(f"SQL repository ready on {self.engine.url.render_as_string(hide_password=True)}")

    def translate_error(self, operation: str, error: Exception) -> SCIMException:
        if isinstance(error, IntegrityError):
            logger.warning(f"SQLRepository.{operation} integrity violation: {error.orig}")
            return Conflict("Resource violates a uniqueness constraint")
        return super().translate_error(operation, error)

    def close(self) -> None:
        self.engine.dispose()

    def _serialized(self):
        return self._lock if self._lock is not None else nullcontext()

    @contextmanager
    def _reading(self) -> Iterator[Session]:
        with self._serialized(), self._sessions() as session:
            yield session

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        """
        Run a mutation in one database transaction.

        Server databases lock the touched rows with ``FOR UPDATE``; SQLite
        relies on ``BEGIN IMMEDIATE`` plus the repository lock.
        """
        with self._serialized(), self._sessions.begin() as session:
            yield session

    # Row helpers

    @staticmethod
    def _user_row(session: Session, user_id: str, for_update: bool = False) -> Optional[UserRow]:
        query = select(UserRow).where(UserRow.id == str(user_id))
        if for_update:
            query = query.with_for_update()
        return session.scalars(query).first()

    @staticmethod
    def _group_row(session: Session, group_id: str, for_update: bool = False) -> Optional[GroupRow]:
        query = select(GroupRow).where(GroupRow.id == str(group_id))
        if for_update:
            query = query.with_for_update()
        return session.scalars(query).first()

    @staticmethod
    def _groups_for_users(session: Session, user_ids: Iterable[str]) -> Dict[str, List[ResourceRef]]:
        user_ids = list(user_ids)
        refs: Dict[str, List[ResourceRef]] = {user_id: [] for user_id in user_ids}
        if not user_ids:
            return refs
        rows = session.execute(
            select(MembershipRow.user_id, GroupRow.id, GroupRow.display_name)
            .join(GroupRow, GroupRow.id == MembershipRow.group_id)
            .where(MembershipRow.user_id.in_(user_ids))
            .order_by(MembershipRow.seq)
        )
        for user_id, group_id, display_name in rows:
            refs[user_id].append(ResourceRef(value=group_id, display=display_name))
        return refs

    @staticmethod
    def _members_for_groups(session: Session, group_ids: Iterable[str]) -> Dict[str, List[ResourceRef]]:
        group_ids = list(group_ids)
        refs: Dict[str, List[ResourceRef]] = {group_id: [] for group_id in group_ids}
        if not group_ids:
            return refs
        rows = session.execute(
            select(MembershipRow.group_id, UserRow.id, UserRow.given_name, UserRow.family_name)
            .join(UserRow, UserRow.id == MembershipRow.user_id)
            .where(MembershipRow.group_id.in_(group_ids))
            .order_by(MembershipRow.seq)
        )
        for group_id, user_id, given_name, family_name in rows:
            refs[group_id].append(ResourceRef(value=user_id, display=display_name_for(given_name, family_name)))
        return refs

    def _hydrate_users(self, session: Session, rows: List[UserRow]) -> List[UserResource]:
        groups = self._groups_for_users(session, [row.id for row in rows])
        return [row.to_resource(groups[row.id]) for row in rows]

    def _hydrate_groups(self, session: Session, rows: List[GroupRow]) -> List[GroupResource]:
        members = self._members_for_groups(session, [row.id for row in rows])
        return [row.to_resource(members[row.id]) for row in rows]

    @staticmethod
    def _member_ids(session: Session, group_id: str) -> List[str]:
        return list(
            session.scalars(
                select(MembershipRow.user_id).where(MembershipRow.group_id == group_id).order_by(MembershipRow.seq)
            )
        )

    @staticmethod
    def _group_ids(session: Session, user_id: str) -> List[str]:
        return list(
            session.scalars(
                select(MembershipRow.group_id).where(MembershipRow.user_id == user_id).order_by(MembershipRow.seq)
            )
        )

    def _resolve_group_ref(self, session: Session, ref: ResourceRef, strict: bool = True) -> Optional[str]:
        if ref.value and self._group_row(session, ref.value):
            return ref.value
        if ref.display:
            group_id = session.scalars(select(GroupRow.id).where(GroupRow.display_name == ref.display)).first()
            if group_id:
                return group_id
        if strict:
            raise BadRequest(f"Group with id {ref.value or ref.display} not found")
        return None

    def _resolve_user_ref(self, session: Session, ref: ResourceRef, strict: bool = True) -> Optional[str]:
        if ref.value and self._user_row(session, ref.value):
            return ref.value
        if strict:
            raise BadRequest(f"User with id {ref.value} not found")
        return None

    @staticmethod
    def _sync_memberships(session: Session, group_ids: List[str], user_ids: List[str], current: List[Tuple[str, str]]) -> None:
        """
        Diff the current (group, user) pairs against the target pairs.

        Deletes pairs that are no longer wanted and inserts the new ones.
        """
        target = [(g, u) for g in group_ids for u in user_ids]
        for group_id, user_id in current:
            if (group_id, user_id) not in target:
                session.execute(
                    delete(MembershipRow).where(
                        MembershipRow.group_id == group_id, MembershipRow.user_id == user_id
                    )
                )
        for group_id, user_id in target:
            if (group_id, user_id) not in current:
                session.add(MembershipRow(id=str(uuid.uuid4()), group_id=group_id, user_id=user_id))
        session.flush()

    def _set_groups_for_user(self, session: Session, user_id: str, group_ids: List[str]) -> None:
        current = [(group_id, user_id) for group_id in self._group_ids(session, user_id)]
        target = []
        for group_id in group_ids:
            if group_id not in target:
                target.append(group_id)
        self._sync_memberships(session, target, [user_id], current)

    def _set_members_for_group(self, session: Session, group_id: str, user_ids: List[str]) -> None:
        current = [(group_id, user_id) for user_id in self._member_ids(session, group_id)]
        target = []
        for user_id in user_ids:
            if user_id not in target:
                target.append(user_id)
        self._sync_memberships(session, [group_id], target, current)

    @staticmethod
    def _user_name_taken(session: Session, user_name: str, exclude_id: Optional[str] = None) -> bool:
        query = select(UserRow.id).where(UserRow.user_name == user_name)
        if exclude_id:
            query = query.where(UserRow.id != exclude_id)
        return session.scalars(query).first() is not None

    @staticmethod
    def _display_name_taken(session: Session, display_name: str, exclude_id: Optional[str] = None) -> bool:
        query = select(GroupRow.id).where(GroupRow.display_name == display_name)
        if exclude_id:
            query = query.where(GroupRow.id != exclude_id)
        return session.scalars(query).first() is not None

    # Users

    @storage_boundary
    def list_users(self, start_index: Optional[int] = 1, count: Optional[int] = None) -> Tuple[List[UserResource], int]:
        with self._reading() as session:
            total = session.scalar(select(func.count()).select_from(UserRow))
            if not total:
                raise NotFound("No users found")
            start, stop = page_bounds(start_index, count, total)
            rows = list(session.scalars(select(UserRow).order_by(UserRow.seq).offset(start).limit(stop - start)))
            return self._hydrate_users(session, rows), total

    @storage_boundary
    def get_user(self, user_id: str) -> UserResource:
        with self._reading() as session:
            row = self._user_row(session, user_id)
            if row is None:
                raise NotFound("User not found")
            return self._hydrate_users(session, [row])[0]

    @storage_boundary
    def filter_users(
        self, attribute: str, value: str, start_index: Optional[int] = 1, count: Optional[int] = None
    ) -> Tuple[List[UserResource], int]:
        check_attribute(attribute, USER_FILTER_ATTRIBUTES, "User")
        column = getattr(UserRow, USER_COLUMNS[attribute])
        condition = column == strip_quotes(value)
        with self._reading() as session:
            total = session.scalar(select(func.count()).select_from(UserRow).where(condition))
            if not total:
                raise NotFound("No users found matching filter")
            start, stop = page_bounds(start_index, count, total)
            rows = list(
                session.scalars(
                    select(UserRow).where(condition).order_by(UserRow.seq).offset(start).limit(stop - start)
                )
            )
            return self._hydrate_users(session, rows), total

    @storage_boundary
    def create_user(self, draft: UserDraft) -> UserResource:
        require_text(draft.userName, "userName")
        with self._transaction() as session:
            if self._user_name_taken(session, draft.userName):
                raise Conflict("User Already Exists")
            row = UserRow(id=str(uuid.uuid4()))
            row.assign(draft.scalars())
            session.add(row)
            session.flush()
            if draft.groups:
                group_ids = [self._resolve_group_ref(session, ref) for ref in draft.groups]
                self._set_groups_for_user(session, row.id, group_ids)
            created = self._hydrate_users(session, [row])[0]
        logger.info(f"Created user {created.id} ({created.userName})")
        return created

    @storage_boundary
    def update_user(self, user_id: str, draft: UserDraft) -> UserResource:
        require_text(draft.userName, "userName")
        with self._transaction() as session:
            row = self._user_row(session, user_id, for_update=True)
            if row is None:
                raise NotFound("User not found")
            if self._user_name_taken(session, draft.userName, exclude_id=row.id):
                raise Conflict("User Already Exists")
            row.assign(draft.scalars())
            session.flush()
            if draft.groups is not None:
                group_ids = [self._resolve_group_ref(session, ref) for ref in draft.groups]
                self._set_groups_for_user(session, row.id, group_ids)
            updated = self._hydrate_users(session, [row])[0]
        logger.info(f"Updated user {updated.id}")
        return updated

    @storage_boundary
    def patch_user(self, user_id: str, plan: PatchPlan) -> UserResource:
        with self._transaction() as session:
            row = self._user_row(session, user_id, for_update=True)
            if row is None:
                raise NotFound("User not found")
            if plan.attributes:
                if "userName" in plan.attributes:
                    require_text(plan.attributes["userName"], "userName")
                    if self._user_name_taken(session, plan.attributes["userName"], exclude_id=row.id):
                        raise Conflict("User Already Exists")
                row.assign(plan.attributes)
                session.flush()
            if plan.touches_members:
                group_ids = merge_memberships(
                    self._group_ids(session, row.id),
                    plan,
                    lambda ref, strict: self._resolve_group_ref(session, ref, strict),
                )
                self._set_groups_for_user(session, row.id, group_ids)
            patched = self._hydrate_users(session, [row])[0]
        logger.info(f"Patched user {patched.id}: {sorted(plan.attributes)}")
        return patched

    @storage_boundary
    def delete_user(self, user_id: str) -> None:
        with self._transaction() as session:
            row = self._user_row(session, user_id, for_update=True)
            if row is None:
                raise NotFound("User not found")
            session.execute(delete(MembershipRow).where(MembershipRow.user_id == row.id))
            session.delete(row)
        logger.info(f"Deleted user {user_id}")

    @storage_boundary
    def get_memberships_for_user(self, user_id: str) -> List[ResourceRef]:
        with self._reading() as session:
            return self._groups_for_users(session, [str(user_id)])[str(user_id)]

    @storage_boundary
    def count_users(self) -> int:
        with self._reading() as session:
            return session.scalar(select(func.count()).select_from(UserRow)) or 0

    # Groups

    @storage_boundary
    def list_groups(self, start_index: Optional[int] = 1, count: Optional[int] = None) -> Tuple[List[GroupResource], int]:
        with self._reading() as session:
            total = session.scalar(select(func.count()).select_from(GroupRow))
            if not total:
                raise NotFound("No groups found")
            start, stop = page_bounds(start_index, count, total)
            rows = list(session.scalars(select(GroupRow).order_by(GroupRow.seq).offset(start).limit(stop - start)))
            return self._hydrate_groups(session, rows), total

    @storage_boundary
    def get_group(self, group_id: str) -> GroupResource:
        with self._reading() as session:
            row = self._group_row(session, group_id)
            if row is None:
                raise NotFound("Group not found")
            return self._hydrate_groups(session, [row])[0]

    @storage_boundary
    def filter_groups(
        self, attribute: str, value: str, start_index: Optional[int] = 1, count: Optional[int] = None
    ) -> Tuple[List[GroupResource], int]:
        check_attribute(attribute, GROUP_FILTER_ATTRIBUTES, "Group")
        column = getattr(GroupRow, GROUP_COLUMNS[attribute])
        condition = column == strip_quotes(value)
        with self._reading() as session:
            total = session.scalar(select(func.count()).select_from(GroupRow).where(condition))
            if not total:
                raise NotFound("No groups found matching filter")
            start, stop = page_bounds(start_index, count, total)
            rows = list(
                session.scalars(
                    select(GroupRow).where(condition).order_by(GroupRow.seq).offset(start).limit(stop - start)
                )
            )
            return self._hydrate_groups(session, rows), total

    @storage_boundary
    def create_group(self, draft: GroupDraft) -> GroupResource:
        require_text(draft.displayName, "displayName")
        with self._transaction() as session:
            if self._display_name_taken(session, draft.displayName):
                raise Conflict("Group Already Exists")
            row = GroupRow(id=str(uuid.uuid4()))
            row.assign(draft.scalars())
            session.add(row)
            session.flush()
            if draft.members:
                user_ids = [self._resolve_user_ref(session, ref) for ref in draft.members]
                self._set_members_for_group(session, row.id, user_ids)
            created = self._hydrate_groups(session, [row])[0]
        logger.info(f"Created group {created.id} ({created.displayName})")
        return created

    @storage_boundary
    def update_group(self, group_id: str, draft: GroupDraft) -> GroupResource:
        require_text(draft.displayName, "displayName")
        with self._transaction() as session:
            row = self._group_row(session, group_id, for_update=True)
            if row is None:
                raise NotFound("Group not found")
            if self._display_name_taken(session, draft.displayName, exclude_id=row.id):
                raise Conflict("Group Already Exists")
            row.assign(draft.scalars())
            session.flush()
            if draft.members is not None:
                user_ids = [self._resolve_user_ref(session, ref) for ref in draft.members]
                self._set_members_for_group(session, row.id, user_ids)
            updated = self._hydrate_groups(session, [row])[0]
        logger.info(f"Updated group {updated.id}")
        return updated

    @storage_boundary
    def patch_group(self, group_id: str, plan: PatchPlan) -> GroupResource:
        with self._transaction() as session:
            row = self._group_row(session, group_id, for_update=True)
            if row is None:
                raise NotFound("Group not found")
            if plan.attributes:
                if "displayName" in plan.attributes:
                    require_text(plan.attributes["displayName"], "displayName")
                    if self._display_name_taken(session, plan.attributes["displayName"], exclude_id=row.id):
                        raise Conflict("Group Already Exists")
                row.assign(plan.attributes)
                session.flush()
            if plan.touches_members:
                user_ids = merge_memberships(
                    self._member_ids(session, row.id),
                    plan,
                    lambda ref, strict: self._resolve_user_ref(session, ref, strict),
                )
                self._set_members_for_group(session, row.id, user_ids)
            patched = self._hydrate_groups(session, [row])[0]
        logger.info(f"Patched group {patched.id}")
        return patched

    @storage_boundary
    def delete_group(self, group_id: str) -> None:
        with self._transaction() as session:
            row = self._group_row(session, group_id, for_update=True)
            if row is None:
                raise NotFound("Group not found")
            session.execute(delete(MembershipRow).where(MembershipRow.group_id == row.id))
            session.delete(row)
        logger.info(f"Deleted group {group_id}")

    @storage_boundary
    def get_members_for_group(self, group_id: str) -> List[ResourceRef]:
        with self._reading() as session:
            return self._members_for_groups(session, [str(group_id)])[str(group_id)]

    @storage_boundary
    def count_groups(self) -> int:
        with self._reading() as session:
            return session.scalar(select(func.count()).select_from(GroupRow)) or 0
