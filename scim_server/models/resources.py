"""
Resource Models

Domain shapes for Users, Groups and the Membership join table, plus the
pure functions that parse loosely-typed SCIM request payloads into drafts
the repository can store. No I/O happens here.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..errors import BadRequest


# Attributes a User or Group filter may target
USER_FILTER_ATTRIBUTES = ("userName", "id", "email", "givenName", "familyName")
GROUP_FILTER_ATTRIBUTES = ("displayName", "id")


class User(BaseModel):
    """Stored user row. Group membership lives in Membership, not here."""

    id: str
    active: bool = False
    userName: str = ""
    givenName: str = ""
    middleName: str = ""
    familyName: str = ""
    email: str = ""

    @property
    def display(self) -> str:
        return f"{self.givenName or ''} {self.familyName or ''}".strip()


class Group(BaseModel):
    """Stored group row."""

    id: str
    displayName: str = ""

    @property
    def display(self) -> str:
        return self.displayName


class Membership(BaseModel):
    """Join row; (groupId, userId) is unique."""

    id: str
    groupId: str
    userId: str


class ResourceRef(BaseModel):
    """
    A {value, display} pointer to another resource.

    Used both for references supplied by a client (group ids on a user,
    user ids on a group) and for the derived groups/members views.
    """

    value: Optional[str] = None
    display: Optional[str] = None


class UserResource(User):
    """A user hydrated with its derived group references."""

    groups: List[ResourceRef] = Field(default_factory=list)


class GroupResource(Group):
    """A group hydrated with its derived member references."""

    members: List[ResourceRef] = Field(default_factory=list)


class UserDraft(BaseModel):
    """
    User attributes parsed from a POST or PUT body.

    ``groups`` is None when the payload carried no ``groups`` field, which
    tells an update to leave the membership set untouched.
    """

    active: bool = False
    userName: str = ""
    givenName: str = ""
    middleName: str = ""
    familyName: str = ""
    email: str = ""
    groups: Optional[List[ResourceRef]] = None

    def scalars(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"groups"})


class GroupDraft(BaseModel):
    """Group attributes parsed from a POST or PUT body."""

    displayName: str = ""
    members: Optional[List[ResourceRef]] = None

    def scalars(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"members"})


def coerce_active(value: Any) -> bool:
    """Interpret the ``active`` flag, which some clients send as a string."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def coerce_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def reference_id(entry: Dict[str, Any]) -> Optional[str]:
    """
    Id named by a reference object.

    ``value`` wins; otherwise the last path segment of ``$ref`` (or ``ref``)
    is used, so ``{"$ref": ".../Groups/g1"}`` names ``g1``.
    """
    value = entry.get("value")
    if value:
        return coerce_text(value)
    location = entry.get("$ref") or entry.get("ref")
    if isinstance(location, str):
        tail = location.rstrip("/").rsplit("/", 1)[-1]
        return tail or None
    return None


def parse_ref(entry: Dict[str, Any], display_keys: tuple = ("display", "displayName")) -> ResourceRef:
    value = reference_id(entry)
    display = None
    for key in display_keys:
        if entry.get(key):
            display = coerce_text(entry[key])
            break
    return ResourceRef(value=value, display=display)


def _parse_refs(entries: Any, field: str, display_keys: tuple) -> Optional[List[ResourceRef]]:
    if entries is None:
        return None
    if not isinstance(entries, list):
        raise BadRequest(f"'{field}' must be a list")
    refs = []
    for entry in entries:
        if not entry:
            continue
        if isinstance(entry, str):
            refs.append(ResourceRef(value=entry))
        elif isinstance(entry, dict):
            refs.append(parse_ref(entry, display_keys))
        else:
            raise BadRequest(f"Invalid entry in '{field}': {entry!r}")
    return refs


def first_email(emails: Any) -> str:
    """Return the value of the first email in a SCIM ``emails`` list."""
    if isinstance(emails, list) and emails:
        first = emails[0]
        if isinstance(first, dict):
            return coerce_text(first.get("value"))
        return coerce_text(first)
    if isinstance(emails, str):
        return emails
    return ""


def parse_user(payload: Any) -> UserDraft:
    """
    Parse a SCIM User JSON body into a UserDraft.

    Missing attributes fall back to defaults: ``active`` is False, text
    attributes are empty. Group references accept ``value`` (or a ``$ref``
    URI) for the id and ``display`` or ``displayName`` for the name.

    Raises:
        BadRequest: If the payload is not a JSON object
    """
    if not isinstance(payload, dict):
        raise BadRequest("User payload must be a JSON object")

    name = payload.get("name") or {}
    if not isinstance(name, dict):
        name = {}

    return UserDraft(
        active=coerce_active(payload["active"]) if "active" in payload else False,
        userName=coerce_text(payload.get("userName")),
        givenName=coerce_text(name.get("givenName")),
        middleName=coerce_text(name.get("middleName")),
        familyName=coerce_text(name.get("familyName")),
        email=first_email(payload.get("emails")),
        groups=_parse_refs(payload.get("groups"), "groups", ("display", "displayName")),
    )


def parse_group(payload: Any) -> GroupDraft:
    """Parse a SCIM Group JSON body into a GroupDraft."""
    if not isinstance(payload, dict):
        raise BadRequest("Group payload must be a JSON object")

    return GroupDraft(
        displayName=coerce_text(payload.get("displayName")),
        members=_parse_refs(payload.get("members"), "members", ("display",)),
    )
