"""
SCIM Server Models Package

Domain resource shapes and pydantic models for SCIM 2.0 wire formats.
"""

from .resources import (
    User,
    Group,
    Membership,
    ResourceRef,
    UserResource,
    GroupResource,
    UserDraft,
    GroupDraft,
    parse_user,
    parse_group,
    parse_ref,
    reference_id,
    coerce_active,
    USER_FILTER_ATTRIBUTES,
    GROUP_FILTER_ATTRIBUTES,
)
from .scim import (
    SCIMUser,
    SCIMGroup,
    SCIMName,
    SCIMEmail,
    SCIMReference,
    SCIMMeta,
    SCIMListResponse,
    SCIMError,
    SCIM_USER_SCHEMA,
    SCIM_GROUP_SCHEMA,
    SCIM_PATCH_SCHEMA,
    SCIM_LIST_SCHEMA,
    SCIM_ERROR_SCHEMA,
)

__all__ = [
    "User",
    "Group",
    "Membership",
    "ResourceRef",
    "UserResource",
    "GroupResource",
    "UserDraft",
    "GroupDraft",
    "parse_user",
    "parse_group",
    "parse_ref",
    "reference_id",
    "coerce_active",
    "USER_FILTER_ATTRIBUTES",
    "GROUP_FILTER_ATTRIBUTES",
    "SCIMUser",
    "SCIMGroup",
    "SCIMName",
    "SCIMEmail",
    "SCIMReference",
    "SCIMMeta",
    "SCIMListResponse",
    "SCIMError",
    "SCIM_USER_SCHEMA",
    "SCIM_GROUP_SCHEMA",
    "SCIM_PATCH_SCHEMA",
    "SCIM_LIST_SCHEMA",
    "SCIM_ERROR_SCHEMA",
]
