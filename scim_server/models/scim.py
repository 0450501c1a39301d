"""
SCIM 2.0 Wire Models

Pydantic models for the SCIM 2.0 User, Group, ListResponse and Error
representations (RFC 7643 / RFC 7644) returned by the server.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .resources import GroupResource, ResourceRef, UserResource


# SCIM 2.0 Schema URNs
SCIM_USER_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:User"
SCIM_GROUP_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:Group"
SCIM_PATCH_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:PatchOp"
SCIM_LIST_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:ListResponse"
SCIM_ERROR_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:Error"


class SCIMName(BaseModel):
    """SCIM name object"""
    givenName: str = ""
    middleName: str = ""
    familyName: str = ""


class SCIMEmail(BaseModel):
    """SCIM email object"""
    value: str
    type: Optional[str] = "work"
    primary: Optional[bool] = True


class SCIMReference(BaseModel):
    """SCIM group or member reference (``groups[]`` / ``members[]``)"""
    value: str  # Referenced resource ID
    ref: Optional[str] = Field(None, alias="$ref")  # Relative resource URL
    display: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def build(cls, ref: ResourceRef, resource_type: str) -> "SCIMReference":
        return cls(value=ref.value, ref=f"../{resource_type}/{ref.value}", display=ref.display)


class SCIMMeta(BaseModel):
    """SCIM resource metadata"""
    resourceType: str
    location: Optional[str] = None


class SCIMUser(BaseModel):
    """
    SCIM 2.0 User Resource

    The outbound representation of a stored user together with its derived
    group memberships.
    """
    schemas: List[str] = Field(default=[SCIM_USER_SCHEMA])
    id: str
    userName: str
    name: SCIMName
    emails: List[SCIMEmail] = Field(default_factory=list)
    active: bool
    groups: List[SCIMReference] = Field(default_factory=list)
    meta: Optional[SCIMMeta] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "schemas": [SCIM_USER_SCHEMA],
                "id": "0f6f8e8c-2f0a-4f8e-9d0b-6f2a3c1d9e11",
                "userName": "jane.example@contoso.com",
                "name": {"givenName": "Jane", "middleName": "", "familyName": "Example"},
                "emails": [{"value": "jane.example@contoso.com", "type": "work", "primary": True}],
                "active": True,
                "groups": [
                    {
                        "value": "5d1c3a0e-7b9f-4c2e-8a61-0e4b2f7c9d30",
                        "$ref": "../Groups/5d1c3a0e-7b9f-4c2e-8a61-0e4b2f7c9d30",
                        "display": "Engineering",
                    }
                ],
            }
        }
    )

    @classmethod
    def from_resource(cls, user: UserResource, base_path: str = "") -> "SCIMUser":
        emails = [SCIMEmail(value=user.email)] if user.email else []
        return cls(
            id=user.id,
            userName=user.userName,
            name=SCIMName(
                givenName=user.givenName,
                middleName=user.middleName,
                familyName=user.familyName,
            ),
            emails=emails,
            active=user.active,
            groups=[SCIMReference.build(ref, "Groups") for ref in user.groups],
            meta=SCIMMeta(resourceType="User", location=f"{base_path}/Users/{user.id}"),
        )


class SCIMGroup(BaseModel):
    """
    SCIM 2.0 Group Resource

    The outbound representation of a stored group with its derived members.
    """
    schemas: List[str] = Field(default=[SCIM_GROUP_SCHEMA])
    id: str
    displayName: str
    members: List[SCIMReference] = Field(default_factory=list)
    meta: Optional[SCIMMeta] = None

    @classmethod
    def from_resource(cls, group: GroupResource, base_path: str = "") -> "SCIMGroup":
        return cls(
            id=group.id,
            displayName=group.displayName,
            members=[SCIMReference.build(ref, "Users") for ref in group.members],
            meta=SCIMMeta(resourceType="Group", location=f"{base_path}/Groups/{group.id}"),
        )


class SCIMListResponse(BaseModel):
    """
    SCIM 2.0 List Response

    Used for GET /Users and GET /Groups, filtered or not.
    """
    schemas: List[str] = Field(default=[SCIM_LIST_SCHEMA])
    totalResults: int
    startIndex: int = 1
    itemsPerPage: int
    Resources: List[Dict[str, Any]]


class SCIMError(BaseModel):
    """
    SCIM 2.0 Error Response

    ``status`` is the HTTP status code as a string, as RFC 7644 mandates.
    """
    schemas: List[str] = Field(default=[SCIM_ERROR_SCHEMA])
    status: str
    detail: Optional[str] = None
    scimType: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "schemas": [SCIM_ERROR_SCHEMA],
                "status": "404",
                "detail": "User not found",
            }
        }
    )
