"""
SCIM Envelope Builder

Wraps domain resources into SCIM single-resource, ListResponse and Error
envelopes and into FastAPI responses with the ``application/scim+json``
content type.
"""

from typing import Any, Dict, List, Optional, Sequence, Union

from fastapi import status
from fastapi.responses import JSONResponse, Response

from ..errors import SCIMException
from ..models.resources import GroupResource, UserResource
from ..models.scim import SCIMError, SCIMGroup, SCIMListResponse, SCIMUser

SCIM_CONTENT_TYPE = "application/scim+json"

Resource = Union[UserResource, GroupResource]


def resource_body(resource: Resource, base_path: str = "") -> Dict[str, Any]:
    """Flatten a user or group into SCIM resource JSON."""
    if isinstance(resource, UserResource):
        model = SCIMUser.from_resource(resource, base_path)
    else:
        model = SCIMGroup.from_resource(resource, base_path)
    return model.model_dump(by_alias=True, exclude_none=True)


def list_body(
    resources: Sequence[Resource],
    total_results: int,
    start_index: Optional[int] = 1,
    base_path: str = "",
) -> Dict[str, Any]:
    """Build a SCIM ListResponse body for one page of resources."""
    items: List[Dict[str, Any]] = [resource_body(resource, base_path) for resource in resources]
    response = SCIMListResponse(
        totalResults=total_results,
        startIndex=max(start_index or 1, 1),
        itemsPerPage=len(items),
        Resources=items,
    )
    return response.model_dump()


def error_body(status_code: int, detail: Optional[str]) -> Dict[str, Any]:
    """Build a SCIM Error body; ``status`` is the HTTP status as a string."""
    return SCIMError(status=str(status_code), detail=detail).model_dump(exclude_none=True)


def scim_response(content: Dict[str, Any], status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(
        content=content,
        status_code=status_code,
        headers={"Content-Type": SCIM_CONTENT_TYPE},
    )


def resource_response(
    resource: Resource, base_path: str = "", status_code: int = status.HTTP_200_OK
) -> JSONResponse:
    """200 for reads and updates, 201 for creates."""
    return scim_response(resource_body(resource, base_path), status_code)


def list_response(
    resources: Sequence[Resource],
    total_results: int,
    start_index: Optional[int] = 1,
    base_path: str = "",
) -> JSONResponse:
    return scim_response(list_body(resources, total_results, start_index, base_path))


def error_response(status_code: int, detail: Optional[str]) -> JSONResponse:
    return scim_response(error_body(status_code, detail), status_code)


def exception_response(error: SCIMException) -> JSONResponse:
    """Render a typed SCIM error with its mapped HTTP status."""
    return error_response(error.status, error.detail)


def no_content_response() -> Response:
    """204 for a successful delete, with an empty body."""
    return Response(status_code=status.HTTP_204_NO_CONTENT)
