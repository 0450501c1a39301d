"""
Tests for SCIM envelope building.
"""

import json

import pytest

from scim_server.errors import Conflict
from scim_server.models import GroupResource, UserResource
from scim_server.services.envelope import (
    SCIM_CONTENT_TYPE,
    error_body,
    exception_response,
    list_body,
    no_content_response,
    resource_response,
)


class TestEnvelopes:
    """Test ListResponse, Error and resource envelopes"""

    @pytest.fixture
    def users(self):
        return [UserResource(id=f"u{i}", userName=f"user{i}") for i in range(3)]

    def test_list_body(self, users):
        body = list_body(users[:2], total_results=3, start_index=1, base_path="/scim/v2")

        assert body["schemas"] == ["urn:ietf:params:scim:api:messages:2.0:ListResponse"]
        assert body["totalResults"] == 3
        assert body["itemsPerPage"] == 2
        assert body["startIndex"] == 1
        assert [r["id"] for r in body["Resources"]] == ["u0", "u1"]

    def test_list_body_start_index_defaults_to_one(self, users):
        assert list_body(users, 3, None)["startIndex"] == 1
        assert list_body(users, 3, 0)["startIndex"] == 1

    def test_error_body_status_is_string(self):
        body = error_body(404, "User not found")

        assert body == {
            "schemas": ["urn:ietf:params:scim:api:messages:2.0:Error"],
            "status": "404",
            "detail": "User not found",
        }

    def test_resource_response(self):
        response = resource_response(GroupResource(id="g1", displayName="Engineering"), "/scim/v2", 201)

        assert response.status_code == 201
        assert response.headers["content-type"] == SCIM_CONTENT_TYPE
        assert json.loads(response.body)["displayName"] == "Engineering"

    def test_exception_response(self):
        response = exception_response(Conflict("User Already Exists"))

        assert response.status_code == 409
        assert json.loads(response.body)["status"] == "409"

    def test_no_content(self):
        response = no_content_response()

        assert response.status_code == 204
        assert response.body == b""


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
