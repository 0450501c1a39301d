"""
Tests for the identity provider client with a mocked HTTP session.
"""

from unittest.mock import Mock, patch

import pytest
import requests

from scim_server.client import SCIMClient, create_sample_user_data


def _response(status_code, payload=None):
    response = Mock()
    response.status_code = status_code
    response.json.return_value = payload or {}
    response.text = str(payload)
    return response


class TestSCIMClient:
    """Test class for SCIMClient request building"""

    @pytest.fixture
    def client(self):
        scim_client = SCIMClient("http://localhost:8080/", "test-token")
        scim_client.session = Mock()
        return scim_client

    def test_session_headers(self):
        scim_client = SCIMClient("http://localhost:8080", "test-token")

        assert scim_client.session.headers["Authorization"] == "Bearer test-token"
        assert scim_client.session.headers["Content-Type"] == "application/scim+json"
        assert scim_client.scim_url == "http://localhost:8080/scim/v2"

    def test_create_user(self, client):
        client.session.request.return_value = _response(201, {"id": "u1", "userName": "jane"})

        result = client.create_user(create_sample_user_data("Jane", "Doe", "jane@contoso.com"))

        assert result["id"] == "u1"
        method, url = client.session.request.call_args.args
        assert (method, url) == ("POST", "http://localhost:8080/scim/v2/Users")

    def test_create_user_failure(self, client):
        client.session.request.return_value = _response(409, {"detail": "User Already Exists"})

        assert client.create_user({"userName": "jane"}) is None

    def test_request_exception(self, client):
        client.session.request.side_effect = requests.ConnectionError("refused")

        assert client.list_users() is None

    def test_update_user_groups(self, client):
        client.session.request.return_value = _response(200, {"id": "u1"})

        assert client.update_user_groups("u1", ["g2"], ["g1"]) is True

        payload = client.session.request.call_args.kwargs["json"]
        assert payload["schemas"] == ["urn:ietf:params:scim:api:messages:2.0:PatchOp"]
        assert payload["Operations"] == [
            {"op": "add", "path": "groups", "value": [{"value": "g2"}]},
            {"op": "remove", "path": "groups", "value": [{"value": "g1"}]},
        ]

    def test_deactivate_user(self, client):
        client.session.request.return_value = _response(200, {"id": "u1", "active": False})

        assert client.deactivate_user("u1") is True
        operations = client.session.request.call_args.kwargs["json"]["Operations"]
        assert operations == [{"op": "replace", "value": {"active": False}}]

    def test_patch_group_members(self, client):
        client.session.request.return_value = _response(200, {"id": "g1"})

        client.patch_group_members("g1", add=["u1"], remove=["u2"])

        operations = client.session.request.call_args.kwargs["json"]["Operations"]
        assert operations[1] == {"op": "remove", "path": 'members[value eq "u2"]'}

    def test_find_user_uses_filter(self, client):
        client.session.request.return_value = _response(200, {"Resources": [{"id": "u1"}]})

        assert client.find_user("jane")["id"] == "u1"
        assert client.session.request.call_args.kwargs["params"] == {"filter": 'userName eq "jane"'}

    def test_delete_expects_no_content(self, client):
        client.session.request.return_value = _response(204)

        assert client.delete_user("u1") is True

    def test_health(self, client):
        with patch("scim_server.client.requests.get", return_value=_response(200, {"backend": "memory"})):
            assert client.test_health_endpoint() is True

    def test_sample_user_data(self):
        data = create_sample_user_data("Jane", "Doe", "jane@contoso.com", ["g1"])

        assert data["userName"] == "jane@contoso.com"
        assert data["name"] == {"givenName": "Jane", "familyName": "Doe"}
        assert data["groups"] == [{"value": "g1"}]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
