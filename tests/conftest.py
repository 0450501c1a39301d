"""
Shared fixtures for the SCIM server test suite.

The ``repository`` fixture is parametrized over every storage backend so
contract tests run unchanged against memory, file and SQL storage.
"""

import pytest
from fastapi.testclient import TestClient

from scim_server.config import SCIMServerSettings
from scim_server.main import create_app
from scim_server.models import parse_group, parse_user
from scim_server.services import FileRepository, InMemoryRepository, SQLRepository


@pytest.fixture(params=["memory", "file", "sql"])
def repository(request, tmp_path):
    """A fresh, empty repository for each backend"""
    if request.param == "memory":
        repo = InMemoryRepository()
    elif request.param == "file":
        repo = FileRepository(str(tmp_path / "scim.json"))
    else:
        repo = SQLRepository("sqlite://")
    yield repo
    repo.close()


@pytest.fixture
def sample_user_payload():
    """Sample SCIM user as sent by an identity provider"""
    return {
        "schemas": ["urn:ietf:params:scim:schemas:core:2.0:User"],
        "userName": "jane.example@contoso.com",
        "active": True,
        "name": {
            "givenName": "Jane",
            "middleName": "Q",
            "familyName": "Example"
        },
        "emails": [
            {
                "value": "jane.example@contoso.com",
                "type": "work",
                "primary": True
            }
        ]
    }


@pytest.fixture
def make_user(repository):
    """Factory creating a user in the current repository"""
    def _make(user_name, given="Test", family="User", **extra):
        payload = {
            "userName": user_name,
            "active": True,
            "name": {"givenName": given, "familyName": family},
            "emails": [{"value": user_name}],
        }
        payload.update(extra)
        return repository.create_user(parse_user(payload))
    return _make


@pytest.fixture
def make_group(repository):
    """Factory creating a group in the current repository"""
    def _make(display_name, members=None):
        payload = {"displayName": display_name}
        if members is not None:
            payload["members"] = [{"value": member_id} for member_id in members]
        return repository.create_group(parse_group(payload))
    return _make


@pytest.fixture
def settings():
    return SCIMServerSettings(storage_backend="memory", seed_file=None)


@pytest.fixture
def client(settings):
    """TestClient over an app with a fresh in-memory repository"""
    app = create_app(settings, repository=InMemoryRepository())
    with TestClient(app) as test_client:
        yield test_client
