"""
Tests for the JSON file backend: persistence, atomic writes and recovery
from unreadable files.
"""

import json
from unittest.mock import patch

import pytest

from scim_server.errors import BadRequest, InternalError
from scim_server.models import parse_group, parse_user
from scim_server.services import FileRepository


class TestFileRepository:
    """Test class for FileRepository persistence"""

    @pytest.fixture
    def data_file(self, tmp_path):
        return tmp_path / "nested" / "scim.json"

    def test_creates_empty_document(self, data_file):
        """Test a missing file is created with empty tables"""
        FileRepository(str(data_file))

        assert json.loads(data_file.read_text()) == {"users": [], "groups": [], "memberships": []}

    def test_data_survives_reload(self, data_file):
        repo = FileRepository(str(data_file))
        user = repo.create_user(parse_user({"userName": "jane", "active": True}))
        group = repo.create_group(parse_group({"displayName": "Engineering", "members": [{"value": user.id}]}))

        reloaded = FileRepository(str(data_file))

        assert reloaded.get_user(user.id).groups[0].value == group.id
        assert reloaded.get_group(group.id).members[0].value == user.id

    def test_document_layout(self, data_file):
        repo = FileRepository(str(data_file))
        user = repo.create_user(parse_user({"userName": "jane"}))
        group = repo.create_group(parse_group({"displayName": "Engineering", "members": [{"value": user.id}]}))

        document = json.loads(data_file.read_text())

        assert document["users"][0]["userName"] == "jane"
        assert document["groups"][0]["displayName"] == "Engineering"
        membership = document["memberships"][0]
        assert (membership["groupId"], membership["userId"]) == (group.id, user.id)

    def test_failed_mutation_leaves_file_untouched(self, data_file):
        repo = FileRepository(str(data_file))
        repo.create_group(parse_group({"displayName": "Engineering"}))
        before = data_file.read_text()

        with pytest.raises(BadRequest):
            repo.create_user(parse_user({"userName": "jane", "groups": [{"value": "missing"}]}))

        assert data_file.read_text() == before
        assert not data_file.with_suffix(".tmp").exists()

    def test_write_failure_is_internal_error(self, data_file):
        """Test a disk failure surfaces as InternalError and keeps memory state unchanged"""
        repo = FileRepository(str(data_file))

        with patch.object(FileRepository, "_write_data", side_effect=OSError("disk full")):
            with pytest.raises(InternalError):
                repo.create_user(parse_user({"userName": "jane"}))

        assert repo.count_users() == 0

    def test_corrupt_file_is_internal_error(self, data_file):
        data_file.parent.mkdir(parents=True)
        data_file.write_text("{not json")

        with pytest.raises(InternalError):
            FileRepository(str(data_file))

    def test_invalid_structure_is_internal_error(self, data_file):
        data_file.parent.mkdir(parents=True)
        data_file.write_text(json.dumps({"users": "nope"}))

        with pytest.raises(InternalError):
            FileRepository(str(data_file))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
