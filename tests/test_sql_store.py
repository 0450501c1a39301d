"""
Tests specific to the SQLAlchemy backend: schema constraints, error
translation and file-based persistence.
"""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest
from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError, OperationalError

from scim_server.errors import Conflict, InternalError
from scim_server.models import parse_group, parse_user
from scim_server.services import SQLRepository
from scim_server.services.patch import GROUP_SCHEMA, interpret


class TestSQLRepository:
    """Test class for SQLRepository"""

    @pytest.fixture
    def repo(self):
        repository = SQLRepository("sqlite://")
        yield repository
        repository.close()

    def test_tables_created(self, repo):
        tables = set(inspect(repo.engine).get_table_names())

        assert {"scim_users", "scim_groups", "scim_group_memberships"} <= tables

    def test_persists_across_instances(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'scim.db'}"
        first = SQLRepository(url)
        user = first.create_user(parse_user({"userName": "jane"}))
        first.create_group(parse_group({"displayName": "Engineering", "members": [{"value": user.id}]}))
        first.close()

        second = SQLRepository(url)
        try:
            assert second.get_user(user.id).groups[0].display == "Engineering"
        finally:
            second.close()

    def test_integrity_error_translates_to_conflict(self, repo):
        error = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

        assert isinstance(repo.translate_error("create_user", error), Conflict)

    def test_operational_error_translates_to_internal_error(self, repo):
        """Test storage failures never escape as raw SQLAlchemy exceptions"""
        error = OperationalError("SELECT", {}, Exception("database is locked"))

        with patch.object(SQLRepository, "_user_row", side_effect=error):
            with pytest.raises(InternalError) as exc_info:
                repo.get_user("any")

        assert exc_info.value.status == 500

    def test_count_on_empty_store(self, repo):
        assert repo.count_users() == 0
        assert repo.count_groups() == 0

    def test_concurrent_idempotent_member_adds_on_file_database(self, tmp_path):
        """Test writers on a shared SQLite file serialize instead of racing on the join table"""
        repo = SQLRepository(f"sqlite:///{tmp_path / 'scim.db'}")
        try:
            user = repo.create_user(parse_user({"userName": "jane"}))
            group = repo.create_group(parse_group({"displayName": "Engineering"}))
            body = {"Operations": [{"op": "add", "path": "members", "value": [{"value": user.id}]}]}

            with ThreadPoolExecutor(max_workers=16) as pool:
                futures = [pool.submit(repo.patch_group, group.id, interpret(body, GROUP_SCHEMA)) for _ in range(16)]
                results = [future.result() for future in futures]

            assert all([m.value for m in result.members] == [user.id] for result in results)
            assert [m.value for m in repo.get_members_for_group(group.id)] == [user.id]
        finally:
            repo.close()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
