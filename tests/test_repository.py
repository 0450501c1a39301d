"""
Repository contract tests.

Every test runs against the memory, file and SQL backends through the
parametrized ``repository`` fixture in conftest.py.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from scim_server.errors import BadRequest, Conflict, NotFound
from scim_server.models import ResourceRef, parse_group, parse_user
from scim_server.services.patch import GROUP_SCHEMA, USER_SCHEMA, interpret


def _ops(*operations):
    return {"Operations": list(operations)}


class TestUsers:
    """User lifecycle against every backend"""

    def test_create_and_get(self, repository, sample_user_payload):
        """Test a created user round-trips through get_user"""
        created = repository.create_user(parse_user(sample_user_payload))

        fetched = repository.get_user(created.id)

        assert fetched == created
        assert fetched.userName == "jane.example@contoso.com"
        assert fetched.middleName == "Q"
        assert fetched.active is True
        assert fetched.groups == []

    def test_duplicate_user_name_conflicts(self, repository, make_user):
        make_user("jane")

        with pytest.raises(Conflict) as exc_info:
            make_user("jane")

        assert exc_info.value.detail == "User Already Exists"
        assert repository.count_users() == 1

    def test_empty_user_name_rejected(self, repository):
        with pytest.raises(BadRequest):
            repository.create_user(parse_user({"userName": ""}))

    def test_get_missing_user(self, repository):
        with pytest.raises(NotFound):
            repository.get_user("does-not-exist")

    def test_list_empty_store_is_not_found(self, repository):
        with pytest.raises(NotFound):
            repository.list_users()

    def test_pagination(self, repository, make_user):
        """Test startIndex/count slicing and totals"""
        for i in range(5):
            make_user(f"user{i}")

        page, total = repository.list_users(start_index=2, count=2)

        assert total == 5
        assert [u.userName for u in page] == ["user1", "user2"]

        page, total = repository.list_users(start_index=4)
        assert [u.userName for u in page] == ["user3", "user4"]

        page, total = repository.list_users(start_index=10, count=5)
        assert page == []
        assert total == 5

    def test_filter_users(self, repository, make_user):
        make_user("jane", given="Jane")
        make_user("john", given="John")

        matches, total = repository.filter_users("userName", '"jane"')

        assert total == 1
        assert matches[0].givenName == "Jane"

        matches, _ = repository.filter_users("email", "john")
        assert matches[0].userName == "john"

    def test_filter_users_no_match(self, repository, make_user):
        make_user("jane")

        with pytest.raises(NotFound):
            repository.filter_users("userName", "nobody")

    def test_filter_users_unsupported_attribute(self, repository, make_user):
        make_user("jane")

        with pytest.raises(BadRequest):
            repository.filter_users("title", "Engineer")

    def test_update_replaces_scalars_and_keeps_groups(self, repository, make_user, make_group):
        group = make_group("Engineering")
        user = make_user("jane", groups=[{"value": group.id}])

        updated = repository.update_user(user.id, parse_user({"userName": "jane", "active": False}))

        assert updated.active is False
        assert updated.givenName == ""
        assert [g.value for g in updated.groups] == [group.id]

    def test_update_to_existing_user_name_conflicts(self, repository, make_user):
        make_user("jane")
        john = make_user("john")

        with pytest.raises(Conflict):
            repository.update_user(john.id, parse_user({"userName": "jane"}))

    def test_patch_user_attribute(self, repository, make_user):
        user = make_user("jane")

        patched = repository.patch_user_attribute(user.id, "active", False)

        assert patched.active is False
        assert repository.get_user(user.id).active is False

    def test_patch_user_name_and_email(self, repository, make_user):
        user = make_user("jane")
        plan = interpret(
            _ops(
                {"op": "replace", "path": "userName", "value": "jane.doe"},
                {"op": "replace", "path": "emails", "value": [{"value": "jane.doe@x"}]},
            ),
            USER_SCHEMA,
        )

        patched = repository.patch_user(user.id, plan)

        assert patched.userName == "jane.doe"
        assert patched.email == "jane.doe@x"

    def test_patch_missing_user(self, repository):
        with pytest.raises(NotFound):
            repository.patch_user_attribute("missing", "active", True)

    def test_delete_user(self, repository, make_user):
        user = make_user("jane")

        repository.delete_user(user.id)

        with pytest.raises(NotFound):
            repository.get_user(user.id)
        with pytest.raises(NotFound):
            repository.delete_user(user.id)


class TestGroups:
    """Group lifecycle against every backend"""

    def test_create_with_members(self, repository, make_user, make_group):
        jane = make_user("jane", given="Jane", family="Example")

        group = make_group("Engineering", members=[jane.id])

        assert group.members == [ResourceRef(value=jane.id, display="Jane Example")]
        assert repository.get_user(jane.id).groups == [ResourceRef(value=group.id, display="Engineering")]

    def test_duplicate_display_name_conflicts(self, repository, make_group):
        make_group("Engineering")

        with pytest.raises(Conflict) as exc_info:
            make_group("Engineering")

        assert exc_info.value.detail == "Group Already Exists"

    def test_create_with_unknown_member_is_atomic(self, repository, make_group):
        with pytest.raises(BadRequest):
            make_group("Engineering", members=["ghost"])

        assert repository.count_groups() == 0

    def test_filter_groups(self, repository, make_group):
        make_group("Engineering")
        make_group("Platform Team")

        matches, total = repository.filter_groups("displayName", '"Platform Team"')

        assert total == 1
        assert matches[0].displayName == "Platform Team"

        with pytest.raises(NotFound):
            repository.filter_groups("displayName", "Nonexistent")

    def test_list_empty_store_is_not_found(self, repository):
        with pytest.raises(NotFound):
            repository.list_groups()

    def test_update_group_members(self, repository, make_user, make_group):
        jane = make_user("jane")
        john = make_user("john")
        group = make_group("Engineering", members=[jane.id])

        updated = repository.update_group(
            group.id, parse_group({"displayName": "Eng", "members": [{"value": john.id}]})
        )

        assert updated.displayName == "Eng"
        assert [m.value for m in updated.members] == [john.id]
        assert repository.get_user(jane.id).groups == []

    def test_patch_display_name(self, repository, make_group):
        group = make_group("Engineering")

        patched = repository.patch_group_attribute(group.id, "displayName", "Eng")

        assert patched.displayName == "Eng"

    def test_patch_display_name_conflict(self, repository, make_group):
        make_group("Engineering")
        ops = make_group("Ops")

        with pytest.raises(Conflict):
            repository.patch_group_attribute(ops.id, "displayName", "Engineering")

        assert repository.get_group(ops.id).displayName == "Ops"

    def test_delete_group(self, repository, make_group):
        group = make_group("Engineering")

        repository.delete_group(group.id)

        assert repository.count_groups() == 0
        with pytest.raises(NotFound):
            repository.get_group(group.id)


class TestMemberships:
    """Referential integrity and PATCH membership semantics"""

    def test_user_created_with_groups_by_id_and_name(self, repository, make_user, make_group):
        engineering = make_group("Engineering")
        ops = make_group("Ops")

        user = make_user("jane", groups=[{"value": engineering.id}, {"display": "Ops"}])

        assert [g.value for g in user.groups] == [engineering.id, ops.id]
        assert [m.value for m in repository.get_members_for_group(ops.id)] == [user.id]

    def test_user_created_with_groups_by_ref_uri(self, repository, make_user, make_group):
        engineering = make_group("Engineering")

        user = make_user("jane", groups=[{"$ref": f"/scim/v2/Groups/{engineering.id}"}])

        assert [g.value for g in user.groups] == [engineering.id]
        assert [m.value for m in repository.get_members_for_group(engineering.id)] == [user.id]

    def test_unknown_group_rolls_back_user_create(self, repository, make_user, make_group):
        """Test a missing group fails the create without leaving the user behind"""
        make_group("Engineering")

        with pytest.raises(BadRequest):
            make_user("jane", groups=[{"value": "no-such-group"}])

        assert repository.count_users() == 0
        with pytest.raises(NotFound):
            repository.filter_users("userName", "jane")

    def test_patch_add_member_is_idempotent(self, repository, make_user, make_group):
        jane = make_user("jane")
        group = make_group("Engineering")
        plan = interpret(_ops({"op": "add", "path": "members", "value": [{"value": jane.id}]}), GROUP_SCHEMA)

        repository.patch_group(group.id, plan)
        patched = repository.patch_group(group.id, plan)

        assert [m.value for m in patched.members] == [jane.id]

    def test_patch_add_then_remove_restores_membership(self, repository, make_user, make_group):
        jane = make_user("jane")
        john = make_user("john")
        group = make_group("Engineering", members=[jane.id])

        repository.patch_group(
            group.id, interpret(_ops({"op": "add", "path": "members", "value": [{"value": john.id}]}), GROUP_SCHEMA)
        )
        restored = repository.patch_group(
            group.id, interpret(_ops({"op": "remove", "path": f'members[value eq "{john.id}"]'}), GROUP_SCHEMA)
        )

        assert [m.value for m in restored.members] == [jane.id]
        assert repository.get_memberships_for_user(john.id) == []

    def test_patch_add_unknown_member_is_atomic(self, repository, make_user, make_group):
        jane = make_user("jane")
        group = make_group("Engineering")
        plan = interpret(
            _ops(
                {"op": "replace", "path": "displayName", "value": "Eng"},
                {"op": "add", "path": "members", "value": [{"value": jane.id}, {"value": "ghost"}]},
            ),
            GROUP_SCHEMA,
        )

        with pytest.raises(BadRequest):
            repository.patch_group(group.id, plan)

        unchanged = repository.get_group(group.id)
        assert unchanged.displayName == "Engineering"
        assert unchanged.members == []

    def test_patch_user_groups(self, repository, make_user, make_group):
        engineering = make_group("Engineering")
        ops = make_group("Ops")
        user = make_user("jane", groups=[{"value": engineering.id}])
        plan = interpret(
            _ops(
                {"op": "add", "path": "groups", "value": [{"value": ops.id}]},
                {"op": "remove", "path": "groups", "value": [{"value": engineering.id}]},
            ),
            USER_SCHEMA,
        )

        patched = repository.patch_user(user.id, plan)

        assert [g.value for g in patched.groups] == [ops.id]
        assert repository.get_members_for_group(engineering.id) == []

    def test_delete_user_removes_memberships(self, repository, make_user, make_group):
        jane = make_user("jane")
        group = make_group("Engineering", members=[jane.id])

        repository.delete_user(jane.id)

        assert repository.get_group(group.id).members == []

    def test_delete_group_removes_memberships(self, repository, make_user, make_group):
        jane = make_user("jane")
        group = make_group("Engineering", members=[jane.id])

        repository.delete_group(group.id)

        assert repository.get_user(jane.id).groups == []

    def test_display_follows_renames(self, repository, make_user, make_group):
        """Test derived views are recomputed from live rows"""
        jane = make_user("jane", given="Jane", family="Example")
        group = make_group("Engineering", members=[jane.id])

        repository.patch_group_attribute(group.id, "displayName", "Eng")
        repository.patch_user_attribute(jane.id, "familyName", "Doe")

        assert repository.get_user(jane.id).groups[0].display == "Eng"
        assert repository.get_group(group.id).members[0].display == "Jane Doe"


class TestConcurrency:
    """Mutations from many threads against one repository"""

    WORKERS = 8

    def _run(self, fn, *args_list):
        """Run ``fn`` once per argument tuple; return (results, errors)."""
        with ThreadPoolExecutor(max_workers=self.WORKERS) as pool:
            futures = [pool.submit(fn, *args) for args in args_list]
        results, errors = [], []
        for future in futures:
            error = future.exception()
            if error is None:
                results.append(future.result())
            else:
                errors.append(error)
        return results, errors

    def test_same_user_name_created_once(self, repository):
        drafts = [(parse_user({"userName": "jane"}),) for _ in range(self.WORKERS)]

        results, errors = self._run(repository.create_user, *drafts)

        assert len(results) == 1
        assert len(errors) == self.WORKERS - 1
        assert all(isinstance(error, Conflict) for error in errors)
        assert repository.count_users() == 1

    def test_same_member_added_by_every_thread(self, repository, make_user, make_group):
        jane = make_user("jane")
        group = make_group("Engineering")
        body = _ops({"op": "add", "path": "members", "value": [{"value": jane.id}]})
        plans = [(group.id, interpret(body, GROUP_SCHEMA)) for _ in range(self.WORKERS)]

        results, errors = self._run(repository.patch_group, *plans)

        assert errors == []
        assert len(results) == self.WORKERS
        assert [m.value for m in repository.get_members_for_group(group.id)] == [jane.id]

    def test_distinct_members_added_concurrently(self, repository, make_user, make_group):
        users = [make_user(f"user{i}") for i in range(self.WORKERS)]
        group = make_group("Engineering")
        plans = [
            (group.id, interpret(_ops({"op": "add", "path": "members", "value": [{"value": user.id}]}), GROUP_SCHEMA))
            for user in users
        ]

        _, errors = self._run(repository.patch_group, *plans)

        assert errors == []
        members = {m.value for m in repository.get_members_for_group(group.id)}
        assert members == {user.id for user in users}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
