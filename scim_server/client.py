#!/usr/bin/env python3
"""
Identity Provider SCIM Client

Simulates an identity provider driving the SCIM server for local testing:
group creation, user provisioning with group assignment, membership
changes through PATCH, reconciliation listing and deprovisioning.

Usage:
    scim-idp-client

Configuration:
    Set SCIM_SERVER_URL, SCIM_BASE_PATH and BEARER_TOKEN environment
    variables or rely on the defaults below.

Examples:
    export SCIM_SERVER_URL="http://localhost:8080"
    export BEARER_TOKEN="test-token-123"
    scim-idp-client
"""

import os
import sys
from typing import Any, Dict, List, Optional

import requests

from .models.scim import SCIM_GROUP_SCHEMA, SCIM_PATCH_SCHEMA, SCIM_USER_SCHEMA


class SCIMClient:
    """SCIM client that performs identity provider provisioning operations."""

    def __init__(self, base_url: str, bearer_token: str, base_path: str = "/scim/v2", timeout: float = 10):
        """Initialize the SCIM client.

        Args:
            base_url: Server URL (e.g., http://localhost:8080)
            bearer_token: Bearer token sent with every SCIM request
            base_path: Prefix of the SCIM endpoints
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url.rstrip('/')
        self.scim_url = f"{self.base_url}/{base_path.strip('/')}"
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({
            'Authorization': f'Bearer {bearer_token}',
            'Content-Type': 'application/scim+json',
            'Accept': 'application/scim+json'
        })

    def _request(self, method: str, path: str, expected: int, **kwargs) -> Optional[requests.Response]:
        url = f"{self.scim_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            print(f"💥 Request failed: {e}")
            return None

        print(f"📤 {method} {url}")
        print(f"📊 Status: {response.status_code}")
        if response.status_code != expected:
            print(f"❌ Unexpected status {response.status_code}, expected {expected}")
            print(f"🔍 Response: {response.text}")
            return None
        return response

    def create_user(self, user_data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Create a new user via SCIM POST request.

        Returns:
            SCIM response dict or None if failed
        """
        print(f"\n🔄 Creating user: {user_data.get('userName', 'Unknown')}")
        response = self._request("POST", "/Users", 201, json=user_data)
        if response is None:
            return None
        result = response.json()
        print(f"✅ User created with id {result.get('id', 'N/A')}")
        return result

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        response = self._request("GET", f"/Users/{user_id}", 200)
        return response.json() if response is not None else None

    def find_user(self, user_name: str) -> Optional[Dict[str, Any]]:
        """Look a user up by userName; None when absent."""
        response = self._request("GET", "/Users", 200, params={"filter": f'userName eq "{user_name}"'})
        if response is None:
            return None
        resources = response.json().get('Resources', [])
        return resources[0] if resources else None

    def list_users(self) -> Optional[List[Dict[str, Any]]]:
        """List all users via SCIM GET request (reconciliation).

        Returns:
            List of user dicts or None if failed
        """
        print("\n🔄 Listing all users (reconciliation)")
        response = self._request("GET", "/Users", 200)
        if response is None:
            return None

        users = response.json().get('Resources', [])
        print(f"✅ Retrieved {len(users)} users")
        for i, user in enumerate(users, 1):
            groups = ', '.join(g.get('display') or g.get('value', '') for g in user.get('groups', []))
            print(f"  {i}. {user.get('userName', 'N/A')} (active: {user.get('active', 'Unknown')})")
            print(f"     ID: {user.get('id', 'N/A')}, Groups: {groups or '-'}")
        return users

    def patch_user(self, user_id: str, operations: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        payload = {"schemas": [SCIM_PATCH_SCHEMA], "Operations": operations}
        response = self._request("PATCH", f"/Users/{user_id}", 200, json=payload)
        return response.json() if response is not None else None

    def update_user_groups(self, user_id: str, groups_to_add: List[str], groups_to_remove: List[str]) -> bool:
        """Change a user's group memberships via SCIM PATCH request.

        Args:
            user_id: SCIM user ID
            groups_to_add: Group IDs to add the user to
            groups_to_remove: Group IDs to remove the user from

        Returns:
            True if successful, False otherwise
        """
        operations = []
        if groups_to_add:
            operations.append({
                "op": "add",
                "path": "groups",
                "value": [{"value": group_id} for group_id in groups_to_add]
            })
        if groups_to_remove:
            operations.append({
                "op": "remove",
                "path": "groups",
                "value": [{"value": group_id} for group_id in groups_to_remove]
            })

        print(f"\n🔄 Updating group memberships for user {user_id}")
        if groups_to_add:
            print(f"➕ Adding to groups: {', '.join(groups_to_add)}")
        if groups_to_remove:
            print(f"➖ Removing from groups: {', '.join(groups_to_remove)}")

        return self.patch_user(user_id, operations) is not None

    def deactivate_user(self, user_id: str) -> bool:
        """Mark a user inactive with a replace operation."""
        print(f"\n🔄 Deactivating user {user_id}")
        result = self.patch_user(user_id, [{"op": "replace", "value": {"active": False}}])
        if result is None:
            return False
        print(f"⚠️  Active: {result.get('active', 'Unknown')}")
        return True

    def delete_user(self, user_id: str) -> bool:
        print(f"\n🔄 Deleting user {user_id}")
        return self._request("DELETE", f"/Users/{user_id}", 204) is not None

    def create_group(self, display_name: str, member_ids: Optional[List[str]] = None) -> Optional[Dict[str, Any]]:
        """Create a group, optionally with initial members."""
        payload: Dict[str, Any] = {"schemas": [SCIM_GROUP_SCHEMA], "displayName": display_name}
        if member_ids:
            payload["members"] = [{"value": member_id} for member_id in member_ids]

        print(f"\n🔄 Creating group: {display_name}")
        response = self._request("POST", "/Groups", 201, json=payload)
        if response is None:
            return None
        result = response.json()
        print(f"✅ Group created with id {result.get('id', 'N/A')}")
        return result

    def find_group(self, display_name: str) -> Optional[Dict[str, Any]]:
        response = self._request("GET", "/Groups", 200, params={"filter": f'displayName eq "{display_name}"'})
        if response is None:
            return None
        resources = response.json().get('Resources', [])
        return resources[0] if resources else None

    def patch_group_members(self, group_id: str, add: List[str], remove: List[str]) -> Optional[Dict[str, Any]]:
        """Add and remove group members by user id in one PATCH request."""
        operations = []
        if add:
            operations.append({"op": "add", "path": "members", "value": [{"value": u} for u in add]})
        for user_id in remove:
            operations.append({"op": "remove", "path": f'members[value eq "{user_id}"]'})
        payload = {"schemas": [SCIM_PATCH_SCHEMA], "Operations": operations}
        response = self._request("PATCH", f"/Groups/{group_id}", 200, json=payload)
        return response.json() if response is not None else None

    def delete_group(self, group_id: str) -> bool:
        print(f"\n🔄 Deleting group {group_id}")
        return self._request("DELETE", f"/Groups/{group_id}", 204) is not None

    def test_health_endpoint(self) -> bool:
        """Test the server health endpoint.

        Returns:
            True if healthy, False otherwise
        """
        url = f"{self.base_url}/health"
        print("🏥 Testing health endpoint...")

        try:
            response = requests.get(url, timeout=5)
        except requests.RequestException as e:
            print(f"💥 Health check failed: {e}")
            return False

        print(f"📤 GET {url}")
        print(f"📊 Status: {response.status_code}")
        if response.status_code == 200:
            print(f"✅ SCIM server is healthy ({response.json().get('backend', 'unknown')} backend)")
            return True
        print(f"⚠️  Health check failed: {response.status_code}")
        return False


def create_sample_user_data(given_name: str, family_name: str, email: str,
                            group_ids: Optional[List[str]] = None) -> Dict[str, Any]:
    """Create a sample SCIM user payload.

    Args:
        given_name: First name (e.g., "Jane")
        family_name: Last name (e.g., "Smith")
        email: Email, also used as userName
        group_ids: IDs of existing groups to join on creation

    Returns:
        SCIM user payload dict
    """
    user_data: Dict[str, Any] = {
        "schemas": [SCIM_USER_SCHEMA],
        "userName": email,
        "name": {
            "givenName": given_name,
            "familyName": family_name
        },
        "emails": [
            {
                "value": email,
                "type": "work",
                "primary": True
            }
        ],
        "active": True
    }
    if group_ids:
        user_data["groups"] = [{"value": group_id} for group_id in group_ids]
    return user_data


def main():
    """Run the provisioning scenarios against a live server."""
    server_url = os.environ.get('SCIM_SERVER_URL', 'http://localhost:8080')
    base_path = os.environ.get('SCIM_BASE_PATH', '/scim/v2')
    bearer_token = os.environ.get('BEARER_TOKEN', 'test-bearer-token-change-me')

    print("🚀 Identity Provider SCIM Client")
    print("=" * 50)
    print(f"📡 SCIM server URL: {server_url}{base_path}")
    print(f"🔐 Bearer Token: {bearer_token[:8]}{'*' * 8}")

    client = SCIMClient(server_url, bearer_token, base_path)

    if not client.test_health_endpoint():
        print("\n❌ Health check failed - is the SCIM server running?")
        print("   Try: scim-server")
        sys.exit(1)

    print("\n📋 Test 1: Create Groups")
    print("-" * 30)
    developers = client.create_group("Developers")
    leads = client.create_group("Tech Leads")
    if not developers or not leads:
        print("❌ Group creation failed, skipping remaining tests")
        sys.exit(1)

    print("\n📋 Test 2: Create User With Group Assignment")
    print("-" * 30)
    user = client.create_user(create_sample_user_data(
        "Alice", "Johnson", "alice.johnson@contoso.com", [developers["id"]]
    ))
    if not user:
        print("❌ User creation failed, skipping remaining tests")
        sys.exit(1)

    print("\n📋 Test 3: Update Group Memberships")
    print("-" * 30)
    client.update_user_groups(user["id"], [leads["id"]], [developers["id"]])

    print("\n📋 Test 4: List Users (Reconciliation)")
    print("-" * 30)
    client.list_users()

    print("\n📋 Test 5: Deactivate And Delete User")
    print("-" * 30)
    client.deactivate_user(user["id"])
    client.delete_user(user["id"])
    client.delete_group(developers["id"])
    client.delete_group(leads["id"])

    print("\n" + "=" * 50)
    print("🎉 SCIM Test Scenarios Complete!")
    print("=" * 50)


if __name__ == "__main__":
    main()
