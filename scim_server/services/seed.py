"""
Seed Loader

Loads initial Users and Groups from a YAML document into an empty store:

    users:
      - userName: john.doe@example.com
        active: true
        name: {givenName: John, familyName: Doe}
        emails: [{value: john.doe@example.com}]
    groups:
      - displayName: Administrators
        members: [john.doe@example.com]

Group members are listed by userName.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

from ..errors import BadRequest
from ..models.resources import GroupDraft, ResourceRef, parse_group, parse_user
from .repository import ResourceRepository

logger = logging.getLogger(__name__)


def load_seed_document(seed_file: str) -> Dict[str, Any]:
    """
    Read and validate the seed YAML file.

    Raises:
        FileNotFoundError: If the seed file doesn't exist
        ValueError: If the document is not a mapping of lists
    """
    path = Path(seed_file)
    if not path.exists():
        raise FileNotFoundError(f"Seed file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        document = yaml.safe_load(f) or {}

    if not isinstance(document, dict):
        raise ValueError(f"Seed file {path} must contain a mapping")
    for key in ("users", "groups"):
        if not isinstance(document.get(key, []), list):
            raise ValueError(f"Seed file {path}: '{key}' must be a list")
    return document


def seed_repository(repository: ResourceRepository, document: Dict[str, Any]) -> Tuple[int, int]:
    """
    Create the seed users and groups when the store is empty.

    Returns:
        Number of users and groups created; (0, 0) if the store already
        held data
    """
    if repository.count_users() or repository.count_groups():
        logger.info("Store already contains data; skipping seed")
        return 0, 0

    user_ids: Dict[str, str] = {}
    for entry in document.get("users", []):
        user = repository.create_user(parse_user(entry))
        user_ids[user.userName] = user.id

    groups_created = 0
    for entry in document.get("groups", []):
        draft = parse_group({key: value for key, value in entry.items() if key != "members"})
        members = []
        for user_name in entry.get("members", []) or []:
            if user_name not in user_ids:
                raise BadRequest(f"Seed group {draft.displayName} references unknown user {user_name}")
            members.append(ResourceRef(value=user_ids[user_name], display=user_name))
        repository.create_group(GroupDraft(displayName=draft.displayName, members=members))
        groups_created += 1

    logger.info(f"Seeded {len(user_ids)} users and {groups_created} groups")
    return len(user_ids), groups_created


def seed_from_file(repository: ResourceRepository, seed_file: str) -> Tuple[int, int]:
    return seed_repository(repository, load_seed_document(seed_file))
