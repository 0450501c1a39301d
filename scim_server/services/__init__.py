"""
SCIM Server Services

Storage backends, PATCH interpretation and SCIM envelope building.
"""

from .factory import build_repository
from .file_store import FileRepository
from .memory_store import InMemoryRepository
from .patch import GROUP_SCHEMA, USER_SCHEMA, PatchOperation, PatchPlan, interpret
from .repository import ResourceRepository
from .sql_store import SQLRepository

__all__ = [
    "build_repository",
    "FileRepository",
    "InMemoryRepository",
    "SQLRepository",
    "ResourceRepository",
    "PatchOperation",
    "PatchPlan",
    "interpret",
    "USER_SCHEMA",
    "GROUP_SCHEMA",
]
