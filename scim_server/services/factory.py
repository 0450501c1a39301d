"""
Repository factory.

Selects and constructs the configured storage backend.
"""

import logging

from ..config import SCIMServerSettings
from .file_store import FileRepository
from .memory_store import InMemoryRepository
from .repository import ResourceRepository
from .sql_store import SQLRepository

logger = logging.getLogger(__name__)


def build_repository(settings: SCIMServerSettings) -> ResourceRepository:
    """
    Create the repository named by ``settings.storage_backend``.

    Raises:
        ValueError: If the backend name is unknown
    """
    backend = settings.storage_backend
    logger.info(f"Initializing {backend} repository")

    if backend == "memory":
        return InMemoryRepository()
    if backend == "file":
        return FileRepository(data_file=str(settings.data_file))
    if backend == "sql":
        return SQLRepository(settings.database_url, echo=settings.database_echo)

    raise ValueError(f"Unknown storage backend: {backend}")
