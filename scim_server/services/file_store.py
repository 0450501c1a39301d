"""
File Repository

Persists Users, Groups and Memberships as a single JSON document:

    {"users": [...], "groups": [...], "memberships": [...]}

The document is rewritten atomically after every mutation. Thread-safe
through the in-memory repository's transaction lock.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict

from ..errors import InternalError
from .memory_store import Dataset, InMemoryRepository

logger = logging.getLogger(__name__)


class FileRepository(InMemoryRepository):
    """
    Repository persisted to a JSON file.

    The file is loaded once at construction. Each committed transaction is
    written to disk before it becomes visible to readers, so a failed write
    leaves both the file and the in-memory state unchanged.

    Example usage:
        repo = FileRepository("/data/scim.json")
        repo.create_group(parse_group({"displayName": "Engineering"}))
    """

    backend_name = "file"

    def __init__(self, data_file: str):
        """
        Initialize FileRepository with path to JSON data file.

        Args:
            data_file: Path to the JSON document; created empty when missing

        Raises:
            InternalError: If the existing file cannot be read or parsed
        """
        self.data_file = Path(data_file)

        # Ensure parent directory exists
        self.data_file.parent.mkdir(parents=True, exist_ok=True)

        if self.data_file.exists():
            dataset = Dataset.from_document(self._read_data())
        else:
            dataset = Dataset()
            self._write_data(dataset.to_document())

        super().__init__(dataset)
        logger.info(
            f"Loaded {len(dataset.users)} users, {len(dataset.groups)} groups and "
            f"{len(dataset.memberships)} memberships from {self.data_file}"
        )

    def _read_data(self) -> Dict[str, Any]:
        """
        Read the store document from the JSON file.

        Returns:
            The decoded document with ``users``, ``groups`` and ``memberships``
        """
        try:
            with open(self.data_file, "r", encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read store file {self.data_file}: {e}")
            raise InternalError(f"Unable to read store file {self.data_file}") from e

        if not isinstance(document, dict) or not all(
            isinstance(document.get(key, []), list) for key in ("users", "groups", "memberships")
        ):
            raise InternalError(f"Invalid data structure in store file {self.data_file}")
        return document

    def _write_data(self, document: Dict[str, Any]) -> None:
        """
        Write the store document to the JSON file atomically.

        Uses atomic write pattern (write to temp file, then rename) to ensure
        data integrity even if write is interrupted.
        """
        temp_file = self.data_file.with_suffix(".tmp")

        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2, ensure_ascii=False)

        # On POSIX systems the rename is atomic and prevents partial reads
        temp_file.replace(self.data_file)

    def _commit(self, working: Dataset) -> None:
        self._write_data(working.to_document())
        super()._commit(working)
