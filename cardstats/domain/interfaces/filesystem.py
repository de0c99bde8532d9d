"""Interface for interacting with the file system.

Defines the contract for reading identifier lists and reading/writing the
JSON documents used by cache export and import, so the CLI stays
independent of where those files live.
"""

import abc
import json
from typing import Any, List

from ..models.common import FilePath

class FileSystem(abc.ABC):
    """Abstract Base Class for file system operations."""

    @abc.abstractmethod
    async def read_file(self, file_path: FilePath) -> str:
        """Reads the entire content of a file asynchronously.

        Raises:
            FileNotFoundError: If the file does not exist.
            PermissionError: If read permissions are denied.
        """
        pass

    @abc.abstractmethod
    async def write_file(self, file_path: FilePath, content: str) -> None:
        """Writes content to a file, creating parent directories."""
        pass

    async def read_json(self, file_path: FilePath) -> Any:
        """Reads and decodes a JSON document.

        Raises:
            ValueError: If the content is not valid JSON.
        """
        return json.loads(await self.read_file(file_path))

    async def write_json(self, file_path: FilePath, data: Any) -> None:
        await self.write_file(file_path, json.dumps(data, ensure_ascii=False, indent=2))

    async def read_ids(self, file_path: FilePath) -> List[str]:
        """Reads identifiers, one per line; blanks and '#' comments are ignored."""
        ids = []
        for line in (await self.read_file(file_path)).splitlines():
            text = line.split("#", 1)[0].strip()
            if text:
                ids.append(text)
        return ids
