"""Concrete implementation of the FileSystem interface for the local disk.

Uses `pathlib` for paths and `aiofiles` for async I/O.
"""

import logging
from pathlib import Path

import aiofiles

from cardstats.domain.interfaces.filesystem import FileSystem
from cardstats.domain.models.common import FilePath

logger = logging.getLogger(__name__)

class LocalFileSystem(FileSystem):
    """Implementation of FileSystem for the local disk."""

    async def read_file(self, file_path: FilePath) -> str:
        """Reads file content asynchronously."""
        path = Path(file_path)
        logger.debug(f"Reading file: {path}")
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {file_path}")

        async with aiofiles.open(path, mode='r', encoding='utf-8') as f:
            content = await f.read()
        logger.debug(f"Read {len(content)} characters from {path}")
        return content

    async def write_file(self, file_path: FilePath, content: str) -> None:
        """Writes content to a file asynchronously."""
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, mode='w', encoding='utf-8') as f:
            await f.write(content)
        logger.debug(f"Wrote {len(content)} characters to {path}")
