import asyncio
import os
import logging
from pathlib import Path
from typing import Union

from core.interfaces import IFileStorage

from config import settings

logger = logging.getLogger(settings.LOGGER_NAME)

class LocalFileStorage(IFileStorage):
    """Concrete implementation for storing uploaded files on the local disk."""

    def __init__(self, base_path: Union[str, Path]):
        self.base_path = Path(base_path)
        # Create the directory if it doesn't exist
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
            logger.info(f"Upload directory ensured at: {self.base_path}")
        except Exception as e:
            logger.error(f"Could not create upload directory at {self.base_path}: {e}")
            raise

    def _path_for(self, filename: str) -> Path:
        """Resolve inside base_path; reject names that escape it."""
        base = self.base_path.resolve()
        full = (base / filename).resolve()
        full.relative_to(base)
        return full

    async def save(self, content: bytes, filename: str) -> str:
        """Saves bytes to the configured upload directory."""
        file_path = self._path_for(filename)
        try:
            await asyncio.to_thread(file_path.write_bytes, content)
            logger.info(f"Successfully saved file to {file_path}")
            return str(file_path)
        except Exception as e:
            logger.error(f"Failed to save file to {file_path}: {e}")
            raise

    async def read(self, filename: str) -> bytes:
        file_path = self._path_for(filename)
        if not file_path.exists():
            raise FileNotFoundError(f"Stored file not found: {filename}")
        return await asyncio.to_thread(file_path.read_bytes)

    async def delete(self, filename: str) -> bool:
        """Deletes a file from the upload directory."""
        try:
            file_path = self._path_for(filename)
            if file_path.exists():
                os.unlink(file_path)
                logger.info(f"Successfully deleted file: {file_path}")
                return True
            logger.warning(f"Attempted to delete non-existent file: {file_path}")
            return False
        except Exception as e:
            logger.error(f"Error deleting file {filename}: {e}")
            return False
