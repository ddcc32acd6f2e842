"""
Document storage.

Uploaded PDFs live under ``{base_path}/{bucket}/{user_id}/...``. The
pipeline only ever reads from here; paths are checked against the caller
before any file access.
"""

import logging
from pathlib import Path

from backend.core.config import get_settings
from workers.extraction.errors import DocumentValidationError

logger = logging.getLogger(__name__)
settings = get_settings()


class LocalStorage:
    """Bucket-style storage on the local filesystem."""

    def __init__(self, base_path: str = None, bucket: str = None):
        self.root = Path(base_path or settings.storage.base_path) / (bucket or settings.storage.bucket)

    def _resolve(self, storage_path: str) -> Path:
        path = (self.root / storage_path).resolve()
        if self.root.resolve() not in path.parents:
            raise DocumentValidationError(f"Invalid storage path: {storage_path}")
        return path

    def read(self, storage_path: str) -> bytes:
        path = self._resolve(storage_path)
        if not path.is_file():
            raise DocumentValidationError(f"Document not found in storage: {storage_path}")
        data = path.read_bytes()
        logger.info(f"Read {len(data)} bytes from {storage_path}")
        return data

    def exists(self, storage_path: str) -> bool:
        return self._resolve(storage_path).is_file()


_storage = None


def get_storage() -> LocalStorage:
    global _storage
    if _storage is None:
        _storage = LocalStorage()
    return _storage
