"""
Local filesystem storage provider.
Saves progress photos and design files under a local directory.
"""
import uuid
from typing import Optional, BinaryIO
from pathlib import Path
from urllib.parse import quote

import structlog

from ..config import settings
from .provider import StorageProvider


logger = structlog.get_logger(__name__)


class LocalStorageProvider(StorageProvider):
    """Local filesystem storage provider."""

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir or settings.storage_dir)
        (self.base_dir / "uploads").mkdir(parents=True, exist_ok=True)

    def _get_path(self, key: str) -> Path:
        """Get the local filesystem path for a given key."""
        # Remove leading slash and sanitize
        clean_key = key.lstrip("/").replace("..", "").replace("\\", "/")
        return self.base_dir / "uploads" / clean_key

    def get_download_url(self, key: str) -> Optional[str]:
        path = self._get_path(key)
        if path.exists():
            return f"{settings.public_base_url}/files/local/{quote(key.lstrip('/'))}"
        return None

    def exists(self, key: str) -> bool:
        return self._get_path(key).exists()

    def copy_in(self, src_stream: BinaryIO, key: str) -> int:
        path = self._get_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        written = 0
        with open(path, "wb") as f:
            while True:
                chunk = src_stream.read(1024 * 1024)
                if not chunk:
                    break
                f.write(chunk)
                written += len(chunk)
        return written

    def delete(self, key: str) -> None:
        path = self._get_path(key)
        try:
            if path.exists():
                path.unlink()
        except OSError as e:
            logger.warning("storage_delete_failed", key=key, error=str(e))


def build_key(prefix: str, owner_id: uuid.UUID, filename: str) -> str:
    safe_name = Path(filename or "upload").name.replace(" ", "_")
    return f"{prefix}/{owner_id}/{uuid.uuid4().hex}_{safe_name}"


_default_provider: Optional[LocalStorageProvider] = None


def get_storage() -> StorageProvider:
    global _default_provider
    if _default_provider is None:
        _default_provider = LocalStorageProvider()
    return _default_provider
