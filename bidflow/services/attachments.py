import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence

import structlog

from ..storage.local_provider import build_key
from ..storage.provider import IncomingFile, StorageProvider
from .errors import DependencyFailure


logger = structlog.get_logger(__name__)


@dataclass
class StoredFile:
    key: str
    file_name: str
    content_type: Optional[str]
    size: int


class AttachmentBatch:
    """Files written during one unit of work; removed again if it rolls back."""

    def __init__(self, storage: StorageProvider):
        self.storage = storage
        self.stored: List[StoredFile] = []

    def store(self, files: Sequence[IncomingFile], prefix: str, owner_id: uuid.UUID) -> List[StoredFile]:
        written = []
        for f in files or []:
            key = build_key(prefix, owner_id, f.filename)
            try:
                size = self.storage.copy_in(f.stream, key)
            except OSError as e:
                logger.error("attachment_store_failed", key=key, error=str(e))
                raise DependencyFailure("Failed to store uploaded file") from e
            stored = StoredFile(key=key, file_name=f.filename or "upload", content_type=f.content_type, size=size)
            self.stored.append(stored)
            written.append(stored)
        return written

    def discard(self) -> None:
        for stored in self.stored:
            self.storage.delete(stored.key)
        if self.stored:
            logger.info("attachments_discarded", count=len(self.stored))
        self.stored = []


@contextmanager
def attachment_batch(storage: StorageProvider) -> Iterator[AttachmentBatch]:
    batch = AttachmentBatch(storage)
    try:
        yield batch
    except Exception:
        batch.discard()
        raise
