from dataclasses import dataclass
from typing import BinaryIO, Optional


@dataclass
class IncomingFile:
    """An uploaded file handed to the workflow, independent of the web framework."""

    filename: str
    content_type: Optional[str]
    stream: BinaryIO


class StorageProvider:
    def get_download_url(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def copy_in(self, src_stream: BinaryIO, key: str) -> int:
        """Store the stream under ``key`` and return the number of bytes written."""
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError
