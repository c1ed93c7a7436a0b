# storage/base.py
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, FrozenSet, Optional

from .dto import DeleteHint, IncomingFile, StorageType, UploadProgress, UploadResult

ProgressCallback = Callable[[UploadProgress], None]


class Capability(str, Enum):
    """Optional features a backend may support on top of upload/delete."""

    CONNECTION = "connection"  # needs a live user-level grant, see is_connected()
    SIGNED_URLS = "signed_urls"  # stored URLs expire, see get_signed_url()


class ProgressTracker:
    """
    Forwards byte counts to an upload progress callback.

    Callbacks are serialized and the reported count never goes down, even when
    the SDK reports progress from several worker threads.
    """

    def __init__(self, total_bytes: int, callback: Optional[ProgressCallback] = None):
        self.total_bytes = total_bytes
        self.callback = callback
        self.bytes_transferred = 0
        self._lock = threading.Lock()

    def add(self, chunk_bytes: int):
        """Adds an increment (boto3 style callbacks)."""
        with self._lock:
            self._emit(self.bytes_transferred + chunk_bytes)

    def update(self, bytes_transferred: int):
        """Reports an absolute count (resumable upload style)."""
        with self._lock:
            self._emit(bytes_transferred)

    def _emit(self, bytes_transferred: int):
        bytes_transferred = min(max(bytes_transferred, self.bytes_transferred), self.total_bytes)
        self.bytes_transferred = bytes_transferred
        if self.callback is None:
            return
        percent = 100.0 if self.total_bytes == 0 else bytes_transferred / self.total_bytes * 100
        self.callback(
            UploadProgress(
                bytes_transferred=bytes_transferred,
                total_bytes=self.total_bytes,
                progress=percent,
            )
        )


class StorageBackend(ABC):
    """
    Abstract base class for a physical storage backend.
    Defines the common interface that all backends (CDN, object storage,
    database-backed bucket, personal drive) must implement, so the service
    never has to branch on which backend it is talking to.
    """

    storage_type: StorageType
    capabilities: FrozenSet[Capability] = frozenset()

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    @abstractmethod
    def is_configured(self) -> bool:
        """
        True if the required credentials/config are present. Does no I/O.
        """
        pass

    def is_connected(self) -> bool:
        """
        True if the user-level authorization this backend needs is present.
        Backends without Capability.CONNECTION are always connected.
        """
        return True

    @abstractmethod
    async def upload(
        self,
        file: IncomingFile,
        owner_id: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        """
        Writes the file to the backend.

        :param file: The file to store.
        :param owner_id: The owning user, used for key prefixes and tags.
        :param on_progress: Called with non-decreasing byte counts.
        :return: The URL, the backend locator and the backend tag.
        :raises UploadError: On network, authorization or backend-side failures.
        """
        pass

    @abstractmethod
    async def delete(self, path: str, hint: Optional[DeleteHint] = None):
        """
        Deletes an object. Deleting an object that is already gone succeeds.

        :param path: The backend locator returned by upload().
        :param hint: Mime type and name of the file, for backends that need them.
        :raises StorageDeleteError: If the backend could not confirm the delete.
        """
        pass

    async def get_signed_url(self, path: str) -> str:
        """
        Issues a fresh time-limited URL. Only for Capability.SIGNED_URLS backends.
        """
        raise NotImplementedError(
            f"Storage backend '{self.storage_type.value}' does not issue signed URLs."
        )
