# selector.py
import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, Union

from .exceptions import QuotaExceededError
from .storage.base import Capability, StorageBackend
from .storage.dto import IncomingFile, StorageType

QuotaCheck = Callable[[int], Union[bool, Awaitable[bool]]]


@dataclass(frozen=True)
class BackendSet:
    """The fixed set of storage backends, one per StorageType."""

    cdn: StorageBackend
    object_storage: StorageBackend
    blob: StorageBackend
    drive: StorageBackend

    def __post_init__(self):
        expected = {
            "cdn": StorageType.CLOUDINARY,
            "object_storage": StorageType.R2,
            "blob": StorageType.SUPABASE_STORAGE,
            "drive": StorageType.GOOGLE_DRIVE,
        }
        for field_name, storage_type in expected.items():
            backend = getattr(self, field_name)
            if backend.storage_type != storage_type:
                raise ValueError(
                    f"BackendSet.{field_name} must be a '{storage_type.value}' backend, "
                    f"got '{backend.storage_type.value}'"
                )

    def __iter__(self) -> Iterator[StorageBackend]:
        return iter((self.cdn, self.object_storage, self.blob, self.drive))

    def resolve(self, storage_type: Union[StorageType, str]) -> StorageBackend:
        """Returns the backend that owns records tagged with storage_type."""
        storage_type = StorageType(storage_type)
        for backend in self:
            if backend.storage_type == storage_type:
                return backend
        raise ValueError(f"Storage backend '{storage_type.value}' not found")


async def _call_quota_check(can_upload_to_local: QuotaCheck, size: int) -> bool:
    result = can_upload_to_local(size)
    if inspect.isawaitable(result):
        result = await result
    return bool(result)


async def select_backend(
    backends: BackendSet,
    file: IncomingFile,
    owner_id: str,
    can_upload_to_local: QuotaCheck,
    use_drive_preferred: bool = False,
) -> StorageBackend:
    """
    Picks the backend for one upload. First match wins:

    1. Drive, if it is connected and either requested or the local quota is full.
    2. QuotaExceededError, if the local quota is full and Drive is not connected.
    3. The CDN for images, if configured.
    4. Object storage, if configured.
    5. The Supabase bucket, which is always available.
    """
    drive = backends.drive
    drive_connected = drive.supports(Capability.CONNECTION) and drive.is_connected()
    can_upload_local = await _call_quota_check(can_upload_to_local, file.size)

    if drive_connected and (use_drive_preferred or not can_upload_local):
        logging.info(f"Routing {file.name} for user {owner_id} to Google Drive.")
        return drive

    if not can_upload_local:
        raise QuotaExceededError("Storage limit exceeded. Connect Google Drive to upload more files.")

    if file.is_image and backends.cdn.is_configured():
        logging.info(f"Routing image {file.name} to Cloudinary.")
        return backends.cdn

    if backends.object_storage.is_configured():
        logging.info(f"Routing {file.name} to R2.")
        return backends.object_storage

    logging.info(f"Routing {file.name} to Supabase Storage.")
    return backends.blob
