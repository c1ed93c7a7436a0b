# service.py
import asyncio
import logging
from typing import List, Optional

from .exceptions import (
    FinalizationError,
    InconsistentStateError,
    NotFoundError,
    OrphanedObjectError,
    PermanentError,
    StorageDeleteError,
    TransientError,
    UploadError,
    ValidationError,
)
from .metadata import MetadataStore
from .retry import DEFAULT_INITIAL_DELAY, DEFAULT_MAX_ATTEMPTS, DEFAULT_MAX_DELAY, with_retry
from .selector import BackendSet, select_backend
from .storage.base import Capability, ProgressCallback, StorageBackend
from .storage.dto import DeleteHint, FileRecord, Folder, IncomingFile, ItemListing, UploadResult
from .utils import format_file_size
from .validation import validate_and_sanitize_name

MAX_USER_STORAGE_BYTES = 500 * 1024 * 1024  # local limit before falling back to Google Drive


class StorageService:
    """
    Public entry point for file and folder operations.

    Picks a backend per upload, runs the upload with retries and keeps the
    metadata row and the physical object in step: an object whose row cannot
    be saved is deleted again, and a row is only deleted once its object is.
    """

    def __init__(
        self,
        metadata: MetadataStore,
        backends: BackendSet,
        max_local_bytes: int = MAX_USER_STORAGE_BYTES,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        purge_folder_objects: bool = False,
        sleep=asyncio.sleep,
    ):
        self.metadata = metadata
        self.backends = backends
        self.max_local_bytes = max_local_bytes
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.purge_folder_objects = purge_folder_objects
        self._sleep = sleep

    # --- Quota ---

    async def get_user_storage_size(self, owner_id: str) -> int:
        """Total bytes used by the user's files, in every folder."""
        return await self.metadata.get_total_size(owner_id)

    async def can_upload_to_local(self, owner_id: str, file_size: int) -> bool:
        current_size = await self.get_user_storage_size(owner_id)
        return current_size + file_size <= self.max_local_bytes

    # --- Files ---

    async def upload_file(
        self,
        owner_id: str,
        file: IncomingFile,
        on_progress: Optional[ProgressCallback] = None,
        folder_id: Optional[str] = None,
        use_drive_preferred: bool = False,
    ) -> FileRecord:
        """
        Uploads a file and saves its metadata.

        :raises InvalidNameError: Before any network call, for unusable names.
        :raises NotFoundError: The target folder does not belong to the user.
        :raises QuotaExceededError: Local quota is full and Drive is not connected.
        :raises UploadError: The backend write failed after all retries.
        :raises FinalizationError: The metadata could not be saved. The uploaded
            object was deleted again. OrphanedObjectError if that delete failed too.
        """
        name = validate_and_sanitize_name(file.name)
        if file.size <= 0:
            raise ValidationError(f"File {name!r} is empty")
        if name != file.name:
            file = file.model_copy(update={"name": name})
        if folder_id and await self.metadata.get_folder(folder_id, owner_id) is None:
            raise NotFoundError(f"Folder {folder_id} not found")

        backend = await select_backend(
            self.backends,
            file,
            owner_id,
            can_upload_to_local=lambda size: self.can_upload_to_local(owner_id, size),
            use_drive_preferred=use_drive_preferred,
        )

        result = await self._upload_with_retry(backend, file, owner_id, on_progress)
        logging.info(
            f"Uploaded {file.name} ({format_file_size(file.size)}) to {result.storage_type.value} as {result.path}"
        )

        try:
            return await self.metadata.create_file(
                {
                    "name": file.name,
                    "size": file.size,
                    "mime_type": file.mime_type,
                    "download_url": result.url,
                    "storage_path": result.path,
                    "storage_type": result.storage_type,
                    "folder_id": folder_id,
                    "user_id": owner_id,
                }
            )
        except Exception as e:
            logging.error(f"Failed to save metadata for {file.name}, removing the uploaded object. Error: {e}")
            await self._compensate(backend, result, file, e)
            raise FinalizationError(
                f"Upload of {file.name} could not be finalized: {e}",
                cause=e,
                storage_type=result.storage_type,
                storage_path=result.path,
            ) from e

    async def _upload_with_retry(
        self,
        backend: StorageBackend,
        file: IncomingFile,
        owner_id: str,
        on_progress: Optional[ProgressCallback],
    ) -> UploadResult:
        def log_retry(error: Exception, attempt: int):
            logging.warning(f"Upload of {file.name} to {backend.storage_type.value} failed (attempt {attempt}): {error}")

        try:
            return await with_retry(
                lambda: backend.upload(file, owner_id, on_progress),
                max_attempts=self.max_attempts,
                initial_delay=self.initial_delay,
                max_delay=self.max_delay,
                on_retry=log_retry,
                sleep=self._sleep,
            )
        except (PermanentError, TransientError):
            raise
        except Exception as e:
            raise UploadError(f"Upload to {backend.storage_type.value} failed: {e}") from e

    async def _compensate(self, backend: StorageBackend, result: UploadResult, file: IncomingFile, cause: Exception):
        try:
            await backend.delete(result.path, DeleteHint(mime_type=file.mime_type, name=file.name))
            logging.info(f"Removed orphaned object {result.path} from {result.storage_type.value}.")
        except Exception as cleanup_error:
            logging.critical(
                f"CRITICAL: Orphaned object left in {result.storage_type.value} at '{result.path}' "
                f"for {file.name}. Needs manual cleanup. Cleanup error: {cleanup_error}",
                exc_info=True,
            )
            raise OrphanedObjectError(
                f"Upload of {file.name} could not be finalized and its object could not be removed",
                cause=cause,
                cleanup_error=cleanup_error,
                storage_type=result.storage_type,
                storage_path=result.path,
            ) from cause

    async def delete_file(self, file_id: str, owner_id: str):
        """
        Deletes the physical object, then the metadata row.

        :raises NotFoundError: No such file for this user.
        :raises StorageDeleteError: The object could not be deleted. The row is kept.
        :raises InconsistentStateError: The object is gone but the row could not be removed.
        """
        record = await self.metadata.get_file(file_id, owner_id)
        if record is None:
            raise NotFoundError(f"File {file_id} not found")

        backend = self.backends.resolve(record.storage_type)
        try:
            await backend.delete(record.storage_path, DeleteHint(mime_type=record.mime_type, name=record.name))
        except StorageDeleteError:
            raise
        except Exception as e:
            logging.error(f"Failed to delete file from {record.storage_type.value}: {e}")
            raise StorageDeleteError(f"Failed to delete {record.name} from {record.storage_type.value}: {e}") from e

        try:
            await self.metadata.delete_file(file_id, owner_id)
        except NotFoundError:
            logging.warning(f"Metadata for file {file_id} was already removed.")
        except Exception as e:
            logging.critical(
                f"CRITICAL: Object '{record.storage_path}' was deleted from {record.storage_type.value} "
                f"but the metadata row of file {file_id} remains. Error: {e}",
                exc_info=True,
            )
            raise InconsistentStateError(
                f"File {file_id} was deleted from storage but its metadata could not be removed: {e}"
            ) from e
        logging.info(f"Deleted file {file_id} ({record.name}).")

    async def get_file_metadata(self, file_id: str, owner_id: str) -> Optional[FileRecord]:
        """
        Returns the file, or None if it does not exist for this user. Backends
        with expiring URLs get a fresh download_url; if that fails the stored
        URL is returned.
        """
        record = await self.metadata.get_file(file_id, owner_id)
        if record is None:
            return None

        backend = self.backends.resolve(record.storage_type)
        if backend.supports(Capability.SIGNED_URLS):
            try:
                url = await backend.get_signed_url(record.storage_path)
                record = record.model_copy(update={"download_url": url})
            except Exception as e:
                logging.error(f"Failed to refresh signed URL for {record.storage_type.value}: {e}")
        return record

    async def rename_file(self, file_id: str, owner_id: str, name: str):
        """
        :raises InvalidNameError: For unusable names.
        :raises NotFoundError: No such file for this user.
        """
        sanitized = validate_and_sanitize_name(name)
        await self.metadata.update_file(file_id, owner_id, {"name": sanitized})
        logging.info(f"Renamed file {file_id} to {sanitized}.")

    async def get_items(
        self,
        owner_id: str,
        folder_id: Optional[str] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> ItemListing:
        """
        A page of files of a folder (None is the root). Subfolders are listed
        with the first page only.
        """
        if page is None or page == 0:
            files, folders = await asyncio.gather(
                self.metadata.list_files(owner_id, folder_id, page, page_size),
                self.metadata.list_folders(owner_id, folder_id),
            )
        else:
            files = await self.metadata.list_files(owner_id, folder_id, page, page_size)
            folders = []
        return ItemListing(files=files, folders=folders)

    # --- Folders ---

    async def create_folder(self, owner_id: str, name: str, parent_id: Optional[str] = None) -> Folder:
        """
        :raises InvalidNameError: For unusable names.
        :raises NotFoundError: The parent folder does not belong to the user.
        """
        sanitized = validate_and_sanitize_name(name)
        if parent_id and await self.metadata.get_folder(parent_id, owner_id) is None:
            raise NotFoundError(f"Folder {parent_id} not found")

        folder = await self.metadata.create_folder({"name": sanitized, "user_id": owner_id, "parent_id": parent_id})
        logging.info(f"Created folder {folder.id} ({folder.name}).")
        return folder

    async def delete_folder(self, folder_id: str, owner_id: str) -> List[FileRecord]:
        """
        Deletes a folder tree and the file rows in it.

        Physical objects of those files are only deleted when
        purge_folder_objects is set. Otherwise they stay in their backends.

        :return: The file records that were removed.
        :raises NotFoundError: The folder does not belong to the user.
        """
        removed = await self.metadata.delete_folder(folder_id, owner_id)
        if not removed:
            return removed

        if not self.purge_folder_objects:
            logging.warning(
                f"Folder {folder_id} deleted with {len(removed)} file record(s). "
                f"Their physical objects were left in storage."
            )
            return removed

        for record in removed:
            backend = self.backends.resolve(record.storage_type)
            try:
                await backend.delete(record.storage_path, DeleteHint(mime_type=record.mime_type, name=record.name))
            except Exception as e:
                logging.critical(
                    f"CRITICAL: Orphaned object left in {record.storage_type.value} at '{record.storage_path}' "
                    f"after deleting folder {folder_id}. Error: {e}"
                )
        return removed
