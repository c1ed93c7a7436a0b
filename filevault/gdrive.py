# gdrive.py
import asyncio
import io
import logging
from typing import Optional

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseUpload

from .exceptions import BackendNotConfiguredError, StorageDeleteError, UploadError
from .gdrive_auth import DriveCredentialProvider
from .storage.base import Capability, ProgressCallback, ProgressTracker, StorageBackend
from .storage.dto import DeleteHint, IncomingFile, StorageType, UploadResult

DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024


def _is_permanent_status(status: int) -> bool:
    return 400 <= status < 500 and status not in (408, 429)


class GoogleDriveBackend(StorageBackend):
    """
    Personal-drive backend on the Google Drive v3 API.
    Needs a user-level OAuth grant, read through a DriveCredentialProvider.
    """

    storage_type = StorageType.GOOGLE_DRIVE
    capabilities = frozenset({Capability.CONNECTION})

    def __init__(
        self,
        credential_provider: DriveCredentialProvider,
        folder_id: Optional[str] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.credential_provider = credential_provider
        self.folder_id = folder_id
        self.chunk_size = chunk_size

    def is_configured(self) -> bool:
        return self.credential_provider.has_client_config()

    def is_connected(self) -> bool:
        return self.credential_provider.is_authorized()

    def _build_service(self):
        if self.credential_provider.get_access_token() is None:
            raise BackendNotConfiguredError("Google Drive not connected")
        return build("drive", "v3", credentials=self.credential_provider.credentials, cache_discovery=False)

    async def upload(
        self,
        file: IncomingFile,
        owner_id: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        return await asyncio.to_thread(self._upload_sync, file, on_progress)

    def _upload_sync(self, file: IncomingFile, on_progress: Optional[ProgressCallback]) -> UploadResult:
        try:
            service = self._build_service()
        except BackendNotConfiguredError as e:
            raise UploadError(str(e), retryable=False) from e

        tracker = ProgressTracker(file.size, on_progress)
        file_metadata = {"name": file.name}
        if self.folder_id:
            file_metadata["parents"] = [self.folder_id]

        try:
            media = MediaIoBaseUpload(
                io.BytesIO(file.content),
                mimetype=file.mime_type,
                chunksize=self.chunk_size,
                resumable=True,
            )
            logging.info(f"Uploading {file.name} to Google Drive...")
            request = service.files().create(
                body=file_metadata, media_body=media, fields="id, name, webViewLink"
            )
            response = None
            while response is None:
                status, response = request.next_chunk()
                if status:
                    tracker.update(status.resumable_progress)
            tracker.update(file.size)
        except HttpError as e:
            logging.error(f"Failed to upload {file.name} to Google Drive: {e}")
            raise UploadError(
                f"Google Drive upload failed: {e}",
                retryable=not _is_permanent_status(e.resp.status),
            ) from e
        except OSError as e:
            raise UploadError(f"Google Drive upload network error: {e}") from e

        logging.info(f"Successfully uploaded {file.name} to Google Drive, ID: {response['id']}.")
        return UploadResult(
            url=response.get("webViewLink", ""),
            path=response["id"],
            storage_type=self.storage_type,
        )

    async def delete(self, path: str, hint: Optional[DeleteHint] = None):
        await asyncio.to_thread(self._delete_sync, path)

    def _delete_sync(self, file_id: str):
        try:
            service = self._build_service()
        except BackendNotConfiguredError as e:
            raise StorageDeleteError(str(e)) from e

        try:
            logging.info(f"Deleting file with ID '{file_id}' from Google Drive...")
            service.files().delete(fileId=file_id).execute()
        except HttpError as e:
            if e.resp.status == 404:
                logging.warning(f"File with ID '{file_id}' not found. Nothing to delete.")
                return
            logging.error(f"Failed to delete file with ID '{file_id}': {e}")
            raise StorageDeleteError(f"Failed to delete file from Google Drive: {e}") from e
        except OSError as e:
            raise StorageDeleteError(f"Google Drive delete network error: {e}") from e
