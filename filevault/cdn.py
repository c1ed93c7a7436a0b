# cdn.py
import asyncio
import logging
from typing import Optional

import requests

from .exceptions import BackendNotConfiguredError, StorageDeleteError, UploadError
from .storage.base import ProgressCallback, ProgressTracker, StorageBackend
from .storage.dto import DeleteHint, IncomingFile, StorageType, UploadResult

UPLOAD_URL = "https://api.cloudinary.com/v1_1/{cloud_name}/{resource_type}/upload"

DOCUMENT_MIME_TYPES = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/zip",
    "text/plain",
    "text/csv",
}
DOCUMENT_EXTENSIONS = (".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".zip", ".txt", ".csv")


def classify_resource(mime_type: Optional[str], name: Optional[str] = None) -> str:
    """
    Returns the Cloudinary resource type a file is stored under:
    'raw' for documents, 'image' for images, 'video' for audio/video.
    """
    mime_type = (mime_type or "").lower()
    if mime_type in DOCUMENT_MIME_TYPES or (name or "").lower().endswith(DOCUMENT_EXTENSIONS):
        return "raw"
    if mime_type.startswith("image/"):
        return "image"
    if mime_type.startswith(("video/", "audio/")):
        return "video"
    return "raw"


def fallback_resource(resource_type: str) -> str:
    return "image" if resource_type == "raw" else "raw"


def _is_permanent_status(status: int) -> bool:
    return 400 <= status < 500 and status not in (408, 429)


class CloudinaryBackend(StorageBackend):
    """
    Media CDN backend on Cloudinary.

    Uploads are unsigned (upload preset) into the users/{owner_id} folder.
    Deletes need the API secret, so they go through an external proxy that
    takes {"publicId", "resourceType"} and answers {"result": "ok" | "not found"}.
    """

    storage_type = StorageType.CLOUDINARY

    def __init__(
        self,
        cloud_name: Optional[str],
        upload_preset: Optional[str],
        delete_api_url: Optional[str] = None,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ):
        self.cloud_name = cloud_name
        self.upload_preset = upload_preset
        self.delete_api_url = delete_api_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def is_configured(self) -> bool:
        return bool(self.cloud_name and self.upload_preset)

    async def upload(
        self,
        file: IncomingFile,
        owner_id: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        if not self.is_configured():
            raise BackendNotConfiguredError("Cloudinary is not configured correctly.")
        return await asyncio.to_thread(self._upload_sync, file, owner_id, on_progress)

    def _upload_sync(self, file: IncomingFile, owner_id: str, on_progress: Optional[ProgressCallback]) -> UploadResult:
        # Documents go to 'raw' to get past the image/pdf delivery restrictions of some accounts.
        resource_type = "raw" if classify_resource(file.mime_type, file.name) == "raw" else "auto"
        url = UPLOAD_URL.format(cloud_name=self.cloud_name, resource_type=resource_type)
        tracker = ProgressTracker(file.size, on_progress)
        tracker.update(0)

        try:
            logging.info(f"Uploading {file.name} to Cloudinary ({resource_type})...")
            response = self.session.post(
                url,
                data={
                    "upload_preset": self.upload_preset,
                    "folder": f"users/{owner_id}",
                    "tags": f"user_{owner_id}",
                },
                files={"file": (file.name, file.content, file.mime_type)},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logging.error(f"Cloudinary upload network error: {e}")
            raise UploadError(f"Cloudinary upload network error: {e}") from e

        if not response.ok:
            logging.error(f"Cloudinary upload failed ({response.status_code}): {response.text}")
            raise UploadError(
                f"Cloudinary upload failed: {response.text}",
                retryable=not _is_permanent_status(response.status_code),
            )

        body = response.json()
        tracker.update(file.size)
        logging.info(f"Uploaded {file.name} to Cloudinary as {body['public_id']}")
        return UploadResult(
            url=body["secure_url"],
            path=body["public_id"],
            storage_type=self.storage_type,
        )

    async def delete(self, path: str, hint: Optional[DeleteHint] = None):
        await asyncio.to_thread(self._delete_sync, path, hint)

    def _delete_sync(self, public_id: str, hint: Optional[DeleteHint]):
        if not self.delete_api_url:
            raise StorageDeleteError("Cloudinary delete API URL not configured.")

        hint = hint or DeleteHint()
        primary = classify_resource(hint.mime_type, hint.name)
        for resource_type in (primary, fallback_resource(primary)):
            if self._destroy(public_id, resource_type):
                return
            logging.info(f"Cloudinary '{public_id}' not found as '{resource_type}'.")

        logging.warning(f"Cloudinary '{public_id}' not found under any resource type. Nothing to delete.")

    def _destroy(self, public_id: str, resource_type: str) -> bool:
        """Returns True if deleted, False if the proxy reports it as not found."""
        logging.info(f"Deleting Cloudinary file. PublicID: '{public_id}', Type: '{resource_type}'")
        try:
            response = self.session.post(
                self.delete_api_url,
                json={"publicId": public_id, "resourceType": resource_type},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logging.error(f"Cloudinary delete error: {e}")
            raise StorageDeleteError(f"Failed to delete file from Cloudinary: {e}") from e

        if response.status_code == 404:
            return False
        if not response.ok:
            logging.error(f"Cloudinary delete failed ({response.status_code}): {response.text}")
            raise StorageDeleteError(f"Failed to delete file from Cloudinary: {response.text}")

        try:
            body = response.json()
        except ValueError:
            return True
        if not isinstance(body, dict):
            return True
        # Proxies answer either {"result": "not found"} or 200 with a "File not found" message.
        if body.get("result") == "not found":
            return False
        return "not found" not in str(body.get("message") or "").lower()
