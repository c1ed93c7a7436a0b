# sbstorage.py
import asyncio
import logging
import re
import time
from typing import Optional

from supabase import Client, StorageException

from .exceptions import StorageDeleteError, UploadError
from .storage.base import Capability, ProgressCallback, ProgressTracker, StorageBackend
from .storage.dto import DeleteHint, IncomingFile, StorageType, UploadResult

DEFAULT_BUCKET = "files"


def safe_object_name(name: str) -> str:
    """Supabase object keys only get letters, digits and dots."""
    return re.sub(r"[^a-zA-Z0-9.]", "_", name)


class SupabaseStorageBackend(StorageBackend):
    """
    Fallback backend on a private Supabase Storage bucket.

    Always configured: it shares the project with the metadata tables.
    Objects are keyed as {owner_id}/{timestamp}_{safe_name}. Signed URLs
    expire, so every metadata read gets a fresh one.
    """

    storage_type = StorageType.SUPABASE_STORAGE
    capabilities = frozenset({Capability.SIGNED_URLS})

    def __init__(self, client: Client, bucket: str = DEFAULT_BUCKET, url_ttl: int = 3600):
        self.client = client
        self.bucket = bucket
        self.url_ttl = url_ttl

    def is_configured(self) -> bool:
        return True

    @property
    def _bucket(self):
        return self.client.storage.from_(self.bucket)

    async def upload(
        self,
        file: IncomingFile,
        owner_id: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        path = f"{owner_id}/{int(time.time() * 1000)}_{safe_object_name(file.name)}"
        tracker = ProgressTracker(file.size, on_progress)
        tracker.update(0)

        def do_upload():
            return self._bucket.upload(
                path=path,
                file=file.content,
                file_options={
                    "content-type": file.mime_type,
                    "cache-control": "3600",
                    "upsert": "false",
                },
            )

        try:
            logging.info(f"Uploading {file.name} to Supabase Storage bucket '{self.bucket}' as {path}...")
            await asyncio.to_thread(do_upload)
        except StorageException as e:
            logging.error(f"Supabase Storage upload error for '{path}': {e}")
            raise UploadError(f"Supabase Storage upload failed: {e}", retryable=_is_retryable(e)) from e
        except OSError as e:
            logging.error(f"Supabase Storage upload error for '{path}': {e}")
            raise UploadError(f"Supabase Storage upload failed: {e}") from e

        tracker.update(file.size)

        try:
            url = await self.get_signed_url(path)
        except StorageException as e:
            # Object is already written. Its URL is reissued on every read.
            logging.error(f"Supabase Storage signed URL error for '{path}': {e}")
            url = ""
        return UploadResult(url=url, path=path, storage_type=self.storage_type)

    async def delete(self, path: str, hint: Optional[DeleteHint] = None):
        # remove() reports missing objects as an empty result, not an error.
        try:
            logging.info(f"Deleting '{path}' from Supabase Storage...")
            await asyncio.to_thread(self._bucket.remove, [path])
        except StorageException as e:
            logging.error(f"Supabase Storage delete error for '{path}': {e}")
            raise StorageDeleteError(f"Failed to delete '{path}' from Supabase Storage: {e}") from e
        except OSError as e:
            logging.error(f"Supabase Storage delete error for '{path}': {e}")
            raise StorageDeleteError(f"Failed to delete '{path}' from Supabase Storage: {e}") from e

    async def get_signed_url(self, path: str) -> str:
        data = await asyncio.to_thread(self._bucket.create_signed_url, path, self.url_ttl)
        url = (data or {}).get("signedURL") or (data or {}).get("signedUrl")
        if not url:
            raise StorageException(f"No signed URL returned for '{path}'")
        return url


def _is_retryable(e: StorageException) -> bool:
    details = e.args[0] if e.args and isinstance(e.args[0], dict) else {}
    try:
        status = int(details.get("statusCode", 500))
    except (TypeError, ValueError):
        status = 500
    return not (400 <= status < 500 and status not in (408, 429))
