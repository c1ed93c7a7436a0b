# r2.py
import asyncio
import io
import logging
import time
from typing import Optional

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import BotoCoreError, ClientError

from .exceptions import BackendNotConfiguredError, StorageDeleteError, UploadError
from .storage.base import Capability, ProgressCallback, ProgressTracker, StorageBackend
from .storage.dto import DeleteHint, IncomingFile, StorageType, UploadResult

DEFAULT_PART_SIZE = 5 * 1024 * 1024
NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
PERMANENT_CODE_PREFIXES = ("AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch", "NoSuchBucket")


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code", ""))


class R2Backend(StorageBackend):
    """
    S3-compatible object storage backend (Cloudflare R2, AWS S3, MinIO).

    Objects are keyed as users/{owner_id}/{timestamp}_{filename}. The bucket
    is private, so URLs are presigned and reissued on every read.
    """

    storage_type = StorageType.R2
    capabilities = frozenset({Capability.SIGNED_URLS})

    def __init__(
        self,
        bucket: Optional[str],
        endpoint_url: Optional[str],
        access_key_id: Optional[str],
        secret_access_key: Optional[str],
        region: str = "auto",
        url_ttl: int = 3600,
        part_size: int = DEFAULT_PART_SIZE,
    ):
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.url_ttl = url_ttl
        self.transfer_config = TransferConfig(
            multipart_threshold=part_size,
            multipart_chunksize=part_size,
            max_concurrency=4,
        )
        self._configured = all([bucket, endpoint_url, access_key_id, secret_access_key])
        self.s3 = None
        if self._configured:
            self.s3 = boto3.client(
                "s3",
                region_name=region,
                endpoint_url=endpoint_url,
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
            )
            logging.info(f"Using R2 bucket: {bucket}")

    def is_configured(self) -> bool:
        return self._configured

    def _require_configured(self):
        if not self._configured:
            raise BackendNotConfiguredError("Cloudflare R2 is not configured.")

    @staticmethod
    def build_key(owner_id: str, filename: str) -> str:
        timestamp = int(time.time() * 1000)
        return f"users/{owner_id}/{timestamp}_{filename}"

    async def upload(
        self,
        file: IncomingFile,
        owner_id: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        self._require_configured()
        key = self.build_key(owner_id, file.name)
        await asyncio.to_thread(self._upload_sync, file, key, on_progress)
        try:
            url = await self.get_signed_url(key)
        except (ClientError, BotoCoreError) as e:
            # Object is already written. Its URL is reissued on every read.
            logging.error(f"R2 signed URL error for '{key}': {e}")
            url = ""
        return UploadResult(url=url, path=key, storage_type=self.storage_type)

    def _upload_sync(self, file: IncomingFile, key: str, on_progress: Optional[ProgressCallback]):
        tracker = ProgressTracker(file.size, on_progress)
        try:
            logging.info(f"Uploading {file.name} to R2 as {key}...")
            self.s3.upload_fileobj(
                io.BytesIO(file.content),
                self.bucket,
                key,
                ExtraArgs={"ContentType": file.mime_type},
                Config=self.transfer_config,
                Callback=tracker.add,
            )
            logging.info(f"Uploaded {file.name} to R2 as {key}")
        except ClientError as e:
            code = _error_code(e)
            logging.error(f"R2 upload error for '{key}': {e}")
            retryable = not code.startswith(PERMANENT_CODE_PREFIXES)
            raise UploadError(f"R2 upload failed: {e}", retryable=retryable) from e
        except (BotoCoreError, OSError) as e:
            logging.error(f"R2 upload error for '{key}': {e}")
            raise UploadError(f"R2 upload failed: {e}") from e

    async def delete(self, path: str, hint: Optional[DeleteHint] = None):
        self._require_configured()
        await asyncio.to_thread(self._delete_sync, path)

    def _delete_sync(self, key: str):
        try:
            logging.info(f"Deleting '{key}' from R2...")
            self.s3.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                logging.warning(f"R2 object '{key}' not found. Nothing to delete.")
                return
            logging.error(f"R2 delete error for '{key}': {e}")
            raise StorageDeleteError(f"Failed to delete '{key}' from R2: {e}") from e
        except (BotoCoreError, OSError) as e:
            logging.error(f"R2 delete error for '{key}': {e}")
            raise StorageDeleteError(f"Failed to delete '{key}' from R2: {e}") from e

    async def get_signed_url(self, path: str) -> str:
        self._require_configured()
        return await asyncio.to_thread(
            self.s3.generate_presigned_url,
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": path},
            ExpiresIn=self.url_ttl,
        )
