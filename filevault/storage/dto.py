# storage/dto.py
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, computed_field


class StorageType(str, Enum):
    """Tags of the storage backends a file can live on. Stored in files.storage_type."""

    CLOUDINARY = "cloudinary"
    R2 = "r2"
    SUPABASE_STORAGE = "supabase_storage"
    GOOGLE_DRIVE = "googledrive"


class IncomingFile(BaseModel):
    """A file handed to the service for upload."""

    name: str
    mime_type: str = "application/octet-stream"
    content: bytes = Field(repr=False)

    @computed_field
    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


class UploadProgress(BaseModel):
    bytes_transferred: int
    total_bytes: int
    progress: float  # percent, 0-100


class UploadResult(BaseModel):
    """What a backend returns after a successful physical write."""

    url: str
    path: str
    storage_type: StorageType


class DeleteHint(BaseModel):
    """
    Optional metadata passed to a backend on delete, for backends that cannot
    tell how an object was classified from its path alone.
    """

    mime_type: Optional[str] = None
    name: Optional[str] = None


class FileRecord(BaseModel):
    """A row of the files table."""

    id: str
    name: str
    size: int
    mime_type: str
    download_url: str
    storage_path: str
    storage_type: StorageType
    folder_id: Optional[str] = None
    user_id: str
    created_at: Optional[datetime] = None


class Folder(BaseModel):
    """A row of the folders table."""

    id: str
    name: str
    parent_id: Optional[str] = None
    user_id: str
    created_at: Optional[datetime] = None


class ItemListing(BaseModel):
    """Contents of one folder: a page of files plus the subfolders."""

    files: List[FileRecord]
    folders: List[Folder]
