# metadata.py
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from supabase import Client, PostgrestAPIError

from .exceptions import MetadataStoreError, NotFoundError, ValidationError
from .storage.dto import FileRecord, Folder, StorageType
from .supabase_client import FILES_TABLE, FOLDERS_TABLE
from .validation import MAX_NAME_LENGTH, is_valid_name, sanitize_name

UPDATABLE_FILE_FIELDS = {"name", "folder_id"}


def _check_name(name: str) -> str:
    sanitized = sanitize_name(name)
    if not sanitized or not is_valid_name(sanitized):
        raise ValueError("Name contains invalid characters")
    return name


class NewFolder(BaseModel):
    """Shape of a folders row before insertion."""

    name: str = Field(min_length=1, max_length=MAX_NAME_LENGTH)
    parent_id: Optional[str] = None
    user_id: str = Field(min_length=1)

    name_is_valid = field_validator("name")(_check_name)


class NewFileRecord(BaseModel):
    """Shape of a files row before insertion."""

    name: str = Field(min_length=1, max_length=MAX_NAME_LENGTH)
    size: int = Field(gt=0)
    mime_type: str
    download_url: str
    storage_path: str = Field(min_length=1)
    storage_type: StorageType
    folder_id: Optional[str] = None
    user_id: str = Field(min_length=1)

    name_is_valid = field_validator("name")(_check_name)


def _validated(model, data: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return model.model_validate(data).model_dump(mode="json")
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {model.__name__}: {e}") from e


class MetadataStore:
    """
    Ownership-scoped access to the files and folders tables.

    Every query is filtered by user_id. A row owned by another user is
    reported exactly like a missing row.
    """

    def __init__(self, client: Client):
        self.client = client

    async def _execute(self, build_query: Callable, action: str) -> List[Dict[str, Any]]:
        def db_call():
            return build_query().execute()

        try:
            response = await asyncio.to_thread(db_call)
        except PostgrestAPIError as e:
            logging.error(f"Supabase API error while trying to {action}: {e.message} (Code: {e.code}, Details: {e.details})")
            raise MetadataStoreError(f"Failed to {action}: {e.message}") from e
        except httpx.HTTPError as e:
            logging.error(f"Network error while trying to {action}: {e}")
            raise MetadataStoreError(f"Failed to {action}: {e}") from e
        return response.data or []

    async def list_files(
        self,
        user_id: str,
        folder_id: Optional[str] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> List[FileRecord]:
        """Files of one folder (None is the root), newest first. Pages start at 0."""

        def query():
            q = self.client.table(FILES_TABLE).select("*").eq("user_id", user_id)
            q = q.eq("folder_id", folder_id) if folder_id else q.is_("folder_id", "null")
            q = q.order("created_at", desc=True)
            if page is not None and page_size is not None:
                start = page * page_size
                q = q.range(start, start + page_size - 1)
            return q

        rows = await self._execute(query, "list files")
        return [FileRecord.model_validate(row) for row in rows]

    async def list_folders(self, user_id: str, parent_id: Optional[str] = None) -> List[Folder]:
        """Subfolders of one folder (None is the root), by name."""

        def query():
            q = self.client.table(FOLDERS_TABLE).select("*").eq("user_id", user_id)
            q = q.eq("parent_id", parent_id) if parent_id else q.is_("parent_id", "null")
            return q.order("name")

        rows = await self._execute(query, "list folders")
        return [Folder.model_validate(row) for row in rows]

    async def get_file(self, file_id: str, user_id: str) -> Optional[FileRecord]:
        rows = await self._execute(
            lambda: self.client.table(FILES_TABLE).select("*").eq("id", file_id).eq("user_id", user_id).limit(1),
            "get file",
        )
        return FileRecord.model_validate(rows[0]) if rows else None

    async def get_folder(self, folder_id: str, user_id: str) -> Optional[Folder]:
        rows = await self._execute(
            lambda: self.client.table(FOLDERS_TABLE).select("*").eq("id", folder_id).eq("user_id", user_id).limit(1),
            "get folder",
        )
        return Folder.model_validate(rows[0]) if rows else None

    async def get_total_size(self, user_id: str) -> int:
        """Sum of the sizes of all the user's files, in every folder."""
        rows = await self._execute(
            lambda: self.client.table(FILES_TABLE).select("size").eq("user_id", user_id),
            "sum file sizes",
        )
        return sum(int(row.get("size") or 0) for row in rows)

    async def create_folder(self, folder: Dict[str, Any]) -> Folder:
        """
        :raises ValidationError: If the folder has the wrong shape.
        """
        payload = _validated(NewFolder, folder)
        rows = await self._execute(lambda: self.client.table(FOLDERS_TABLE).insert(payload), "create folder")
        if not rows:
            raise MetadataStoreError("Failed to create folder: no row returned")
        return Folder.model_validate(rows[0])

    async def create_file(self, record: Dict[str, Any]) -> FileRecord:
        """
        :raises ValidationError: If the record has the wrong shape.
        """
        payload = _validated(NewFileRecord, record)
        rows = await self._execute(lambda: self.client.table(FILES_TABLE).insert(payload), "save file metadata")
        if not rows:
            raise MetadataStoreError("Failed to save file metadata: no row returned")
        return FileRecord.model_validate(rows[0])

    async def update_file(self, file_id: str, user_id: str, patch: Dict[str, Any]):
        """
        Updates the name and/or folder of a file.

        :raises NotFoundError: If no file with this id belongs to the user, or
            the target folder does not.
        """
        unknown = set(patch) - UPDATABLE_FILE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {sorted(unknown)}")
        if "name" in patch:
            try:
                _check_name(patch["name"])
            except ValueError as e:
                raise ValidationError(str(e)) from e
        folder_id = patch.get("folder_id")
        if folder_id and await self.get_folder(folder_id, user_id) is None:
            raise NotFoundError(f"Folder {folder_id} not found")

        rows = await self._execute(
            lambda: self.client.table(FILES_TABLE).update(patch).eq("id", file_id).eq("user_id", user_id),
            "update file metadata",
        )
        if not rows:
            raise NotFoundError(f"File {file_id} not found")

    async def delete_file(self, file_id: str, user_id: str):
        """
        :raises NotFoundError: If no file with this id belongs to the user.
        """
        rows = await self._execute(
            lambda: self.client.table(FILES_TABLE).delete().eq("id", file_id).eq("user_id", user_id),
            "delete file metadata",
        )
        if not rows:
            raise NotFoundError(f"File {file_id} not found")

    async def delete_folder(self, folder_id: str, user_id: str) -> List[FileRecord]:
        """
        Deletes a folder, all folders below it and the file rows inside each
        of them. Physical objects are not touched.

        Not atomic: each level is deleted by its own statements, so a failure
        part way leaves the remaining subtree in place.

        :return: The file rows that were removed.
        :raises NotFoundError: If the folder does not belong to the user.
        """
        if await self.get_folder(folder_id, user_id) is None:
            raise NotFoundError(f"Folder {folder_id} not found")

        removed: List[FileRecord] = []
        await self._delete_folder_tree(folder_id, user_id, removed)
        logging.info(f"Deleted folder {folder_id} and {len(removed)} file record(s) below it.")
        return removed

    async def _delete_folder_tree(self, folder_id: str, user_id: str, removed: List[FileRecord]):
        subfolders = await self._execute(
            lambda: self.client.table(FOLDERS_TABLE).select("id").eq("parent_id", folder_id).eq("user_id", user_id),
            "list subfolders",
        )
        for sub in subfolders:
            await self._delete_folder_tree(sub["id"], user_id, removed)

        try:
            file_rows = await self._execute(
                lambda: self.client.table(FILES_TABLE).delete().eq("folder_id", folder_id).eq("user_id", user_id),
                "delete folder files",
            )
            removed.extend(FileRecord.model_validate(row) for row in file_rows)
            await self._execute(
                lambda: self.client.table(FOLDERS_TABLE).delete().eq("id", folder_id).eq("user_id", user_id),
                "delete folder",
            )
        except MetadataStoreError as e:
            logging.error(f"Folder deletion stopped at folder {folder_id}, the subtree is partially deleted.")
            raise MetadataStoreError(f"Folder deletion stopped at folder {folder_id}: {e}") from e
