# tests/test_service.py
import logging

import pytest

from filevault.exceptions import (
    FinalizationError,
    InconsistentStateError,
    InvalidNameError,
    MetadataStoreError,
    NotFoundError,
    OrphanedObjectError,
    QuotaExceededError,
    StorageDeleteError,
    UploadError,
    ValidationError,
)
from filevault.service import StorageService
from filevault.storage.dto import IncomingFile, StorageType


def make_file(name="report.pdf", mime_type="application/pdf", size=100):
    return IncomingFile(name=name, mime_type=mime_type, content=b"x" * size)


def seed_usage(fake_supabase, user_id, size):
    fake_supabase.tables["files"].append(
        {
            "id": "existing",
            "name": "old.bin",
            "size": size,
            "mime_type": "application/octet-stream",
            "download_url": "https://r2.test/old",
            "storage_path": "users/old",
            "storage_type": "r2",
            "folder_id": None,
            "user_id": user_id,
            "created_at": "2023-01-01T00:00:00+00:00",
        }
    )


# --- Upload ---


@pytest.mark.asyncio
async def test_upload_image_goes_to_cdn_and_saves_metadata(service, backends, fake_supabase):
    events = []

    record = await service.upload_file("user-1", make_file("cat.png", "image/png"), on_progress=events.append)

    assert record.storage_type == StorageType.CLOUDINARY
    assert record.name == "cat.png"
    assert record.size == 100
    assert record.user_id == "user-1"
    assert record.storage_path in backends.cdn.objects
    assert len(fake_supabase.tables["files"]) == 1
    percents = [e.progress for e in events]
    assert percents == sorted(percents)
    assert percents[-1] == 100.0


@pytest.mark.asyncio
async def test_upload_document_goes_to_object_storage(service, backends):
    record = await service.upload_file("user-1", make_file())

    assert record.storage_type == StorageType.R2
    assert backends.cdn.upload_calls == []


@pytest.mark.asyncio
async def test_upload_falls_back_to_bucket_without_object_storage(service, backends):
    backends.object_storage.configured = False

    record = await service.upload_file("user-1", make_file())

    assert record.storage_type == StorageType.SUPABASE_STORAGE


@pytest.mark.asyncio
async def test_upload_sanitizes_name_before_upload(service, backends):
    record = await service.upload_file("user-1", make_file(" My File?.txt", "text/plain"))

    assert record.name == "My File_.txt"
    assert backends.object_storage.upload_calls == [("My File_.txt", "user-1")]


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["CON.txt", "notes.", "", "a" * 300])
async def test_upload_invalid_name_fails_before_any_network_call(service, backends, fake_supabase, name):
    with pytest.raises(InvalidNameError):
        await service.upload_file("user-1", make_file(name))

    assert all(backend.upload_calls == [] for backend in backends)
    assert fake_supabase.executed == []


@pytest.mark.asyncio
async def test_upload_empty_file_is_rejected(service, backends):
    with pytest.raises(ValidationError):
        await service.upload_file("user-1", make_file(size=0))
    assert backends.object_storage.upload_calls == []


@pytest.mark.asyncio
async def test_upload_over_quota_without_drive_raises(metadata_store, backends, fake_supabase):
    service = StorageService(metadata_store, backends, max_local_bytes=500 * 1024 * 1024)
    seed_usage(fake_supabase, "user-1", 495 * 1024 * 1024)
    big = IncomingFile(name="big.bin", content=b"\0" * (10 * 1024 * 1024))

    with pytest.raises(QuotaExceededError):
        await service.upload_file("user-1", big)

    assert all(backend.upload_calls == [] for backend in backends)


@pytest.mark.asyncio
async def test_upload_over_quota_goes_to_connected_drive(service, backends, fake_supabase):
    backends.drive.connected = True
    seed_usage(fake_supabase, "user-1", 1024 * 1024 - 10)

    record = await service.upload_file("user-1", make_file())

    assert record.storage_type == StorageType.GOOGLE_DRIVE


@pytest.mark.asyncio
async def test_quota_counts_only_the_users_own_files(service, fake_supabase):
    seed_usage(fake_supabase, "someone-else", 1024 * 1024)

    assert await service.get_user_storage_size("user-1") == 0
    assert await service.can_upload_to_local("user-1", 1024 * 1024) is True
    assert await service.can_upload_to_local("user-1", 1024 * 1024 + 1) is False


@pytest.mark.asyncio
async def test_upload_retries_with_backoff(service, backends, sleeps):
    backends.object_storage.upload_errors = [UploadError("timeout"), UploadError("timeout")]

    record = await service.upload_file("user-1", make_file())

    assert record.storage_type == StorageType.R2
    assert len(backends.object_storage.upload_calls) == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_upload_gives_up_after_max_attempts(service, backends, fake_supabase):
    backends.object_storage.upload_errors = [UploadError("one"), UploadError("two"), UploadError("three")]

    with pytest.raises(UploadError, match="three"):
        await service.upload_file("user-1", make_file())

    assert len(backends.object_storage.upload_calls) == 3
    assert fake_supabase.tables["files"] == []


@pytest.mark.asyncio
async def test_upload_rejected_by_backend_is_not_retried(service, backends, sleeps):
    backends.object_storage.upload_errors = [UploadError("access denied", retryable=False)]

    with pytest.raises(UploadError):
        await service.upload_file("user-1", make_file())

    assert len(backends.object_storage.upload_calls) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_upload_unexpected_error_is_reported_as_upload_error(service, backends):
    backends.object_storage.upload_errors = [RuntimeError("sdk bug")] * 3

    with pytest.raises(UploadError) as exc_info:
        await service.upload_file("user-1", make_file())

    assert isinstance(exc_info.value.__cause__, RuntimeError)


@pytest.mark.asyncio
async def test_upload_metadata_failure_deletes_uploaded_object(service, backends, fake_supabase):
    fake_supabase.fail("files", "insert")

    with pytest.raises(FinalizationError) as exc_info:
        await service.upload_file("user-1", make_file())

    assert not isinstance(exc_info.value, OrphanedObjectError)
    assert isinstance(exc_info.value.cause, MetadataStoreError)
    assert len(backends.object_storage.delete_calls) == 1
    path, hint = backends.object_storage.delete_calls[0]
    assert path == exc_info.value.storage_path
    assert hint.mime_type == "application/pdf"
    assert backends.object_storage.objects == {}


@pytest.mark.asyncio
async def test_upload_failed_cleanup_is_reported_as_orphan(service, backends, fake_supabase, caplog):
    fake_supabase.fail("files", "insert")
    backends.object_storage.delete_errors = [StorageDeleteError("r2 down")]

    with caplog.at_level(logging.CRITICAL):
        with pytest.raises(OrphanedObjectError) as exc_info:
            await service.upload_file("user-1", make_file())

    error = exc_info.value
    assert isinstance(error.cause, MetadataStoreError)
    assert isinstance(error.cleanup_error, StorageDeleteError)
    assert error.storage_type == StorageType.R2
    assert error.storage_path in backends.object_storage.objects
    assert any(r.levelno == logging.CRITICAL and error.storage_path in r.getMessage() for r in caplog.records)


# --- Delete ---


@pytest.mark.asyncio
async def test_delete_file_removes_object_then_row(service, backends, fake_supabase):
    record = await service.upload_file("user-1", make_file())

    await service.delete_file(record.id, "user-1")

    assert backends.object_storage.objects == {}
    assert fake_supabase.tables["files"] == []
    path, hint = backends.object_storage.delete_calls[0]
    assert path == record.storage_path
    assert hint.name == "report.pdf"


@pytest.mark.asyncio
async def test_delete_file_of_other_user_is_not_found(service, backends, fake_supabase):
    record = await service.upload_file("user-1", make_file())

    with pytest.raises(NotFoundError):
        await service.delete_file(record.id, "user-2")

    assert backends.object_storage.delete_calls == []
    assert len(fake_supabase.tables["files"]) == 1


@pytest.mark.asyncio
async def test_delete_file_keeps_row_when_object_delete_fails(service, backends, fake_supabase):
    record = await service.upload_file("user-1", make_file())
    backends.object_storage.delete_errors = [StorageDeleteError("r2 down")]

    with pytest.raises(StorageDeleteError):
        await service.delete_file(record.id, "user-1")

    assert len(fake_supabase.tables["files"]) == 1


@pytest.mark.asyncio
async def test_delete_file_wraps_unexpected_backend_errors(service, backends):
    record = await service.upload_file("user-1", make_file())
    backends.object_storage.delete_errors = [ConnectionError("reset")]

    with pytest.raises(StorageDeleteError):
        await service.delete_file(record.id, "user-1")


@pytest.mark.asyncio
async def test_delete_file_row_failure_is_inconsistent_state(service, backends, fake_supabase, caplog):
    record = await service.upload_file("user-1", make_file())
    fake_supabase.fail("files", "delete")

    with caplog.at_level(logging.CRITICAL):
        with pytest.raises(InconsistentStateError):
            await service.delete_file(record.id, "user-1")

    assert backends.object_storage.objects == {}
    assert any(r.levelno == logging.CRITICAL for r in caplog.records)


# --- Reads and renames ---


@pytest.mark.asyncio
async def test_get_file_metadata_refreshes_signed_url(service):
    record = await service.upload_file("user-1", make_file())

    fetched = await service.get_file_metadata(record.id, "user-1")

    assert fetched.download_url.endswith("?token=fresh")


@pytest.mark.asyncio
async def test_get_file_metadata_keeps_cdn_url(service):
    record = await service.upload_file("user-1", make_file("cat.png", "image/png"))

    fetched = await service.get_file_metadata(record.id, "user-1")

    assert fetched.download_url == record.download_url


@pytest.mark.asyncio
async def test_get_file_metadata_falls_back_to_stored_url(service, backends):
    record = await service.upload_file("user-1", make_file())
    backends.object_storage.signed_url_error = RuntimeError("presign failed")

    fetched = await service.get_file_metadata(record.id, "user-1")

    assert fetched.download_url == record.download_url


@pytest.mark.asyncio
async def test_get_file_metadata_of_other_user_is_none(service):
    record = await service.upload_file("user-1", make_file())

    assert await service.get_file_metadata(record.id, "user-2") is None


@pytest.mark.asyncio
async def test_rename_file_sanitizes_name(service, fake_supabase):
    record = await service.upload_file("user-1", make_file())

    await service.rename_file(record.id, "user-1", "final:v2.pdf")

    assert fake_supabase.tables["files"][0]["name"] == "final_v2.pdf"


@pytest.mark.asyncio
async def test_rename_file_rejects_reserved_name(service):
    record = await service.upload_file("user-1", make_file())

    with pytest.raises(InvalidNameError):
        await service.rename_file(record.id, "user-1", "AUX")


@pytest.mark.asyncio
async def test_rename_file_of_other_user_is_not_found(service):
    record = await service.upload_file("user-1", make_file())

    with pytest.raises(NotFoundError):
        await service.rename_file(record.id, "user-2", "mine.pdf")


@pytest.mark.asyncio
async def test_get_items_lists_folders_on_first_page_only(service):
    folder = await service.create_folder("user-1", "Invoices")
    await service.upload_file("user-1", make_file("a.pdf"))
    await service.upload_file("user-1", make_file("b.pdf"))
    await service.upload_file("user-1", make_file("c.pdf"), folder_id=folder.id)

    first = await service.get_items("user-1", page=0, page_size=1)
    second = await service.get_items("user-1", page=1, page_size=1)
    inside = await service.get_items("user-1", folder.id)

    assert [f.name for f in first.folders] == ["Invoices"]
    assert [f.name for f in first.files] == ["b.pdf"]
    assert second.folders == []
    assert [f.name for f in second.files] == ["a.pdf"]
    assert [f.name for f in inside.files] == ["c.pdf"]


# --- Folders ---


@pytest.mark.asyncio
async def test_create_folder_under_other_users_parent_is_not_found(service):
    parent = await service.create_folder("user-1", "Private")

    with pytest.raises(NotFoundError):
        await service.create_folder("user-2", "Sneaky", parent_id=parent.id)


@pytest.mark.asyncio
async def test_delete_folder_leaves_objects_by_default(service, backends, fake_supabase, caplog):
    folder = await service.create_folder("user-1", "Docs")
    await service.upload_file("user-1", make_file(), folder_id=folder.id)

    with caplog.at_level(logging.WARNING):
        removed = await service.delete_folder(folder.id, "user-1")

    assert len(removed) == 1
    assert fake_supabase.tables["files"] == []
    assert fake_supabase.tables["folders"] == []
    assert len(backends.object_storage.objects) == 1
    assert "left in storage" in caplog.text


@pytest.mark.asyncio
async def test_delete_folder_purges_objects_when_enabled(metadata_store, backends):
    service = StorageService(metadata_store, backends, purge_folder_objects=True)
    folder = await service.create_folder("user-1", "Docs")
    sub = await service.create_folder("user-1", "Old", parent_id=folder.id)
    await service.upload_file("user-1", make_file(), folder_id=sub.id)

    removed = await service.delete_folder(folder.id, "user-1")

    assert len(removed) == 1
    assert backends.object_storage.objects == {}


@pytest.mark.asyncio
async def test_upload_into_other_users_folder_is_not_found(service, backends, fake_supabase):
    folder = await service.create_folder("user-b", "Private")

    with pytest.raises(NotFoundError):
        await service.upload_file("user-a", make_file(), folder_id=folder.id)

    assert all(backend.upload_calls == [] for backend in backends)
    assert fake_supabase.tables["files"] == []


@pytest.mark.asyncio
async def test_upload_into_own_folder(service):
    folder = await service.create_folder("user-1", "Docs")

    record = await service.upload_file("user-1", make_file(), folder_id=folder.id)

    assert record.folder_id == folder.id
