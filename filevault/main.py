# main.py
import asyncio
import json
import logging
import mimetypes
import sys
from pathlib import Path

from .cdn import CloudinaryBackend
from .config import get_settings
from .exceptions import FinalizationError, OrphanedObjectError, PermanentError, TransientError
from .gdrive import GoogleDriveBackend
from .gdrive_auth import DriveCredentialProvider
from .metadata import MetadataStore
from .r2 import R2Backend
from .sbstorage import SupabaseStorageBackend
from .selector import BackendSet
from .service import StorageService
from .storage.dto import FileRecord, IncomingFile, StorageType, UploadProgress
from .supabase_client import get_supabase_client
from .thumbnails import get_thumbnail_url
from .utils import format_file_size


def setup_logging():
    """Configures logging to console and, if LOG_FILE is set, to a file."""
    settings = get_settings()
    log_level_name = settings.LOG_LEVEL.upper()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level_name)

    # Clear any existing handlers to prevent duplicate logs on re-runs or implicit configs
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    if settings.LOG_FILE:
        try:
            file_handler = logging.FileHandler(settings.LOG_FILE)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except IOError as e:
            root_logger.error(f"Failed to set up file logging to {settings.LOG_FILE}: {e}")

    # Reducing "noise" from third-party libraries
    for name in ["httpx", "httpcore", "urllib3", "botocore", "boto3", "s3transfer", "googleapiclient", "supabase"]:
        logging.getLogger(name).setLevel(logging.WARNING)


def build_credential_provider(settings) -> DriveCredentialProvider:
    return DriveCredentialProvider(
        client_config_json=settings.GDRIVE_CREDENTIALS_JSON,
        token_json=settings.GDRIVE_TOKEN_JSON,
        token_path=settings.token_file_path,
    )


def build_storage_service(settings) -> StorageService:
    """
    Wires the metadata store and the four storage backends from settings.
    Backends without credentials are still created and report themselves as
    not configured, so the selector skips them.
    """
    client = get_supabase_client(settings.SUPABASE_URL, settings.SUPABASE_KEY)

    backends = BackendSet(
        cdn=CloudinaryBackend(
            cloud_name=settings.CLOUDINARY_CLOUD_NAME,
            upload_preset=settings.CLOUDINARY_UPLOAD_PRESET,
            delete_api_url=settings.CLOUDINARY_DELETE_API_URL,
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
        ),
        object_storage=R2Backend(
            bucket=settings.R2_BUCKET_NAME,
            endpoint_url=settings.R2_ENDPOINT,
            access_key_id=settings.R2_ACCESS_KEY_ID,
            secret_access_key=settings.R2_SECRET_ACCESS_KEY,
            region=settings.R2_REGION,
            url_ttl=settings.SIGNED_URL_TTL_SECONDS,
            part_size=settings.UPLOAD_CHUNK_SIZE,
        ),
        blob=SupabaseStorageBackend(
            client,
            bucket=settings.SUPABASE_STORAGE_BUCKET,
            url_ttl=settings.SIGNED_URL_TTL_SECONDS,
        ),
        drive=GoogleDriveBackend(
            build_credential_provider(settings),
            chunk_size=settings.UPLOAD_CHUNK_SIZE,
        ),
    )
    for backend in backends:
        state = "configured" if backend.is_configured() else "not configured"
        logging.info(f"Storage backend {backend.storage_type.value}: {state}.")

    return StorageService(
        MetadataStore(client),
        backends,
        max_local_bytes=settings.MAX_LOCAL_STORAGE_BYTES,
        max_attempts=settings.UPLOAD_MAX_ATTEMPTS,
        initial_delay=settings.RETRY_INITIAL_DELAY,
        max_delay=settings.RETRY_MAX_DELAY,
        purge_folder_objects=settings.PURGE_FOLDER_OBJECTS,
    )


def _print_progress(progress: UploadProgress):
    print(
        f"\r{progress.progress:5.1f}% "
        f"({format_file_size(progress.bytes_transferred)} / {format_file_size(progress.total_bytes)})",
        end="",
        flush=True,
    )


def _thumbnail_for(record: FileRecord) -> str:
    """Thumbnail URL for CDN images, empty for everything else."""
    if record.storage_type != StorageType.CLOUDINARY or not record.mime_type.startswith("image/"):
        return ""
    return get_thumbnail_url(record.download_url, record.storage_type)


async def run_command(service: StorageService, args) -> int:
    """Runs one CLI sub-command against the service. Returns the exit code."""
    if args.command == "upload":
        path = Path(args.path)
        mime_type = args.mime_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        file = IncomingFile(name=args.name or path.name, mime_type=mime_type, content=path.read_bytes())
        record = await service.upload_file(
            args.user,
            file,
            on_progress=_print_progress,
            folder_id=args.folder,
            use_drive_preferred=args.drive,
        )
        print()
        print(f"{record.id}\t{record.storage_type.value}\t{record.download_url}")

    elif args.command == "list":
        listing = await service.get_items(args.user, args.folder, args.page, args.page_size)
        for folder in listing.folders:
            print(f"{folder.id}\t[folder]\t{folder.name}")
        for record in listing.files:
            line = f"{record.id}\t{format_file_size(record.size)}\t{record.storage_type.value}\t{record.name}"
            thumbnail = _thumbnail_for(record)
            print(f"{line}\t{thumbnail}" if thumbnail else line)

    elif args.command == "info":
        record = await service.get_file_metadata(args.file_id, args.user)
        if record is None:
            logging.error(f"File {args.file_id} not found.")
            return 1
        info = record.model_dump(mode="json")
        thumbnail = _thumbnail_for(record)
        if thumbnail:
            info["thumbnail_url"] = thumbnail
        print(json.dumps(info, indent=2))

    elif args.command == "delete":
        await service.delete_file(args.file_id, args.user)

    elif args.command == "rename":
        await service.rename_file(args.file_id, args.user, args.name)

    elif args.command == "mkdir":
        folder = await service.create_folder(args.user, args.name, args.parent)
        print(folder.id)

    elif args.command == "rmdir":
        removed = await service.delete_folder(args.folder_id, args.user)
        print(f"Removed {len(removed)} file record(s).")

    elif args.command == "usage":
        used = await service.get_user_storage_size(args.user)
        print(f"{format_file_size(used)} of {format_file_size(service.max_local_bytes)} used")

    return 0


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(description="Store files across Cloudinary, R2, Supabase Storage and Google Drive.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def with_user(sub):
        sub.add_argument("--user", required=True, help="Id of the owning user.")
        return sub

    upload = with_user(subparsers.add_parser("upload", help="Upload a local file."))
    upload.add_argument("path", help="Local file to upload.")
    upload.add_argument("--name", help="Stored name, defaults to the local file name.")
    upload.add_argument("--mime-type", help="Mime type, guessed from the name by default.")
    upload.add_argument("--folder", help="Target folder id.")
    upload.add_argument("--drive", action="store_true", help="Prefer Google Drive if it is connected.")

    listing = with_user(subparsers.add_parser("list", help="List a folder."))
    listing.add_argument("--folder", help="Folder id, the root by default.")
    listing.add_argument("--page", type=int, help="Page number, starting at 0.")
    listing.add_argument("--page-size", type=int, help="Files per page.")

    info = with_user(subparsers.add_parser("info", help="Show a file with a fresh download URL."))
    info.add_argument("file_id")

    delete = with_user(subparsers.add_parser("delete", help="Delete a file."))
    delete.add_argument("file_id")

    rename = with_user(subparsers.add_parser("rename", help="Rename a file."))
    rename.add_argument("file_id")
    rename.add_argument("name")

    mkdir = with_user(subparsers.add_parser("mkdir", help="Create a folder."))
    mkdir.add_argument("name")
    mkdir.add_argument("--parent", help="Parent folder id.")

    rmdir = with_user(subparsers.add_parser("rmdir", help="Delete a folder and everything below it."))
    rmdir.add_argument("folder_id")

    with_user(subparsers.add_parser("usage", help="Show the bytes used against the local quota."))

    subparsers.add_parser("authorize-drive", help="Connect Google Drive in the browser.")
    subparsers.add_parser("revoke-drive", help="Disconnect Google Drive.")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    settings = get_settings()

    if args.command == "authorize-drive":
        try:
            build_credential_provider(settings).authorize()
        except ValueError as e:
            logging.error(str(e))
            return 1
        return 0

    if args.command == "revoke-drive":
        build_credential_provider(settings).revoke()
        return 0

    service = build_storage_service(settings)
    try:
        return asyncio.run(run_command(service, args))
    except OrphanedObjectError as e:
        logging.critical(
            f"CRITICAL: {e}. Object left at {e.storage_type.value}:{e.storage_path}. Error: {e.cleanup_error}"
        )
        return 3
    except FinalizationError as e:
        logging.error(f"Upload rolled back: {e}")
        return 2
    except PermanentError as e:
        logging.error(f"PERMANENT ERROR during '{args.command}': {e}")
        return 2
    except TransientError as e:
        logging.warning(f"TRANSIENT ERROR during '{args.command}', try again later: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
