from pathlib import Path
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
import logging
from functools import lru_cache

R2_KEYS = ["R2_ENDPOINT", "R2_BUCKET_NAME", "R2_ACCESS_KEY_ID", "R2_SECRET_ACCESS_KEY"]


class Settings(BaseSettings):
    """
    Centralized application configuration with type validation.
    Automatically reads variables from the environment, the .env file and
    the Google Drive token file.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # --- General Settings ---
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    # --- Supabase (metadata tables and fallback bucket) ---
    SUPABASE_URL: str
    SUPABASE_KEY: str
    SUPABASE_STORAGE_BUCKET: str = "files"
    SIGNED_URL_TTL_SECONDS: int = 3600

    # --- Cloudinary Settings (optional) ---
    CLOUDINARY_CLOUD_NAME: Optional[str] = None
    CLOUDINARY_UPLOAD_PRESET: Optional[str] = None
    CLOUDINARY_DELETE_API_URL: Optional[str] = None

    # --- Cloudflare R2 / S3 Settings (optional) ---
    R2_ENDPOINT: Optional[str] = None
    R2_BUCKET_NAME: Optional[str] = None
    R2_ACCESS_KEY_ID: Optional[str] = None
    R2_SECRET_ACCESS_KEY: Optional[str] = None
    R2_REGION: str = "auto"

    # --- Google Drive Settings (optional) ---
    GDRIVE_CREDENTIALS_JSON: Optional[str] = None
    GDRIVE_TOKEN_JSON: Optional[str] = None
    GDRIVE_TOKEN_FILE: str = ".gdrive.token.json"

    # --- Upload policy ---
    MAX_LOCAL_STORAGE_BYTES: int = 500 * 1024 * 1024  # 500 MB before falling back to Drive
    UPLOAD_MAX_ATTEMPTS: int = 3
    RETRY_INITIAL_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 10.0
    REQUEST_TIMEOUT_SECONDS: float = 60.0
    UPLOAD_CHUNK_SIZE: int = 5 * 1024 * 1024
    PURGE_FOLDER_OBJECTS: bool = False

    # --- Constants and Computed Paths ---
    BASE_DIR: Path = Path(__file__).resolve().parent

    @model_validator(mode="before")
    def validate_storage_settings(cls, values):
        if not isinstance(values, dict):
            return values

        for key in ["SUPABASE_URL", "SUPABASE_KEY"]:
            if key in values and not str(values.get(key) or "").strip():
                raise ValueError(f"{key} is required and cannot be empty")

        present = [key for key in R2_KEYS if values.get(key)]
        if present and len(present) != len(R2_KEYS):
            missing = sorted(set(R2_KEYS) - set(present))
            logging.warning(f"R2 is partially configured, missing {missing}. R2 uploads stay disabled.")

        if values.get("CLOUDINARY_CLOUD_NAME") and not values.get("CLOUDINARY_DELETE_API_URL"):
            logging.warning("CLOUDINARY_DELETE_API_URL not set. Cloudinary files cannot be deleted.")

        for key in ["MAX_LOCAL_STORAGE_BYTES", "UPLOAD_MAX_ATTEMPTS", "SIGNED_URL_TTL_SECONDS", "UPLOAD_CHUNK_SIZE"]:
            if key in values and values[key] is not None and int(values[key]) <= 0:
                raise ValueError(f"{key} must be a positive number")

        return values

    def model_post_init(self, __context):
        """
        After settings are loaded from the environment, fall back to the
        local token file for the Google Drive authorized-user token.
        """
        if self.GDRIVE_TOKEN_JSON:
            return
        token_file = self.token_file_path
        if token_file.is_file():
            content = token_file.read_text().strip()
            if content:
                self.GDRIVE_TOKEN_JSON = content
                logging.info(f"Loaded Google Drive token from file: {token_file}")

    @property
    def token_file_path(self) -> Path:
        token_file = Path(self.GDRIVE_TOKEN_FILE)
        if not token_file.is_absolute():
            token_file = self.BASE_DIR / token_file
        return token_file

    @property
    def r2_configured(self) -> bool:
        return all(getattr(self, key) for key in R2_KEYS)

    @property
    def cloudinary_configured(self) -> bool:
        return bool(self.CLOUDINARY_CLOUD_NAME and self.CLOUDINARY_UPLOAD_PRESET)


@lru_cache()
def get_settings() -> Settings:
    """
    Returns a cached instance of the application settings.
    The first call to this function will initialize the settings.
    """
    return Settings()
