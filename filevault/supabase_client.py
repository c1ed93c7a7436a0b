# supabase_client.py
import logging
from functools import lru_cache

from supabase import Client, create_client

# Table names, shared by the metadata store and its tests
FILES_TABLE = "files"
FOLDERS_TABLE = "folders"


@lru_cache(maxsize=4)
def get_supabase_client(url: str, key: str) -> Client:
    """
    Creates the Supabase client for a project URL and key, once per process.
    """
    if not url or not key:
        logging.error("Supabase URL or key not configured. Cannot create client.")
        raise ValueError("Supabase URL or key not configured")

    logging.info("Initializing Supabase client...")
    try:
        client = create_client(url, key)
    except Exception as e:
        logging.error(f"Failed to initialize Supabase client: {e}", exc_info=True)
        raise RuntimeError(f"Failed to initialize Supabase client: {e}") from e
    logging.info("Supabase client initialized successfully.")
    return client
