# thumbnails.py
from typing import Union

from .storage.dto import StorageType


def get_thumbnail_url(
    url: str,
    storage_type: Union[StorageType, str],
    width: int = 200,
    height: int = 200,
) -> str:
    """
    Returns a thumbnail URL for a stored file. Pure string rewriting, no I/O.

    Cloudinary URLs get a resize/crop/quality transformation inserted after
    /upload/. The other backends have no URL-based transformations, so their
    URL is returned unchanged.
    """
    if not url:
        return ""

    if StorageType(storage_type) == StorageType.CLOUDINARY and "/upload/" in url:
        # /upload/v123/path -> /upload/w_200,h_200,c_fill,g_auto,q_auto,f_auto/v123/path
        return url.replace(
            "/upload/",
            f"/upload/w_{width},h_{height},c_fill,g_auto,q_auto,f_auto/",
            1,
        )
    return url
