"""
Cached file metadata.

Keeps the flattened ComicInfo values for each archive in the file_metadata
table so listings and linkage checks never have to open archives.
"""
import os
import zipfile
from dataclasses import dataclass
from typing import Optional

import rarfile

import database
from app_logging import app_logger
from comicinfo import read_comicinfo, comicinfo_to_metadata


@dataclass
class CacheResult:
    success: bool
    error: Optional[str] = None


def cache_file_metadata(file_id, comic_info) -> CacheResult:
    """
    Store already-known ComicInfo values for a file without reading its archive.

    Args:
        file_id: ID of the comic_files row
        comic_info: Dict keyed by ComicInfo tags or file_metadata columns
    """
    metadata = comicinfo_to_metadata(comic_info)
    if not database.upsert_file_metadata(file_id, metadata):
        return CacheResult(success=False, error="Failed to write metadata cache")
    return CacheResult(success=True)


def refresh_metadata_cache(file_id) -> bool:
    """
    Re-read ComicInfo.xml from the file's archive and cache it.

    Returns:
        True if the cache now reflects the archive, False otherwise
    """
    file = database.get_comic_file(file_id)
    if not file:
        app_logger.warning(f"Cannot refresh metadata cache: file {file_id} not found")
        return False

    path = file["path"]
    if not os.path.exists(path):
        app_logger.error(f"Cannot refresh metadata cache: {path} does not exist")
        return False

    try:
        comic_info = read_comicinfo(path)
    except (OSError, ValueError, zipfile.BadZipFile, rarfile.Error) as e:
        app_logger.error(f"Failed to read ComicInfo.xml from {path}: {e}")
        return False

    result = cache_file_metadata(file_id, comic_info)
    if result.success:
        app_logger.debug(f"Refreshed metadata cache for {file['filename']}")
    return result.success
