import os
import re
import shutil
import tempfile
import zipfile
import xml.etree.ElementTree as ET

import rarfile

from app_logging import app_logger

COMICINFO_NAME = "ComicInfo.xml"

# ComicInfo.xml tag -> file_metadata column
COMICINFO_FIELD_MAP = {
    "Series": "series",
    "Number": "number",
    "Volume": "volume",
    "Title": "title",
    "Summary": "summary",
    "Publisher": "publisher",
    "Year": "year",
    "Month": "month",
    "Writer": "writer",
    "Penciller": "penciller",
    "Inker": "inker",
    "Colorist": "colorist",
    "Letterer": "letterer",
    "CoverArtist": "cover_artist",
    "Editor": "editor",
    "Genre": "genre",
    "Characters": "characters",
    "Teams": "teams",
    "Locations": "locations",
    "StoryArc": "story_arc",
    "AgeRating": "age_rating",
    "LanguageISO": "language_iso",
}

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")
_BARE_AMPERSAND = re.compile(r"&(?!(?:amp|lt|gt|quot|apos|#\d+|#x[0-9a-fA-F]+);)")


def _sanitize_xml(xml_data: bytes) -> bytes:
    """Strip control characters and escape bare ampersands so ElementTree can parse."""
    text = xml_data.decode("utf-8", errors="replace")
    text = _CONTROL_CHARS.sub("", text)
    text = _BARE_AMPERSAND.sub("&amp;", text)
    return text.encode("utf-8")


def _local_tag(tag: str) -> str:
    # Drop any {namespace} prefix
    return tag.split("}", 1)[1] if tag.startswith("{") else tag


def read_comicinfo_xml(xml_data: bytes) -> dict:
    """
    Parse ComicInfo.xml content into a flat {Tag: text} dict.

    Empty tags map to "". Unparseable content returns {}.
    """
    try:
        root = ET.fromstring(xml_data)
    except ET.ParseError:
        try:
            root = ET.fromstring(_sanitize_xml(xml_data))
        except ET.ParseError as e:
            app_logger.warning(f"Could not parse ComicInfo.xml: {e}")
            return {}

    result = {}
    for child in root:
        result[_local_tag(child.tag)] = (child.text or "").strip()
    return result


def update_comicinfo_xml(xml_data: bytes, updates: dict) -> bytes:
    """Set (or add) top-level tags in ComicInfo.xml content and return the new bytes."""
    try:
        root = ET.fromstring(xml_data)
    except ET.ParseError:
        root = ET.fromstring(_sanitize_xml(xml_data))

    for tag, value in updates.items():
        element = root.find(tag)
        if element is None:
            element = ET.SubElement(root, tag)
        element.text = "" if value is None else str(value)

    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def _find_comicinfo_name(names):
    for name in names:
        if os.path.basename(name).lower() == "comicinfo.xml":
            return name
    return None


def read_comicinfo_from_zip(file_path: str) -> dict:
    """Read ComicInfo.xml from a CBZ/ZIP archive ({} when absent)."""
    if not file_path.lower().endswith((".zip", ".cbz")):
        raise ValueError("Only .zip or .cbz files are supported")

    with zipfile.ZipFile(file_path, "r") as zf:
        name = _find_comicinfo_name(zf.namelist())
        if not name:
            return {}
        return read_comicinfo_xml(zf.read(name))


def read_comicinfo_from_rar(file_path: str) -> dict:
    """Read ComicInfo.xml from a CBR/RAR archive ({} when absent)."""
    with rarfile.RarFile(file_path) as rf:
        name = _find_comicinfo_name(rf.namelist())
        if not name:
            return {}
        return read_comicinfo_xml(rf.read(name))


def read_comicinfo(file_path: str) -> dict:
    """
    Read ComicInfo.xml from any supported archive.

    Raises:
        ValueError: unsupported extension
        OSError / zipfile.BadZipFile / rarfile.Error: unreadable archive
    """
    lower = file_path.lower()
    if lower.endswith((".cbz", ".zip")):
        return read_comicinfo_from_zip(file_path)
    if lower.endswith((".cbr", ".rar")):
        return read_comicinfo_from_rar(file_path)
    raise ValueError(f"Unsupported archive type: {os.path.basename(file_path)}")


def comicinfo_to_metadata(comic_info: dict) -> dict:
    """
    Flatten a ComicInfo dict into file_metadata columns.

    Accepts ComicInfo tag names ("Series") or column names ("series").
    Blank values become None; Year becomes an int when it parses as one.
    """
    metadata = {}
    columns = set(COMICINFO_FIELD_MAP.values())
    for key, value in (comic_info or {}).items():
        column = COMICINFO_FIELD_MAP.get(key) or (key if key in columns else None)
        if column is None:
            continue
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value if v)
        if isinstance(value, str):
            value = value.strip() or None
        metadata[column] = value

    year = metadata.get("year")
    if year is not None:
        try:
            metadata["year"] = int(year)
        except (TypeError, ValueError):
            metadata["year"] = None
    return metadata


def merge_comicinfo(file_path: str, updates: dict) -> bool:
    """
    Write tag updates into a CBZ's ComicInfo.xml, creating it when missing.

    The archive is rebuilt in a temp file and moved over the original.

    Returns:
        True on success, False on failure
    """
    if not file_path.lower().endswith((".cbz", ".zip")):
        app_logger.error(f"Cannot write ComicInfo.xml to non-CBZ archive: {file_path}")
        return False

    temp_path = None
    try:
        temp_fd, temp_path = tempfile.mkstemp(suffix=".cbz", dir=os.path.dirname(file_path) or None)
        os.close(temp_fd)

        with zipfile.ZipFile(file_path, "r") as zin:
            existing_name = _find_comicinfo_name(zin.namelist())
            existing = zin.read(existing_name) if existing_name else b"<ComicInfo></ComicInfo>"
            xml_content = update_comicinfo_xml(existing, updates)

            with zipfile.ZipFile(temp_path, "w", zipfile.ZIP_DEFLATED) as zout:
                for item in zin.infolist():
                    # Skip existing ComicInfo.xml
                    if item.filename == existing_name:
                        continue
                    zout.writestr(item, zin.read(item.filename))
                zout.writestr(existing_name or COMICINFO_NAME, xml_content)

        # Replace original with temp
        shutil.move(temp_path, file_path)
        app_logger.info(f"✓ Updated ComicInfo.xml in {os.path.basename(file_path)}")
        return True

    except Exception as e:
        app_logger.error(f"Error updating ComicInfo.xml in {file_path}: {e}")
        if temp_path and os.path.exists(temp_path):
            os.remove(temp_path)
        return False
