import database
from app_logging import app_logger

# Autocomplete field type -> file_metadata column
TAG_FIELDS = {
    "characters": "characters",
    "teams": "teams",
    "locations": "locations",
    "genres": "genre",
    "storyArcs": "story_arc",
    "publishers": "publisher",
    "writers": "writer",
    "pencillers": "penciller",
    "inkers": "inker",
    "colorists": "colorist",
    "letterers": "letterer",
    "coverArtists": "cover_artist",
    "editors": "editor",
}


def _split(value):
    if not value:
        return []
    return [part.strip() for part in str(value).split(",") if part.strip()]


def refresh_tags_from_file(file_id):
    """
    Add the file's cached metadata values to the autocomplete index.

    Returns:
        Number of values offered to the index

    Raises:
        sqlite3.Error on database failure
    """
    metadata = database.get_file_metadata(file_id)
    if not metadata:
        return 0

    total = 0
    for field_type, column in TAG_FIELDS.items():
        total += database.upsert_tag_values(field_type, _split(metadata.get(column)))

    app_logger.debug(f"Refreshed {total} autocomplete values from file {file_id}")
    return total


def search_tags(field_type, prefix="", limit=20):
    if field_type not in TAG_FIELDS:
        raise ValueError(f"Unknown tag field: {field_type}")
    return database.search_tag_values(field_type, prefix, limit)
