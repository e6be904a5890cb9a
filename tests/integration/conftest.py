"""
Integration test fixtures.

Provides a populated database with sample series and files using the
factory helpers.
"""
import pytest
from tests.factories.db_factories import (
    reset_counters,
    create_series,
    create_file_with_metadata,
)


@pytest.fixture(autouse=True)
def _reset_factory_counters():
    """Reset factory counters before each test."""
    reset_counters()
    yield
    reset_counters()


@pytest.fixture
def populated_db(db_connection):
    """
    Seed the database with sample data via factory helpers.

    Creates:
    - 2 series (Batman / DC Comics, Amazing Spider-Man / Marvel)
    - 3 Batman files linked to Batman
    - 2 Spider-Man files linked to Spider-Man
    - 1 file whose metadata says "Nightwing" but is linked to Batman
    - 1 unlinked file whose metadata says "Saga"

    Returns a dict of the created IDs.
    """
    batman_id = create_series(name="Batman", publisher="DC Comics", start_year=2016)
    spidey_id = create_series(name="Amazing Spider-Man", publisher="Marvel", start_year=2018)

    batman_files = [
        create_file_with_metadata("Batman", series_id=batman_id, number=str(i),
                                  publisher="DC Comics", writer="Tom King",
                                  characters="Batman, Catwoman")
        for i in range(1, 4)
    ]
    spidey_files = [
        create_file_with_metadata("Amazing Spider-Man", series_id=spidey_id, number=str(i),
                                  publisher="Marvel", writer="Nick Spencer")
        for i in range(1, 3)
    ]
    mislinked = create_file_with_metadata("Nightwing", series_id=batman_id, number="1",
                                          publisher="DC Comics")
    unlinked = create_file_with_metadata("Saga", number="1", publisher="Image Comics")

    return {
        "batman_id": batman_id,
        "spidey_id": spidey_id,
        "batman_files": batman_files,
        "spidey_files": spidey_files,
        "mislinked": mislinked,
        "unlinked": unlinked,
        "conn": db_connection,
    }
