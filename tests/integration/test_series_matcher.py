"""Integration tests for series_matcher.py -- auto-linking against a real database."""
from unittest.mock import patch

from tests.factories.db_factories import create_series, create_file_with_metadata


class TestTrustMetadata:

    def test_links_to_exact_name(self, db_connection):
        from series_matcher import auto_link_file_to_series
        from database import get_file_series_id
        batman = create_series(name="Batman", publisher="DC Comics")
        file_id = create_file_with_metadata("batman", publisher="DC Comics")

        result = auto_link_file_to_series(file_id, trust_metadata=True)

        assert result.success is True
        assert result.match_type == "exact"
        assert result.series_id == batman
        assert result.warnings == []
        assert get_file_series_id(file_id) == batman

    def test_creates_instead_of_fuzzy_matching(self, db_connection):
        from series_matcher import auto_link_file_to_series
        from database import get_series
        batman = create_series(name="Batman", publisher="DC Comics")
        file_id = create_file_with_metadata("Batman Beyond", publisher="DC Comics", year=2016,
                                            genre="Superhero", path="/data/DC/Batman Beyond/bb 001.cbz")

        result = auto_link_file_to_series(file_id, trust_metadata=True)

        assert result.match_type == "created"
        assert result.series_id != batman
        series = get_series(result.series_id)
        assert series["name"] == "Batman Beyond"
        assert series["publisher"] == "DC Comics"
        assert series["start_year"] == 2016
        assert series["genres"] == "Superhero"
        assert series["primary_folder"] == "/data/DC/Batman Beyond"
        assert result.warnings == ['Similar series "Batman" exists. Created new series "Batman Beyond" instead.']

    def test_lost_create_race_reuses_winner(self, db_connection):
        import series_matcher
        from database import find_series_by_identity as real_find
        file_id = create_file_with_metadata("Saga", publisher="Image")
        winner = {}

        def find_then_race(name, publisher=None):
            found = real_find(name, publisher)
            if found is None and not winner:
                winner["id"] = create_series(name="Saga", publisher="Image")
            return found

        with patch.object(series_matcher.database, "find_series_by_identity", side_effect=find_then_race):
            result = series_matcher.auto_link_file_to_series(file_id, trust_metadata=True)

        assert result.success is True
        assert result.match_type == "exact"
        assert result.series_id == winner["id"]

    def test_expected_series_guards_the_write(self, db_connection):
        from series_matcher import auto_link_file_to_series, LINK_CONFLICT_ERROR
        from database import get_file_series_id
        batman = create_series(name="Batman", publisher="DC Comics")
        other = create_series(name="Robin", publisher="DC Comics")
        create_series(name="Nightwing", publisher="DC Comics")
        file_id = create_file_with_metadata("Nightwing", series_id=other, publisher="DC Comics")

        result = auto_link_file_to_series(file_id, trust_metadata=True, expected_series_id=batman)

        assert result.success is False
        assert result.error == LINK_CONFLICT_ERROR
        assert get_file_series_id(file_id) == other

    def test_expected_series_matches(self, db_connection):
        from series_matcher import auto_link_file_to_series
        from database import get_file_series_id
        batman = create_series(name="Batman", publisher="DC Comics")
        nightwing = create_series(name="Nightwing", publisher="DC Comics")
        file_id = create_file_with_metadata("Nightwing", series_id=batman, publisher="DC Comics")

        result = auto_link_file_to_series(file_id, trust_metadata=True, expected_series_id=batman)

        assert result.success is True
        assert get_file_series_id(file_id) == nightwing

    def test_no_series_name(self, db_connection):
        from series_matcher import auto_link_file_to_series
        file_id = create_file_with_metadata("   ")
        result = auto_link_file_to_series(file_id, trust_metadata=True)
        assert result.success is False
        assert result.error == "No series name found"

    def test_missing_file(self, db_connection):
        from series_matcher import auto_link_file_to_series
        assert auto_link_file_to_series(999).error == "File not found"


class TestUntrusted:

    def test_fuzzy_exact_normalized_name_links(self, db_connection):
        from series_matcher import auto_link_file_to_series
        spidey = create_series(name="The Amazing Spider-Man", publisher="Marvel")
        file_id = create_file_with_metadata("Amazing Spiderman", publisher="Marvel")

        result = auto_link_file_to_series(file_id)

        assert result.success is True
        assert result.match_type == "fuzzy"
        assert result.series_id == spidey

    def test_near_miss_needs_confirmation(self, db_connection):
        from series_matcher import auto_link_file_to_series
        from database import get_file_series_id
        batman = create_series(name="Batman", publisher="DC Comics")
        file_id = create_file_with_metadata("Batman Beyond", publisher="DC Comics")

        result = auto_link_file_to_series(file_id)

        assert result.success is False
        assert result.error == "Needs confirmation"
        assert result.suggestions[0]["series_id"] == batman
        assert get_file_series_id(file_id) is None

    def test_unrelated_name_creates(self, db_connection):
        from series_matcher import auto_link_file_to_series
        create_series(name="Batman")
        file_id = create_file_with_metadata("Saga", publisher="Image")

        result = auto_link_file_to_series(file_id)

        assert result.success is True
        assert result.match_type == "created"
