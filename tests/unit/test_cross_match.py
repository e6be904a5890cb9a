"""Tests for cross_match.py -- best-match scoring across sources."""
import pytest
from models.providers.base import MetadataSource, SeriesMetadata


def cand(name, start_year=None, publisher=None):
    return {"name": name, "start_year": start_year, "publisher": publisher}


class TestNormalizeName:

    @pytest.mark.parametrize("raw,expected", [
        ("The Amazing Spider-Man", "amazing spider man"),
        ("Batman: The Long Halloween", "batman the long halloween"),
        ("Howard the Duck", "howard the duck"),
        ("Marvel's Avengers", "marvels avengers"),
        ("  X-Men   ", "x men"),
        (None, ""),
        ("", ""),
    ])
    def test_normalize(self, raw, expected):
        from cross_match import normalize_name
        assert normalize_name(raw) == expected


class TestPublishers:

    def test_abbreviations_match(self):
        from cross_match import publishers_match
        assert publishers_match("DC", "DC Comics") is True
        assert publishers_match("Marvel", "Marvel Comics Group") is True
        assert publishers_match("BOOM!", "Boom Studios") is True

    def test_different_publishers(self):
        from cross_match import publishers_match
        assert publishers_match("DC Comics", "Marvel") is False

    def test_missing_publisher_never_matches(self):
        from cross_match import publishers_match
        assert publishers_match(None, None) is False
        assert publishers_match("", "DC") is False


class TestScoreCandidate:

    def test_exact_name_year_publisher(self):
        from cross_match import score_candidate
        score, pub = score_candidate(cand("Batman", 2016, "DC"), cand("Batman", 2016, "DC Comics"))
        assert score == 150
        assert pub is True

    def test_hyphenation_counts_as_exact(self):
        from cross_match import score_candidate
        score, _ = score_candidate(cand("Spiderman"), cand("Spider-Man"))
        assert score == 100

    def test_containment(self):
        from cross_match import score_candidate
        score, _ = score_candidate(cand("Batman"), cand("Batman Beyond"))
        assert score == 50

    def test_token_overlap_capped(self):
        from cross_match import score_candidate
        score, _ = score_candidate(cand("Green Lantern Corps"), cand("Lantern Green Legacy"))
        assert 0 < score <= 25

    def test_no_name_overlap_scores_zero(self):
        from cross_match import score_candidate
        assert score_candidate(cand("Batman", 2016, "DC"), cand("Saga", 2016, "DC")) == (0, False)

    def test_accepts_records(self):
        from cross_match import score_candidate
        target = SeriesMetadata(source=MetadataSource.COMICVINE, source_id="1", name="Saga",
                                start_year=2012, publisher="Image")
        other = SeriesMetadata(source=MetadataSource.METRON, source_id="2", name="Saga",
                               start_year=2012, publisher="Image Comics")
        assert score_candidate(target, other) == (150, True)

    def test_string_years_compared_as_numbers(self):
        from cross_match import score_candidate
        score, _ = score_candidate(cand("Saga", "2012"), cand("Saga", 2012))
        assert score == 130

    @pytest.mark.parametrize("year", ["2011?", "c. 2011", "", "  "])
    def test_unparseable_year_is_no_year_match(self, year):
        from cross_match import score_candidate
        score, _ = score_candidate(cand("Saga", year), cand("Saga", 2011))
        assert score == 100


class TestFindBestMatch:

    def test_empty_candidates(self):
        from cross_match import find_best_match
        assert find_best_match(cand("Batman"), []) is None
        assert find_best_match(cand("Batman"), None) is None

    def test_no_overlap_returns_none(self):
        from cross_match import find_best_match
        assert find_best_match(cand("Batman"), [cand("Saga"), cand("Invincible")]) is None

    def test_year_breaks_name_tie(self):
        from cross_match import find_best_match
        candidates = [cand("Batman", 1940), cand("Batman", 2016), cand("Batman", 2011)]
        assert find_best_match(cand("Batman", 2016), candidates) is candidates[1]

    def test_exact_beats_containment(self):
        from cross_match import find_best_match
        candidates = [cand("Batman Beyond", 2016), cand("Batman")]
        assert find_best_match(cand("Batman", 2016), candidates) is candidates[1]

    def test_publisher_match_ranks_first(self):
        from cross_match import rank_candidates
        target = cand("Saga", None, "Image")
        plain = cand("Saga Deluxe")
        with_pub = cand("Saga", None, "Image Comics")
        ranked = rank_candidates(target, [plain, cand("Saga"), with_pub])
        assert [r.score for r in ranked] == [120, 100, 50]
        assert ranked[0].candidate is with_pub
        assert ranked[0].publisher_match is True

    def test_equal_scores_keep_input_order(self):
        from cross_match import rank_candidates
        first, second = cand("Batman"), cand("batman")
        ranked = rank_candidates(cand("Batman"), [first, second])
        assert [r.index for r in ranked] == [0, 1]

    def test_with_score(self):
        from cross_match import find_best_match_with_score
        result = find_best_match_with_score(cand("Batman", 2016), [cand("Batman", 2016)])
        assert result.score == 130
        assert result.index == 0
