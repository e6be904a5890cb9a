"""
Best-match scoring between a series from one source and candidates from another.

Scores are additive:
    exact normalized name       +100
    name containment            +50
    shared name tokens          up to +25 (when neither of the above)
    same start year             +30
    same normalized publisher   +20

A candidate with no name overlap is never returned. Ties go to the
candidate whose publisher matches, then to the earliest in input order.
"""
import re
from dataclasses import dataclass
from typing import Any, FrozenSet, List, Optional, Sequence

EXACT_NAME_SCORE = 100
CONTAINS_NAME_SCORE = 50
TOKEN_OVERLAP_MAX_SCORE = 25
YEAR_MATCH_SCORE = 30
PUBLISHER_MATCH_SCORE = 20

PUBLISHER_NORMALIZATIONS = {
    'dc': 'dc comics',
    'dc comics': 'dc comics',
    'dc comics inc': 'dc comics',
    'marvel': 'marvel comics',
    'marvel comics': 'marvel comics',
    'marvel comics group': 'marvel comics',
    'image': 'image comics',
    'image comics': 'image comics',
    'dark horse': 'dark horse comics',
    'dark horse comics': 'dark horse comics',
    'idw': 'idw publishing',
    'idw publishing': 'idw publishing',
    'boom': 'boom studios',
    'boom studios': 'boom studios',
    'dynamite': 'dynamite entertainment',
    'dynamite entertainment': 'dynamite entertainment',
    'valiant': 'valiant entertainment',
    'valiant entertainment': 'valiant entertainment',
    'oni': 'oni press',
    'oni press': 'oni press',
}

_APOSTROPHES = re.compile(r"['’`]")
_NON_WORD = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class MatchResult:
    candidate: Any
    score: int
    index: int
    publisher_match: bool = False


def _attr(record, name):
    if isinstance(record, dict):
        return record.get(name)
    return getattr(record, name, None)


def _clean(text: str) -> str:
    text = _APOSTROPHES.sub('', text.lower())
    return ' '.join(_NON_WORD.sub(' ', text).split())


def normalize_name(name: Optional[str]) -> str:
    """
    Lowercase, drop punctuation, collapse whitespace, strip a leading "the".

    "The Amazing Spider-Man: Renew Your Vows" -> "amazing spider man renew your vows"
    """
    if not name:
        return ''
    cleaned = _clean(name)
    if cleaned.startswith('the '):
        cleaned = cleaned[4:]
    return cleaned


def normalize_publisher(publisher: Optional[str]) -> FrozenSet[str]:
    """Token set for a publisher, with common abbreviations expanded."""
    if not publisher:
        return frozenset()
    cleaned = _clean(publisher)
    cleaned = PUBLISHER_NORMALIZATIONS.get(cleaned, cleaned)
    return frozenset(cleaned.split())


def publishers_match(pub1: Optional[str], pub2: Optional[str]) -> bool:
    tokens1 = normalize_publisher(pub1)
    return bool(tokens1) and tokens1 == normalize_publisher(pub2)


def _name_score(target_name: str, candidate_name: str) -> int:
    if not target_name or not candidate_name:
        return 0

    if target_name == candidate_name:
        return EXACT_NAME_SCORE

    # Compare with spaces removed so "Spider-Man" and "Spiderman" line up
    target_compact = target_name.replace(' ', '')
    candidate_compact = candidate_name.replace(' ', '')
    if target_compact == candidate_compact:
        return EXACT_NAME_SCORE
    if target_compact in candidate_compact or candidate_compact in target_compact:
        return CONTAINS_NAME_SCORE

    target_tokens = set(target_name.split())
    candidate_tokens = set(candidate_name.split())
    shared = target_tokens & candidate_tokens
    if not shared:
        return 0
    return max(1, int(TOKEN_OVERLAP_MAX_SCORE * len(shared) / len(target_tokens | candidate_tokens)))


def parse_year(value) -> Optional[int]:
    """A start year as an int, or None when it does not parse ("2011?", "")."""
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def score_candidate(target, candidate):
    """
    Score one candidate against the target.

    Returns:
        (score, publisher_match). Score is 0 when the names share nothing,
        whatever the year or publisher say.
    """
    name_score = _name_score(normalize_name(_attr(target, 'name')),
                             normalize_name(_attr(candidate, 'name')))
    if name_score == 0:
        return 0, False

    score = name_score

    target_year = parse_year(_attr(target, 'start_year'))
    candidate_year = parse_year(_attr(candidate, 'start_year'))
    if target_year and candidate_year and target_year == candidate_year:
        score += YEAR_MATCH_SCORE

    pub_match = publishers_match(_attr(target, 'publisher'), _attr(candidate, 'publisher'))
    if pub_match:
        score += PUBLISHER_MATCH_SCORE

    return score, pub_match


def rank_candidates(target, candidates: Sequence) -> List[MatchResult]:
    """All candidates with some name overlap, best first (stable on ties)."""
    results = []
    for index, candidate in enumerate(candidates or []):
        score, pub_match = score_candidate(target, candidate)
        if score > 0:
            results.append(MatchResult(candidate=candidate, score=score, index=index,
                                       publisher_match=pub_match))

    results.sort(key=lambda r: (-r.score, not r.publisher_match, r.index))
    return results


def find_best_match_with_score(target, candidates: Sequence) -> Optional[MatchResult]:
    ranked = rank_candidates(target, candidates)
    return ranked[0] if ranked else None


def find_best_match(target, candidates: Sequence):
    """
    Pick the candidate most likely to be the same series as target.

    Returns:
        The winning candidate, or None when the list is empty or no
        candidate shares any part of its name with the target
    """
    result = find_best_match_with_score(target, candidates)
    return result.candidate if result else None
