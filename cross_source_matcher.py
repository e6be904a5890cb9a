"""
Cross-source series and issue matching with weighted confidence.

A series from one source is looked up in the other enabled sources and
every candidate gets a 0..1 confidence from:

    title similarity     0.35  (scaled by similarity)
    publisher match      0.20
    start year           0.20  (exact; a one-year gap counts half)
    issue count          0.10  (within 10%)
    creator overlap      0.10  (scaled, full at three shared creators)
    alias match          0.05

Candidates whose start year is more than two years away are rejected
outright, so Batman (2011) never matches Batman (2016). A match at or
above the auto-match threshold can be accepted without review.

Issues are matched inside an already-mapped series by number (required),
cover date and title.
"""
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from app_logging import app_logger
from config import get_metadata_settings
from cross_match import parse_year, publishers_match
from metadata_fetch import resolve_provider
from models.providers import MetadataSource, SeriesMetadata, IssueMetadata

DEFAULT_AUTO_MATCH_THRESHOLD = 0.95
DEFAULT_ISSUE_MATCH_THRESHOLD = 0.7
MAX_YEAR_GAP = 2
SEARCH_LIMIT = 10

WEIGHTS = {
    "title_similarity": 0.35,
    "publisher_match": 0.20,
    "year_match": 0.20,
    "issue_count_match": 0.10,
    "creator_overlap": 0.10,
    "alias_match": 0.05,
}

ISSUE_WEIGHTS = {
    "number": 0.50,
    "cover_date": 0.25,
    "title": 0.15,
}

MONTHS = {
    'january': 1, 'jan': 1, 'february': 2, 'feb': 2, 'march': 3, 'mar': 3,
    'april': 4, 'apr': 4, 'may': 5, 'june': 6, 'jun': 6, 'july': 7, 'jul': 7,
    'august': 8, 'aug': 8, 'september': 9, 'sep': 9, 'sept': 9, 'october': 10,
    'oct': 10, 'november': 11, 'nov': 11, 'december': 12, 'dec': 12,
}

_YEAR_IN_PARENS = re.compile(r'\s*\(\d{4}\)')
_VOLUME = re.compile(r'\s*vol(?:ume)?\.?\s*\d+', re.IGNORECASE)
_LEADING_THE = re.compile(r'^the\s+')
_SPECIAL = re.compile(r'[^\w\s]')
_ISSUE_NUMBER = re.compile(r'^(-?\d+(?:\.\d+)?)')
_NUMERIC_DATE = re.compile(r'^(\d{4})-(\d{1,2})')
_MONTH_NAME_DATE = re.compile(r'^([a-z]+)\.?\s+(\d{4})')


# =============================================================================
# Result Types
# =============================================================================

@dataclass(frozen=True)
class MatchFactors:
    title_similarity: float
    publisher_match: bool
    year_match: str  # exact | close | none
    issue_count_match: bool
    creator_overlap: Tuple[str, ...]
    alias_match: bool

    def to_dict(self) -> Dict:
        return {
            "title_similarity": round(self.title_similarity, 4),
            "publisher_match": self.publisher_match,
            "year_match": self.year_match,
            "issue_count_match": self.issue_count_match,
            "creator_overlap": list(self.creator_overlap),
            "alias_match": self.alias_match,
        }


@dataclass(frozen=True)
class CrossSourceMatch:
    source: MetadataSource
    source_id: str
    series: SeriesMetadata
    confidence: float
    factors: MatchFactors
    is_auto_match_candidate: bool

    def to_dict(self) -> Dict:
        return {
            "source": self.source.value,
            "source_id": self.source_id,
            "series": self.series.to_dict(),
            "confidence": self.confidence,
            "match_factors": self.factors.to_dict(),
            "is_auto_match_candidate": self.is_auto_match_candidate,
        }


@dataclass
class CrossSourceResult:
    primary_source: MetadataSource
    primary_source_id: str
    matches: List[CrossSourceMatch] = field(default_factory=list)
    # source value -> matched | no_match | searching | error | skipped
    status: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "primary_source": self.primary_source.value,
            "primary_source_id": self.primary_source_id,
            "matches": [m.to_dict() for m in self.matches],
            "status": dict(self.status),
        }


@dataclass(frozen=True)
class IssueMatchFactors:
    number_match: bool
    cover_date_match: str  # exact | close | none
    title_similarity: float

    def to_dict(self) -> Dict:
        return {
            "number_match": self.number_match,
            "cover_date_match": self.cover_date_match,
            "title_similarity": round(self.title_similarity, 4),
        }


@dataclass(frozen=True)
class IssueCrossMatch:
    source: MetadataSource
    issue: IssueMetadata
    confidence: float
    factors: IssueMatchFactors

    def to_dict(self) -> Dict:
        return {
            "source": self.source.value,
            "issue": self.issue.to_dict(),
            "confidence": self.confidence,
            "match_factors": self.factors.to_dict(),
        }


# =============================================================================
# Title Similarity
# =============================================================================

def levenshtein_distance(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, 1):
        current = [i]
        for j, char_b in enumerate(b, 1):
            current.append(min(
                previous[j - 1] + (char_a != char_b),  # substitution
                current[j - 1] + 1,                      # insertion
                previous[j] + 1,                         # deletion
            ))
        previous = current
    return previous[-1]


def normalize_series_name(name: Optional[str]) -> str:
    """
    Lowercase and drop a "(2019)" year, volume markers, a leading "the" and punctuation.

    "The Walking Dead (2003) Vol. 2" -> "walking dead"
    """
    if not name:
        return ''
    text = name.lower()
    text = _YEAR_IN_PARENS.sub('', text)
    text = _VOLUME.sub('', text)
    text = _LEADING_THE.sub('', text.strip())
    text = _SPECIAL.sub('', text)
    return ' '.join(text.split())


def calculate_title_similarity(name1: Optional[str], name2: Optional[str]) -> float:
    """0..1 similarity of two titles after normalization."""
    norm1 = normalize_series_name(name1)
    norm2 = normalize_series_name(name2)
    if not norm1 or not norm2:
        return 0.0
    if norm1 == norm2:
        return 1.0

    if norm1 in norm2 or norm2 in norm1:
        ratio = min(len(norm1), len(norm2)) / max(len(norm1), len(norm2))
        return 0.7 + 0.3 * ratio

    tokens1 = norm1.split()
    tokens2 = set(norm2.split())
    token_score = sum(1 for t in tokens1 if t in tokens2) / max(len(tokens1), len(tokens2))

    longest = max(len(norm1), len(norm2))
    levenshtein_score = 1 - levenshtein_distance(norm1, norm2) / longest

    return max(token_score, levenshtein_score)


# =============================================================================
# Series Confidence
# =============================================================================

def year_match(year1, year2) -> str:
    """'exact', 'close' (one year apart) or 'none' (including missing years)."""
    year1, year2 = parse_year(year1), parse_year(year2)
    if not year1 or not year2:
        return 'none'
    if year1 == year2:
        return 'exact'
    if abs(year1 - year2) <= 1:
        return 'close'
    return 'none'


def issue_counts_match(count1, count2) -> bool:
    """Counts within 10% of the larger one."""
    if not count1 or not count2:
        return False
    return abs(count1 - count2) <= max(count1, count2) * 0.1


def _creator_names(credits) -> List[str]:
    return [c.name.strip().lower() for c in credits or () if c.name and c.name.strip()]


def creator_overlap(primary: SeriesMetadata, candidate: SeriesMetadata) -> Tuple[str, ...]:
    primary_names = set(_creator_names(primary.creators))
    shared = []
    for name in _creator_names(candidate.creators):
        if name in primary_names and name not in shared:
            shared.append(name)
    return tuple(shared)


def aliases_match(aliases, target_name) -> bool:
    target = normalize_series_name(target_name)
    if not aliases or not target:
        return False
    return any(normalize_series_name(alias) == target for alias in aliases)


def calculate_match_confidence(primary: SeriesMetadata, candidate: SeriesMetadata) -> Tuple[float, MatchFactors]:
    """
    Weighted confidence that candidate is the same series as primary.

    Returns:
        (confidence in 0..1, MatchFactors)
    """
    factors = MatchFactors(
        title_similarity=calculate_title_similarity(primary.name, candidate.name),
        publisher_match=publishers_match(primary.publisher, candidate.publisher),
        year_match=year_match(primary.start_year, candidate.start_year),
        issue_count_match=issue_counts_match(primary.issue_count, candidate.issue_count),
        creator_overlap=creator_overlap(primary, candidate),
        alias_match=(aliases_match(candidate.aliases, primary.name)
                     or aliases_match(primary.aliases, candidate.name)),
    )

    confidence = factors.title_similarity * WEIGHTS["title_similarity"]
    if factors.publisher_match:
        confidence += WEIGHTS["publisher_match"]
    if factors.year_match == 'exact':
        confidence += WEIGHTS["year_match"]
    elif factors.year_match == 'close':
        confidence += WEIGHTS["year_match"] * 0.5
    if factors.issue_count_match:
        confidence += WEIGHTS["issue_count_match"]
    if factors.creator_overlap:
        confidence += min(len(factors.creator_overlap) / 3, 1.0) * WEIGHTS["creator_overlap"]
    if factors.alias_match:
        confidence += WEIGHTS["alias_match"]

    return round(min(confidence, 1.0), 4), factors


def _too_far_apart(primary: SeriesMetadata, candidate: SeriesMetadata, factors: MatchFactors) -> bool:
    if factors.year_match != 'none':
        return False
    year1, year2 = parse_year(primary.start_year), parse_year(candidate.start_year)
    return bool(year1 and year2 and abs(year1 - year2) > MAX_YEAR_GAP)


def best_series_match(primary: SeriesMetadata, candidates, source: MetadataSource,
                      threshold: float) -> Optional[CrossSourceMatch]:
    """Highest-confidence candidate, skipping ones started years apart from primary."""
    best = None
    for candidate in candidates or []:
        if candidate is None:
            continue
        confidence, factors = calculate_match_confidence(primary, candidate)
        if _too_far_apart(primary, candidate, factors):
            continue
        if best is None or confidence > best.confidence:
            best = CrossSourceMatch(
                source=source,
                source_id=candidate.source_id,
                series=candidate,
                confidence=confidence,
                factors=factors,
                is_auto_match_candidate=confidence >= threshold,
            )
    return best


def _search_source(primary: SeriesMetadata, source: MetadataSource, threshold, providers):
    provider = resolve_provider(source, providers)
    if provider is None:
        app_logger.debug(f"No provider registered for {source.value}, skipping cross-match")
        return 'error', None

    if not provider.test_connection():
        app_logger.warning(f"{source.value} is unavailable, skipping cross-match")
        return 'error', None

    candidates = provider.search_series(primary.name, year=parse_year(primary.start_year),
                                        publisher=primary.publisher, limit=SEARCH_LIMIT)
    if not candidates:
        return 'no_match', None

    match = best_series_match(primary, candidates, source, threshold)
    return ('matched', match) if match else ('no_match', None)


def find_cross_source_matches(primary: SeriesMetadata, target_sources=None, threshold=None,
                              providers=None, settings=None) -> CrossSourceResult:
    """
    Search the other sources for the series behind `primary`.

    Args:
        primary: Series record from the primary source
        target_sources: Sources to search (default: every enabled source but primary's)
        threshold: Auto-match threshold (default: configured, 0.95)
        providers: Optional source -> provider instance overrides
        settings: MetadataSettings (default: read from config)

    Returns:
        CrossSourceResult with at most one match per source, best first.
        A failing source is reported in status and never fails the call.
    """
    settings = settings or get_metadata_settings()
    if threshold is None:
        threshold = getattr(settings, "auto_match_threshold", DEFAULT_AUTO_MATCH_THRESHOLD)

    enabled = [MetadataSource.parse(s) for s in settings.priority_order]
    if target_sources is None:
        targets = [s for s in enabled if s != primary.source]
    else:
        targets = [MetadataSource.parse(s) for s in target_sources if MetadataSource.parse(s) != primary.source]

    result = CrossSourceResult(primary_source=primary.source, primary_source_id=primary.source_id)
    for source in enabled:
        result.status[source.value] = 'searching' if source in targets else 'skipped'

    if not targets or not primary.name:
        for source in targets:
            result.status[source.value] = 'no_match'
        return result

    with ThreadPoolExecutor(max_workers=len(targets)) as executor:
        futures = {source: executor.submit(_search_source, primary, source, threshold, providers)
                   for source in targets}

    for source, future in futures.items():
        try:
            status, match = future.result()
        except Exception as e:
            app_logger.error(f"Cross-match search on {source.value} failed: {e}")
            status, match = 'error', None
        result.status[source.value] = status
        if match:
            result.matches.append(match)

    result.matches.sort(key=lambda m: m.confidence, reverse=True)
    app_logger.info(
        f"Cross-matched {primary.source.value}:{primary.source_id} '{primary.name}': "
        f"{len(result.matches)} of {len(targets)} sources matched"
    )
    return result


# =============================================================================
# Issue Matching
# =============================================================================

def normalize_issue_number(number) -> Optional[str]:
    """
    Comparable form of an issue number.

    "001" -> "1", "½" and "1/2" -> "0.5", "12.1" stays, "5AU" -> "5",
    non-numeric numbers are lowercased.
    """
    if number is None:
        return None
    text = str(number).strip().lower()
    if not text:
        return None
    if text in ('½', '1/2', '0.5'):
        return '0.5'

    match = _ISSUE_NUMBER.match(text)
    if not match:
        return text
    value = match.group(1)
    if '.' in value:
        return value
    return str(int(value))


def parse_cover_date(value) -> Optional[Tuple[int, int]]:
    """(year, month) from "2016-06", "2016-06-01" or "June 2016"; month 0 when unknown."""
    if not value:
        return None
    text = str(value).strip().lower()

    match = _NUMERIC_DATE.match(text)
    if match:
        year, month = int(match.group(1)), int(match.group(2))
    else:
        match = _MONTH_NAME_DATE.match(text)
        if not match:
            return None
        year, month = int(match.group(2)), MONTHS.get(match.group(1), 0)

    if 1900 < year < 2100:
        return year, month
    return None


def _cover_date_match(date1, date2) -> str:
    if not date1 or not date2 or date1[0] != date2[0]:
        return 'none'
    if date1[1] == date2[1]:
        return 'exact'
    if abs(date1[1] - date2[1]) <= 1:
        return 'close'
    return 'none'


def calculate_issue_match_confidence(primary: IssueMetadata, candidate: IssueMetadata) -> Tuple[float, IssueMatchFactors]:
    primary_number = normalize_issue_number(primary.number)
    number_match = primary_number is not None and primary_number == normalize_issue_number(candidate.number)

    confidence = ISSUE_WEIGHTS["number"] if number_match else 0.0

    date_match = _cover_date_match(parse_cover_date(primary.cover_date),
                                   parse_cover_date(candidate.cover_date))
    if date_match == 'exact':
        confidence += ISSUE_WEIGHTS["cover_date"]
    elif date_match == 'close':
        confidence += ISSUE_WEIGHTS["cover_date"] * 0.5

    if primary.title and candidate.title:
        title_similarity = calculate_title_similarity(primary.title, candidate.title)
    elif not primary.title and not candidate.title:
        # Neither side has a title: half credit
        title_similarity = 0.5
    else:
        title_similarity = 0.0
    confidence += title_similarity * ISSUE_WEIGHTS["title"]

    factors = IssueMatchFactors(number_match=number_match, cover_date_match=date_match,
                                title_similarity=title_similarity)
    return round(min(confidence, 1.0), 4), factors


def find_matching_issue(primary: IssueMetadata, candidates,
                        threshold: float = DEFAULT_ISSUE_MATCH_THRESHOLD) -> Optional[IssueCrossMatch]:
    """
    Best candidate with the same issue number and confidence >= threshold.

    Ties keep the earliest candidate.
    """
    best = None
    for candidate in candidates or []:
        confidence, factors = calculate_issue_match_confidence(primary, candidate)
        if not factors.number_match or confidence < threshold:
            continue
        if best is None or confidence > best.confidence:
            best = IssueCrossMatch(source=candidate.source, issue=candidate,
                                   confidence=confidence, factors=factors)
    return best


def find_issue_cross_matches(primary: IssueMetadata, series_mappings,
                             threshold: float = DEFAULT_ISSUE_MATCH_THRESHOLD,
                             providers=None) -> List[IssueCrossMatch]:
    """
    Find primary's counterpart in each mapped series.

    Args:
        primary: Issue record from the primary source
        series_mappings: Iterable of (source, series_id) for the series in other sources
        threshold: Minimum issue confidence
        providers: Optional source -> provider instance overrides

    Returns:
        One match per source that has the issue, best first
    """
    matches = []
    for source, series_id in series_mappings or []:
        source = MetadataSource.parse(source)
        if source == primary.source:
            continue

        try:
            provider = resolve_provider(source, providers)
            if provider is None:
                continue
            match = find_matching_issue(primary, provider.get_issues(str(series_id)), threshold)
            if match:
                matches.append(match)
        except Exception as e:
            app_logger.error(f"Issue cross-match on {source.value} series {series_id} failed: {e}")

    matches.sort(key=lambda m: m.confidence, reverse=True)
    return matches
