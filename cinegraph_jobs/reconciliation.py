from __future__ import annotations

import re
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from rapidfuzz.distance import Jaro

from .common import LOGGER, parse_int, parse_year
from .database import LocalDatabase
from .sources import TMDBClient
from .transport import SourceResult


PUNCTUATION = re.compile(r"[^\w\s]")
SUBTITLE_COLON = re.compile(r"\s*:\s*.*$")
SUBTITLE_DASH = re.compile(r"\s*-\s*.*$")

GENRE_ANIMATION = 16
GENRE_DOCUMENTARY = 99

COUNTRY_NAMES = {
    "Algeria", "Argentina", "Australia", "Bosnia and Herzegovina", "Brazil",
    "Canada", "Chile", "China", "Colombia", "Czech Republic", "Denmark", "Egypt",
    "Finland", "France", "Germany", "Hong Kong", "Hungary", "Iceland", "India",
    "Italy", "Japan", "Mexico", "Morocco", "New Zealand", "Norway", "Poland",
    "Portugal", "Romania", "Russia", "South Africa", "South Korea", "Spain",
    "Sweden", "Thailand", "Tunisia", "Turkey", "United Kingdom",
}

# International Feature nominees are sometimes listed by country only.
COUNTRY_FILM_TITLES = {
    ("Denmark", 2021): "Another Round",
    ("Bosnia and Herzegovina", 2021): "Quo Vadis, Aida?",
    ("Hong Kong", 2021): "Better Days",
    ("Romania", 2021): "Collective",
    ("Tunisia", 2021): "The Man Who Sold His Skin",
}


@dataclass(frozen=True)
class MatchThresholds:
    title_threshold: float = 0.85
    year_tolerance: int = 2
    clear_winner_gap: float = 0.10
    local_title_weight: float = 0.7
    local_year_weight: float = 0.3
    external_title_weight: float = 0.6
    external_year_weight: float = 0.3
    external_category_weight: float = 0.1
    vote_bonus: float = 0.05
    vote_bonus_min_votes: int = 50
    local_candidate_limit: int = 25
    person_name_threshold: float = 0.9
    person_min_confidence: float = 0.75

    @classmethod
    def from_config(cls, matching: Dict[str, Any]) -> "MatchThresholds":
        return cls(
            title_threshold=float(matching["title_threshold"]),
            year_tolerance=int(matching["year_tolerance"]),
            clear_winner_gap=float(matching["clear_winner_gap"]),
            local_title_weight=float(matching["local_title_weight"]),
            local_year_weight=float(matching["local_year_weight"]),
            external_title_weight=float(matching["external_title_weight"]),
            external_year_weight=float(matching["external_year_weight"]),
            external_category_weight=float(matching["external_category_weight"]),
            vote_bonus=float(matching["vote_bonus"]),
            vote_bonus_min_votes=int(matching["vote_bonus_min_votes"]),
            local_candidate_limit=int(matching["local_candidate_limit"]),
            person_name_threshold=float(matching["person_name_threshold"]),
            person_min_confidence=float(matching["person_min_confidence"]),
        )


def normalize_title(title: Optional[str]) -> str:
    return PUNCTUATION.sub("", str(title or "").lower()).strip()


def clean_search_title(title: str) -> str:
    cleaned = SUBTITLE_COLON.sub("", title)
    cleaned = SUBTITLE_DASH.sub("", cleaned)
    return cleaned.strip() or title.strip()


def title_similarity(left: Optional[str], right: Optional[str]) -> float:
    return float(Jaro.similarity(normalize_title(left), normalize_title(right)))


def year_score(candidate_year: Optional[int], target_year: Optional[int], missing: float = 0.0) -> float:
    if candidate_year is None or target_year is None:
        return missing
    return {0: 1.0, 1: 0.8, 2: 0.5}.get(abs(candidate_year - target_year), 0.0)


def category_score(genre_ids: Sequence[int], category_name: str) -> float:
    lowered = str(category_name or "").lower()
    if "animated" in lowered and GENRE_ANIMATION in genre_ids:
        return 1.0
    if "documentary" in lowered and GENRE_DOCUMENTARY in genre_ids:
        return 1.0
    if "international" in lowered or "foreign" in lowered:
        return 0.9
    return 0.8


def map_country_to_title(nominee_title: str, year: Optional[int], category_name: str) -> Optional[str]:
    """Film title for a country-only nominee; the title itself when it is not a country."""
    lowered = str(category_name or "").lower()
    if nominee_title not in COUNTRY_NAMES or not ("international" in lowered or "foreign" in lowered):
        return nominee_title
    return COUNTRY_FILM_TITLES.get((nominee_title, year or 0))


@dataclass
class ScoredCandidate:
    candidate: Any
    score: float


@dataclass
class MatchDecision:
    matched: Optional[Any] = None
    score: float = 0.0
    reason: str = "no_candidates"
    runner_up: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.matched is not None


def pick_clear_winner(
    scored: Sequence[ScoredCandidate],
    *,
    threshold: float,
    gap: float,
) -> MatchDecision:
    """Accept the top candidate when it beats the threshold and no other qualifier comes within ``gap``.

    Only candidates above the threshold compete; a rival below it never makes
    a match ambiguous.
    """
    if not scored:
        return MatchDecision(reason="no_candidates")
    ranked = sorted(scored, key=lambda item: item.score, reverse=True)
    best = ranked[0]
    if best.score <= threshold:
        return MatchDecision(score=best.score, reason="below_threshold")
    qualified = [item for item in ranked if item.score > threshold]
    runner_up = qualified[1].score if len(qualified) > 1 else None
    if runner_up is not None and best.score - runner_up <= gap:
        return MatchDecision(score=best.score, reason="ambiguous", runner_up=runner_up)
    return MatchDecision(matched=best.candidate, score=best.score, reason="matched", runner_up=runner_up)


@dataclass
class MovieResolution:
    source: str
    decision: MatchDecision
    searched_title: str
    movie: Optional[sqlite3.Row] = None
    tmdb_id: Optional[int] = None
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.movie is not None or self.tmdb_id is not None


class MovieMatcher:
    def __init__(self, *, db: LocalDatabase, tmdb: TMDBClient, thresholds: MatchThresholds):
        self.db = db
        self.tmdb = tmdb
        self.thresholds = thresholds

    def find_local(self, title: str, year: Optional[int]) -> MatchDecision:
        t = self.thresholds
        candidates = self.db.search_movies_by_title(clean_search_title(title), limit=t.local_candidate_limit)
        if not candidates:
            return MatchDecision(reason="no_candidates")

        if len(candidates) == 1:
            movie = candidates[0]
            similarity = title_similarity(movie["title"], title)
            movie_year = parse_int(movie["release_year"])
            year_ok = movie_year is None or year is None or abs(movie_year - year) <= t.year_tolerance
            if similarity > t.title_threshold and year_ok:
                return MatchDecision(matched=movie, score=similarity, reason="matched")
            return MatchDecision(score=similarity, reason="below_threshold")

        scored = [
            ScoredCandidate(
                candidate=movie,
                score=title_similarity(movie["title"], title) * t.local_title_weight
                + year_score(parse_int(movie["release_year"]), year, missing=0.5) * t.local_year_weight,
            )
            for movie in candidates
        ]
        return pick_clear_winner(scored, threshold=t.title_threshold, gap=t.clear_winner_gap)

    def score_external(
        self,
        candidate: Dict[str, Any],
        title: str,
        year: Optional[int],
        category_name: str,
    ) -> float:
        t = self.thresholds
        score = (
            title_similarity(candidate.get("title"), title) * t.external_title_weight
            + year_score(parse_year(candidate.get("release_date")), year) * t.external_year_weight
            + category_score(candidate.get("genre_ids") or [], category_name) * t.external_category_weight
        )
        if (parse_int(candidate.get("vote_count")) or 0) > t.vote_bonus_min_votes:
            score += t.vote_bonus
        return min(score, 1.0)

    async def search_external(
        self,
        title: str,
        year: Optional[int],
        category_name: str,
    ) -> SourceResult[MatchDecision]:
        query = clean_search_title(title)
        result = await self.tmdb.search_movies(query, year=year)
        if result.ok and not result.value and year is not None:
            result = await self.tmdb.search_movies(query)
        if not result.ok:
            return SourceResult(error=result.error)
        scored = [
            ScoredCandidate(candidate=movie, score=self.score_external(movie, title, year, category_name))
            for movie in result.value
            if parse_int(movie.get("id")) is not None
        ]
        return SourceResult.success(
            pick_clear_winner(scored, threshold=self.thresholds.title_threshold, gap=self.thresholds.clear_winner_gap)
        )

    async def resolve(self, title: str, year: Optional[int], category_name: str) -> MovieResolution:
        local = self.find_local(title, year)
        if local.ok:
            return MovieResolution(source="local", decision=local, searched_title=title, movie=local.matched)

        external = await self.search_external(title, year, category_name)
        if not external.ok:
            return MovieResolution(
                source="external",
                decision=MatchDecision(reason="search_failed"),
                searched_title=title,
                error=str(external.error),
            )
        decision = external.value
        if not decision.ok:
            LOGGER.info(
                "[Match] No confident match for '%s' (%s, best=%.3f, runner_up=%s)",
                title,
                decision.reason,
                decision.score,
                "-" if decision.runner_up is None else f"{decision.runner_up:.3f}",
            )
            return MovieResolution(source="external", decision=decision, searched_title=title)
        return MovieResolution(
            source="external",
            decision=decision,
            searched_title=title,
            tmdb_id=parse_int(decision.matched.get("id")),
        )


@dataclass
class PersonResolution:
    person_id: Optional[int]
    method: str
    imdb_ids: List[str] = field(default_factory=list)


class PersonResolver:
    """Resolves a nominee to a local person, creating a placeholder as a last resort."""

    def __init__(self, *, db: LocalDatabase, tmdb: TMDBClient, thresholds: MatchThresholds):
        self.db = db
        self.tmdb = tmdb
        self.thresholds = thresholds

    async def resolve(
        self,
        *,
        imdb_ids: Sequence[str],
        name: Optional[str],
        movie_id: Optional[int] = None,
    ) -> PersonResolution:
        ids = [value for value in imdb_ids if value]
        for imdb_id in ids:
            row = self.db.get_person_by_imdb_id(imdb_id)
            if row is not None:
                return PersonResolution(person_id=int(row["id"]), method="imdb", imdb_ids=ids)

        if name and movie_id is not None:
            person_id = self._match_credits(name, movie_id)
            if person_id is not None:
                return PersonResolution(person_id=person_id, method="credits", imdb_ids=ids)

        for imdb_id in ids:
            person_id = await self._find_on_tmdb(imdb_id)
            if person_id is not None:
                return PersonResolution(person_id=person_id, method="tmdb_find", imdb_ids=ids)

        if name:
            person_id = await self._search_tmdb(name, ids)
            if person_id is not None:
                return PersonResolution(person_id=person_id, method="tmdb_search", imdb_ids=ids)

        if not name and not ids:
            return PersonResolution(person_id=None, method="none")
        placeholder = self.db.create_minimal_person(name or ids[0], ids[0] if ids else None)
        LOGGER.info("[Match] Created placeholder person %s for '%s' %s", placeholder, name, ids)
        return PersonResolution(person_id=placeholder, method="placeholder", imdb_ids=ids)

    def _match_credits(self, name: str, movie_id: int) -> Optional[int]:
        scored = [
            ScoredCandidate(candidate=row, score=title_similarity(row["name"], name))
            for row in self.db.movie_people(movie_id)
        ]
        decision = pick_clear_winner(
            scored,
            threshold=self.thresholds.person_name_threshold,
            gap=self.thresholds.clear_winner_gap,
        )
        return int(decision.matched["id"]) if decision.ok else None

    async def _find_on_tmdb(self, imdb_id: str) -> Optional[int]:
        found = await self.tmdb.find_by_imdb_id(imdb_id)
        if not found.ok:
            LOGGER.debug("[Match] TMDb find failed for %s: %s", imdb_id, found.error)
            return None
        results = found.value.get("person_results") or []
        if not results:
            return None
        tmdb_id = parse_int(results[0].get("id"))
        if tmdb_id is None:
            return None
        details = await self.tmdb.get_person(tmdb_id)
        person = dict(details.value) if details.ok else dict(results[0])
        person["imdb_id"] = person.get("imdb_id") or imdb_id
        return self.db.upsert_person(person)

    async def _search_tmdb(self, name: str, imdb_ids: Sequence[str]) -> Optional[int]:
        found = await self.tmdb.search_people(name)
        if not found.ok or not found.value:
            return None
        scored = [
            ScoredCandidate(
                candidate=person,
                score=title_similarity(person.get("name"), name) * 0.8
                + min(float(person.get("popularity") or 0.0), 10.0) / 10.0 * 0.2,
            )
            for person in found.value
            if parse_int(person.get("id")) is not None
        ]
        decision = pick_clear_winner(
            scored,
            threshold=self.thresholds.person_min_confidence,
            gap=self.thresholds.clear_winner_gap,
        )
        if not decision.ok:
            return None
        details = await self.tmdb.get_person(int(decision.matched["id"]))
        person = dict(details.value) if details.ok else dict(decision.matched)
        person_imdb = person.get("imdb_id") or (person.get("external_ids") or {}).get("imdb_id")
        if imdb_ids and person_imdb and person_imdb not in imdb_ids:
            LOGGER.info(
                "[Match] TMDb person '%s' has imdb_id %s, nominee has %s; rejected.",
                person.get("name"),
                person_imdb,
                list(imdb_ids),
            )
            return None
        person["imdb_id"] = person_imdb
        return self.db.upsert_person(person)
