from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .common import parse_float, parse_int


MOVIE_CRITERIA = ("has_poster", "has_votes", "has_popularity", "has_release_date")


@dataclass
class QualityDecision:
    full_import: bool
    met: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def import_status(self) -> str:
        return "full" if self.full_import else "soft"


class QualityFilter:
    def __init__(self, config: Dict[str, Any]):
        self.min_criteria = int(config["min_criteria"])
        self.min_vote_count = int(config["min_vote_count"])
        self.min_popularity = float(config["min_popularity"])
        self.person_min_popularity = float(config["person_min_popularity"])
        self.key_departments = set(config["key_departments"])

    def _movie_checks(self, movie: Dict[str, Any]) -> Dict[str, bool]:
        return {
            "has_poster": bool(movie.get("poster_path")),
            "has_votes": (parse_int(movie.get("vote_count")) or 0) >= self.min_vote_count,
            "has_popularity": (parse_float(movie.get("popularity")) or 0.0) >= self.min_popularity,
            "has_release_date": bool(movie.get("release_date")),
        }

    def evaluate_movie(self, movie: Dict[str, Any]) -> QualityDecision:
        checks = self._movie_checks(movie)
        met = [name for name in MOVIE_CRITERIA if checks[name]]
        failed = [name for name in MOVIE_CRITERIA if not checks[name]]
        return QualityDecision(full_import=len(met) >= self.min_criteria, met=met, failed=failed)

    def should_import_person(self, person: Dict[str, Any]) -> bool:
        has_profile = bool(person.get("profile_path"))
        has_popularity = (parse_float(person.get("popularity")) or 0.0) >= self.person_min_popularity
        if (person.get("known_for_department") or "Unknown") in self.key_departments:
            return has_profile or has_popularity
        return has_profile and has_popularity
