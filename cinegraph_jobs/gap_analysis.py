from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from .common import LOGGER, now_epoch
from .database import LocalDatabase
from .progress import ProgressState
from .sources import ExportClient, ExportEntry, ExportSnapshot
from .transport import ErrorKind, SourceError, SourceResult


BASELINE_UPDATED_AT = "gap_baseline_updated_at"
BASELINE_EXPORT_DATE = "gap_baseline_export_date"
BASELINE_TOTAL = "gap_baseline_total"
LAST_MISSING_COUNT = "gap_last_missing_count"

SORT_ORDERS = ("popularity", "id")

POPULARITY_TIERS = (
    ("100+", 100.0, None),
    ("50-100", 50.0, 100.0),
    ("10-50", 10.0, 50.0),
    ("1-10", 1.0, 10.0),
    ("<1", None, 1.0),
)


@dataclass
class MissingMovie:
    id: int
    popularity: Optional[float]
    title: str


@dataclass
class GapResult:
    missing: List[MissingMovie] = field(default_factory=list)
    error: Optional[SourceError] = None
    universe_total: int = 0
    local_total: int = 0
    missing_total: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


def _sort_key_popularity(entry: ExportEntry):
    # Null popularity sorts after every real value; ties by ascending id.
    if entry.popularity is None:
        return (1, 0.0, entry.id)
    return (0, -entry.popularity, entry.id)


def compute_missing(
    universe: Iterable[ExportEntry],
    known_ids: Set[int],
    *,
    min_popularity: Optional[float] = None,
    limit: Optional[int] = None,
    sort_by: str = "popularity",
) -> List[MissingMovie]:
    """Entries of ``universe`` whose id is not in ``known_ids``.

    With ``min_popularity`` set, entries without a popularity are excluded.
    """
    if sort_by not in SORT_ORDERS:
        raise ValueError(f"unsupported sort order {sort_by!r}")
    seen: Set[int] = set()
    candidates: List[ExportEntry] = []
    for entry in universe:
        if entry.id in known_ids or entry.id in seen:
            continue
        if min_popularity is not None and (entry.popularity is None or entry.popularity < min_popularity):
            continue
        seen.add(entry.id)
        candidates.append(entry)

    if sort_by == "popularity":
        candidates.sort(key=_sort_key_popularity)
    else:
        candidates.sort(key=lambda entry: entry.id)
    if limit is not None:
        candidates = candidates[: max(0, int(limit))]
    return [MissingMovie(id=e.id, popularity=e.popularity, title=e.title) for e in candidates]


class GapAnalyzer:
    def __init__(
        self,
        *,
        db: LocalDatabase,
        progress: ProgressState,
        export_client: ExportClient,
        refresh_hours: int = 24,
    ):
        self.db = db
        self.progress = progress
        self.export_client = export_client
        self.refresh_seconds = max(1, int(refresh_hours)) * 3600
        self._snapshot: Optional[ExportSnapshot] = None
        self._lock = asyncio.Lock()

    def baseline_age_seconds(self) -> Optional[int]:
        updated_at = self.progress.get_int(BASELINE_UPDATED_AT, 0)
        if updated_at <= 0:
            return None
        return max(0, now_epoch() - updated_at)

    def baseline_is_fresh(self) -> bool:
        age = self.baseline_age_seconds()
        return age is not None and age < self.refresh_seconds

    async def maybe_update_baseline(self, force: bool = False) -> SourceResult[ExportSnapshot]:
        """Return the export universe, downloading it at most once per refresh window."""
        async with self._lock:
            fresh = self.baseline_is_fresh() and not force
            if fresh and self._snapshot is not None:
                return SourceResult.success(self._snapshot)

            if fresh:
                export_date = self.progress.get(BASELINE_EXPORT_DATE)
                if export_date:
                    cached = await self.export_client.load_cached(export_date)
                    if cached.ok:
                        self._snapshot = cached.value
                        return cached

            result = await self.export_client.fetch_latest()
            if not result.ok:
                LOGGER.warning("[Gap] Export unavailable: %s", result.error)
                if self._snapshot is not None:
                    LOGGER.info("[Gap] Using previous baseline from %s.", self._snapshot.export_date)
                    return SourceResult.success(self._snapshot)
                return result

            self._snapshot = result.value
            self.progress.set_many(
                {
                    BASELINE_UPDATED_AT: now_epoch(),
                    BASELINE_EXPORT_DATE: self._snapshot.export_date,
                    BASELINE_TOTAL: len(self._snapshot.entries),
                }
            )
            return result

    async def find_missing_ids(
        self,
        min_popularity: Optional[float] = None,
        limit: Optional[int] = None,
        sort_by: str = "popularity",
    ) -> GapResult:
        if sort_by not in SORT_ORDERS:
            return GapResult(error=SourceError(ErrorKind.INVALID, f"unsupported sort order {sort_by!r}"))

        baseline = await self.maybe_update_baseline()
        if not baseline.ok:
            return GapResult(error=baseline.error)
        try:
            known = self.db.known_tmdb_ids()
            unreachable = self.db.unreachable_tmdb_ids()
        except sqlite3.Error as exc:
            return GapResult(error=SourceError(ErrorKind.TRANSIENT, f"local id query failed: {exc}"))

        entries = baseline.value.entries
        missing_all = await asyncio.to_thread(
            compute_missing,
            entries,
            known | unreachable,
            min_popularity=min_popularity,
            sort_by=sort_by,
        )
        self.progress.set(LAST_MISSING_COUNT, len(missing_all))
        missing = missing_all if limit is None else missing_all[: max(0, int(limit))]
        return GapResult(
            missing=missing,
            universe_total=len(entries),
            local_total=len(known),
            missing_total=len(missing_all),
        )

    async def analyze(self) -> Dict[str, Any]:
        baseline = await self.maybe_update_baseline()
        if not baseline.ok:
            return {"error": str(baseline.error)}
        entries = baseline.value.entries
        known = self.db.known_tmdb_ids()
        return await asyncio.to_thread(build_report, entries, known, baseline.value.export_date)

    def export_stats(self) -> Dict[str, Any]:
        return {
            "export_date": self.progress.get(BASELINE_EXPORT_DATE),
            "export_total": self.progress.get_int(BASELINE_TOTAL, 0),
            "updated_at": self.progress.get_int(BASELINE_UPDATED_AT, 0) or None,
            "fresh": self.baseline_is_fresh(),
            "last_missing_count": self.progress.get_int(LAST_MISSING_COUNT, 0),
            "in_memory": self._snapshot is not None,
        }


def build_report(entries: List[ExportEntry], known: Set[int], export_date: str) -> Dict[str, Any]:
    export_ids = {entry.id for entry in entries}
    missing = [entry for entry in entries if entry.id not in known]
    extra = len(known - export_ids)
    tiers: Dict[str, int] = {name: 0 for name, _, _ in POPULARITY_TIERS}
    tiers["unknown"] = 0
    for entry in missing:
        tiers[_tier_for(entry.popularity)] += 1

    export_total = len(export_ids)
    covered = export_total - len({entry.id for entry in missing})
    coverage = round(100.0 * covered / export_total, 2) if export_total else 100.0

    recommendations: List[str] = []
    if tiers["100+"] or tiers["50-100"]:
        recommendations.append(
            f"Import the {tiers['100+'] + tiers['50-100']} popular missing movies first (popularity >= 50)."
        )
    if tiers["10-50"] + tiers["1-10"] > 0:
        recommendations.append(
            f"Run continuous backfill with min_popularity 1.0 to cover {tiers['10-50'] + tiers['1-10']} mid-tier movies."
        )
    if extra:
        recommendations.append(f"{extra} local movies are absent from the export (deleted or adult/video).")
    if not missing:
        recommendations.append("Local store covers the full export.")

    return {
        "export_date": export_date,
        "export_total": export_total,
        "local_total": len(known),
        "missing_count": len(missing),
        "extra": extra,
        "coverage_percent": coverage,
        "tiers": tiers,
        "recommendations": recommendations,
    }


def _tier_for(popularity: Optional[float]) -> str:
    if popularity is None:
        return "unknown"
    for name, low, high in POPULARITY_TIERS:
        if (low is None or popularity >= low) and (high is None or popularity < high):
            return name
    return "unknown"
