"""Typed job arguments.

Every worker's ``args`` payload decodes once, at the queue boundary, into one
of the dataclasses below. Workers with several actions use a tagged union
keyed by the ``action`` field.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Type, Union

from .common import parse_float, parse_int


class JobArgsError(ValueError):
    """Job arguments are malformed; the job can never succeed."""


def _req_int(args: Dict[str, Any], key: str) -> int:
    value = parse_int(args.get(key))
    if value is None:
        raise JobArgsError(f"missing or non-integer '{key}'")
    return value


def _opt_int(args: Dict[str, Any], key: str) -> Optional[int]:
    if args.get(key) is None:
        return None
    value = parse_int(args.get(key))
    if value is None:
        raise JobArgsError(f"non-integer '{key}'")
    return value


def _opt_float(args: Dict[str, Any], key: str) -> Optional[float]:
    if args.get(key) is None:
        return None
    value = parse_float(args.get(key))
    if value is None:
        raise JobArgsError(f"non-numeric '{key}'")
    return value


def _req_str(args: Dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise JobArgsError(f"missing or empty '{key}'")
    return value.strip()


def _opt_str(args: Dict[str, Any], key: str) -> Optional[str]:
    value = args.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise JobArgsError(f"non-string '{key}'")
    return value.strip() or None


def _opt_dict(args: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = args.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise JobArgsError(f"'{key}' must be an object")
    return dict(value)


def _drop_none(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


def _decode_union(worker: str, variants: Dict[str, Type[Any]], args: Dict[str, Any]) -> Any:
    action = args.get("action")
    variant = variants.get(action)
    if variant is None:
        raise JobArgsError(f"{worker}: unknown action {action!r}")
    return variant.from_args(args)


# -- fetch workers -----------------------------------------------------------------

SOURCE_TAGS = {
    "continuous_backfill",
    "scheduled_backfill",
    "canonical_import",
    "festival_import",
    "year_import",
    "manual",
}


@dataclass
class MovieDetailsArgs:
    tmdb_id: Optional[int] = None
    imdb_id: Optional[str] = None
    source: str = "manual"
    popularity: Optional[float] = None
    year: Optional[int] = None
    canonical_sources: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    fuzzy_matched: bool = False

    def to_args(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "tmdb_id": self.tmdb_id,
                "imdb_id": self.imdb_id,
                "source": self.source,
                "popularity": self.popularity,
                "year": self.year,
                "canonical_sources": self.canonical_sources or None,
                "metadata": self.metadata or None,
                "fuzzy_matched": True if self.fuzzy_matched else None,
            }
        )

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "MovieDetailsArgs":
        tmdb_id = _opt_int(args, "tmdb_id")
        imdb_id = _opt_str(args, "imdb_id")
        if tmdb_id is None and imdb_id is None:
            raise JobArgsError("movie_details needs tmdb_id or imdb_id")
        source = _opt_str(args, "source") or "manual"
        if source not in SOURCE_TAGS:
            raise JobArgsError(f"unknown source tag {source!r}")
        canonical = _opt_dict(args, "canonical_sources")
        for key, value in canonical.items():
            if not isinstance(value, dict):
                raise JobArgsError(f"canonical_sources.{key} must be an object")
        return cls(
            tmdb_id=tmdb_id,
            imdb_id=imdb_id,
            source=source,
            popularity=_opt_float(args, "popularity"),
            year=_opt_int(args, "year"),
            canonical_sources=canonical,
            metadata=_opt_dict(args, "metadata"),
            fuzzy_matched=bool(args.get("fuzzy_matched", False)),
        )


@dataclass
class OmdbArgs:
    movie_id: int
    imdb_id: str

    def to_args(self) -> Dict[str, Any]:
        return {"movie_id": self.movie_id, "imdb_id": self.imdb_id}

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "OmdbArgs":
        return cls(movie_id=_req_int(args, "movie_id"), imdb_id=_req_str(args, "imdb_id"))


@dataclass
class CollaborationArgs:
    movie_count: int = 0

    def to_args(self) -> Dict[str, Any]:
        return {"movie_count": self.movie_count}

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "CollaborationArgs":
        return cls(movie_count=_opt_int(args, "movie_count") or 0)


# -- canonical list triad -----------------------------------------------------------

@dataclass
class CanonicalImportArgs:
    list_key: str

    def to_args(self) -> Dict[str, Any]:
        return {"list_key": self.list_key}

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "CanonicalImportArgs":
        return cls(list_key=_req_str(args, "list_key"))


@dataclass
class CanonicalPageArgs:
    list_key: str
    list_id: str
    page: int
    total_pages: int
    import_id: int

    def to_args(self) -> Dict[str, Any]:
        return {
            "list_key": self.list_key,
            "list_id": self.list_id,
            "page": self.page,
            "total_pages": self.total_pages,
            "import_id": self.import_id,
        }

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "CanonicalPageArgs":
        page = _req_int(args, "page")
        total_pages = _req_int(args, "total_pages")
        if page < 1 or page > total_pages:
            raise JobArgsError(f"page {page} outside 1..{total_pages}")
        return cls(
            list_key=_req_str(args, "list_key"),
            list_id=_req_str(args, "list_id"),
            page=page,
            total_pages=total_pages,
            import_id=_req_int(args, "import_id"),
        )


@dataclass
class CanonicalCompletionArgs:
    list_key: str
    total_pages: int
    import_id: int
    expected_count: Optional[int] = None

    def to_args(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "list_key": self.list_key,
                "total_pages": self.total_pages,
                "import_id": self.import_id,
                "expected_count": self.expected_count,
            }
        )

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "CanonicalCompletionArgs":
        return cls(
            list_key=_req_str(args, "list_key"),
            total_pages=_req_int(args, "total_pages"),
            import_id=_req_int(args, "import_id"),
            expected_count=_opt_int(args, "expected_count"),
        )


# -- continuous backfill -----------------------------------------------------------

@dataclass
class QueueBatch:
    ACTION: ClassVar[str] = "queue_batch"
    batch_size: int
    min_popularity: Optional[float]
    batch: int

    def to_args(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "action": self.ACTION,
                "batch_size": self.batch_size,
                "min_popularity": self.min_popularity,
                "batch": self.batch,
            }
        )

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "QueueBatch":
        batch_size = _req_int(args, "batch_size")
        if batch_size < 1:
            raise JobArgsError("batch_size must be positive")
        return cls(
            batch_size=batch_size,
            min_popularity=_opt_float(args, "min_popularity"),
            batch=_req_int(args, "batch"),
        )


@dataclass
class CheckCompletion:
    ACTION: ClassVar[str] = "check_completion"
    batch: int

    def to_args(self) -> Dict[str, Any]:
        return {"action": self.ACTION, "batch": self.batch}

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "CheckCompletion":
        return cls(batch=_req_int(args, "batch"))


BackfillArgs = Union[QueueBatch, CheckCompletion]


def decode_backfill_args(args: Dict[str, Any]) -> BackfillArgs:
    return _decode_union(
        "continuous_backfill",
        {QueueBatch.ACTION: QueueBatch, CheckCompletion.ACTION: CheckCompletion},
        args,
    )


@dataclass
class ScheduledBackfillArgs:
    batch_size: Optional[int] = None
    min_popularity: Optional[float] = None

    def to_args(self) -> Dict[str, Any]:
        return _drop_none({"batch_size": self.batch_size, "min_popularity": self.min_popularity})

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "ScheduledBackfillArgs":
        return cls(
            batch_size=_opt_int(args, "batch_size"),
            min_popularity=_opt_float(args, "min_popularity"),
        )


# -- year import -------------------------------------------------------------------

@dataclass
class YearImportArgs:
    year: Optional[int] = None

    def to_args(self) -> Dict[str, Any]:
        return _drop_none({"year": self.year})

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "YearImportArgs":
        return cls(year=_opt_int(args, "year"))


@dataclass
class YearDiscoveryArgs:
    year: int
    page: int

    def to_args(self) -> Dict[str, Any]:
        return {"year": self.year, "page": self.page, "import_type": "year_import"}

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "YearDiscoveryArgs":
        page = _req_int(args, "page")
        if page < 1:
            raise JobArgsError("page must be >= 1")
        return cls(year=_req_int(args, "year"), page=page)


@dataclass
class YearCompletionArgs:
    year: int
    total_pages: int
    expected_count: int

    def to_args(self) -> Dict[str, Any]:
        return {
            "year": self.year,
            "total_pages": self.total_pages,
            "expected_count": self.expected_count,
        }

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "YearCompletionArgs":
        return cls(
            year=_req_int(args, "year"),
            total_pages=_req_int(args, "total_pages"),
            expected_count=_opt_int(args, "expected_count") or 0,
        )


# -- awards and festivals ------------------------------------------------------------

@dataclass
class ImportYear:
    ACTION: ClassVar[str] = "import_year"
    organization_id: int
    year: int

    def to_args(self) -> Dict[str, Any]:
        return {"action": self.ACTION, "organization_id": self.organization_id, "year": self.year}

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "ImportYear":
        return cls(organization_id=_req_int(args, "organization_id"), year=_req_int(args, "year"))


@dataclass
class SyncMissing:
    ACTION: ClassVar[str] = "sync_missing"
    organization_id: int

    def to_args(self) -> Dict[str, Any]:
        return {"action": self.ACTION, "organization_id": self.organization_id}

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "SyncMissing":
        return cls(organization_id=_req_int(args, "organization_id"))


@dataclass
class ResyncAll:
    ACTION: ClassVar[str] = "resync_all"
    organization_id: int

    def to_args(self) -> Dict[str, Any]:
        return {"action": self.ACTION, "organization_id": self.organization_id}

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "ResyncAll":
        return cls(organization_id=_req_int(args, "organization_id"))


@dataclass
class ResyncRecent:
    ACTION: ClassVar[str] = "resync_recent"
    organization_id: int
    years: int = 5

    def to_args(self) -> Dict[str, Any]:
        return {"action": self.ACTION, "organization_id": self.organization_id, "years": self.years}

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "ResyncRecent":
        years = _opt_int(args, "years")
        if years is not None and years < 1:
            raise JobArgsError("years must be >= 1")
        return cls(organization_id=_req_int(args, "organization_id"), years=years or 5)


AwardImportArgs = Union[ImportYear, SyncMissing, ResyncAll, ResyncRecent]


def decode_award_args(args: Dict[str, Any]) -> AwardImportArgs:
    return _decode_union(
        "award_import",
        {
            ImportYear.ACTION: ImportYear,
            SyncMissing.ACTION: SyncMissing,
            ResyncAll.ACTION: ResyncAll,
            ResyncRecent.ACTION: ResyncRecent,
        },
        args,
    )


@dataclass
class FestivalSingleYear:
    ACTION: ClassVar[str] = "single_year"
    festival: str
    year: int

    def to_args(self) -> Dict[str, Any]:
        return {"action": self.ACTION, "festival": self.festival, "year": self.year}

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "FestivalSingleYear":
        return cls(festival=_req_str(args, "festival"), year=_req_int(args, "year"))


@dataclass
class FestivalMultiYear:
    ACTION: ClassVar[str] = "multi_year"
    festival: str
    years: List[int]
    max_concurrency: Optional[int] = None

    def to_args(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "action": self.ACTION,
                "festival": self.festival,
                "years": list(self.years),
                "max_concurrency": self.max_concurrency,
            }
        )

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "FestivalMultiYear":
        raw_years = args.get("years")
        if not isinstance(raw_years, list) or not raw_years:
            raise JobArgsError("years must be a non-empty list")
        years: List[int] = []
        for raw in raw_years:
            year = parse_int(raw)
            if year is None:
                raise JobArgsError(f"non-integer year {raw!r}")
            years.append(year)
        return cls(
            festival=_req_str(args, "festival"),
            years=years,
            max_concurrency=_opt_int(args, "max_concurrency"),
        )


FestivalImportArgs = Union[FestivalSingleYear, FestivalMultiYear]


def decode_festival_args(args: Dict[str, Any]) -> FestivalImportArgs:
    return _decode_union(
        "festival_import",
        {FestivalSingleYear.ACTION: FestivalSingleYear, FestivalMultiYear.ACTION: FestivalMultiYear},
        args,
    )


@dataclass
class FestivalDiscoveryArgs:
    ceremony_id: int

    def to_args(self) -> Dict[str, Any]:
        return {"ceremony_id": self.ceremony_id}

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "FestivalDiscoveryArgs":
        return cls(ceremony_id=_req_int(args, "ceremony_id"))


@dataclass
class FestivalPersonInferenceArgs:
    ceremony_id: int

    def to_args(self) -> Dict[str, Any]:
        return {"ceremony_id": self.ceremony_id}

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "FestivalPersonInferenceArgs":
        return cls(ceremony_id=_req_int(args, "ceremony_id"))
