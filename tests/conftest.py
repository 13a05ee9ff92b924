"""Shared fixtures: a temp-file store, a controllable clock and fake upstream sources."""
from typing import Any, Dict, List, Optional, Set

import pytest

from cinegraph_jobs.common import merge_dict
from cinegraph_jobs.config import DEFAULT_CONFIG, validate_config
from cinegraph_jobs.database import LocalDatabase
from cinegraph_jobs.gap_analysis import GapAnalyzer
from cinegraph_jobs.jobqueue import JobQueue
from cinegraph_jobs.notifications import NotificationSink
from cinegraph_jobs.progress import ProgressState
from cinegraph_jobs.quality import QualityFilter
from cinegraph_jobs.reconciliation import MatchThresholds, MovieMatcher, PersonResolver
from cinegraph_jobs.runner import JobRunner
from cinegraph_jobs.sources import ExportEntry, ExportSnapshot
from cinegraph_jobs.transport import ErrorKind, SourceResult
from cinegraph_jobs.workers import WorkerContext


class FakeClock:
    def __init__(self, start: int = 1_700_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += int(seconds)


def movie_payload(tmdb_id: int, **overrides: Any) -> Dict[str, Any]:
    payload = {
        "id": tmdb_id,
        "title": f"Movie {tmdb_id}",
        "release_date": "2020-05-01",
        "popularity": 5.0,
        "vote_count": 120,
        "vote_average": 7.1,
        "poster_path": f"/poster{tmdb_id}.jpg",
        "imdb_id": f"tt{tmdb_id:07d}",
    }
    payload.update(overrides)
    return payload


class FakeTMDB:
    """Serves movies from an in-memory catalogue; ids in ``missing`` return 404."""

    def __init__(self):
        self.movies: Dict[int, Dict[str, Any]] = {}
        self.missing: Set[int] = set()
        self.search_results: Dict[str, List[Dict[str, Any]]] = {}
        self.discover_pages: Dict[int, Dict[str, Any]] = {}
        self.people: Dict[int, Dict[str, Any]] = {}
        self.people_search: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: List[str] = []

    def add_movie(self, tmdb_id: int, **overrides: Any) -> Dict[str, Any]:
        self.movies[tmdb_id] = movie_payload(tmdb_id, **overrides)
        return self.movies[tmdb_id]

    async def get_movie(self, tmdb_id: int):
        self.calls.append(f"get_movie:{tmdb_id}")
        if tmdb_id in self.missing:
            return SourceResult.failure(ErrorKind.NOT_FOUND, "The resource you requested could not be found.", 404)
        if tmdb_id not in self.movies:
            self.add_movie(tmdb_id)
        return SourceResult.success(dict(self.movies[tmdb_id]))

    async def find_by_imdb_id(self, imdb_id: str):
        self.calls.append(f"find:{imdb_id}")
        for movie in self.movies.values():
            if movie.get("imdb_id") == imdb_id:
                return SourceResult.success({"movie_results": [{"id": movie["id"]}], "person_results": []})
        return SourceResult.success({"movie_results": [], "person_results": []})

    async def search_movies(self, query: str, year: Optional[int] = None):
        self.calls.append(f"search:{query}")
        return SourceResult.success(list(self.search_results.get(query, [])))

    async def discover_year(self, year: int, page: int = 1):
        self.calls.append(f"discover:{year}:{page}")
        return SourceResult.success(self.discover_pages.get(page, {"results": [], "total_pages": 0, "total_results": 0}))

    async def get_person(self, tmdb_id: int):
        self.calls.append(f"get_person:{tmdb_id}")
        if tmdb_id in self.people:
            return SourceResult.success(dict(self.people[tmdb_id]))
        return SourceResult.failure(ErrorKind.NOT_FOUND, "person not found", 404)

    async def search_people(self, name: str):
        self.calls.append(f"search_people:{name}")
        return SourceResult.success(list(self.people_search.get(name, [])))


class FakeOMDb:
    enabled = False

    async def get_by_imdb_id(self, imdb_id: str):
        return SourceResult.failure(ErrorKind.NOT_FOUND, "Movie not found!")


class FakeIMDb:
    def __init__(self):
        self.list_pages: Dict[int, str] = {}
        self.event_pages: Dict[int, str] = {}
        self.event_errors: Dict[int, SourceResult] = {}
        self.fetched: List[str] = []

    def event_url(self, event_id: str, year: int) -> str:
        return f"https://www.imdb.com/event/{event_id}/{int(year)}/1/"

    async def fetch_list_page(self, list_id: str, page: int = 1):
        self.fetched.append(f"{list_id}:{page}")
        if page not in self.list_pages:
            return SourceResult.failure(ErrorKind.NOT_FOUND, "no such page", 404)
        return SourceResult.success(self.list_pages[page])

    async def fetch_event_page(self, event_id: str, year: int):
        self.fetched.append(f"{event_id}:{year}")
        if year in self.event_errors:
            return self.event_errors[year]
        if year not in self.event_pages:
            return SourceResult.failure(ErrorKind.NOT_FOUND, "", 404)
        return SourceResult.success(self.event_pages[year])


class FakeExportClient:
    def __init__(self, entries: Optional[List[ExportEntry]] = None):
        self.entries = list(entries or [])
        self.fetch_calls = 0
        self.fail_with: Optional[SourceResult] = None

    async def fetch_latest(self, today=None):
        self.fetch_calls += 1
        if self.fail_with is not None:
            return self.fail_with
        return SourceResult.success(ExportSnapshot(export_date="2026-10-18", entries=list(self.entries)))

    async def load_cached(self, export_date: str):
        return await self.fetch_latest()


@pytest.fixture
def config(tmp_path):
    raw = merge_dict(
        DEFAULT_CONFIG,
        {
            "api_keys": {"tmdb": "test-key"},
            "runtime": {
                "database_path": str(tmp_path / "jobs.sqlite3"),
                "log_file_path": str(tmp_path / "logs" / "jobs.log"),
                "console_mode": "raw",
            },
            "export": {"cache_dir": str(tmp_path / "exports")},
            "canonical": {
                "page_size": 2,
                "lists": {"test_list": {"list_id": "ls000000001", "name": "Test List"}},
            },
        },
    )
    return validate_config(raw)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(config):
    store = LocalDatabase(config["runtime"]["database_path"])
    yield store
    store.close()


@pytest.fixture
def queue(db, clock):
    return JobQueue(db.conn, clock=clock, retry_base_seconds=15, retry_max_seconds=3600)


@pytest.fixture
def progress(db):
    return ProgressState(db)


@pytest.fixture
def tmdb():
    return FakeTMDB()


@pytest.fixture
def imdb():
    return FakeIMDb()


@pytest.fixture
def export_client():
    return FakeExportClient()


@pytest.fixture
def notifications():
    return NotificationSink()


@pytest.fixture
def ctx(config, db, queue, progress, tmdb, imdb, export_client, notifications):
    db.sync_movie_lists(config["canonical"]["lists"])
    db.sync_festival_organizations(config["festivals"]["events"])
    thresholds = MatchThresholds.from_config(config["matching"])
    return WorkerContext(
        config=config,
        db=db,
        queue=queue,
        progress=progress,
        notifications=notifications,
        tmdb=tmdb,
        omdb=FakeOMDb(),
        imdb=imdb,
        gap=GapAnalyzer(db=db, progress=progress, export_client=export_client, refresh_hours=24),
        quality=QualityFilter(config["quality"]),
        matcher=MovieMatcher(db=db, tmdb=tmdb, thresholds=thresholds),
        people=PersonResolver(db=db, tmdb=tmdb, thresholds=thresholds),
    )


@pytest.fixture
def runner(ctx):
    return JobRunner(ctx=ctx)


@pytest.fixture
def captured(notifications):
    """Every published notification, in order."""
    events = []
    notifications.subscribe("*", events.append)
    return events
