from __future__ import annotations

import asyncio
import datetime as dt
import gzip
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from bs4 import BeautifulSoup

from .common import LOGGER, parse_float, parse_int
from .transport import (
    APIResponse,
    ErrorKind,
    HTTPClient,
    ServiceGate,
    SourceResult,
    classify_response,
)


IMDB_TITLE_ID = re.compile(r"tt\d+")
IMDB_NAME_ID = re.compile(r"nm\d+")
LIST_TOTAL_PATTERNS = (
    re.compile(r"([\d,]+)\s+titles?", re.IGNORECASE),
    re.compile(r"of\s+([\d,]+)", re.IGNORECASE),
)
LEADING_RANK = re.compile(r"^\s*\d+\.\s*")
PAREN_YEAR = re.compile(r"\((\d{4})\)")
BARE_YEAR = re.compile(r"\b(\d{4})\b")
DEFAULT_FESTIVAL_CATEGORY = "festival_award"


def _result_from_response(response: APIResponse) -> Optional[SourceResult]:
    error = classify_response(response)
    if error is None:
        return None
    return SourceResult(error=error)


# -- TMDb ---------------------------------------------------------------------------

class TMDBClient:
    def __init__(
        self,
        *,
        api_key: str,
        config: Dict[str, Any],
        gate: ServiceGate,
    ):
        self.api_key = api_key
        self.base_url = str(config["base_url"]).rstrip("/")
        self.language = str(config.get("language") or "en-US")
        self.gate = gate
        self.http = HTTPClient(timeout_seconds=int(config["timeout_seconds"]))

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> SourceResult[Dict[str, Any]]:
        query = {"api_key": self.api_key, "language": self.language}
        query.update(params or {})
        response = await self.http.request_json(
            method="GET",
            url=f"{self.base_url}{path}",
            params=query,
            gate=self.gate,
        )
        failed = _result_from_response(response)
        if failed is not None:
            return failed
        if not isinstance(response.data, dict):
            return SourceResult.failure(ErrorKind.INVALID, f"non-object body from {path}", response.status)
        return SourceResult.success(response.data)

    async def get_movie(self, tmdb_id: int) -> SourceResult[Dict[str, Any]]:
        return await self._get(
            f"/movie/{int(tmdb_id)}",
            {"append_to_response": "credits,external_ids,keywords,release_dates"},
        )

    async def find_by_imdb_id(self, imdb_id: str) -> SourceResult[Dict[str, Any]]:
        return await self._get(f"/find/{imdb_id}", {"external_source": "imdb_id"})

    async def search_movies(self, query: str, year: Optional[int] = None) -> SourceResult[List[Dict[str, Any]]]:
        params: Dict[str, Any] = {"query": query, "include_adult": "false"}
        if year is not None:
            params["year"] = int(year)
        result = await self._get("/search/movie", params)
        if not result.ok:
            return SourceResult(error=result.error)
        return SourceResult.success(list(result.value.get("results") or []))

    async def discover_year(self, year: int, page: int = 1) -> SourceResult[Dict[str, Any]]:
        return await self._get(
            "/discover/movie",
            {
                "primary_release_year": int(year),
                "sort_by": "popularity.desc",
                "include_adult": "false",
                "page": int(page),
            },
        )

    async def get_person(self, tmdb_id: int) -> SourceResult[Dict[str, Any]]:
        return await self._get(f"/person/{int(tmdb_id)}", {"append_to_response": "external_ids"})

    async def search_people(self, name: str) -> SourceResult[List[Dict[str, Any]]]:
        result = await self._get("/search/person", {"query": name, "include_adult": "false"})
        if not result.ok:
            return SourceResult(error=result.error)
        return SourceResult.success(list(result.value.get("results") or []))


# -- OMDb ---------------------------------------------------------------------------

class OMDbClient:
    def __init__(self, *, api_key: str, config: Dict[str, Any], gate: ServiceGate):
        self.api_key = api_key
        self.base_url = str(config["base_url"])
        self.gate = gate
        self.http = HTTPClient(timeout_seconds=int(config["timeout_seconds"]))

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def get_by_imdb_id(self, imdb_id: str) -> SourceResult[Dict[str, Any]]:
        response = await self.http.request_json(
            method="GET",
            url=self.base_url,
            params={"i": imdb_id, "plot": "full", "tomatoes": "true", "apikey": self.api_key},
            gate=self.gate,
        )
        failed = _result_from_response(response)
        if failed is not None:
            return failed
        data = response.data if isinstance(response.data, dict) else {}
        if str(data.get("Response", "")).lower() == "false":
            message = str(data.get("Error") or "unknown error")
            lowered = message.lower()
            if "limit" in lowered:
                return SourceResult.failure(ErrorKind.RATE_LIMITED, message, response.status)
            if "not found" in lowered or "incorrect imdb" in lowered:
                return SourceResult.failure(ErrorKind.NOT_FOUND, message, response.status)
            return SourceResult.failure(ErrorKind.INVALID, message, response.status)
        return SourceResult.success(data)


# -- IMDb pages ---------------------------------------------------------------------

@dataclass
class ListEntry:
    imdb_id: str
    title: str
    year: Optional[int]
    position: int


@dataclass
class FestivalPage:
    awards: Dict[str, List[Dict[str, Any]]]
    parser: str

    @property
    def nomination_count(self) -> int:
        return sum(len(entries) for entries in self.awards.values())


class IMDbClient:
    def __init__(self, *, config: Dict[str, Any], gate: ServiceGate):
        self.base_url = str(config["base_url"]).rstrip("/")
        self.gate = gate
        self.http = HTTPClient(
            timeout_seconds=int(config["timeout_seconds"]),
            user_agent=str(config.get("user_agent") or ""),
        )

    def list_url(self, list_id: str, page: int = 1) -> str:
        url = f"{self.base_url}/list/{list_id}/"
        if page > 1:
            url += f"?page={int(page)}"
        return url

    def event_url(self, event_id: str, year: int) -> str:
        return f"{self.base_url}/event/{event_id}/{int(year)}/1/"

    async def _fetch_html(self, url: str) -> SourceResult[str]:
        response = await self.http.request_json(
            method="GET",
            url=url,
            headers={"Accept-Language": "en-US,en;q=0.9", "Accept": "text/html"},
            gate=self.gate,
        )
        failed = _result_from_response(response)
        if failed is not None:
            return failed
        return SourceResult.success(response.text)

    async def fetch_list_page(self, list_id: str, page: int = 1) -> SourceResult[str]:
        return await self._fetch_html(self.list_url(list_id, page))

    async def fetch_event_page(self, event_id: str, year: int) -> SourceResult[str]:
        return await self._fetch_html(self.event_url(event_id, year))


def parse_list_total(html: str) -> Optional[int]:
    soup = BeautifulSoup(html, "html.parser")
    candidates = soup.select(
        "[data-testid='list-page-mc-total-items'] .ipc-inline-list__item"
    ) or soup.select("[data-testid='list-page-mc-total-items']")
    texts = [node.get_text(" ", strip=True) for node in candidates]
    desc = soup.select_one(".desc, .lister-total-num-results")
    if desc is not None:
        texts.append(desc.get_text(" ", strip=True))
    for text in texts:
        for pattern in LIST_TOTAL_PATTERNS:
            match = pattern.search(text)
            if match:
                total = parse_int(match.group(1).replace(",", ""))
                if total is not None:
                    return total
    return None


def total_pages_for(total_items: int, page_size: int) -> int:
    if total_items <= 0:
        return 0
    return (total_items - 1) // max(1, page_size) + 1


def parse_list_entries(html: str, page: int = 1, page_size: int = 250) -> List[ListEntry]:
    soup = BeautifulSoup(html, "html.parser")
    items = (
        soup.select(".lister-item")
        or soup.select(".ipc-metadata-list-summary-item")
        or soup.select("li.ipc-metadata-list-summary-item, div.list-item")
    )
    entries: List[ListEntry] = []
    seen = set()
    for index, item in enumerate(items, start=1):
        link = item.select_one("a[href*='/title/tt']")
        if link is None:
            continue
        match = IMDB_TITLE_ID.search(link.get("href") or "")
        if not match or match.group(0) in seen:
            continue
        imdb_id = match.group(0)
        seen.add(imdb_id)

        heading = item.select_one("h3, .ipc-title__text, .lister-item-header a")
        title_text = (heading or link).get_text(" ", strip=True)
        title = LEADING_RANK.sub("", title_text).strip()

        item_text = item.get_text(" ", strip=True)
        year_match = PAREN_YEAR.search(item_text)
        if year_match is None:
            metadata = item.select_one(".dli-title-metadata-item, .lister-item-year")
            year_match = BARE_YEAR.search(metadata.get_text(" ", strip=True) if metadata else item_text)
        year = int(year_match.group(1)) if year_match else None

        entries.append(
            ListEntry(
                imdb_id=imdb_id,
                title=title,
                year=year,
                position=(max(1, page) - 1) * page_size + index,
            )
        )
    return entries


def normalize_category_name(name: str) -> str:
    lowered = re.sub(r"[^a-z0-9\s]", "", str(name or "").lower())
    return " ".join(lowered.split())


def parse_festival_page(html: str) -> FestivalPage:
    """Nominations from an IMDb event page.

    Prefers the embedded ``__NEXT_DATA__`` JSON; falls back to scanning title
    links under a single default category.
    """
    soup = BeautifulSoup(html, "html.parser")
    script = soup.select_one("script#__NEXT_DATA__")
    if script is not None and script.string:
        try:
            next_data = json.loads(script.string)
        except ValueError:
            LOGGER.warning("[IMDb] Could not decode __NEXT_DATA__ JSON; using HTML fallback.")
        else:
            awards = (((next_data.get("props") or {}).get("pageProps") or {}).get("edition") or {}).get("awards")
            if isinstance(awards, list):
                parsed = _parse_next_data_awards(awards)
                if parsed:
                    return FestivalPage(awards=parsed, parser="next_data")

    fallback: List[Dict[str, Any]] = []
    seen = set()
    for link in soup.select("a[href*='/title/tt']"):
        match = IMDB_TITLE_ID.search(link.get("href") or "")
        title = link.get_text(" ", strip=True)
        if not match or not title or match.group(0) in seen:
            continue
        seen.add(match.group(0))
        fallback.append(
            {
                "films": [{"imdb_id": match.group(0), "title": title, "year": None}],
                "people": [],
                "winner": False,
                "notes": None,
            }
        )
    if fallback:
        return FestivalPage(awards={DEFAULT_FESTIVAL_CATEGORY: fallback}, parser="html")
    return FestivalPage(awards={}, parser="empty")


def _parse_next_data_awards(awards: List[Any]) -> Dict[str, List[Dict[str, Any]]]:
    parsed: Dict[str, List[Dict[str, Any]]] = {}
    for award in awards:
        if not isinstance(award, dict):
            continue
        award_text = award.get("text") or "Festival Award"
        for edge in ((award.get("nominationCategories") or {}).get("edges") or []):
            node = (edge or {}).get("node") or {}
            category_name = ((node.get("category") or {}).get("text")) or award_text
            nominations = [
                _parse_nomination_node((nomination_edge or {}).get("node") or {})
                for nomination_edge in ((node.get("nominations") or {}).get("edges") or [])
            ]
            if nominations:
                parsed.setdefault(normalize_category_name(category_name), []).extend(nominations)
    return parsed


def _parse_nomination_node(node: Dict[str, Any]) -> Dict[str, Any]:
    entities = node.get("awardedEntities") or {}
    films = []
    for award_title in (entities.get("awardTitles") or []) + (entities.get("secondaryAwardTitles") or []):
        title = (award_title or {}).get("title") or {}
        if not title.get("id"):
            continue
        films.append(
            {
                "imdb_id": title["id"],
                "title": (title.get("titleText") or {}).get("text"),
                "year": parse_int((title.get("releaseDate") or {}).get("year")),
                "original_title": (title.get("originalTitleText") or {}).get("text"),
            }
        )
    people = []
    for award_name in (entities.get("awardNames") or []) + (entities.get("secondaryAwardNames") or []):
        name = (award_name or {}).get("name") or {}
        if not name.get("id"):
            continue
        people.append({"imdb_id": name["id"], "name": (name.get("nameText") or {}).get("text")})
    return {
        "films": films,
        "people": people,
        "winner": bool(node.get("isWinner")),
        "notes": node.get("notes"),
    }


# -- TMDb daily id export -------------------------------------------------------------

@dataclass
class ExportEntry:
    id: int
    popularity: Optional[float]
    title: str
    adult: bool = False
    video: bool = False


@dataclass
class ExportSnapshot:
    export_date: str
    entries: List[ExportEntry] = field(default_factory=list)
    skipped: int = 0
    malformed: int = 0


def export_file_name(day: dt.date) -> str:
    return f"movie_ids_{day.month:02d}_{day.day:02d}_{day.year}.json.gz"


def parse_export_lines(
    lines: List[str],
    *,
    include_adult: bool = False,
    include_video: bool = False,
) -> Tuple[List[ExportEntry], int, int]:
    """Parse line-delimited export JSON; returns (entries, skipped, malformed)."""
    entries: List[ExportEntry] = []
    skipped = 0
    malformed = 0
    for line in lines:
        stripped = line.strip()
        if not stripped:
            continue
        try:
            record = json.loads(stripped)
        except ValueError:
            malformed += 1
            continue
        movie_id = parse_int(record.get("id")) if isinstance(record, dict) else None
        if movie_id is None:
            malformed += 1
            continue
        adult = bool(record.get("adult", False))
        video = bool(record.get("video", False))
        if (adult and not include_adult) or (video and not include_video):
            skipped += 1
            continue
        entries.append(
            ExportEntry(
                id=movie_id,
                popularity=parse_float(record.get("popularity")),
                title=str(record.get("original_title") or ""),
                adult=adult,
                video=video,
            )
        )
    return entries, skipped, malformed


class ExportClient:
    def __init__(self, *, config: Dict[str, Any]):
        self.base_url = str(config["base_url"]).rstrip("/")
        self.fallback_days = int(config["fallback_days"])
        self.include_adult = bool(config["include_adult"])
        self.include_video = bool(config["include_video"])
        self.cache_dir = Path(str(config["cache_dir"])).expanduser()
        self.http = HTTPClient(timeout_seconds=int(config["timeout_seconds"]))

    async def fetch_latest(self, today: Optional[dt.date] = None) -> SourceResult[ExportSnapshot]:
        """Download the newest available export, walking back up to ``fallback_days``."""
        day = today or dt.datetime.now(dt.timezone.utc).date()
        last_error = None
        for offset in range(self.fallback_days + 1):
            candidate = day - dt.timedelta(days=offset)
            raw = await self._download(candidate)
            if raw.ok:
                snapshot = await asyncio.to_thread(self._parse, candidate, raw.value)
                LOGGER.info(
                    "[Export] Loaded %s ids from %s (skipped=%s malformed=%s).",
                    len(snapshot.entries),
                    snapshot.export_date,
                    snapshot.skipped,
                    snapshot.malformed,
                )
                return SourceResult.success(snapshot)
            last_error = raw.error
            if raw.error.kind not in (ErrorKind.NOT_FOUND, ErrorKind.FORBIDDEN):
                break
            LOGGER.info("[Export] No export for %s (%s); trying an earlier day.", candidate, raw.error)
        return SourceResult(error=last_error)

    async def load_cached(self, export_date: str) -> SourceResult[ExportSnapshot]:
        try:
            day = dt.date.fromisoformat(export_date)
        except ValueError:
            return SourceResult.failure(ErrorKind.INVALID, f"bad export date {export_date!r}")
        cached = self.cache_dir / export_file_name(day)
        if not cached.exists():
            return SourceResult.failure(ErrorKind.NOT_FOUND, f"{cached} is not cached")
        snapshot = await asyncio.to_thread(self._parse, day, cached.read_bytes())
        return SourceResult.success(snapshot)

    async def _download(self, day: dt.date) -> SourceResult[bytes]:
        name = export_file_name(day)
        cached = self.cache_dir / name
        if cached.exists():
            return SourceResult.success(cached.read_bytes())
        response = await self.http.request_json(method="GET", url=f"{self.base_url}/{name}", binary=True)
        failed = _result_from_response(response)
        if failed is not None:
            return failed
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        cached.write_bytes(response.content)
        self._prune_before(day)
        return SourceResult.success(response.content)

    def _prune_before(self, day: dt.date) -> None:
        """Delete cached exports older than ``day``."""
        removed = 0
        for path in self.cache_dir.glob("movie_ids_*.json.gz"):
            try:
                export_day = dt.datetime.strptime(path.name, "movie_ids_%m_%d_%Y.json.gz").date()
            except ValueError:
                continue
            if export_day < day:
                path.unlink(missing_ok=True)
                removed += 1
        if removed:
            LOGGER.info("[Export] Pruned %s cached export(s) older than %s.", removed, day)

    def _parse(self, day: dt.date, raw: bytes) -> ExportSnapshot:
        try:
            text = gzip.decompress(raw).decode("utf-8", errors="replace")
        except (OSError, EOFError):
            text = raw.decode("utf-8", errors="replace")
        entries, skipped, malformed = parse_export_lines(
            text.splitlines(),
            include_adult=self.include_adult,
            include_video=self.include_video,
        )
        return ExportSnapshot(
            export_date=day.isoformat(),
            entries=entries,
            skipped=skipped,
            malformed=malformed,
        )
