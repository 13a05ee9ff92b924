from __future__ import annotations

import asyncio
import re
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..common import LOGGER, current_year, load_json_object, parse_int
from ..database import LocalDatabase
from ..jobqueue import Cancel, Complete, Fail, Job, JobHandle, JobQueue, QueueError, UniqueSpec
from ..jobs import (
    AwardImportArgs,
    FestivalDiscoveryArgs,
    FestivalImportArgs,
    FestivalMultiYear,
    FestivalPersonInferenceArgs,
    FestivalSingleYear,
    ImportYear,
    MovieDetailsArgs,
    ResyncAll,
    ResyncRecent,
    SyncMissing,
    decode_award_args,
    decode_festival_args,
)
from ..notifications import TOPIC_AWARD_IMPORTS, TOPIC_FESTIVAL_IMPORTS
from ..reconciliation import map_country_to_title
from ..sources import parse_festival_page
from ..transport import ErrorKind
from .base import Outcome, Worker, outcome_for_error
from .details import MovieDetailsWorker


PERSON_CATEGORY = re.compile(r"(actor|actress|director|directing|writer|writing|cinematograph|editor|editing|composer)")
FILM_CATEGORY = re.compile(r"(best picture|best film|palme|golden lion|golden bear|grand prix)")
TECHNICAL_CATEGORY = re.compile(r"(visual effects|sound|makeup|costume|design|score|song|music)")
GENRE_CATEGORY = re.compile(r"(documentary|animated|animation|international|foreign)")
SPECIAL_CATEGORY = re.compile(r"(jury|special|honorary)")
SONG_CATEGORY = re.compile(r"original song")
DIRECTOR_CATEGORY = re.compile(r"(director|directing|réalisateur|regia|regie|realizador)")

# Ceremony import_status values written by the workers.
CEREMONY_PENDING = "pending"
CEREMONY_EMPTY = "empty"
CEREMONY_NO_DATA = "no_data"
CEREMONY_FAILED = "failed"
CEREMONY_PROCESSED = "processed"

SYNC_MISSING_STATUSES = ("not_started", "failed", "no_matches", "low_match")

OSCARS_ABBREVIATION = "AMPAS"


def determine_category_type(category_name: str) -> Tuple[str, bool]:
    """(category_type, tracks_person) for a normalized category name."""
    name = category_name.lower()
    if PERSON_CATEGORY.search(name):
        return "person", True
    if FILM_CATEGORY.search(name):
        return "film", False
    if TECHNICAL_CATEGORY.search(name):
        return "technical", False
    if GENRE_CATEGORY.search(name):
        return "film", False
    if SPECIAL_CATEGORY.search(name):
        return "special", False
    return "film", False


def award_status(import_status: Optional[str], total: int, matched: int) -> str:
    if import_status is None:
        return "not_started"
    if import_status in (CEREMONY_NO_DATA, CEREMONY_FAILED, CEREMONY_EMPTY):
        return import_status
    if total == 0:
        return "pending" if import_status == CEREMONY_PENDING else "empty"
    ratio = matched / total
    if ratio >= 0.9:
        return "completed"
    if ratio >= 0.5:
        return "partial"
    if matched > 0:
        return "low_match"
    return "no_matches"


def award_import_statuses(db: LocalDatabase, organization: sqlite3.Row) -> List[Dict[str, Any]]:
    """One row per year from the organization's first year to now, newest first."""
    ceremonies = {int(row["year"]): row for row in db.ceremonies_for_organization(int(organization["id"]))}
    first_year = parse_int(organization["founded_year"])
    if first_year is None:
        first_year = min(ceremonies) if ceremonies else current_year()
    years = set(range(first_year, current_year() + 1)) | set(ceremonies)
    statuses: List[Dict[str, Any]] = []
    for year in sorted(years, reverse=True):
        row = ceremonies.get(year)
        total = int(row["total"] or 0) if row is not None else 0
        matched = int(row["matched"] or 0) if row is not None else 0
        statuses.append(
            {
                "year": year,
                "ceremony_id": int(row["id"]) if row is not None else None,
                "status": award_status(row["import_status"] if row is not None else None, total, matched),
                "total": total,
                "matched": matched,
            }
        )
    return statuses


def queue_award_action(queue: JobQueue, action: AwardImportArgs, schedule_in: int = 0) -> JobHandle:
    return queue.enqueue(AwardImportWorker.new(action, schedule_in=schedule_in))


async def import_festival_year(worker: Worker, organization: sqlite3.Row, year: int) -> Outcome:
    """Fetch one ceremony page, store it and queue its discovery job."""
    ctx = worker.ctx
    label = f"{organization['abbreviation']} {year}"
    event_id = organization["imdb_event_id"]
    if not event_id:
        return Cancel(f"{label}: no IMDb event id configured")

    ceremony_name = f"{year} {organization['name']}"
    source_url = ctx.imdb.event_url(str(event_id), year)
    fetched = await ctx.imdb.fetch_event_page(str(event_id), year)
    if not fetched.ok:
        if fetched.error.kind == ErrorKind.NOT_FOUND:
            LOGGER.warning("[Festivals] %s: event page not found (404); marking no_data.", label)
            ctx.db.upsert_ceremony(
                organization_id=int(organization["id"]),
                year=year,
                name=ceremony_name,
                data=None,
                data_source="imdb",
                source_url=source_url,
                import_status=CEREMONY_NO_DATA,
            )
            return Cancel("HTTP 404 - page does not exist on IMDb")
        if fetched.error.kind == ErrorKind.FORBIDDEN:
            LOGGER.warning("[Festivals] %s: access forbidden (403).", label)
            return Cancel("HTTP 403 - access forbidden")
        return outcome_for_error(fetched.error, label)

    page = await asyncio.to_thread(parse_festival_page, fetched.value)
    status = CEREMONY_PENDING if page.nomination_count else CEREMONY_EMPTY
    ceremony_id = ctx.db.upsert_ceremony(
        organization_id=int(organization["id"]),
        year=year,
        name=ceremony_name,
        data={"awards": page.awards, "parser": page.parser},
        data_source="imdb",
        source_url=source_url,
        import_status=status,
    )
    if not page.nomination_count:
        LOGGER.info("[Festivals] %s: no nominations on the event page.", label)
        return Complete({"ceremony_id": ceremony_id, "nominations": 0})

    try:
        ctx.queue.enqueue(FestivalDiscoveryWorker.new(FestivalDiscoveryArgs(ceremony_id=ceremony_id)))
    except QueueError as exc:
        return Fail(f"{label}: queue discovery: {exc}")
    LOGGER.info(
        "[Festivals] %s: stored %s nomination(s) via %s parser; discovery queued.",
        label,
        page.nomination_count,
        page.parser,
    )
    ctx.notifications.publish(
        TOPIC_FESTIVAL_IMPORTS,
        {
            "type": "ceremony_imported",
            "organization": organization["abbreviation"],
            "year": year,
            "nominations": page.nomination_count,
        },
    )
    return Complete({"ceremony_id": ceremony_id, "nominations": page.nomination_count})


class AwardImportWorker(Worker):
    name = "award_import"
    queue = "scraping"
    max_attempts = 3
    unique = UniqueSpec(keys=("organization_id", "year"), period_seconds=300)

    def decode(self, args: Dict[str, Any]) -> AwardImportArgs:
        return decode_award_args(args)

    async def perform(self, job: Job, args: AwardImportArgs) -> Outcome:
        organization = self.ctx.db.get_festival_organization(args.organization_id)
        if organization is None:
            return Cancel(f"unknown festival organization {args.organization_id}")

        if isinstance(args, ImportYear):
            return await import_festival_year(self, organization, args.year)

        statuses = award_import_statuses(self.ctx.db, organization)
        if isinstance(args, SyncMissing):
            selected = [entry for entry in statuses if entry["status"] in SYNC_MISSING_STATUSES]
        elif isinstance(args, ResyncRecent):
            selected = statuses[: args.years]
        else:
            selected = statuses
        return self._queue_years(organization, args.ACTION, [entry["year"] for entry in selected])

    def _queue_years(self, organization: sqlite3.Row, action: str, years: List[int]) -> Outcome:
        org_id = int(organization["id"])
        if not years:
            LOGGER.info("[Awards] %s %s: nothing to queue.", organization["abbreviation"], action)
            return Complete({"queued": 0})

        spacing = int(self.config["festivals"]["year_spacing_seconds"])
        specs = [
            AwardImportWorker.new(ImportYear(organization_id=org_id, year=year), schedule_in=index * spacing)
            for index, year in enumerate(sorted(years, reverse=True))
        ]
        try:
            handles = self.ctx.queue.bulk_enqueue(specs)
        except QueueError as exc:
            return Fail(f"queue {action} years: {exc}")
        queued = sum(1 for handle in handles if not handle.conflict)
        minutes = (len(specs) - 1) * spacing // 60
        LOGGER.info(
            "[Awards] %s %s: queued %s year(s), spaced %ss apart (~%s min).",
            organization["abbreviation"],
            action,
            queued,
            spacing,
            minutes,
        )
        self.ctx.notifications.publish(
            TOPIC_AWARD_IMPORTS,
            {
                "type": action,
                "organization_id": org_id,
                "years_queued": queued,
                "years": sorted(years, reverse=True),
                "spacing_seconds": spacing,
                "estimated_duration_minutes": minutes,
            },
        )
        return Complete({"queued": queued, "spacing_seconds": spacing})


class FestivalImportWorker(Worker):
    name = "festival_import"
    queue = "festival_import"
    max_attempts = 3
    unique = UniqueSpec(keys=("festival", "year", "years"), period_seconds=60)

    def decode(self, args: Dict[str, Any]) -> FestivalImportArgs:
        return decode_festival_args(args)

    async def perform(self, job: Job, args: FestivalImportArgs) -> Outcome:
        organization = self.ctx.db.find_festival_organization(args.festival)
        if organization is None:
            return Cancel(f"unknown festival {args.festival!r}")
        if isinstance(args, FestivalSingleYear):
            return await import_festival_year(self, organization, args.year)
        return await self._import_many(organization, args)

    async def _import_many(self, organization: sqlite3.Row, args: FestivalMultiYear) -> Outcome:
        cfg = self.config["festivals"]
        limit = max(1, int(args.max_concurrency or cfg["max_concurrency"]))
        timeout = float(cfg["year_timeout_seconds"])
        semaphore = asyncio.Semaphore(limit)

        async def run_year(year: int) -> Tuple[int, Any]:
            async with semaphore:
                try:
                    return year, await asyncio.wait_for(import_festival_year(self, organization, year), timeout)
                except asyncio.TimeoutError:
                    return year, Fail(f"timed out after {timeout:.0f}s")

        results = await asyncio.gather(*(run_year(year) for year in args.years))
        failed = sorted(year for year, outcome in results if isinstance(outcome, Fail))
        skipped = sorted(year for year, outcome in results if isinstance(outcome, Cancel))
        if skipped:
            LOGGER.info("[Festivals] %s: no data for %s", args.festival, skipped)
        if failed:
            LOGGER.error("[Festivals] %s: %s year(s) failed: %s", args.festival, len(failed), failed)
            return Fail(f"Failed years: {failed}")
        LOGGER.info("[Festivals] %s: imported %s year(s).", args.festival, len(results) - len(skipped))
        return Complete({"years": len(results), "skipped": skipped})


@dataclass
class DiscoverySummary:
    movies_queued: int = 0
    nominations_created: int = 0
    existing: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    fuzzy_matched: int = 0
    categories: int = 0
    person_categories: int = 0
    skipped_titles: List[str] = field(default_factory=list)

    def as_meta(self) -> Dict[str, Any]:
        return {
            "movies_queued": self.movies_queued,
            "nominations_created": self.nominations_created,
            "existing": self.existing,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
            "fuzzy_matched": self.fuzzy_matched,
            "categories_processed": self.categories,
            "person_categories": self.person_categories,
            "film_categories": self.categories - self.person_categories,
            "total_nominations": self.nominations_created + self.existing + self.updated + self.skipped + self.errors,
        }


@dataclass
class Nominee:
    film_imdb_id: Optional[str]
    film_title: Optional[str]
    film_year: Optional[int]
    person_imdb_ids: List[str]
    person_name: Optional[str]
    winner: bool

    @classmethod
    def from_entry(cls, entry: Dict[str, Any]) -> "Nominee":
        films = entry.get("films") or []
        film = films[0] if films else {}
        people = entry.get("people") or []
        names = [str(p.get("name")) for p in people if p.get("name")]
        return cls(
            film_imdb_id=film.get("imdb_id"),
            film_title=film.get("title"),
            film_year=parse_int(film.get("year")),
            person_imdb_ids=[str(p["imdb_id"]) for p in people if p.get("imdb_id")],
            person_name=", ".join(names) if names else None,
            winner=bool(entry.get("winner")),
        )


class FestivalDiscoveryWorker(Worker):
    """Turns a stored ceremony's nominations into nominations linked to movies and people."""

    name = "festival_discovery"
    queue = "festival_import"
    max_attempts = 3
    unique = UniqueSpec(keys=("ceremony_id",), period_seconds=300)

    def decode(self, args: Dict[str, Any]) -> FestivalDiscoveryArgs:
        return FestivalDiscoveryArgs.from_args(args)

    async def perform(self, job: Job, args: FestivalDiscoveryArgs) -> Outcome:
        db = self.ctx.db
        ceremony = db.get_ceremony(args.ceremony_id)
        if ceremony is None:
            return Cancel(f"ceremony {args.ceremony_id} not found")
        organization = db.get_festival_organization(int(ceremony["organization_id"]))
        awards = load_json_object(ceremony["data"]).get("awards") or {}
        summary = DiscoverySummary()

        for category_name, entries in awards.items():
            category_type, tracks_person = determine_category_type(category_name)
            category_id = db.upsert_category(
                organization_id=int(ceremony["organization_id"]),
                name=category_name,
                category_type=category_type,
                tracks_person=tracks_person,
            )
            summary.categories += 1
            if tracks_person:
                summary.person_categories += 1
            for entry in entries or []:
                nominee = Nominee.from_entry(entry if isinstance(entry, dict) else {})
                try:
                    await self._process_nominee(
                        nominee,
                        ceremony=ceremony,
                        category_id=category_id,
                        category_name=category_name,
                        tracks_person=tracks_person,
                        summary=summary,
                    )
                except (sqlite3.Error, QueueError) as exc:
                    LOGGER.warning(
                        "[Discovery] %s %s: nominee '%s' failed: %s",
                        organization["abbreviation"] if organization else "?",
                        ceremony["year"],
                        nominee.film_title,
                        exc,
                    )
                    summary.errors += 1

        db.set_ceremony_status(args.ceremony_id, CEREMONY_PROCESSED)
        total, matched = db.count_nominations(args.ceremony_id)
        meta = {**summary.as_meta(), "ceremony_year": int(ceremony["year"]), "matched": matched, "stored": total}
        if organization is not None and organization["abbreviation"] != OSCARS_ABBREVIATION:
            meta["person_inference_queued"] = self._queue_person_inference(args.ceremony_id)
        LOGGER.info(
            "[Discovery] %s %s: created=%s existing=%s updated=%s queued=%s fuzzy=%s skipped=%s errors=%s",
            organization["abbreviation"] if organization else "?",
            ceremony["year"],
            summary.nominations_created,
            summary.existing,
            summary.updated,
            summary.movies_queued,
            summary.fuzzy_matched,
            summary.skipped,
            summary.errors,
        )
        self.ctx.notifications.publish(
            TOPIC_FESTIVAL_IMPORTS,
            {
                "type": "festival_discovery_complete",
                "ceremony_id": args.ceremony_id,
                "year": int(ceremony["year"]),
                "organization": organization["abbreviation"] if organization else None,
                "status": award_status(CEREMONY_PROCESSED, total, matched),
                **summary.as_meta(),
            },
        )
        return Complete(meta)

    def _queue_person_inference(self, ceremony_id: int) -> bool:
        handle = self.enqueue_side_effect(
            FestivalPersonInferenceWorker.new(
                FestivalPersonInferenceArgs(ceremony_id=ceremony_id),
                schedule_in=int(self.config["festivals"]["person_inference_delay_seconds"]),
            ),
            "person inference",
        )
        return handle is not None and not handle.conflict

    async def _process_nominee(
        self,
        nominee: Nominee,
        *,
        ceremony: sqlite3.Row,
        category_id: int,
        category_name: str,
        tracks_person: bool,
        summary: DiscoverySummary,
    ) -> None:
        if SONG_CATEGORY.search(category_name):
            summary.skipped += 1
            return

        if nominee.film_imdb_id:
            movie = self.ctx.db.get_movie_by_imdb_id(nominee.film_imdb_id)
            if movie is None:
                handle = self.ctx.queue.enqueue(
                    MovieDetailsWorker.new(
                        MovieDetailsArgs(
                            imdb_id=nominee.film_imdb_id,
                            source="festival_import",
                            year=nominee.film_year,
                            metadata={"film_title": nominee.film_title, "film_year": nominee.film_year},
                        )
                    )
                )
                if not handle.conflict:
                    summary.movies_queued += 1
            await self._record_nomination(
                nominee,
                ceremony=ceremony,
                category_id=category_id,
                tracks_person=tracks_person,
                movie_id=int(movie["id"]) if movie is not None else None,
                summary=summary,
            )
            return

        await self._fuzzy_fallback(
            nominee,
            ceremony=ceremony,
            category_id=category_id,
            category_name=category_name,
            tracks_person=tracks_person,
            summary=summary,
        )

    async def _record_nomination(
        self,
        nominee: Nominee,
        *,
        ceremony: sqlite3.Row,
        category_id: int,
        tracks_person: bool,
        movie_id: Optional[int],
        summary: DiscoverySummary,
        fuzzy: bool = False,
    ) -> None:
        db = self.ctx.db
        person_id = None
        if tracks_person and (nominee.person_imdb_ids or nominee.person_name):
            resolution = await self.ctx.people.resolve(
                imdb_ids=nominee.person_imdb_ids,
                name=nominee.person_name,
                movie_id=movie_id,
            )
            person_id = resolution.person_id

        existing = db.find_nomination(
            ceremony_id=int(ceremony["id"]),
            category_id=category_id,
            movie_id=movie_id,
            movie_imdb_id=nominee.film_imdb_id,
            person_id=person_id,
            person_imdb_ids=nominee.person_imdb_ids if tracks_person else None,
            person_name=nominee.person_name if tracks_person else None,
        )
        if existing is not None:
            needs_update = (
                (movie_id is not None and existing["movie_id"] is None)
                or (person_id is not None and existing["person_id"] is None)
                or bool(existing["won"]) != nominee.winner
            )
            if needs_update:
                db.update_nomination(int(existing["id"]), movie_id=movie_id, person_id=person_id, won=nominee.winner)
                summary.updated += 1
            else:
                summary.existing += 1
            return

        db.create_nomination(
            ceremony_id=int(ceremony["id"]),
            category_id=category_id,
            movie_id=movie_id,
            movie_imdb_id=nominee.film_imdb_id,
            movie_title=nominee.film_title,
            person_id=person_id,
            person_imdb_ids=nominee.person_imdb_ids,
            person_name=nominee.person_name,
            won=nominee.winner,
            details={"fuzzy_matched": True} if fuzzy else None,
        )
        summary.nominations_created += 1

    async def _fuzzy_fallback(
        self,
        nominee: Nominee,
        *,
        ceremony: sqlite3.Row,
        category_id: int,
        category_name: str,
        tracks_person: bool,
        summary: DiscoverySummary,
    ) -> None:
        title = nominee.film_title or (None if tracks_person else nominee.person_name)
        if not title:
            summary.skipped += 1
            return
        year = nominee.film_year or int(ceremony["year"])
        search_title = map_country_to_title(title, year, category_name) or title

        resolution = await self.ctx.matcher.resolve(search_title, year, category_name)
        if resolution.error:
            LOGGER.warning("[Discovery] Search for '%s' failed: %s", search_title, resolution.error)
            summary.errors += 1
            return
        if not resolution.found:
            summary.skipped += 1
            summary.skipped_titles.append(title)
            return

        movie = resolution.movie
        if movie is None and resolution.tmdb_id is not None:
            movie = self.ctx.db.get_movie_by_tmdb_id(resolution.tmdb_id)
        if movie is not None:
            summary.fuzzy_matched += 1
            await self._record_nomination(
                nominee,
                ceremony=ceremony,
                category_id=category_id,
                tracks_person=tracks_person,
                movie_id=int(movie["id"]),
                summary=summary,
                fuzzy=True,
            )
            return

        handle = self.ctx.queue.enqueue(
            MovieDetailsWorker.new(
                MovieDetailsArgs(
                    tmdb_id=resolution.tmdb_id,
                    source="festival_import",
                    year=year,
                    fuzzy_matched=True,
                    metadata={
                        "ceremony_id": int(ceremony["id"]),
                        "category_id": category_id,
                        "film_title": title,
                        "original_search_title": search_title,
                        "winner": nominee.winner,
                        "tracks_person": tracks_person,
                        "nominee": {"name": nominee.person_name, "person_imdb_ids": nominee.person_imdb_ids},
                        "match_score": round(resolution.decision.score, 4),
                    },
                )
            )
        )
        summary.fuzzy_matched += 1
        if not handle.conflict:
            summary.movies_queued += 1


def is_director_category(category_name: str) -> bool:
    return bool(DIRECTOR_CATEGORY.search(category_name.lower()))


class FestivalPersonInferenceWorker(Worker):
    """Links director nominations to the person credited as the film's director.

    Festival pages often name only the film, so a "Best Director" nomination
    arrives without a person. Other person categories stay unlinked: a film
    has one director but many actors.
    """

    name = "festival_person_inference"
    queue = "festival_import"
    max_attempts = 3
    unique = UniqueSpec(keys=("ceremony_id",), period_seconds=300)

    def decode(self, args: Dict[str, Any]) -> FestivalPersonInferenceArgs:
        return FestivalPersonInferenceArgs.from_args(args)

    async def perform(self, job: Job, args: FestivalPersonInferenceArgs) -> Outcome:
        db = self.ctx.db
        ceremony = db.get_ceremony(args.ceremony_id)
        if ceremony is None:
            return Cancel(f"ceremony {args.ceremony_id} not found")
        organization = db.get_festival_organization(int(ceremony["organization_id"]))
        abbreviation = organization["abbreviation"] if organization else "?"
        if abbreviation == OSCARS_ABBREVIATION:
            LOGGER.info("[Inference] Skipping %s %s; nominations carry names.", abbreviation, ceremony["year"])
            return Complete({"skipped_organization": abbreviation})

        nominations = db.nominations_missing_person(args.ceremony_id)
        linked = skipped = failed = 0
        for nomination in nominations:
            if not is_director_category(str(nomination["category_name"])):
                skipped += 1
                continue
            if nomination["movie_id"] is None:
                failed += 1
                continue
            credit = db.find_director_credit(int(nomination["movie_id"]))
            if credit is None:
                failed += 1
                continue
            db.update_nomination(int(nomination["id"]), person_id=int(credit["person_id"]))
            linked += 1

        meta = {"linked": linked, "skipped": skipped, "failed": failed, "total": len(nominations)}
        LOGGER.info(
            "[Inference] %s %s: %s/%s linked, %s skipped, %s without a director",
            abbreviation,
            ceremony["year"],
            linked,
            len(nominations),
            skipped,
            failed,
        )
        self.ctx.notifications.publish(
            TOPIC_FESTIVAL_IMPORTS,
            {
                "type": "festival_person_inference_complete",
                "ceremony_id": args.ceremony_id,
                "year": int(ceremony["year"]),
                "organization": abbreviation,
                **meta,
            },
        )
        return Complete(meta)
