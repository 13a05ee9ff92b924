from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..common import LOGGER, current_year, now_epoch, parse_float, parse_int
from ..jobqueue import ACTIVE_STATES, Cancel, Complete, Fail, Job, JobHandle, JobQueue, JobSpec, QueueError, Snooze, UniqueSpec
from ..jobs import MovieDetailsArgs, YearCompletionArgs, YearDiscoveryArgs, YearImportArgs
from ..notifications import TOPIC_ALERTS, TOPIC_YEAR_IMPORTS
from .base import Outcome, Worker, outcome_for_error
from .details import MovieDetailsWorker


CURRENT_YEAR_KEY = "year_import_current"


def year_key(year: int, suffix: str) -> str:
    return f"year_{year}_{suffix}"


def popularity_priority(popularity: Optional[float]) -> int:
    """Lower runs first: popular titles are fetched ahead of the long tail."""
    value = popularity or 0.0
    if value >= 100:
        return 0
    if value >= 10:
        return 1
    if value >= 1:
        return 2
    return 3


def queue_year_import(queue: JobQueue, year: Optional[int] = None) -> JobHandle:
    return queue.enqueue(DailyYearImportWorker.new(YearImportArgs(year=year)))


class DailyYearImportWorker(Worker):
    """Imports the most recent year that is not yet complete, working backward."""

    name = "daily_year_import"
    queue = "tmdb_orchestration"
    max_attempts = 3
    unique = UniqueSpec(keys=("year",), period_seconds=3600)

    def decode(self, args: Dict[str, Any]) -> YearImportArgs:
        return YearImportArgs.from_args(args)

    def _is_marked_complete(self, year: int) -> bool:
        return self.ctx.progress.get(year_key(year, "complete")) == "true"

    def _mark_complete(self, year: int, local: int, expected: int, status: str) -> None:
        self.ctx.progress.set_many(
            {
                year_key(year, "complete"): "true",
                year_key(year, "status"): status,
            }
        )
        self.ctx.progress.set_json(
            year_key(year, "progress"),
            {"local": local, "expected": expected, "checked_at": now_epoch()},
        )

    async def perform(self, job: Job, args: YearImportArgs) -> Outcome:
        cfg = self.config["years"]
        earliest = int(cfg["earliest_year"])
        ratio = float(cfg["completion_ratio"])

        if args.year is not None:
            if args.year < earliest:
                return Cancel(f"year {args.year} is before {earliest}")
            candidates = [args.year]
        else:
            candidates = [y for y in range(current_year(), earliest - 1, -1) if not self._is_marked_complete(y)]
        if not candidates:
            LOGGER.info("[Years] Every year back to %s is complete.", earliest)
            return Complete({"action": "all_years_complete"})

        for year in candidates:
            in_flight = self.ctx.queue.count_jobs(
                worker=YearDiscoveryWorker.name,
                states=ACTIVE_STATES,
                args_match={"year": year},
            )
            if in_flight:
                return Complete({"action": "already_running", "year": year, "in_flight": in_flight})

            first = await self.ctx.tmdb.discover_year(year, 1)
            if not first.ok:
                return outcome_for_error(first.error, f"discover {year}")
            expected = parse_int(first.value.get("total_results")) or 0
            total_pages = parse_int(first.value.get("total_pages")) or 0
            local = self.ctx.db.count_movies_for_year(year)

            if expected == 0 or local >= ratio * expected:
                LOGGER.info("[Years] %s already complete (%s/%s).", year, local, expected)
                self._mark_complete(year, local, expected, "completed")
                if args.year is not None:
                    return Complete({"action": "already_complete", "year": year})
                continue

            return self._queue_year(year, expected, total_pages, local)

        return Complete({"action": "all_years_complete"})

    def _queue_year(self, year: int, expected: int, total_pages: int, local: int) -> Outcome:
        cfg = self.config["years"]
        pages = min(total_pages, int(cfg["max_pages"]))
        specs: List[JobSpec] = [
            YearDiscoveryWorker.new(YearDiscoveryArgs(year=year, page=page)) for page in range(1, pages + 1)
        ]
        try:
            self.ctx.queue.bulk_enqueue(specs)
            self.ctx.queue.enqueue(
                YearCompletionWorker.new(
                    YearCompletionArgs(year=year, total_pages=pages, expected_count=expected),
                    schedule_in=int(cfg["check_interval_seconds"]),
                    max_attempts=int(cfg["completion_max_checks"]),
                )
            )
        except QueueError as exc:
            self.ctx.progress.set(year_key(year, "status"), f"failed: {exc}")
            LOGGER.error("[Years] Could not queue year %s: %s", year, exc)
            return Fail(str(exc))

        self.ctx.progress.set_many({CURRENT_YEAR_KEY: year, year_key(year, "status"): "in_progress"})
        LOGGER.info(
            "[Years] Queued %s discover page(s) for %s (%s local of %s).", pages, year, local, expected
        )
        self.ctx.notifications.publish(
            TOPIC_YEAR_IMPORTS,
            {"type": "year_import_started", "year": year, "pages": pages, "expected": expected, "local": local},
        )
        return Complete({"action": "queued", "year": year, "pages": pages})


class YearDiscoveryWorker(Worker):
    name = "year_discovery"
    queue = "tmdb_discovery"
    max_attempts = 5
    unique = UniqueSpec(keys=("year", "page"), period_seconds=3600)

    def decode(self, args: Dict[str, Any]) -> YearDiscoveryArgs:
        return YearDiscoveryArgs.from_args(args)

    async def perform(self, job: Job, args: YearDiscoveryArgs) -> Outcome:
        result = await self.ctx.tmdb.discover_year(args.year, args.page)
        if not result.ok:
            return outcome_for_error(result.error, f"discover {args.year} page {args.page}")

        movies = [movie for movie in result.value.get("results") or [] if parse_int(movie.get("id")) is not None]
        ids = [parse_int(movie.get("id")) for movie in movies]
        existing = self.ctx.db.existing_tmdb_ids(ids)
        specs = []
        for movie in movies:
            tmdb_id = parse_int(movie.get("id"))
            if tmdb_id in existing:
                continue
            popularity = parse_float(movie.get("popularity"))
            specs.append(
                MovieDetailsWorker.new(
                    MovieDetailsArgs(tmdb_id=tmdb_id, source="year_import", popularity=popularity, year=args.year),
                    priority=popularity_priority(popularity),
                )
            )
        if specs:
            try:
                self.ctx.queue.bulk_enqueue(specs)
            except QueueError as exc:
                return Fail(f"queue movie details: {exc}")
        return Complete({"page": args.page, "found": len(movies), "queued": len(specs), "existing": len(existing)})


class YearCompletionWorker(Worker):
    name = "year_import_completion"
    queue = "tmdb_orchestration"
    max_attempts = 288
    unique = UniqueSpec(keys=("year",), period_seconds=None)

    def decode(self, args: Dict[str, Any]) -> YearCompletionArgs:
        return YearCompletionArgs.from_args(args)

    async def perform(self, job: Job, args: YearCompletionArgs) -> Outcome:
        queue = self.ctx.queue
        discovery = queue.count_by_state(worker=YearDiscoveryWorker.name, args_match={"year": args.year})
        in_flight = sum(discovery.get(state, 0) for state in ACTIVE_STATES)
        in_flight += queue.count_jobs(
            worker=MovieDetailsWorker.name,
            states=ACTIVE_STATES,
            args_match={"source": "year_import", "year": args.year},
        )
        local = self.ctx.db.count_movies_for_year(args.year)
        expected = args.expected_count
        self.ctx.progress.set_json(
            year_key(args.year, "progress"),
            {"local": local, "expected": expected, "in_flight": in_flight, "checked_at": now_epoch()},
        )

        if in_flight:
            if job.is_last_attempt:
                reason = f"completion check exhausted after {job.attempt} checks"
                self.ctx.progress.set(year_key(args.year, "status"), f"failed: {reason}")
                LOGGER.error("[Years] %s: %s with %s job(s) in flight.", args.year, reason, in_flight)
                self.ctx.notifications.publish(
                    TOPIC_ALERTS,
                    {"type": "completion_check_exhausted", "worker": self.name, "year": args.year, "reason": reason},
                )
                return Cancel(reason)
            return Snooze(
                int(self.config["years"]["check_interval_seconds"]),
                consume_attempt=True,
                meta={"in_flight": in_flight, "local": local},
            )

        if sum(discovery.values()) == 0:
            LOGGER.warning("[Years] No discovery jobs found for %s; using the store count.", args.year)

        ratio = float(self.config["years"]["completion_ratio"])
        status = "completed" if not expected or local >= ratio * expected else "partial"
        self.ctx.progress.set_many(
            {
                year_key(args.year, "complete"): "true",
                year_key(args.year, "status"): status,
            }
        )
        LOGGER.info("[Years] %s finished as %s (%s/%s).", args.year, status, local, expected)
        self.ctx.notifications.publish(
            TOPIC_YEAR_IMPORTS,
            {"type": "year_import_completed", "year": args.year, "status": status, "local": local, "expected": expected},
        )
        return Complete({"status": status, "local": local, "expected": expected})
