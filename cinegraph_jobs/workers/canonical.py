"""Canonical list imports.

One orchestrator job counts the list's pages and fans out one page job per
page, plus a single completion checker that polls the page jobs until every
one of them is terminal. The checker is the only place that decides whether
the import completed or failed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..common import LOGGER, now_epoch
from ..jobqueue import (
    ACTIVE_STATES,
    Cancel,
    Complete,
    Fail,
    Job,
    JobHandle,
    JobQueue,
    JobSpec,
    JobState,
    QueueError,
    Snooze,
    UniqueSpec,
)
from ..jobs import CanonicalCompletionArgs, CanonicalImportArgs, CanonicalPageArgs, MovieDetailsArgs
from ..notifications import TOPIC_ALERTS, TOPIC_IMPORT_PROGRESS
from ..sources import parse_list_entries, parse_list_total, total_pages_for
from .base import Outcome, Worker, outcome_for_error
from .details import MovieDetailsWorker


STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"


def failed_status(reason: str) -> str:
    return f"failed: {reason}"


class CheckAction:
    FINALIZE = "finalize"
    FAIL = "fail"
    RESCHEDULE = "reschedule"
    EXHAUSTED = "exhausted"


@dataclass
class CheckDecision:
    action: str
    total: int
    completed: int
    failed: int
    in_flight: int
    reason: Optional[str] = None
    warning: Optional[str] = None


def plan_completion_check(
    counts: Dict[str, int],
    total_pages: int,
    attempt: int,
    max_attempts: int,
) -> CheckDecision:
    """Decide what the checker does with the page jobs' state counts."""
    completed = int(counts.get(JobState.COMPLETED, 0))
    failed = int(counts.get(JobState.DISCARDED, 0)) + int(counts.get(JobState.CANCELLED, 0))
    in_flight = sum(int(counts.get(state, 0)) for state in ACTIVE_STATES)
    total = completed + failed + in_flight

    def decision(action: str, reason: Optional[str] = None, warning: Optional[str] = None) -> CheckDecision:
        return CheckDecision(
            action=action,
            total=total,
            completed=completed,
            failed=failed,
            in_flight=in_flight,
            reason=reason,
            warning=warning,
        )

    if in_flight == 0:
        if failed > 0:
            return decision(CheckAction.FAIL, reason=f"{failed} pages failed to process")
        warning = None
        if total < total_pages:
            warning = f"found {total} page jobs for {total_pages} pages"
        return decision(CheckAction.FINALIZE, warning=warning)

    if attempt >= max_attempts:
        return decision(
            CheckAction.EXHAUSTED,
            reason=f"completion check exhausted after {attempt} checks",
        )
    return decision(CheckAction.RESCHEDULE)


def queue_canonical_import(queue: JobQueue, list_key: str) -> JobHandle:
    return queue.enqueue(CanonicalImportWorker.new(CanonicalImportArgs(list_key=list_key)))


class CanonicalImportWorker(Worker):
    name = "canonical_import"
    queue = "tmdb_orchestration"
    max_attempts = 3
    unique = UniqueSpec(keys=("list_key",), period_seconds=300)

    def decode(self, args: Dict[str, Any]) -> CanonicalImportArgs:
        return CanonicalImportArgs.from_args(args)

    def _publish(self, list_key: str, status: str, **extra: Any) -> None:
        self.ctx.notifications.publish(
            TOPIC_IMPORT_PROGRESS,
            {"type": "canonical_progress", "list_key": list_key, "status": status, **extra},
        )

    def _mark_failed(self, list_key: str, reason: str) -> None:
        LOGGER.error("[Canonical] Import of %s failed: %s", list_key, reason)
        self.ctx.db.update_movie_list(list_key, status=failed_status(reason))
        self._publish(list_key, "failed", reason=reason)

    async def perform(self, job: Job, args: CanonicalImportArgs) -> Outcome:
        list_row = self.ctx.db.get_movie_list(args.list_key)
        if list_row is None:
            return Cancel(f"unknown canonical list {args.list_key!r}")
        list_id = str(list_row["list_id"])

        active = self.ctx.queue.count_jobs(
            worker=CanonicalPageWorker.name,
            states=ACTIVE_STATES,
            args_match={"list_key": args.list_key},
        )
        if active:
            LOGGER.info("[Canonical] %s already has %s page job(s) in flight; skipping.", args.list_key, active)
            return Complete({"action": "already_running", "in_flight": active})

        self._publish(args.list_key, "orchestrating")
        first_page = await self.ctx.imdb.fetch_list_page(list_id, 1)
        if not first_page.ok:
            self._mark_failed(args.list_key, f"could not fetch list page: {first_page.error}")
            return outcome_for_error(first_page.error, f"list {list_id}")

        page_size = int(self.config["canonical"]["page_size"])
        expected = parse_list_total(first_page.value)
        if expected is None:
            # Single-page lists sometimes omit the total; count the entries instead.
            entries = parse_list_entries(first_page.value, 1, page_size)
            expected = len(entries) if entries else None
        total_pages = total_pages_for(expected or 0, page_size)
        if total_pages <= 0:
            self._mark_failed(args.list_key, "could not determine total pages")
            return Cancel(f"list {list_id}: could not determine total pages")

        self.ctx.db.update_movie_list(
            args.list_key,
            status=STATUS_PENDING,
            expected_movie_count=expected,
            increment_imports=True,
        )

        specs: List[JobSpec] = [
            CanonicalPageWorker.new(
                CanonicalPageArgs(
                    list_key=args.list_key,
                    list_id=list_id,
                    page=page,
                    total_pages=total_pages,
                    import_id=job.id,
                )
            )
            for page in range(1, total_pages + 1)
        ]
        try:
            handles = self.ctx.queue.bulk_enqueue(specs)
        except QueueError as exc:
            self._mark_failed(args.list_key, f"could not queue page jobs: {exc}")
            return Fail(str(exc))
        inserted = sum(1 for handle in handles if not handle.conflict)
        if inserted != total_pages:
            reason = f"queued {inserted} of {total_pages} page jobs"
            self._mark_failed(args.list_key, reason)
            return Cancel(reason)

        checker = CanonicalCompletionWorker.new(
            CanonicalCompletionArgs(
                list_key=args.list_key,
                total_pages=total_pages,
                import_id=job.id,
                expected_count=expected,
            ),
            schedule_in=int(self.config["canonical"]["completion_check_delay_seconds"]),
            max_attempts=int(self.config["canonical"]["completion_max_checks"]),
        )
        try:
            self.ctx.queue.enqueue(checker)
        except QueueError as exc:
            self._mark_failed(args.list_key, f"could not queue completion check: {exc}")
            return Cancel(str(exc))

        LOGGER.info(
            "[Canonical] Queued %s page(s) for %s (%s expected movies).",
            total_pages,
            args.list_key,
            expected,
        )
        self._publish(args.list_key, "queued", total_pages=total_pages, expected_count=expected)
        return Complete({"total_pages": total_pages, "expected_count": expected})


class CanonicalPageWorker(Worker):
    name = "canonical_page"
    queue = "imdb_scraping"
    max_attempts = 5
    unique = UniqueSpec(keys=("list_key", "page"), period_seconds=None)

    def decode(self, args: Dict[str, Any]) -> CanonicalPageArgs:
        return CanonicalPageArgs.from_args(args)

    async def perform(self, job: Job, args: CanonicalPageArgs) -> Outcome:
        fetched = await self.ctx.imdb.fetch_list_page(args.list_id, args.page)
        if not fetched.ok:
            return outcome_for_error(fetched.error, f"list {args.list_id} page {args.page}")

        page_size = int(self.config["canonical"]["page_size"])
        entries = parse_list_entries(fetched.value, args.page, page_size)
        counts = {"updated": 0, "queued": 0, "skipped": 0}
        to_queue: List[JobSpec] = []
        for entry in entries:
            source_data = {
                "list_id": args.list_id,
                "position": entry.position,
                "title": entry.title,
                "year": entry.year,
            }
            movie = self.ctx.db.get_movie_by_imdb_id(entry.imdb_id)
            if movie is None:
                to_queue.append(
                    MovieDetailsWorker.new(
                        MovieDetailsArgs(
                            imdb_id=entry.imdb_id,
                            source="canonical_import",
                            year=entry.year,
                            canonical_sources={args.list_key: source_data},
                        )
                    )
                )
                counts["queued"] += 1
                continue
            current = self.ctx.db.canonical_sources(int(movie["id"])).get(args.list_key) or {}
            if current.get("position") == entry.position:
                counts["skipped"] += 1
                continue
            self.ctx.db.mark_canonical(int(movie["id"]), args.list_key, source_data)
            counts["updated"] += 1

        if to_queue:
            try:
                self.ctx.queue.bulk_enqueue(to_queue)
            except QueueError as exc:
                return Fail(f"queue movie details for page {args.page}: {exc}")

        LOGGER.info(
            "[Canonical] %s page %s/%s: %s item(s), queued=%s updated=%s skipped=%s",
            args.list_key,
            args.page,
            args.total_pages,
            len(entries),
            counts["queued"],
            counts["updated"],
            counts["skipped"],
        )
        self.ctx.notifications.publish(
            TOPIC_IMPORT_PROGRESS,
            {
                "type": "canonical_progress",
                "list_key": args.list_key,
                "status": "page_done",
                "page": args.page,
                "total_pages": args.total_pages,
                **counts,
            },
        )
        return Complete({"page": args.page, "items": len(entries), **counts})


class CanonicalCompletionWorker(Worker):
    name = "canonical_completion"
    queue = "tmdb_orchestration"
    max_attempts = 120
    unique = UniqueSpec(keys=("list_key", "import_id"), period_seconds=None)

    def decode(self, args: Dict[str, Any]) -> CanonicalCompletionArgs:
        return CanonicalCompletionArgs.from_args(args)

    async def perform(self, job: Job, args: CanonicalCompletionArgs) -> Outcome:
        counts = self.ctx.queue.count_by_state(
            worker=CanonicalPageWorker.name,
            args_match={"list_key": args.list_key, "import_id": args.import_id},
        )
        decision = plan_completion_check(counts, args.total_pages, job.attempt, job.max_attempts)
        db = self.ctx.db
        progress = {
            "type": "canonical_progress",
            "list_key": args.list_key,
            "total_pages": args.total_pages,
            "completed_pages": decision.completed,
            "failed_pages": decision.failed,
            "in_flight_pages": decision.in_flight,
            "check": job.attempt,
        }

        if decision.action == CheckAction.RESCHEDULE:
            db.update_movie_list(args.list_key, status=STATUS_IN_PROGRESS)
            self.ctx.notifications.publish(TOPIC_IMPORT_PROGRESS, {**progress, "status": STATUS_IN_PROGRESS})
            return Snooze(
                int(self.config["canonical"]["completion_check_delay_seconds"]),
                consume_attempt=True,
                meta={"last_check_at": now_epoch(), "in_flight": decision.in_flight},
            )

        if decision.action == CheckAction.FINALIZE:
            if decision.warning:
                LOGGER.warning("[Canonical] %s: %s; treating as completed.", args.list_key, decision.warning)
            movie_count = db.count_canonical(args.list_key)
            db.update_movie_list(args.list_key, status=STATUS_COMPLETED, last_movie_count=movie_count)
            LOGGER.info(
                "[Canonical] %s completed: %s movie(s) in store (expected %s).",
                args.list_key,
                movie_count,
                args.expected_count,
            )
            self.ctx.notifications.publish(
                TOPIC_IMPORT_PROGRESS,
                {**progress, "status": STATUS_COMPLETED, "movie_count": movie_count},
            )
            return Complete({"result": STATUS_COMPLETED, "movie_count": movie_count})

        status = failed_status(decision.reason or "unknown")
        db.update_movie_list(args.list_key, status=status)
        self.ctx.notifications.publish(TOPIC_IMPORT_PROGRESS, {**progress, "status": status})
        if decision.action == CheckAction.EXHAUSTED:
            LOGGER.error("[Canonical] %s: %s with %s page(s) still in flight.", args.list_key, decision.reason, decision.in_flight)
            self.ctx.notifications.publish(
                TOPIC_ALERTS,
                {
                    "type": "completion_check_exhausted",
                    "worker": self.name,
                    "list_key": args.list_key,
                    "reason": decision.reason,
                    "in_flight": decision.in_flight,
                },
            )
            return Cancel(decision.reason or "completion check exhausted")

        LOGGER.error("[Canonical] %s: %s", args.list_key, decision.reason)
        return Complete({"result": status, "failed_pages": decision.failed})
