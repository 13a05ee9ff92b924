"""Tests for canonical list imports."""
import pytest

from cinegraph_jobs.jobqueue import JobState
from cinegraph_jobs.notifications import TOPIC_ALERTS
from cinegraph_jobs.workers.canonical import (
    CanonicalCompletionWorker,
    CanonicalImportWorker,
    CanonicalPageWorker,
    CheckAction,
    plan_completion_check,
    queue_canonical_import,
)


def list_page(items, total=None):
    rows = "".join(
        f"""
        <li class="ipc-metadata-list-summary-item">
          <a href="/title/{imdb_id}/?ref_=ls"><h3 class="ipc-title__text">{index}. {title}</h3></a>
          <span class="dli-title-metadata-item">({year})</span>
        </li>
        """
        for index, (imdb_id, title, year) in enumerate(items, start=1)
    )
    header = ""
    if total is not None:
        header = f'<div data-testid="list-page-mc-total-items">{total} titles</div>'
    return f"<html><body>{header}<ul>{rows}</ul></body></html>"


ITEMS = [
    ("tt0000101", "Metropolis", 1927),
    ("tt0000102", "Sunrise", 1927),
    ("tt0000103", "City Lights", 1931),
    ("tt0000104", "M", 1931),
    ("tt0000105", "Vertigo", 1958),
]


def counts(**states):
    base = {state: 0 for state in ("available", "scheduled", "executing", "retryable", "completed", "discarded", "cancelled")}
    base.update(states)
    return base


class TestPlanCompletionCheck:
    def test_finalizes_when_all_pages_completed(self):
        decision = plan_completion_check(counts(completed=3), total_pages=3, attempt=1, max_attempts=120)
        assert decision.action == CheckAction.FINALIZE
        assert decision.warning is None

    def test_fails_when_any_page_failed(self):
        decision = plan_completion_check(counts(completed=2, discarded=1), 3, 1, 120)
        assert decision.action == CheckAction.FAIL
        assert decision.reason == "1 pages failed to process"

    def test_reschedules_while_pages_in_flight(self):
        decision = plan_completion_check(counts(completed=1, retryable=1, available=1), 3, 4, 120)
        assert decision.action == CheckAction.RESCHEDULE
        assert decision.in_flight == 2

    def test_exhausted_after_max_checks(self):
        decision = plan_completion_check(counts(executing=1, completed=2), 3, 120, 120)
        assert decision.action == CheckAction.EXHAUSTED

    def test_missing_page_jobs_still_finalize_with_warning(self):
        decision = plan_completion_check(counts(completed=2), 3, 1, 120)
        assert decision.action == CheckAction.FINALIZE
        assert decision.warning == "found 2 page jobs for 3 pages"


class TestCanonicalImport:
    @pytest.mark.asyncio
    async def test_pages_fan_out_and_checker_finalizes(self, ctx, runner, clock, imdb, tmdb, db):
        imdb.list_pages = {
            1: list_page(ITEMS[0:2], total=5),
            2: list_page(ITEMS[2:4]),
            3: list_page(ITEMS[4:5]),
        }
        for tmdb_id, (imdb_id, title, year) in enumerate(ITEMS, start=500):
            tmdb.add_movie(tmdb_id, imdb_id=imdb_id, title=title, release_date=f"{year}-01-01")

        queue_canonical_import(ctx.queue, "test_list")
        await runner.drain()

        pages = ctx.queue.query_jobs(worker=CanonicalPageWorker.name)
        assert sorted(job.args["page"] for job in pages) == [1, 2, 3]
        assert all(job.state == JobState.COMPLETED for job in pages)
        checker = ctx.queue.query_jobs(worker=CanonicalCompletionWorker.name)
        assert len(checker) == 1
        assert checker[0].state == JobState.SCHEDULED

        clock.advance(30)
        await runner.drain()

        row = db.get_movie_list("test_list")
        assert row["last_import_status"] == "completed"
        assert row["expected_movie_count"] == 5
        assert row["last_movie_count"] == 5
        assert db.count_canonical("test_list") == 5
        movie = db.get_movie_by_imdb_id("tt0000103")
        assert db.canonical_sources(int(movie["id"]))["test_list"]["position"] == 3

    @pytest.mark.asyncio
    async def test_failed_page_marks_import_failed(self, ctx, runner, clock, imdb, db):
        imdb.list_pages = {1: list_page(ITEMS[0:2], total=3)}
        ctx.queue.enqueue(CanonicalImportWorker.new({"list_key": "test_list"}))
        await runner.drain()

        page_two = ctx.queue.query_jobs(worker=CanonicalPageWorker.name, args_match={"page": 2})[0]
        assert page_two.state == JobState.CANCELLED

        clock.advance(30)
        await runner.drain()
        assert db.get_movie_list("test_list")["last_import_status"] == "failed: 1 pages failed to process"

    @pytest.mark.asyncio
    async def test_exhausted_checker_raises_alert(self, ctx, runner, clock, captured, db):
        ctx.queue.enqueue(
            CanonicalPageWorker.new(
                {"list_key": "test_list", "list_id": "ls000000001", "page": 1, "total_pages": 1, "import_id": 77},
                schedule_in=10_000,
            )
        )
        ctx.queue.enqueue(
            CanonicalCompletionWorker.new(
                {"list_key": "test_list", "total_pages": 1, "import_id": 77},
                max_attempts=2,
            )
        )

        await runner.drain()
        clock.advance(30)
        await runner.drain()

        checker = ctx.queue.query_jobs(worker=CanonicalCompletionWorker.name)[0]
        assert checker.state == JobState.CANCELLED
        alerts = [n for n in captured if n.topic == TOPIC_ALERTS]
        assert alerts and alerts[0].event["type"] == "completion_check_exhausted"
        assert db.get_movie_list("test_list")["last_import_status"].startswith("failed: completion check exhausted")

    @pytest.mark.asyncio
    async def test_orchestrator_skips_when_pages_in_flight(self, ctx, runner, imdb):
        ctx.queue.enqueue(
            CanonicalPageWorker.new(
                {"list_key": "test_list", "list_id": "ls000000001", "page": 1, "total_pages": 1, "import_id": 5},
                schedule_in=600,
            )
        )
        queue_canonical_import(ctx.queue, "test_list")
        await runner.drain()
        orchestrator = ctx.queue.query_jobs(worker=CanonicalImportWorker.name)[0]
        assert orchestrator.state == JobState.COMPLETED
        assert orchestrator.meta["action"] == "already_running"
        assert imdb.fetched == []

    @pytest.mark.asyncio
    async def test_unknown_list_is_cancelled(self, ctx, runner):
        ctx.queue.enqueue(CanonicalImportWorker.new({"list_key": "nope"}))
        await runner.drain()
        assert ctx.queue.query_jobs(worker=CanonicalImportWorker.name)[0].state == JobState.CANCELLED
