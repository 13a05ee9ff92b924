import pytest

from cinegraph_jobs.jobqueue import JobState
from cinegraph_jobs.jobs import YearCompletionArgs, YearDiscoveryArgs, YearImportArgs
from cinegraph_jobs.notifications import TOPIC_ALERTS
from cinegraph_jobs.workers.details import MovieDetailsWorker
from cinegraph_jobs.workers.years import (
    CURRENT_YEAR_KEY,
    DailyYearImportWorker,
    YearCompletionWorker,
    YearDiscoveryWorker,
    popularity_priority,
    queue_year_import,
    year_key,
)


def discover_page(ids, total_results, total_pages):
    return {
        "results": [{"id": tmdb_id, "popularity": float(tmdb_id % 200)} for tmdb_id in ids],
        "total_results": total_results,
        "total_pages": total_pages,
    }


@pytest.mark.parametrize("popularity,priority", [(250.0, 0), (10.0, 1), (1.0, 2), (0.3, 3), (None, 3)])
def test_popularity_priority(popularity, priority):
    assert popularity_priority(popularity) == priority


class TestYearImport:
    @pytest.mark.asyncio
    async def test_year_runs_to_completion(self, ctx, runner, clock, tmdb, db, captured):
        tmdb.discover_pages = {
            1: discover_page([901, 902], total_results=3, total_pages=2),
            2: discover_page([903], total_results=3, total_pages=2),
        }
        queue_year_import(ctx.queue, 2020)
        await runner.drain()

        pages = ctx.queue.query_jobs(worker=YearDiscoveryWorker.name)
        assert sorted(job.args["page"] for job in pages) == [1, 2]
        fetches = ctx.queue.query_jobs(worker=MovieDetailsWorker.name)
        assert sorted(job.args["tmdb_id"] for job in fetches) == [901, 902, 903]
        assert all(job.priority == popularity_priority(job.args["popularity"]) for job in fetches)
        assert ctx.progress.get(year_key(2020, "status")) == "in_progress"
        assert ctx.progress.get_int(CURRENT_YEAR_KEY) == 2020

        clock.advance(ctx.config["years"]["check_interval_seconds"])
        await runner.drain()

        checker = ctx.queue.query_jobs(worker=YearCompletionWorker.name)[0]
        assert checker.state == JobState.COMPLETED
        assert checker.meta["status"] == "completed"
        assert ctx.progress.get(year_key(2020, "complete")) == "true"
        assert db.count_movies_for_year(2020) == 3
        assert any(n.event.get("type") == "year_import_completed" for n in captured)

    @pytest.mark.asyncio
    async def test_checker_snoozes_while_details_in_flight(self, ctx, runner, clock, tmdb):
        tmdb.discover_pages = {1: discover_page([910], total_results=1, total_pages=1)}
        ctx.queue.enqueue(DailyYearImportWorker.new(YearImportArgs(year=2019)))
        await runner.execute(ctx.queue.claim_next(["tmdb_orchestration"]))
        await runner.execute(ctx.queue.claim_next(["tmdb_discovery"]))

        clock.advance(ctx.config["years"]["check_interval_seconds"])
        checker = ctx.queue.claim_next(["tmdb_orchestration"])
        assert checker.worker == YearCompletionWorker.name
        assert await runner.execute(checker) == JobState.SCHEDULED
        assert ctx.queue.get_job(checker.id).meta["in_flight"] == 1

    @pytest.mark.asyncio
    async def test_complete_year_is_marked_without_queueing(self, ctx, runner, tmdb, db):
        tmdb.discover_pages = {1: discover_page([920], total_results=1, total_pages=1)}
        db.upsert_movie({"id": 920, "title": "Done", "release_date": "2018-02-02"}, import_status="full")
        ctx.queue.enqueue(DailyYearImportWorker.new(YearImportArgs(year=2018)))
        job = ctx.queue.claim_next(["tmdb_orchestration"])
        await runner.execute(job)
        assert ctx.queue.get_job(job.id).meta["action"] == "already_complete"
        assert ctx.progress.get(year_key(2018, "complete")) == "true"
        assert ctx.queue.count_jobs(worker=YearDiscoveryWorker.name) == 0

    @pytest.mark.asyncio
    async def test_year_before_earliest_is_cancelled(self, ctx, runner):
        ctx.queue.enqueue(DailyYearImportWorker.new(YearImportArgs(year=1800)))
        job = ctx.queue.claim_next(["tmdb_orchestration"])
        assert await runner.execute(job) == JobState.CANCELLED

    @pytest.mark.asyncio
    async def test_exhausted_checker_marks_year_failed(self, ctx, runner, clock, captured):
        ctx.queue.enqueue(YearDiscoveryWorker.new(YearDiscoveryArgs(year=2017, page=1), schedule_in=10_000))
        ctx.queue.enqueue(
            YearCompletionWorker.new(YearCompletionArgs(year=2017, total_pages=1, expected_count=20), max_attempts=2)
        )

        await runner.drain()
        clock.advance(ctx.config["years"]["check_interval_seconds"])
        await runner.drain()

        checker = ctx.queue.query_jobs(worker=YearCompletionWorker.name)[0]
        assert checker.state == JobState.CANCELLED
        assert ctx.progress.get(year_key(2017, "status")) == "failed: completion check exhausted after 2 checks"
        assert ctx.progress.get(year_key(2017, "complete")) is None
        alerts = [n for n in captured if n.topic == TOPIC_ALERTS]
        assert alerts and alerts[0].event == {
            "type": "completion_check_exhausted",
            "worker": YearCompletionWorker.name,
            "year": 2017,
            "reason": "completion check exhausted after 2 checks",
        }
