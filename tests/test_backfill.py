"""Tests for the continuous backfill loop."""
import pytest

from cinegraph_jobs.gap_analysis import GapResult, MissingMovie
from cinegraph_jobs.jobqueue import JobState
from cinegraph_jobs.jobs import CheckCompletion, MovieDetailsArgs, QueueBatch
from cinegraph_jobs.sources import ExportEntry
from cinegraph_jobs.transport import ErrorKind, SourceError
from cinegraph_jobs.workers.backfill import (
    COMPLETED,
    PAUSED,
    RUNNING,
    STATUS_KEY,
    TOTAL_QUEUED_KEY,
    BackfillController,
    EnqueueFetchBatch,
    EnqueueStep,
    IncrementProgress,
    Publish,
    RescheduleSelf,
    RetryLater,
    SetProgress,
    ContinuousBackfillWorker,
    count_pending_fetches,
    plan_completion_check,
    plan_queue_batch,
)
from cinegraph_jobs.workers.details import MovieDetailsWorker


STEP = QueueBatch(batch_size=10, min_popularity=1.0, batch=3)


def check_kwargs(**overrides):
    kwargs = dict(
        batch_size=10,
        min_popularity=1.0,
        high_water_mark=1000,
        long_poll_seconds=300,
        short_poll_seconds=60,
        now_ts=100,
    )
    kwargs.update(overrides)
    return kwargs


class TestPlanQueueBatch:
    def test_stops_unless_running(self):
        transition = plan_queue_batch(PAUSED, 0, 5000, STEP)
        assert transition.outcome == "stopped (paused)"
        assert transition.effects == []

    def test_saturated_pipeline_only_schedules_a_check(self):
        transition = plan_queue_batch(RUNNING, 6000, 5000, STEP, check_delay_seconds=60)
        assert transition.outcome == "saturated"
        assert not transition.needs_gap_analysis
        steps = [e for e in transition.effects if isinstance(e, EnqueueStep)]
        assert steps == [EnqueueStep(CheckCompletion(batch=3), delay_seconds=60)]
        assert not any(isinstance(e, EnqueueFetchBatch) for e in transition.effects)

    def test_asks_for_gap_analysis_below_threshold(self):
        transition = plan_queue_batch(RUNNING, 10, 5000, STEP)
        assert transition.needs_gap_analysis

    def test_gap_failure_retries(self):
        gap = GapResult(error=SourceError(ErrorKind.TRANSIENT, "export down"))
        transition = plan_queue_batch(RUNNING, 0, 5000, STEP, gap=gap)
        assert transition.outcome == "gap_failed"
        assert isinstance(transition.effects[0], RetryLater)

    def test_empty_gap_completes(self):
        transition = plan_queue_batch(RUNNING, 0, 5000, STEP, gap=GapResult(), now_ts=42)
        assert transition.outcome == "completed"
        assert SetProgress({STATUS_KEY: COMPLETED, "backfill_completed_at": 42}) in transition.effects

    def test_queues_missing_movies_and_a_check(self):
        missing = [MissingMovie(id=i, popularity=2.0, title="x") for i in (7, 8)]
        gap = GapResult(missing=missing, missing_total=12)
        transition = plan_queue_batch(RUNNING, 0, 5000, STEP, gap=gap, check_delay_seconds=60)
        assert transition.outcome == "queued"
        assert transition.effects[0] == EnqueueFetchBatch(missing)
        assert EnqueueStep(CheckCompletion(batch=3), delay_seconds=60) in transition.effects
        assert IncrementProgress(TOTAL_QUEUED_KEY) in transition.effects
        published = [e.event for e in transition.effects if isinstance(e, Publish)]
        assert published[0]["remaining"] == 10


class TestPlanCompletionCheck:
    def test_waits_long_above_high_water_mark(self):
        transition = plan_completion_check(RUNNING, 5000, CheckCompletion(batch=1), **check_kwargs())
        assert transition.effects == [RescheduleSelf(300)]

    def test_drains_with_short_poll(self):
        transition = plan_completion_check(RUNNING, 12, CheckCompletion(batch=1), **check_kwargs())
        assert transition.effects == [RescheduleSelf(60)]

    def test_advances_when_drained(self):
        transition = plan_completion_check(RUNNING, 0, CheckCompletion(batch=4), **check_kwargs())
        assert transition.outcome == "advanced"
        assert EnqueueStep(QueueBatch(batch_size=10, min_popularity=1.0, batch=5)) in transition.effects

    def test_stopped_check_does_nothing(self):
        transition = plan_completion_check(COMPLETED, 0, CheckCompletion(batch=4), **check_kwargs())
        assert transition.outcome == "stopped (completed)"
        assert transition.effects == []


class TestBackfillController:
    def controller(self, ctx):
        return BackfillController(queue=ctx.queue, progress=ctx.progress, config=ctx.config)

    def test_start_queues_first_batch(self, ctx):
        result = self.controller(ctx).start(batch_size=25)
        assert result.ok
        assert ctx.progress.get(STATUS_KEY) == RUNNING
        jobs = ctx.queue.query_jobs(worker=ContinuousBackfillWorker.name)
        assert [j.args["action"] for j in jobs] == ["queue_batch"]
        assert jobs[0].args["batch_size"] == 25

    def test_start_while_running_changes_nothing(self, ctx):
        controller = self.controller(ctx)
        controller.start()
        before = ctx.progress.items("backfill_")
        result = controller.start(batch_size=5)
        assert not result.ok
        assert result.error == "already_running"
        assert ctx.queue.count_jobs(worker=ContinuousBackfillWorker.name) == 1
        assert ctx.progress.items("backfill_") == before

    def test_resume_requires_prior_start(self, ctx):
        assert self.controller(ctx).resume().error == "not_started"

    def test_stop_then_resume(self, ctx):
        controller = self.controller(ctx)
        controller.start()
        assert controller.stop().value == {"status": PAUSED}
        assert controller.resume().ok
        assert ctx.progress.get(STATUS_KEY) == RUNNING

    def test_resume_after_completion_is_refused(self, ctx):
        ctx.progress.set(STATUS_KEY, COMPLETED)
        assert self.controller(ctx).resume().error == "already_completed"

    def test_invalid_batch_size(self, ctx):
        assert self.controller(ctx).start(batch_size=-3).error == "invalid_batch_size"

    def test_status_reports_pending_jobs(self, ctx):
        ctx.queue.enqueue(MovieDetailsWorker.new(MovieDetailsArgs(tmdb_id=1, source="continuous_backfill")))
        status = self.controller(ctx).status()
        assert status["status"] == "not_started"
        assert status["pending_jobs"] == 1


class TestContinuousBackfillWorker:
    @pytest.mark.asyncio
    async def test_saturated_queue_skips_gap_analysis(self, ctx, runner, export_client):
        ctx.config["backfill"]["pending_threshold"] = 2
        for tmdb_id in (1, 2, 3):
            ctx.queue.enqueue(MovieDetailsWorker.new(MovieDetailsArgs(tmdb_id=tmdb_id, source="manual")))
        ctx.progress.set(STATUS_KEY, RUNNING)
        handle = ctx.queue.enqueue(
            ContinuousBackfillWorker.new(QueueBatch(batch_size=10, min_popularity=None, batch=1))
        )
        job = ctx.queue.claim_next(["maintenance"])
        assert job.id == handle.id

        state = await runner.execute(job)

        assert state == JobState.COMPLETED
        assert export_client.fetch_calls == 0
        checks = ctx.queue.query_jobs(worker=ContinuousBackfillWorker.name, args_match={"action": "check_completion"})
        assert len(checks) == 1
        assert checks[0].state == JobState.SCHEDULED

    @pytest.mark.asyncio
    async def test_gap_failure_fails_the_attempt(self, ctx, runner, export_client):
        from cinegraph_jobs.transport import SourceResult

        export_client.fail_with = SourceResult.failure(ErrorKind.TRANSIENT, "timeout")
        ctx.progress.set(STATUS_KEY, RUNNING)
        ctx.queue.enqueue(ContinuousBackfillWorker.new(QueueBatch(batch_size=10, min_popularity=None, batch=1)))
        job = ctx.queue.claim_next(["maintenance"])
        assert await runner.execute(job) == JobState.RETRYABLE

    @pytest.mark.asyncio
    async def test_total_queued_skips_movies_already_pending(self, ctx, runner, export_client, captured):
        export_client.entries = [ExportEntry(id=i, popularity=5.0, title=f"Movie {i}") for i in (1, 2, 3, 4)]
        for tmdb_id in (2, 3):
            ctx.queue.enqueue(MovieDetailsWorker.new(MovieDetailsArgs(tmdb_id=tmdb_id, source="manual")))
        ctx.progress.set(STATUS_KEY, RUNNING)
        ctx.queue.enqueue(ContinuousBackfillWorker.new(QueueBatch(batch_size=10, min_popularity=None, batch=1)))
        job = ctx.queue.claim_next(["maintenance"])

        assert await runner.execute(job) == JobState.COMPLETED

        assert ctx.progress.get_int(TOTAL_QUEUED_KEY) == 2
        assert ctx.queue.count_jobs(worker=MovieDetailsWorker.name) == 4
        queued = [n.event for n in captured if n.event.get("type") == "backfill_batch_queued"]
        assert queued[0]["queued"] == 2

    @pytest.mark.asyncio
    async def test_loop_terminates_over_finite_universe(self, ctx, runner, clock, db, tmdb, export_client, captured):
        export_client.entries = [ExportEntry(id=i, popularity=float(i), title=f"Movie {i}") for i in range(1, 31)]
        for tmdb_id in range(1, 6):
            db.upsert_movie({"id": tmdb_id, "title": f"Movie {tmdb_id}"}, import_status="full")
        tmdb.missing = {17, 23}

        controller = BackfillController(queue=ctx.queue, progress=ctx.progress, config=ctx.config)
        assert controller.start(batch_size=10, min_popularity=1.0).ok

        for _ in range(50):
            await runner.drain()
            if ctx.progress.get(STATUS_KEY) == COMPLETED:
                break
            clock.advance(int(ctx.config["backfill"]["short_poll_seconds"]) + 1)

        assert ctx.progress.get(STATUS_KEY) == COMPLETED
        assert count_pending_fetches(ctx.queue) == 0
        assert db.known_tmdb_ids() == set(range(1, 31)) - {17, 23}
        assert db.unreachable_tmdb_ids() == {17, 23}
        assert ctx.progress.get_int(TOTAL_QUEUED_KEY) == 25
        assert any(n.event.get("type") == "backfill_completed" for n in captured)
