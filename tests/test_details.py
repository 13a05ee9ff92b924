import json

import pytest

from cinegraph_jobs.jobqueue import JobState
from cinegraph_jobs.jobs import MovieDetailsArgs
from cinegraph_jobs.transport import ErrorKind, SourceResult
from cinegraph_jobs.workers.details import MovieDetailsWorker


async def run_details(ctx, runner, args):
    ctx.queue.enqueue(MovieDetailsWorker.new(args))
    job = ctx.queue.claim_next(["tmdb_details"])
    state = await runner.execute(job)
    return state, ctx.queue.get_job(job.id)


class TestMovieDetailsWorker:
    @pytest.mark.asyncio
    async def test_imports_full_quality_movie(self, ctx, runner, db, tmdb):
        tmdb.add_movie(11, title="Star Wars")
        state, job = await run_details(ctx, runner, MovieDetailsArgs(tmdb_id=11, source="manual"))
        assert state == JobState.COMPLETED
        assert job.meta["action"] == "imported"
        assert job.meta["import_status"] == "full"
        assert db.get_movie_by_tmdb_id(11)["title"] == "Star Wars"
        assert ctx.progress.get_int("manual_imported") == 1

    @pytest.mark.asyncio
    async def test_existing_movie_is_skipped_without_fetch(self, ctx, runner, db, tmdb):
        db.upsert_movie({"id": 12, "title": "Known"}, import_status="full")
        state, job = await run_details(ctx, runner, MovieDetailsArgs(tmdb_id=12, source="continuous_backfill"))
        assert state == JobState.COMPLETED
        assert job.meta["action"] == "skipped"
        assert tmdb.calls == []

    @pytest.mark.asyncio
    async def test_low_quality_movie_is_soft_imported(self, ctx, runner, db, tmdb):
        tmdb.add_movie(13, poster_path=None, vote_count=2, popularity=0.1)
        state, job = await run_details(ctx, runner, MovieDetailsArgs(tmdb_id=13))
        assert job.meta["import_status"] == "soft"
        row = db.get_movie_by_tmdb_id(13)
        assert row["import_status"] == "soft"
        assert json.loads(row["failed_criteria"]) == ["has_poster", "has_votes", "has_popularity"]

    @pytest.mark.asyncio
    async def test_not_found_completes_and_records_failure(self, ctx, runner, db, tmdb):
        tmdb.missing = {14}
        state, job = await run_details(ctx, runner, MovieDetailsArgs(tmdb_id=14, source="continuous_backfill"))
        assert state == JobState.COMPLETED
        assert job.meta["action"] == "not_found"
        assert db.unreachable_tmdb_ids() == {14}
        assert ctx.progress.get_int("continuous_backfill_failed") == 1

    @pytest.mark.asyncio
    async def test_imdb_id_without_tmdb_match(self, ctx, runner, db):
        state, job = await run_details(ctx, runner, MovieDetailsArgs(imdb_id="tt7654321", source="festival_import"))
        assert state == JobState.COMPLETED
        assert job.meta == {"action": "not_found", "target": "tt7654321"}
        assert db.count_lookup_failures("tmdb") == 1
        assert db.unreachable_tmdb_ids() == set()

    @pytest.mark.asyncio
    async def test_imdb_id_resolves_through_find(self, ctx, runner, db, tmdb):
        tmdb.add_movie(15, imdb_id="tt0000015")
        state, job = await run_details(ctx, runner, MovieDetailsArgs(imdb_id="tt0000015"))
        assert job.meta["tmdb_id"] == 15
        assert tmdb.calls == ["find:tt0000015", "get_movie:15"]

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, ctx, runner, tmdb):
        async def unavailable(tmdb_id):
            return SourceResult.failure(ErrorKind.TRANSIENT, "service unavailable", 503)

        tmdb.get_movie = unavailable
        state, job = await run_details(ctx, runner, MovieDetailsArgs(tmdb_id=16))
        assert state == JobState.RETRYABLE
        assert job.attempt == 1

    @pytest.mark.asyncio
    async def test_marks_canonical_sources(self, ctx, runner, db, tmdb):
        args = MovieDetailsArgs(
            tmdb_id=17,
            source="canonical_import",
            canonical_sources={"test_list": {"list_position": 4, "list_id": "ls000000001"}},
        )
        await run_details(ctx, runner, args)
        movie = db.get_movie_by_tmdb_id(17)
        assert db.canonical_sources(int(movie["id"]))["test_list"]["list_position"] == 4

    @pytest.mark.asyncio
    async def test_unknown_source_tag_is_cancelled(self, ctx, runner):
        ctx.queue.enqueue(MovieDetailsWorker.new({"tmdb_id": 1, "source": "somewhere"}))
        job = ctx.queue.claim_next(["tmdb_details"])
        assert await runner.execute(job) == JobState.CANCELLED
        assert "unknown source tag" in ctx.queue.get_job(job.id).errors[-1]["error"]
