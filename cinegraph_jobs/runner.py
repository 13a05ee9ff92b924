from __future__ import annotations

import asyncio
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type

from .common import LOGGER, now_epoch
from .database import LocalDatabase
from .gap_analysis import GapAnalyzer
from .jobqueue import Cancel, Complete, Fail, Job, JobQueue, JobState, QueueError, Snooze
from .jobs import JobArgsError, ScheduledBackfillArgs, YearImportArgs
from .logs import job_log_context
from .notifications import NotificationSink
from .progress import ProgressState
from .quality import QualityFilter
from .reconciliation import MatchThresholds, MovieMatcher, PersonResolver
from .sources import ExportClient, IMDbClient, OMDbClient, TMDBClient
from .transport import ServiceGate
from .workers import WORKERS, Outcome, Worker, WorkerContext
from .workers.backfill import ScheduledBackfillWorker
from .workers.years import DailyYearImportWorker


CRON_LAST_RUN_PREFIX = "cron_last_run_"


def open_database(config: Dict[str, Any]) -> LocalDatabase:
    db_path = Path(config["runtime"]["database_path"]).expanduser().resolve()
    return LocalDatabase(db_path)


def build_context(
    config: Dict[str, Any],
    db: LocalDatabase,
    *,
    notifications: Optional[NotificationSink] = None,
) -> WorkerContext:
    """Wire the store, queue, gates and source clients shared by every worker."""
    db.sync_movie_lists(config["canonical"]["lists"])
    db.sync_festival_organizations(config["festivals"]["events"])

    queue = JobQueue(
        db.conn,
        retry_base_seconds=int(config["retry"]["base_seconds"]),
        retry_max_seconds=int(config["retry"]["max_seconds"]),
    )
    progress = ProgressState(db)
    tmdb = TMDBClient(
        api_key=config["api_keys"]["tmdb"],
        config=config["tmdb"],
        gate=ServiceGate.from_config("tmdb", db, config["tmdb"]["rate_limit"]),
    )
    omdb = OMDbClient(
        api_key=config["api_keys"]["omdb"],
        config=config["omdb"],
        gate=ServiceGate.from_config("omdb", db, config["omdb"]["rate_limit"]),
    )
    imdb = IMDbClient(
        config=config["imdb"],
        gate=ServiceGate.from_config("imdb", db, config["imdb"]["rate_limit"]),
    )
    gap = GapAnalyzer(
        db=db,
        progress=progress,
        export_client=ExportClient(config=config["export"]),
        refresh_hours=int(config["export"]["baseline_refresh_hours"]),
    )
    thresholds = MatchThresholds.from_config(config["matching"])
    return WorkerContext(
        config=config,
        db=db,
        queue=queue,
        progress=progress,
        notifications=notifications or NotificationSink(),
        tmdb=tmdb,
        omdb=omdb,
        imdb=imdb,
        gap=gap,
        quality=QualityFilter(config["quality"]),
        matcher=MovieMatcher(db=db, tmdb=tmdb, thresholds=thresholds),
        people=PersonResolver(db=db, tmdb=tmdb, thresholds=thresholds),
    )


class JobRunner:
    """Claims due jobs per queue, runs their worker and records the outcome."""

    def __init__(
        self,
        *,
        ctx: WorkerContext,
        workers: Optional[Mapping[str, Type[Worker]]] = None,
    ):
        self.ctx = ctx
        self.queue: JobQueue = ctx.queue
        self.workers = dict(workers if workers is not None else WORKERS)
        runtime = ctx.config["runtime"]
        self.poll_seconds = float(runtime["poll_seconds"])
        self.lease_seconds = int(runtime["job_lease_seconds"])
        self.run_mode = str(runtime["run_mode"])
        self.queue_concurrency: Dict[str, int] = {
            name: int(count) for name, count in ctx.config["queues"].items() if int(count) > 0
        }
        self.cron_intervals: Dict[str, Tuple[int, Any]] = {
            ScheduledBackfillWorker.name: (
                int(ctx.config["cron"]["scheduled_backfill_seconds"]),
                lambda: ScheduledBackfillWorker.new(ScheduledBackfillArgs()),
            ),
            DailyYearImportWorker.name: (
                int(ctx.config["cron"]["daily_year_import_seconds"]),
                lambda: DailyYearImportWorker.new(YearImportArgs()),
            ),
        }

        self.stats: Counter = Counter()
        self.executing: Dict[int, str] = {}
        self.started_at = now_epoch()

    # -- single job --------------------------------------------------------------

    async def execute(self, job: Job) -> str:
        """Run one claimed job to an outcome and persist it; returns the new state."""
        worker_cls = self.workers.get(job.worker)
        if worker_cls is None:
            LOGGER.error("[Runner] No worker registered for %s (job %s).", job.worker, job.id)
            self.queue.discard(job.id, f"unknown worker {job.worker}")
            self.stats[JobState.DISCARDED] += 1
            return JobState.DISCARDED

        worker = worker_cls(self.ctx)
        try:
            args = worker.decode(job.args)
        except JobArgsError as exc:
            LOGGER.error("[Runner] %s #%s has invalid args: %s", job.worker, job.id, exc)
            self.queue.cancel(job.id, f"invalid args: {exc}")
            self.stats[JobState.CANCELLED] += 1
            return JobState.CANCELLED

        timeout = worker.timeout_seconds()
        self.executing[job.id] = job.worker
        try:
            with job_log_context(job.worker, job.id):
                if timeout:
                    outcome = await asyncio.wait_for(worker.perform(job, args), timeout=timeout)
                else:
                    outcome = await worker.perform(job, args)
        except asyncio.TimeoutError:
            outcome = Fail(f"timeout after {timeout:.0f}s")
        except Exception as exc:
            LOGGER.exception("[Runner] %s #%s raised.", job.worker, job.id)
            outcome = Fail(f"{type(exc).__name__}: {exc}")
        finally:
            self.executing.pop(job.id, None)

        state = self.apply_outcome(job, outcome)
        self.stats[state] += 1
        return state

    def apply_outcome(self, job: Job, outcome: Outcome) -> str:
        label = f"{job.worker} #{job.id}"
        if isinstance(outcome, Complete):
            self.queue.complete(job.id, outcome.meta)
            LOGGER.debug("[Runner] %s completed.", label)
            return JobState.COMPLETED
        if isinstance(outcome, Snooze):
            state = self.queue.snooze(
                job,
                outcome.seconds,
                consume_attempt=outcome.consume_attempt,
                meta=outcome.meta,
            )
            LOGGER.debug("[Runner] %s snoozed %ss -> %s.", label, outcome.seconds, state)
            return state
        if isinstance(outcome, Cancel):
            self.queue.cancel(job.id, outcome.reason)
            LOGGER.info("[Runner] %s cancelled: %s", label, outcome.reason)
            return JobState.CANCELLED
        if isinstance(outcome, Fail):
            reason = outcome.reason
        else:
            reason = f"unexpected return value {outcome!r}"
        state = self.queue.fail(job, reason)
        if state == JobState.DISCARDED:
            LOGGER.error("[Runner] %s discarded after %s attempt(s): %s", label, job.attempt, reason)
        else:
            LOGGER.warning(
                "[Runner] %s failed (attempt %s/%s): %s", label, job.attempt, job.max_attempts, reason
            )
        return state

    async def drain(self, max_jobs: Optional[int] = None) -> int:
        """Run due jobs one at a time across all queues until none is due."""
        ran = 0
        queues = list(self.queue_concurrency)
        while max_jobs is None or ran < max_jobs:
            job = self.queue.claim_next(queues)
            if job is None:
                break
            await self.execute(job)
            ran += 1
        return ran

    # -- loops -------------------------------------------------------------------

    async def _sleep(self, stop_event: asyncio.Event, seconds: float) -> bool:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _worker_loop(self, stop_event: asyncio.Event, queue_name: str) -> None:
        while not stop_event.is_set():
            try:
                job = self.queue.claim_next([queue_name])
            except QueueError as exc:
                LOGGER.warning("[Runner] Claim on %s failed: %s", queue_name, exc)
                job = None
            if job is None:
                await self._sleep(stop_event, self.poll_seconds)
                continue
            try:
                await self.execute(job)
            except QueueError as exc:
                LOGGER.error("[Runner] Could not record outcome of job %s: %s", job.id, exc)

    async def _lease_recovery_loop(self, stop_event: asyncio.Event) -> None:
        interval = max(30, self.lease_seconds // 3)
        while not await self._sleep(stop_event, interval):
            try:
                recovered = self.queue.recover_stale(self.lease_seconds)
            except QueueError as exc:
                LOGGER.warning("[Runner] Lease recovery failed: %s", exc)
                continue
            if recovered:
                LOGGER.warning(
                    "[Runner] Recovered %s job(s) executing longer than %ss.", recovered, self.lease_seconds
                )

    def fire_due_cron(self, now_ts: Optional[int] = None) -> List[str]:
        now_ts = now_epoch() if now_ts is None else now_ts
        fired: List[str] = []
        for name, (interval, build_spec) in self.cron_intervals.items():
            if interval <= 0:
                continue
            key = f"{CRON_LAST_RUN_PREFIX}{name}"
            last_run = self.ctx.progress.get_int(key, 0)
            if last_run and now_ts - last_run < interval:
                continue
            try:
                handle = self.queue.enqueue(build_spec())
            except QueueError as exc:
                LOGGER.warning("[Cron] Could not queue %s: %s", name, exc)
                continue
            self.ctx.progress.set(key, now_ts)
            fired.append(name)
            LOGGER.info("[Cron] Queued %s (job %s%s).", name, handle.id, ", existing" if handle.conflict else "")
        return fired

    async def _cron_loop(self, stop_event: asyncio.Event) -> None:
        if not any(interval > 0 for interval, _ in self.cron_intervals.values()):
            return
        while not stop_event.is_set():
            self.fire_due_cron()
            if await self._sleep(stop_event, 30):
                break

    def is_idle(self, now_ts: Optional[int] = None) -> bool:
        now_ts = now_epoch() if now_ts is None else now_ts
        if self.executing or self.queue.count_executing():
            return False
        due = self.queue.next_due_at(list(self.queue_concurrency))
        return due is None or due > now_ts + self.poll_seconds

    async def _idle_watch_loop(self, stop_event: asyncio.Event) -> None:
        # Two consecutive idle observations guard against a job between claim and execute.
        idle_checks = 0
        while not await self._sleep(stop_event, max(self.poll_seconds, 0.5)):
            idle_checks = idle_checks + 1 if self.is_idle() else 0
            if idle_checks >= 2:
                LOGGER.info("[Runner] Nothing left to run; stopping (run_mode=until_idle).")
                stop_event.set()

    async def run(self, stop_event: asyncio.Event) -> None:
        recovered = self.queue.recover_executing()
        if recovered:
            LOGGER.info("[Runner] Startup recovery: returned %s executing job(s) to the queue.", recovered)
        LOGGER.info(
            "[Runner] Starting queues: %s",
            ", ".join(f"{name}={count}" for name, count in sorted(self.queue_concurrency.items())),
        )

        tasks = [
            asyncio.create_task(self._worker_loop(stop_event, name), name=f"queue_{name}_{index + 1}")
            for name, count in self.queue_concurrency.items()
            for index in range(count)
        ]
        tasks.append(asyncio.create_task(self._lease_recovery_loop(stop_event), name="lease_recovery"))
        tasks.append(asyncio.create_task(self._cron_loop(stop_event), name="cron"))
        if self.run_mode == "until_idle":
            tasks.append(asyncio.create_task(self._idle_watch_loop(stop_event), name="idle_watch"))
        stop_waiter = asyncio.create_task(stop_event.wait())

        done, pending = await asyncio.wait([*tasks, stop_waiter], return_when=asyncio.FIRST_COMPLETED)
        # The cron loop returns at once when no cron is configured.
        while stop_waiter not in done and all(task.exception() is None for task in done):
            done_more, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            done |= done_more

        errors = [task.exception() for task in done if task is not stop_waiter and task.exception() is not None]
        if errors:
            stop_event.set()
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        self.queue.recover_executing()
        LOGGER.info("[Runner] Shutdown recovery: returned executing jobs to the queue.")
        if errors:
            raise errors[0]
        LOGGER.info("[Runner] Stopped. %s", dict(self.stats))
