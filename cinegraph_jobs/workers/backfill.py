"""Continuous backfill.

The loop alternates two steps of one worker: ``queue_batch`` runs gap analysis
and fans out fetch jobs, ``check_completion`` waits for them to drain and then
queues the next batch. Both steps are pure transition functions returning
effects; :class:`ContinuousBackfillWorker` persists and executes them.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from ..common import LOGGER, ServiceResult, chunks, now_epoch, parse_float
from ..gap_analysis import LAST_MISSING_COUNT, GapResult, MissingMovie
from ..jobqueue import ACTIVE_STATES, Complete, Fail, Job, JobQueue, JobState, QueueError, Snooze, UniqueSpec
from ..jobs import (
    BackfillArgs,
    CheckCompletion,
    MovieDetailsArgs,
    QueueBatch,
    ScheduledBackfillArgs,
    decode_backfill_args,
)
from ..notifications import TOPIC_BACKFILL
from ..progress import ProgressState
from .base import Outcome, Worker
from .details import MovieDetailsWorker


STATUS_KEY = "backfill_status"
CURRENT_BATCH_KEY = "backfill_current_batch"
STARTED_AT_KEY = "backfill_started_at"
TOTAL_QUEUED_KEY = "backfill_total_queued"
BATCH_SIZE_KEY = "backfill_batch_size"
MIN_POPULARITY_KEY = "backfill_min_popularity"
LAST_BATCH_AT_KEY = "backfill_last_batch_at"
COMPLETED_AT_KEY = "backfill_completed_at"

NOT_STARTED = "not_started"
RUNNING = "running"
PAUSED = "paused"
COMPLETED = "completed"


# -- effects -----------------------------------------------------------------------

@dataclass
class SetProgress:
    values: Dict[str, Any]


@dataclass
class IncrementProgress:
    """Add ``amount`` to a counter; ``None`` adds the jobs the preceding fetch batch inserted."""

    key: str
    amount: Optional[int] = None


@dataclass
class EnqueueFetchBatch:
    movies: List[MissingMovie]


@dataclass
class EnqueueStep:
    step: BackfillArgs
    delay_seconds: int = 0


@dataclass
class RescheduleSelf:
    delay_seconds: int


@dataclass
class Publish:
    event: Dict[str, Any]


@dataclass
class RetryLater:
    reason: str


Effect = Union[SetProgress, IncrementProgress, EnqueueFetchBatch, EnqueueStep, RescheduleSelf, Publish, RetryLater]


@dataclass
class Transition:
    outcome: str
    effects: List[Effect] = field(default_factory=list)
    needs_gap_analysis: bool = False


def plan_queue_batch(
    status: str,
    pending: int,
    threshold: int,
    step: QueueBatch,
    *,
    gap: Optional[GapResult] = None,
    check_delay_seconds: int = 60,
    now_ts: int = 0,
) -> Transition:
    """Decide the queue-batch step.

    Returns ``needs_gap_analysis`` when the caller must run gap analysis and
    call again with ``gap``; the analysis is skipped while the pipeline holds
    ``threshold`` or more pending jobs.
    """
    if status != RUNNING:
        return Transition(outcome=f"stopped ({status})")

    check = EnqueueStep(CheckCompletion(batch=step.batch), delay_seconds=check_delay_seconds)
    if pending >= threshold:
        return Transition(
            outcome="saturated",
            effects=[
                check,
                Publish({"type": "backfill_saturated", "batch": step.batch, "pending": pending}),
            ],
        )

    if gap is None:
        return Transition(outcome="needs_gap_analysis", needs_gap_analysis=True)
    if not gap.ok:
        return Transition(outcome="gap_failed", effects=[RetryLater(f"gap analysis failed: {gap.error}")])

    if not gap.missing:
        return Transition(
            outcome="completed",
            effects=[
                SetProgress({STATUS_KEY: COMPLETED, COMPLETED_AT_KEY: now_ts}),
                Publish({"type": "backfill_completed", "batch": step.batch}),
            ],
        )

    count = len(gap.missing)
    return Transition(
        outcome="queued",
        effects=[
            EnqueueFetchBatch(list(gap.missing)),
            IncrementProgress(TOTAL_QUEUED_KEY),
            SetProgress({LAST_BATCH_AT_KEY: now_ts, CURRENT_BATCH_KEY: step.batch}),
            check,
            Publish(
                {
                    "type": "backfill_batch_queued",
                    "batch": step.batch,
                    "queued": count,
                    "remaining": max(0, gap.missing_total - count),
                }
            ),
        ],
    )


def plan_completion_check(
    status: str,
    in_flight: int,
    step: CheckCompletion,
    *,
    batch_size: int,
    min_popularity: Optional[float],
    high_water_mark: int,
    long_poll_seconds: int,
    short_poll_seconds: int,
    now_ts: int = 0,
) -> Transition:
    if status != RUNNING:
        return Transition(outcome=f"stopped ({status})")
    if in_flight > high_water_mark:
        return Transition(outcome="waiting", effects=[RescheduleSelf(long_poll_seconds)])
    if in_flight > 0:
        return Transition(outcome="draining", effects=[RescheduleSelf(short_poll_seconds)])

    next_batch = step.batch + 1
    return Transition(
        outcome="advanced",
        effects=[
            SetProgress({CURRENT_BATCH_KEY: next_batch, LAST_BATCH_AT_KEY: now_ts}),
            EnqueueStep(QueueBatch(batch_size=batch_size, min_popularity=min_popularity, batch=next_batch)),
            Publish({"type": "backfill_batch_done", "batch": step.batch, "next_batch": next_batch}),
        ],
    )


# -- queue helpers ------------------------------------------------------------------

def count_pending_fetches(queue: JobQueue) -> int:
    return queue.count_jobs(worker=MovieDetailsWorker.name, states=ACTIVE_STATES)


def enqueue_fetch_batch(
    queue: JobQueue,
    movies: Sequence[MissingMovie],
    *,
    source: str,
    chunk_size: int,
) -> int:
    """Bulk-insert fetch jobs ``chunk_size`` at a time; returns how many were new."""
    inserted = 0
    for chunk in chunks(list(movies), chunk_size):
        handles = queue.bulk_enqueue(
            MovieDetailsWorker.new(
                MovieDetailsArgs(tmdb_id=movie.id, source=source, popularity=movie.popularity)
            )
            for movie in chunk
        )
        inserted += sum(1 for handle in handles if not handle.conflict)
    return inserted


def step_spec(step: BackfillArgs, delay_seconds: int = 0):
    return ContinuousBackfillWorker.new(step, schedule_in=delay_seconds)


def _store_popularity(value: Optional[float]) -> str:
    return "" if value is None else str(value)


# -- worker -------------------------------------------------------------------------

class ContinuousBackfillWorker(Worker):
    name = "continuous_backfill"
    queue = "maintenance"
    max_attempts = 10
    unique = UniqueSpec(keys=("action", "batch"), period_seconds=None)

    def decode(self, args: Dict[str, Any]) -> BackfillArgs:
        return decode_backfill_args(args)

    async def perform(self, job: Job, args: BackfillArgs) -> Outcome:
        cfg = self.config["backfill"]
        progress = self.ctx.progress
        status = progress.get(STATUS_KEY) or NOT_STARTED
        now_ts = now_epoch()

        if isinstance(args, QueueBatch):
            pending = count_pending_fetches(self.ctx.queue)
            threshold = int(cfg["pending_threshold"])
            transition = plan_queue_batch(
                status,
                pending,
                threshold,
                args,
                check_delay_seconds=int(cfg["short_poll_seconds"]),
                now_ts=now_ts,
            )
            if transition.needs_gap_analysis:
                gap = await self.ctx.gap.find_missing_ids(
                    min_popularity=args.min_popularity,
                    limit=args.batch_size,
                )
                # Re-read: stop() may have landed during the analysis.
                status = progress.get(STATUS_KEY) or NOT_STARTED
                transition = plan_queue_batch(
                    status,
                    pending,
                    threshold,
                    args,
                    gap=gap,
                    check_delay_seconds=int(cfg["short_poll_seconds"]),
                    now_ts=now_ts,
                )
        else:
            transition = plan_completion_check(
                status,
                count_pending_fetches(self.ctx.queue),
                args,
                batch_size=progress.get_int(BATCH_SIZE_KEY, int(cfg["batch_size"])),
                min_popularity=parse_float(progress.get(MIN_POPULARITY_KEY)),
                high_water_mark=int(cfg["high_water_mark"]),
                long_poll_seconds=int(cfg["long_poll_seconds"]),
                short_poll_seconds=int(cfg["short_poll_seconds"]),
                now_ts=now_ts,
            )

        LOGGER.debug("[Backfill] %s batch=%s -> %s", type(args).__name__, args.batch, transition.outcome)
        return self.apply(transition)

    def apply(self, transition: Transition) -> Outcome:
        progress: ProgressState = self.ctx.progress
        reschedule: Optional[int] = None
        queued = 0
        for effect in transition.effects:
            if isinstance(effect, SetProgress):
                progress.set_many(effect.values)
            elif isinstance(effect, IncrementProgress):
                progress.increment(effect.key, queued if effect.amount is None else effect.amount)
            elif isinstance(effect, EnqueueFetchBatch):
                try:
                    queued = enqueue_fetch_batch(
                        self.ctx.queue,
                        effect.movies,
                        source="continuous_backfill",
                        chunk_size=int(self.config["backfill"]["insert_chunk_size"]),
                    )
                except QueueError as exc:
                    return Fail(f"queue fetch batch: {exc}")
                LOGGER.info("[Backfill] Queued %s movie fetch job(s).", queued)
            elif isinstance(effect, EnqueueStep):
                try:
                    self.ctx.queue.enqueue(step_spec(effect.step, effect.delay_seconds))
                except QueueError as exc:
                    return Fail(f"queue next backfill step: {exc}")
            elif isinstance(effect, RescheduleSelf):
                reschedule = effect.delay_seconds
            elif isinstance(effect, Publish):
                event = dict(effect.event)
                if "queued" in event:
                    event["queued"] = queued
                self.ctx.notifications.publish(TOPIC_BACKFILL, event)
            elif isinstance(effect, RetryLater):
                LOGGER.warning("[Backfill] %s", effect.reason)
                return Fail(effect.reason)
        if reschedule is not None:
            return Snooze(reschedule)
        return Complete({"outcome": transition.outcome, "queued": queued})


# -- operator control -----------------------------------------------------------------

class BackfillController:
    """Start, stop, resume and inspect the continuous backfill loop."""

    def __init__(self, *, queue: JobQueue, progress: ProgressState, config: Dict[str, Any]):
        self.queue = queue
        self.progress = progress
        self.config = config

    def _status(self) -> str:
        return self.progress.get(STATUS_KEY) or NOT_STARTED

    def start(self, batch_size: Optional[int] = None, min_popularity: Optional[float] = None) -> ServiceResult:
        raw_status = self.progress.get(STATUS_KEY)
        if (raw_status or NOT_STARTED) == RUNNING:
            return ServiceResult.failure("already_running")

        cfg = self.config["backfill"]
        batch_size = int(batch_size or cfg["batch_size"])
        if batch_size < 1:
            return ServiceResult.failure("invalid_batch_size")
        if min_popularity is None:
            min_popularity = cfg.get("min_popularity")
        min_popularity = None if min_popularity is None else float(min_popularity)

        first = QueueBatch(batch_size=batch_size, min_popularity=min_popularity, batch=1)
        try:
            handle = self.queue.enqueue(step_spec(first))
        except QueueError as exc:
            LOGGER.error("[Backfill] Could not start: %s", exc)
            return ServiceResult.failure("enqueue_failed")

        if not self.progress.compare_and_set(STATUS_KEY, raw_status, RUNNING):
            return ServiceResult.failure("already_running")
        self.progress.set_many(
            {
                CURRENT_BATCH_KEY: 1,
                STARTED_AT_KEY: now_epoch(),
                TOTAL_QUEUED_KEY: 0,
                BATCH_SIZE_KEY: batch_size,
                MIN_POPULARITY_KEY: _store_popularity(min_popularity),
            }
        )
        LOGGER.info("[Backfill] Started (batch_size=%s, min_popularity=%s).", batch_size, min_popularity)
        return ServiceResult.success({"status": RUNNING, "job_id": handle.id})

    def stop(self) -> ServiceResult:
        self.progress.set(STATUS_KEY, PAUSED)
        LOGGER.info("[Backfill] Paused; in-flight jobs will finish.")
        return ServiceResult.success({"status": PAUSED})

    def resume(self) -> ServiceResult:
        status = self._status()
        if status == COMPLETED:
            return ServiceResult.failure("already_completed")
        if status == RUNNING:
            return ServiceResult.failure("already_running")
        if status == NOT_STARTED:
            return ServiceResult.failure("not_started")

        cfg = self.config["backfill"]
        step = QueueBatch(
            batch_size=self.progress.get_int(BATCH_SIZE_KEY, int(cfg["batch_size"])),
            min_popularity=parse_float(self.progress.get(MIN_POPULARITY_KEY)),
            batch=max(1, self.progress.get_int(CURRENT_BATCH_KEY, 1)),
        )
        try:
            self.queue.enqueue(step_spec(step))
        except QueueError as exc:
            LOGGER.error("[Backfill] Could not resume: %s", exc)
            return ServiceResult.failure("enqueue_failed")
        if not self.progress.compare_and_set(STATUS_KEY, status, RUNNING):
            return ServiceResult.failure("already_running")
        LOGGER.info("[Backfill] Resumed at batch %s.", step.batch)
        return ServiceResult.success({"status": RUNNING, "batch": step.batch})

    def status(self) -> Dict[str, Any]:
        batch_size = self.progress.get_int(BATCH_SIZE_KEY, int(self.config["backfill"]["batch_size"]))
        remaining = self.progress.get_int(LAST_MISSING_COUNT, 0)
        return {
            "status": self._status(),
            "current_batch": self.progress.get_int(CURRENT_BATCH_KEY, 0),
            "started_at": self.progress.get_int(STARTED_AT_KEY, 0) or None,
            "total_queued": self.progress.get_int(TOTAL_QUEUED_KEY, 0),
            "batch_size": batch_size,
            "min_popularity": parse_float(self.progress.get(MIN_POPULARITY_KEY)),
            "pending_jobs": count_pending_fetches(self.queue),
            "executing_jobs": self.queue.count_jobs(
                worker=MovieDetailsWorker.name, states=(JobState.EXECUTING,)
            ),
            "estimated_remaining": remaining,
            "estimated_batches_remaining": math.ceil(remaining / batch_size) if batch_size else 0,
            "last_batch_at": self.progress.get_int(LAST_BATCH_AT_KEY, 0) or None,
        }


class ScheduledBackfillWorker(Worker):
    """Cron-driven single batch; independent of the continuous loop's status."""

    name = "scheduled_backfill"
    queue = "maintenance"
    max_attempts = 3
    unique = UniqueSpec(keys=(), period_seconds=300)

    def decode(self, args: Dict[str, Any]) -> ScheduledBackfillArgs:
        return ScheduledBackfillArgs.from_args(args)

    async def perform(self, job: Job, args: ScheduledBackfillArgs) -> Outcome:
        cfg = self.config["scheduled_backfill"]
        batch_size = int(args.batch_size or cfg["batch_size"])
        min_popularity = args.min_popularity if args.min_popularity is not None else cfg.get("min_popularity")

        if not self.ctx.gap.baseline_is_fresh():
            refreshed = await self.ctx.gap.maybe_update_baseline(force=True)
            if not refreshed.ok:
                return Fail(f"baseline refresh failed: {refreshed.error}")

        pending = count_pending_fetches(self.ctx.queue)
        if pending >= int(cfg["pending_threshold"]):
            LOGGER.info("[Backfill] Scheduled run skipped: %s fetch job(s) pending.", pending)
            return Complete({"action": "skipped", "pending": pending})

        gap = await self.ctx.gap.find_missing_ids(min_popularity=min_popularity, limit=batch_size)
        if not gap.ok:
            return Fail(f"gap analysis failed: {gap.error}")
        if not gap.missing:
            return Complete({"action": "up_to_date"})
        try:
            queued = enqueue_fetch_batch(
                self.ctx.queue,
                gap.missing,
                source="scheduled_backfill",
                chunk_size=int(self.config["backfill"]["insert_chunk_size"]),
            )
        except QueueError as exc:
            return Fail(f"queue fetch batch: {exc}")
        LOGGER.info("[Backfill] Scheduled run queued %s of %s missing movie(s).", queued, gap.missing_total)
        self.ctx.notifications.publish(
            TOPIC_BACKFILL,
            {"type": "scheduled_backfill", "queued": queued, "missing_total": gap.missing_total},
        )
        return Complete({"action": "queued", "queued": queued})
