from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Optional, Union

from ..common import LOGGER
from ..database import LocalDatabase
from ..gap_analysis import GapAnalyzer
from ..jobqueue import Cancel, Complete, Fail, Job, JobHandle, JobQueue, JobSpec, QueueError, Snooze, UniqueSpec
from ..notifications import NotificationSink
from ..progress import ProgressState
from ..quality import QualityFilter
from ..reconciliation import MovieMatcher, PersonResolver
from ..sources import IMDbClient, OMDbClient, TMDBClient
from ..transport import ErrorKind, SourceError


Outcome = Union[Complete, Fail, Cancel, Snooze]


@dataclass
class WorkerContext:
    """Everything a worker may touch; built once per process and shared."""

    config: Dict[str, Any]
    db: LocalDatabase
    queue: JobQueue
    progress: ProgressState
    notifications: NotificationSink
    tmdb: TMDBClient
    omdb: OMDbClient
    imdb: IMDbClient
    gap: GapAnalyzer
    quality: QualityFilter
    matcher: MovieMatcher
    people: PersonResolver


class Worker:
    name: ClassVar[str] = ""
    queue: ClassVar[str] = "default"
    max_attempts: ClassVar[int] = 20
    priority: ClassVar[int] = 0
    unique: ClassVar[Optional[UniqueSpec]] = None

    def __init__(self, ctx: WorkerContext):
        self.ctx = ctx

    @property
    def config(self) -> Dict[str, Any]:
        return self.ctx.config

    def timeout_seconds(self) -> Optional[float]:
        return None

    def decode(self, args: Dict[str, Any]) -> Any:
        raise NotImplementedError

    async def perform(self, job: Job, args: Any) -> Outcome:
        raise NotImplementedError

    @classmethod
    def new(
        cls,
        args: Any,
        *,
        schedule_in: int = 0,
        priority: Optional[int] = None,
        max_attempts: Optional[int] = None,
        unique: Optional[UniqueSpec] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> JobSpec:
        payload = args.to_args() if hasattr(args, "to_args") else dict(args)
        return JobSpec(
            worker=cls.name,
            queue=cls.queue,
            args=payload,
            max_attempts=cls.max_attempts if max_attempts is None else max_attempts,
            priority=cls.priority if priority is None else priority,
            schedule_in=schedule_in,
            unique=unique if unique is not None else cls.unique,
            meta=dict(meta or {}),
        )

    def enqueue_side_effect(self, spec: JobSpec, what: str) -> Optional[JobHandle]:
        """Enqueue a non-critical follow-up; failures are logged, never raised."""
        try:
            return self.ctx.queue.enqueue(spec)
        except QueueError as exc:
            LOGGER.warning("[%s] Could not queue %s: %s", self.name, what, exc)
            return None

    def store_side_effect(self, what: str, action, *args: Any, **kwargs: Any) -> Any:
        try:
            return action(*args, **kwargs)
        except sqlite3.Error as exc:
            LOGGER.warning("[%s] %s failed: %s", self.name, what, exc)
            return None


def outcome_for_error(error: SourceError, what: str) -> Outcome:
    """Retryable source errors fail the attempt; permanent ones cancel the job."""
    if error.retryable:
        return Fail(f"{what}: {error}")
    if error.kind in (ErrorKind.NOT_FOUND, ErrorKind.FORBIDDEN, ErrorKind.INVALID):
        return Cancel(f"{what}: {error}")
    return Fail(f"{what}: {error}")
