from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .common import LOGGER, compact_json, load_json_object, now_epoch


class JobState:
    AVAILABLE = "available"
    SCHEDULED = "scheduled"
    EXECUTING = "executing"
    RETRYABLE = "retryable"
    COMPLETED = "completed"
    DISCARDED = "discarded"
    CANCELLED = "cancelled"


ALL_STATES: Tuple[str, ...] = (
    JobState.AVAILABLE,
    JobState.SCHEDULED,
    JobState.EXECUTING,
    JobState.RETRYABLE,
    JobState.COMPLETED,
    JobState.DISCARDED,
    JobState.CANCELLED,
)
ACTIVE_STATES: Tuple[str, ...] = (
    JobState.AVAILABLE,
    JobState.SCHEDULED,
    JobState.EXECUTING,
    JobState.RETRYABLE,
)
TERMINAL_STATES: Tuple[str, ...] = (
    JobState.COMPLETED,
    JobState.DISCARDED,
    JobState.CANCELLED,
)
FAILED_STATES: Tuple[str, ...] = (
    JobState.DISCARDED,
    JobState.CANCELLED,
)
_CLAIMABLE_STATES: Tuple[str, ...] = (
    JobState.AVAILABLE,
    JobState.SCHEDULED,
    JobState.RETRYABLE,
)


class QueueError(Exception):
    """A job queue operation could not be persisted."""


@dataclass(frozen=True)
class UniqueSpec:
    keys: Tuple[str, ...]
    period_seconds: Optional[int] = 300
    states: Tuple[str, ...] = ACTIVE_STATES


@dataclass
class JobSpec:
    worker: str
    queue: str
    args: Dict[str, Any]
    max_attempts: int = 20
    priority: int = 0
    schedule_in: int = 0
    unique: Optional[UniqueSpec] = None
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class JobHandle:
    id: int
    worker: str
    state: str
    conflict: bool = False


@dataclass
class Job:
    id: int
    worker: str
    queue: str
    args: Dict[str, Any]
    state: str
    attempt: int
    max_attempts: int
    priority: int
    scheduled_at: int
    inserted_at: int
    attempted_at: Optional[int]
    finished_at: Optional[int]
    meta: Dict[str, Any]
    errors: List[Dict[str, Any]]

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass
class Complete:
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Fail:
    reason: str


@dataclass
class Cancel:
    reason: str


@dataclass
class Snooze:
    seconds: int
    consume_attempt: bool = False
    meta: Dict[str, Any] = field(default_factory=dict)


SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    worker TEXT NOT NULL,
    queue TEXT NOT NULL,
    args TEXT NOT NULL,
    state TEXT NOT NULL,
    attempt INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    priority INTEGER NOT NULL DEFAULT 0,
    scheduled_at INTEGER NOT NULL,
    inserted_at INTEGER NOT NULL,
    attempted_at INTEGER,
    finished_at INTEGER,
    unique_key TEXT,
    meta TEXT NOT NULL DEFAULT '{}',
    errors TEXT NOT NULL DEFAULT '[]'
);

CREATE INDEX IF NOT EXISTS idx_jobs_fetch ON jobs (queue, state, scheduled_at, priority);
CREATE INDEX IF NOT EXISTS idx_jobs_worker_state ON jobs (worker, state);
CREATE INDEX IF NOT EXISTS idx_jobs_unique ON jobs (worker, unique_key) WHERE unique_key IS NOT NULL;
"""


def unique_key_for(worker: str, args: Dict[str, Any], keys: Sequence[str]) -> str:
    return compact_json({"worker": worker, "args": {key: args.get(key) for key in keys}})


class JobQueue:
    """Durable, polling job queue stored in the ``jobs`` table.

    Lower ``priority`` values run first. Uniqueness is enforced at insert time:
    a spec whose unique key matches a job in one of ``UniqueSpec.states`` that
    was inserted within ``period_seconds`` returns that job's handle with
    ``conflict=True`` instead of inserting.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        clock: Callable[[], int] = now_epoch,
        retry_base_seconds: int = 15,
        retry_max_seconds: int = 3600,
    ):
        self.conn = conn
        self.clock = clock
        self.retry_base_seconds = max(1, int(retry_base_seconds))
        self.retry_max_seconds = max(self.retry_base_seconds, int(retry_max_seconds))
        with self.conn:
            self.conn.executescript(SCHEMA)

    # -- insertion -------------------------------------------------------------

    def enqueue(self, spec: JobSpec) -> JobHandle:
        try:
            with self.conn:
                return self._insert(spec, self.clock())
        except sqlite3.Error as exc:
            raise QueueError(f"enqueue {spec.worker} failed: {exc}") from exc

    def bulk_enqueue(self, specs: Iterable[JobSpec]) -> List[JobHandle]:
        """Insert all specs in one transaction; nothing is inserted on error."""
        specs = list(specs)
        now_ts = self.clock()
        try:
            with self.conn:
                return [self._insert(spec, now_ts) for spec in specs]
        except sqlite3.Error as exc:
            raise QueueError(f"bulk enqueue of {len(specs)} job(s) failed: {exc}") from exc

    def _insert(self, spec: JobSpec, now_ts: int) -> JobHandle:
        unique_key = None
        if spec.unique is not None:
            unique_key = unique_key_for(spec.worker, spec.args, spec.unique.keys)
            existing = self._find_unique(spec.worker, unique_key, spec.unique, now_ts)
            if existing is not None:
                return JobHandle(
                    id=int(existing["id"]),
                    worker=spec.worker,
                    state=str(existing["state"]),
                    conflict=True,
                )

        delay = max(0, int(spec.schedule_in))
        state = JobState.SCHEDULED if delay > 0 else JobState.AVAILABLE
        cursor = self.conn.execute(
            """
            INSERT INTO jobs(
                worker, queue, args, state, attempt, max_attempts, priority,
                scheduled_at, inserted_at, unique_key, meta
            ) VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?)
            """,
            (
                spec.worker,
                spec.queue,
                compact_json(spec.args),
                state,
                max(1, int(spec.max_attempts)),
                int(spec.priority),
                now_ts + delay,
                now_ts,
                unique_key,
                compact_json(spec.meta or {}),
            ),
        )
        return JobHandle(id=int(cursor.lastrowid), worker=spec.worker, state=state)

    def _find_unique(
        self,
        worker: str,
        unique_key: str,
        unique: UniqueSpec,
        now_ts: int,
    ) -> Optional[sqlite3.Row]:
        states = tuple(unique.states) or ACTIVE_STATES
        placeholders = ",".join("?" for _ in states)
        sql = (
            f"SELECT id, state FROM jobs WHERE worker = ? AND unique_key = ? "
            f"AND state IN ({placeholders})"
        )
        params: List[Any] = [worker, unique_key, *states]
        if unique.period_seconds is not None:
            sql += " AND inserted_at >= ?"
            params.append(now_ts - int(unique.period_seconds))
        sql += " ORDER BY id DESC LIMIT 1"
        return self.conn.execute(sql, tuple(params)).fetchone()

    # -- runner side -------------------------------------------------------------

    def claim_next(self, queues: Sequence[str]) -> Optional[Job]:
        if not queues:
            return None
        now_ts = self.clock()
        placeholders = ",".join("?" for _ in queues)
        claim_placeholders = ",".join("?" for _ in _CLAIMABLE_STATES)
        try:
            with self.conn:
                row = self.conn.execute(
                    f"""
                    SELECT * FROM jobs
                    WHERE queue IN ({placeholders})
                      AND state IN ({claim_placeholders})
                      AND scheduled_at <= ?
                    ORDER BY priority ASC, scheduled_at ASC, id ASC
                    LIMIT 1
                    """,
                    (*queues, *_CLAIMABLE_STATES, now_ts),
                ).fetchone()
                if row is None:
                    return None
                cursor = self.conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?, attempt = attempt + 1, attempted_at = ?
                    WHERE id = ? AND state = ?
                    """,
                    (JobState.EXECUTING, now_ts, row["id"], row["state"]),
                )
                if cursor.rowcount != 1:
                    return None
        except sqlite3.Error as exc:
            raise QueueError(f"claim from {list(queues)} failed: {exc}") from exc
        return self.get_job(int(row["id"]))

    def complete(self, job_id: int, meta: Optional[Dict[str, Any]] = None) -> None:
        self._finish(job_id, JobState.COMPLETED, meta=meta)

    def cancel(self, job_id: int, reason: str) -> None:
        self._finish(job_id, JobState.CANCELLED, error=reason)

    def discard(self, job_id: int, reason: str) -> None:
        self._finish(job_id, JobState.DISCARDED, error=reason)

    def fail(self, job: Job, reason: str) -> str:
        """Record a failed attempt; returns the resulting state."""
        if job.attempt >= job.max_attempts:
            self._finish(job.id, JobState.DISCARDED, error=reason)
            return JobState.DISCARDED
        delay = self.backoff_seconds(job.attempt)
        now_ts = self.clock()
        try:
            with self.conn:
                self._append_error(job.id, job.attempt, reason, now_ts)
                self.conn.execute(
                    "UPDATE jobs SET state = ?, scheduled_at = ? WHERE id = ?",
                    (JobState.RETRYABLE, now_ts + delay, job.id),
                )
        except sqlite3.Error as exc:
            raise QueueError(f"fail job {job.id} failed: {exc}") from exc
        return JobState.RETRYABLE

    def snooze(
        self,
        job: Job,
        seconds: int,
        *,
        consume_attempt: bool = False,
        meta: Optional[Dict[str, Any]] = None,
    ) -> str:
        if consume_attempt and job.attempt >= job.max_attempts:
            self._finish(job.id, JobState.DISCARDED, error="snoozed past max attempts", meta=meta)
            return JobState.DISCARDED
        now_ts = self.clock()
        attempt_adjust = 0 if consume_attempt else 1
        try:
            with self.conn:
                if meta:
                    self._merge_meta(job.id, meta)
                self.conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?, scheduled_at = ?, attempt = MAX(0, attempt - ?)
                    WHERE id = ?
                    """,
                    (JobState.SCHEDULED, now_ts + max(0, int(seconds)), attempt_adjust, job.id),
                )
        except sqlite3.Error as exc:
            raise QueueError(f"snooze job {job.id} failed: {exc}") from exc
        return JobState.SCHEDULED

    def update_meta(self, job_id: int, meta: Dict[str, Any]) -> None:
        try:
            with self.conn:
                self._merge_meta(job_id, meta)
        except sqlite3.Error as exc:
            raise QueueError(f"update meta of job {job_id} failed: {exc}") from exc

    def backoff_seconds(self, attempt: int) -> int:
        multiplier = 2 ** max(0, int(attempt) - 1)
        return int(min(self.retry_base_seconds * multiplier, self.retry_max_seconds))

    def _finish(
        self,
        job_id: int,
        state: str,
        *,
        error: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        now_ts = self.clock()
        try:
            with self.conn:
                if error:
                    row = self.conn.execute(
                        "SELECT attempt FROM jobs WHERE id = ?", (job_id,)
                    ).fetchone()
                    self._append_error(job_id, int(row["attempt"]) if row else 0, error, now_ts)
                if meta:
                    self._merge_meta(job_id, meta)
                self.conn.execute(
                    "UPDATE jobs SET state = ?, finished_at = ? WHERE id = ?",
                    (state, now_ts, job_id),
                )
        except sqlite3.Error as exc:
            raise QueueError(f"mark job {job_id} {state} failed: {exc}") from exc

    def _append_error(self, job_id: int, attempt: int, error: str, now_ts: int) -> None:
        row = self.conn.execute("SELECT errors FROM jobs WHERE id = ?", (job_id,)).fetchone()
        try:
            errors = json.loads(row["errors"]) if row else []
        except ValueError:
            errors = []
        errors.append({"attempt": attempt, "at": now_ts, "error": str(error)[:500]})
        self.conn.execute(
            "UPDATE jobs SET errors = ? WHERE id = ?",
            (compact_json(errors[-20:]), job_id),
        )

    def _merge_meta(self, job_id: int, meta: Dict[str, Any]) -> None:
        row = self.conn.execute("SELECT meta FROM jobs WHERE id = ?", (job_id,)).fetchone()
        merged = load_json_object(row["meta"]) if row else {}
        merged.update(meta)
        self.conn.execute(
            "UPDATE jobs SET meta = ? WHERE id = ?", (compact_json(merged), job_id)
        )

    def recover_executing(self) -> int:
        """Return jobs left executing by an unclean shutdown to the queue."""
        return self._rescue(cutoff=None)

    def recover_stale(self, lease_seconds: int) -> int:
        return self._rescue(cutoff=self.clock() - max(30, int(lease_seconds)))

    def _rescue(self, cutoff: Optional[int]) -> int:
        now_ts = self.clock()
        sql_filter = "state = ?"
        params: List[Any] = [JobState.EXECUTING]
        if cutoff is not None:
            sql_filter += " AND COALESCE(attempted_at, 0) <= ?"
            params.append(cutoff)
        try:
            with self.conn:
                discarded = self.conn.execute(
                    f"""
                    UPDATE jobs SET state = ?, finished_at = ?
                    WHERE {sql_filter} AND attempt >= max_attempts
                    """,
                    (JobState.DISCARDED, now_ts, *params),
                ).rowcount
                rescued = self.conn.execute(
                    f"UPDATE jobs SET state = ?, scheduled_at = ? WHERE {sql_filter}",
                    (JobState.AVAILABLE, now_ts, *params),
                ).rowcount
        except sqlite3.Error as exc:
            raise QueueError(f"recover executing jobs failed: {exc}") from exc
        if discarded:
            LOGGER.warning("[Queue] Discarded %s orphaned job(s) at max attempts.", discarded)
        return int(rescued) + int(discarded)

    # -- introspection -----------------------------------------------------------

    def get_job(self, job_id: int) -> Optional[Job]:
        row = self.conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row is not None else None

    def _where(
        self,
        worker: Optional[str],
        states: Optional[Sequence[str]],
        args_match: Optional[Dict[str, Any]],
    ) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if worker is not None:
            clauses.append("worker = ?")
            params.append(worker)
        if states:
            clauses.append(f"state IN ({','.join('?' for _ in states)})")
            params.extend(states)
        for key, value in (args_match or {}).items():
            clauses.append("json_extract(args, ?) = ?")
            params.append(f'$."{key}"')
            params.append(_sql_value(value))
        where = " AND ".join(clauses) if clauses else "1 = 1"
        return where, params

    def query_jobs(
        self,
        worker: Optional[str] = None,
        states: Optional[Sequence[str]] = None,
        args_match: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[Job]:
        where, params = self._where(worker, states, args_match)
        sql = f"SELECT * FROM jobs WHERE {where} ORDER BY id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [_row_to_job(row) for row in self.conn.execute(sql, tuple(params)).fetchall()]

    def count_jobs(
        self,
        worker: Optional[str] = None,
        states: Optional[Sequence[str]] = None,
        args_match: Optional[Dict[str, Any]] = None,
    ) -> int:
        where, params = self._where(worker, states, args_match)
        row = self.conn.execute(
            f"SELECT COUNT(*) AS c FROM jobs WHERE {where}", tuple(params)
        ).fetchone()
        return int(row["c"] or 0)

    def count_by_state(
        self,
        worker: Optional[str] = None,
        args_match: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, int]:
        where, params = self._where(worker, None, args_match)
        rows = self.conn.execute(
            f"SELECT state, COUNT(*) AS c FROM jobs WHERE {where} GROUP BY state",
            tuple(params),
        ).fetchall()
        counts = {state: 0 for state in ALL_STATES}
        for row in rows:
            counts[str(row["state"])] = int(row["c"])
        return counts

    def queue_state_counts(self) -> Dict[str, Dict[str, int]]:
        rows = self.conn.execute(
            "SELECT queue, state, COUNT(*) AS c FROM jobs GROUP BY queue, state"
        ).fetchall()
        result: Dict[str, Dict[str, int]] = {}
        for row in rows:
            result.setdefault(str(row["queue"]), {state: 0 for state in ALL_STATES})[
                str(row["state"])
            ] = int(row["c"])
        return result

    def next_due_at(self, queues: Sequence[str]) -> Optional[int]:
        if not queues:
            return None
        placeholders = ",".join("?" for _ in queues)
        claim_placeholders = ",".join("?" for _ in _CLAIMABLE_STATES)
        row = self.conn.execute(
            f"""
            SELECT MIN(scheduled_at) AS due FROM jobs
            WHERE queue IN ({placeholders}) AND state IN ({claim_placeholders})
            """,
            (*queues, *_CLAIMABLE_STATES),
        ).fetchone()
        return None if row is None or row["due"] is None else int(row["due"])

    def count_executing(self) -> int:
        return self.count_jobs(states=(JobState.EXECUTING,))


def _sql_value(value: Any) -> Any:
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (dict, list)):
        return compact_json(value)
    return value


def _row_to_job(row: sqlite3.Row) -> Job:
    try:
        errors = json.loads(row["errors"] or "[]")
    except ValueError:
        errors = []
    return Job(
        id=int(row["id"]),
        worker=str(row["worker"]),
        queue=str(row["queue"]),
        args=load_json_object(row["args"]),
        state=str(row["state"]),
        attempt=int(row["attempt"]),
        max_attempts=int(row["max_attempts"]),
        priority=int(row["priority"]),
        scheduled_at=int(row["scheduled_at"]),
        inserted_at=int(row["inserted_at"]),
        attempted_at=row["attempted_at"],
        finished_at=row["finished_at"],
        meta=load_json_object(row["meta"]),
        errors=errors if isinstance(errors, list) else [],
    )
