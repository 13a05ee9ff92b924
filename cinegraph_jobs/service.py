from __future__ import annotations

from typing import Any, Dict, List, Optional

from .common import LOGGER, ServiceResult
from .jobqueue import JobHandle, QueueError
from .jobs import FestivalMultiYear, FestivalSingleYear, ImportYear, ResyncAll, ResyncRecent, SyncMissing
from .workers import WorkerContext
from .workers.backfill import BackfillController
from .workers.canonical import queue_canonical_import
from .workers.festivals import (
    FestivalImportWorker,
    award_import_statuses,
    queue_award_action,
)
from .workers.years import queue_year_import


def _handle_value(handle: JobHandle) -> Dict[str, Any]:
    return {"job_id": handle.id, "worker": handle.worker, "state": handle.state, "duplicate": handle.conflict}


class ImportService:
    """Operator-facing entry points; every call returns a ServiceResult."""

    def __init__(self, ctx: WorkerContext):
        self.ctx = ctx
        self.backfill = BackfillController(queue=ctx.queue, progress=ctx.progress, config=ctx.config)

    # -- backfill ------------------------------------------------------------------

    def start_backfill(
        self, batch_size: Optional[int] = None, min_popularity: Optional[float] = None
    ) -> ServiceResult:
        return self.backfill.start(batch_size=batch_size, min_popularity=min_popularity)

    def stop_backfill(self) -> ServiceResult:
        return self.backfill.stop()

    def resume_backfill(self) -> ServiceResult:
        return self.backfill.resume()

    def get_backfill_status(self) -> ServiceResult:
        return ServiceResult.success(self.backfill.status())

    # -- awards and festivals ------------------------------------------------------

    def _organization(self, source_key: str):
        return self.ctx.db.find_festival_organization(source_key)

    def _queue_award(self, source_key: str, build) -> ServiceResult:
        organization = self._organization(source_key)
        if organization is None:
            return ServiceResult.failure(f"unknown_festival: {source_key}")
        try:
            handle = queue_award_action(self.ctx.queue, build(int(organization["id"])))
        except QueueError as exc:
            LOGGER.error("[Service] Could not queue award import for %s: %s", source_key, exc)
            return ServiceResult.failure("enqueue_failed")
        return ServiceResult.success(_handle_value(handle))

    def queue_import(self, source_key: str, year: int) -> ServiceResult:
        return self._queue_award(source_key, lambda org_id: ImportYear(organization_id=org_id, year=int(year)))

    def queue_sync_missing(self, source_key: str) -> ServiceResult:
        return self._queue_award(source_key, lambda org_id: SyncMissing(organization_id=org_id))

    def queue_resync_all(self, source_key: str) -> ServiceResult:
        return self._queue_award(source_key, lambda org_id: ResyncAll(organization_id=org_id))

    def queue_resync_recent(self, source_key: str, years: int = 5) -> ServiceResult:
        if int(years) < 1:
            return ServiceResult.failure("invalid_years")
        return self._queue_award(
            source_key, lambda org_id: ResyncRecent(organization_id=org_id, years=int(years))
        )

    def queue_festival_years(
        self, source_key: str, years: List[int], max_concurrency: Optional[int] = None
    ) -> ServiceResult:
        organization = self._organization(source_key)
        if organization is None:
            return ServiceResult.failure(f"unknown_festival: {source_key}")
        if not years:
            return ServiceResult.failure("no_years")
        if len(years) == 1:
            args = FestivalSingleYear(festival=str(organization["key"]), year=int(years[0]))
        else:
            args = FestivalMultiYear(
                festival=str(organization["key"]),
                years=[int(year) for year in years],
                max_concurrency=max_concurrency,
            )
        try:
            handle = self.ctx.queue.enqueue(FestivalImportWorker.new(args))
        except QueueError as exc:
            return ServiceResult.failure(f"enqueue_failed: {exc}")
        return ServiceResult.success(_handle_value(handle))

    def award_statuses(self, source_key: str) -> ServiceResult:
        organization = self._organization(source_key)
        if organization is None:
            return ServiceResult.failure(f"unknown_festival: {source_key}")
        return ServiceResult.success(award_import_statuses(self.ctx.db, organization))

    # -- canonical lists and years -------------------------------------------------

    def queue_canonical_import(self, list_key: str) -> ServiceResult:
        if self.ctx.db.get_movie_list(list_key) is None:
            return ServiceResult.failure(f"unknown_list: {list_key}")
        try:
            handle = queue_canonical_import(self.ctx.queue, list_key)
        except QueueError as exc:
            return ServiceResult.failure(f"enqueue_failed: {exc}")
        return ServiceResult.success(_handle_value(handle))

    def queue_year_import(self, year: Optional[int] = None) -> ServiceResult:
        earliest = int(self.ctx.config["years"]["earliest_year"])
        if year is not None and int(year) < earliest:
            return ServiceResult.failure(f"year_before_{earliest}")
        try:
            handle = queue_year_import(self.ctx.queue, year)
        except QueueError as exc:
            return ServiceResult.failure(f"enqueue_failed: {exc}")
        return ServiceResult.success(_handle_value(handle))

    # -- reporting -----------------------------------------------------------------

    async def gap_report(self) -> ServiceResult:
        report = await self.ctx.gap.analyze()
        if "error" in report:
            return ServiceResult.failure(str(report["error"]))
        return ServiceResult.success(report)

    def status(self) -> ServiceResult:
        db = self.ctx.db
        lists = [
            {
                "source_key": row["source_key"],
                "name": row["name"],
                "status": row["last_import_status"],
                "expected": row["expected_movie_count"],
                "imported": db.count_canonical(str(row["source_key"])),
                "total_imports": row["total_imports"],
            }
            for row in db.list_movie_lists()
        ]
        return ServiceResult.success(
            {
                "store": db.dashboard_snapshot(),
                "queues": self.ctx.queue.queue_state_counts(),
                "backfill": self.backfill.status(),
                "lists": lists,
                "gap": self.ctx.gap.export_stats(),
                "services": [dict(row) for row in db.list_service_states()],
            }
        )
