from typing import Dict, Type

from .backfill import ContinuousBackfillWorker, ScheduledBackfillWorker
from .base import Outcome, Worker, WorkerContext, outcome_for_error
from .canonical import CanonicalCompletionWorker, CanonicalImportWorker, CanonicalPageWorker
from .details import CollaborationWorker, MovieDetailsWorker, OmdbEnrichmentWorker
from .festivals import (
    AwardImportWorker,
    FestivalDiscoveryWorker,
    FestivalImportWorker,
    FestivalPersonInferenceWorker,
)
from .years import DailyYearImportWorker, YearCompletionWorker, YearDiscoveryWorker


WORKERS: Dict[str, Type[Worker]] = {
    worker.name: worker
    for worker in (
        MovieDetailsWorker,
        OmdbEnrichmentWorker,
        CollaborationWorker,
        CanonicalImportWorker,
        CanonicalPageWorker,
        CanonicalCompletionWorker,
        ContinuousBackfillWorker,
        ScheduledBackfillWorker,
        DailyYearImportWorker,
        YearDiscoveryWorker,
        YearCompletionWorker,
        AwardImportWorker,
        FestivalImportWorker,
        FestivalDiscoveryWorker,
        FestivalPersonInferenceWorker,
    )
}

__all__ = ["WORKERS", "Outcome", "Worker", "WorkerContext", "outcome_for_error"]
