from __future__ import annotations

import sqlite3
from typing import Any, Dict, List, Optional

from ..common import LOGGER, parse_int
from ..jobqueue import Cancel, Complete, Fail, Job, Snooze, UniqueSpec
from ..jobs import CollaborationArgs, MovieDetailsArgs, OmdbArgs
from ..transport import ErrorKind, SourceError
from .base import Outcome, Worker, outcome_for_error


KEY_CREW_DEPARTMENTS = {"Directing", "Writing", "Production", "Camera", "Editing", "Sound"}
MAX_CAST = 30


def progress_key(source: str, outcome: str) -> str:
    return f"{source}_{outcome}"


class MovieDetailsWorker(Worker):
    """Fetches one movie from TMDb and stores it, then runs the follow-up fan-out."""

    name = "movie_details"
    queue = "tmdb_details"
    max_attempts = 5
    unique = UniqueSpec(keys=("tmdb_id", "imdb_id"), period_seconds=300)

    def timeout_seconds(self) -> Optional[float]:
        return float(self.config["tmdb"]["details_timeout_seconds"])

    def decode(self, args: Dict[str, Any]) -> MovieDetailsArgs:
        return MovieDetailsArgs.from_args(args)

    def _existing(self, args: MovieDetailsArgs) -> Optional[sqlite3.Row]:
        if args.tmdb_id is not None:
            row = self.ctx.db.get_movie_by_tmdb_id(args.tmdb_id)
            if row is not None:
                return row
        if args.imdb_id:
            return self.ctx.db.get_movie_by_imdb_id(args.imdb_id)
        return None

    async def perform(self, job: Job, args: MovieDetailsArgs) -> Outcome:
        existing = self._existing(args)
        if existing is not None:
            await self._post_process(existing, args, fetched=False)
            self.ctx.progress.increment(progress_key(args.source, "skipped"))
            return Complete({"action": "skipped", "movie_id": int(existing["id"])})

        tmdb_id = args.tmdb_id
        if tmdb_id is None:
            found = await self.ctx.tmdb.find_by_imdb_id(args.imdb_id)
            if not found.ok:
                if found.error.kind == ErrorKind.NOT_FOUND:
                    return self._not_found(args, "find_by_imdb_id", args.imdb_id)
                return self._failed(args, found.error, "find_by_imdb_id", args.imdb_id)
            results = found.value.get("movie_results") or []
            tmdb_id = parse_int(results[0].get("id")) if results else None
            if tmdb_id is None:
                return self._not_found(args, "find_by_imdb_id", args.imdb_id)
            existing = self.ctx.db.get_movie_by_tmdb_id(tmdb_id)
            if existing is not None:
                await self._post_process(existing, args, fetched=False)
                self.ctx.progress.increment(progress_key(args.source, "skipped"))
                return Complete({"action": "skipped", "movie_id": int(existing["id"])})

        fetched = await self.ctx.tmdb.get_movie(tmdb_id)
        if not fetched.ok:
            if fetched.error.kind == ErrorKind.NOT_FOUND:
                return self._not_found(args, "get_movie", str(tmdb_id))
            return self._failed(args, fetched.error, "get_movie", str(tmdb_id))

        details = fetched.value
        if args.imdb_id and not details.get("imdb_id"):
            details["imdb_id"] = args.imdb_id
        decision = self.ctx.quality.evaluate_movie(details)
        if decision.full_import:
            movie_id = self.ctx.db.upsert_movie(details, import_status="full")
            self._store_relationships(movie_id, details)
        else:
            movie_id = self.ctx.db.upsert_movie(
                details,
                import_status="soft",
                failed_criteria=decision.failed,
                keep_payload=False,
            )
            LOGGER.debug(
                "[Details] Soft import tmdb_id=%s failed=%s", tmdb_id, ",".join(decision.failed)
            )

        movie = self.ctx.db.get_movie(movie_id)
        await self._post_process(movie, args, fetched=True)
        self.ctx.progress.increment(progress_key(args.source, "imported"))
        return Complete(
            {
                "action": "imported",
                "movie_id": movie_id,
                "tmdb_id": tmdb_id,
                "import_status": decision.import_status,
            }
        )

    def _failed(self, args: MovieDetailsArgs, error: SourceError, operation: str, target: Optional[str]) -> Outcome:
        outcome = outcome_for_error(error, f"{operation} {target}")
        if isinstance(outcome, Cancel):
            self.store_side_effect(
                "record lookup failure",
                self.ctx.db.record_lookup_failure,
                source="tmdb",
                operation=operation,
                target=str(target),
                error_kind=error.kind,
                metadata={"import_source": args.source, "message": error.message},
            )
            self.ctx.progress.increment(progress_key(args.source, "failed"))
        return outcome

    def _not_found(self, args: MovieDetailsArgs, operation: str, target: Optional[str]) -> Outcome:
        self.store_side_effect(
            "record lookup failure",
            self.ctx.db.record_lookup_failure,
            source="tmdb",
            operation=operation,
            target=str(target),
            error_kind=ErrorKind.NOT_FOUND,
            metadata={"import_source": args.source, **args.metadata},
        )
        self.ctx.progress.increment(progress_key(args.source, "failed"))
        LOGGER.info("[Details] %s found nothing for %s (source=%s)", operation, target, args.source)
        return Complete({"action": "not_found", "target": target})

    def _store_relationships(self, movie_id: int, details: Dict[str, Any]) -> None:
        db = self.ctx.db
        db.set_movie_genres(movie_id, list(details.get("genres") or []))
        credits = details.get("credits") or {}
        for member in list(credits.get("cast") or [])[:MAX_CAST]:
            if parse_int(member.get("id")) is None or not self.ctx.quality.should_import_person(member):
                continue
            person_id = db.upsert_person(member)
            db.add_credit(
                movie_id=movie_id,
                person_id=person_id,
                credit_type="cast",
                department="Acting",
                job=None,
                character=member.get("character"),
                cast_order=parse_int(member.get("order")),
            )
        for member in credits.get("crew") or []:
            if member.get("department") not in KEY_CREW_DEPARTMENTS:
                continue
            if parse_int(member.get("id")) is None or not self.ctx.quality.should_import_person(member):
                continue
            person_id = db.upsert_person(member)
            db.add_credit(
                movie_id=movie_id,
                person_id=person_id,
                credit_type="crew",
                department=member.get("department"),
                job=member.get("job"),
                character=None,
                cast_order=None,
            )

    async def _post_process(self, movie: sqlite3.Row, args: MovieDetailsArgs, *, fetched: bool) -> None:
        movie_id = int(movie["id"])
        imdb_id = movie["imdb_id"]

        for source_key, source_data in args.canonical_sources.items():
            self.store_side_effect(
                f"mark canonical {source_key}",
                self.ctx.db.mark_canonical,
                movie_id,
                source_key,
                source_data,
            )

        linked = self.store_side_effect(
            "link pending nominations",
            self.ctx.db.link_pending_nominations,
            movie_id,
            imdb_id,
        )
        if linked:
            LOGGER.info("[Details] Linked %s pending nomination(s) to movie %s", linked, movie_id)

        if args.fuzzy_matched and args.metadata.get("ceremony_id"):
            await self._create_fuzzy_nomination(movie_id, args.metadata)

        if imdb_id and not movie["omdb_data"] and self.ctx.omdb.enabled:
            self.enqueue_side_effect(
                OmdbEnrichmentWorker.new(
                    OmdbArgs(movie_id=movie_id, imdb_id=str(imdb_id)),
                    priority=int(self.config["details"]["omdb_priority"]),
                ),
                f"OMDb enrichment for movie {movie_id}",
            )

        every = int(self.config["details"]["collaboration_every"])
        if fetched and every > 0:
            total = self.ctx.db.count_movies()
            if total % every == 0:
                self.enqueue_side_effect(
                    CollaborationWorker.new(CollaborationArgs(movie_count=total)),
                    "collaboration update",
                )

    async def _create_fuzzy_nomination(self, movie_id: int, metadata: Dict[str, Any]) -> None:
        db = self.ctx.db
        ceremony_id = parse_int(metadata.get("ceremony_id"))
        category_id = parse_int(metadata.get("category_id"))
        if ceremony_id is None or category_id is None:
            return
        nominee = metadata.get("nominee") or {}
        person_imdb_ids: List[str] = [str(v) for v in nominee.get("person_imdb_ids") or []]
        person_name = nominee.get("name")
        person_id = None
        if metadata.get("tracks_person") and (person_imdb_ids or person_name):
            resolution = await self.ctx.people.resolve(
                imdb_ids=person_imdb_ids, name=person_name, movie_id=movie_id
            )
            person_id = resolution.person_id
        try:
            existing = db.find_nomination(
                ceremony_id=ceremony_id,
                category_id=category_id,
                movie_id=movie_id,
                person_id=person_id,
                person_imdb_ids=person_imdb_ids,
                person_name=person_name if metadata.get("tracks_person") else None,
            )
            if existing is not None:
                return
            db.create_nomination(
                ceremony_id=ceremony_id,
                category_id=category_id,
                movie_id=movie_id,
                movie_imdb_id=None,
                movie_title=metadata.get("film_title"),
                person_id=person_id,
                person_imdb_ids=person_imdb_ids,
                person_name=person_name,
                won=bool(metadata.get("winner")),
                details={
                    "fuzzy_matched": True,
                    "original_search_title": metadata.get("original_search_title"),
                },
            )
        except sqlite3.Error as exc:
            LOGGER.warning("[Details] Fuzzy nomination for movie %s failed: %s", movie_id, exc)


class OmdbEnrichmentWorker(Worker):
    name = "omdb_enrichment"
    queue = "omdb_enrichment"
    max_attempts = 3
    unique = UniqueSpec(keys=("movie_id",), period_seconds=3600)

    def decode(self, args: Dict[str, Any]) -> OmdbArgs:
        return OmdbArgs.from_args(args)

    async def perform(self, job: Job, args: OmdbArgs) -> Outcome:
        movie = self.ctx.db.get_movie(args.movie_id)
        if movie is None:
            return Cancel(f"movie {args.movie_id} no longer exists")
        if movie["omdb_data"]:
            return Complete({"action": "skipped"})
        if not self.ctx.omdb.enabled:
            return Complete({"action": "disabled"})

        result = await self.ctx.omdb.get_by_imdb_id(args.imdb_id)
        if result.ok:
            self.ctx.db.set_omdb_data(args.movie_id, result.value)
            return Complete({"action": "enriched"})
        if result.error.kind == ErrorKind.RATE_LIMITED:
            seconds = int(self.config["omdb"]["rate_limited_snooze_seconds"])
            LOGGER.warning("[OMDb] Rate limited; snoozing movie %s for %ss", args.movie_id, seconds)
            return Snooze(seconds)
        if result.error.kind == ErrorKind.NOT_FOUND:
            self.store_side_effect(
                "record lookup failure",
                self.ctx.db.record_lookup_failure,
                source="omdb",
                operation="get_by_imdb_id",
                target=args.imdb_id,
                error_kind=ErrorKind.NOT_FOUND,
                metadata={"movie_id": args.movie_id, "message": result.error.message},
            )
            return Complete({"action": "not_found"})
        return outcome_for_error(result.error, f"OMDb {args.imdb_id}")


class CollaborationWorker(Worker):
    name = "collaboration_update"
    queue = "collaboration"
    max_attempts = 3
    unique = UniqueSpec(keys=(), period_seconds=300)

    def decode(self, args: Dict[str, Any]) -> CollaborationArgs:
        return CollaborationArgs.from_args(args)

    async def perform(self, job: Job, args: CollaborationArgs) -> Outcome:
        try:
            pairs = self.ctx.db.rebuild_collaborations()
        except sqlite3.Error as exc:
            return Fail(f"collaboration rebuild failed: {exc}")
        LOGGER.info("[Collaborations] Rebuilt %s pair(s) at %s movies.", pairs, args.movie_count)
        return Complete({"pairs": pairs})
