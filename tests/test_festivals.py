"""Tests for award and festival imports."""
import json

import pytest

from cinegraph_jobs.jobqueue import JobState
from cinegraph_jobs.jobs import FestivalMultiYear, FestivalPersonInferenceArgs, ImportYear, ResyncRecent, SyncMissing
from cinegraph_jobs.transport import ErrorKind, SourceResult
from cinegraph_jobs.workers.details import MovieDetailsWorker
from cinegraph_jobs.workers.festivals import (
    AwardImportWorker,
    FestivalDiscoveryWorker,
    FestivalImportWorker,
    FestivalPersonInferenceWorker,
    award_import_statuses,
    award_status,
    determine_category_type,
    is_director_category,
)


def nomination(film_id, film_title, year, people=(), winner=False):
    return {
        "node": {
            "isWinner": winner,
            "awardedEntities": {
                "awardTitles": [
                    {"title": {"id": film_id, "titleText": {"text": film_title}, "releaseDate": {"year": year}}}
                ],
                "awardNames": [{"name": {"id": pid, "nameText": {"text": name}}} for pid, name in people],
            },
        }
    }


def event_page(categories):
    awards = [
        {
            "text": "Oscar",
            "nominationCategories": {
                "edges": [
                    {"node": {"category": {"text": name}, "nominations": {"edges": nominations}}}
                    for name, nominations in categories.items()
                ]
            },
        }
    ]
    payload = {"props": {"pageProps": {"edition": {"awards": awards}}}}
    return f'<html><script id="__NEXT_DATA__" type="application/json">{json.dumps(payload)}</script></html>'


OSCARS_2021 = event_page(
    {
        "Best Motion Picture of the Year": [
            nomination("tt10272386", "The Father", 2020),
            nomination("tt9770150", "Nomadland", 2020, winner=True),
        ],
        "Best Performance by an Actor in a Leading Role": [
            nomination("tt10272386", "The Father", 2020, people=[("nm0000164", "Anthony Hopkins")], winner=True),
        ],
        "Best Achievement in Music Written for Motion Pictures (Original Song)": [
            nomination("tt0000999", "Some Musical", 2020),
        ],
    }
)


def oscars(db):
    return db.find_festival_organization("oscars")


class TestCategoryType:
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("best performance by an actor in a leading role", ("person", True)),
            ("best director", ("person", True)),
            ("best motion picture of the year", ("film", False)),
            ("palme dor", ("film", False)),
            ("best visual effects", ("technical", False)),
            ("best documentary feature", ("film", False)),
            ("jury prize", ("special", False)),
            ("audience award", ("film", False)),
        ],
    )
    def test_determine_category_type(self, name, expected):
        assert determine_category_type(name) == expected


class TestAwardStatus:
    @pytest.mark.parametrize(
        "status,total,matched,expected",
        [
            (None, 0, 0, "not_started"),
            ("no_data", 0, 0, "no_data"),
            ("failed", 3, 1, "failed"),
            ("pending", 0, 0, "pending"),
            ("processed", 0, 0, "empty"),
            ("processed", 10, 9, "completed"),
            ("processed", 10, 5, "partial"),
            ("processed", 10, 1, "low_match"),
            ("processed", 10, 0, "no_matches"),
        ],
    )
    def test_award_status(self, status, total, matched, expected):
        assert award_status(status, total, matched) == expected

    def test_statuses_cover_every_year_newest_first(self, db, ctx):
        org = db.find_festival_organization("berlin")
        db.upsert_ceremony(
            organization_id=int(org["id"]),
            year=2001,
            name="2001 Berlin",
            data=None,
            data_source="imdb",
            source_url=None,
            import_status="no_data",
        )
        statuses = award_import_statuses(db, org)
        years = [entry["year"] for entry in statuses]
        assert years == sorted(years, reverse=True)
        assert years[-1] == 1951
        by_year = {entry["year"]: entry for entry in statuses}
        assert by_year[2001]["status"] == "no_data"
        assert by_year[1990]["status"] == "not_started"


class TestFestivalYearImport:
    @pytest.mark.asyncio
    async def test_import_year_stores_ceremony_and_queues_discovery(self, ctx, runner, imdb, db, captured):
        imdb.event_pages[2021] = OSCARS_2021
        ctx.queue.enqueue(AwardImportWorker.new(ImportYear(organization_id=int(oscars(db)["id"]), year=2021)))
        job = ctx.queue.claim_next(["scraping"])
        assert await runner.execute(job) == JobState.COMPLETED

        ceremony = db.get_ceremony_by_year(int(oscars(db)["id"]), 2021)
        assert ceremony["import_status"] == "pending"
        assert ceremony["name"] == "2021 Academy Awards"
        assert ceremony["source_url"] == "https://www.imdb.com/event/ev0000003/2021/1/"
        assert ctx.queue.count_jobs(worker=FestivalDiscoveryWorker.name) == 1
        assert any(n.event.get("type") == "ceremony_imported" for n in captured)

    @pytest.mark.asyncio
    async def test_missing_page_marks_no_data_and_cancels(self, ctx, runner, db):
        ctx.queue.enqueue(AwardImportWorker.new(ImportYear(organization_id=int(oscars(db)["id"]), year=1930)))
        job = ctx.queue.claim_next(["scraping"])
        assert await runner.execute(job) == JobState.CANCELLED
        assert ctx.queue.get_job(job.id).errors[-1]["error"] == "HTTP 404 - page does not exist on IMDb"
        assert db.get_ceremony_by_year(int(oscars(db)["id"]), 1930)["import_status"] == "no_data"

    @pytest.mark.asyncio
    async def test_transient_error_retries(self, ctx, runner, imdb, db):
        imdb.event_errors[2020] = SourceResult.failure(ErrorKind.TRANSIENT, "bad gateway", 502)
        ctx.queue.enqueue(AwardImportWorker.new(ImportYear(organization_id=int(oscars(db)["id"]), year=2020)))
        job = ctx.queue.claim_next(["scraping"])
        assert await runner.execute(job) == JobState.RETRYABLE

    @pytest.mark.asyncio
    async def test_unknown_organization_cancelled(self, ctx, runner):
        ctx.queue.enqueue(AwardImportWorker.new(ImportYear(organization_id=9999, year=2020)))
        job = ctx.queue.claim_next(["scraping"])
        assert await runner.execute(job) == JobState.CANCELLED


class TestAwardBatchActions:
    @pytest.mark.asyncio
    async def test_resync_recent_spaces_newest_first(self, ctx, runner, db, clock):
        org_id = int(oscars(db)["id"])
        ctx.queue.enqueue(AwardImportWorker.new(ResyncRecent(organization_id=org_id, years=3)))
        job = ctx.queue.claim_next(["scraping"])
        await runner.execute(job)

        queued = ctx.queue.query_jobs(worker=AwardImportWorker.name, args_match={"action": "import_year"})
        spacing = ctx.config["festivals"]["year_spacing_seconds"]
        assert len(queued) == 3
        assert queued[0].args["year"] > queued[1].args["year"] > queued[2].args["year"]
        assert [j.scheduled_at - clock.now for j in queued] == [0, spacing, 2 * spacing]

    @pytest.mark.asyncio
    async def test_sync_missing_skips_completed_years(self, ctx, runner, db):
        org = db.find_festival_organization("berlin")
        org_id = int(org["id"])
        statuses = award_import_statuses(db, org)
        for entry in statuses:
            if entry["year"] != 1960:
                db.upsert_ceremony(
                    organization_id=org_id,
                    year=entry["year"],
                    name=f"{entry['year']} Berlin",
                    data=None,
                    data_source="imdb",
                    source_url=None,
                    import_status="no_data",
                )
        ctx.queue.enqueue(AwardImportWorker.new(SyncMissing(organization_id=org_id)))
        job = ctx.queue.claim_next(["scraping"])
        await runner.execute(job)
        queued = ctx.queue.query_jobs(worker=AwardImportWorker.name, args_match={"action": "import_year"})
        assert [j.args["year"] for j in queued] == [1960]


class TestFestivalImportWorker:
    @pytest.mark.asyncio
    async def test_multi_year_counts_missing_years_as_skipped(self, ctx, runner, imdb):
        imdb.event_pages[2021] = OSCARS_2021
        ctx.queue.enqueue(FestivalImportWorker.new(FestivalMultiYear(festival="oscars", years=[2021, 1931])))
        job = ctx.queue.claim_next(["festival_import"])
        assert await runner.execute(job) == JobState.COMPLETED
        assert ctx.queue.get_job(job.id).meta["skipped"] == [1931]

    @pytest.mark.asyncio
    async def test_multi_year_fails_with_failed_years(self, ctx, runner, imdb):
        imdb.event_pages[2021] = OSCARS_2021
        imdb.event_errors[2019] = SourceResult.failure(ErrorKind.TIMEOUT, "read timed out")
        ctx.queue.enqueue(FestivalImportWorker.new(FestivalMultiYear(festival="AMPAS", years=[2021, 2019])))
        job = ctx.queue.claim_next(["festival_import"])
        assert await runner.execute(job) == JobState.RETRYABLE
        assert ctx.queue.get_job(job.id).errors[-1]["error"] == "Failed years: [2019]"

    def test_multi_year_jobs_with_different_years_both_insert(self, ctx):
        first = ctx.queue.enqueue(FestivalImportWorker.new(FestivalMultiYear(festival="cannes", years=[2020, 2021])))
        second = ctx.queue.enqueue(FestivalImportWorker.new(FestivalMultiYear(festival="cannes", years=[2018, 2019])))
        again = ctx.queue.enqueue(FestivalImportWorker.new(FestivalMultiYear(festival="cannes", years=[2020, 2021])))
        assert not first.conflict
        assert not second.conflict
        assert again.conflict
        assert again.id == first.id


class TestFestivalDiscovery:
    async def _discover(self, ctx, runner, imdb, db):
        imdb.event_pages[2021] = OSCARS_2021
        ctx.queue.enqueue(AwardImportWorker.new(ImportYear(organization_id=int(oscars(db)["id"]), year=2021)))
        await runner.execute(ctx.queue.claim_next(["scraping"]))
        job = ctx.queue.claim_next(["festival_import"])
        assert job.worker == FestivalDiscoveryWorker.name
        assert await runner.execute(job) == JobState.COMPLETED
        return ctx.queue.get_job(job.id)

    @pytest.mark.asyncio
    async def test_creates_nominations_and_queues_unknown_movies(self, ctx, runner, imdb, db):
        job = await self._discover(ctx, runner, imdb, db)
        assert job.meta["nominations_created"] == 3
        assert job.meta["skipped"] == 1
        assert job.meta["movies_queued"] == 2
        assert job.meta["person_categories"] == 1

        fetches = ctx.queue.query_jobs(worker=MovieDetailsWorker.name)
        assert sorted(j.args["imdb_id"] for j in fetches) == ["tt10272386", "tt9770150"]
        assert all(j.args["source"] == "festival_import" for j in fetches)

        ceremony = db.get_ceremony_by_year(int(oscars(db)["id"]), 2021)
        assert ceremony["import_status"] == "processed"
        assert db.count_nominations(int(ceremony["id"])) == (3, 0)
        assert db.get_person_by_imdb_id("nm0000164") is not None
        assert ctx.queue.count_jobs(worker=FestivalPersonInferenceWorker.name) == 0

    @pytest.mark.asyncio
    async def test_movie_import_links_pending_nominations(self, ctx, runner, imdb, db, tmdb):
        tmdb.add_movie(600, imdb_id="tt10272386", title="The Father")
        tmdb.add_movie(601, imdb_id="tt9770150", title="Nomadland")
        await self._discover(ctx, runner, imdb, db)
        await runner.drain()
        ceremony = db.get_ceremony_by_year(int(oscars(db)["id"]), 2021)
        assert db.count_nominations(int(ceremony["id"])) == (3, 3)

    @pytest.mark.asyncio
    async def test_rerun_finds_existing_nominations(self, ctx, runner, imdb, db, clock):
        await self._discover(ctx, runner, imdb, db)
        ceremony = db.get_ceremony_by_year(int(oscars(db)["id"]), 2021)
        clock.advance(301)
        ctx.queue.enqueue(FestivalDiscoveryWorker.new({"ceremony_id": int(ceremony["id"])}))
        job = ctx.queue.claim_next(["festival_import"])
        await runner.execute(job)
        meta = ctx.queue.get_job(job.id).meta
        assert meta["nominations_created"] == 0
        assert meta["existing"] == 3


def cannes_ceremony(db, awards=None):
    org_id = int(db.find_festival_organization("cannes")["id"])
    return db.upsert_ceremony(
        organization_id=org_id,
        year=2021,
        name="2021 Cannes Film Festival",
        data={"awards": awards or {}},
        data_source="imdb",
        source_url=None,
        import_status="pending",
    )


def add_nomination(db, ceremony_id, category_id, movie_id, title):
    return db.create_nomination(
        ceremony_id=ceremony_id,
        category_id=category_id,
        movie_id=movie_id,
        movie_imdb_id=None,
        movie_title=title,
        person_id=None,
        person_imdb_ids=[],
        person_name=None,
        won=False,
    )


def nomination_person(db, nomination_id):
    row = db.conn.execute("SELECT person_id FROM festival_nominations WHERE id = ?", (nomination_id,)).fetchone()
    return row["person_id"]


class TestFestivalPersonInference:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("Best Director", True),
            ("Prix de la mise en scène / Meilleur réalisateur", True),
            ("Leone d'Argento per la migliore regia", True),
            ("Best Actor", False),
            ("Palme d'Or", False),
        ],
    )
    def test_director_categories(self, name, expected):
        assert is_director_category(name) is expected

    @pytest.mark.asyncio
    async def test_links_director_nominations_from_credits(self, ctx, runner, db, captured):
        ceremony_id = cannes_ceremony(db)
        org_id = int(db.find_festival_organization("cannes")["id"])
        directing = db.upsert_category(organization_id=org_id, name="Best Director", category_type="person", tracks_person=True)
        acting = db.upsert_category(organization_id=org_id, name="Best Actor", category_type="person", tracks_person=True)
        movie_id = db.upsert_movie({"id": 718032, "title": "Annette"}, import_status="full")
        director = db.create_minimal_person("Leos Carax", None)
        actor = db.create_minimal_person("Adam Driver", None)
        db.add_credit(movie_id=movie_id, person_id=actor, credit_type="cast", department="Acting", job=None, character="Henry", cast_order=0)
        db.add_credit(movie_id=movie_id, person_id=director, credit_type="crew", department="Directing", job="Director", character=None, cast_order=None)

        linked = add_nomination(db, ceremony_id, directing, movie_id, "Annette")
        unmatched = add_nomination(db, ceremony_id, directing, None, "Unknown Film")
        actor_nomination = add_nomination(db, ceremony_id, acting, movie_id, "Annette")

        ctx.queue.enqueue(FestivalPersonInferenceWorker.new(FestivalPersonInferenceArgs(ceremony_id=ceremony_id)))
        job = ctx.queue.claim_next(["festival_import"])
        assert await runner.execute(job) == JobState.COMPLETED

        assert ctx.queue.get_job(job.id).meta == {"linked": 1, "skipped": 1, "failed": 1, "total": 3}
        assert nomination_person(db, linked) == director
        assert nomination_person(db, unmatched) is None
        assert nomination_person(db, actor_nomination) is None
        assert any(n.event.get("type") == "festival_person_inference_complete" for n in captured)

    @pytest.mark.asyncio
    async def test_alternate_director_job_is_used(self, ctx, runner, db):
        ceremony_id = cannes_ceremony(db)
        org_id = int(db.find_festival_organization("cannes")["id"])
        directing = db.upsert_category(organization_id=org_id, name="Best Director", category_type="person", tracks_person=True)
        movie_id = db.upsert_movie({"id": 600, "title": "Anthology"}, import_status="full")
        co_director = db.create_minimal_person("Co Director", None)
        db.add_credit(movie_id=movie_id, person_id=co_director, credit_type="crew", department="Directing", job="Co-Director", character=None, cast_order=None)
        nomination_id = add_nomination(db, ceremony_id, directing, movie_id, "Anthology")

        ctx.queue.enqueue(FestivalPersonInferenceWorker.new(FestivalPersonInferenceArgs(ceremony_id=ceremony_id)))
        await runner.execute(ctx.queue.claim_next(["festival_import"]))
        assert nomination_person(db, nomination_id) == co_director

    @pytest.mark.asyncio
    async def test_oscars_ceremony_is_skipped(self, ctx, runner, db):
        ceremony_id = db.upsert_ceremony(
            organization_id=int(oscars(db)["id"]),
            year=2021,
            name="2021 Academy Awards",
            data={"awards": {}},
            data_source="imdb",
            source_url=None,
            import_status="processed",
        )
        ctx.queue.enqueue(FestivalPersonInferenceWorker.new(FestivalPersonInferenceArgs(ceremony_id=ceremony_id)))
        job = ctx.queue.claim_next(["festival_import"])
        assert await runner.execute(job) == JobState.COMPLETED
        assert ctx.queue.get_job(job.id).meta == {"skipped_organization": "AMPAS"}

    @pytest.mark.asyncio
    async def test_missing_ceremony_cancels(self, ctx, runner):
        ctx.queue.enqueue(FestivalPersonInferenceWorker.new(FestivalPersonInferenceArgs(ceremony_id=4242)))
        job = ctx.queue.claim_next(["festival_import"])
        assert await runner.execute(job) == JobState.CANCELLED

    def test_unique_per_ceremony(self, ctx):
        first = ctx.queue.enqueue(FestivalPersonInferenceWorker.new(FestivalPersonInferenceArgs(ceremony_id=7)))
        second = ctx.queue.enqueue(FestivalPersonInferenceWorker.new(FestivalPersonInferenceArgs(ceremony_id=7)))
        other = ctx.queue.enqueue(FestivalPersonInferenceWorker.new(FestivalPersonInferenceArgs(ceremony_id=8)))
        assert second.conflict and second.id == first.id
        assert not other.conflict

    @pytest.mark.asyncio
    async def test_festival_discovery_queues_delayed_inference(self, ctx, runner, db, clock):
        awards = {
            "Best Director": [
                {"films": [{"imdb_id": "tt6217926", "title": "Annette", "year": 2021}], "people": [], "winner": True}
            ]
        }
        ceremony_id = cannes_ceremony(db, awards)
        ctx.queue.enqueue(FestivalDiscoveryWorker.new({"ceremony_id": ceremony_id}))
        job = ctx.queue.claim_next(["festival_import"])
        assert await runner.execute(job) == JobState.COMPLETED
        assert ctx.queue.get_job(job.id).meta["person_inference_queued"] is True

        queued = ctx.queue.query_jobs(worker=FestivalPersonInferenceWorker.name)
        assert [j.args for j in queued] == [{"ceremony_id": ceremony_id}]
        delay = ctx.config["festivals"]["person_inference_delay_seconds"]
        assert queued[0].scheduled_at - clock.now == delay
