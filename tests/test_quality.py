import pytest

from cinegraph_jobs.quality import QualityFilter


@pytest.fixture
def quality(config):
    return QualityFilter(config["quality"])


class TestMovieQuality:
    def test_two_criteria_are_enough(self, quality):
        decision = quality.evaluate_movie({"poster_path": "/p.jpg", "release_date": "1999-01-01"})
        assert decision.full_import
        assert decision.failed == ["has_votes", "has_popularity"]

    def test_one_criterion_is_soft(self, quality):
        decision = quality.evaluate_movie({"vote_count": 10})
        assert not decision.full_import
        assert decision.import_status == "soft"
        assert decision.met == ["has_votes"]

    @pytest.mark.parametrize(
        "movie,expected",
        [
            ({"popularity": 0.5, "vote_count": 9}, False),
            ({"popularity": 0.5, "vote_count": 10}, True),
            ({"popularity": "bad", "vote_count": None, "poster_path": ""}, False),
        ],
    )
    def test_thresholds(self, quality, movie, expected):
        assert quality.evaluate_movie(movie).full_import is expected


class TestPersonQuality:
    def test_key_department_needs_one_signal(self, quality):
        assert quality.should_import_person({"known_for_department": "Directing", "profile_path": "/a.jpg"})
        assert not quality.should_import_person({"known_for_department": "Acting", "popularity": 0.1})

    def test_other_departments_need_both(self, quality):
        person = {"known_for_department": "Lighting", "profile_path": "/a.jpg", "popularity": 0.2}
        assert not quality.should_import_person(person)
        person["popularity"] = 3.0
        assert quality.should_import_person(person)
