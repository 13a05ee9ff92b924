"""Tests for configuration, progress state, response classification and the log buffer."""
import json
import logging

import pytest
import requests

from cinegraph_jobs.common import merge_dict, parse_retry_after, sanitize_url_for_logs
from cinegraph_jobs.config import DEFAULT_CONFIG, load_config, validate_config
from cinegraph_jobs.logs import EventBuffer, EventBufferHandler, job_log_context
from cinegraph_jobs.transport import APIResponse, ErrorKind, HTTPClient, ServiceGate, classify_response


def with_overrides(**sections):
    return merge_dict(DEFAULT_CONFIG, {"api_keys": {"tmdb": "abc123"}, **sections})


class TestConfig:
    def test_placeholder_tmdb_key_rejected(self):
        raw = merge_dict(DEFAULT_CONFIG, {"api_keys": {"tmdb": "YOUR_TMDB_KEY"}})
        with pytest.raises(ValueError, match="api_keys.tmdb"):
            validate_config(raw)

    def test_placeholder_omdb_key_is_cleared(self):
        config = validate_config(with_overrides(api_keys={"tmdb": "abc123", "omdb": "CHANGEME"}))
        assert config["api_keys"]["omdb"] == ""

    def test_invalid_run_mode(self):
        with pytest.raises(ValueError, match="run_mode"):
            validate_config(with_overrides(runtime={"run_mode": "forever"}))

    def test_values_are_clamped(self):
        config = validate_config(
            with_overrides(
                backfill={"batch_size": 0, "insert_chunk_size": 5000},
                years={"completion_ratio": 1.7},
                quality={"min_criteria": 9},
            )
        )
        assert config["backfill"]["batch_size"] == 1
        assert config["backfill"]["insert_chunk_size"] == 1000
        assert config["years"]["completion_ratio"] == 1.0
        assert config["quality"]["min_criteria"] == 4

    def test_events_are_normalized(self):
        config = validate_config(
            with_overrides(
                festivals={"events": {"sundance": {"name": "Sundance", "abbreviation": "sff", "imdb_event_id": "ev0000631"}}}
            )
        )
        assert config["festivals"]["events"]["sundance"]["abbreviation"] == "SFF"

    def test_event_missing_fields(self):
        with pytest.raises(ValueError, match="imdb_event_id"):
            validate_config(with_overrides(festivals={"events": {"x": {"name": "X", "abbreviation": "X"}}}))

    def test_list_ids_must_be_imdb_lists(self):
        with pytest.raises(ValueError, match="list_id"):
            validate_config(with_overrides(canonical={"lists": {"bad": {"list_id": "tt123"}}}))

    def test_load_config_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"api_keys": {"tmdb": "k"}, "backfill": {"batch_size": 77}}), encoding="utf-8")
        config = load_config(path)
        assert config["backfill"]["batch_size"] == 77
        assert config["backfill"]["high_water_mark"] == DEFAULT_CONFIG["backfill"]["high_water_mark"]

    def test_load_config_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.json")


class TestProgressState:
    def test_compare_and_set(self, progress):
        assert progress.compare_and_set("k", None, "a")
        assert not progress.compare_and_set("k", None, "b")
        assert not progress.compare_and_set("k", "b", "c")
        assert progress.compare_and_set("k", "a", "c")
        assert progress.get("k") == "c"

    def test_increment_and_prefix(self, progress):
        assert progress.increment("jobs_done") == 1
        assert progress.increment("jobs_done", 4) == 5
        progress.set_many({"jobs_seen": 9, "other": 1})
        assert progress.items("jobs_") == {"jobs_done": "5", "jobs_seen": "9"}

    def test_json_round_trip(self, progress):
        progress.set_json("blob", {"a": [1, 2]})
        assert progress.get_json("blob") == {"a": [1, 2]}
        assert progress.get_json("missing", default={}) == {}


class TestClassifyResponse:
    @pytest.mark.parametrize(
        "status,text,kind",
        [
            (0, "Read timed out", ErrorKind.TIMEOUT),
            (0, "Connection refused", ErrorKind.TRANSIENT),
            (404, "", ErrorKind.NOT_FOUND),
            (401, "", ErrorKind.FORBIDDEN),
            (429, "", ErrorKind.RATE_LIMITED),
            (503, "", ErrorKind.TRANSIENT),
            (422, "", ErrorKind.INVALID),
        ],
    )
    def test_kinds(self, status, text, kind):
        error = classify_response(APIResponse(status=status, headers={}, data=None, text=text))
        assert error.kind == kind

    def test_success(self):
        assert classify_response(APIResponse(status=200, headers={}, data={}, text="")) is None

    def test_retry_after(self):
        assert parse_retry_after("12") == 12
        assert parse_retry_after(None, default_seconds=7) == 7

    def test_api_key_hidden_in_logs(self):
        assert "secret" not in sanitize_url_for_logs("https://api.example.org/3/movie/1?api_key=secret&language=en")


class TestEventBuffer:
    def test_repeats_are_collapsed(self):
        buffer = EventBuffer(max_lines=3, dedupe_window_seconds=30, max_message_length=60)
        buffer.add(level="warning", message="[Runner] job failed", now_ts=100)
        buffer.add(level="WARNING", message="[Runner]   job failed", now_ts=110)
        buffer.add(level="ERROR", message="x" * 100, now_ts=111)
        events = buffer.snapshot()
        assert events[0].count == 2
        assert events[1].message.endswith("...")
        assert len(events[1].message) == 60

    def test_component_is_split_from_message(self):
        buffer = EventBuffer(max_lines=5, dedupe_window_seconds=30, max_message_length=80)
        buffer.add(level="WARNING", message="[Backfill] gap analysis failed", now_ts=5)
        event = buffer.snapshot()[0]
        assert event.component == "Backfill"
        assert event.message == "gap analysis failed"

    def test_interleaved_repeats_move_to_end(self):
        buffer = EventBuffer(max_lines=5, dedupe_window_seconds=30, max_message_length=80)
        buffer.add(level="WARNING", message="[TMDb] paused", now_ts=1)
        buffer.add(level="WARNING", message="[IMDb] slow page", now_ts=2)
        buffer.add(level="WARNING", message="[TMDb] paused", now_ts=3)
        assert [(e.component, e.count) for e in buffer.snapshot()] == [("IMDb", 1), ("TMDb", 2)]

    def test_oldest_lines_are_dropped(self):
        buffer = EventBuffer(max_lines=2, dedupe_window_seconds=30, max_message_length=80)
        for n in range(3):
            buffer.add(level="ERROR", message=f"failure {n}", now_ts=n)
        assert [e.message for e in buffer.snapshot()] == ["failure 1", "failure 2"]

    def test_job_context_tags_records(self):
        buffer = EventBuffer(max_lines=5, dedupe_window_seconds=30, max_message_length=80)
        logger = logging.getLogger("cinegraph-jobs.test-context")
        logger.propagate = False
        handler = EventBufferHandler(buffer)
        logger.addHandler(handler)
        try:
            with job_log_context("movie_details", 42):
                logger.warning("[Details] lookup failed")
            logger.warning("[Details] outside")
        finally:
            logger.removeHandler(handler)
        inside, outside = buffer.snapshot()
        assert inside.job == "movie_details#42"
        assert outside.job == ""


class TestServiceGate:
    def gate(self, db):
        return ServiceGate("tmdb", db, requests_per_window=1, window_seconds=0.1)

    def test_429_pause_survives_restart(self, db):
        gate = self.gate(db)
        gate.observe(APIResponse(status=429, headers={"retry-after": "30"}, data=None, text=""))
        assert 25 <= gate.pause_remaining() <= 30
        restarted = self.gate(db)
        assert restarted.paused_until == gate.paused_until
        assert restarted.pause_reason == "429 Too Many Requests"

    def test_exhausted_quota_pauses(self, db):
        gate = self.gate(db)
        gate.observe(APIResponse(status=200, headers={"x-ratelimit-remaining": "0"}, data={}, text=""))
        assert gate.pause_remaining() > 0

    @pytest.mark.asyncio
    async def test_long_pause_is_not_waited_out(self, db):
        gate = self.gate(db)
        gate.pause_for(120, "maintenance")
        assert await gate.acquire(max_pause_wait_seconds=10) is False


class StubResponse:
    def __init__(self, status_code, text="", headers=None):
        self.status_code = status_code
        self.text = text
        self.content = text.encode("utf-8")
        self.headers = headers or {}

    def json(self):
        return json.loads(self.text)


class TestHTTPClient:
    def client(self, monkeypatch, outcome):
        client = HTTPClient(timeout_seconds=5)
        calls = []

        def request(method, url, **kwargs):
            calls.append((method, url))
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        monkeypatch.setattr(client.session, "request", request)
        return client, calls

    @pytest.mark.asyncio
    async def test_server_error_is_returned_after_one_call(self, monkeypatch):
        client, calls = self.client(monkeypatch, StubResponse(503, "busy"))
        response = await client.request_json(method="GET", url="https://api.example.org/3/movie/1")
        assert len(calls) == 1
        error = classify_response(response)
        assert error.kind == ErrorKind.TRANSIENT
        assert error.retryable

    @pytest.mark.asyncio
    async def test_timeout_is_returned_after_one_call(self, monkeypatch):
        client, calls = self.client(monkeypatch, requests.Timeout("read timed out"))
        response = await client.request_json(method="GET", url="https://api.example.org/3/movie/1")
        assert len(calls) == 1
        assert response.status == 0
        assert classify_response(response).kind == ErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_rate_limit_pauses_gate_without_retrying(self, monkeypatch, db):
        client, calls = self.client(monkeypatch, StubResponse(429, "", {"Retry-After": "40"}))
        gate = ServiceGate("omdb", db, requests_per_window=10, window_seconds=1)
        response = await client.request_json(method="GET", url="https://www.omdbapi.com/", gate=gate)
        assert len(calls) == 1
        assert response.status == 429
        assert gate.pause_remaining() > 30

    @pytest.mark.asyncio
    async def test_json_body_is_decoded(self, monkeypatch):
        client, _ = self.client(monkeypatch, StubResponse(200, '{"id": 7}'))
        response = await client.request_json(method="GET", url="https://api.example.org/3/movie/7")
        assert response.ok
        assert response.data == {"id": 7}
