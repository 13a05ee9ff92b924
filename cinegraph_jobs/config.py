from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Set

from .common import merge_dict


DEFAULT_CONFIG: Dict[str, Any] = {
    "api_keys": {
        "tmdb": "",
        "omdb": "",
    },
    "runtime": {
        "database_path": "cinegraph_jobs.sqlite3",
        "log_file_path": "logs/cinegraph_jobs.log",
        "log_file_max_bytes": 10485760,
        "log_file_backup_count": 5,
        "log_level": "INFO",
        "run_mode": "continuous",
        "console_mode": "dashboard",
        "debug_raw_console_logs": False,
        "dashboard_event_lines": 8,
        "dashboard_event_dedupe_window_seconds": 30,
        "dashboard_event_max_message_length": 160,
        "poll_seconds": 1.0,
        "job_lease_seconds": 900,
    },
    "queues": {
        "maintenance": 1,
        "tmdb_details": 5,
        "tmdb_discovery": 2,
        "tmdb_orchestration": 1,
        "omdb_enrichment": 1,
        "imdb_scraping": 2,
        "scraping": 1,
        "festival_import": 2,
        "collaboration": 1,
    },
    "retry": {
        "base_seconds": 15,
        "max_seconds": 3600,
    },
    "tmdb": {
        "base_url": "https://api.themoviedb.org/3",
        "language": "en-US",
        "timeout_seconds": 30,
        "details_timeout_seconds": 90,
        "rate_limit": {
            "requests": 1,
            "per_seconds": 0.1,
        },
    },
    "omdb": {
        "base_url": "https://www.omdbapi.com/",
        "timeout_seconds": 20,
        "rate_limited_snooze_seconds": 3600,
        "rate_limit": {
            "requests": 1,
            "per_seconds": 1.0,
        },
    },
    "imdb": {
        "base_url": "https://www.imdb.com",
        "timeout_seconds": 30,
        "user_agent": (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        ),
        "rate_limit": {
            "requests": 1,
            "per_seconds": 2.0,
        },
    },
    "export": {
        "base_url": "http://files.tmdb.org/p/exports",
        "timeout_seconds": 120,
        "fallback_days": 3,
        "cache_dir": "exports",
        "include_adult": False,
        "include_video": False,
        "baseline_refresh_hours": 24,
    },
    "backfill": {
        "batch_size": 10000,
        "min_popularity": 1.0,
        "pending_threshold": 10000,
        "insert_chunk_size": 100,
        "high_water_mark": 1000,
        "long_poll_seconds": 300,
        "short_poll_seconds": 60,
    },
    "scheduled_backfill": {
        "batch_size": 10000,
        "min_popularity": 1.0,
        "pending_threshold": 5000,
    },
    "canonical": {
        "page_size": 250,
        "completion_check_delay_seconds": 30,
        "completion_max_checks": 120,
        "lists": {
            "1001_movies": {
                "list_id": "ls024863935",
                "name": "1001 Movies You Must See Before You Die",
                "metadata": {"edition": "2024"},
            },
        },
    },
    "years": {
        "earliest_year": 1888,
        "completion_ratio": 0.95,
        "max_pages": 500,
        "check_interval_seconds": 300,
        "completion_max_checks": 288,
    },
    "festivals": {
        "max_concurrency": 3,
        "year_timeout_seconds": 120,
        "year_spacing_seconds": 300,
        "person_inference_delay_seconds": 600,
        "events": {
            "oscars": {
                "name": "Academy Awards",
                "abbreviation": "AMPAS",
                "imdb_event_id": "ev0000003",
                "country": "United States",
                "founded_year": 1929,
            },
            "cannes": {
                "name": "Cannes Film Festival",
                "abbreviation": "CFF",
                "imdb_event_id": "ev0000147",
                "country": "France",
                "founded_year": 1946,
            },
            "venice": {
                "name": "Venice International Film Festival",
                "abbreviation": "VIFF",
                "imdb_event_id": "ev0000681",
                "country": "Italy",
                "founded_year": 1932,
            },
            "berlin": {
                "name": "Berlin International Film Festival",
                "abbreviation": "BIFF",
                "imdb_event_id": "ev0000091",
                "country": "Germany",
                "founded_year": 1951,
            },
            "bafta": {
                "name": "BAFTA Awards",
                "abbreviation": "BAFTA",
                "imdb_event_id": "ev0000123",
                "country": "United Kingdom",
                "founded_year": 1949,
            },
        },
    },
    "matching": {
        "title_threshold": 0.85,
        "year_tolerance": 2,
        "clear_winner_gap": 0.10,
        "local_title_weight": 0.7,
        "local_year_weight": 0.3,
        "external_title_weight": 0.6,
        "external_year_weight": 0.3,
        "external_category_weight": 0.1,
        "vote_bonus": 0.05,
        "vote_bonus_min_votes": 50,
        "local_candidate_limit": 25,
        "person_name_threshold": 0.9,
        "person_min_confidence": 0.75,
    },
    "quality": {
        "min_criteria": 2,
        "min_vote_count": 10,
        "min_popularity": 0.5,
        "person_min_popularity": 0.5,
        "key_departments": ["Acting", "Directing", "Writing"],
    },
    "details": {
        "collaboration_every": 100,
        "omdb_priority": 2,
    },
    "cron": {
        "scheduled_backfill_seconds": 0,
        "daily_year_import_seconds": 0,
    },
}


SUPPORTED_RUN_MODES: Set[str] = {
    "continuous",
    "until_idle",
}

SUPPORTED_CONSOLE_MODES: Set[str] = {
    "dashboard",
    "raw",
}

PLACEHOLDER_MARKERS = (
    "YOUR_",
    "YOUR-",
    "CHANGEME",
    "REPLACE_ME",
)


def _is_placeholder(value: str) -> bool:
    return any(marker in value.upper() for marker in PLACEHOLDER_MARKERS)


def load_config(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found at {path}. Create one (for example from config.example.json)."
        )

    with path.open("r", encoding="utf-8") as handle:
        loaded = json.load(handle)

    return validate_config(merge_dict(DEFAULT_CONFIG, loaded))


def validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    tmdb_key = str(config.get("api_keys", {}).get("tmdb", "")).strip()
    if not tmdb_key or _is_placeholder(tmdb_key):
        raise ValueError("Missing required API keys in config: api_keys.tmdb")
    omdb_key = str(config["api_keys"].get("omdb", "")).strip()
    config["api_keys"]["omdb"] = "" if _is_placeholder(omdb_key) else omdb_key

    runtime = config["runtime"]
    runtime["poll_seconds"] = max(0.05, float(runtime["poll_seconds"]))
    runtime["job_lease_seconds"] = max(60, int(runtime["job_lease_seconds"]))
    log_file_path = str(runtime.get("log_file_path", "")).strip()
    runtime["log_file_path"] = log_file_path or "logs/cinegraph_jobs.log"
    runtime["log_file_max_bytes"] = max(1024, int(runtime["log_file_max_bytes"]))
    runtime["log_file_backup_count"] = max(0, int(runtime["log_file_backup_count"]))
    runtime["dashboard_event_lines"] = max(
        3, min(20, int(runtime["dashboard_event_lines"]))
    )
    runtime["dashboard_event_dedupe_window_seconds"] = max(
        1, int(runtime["dashboard_event_dedupe_window_seconds"])
    )
    runtime["dashboard_event_max_message_length"] = max(
        60, int(runtime["dashboard_event_max_message_length"])
    )
    runtime["debug_raw_console_logs"] = bool(runtime["debug_raw_console_logs"])

    run_mode = str(runtime.get("run_mode", "continuous")).strip().lower()
    if run_mode not in SUPPORTED_RUN_MODES:
        raise ValueError(
            "Invalid runtime.run_mode. Expected one of: "
            + ", ".join(sorted(SUPPORTED_RUN_MODES))
        )
    runtime["run_mode"] = run_mode

    console_mode = str(runtime.get("console_mode", "dashboard")).strip().lower()
    if console_mode not in SUPPORTED_CONSOLE_MODES:
        raise ValueError(
            "Invalid runtime.console_mode. Expected one of: "
            + ", ".join(sorted(SUPPORTED_CONSOLE_MODES))
        )
    runtime["console_mode"] = console_mode

    queues = config["queues"]
    if not isinstance(queues, dict) or not queues:
        raise ValueError("queues must be a non-empty object of queue -> concurrency")
    for queue_name in list(queues):
        queues[queue_name] = max(0, int(queues[queue_name]))

    config["retry"]["base_seconds"] = max(1, int(config["retry"]["base_seconds"]))
    config["retry"]["max_seconds"] = max(
        config["retry"]["base_seconds"], int(config["retry"]["max_seconds"])
    )

    for section in ("tmdb", "omdb", "imdb"):
        rate_cfg = config[section]["rate_limit"]
        rate_cfg["requests"] = max(1, int(rate_cfg["requests"]))
        rate_cfg["per_seconds"] = max(0.001, float(rate_cfg["per_seconds"]))

    for section in ("tmdb", "omdb", "imdb", "export"):
        config[section]["timeout_seconds"] = max(
            1, int(config[section]["timeout_seconds"])
        )
    # The job deadline must outlast one TMDb request.
    config["tmdb"]["details_timeout_seconds"] = max(
        config["tmdb"]["timeout_seconds"] + 5, int(config["tmdb"]["details_timeout_seconds"])
    )
    config["export"]["fallback_days"] = max(0, min(14, int(config["export"]["fallback_days"])))
    config["export"]["baseline_refresh_hours"] = max(
        1, int(config["export"]["baseline_refresh_hours"])
    )

    backfill = config["backfill"]
    backfill["batch_size"] = max(1, int(backfill["batch_size"]))
    backfill["min_popularity"] = max(0.0, float(backfill["min_popularity"]))
    backfill["pending_threshold"] = max(1, int(backfill["pending_threshold"]))
    backfill["insert_chunk_size"] = max(1, min(1000, int(backfill["insert_chunk_size"])))
    backfill["high_water_mark"] = max(0, int(backfill["high_water_mark"]))
    backfill["long_poll_seconds"] = max(1, int(backfill["long_poll_seconds"]))
    backfill["short_poll_seconds"] = max(1, int(backfill["short_poll_seconds"]))

    scheduled = config["scheduled_backfill"]
    scheduled["batch_size"] = max(1, int(scheduled["batch_size"]))
    scheduled["min_popularity"] = max(0.0, float(scheduled["min_popularity"]))
    scheduled["pending_threshold"] = max(1, int(scheduled["pending_threshold"]))

    canonical = config["canonical"]
    canonical["page_size"] = max(1, int(canonical["page_size"]))
    canonical["completion_check_delay_seconds"] = max(
        1, int(canonical["completion_check_delay_seconds"])
    )
    canonical["completion_max_checks"] = max(1, int(canonical["completion_max_checks"]))
    config["canonical"]["lists"] = _normalize_lists(canonical.get("lists"))

    years = config["years"]
    years["earliest_year"] = int(years["earliest_year"])
    years["completion_ratio"] = max(0.0, min(1.0, float(years["completion_ratio"])))
    years["max_pages"] = max(1, min(500, int(years["max_pages"])))
    years["check_interval_seconds"] = max(1, int(years["check_interval_seconds"]))
    years["completion_max_checks"] = max(1, int(years["completion_max_checks"]))

    festivals = config["festivals"]
    festivals["max_concurrency"] = max(1, int(festivals["max_concurrency"]))
    festivals["year_timeout_seconds"] = max(1, int(festivals["year_timeout_seconds"]))
    festivals["year_spacing_seconds"] = max(0, int(festivals["year_spacing_seconds"]))
    festivals["person_inference_delay_seconds"] = max(0, int(festivals["person_inference_delay_seconds"]))
    festivals["events"] = _normalize_events(festivals.get("events"))

    matching = config["matching"]
    for key in (
        "title_threshold",
        "clear_winner_gap",
        "person_name_threshold",
        "person_min_confidence",
    ):
        matching[key] = max(0.0, min(1.0, float(matching[key])))
    matching["year_tolerance"] = max(0, int(matching["year_tolerance"]))
    matching["local_candidate_limit"] = max(1, int(matching["local_candidate_limit"]))
    matching["vote_bonus_min_votes"] = max(0, int(matching["vote_bonus_min_votes"]))

    quality = config["quality"]
    quality["min_criteria"] = max(0, min(4, int(quality["min_criteria"])))
    quality["min_vote_count"] = max(0, int(quality["min_vote_count"]))
    quality["key_departments"] = [str(d) for d in quality.get("key_departments") or []]

    config["details"]["collaboration_every"] = max(0, int(config["details"]["collaboration_every"]))

    for key in ("scheduled_backfill_seconds", "daily_year_import_seconds"):
        config["cron"][key] = max(0, int(config["cron"].get(key, 0)))

    return config


def _normalize_lists(raw_lists: Any) -> Dict[str, Dict[str, Any]]:
    if not isinstance(raw_lists, dict):
        raise ValueError("canonical.lists must be an object keyed by source key")
    normalized: Dict[str, Dict[str, Any]] = {}
    for source_key, entry in raw_lists.items():
        if not isinstance(entry, dict):
            raise ValueError(f"canonical.lists.{source_key} must be an object")
        list_id = str(entry.get("list_id", "")).strip()
        if not list_id.startswith("ls"):
            raise ValueError(
                f"canonical.lists.{source_key}.list_id must be an IMDb list id (ls...)"
            )
        metadata = entry.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValueError(f"canonical.lists.{source_key}.metadata must be an object")
        normalized[str(source_key)] = {
            "list_id": list_id,
            "name": str(entry.get("name") or source_key),
            "metadata": metadata,
        }
    return normalized


def _normalize_events(raw_events: Any) -> Dict[str, Dict[str, Any]]:
    if not isinstance(raw_events, dict):
        raise ValueError("festivals.events must be an object keyed by festival key")
    normalized: Dict[str, Dict[str, Any]] = {}
    required: List[str] = ["name", "abbreviation", "imdb_event_id"]
    for key, entry in raw_events.items():
        if not isinstance(entry, dict):
            raise ValueError(f"festivals.events.{key} must be an object")
        missing = [field for field in required if not str(entry.get(field) or "").strip()]
        if missing:
            raise ValueError(
                f"festivals.events.{key} is missing: " + ", ".join(missing)
            )
        normalized[str(key)] = {
            "name": str(entry["name"]),
            "abbreviation": str(entry["abbreviation"]).upper(),
            "imdb_event_id": str(entry["imdb_event_id"]),
            "country": entry.get("country"),
            "founded_year": entry.get("founded_year"),
            "category_mappings": dict(entry.get("category_mappings") or {}),
        }
    return normalized
