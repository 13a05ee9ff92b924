from __future__ import annotations

import copy
import datetime as dt
import email.utils
import json
import logging
import re
import socket
import time
from typing import Any, Dict, Iterable, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import requests


LOGGER = logging.getLogger("cinegraph-jobs")

YEAR_PATTERN = re.compile(r"^(\d{4})")


def now_epoch() -> int:
    return int(time.time())


def current_year() -> int:
    return dt.datetime.now(dt.timezone.utc).year


def to_iso(ts: int) -> str:
    return dt.datetime.fromtimestamp(ts, dt.timezone.utc).astimezone().strftime(
        "%d-%m-%y %H:%M:%S"
    )


def parse_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def parse_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def parse_year(value: Any) -> Optional[int]:
    """Year of a ``YYYY-MM-DD`` style date string, or of a bare integer year."""
    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    match = YEAR_PATTERN.match(str(value).strip())
    if not match:
        return None
    return int(match.group(1))


def parse_retry_after(value: Optional[str], default_seconds: int = 5) -> int:
    if not value:
        return default_seconds

    stripped = value.strip()
    as_int = parse_int(stripped)
    if as_int is not None:
        return max(1, as_int)

    try:
        dt_value = email.utils.parsedate_to_datetime(stripped)
        if dt_value.tzinfo is None:
            dt_value = dt_value.replace(tzinfo=dt.timezone.utc)
        delta = int((dt_value - dt.datetime.now(dt.timezone.utc)).total_seconds())
        return max(1, delta)
    except (TypeError, ValueError):
        return default_seconds


def sanitize_url_for_logs(url: str) -> str:
    sensitive_keys = {
        "api_key",
        "apikey",
        "token",
        "access_token",
        "key",
    }
    try:
        parts = urlsplit(url)
        if not parts.query:
            return url
        sanitized_query = []
        for key, value in parse_qsl(parts.query, keep_blank_values=True):
            if key.lower() in sensitive_keys:
                sanitized_query.append((key, "***"))
            else:
                sanitized_query.append((key, value))
        return urlunsplit(
            (
                parts.scheme,
                parts.netloc,
                parts.path,
                urlencode(sanitized_query, doseq=True),
                parts.fragment,
            )
        )
    except ValueError:
        return url


def is_network_unavailable_error(exc: requests.RequestException) -> bool:
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return True
    marker_text = str(exc).lower()
    markers = (
        "nameresolutionerror",
        "failed to resolve",
        "temporary failure in name resolution",
        "network is unreachable",
        "no route to host",
        "connection refused",
    )
    if any(marker in marker_text for marker in markers):
        return True
    cause = getattr(exc, "__cause__", None)
    if isinstance(cause, (socket.gaierror, TimeoutError, OSError)):
        return True
    return False


def merge_dict(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def compact_json(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), sort_keys=True)


def load_json_object(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        loaded = json.loads(raw)
    except ValueError:
        return {}
    return loaded if isinstance(loaded, dict) else {}


def chunks(values: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    step = max(1, int(size))
    for i in range(0, len(values), step):
        yield values[i : i + step]


class ServiceResult:
    """Outcome of an operator-facing call: a value, or a short error code."""

    def __init__(self, ok: bool, value: Any = None, error: Optional[str] = None):
        self.ok = ok
        self.value = value
        self.error = error

    @classmethod
    def success(cls, value: Any = None) -> "ServiceResult":
        return cls(True, value=value)

    @classmethod
    def failure(cls, error: str, value: Any = None) -> "ServiceResult":
        return cls(False, value=value, error=error)

    def __repr__(self) -> str:
        if self.ok:
            return f"ServiceResult(ok, {self.value!r})"
        return f"ServiceResult(error={self.error!r})"
