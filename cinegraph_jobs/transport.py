from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Generic, Optional, TypeVar

import requests

from .common import (
    LOGGER,
    is_network_unavailable_error,
    now_epoch,
    parse_int,
    parse_retry_after,
    sanitize_url_for_logs,
    to_iso,
)
from .database import LocalDatabase


T = TypeVar("T")


@dataclass
class APIResponse:
    status: int
    headers: Dict[str, str]
    data: Any
    text: str
    content: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @classmethod
    def no_response(cls, message: str) -> "APIResponse":
        return cls(status=0, headers={}, data={"error": message}, text=message)


class ErrorKind:
    TIMEOUT = "timeout"
    TRANSIENT = "transient"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    INVALID = "invalid"


RETRYABLE_KINDS = {ErrorKind.TIMEOUT, ErrorKind.TRANSIENT, ErrorKind.RATE_LIMITED}


@dataclass
class SourceError:
    kind: str
    message: str
    status: int = 0

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def __str__(self) -> str:
        if self.status:
            return f"{self.kind}: HTTP {self.status} {self.message}".strip()
        return f"{self.kind}: {self.message}".strip()


@dataclass
class SourceResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[SourceError] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T, **meta: Any) -> "SourceResult[T]":
        return cls(value=value, meta=dict(meta))

    @classmethod
    def failure(cls, kind: str, message: str, status: int = 0) -> "SourceResult[T]":
        return cls(error=SourceError(kind=kind, message=message, status=status))


def classify_response(response: APIResponse) -> Optional[SourceError]:
    """None for a 2xx response, otherwise the error kind callers branch on."""
    if response.ok:
        return None
    body = " ".join(str(response.text or "").split())[:200]
    status = response.status
    if status == 0:
        lowered = body.lower()
        kind = ErrorKind.TIMEOUT if "timed out" in lowered or "timeout" in lowered else ErrorKind.TRANSIENT
        return SourceError(kind, body or "no response", 0)
    if status == 404:
        kind = ErrorKind.NOT_FOUND
    elif status in (401, 403):
        kind = ErrorKind.FORBIDDEN
    elif status == 429:
        kind = ErrorKind.RATE_LIMITED
    elif status == 408 or status >= 500:
        kind = ErrorKind.TRANSIENT
    else:
        kind = ErrorKind.INVALID
    return SourceError(kind, body, status)


class LogThrottle:
    """Lets one message per key through every ``interval`` seconds."""

    def __init__(self, interval: int = 20):
        self.interval = interval
        self._seen: Dict[str, int] = {}

    def allow(self, key: str) -> bool:
        now_ts = now_epoch()
        if now_ts - self._seen.get(key, 0) < self.interval:
            return False
        self._seen[key] = now_ts
        return True


class ServiceGate:
    """Per-source request window plus a persisted pause.

    Every client talking to one upstream shares a gate, so a 429 seen by one
    worker holds back all of them, and the pause survives a restart through
    the ``service_state`` table.
    """

    def __init__(self, name: str, db: LocalDatabase, *, requests_per_window: int, window_seconds: float):
        self.name = name
        self.db = db
        self.requests_per_window = max(1, int(requests_per_window))
        self.window_seconds = float(window_seconds)
        self._sent: Deque[float] = deque()
        self._window_lock = asyncio.Lock()
        self._last_pause_log = 0

        row = db.get_service_state(name)
        self.paused_until = int(row["paused_until"] or 0) if row else 0
        self.pause_reason = str(row["pause_reason"] or "") if row else ""
        self.last_status: Optional[int] = row["last_status"] if row else None

    @classmethod
    def from_config(cls, name: str, db: LocalDatabase, rate_cfg: Dict[str, Any]) -> "ServiceGate":
        return cls(
            name,
            db,
            requests_per_window=int(rate_cfg["requests"]),
            window_seconds=float(rate_cfg["per_seconds"]),
        )

    def pause_remaining(self) -> int:
        return max(0, self.paused_until - now_epoch())

    def pause_for(self, seconds: int, reason: str) -> None:
        self.paused_until = max(self.paused_until, now_epoch() + max(1, int(seconds)))
        self.pause_reason = reason
        self.db.update_service_state(service=self.name, paused_until=self.paused_until, pause_reason=reason)

    def observe(self, response: APIResponse) -> None:
        """Record quota headers and pause once the upstream says the quota is gone."""
        limit = parse_int(response.headers.get("x-ratelimit-limit"))
        remaining = parse_int(response.headers.get("x-ratelimit-remaining"))
        if limit is not None or remaining is not None or response.status != self.last_status:
            self.last_status = response.status
            self.db.update_service_state(
                service=self.name,
                rate_limit=limit,
                rate_remaining=remaining,
                last_status=response.status,
            )
        if response.status == 429:
            self.pause_for(parse_retry_after(response.headers.get("retry-after"), 5), "429 Too Many Requests")
        elif remaining == 0:
            reset = parse_int(response.headers.get("x-ratelimit-reset"))
            now_ts = now_epoch()
            self.pause_for((reset - now_ts) if reset and reset > now_ts else 60, "Rate limit exhausted")
            LOGGER.warning("[%s] Quota exhausted; paused until %s", self.name, to_iso(self.paused_until))

    async def _wait_out_pause(self, max_wait: Optional[int]) -> bool:
        while True:
            remaining = self.pause_remaining()
            if remaining <= 0:
                return True
            if max_wait is not None and remaining > max_wait:
                return False
            now_ts = now_epoch()
            if now_ts - self._last_pause_log >= 30:
                LOGGER.warning("[%s] Paused for %ss (%s)", self.name, remaining, self.pause_reason or "rate limit")
                self._last_pause_log = now_ts
            await asyncio.sleep(min(5, remaining))

    async def _take_slot(self) -> None:
        while True:
            async with self._window_lock:
                now = time.monotonic()
                while self._sent and now - self._sent[0] >= self.window_seconds:
                    self._sent.popleft()
                if len(self._sent) < self.requests_per_window:
                    self._sent.append(now)
                    return
                delay = max(0.001, self.window_seconds - (now - self._sent[0]))
            await asyncio.sleep(delay)

    async def acquire(self, max_pause_wait_seconds: Optional[int] = None) -> bool:
        """Wait for any pause and a free slot; False when the pause is longer than allowed."""
        if not await self._wait_out_pause(max_pause_wait_seconds):
            return False
        await self._take_slot()
        return True


class HTTPClient:
    """Blocking ``requests`` calls run off the event loop, one attempt per call.

    Retrying belongs to the job queue: a failed call comes back as an
    ``APIResponse`` the caller classifies, and the job's ``Fail`` outcome gets
    the queue's backoff. ``request_json`` never raises for HTTP or network
    failures; status 0 means no response arrived.
    """

    network_pause_seconds = 30

    def __init__(self, timeout_seconds: int, user_agent: Optional[str] = None):
        self.timeout_seconds = timeout_seconds
        self.session = requests.Session()
        if user_agent:
            self.session.headers["User-Agent"] = user_agent
        self._throttle = LogThrottle()

    def _decode(self, raw: requests.Response, binary: bool) -> APIResponse:
        headers = {str(k).lower(): str(v) for k, v in raw.headers.items()}
        if binary:
            return APIResponse(status=raw.status_code, headers=headers, data=None, text="", content=raw.content)
        text = raw.text or ""
        data: Any = None
        if text:
            try:
                data = raw.json()
            except ValueError:
                data = None
        return APIResponse(status=raw.status_code, headers=headers, data=data, text=text)

    def _on_request_error(self, exc: requests.RequestException, where: str, gate: Optional[ServiceGate]) -> None:
        if not is_network_unavailable_error(exc):
            LOGGER.warning("[HTTP] %s failed: %s", where, exc)
            return
        if gate is not None and not isinstance(exc, requests.Timeout):
            gate.pause_for(self.network_pause_seconds, "Network unavailable")
        source = gate.name if gate is not None else "http"
        if self._throttle.allow(f"{source}:{where}:{type(exc).__name__}"):
            LOGGER.warning("[HTTP] Network unavailable for %s: %s", where, exc)

    async def request_json(
        self,
        *,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        gate: Optional[ServiceGate] = None,
        max_pause_wait_seconds: Optional[int] = None,
        timeout_seconds: Optional[int] = None,
        binary: bool = False,
    ) -> APIResponse:
        """Send one request through ``gate``; with ``binary`` the body stays in ``content``."""
        where = f"{method} {sanitize_url_for_logs(url)}"
        timeout = timeout_seconds or self.timeout_seconds

        if gate is not None and not await gate.acquire(max_pause_wait_seconds=max_pause_wait_seconds):
            return APIResponse(status=429, headers={}, data={"error": "service paused"}, text="service paused")

        try:
            raw = await asyncio.to_thread(
                self.session.request, method, url, params=params, headers=headers, timeout=timeout
            )
        except requests.RequestException as exc:
            self._on_request_error(exc, where, gate)
            if isinstance(exc, requests.Timeout):
                return APIResponse.no_response(f"timeout after {timeout}s: {exc}")
            return APIResponse.no_response(str(exc))

        response = self._decode(raw, binary)
        if gate is not None:
            gate.observe(response)
        if response.status == 429 or response.status >= 500:
            LOGGER.warning("[HTTP] %s from %s", response.status, where)
        elif response.status in (401, 403) and self._throttle.allow(f"auth:{where}:{response.status}"):
            body = " ".join(response.text.split())[:180]
            LOGGER.warning("[HTTP] %s from %s%s", response.status, where, f" body={body}" if body else "")
        return response
