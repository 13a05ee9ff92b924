from __future__ import annotations

import contextvars
import logging
import re
import threading
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .common import now_epoch

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(job)s%(message)s"
COMPONENT_RE = re.compile(r"^\[([^\]]+)\]\s*")
QUIET_LOGGERS = ("urllib3", "requests", "asyncio", "py.warnings")

_current_job: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "cinegraph_current_job", default=None
)


@contextmanager
def job_log_context(worker: str, job_id: int) -> Iterator[None]:
    """Tag every record logged inside the block with ``worker#job_id``."""
    token = _current_job.set(f"{worker}#{job_id}")
    try:
        yield
    finally:
        _current_job.reset(token)


class JobContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        job = _current_job.get()
        record.job = f"<{job}> " if job else ""
        return True


@dataclass
class LogEvent:
    timestamp: int
    level: str
    component: str
    message: str
    job: str = ""
    count: int = 1


class EventBuffer:
    """Recent warnings for the dashboard.

    A repeat of any buffered event (same level, component and text) inside the
    dedupe window bumps its count and moves it to the end instead of adding a
    line, so interleaved workers hitting the same failure show up once.
    """

    def __init__(self, *, max_lines: int, dedupe_window_seconds: int, max_message_length: int):
        self.max_lines = max(1, int(max_lines))
        self.dedupe_window_seconds = max(1, int(dedupe_window_seconds))
        self.max_message_length = max(40, int(max_message_length))
        self._events: "OrderedDict[Tuple[str, str, str], LogEvent]" = OrderedDict()
        self._lock = threading.Lock()

    def _split(self, message: str) -> Tuple[str, str]:
        text = " ".join(str(message or "").split())
        component = ""
        match = COMPONENT_RE.match(text)
        if match:
            component = match.group(1).strip()
            text = text[match.end():]
        if not text:
            text = "-"
        elif len(text) > self.max_message_length:
            text = text[: self.max_message_length - 3] + "..."
        return component, text

    def add(self, *, level: str, message: str, job: str = "", now_ts: Optional[int] = None) -> None:
        ts = now_epoch() if now_ts is None else int(now_ts)
        level_name = str(level or "INFO").upper()
        component, text = self._split(message)
        key = (level_name, component, text)
        with self._lock:
            existing = self._events.get(key)
            if existing is not None and ts - existing.timestamp <= self.dedupe_window_seconds:
                existing.count += 1
                existing.timestamp = ts
                existing.job = job or existing.job
                self._events.move_to_end(key)
                return
            self._events.pop(key, None)
            self._events[key] = LogEvent(timestamp=ts, level=level_name, component=component, message=text, job=job)
            while len(self._events) > self.max_lines:
                self._events.popitem(last=False)

    def snapshot(self) -> List[LogEvent]:
        with self._lock:
            return list(self._events.values())


class EventBufferHandler(logging.Handler):
    def __init__(self, buffer: EventBuffer, level: int = logging.WARNING):
        super().__init__(level=level)
        self.buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
            if record.exc_info and record.exc_info[1] is not None:
                exc = record.exc_info[1]
                detail = str(exc).strip()
                message += f" ({type(exc).__name__}: {detail})" if detail else f" ({type(exc).__name__})"
            self.buffer.add(level=record.levelname, message=message, job=_current_job.get() or "")
        except Exception:
            self.handleError(record)


class ConsoleFormatter(logging.Formatter):
    """Single-line console output; tracebacks only go to the log file."""

    def format(self, record: logging.LogRecord) -> str:
        plain = logging.makeLogRecord(dict(record.__dict__, exc_info=None, exc_text=None, stack_info=None))
        return super().format(plain)


class DashboardMuteFilter(logging.Filter):
    def __init__(self, live: threading.Event, allow_while_live: bool):
        super().__init__()
        self.live = live
        self.allow_while_live = allow_while_live

    def filter(self, record: logging.LogRecord) -> bool:
        return self.allow_while_live or not self.live.is_set()


@dataclass
class LoggingRuntime:
    live: threading.Event
    events: EventBuffer
    log_file_path: Path


def resolve_log_path(raw: str) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = (Path.cwd() / path).resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def configure_logging(config: Dict[str, Any], *, interactive: bool = True) -> LoggingRuntime:
    runtime_cfg = config.get("runtime", {})
    level = getattr(logging, str(runtime_cfg.get("log_level", "INFO")).upper(), logging.INFO)
    log_path = resolve_log_path(str(runtime_cfg.get("log_file_path", "logs/cinegraph_jobs.log")))
    raw_console = str(runtime_cfg.get("console_mode", "dashboard")).strip().lower() == "raw"
    if level <= logging.DEBUG and runtime_cfg.get("debug_raw_console_logs", False):
        raw_console = True

    events = EventBuffer(
        max_lines=runtime_cfg.get("dashboard_event_lines", 8),
        dedupe_window_seconds=runtime_cfg.get("dashboard_event_dedupe_window_seconds", 30),
        max_message_length=runtime_cfg.get("dashboard_event_max_message_length", 160),
    )
    live = threading.Event()
    job_filter = JobContextFilter()

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(level)

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=max(1024, int(runtime_cfg.get("log_file_max_bytes", 10485760))),
        backupCount=max(0, int(runtime_cfg.get("log_file_backup_count", 5))),
        encoding="utf-8",
    )
    file_handler.addFilter(job_filter)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)

    # One-shot commands print their own output; only warnings reach the console.
    console = logging.StreamHandler()
    console.setLevel(level if interactive else max(level, logging.WARNING))
    console.addFilter(job_filter)
    console.addFilter(DashboardMuteFilter(live, raw_console))
    console.setFormatter(ConsoleFormatter(LOG_FORMAT))
    root.addHandler(console)

    root.addHandler(EventBufferHandler(events))

    logging.captureWarnings(True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return LoggingRuntime(live=live, events=events, log_file_path=log_path)
