from __future__ import annotations

import asyncio
import sqlite3
import time
from typing import Any, Dict, List, Optional

from rich.console import Group
from rich.live import Live
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table
from rich.text import Text

from .common import now_epoch, to_iso
from .jobqueue import ALL_STATES
from .logs import EventBuffer
from .notifications import NotificationSink
from .runner import JobRunner
from .workers.backfill import BackfillController


LABEL_WIDTH = 24
BAR_WIDTH = 30
SERVICES = ("tmdb", "omdb", "imdb")


def _format_iso(ts: Optional[int]) -> str:
    if not ts:
        return "-"
    return to_iso(int(ts))


def _format_duration(seconds: int) -> str:
    s = max(0, int(seconds))
    hours, rem = divmod(s, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def _render_bar(total: Optional[int], completed: int, width: int = BAR_WIDTH) -> Any:
    if not total or total <= 0:
        return Text("-")
    safe_total = max(1, int(total))
    return ProgressBar(total=safe_total, completed=max(0, min(int(completed), safe_total)), width=width)


def _label_table() -> Table:
    table = Table.grid(expand=True, padding=(0, 1))
    table.add_column(style="bold cyan", no_wrap=True, width=LABEL_WIDTH, min_width=LABEL_WIDTH)
    table.add_column(style="white", no_wrap=True, overflow="crop", ratio=1)
    return table


def render_queue_table(queue_counts: Dict[str, Dict[str, int]]) -> Table:
    table = Table(expand=True, show_edge=False, pad_edge=False)
    table.add_column("Queue", style="bold", no_wrap=True)
    for state in ALL_STATES:
        table.add_column(state, justify="right")
    if not queue_counts:
        table.add_row("-", *["0" for _ in ALL_STATES])
    for queue_name in sorted(queue_counts):
        counts = queue_counts[queue_name]
        table.add_row(queue_name, *[str(counts.get(state, 0)) for state in ALL_STATES])
    return table


def render_backfill_table(status: Dict[str, Any]) -> Table:
    table = _label_table()
    table.add_row("Status", str(status["status"]))
    table.add_row(
        "Batch",
        f"#{status['current_batch']} size={status['batch_size']} min_popularity={status['min_popularity']}",
    )
    table.add_row(
        "Queued / pending",
        f"total={status['total_queued']} pending={status['pending_jobs']} executing={status['executing_jobs']}",
    )
    table.add_row(
        "Remaining",
        f"~{status['estimated_remaining']} movies, ~{status['estimated_batches_remaining']} batch(es)",
    )
    table.add_row(
        "Timeline",
        f"started={_format_iso(status['started_at'])} last_batch={_format_iso(status['last_batch_at'])}",
    )
    return table


def render_lists_table(lists: List[Dict[str, Any]]) -> Table:
    table = Table.grid(expand=True, padding=(0, 1))
    table.add_column(style="bold green", no_wrap=True, width=LABEL_WIDTH, min_width=LABEL_WIDTH)
    table.add_column(no_wrap=True, width=BAR_WIDTH)
    table.add_column(style="white", no_wrap=True, overflow="crop", ratio=1)
    if not lists:
        table.add_row("-", Text("-"), "no canonical lists configured")
    for entry in lists:
        expected = entry.get("expected")
        table.add_row(
            str(entry["source_key"]),
            _render_bar(expected, int(entry.get("imported") or 0)),
            f"{entry.get('imported') or 0}/{expected or '?'} status={entry.get('status') or '-'}",
        )
    return table


def service_line(row: Optional[sqlite3.Row]) -> str:
    if row is None:
        return "-"
    paused_until = int(row["paused_until"] or 0)
    status = int(row["last_status"] or 0)
    updated = _format_iso(int(row["updated_at"] or 0))
    if paused_until > now_epoch():
        return f"paused status={status} until={_format_iso(paused_until)} reason={row['pause_reason'] or '-'}"
    return f"ready status={status} updated={updated}"


def render_status(status: Dict[str, Any]) -> Group:
    """One-shot status output for the CLI."""
    store = status["store"]
    system = _label_table()
    system.add_row(
        "Store",
        f"movies={store['movies_total']} (soft={store['movies_soft']}) people={store['people_total']}",
    )
    system.add_row(
        "Awards",
        (
            f"ceremonies={store['ceremonies_total']} nominations={store['nominations_total']} "
            f"pending={store['nominations_pending']}"
        ),
    )
    system.add_row("Lookup failures", str(store["lookup_failures"]))
    gap = status["gap"]
    system.add_row(
        "Export baseline",
        f"{gap['export_date'] or '-'} total={gap['export_total']} fresh={gap['fresh']} missing={gap['last_missing_count']}",
    )
    services = {row["service"]: row for row in status["services"]}
    for name in SERVICES:
        system.add_row(f"Service {name}", service_line(services.get(name)))

    return Group(
        Panel(render_queue_table(status["queues"]), title="Queues", border_style="blue", title_align="left"),
        Panel(render_backfill_table(status["backfill"]), title="Backfill", border_style="cyan", title_align="left"),
        Panel(render_lists_table(status["lists"]), title="Canonical lists", border_style="green", title_align="left"),
        Panel(system, title="System", border_style="magenta", title_align="left"),
    )


class RuntimeDashboard:
    """In-process terminal dashboard rendered with rich."""

    def __init__(
        self,
        *,
        runner: JobRunner,
        notifications: NotificationSink,
        events: EventBuffer,
        event_lines: int = 8,
        refresh_seconds: float = 0.5,
    ):
        self.runner = runner
        self.db = runner.ctx.db
        self.queue = runner.queue
        self.notifications = notifications
        self.backfill = BackfillController(
            queue=runner.queue, progress=runner.ctx.progress, config=runner.ctx.config
        )
        self.events = events
        self.event_lines = max(3, int(event_lines))
        self.refresh_seconds = max(0.1, float(refresh_seconds))
        self.started_at = now_epoch()

        self._last_db_refresh = 0.0
        self._db_refresh_interval = 2.0
        self.queue_snapshot: Dict[str, Dict[str, int]] = {}
        self.backfill_snapshot: Dict[str, Any] = {}
        self.lists_snapshot: List[Dict[str, Any]] = []
        self.store_snapshot: Dict[str, int] = {}
        self.service_snapshot: Dict[str, Optional[sqlite3.Row]] = {name: None for name in SERVICES}

    def _refresh_from_db(self, force: bool = False) -> None:
        now_mono = time.monotonic()
        if not force and now_mono - self._last_db_refresh < self._db_refresh_interval:
            return
        self._last_db_refresh = now_mono

        self.queue_snapshot = self.queue.queue_state_counts()
        self.backfill_snapshot = self.backfill.status()
        self.store_snapshot = self.db.dashboard_snapshot()
        self.lists_snapshot = [
            {
                "source_key": row["source_key"],
                "expected": row["expected_movie_count"],
                "imported": self.db.count_canonical(str(row["source_key"])),
                "status": row["last_import_status"],
            }
            for row in self.db.list_movie_lists()
        ]
        self.service_snapshot = {name: self.db.get_service_state(name) for name in SERVICES}

    def _render_notifications_panel(self) -> Panel:
        table = _label_table()
        latest = self.notifications.latest_by_topic()
        if not latest:
            table.add_row("-", "no notifications yet")
        for topic in sorted(latest):
            note = latest[topic]
            summary = " ".join(f"{key}={value}" for key, value in note.event.items() if not isinstance(value, (list, dict)))
            table.add_row(f"{_format_iso(note.published_at)} {topic}", summary)
        return Panel(table, title="Notifications", border_style="green", title_align="left")

    def _render_events_panel(self) -> Panel:
        table = _label_table()
        events = self.events.snapshot()
        rendered = []
        for entry in reversed(events[-self.event_lines :]):
            level = "WARN" if str(entry.level).upper() == "WARNING" else str(entry.level).upper()
            suffix = f" x{entry.count}" if entry.count > 1 else ""
            source = entry.job or entry.component
            prefix = f"[{source}] " if source else ""
            rendered.append((f"{_format_iso(entry.timestamp)} {level}", f"{prefix}{entry.message}{suffix}"))
        while len(rendered) < self.event_lines:
            rendered.append(("-", "-"))
        for when, message in rendered:
            table.add_row(when, message)
        return Panel(table, title="Events", border_style="yellow", title_align="left")

    def _render_system_panel(self) -> Panel:
        store = self.store_snapshot
        table = _label_table()
        table.add_row(
            "Store",
            f"movies={store.get('movies_total', 0)} soft={store.get('movies_soft', 0)} people={store.get('people_total', 0)}",
        )
        table.add_row(
            "Awards",
            f"nominations={store.get('nominations_total', 0)} pending={store.get('nominations_pending', 0)}",
        )
        executing = ", ".join(sorted(set(self.runner.executing.values()))) or "-"
        table.add_row("Executing", executing)
        table.add_row("Runner", " ".join(f"{k}={v}" for k, v in sorted(self.runner.stats.items())) or "-")
        for name in SERVICES:
            table.add_row(f"Service {name}", service_line(self.service_snapshot.get(name)))
        return Panel(table, title="System", border_style="magenta", title_align="left")

    def render(self) -> Group:
        uptime = _format_duration(now_epoch() - self.started_at)
        header = Text(
            f"cinegraph-jobs live status | uptime={uptime} | executing={len(self.runner.executing)}",
            style="bold",
        )
        panels = [header, Panel(render_queue_table(self.queue_snapshot), title="Queues", border_style="blue", title_align="left")]
        if self.backfill_snapshot:
            panels.append(
                Panel(render_backfill_table(self.backfill_snapshot), title="Backfill", border_style="cyan", title_align="left")
            )
        panels.append(
            Panel(render_lists_table(self.lists_snapshot), title="Canonical lists", border_style="green", title_align="left")
        )
        panels.append(self._render_notifications_panel())
        panels.append(self._render_events_panel())
        panels.append(self._render_system_panel())
        return Group(*panels)

    async def run(self, stop_event: asyncio.Event) -> None:
        self._refresh_from_db(force=True)
        with Live(
            self.render(),
            auto_refresh=False,
            refresh_per_second=max(1, int(1 / self.refresh_seconds)),
            transient=False,
            screen=False,
        ) as live:
            while not stop_event.is_set():
                self._refresh_from_db(force=False)
                live.update(self.render(), refresh=True)
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.refresh_seconds)
                except asyncio.TimeoutError:
                    pass
