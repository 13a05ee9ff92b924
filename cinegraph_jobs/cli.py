from __future__ import annotations

import argparse
import asyncio
import json
import signal
from pathlib import Path
from typing import Any, Dict, Optional

from rich.console import Console
from rich.table import Table

from .common import LOGGER, ServiceResult
from .config import load_config
from .dashboard import RuntimeDashboard, render_backfill_table, render_status
from .logs import LoggingRuntime, configure_logging
from .notifications import NotificationSink
from .runner import JobRunner, build_context, open_database
from .service import ImportService


async def run_app(config: Dict[str, Any], logging_runtime: LoggingRuntime) -> None:
    db = open_database(config)
    live_active = False
    try:
        notifications = NotificationSink()
        ctx = build_context(config, db, notifications=notifications)
        runner = JobRunner(ctx=ctx)

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        def _signal_stop() -> None:
            if not stop_event.is_set():
                LOGGER.info("Stop signal received. Beginning graceful shutdown...")
                stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _signal_stop)
            except NotImplementedError:
                # Windows event loops may not support this.
                pass

        LOGGER.info("Database: %s", db.path)
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)
        LOGGER.info(
            "Starting: run_mode=%s, console_mode=%s, poll=%ss, lease=%ss",
            config["runtime"]["run_mode"],
            config["runtime"]["console_mode"],
            config["runtime"]["poll_seconds"],
            config["runtime"]["job_lease_seconds"],
        )

        tasks = [asyncio.create_task(runner.run(stop_event), name="runner")]
        if config["runtime"]["console_mode"] == "dashboard":
            dashboard = RuntimeDashboard(
                runner=runner,
                notifications=notifications,
                events=logging_runtime.events,
                event_lines=int(config["runtime"]["dashboard_event_lines"]),
            )
            logging_runtime.live.set()
            live_active = True
            tasks.append(asyncio.create_task(dashboard.run(stop_event), name="dashboard"))

        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for finished in done:
            exc = finished.exception()
            if exc is not None:
                LOGGER.error("Task %s failed: %s. Initiating shutdown.", finished.get_name(), exc)
                stop_event.set()
                for p in pending:
                    p.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                raise exc

        stop_event.set()
        await asyncio.gather(*pending, return_exceptions=True)
        LOGGER.info("Shutdown complete.")
    finally:
        if live_active:
            logging_runtime.live.clear()
        db.close()


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cinegraph-jobs",
        description="Background import, backfill and reconciliation jobs for the Cinegraph movie store",
    )
    parser.add_argument(
        "--config",
        default="config.json",
        help="Path to config JSON file (default: config.json)",
    )
    parser.add_argument("--json", action="store_true", help="Print results as JSON")
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Run the job runner")
    run.add_argument("--until-idle", action="store_true", help="Stop once no job is due")
    run.add_argument("--raw", action="store_true", help="Plain log output instead of the live dashboard")

    backfill = commands.add_parser("backfill", help="Control the continuous backfill loop")
    backfill_cmds = backfill.add_subparsers(dest="action", required=True)
    start = backfill_cmds.add_parser("start")
    start.add_argument("--batch-size", type=int, default=None)
    start.add_argument("--min-popularity", type=float, default=None)
    backfill_cmds.add_parser("stop")
    backfill_cmds.add_parser("resume")
    backfill_cmds.add_parser("status")

    canonical = commands.add_parser("canonical", help="Canonical list imports")
    canonical_cmds = canonical.add_subparsers(dest="action", required=True)
    canonical_import = canonical_cmds.add_parser("import")
    canonical_import.add_argument("list_key")

    awards = commands.add_parser("awards", help="Award and festival imports")
    awards_cmds = awards.add_subparsers(dest="action", required=True)
    award_import = awards_cmds.add_parser("import")
    award_import.add_argument("festival")
    award_import.add_argument("years", nargs="+", type=int)
    award_import.add_argument("--max-concurrency", type=int, default=None)
    for name in ("sync-missing", "resync-all", "status"):
        sub = awards_cmds.add_parser(name)
        sub.add_argument("festival")
    recent = awards_cmds.add_parser("resync-recent")
    recent.add_argument("festival")
    recent.add_argument("--years", type=int, default=5)

    years = commands.add_parser("years", help="Year-by-year TMDb import")
    years_cmds = years.add_subparsers(dest="action", required=True)
    year_import = years_cmds.add_parser("import")
    year_import.add_argument("year", nargs="?", type=int, default=None)

    gaps = commands.add_parser("gaps", help="Export coverage")
    gaps_cmds = gaps.add_subparsers(dest="action", required=True)
    gaps_cmds.add_parser("report")

    commands.add_parser("status", help="Print queue, backfill and list status")
    return parser


def _print_result(console: Console, result: ServiceResult, as_json: bool) -> int:
    if as_json:
        payload = {"ok": result.ok, "value": result.value, "error": result.error}
        console.print_json(json.dumps(payload, default=str))
        return 0 if result.ok else 1
    if not result.ok:
        console.print(f"[bold red]error:[/] {result.error}")
        return 1
    value = result.value
    if isinstance(value, dict):
        table = Table(show_header=False, show_edge=False)
        table.add_column(style="bold cyan")
        table.add_column()
        for key, item in value.items():
            table.add_row(str(key), json.dumps(item, default=str) if isinstance(item, (dict, list)) else str(item))
        console.print(table)
    elif isinstance(value, list):
        for item in value:
            console.print(item)
    else:
        console.print(value)
    return 0


def _print_award_statuses(console: Console, result: ServiceResult) -> int:
    if not result.ok:
        return _print_result(console, result, False)
    table = Table(title="Award import status")
    for column in ("year", "status", "matched", "total"):
        table.add_column(column, justify="right" if column != "status" else "left")
    for entry in result.value:
        table.add_row(str(entry["year"]), entry["status"], str(entry["matched"]), str(entry["total"]))
    console.print(table)
    return 0


async def run_command(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    console = Console()
    db = open_database(config)
    try:
        service = ImportService(build_context(config, db))
        result: Optional[ServiceResult] = None

        if args.command == "backfill":
            if args.action == "start":
                result = service.start_backfill(batch_size=args.batch_size, min_popularity=args.min_popularity)
            elif args.action == "stop":
                result = service.stop_backfill()
            elif args.action == "resume":
                result = service.resume_backfill()
            else:
                result = service.get_backfill_status()
                if result.ok and not args.json:
                    console.print(render_backfill_table(result.value))
                    return 0
        elif args.command == "canonical":
            result = service.queue_canonical_import(args.list_key)
        elif args.command == "awards":
            if args.action == "import":
                if len(args.years) == 1:
                    result = service.queue_import(args.festival, args.years[0])
                else:
                    result = service.queue_festival_years(args.festival, args.years, args.max_concurrency)
            elif args.action == "sync-missing":
                result = service.queue_sync_missing(args.festival)
            elif args.action == "resync-all":
                result = service.queue_resync_all(args.festival)
            elif args.action == "resync-recent":
                result = service.queue_resync_recent(args.festival, args.years)
            else:
                result = service.award_statuses(args.festival)
                if not args.json:
                    return _print_award_statuses(console, result)
        elif args.command == "years":
            result = service.queue_year_import(args.year)
        elif args.command == "gaps":
            result = await service.gap_report()
        else:
            result = service.status()
            if result.ok and not args.json:
                console.print(render_status(result.value))
                return 0

        return _print_result(console, result, args.json)
    finally:
        db.close()


def main(argv=None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    config_path = Path(args.config).expanduser().resolve()

    try:
        config = load_config(config_path)
    except Exception as exc:
        print(f"[FATAL] Could not load config: {exc}")
        return 1

    if args.command == "run":
        if args.until_idle:
            config["runtime"]["run_mode"] = "until_idle"
        if args.raw:
            config["runtime"]["console_mode"] = "raw"
        logging_runtime = configure_logging(config)
        try:
            asyncio.run(run_app(config, logging_runtime))
            LOGGER.info("Log file: %s", logging_runtime.log_file_path)
        except KeyboardInterrupt:
            LOGGER.info("Interrupted by user")
            return 0
        except Exception:
            LOGGER.exception("Fatal runtime error")
            LOGGER.info("Log file: %s", logging_runtime.log_file_path)
            return 1
        return 0

    configure_logging(config, interactive=False)
    try:
        return asyncio.run(run_command(args, config))
    except Exception:
        LOGGER.exception("Command %s failed", args.command)
        return 1
