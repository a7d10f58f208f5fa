"""taskrelay CLI: inspect pipelines, the manual queue, and recover stale tasks."""

import argparse
import logging
import sys
from datetime import datetime

from . import __version__
from .config import get_cleanup_ms, get_logs_dir, get_stale_timeout_ms, load_config
from .notifications import build_notification_manager
from .orchestrator import recover_stale_pipelines
from .storage import open_stores
from .task_logger import get_task_logger


def _fmt_table(rows: list[list[str]], headers: list[str]) -> str:
    """Format rows as a simple aligned table."""
    all_rows = [headers] + rows
    widths = [max(len(r[i]) for r in all_rows) for i in range(len(headers))]
    lines = []
    lines.append("  ".join(h.ljust(w) for h, w in zip(headers, widths)))
    lines.append("  ".join("-" * w for w in widths))
    for row in rows:
        lines.append("  ".join(c.ljust(w) for c, w in zip(row, widths)))
    return "\n".join(lines)


def _fmt_duration(ms: int | None) -> str:
    if ms is None:
        return ""
    seconds = ms // 1000
    if seconds < 60:
        return f"{seconds}s"
    minutes, seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m{seconds:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m"


def _timeout_ms(args: argparse.Namespace) -> int:
    if args.timeout_minutes is not None:
        return int(args.timeout_minutes * 60 * 1000)
    return get_stale_timeout_ms()


def setup_logging(debug: bool = False) -> None:
    """INFO to stderr; with --debug, DEBUG also goes to logs/taskrelay-<date>.log."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    root.addHandler(console)

    if debug:
        logs_dir = get_logs_dir()
        logs_dir.mkdir(parents=True, exist_ok=True)
        date_str = datetime.now().strftime("%Y-%m-%d")
        file_handler = logging.FileHandler(logs_dir / f"taskrelay-{date_str}.log")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s")
        )
        root.addHandler(file_handler)


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------

def cmd_status(args: argparse.Namespace) -> None:
    """Show a pipeline's summary and stage history."""
    pipeline = open_stores().pipeline
    summary = pipeline.get_summary(args.task_id)

    if summary is None:
        print(f"No pipeline for task: {args.task_id}", file=sys.stderr)
        sys.exit(1)

    record = pipeline.get(args.task_id)
    print(f"  {'task':12s}  {summary.task_id}  {summary.task_name}")
    print(f"  {'status':12s}  {summary.status}")
    print(f"  {'stage':12s}  {summary.current_stage}")
    print(f"  {'progress':12s}  {summary.progress}%")
    print(f"  {'duration':12s}  {_fmt_duration(summary.duration)}")
    if summary.review_iterations:
        print(f"  {'reviews':12s}  {summary.review_iterations}")
    print()

    rows = [
        [s.stage, s.status, s.started_at, _fmt_duration(s.duration), (s.error or "")[:60]]
        for s in record.stages
    ]
    print(_fmt_table(rows, ["STAGE", "STATUS", "STARTED", "DURATION", "ERROR"]))

    if record.errors:
        print("\nErrors:")
        for err in record.errors:
            print(f"  [{err.timestamp}] {err.stage}: {err.error}")


def cmd_active(args: argparse.Namespace) -> None:
    """List in-progress pipelines."""
    pipeline = open_stores().pipeline
    active = pipeline.get_active()

    if not active:
        print("No active pipelines.")
        return

    rows = []
    for record in active:
        summary = pipeline.get_summary(record.task_id)
        rows.append([
            record.task_id,
            record.current_stage,
            f"{summary.progress}%",
            record.updated_at,
            record.task_name[:50],
        ])

    print(_fmt_table(rows, ["ID", "STAGE", "PROGRESS", "UPDATED", "NAME"]))
    print(f"\n{len(active)} active pipeline(s)")


def cmd_stale(args: argparse.Namespace) -> None:
    """List in-progress pipelines idle past the timeout, without touching them."""
    stale = open_stores().pipeline.find_stale(_timeout_ms(args))

    if not stale:
        print("No stale pipelines.")
        return

    rows = [[p.task_id, p.current_stage, p.updated_at, p.task_name[:50]] for p in stale]
    print(_fmt_table(rows, ["ID", "STAGE", "UPDATED", "NAME"]))
    print(f"\n{len(stale)} stale pipeline(s)")


def cmd_recover(args: argparse.Namespace) -> None:
    """Mark stale pipelines failed and notify."""
    recovered = recover_stale_pipelines(
        open_stores().pipeline,
        build_notification_manager(load_config()),
        _timeout_ms(args),
        task_logger=get_task_logger,
    )
    print(f"Recovered {recovered} stale pipeline(s)")


def cmd_queue(args: argparse.Namespace) -> None:
    """List tasks queued for manual processing."""
    queue = open_stores().queue
    entries = queue.get_completed() if args.completed else queue.get_pending()
    label = "completed" if args.completed else "pending"

    if not entries:
        print(f"No {label} tasks.")
        return

    rows = [[t.id, t.branch, t.queued_at, t.title[:50]] for t in entries]
    print(_fmt_table(rows, ["ID", "BRANCH", "QUEUED", "TITLE"]))
    print(f"\n{len(entries)} {label} task(s)")


def cmd_cleanup(args: argparse.Namespace) -> None:
    """Delete finished pipelines older than the retention period."""
    older_than_ms = int(args.days * 24 * 60 * 60 * 1000) if args.days is not None else get_cleanup_ms()
    removed = open_stores().pipeline.cleanup(older_than_ms)
    print(f"Removed {removed} finished pipeline(s)")


def cmd_log(args: argparse.Namespace) -> None:
    """Print a task's audit log."""
    events = get_task_logger(args.task_id).get_events(args.event)

    if not events:
        print(f"No log events for task: {args.task_id}")
        return

    for event in events:
        fields = " ".join(
            f"{k}={v}" for k, v in event.items() if k not in ("timestamp", "event")
        )
        print(f"[{event['timestamp']}] {event['event']} {fields}".rstrip())


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="taskrelay",
        description="taskrelay pipeline state CLI",
    )
    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging to .taskrelay/logs/",
    )
    sub = parser.add_subparsers(dest="command")

    # status <task_id>
    p_status = sub.add_parser("status", help="Show pipeline status for a task")
    p_status.add_argument("task_id", help="Task ID")
    p_status.set_defaults(func=cmd_status)

    # active
    p_active = sub.add_parser("active", help="List in-progress pipelines")
    p_active.set_defaults(func=cmd_active)

    # stale
    p_stale = sub.add_parser("stale", help="List stale pipelines")
    p_stale.add_argument("--timeout-minutes", type=float, help="Inactivity threshold")
    p_stale.set_defaults(func=cmd_stale)

    # recover
    p_recover = sub.add_parser("recover", help="Fail stale pipelines and notify")
    p_recover.add_argument("--timeout-minutes", type=float, help="Inactivity threshold")
    p_recover.set_defaults(func=cmd_recover)

    # queue
    p_queue = sub.add_parser("queue", help="List tasks queued for manual processing")
    p_queue.add_argument("--completed", action="store_true", help="Show completed entries")
    p_queue.set_defaults(func=cmd_queue)

    # cleanup
    p_cleanup = sub.add_parser("cleanup", help="Delete old finished pipelines")
    p_cleanup.add_argument("--days", type=float, help="Retention in days")
    p_cleanup.set_defaults(func=cmd_cleanup)

    # log <task_id>
    p_log = sub.add_parser("log", help="Show a task's audit log")
    p_log.add_argument("task_id", help="Task ID")
    p_log.add_argument("--event", "-e", help="Only show this event type (e.g. STAGE_FAILED)")
    p_log.set_defaults(func=cmd_log)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(0)

    setup_logging(args.debug)
    args.func(args)


if __name__ == "__main__":
    main()
