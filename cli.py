"""
Command-line interface for the DB metrics collector: run, collect once, validate config.
"""
from __future__ import annotations

import argparse
import json
import sys

from rich.console import Console
from rich.table import Table

import config
from config import CollectorSettings, ConfigError
from utils import json_default, setup_logging


def _load(args: argparse.Namespace) -> CollectorSettings:
    config.load_config_file(getattr(args, "config", None))
    settings = CollectorSettings.load()
    setup_logging(getattr(args, "log_level", None) or settings.log_level, settings.log_file)
    return settings


def cmd_run(args: argparse.Namespace) -> int:
    from service import CollectorService

    settings = _load(args)
    service = CollectorService(settings)
    if args.api or settings.api_enabled:
        service.start_api()
    service.start()
    return 0


def cmd_collect(args: argparse.Namespace) -> int:
    from service import CollectorService

    settings = _load(args)
    # keep the events of this run for printing
    settings.sinks = list(settings.sinks) + [{"type": "memory", "max_events": args.max_events}]
    service = CollectorService(settings)
    try:
        summary = service.collect_once()
    finally:
        service.close()
    events = service.memory_sink.events() if service.memory_sink else []

    if args.json:
        out = {
            "summary": summary.to_dict(),
            "events": [e.to_dict() for e in events],
            "issues": [i.to_dict() for r in summary.reports for i in r.issues],
        }
        print(json.dumps(out, indent=2 if args.pretty else None, default=json_default))
        return 0 if summary.targets_failed == 0 else 1

    console = Console()
    e_table = Table(title=f"Events ({len(events)})")
    e_table.add_column("Type", style="cyan")
    e_table.add_column("Timestamp", style="dim")
    e_table.add_column("Fields", style="green")
    for e in events:
        fields = ", ".join(f"{k}={v!r}" for k, v in sorted(e.fields.items()))
        e_table.add_row(e.type, e.timestamp.isoformat(timespec="seconds"), fields)
    console.print(e_table)

    issues = [i for r in summary.reports for i in r.issues]
    if issues:
        i_table = Table(title=f"Issues ({len(issues)})")
        i_table.add_column("Kind", style="red")
        i_table.add_column("Target", style="cyan")
        i_table.add_column("Metric")
        i_table.add_column("Message", style="yellow")
        for i in issues:
            i_table.add_row(i.kind.value, i.target, i.metric or "", i.message)
        console.print(i_table)
    return 0 if summary.targets_failed == 0 else 1


def cmd_validate_config(args: argparse.Namespace) -> int:
    from catalog import MetricCatalog
    from scheduler import resolve_targets
    from sinks import build_sink

    loaded = config.load_config_file(getattr(args, "config", None))
    settings = CollectorSettings.load()
    catalog = MetricCatalog.from_config(settings.catalog)
    targets = resolve_targets(settings.targets, env_key=settings.fallback_env)
    sink = build_sink(settings.sinks)

    console = Console()
    console.print(f"Config file loaded: {config.loaded_path() if loaded else 'no (defaults)'}")
    table = Table(title="Settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("period", f"{settings.period_sec}s")
    table.add_row("overlap", settings.overlap)
    table.add_row("shutdown timeout", f"{settings.shutdown_timeout_sec}s")
    table.add_row("targets", "\n".join(t.label for t in targets))
    table.add_row("metrics", "\n".join(m.name for m in catalog))
    table.add_row("sinks", ", ".join(s.name for s in sink.sinks))
    table.add_row("api", f"{settings.api_host}:{settings.api_port}" if settings.api_enabled else "disabled")
    console.print(table)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="db-metrics-collector", description="DB metrics collector CLI")
    parser.add_argument("--config", default=None, help="Path to config.yaml")
    parser.add_argument("--log-level", default=None, help="Log level (overrides config)")
    sub = parser.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser("run", help="Collect every period until interrupted")
    p_run.add_argument("--api", action="store_true", help="Serve the status API")
    p_run.set_defaults(run=cmd_run)

    p_collect = sub.add_parser("collect", help="Run one collection and print the events")
    p_collect.add_argument("--json", action="store_true", help="Output JSON")
    p_collect.add_argument("--pretty", action="store_true", help="Pretty-print JSON")
    p_collect.add_argument("--max-events", type=int, default=1000, help="Events kept for output")
    p_collect.set_defaults(run=cmd_collect)

    p_validate = sub.add_parser("validate-config", help="Validate and show config")
    p_validate.set_defaults(run=cmd_validate_config)

    args = parser.parse_args(argv)
    try:
        return args.run(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
