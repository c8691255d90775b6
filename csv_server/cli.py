#!/usr/bin/env python3
"""
csv-server CLI — serve, check, and one-off reports.

USAGE:
  python -m csv_server.cli serve                                   # Start the server
  python -m csv_server.cli serve --config config/server.json --port 8080

  python -m csv_server.cli check                                   # Load every dataset, print counts

  python -m csv_server.cli report trades --group-by security --metric "sum(Quantity)"
  python -m csv_server.cli report trades --template report.txt --filter "Transaction Type:eq:Buy"
  python -m csv_server.cli report trades --excel --output trades.xlsx
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from csv_server.analytics.aggregate import aggregate, parse_query
from csv_server.config import CONFIG_PATH, DEFAULT_PORT, load_config
from csv_server.data.store import DatasetStore
from csv_server.errors import ConfigError, CsvServerError, NotFound
from csv_server.logging_config import configure_logging
from csv_server.render.excel import render_workbook
from csv_server.render.renderer import RenderContext, TemplateRenderer

logger = logging.getLogger(__name__)


def cmd_serve(args) -> int:
    """Validate config, then start the API server."""
    import uvicorn

    cfg = load_config(args.config)
    os.environ["CSV_SERVER_CONFIG"] = str(Path(args.config).resolve())
    port = args.port or cfg.port
    logger.info("Starting csv-server", extra={"host": cfg.host, "port": port})
    uvicorn.run("csv_server.main:app", host=cfg.host, port=port, reload=args.reload,
                timeout_keep_alive=65, log_config=None)
    return 0


def cmd_check(args) -> int:
    """Load every dataset once and print what was parsed."""
    cfg = load_config(args.config)
    store = DatasetStore.from_config(cfg)
    failed = 0
    try:
        store.load_all(wait=True)
        for status in store.statuses():
            if status["version"] is None:
                failed += 1
                print(f"  {status['name']:<24} FAILED  {status['last_error']}")
            else:
                print(f"  {status['name']:<24} {status['rows']:>8,} rows  {status['rows_skipped']:>6,} skipped")
    finally:
        store.close()
    return 1 if failed else 0


def cmd_report(args) -> int:
    """Aggregate one dataset and write a rendered report (or workbook)."""
    cfg = load_config(args.config)
    if cfg.dataset(args.dataset) is None:
        raise NotFound(f"Unknown dataset: {args.dataset}")

    store = DatasetStore([cfg.dataset(args.dataset)], policy=cfg.refresh_policy)
    try:
        snapshot = store.refresh(args.dataset).result()
    finally:
        store.close()

    query = parse_query(args.filter, args.group_by, args.metric)
    result = aggregate(snapshot, query)

    if args.excel:
        body = render_workbook(RenderContext.for_snapshot("excel", snapshot, result, query))
    else:
        renderer = TemplateRenderer(cfg.templates_dir)
        name = renderer.resolve(args.template)
        body = renderer.render(name, RenderContext.for_snapshot(name, snapshot, result, query)).body

    if args.output:
        out = Path(args.output)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_bytes(body)
        print(f"  Wrote {out} ({len(body):,} bytes)")
    elif args.excel:
        print("  --excel needs --output", file=sys.stderr)
        return 2
    else:
        sys.stdout.buffer.write(body)
        sys.stdout.flush()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="csv-server — aggregated reports over investment CSV exports",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default=str(CONFIG_PATH), help=f"Config file (default: {CONFIG_PATH})")
    parser.add_argument("--log-format", choices=["json", "plain"], help="Log format (default: json)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Command")

    # serve subcommand
    serve_parser = subparsers.add_parser("serve", help="Start API server")
    serve_parser.add_argument(
        "--port", type=int, default=int(os.environ.get("CSV_SERVER_PORT", "0")) or None,
        help=f"Port (default: config value, else {DEFAULT_PORT})",
    )
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    serve_parser.set_defaults(func=cmd_serve)

    # check subcommand
    check_parser = subparsers.add_parser("check", help="Load every dataset and report row counts")
    check_parser.set_defaults(func=cmd_check)

    # report subcommand
    report_parser = subparsers.add_parser("report", help="Render one report to stdout or a file")
    report_parser.add_argument("dataset", help="Dataset name")
    report_parser.add_argument("--template", default="report.txt", help="Template (default: report.txt)")
    report_parser.add_argument("--filter", action="append", default=[], help="column:eq|in|range:value")
    report_parser.add_argument("--group-by", action="append", default=[], help="Group column(s)")
    report_parser.add_argument("--metric", action="append", default=[], help="sum(col), avg(col), count, ...")
    report_parser.add_argument("--excel", action="store_true", help="Write an .xlsx workbook instead")
    report_parser.add_argument("--output", help="Output file (default: stdout)")
    report_parser.set_defaults(func=cmd_report)

    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO, force_format=args.log_format)
    if not args.command:
        parser.print_help()
        return 0

    try:
        return args.func(args)
    except ConfigError as e:
        print(f"  Config error: {e.message}", file=sys.stderr)
        return 2
    except CsvServerError as e:
        print(f"  {e.code}: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
