"""
Command-line interface for the crawler.
"""
from __future__ import annotations

import argparse
import logging
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence
from urllib.parse import urlparse

from sitecrawler.core import DEFAULT_TIMEOUT, DEFAULT_USER_AGENT, LinkReport, build_session
from sitecrawler.crawl import crawl
from sitecrawler.pool import WorkerPool
from sitecrawler.report import print_summary, render_json, render_sitemap, summarize

DEFAULT_WORKERS = 8

OUTPUT_SUFFIXES = {"sitemap": ".xml", "json": ".json"}


def configure_logging(verbose: bool) -> logging.Logger:
    """(Re)configure the package logger to write to stderr."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    lg = logging.getLogger("sitecrawler")
    lg.setLevel(logging.INFO if verbose else logging.WARNING)
    lg.handlers.clear()
    lg.addHandler(handler)
    lg.propagate = False
    return lg


def print_scan_line(report: LinkReport) -> None:
    """Print single scan result line."""
    status = report.status
    if not status.is_live:
        label = "DEAD"
    elif not status.is_crawlable:
        label = "SKIP"
    else:
        label = str(status.last_status)
    sys.stderr.write(f"  → {label} {report.path} (+{len(report.children)} links)\n")
    sys.stderr.flush()


def generate_output_path(start_url: str, output_format: str) -> Path:
    """Generate output path: crawls/{hostname}_{datetime}.{xml|json}"""
    parsed = urlparse(start_url)
    hostname = parsed.hostname or "unknown"
    # Sanitize hostname for filename (replace dots with underscores)
    hostname_safe = hostname.replace(".", "_")
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")

    crawls_dir = Path("crawls")
    crawls_dir.mkdir(exist_ok=True)

    return crawls_dir / f"{hostname_safe}_{timestamp}{OUTPUT_SUFFIXES[output_format]}"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sitecrawler",
        description=(
            "Crawl every page of a website's host, ignoring external links, "
            "and output each page's status and links."
        ),
    )
    parser.add_argument("start_url", help="Start URL (e.g. https://example.com)")
    parser.add_argument("--depth", type=int, default=-1,
                        help="Number of link levels to crawl; 0 or less is unbounded (default: -1)")
    parser.add_argument("--workers", type=int, default=DEFAULT_WORKERS,
                        help=f"Concurrent workers; 0 crawls on a single thread (default: {DEFAULT_WORKERS})")
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT,
                        help=f"Request timeout in seconds (default: {DEFAULT_TIMEOUT:g})")
    parser.add_argument("--user-agent", default=DEFAULT_USER_AGENT, help="User-Agent header")
    parser.add_argument("--format", dest="output_format", choices=sorted(OUTPUT_SUFFIXES), default="sitemap",
                        help="Output format (default: sitemap)")
    parser.add_argument("--out", help="Output file path, or '-' for stdout (default: auto-generated in crawls/)")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON")
    parser.add_argument("--verbose", action="store_true", help="Show each scanned page and a summary")
    parser.add_argument("--timed", action="store_true", help="Print how long the crawl took")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the crawler CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if args.workers < 0:
        parser.error("--workers must be 0 or more")

    start = time.monotonic()
    cancel = threading.Event()
    session = build_session(args.user_agent, max(args.workers, 1))
    pool = WorkerPool(args.workers, cancel) if args.workers else None

    records: List[LinkReport] = []
    try:
        try:
            stream = crawl(
                args.start_url,
                session=session,
                timeout=args.timeout,
                max_depth=args.depth,
                pool=pool,
                cancel=cancel,
            )
        except ValueError as e:
            sys.stderr.write(f"{e}\n")
            return 2

        try:
            for report in stream:
                records.append(report)
                if args.verbose:
                    print_scan_line(report)
        except KeyboardInterrupt:
            sys.stderr.write("\nInterrupted, waiting for in-flight pages...\n")
            cancel.set()
            records.extend(stream)
    finally:
        if pool is not None:
            pool.stop()
        session.close()

    if args.verbose:
        sys.stderr.write("\n")
        print_summary(summarize(records))

    if args.output_format == "json":
        output = render_json(records, pretty=args.pretty).encode("utf-8")
    else:
        output = render_sitemap(records)

    if args.out == "-":
        sys.stdout.write(output.decode("utf-8"))
        sys.stdout.write("\n")
    else:
        # Auto-generate path if not specified
        output_path = Path(args.out) if args.out else generate_output_path(args.start_url, args.output_format)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(output)
        if args.verbose:
            sys.stderr.write(f"Results written to: {output_path}\n")

    if args.timed:
        sys.stderr.write(f"Finished: {time.monotonic() - start:.2f}s.\n")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
