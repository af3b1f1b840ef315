"""
Rendering of crawl reports: XML sitemap, JSON and summary statistics.
"""
from __future__ import annotations

import json
import sys
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable

from lxml import etree

from sitecrawler.core import LinkReport, Status

SITEMAP_NS = "http://www.sitemaps.org/schemas/sitemap/0.9"


@dataclass(slots=True)
class CrawlStats:
    """Statistics collected from a crawl for summary output."""
    pages_crawled: int = 0
    pages_dead: int = 0
    pages_non_html: int = 0
    links_found: int = 0
    error_counts: Dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record(self, report: LinkReport) -> None:
        """Record one page report."""
        status = report.status
        self.pages_crawled += 1
        self.links_found += len(report.children)
        if not status.is_live:
            self.pages_dead += 1
        elif not status.is_crawlable:
            self.pages_non_html += 1
        if status.reason is not None and not status.is_live:
            self.error_counts[status.reason.value] += 1


def summarize(reports: Iterable[LinkReport]) -> CrawlStats:
    stats = CrawlStats()
    for report in reports:
        stats.record(report)
    return stats


def print_summary(stats: CrawlStats) -> None:
    """Print crawl summary to stderr."""
    sys.stderr.write("=" * 50 + "\n")
    sys.stderr.write("CRAWL SUMMARY\n")
    sys.stderr.write("=" * 50 + "\n\n")

    sys.stderr.write(f"Total pages crawled:    {stats.pages_crawled}\n")
    sys.stderr.write(f"Dead pages:             {stats.pages_dead}\n")
    sys.stderr.write(f"Non-HTML pages:         {stats.pages_non_html}\n")
    sys.stderr.write(f"Same-host links found:  {stats.links_found}\n\n")

    if stats.error_counts:
        sys.stderr.write("Failures by reason:\n")
        for reason, count in sorted(stats.error_counts.items()):
            sys.stderr.write(f"  {reason}: {count}\n")
    else:
        sys.stderr.write("No failures encountered.\n")

    sys.stderr.write("\n")


def status_to_dict(status: Status) -> Dict[str, Any]:
    return {
        "is_live": status.is_live,
        "is_crawlable": status.is_crawlable,
        "last_status": status.last_status,
        "at": status.at.isoformat(),
        "reason": status.reason.value if status.reason else None,
        "detail": status.detail,
    }


def report_to_dict(report: LinkReport) -> Dict[str, Any]:
    return {
        "path": report.path,
        "status": status_to_dict(report.status),
        "children": [report_to_dict(child) for child in report.children],
    }


def render_json(reports: Iterable[LinkReport], pretty: bool = False) -> str:
    payload = [report_to_dict(r) for r in sorted(reports, key=lambda r: r.path)]
    return json.dumps(payload, ensure_ascii=False, indent=2 if pretty else None)


def _tag(name: str) -> str:
    return f"{{{SITEMAP_NS}}}{name}"


def _flag(value: bool) -> str:
    return "true" if value else "false"


def render_sitemap(reports: Iterable[LinkReport], pretty: bool = True) -> bytes:
    """
    Render reports as a sitemap-style XML document.

    Each page gets a <url> entry with its status and a <connects> list of the
    same-host links found on it.
    """
    urlset = etree.Element(_tag("urlset"), nsmap={None: SITEMAP_NS})

    for report in sorted(reports, key=lambda r: r.path):
        status = report.status
        entry = etree.SubElement(urlset, _tag("url"))
        etree.SubElement(entry, _tag("loc")).text = report.path
        etree.SubElement(entry, _tag("laststatus")).text = str(status.last_status)
        etree.SubElement(entry, _tag("lastchecked")).text = status.at.isoformat()
        etree.SubElement(entry, _tag("reachable")).text = _flag(status.is_live)
        etree.SubElement(entry, _tag("crawlable")).text = _flag(status.is_crawlable)
        if status.reason is not None:
            error = status.reason.value
            if status.detail:
                error = f"{error}: {status.detail}"
            etree.SubElement(entry, _tag("reachable_error")).text = error

        connects = etree.SubElement(entry, _tag("connects"))
        for child in report.children:
            etree.SubElement(connects, _tag("link")).text = child.path

    return etree.tostring(urlset, xml_declaration=True, encoding="UTF-8", pretty_print=pretty)
