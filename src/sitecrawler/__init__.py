"""
Concurrent same-host website crawler.
Reports every reachable page's status and the links found on it as a stream of LinkReports.
"""
from sitecrawler.core import FailureKind, FetchError, LinkReport, Status, extract_links, probe_status
from sitecrawler.crawl import crawl, crawl_all
from sitecrawler.pool import WorkerPool
from sitecrawler.sync import ReportStream, SeenSet

__version__ = "1.0.0"
__all__ = [
    "crawl",
    "crawl_all",
    "extract_links",
    "probe_status",
    "FailureKind",
    "FetchError",
    "LinkReport",
    "ReportStream",
    "SeenSet",
    "Status",
    "WorkerPool",
]
