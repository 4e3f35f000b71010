"""JSONL article importer.

Reads an article export (one JSON object per line) from a local file or a URL and
creates each article through ArticleService, which queues its embedding job. Lines
that are blank, not valid JSON, or missing a title are logged and skipped; the import
continues with the next line.

Recognized fields per line:
  original_id (or id), title, subtitle, content, link, channel_id, author_id (or
  author_wpid), status, publish_date, last_updated

Usage:
  python -m kb_agent.ingestion.import_articles --path ./articles.jsonl
  python -m kb_agent.ingestion.import_articles --url https://example.com/articles.jsonl --start-line 500

Pacing:
  --batch-size articles are created between pauses of --batch-delay seconds.
"""
from __future__ import annotations

import argparse
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, Optional, Tuple

import redis
import requests
from pydantic import ValidationError

from kb_agent.articles import ArticleService
from kb_agent.config import get_settings
from kb_agent.db import init_db
from kb_agent.errors import StoreError
from kb_agent.obs import configure_logging
from kb_agent.schemas import ArticleIn
from kb_agent.services import build_services

logger = logging.getLogger(__name__)

HEADERS = {
    "User-Agent": "KB-Importer/1.0",
    "Accept": "application/x-ndjson, application/json, text/plain",
}


@dataclass
class ImportStats:
    created: int = 0
    skipped: int = 0
    failed: int = 0


def _first(raw: Dict[str, Any], *names: str) -> Any:
    for n in names:
        if raw.get(n) not in (None, ""):
            return raw[n]
    return None


def parse_article(raw: Dict[str, Any]) -> ArticleIn:
    """Map one exported record to ArticleIn.

    Raises:
        pydantic.ValidationError: If required fields are missing or malformed.
    """
    return ArticleIn(
        original_id=_first(raw, "original_id", "id"),
        title=raw.get("title") or "",
        subtitle=raw.get("subtitle") or None,
        content=raw.get("content") or "",
        link=raw.get("link") or "",
        channel_id=_first(raw, "channel_id"),
        author_id=_first(raw, "author_id", "author_wpid"),
        status=_first(raw, "status"),
        publish_date=_first(raw, "publish_date"),
        last_updated=_first(raw, "last_updated"),
    )


def read_lines_from_path(path: str) -> Iterator[str]:
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            yield line


def read_lines_from_url(url: str, timeout: int = 60) -> Iterator[str]:
    logger.info("Fetching JSONL: %s", url)
    resp = requests.get(url, headers=HEADERS, timeout=timeout, stream=True)
    logger.info("HTTP %d from %s (content-type=%s)", resp.status_code, url, resp.headers.get("Content-Type", ""))
    resp.raise_for_status()
    for line in resp.iter_lines(decode_unicode=True):
        yield line or ""


def numbered(lines: Iterable[str], start_line: int = 1) -> Iterator[Tuple[int, str]]:
    """Yield (1-based line number, line) from start_line onwards."""
    for n, line in enumerate(lines, start=1):
        if n < start_line:
            continue
        yield n, line


def import_lines(
    service: ArticleService,
    lines: Iterable[str],
    start_line: int = 1,
    batch_size: int = 10,
    batch_delay: float = 0.0,
    sleep=time.sleep,
) -> ImportStats:
    """Create an article for every usable line.

    Args:
        service: Article service used to create (and queue embedding for) each article.
        lines: Raw JSONL lines.
        start_line: 1-based line to start from; earlier lines are skipped unread.
        batch_size: Articles per batch before pausing.
        batch_delay: Seconds to pause after each batch.
        sleep: Pause function (injectable for tests).

    Returns:
        ImportStats: Counts of created, skipped and failed lines.
    """
    stats = ImportStats()
    in_batch = 0
    for n, line in numbered(lines, start_line):
        if not line.strip():
            continue
        try:
            raw = json.loads(line)
            if not isinstance(raw, dict):
                raise ValueError("line is not a JSON object")
            data = parse_article(raw)
        except (ValueError, ValidationError) as e:
            stats.skipped += 1
            logger.warning("Skipping line %d: %s (data: %s...)", n, e, line[:100])
            continue
        try:
            article_id = service.create_article(data)
        except (StoreError, redis.RedisError):
            stats.failed += 1
            logger.exception("Failed to import line %d (original_id=%s)", n, data.original_id)
            continue
        stats.created += 1
        logger.debug("Line %d -> article %s", n, article_id)

        in_batch += 1
        if batch_delay > 0 and in_batch >= batch_size:
            logger.info("Batch of %d imported (through line %d); pausing %.1fs", in_batch, n, batch_delay)
            sleep(batch_delay)
            in_batch = 0
    return stats


def main(argv: Optional[list] = None):
    parser = argparse.ArgumentParser(description="Import articles from a JSONL export.")
    src = parser.add_mutually_exclusive_group(required=True)
    src.add_argument("--path", help="Local JSONL file")
    src.add_argument("--url", help="URL of a JSONL file")
    parser.add_argument("--start-line", type=int, default=1, help="1-based line to start from (default: 1)")
    parser.add_argument("--batch-size", type=int, default=10, help="Articles per batch (default: 10)")
    parser.add_argument("--batch-delay", type=float, default=0.0, help="Seconds to pause between batches")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity (default: INFO)",
    )
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    source = args.path or args.url
    logger.info("Starting article import from %s (start line %d)", source, args.start_line)

    settings = get_settings()
    services = build_services(settings)
    init_db(services.session_factory.kw["bind"])
    lines = read_lines_from_path(args.path) if args.path else read_lines_from_url(args.url)
    try:
        stats = import_lines(services.articles, lines, args.start_line, args.batch_size, args.batch_delay)
    except Exception:
        logger.exception("Import failed for %s", source)
        raise
    logger.info("Completed import: created=%d skipped=%d failed=%d", stats.created, stats.skipped, stats.failed)
    print(f"[IMPORT] {source} -> {stats.created} articles ({stats.skipped} skipped, {stats.failed} failed)")


if __name__ == "__main__":
    main()
