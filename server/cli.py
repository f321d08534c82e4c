"""DocScout command line.

Runs one crawl in-process and prints every worker event as a JSON line on stdout.
Logs go to stderr.

    docscout crawl https://docs.example.com/ --max-depth 1 --query "how do I install it?"
"""

import argparse
import asyncio
import json
import logging
import sys
import uuid
from typing import List, Optional, TextIO

from pydantic import ValidationError

from config.settings import Settings, load_settings
from observability.logging import setup_logging
from pipelines.models import JobConfig, JobStatus
from .messages import QueryCommand, QueryPayload, StartCommand
from .worker import IngestionWorker, QueuePort

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="docscout", description="Crawl documentation sites and query them")
    parser.add_argument("--config", help="Path to a YAML settings file")
    parser.add_argument("--log-level", help="Override the configured log level")
    parser.add_argument("--json-logs", action="store_true", help="Log JSON records to stderr")

    subparsers = parser.add_subparsers(dest="command", required=True)

    crawl = subparsers.add_parser("crawl", help="Crawl seed URLs, index them and optionally query")
    crawl.add_argument("urls", nargs="+", help="Seed URLs")
    crawl.add_argument("--job-id", help="Job identifier (random when omitted)")
    crawl.add_argument("--max-depth", type=int, help="Maximum link depth from a seed")
    crawl.add_argument("--max-pages", type=int, help="Maximum number of processed pages")
    crawl.add_argument("--concurrency", type=int, help="Concurrent page workers")
    crawl.add_argument("--follow-external", action="store_true", help="Follow links to other hosts")
    crawl.add_argument("--allowed-domain", action="append", default=[], dest="allowed_domains",
                       help="Allowed host (repeatable); defaults to the seed hosts")
    crawl.add_argument("--query", action="append", default=[], dest="queries",
                       help="Query to run once the crawl finishes (repeatable)")
    crawl.add_argument("--limit", type=int, help="Maximum results per query")
    crawl.add_argument("--basic", action="store_true", help="Plain similarity search without the LLM stages")
    crawl.add_argument("--timeout", type=float, help="Give up on the crawl after this many seconds")

    return parser


def build_job_config(args: argparse.Namespace, settings: Settings) -> JobConfig:
    """Job config from command-line flags, falling back to configured defaults."""
    crawl = settings.crawl
    chunking = settings.chunking
    return JobConfig(
        job_id=args.job_id or uuid.uuid4().hex[:12],
        seed_urls=args.urls,
        max_depth=crawl.max_depth if args.max_depth is None else args.max_depth,
        max_pages=crawl.max_pages if args.max_pages is None else args.max_pages,
        concurrency=crawl.concurrency if args.concurrency is None else args.concurrency,
        follow_external=args.follow_external,
        allowed_domains=args.allowed_domains,
        user_agent=crawl.user_agent,
        tokens_per_chunk=chunking.tokens_per_chunk,
        overlap_tokens=chunking.overlap_tokens,
        min_tokens_per_chunk=chunking.min_tokens_per_chunk,
    )


async def _print_events(port: QueuePort, stream: TextIO):
    while True:
        event = await port.receive()
        stream.write(json.dumps(event) + "\n")
        stream.flush()


async def run_crawl(args: argparse.Namespace, settings: Settings, stream: TextIO = sys.stdout) -> int:
    config = build_job_config(args, settings)

    port = QueuePort()
    worker = IngestionWorker(port, settings=settings)
    await worker.bind()
    printer = asyncio.create_task(_print_events(port, stream))

    try:
        await worker.handle(StartCommand(payload=config))
        try:
            status = await worker.scheduler.wait_for_job(config.job_id, timeout=args.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Crawl timed out after {args.timeout}s")
            status = JobStatus.CANCELLED

        for query in args.queries:
            await worker.handle(QueryCommand(payload=QueryPayload(
                query=query, job_id=config.job_id, limit=args.limit, intelligent=not args.basic)))
    finally:
        await worker.close()
        port.close()
        printer.cancel()
        await asyncio.gather(printer, return_exceptions=True)
        for event in port.drain():
            stream.write(json.dumps(event) + "\n")
        stream.flush()

    return 0 if status == JobStatus.COMPLETED else 1


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
    except (FileNotFoundError, ValueError) as e:
        parser.error(str(e))

    setup_logging(
        level=args.log_level or settings.logging.level,
        service_name=settings.service_name,
        log_file=settings.logging.log_file,
        use_json=args.json_logs or settings.logging.use_json,
        use_colors=settings.logging.use_colors,
    )

    try:
        return asyncio.run(run_crawl(args, settings))
    except ValidationError as e:
        logger.error(f"Invalid job configuration: {e}")
        return 2
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
