"""Command-line interface for the crawl engine."""

import asyncio
import json
import sys
from typing import Optional

from crawlengine.config import EngineConfig, load_config, settings
from crawlengine.exceptions import CrawlEngineError
from crawlengine.infrastructure.browser_pool import BrowserSessionPool
from crawlengine.infrastructure.proxy_rotation import create_proxy_service_from_config
from crawlengine.job_store import get_job_store
from crawlengine.logging_config import get_logger, setup_logging
from crawlengine.models import CrawlJob
from crawlengine.orchestrator import CrawlJobOrchestrator

logger = get_logger(__name__)


def _write_output(output: str, output_file: Optional[str]) -> None:
    if output_file:
        with open(output_file, "w") as f:
            f.write(output)
        print(f"Results written to {output_file}")
    else:
        print(output)


def _settings_from_args(args) -> dict:
    """Crawl settings from the flags that were actually given."""
    options = {}
    if args.max_retries is not None:
        options["maxRetries"] = args.max_retries
    if args.timeout_ms is not None:
        options["navigationTimeoutMs"] = args.timeout_ms
    if args.selector:
        options["waitForSelector"] = args.selector
    if args.no_human:
        options["simulateHumanBehavior"] = False
    if args.no_screenshots:
        options["screenshots"] = {"enabled": False, "fullPage": False}
    return options


def print_job(job: CrawlJob) -> None:
    """Print a finished job in a formatted way.

    Args:
        job: The job to print
    """
    print(f"\n{'=' * 60}")
    print(f"Crawl job {job.id}")
    print(f"{'=' * 60}")
    print(f"\nStatus: {job.status.value}  Progress: {job.progress}%")
    if job.error:
        print(f"Error: {job.error}")

    if job.results:
        print(f"\n✅ Results ({len(job.results)}):")
        for result in job.results:
            title = result.data.get("title") or "(no title)"
            print(f"  • {result.url} - {title} [{result.duration_ms:.0f}ms, {result.retry_count} retries]")

    if job.errors:
        print(f"\n❌ Errors ({len(job.errors)}):")
        for error in job.errors:
            print(f"  • {error.url} - {error.error_class.value}: {error.message} [{error.retry_count} retries]")

    print(f"\n{'=' * 60}\n")


async def _run_crawl(args, config: EngineConfig) -> CrawlJob:
    store = get_job_store(args.store)
    proxy_service = create_proxy_service_from_config(config)

    try:
        async with BrowserSessionPool.from_config(config) as pool:
            orchestrator = CrawlJobOrchestrator(
                pool,
                store=store,
                proxy_service=proxy_service,
                config=config,
            )
            job_id = await orchestrator.submit(
                args.owner,
                args.urls,
                _settings_from_args(args),
                vendor_id=args.vendor,
            )

            async for snapshot in orchestrator.watch(job_id):
                if args.output == "text":
                    print(
                        f"[{snapshot.status.value}] {snapshot.processed}/{snapshot.total} URLs, "
                        f"{snapshot.progress}%"
                    )

            return await orchestrator.get_job(job_id)
    finally:
        await store.close()


def crawl_command(args, config: EngineConfig):
    """Crawl one or more URLs as a single job."""
    try:
        job = asyncio.run(_run_crawl(args, config))
    except CrawlEngineError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.output == "json":
        _write_output(json.dumps(job.to_dict(), indent=2, default=str), args.output_file)
    else:
        print_job(job)

    sys.exit(0 if job.status.value == "completed" else 1)


async def _run_health(config: EngineConfig):
    async with BrowserSessionPool.from_config(config) as pool:
        return await pool.health_check()


def health_command(args, config: EngineConfig):
    """Run the session pool health check."""
    health = asyncio.run(_run_health(config))

    if args.output == "json":
        print(json.dumps(health.to_dict(), indent=2))
    else:
        state = "healthy" if health.healthy else ("degraded" if health.success else "unhealthy")
        print(f"Pool {state}: {health.response_time_ms:.0f}ms, "
              f"{health.active_sessions} sessions, peak memory {health.peak_memory_kb} KB")
        if health.error:
            print(f"Error: {health.error}")

    sys.exit(0 if health.success else 1)


async def _run_proxies(config: EngineConfig) -> dict:
    service = create_proxy_service_from_config(config)
    await service.refresh()
    return service.get_stats()


def proxies_command(args, config: EngineConfig):
    """Probe every configured proxy and print the pool state."""
    stats = asyncio.run(_run_proxies(config))

    if args.output == "json":
        print(json.dumps(stats, indent=2))
        return

    print(f"Proxies: {stats['available_proxies']}/{stats['total_proxies']} available "
          f"(rotation {'enabled' if stats['enabled'] else 'disabled'})")
    for proxy in stats["proxies"]:
        latency = f"{proxy['latency_ms']:.0f}ms" if proxy["latency_ms"] is not None else "-"
        print(f"  • {proxy['address']}: {proxy['last_status'] or 'unchecked'} {latency} {proxy['origin'] or ''}")


async def _run_history(args) -> list[CrawlJob]:
    store = get_job_store(args.store)
    try:
        return await store.list_by_owner(
            args.owner,
            status=args.status,
            vendor_id=args.vendor,
            offset=args.offset,
            limit=args.limit,
        )
    finally:
        await store.close()


def history_command(args, config: EngineConfig):
    """List stored jobs for an owner."""
    jobs = asyncio.run(_run_history(args))

    if args.output == "json":
        print(json.dumps([job.to_dict() for job in jobs], indent=2, default=str))
        return

    if not jobs:
        print(f"No jobs found for owner: {args.owner}")
        return

    for job in jobs:
        print(f"{job.id}  {job.status.value:<9}  {job.progress:>3}%  "
              f"{len(job.results)}/{job.total} ok  {job.created_at:%Y-%m-%d %H:%M:%S}")


def main():
    """Main CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Crawl Engine - Stealth headless-browser crawling with job tracking"
    )

    # Global flags (before subcommands)
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=settings.LOG_LEVEL.upper() if settings.LOG_LEVEL else "INFO",
        help="Set logging verbosity (default: INFO)",
    )
    parser.add_argument(
        "--log-file",
        default=settings.LOG_FILE,
        help="Write logs to file in addition to console",
    )
    parser.add_argument(
        "--config",
        help="JSON engine configuration file (default: environment variables)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Crawl command parser
    crawl_parser = subparsers.add_parser("crawl", help="Crawl one or more URLs as a single job.")
    crawl_parser.add_argument("urls", nargs="+", help="URLs to crawl, in order")
    crawl_parser.add_argument("--owner", default="cli", help="Owner identifier (default: cli)")
    crawl_parser.add_argument("--vendor", help="Vendor/grouping identifier")
    crawl_parser.add_argument("--max-retries", type=int, help="Retries per URL (default: 3)")
    crawl_parser.add_argument("--timeout-ms", type=int, help="Navigation timeout in ms (default: 30000)")
    crawl_parser.add_argument("--selector", help="Selector to wait for before extraction (default: body)")
    crawl_parser.add_argument("--no-human", action="store_true", help="Skip human behavior simulation")
    crawl_parser.add_argument("--no-screenshots", action="store_true", help="Skip screenshots")
    crawl_parser.add_argument(
        "--store",
        choices=["memory", "sqlite"],
        default=None,
        help="Job store backend (default: CRAWLER_STORE_BACKEND or memory)",
    )
    crawl_parser.add_argument(
        "--output",
        "-o",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)",
    )
    crawl_parser.add_argument(
        "--output-file",
        "-f",
        help="Write output to file (only for json format)",
    )
    crawl_parser.set_defaults(func=crawl_command)

    # Health command parser
    health_parser = subparsers.add_parser("health", help="Run the browser pool health check.")
    health_parser.add_argument("--output", "-o", choices=["text", "json"], default="text")
    health_parser.set_defaults(func=health_command)

    # Proxies command parser
    proxies_parser = subparsers.add_parser("proxies", help="Probe the configured proxy pool.")
    proxies_parser.add_argument("--output", "-o", choices=["text", "json"], default="text")
    proxies_parser.set_defaults(func=proxies_command)

    # History command parser
    history_parser = subparsers.add_parser("history", help="List stored jobs for an owner.")
    history_parser.add_argument("--owner", default="cli", help="Owner identifier (default: cli)")
    history_parser.add_argument(
        "--status",
        choices=["pending", "running", "completed", "partial", "failed", "cancelled"],
    )
    history_parser.add_argument("--vendor", help="Vendor/grouping identifier")
    history_parser.add_argument("--offset", type=int, default=0)
    history_parser.add_argument("--limit", type=int, default=10)
    history_parser.add_argument(
        "--store",
        choices=["memory", "sqlite"],
        default=None,
        help="Job store backend (default: CRAWLER_STORE_BACKEND or memory)",
    )
    history_parser.add_argument("--output", "-o", choices=["text", "json"], default="text")
    history_parser.set_defaults(func=history_command)

    args = parser.parse_args()

    # Configure logging based on flags
    setup_logging(
        level=args.log_level,
        log_file=getattr(args, 'log_file', None),
    )

    if hasattr(args, "func"):
        config = load_config(args.config)
        # Proxy URLs may carry credentials
        loggable = {k: v for k, v in config.to_dict().items() if k != "proxy_urls"}
        logger.debug(f"Engine config: {loggable}")
        args.func(args, config)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
