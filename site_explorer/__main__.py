import argparse
import asyncio
import logging
import os

from .config import ExplorerConfig
from .driver import PlaywrightDriver
from .orchestrator import SessionOrchestrator


def _build_config(args: argparse.Namespace) -> ExplorerConfig:
    config = ExplorerConfig.from_file(args.config) if args.config else ExplorerConfig.from_env(args.env_file)
    if args.url:
        config.start_url = args.url
    if args.goal:
        config.goal = args.goal
    if args.max_depth is not None:
        config.max_depth = args.max_depth
    if args.max_pages is not None:
        config.max_pages = args.max_pages
    if args.timeout_ms is not None:
        config.timeout_ms = args.timeout_ms
    if args.allowed_domains:
        config.allowed_domains = [d.strip() for d in args.allowed_domains.split(",") if d.strip()]
    if args.out:
        config.memory_dir = os.path.join(args.out, "memory")
        config.report_dir = os.path.join(args.out, "reports")
    if args.no_screenshots:
        config.take_screenshots = False
    if args.no_memory:
        config.memory_enabled = False
    if args.no_report:
        config.generate_report = False
    if args.verbose:
        config.verbose = True
    return config


def main() -> None:
    parser = argparse.ArgumentParser(description="Explore a website breadth-first and report what was found")
    parser.add_argument("--url", help="Start URL (overrides EXPLORER_START_URL)")
    parser.add_argument("--goal", help="Optional free-text goal recorded in the report")
    parser.add_argument("--config", help="JSON config file; environment variables are used otherwise")
    parser.add_argument("--env-file", default=None, help=".env file to load before reading EXPLORER_* variables")
    parser.add_argument("--max-depth", type=int, default=None, help="Maximum link depth from the start URL (1-10)")
    parser.add_argument("--max-pages", type=int, default=None, help="Maximum number of distinct pages (1-100)")
    parser.add_argument("--timeout-ms", type=int, default=None, help="Session deadline in milliseconds")
    parser.add_argument("--allowed-domains", help="Comma-separated domains the frontier may follow")
    parser.add_argument("--out", help="Directory for memory and reports")
    parser.add_argument("--headful", action="store_true", help="Show the browser window")
    parser.add_argument("--no-screenshots", action="store_true", help="Do not capture screenshots")
    parser.add_argument("--no-memory", action="store_true", help="Disable persistence and deduplication")
    parser.add_argument("--no-report", action="store_true", help="Do not write report files")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    config = _build_config(args)
    level = logging.DEBUG if config.verbose else os.getenv("EXPLORER_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        config.validate()
    except ValueError as exc:
        parser.error(str(exc))

    async def _run() -> SessionOrchestrator:
        async with PlaywrightDriver(
            headless=not args.headful, navigation_timeout_ms=config.page_load_timeout_ms
        ) as driver:
            orchestrator = SessionOrchestrator(config, driver)
            await orchestrator.run()
            return orchestrator

    print(f"Starting exploration of {config.start_url}")
    orchestrator = asyncio.run(_run())
    report = orchestrator.report
    print(f"Exploration {report.status} ({report.termination_reason})")
    print("Pages visited:", report.stats.pages_visited)
    print("Actions blocked:", report.stats.actions_blocked)
    print("Errors:", report.stats.errors)
    for kind, path in orchestrator.report_paths.items():
        print(f"{kind} report:", path)


if __name__ == "__main__":
    main()
