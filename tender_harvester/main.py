"""
Tender Harvester - CLI Entry Point.

Command-line interface for fetching OCDS tender releases for a date window,
as one aggregated JSON document or as a stream of server-sent events.

Usage:
    # Aggregated fetch for the default window
    python -m tender_harvester.main

    # Custom window and budget
    python -m tender_harvester.main --date-from 2025-01-01 --date-to 2025-01-31 \\
        --page-size 50 --max-concurrency 4

    # Incremental event stream
    python -m tender_harvester.main --stream

    # Single release lookup
    python -m tender_harvester.main --release ocds-9t57fa-123456

Example:
    >>> python -m tender_harvester.main --date-from 2025-01-01 --date-to 2025-01-31
    INFO     tender_harvester.orchestrator.discovery - Discovery completed
    INFO     tender_harvester.orchestrator.pipeline - Dataset fetch completed
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, NoReturn, Optional

import orjson

from tender_harvester.clients.ocds_client import OCDSClient, OCDSClientConfig
from tender_harvester.config import AppConfig, FetchConfig, UpstreamConfig
from tender_harvester.orchestrator.cache_admin import CacheAdministration
from tender_harvester.orchestrator.pipeline import TenderPipeline
from tender_harvester.utils.exceptions import TenderHarvesterError
from tender_harvester.utils.logger import setup_logger

logger = logging.getLogger(__name__)


class TenderHarvesterCLI:
    """
    Command-line interface for Tender Harvester.

    Features:
        - Aggregated dataset fetch with cache and fallback
        - Streaming mode printing one event per line
        - Single release lookup
        - Cache and error statistics after each run
    """

    def __init__(self):
        """Initialize CLI with argument parser."""
        self.parser = self._create_parser()
        self.args: Optional[argparse.Namespace] = None

    def _create_parser(self) -> argparse.ArgumentParser:
        """
        Create and configure argument parser.

        Returns:
            Configured ArgumentParser instance
        """
        parser = argparse.ArgumentParser(
            prog="tender-harvester",
            description=(
                "Fetch, deduplicate and cache OCDS tender releases from a "
                "paginated upstream source."
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Examples:
  # Aggregated fetch for a quarter
  tender-harvester --date-from 2025-01-01 --date-to 2025-03-31

  # Stream events
  tender-harvester --stream

  # Look up one release
  tender-harvester --release ocds-9t57fa-123456

Configuration:
  Set environment variables in .env file:
    - OCDS_BASE_URL: Release listing endpoint
    - MAX_CONCURRENT_REQUESTS: Upper bound on concurrent requests (default: 8)
    - CACHE_TTL_SECONDS: Cache entry lifetime (default: 300)
            """,
        )

        parser.add_argument(
            "--date-from",
            default=UpstreamConfig.DEFAULT_DATE_FROM,
            metavar="YYYY-MM-DD",
            help=f"Window start (default: {UpstreamConfig.DEFAULT_DATE_FROM})",
        )
        parser.add_argument(
            "--date-to",
            default=UpstreamConfig.DEFAULT_DATE_TO,
            metavar="YYYY-MM-DD",
            help=f"Window end (default: {UpstreamConfig.DEFAULT_DATE_TO})",
        )
        parser.add_argument(
            "--page-size",
            type=int,
            default=UpstreamConfig.DEFAULT_PAGE_SIZE,
            help=f"Records per page (default: {UpstreamConfig.DEFAULT_PAGE_SIZE})",
        )
        parser.add_argument(
            "--max-concurrency",
            type=int,
            default=FetchConfig.MAX_CONCURRENT_REQUESTS,
            help=f"Concurrent requests (default: {FetchConfig.MAX_CONCURRENT_REQUESTS})",
        )

        mode_group = parser.add_mutually_exclusive_group()
        mode_group.add_argument(
            "--stream",
            action="store_true",
            help="Print incremental events instead of one document",
        )
        mode_group.add_argument(
            "--release",
            metavar="OCID",
            help="Look up a single release",
        )

        parser.add_argument(
            "--output",
            type=Path,
            help="Write the JSON result to a file instead of stdout",
        )
        parser.add_argument(
            "--stats",
            action="store_true",
            help="Print cache and error statistics after the run",
        )
        parser.add_argument(
            "--log-level",
            type=str,
            choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            help="Override default log level",
        )
        parser.add_argument(
            "--log-dir",
            type=Path,
            help="Directory for log files (default: LOG_DIR or ./logs)",
        )
        parser.add_argument(
            "--version",
            action="version",
            version=f"%(prog)s {AppConfig.VERSION}",
        )

        return parser

    def _validate_configuration(self) -> None:
        """
        Validate application configuration.

        Raises:
            SystemExit: If configuration is invalid
        """
        is_valid, errors = AppConfig.validate()

        if not is_valid:
            logger.error("Configuration validation failed:")
            for error in errors:
                logger.error(f"  - {error}")

            print("\nConfiguration Error\n", file=sys.stderr)
            print("Please fix the following issues:\n", file=sys.stderr)
            for error in errors:
                print(f"  - {error}", file=sys.stderr)
            sys.exit(1)

        logger.info("Configuration validated successfully")

    def _emit(self, payload: Any) -> None:
        data = orjson.dumps(payload, option=orjson.OPT_INDENT_2)
        if self.args.output:
            self.args.output.write_bytes(data)
            logger.info(f"Result written to {self.args.output}")
        else:
            sys.stdout.write(data.decode() + "\n")

    async def _run(self) -> int:
        config = OCDSClientConfig.from_env()

        async with OCDSClient(config) as client:
            pipeline = TenderPipeline(client)
            try:
                if self.args.release:
                    release = await pipeline.fetch_release(self.args.release)
                    self._emit(release)
                    exit_code = 0

                elif self.args.stream:
                    last_event = None
                    async for event in pipeline.stream_dataset(
                        self.args.date_from,
                        self.args.date_to,
                        self.args.page_size,
                        self.args.max_concurrency,
                    ):
                        sys.stdout.write(event.to_sse())
                        sys.stdout.flush()
                        last_event = event
                    # A stream that fails ends with an error event
                    exit_code = 1 if last_event is None or last_event.type.value == "error" else 0

                else:
                    response = await pipeline.fetch_dataset(
                        self.args.date_from,
                        self.args.date_to,
                        self.args.page_size,
                        self.args.max_concurrency,
                    )
                    self._emit(response.to_dict())
                    exit_code = 0 if response.status != "error" else 1

                if self.args.stats:
                    admin = CacheAdministration(pipeline.cache, pipeline.classifier)
                    print(
                        orjson.dumps(
                            {"cache": admin.stats(), "errors": admin.error_stats()},
                            option=orjson.OPT_INDENT_2,
                        ).decode(),
                        file=sys.stderr,
                    )
                return exit_code

            finally:
                await pipeline.close()

    def run(self, argv: Optional[list[str]] = None) -> NoReturn:
        """
        Main entry point for CLI execution.

        Parses arguments, validates configuration, and executes requested command.
        """
        self.args = self.parser.parse_args(argv)

        level = getattr(logging, self.args.log_level) if self.args.log_level else None
        # stdout carries the JSON result or the event stream
        setup_logger("tender_harvester", level=level, log_dir=self.args.log_dir, stream=sys.stderr)

        logger.info(
            f"{AppConfig.APP_NAME} v{AppConfig.VERSION} started at "
            f"{datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
        )

        self._validate_configuration()

        try:
            exit_code = asyncio.run(self._run())
        except TenderHarvesterError as e:
            logger.error(f"Request failed: {e}")
            print(f"\nError: {e.message}\n", file=sys.stderr)
            sys.exit(1)
        except KeyboardInterrupt:
            logger.info("Interrupted - shutting down")
            sys.exit(130)

        sys.exit(exit_code)


def main() -> NoReturn:
    """
    Application entry point.

    Creates and runs CLI instance.
    """
    try:
        cli = TenderHarvesterCLI()
        cli.run()
    except SystemExit:
        raise
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        print(f"\nFatal Error: {e}\n", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
