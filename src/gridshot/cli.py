from __future__ import annotations

import argparse
from importlib.metadata import PackageNotFoundError, version
import logging
from pathlib import Path
import signal
import sys
from types import FrameType

from .app_logging import log_with_fields, setup_logger
from .config import AppConfig, ConfigError, load_config
from .discover import Discoverer, DiscoveryError
from .dispatcher import Dispatcher, RunResult
from .remote import RenderService, RetryingClient, StatusService, UploadService
from .utils import board_name

EPILOG = """\
environment:
  UPLOAD_KEY             image hosting user key (required)
  BOARDS                 board suffixes, default "blocking informing"
  STATES                 statuses to capture, default "FAILING"
  BLOCK_WIDTH            TestGrid block width, default 30
  WIDTH, HEIGHT          screenshot size, default 3000x2500
  RETRY_COUNT            extra attempts per HTTP call, default 3
  RETRY_SLEEP            seconds between attempts, default 2
  DISCOVERY_RETRY_COUNT  extra attempts per status query, default RETRY_COUNT
"""


def _package_version() -> str:
    try:
        return version("gridshot")
    except PackageNotFoundError:
        return "unknown"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gridshot",
        description="Screenshot failing TestGrid entries and print a markdown triage report",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("release", help="Release to check, e.g. 1.20 for sig-release-1.20-*")
    parser.add_argument("--config", help="Optional YAML file with settings (env vars take precedence)")
    parser.add_argument("--output", help="Write the report to this file instead of stdout")
    parser.add_argument("--log-file", help="Also write JSON logs to this file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {_package_version()}")
    return parser


def _raise_system_exit(signum: int, _frame: FrameType | None) -> None:
    raise SystemExit(128 + signum)


def build_dispatcher(
    config: AppConfig,
    release: str,
    logger: logging.Logger,
) -> tuple[Dispatcher, list[RetryingClient]]:
    status_client = RetryingClient(
        retry_count=config.retry.effective_discovery_retry_count,
        retry_delay=config.retry.retry_sleep,
        timeout_seconds=config.retry.request_timeout,
        logger=logger,
    )
    media_client = RetryingClient(
        retry_count=config.retry.retry_count,
        retry_delay=config.retry.retry_sleep,
        timeout_seconds=config.retry.request_timeout,
        logger=logger,
    )
    dispatcher = Dispatcher(
        discoverer=Discoverer(StatusService(status_client, config.endpoints.testgrid_url), logger),
        renderer=RenderService(media_client, config.endpoints.render_url),
        uploader=UploadService(media_client, config.endpoints.upload_url, config.upload_key),
        boards=[board_name(release, suffix) for suffix in config.boards],
        statuses=config.states,
        render_config=config.render,
        testgrid_url=config.endpoints.testgrid_url,
        logger=logger,
    )
    return dispatcher, [status_client, media_client]


def write_report(result: RunResult, output: str | None) -> None:
    if output:
        path = Path(output).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(result.document, encoding="utf-8")
        return
    sys.stdout.write(result.document)
    sys.stdout.flush()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.release.strip():
        parser.error("release must not be empty")
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        parser.print_usage(sys.stderr)
        print(f"{parser.prog}: error: {exc}", file=sys.stderr)
        return 2

    log_file = Path(args.log_file).expanduser() if args.log_file else config.log_file
    logger = setup_logger(log_file, debug=args.debug or config.debug)
    previous_handler = signal.signal(signal.SIGTERM, _raise_system_exit)

    dispatcher, clients = build_dispatcher(config, args.release.strip(), logger)
    try:
        result = dispatcher.run()
    except DiscoveryError as exc:
        log_with_fields(logger, logging.ERROR, "discovery_failed", error=str(exc))
        return 1
    except KeyboardInterrupt:
        log_with_fields(logger, logging.INFO, "shutdown", reason="keyboard_interrupt")
        return 130
    finally:
        for client in clients:
            client.close()
        if previous_handler is not None:
            signal.signal(signal.SIGTERM, previous_handler)

    write_report(result, args.output)
    log_with_fields(
        logger,
        logging.INFO,
        "report_written",
        discovered=result.discovered,
        succeeded=len(result.succeeded),
        failed=len(result.failed),
        output=args.output or "stdout",
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
