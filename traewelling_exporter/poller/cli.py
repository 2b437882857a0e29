"""CLI entry point for the exporter."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import List, Optional

import uvicorn

from traewelling_exporter import __version__
from traewelling_exporter.aggregation.merge import MergeEngine
from traewelling_exporter.aggregation.registry import MetricsRegistry
from traewelling_exporter.common.config import ConfigError, get_settings
from traewelling_exporter.exporter_api.main import create_app
from traewelling_exporter.traewelling.client import TraewellingClient

from .scheduler import STATUS_PERMANENT, PollScheduler

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_POLL_FAILED = 1
EXIT_BAD_CONFIG = 2


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Prometheus exporter for Traewelling check-ins")
    p.add_argument("--host", default=None, help="listen address (default: EXPORTER_HOST or 0.0.0.0)")
    p.add_argument("--port", type=int, default=None, help="listen port (default: EXPORTER_PORT or 3000)")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
    p.add_argument("--once", action="store_true", help="poll every account once, print the metrics and exit")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)

    log_level = (args.log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )

    try:
        settings = get_settings()
    except ConfigError as e:
        logger.error("%s", e)
        return EXIT_BAD_CONFIG

    host = args.host if args.host is not None else settings.listen_host
    port = args.port if args.port is not None else settings.listen_port

    registry = MetricsRegistry(settings.accounts)
    engine = MergeEngine(registry)
    client = TraewellingClient(
        base_url=settings.api_base_url,
        default_token=settings.api_token,
        timeout_seconds=settings.request_timeout_seconds,
    )
    scheduler = PollScheduler(settings, client, engine, registry)

    logger.info("Traewelling exporter %s started", __version__)
    logger.info(
        "Config: api=%s accounts=%d interval=%.1fs max_pages=%d max_backoff=%.1fs",
        settings.api_base_url,
        len(settings.accounts),
        settings.poll_interval_seconds,
        settings.max_pages_per_cycle,
        settings.max_backoff_seconds,
    )

    if args.once:
        try:
            outcomes = scheduler.run_cycle()
        finally:
            client.close()
        sys.stdout.write(registry.render())
        if any(o.status == STATUS_PERMANENT for o in outcomes.values()):
            return EXIT_POLL_FAILED
        return EXIT_OK

    server = uvicorn.Server(
        uvicorn.Config(
            create_app(registry),
            host=host,
            port=port,
            log_level=log_level.lower(),
            timeout_graceful_shutdown=int(settings.shutdown_timeout_seconds),
        )
    )

    scheduler.start()
    try:
        logger.info("Server listening on http://%s:%d/metrics", host, port)
        server.run()
    finally:
        scheduler.stop(timeout=settings.shutdown_timeout_seconds)
        client.close()

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
