"""Main entry point for the edge operator.

The operator converges the edge of a Kubernetes cluster: Ingress routes, the
AWS Application Load Balancer in front of them, its WAF and the Route 53
records pointing at it. Credentials come from the AWS and Kubernetes default
chains; the operator never stores them.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .backends import build_default_registry
from .config import Config, ConfigurationError
from .reconciler import DriftReconciler

# Attributes every LogRecord carries; anything else on a record came from extra=
_RESERVED_RECORD_KEYS = frozenset(
    vars(logging.LogRecord("", logging.NOTSET, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}

NOISY_LOGGERS = ("botocore", "boto3", "urllib3", "kubernetes")


class JsonFormatter(logging.Formatter):
    """Format logs as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # default=str covers datetimes, paths and enums passed through extra=
        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO, stream=None) -> None:
    """Configure structured JSON logging on the root logger."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Reduce noise from the SDKs
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


async def main() -> int:
    """Run the operator until SIGTERM or SIGINT.

    Returns:
        Exit code: 0 on clean shutdown, 1 on failure, 2 on configuration error.
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
        registry = build_default_registry(config)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 2

    logger.info(
        "Starting edge operator",
        extra={
            "aws_region": config.aws_region,
            "spec_path": str(config.spec_path),
            "state_file": str(config.state_file),
            "dry_run": config.dry_run,
        },
    )

    reconciler = DriftReconciler(config, registry)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await reconciler.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
