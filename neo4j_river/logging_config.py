"""
Logging configuration for the river service.

Console and optional file output, quieter client libraries, and a few
helpers so every river logs its lifecycle the same way.
"""

import logging
import re
import sys
from pathlib import Path

# user:password@ inside bolt://, neo4j://, http:// ... URIs
_URI_CREDENTIALS = re.compile(r"(\w+://[^:/@\s]+):[^@\s]+@")

# Client libraries that log every connection and request at INFO/DEBUG
NOISY_LOGGERS = (
    "asyncio",
    "uvicorn.access",
    "neo4j",
    "neo4j.io",
    "neo4j.pool",
    "elasticsearch",
    "elastic_transport",
    "asyncpg",
)


class RedactCredentialsFilter(logging.Filter):
    """Mask passwords embedded in connection URIs before they reach a handler"""

    def filter(self, record):
        message = record.getMessage()
        redacted = _URI_CREDENTIALS.sub(r"\1:***@", message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(
    log_level: str = "INFO",
    log_file: str = None,
    enable_console: bool = True,
):
    """
    Set up logging for the river service.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Path to log file, file logging disabled when None
        enable_console: Enable console logging
    """
    level = getattr(logging, log_level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    redact = RedactCredentialsFilter()

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter(
            fmt='%(asctime)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        ))
        console_handler.addFilter(redact)
        root_logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        # File output keeps DEBUG detail and logger names
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        file_handler.addFilter(redact)
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("neo4j_river").setLevel(level)

    return root_logger


# Logging helpers
def log_river_start(logger, river_config):
    """Log a river's poll loop starting"""
    logger.info(
        f"Starting river {river_config.name}: {river_config.source_uri} -> "
        f"{river_config.index_name}/{river_config.index_type} "
        f"every {river_config.interval_seconds}s (batch {river_config.batch_size})"
    )


def log_cycle_success(logger, river_name: str, committed: int, skipped: int,
                      sequence: int, duration: float = None):
    """Log a sync cycle that committed changes"""
    msg = f"River {river_name}: {committed} change(s) committed"
    if skipped:
        msg += f", {skipped} skipped"
    msg += f", checkpoint {sequence}"
    if duration:
        msg += f" in {duration:.2f}s"
    logger.info(msg)


def log_river_error(logger, river_name: str, error: Exception, details: str = ""):
    """Log a river failure"""
    msg = f"River {river_name} failed"
    if details:
        msg += f" ({details})"
    msg += f": {type(error).__name__}: {error}"
    logger.error(msg)


def log_skip(logger, node_id: str, reason: str):
    """Log a node that could not be indexed"""
    logger.warning(f"Skipping node {node_id}: {reason}")


def log_stats(logger, stats: dict):
    """Log statistics"""
    logger.info("Statistics:")
    for key, value in stats.items():
        logger.info(f"    {key}: {value}")
