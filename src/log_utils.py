"""
Logging utilities for the KubeVirt agent fleet tooling.
"""

import logging
import sys
from typing import Optional


def setup_logging(
    verbose: bool = False, log_file: Optional[str] = "virt-fleet.log"
) -> logging.Logger:
    """
    Set up logging configuration.

    Args:
        verbose: Enable verbose (DEBUG) logging
        log_file: Path to log file, or None to log to stdout only

    Returns:
        Logger instance
    """
    level = logging.DEBUG if verbose else logging.INFO

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )

    return logging.getLogger(__name__)


def banner(logger: logging.Logger, title: str) -> None:
    """Log a title framed by separator lines."""
    logger.info("=" * 70)
    logger.info(title)
    logger.info("=" * 70)
