"""Logging configuration for the awstools command line."""

import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure root logging.

    Log records go to stderr so stdout carries only command output, and to
    ``log_file`` as well when one is given.

    Args:
        level: Log level name
        log_file: Optional path of a file to append log records to
    """
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    # botocore is chatty at DEBUG
    if level.upper() != "DEBUG":
        logging.getLogger("botocore").setLevel(logging.WARNING)
        logging.getLogger("urllib3").setLevel(logging.WARNING)
