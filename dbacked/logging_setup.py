"""
Logging configuration shared by the agent and its backup worker processes
"""

import logging
from typing import Optional

from .config import get_settings

LOG_FORMAT = '%(levelname)s:     %(message)s'
WORKER_LOG_FORMAT = '%(levelname)s:     [%(processName)s] %(message)s'


def configure_logging(level: Optional[str] = None, worker: bool = False) -> None:
    """
    Configure root logging

    Args:
        level: Level name (default: DBACKED_LOG_LEVEL)
        worker: Prefix lines with the process name
    """
    logging.basicConfig(
        level=(level or get_settings().LOG_LEVEL).upper(),
        format=WORKER_LOG_FORMAT if worker else LOG_FORMAT,
        force=True
    )
    # boto is very chatty at DEBUG
    for name in ("botocore", "boto3", "s3transfer", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)
