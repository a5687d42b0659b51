"""
DBacked Agent
Encrypted database backups streamed to S3
"""

__version__ = "1.0.0"

from .config import BackupJobConfig, DbType, SubscriptionType
from .exceptions import (
    DBackedError,
    ConfigError,
    PreconditionError,
    KeyGenerationError,
    NetworkError,
    UnexpectedError
)
from .models import BackupRecord, JobResult, JobState
from .worker import BackupJob, run_backup

__all__ = [
    "BackupJob",
    "BackupJobConfig",
    "BackupRecord",
    "DbType",
    "JobResult",
    "JobState",
    "SubscriptionType",
    "run_backup",
    "DBackedError",
    "ConfigError",
    "PreconditionError",
    "KeyGenerationError",
    "NetworkError",
    "UnexpectedError"
]
