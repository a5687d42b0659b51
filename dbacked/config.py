"""
Configuration Settings
Agent settings from environment variables and the per-job backup configuration
"""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from .exceptions import ConfigError

MIN_PART_SIZE = 5 * 1024 * 1024  # S3 minimum for every part but the last


class SubscriptionType(str, Enum):
    """Selects the upload strategy of a job"""
    FREE = "free"        # self-managed S3 bucket
    PREMIUM = "premium"  # DBacked control plane


class DbType(str, Enum):
    """Supported database engines"""
    PG = "pg"
    MYSQL = "mysql"
    MONGODB = "mongodb"


class Settings(BaseSettings):
    # DBacked API
    API_URL: str = "https://api.dbacked.com"
    API_TIMEOUT: int = 120

    # Logging
    LOG_LEVEL: str = "INFO"

    # Streaming
    PART_SIZE: int = Field(200 * 1024 * 1024, ge=MIN_PART_SIZE)  # 200MB
    BUFFER_SLACK: int = 1024 * 1024  # 1MB on top of the largest part

    # Jobs
    JOB_TIMEOUT: Optional[int] = None  # seconds, None = wait forever
    CRON_EXPRESSION: str = "0 2 * * *"  # 2 AM UTC daily
    DUMP_PROGRAMS_DIRECTORY: str = "/tmp/dbacked_dumpers"

    @property
    def buffer_size(self) -> int:
        """Capacity of the fan-out buffer"""
        return self.PART_SIZE + self.BUFFER_SLACK

    class Config:
        env_prefix = "DBACKED_"
        env_file = ".env"


@lru_cache()
def get_settings() -> Settings:
    """Get or create the settings instance"""
    return Settings()


class BackupJobConfig(BaseModel):
    """Everything one backup job needs, immutable for the job's lifetime"""
    subscription_type: SubscriptionType
    agent_id: str
    public_key: str = Field(..., description="PEM encoded RSA public key")

    # Database
    db_type: DbType
    db_name: str
    db_host: Optional[str] = None
    db_port: Optional[int] = None
    db_username: Optional[str] = None
    db_password: Optional[str] = None
    db_connection_string: Optional[str] = Field(None, description="MongoDB only")
    dumper_options: Optional[str] = Field(None, description="Extra command line options for the dump program")
    dump_programs_directory: Optional[str] = None

    # Premium
    apikey: Optional[str] = None

    # Free (self-managed S3)
    s3_access_key_id: Optional[str] = None
    s3_secret_access_key: Optional[str] = None
    s3_region: Optional[str] = None
    s3_bucket: Optional[str] = None

    class Config:
        frozen = True

    @property
    def is_premium(self) -> bool:
        return self.subscription_type == SubscriptionType.PREMIUM

    def check(self) -> "BackupJobConfig":
        """
        Verify tier-specific fields are present

        Returns:
            The same config, to allow chaining

        Raises:
            ConfigError: If a required field is missing
        """
        if self.is_premium:
            required = ["apikey"]
        else:
            required = ["s3_access_key_id", "s3_secret_access_key", "s3_region", "s3_bucket"]

        missing = [name for name in required if not getattr(self, name)]
        if missing:
            raise ConfigError(
                f"Missing configuration for {self.subscription_type.value} subscription: {', '.join(missing)}",
                code="EINVALIDCONFIG"
            )
        return self
