"""
Custom exceptions for the DBacked agent
"""

from typing import Any, Optional


class DBackedError(Exception):
    """Base exception for all DBacked agent errors"""
    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        response_body: Any = None
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(self.message)


class ConfigError(DBackedError):
    """Raised when the job configuration is incomplete or invalid"""
    pass


class PreconditionError(DBackedError):
    """Raised when the dump program for the database type is unavailable"""
    pass


class KeyGenerationError(DBackedError):
    """Raised when the backup key cannot be created or wrapped"""
    pass


class NetworkError(DBackedError):
    """Raised when the object store or the DBacked API fails"""
    pass


class UnexpectedError(DBackedError):
    """Raised for any other fault during a backup"""
    pass


class DumpError(UnexpectedError):
    """Raised when the dump process exits with an error"""
    pass


class StreamAbortedError(UnexpectedError):
    """Raised on every side of a fan-out buffer once one side failed"""
    pass
