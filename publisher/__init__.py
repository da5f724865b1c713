"""
Multipublish publisher package.

Keep this module lightweight: importing the adapters or the token store here
pulls in asyncpg/boto3 for every consumer of the error types.
Other modules should be imported directly (e.g. `from publisher.session import UploadSession`).
"""

from .errors import (
    PublishError,
    AuthError,
    ValidationError,
    RemoteError,
    PollTimeoutError,
    RefreshUnsupported,
    ErrorCode,
    CancelRequested,
)

__all__ = [
    "PublishError",
    "AuthError",
    "ValidationError",
    "RemoteError",
    "PollTimeoutError",
    "RefreshUnsupported",
    "ErrorCode",
    "CancelRequested",
]
