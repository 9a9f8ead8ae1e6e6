"""Policy-driven retry/backoff engine."""

from .errors import ErrorCode, RetryConfigError, RetryExhaustedError, RetryKitError
from .retry import PolicyOverride, RetryEngine, RetryOutcome, RetryPolicy

__all__ = [
    "ErrorCode",
    "PolicyOverride",
    "RetryConfigError",
    "RetryEngine",
    "RetryExhaustedError",
    "RetryKitError",
    "RetryOutcome",
    "RetryPolicy",
]
