"""Deterministic error model for the retry engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum


class ErrorCode(IntEnum):
    CONFIG_ERROR = 3
    RUNTIME_ERROR = 4
    VALIDATION_ERROR = 7
    RETRY_EXHAUSTED = 9


@dataclass
class RetryKitError(Exception):
    message: str
    code: ErrorCode = ErrorCode.RUNTIME_ERROR
    hint: str = ""

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} Hint: {self.hint}"
        return self.message


@dataclass
class RetryConfigError(RetryKitError):
    """Invalid retry policy value."""

    code: ErrorCode = ErrorCode.CONFIG_ERROR


@dataclass
class RetryExhaustedError(RetryKitError):
    """Raised by callers that opt in to exceptions via ``RetryOutcome.unwrap``."""

    code: ErrorCode = ErrorCode.RETRY_EXHAUSTED
    attempts: int = 0
    last_failure: Exception | None = field(default=None, compare=False)
