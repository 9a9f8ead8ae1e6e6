"""Retry/backoff engine for fallible operations."""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging as py_logging
import math
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, fields, replace
from typing import Any, Generic, TypeVar

from typing_extensions import TypedDict

from retrykit.errors import ErrorCode, RetryConfigError, RetryExhaustedError, RetryKitError

T = TypeVar("T")

logger = py_logging.getLogger(__name__)

RetryPredicate = Callable[[Exception], bool]
SyncSleep = Callable[[float], None]
AsyncSleep = Callable[[float], Awaitable[None]]

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0
DEFAULT_BACKOFF_FACTOR = 2.0


class PolicyOverride(TypedDict, total=False):
    max_attempts: int
    initial_delay: float
    max_delay: float
    backoff_factor: float
    retry_predicate: RetryPredicate | None


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    initial_delay: float = DEFAULT_INITIAL_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    retry_predicate: RetryPredicate | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int):
            raise RetryConfigError(
                f"Invalid max_attempts: {self.max_attempts!r}",
                hint="Use a positive integer.",
            )
        if self.max_attempts < 1:
            raise RetryConfigError(
                f"Invalid max_attempts: {self.max_attempts}",
                hint="At least one attempt is required.",
            )
        for name in ("initial_delay", "max_delay"):
            value = getattr(self, name)
            if not _is_finite_number(value) or value < 0:
                raise RetryConfigError(
                    f"Invalid {name}: {value!r}",
                    hint="Use a finite, non-negative number of seconds.",
                )
        factor = self.backoff_factor
        if not _is_finite_number(factor) or factor < 1:
            raise RetryConfigError(
                f"Invalid backoff_factor: {factor!r}",
                hint="Use a finite multiplier of at least 1.",
            )
        if self.retry_predicate is not None and not callable(self.retry_predicate):
            raise RetryConfigError(
                "retry_predicate must be callable.",
                hint="Pass a function taking the raised exception and returning a bool.",
            )

    def merged(
        self, override: PolicyOverride | Mapping[str, Any] | RetryPolicy | None
    ) -> RetryPolicy:
        """Return a copy with the fields of ``override`` replacing this policy's."""
        if override is None:
            return self
        if isinstance(override, RetryPolicy):
            return override
        unknown = sorted(set(override) - _POLICY_FIELDS)
        if unknown:
            raise RetryConfigError(
                f"Unknown retry policy field(s): {', '.join(unknown)}",
                hint=f"Use one of: {', '.join(sorted(_POLICY_FIELDS))}.",
            )
        if not override:
            return self
        return replace(self, **dict(override))

    def delay_for(self, attempt: int) -> float:
        """Wait applied after failed attempt ``attempt`` (1-based) before the next one."""
        if attempt < 1 or self.initial_delay == 0:
            return 0.0
        try:
            delay = self.initial_delay * (self.backoff_factor ** (attempt - 1))
        except OverflowError:
            return float(self.max_delay)
        return float(min(delay, self.max_delay))

    def schedule(self) -> tuple[float, ...]:
        return tuple(self.delay_for(attempt) for attempt in range(1, self.max_attempts))

    def should_retry(self, failure: Exception) -> bool:
        if self.retry_predicate is None:
            return True
        return bool(self.retry_predicate(failure))


_POLICY_FIELDS = frozenset(item.name for item in fields(RetryPolicy))


def _is_finite_number(value: object) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
    succeeded: bool
    attempts: int
    value: T | None = None
    failure: Exception | None = None
    delays: tuple[float, ...] = ()
    elapsed: float = 0.0

    def unwrap(self) -> T:
        if self.succeeded:
            return self.value  # type: ignore[return-value]
        raise RetryExhaustedError(
            f"Operation failed after {self.attempts} attempt(s): {self.failure}",
            attempts=self.attempts,
            last_failure=self.failure,
        ) from self.failure


class _Attempts:
    """Attempt accounting shared by the sync and async loops."""

    def __init__(self, policy: RetryPolicy, label: str) -> None:
        self.policy = policy
        self.label = label
        self.number = 0
        self.delays: list[float] = []
        self._started = time.monotonic()

    def begin(self) -> int:
        self.number += 1
        logger.debug(
            "Running %s attempt %s/%s", self.label, self.number, self.policy.max_attempts
        )
        return self.number

    def succeeded(self, value: T) -> RetryOutcome[T]:
        if self.number > 1:
            logger.info("%s succeeded on attempt %s", self.label, self.number)
        return RetryOutcome(
            succeeded=True,
            attempts=self.number,
            value=value,
            delays=tuple(self.delays),
            elapsed=time.monotonic() - self._started,
        )

    def failed(self, failure: Exception) -> float | None:
        """Return the wait before the next attempt, or ``None`` when the failure is terminal."""
        logger.warning(
            "%s attempt %s/%s failed: %s",
            self.label,
            self.number,
            self.policy.max_attempts,
            failure,
        )
        if self.number >= self.policy.max_attempts:
            return None
        if not self.policy.should_retry(failure):
            logger.debug("%s failure is not retryable: %r", self.label, failure)
            return None
        delay = self.policy.delay_for(self.number)
        self.delays.append(delay)
        logger.debug("Retrying %s in %.3fs", self.label, delay)
        return delay

    def terminal(self, failure: Exception) -> RetryOutcome[Any]:
        logger.error("%s gave up after %s attempt(s): %s", self.label, self.number, failure)
        return RetryOutcome(
            succeeded=False,
            attempts=self.number,
            failure=failure,
            delays=tuple(self.delays),
            elapsed=time.monotonic() - self._started,
        )


def _describe(operation: Callable[..., Any]) -> str:
    target = operation.func if isinstance(operation, functools.partial) else operation
    return getattr(target, "__qualname__", None) or type(target).__name__


class RetryEngine:
    """Runs operations under a retry policy and reports a ``RetryOutcome``.

    The engine owns its default policy. Construct one at startup (see
    ``retrykit.config.build_engine``) and share it; per-call overrides are
    merged over the default field by field.
    """

    def __init__(
        self,
        default_policy: RetryPolicy | None = None,
        *,
        sleep: SyncSleep = time.sleep,
        async_sleep: AsyncSleep = asyncio.sleep,
    ) -> None:
        self._default_policy = default_policy or RetryPolicy()
        self._sleep = sleep
        self._async_sleep = async_sleep

    @property
    def default_policy(self) -> RetryPolicy:
        return self._default_policy

    def update_default_config(
        self, partial: PolicyOverride | Mapping[str, Any] | None = None, **fields_: Any
    ) -> RetryPolicy:
        changes: dict[str, Any] = dict(partial or {})
        changes.update(fields_)
        updated = self._default_policy.merged(changes)
        self._default_policy = updated
        logger.debug("Default retry policy updated fields=%s", sorted(changes))
        return updated

    def resolve_policy(
        self, policy_override: PolicyOverride | Mapping[str, Any] | RetryPolicy | None = None
    ) -> RetryPolicy:
        return self._default_policy.merged(policy_override)

    async def retry(
        self,
        operation: Callable[[], Awaitable[T] | T],
        policy_override: PolicyOverride | Mapping[str, Any] | RetryPolicy | None = None,
    ) -> RetryOutcome[T]:
        policy = self.resolve_policy(policy_override)
        state = _Attempts(policy, _describe(operation))
        while True:
            state.begin()
            try:
                result = operation()
                if inspect.isawaitable(result):
                    result = await result
            except Exception as exc:
                delay = state.failed(exc)
                if delay is None:
                    return state.terminal(exc)
                await self._async_sleep(delay)
            else:
                return state.succeeded(result)

    def retry_sync(
        self,
        operation: Callable[[], T],
        policy_override: PolicyOverride | Mapping[str, Any] | RetryPolicy | None = None,
    ) -> RetryOutcome[T]:
        policy = self.resolve_policy(policy_override)
        label = _describe(operation)
        state = _Attempts(policy, label)
        while True:
            state.begin()
            try:
                result = operation()
            except Exception as exc:
                delay = state.failed(exc)
                if delay is None:
                    return state.terminal(exc)
                self._sleep(delay)
                continue
            if inspect.isawaitable(result):
                if inspect.iscoroutine(result):
                    result.close()
                return state.terminal(
                    RetryKitError(
                        f"{label} returned an awaitable in retry_sync.",
                        code=ErrorCode.VALIDATION_ERROR,
                        hint="Use 'await engine.retry(...)' for asynchronous operations.",
                    )
                )
            return state.succeeded(result)

    def retrying(
        self,
        policy_override: PolicyOverride | Mapping[str, Any] | RetryPolicy | None = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorate a function so every call returns a ``RetryOutcome``."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            if inspect.iscoroutinefunction(func):

                @functools.wraps(func)
                async def async_wrapper(*args: Any, **kwargs: Any) -> RetryOutcome[Any]:
                    return await self.retry(
                        functools.partial(func, *args, **kwargs), policy_override
                    )

                return async_wrapper

            @functools.wraps(func)
            def wrapper(*args: Any, **kwargs: Any) -> RetryOutcome[Any]:
                return self.retry_sync(functools.partial(func, *args, **kwargs), policy_override)

            return wrapper

        return decorator
