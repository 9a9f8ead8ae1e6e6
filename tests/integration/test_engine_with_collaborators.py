"""Engine wired from settings and wrapped around storage and notification calls."""

from __future__ import annotations

import asyncio
import io
from pathlib import Path

import pytest

from retrykit.config import RetrySettings, bootstrap, save_settings
from retrykit.errors import RetryExhaustedError
from retrykit.retry import RetryEngine, RetryPredicate

pytestmark = [pytest.mark.integration, pytest.mark.usefixtures("restore_retrykit_logger")]


class ValidationFailure(Exception):
    pass


class FavoritesStore:
    def __init__(self, transient_failures: int) -> None:
        self.transient_failures = transient_failures
        self.writes: list[list[str]] = []

    def save(self, facility_ids: list[str]) -> int:
        if self.transient_failures:
            self.transient_failures -= 1
            raise OSError("storage temporarily unavailable")
        if any(not item for item in facility_ids):
            raise ValidationFailure("empty facility id")
        self.writes.append(list(facility_ids))
        return len(facility_ids)


class NotificationSender:
    def __init__(self, transient_failures: int) -> None:
        self.transient_failures = transient_failures
        self.sent: list[str] = []

    async def send(self, message: str) -> str:
        await asyncio.sleep(0)
        if self.transient_failures:
            self.transient_failures -= 1
            raise ConnectionError("push gateway unreachable")
        self.sent.append(message)
        return f"sent:{message}"


def _is_transient(exc: Exception) -> bool:
    return isinstance(exc, (OSError, ConnectionError, TimeoutError))


def _engine(path: Path, predicate: RetryPredicate | None = None) -> RetryEngine:
    return bootstrap(path, retry_predicate=predicate, stream=io.StringIO(), environ={})


@pytest.fixture
def settings_path(tmp_path: Path) -> Path:
    path = tmp_path / "config.toml"
    save_settings(RetrySettings(max_attempts=4, initial_delay=0.0, max_delay=0.0), path)
    return path


def test_storage_write_recovers_from_transient_errors(settings_path: Path) -> None:
    engine = _engine(settings_path, _is_transient)
    store = FavoritesStore(transient_failures=2)

    outcome = engine.retry_sync(lambda: store.save(["gym-1", "pool-7"]))

    assert outcome.succeeded is True
    assert outcome.value == 2
    assert outcome.attempts == 3
    assert store.writes == [["gym-1", "pool-7"]]


def test_validation_error_is_terminal(settings_path: Path) -> None:
    engine = _engine(settings_path, _is_transient)
    store = FavoritesStore(transient_failures=0)

    outcome = engine.retry_sync(lambda: store.save(["gym-1", ""]))

    assert outcome.succeeded is False
    assert outcome.attempts == 1
    assert isinstance(outcome.failure, ValidationFailure)
    with pytest.raises(RetryExhaustedError):
        outcome.unwrap()


@pytest.mark.asyncio
async def test_notification_send_exhausts_budget(settings_path: Path) -> None:
    engine = _engine(settings_path, _is_transient)
    sender = NotificationSender(transient_failures=10)

    outcome = await engine.retry(lambda: sender.send("reservation confirmed"))

    assert outcome.succeeded is False
    assert outcome.attempts == 4
    assert outcome.delays == (0.0, 0.0, 0.0)
    assert sender.sent == []


@pytest.mark.asyncio
async def test_notification_send_with_override(settings_path: Path) -> None:
    engine = _engine(settings_path)
    sender = NotificationSender(transient_failures=1)

    outcome = await engine.retry(lambda: sender.send("reminder"), {"max_attempts": 2})

    assert outcome.value == "sent:reminder"
    assert outcome.attempts == 2
