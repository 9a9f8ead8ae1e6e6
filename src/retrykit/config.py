"""XDG settings loading/saving for the default retry policy."""

from __future__ import annotations

import logging as py_logging
import math
import os
import sys
import time
from collections.abc import Callable, Mapping
from contextlib import suppress
from pathlib import Path
from typing import Literal, TextIO, cast

from pydantic import BaseModel, ConfigDict, Field, field_validator

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover
    import tomli as tomllib

from retrykit.logging import LOG_LEVELS, configure_logging, default_log_path, normalize_level
from retrykit.retry import (
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_INITIAL_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
    RetryEngine,
    RetryPolicy,
    RetryPredicate,
)

logger = py_logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("~/.config/retrykit/config.toml").expanduser()
ENV_PREFIX = "RETRYKIT_"

LogLevel = Literal["DEBUG", "INFO", "WARN", "ERROR"]
DEFAULT_LOG_LEVEL: LogLevel = "INFO"


class RetrySettings(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    initial_delay: float = Field(default=DEFAULT_INITIAL_DELAY, ge=0, allow_inf_nan=False)
    max_delay: float = Field(default=DEFAULT_MAX_DELAY, ge=0, allow_inf_nan=False)
    backoff_factor: float = Field(default=DEFAULT_BACKOFF_FACTOR, ge=1, allow_inf_nan=False)
    log_level: LogLevel = DEFAULT_LOG_LEVEL

    @field_validator("log_level", mode="before")
    @classmethod
    def _validate_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            if value.strip().upper() not in LOG_LEVELS:
                raise ValueError(f"Invalid log level: {value}")
            return normalize_level(value)
        return value

    def to_policy(self, retry_predicate: RetryPredicate | None = None) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            backoff_factor=self.backoff_factor,
            retry_predicate=retry_predicate,
        )


def get_config_path(path: str | Path | None = None) -> Path:
    if path is None:
        return DEFAULT_CONFIG_PATH
    return Path(path).expanduser()


def _toml_scalar(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    raise TypeError(f"Unsupported TOML scalar type: {type(value)!r}")


def _as_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _as_float(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if not isinstance(value, (int, float, str)):
        return None
    try:
        parsed = float(value.strip() if isinstance(value, str) else value)
    except (ValueError, OverflowError):
        return None
    return parsed if math.isfinite(parsed) else None


def _sanitize(
    raw: Mapping[str, object], *, source: str, base: RetrySettings | None = None
) -> RetrySettings:
    cfg = base.model_copy() if base is not None else RetrySettings()

    max_attempts = _as_int(raw.get("max_attempts", cfg.max_attempts))
    if max_attempts is not None and max_attempts >= 1:
        cfg.max_attempts = max_attempts
    elif "max_attempts" in raw:
        logger.warning("Ignoring invalid max_attempts from %s: %r", source, raw["max_attempts"])

    for name in ("initial_delay", "max_delay"):
        delay = _as_float(raw.get(name, getattr(cfg, name)))
        if delay is not None and delay >= 0:
            setattr(cfg, name, delay)
        elif name in raw:
            logger.warning("Ignoring invalid %s from %s: %r", name, source, raw[name])

    backoff_factor = _as_float(raw.get("backoff_factor", cfg.backoff_factor))
    if backoff_factor is not None and backoff_factor >= 1:
        cfg.backoff_factor = backoff_factor
    elif "backoff_factor" in raw:
        logger.warning(
            "Ignoring invalid backoff_factor from %s: %r", source, raw["backoff_factor"]
        )

    log_level = raw.get("log_level", cfg.log_level)
    if isinstance(log_level, str) and log_level.strip().upper() in LOG_LEVELS:
        cfg.log_level = cast(LogLevel, normalize_level(log_level))
    elif "log_level" in raw:
        logger.warning("Ignoring invalid log_level from %s: %r", source, raw["log_level"])

    return cfg


def _environment_overrides(environ: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for name in RetrySettings.model_fields:
        value = environ.get(f"{ENV_PREFIX}{name.upper()}", "").strip()
        if value:
            overrides[name] = value
    return overrides


def load_settings(
    path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> RetrySettings:
    resolved = get_config_path(path)
    raw: dict[str, object] = {}
    if resolved.exists():
        try:
            with resolved.open("rb") as handle:
                loaded = tomllib.load(handle)
        except (tomllib.TOMLDecodeError, OSError) as exc:
            logger.warning("Unreadable retry settings at %s: %s", resolved, exc)
        else:
            if isinstance(loaded, dict):
                raw.update(loaded)

    cfg = _sanitize(raw, source=str(resolved))
    env_raw = _environment_overrides(os.environ if environ is None else environ)
    if not env_raw:
        return cfg
    return _sanitize(env_raw, source="environment", base=cfg)


def save_settings(settings: RetrySettings, path: str | Path | None = None) -> Path:
    resolved = get_config_path(path)
    resolved.parent.mkdir(parents=True, exist_ok=True)
    lines = [
        f"max_attempts = {_toml_scalar(settings.max_attempts)}",
        f"initial_delay = {_toml_scalar(float(settings.initial_delay))}",
        f"max_delay = {_toml_scalar(float(settings.max_delay))}",
        f"backoff_factor = {_toml_scalar(float(settings.backoff_factor))}",
        f"log_level = {_toml_scalar(settings.log_level)}",
    ]
    resolved.write_text("\n".join(lines) + "\n", encoding="utf-8")
    with suppress(OSError):
        resolved.chmod(0o600)
    return resolved


def build_engine(
    settings: RetrySettings | None = None,
    *,
    retry_predicate: RetryPredicate | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RetryEngine:
    policy = (settings or RetrySettings()).to_policy(retry_predicate)
    logger.debug(
        "Building retry engine max_attempts=%s initial_delay=%s max_delay=%s factor=%s",
        policy.max_attempts,
        policy.initial_delay,
        policy.max_delay,
        policy.backoff_factor,
    )
    return RetryEngine(policy, sleep=sleep)


def bootstrap(
    path: str | Path | None = None,
    *,
    retry_predicate: RetryPredicate | None = None,
    stream: TextIO | None = None,
    log_file: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> RetryEngine:
    """Load settings, configure logging and return the process's shared engine.

    At DEBUG level without an explicit ``log_file`` the log also goes to
    ``default_log_path()``.
    """
    settings = load_settings(path, environ=environ)
    if log_file is None and settings.log_level == "DEBUG":
        log_file = default_log_path()
    configure_logging(settings.log_level, stream, log_file=log_file)
    return build_engine(settings, retry_predicate=retry_predicate)
