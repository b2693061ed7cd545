"""Configuration helpers for the orchestrator service."""

from __future__ import annotations

import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger

DEFAULT_DEVICE_TIMEOUT = 3.0


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_list(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _candidate_env_paths(start: Path) -> Iterable[Path]:
    """Yield plausible .env locations from closest to farthest."""
    override = os.environ.get("ORCHESTRATOR_ENV_FILE")
    if override:
        yield Path(override).expanduser()

    for directory in (start, *start.parents):
        yield directory / ".env"


def _discover_env_path() -> Path | None:
    """Return the first .env path that exists, if any."""
    package_dir = Path(__file__).resolve().parent
    for candidate in _candidate_env_paths(package_dir):
        if candidate.exists():
            return candidate
    return None


def _load_env_file(path: Path | None = None) -> None:
    """Populate os.environ with values from a .env file if present."""
    env_path = path or _discover_env_path()
    if env_path is None or not env_path.exists():
        logger.debug("No .env file discovered for configuration")
        return

    logger.bind(path=str(env_path)).info("Loading environment variables from .env")
    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        # Existing environment variables win over the file.
        os.environ.setdefault(key, value)


_load_env_file()


@dataclass(frozen=True)
class Settings:
    """Typed accessors for configuration derived from the environment."""

    device_timeout: float = DEFAULT_DEVICE_TIMEOUT
    scheduler_timezone: str | None = None
    verify_instances: bool = True
    api_keys: tuple[str, ...] = field(default_factory=tuple)
    cors_origins: tuple[str, ...] = ("*",)

    @classmethod
    def from_env(cls) -> Settings:
        timeout_env = os.environ.get("WLED_TIMEOUT")
        try:
            device_timeout = (
                float(timeout_env) if timeout_env else DEFAULT_DEVICE_TIMEOUT
            )
        except ValueError:
            logger.bind(value=timeout_env).warning(
                "Invalid WLED_TIMEOUT; falling back to default"
            )
            device_timeout = DEFAULT_DEVICE_TIMEOUT

        verify_env = os.environ.get("ORCHESTRATOR_VERIFY_INSTANCES")
        verify_instances = _parse_bool(verify_env) if verify_env is not None else True

        timezone_name = os.environ.get("ORCHESTRATOR_TIMEZONE") or None
        cors_origins = _parse_list(os.environ.get("ORCHESTRATOR_CORS_ORIGINS")) or ("*",)

        settings = cls(
            device_timeout=device_timeout,
            scheduler_timezone=timezone_name,
            verify_instances=verify_instances,
            api_keys=_parse_list(os.environ.get("API_KEYS")),
            cors_origins=cors_origins,
        )
        logger.bind(
            device_timeout=settings.device_timeout,
            timezone=settings.scheduler_timezone or "local",
            verify_instances=settings.verify_instances,
            auth_enabled=bool(settings.api_keys),
        ).info("Configuration loaded from environment")
        return settings

    def timezone(self) -> ZoneInfo | None:
        """Return the configured scheduler timezone, or None for local time."""
        if not self.scheduler_timezone:
            return None
        try:
            return ZoneInfo(self.scheduler_timezone)
        except ZoneInfoNotFoundError:
            logger.warning(
                "Invalid scheduler timezone; using local time.",
                timezone=self.scheduler_timezone,
            )
            return None


settings = Settings.from_env()
