from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import ErrorProfile, parse_error_profile

DEFAULT_COMMAND = "qodo"
DEFAULT_ARGS = "--ci -y"
DEFAULT_GRACE_PERIOD = 1.0
DEFAULT_READ_LIMIT = 16 * 1024 * 1024

# Always set on the spawned CLI, on top of the inherited environment.
NON_INTERACTIVE_ENV: Dict[str, str] = {
    "CI": "true",
    "NO_COLOR": "1",
    "TERM": "dumb",
}


@dataclass(frozen=True)
class Settings:
    """Simple settings container sourced from environment variables."""

    command: Tuple[str, ...]
    args: Tuple[str, ...]
    grace_period: float
    tools_file: Optional[Path]
    error_profile: ErrorProfile
    read_limit: int = DEFAULT_READ_LIMIT
    env_overrides: Dict[str, str] = field(default_factory=lambda: dict(NON_INTERACTIVE_ENV))


def _split(raw: str, variable: str, errors: List[str]) -> Tuple[str, ...]:
    try:
        return tuple(shlex.split(raw))
    except ValueError as exc:
        errors.append(f"{variable} could not be parsed: {exc}")
        return ()


def _float(variable: str, default: float, errors: List[str]) -> float:
    raw = os.getenv(variable)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        errors.append(f"{variable} must be a number, got {raw!r}")
        return default


def _int(variable: str, default: int, errors: List[str]) -> int:
    raw = os.getenv(variable)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        errors.append(f"{variable} must be an integer, got {raw!r}")
        return default


def validate_settings(settings: Settings, errors: Optional[List[str]] = None) -> None:
    """Validate settings and raise ValueError for invalid configurations."""
    errors = list(errors or [])

    if not settings.command:
        errors.append("QODO_ACP_COMMAND must name an executable")

    if settings.grace_period <= 0:
        errors.append("QODO_ACP_GRACE_PERIOD must be positive")

    if settings.read_limit <= 0:
        errors.append("QODO_ACP_READ_LIMIT must be positive")

    if settings.tools_file is not None and not settings.tools_file.is_file():
        errors.append(f"QODO_ACP_TOOLS_FILE does not exist: {settings.tools_file}")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(
            f"  - {error}" for error in errors
        )
        raise ValueError(error_msg)


@lru_cache()
def get_settings() -> Settings:
    """Return cached and validated settings."""
    errors: List[str] = []

    command = _split(os.getenv("QODO_ACP_COMMAND", DEFAULT_COMMAND), "QODO_ACP_COMMAND", errors)
    args = _split(os.getenv("QODO_ACP_ARGS", DEFAULT_ARGS), "QODO_ACP_ARGS", errors)
    grace_period = _float("QODO_ACP_GRACE_PERIOD", DEFAULT_GRACE_PERIOD, errors)
    read_limit = _int("QODO_ACP_READ_LIMIT", DEFAULT_READ_LIMIT, errors)

    tools_file_raw = os.getenv("QODO_ACP_TOOLS_FILE")
    tools_file = Path(tools_file_raw) if tools_file_raw else None

    try:
        error_profile = parse_error_profile(os.getenv("QODO_ACP_ERROR_PROFILE"))
    except ValueError as exc:
        errors.append(str(exc))
        error_profile = ErrorProfile.ACP_BASIC

    settings = Settings(
        command=command,
        args=args,
        grace_period=grace_period,
        tools_file=tools_file,
        error_profile=error_profile,
        read_limit=read_limit,
    )

    validate_settings(settings, errors)

    return settings
