"""Load .env files and apply KEY=VALUE overrides."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from dotenv import dotenv_values

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def parse_override(text: str) -> tuple[str, str]:
    """Split a KEY=VALUE override."""
    key, sep, value = text.partition("=")
    if not sep or not key.strip():
        raise ConfigurationError(f"Invalid environment override '{text}' (expected KEY=VALUE)")
    return key.strip(), value


def load_env_vars(env_file: str | Path, overrides: Iterable[str] = ()) -> dict[str, str]:
    """Read variables from env_file (if present), then apply overrides."""
    env_vars: dict[str, str] = {}
    path = Path(env_file)
    if path.is_file():
        logger.debug("Loading environment variables from '%s'", path)
        env_vars.update({k: v for k, v in dotenv_values(path).items() if v is not None})
    else:
        logger.debug("No .env file found at '%s'", path)

    for override in overrides:
        key, value = parse_override(override)
        logger.debug("Override env var: %s", key)
        env_vars[key] = value

    return env_vars
