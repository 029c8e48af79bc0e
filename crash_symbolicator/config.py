"""Runtime configuration.

Settings come from environment variables, optionally loaded from a ``.env``
file. Command-line options override them.

    SYMBOLICATE_SYSTEM_ROOT   root under which binaries are looked up (default /)
    SYMBOLICATE_DPKG_ROOT     root holding var/lib/dpkg (default /)
    SYMBOLICATE_NM            nm executable to use
    SYMBOLICATE_OWN_PATH      binary hosting the symbolicator; never blamed
    SYMBOLICATE_MAX_WORKERS   threads used to resolve frames (default 1)
    SYMBOLICATE_VERBOSE       enable debug logging
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ENV_PREFIX = "SYMBOLICATE_"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    value = env.get(ENV_PREFIX + name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(ENV_PREFIX + name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer %s%s=%r", ENV_PREFIX, name, value)
        return default


@dataclass
class Settings:
    """Symbolicator settings."""
    system_root: str = "/"
    dpkg_root: str = "/"
    nm_path: Optional[str] = None
    own_path: Optional[str] = None
    max_workers: int = 1
    verbose: bool = False

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None,
                 dotenv_path: Optional[str] = None) -> "Settings":
        """
        Build settings from the environment.

        Args:
            env: Mapping to read instead of ``os.environ`` (no .env loading)
            dotenv_path: Explicit .env file; by default one is searched for
                from the working directory upwards
        """
        if env is None:
            load_dotenv(dotenv_path)
            env = os.environ
        return cls(
            system_root=env.get(ENV_PREFIX + "SYSTEM_ROOT") or "/",
            dpkg_root=env.get(ENV_PREFIX + "DPKG_ROOT") or "/",
            nm_path=env.get(ENV_PREFIX + "NM") or None,
            own_path=env.get(ENV_PREFIX + "OWN_PATH") or None,
            max_workers=max(1, _env_int(env, "MAX_WORKERS", 1)),
            verbose=_env_bool(env, "VERBOSE"),
        )
