"""
Configuration for upgrade plan-info verification.

Settings come from dataclass defaults, an optional YAML file and the
``DAEMON_NAME`` environment variable. Command-line flags override all of
them (see ``planinfo.cli``).

Example configuration file::

    verifier:
      daemon_name: simd
      connect_timeout: 5
      read_timeout: 120
      download_timeout: 1800
      max_workers: 4
      log_level: DEBUG
"""

import logging
import os
import sys
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Dict, Union

import yaml

from . import __version__
from .downloader import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_DOWNLOAD_TIMEOUT,
    DEFAULT_MAX_DOWNLOAD_BYTES,
    DEFAULT_READ_TIMEOUT,
)

DEFAULT_MAX_PLAN_INFO_BYTES = 1024 * 1024


class ConfigurationError(Exception):
    """Configuration loading or validation failed."""
    pass


def default_daemon_name() -> str:
    """
    Get the default name to use for the daemon.

    The ``DAEMON_NAME`` environment variable wins; otherwise the last part
    of the currently running executable is used.
    """
    name = os.environ.get("DAEMON_NAME", "")
    if not name:
        name = os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else ""
    return name


@dataclass
class VerifierConfig:
    """Settings for plan-info parsing and artifact checks."""
    daemon_name: str = field(default_factory=default_daemon_name)
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    read_timeout: float = DEFAULT_READ_TIMEOUT
    download_timeout: float = DEFAULT_DOWNLOAD_TIMEOUT
    max_plan_info_bytes: int = DEFAULT_MAX_PLAN_INFO_BYTES
    max_download_bytes: int = DEFAULT_MAX_DOWNLOAD_BYTES
    max_workers: int = 1
    basic_only: bool = False
    user_agent: str = f"upgrade-plan-verifier/{__version__}"
    log_level: str = "INFO"

    def __post_init__(self):
        """Validate and normalize settings."""
        for name in ("connect_timeout", "read_timeout", "download_timeout"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive number, got {value!r}")
            setattr(self, name, float(value))

        for name in ("max_plan_info_bytes", "max_download_bytes", "max_workers"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")

        if not isinstance(self.basic_only, bool):
            raise ConfigurationError(f"basic_only must be true or false, got {self.basic_only!r}")

        self.log_level = str(self.log_level).upper()
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ConfigurationError(f"Unknown log level: {self.log_level}")

    def with_overrides(self, **overrides) -> "VerifierConfig":
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


def load_config(config_path: Union[str, Path]) -> VerifierConfig:
    """
    Load verifier settings from a YAML file.

    Settings may sit at the top level of the document or under a
    ``verifier`` section.

    Args:
        config_path: Path to the configuration file

    Returns:
        Loaded configuration

    Raises:
        ConfigurationError: If the file is missing, unreadable, or holds
            unknown keys or invalid values
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML configuration: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Failed to load configuration: {e}") from e

    if data is None:
        data = {}
    if isinstance(data, dict) and "verifier" in data:
        data = data["verifier"] or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration must be a mapping: {config_path}")

    known = {f.name for f in fields(VerifierConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {', '.join(map(str, unknown))}")

    return VerifierConfig(**data)
