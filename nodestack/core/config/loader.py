"""
Settings loader: reads nodestack.yml into a validated Settings model.

The file is optional: with no settings file every value takes its
default. Environment variables override the file for the few values
that operators change per shell (state directory, logging).
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

# Default config filename
SETTINGS_FILE = "nodestack.yml"

BUNDLED_CATALOG = Path(__file__).resolve().parent.parent / "data" / "catalog.yml"


class ConfigError(Exception):
    """Raised when the settings file is invalid or unreadable."""


class RpcSettings(BaseModel):
    host: str = "localhost"
    port: int = 16110
    timeout_s: float = 5.0

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


class RetrySettings(BaseModel):
    """Backoff for ``retry_local`` health checks."""

    base_delay_s: float = 2.0
    max_attempts: int = 3
    max_delay_s: float = 30.0


class ResourceLimits(BaseModel):
    """Thresholds above which the resolver warns. None means no limit."""

    cpu_cores: float | None = None
    ram_gb: float | None = 32
    disk_gb: float | None = None


class Settings(BaseModel):
    """Runtime settings for the installer."""

    state_dir: Path = Path(".nodestack")
    catalog_path: Path = BUNDLED_CATALOG
    compose_file: Path = Path("docker-compose.yml")
    compose_project: str | None = None

    check_interval_s: float = 10.0
    progress_heartbeat_ticks: int = 6
    resume_max_age_hours: float = 24.0
    max_snapshots: int = 10
    driver_timeout_s: float = 120.0

    rpc: RpcSettings = Field(default_factory=RpcSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)

    # Where the settings came from (None = defaults only)
    source: Path | None = Field(default=None, exclude=True)

    def resolve_paths(self, base: Path) -> Settings:
        """Anchor relative paths at the settings file's directory."""
        updates = {}
        for key in ("state_dir", "catalog_path", "compose_file"):
            value: Path = getattr(self, key)
            if not value.is_absolute():
                updates[key] = (base / value).resolve()
        return self.model_copy(update=updates)


def find_settings_file(start_dir: Path | None = None) -> Path | None:
    """Search for nodestack.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to nodestack.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / SETTINGS_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def _apply_env(settings: Settings) -> Settings:
    state_dir = os.environ.get("NODESTACK_STATE_DIR", "").strip()
    if state_dir:
        logger.debug("State dir overridden by NODESTACK_STATE_DIR=%s", state_dir)
        return settings.model_copy(update={"state_dir": Path(state_dir)})
    return settings


def load_settings(path: Path | None = None, *, search: bool = True) -> Settings:
    """Load and validate settings.

    Args:
        path: Explicit path to nodestack.yml. If None and ``search`` is
            true, searches upward from the working directory.
        search: Whether to look for a settings file when none is given.

    Returns:
        Validated Settings model (defaults when no file exists).

    Raises:
        ConfigError: If an explicit file is missing, or any file is invalid.
    """
    if path is None and search:
        path = find_settings_file()

    if path is None:
        logger.debug("No %s found, using defaults", SETTINGS_FILE)
        return _apply_env(Settings())

    if not path.is_file():
        raise ConfigError(f"Settings file not found: {path}")

    logger.debug("Loading settings from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings in {path}: {e}") from e

    settings = settings.resolve_paths(path.parent.resolve())
    settings = settings.model_copy(update={"source": path})
    return _apply_env(settings)
