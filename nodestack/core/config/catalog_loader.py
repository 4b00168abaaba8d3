"""
Catalog loader: loads the profile catalog from YAML.

The catalog is read once at startup. Profiles and templates are keyed
by id in the file; the id is injected into each entry before validation
so authors don't have to repeat it.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import ValidationError

from nodestack.core.config.loader import BUNDLED_CATALOG, ConfigError
from nodestack.core.models.profile import Catalog

logger = logging.getLogger(__name__)


def _keyed(section: object, kind: str, path: Path) -> dict[str, dict]:
    """Turn ``{id: {...}}`` into ``{id: {"id": id, ...}}``."""
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{kind}' in {path} must be a mapping of id -> definition")
    out: dict[str, dict] = {}
    for key, body in section.items():
        if not isinstance(body, dict):
            raise ConfigError(f"{kind[:-1]} '{key}' in {path} is not a mapping")
        out[str(key)] = {**body, "id": str(key)}
    return out


def parse_catalog(data: dict, path: Path) -> Catalog:
    """Validate a raw catalog mapping into a Catalog."""
    payload = dict(data)
    payload["profiles"] = _keyed(data.get("profiles"), "profiles", path)
    payload["templates"] = _keyed(data.get("templates"), "templates", path)
    try:
        return Catalog.model_validate(payload)
    except ValidationError as e:
        raise ConfigError(f"Invalid catalog {path}: {e}") from e


def load_catalog(path: Path | None = None) -> Catalog:
    """Load and validate a profile catalog.

    Args:
        path: Catalog file. Defaults to the catalog bundled with the package.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    path = path or BUNDLED_CATALOG
    if not path.is_file():
        raise ConfigError(f"Catalog file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    catalog = parse_catalog(data, path)
    logger.debug(
        "Loaded catalog %s: %d profiles, %d templates",
        path, len(catalog.profiles), len(catalog.templates),
    )
    return catalog


@lru_cache(maxsize=1)
def default_catalog() -> Catalog:
    """The bundled catalog, loaded once per process."""
    return load_catalog(BUNDLED_CATALOG)
