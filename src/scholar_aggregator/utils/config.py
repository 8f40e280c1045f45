"""Centralized configuration loading."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

_config_cache: Optional[dict] = None
CONFIG_RELATIVE_PATH = Path("configs") / "config.yaml"
CONFIG_PATH_ENV_VAR = "SCHOLAR_AGGREGATOR_CONFIG"

# Checked in order
API_KEY_ENV_VARS = ("SERPAPI_KEY", "GOOGLE_SCHOLAR_API_KEY", "SERPAPI_API_KEY")


def default_config_path() -> Path:
    """
    Where the aggregator looks for its YAML file when no path is given.

    ``$SCHOLAR_AGGREGATOR_CONFIG`` wins; otherwise the first ancestor of this
    package that holds ``configs/config.yaml``, then the working directory.
    """
    override = os.getenv(CONFIG_PATH_ENV_VAR)
    if override:
        return Path(override)
    for parent in Path(__file__).resolve().parents:
        candidate = parent / CONFIG_RELATIVE_PATH
        if candidate.is_file():
            return candidate
    return Path.cwd() / CONFIG_RELATIVE_PATH


def _read_yaml(path: Path) -> dict:
    if not path.is_file():
        logger.debug(f"No aggregator config at {path}, using defaults")
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Ignoring unreadable config {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Config {path} is not a mapping, using defaults")
        return {}
    return data


def load_config(config_path: Optional[str] = None, *, use_cache: bool = True) -> dict:
    """Read the aggregator YAML config.

    An explicit ``config_path`` is always read fresh. The discovered default
    is memoized until ``clear_config_cache()``.
    """
    global _config_cache
    if config_path:
        return _read_yaml(Path(config_path))
    if use_cache and _config_cache is not None:
        return _config_cache
    _config_cache = _read_yaml(default_config_path())
    return _config_cache


def clear_config_cache():
    global _config_cache
    _config_cache = None


def get_api_key(config: Optional[dict] = None) -> Optional[str]:
    """
    Provider API key from the environment, falling back to ``serpapi.api_key``.

    Returns:
        The key, or None if none is configured
    """
    for name in API_KEY_ENV_VARS:
        value = os.getenv(name)
        if value and value.strip():
            return value.strip()

    value = ((config or {}).get("serpapi") or {}).get("api_key")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


@dataclass
class AggregatorSettings:
    """Tunables for the aggregation engine, read from the ``aggregator:`` section."""

    cache_backend: str = "file"  # file | sqlite | memory
    cache_dir: str = "./data/cache"
    cache_ttl_days: float = 7.0
    concurrency: int = 2
    throttle_delay: float = 1.0
    max_pages: int = 10
    per_author_limit: int = 20
    max_authors: int = 3
    default_query: str = 'emergency ultrasound OR "emergency ultrasonography"'
    rate_limit_calls: int = 100
    rate_limit_window: int = 60

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_days * 24 * 60 * 60

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> "AggregatorSettings":
        """Build settings from a loaded config dict, ignoring unknown keys."""
        section = (config or {}).get("aggregator") or {}
        known = {k: v for k, v in section.items() if k in cls.__dataclass_fields__}
        unknown = set(section) - set(known)
        if unknown:
            logger.warning(f"Ignoring unknown aggregator settings: {sorted(unknown)}")
        return cls(**known)
