"""Runtime settings shared by the cache, registry clients and updater."""

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


DEFAULT_CONFIG_DIR = "config"
DEFAULT_CACHE_DIR = os.path.join(tempfile.gettempdir(), "docker-registry-cache")
DEFAULT_CACHE_TTL = 3600
REQUEST_TIMEOUT = 30
DEFAULT_MAX_WORKERS = 4


def _env_number(name: str, default, convert=int):
    raw = os.environ.get(name, '').strip()
    if not raw:
        return default
    try:
        return convert(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got '{raw}'")


@dataclass
class Settings:
    """Explicit configuration handed to every component.

    Args:
        config_dir: Directory holding deploy*.yml manifests
        cache_dir: Directory for cached registry lookups
        cache_ttl: Seconds a cached lookup stays valid
        negative_cache_ttl: Seconds an 'unknown' result stays cached
                            (None means same as cache_ttl)
        ghcr_token: Bearer token for ghcr.io instead of the anonymous one
        request_timeout: Seconds before an HTTP request gives up
        max_workers: Concurrent registry lookups (1 = sequential)
    """
    config_dir: Path = Path(DEFAULT_CONFIG_DIR)
    cache_dir: Path = Path(DEFAULT_CACHE_DIR)
    cache_ttl: int = DEFAULT_CACHE_TTL
    negative_cache_ttl: Optional[int] = None
    ghcr_token: Optional[str] = None
    request_timeout: float = REQUEST_TIMEOUT
    max_workers: int = DEFAULT_MAX_WORKERS

    def __post_init__(self):
        self.config_dir = Path(self.config_dir)
        self.cache_dir = Path(self.cache_dir)
        if self.cache_ttl < 0:
            raise ValueError("cache_ttl must not be negative")
        if self.negative_cache_ttl is not None and self.negative_cache_ttl < 0:
            raise ValueError("negative_cache_ttl must not be negative")
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")

    @property
    def effective_negative_ttl(self) -> int:
        if self.negative_cache_ttl is None:
            return self.cache_ttl
        return self.negative_cache_ttl

    @classmethod
    def from_env(cls) -> 'Settings':
        """Build settings from CONFIG_DIR, CACHE_DIR, CACHE_TTL, ... env vars."""
        return cls(
            config_dir=Path(os.environ.get('CONFIG_DIR', DEFAULT_CONFIG_DIR)),
            cache_dir=Path(os.environ.get('CACHE_DIR', DEFAULT_CACHE_DIR)),
            cache_ttl=_env_number('CACHE_TTL', DEFAULT_CACHE_TTL),
            negative_cache_ttl=_env_number('NEGATIVE_CACHE_TTL', None),
            ghcr_token=os.environ.get('GHCR_TOKEN') or None,
            request_timeout=_env_number('REQUEST_TIMEOUT', REQUEST_TIMEOUT, float),
            max_workers=_env_number('MAX_WORKERS', DEFAULT_MAX_WORKERS),
        )
