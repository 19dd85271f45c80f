"""
File-based gateway configuration.

``config/gateway.yaml`` holds the defaults; ``config/<environment>.yaml`` is
merged over it key by key. String values may reference environment variables
as ``${VAR}`` or ``${VAR:default}``. Secrets do not belong here, they are
read by :mod:`authgate.config.settings`.
"""

import logging
import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field

from authgate.core.rate_limit import RateLimitRule

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(__file__).resolve().parent.parent.parent / "config"
BASE_CONFIG_FILE = "gateway.yaml"

_ENV_REFERENCE = re.compile(r"\$\{([^}]+)\}")


class ServerConfig(BaseModel):
    """Uvicorn settings used by ``python -m authgate.main``."""
    host: str = "localhost"
    port: int = 8000
    workers: int = 1
    log_level: str = "info"
    access_log: bool = True


class CorsConfig(BaseModel):
    """CORS settings for the administration console."""
    enabled: bool = False
    allow_origins: List[str] = ["*"]
    allow_methods: List[str] = ["*"]
    allow_headers: List[str] = ["*"]


class GatewayConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    cors: CorsConfig = Field(default_factory=CorsConfig)
    rate_limits: Dict[str, RateLimitRule] = Field(default_factory=dict)
    raw_config: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GatewayConfig":
        """
        Build the config from merged, substituted YAML data.

        A rate-limit rule without a ``prefix`` uses its name as the prefix.
        """
        rules = {}
        for name, rule in (data.get("rate_limits") or {}).items():
            fields = dict(rule or {})
            fields.setdefault("prefix", name)
            rules[name] = RateLimitRule(**fields)

        security = data.get("security") or {}
        return cls(
            server=ServerConfig(**(data.get("server") or {})),
            cors=CorsConfig(**(security.get("cors") or {})),
            rate_limits=rules,
            raw_config=dict(data),
        )

    def rate_limit(self, name: str) -> RateLimitRule:
        """Rule by name; an unconfigured (pass-through) rule when missing."""
        return self.rate_limits.get(name) or RateLimitRule(prefix=name)


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``override`` into a copy of ``base``; nested mappings merge, other values replace."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _expand_reference(match: "re.Match") -> str:
    reference = match.group(1)
    name, sep, default = reference.partition(":")
    if sep:
        return os.getenv(name, default)
    # unresolved references are left in place
    return os.getenv(name, match.group(0))


def substitute_env(value: Any) -> Any:
    """Expand ``${VAR}`` / ``${VAR:default}`` in every string of a YAML tree."""
    if isinstance(value, dict):
        return {key: substitute_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [substitute_env(item) for item in value]
    if isinstance(value, str):
        return _ENV_REFERENCE.sub(_expand_reference, value)
    return value


class ConfigLoader:
    """Loads ``gateway.yaml`` plus the environment overlay from one directory."""

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = Path(config_dir) if config_dir is not None else DEFAULT_CONFIG_DIR

    def load_config(self, environment: Optional[str] = None) -> GatewayConfig:
        """
        Load configuration for an environment.

        Args:
            environment: Overlay name, ``$ENVIRONMENT`` or ``development``
                when omitted

        Missing or unreadable files count as empty.
        """
        environment = environment or os.getenv("ENVIRONMENT", "development")

        data: Dict[str, Any] = {}
        for file_name in (BASE_CONFIG_FILE, f"{environment}.yaml"):
            data = deep_merge(data, self._read(self.config_dir / file_name))

        return GatewayConfig.from_mapping(substitute_env(data))

    def _read(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            return {}
        try:
            with open(path, "r") as fh:
                loaded = yaml.safe_load(fh)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Ignoring config file {path}: {e}")
            return {}
        if loaded is None:
            return {}
        if not isinstance(loaded, dict):
            logger.warning(f"Ignoring config file {path}: top level is not a mapping")
            return {}
        return loaded


@lru_cache()
def get_config() -> GatewayConfig:
    """Configuration for the current ``ENVIRONMENT``, loaded once."""
    return ConfigLoader().load_config()
