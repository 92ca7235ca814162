"""Engine configuration.

Precedence (lowest to highest): dataclass defaults, YAML file, ``FLOWCORE_*``
environment variables. The YAML file is ``~/.flowcore/config.yaml`` unless a
path is given explicitly.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from flowcore.core.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".flowcore/config.yaml"
ENV_PREFIX = "FLOWCORE_"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class EngineConfig:
    """Configuration for the flow executor and its injected capabilities."""

    # Scheduling
    max_parallel_nodes: int = 4
    fail_fast: bool = True  # Stop dispatching after the first unrecovered failure
    max_call_depth: int = 8  # Nested CallFlow limit
    validate_runtime_inputs: bool = True

    # Handler timeouts
    api_timeout_ms: int = 30000
    transform_timeout_ms: int = 5000

    # Runs still "running" after this long are marked as error
    execution_timeout_minutes: int = 5

    # Capabilities
    node_binary: str = "node"
    block_private_networks: bool = True  # Reject ApiCall URLs on loopback/private ranges

    def __post_init__(self) -> None:
        for name in ("max_parallel_nodes", "max_call_depth", "api_timeout_ms",
                     "transform_timeout_ms", "execution_timeout_minutes"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")

    @classmethod
    def from_dict(cls, data: dict[str, Any], source: str = "<dict>") -> EngineConfig:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys in {source}: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None, env: Mapping[str, str] | None = None) -> EngineConfig:
        """Load config from defaults, the YAML file, then environment overrides."""
        data: dict[str, Any] = {}

        config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
        if config_path.exists():
            try:
                with open(config_path, encoding="utf-8") as f:
                    loaded = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid config in {config_path}: {e}")
            if loaded is not None and not isinstance(loaded, dict):
                raise ConfigError(
                    f"Invalid config in {config_path}: expected mapping, got {type(loaded).__name__}"
                )
            data.update(loaded or {})
            logger.debug(f"Loaded engine config from {config_path}")
        elif path is not None:
            raise ConfigError(f"Config file not found: {config_path}")

        data.update(_env_overrides(os.environ if env is None else env))
        return cls.from_dict(data, source=str(config_path))


def _env_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    """Typed overrides from ``FLOWCORE_<FIELD>`` variables."""
    types = {f.name: f.type for f in fields(EngineConfig)}
    overrides: dict[str, Any] = {}
    for key, raw in env.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX):].lower()
        if name not in types:
            logger.warning(f"Ignoring unknown environment variable {key}")
            continue
        overrides[name] = _coerce(name, types[name], raw)
    return overrides


def _coerce(name: str, type_name: Any, raw: str) -> Any:
    # Annotations are strings under postponed evaluation
    type_name = getattr(type_name, "__name__", type_name)
    if type_name == "bool":
        lowered = raw.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ConfigError(f"{ENV_PREFIX}{name.upper()} must be a boolean, got {raw!r}")
    if type_name == "int":
        try:
            return int(raw)
        except ValueError:
            raise ConfigError(f"{ENV_PREFIX}{name.upper()} must be an integer, got {raw!r}")
    return raw
