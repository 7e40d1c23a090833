"""YAML settings loader with environment variable support."""

import os
import re
from dataclasses import dataclass, fields, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Type, TypeVar

import yaml

from core.errors import ParseError

T = TypeVar('T')

_ENV_PATTERN = re.compile(r'\$\{([^}:]+)(?::-([^}]*))?\}')


def expand_env_vars(value: Any) -> Any:
    """
    Recursively expand environment variables in strings.

    Supports:
    - ${VAR} - required variable
    - ${VAR:-default} - variable with default
    """
    if isinstance(value, str):
        def replacer(match):
            env_value = os.environ.get(match.group(1))
            if env_value is not None:
                return env_value
            if match.group(2) is not None:
                return match.group(2)
            # Leave unresolved references visible
            return match.group(0)

        return _ENV_PATTERN.sub(replacer, value)

    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [expand_env_vars(v) for v in value]

    return value


def load_yaml(path) -> dict:
    """Load a YAML mapping from disk with environment variable expansion."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ParseError(f"{path}: {e}")

    if not isinstance(data, dict):
        raise ParseError(f"{path}: expected a mapping at top level")
    return expand_env_vars(data)


def dict_to_dataclass(data: dict, cls: Type[T]) -> T:
    """Convert a dict to a dataclass instance, ignoring unknown keys."""
    if not is_dataclass(cls):
        raise TypeError(f"{cls} is not a dataclass")

    field_info = {f.name: f for f in fields(cls)}
    filtered = {}

    for key, value in data.items():
        if key not in field_info:
            continue

        field_type = field_info[key].type

        if isinstance(field_type, type) and issubclass(field_type, Enum):
            if isinstance(value, str):
                value = field_type(value)

        elif is_dataclass(field_type) and isinstance(value, dict):
            value = dict_to_dataclass(value, field_type)

        elif field_type in (int, float) and isinstance(value, str):
            value = field_type(value)

        filtered[key] = value

    return cls(**filtered)


# =============================================================================
# AGENT SETTINGS
# =============================================================================

@dataclass
class AgentSettings:
    """
    Machine-local settings for the node agent.

    Example settings file (/etc/fleet/agent.yaml):

        fleet_id: ${FLEET_ID}
        store_url: ${FLEET_STORE_URL:-file:///var/lib/fleet/store}
        identity_file: /etc/fleet/identity.json
        data_dir: /var/lib/fleet/node/db
        work_dir: /var/lib/fleet/agent
        node_binary: /usr/local/bin/node
    """
    fleet_id: str = ""
    store_url: str = ""
    identity_file: str = "/etc/fleet/identity.json"
    data_dir: str = "/var/lib/fleet/node/db"
    work_dir: str = "/var/lib/fleet/agent"
    node_binary: str = "/usr/local/bin/node"
    http_host: str = "127.0.0.1"
    public_host: str = "127.0.0.1"
    http_port: Optional[int] = None        # Falls back to the Specification's port

    @property
    def staging_dir(self) -> Path:
        return Path(self.work_dir) / "staging"

    @property
    def keys_dir(self) -> Path:
        return Path(self.work_dir) / "keys"


def load_agent_settings(path=None, **overrides) -> AgentSettings:
    """
    Load AgentSettings from an optional YAML file, then apply non-None overrides.

    Overrides usually come from CLI flags.
    """
    data = load_yaml(path) if path else {}
    data.update({k: v for k, v in overrides.items() if v is not None})
    return dict_to_dataclass(data, AgentSettings)
