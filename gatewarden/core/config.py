"""Configuration for gateway supervision and backups.

Defaults match the sandbox image layout. A YAML file can override any
field; its location comes from --config, $GATEWARDEN_CONFIG, or
./gatewarden.yaml, in that order.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

CONFIG_ENV_VAR = "GATEWARDEN_CONFIG"
DEFAULT_CONFIG_FILE = "gatewarden.yaml"


class ConfigError(Exception):
    """Configuration file is unreadable or invalid."""

    pass


@dataclass
class WardenConfig:
    """Paths, ports and timeouts shared by the supervisor and sync engines."""

    # Local state (ephemeral disk)
    config_dir: Path = Path("/root/.openclaw")
    workspace_dir: Path = Path("/root/clawd")
    skills_dir: Path = Path("/root/clawd/skills")

    # Durable store
    mount_path: Path = Path("/data/moltbot")
    mount_table_path: Path = Path("/proc/mounts")
    bucket_name: str = "moltbot-data"

    # Supervisor bookkeeping: fingerprint marker, launch registry, lock, events, logs
    state_dir: Path = Path("/tmp/gatewarden")

    # Gateway process
    gateway_command: str = "/usr/local/bin/start-moltbot.sh"
    gateway_host: str = "127.0.0.1"
    gateway_port: int = 18789

    # Timeouts (seconds)
    startup_timeout: float = 180.0
    mount_timeout: float = 30.0
    sync_timeout: float = 30.0
    git_timeout: float = 60.0
    lock_timeout: float = 300.0

    # Versioned repository backup
    repo_clone_dir: Path = Path("/root/.gatewarden/backup-repo")
    repo_author_name: str = "gatewarden"
    repo_author_email: str = "gatewarden@localhost"

    # Patterns never mirrored to the durable store
    sync_excludes: list[str] = field(
        default_factory=lambda: ["*.lock", "*.log", "*.tmp", "node_modules"]
    )

    @property
    def fingerprint_file(self) -> Path:
        return self.state_dir / ".env-fingerprint"

    @property
    def launch_registry_file(self) -> Path:
        return self.state_dir / "launches.json"

    @property
    def lock_file(self) -> Path:
        return self.state_dir / ".supervise.lock"

    @property
    def events_db(self) -> Path:
        return self.state_dir / "events.db"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"


_PATH_FIELDS = {f.name for f in fields(WardenConfig) if f.type in ("Path", Path)}


def _coerce(name: str, value: Any) -> Any:
    """Coerce a YAML value to the type of the WardenConfig field."""
    default = getattr(WardenConfig(), name)
    if name in _PATH_FIELDS:
        if not isinstance(value, str):
            raise ConfigError(f"'{name}' must be a path string, got {type(value).__name__}")
        return Path(value).expanduser()
    if isinstance(default, str):
        if not isinstance(value, str):
            raise ConfigError(f"'{name}' must be a string, got {value!r}")
        return value
    if isinstance(default, (int, float)):
        # bool is an int subclass; reject it for numeric fields
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"'{name}' must be a number, got {value!r}")
        return type(default)(value)
    if isinstance(default, list):
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ConfigError(f"'{name}' must be a list of strings")
        return list(value)
    return value


def config_from_dict(data: dict[str, Any]) -> WardenConfig:
    """Build a WardenConfig from a mapping, rejecting unknown keys."""
    known = {f.name for f in fields(WardenConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
    return WardenConfig(**{name: _coerce(name, value) for name, value in data.items()})


def resolve_config_path(explicit: str | Path | None = None) -> Path | None:
    """Find the config file to load, if any."""
    if explicit:
        return Path(explicit)
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    local = Path.cwd() / DEFAULT_CONFIG_FILE
    if local.exists():
        return local
    return None


def load_config(path: str | Path | None = None) -> WardenConfig:
    """Load configuration, falling back to defaults when no file is found."""
    config_path = resolve_config_path(path)
    if config_path is None:
        return WardenConfig()

    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if data is None:
        return WardenConfig()
    if not isinstance(data, dict):
        raise ConfigError(
            f"Expected a mapping in {config_path}, got {type(data).__name__}"
        )
    return config_from_dict(data)
