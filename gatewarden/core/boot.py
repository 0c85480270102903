"""Gateway boot sequence, run inside the sandbox as the gateway's entry point.

    1. Bail out if a gateway is already running.
    2. Wait for the durable store mount.
    3. Restore state from the store if it is newer.
    4. Write a minimal config if none exists.
    5. Apply environment overrides to the config.
    6. Remove stale gateway lock files.
    7. Exec the gateway.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import psutil

from gatewarden.core.config import WardenConfig
from gatewarden.core.models import RestoreReport
from gatewarden.core.state import Database
from gatewarden.sandbox.environment import ExecutionEnvironment, ProcessHandle
from gatewarden.sandbox.mount import MountAdapter
from gatewarden.sync.restore import CONFIG_FILE, Reconciler

logger = logging.getLogger(__name__)

GATEWAY_MODE = "local"
DEFAULT_BIND_MODE = "lan"
DEFAULT_DM_POLICY = "pairing"
TRUSTED_PROXIES = ["10.1.0.0"]

# Only the gateway itself, not the wrapper script that runs this sequence
RUNNING_GATEWAY_PATTERNS = ("openclaw gateway", "clawdbot gateway")

STALE_LOCK_FILES = (Path("/tmp/openclaw-gateway.lock"),)

ANTHROPIC_MODELS = [
    {"id": "claude-opus-4-6-20260205", "name": "Claude Opus 4.6", "contextWindow": 200000},
    {"id": "claude-opus-4-5-20251101", "name": "Claude Opus 4.5", "contextWindow": 200000},
    {"id": "claude-sonnet-4-5-20250929", "name": "Claude Sonnet 4.5", "contextWindow": 200000},
    {"id": "claude-haiku-4-5-20251001", "name": "Claude Haiku 4.5", "contextWindow": 200000},
]
ANTHROPIC_ALIASES = {
    "anthropic/claude-opus-4-6-20260205": "Opus 4.6",
    "anthropic/claude-opus-4-5-20251101": "Opus 4.5",
    "anthropic/claude-sonnet-4-5-20250929": "Sonnet 4.5",
    "anthropic/claude-haiku-4-5-20251001": "Haiku 4.5",
}
OPENAI_MODELS = [
    {"id": "gpt-5.2", "name": "GPT-5.2", "contextWindow": 200000},
    {"id": "gpt-5", "name": "GPT-5", "contextWindow": 200000},
    {"id": "gpt-4.5-preview", "name": "GPT-4.5 Preview", "contextWindow": 128000},
]
OPENAI_ALIASES = {
    "openai/gpt-5.2": "GPT-5.2",
    "openai/gpt-5": "GPT-5",
    "openai/gpt-4.5-preview": "GPT-4.5",
}


class BootError(Exception):
    """The boot sequence could not prepare the gateway."""

    pass


@dataclass
class BootResult:
    """What the boot sequence did. `command` is None if a gateway was already running."""

    command: list[str] | None
    restore: RestoreReport | None = None
    mounted: bool = False
    already_running: ProcessHandle | None = None


def _ancestor_pids() -> set[int]:
    pids = {os.getpid()}
    try:
        pids.update(p.pid for p in psutil.Process().parents())
    except psutil.Error as e:
        logger.debug(f"Cannot list parent processes: {e}")
    return pids


def find_running_gateway(environment: ExecutionEnvironment) -> ProcessHandle | None:
    """A live gateway that is not this process or one of its parents."""
    exclude = _ancestor_pids()
    try:
        processes = environment.list_processes()
    except Exception as e:
        logger.warning(f"Could not list processes: {e}")
        return None
    for handle in processes:
        if handle.pid in exclude:
            continue
        if any(pattern in handle.command for pattern in RUNNING_GATEWAY_PATTERNS):
            if handle.status.is_alive:
                return handle
    return None


def _env(snapshot: Mapping[str, str | None], *names: str) -> str | None:
    """First non-empty value among names."""
    for name in names:
        value = snapshot.get(name)
        if value:
            return value
    return None


def default_gateway_config(config: WardenConfig) -> dict[str, Any]:
    return {
        "agents": {"defaults": {"workspace": str(config.workspace_dir)}},
        "gateway": {"port": config.gateway_port, "mode": GATEWAY_MODE},
    }


def ensure_gateway_config(config: WardenConfig) -> Path:
    """Write a minimal config file if none exists. Returns its path."""
    path = config.config_dir / CONFIG_FILE
    if path.exists():
        logger.info(f"Using existing config {path}")
        return path
    logger.info(f"No existing config found, writing defaults to {path}")
    config.config_dir.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(default_gateway_config(config), indent=2) + "\n", encoding="utf-8")
    return path


def _section(parent: dict[str, Any], key: str) -> dict[str, Any]:
    value = parent.get(key)
    if not isinstance(value, dict):
        value = parent[key] = {}
    return value


def _child(parent: dict[str, Any], key: str) -> dict[str, Any]:
    """Read-only lookup of a nested section; non-dict values read as empty."""
    value = parent.get(key)
    return value if isinstance(value, dict) else {}


def _remove_broken_entries(gateway_config: dict[str, Any]) -> None:
    """Drop entries left by older releases that the gateway rejects."""
    providers = _child(_child(gateway_config, "models"), "providers")
    anthropic = providers.get("anthropic")
    models = anthropic.get("models") if isinstance(anthropic, dict) else None
    if isinstance(models, list) and any(
        not m.get("name") for m in models if isinstance(m, dict)
    ):
        logger.info("Removing anthropic provider config with unnamed models")
        del providers["anthropic"]
    if isinstance(providers.get("openai"), dict) and providers["openai"].get("api") == "openai-chat":
        logger.info("Removing openai provider config with unsupported api type")
        del providers["openai"]

    telegram = _child(gateway_config, "channels").get("telegram")
    if isinstance(telegram, dict) and "dm" in telegram:
        # Telegram takes dmPolicy, not a nested dm section
        logger.info("Removing invalid telegram.dm key")
        del telegram["dm"]


def _apply_provider(gateway_config: dict[str, Any], snapshot: Mapping[str, str | None]) -> None:
    defaults = _section(_section(gateway_config, "agents"), "defaults")
    model = _section(defaults, "model")

    base_url = (_env(snapshot, "AI_GATEWAY_BASE_URL", "ANTHROPIC_BASE_URL") or "").rstrip("/")
    if not base_url:
        model["primary"] = "anthropic/claude-opus-4-5"
        return

    providers = _section(_section(gateway_config, "models"), "providers")
    aliases = _section(defaults, "models")
    if base_url.endswith("/openai"):
        logger.info(f"Configuring OpenAI provider with base URL {base_url}")
        providers["openai"] = {"baseUrl": base_url, "api": "openai-responses", "models": OPENAI_MODELS}
        aliases.update({key: {"alias": alias} for key, alias in OPENAI_ALIASES.items()})
        model["primary"] = "openai/gpt-5.2"
        return

    logger.info(f"Configuring Anthropic provider with base URL {base_url}")
    provider: dict[str, Any] = {
        "baseUrl": base_url,
        "api": "anthropic-messages",
        "models": ANTHROPIC_MODELS,
    }
    if snapshot.get("ANTHROPIC_API_KEY"):
        provider["apiKey"] = snapshot["ANTHROPIC_API_KEY"]
    providers["anthropic"] = provider
    aliases.update({key: {"alias": alias} for key, alias in ANTHROPIC_ALIASES.items()})
    model["primary"] = "anthropic/claude-sonnet-4-5-20250929"


def apply_env_overrides(
    gateway_config: dict[str, Any],
    snapshot: Mapping[str, str | None],
    config: WardenConfig,
) -> dict[str, Any]:
    """Update a gateway config in place from the environment and return it."""
    _remove_broken_entries(gateway_config)

    gateway = _section(gateway_config, "gateway")
    gateway["port"] = config.gateway_port
    gateway["mode"] = GATEWAY_MODE
    gateway["trustedProxies"] = list(TRUSTED_PROXIES)

    token = _env(snapshot, "OPENCLAW_GATEWAY_TOKEN", "CLAWDBOT_GATEWAY_TOKEN")
    if token:
        _section(gateway, "auth")["token"] = token

    if _env(snapshot, "OPENCLAW_DEV_MODE", "CLAWDBOT_DEV_MODE") == "true":
        _section(gateway, "controlUi")["allowInsecureAuth"] = True

    channels = _section(gateway_config, "channels")
    if snapshot.get("TELEGRAM_BOT_TOKEN"):
        telegram = _section(channels, "telegram")
        telegram["botToken"] = snapshot["TELEGRAM_BOT_TOKEN"]
        telegram["enabled"] = True
        telegram["dmPolicy"] = snapshot.get("TELEGRAM_DM_POLICY") or DEFAULT_DM_POLICY

    if snapshot.get("DISCORD_BOT_TOKEN"):
        discord = _section(channels, "discord")
        discord["token"] = snapshot["DISCORD_BOT_TOKEN"]
        discord["enabled"] = True
        _section(discord, "dm")["policy"] = snapshot.get("DISCORD_DM_POLICY") or DEFAULT_DM_POLICY

    if snapshot.get("SLACK_BOT_TOKEN") and snapshot.get("SLACK_APP_TOKEN"):
        slack = _section(channels, "slack")
        slack["botToken"] = snapshot["SLACK_BOT_TOKEN"]
        slack["appToken"] = snapshot["SLACK_APP_TOKEN"]
        slack["enabled"] = True

    _apply_provider(gateway_config, snapshot)
    return gateway_config


def update_gateway_config(
    path: Path, snapshot: Mapping[str, str | None], config: WardenConfig
) -> dict[str, Any]:
    """Load the config file, apply overrides and write it back."""
    try:
        gateway_config = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Cannot parse {path} ({e}), starting with an empty config")
        gateway_config = {}
    if not isinstance(gateway_config, dict):
        gateway_config = {}

    apply_env_overrides(gateway_config, snapshot, config)
    path.write_text(json.dumps(gateway_config, indent=2) + "\n", encoding="utf-8")
    logger.info(f"Configuration updated at {path}")
    return gateway_config


def remove_stale_locks(config: WardenConfig, lock_files: tuple[Path, ...] = STALE_LOCK_FILES) -> list[Path]:
    """Delete lock files a killed gateway may have left behind."""
    removed = []
    for path in (*lock_files, config.config_dir / "gateway.lock"):
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning(f"Cannot remove stale lock {path}: {e}")
            continue
        logger.info(f"Removed stale lock {path}")
        removed.append(path)
    return removed


def build_gateway_command(config: WardenConfig, snapshot: Mapping[str, str | None]) -> list[str]:
    command = [
        "openclaw",
        "gateway",
        "--port", str(config.gateway_port),
        "--verbose",
        "--allow-unconfigured",
        "--bind", _env(snapshot, "CLAWDBOT_BIND_MODE") or DEFAULT_BIND_MODE,
    ]
    token = _env(snapshot, "OPENCLAW_GATEWAY_TOKEN", "CLAWDBOT_GATEWAY_TOKEN")
    if token:
        command += ["--token", token]
    return command


def redact_command(command: list[str]) -> str:
    """Command line for display, with the token value hidden."""
    shown = list(command)
    for i, arg in enumerate(shown[:-1]):
        if arg == "--token":
            shown[i + 1] = "***"
    return " ".join(shown)


def prepare(
    config: WardenConfig,
    snapshot: Mapping[str, str | None],
    environment: ExecutionEnvironment,
    mount_adapter: MountAdapter,
    db: Database | None = None,
    lock_files: tuple[Path, ...] = STALE_LOCK_FILES,
) -> BootResult:
    """Run boot steps 1-6 and return the gateway command to exec."""
    running = find_running_gateway(environment)
    if running is not None:
        logger.info(f"Gateway already running (pid {running.pid}), nothing to do")
        return BootResult(command=None, already_running=running)

    logger.info(f"Waiting for durable store at {config.mount_path}")
    mounted = mount_adapter.wait_for_mount()
    if not mounted:
        logger.warning("Durable store not mounted, starting without restore")

    report = Reconciler(config, db=db).restore() if mounted else None

    try:
        path = ensure_gateway_config(config)
        update_gateway_config(path, snapshot, config)
    except OSError as e:
        raise BootError(f"Cannot write gateway config: {e}") from e

    remove_stale_locks(config, lock_files)
    return BootResult(
        command=build_gateway_command(config, snapshot),
        restore=report,
        mounted=mounted,
    )


def exec_gateway(command: list[str]) -> None:
    """Replace the current process with the gateway. Does not return."""
    logger.info(f"Starting gateway: {redact_command(command)}")
    os.execvp(command[0], command)
