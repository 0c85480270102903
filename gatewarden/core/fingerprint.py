"""Environment fingerprinting and gateway environment construction.

The fingerprint records WHICH recognized keys are present, never their
values, so it can be written to disk and logged without leaking secrets.
A changed fingerprint means the running gateway was launched with a stale
credential set and must be restarted.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path

logger = logging.getLogger(__name__)

FINGERPRINT_DELIMITER = ","

# Keys the gateway consumes. Adding a secret means adding it here so that
# setting it restarts the gateway with the new value.
RECOGNIZED_KEYS: frozenset[str] = frozenset(
    {
        "AI_GATEWAY_API_KEY",
        "AI_GATEWAY_BASE_URL",
        "ANTHROPIC_API_KEY",
        "ANTHROPIC_BASE_URL",
        "OPENAI_API_KEY",
        "MOLTBOT_GATEWAY_TOKEN",
        "DEV_MODE",
        "CLAWDBOT_BIND_MODE",
        "TELEGRAM_BOT_TOKEN",
        "TELEGRAM_DM_POLICY",
        "DISCORD_BOT_TOKEN",
        "DISCORD_DM_POLICY",
        "SLACK_BOT_TOKEN",
        "SLACK_APP_TOKEN",
        "CDP_SECRET",
        "WORKER_URL",
        "GITHUB_TOKEN",
        "BRAVE_API_KEY",
        "X_BEARER_TOKEN",
        "X_CONSUMER_KEY",
        "X_CONSUMER_SECRET",
        "X_ACCESS_TOKEN",
        "X_ACCESS_TOKEN_SECRET",
        "OPENROUTER_API_KEY",
        "VIBEIT_API_KEY",
        "PUBLER_API_KEY",
        "PUBLER_WORKSPACE_ID",
    }
)

# Keys passed to the gateway under their own name.
_PASSTHROUGH_KEYS = (
    "CLAWDBOT_BIND_MODE",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_DM_POLICY",
    "DISCORD_BOT_TOKEN",
    "DISCORD_DM_POLICY",
    "SLACK_BOT_TOKEN",
    "SLACK_APP_TOKEN",
    "CDP_SECRET",
    "WORKER_URL",
    "GITHUB_TOKEN",
    "BRAVE_API_KEY",
    "X_BEARER_TOKEN",
    "X_CONSUMER_KEY",
    "X_CONSUMER_SECRET",
    "X_ACCESS_TOKEN",
    "X_ACCESS_TOKEN_SECRET",
    "OPENROUTER_API_KEY",
    "VIBEIT_API_KEY",
    "PUBLER_API_KEY",
    "PUBLER_WORKSPACE_ID",
)

# Keys renamed for the gateway.
_RENAMED_KEYS = {
    "MOLTBOT_GATEWAY_TOKEN": "CLAWDBOT_GATEWAY_TOKEN",
    "DEV_MODE": "CLAWDBOT_DEV_MODE",
}


def present_keys(snapshot: Mapping[str, str | None]) -> list[str]:
    """Recognized keys with a non-empty value, sorted."""
    return sorted(key for key in RECOGNIZED_KEYS if snapshot.get(key))


def compute_fingerprint(snapshot: Mapping[str, str | None]) -> str:
    """Derive the fingerprint of a snapshot: its present recognized keys.

    Pure: only key presence is inspected, and the result depends only on
    the set of present keys, not on values or insertion order.
    """
    return FINGERPRINT_DELIMITER.join(present_keys(snapshot))


def build_gateway_env(snapshot: Mapping[str, str | None]) -> dict[str, str]:
    """Build the environment variables handed to the gateway process.

    AI gateway settings take precedence over direct provider keys, and are
    mapped to the provider the gateway URL points at (an URL ending in
    /openai targets OpenAI, anything else Anthropic).
    """
    env: dict[str, str] = {}

    base_url = (snapshot.get("AI_GATEWAY_BASE_URL") or "").rstrip("/")
    is_openai_gateway = base_url.endswith("/openai")

    gateway_key = snapshot.get("AI_GATEWAY_API_KEY")
    if gateway_key:
        if is_openai_gateway:
            env["OPENAI_API_KEY"] = gateway_key
        else:
            env["ANTHROPIC_API_KEY"] = gateway_key

    for provider_key in ("ANTHROPIC_API_KEY", "OPENAI_API_KEY"):
        value = snapshot.get(provider_key)
        if value and provider_key not in env:
            env[provider_key] = value

    if base_url:
        env["AI_GATEWAY_BASE_URL"] = base_url
        if is_openai_gateway:
            env["OPENAI_BASE_URL"] = base_url
        else:
            env["ANTHROPIC_BASE_URL"] = base_url
    elif snapshot.get("ANTHROPIC_BASE_URL"):
        env["ANTHROPIC_BASE_URL"] = snapshot["ANTHROPIC_BASE_URL"]  # type: ignore[assignment]

    for source, target in _RENAMED_KEYS.items():
        value = snapshot.get(source)
        if value:
            env[target] = value

    for key in _PASSTHROUGH_KEYS:
        value = snapshot.get(key)
        if value:
            env[key] = value

    return env


class FingerprintMarker:
    """One-line file recording the fingerprint a gateway was launched with."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def read(self) -> str | None:
        """Return the stored fingerprint, or None if missing or unreadable."""
        try:
            return self.path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, NotADirectoryError):
            return None
        except OSError as e:
            logger.warning(f"Cannot read fingerprint marker {self.path}: {e}")
            return None

    def write(self, fingerprint: str) -> bool:
        """Store a fingerprint. Returns False instead of raising on failure."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(fingerprint + "\n", encoding="utf-8")
            return True
        except OSError as e:
            logger.warning(f"Failed to write fingerprint marker (non-fatal): {e}")
            return False
