"""Finding the supervised gateway among the environment's processes."""

from __future__ import annotations

import logging

from gatewarden.sandbox.environment import ExecutionEnvironment, ProcessHandle

logger = logging.getLogger(__name__)

GATEWAY_LAUNCH_TAG = "gateway"

# Substrings identifying a gateway launch.
GATEWAY_PATTERNS: tuple[str, ...] = (
    "start-moltbot.sh",
    "openclaw gateway",
    "clawdbot gateway",  # legacy
)

# CLI invocations that share text with a gateway launch but are short-lived
# commands, e.g. "openclaw devices list". These win over GATEWAY_PATTERNS.
CLI_EXCLUSION_PATTERNS: tuple[str, ...] = (
    "openclaw devices",
    "openclaw --version",
    "clawdbot devices",  # legacy
    "clawdbot --version",  # legacy
)


def is_gateway_command(command: str) -> bool:
    """Classify a command line. Exclusion patterns are checked first."""
    if any(pattern in command for pattern in CLI_EXCLUSION_PATTERNS):
        return False
    return any(pattern in command for pattern in GATEWAY_PATTERNS)


def is_gateway_process(handle: ProcessHandle) -> bool:
    """A tagged launch is classified by its tag alone; untagged processes by command."""
    if handle.launch_tag is not None:
        return handle.launch_tag == GATEWAY_LAUNCH_TAG
    return is_gateway_command(handle.command)


def find_supervised_process(environment: ExecutionEnvironment) -> ProcessHandle | None:
    """Return the live gateway process, or None.

    Never raises: if the environment cannot be enumerated, supervision
    continues as if no gateway exists, which starts a fresh one.
    """
    try:
        processes = environment.list_processes()
    except Exception as e:
        logger.warning(f"Could not list processes: {e}")
        return None

    for handle in processes:
        if not is_gateway_process(handle):
            continue
        try:
            alive = handle.status.is_alive
        except Exception as e:
            logger.debug(f"Cannot read status of pid {handle.pid}: {e}")
            continue
        if alive:
            return handle
    return None
