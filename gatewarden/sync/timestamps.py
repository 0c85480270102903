"""The `.last-sync` marker: an ISO-8601 instant of the last complete backup."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

MARKER_NAME = ".last-sync"


def format_timestamp(moment: datetime | None = None) -> str:
    """Render an instant as ISO-8601 with seconds and UTC offset."""
    moment = moment or datetime.now(UTC)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="seconds")


def parse_timestamp(text: str | None) -> datetime | None:
    """Parse a marker value. None if empty or malformed.

    Accepts a trailing "Z" and naive timestamps, which are taken as UTC.
    """
    if not text:
        return None
    value = text.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(value)
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment


def read_marker(path: Path) -> str | None:
    """Raw marker text, or None if the file is missing or unreadable."""
    try:
        return Path(path).read_text(encoding="utf-8").strip()
    except (FileNotFoundError, NotADirectoryError):
        return None
    except OSError as e:
        logger.warning(f"Cannot read sync marker {path}: {e}")
        return None


def write_marker(path: Path, moment: datetime | None = None) -> str:
    """Write a marker and return the value written. Raises OSError."""
    value = format_timestamp(moment)
    Path(path).write_text(value + "\n", encoding="utf-8")
    return value
