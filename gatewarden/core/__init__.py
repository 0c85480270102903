"""Core modules: configuration, fingerprinting, event log and result models."""

from gatewarden.core.config import ConfigError, WardenConfig, load_config
from gatewarden.core.models import ErrorCategory, ProcessStatus, RestoreReport, SyncResult
from gatewarden.core.state import Database, Event, EventType

__all__ = [
    "ConfigError",
    "Database",
    "ErrorCategory",
    "Event",
    "EventType",
    "ProcessStatus",
    "RestoreReport",
    "SyncResult",
    "WardenConfig",
    "load_config",
]
