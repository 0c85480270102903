"""Sandbox module: process launch, discovery and durable store mounting."""

from gatewarden.sandbox.environment import (
    ExecutionEnvironment,
    LocalEnvironment,
    ProcessHandle,
    SandboxError,
)
from gatewarden.sandbox.mount import MountAdapter, StorageCredentials

__all__ = [
    "ExecutionEnvironment",
    "LocalEnvironment",
    "MountAdapter",
    "ProcessHandle",
    "SandboxError",
    "StorageCredentials",
]
