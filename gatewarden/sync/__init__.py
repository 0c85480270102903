"""Backup and restore of gateway state."""

from gatewarden.sync.repository import RepositoryCredentials, RepositorySync
from gatewarden.sync.restore import Reconciler
from gatewarden.sync.store import StoreSync

__all__ = ["Reconciler", "RepositoryCredentials", "RepositorySync", "StoreSync"]
