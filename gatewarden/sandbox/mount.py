"""Attaching the durable object store as a local directory.

The store is an S3-compatible bucket mounted with s3fs. Whether the mount
is in place is always decided by reading the live mount table: the mount
command's "already mounted" errors cannot be told apart from real failures.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_BUCKET_NAME = "moltbot-data"


class StorageCredentials(BaseModel):
    """Credentials for the S3-compatible durable store."""

    access_key_id: str
    secret_access_key: str
    account_id: str
    bucket_name: str = DEFAULT_BUCKET_NAME

    @property
    def endpoint_url(self) -> str:
        return f"https://{self.account_id}.r2.cloudflarestorage.com"

    @classmethod
    def from_snapshot(
        cls, snapshot: Mapping[str, str | None], bucket_name: str = DEFAULT_BUCKET_NAME
    ) -> StorageCredentials | None:
        """Extract credentials from an environment snapshot. None if incomplete."""
        access_key_id = snapshot.get("R2_ACCESS_KEY_ID")
        secret_access_key = snapshot.get("R2_SECRET_ACCESS_KEY")
        account_id = snapshot.get("CF_ACCOUNT_ID")
        if not (access_key_id and secret_access_key and account_id):
            return None
        return cls(
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            account_id=account_id,
            bucket_name=snapshot.get("R2_BUCKET_NAME") or bucket_name,
        )


def read_mount_table(mount_table_path: Path) -> list[tuple[str, str, str]]:
    """Parse a /proc/mounts style table into (source, mount point, fstype) rows."""
    rows: list[tuple[str, str, str]] = []
    try:
        text = mount_table_path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning(f"Cannot read mount table {mount_table_path}: {e}")
        return rows
    for line in text.splitlines():
        parts = line.split()
        if len(parts) >= 3:
            # Spaces in mount points are octal-escaped as \040
            rows.append((parts[0], parts[1].replace("\\040", " "), parts[2]))
    return rows


class MountAdapter:
    """Idempotently mount the durable store at a fixed path."""

    def __init__(
        self,
        mount_path: Path,
        mount_table_path: Path = Path("/proc/mounts"),
        timeout: float = 30.0,
        passwd_file: Path | None = None,
    ):
        self.mount_path = Path(mount_path)
        self.mount_table_path = Path(mount_table_path)
        self.timeout = timeout
        # s3fs re-reads the key file while mounted, so it is kept on disk
        self.passwd_file = Path(passwd_file) if passwd_file else Path.home() / ".passwd-s3fs"

    def is_mounted(self) -> bool:
        """Check the live mount table for our mount point."""
        target = os.path.normpath(str(self.mount_path))
        return any(
            os.path.normpath(mount_point) == target
            for _, mount_point, _ in read_mount_table(self.mount_table_path)
        )

    def ensure_mounted(self, credentials: StorageCredentials | None) -> bool:
        """Make sure the store is mounted. Returns True only if confirmed mounted.

        Absent credentials return False without side effects: callers treat
        durable storage as optional.
        """
        if credentials is None:
            logger.info("Durable store not configured, skipping mount")
            return False

        if self.is_mounted():
            logger.debug(f"Durable store already mounted at {self.mount_path}")
            return True

        try:
            self._mount(credentials)
        except Exception as e:
            # May be a race with another mount; the table decides below
            logger.info(f"Mount attempt reported an error: {e}")

        mounted = self.is_mounted()
        if mounted:
            logger.info(f"Durable store mounted at {self.mount_path}")
        else:
            logger.warning(f"Durable store is not mounted at {self.mount_path}")
        return mounted

    def wait_for_mount(self, attempts: int = 5, interval: float = 2.0) -> bool:
        """Poll the mount table until the store shows up."""
        for attempt in range(1, attempts + 1):
            if self.is_mounted():
                return True
            logger.info(f"Durable store not mounted yet, waiting... ({attempt}/{attempts})")
            if attempt < attempts:
                time.sleep(interval)
        return False

    def _mount(self, credentials: StorageCredentials) -> None:
        """Run s3fs. Raises on failure; the result is checked via the mount table."""
        self.mount_path.mkdir(parents=True, exist_ok=True)
        self._write_passwd_file(credentials)

        result = subprocess.run(
            [
                "s3fs",
                credentials.bucket_name,
                str(self.mount_path),
                "-o", f"passwd_file={self.passwd_file}",
                "-o", f"url={credentials.endpoint_url}",
                "-o", "use_path_request_style",
                "-o", "nomixupload",
            ],
            capture_output=True,
            text=True,
            timeout=self.timeout,
        )
        if result.returncode != 0:
            raise RuntimeError(result.stderr.strip() or f"s3fs exited with {result.returncode}")

    def _write_passwd_file(self, credentials: StorageCredentials) -> None:
        """Write the key pair; s3fs refuses files readable by group or others."""
        self.passwd_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.passwd_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(f"{credentials.access_key_id}:{credentials.secret_access_key}\n")
        os.chmod(self.passwd_file, 0o600)
