"""Directory mirroring between local disk and the mounted durable store.

mirror_tree() makes the destination an exact copy of the source (files
missing from the source are deleted); merge_tree() only adds and
overwrites. Files with the same size and exact mtime, or the same
contents, are skipped, which keeps repeat transfers over the network mount
cheap.

Exclude patterns are shell globs. A pattern starting with "/" is anchored
to the tree root ("/skills" excludes only the top-level skills directory);
other patterns match an entry's name at any depth. Excluded entries are
neither copied nor deleted.
"""

from __future__ import annotations

import filecmp
import fnmatch
import logging
import os
import shutil
import time
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class TransferTimeout(Exception):
    """A transfer exceeded its deadline."""

    pass


class Deadline:
    """Point in time after which a transfer is abandoned."""

    def __init__(self, seconds: float | None):
        self.seconds = seconds
        self._expires = None if seconds is None else time.monotonic() + seconds

    @property
    def expired(self) -> bool:
        return self._expires is not None and time.monotonic() >= self._expires

    def check(self) -> None:
        if self.expired:
            raise TransferTimeout(f"Transfer exceeded {self.seconds}s")


@dataclass
class MirrorStats:
    """Counts of what a transfer did."""

    copied: int = 0
    skipped: int = 0
    deleted: int = 0

    def __add__(self, other: MirrorStats) -> MirrorStats:
        return MirrorStats(
            copied=self.copied + other.copied,
            skipped=self.skipped + other.skipped,
            deleted=self.deleted + other.deleted,
        )


def is_excluded(rel_path: str, patterns: Iterable[str]) -> bool:
    """Check a POSIX-style path relative to the tree root against exclude patterns."""
    name = rel_path.rsplit("/", 1)[-1]
    for pattern in patterns:
        if pattern.startswith("/"):
            if fnmatch.fnmatchcase(rel_path, pattern[1:]):
                return True
        elif fnmatch.fnmatchcase(name, pattern):
            return True
    return False


def _same_file(src: Path, dst: Path) -> bool:
    try:
        s, d = src.stat(), dst.lstat()
    except OSError:
        return False
    if s.st_size != d.st_size:
        return False
    if s.st_mtime_ns == d.st_mtime_ns:
        return True
    # Network mounts may round mtimes, so fall back to contents
    try:
        return filecmp.cmp(src, dst, shallow=False)
    except OSError:
        return False


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _copy_entry(src: Path, dst: Path) -> bool:
    """Copy one file or symlink. Returns False if dst was already up to date."""
    if src.is_symlink():
        target = os.readlink(src)
        if dst.is_symlink() and os.readlink(dst) == target:
            return False
        if dst.exists() or dst.is_symlink():
            _remove(dst)
        os.symlink(target, dst)
        return True

    if dst.is_dir() and not dst.is_symlink():
        shutil.rmtree(dst)
    elif dst.is_symlink():
        dst.unlink()
    elif _same_file(src, dst):
        return False
    shutil.copy2(src, dst)
    return True


def _walk(
    source: Path,
    destination: Path,
    excludes: list[str],
    deadline: Deadline,
    stats: MirrorStats,
) -> set[str]:
    """Copy source into destination; return relative paths of everything copied."""
    seen: set[str] = set()
    for dirpath, dirnames, filenames in os.walk(source):
        deadline.check()
        current = Path(dirpath)
        rel_dir = current.relative_to(source).as_posix()
        rel_dir = "" if rel_dir == "." else rel_dir
        target_dir = destination / rel_dir if rel_dir else destination

        if target_dir.is_symlink() or (target_dir.exists() and not target_dir.is_dir()):
            target_dir.unlink()
        target_dir.mkdir(parents=True, exist_ok=True)

        kept_dirs = []
        for name in sorted(dirnames):
            rel = f"{rel_dir}/{name}" if rel_dir else name
            if is_excluded(rel, excludes):
                continue
            if (current / name).is_symlink():
                # os.walk does not descend into symlinked directories
                filenames.append(name)
                continue
            kept_dirs.append(name)
            seen.add(rel)
        dirnames[:] = kept_dirs

        for name in sorted(filenames):
            rel = f"{rel_dir}/{name}" if rel_dir else name
            if is_excluded(rel, excludes):
                continue
            deadline.check()
            seen.add(rel)
            if _copy_entry(current / name, target_dir / name):
                stats.copied += 1
            else:
                stats.skipped += 1
    return seen


def _prune(
    destination: Path,
    keep: set[str],
    excludes: list[str],
    deadline: Deadline,
    stats: MirrorStats,
) -> None:
    for dirpath, dirnames, filenames in os.walk(destination):
        deadline.check()
        current = Path(dirpath)
        rel_dir = current.relative_to(destination).as_posix()
        rel_dir = "" if rel_dir == "." else rel_dir

        kept_dirs = []
        for name in dirnames:
            rel = f"{rel_dir}/{name}" if rel_dir else name
            if is_excluded(rel, excludes):
                continue
            if rel not in keep:
                _remove(current / name)
                stats.deleted += 1
                continue
            kept_dirs.append(name)
        dirnames[:] = kept_dirs

        for name in filenames:
            rel = f"{rel_dir}/{name}" if rel_dir else name
            if rel not in keep and not is_excluded(rel, excludes):
                (current / name).unlink()
                stats.deleted += 1


def mirror_tree(
    source: Path,
    destination: Path,
    excludes: Iterable[str] = (),
    deadline: Deadline | None = None,
    delete: bool = True,
) -> MirrorStats:
    """Copy source over destination; with delete, remove what source lacks.

    Raises:
        FileNotFoundError: source is not a directory.
        TransferTimeout: the deadline passed mid-transfer.
        OSError: a file could not be copied or removed.
    """
    source = Path(source)
    destination = Path(destination)
    if not source.is_dir():
        raise FileNotFoundError(f"Source directory does not exist: {source}")

    patterns = list(excludes)
    deadline = deadline or Deadline(None)
    stats = MirrorStats()

    seen = _walk(source, destination, patterns, deadline, stats)
    if delete:
        _prune(destination, seen, patterns, deadline, stats)

    logger.debug(
        f"{'Mirrored' if delete else 'Merged'} {source} -> {destination}: "
        f"{stats.copied} copied, {stats.skipped} unchanged, {stats.deleted} deleted"
    )
    return stats


def merge_tree(
    source: Path,
    destination: Path,
    excludes: Iterable[str] = (),
    deadline: Deadline | None = None,
) -> MirrorStats:
    """Copy source over destination, keeping destination-only files."""
    return mirror_tree(source, destination, excludes, deadline, delete=False)


def is_populated(path: Path) -> bool:
    """True if path is a directory with at least one entry."""
    try:
        return Path(path).is_dir() and any(Path(path).iterdir())
    except OSError:
        return False
