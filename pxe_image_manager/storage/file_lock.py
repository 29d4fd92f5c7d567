"""Advisory file locks around read-modify-write of shared system files.

``/etc/fstab``, ``/etc/exports`` and the boot menu are rewritten as whole
files. Two operators running the manager at the same time would otherwise
race and lose each other's lines.

Usage:
    from pxe_image_manager.storage.file_lock import locked

    with locked(settings.exports_path, settings.lock_dir):
        lines = read_exports()
        ...
        write_exports(lines)
"""

from __future__ import annotations

import fcntl
import re
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from pxe_image_manager.logging import LoggerFactory


log = LoggerFactory.for_system()

# flock is per open file description; this guards re-entry from one process.
_lock = threading.RLock()
_held: dict[Path, int] = {}


def lock_file_for(path: Path, lock_dir: Path) -> Path:
    """Lock file path for a protected file (e.g. /etc/fstab -> etc_fstab.lock)."""
    sanitized = re.sub(r"[^A-Za-z0-9._-]+", "_", str(path).strip("/")) or "root"
    return lock_dir / f"{sanitized}.lock"


@contextmanager
def locked(path: Path, lock_dir: Path) -> Generator[None, None, None]:
    """Hold an exclusive advisory lock for ``path`` while inside the block.

    Blocks until the lock is available. Nested use for the same path in one
    process is allowed.

    Args:
        path: File being protected
        lock_dir: Directory holding the lock files
    """
    lock_path = lock_file_for(Path(path), Path(lock_dir))
    with _lock:
        depth = _held.get(lock_path, 0)
        _held[lock_path] = depth + 1
        try:
            if depth:
                yield
                return
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            with open(lock_path, "a") as handle:
                log.debug(f"Waiting for lock {lock_path}")
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                log.debug(f"Lock acquired for {path}")
                try:
                    yield
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                    log.debug(f"Lock released for {path}")
        finally:
            _held[lock_path] -= 1
            if not _held[lock_path]:
                del _held[lock_path]


def is_locked(path: Path, lock_dir: Path) -> bool:
    """Check whether this process currently holds the lock for ``path``."""
    with _lock:
        return bool(_held.get(lock_file_for(Path(path), Path(lock_dir))))
