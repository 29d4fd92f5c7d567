"""File helpers shared by the registry, exporter and menu synchronizer."""

from __future__ import annotations

import grp
import os
import pwd
import shutil
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional

from pxe_image_manager.logging import LoggerFactory


log = LoggerFactory.for_system()

BACKUP_MARKER = ".backup."


def atomic_write_text(path: Path, content: str, mode: Optional[int] = None) -> None:
    """Write ``content`` to a temp file next to ``path`` and rename it in place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if mode is None and path.exists():
        mode = path.stat().st_mode & 0o7777
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        if mode is not None:
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def backup_file(path: Path, keep: int = 10) -> Optional[Path]:
    """Copy ``path`` to ``<path>.backup.<timestamp>`` and prune old backups.

    Returns:
        The backup path, or None when ``path`` does not exist
    """
    if not path.exists():
        return None
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    backup = path.with_name(f"{path.name}{BACKUP_MARKER}{stamp}")
    shutil.copy2(path, backup)
    log.debug(f"Backed up {path} to {backup}")
    if keep > 0:
        backups = sorted(path.parent.glob(f"{path.name}{BACKUP_MARKER}*"))
        for stale in backups[:-keep]:
            stale.unlink(missing_ok=True)
    return backup


def chown_best_effort(path: Path, owner: Optional[str], *, follow_symlinks: bool = True) -> bool:
    """Give ``path`` to ``owner`` (user and group of the same name).

    Service accounts may not exist on every host, so failure is a warning.
    """
    if not owner:
        return True
    try:
        uid = pwd.getpwnam(owner).pw_uid
        gid = grp.getgrnam(owner).gr_gid
        if follow_symlinks:
            os.chown(path, uid, gid)
        else:
            os.lchown(path, uid, gid)
    except (KeyError, OSError) as exc:
        log.warning(f"Could not set owner {owner} on {path}: {exc}")
        return False
    return True


def remove_path(path: Path) -> bool:
    """Remove a file, symlink or directory tree. Returns True if something was removed."""
    if path.is_symlink() or path.is_file():
        path.unlink()
        return True
    if path.is_dir():
        shutil.rmtree(path)
        return True
    return False


def sum_tree_bytes(root: Path) -> int:
    if root.is_file():
        return root.stat().st_size
    total = 0
    try:
        paths = root.rglob("*")
    except OSError:
        return 0
    for path in paths:
        try:
            if path.is_file() and not path.is_symlink():
                total += path.stat().st_size
        except OSError:
            continue
    return total


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"
