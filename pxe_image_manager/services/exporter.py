"""NFS, fstab and HTTP access paths for registered images.

Every image gets three independent access paths:

- a persistent read-only loop mount listed in ``/etc/fstab``
- an NFS export of that mount scoped to the PXE subnet
- an HTTP-served link (or copy) pointing at the mount

Registration and removal are idempotent: re-running either never duplicates
a line, and steps that are already absent are skipped.
"""

from __future__ import annotations

import os
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from pxe_image_manager.config.settings import Settings
from pxe_image_manager.domain import BootImage, ImageKind
from pxe_image_manager.logging import LoggerFactory
from pxe_image_manager.storage import commands, mount
from pxe_image_manager.storage.exceptions import UnmountFailedError
from pxe_image_manager.storage.file_lock import locked
from pxe_image_manager.storage.file_utils import (
    atomic_write_text,
    chown_best_effort,
    remove_path,
)


log = LoggerFactory.for_export()

FSTAB_KEY_FIELD = 1
EXPORTS_KEY_FIELD = 0
EXPORT_OPTIONS = "ro,sync,no_subtree_check,no_root_squash"


def escape_fstab_field(value: str) -> str:
    return (
        value.replace("\\", "\\134")
        .replace(" ", "\\040")
        .replace("\t", "\\011")
        .replace("\n", "\\012")
    )


def unescape_fstab_field(value: str) -> str:
    for code, char in (("\\040", " "), ("\\011", "\t"), ("\\012", "\n"), ("\\134", "\\")):
        value = value.replace(code, char)
    return value


class ManagedConfigFile:
    """Line-oriented view of a whitespace-separated config file.

    Managed lines are matched by the exact value of one field (the mount
    point in fstab, the exported path in exports). Comments and lines for
    other paths pass through untouched.
    """

    def __init__(
        self,
        path: Path,
        key_field: int,
        lines: Optional[list[str]] = None,
        trailing_newline: bool = True,
    ):
        self.path = Path(path)
        self.key_field = key_field
        self.lines = list(lines or [])
        self.trailing_newline = trailing_newline
        self.changed = False

    @classmethod
    def load(cls, path: Path, key_field: int) -> ManagedConfigFile:
        path = Path(path)
        if not path.exists():
            return cls(path, key_field)
        text = path.read_text(encoding="utf-8")
        return cls(
            path,
            key_field,
            lines=text.splitlines(),
            trailing_newline=(not text) or text.endswith("\n"),
        )

    def key_of(self, line: str) -> Optional[str]:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            return None
        fields = stripped.split()
        if len(fields) <= self.key_field:
            return None
        return unescape_fstab_field(fields[self.key_field])

    def paths(self) -> list[str]:
        return [key for line in self.lines if (key := self.key_of(line)) is not None]

    def has(self, path: str) -> bool:
        return str(path) in self.paths()

    def remove(self, path: str) -> int:
        """Drop every line keyed on ``path``. Returns the number removed."""
        target = str(path)
        kept = [line for line in self.lines if self.key_of(line) != target]
        removed = len(self.lines) - len(kept)
        if removed:
            self.lines = kept
            self.changed = True
        return removed

    def replace(self, path: str, line: str) -> None:
        """Make ``line`` the single entry for ``path``."""
        existing = [entry for entry in self.lines if self.key_of(entry) == str(path)]
        if existing == [line]:
            return
        self.remove(path)
        self.lines.append(line)
        self.changed = True

    def serialize(self) -> str:
        if not self.lines:
            return ""
        text = "\n".join(self.lines)
        if self.trailing_newline:
            text += "\n"
        return text

    def save(self) -> None:
        atomic_write_text(self.path, self.serialize())


@contextmanager
def edit_config(
    path: Path, key_field: int, lock_dir: Path
) -> Generator[ManagedConfigFile, None, None]:
    """Read-modify-write ``path`` under its file lock; saves only if changed."""
    with locked(path, lock_dir):
        config = ManagedConfigFile.load(path, key_field)
        yield config
        if config.changed:
            config.save()
            log.debug(f"Updated {path}")


class Exporter:
    def __init__(self, settings: Settings):
        self.settings = settings

    # Paths -----------------------------------------------------------------

    def mount_dir(self, image: BootImage) -> Path:
        return self.settings.nfs_dir(image.kind) / image.name

    def http_link(self, image: BootImage) -> Path:
        return self.settings.http_dir(image.kind) / image.name

    def fstab_line(self, image: BootImage) -> str:
        if image.kind is ImageKind.ISO:
            fs_type = "iso9660"
        else:
            fs_type = image.fs_type or "auto"
        options = "loop,ro,auto"
        if image.partition_offset:
            options += f",offset={image.partition_offset}"
        return (
            f"{escape_fstab_field(str(image.source_path))} "
            f"{escape_fstab_field(str(self.mount_dir(image)))} "
            f"{fs_type} {options} 0 0"
        )

    def exports_line(self, image: BootImage) -> str:
        return (
            f"{self.mount_dir(image)} "
            f"{self.settings.subnet}/{self.settings.netmask}({EXPORT_OPTIONS})"
        )

    def _edit_fstab(self):
        return edit_config(self.settings.fstab_path, FSTAB_KEY_FIELD, self.settings.lock_dir)

    def _edit_exports(self):
        return edit_config(
            self.settings.exports_path, EXPORTS_KEY_FIELD, self.settings.lock_dir
        )

    # NFS -------------------------------------------------------------------

    def register_nfs(self, image: BootImage) -> Path:
        """Mount the image persistently and export it over NFS.

        The fstab and exports lines are written before mounting, so a failed
        mount leaves them in place for the caller to undo or for validate to
        report.

        Raises:
            MountError: If the image cannot be mounted
        """
        mount_dir = self.mount_dir(image)
        mount_dir.mkdir(parents=True, exist_ok=True)

        with self._edit_fstab() as fstab:
            fstab.replace(str(mount_dir), self.fstab_line(image))
        with self._edit_exports() as exports:
            exports.replace(str(mount_dir), self.exports_line(image))

        if mount.is_mounted(mount_dir):
            log.debug(f"{mount_dir} already mounted")
        else:
            fs_type = "iso9660" if image.kind is ImageKind.ISO else (image.fs_type or None)
            mount.mount_loop(
                image.source_path,
                mount_dir,
                offset=image.partition_offset,
                fs_type=fs_type,
                timeout=self.settings.command_timeout,
            )
            log.info(f"Mounted {image.display_name} at {mount_dir}")

        # Exports are only reloaded once the mount is in place
        self.reload_exports()
        return mount_dir

    def unregister_nfs(self, image: BootImage) -> bool:
        """Undo :meth:`register_nfs`. Returns True if anything was removed."""
        mount_dir = self.mount_dir(image)
        removed = False
        if mount.is_mounted(mount_dir):
            try:
                mount.unmount(mount_dir, timeout=self.settings.command_timeout)
                removed = True
            except UnmountFailedError as exc:
                log.warning(f"{exc}; keeping {mount_dir}")

        with self._edit_fstab() as fstab:
            removed = bool(fstab.remove(str(mount_dir))) or removed
        with self._edit_exports() as exports:
            exports_removed = bool(exports.remove(str(mount_dir)))
        if exports_removed:
            self.reload_exports()
            removed = True

        if mount_dir.is_dir() and not mount.is_mounted(mount_dir):
            try:
                mount_dir.rmdir()
                removed = True
            except OSError as exc:
                log.warning(f"Could not remove {mount_dir}: {exc}")
        return removed

    def reload_exports(self) -> bool:
        result = commands.run_command(
            ["exportfs", "-ra"], timeout=self.settings.command_timeout
        )
        if result.returncode != 0:
            log.warning(
                f"Failed to reload NFS exports: "
                f"{result.stderr.strip() or 'exit ' + str(result.returncode)}"
            )
            return False
        log.debug("NFS exports reloaded")
        return True

    def fstab_paths(self) -> list[str]:
        with locked(self.settings.fstab_path, self.settings.lock_dir):
            return ManagedConfigFile.load(self.settings.fstab_path, FSTAB_KEY_FIELD).paths()

    def exported_paths(self) -> list[str]:
        with locked(self.settings.exports_path, self.settings.lock_dir):
            return ManagedConfigFile.load(
                self.settings.exports_path, EXPORTS_KEY_FIELD
            ).paths()

    def remove_fstab_entry(self, path: str) -> int:
        with self._edit_fstab() as fstab:
            return fstab.remove(str(path))

    def remove_export_entry(self, path: str) -> int:
        with self._edit_exports() as exports:
            return exports.remove(str(path))

    # HTTP ------------------------------------------------------------------

    def register_http(self, image: BootImage) -> Path:
        link = self.http_link(image)
        target = self.mount_dir(image)
        link.parent.mkdir(parents=True, exist_ok=True)

        if self.settings.http_use_symlinks:
            if link.is_symlink() and Path(os.readlink(link)) == target:
                log.debug(f"HTTP link {link} already in place")
                return link
            remove_path(link)
            link.symlink_to(target, target_is_directory=True)
            chown_best_effort(link, self.settings.http_owner, follow_symlinks=False)
        else:
            remove_path(link)
            shutil.copytree(target, link, symlinks=True)
            chown_best_effort(link, self.settings.http_owner)
        log.info(f"HTTP access at {link}")
        return link

    def unregister_http(self, image: BootImage) -> bool:
        return remove_path(self.http_link(image))

    def http_registered(self, image: BootImage) -> bool:
        link = self.http_link(image)
        return link.is_symlink() or link.exists()
