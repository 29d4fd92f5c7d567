"""Settings for the PXE image manager.

Settings are read once from a JSON file, merged over ``DEFAULT_SETTINGS`` and
frozen into a :class:`Settings` object that is handed to every component.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional

from pxe_image_manager.domain import ImageKind
from pxe_image_manager.logging import LoggerFactory
from pxe_image_manager.storage.exceptions import ConfigurationError


log = LoggerFactory.for_system()

SETTINGS_PATH = Path(
    os.environ.get(
        "PXE_IMAGE_MANAGER_SETTINGS_PATH",
        "/etc/pxe-image-manager/settings.json",
    )
)

REQUIRED_KEYS = (
    "network_interface",
    "pxe_server_ip",
    "tftp_root",
    "nfs_root",
    "http_root",
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_COMMAND_TIMEOUT = 120.0
DEFAULT_MENU_TIMEOUT = 30
DEFAULT_MENU_BACKUP_KEEP = 10

DEFAULT_SETTINGS: dict[str, Any] = {
    "pxe_server_ip": None,
    "network_interface": None,
    "subnet": "10.1.1.0",
    "netmask": "255.255.255.0",
    "tftp_root": "/var/lib/tftpboot",
    "nfs_root": "/srv/nfs",
    "http_root": "/var/www/html/pxe",
    "artifacts_dir": "/var/lib/pxe-image-manager/artifacts",
    "mount_base_dir": "/mnt/pxe-iso",
    "menu_file": None,
    "fstab_path": "/etc/fstab",
    "exports_path": "/etc/exports",
    "lock_dir": "/run/lock/pxe-image-manager",
    "tftp_service": "tftpd-hpa",
    "nfs_service": "nfs-kernel-server",
    "http_service": "nginx",
    "tftp_owner": "tftp",
    "http_owner": "www-data",
    "http_use_symlinks": True,
    "menu_timeout": DEFAULT_MENU_TIMEOUT,
    "menu_backup_keep": DEFAULT_MENU_BACKUP_KEEP,
    "command_timeout": DEFAULT_COMMAND_TIMEOUT,
}

_PATH_KEYS = {
    "tftp_root",
    "nfs_root",
    "http_root",
    "artifacts_dir",
    "mount_base_dir",
    "menu_file",
    "fstab_path",
    "exports_path",
    "lock_dir",
}


@dataclass(frozen=True)
class Settings:
    pxe_server_ip: Optional[str]
    network_interface: Optional[str]
    subnet: str
    netmask: str
    tftp_root: Path
    nfs_root: Path
    http_root: Path
    artifacts_dir: Path
    mount_base_dir: Path
    menu_file: Optional[Path]
    fstab_path: Path
    exports_path: Path
    lock_dir: Path
    tftp_service: str
    nfs_service: str
    http_service: str
    tftp_owner: Optional[str]
    http_owner: Optional[str]
    http_use_symlinks: bool
    menu_timeout: int
    menu_backup_keep: int
    command_timeout: float

    @classmethod
    def from_mapping(cls, values: dict[str, Any]) -> Settings:
        merged = dict(DEFAULT_SETTINGS)
        known = {f.name for f in fields(cls)}
        for key, value in values.items():
            if key in known:
                merged[key] = value
            else:
                log.debug(f"Ignoring unknown setting: {key}")
        for key in _PATH_KEYS:
            if merged[key] not in (None, ""):
                merged[key] = Path(merged[key])
        if merged["menu_file"] in (None, "") and merged["tftp_root"] not in (None, ""):
            merged["menu_file"] = merged["tftp_root"] / "grub" / "grub.cfg"
        try:
            merged["menu_timeout"] = int(merged["menu_timeout"])
            merged["menu_backup_keep"] = int(merged["menu_backup_keep"])
            merged["command_timeout"] = float(merged["command_timeout"])
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(reason=str(exc)) from exc
        merged["http_use_symlinks"] = bool(merged["http_use_symlinks"])
        return cls(**merged)

    def missing_keys(self) -> list[str]:
        return [key for key in REQUIRED_KEYS if getattr(self, key) in (None, "")]

    def validate(self) -> Settings:
        """Fail fast with every missing required key."""
        missing = self.missing_keys()
        if missing:
            raise ConfigurationError(missing)
        return self

    # Derived locations -----------------------------------------------------

    def storage_dir(self, kind: ImageKind) -> Path:
        return self.artifacts_dir / kind.value

    def nfs_dir(self, kind: ImageKind) -> Path:
        return self.nfs_root / kind.value

    def http_dir(self, kind: ImageKind) -> Path:
        return self.http_root / kind.value

    def inspection_dir(self, kind: ImageKind) -> Path:
        return self.mount_base_dir / kind.value

    @property
    def kernels_dir(self) -> Path:
        return self.tftp_root / "kernels"

    @property
    def initrd_dir(self) -> Path:
        return self.tftp_root / "initrd"

    @property
    def services(self) -> list[str]:
        return [self.tftp_service, self.nfs_service, self.http_service]

    def managed_dirs(self) -> dict[str, Path]:
        """Directories that must exist on a working server, keyed by label."""
        dirs: dict[str, Path] = {}
        for kind in ImageKind:
            label = kind.value.upper()
            dirs[f"{label} Storage"] = self.storage_dir(kind)
            dirs[f"{label} NFS Root"] = self.nfs_dir(kind)
            dirs[f"{label} HTTP Root"] = self.http_dir(kind)
        dirs["TFTP Kernels"] = self.kernels_dir
        dirs["TFTP Initrd"] = self.initrd_dir
        return dirs


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings from ``path`` (or SETTINGS_PATH), merged over defaults.

    A missing file yields defaults; the caller still has to ``validate()``.
    """
    settings_path = Path(path) if path is not None else SETTINGS_PATH
    values: dict[str, Any] = {}
    if settings_path.exists():
        try:
            data = json.loads(settings_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(reason=f"{settings_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(reason=f"{settings_path}: expected a JSON object")
        values = data
    else:
        log.debug(f"Settings file {settings_path} not found, using defaults")
    return Settings.from_mapping(values)
