"""
Pytest configuration and shared fixtures for pxe-image-manager tests.

External commands are never executed: ``FakeSystem`` stands in for
``pxe_image_manager.storage.commands`` and keeps track of what is mounted.
"""

import struct
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Tuple

import pytest

from pxe_image_manager.config.settings import Settings
from pxe_image_manager.storage.exceptions import CommandError


ISO9660_OFFSET = 0x8001
EXT_MAGIC_OFFSET = 1080

FSTAB_TEXT = "UUID=1234-abcd / ext4 defaults 0 1\n"
EXPORTS_TEXT = "# /etc/exports: NFS file systems being exported\n"

UBUNTU_SERVER_INFO = "Ubuntu 24.04 LTS Server amd64"


# ==============================================================================
# Image File Helpers
# ==============================================================================


def write_iso(path: Path) -> Path:
    """Write a minimal file carrying the ISO 9660 volume descriptor signature."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = bytearray(ISO9660_OFFSET + 2048)
    data[ISO9660_OFFSET : ISO9660_OFFSET + 5] = b"CD001"
    path.write_bytes(bytes(data))
    return path


def write_ext4_img(path: Path) -> Path:
    """Write a file with an ext2/3/4 superblock magic."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = bytearray(4096)
    data[EXT_MAGIC_OFFSET : EXT_MAGIC_OFFSET + 2] = b"\x53\xef"
    path.write_bytes(bytes(data))
    return path


def write_empty_mbr_img(path: Path) -> Path:
    """Write a disk image with an MBR signature but no partition entries."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = bytearray(4096)
    data[510:512] = b"\x55\xaa"
    path.write_bytes(bytes(data))
    return path


def mbr_entry(type_byte: int, start: int, sectors: int) -> bytes:
    entry = bytearray(16)
    entry[4] = type_byte
    struct.pack_into("<II", entry, 8, start, sectors)
    return bytes(entry)


def write_mbr_disk(path: Path, entries: List[bytes], fs_at=None) -> Path:
    """Write a 4 MiB disk image with an MBR and an optional ext superblock at a sector."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = bytearray(4 * 1024 * 1024)
    for index, entry in enumerate(entries):
        data[446 + index * 16 : 446 + (index + 1) * 16] = entry
    data[510:512] = b"\x55\xaa"
    if fs_at is not None:
        offset = fs_at * 512 + EXT_MAGIC_OFFSET
        data[offset : offset + 2] = b"\x53\xef"
    path.write_bytes(bytes(data))
    return path


def write_tree(root: Path, files: Dict[str, str]) -> Path:
    """Create files under ``root`` from a {relative path: content} mapping."""
    for relative, content in files.items():
        target = root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
    return root


def ubuntu_server_tree(root: Path) -> Path:
    return write_tree(
        root,
        {
            ".disk/info": UBUNTU_SERVER_INFO,
            "casper/vmlinuz": "kernel",
            "casper/initrd": "initrd",
        },
    )


# ==============================================================================
# Fake System
# ==============================================================================


class FakeSystem:
    """Records commands and simulates mount/umount and service state."""

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.mounted: set = set()
        self.failures: Dict[Tuple[str, ...], Tuple[int, str]] = {}
        self.outputs: Dict[Tuple[str, ...], str] = {}
        self.services_active = True

    def _lookup(self, table, command):
        for size in (2, 1):
            key = tuple(command[:size])
            if key in table:
                return table[key]
        return None

    def run(self, command, *, timeout=None, input_text=None):
        command = list(command)
        self.calls.append(command)
        failure = self._lookup(self.failures, command)
        if failure is not None:
            returncode, stderr = failure
            return subprocess.CompletedProcess(command, returncode, stdout="", stderr=stderr)
        name = command[0]
        if name == "mount":
            self.mounted.add(Path(command[-1]))
        elif name == "umount":
            self.mounted.discard(Path(command[-1]))
        elif name == "systemctl" and command[1] == "is-active":
            returncode = 0 if self.services_active else 3
            return subprocess.CompletedProcess(command, returncode, stdout="", stderr="")
        stdout = self._lookup(self.outputs, command) or ""
        return subprocess.CompletedProcess(command, 0, stdout=stdout, stderr="")

    def run_checked(self, command, *, timeout=None, input_text=None):
        result = self.run(command, timeout=timeout, input_text=input_text)
        if result.returncode != 0:
            raise CommandError(command, result.returncode, result.stderr)
        return result.stdout

    def is_mounted(self, path) -> bool:
        return Path(path) in self.mounted

    def read_mounts(self, proc_mounts=None):
        return [("/dev/loop0", path) for path in sorted(self.mounted)]

    def commands_named(self, name: str) -> List[List[str]]:
        return [call for call in self.calls if call[0] == name]


@pytest.fixture
def fake_system(mocker) -> FakeSystem:
    """Patch command execution and mount queries with a FakeSystem."""
    fake = FakeSystem()
    mocker.patch(
        "pxe_image_manager.storage.commands.run_command", side_effect=fake.run
    )
    mocker.patch(
        "pxe_image_manager.storage.commands.run_checked_command",
        side_effect=fake.run_checked,
    )
    mocker.patch(
        "pxe_image_manager.storage.commands.command_available", return_value=False
    )
    mocker.patch(
        "pxe_image_manager.storage.mount.is_mounted", side_effect=fake.is_mounted
    )
    mocker.patch(
        "pxe_image_manager.storage.mount.read_mounts", side_effect=fake.read_mounts
    )
    return fake


# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture
def settings_values(tmp_path) -> dict:
    """Settings mapping pointing every location into tmp_path."""
    etc = tmp_path / "etc"
    etc.mkdir()
    (etc / "fstab").write_text(FSTAB_TEXT)
    (etc / "exports").write_text(EXPORTS_TEXT)
    return {
        "pxe_server_ip": "10.1.1.1",
        "network_interface": "eth1",
        "subnet": "10.1.1.0",
        "netmask": "255.255.255.0",
        "tftp_root": str(tmp_path / "tftp"),
        "nfs_root": str(tmp_path / "nfs"),
        "http_root": str(tmp_path / "http"),
        "artifacts_dir": str(tmp_path / "artifacts"),
        "mount_base_dir": str(tmp_path / "inspect"),
        "fstab_path": str(etc / "fstab"),
        "exports_path": str(etc / "exports"),
        "lock_dir": str(tmp_path / "lock"),
        "tftp_owner": None,
        "http_owner": None,
    }


@pytest.fixture
def settings(settings_values) -> Settings:
    return Settings.from_mapping(settings_values).validate()


# ==============================================================================
# Inspection Fixtures
# ==============================================================================


@pytest.fixture
def image_root(tmp_path) -> Path:
    """Directory standing in for a mounted image; tests fill it."""
    root = tmp_path / "image-root"
    root.mkdir()
    return root


@pytest.fixture
def fake_inspect(image_root):
    """Inspection callable that yields ``image_root`` instead of mounting."""
    calls = []

    @contextmanager
    def inspect(image_path, kind, mount_point):
        calls.append((Path(image_path), kind, Path(mount_point)))
        yield image_root

    inspect.calls = calls
    return inspect


@pytest.fixture
def source_dir(tmp_path) -> Path:
    """Where images are picked up from before registration."""
    path = tmp_path / "downloads"
    path.mkdir()
    return path
