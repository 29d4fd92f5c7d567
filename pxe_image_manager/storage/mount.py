"""Loop mounts, partition maps and mount table queries for image files.

All commands are run with argument lists through
:mod:`pxe_image_manager.storage.commands`, never through a shell.

Functions:
    - read_mounts(): Parse /proc/mounts into (source, target) pairs
    - is_mounted(): Check whether a directory is a mount point
    - mount_loop(): Mount an image file read-only through a loop device
    - unmount(): Unmount a mount point
    - attach_loop() / map_partitions() / release_loop_device(): losetup + kpartx
    - list_loop_devices(): Loop devices and their backing files
    - mount_for_inspection(): Mount an image for the duration of a block

Example:
    >>> with mount_for_inspection(Path("/srv/debian.img"), ImageKind.IMG, target) as root:
    ...     detect(DetectionContext(root, "debian.img", ImageKind.IMG))
"""

from __future__ import annotations

import os
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from pxe_image_manager.domain import ImageKind, ImgType
from pxe_image_manager.logging import LoggerFactory

from . import commands
from .exceptions import CommandError, LoopDeviceError, MountError, UnmountFailedError
from .probe import ImageProbe, probe_image


log = LoggerFactory.for_mount()

PROC_MOUNTS = Path("/proc/mounts")
DEV_MAPPER = Path("/dev/mapper")

_KPARTX_ADD_RE = re.compile(r"^add map (\S+)")


def _unescape_mount_field(value: str) -> str:
    # /proc/mounts encodes space, tab, newline and backslash as octal
    return re.sub(r"\\([0-7]{3})", lambda m: chr(int(m.group(1), 8)), value)


def read_mounts(proc_mounts: Path = PROC_MOUNTS) -> list[tuple[str, Path]]:
    """Return (source, mount point) pairs from the kernel mount table."""
    try:
        text = proc_mounts.read_text(encoding="utf-8")
    except OSError as exc:
        log.debug(f"Cannot read {proc_mounts}: {exc}")
        return []
    mounts: list[tuple[str, Path]] = []
    for line in text.splitlines():
        fields = line.split()
        if len(fields) < 2:
            continue
        mounts.append(
            (_unescape_mount_field(fields[0]), Path(_unescape_mount_field(fields[1])))
        )
    return mounts


def is_mounted(path: Path) -> bool:
    return os.path.ismount(path)


def mounts_under(base: Path, proc_mounts: Path = PROC_MOUNTS) -> list[Path]:
    """Mount points strictly below ``base``, deepest first."""
    base = Path(base)
    found = [
        target
        for _, target in read_mounts(proc_mounts)
        if target != base and base in target.parents
    ]
    return sorted(found, key=lambda p: len(p.parts), reverse=True)


def mount_loop(
    image_path: Path,
    mount_point: Path,
    *,
    offset: int = 0,
    fs_type: Optional[str] = None,
    timeout: Optional[float] = None,
) -> None:
    """Mount an image file (or block device) read-only.

    Raises:
        MountError: If mount fails or times out
    """
    options = "ro" if str(image_path).startswith("/dev/") else "loop,ro"
    if offset:
        options += f",offset={offset}"
    command = ["mount", "-o", options]
    if fs_type:
        command += ["-t", fs_type]
    command += [str(image_path), str(mount_point)]
    try:
        commands.run_checked_command(command, timeout=timeout)
    except CommandError as exc:
        raise MountError(f"Failed to mount {image_path} on {mount_point}: {exc}") from exc
    log.debug(f"Mounted {image_path} on {mount_point} ({options})")


def unmount(path: Path, *, lazy: bool = False, timeout: Optional[float] = None) -> None:
    """Unmount ``path``.

    Raises:
        UnmountFailedError: If umount fails or times out
    """
    command = ["umount"]
    if lazy:
        command.append("-l")
    command.append(str(path))
    try:
        commands.run_checked_command(command, timeout=timeout)
    except CommandError as exc:
        raise UnmountFailedError(str(path), exc.output or str(exc)) from exc
    log.debug(f"Unmounted {path}")


def attach_loop(image_path: Path, timeout: Optional[float] = None) -> str:
    """Attach ``image_path`` to a free read-only loop device.

    Returns:
        Loop device node (e.g. '/dev/loop3')

    Raises:
        LoopDeviceError: If losetup fails or prints no device
    """
    try:
        output = commands.run_checked_command(
            ["losetup", "--find", "--show", "--read-only", str(image_path)],
            timeout=timeout,
        )
    except CommandError as exc:
        raise LoopDeviceError(str(image_path), exc.output or str(exc)) from exc
    device = output.strip()
    if not device.startswith("/dev/"):
        raise LoopDeviceError(str(image_path), f"unexpected losetup output: {device!r}")
    log.debug(f"Attached {image_path} to {device}")
    return device


def map_partitions(device: str, timeout: Optional[float] = None) -> list[str]:
    """Create read-only device-mapper nodes for the partitions of ``device``.

    Returns:
        Mapper nodes in partition order (e.g. ['/dev/mapper/loop3p1']).
        Empty when kpartx is missing or finds nothing.
    """
    result = commands.run_command(["kpartx", "-a", "-v", "-r", device], timeout=timeout)
    if result.returncode != 0:
        log.warning(
            f"kpartx could not map partitions of {device}: "
            f"{result.stderr.strip() or 'exit ' + str(result.returncode)}"
        )
        return []
    maps: list[str] = []
    for line in result.stdout.splitlines():
        match = _KPARTX_ADD_RE.match(line.strip())
        if match:
            maps.append(str(DEV_MAPPER / match.group(1)))
    return maps


def release_loop_device(device: str, timeout: Optional[float] = None) -> bool:
    """Remove partition maps for ``device`` and detach it.

    Returns:
        True if the loop device was detached
    """
    commands.run_command(["kpartx", "-d", device], timeout=timeout)
    result = commands.run_command(["losetup", "-d", device], timeout=timeout)
    if result.returncode != 0:
        log.warning(f"Failed to detach {device}: {result.stderr.strip()}")
        return False
    log.debug(f"Detached {device}")
    return True


def list_loop_devices(timeout: Optional[float] = None) -> list[tuple[str, Path]]:
    """Return (device, backing file) for every attached loop device."""
    result = commands.run_command(
        ["losetup", "-l", "-n", "-O", "NAME,BACK-FILE"], timeout=timeout
    )
    if result.returncode != 0:
        return []
    devices: list[tuple[str, Path]] = []
    for line in result.stdout.splitlines():
        parts = line.split(None, 1)
        if len(parts) != 2:
            continue
        backing = parts[1].strip()
        if backing.endswith(" (deleted)"):
            backing = backing[: -len(" (deleted)")]
        devices.append((parts[0], Path(backing)))
    return devices


def _mount_partitioned(
    image_path: Path,
    mount_point: Path,
    probe: ImageProbe,
    timeout: Optional[float],
) -> str:
    """Attach, map and mount the first partition; returns the loop device."""
    device = attach_loop(image_path, timeout=timeout)
    try:
        maps = map_partitions(device, timeout=timeout) if probe.partitions else []
        if maps:
            log.debug(f"Mounting first partition {maps[0]} of {image_path.name}")
            mount_loop(Path(maps[0]), mount_point, timeout=timeout)
        else:
            log.info(
                f"No mappable partitions in {image_path.name}, mounting raw loop device"
            )
            mount_loop(Path(device), mount_point, timeout=timeout)
    except MountError:
        release_loop_device(device, timeout=timeout)
        raise
    return device


@contextmanager
def mount_for_inspection(
    image_path: Path,
    kind: ImageKind,
    mount_point: Path,
    *,
    timeout: Optional[float] = None,
) -> Generator[Path, None, None]:
    """Mount an image read-only at ``mount_point`` while inside the block.

    ISO files and bare filesystem images are loop mounted directly. Disk
    images with a partition table go through losetup and kpartx; the first
    mapped partition is mounted, or the raw loop device when nothing maps.
    Loop devices and maps created here are released on failure and on exit.

    Yields:
        The mount point

    Raises:
        MountError: If the image cannot be mounted
    """
    image_path = Path(image_path)
    mount_point = Path(mount_point)
    mount_point.mkdir(parents=True, exist_ok=True)
    if is_mounted(mount_point):
        raise MountError(f"Inspection mount point {mount_point} is already in use")
    remove_dir = not any(mount_point.iterdir())

    device: Optional[str] = None
    try:
        if kind is ImageKind.ISO:
            mount_loop(image_path, mount_point, fs_type="iso9660", timeout=timeout)
        else:
            try:
                probe = probe_image(image_path, timeout=timeout)
            except OSError as exc:
                raise MountError(f"Cannot read {image_path}: {exc}") from exc
            log.debug(
                f"{image_path.name}: {probe.img_type.value} "
                f"{probe.fs_type or probe.table or 'unknown'}"
            )
            if probe.img_type is ImgType.PARTITIONED:
                device = _mount_partitioned(image_path, mount_point, probe, timeout)
            else:
                mount_loop(
                    image_path, mount_point, fs_type=probe.fs_type or None, timeout=timeout
                )
    except MountError:
        if remove_dir:
            mount_point.rmdir()
        raise

    try:
        yield mount_point
    finally:
        try:
            unmount(mount_point, timeout=timeout)
        except UnmountFailedError as exc:
            log.warning(f"{exc}; retrying lazily")
            try:
                unmount(mount_point, lazy=True, timeout=timeout)
            except UnmountFailedError as lazy_exc:
                log.error(str(lazy_exc))
        if device:
            release_loop_device(device, timeout=timeout)
        if remove_dir and not is_mounted(mount_point):
            try:
                mount_point.rmdir()
            except OSError as exc:
                log.debug(f"Keeping {mount_point}: {exc}")
