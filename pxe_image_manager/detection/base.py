"""Shared pieces for distribution detectors.

A detector looks at a mounted image root and either recognises it, returning
a :class:`DetectionResult`, or returns None so the next detector is tried.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional

from pxe_image_manager.domain import DetectionResult, ImageKind
from pxe_image_manager.logging import LoggerFactory


log = LoggerFactory.for_detect()

# Placeholders substituted when the menu entry is rendered
ISO_NAME = "##ISO_NAME##"
PXE_SERVER_IP = "##PXE_SERVER_IP##"
NFS_ROOT = "##NFS_ROOT##"

UBUNTU_VERSION_RE = re.compile(r"\d+\.\d+(?:\.\d+)?")
GENERIC_VERSION_RE = re.compile(r"\d+(?:\.\d+)*")
ARCH_RE = re.compile(r"(amd64|x86_64|i386|i686|arm64|aarch64)")

_ARCH_ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "i386": "i386",
    "i686": "i386",
    "aarch64": "arm64",
    "arm64": "arm64",
}

# Symlink hops followed inside an image before giving up
MAX_SYMLINK_DEPTH = 40


@dataclass(frozen=True)
class DetectionContext:
    """What a detector gets to look at."""

    root: Path  # Mounted image root
    filename: str  # Original file name, e.g. ubuntu-24.04-server.iso
    kind: ImageKind

    def read_text(self, relative: str) -> Optional[str]:
        """Read a text file inside the image, or None if it is not there."""
        path = resolve_in_root(self.root, relative)
        if path is None or not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            log.debug(f"Cannot read {relative} in {self.filename}: {exc}")
            return None

    def is_file(self, relative: str) -> bool:
        path = resolve_in_root(self.root, relative)
        return path is not None and path.is_file()

    def is_dir(self, relative: str) -> bool:
        path = resolve_in_root(self.root, relative)
        return path is not None and path.is_dir()

    def listdir(self, relative: str) -> list[str]:
        path = resolve_in_root(self.root, relative)
        if path is None or not path.is_dir():
            return []
        try:
            return sorted(os.listdir(path))
        except OSError:
            return []


class Detector:
    """Base class for one distribution family."""

    name = "base"

    def detect(self, context: DetectionContext) -> Optional[DetectionResult]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


def resolve_in_root(root: Path, relative: str) -> Optional[Path]:
    """Resolve ``relative`` inside ``root`` treating ``root`` as ``/``.

    Absolute symlink targets point into the image, not at the host, and
    ``..`` never climbs above the image root. Returns None for dangling
    links and loops.
    """
    root = Path(root)
    pending = list(PurePosixPath(relative.lstrip("/")).parts)
    resolved: list[str] = []
    hops = 0
    while pending:
        part = pending.pop(0)
        if part in ("", "."):
            continue
        if part == "..":
            if resolved:
                resolved.pop()
            continue
        candidate = root.joinpath(*resolved, part)
        if candidate.is_symlink():
            hops += 1
            if hops > MAX_SYMLINK_DEPTH:
                return None
            try:
                target = os.readlink(candidate)
            except OSError:
                return None
            target_parts = list(PurePosixPath(target).parts)
            if target.startswith("/"):
                resolved = []
                target_parts = target_parts[1:]
            pending = target_parts + pending
            continue
        resolved.append(part)
    path = root.joinpath(*resolved)
    if not path.exists():
        return None
    return path


def find_boot_pair(
    context: DetectionContext, candidates: Iterable[tuple[str, str]]
) -> tuple[str, str]:
    """Return the first (kernel, initrd) pair whose files both exist.

    Returns ('', '') when no pair is complete.
    """
    for kernel, initrd in candidates:
        if context.is_file(kernel) and context.is_file(initrd):
            return kernel, initrd
        log.trace(f"{context.filename}: no boot pair at {kernel} + {initrd}")
    return "", ""


def _version_key(version: str) -> list[tuple[int, int, str]]:
    # Numeric pieces sort above text pieces (6.1.0-18 > 6.1.0-rc1)
    return [
        (1, int(piece), "") if piece.isdigit() else (0, 0, piece)
        for piece in re.split(r"[.\-+_]", version)
    ]


def find_versioned_boot_pair(context: DetectionContext, directory: str = "boot") -> tuple[str, str]:
    """Pick the newest ``vmlinuz-<ver>`` that has a matching initrd/initramfs."""
    entries = context.listdir(directory)
    versions = [e[len("vmlinuz-") :] for e in entries if e.startswith("vmlinuz-")]
    for version in sorted(versions, key=_version_key, reverse=True):
        kernel = f"{directory}/vmlinuz-{version}"
        kernel_pair = find_boot_pair(
            context,
            [
                (kernel, f"{directory}/initrd.img-{version}"),
                (kernel, f"{directory}/initramfs-{version}.img"),
            ],
        )
        if kernel_pair[0]:
            return kernel_pair
    return "", ""


def normalize_arch(arch: Optional[str]) -> str:
    """Map architecture spellings onto x86_64, i386 or arm64 (default x86_64)."""
    if not arch:
        return "x86_64"
    return _ARCH_ALIASES.get(arch.strip().lower(), "x86_64")


def search_arch(text: str) -> str:
    match = ARCH_RE.search(text)
    return normalize_arch(match.group(1) if match else None)


def search_version(text: str, pattern: re.Pattern = GENERIC_VERSION_RE) -> str:
    match = pattern.search(text)
    return match.group(0) if match else "unknown"


def nfs_root_params(kind: ImageKind) -> str:
    return f"nfsroot={PXE_SERVER_IP}:{NFS_ROOT}/{kind.value}/{ISO_NAME}"


def http_url(kind: ImageKind) -> str:
    return f"http://{PXE_SERVER_IP}/{kind.value}/{ISO_NAME}/"
