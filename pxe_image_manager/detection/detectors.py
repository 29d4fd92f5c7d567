"""Detectors for the distribution families the menu knows how to boot."""

from __future__ import annotations

import re
import shlex
from typing import Optional

from pxe_image_manager.domain import UNKNOWN, DetectionResult

from .base import (
    GENERIC_VERSION_RE,
    UBUNTU_VERSION_RE,
    DetectionContext,
    Detector,
    find_boot_pair,
    find_versioned_boot_pair,
    http_url,
    log,
    nfs_root_params,
    normalize_arch,
    search_arch,
    search_version,
)


UBUNTU_BOOT_PAIRS = [
    ("casper/vmlinuz", "casper/initrd"),
    ("casper/vmlinuz", "casper/initrd.lz"),
    ("casper/vmlinuz", "casper/initrd.gz"),
]

DEBIAN_INSTALLER_PAIRS = [
    ("install.amd/vmlinuz", "install.amd/initrd.gz"),
    ("install/vmlinuz", "install/initrd.gz"),
]
DEBIAN_LIVE_PAIRS = [("live/vmlinuz", "live/initrd.img")]

REDHAT_BOOT_PAIRS = [("images/pxeboot/vmlinuz", "images/pxeboot/initrd.img")]

FILESYSTEM_BOOT_PAIRS = [
    ("boot/vmlinuz", "boot/initrd.img"),
    ("vmlinuz", "initrd.img"),
]

OS_RELEASE_FILES = ("etc/os-release", "usr/lib/os-release")

OS_RELEASE_IDS = {
    "ubuntu": "ubuntu",
    "debian": "debian",
    "rhel": "rhel",
    "centos": "centos",
    "rocky": "rocky",
    "almalinux": "alma",
    "fedora": "fedora",
}


def _with_version(label: str, version: str) -> str:
    return label if version == UNKNOWN else f"{label} {version}"


def _filesystem_boot_pair(context: DetectionContext) -> tuple[str, str]:
    kernel, initrd = find_boot_pair(context, FILESYSTEM_BOOT_PAIRS)
    if kernel:
        return kernel, initrd
    return find_versioned_boot_pair(context, "boot")


def _nfs_root_boot_params(context: DetectionContext) -> str:
    return f"root=/dev/nfs {nfs_root_params(context.kind)} ro ip=dhcp"


class DiskInfoDetector(Detector):
    """Ubuntu and Debian media identified by ``.disk/info``."""

    name = "disk-info"

    def detect(self, context: DetectionContext) -> Optional[DetectionResult]:
        info = context.read_text(".disk/info")
        if info is None:
            return None
        info = info.strip()

        if "Ubuntu" in info:
            return self._ubuntu(context, info)
        if "Debian" in info:
            return self._debian(context, info)
        log.debug(f"{context.filename}: unrecognised .disk/info {info!r}")
        return None

    def _ubuntu(self, context: DetectionContext, info: str) -> DetectionResult:
        version = search_version(info, UBUNTU_VERSION_RE)
        if re.search(r"Ubuntu.*Server", info):
            distro, label, extra = "ubuntu-server", "Ubuntu Server", ""
        elif re.search(r"Ubuntu.*Desktop", info):
            distro, label, extra = "ubuntu-desktop", "Ubuntu Desktop", " quiet splash"
        else:
            distro, label, extra = "ubuntu", "Ubuntu", ""

        kernel, initrd = find_boot_pair(context, UBUNTU_BOOT_PAIRS)
        boot_params = ""
        if kernel:
            boot_params = (
                f"boot=casper netboot=nfs {nfs_root_params(context.kind)} ip=dhcp{extra}"
            )
        return DetectionResult(
            distro=distro,
            version=version,
            arch=search_arch(info),
            release_name=_with_version(label, version),
            kernel_path=kernel,
            initrd_path=initrd,
            boot_params=boot_params,
        )

    def _debian(self, context: DetectionContext, info: str) -> DetectionResult:
        version = search_version(info, GENERIC_VERSION_RE)
        kernel, initrd = find_boot_pair(context, DEBIAN_INSTALLER_PAIRS)
        boot_params = f"url={http_url(context.kind)} ip=dhcp" if kernel else ""
        if not kernel:
            kernel, initrd = find_boot_pair(context, DEBIAN_LIVE_PAIRS)
            if kernel:
                boot_params = (
                    f"boot=live netboot=nfs {nfs_root_params(context.kind)} ip=dhcp"
                )
        return DetectionResult(
            distro="debian",
            version=version,
            arch=search_arch(info),
            release_name=_with_version("Debian", version),
            kernel_path=kernel,
            initrd_path=initrd,
            boot_params=boot_params,
        )


class RedHatDetector(Detector):
    """Red Hat family install media (``.discinfo`` or ``media.repo``)."""

    name = "redhat"

    FAMILIES = (
        ("CentOS", "centos", "CentOS"),
        ("Red Hat", "rhel", "Red Hat Enterprise Linux"),
        ("Rocky", "rocky", "Rocky Linux"),
        ("AlmaLinux", "alma", "AlmaLinux"),
    )

    def detect(self, context: DetectionContext) -> Optional[DetectionResult]:
        media = context.read_text("media.repo")
        discinfo = context.read_text(".discinfo")
        if media is None and discinfo is None:
            return None

        description = ""
        if media:
            for line in media.splitlines():
                if line.strip().lower().startswith("name="):
                    description = line.split("=", 1)[1].strip()
                    break
        discinfo_lines = [line.strip() for line in (discinfo or "").splitlines()]
        if not description and len(discinfo_lines) > 1:
            description = discinfo_lines[1]

        distro, label = "redhat", "Red Hat family"
        for marker, family, family_label in self.FAMILIES:
            if marker in description or (media and marker in media):
                distro, label = family, family_label
                break
        version = search_version(description, GENERIC_VERSION_RE)

        if len(discinfo_lines) > 2 and discinfo_lines[2]:
            arch = normalize_arch(discinfo_lines[2])
        elif context.is_dir("images/pxeboot"):
            arch = "x86_64"
        else:
            arch = search_arch(context.filename)

        kernel, initrd = find_boot_pair(context, REDHAT_BOOT_PAIRS)
        boot_params = f"inst.repo={http_url(context.kind)} ip=dhcp" if kernel else ""
        return DetectionResult(
            distro=distro,
            version=version,
            arch=arch,
            release_name=_with_version(label, version),
            kernel_path=kernel,
            initrd_path=initrd,
            boot_params=boot_params,
        )


def parse_os_release(text: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, raw = line.split("=", 1)
        try:
            parts = shlex.split(raw)
        except ValueError:
            parts = [raw.strip("\"'")]
        values[key.strip()] = parts[0] if parts else ""
    return values


class OsReleaseDetector(Detector):
    """Installed root filesystems, identified by os-release."""

    name = "os-release"

    def detect(self, context: DetectionContext) -> Optional[DetectionResult]:
        text = None
        for relative in OS_RELEASE_FILES:
            text = context.read_text(relative)
            if text is not None:
                break
        if text is None:
            return None

        values = parse_os_release(text)
        os_id = values.get("ID", "").lower()
        distro = OS_RELEASE_IDS.get(os_id, os_id or UNKNOWN)
        version = values.get("VERSION_ID") or UNKNOWN
        release_name = values.get("PRETTY_NAME") or _with_version(
            values.get("NAME", "Linux"), version
        )

        kernel, initrd = _filesystem_boot_pair(context)
        return DetectionResult(
            distro=distro,
            version=version,
            arch=search_arch(context.filename),
            release_name=release_name,
            kernel_path=kernel,
            initrd_path=initrd,
            boot_params=_nfs_root_boot_params(context) if kernel else "",
        )


class GenericKernelDetector(Detector):
    """Anything with a kernel and initrd where a root filesystem keeps them."""

    name = "generic-kernel"

    def detect(self, context: DetectionContext) -> Optional[DetectionResult]:
        if not (context.is_file("boot/vmlinuz") or context.is_file("vmlinuz")):
            return None
        kernel, initrd = _filesystem_boot_pair(context)
        if not kernel:
            log.debug(f"{context.filename}: kernel without initrd, not bootable")
            return None
        return DetectionResult(
            distro="linux",
            arch=search_arch(context.filename),
            release_name="Generic Linux",
            kernel_path=kernel,
            initrd_path=initrd,
            boot_params=_nfs_root_boot_params(context),
        )


class FilenameDetector(Detector):
    """Last resort before giving up: guess from the file name."""

    name = "filename"

    PATTERNS = (
        (re.compile(r"ubuntu\D*(\d+\.\d+(?:\.\d+)?)"), "ubuntu", "Ubuntu"),
        (re.compile(r"debian\D*(\d+(?:\.\d+)*)"), "debian", "Debian"),
        (re.compile(r"centos\D*(\d+(?:\.\d+)*)"), "centos", "CentOS"),
    )

    def detect(self, context: DetectionContext) -> Optional[DetectionResult]:
        filename = context.filename.lower()
        for pattern, distro, label in self.PATTERNS:
            match = pattern.search(filename)
            if match:
                version = match.group(1)
                return DetectionResult(
                    distro=distro,
                    version=version,
                    arch=search_arch(filename),
                    release_name=f"{label} {version}",
                )
        return None


class UnknownDetector(Detector):
    """Always matches; keeps registration going with unknown metadata."""

    name = "unknown"

    def detect(self, context: DetectionContext) -> Optional[DetectionResult]:
        return DetectionResult(arch=search_arch(context.filename.lower()))
