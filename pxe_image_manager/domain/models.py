"""Domain model for boot image registration.

A registered image is a stored ISO or IMG file plus a sidecar of detected
metadata. Everything else on disk (mounts, exports, links, extracted boot
files, menu entries) is derived from it.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path


UNKNOWN = "unknown"


# ==============================================================================
# Image Domain
# ==============================================================================


class ImageKind(Enum):
    """Type of boot image file."""

    ISO = "iso"  # ISO 9660 installation or live medium
    IMG = "img"  # Raw filesystem or partitioned disk image

    @property
    def extension(self) -> str:
        return f".{self.value}"

    @classmethod
    def from_path(cls, path: Path | str) -> ImageKind | None:
        """Return the kind for a file extension, or None if unsupported."""
        suffix = Path(path).suffix.lower()
        for kind in cls:
            if suffix == kind.extension:
                return kind
        return None


class ImgType(Enum):
    """Layout of an IMG file."""

    FILESYSTEM = "filesystem"  # Bare filesystem, mountable as-is
    PARTITIONED = "partitioned"  # MBR or GPT disk image
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class DetectionResult:
    """Best-effort metadata detected from an image root."""

    distro: str = UNKNOWN
    version: str = UNKNOWN
    arch: str = "x86_64"
    release_name: str = "Unknown Linux Distribution"
    kernel_path: str = ""
    initrd_path: str = ""
    boot_params: str = ""

    @property
    def has_boot_files(self) -> bool:
        return bool(self.kernel_path and self.initrd_path)


@dataclass(frozen=True)
class BootImage:
    """A registered ISO or IMG file and its detected metadata."""

    name: str  # File name without extension
    kind: ImageKind
    source_path: Path  # Stored copy under the artifacts directory
    distro: str = UNKNOWN
    version: str = UNKNOWN
    arch: str = "x86_64"
    release_name: str = "Unknown Linux Distribution"
    kernel_path: str = ""  # Relative to the image root
    initrd_path: str = ""
    boot_params: str = ""  # Template with ##ISO_NAME## style placeholders
    img_type: ImgType | None = None  # IMG only
    fs_type: str = ""  # IMG only
    partition_offset: int = 0  # IMG only, bytes to the mounted partition
    source_name: str = ""  # File name the image was added from
    created_menu: bool = False  # Boot menu file was written for this image

    @property
    def key(self) -> str:
        """Registry key, unique across kinds (e.g. ``iso:ubuntu-24.04``)."""
        return f"{self.kind.value}:{self.name}"

    @property
    def menu_id(self) -> str:
        """GRUB menuentry --id value."""
        return f"{self.kind.value}-{self.name}"

    @property
    def has_boot_files(self) -> bool:
        return bool(self.kernel_path and self.initrd_path)

    @property
    def display_name(self) -> str:
        return f"{self.name}{self.kind.extension}"

    def with_detection(self, result: DetectionResult) -> BootImage:
        return replace(
            self,
            distro=result.distro,
            version=result.version,
            arch=result.arch,
            release_name=result.release_name,
            kernel_path=result.kernel_path,
            initrd_path=result.initrd_path,
            boot_params=result.boot_params,
        )


class RegistrationState(Enum):
    """Forward steps of registering one image; removal walks them back."""

    UNREGISTERED = "unregistered"
    DETECTING = "detecting"
    MOUNTED_FOR_EXTRACTION = "mounted_for_extraction"
    EXTRACTED = "extracted"
    EXPORTED = "exported"
    MENU_PRESENT = "menu_present"


# ==============================================================================
# Reports
# ==============================================================================


@dataclass
class ValidationReport:
    """Aggregated consistency checks; errors fail the command, warnings do not."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    passed: list[str] = field(default_factory=list)

    def error(self, message: str) -> None:
        self.errors.append(message)

    def warning(self, message: str) -> None:
        self.warnings.append(message)

    def ok(self, message: str) -> None:
        self.passed.append(message)

    @property
    def exit_code(self) -> int:
        return 1 if self.errors else 0

    def summary(self) -> str:
        if not self.errors and not self.warnings:
            return "All checks passed"
        if not self.errors:
            return f"{len(self.warnings)} warnings found"
        return f"{len(self.errors)} errors, {len(self.warnings)} warnings"


@dataclass(frozen=True)
class ImageListing:
    """One row of ``list`` output."""

    name: str
    kind: ImageKind
    release_name: str
    arch: str
    active: bool

    @property
    def status(self) -> str:
        return "Active" if self.active else "Inactive"


@dataclass
class StatusReport:
    """Service, mount, export and disk usage snapshot for ``status``."""

    server_ip: str
    services: dict[str, bool] = field(default_factory=dict)
    directories: dict[str, Path] = field(default_factory=dict)
    mounted: list[tuple[str, Path]] = field(default_factory=list)
    exports: list[str] = field(default_factory=list)
    http_links: list[str] = field(default_factory=list)
    disk_usage: dict[str, int] = field(default_factory=dict)
