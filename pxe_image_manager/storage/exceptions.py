"""Custom exceptions for image management operations.

This module defines a hierarchy of exceptions so the command line can map
failures onto exit codes and the image manager can decide what to roll back.

Exception Hierarchy:
    ImageManagerError (base)
        ├── ConfigurationError
        ├── PreconditionError
        │   ├── NotRootError
        │   ├── ImageNotFoundError
        │   ├── UnsupportedImageError
        │   └── AmbiguousImageError
        ├── CommandError
        ├── MountError
        │   ├── LoopDeviceError
        │   └── UnmountFailedError
        ├── ExtractionError
        └── MenuError

Usage:
    from pxe_image_manager.storage.exceptions import ImageNotFoundError

    if not registry.find(name):
        raise ImageNotFoundError(name)
"""

from __future__ import annotations

from typing import Iterable, Sequence


class ImageManagerError(Exception):
    """Base exception for all image manager operations."""


class ConfigurationError(ImageManagerError):
    """Settings are missing or unreadable."""

    def __init__(self, missing_keys: Iterable[str] = (), reason: str = ""):
        self.missing_keys = list(missing_keys)
        self.reason = reason
        if self.missing_keys:
            msg = "Missing required configuration: " + ", ".join(self.missing_keys)
        else:
            msg = f"Invalid configuration: {reason}"
        super().__init__(msg)


class PreconditionError(ImageManagerError):
    """A command cannot start; nothing has been changed."""


class NotRootError(PreconditionError):
    """Mutating commands need root privileges."""

    def __init__(self, command: str):
        self.command = command
        super().__init__(f"'{command}' must be run as root or with sudo")


class ImageNotFoundError(PreconditionError):
    """Image file or registered image does not exist."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Image not found: {name}")


class UnsupportedImageError(PreconditionError):
    """File is not an ISO or IMG image this tool can register."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Unsupported image {path}: {reason}")


class AmbiguousImageError(PreconditionError):
    """Name is registered as more than one kind."""

    def __init__(self, name: str, kinds: Sequence[str]):
        self.name = name
        self.kinds = list(kinds)
        super().__init__(
            f"Image '{name}' is registered as {' and '.join(self.kinds)}; "
            f"pass --kind or the file extension"
        )


class CommandError(ImageManagerError):
    """External command failed or timed out."""

    def __init__(self, command: Sequence[str], returncode: int | None, output: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        if returncode is None:
            msg = f"Command timed out ({' '.join(self.command)})"
        else:
            msg = f"Command failed ({' '.join(self.command)}): {output or 'exit ' + str(returncode)}"
        super().__init__(msg)


class MountError(ImageManagerError):
    """Base exception for mount-related errors."""


class LoopDeviceError(MountError):
    """Loop device or partition mapping could not be set up."""

    def __init__(self, image_path: str, reason: str):
        self.image_path = image_path
        self.reason = reason
        super().__init__(f"Loop setup failed for {image_path}: {reason}")


class UnmountFailedError(MountError):
    """Failed to unmount a mount point."""

    def __init__(self, mountpoint: str, reason: str = ""):
        self.mountpoint = mountpoint
        self.reason = reason
        msg = f"Failed to unmount {mountpoint}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ExtractionError(ImageManagerError):
    """Kernel or initrd could not be copied out of an image."""

    def __init__(self, name: str, missing: str):
        self.name = name
        self.missing = missing
        super().__init__(f"Boot file not found in {name}: {missing}")


class MenuError(ImageManagerError):
    """Boot menu file cannot be updated."""
