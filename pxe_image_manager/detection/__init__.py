"""Distribution detection for mounted boot images.

Usage:
    from pxe_image_manager.detection import DetectionContext, detect

    result = detect(DetectionContext(root, "ubuntu-24.04-server.iso", ImageKind.ISO))
"""

from __future__ import annotations

from typing import Optional, Sequence

from pxe_image_manager.domain import DetectionResult

from .base import (
    ISO_NAME,
    NFS_ROOT,
    PXE_SERVER_IP,
    DetectionContext,
    Detector,
    log,
    normalize_arch,
    resolve_in_root,
)
from .detectors import (
    DiskInfoDetector,
    FilenameDetector,
    GenericKernelDetector,
    OsReleaseDetector,
    RedHatDetector,
    UnknownDetector,
)


DEFAULT_DETECTORS: tuple[Detector, ...] = (
    DiskInfoDetector(),
    RedHatDetector(),
    OsReleaseDetector(),
    GenericKernelDetector(),
    FilenameDetector(),
    UnknownDetector(),
)


def detect(
    context: DetectionContext, detectors: Optional[Sequence[Detector]] = None
) -> DetectionResult:
    """Run detectors in order and return the first match.

    A detector that cannot read the image is skipped; the chain always ends
    with an unknown result rather than failing.
    """
    for detector in detectors or DEFAULT_DETECTORS:
        try:
            result = detector.detect(context)
        except OSError as exc:
            log.warning(f"{detector.name} detector failed on {context.filename}: {exc}")
            continue
        if result is not None:
            log.debug(
                f"{context.filename}: matched {detector.name} "
                f"({result.distro} {result.version} {result.arch})"
            )
            return result
    return DetectionResult()


__all__ = [
    "DEFAULT_DETECTORS",
    "ISO_NAME",
    "NFS_ROOT",
    "PXE_SERVER_IP",
    "DetectionContext",
    "Detector",
    "DiskInfoDetector",
    "FilenameDetector",
    "GenericKernelDetector",
    "OsReleaseDetector",
    "RedHatDetector",
    "UnknownDetector",
    "detect",
    "normalize_arch",
    "resolve_in_root",
]
