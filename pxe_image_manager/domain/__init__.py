"""Domain models for boot image registration."""

from __future__ import annotations

from .models import (
    UNKNOWN,
    BootImage,
    DetectionResult,
    ImageKind,
    ImageListing,
    ImgType,
    RegistrationState,
    StatusReport,
    ValidationReport,
)


__all__ = [
    "UNKNOWN",
    "BootImage",
    "DetectionResult",
    "ImageKind",
    "ImageListing",
    "ImgType",
    "RegistrationState",
    "StatusReport",
    "ValidationReport",
]
