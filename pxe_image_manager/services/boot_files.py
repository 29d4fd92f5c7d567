"""Kernel and initrd copies served over TFTP."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Iterable

from pxe_image_manager.config.settings import Settings
from pxe_image_manager.detection import resolve_in_root
from pxe_image_manager.domain import BootImage, ImageKind
from pxe_image_manager.logging import LoggerFactory
from pxe_image_manager.storage.exceptions import ExtractionError
from pxe_image_manager.storage.file_utils import chown_best_effort


log = LoggerFactory.for_export()

KERNEL_FILENAME = "vmlinuz"
INITRD_FILENAME = "initrd"


class BootFiles:
    """Extracted boot files under ``<tftp_root>/kernels`` and ``<tftp_root>/initrd``."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def kernel_dir(self, image: BootImage) -> Path:
        return self.settings.kernels_dir / image.kind.value / image.name

    def initrd_dir(self, image: BootImage) -> Path:
        return self.settings.initrd_dir / image.kind.value / image.name

    def kernel_file(self, image: BootImage) -> Path:
        return self.kernel_dir(image) / KERNEL_FILENAME

    def initrd_file(self, image: BootImage) -> Path:
        return self.initrd_dir(image) / INITRD_FILENAME

    def tftp_path(self, path: Path) -> str:
        """Path as the TFTP client asks for it (relative to the TFTP root)."""
        return "/" + str(Path(path).relative_to(self.settings.tftp_root))

    def present(self, image: BootImage) -> bool:
        return self.kernel_file(image).is_file() and self.initrd_file(image).is_file()

    def extract(self, image: BootImage, root: Path) -> bool:
        """Copy the kernel and initrd out of the mounted image at ``root``.

        Returns:
            False when the image has no known boot files (nothing copied)

        Raises:
            ExtractionError: If a detected boot file is missing from the image
        """
        if not image.has_boot_files:
            log.warning(f"Boot file paths not detected for {image.display_name}, skipping extraction")
            return False

        copies = (
            (image.kernel_path, self.kernel_file(image)),
            (image.initrd_path, self.initrd_file(image)),
        )
        sources = []
        for relative, target in copies:
            source = resolve_in_root(root, relative)
            if source is None or not source.is_file():
                raise ExtractionError(image.display_name, relative)
            sources.append((source, target))

        for source, target in sources:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, target)
            target.chmod(0o644)
            chown_best_effort(target, self.settings.tftp_owner)
            log.debug(f"Copied {source} to {target}")
        log.info(f"Extracted kernel and initrd for {image.display_name}")
        return True

    def remove(self, image: BootImage) -> bool:
        removed = False
        for directory in (self.kernel_dir(image), self.initrd_dir(image)):
            if directory.exists():
                shutil.rmtree(directory)
                removed = True
        return removed

    def orphans(self, known_keys: Iterable[tuple[ImageKind, str]]) -> list[Path]:
        """Boot file directories that belong to no registered image."""
        known = set(known_keys)
        found: list[Path] = []
        for base in (self.settings.kernels_dir, self.settings.initrd_dir):
            for kind in ImageKind:
                kind_dir = base / kind.value
                if not kind_dir.is_dir():
                    continue
                for entry in sorted(kind_dir.iterdir()):
                    if entry.is_dir() and (kind, entry.name) not in known:
                        found.append(entry)
        return found
