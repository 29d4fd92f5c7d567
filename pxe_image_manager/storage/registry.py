"""Registered image storage and sidecar metadata.

Each registered image lives at ``<artifacts_dir>/<kind>/<name>.<kind>`` with
a ``<name>.info`` sidecar of ``KEY="value"`` lines. The sidecar stays
shell-sourceable so existing tooling can keep reading it.
"""

from __future__ import annotations

import re
import shlex
import shutil
from pathlib import Path
from typing import Optional

from pxe_image_manager.config.settings import Settings
from pxe_image_manager.domain import UNKNOWN, BootImage, ImageKind, ImgType
from pxe_image_manager.logging import LoggerFactory

from .file_utils import atomic_write_text


log = LoggerFactory.for_registry()

SIDECAR_SUFFIX = ".info"

_ASSIGNMENT_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)=(.*)$")
_DQ_ESCAPE_RE = re.compile(r'\\([\\"$`])')

# Sidecar key -> BootImage attribute
_COMMON_KEYS = {
    "DISTRO": "distro",
    "VERSION": "version",
    "ARCH": "arch",
    "RELEASE_NAME": "release_name",
    "KERNEL_PATH": "kernel_path",
    "INITRD_PATH": "initrd_path",
    "BOOT_PARAMS": "boot_params",
}


def quote_value(value: str) -> str:
    """Double-quote a value so ``source`` and shlex read it back verbatim."""
    escaped = (
        str(value)
        .replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("$", "\\$")
        .replace("`", "\\`")
    )
    return f'"{escaped}"'


def format_sidecar(image: BootImage) -> str:
    lines = [f"{key}={quote_value(getattr(image, attr))}" for key, attr in _COMMON_KEYS.items()]
    if image.source_name:
        lines.append(f"SOURCE_NAME={quote_value(image.source_name)}")
    if image.created_menu:
        lines.append('CREATED_MENU="yes"')
    if image.kind is ImageKind.IMG:
        img_type = image.img_type or ImgType.UNKNOWN
        lines.append(f"IMG_TYPE={quote_value(img_type.value)}")
        lines.append(f"FS_TYPE={quote_value(image.fs_type or UNKNOWN)}")
        lines.append(f"PARTITION_OFFSET={quote_value(str(image.partition_offset))}")
    return "\n".join(lines) + "\n"


def _unquote(raw: str) -> str:
    if len(raw) >= 2 and raw[0] == raw[-1] == '"':
        # Inside double quotes the shell only unescapes \ " $ and `
        return _DQ_ESCAPE_RE.sub(r"\1", raw[1:-1])
    tokens = shlex.split(raw, comments=True)
    if len(tokens) > 1:
        raise ValueError("more than one word")
    return tokens[0] if tokens else ""


def parse_sidecar(text: str) -> dict[str, str]:
    """Parse ``KEY="value"`` lines; comments and malformed lines are skipped."""
    values: dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        match = _ASSIGNMENT_RE.match(stripped)
        if not match:
            continue
        try:
            values[match.group(1)] = _unquote(match.group(2))
        except ValueError as exc:
            log.debug(f"Skipping malformed sidecar line {stripped!r}: {exc}")
    return values


def _image_from_sidecar(
    name: str, kind: ImageKind, source_path: Path, values: dict[str, str]
) -> BootImage:
    kwargs = {attr: values[key] for key, attr in _COMMON_KEYS.items() if key in values}
    kwargs["source_name"] = values.get("SOURCE_NAME", "")
    kwargs["created_menu"] = values.get("CREATED_MENU") == "yes"
    if kind is ImageKind.IMG:
        try:
            kwargs["img_type"] = ImgType(values.get("IMG_TYPE", ImgType.UNKNOWN.value))
        except ValueError:
            kwargs["img_type"] = ImgType.UNKNOWN
        fs_type = values.get("FS_TYPE", "")
        kwargs["fs_type"] = "" if fs_type == UNKNOWN else fs_type
        try:
            kwargs["partition_offset"] = int(values.get("PARTITION_OFFSET", "0") or 0)
        except ValueError:
            kwargs["partition_offset"] = 0
    return BootImage(name=name, kind=kind, source_path=source_path, **kwargs)


class Registry:
    """Directory-backed registry of images keyed by (kind, name).

    Nothing is cached: every query rescans the storage directories.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def image_path(self, name: str, kind: ImageKind) -> Path:
        return self.settings.storage_dir(kind) / f"{name}{kind.extension}"

    def sidecar_path(self, name: str, kind: ImageKind) -> Path:
        return self.settings.storage_dir(kind) / f"{name}{SIDECAR_SUFFIX}"

    def exists(self, name: str, kind: ImageKind) -> bool:
        return self.image_path(name, kind).is_file()

    def get(self, name: str, kind: ImageKind) -> Optional[BootImage]:
        """Load a registered image, or None if its file is not stored."""
        path = self.image_path(name, kind)
        if not path.is_file():
            return None
        sidecar = self.sidecar_path(name, kind)
        values: dict[str, str] = {}
        if sidecar.is_file():
            try:
                values = parse_sidecar(sidecar.read_text(encoding="utf-8"))
            except OSError as exc:
                log.warning(f"Cannot read {sidecar}: {exc}")
        else:
            log.debug(f"No sidecar for {path.name}, metadata unknown")
        return _image_from_sidecar(name, kind, path, values)

    def find(self, name: str) -> list[BootImage]:
        """All registered images with this name, one per kind."""
        return [image for kind in ImageKind if (image := self.get(name, kind))]

    def list_images(self, kind: Optional[ImageKind] = None) -> list[BootImage]:
        kinds = [kind] if kind else list(ImageKind)
        images: list[BootImage] = []
        for current in kinds:
            storage = self.settings.storage_dir(current)
            if not storage.is_dir():
                continue
            for path in storage.glob(f"*{current.extension}"):
                if not path.is_file():
                    continue
                image = self.get(path.stem, current)
                if image:
                    images.append(image)
        return sorted(images, key=lambda image: (image.name, image.kind.value))

    def names(self, kind: ImageKind) -> set[str]:
        return {image.name for image in self.list_images(kind)}

    def store(self, source: Path, kind: ImageKind, name: Optional[str] = None) -> Path:
        """Copy ``source`` into storage and return the stored path.

        A source that already is the stored path is left in place.
        """
        source = Path(source)
        target = self.image_path(name or source.stem, kind)
        target.parent.mkdir(parents=True, exist_ok=True)
        if source.resolve() == target.resolve():
            log.debug(f"{source} already in storage")
            return target
        log.info(f"Copying {source.name} to {target.parent}")
        tmp = target.with_name(f".{target.name}.partial")
        try:
            shutil.copyfile(source, tmp)
            tmp.replace(target)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        return target

    def save(self, image: BootImage) -> Path:
        """Write the sidecar for ``image``."""
        sidecar = self.sidecar_path(image.name, image.kind)
        atomic_write_text(sidecar, format_sidecar(image), mode=0o644)
        log.debug(f"Saved metadata for {image.key}")
        return sidecar

    def delete(self, image: BootImage) -> bool:
        """Remove the stored image and its sidecar. Returns True if anything was removed."""
        removed = False
        for path in (
            self.image_path(image.name, image.kind),
            self.sidecar_path(image.name, image.kind),
        ):
            if path.exists():
                path.unlink()
                removed = True
        if removed:
            log.debug(f"Deleted stored files for {image.key}")
        return removed

    def delete_sidecar(self, name: str, kind: ImageKind) -> None:
        self.sidecar_path(name, kind).unlink(missing_ok=True)
