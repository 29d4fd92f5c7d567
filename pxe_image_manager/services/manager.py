"""Image registration workflows: add, remove, list, status, validate, cleanup, refresh.

The manager owns no state of its own. Registered images come from the
registry and every derived artifact (mounts, exports, links, boot files and
menu entries) is recomputed from them, so each command can be re-run safely.
"""

from __future__ import annotations

import re
import shutil
from contextlib import AbstractContextManager, nullcontext
from dataclasses import replace
from pathlib import Path
from typing import Callable, Optional

from pxe_image_manager.config.settings import Settings
from pxe_image_manager.detection import DetectionContext, detect
from pxe_image_manager.domain import (
    BootImage,
    ImageKind,
    ImageListing,
    RegistrationState,
    StatusReport,
    ValidationReport,
)
from pxe_image_manager.logging import LoggerFactory, operation_context
from pxe_image_manager.storage import commands, mount
from pxe_image_manager.storage.exceptions import (
    AmbiguousImageError,
    ExtractionError,
    ImageNotFoundError,
    MountError,
    UnmountFailedError,
    UnsupportedImageError,
)
from pxe_image_manager.storage.file_utils import remove_path, sum_tree_bytes
from pxe_image_manager.storage.probe import is_iso_image, probe_image
from pxe_image_manager.storage.registry import Registry

from .boot_files import BootFiles
from .exporter import Exporter
from .menu import MenuSynchronizer
from .rollback import Rollback


log = LoggerFactory.for_system()

InspectFn = Callable[[Path, ImageKind, Path], AbstractContextManager]
ConfirmFn = Callable[[str], bool]

# Names end up in fstab, exports and GRUB ids
VALID_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")


def split_image_name(name: str, kind: Optional[ImageKind] = None) -> tuple[str, Optional[ImageKind]]:
    """Strip a .iso/.img extension from ``name``; the extension implies the kind."""
    from_extension = ImageKind.from_path(name)
    if from_extension is not None:
        name = name[: -len(from_extension.extension)]
        if kind is None:
            kind = from_extension
    return name, kind


class ImageManager:
    def __init__(
        self,
        settings: Settings,
        *,
        registry: Optional[Registry] = None,
        exporter: Optional[Exporter] = None,
        boot_files: Optional[BootFiles] = None,
        menu: Optional[MenuSynchronizer] = None,
        inspect: Optional[InspectFn] = None,
        confirm: Optional[ConfirmFn] = None,
    ):
        self.settings = settings
        self.registry = registry or Registry(settings)
        self.exporter = exporter or Exporter(settings)
        self.boot_files = boot_files or BootFiles(settings)
        self.menu = menu or MenuSynchronizer(settings, self.boot_files)
        self.inspect = inspect or self._inspect
        self.confirm = confirm or (lambda prompt: False)

    def _inspect(self, image_path: Path, kind: ImageKind, mount_point: Path):
        return mount.mount_for_inspection(
            image_path, kind, mount_point, timeout=self.settings.command_timeout
        )

    def _transition(self, image: BootImage, state: RegistrationState) -> None:
        log.debug(f"{image.key}: {state.value}")

    def ensure_directories(self) -> None:
        for path in self.settings.managed_dirs().values():
            path.mkdir(parents=True, exist_ok=True)
        self.settings.mount_base_dir.mkdir(parents=True, exist_ok=True)

    # add -------------------------------------------------------------------

    def add(self, path: Path) -> Optional[BootImage]:
        """Register an ISO or IMG file.

        Returns:
            The registered image, or None if the user declined to overwrite

        Raises:
            PreconditionError: If the file is missing or not a supported image
            MountError: If the image cannot be mounted
            ExtractionError: If detected boot files cannot be copied
        """
        source = Path(path)
        if not source.is_file():
            raise ImageNotFoundError(str(source))
        kind = ImageKind.from_path(source)
        if kind is None:
            raise UnsupportedImageError(str(source), "expected a .iso or .img file")
        if kind is ImageKind.ISO and not is_iso_image(source):
            raise UnsupportedImageError(str(source), "no ISO 9660 volume descriptor")
        name = source.stem
        if not VALID_NAME_RE.match(name):
            raise UnsupportedImageError(
                str(source), "name may only contain letters, digits, '.', '_', '+' and '-'"
            )

        with operation_context("add", image=source.name) as op_log:
            stored_path = self.registry.image_path(name, kind)
            in_place = stored_path.exists() and source.resolve() == stored_path.resolve()
            existing = self.registry.get(name, kind)
            if existing and not self.confirm(
                f"{existing.display_name} is already registered. Overwrite?"
            ):
                op_log.info(f"Keeping existing registration of {existing.display_name}")
                return None

            for other in ImageKind:
                if other is not kind and self.registry.exists(name, other):
                    op_log.warning(
                        f"{name}{other.extension} is also registered; "
                        f"both are kept as separate images"
                    )

            source_name = source.name
            if in_place and existing and existing.source_name:
                source_name = existing.source_name

            self.ensure_directories()
            with Rollback(f"replace {name}{kind.extension}") as rollback:
                set_aside: list[tuple[Path, Path]] = []
                if existing:
                    op_log.info(f"Replacing {existing.display_name}")
                    self._set_aside(existing, in_place, rollback, set_aside)
                image = self._register(
                    source, kind, name, keep_stored=in_place, source_name=source_name
                )
                rollback.commit()
            for _, held in set_aside:
                remove_path(held)
            op_log.info(f"{image.display_name}: {image.release_name} ({image.arch})")
        return image

    def _set_aside(
        self,
        existing: BootImage,
        in_place: bool,
        rollback: Rollback,
        set_aside: list[tuple[Path, Path]],
    ) -> None:
        """Unregister ``existing``, keeping what is needed to put it back.

        Boot files (and the stored file unless it is re-added in place) are
        renamed next to themselves and collected in ``set_aside``; the caller
        deletes them once the replacement is committed.
        """
        had_entry = self.menu.has_entry(existing.key)

        def restore() -> None:
            for path, held in reversed(set_aside):
                remove_path(path)
                held.rename(path)
            self.registry.save(existing)
            self.exporter.register_http(existing)
            try:
                self.exporter.register_nfs(existing)
            except MountError as exc:
                log.warning(f"{existing.display_name} restored but not mounted: {exc}")
            if had_entry:
                self.menu.add_entry(existing)
            log.info(f"Restored previous registration of {existing.display_name}")

        rollback.record(f"previous {existing.display_name}", restore)

        paths = [self.boot_files.kernel_dir(existing), self.boot_files.initrd_dir(existing)]
        if not in_place:
            paths.append(existing.source_path)
        for path in paths:
            if path.exists():
                held = path.with_name(f".{path.name}.previous")
                remove_path(held)
                path.rename(held)
                set_aside.append((path, held))

        self._unregister(existing, keep_stored=True)

    def _register(
        self, source: Path, kind: ImageKind, name: str, *, keep_stored: bool, source_name: str
    ) -> BootImage:
        with Rollback(f"add {name}{kind.extension}") as rollback:
            image = BootImage(
                name=name,
                kind=kind,
                source_path=self.registry.image_path(name, kind),
                source_name=source_name,
            )
            self._transition(image, RegistrationState.DETECTING)

            if keep_stored:
                rollback.record("metadata", lambda: self.registry.delete_sidecar(name, kind))
            else:
                rollback.record("stored image", lambda: self.registry.delete(image))
            stored = self.registry.store(source, kind, name)
            image = replace(image, source_path=stored)

            if kind is ImageKind.IMG:
                probe = probe_image(stored, timeout=self.settings.command_timeout)
                first = probe.first_partition
                image = replace(
                    image,
                    img_type=probe.img_type,
                    fs_type=probe.fs_type,
                    partition_offset=first.offset_bytes if first else 0,
                )

            mount_point = self.settings.inspection_dir(kind) / name
            with self.inspect(stored, kind, mount_point) as root:
                self._transition(image, RegistrationState.MOUNTED_FOR_EXTRACTION)
                image = image.with_detection(
                    detect(DetectionContext(Path(root), source_name, kind))
                )
                log.info(f"Detected {image.release_name} ({image.arch})")
                detected = image
                rollback.record("boot files", lambda: self.boot_files.remove(detected))
                extracted = self.boot_files.extract(image, Path(root))
            if extracted:
                self._transition(image, RegistrationState.EXTRACTED)

            self.registry.save(image)

            rollback.record("NFS export", lambda: self.exporter.unregister_nfs(image))
            self.exporter.register_nfs(image)
            rollback.record("HTTP link", lambda: self.exporter.unregister_http(image))
            self.exporter.register_http(image)
            self._transition(image, RegistrationState.EXPORTED)

            if extracted:
                menu_missing = not self.menu.menu_file.exists()
                rollback.record(
                    "menu entry",
                    lambda: self.menu.remove_entry(image, discard_unchanged=menu_missing),
                )
                if self.menu.add_entry(image):
                    image = replace(image, created_menu=True)
                    self.registry.save(image)
                self._transition(image, RegistrationState.MENU_PRESENT)
            else:
                log.warning(f"No boot files in {image.display_name}; no menu entry created")

            rollback.commit()
        return image

    # remove ----------------------------------------------------------------

    def _lookup(self, name: str, kind: ImageKind) -> Optional[BootImage]:
        """Registered image, or a stub when only derived artifacts are left."""
        image = self.registry.get(name, kind)
        if image:
            return image
        stub = BootImage(name=name, kind=kind, source_path=self.registry.image_path(name, kind))
        if self.exporter.mount_dir(stub).exists():
            return stub
        return None

    def resolve(self, name: str, kind: Optional[ImageKind] = None) -> BootImage:
        """Find the image ``remove`` should act on.

        Raises:
            ImageNotFoundError: If neither the image nor its mount dir exists
            AmbiguousImageError: If the name exists as both kinds and no kind was given
        """
        base, kind = split_image_name(name, kind)
        if kind is not None:
            image = self._lookup(base, kind)
            if image is None:
                raise ImageNotFoundError(name)
            return image
        found = [image for k in ImageKind if (image := self._lookup(base, k))]
        if not found:
            raise ImageNotFoundError(name)
        if len(found) > 1:
            raise AmbiguousImageError(base, [image.kind.value for image in found])
        return found[0]

    def remove(self, name: str, kind: Optional[ImageKind] = None, quiet: bool = False) -> BootImage:
        """Unregister an image and delete every derived artifact."""
        image = self.resolve(name, kind)
        if quiet:
            self._unregister(image)
            return image
        with operation_context("remove", image=image.display_name) as op_log:
            self._unregister(image)
            op_log.info(f"Removed {image.display_name}")
        return image

    def _unregister(self, image: BootImage, *, keep_stored: bool = False) -> None:
        if self.menu.remove_entry(image, discard_unchanged=image.created_menu):
            log.info(f"Menu entry removed for {image.display_name}")
        if self.exporter.unregister_http(image):
            log.info(f"HTTP link removed for {image.display_name}")
        if self.exporter.unregister_nfs(image):
            log.info(f"NFS export and mount removed for {image.display_name}")
        if self.boot_files.remove(image):
            log.info(f"Boot files removed for {image.display_name}")
        if keep_stored:
            self.registry.delete_sidecar(image.name, image.kind)
        elif self.registry.delete(image):
            log.info(f"Deleted stored {image.display_name}")
        self._transition(image, RegistrationState.UNREGISTERED)

    # list / status ---------------------------------------------------------

    def list_images(self) -> list[ImageListing]:
        return [
            ImageListing(
                name=image.name,
                kind=image.kind,
                release_name=image.release_name,
                arch=image.arch,
                active=mount.is_mounted(self.exporter.mount_dir(image)),
            )
            for image in self.registry.list_images()
        ]

    def service_active(self, service: str) -> bool:
        result = commands.run_command(
            ["systemctl", "is-active", "--quiet", service],
            timeout=self.settings.command_timeout,
        )
        return result.returncode == 0

    def status(self) -> StatusReport:
        report = StatusReport(server_ip=self.settings.pxe_server_ip or "")
        report.services = {svc: self.service_active(svc) for svc in self.settings.services}
        report.directories = self.settings.managed_dirs()

        for image in self.registry.list_images():
            mount_dir = self.exporter.mount_dir(image)
            if mount.is_mounted(mount_dir):
                report.mounted.append((image.display_name, mount_dir))

        nfs_dirs = {self.settings.nfs_dir(kind) for kind in ImageKind}
        report.exports = [
            path for path in self.exporter.exported_paths() if Path(path).parent in nfs_dirs
        ]

        for kind in ImageKind:
            http_dir = self.settings.http_dir(kind)
            if not http_dir.is_dir():
                continue
            for entry in sorted(http_dir.iterdir()):
                if entry.is_symlink() or entry.is_dir():
                    report.http_links.append(
                        f"http://{report.server_ip}/{kind.value}/{entry.name}/"
                    )

        for kind in ImageKind:
            report.disk_usage[f"{kind.value.upper()} Storage"] = sum_tree_bytes(
                self.settings.storage_dir(kind)
            )
        report.disk_usage["TFTP Root"] = sum_tree_bytes(self.settings.tftp_root)
        return report

    # validate --------------------------------------------------------------

    def validate(self) -> ValidationReport:
        report = ValidationReport()

        for label, path in self.settings.managed_dirs().items():
            if path.is_dir():
                report.ok(f"{label}: {path}")
            else:
                report.error(f"{label}: {path} (missing)")

        for service in self.settings.services:
            if self.service_active(service):
                report.ok(f"{service}: Running")
            else:
                report.error(f"{service}: Not running")

        menu_present = self.menu.menu_file.is_file()
        if menu_present:
            report.ok(f"Boot menu: {self.menu.menu_file} ({len(self.menu.entries())} entries)")
        else:
            report.error(f"Boot menu: {self.menu.menu_file} not found")

        for image in self.registry.list_images():
            warnings_before = len(report.warnings)
            name = image.display_name
            if not mount.is_mounted(self.exporter.mount_dir(image)):
                report.warning(f"{name}: Not mounted")
            if not self.exporter.http_registered(image):
                report.warning(f"{name}: HTTP link missing")
            if image.has_boot_files:
                if not self.boot_files.present(image):
                    report.warning(f"{name}: Boot files missing")
                elif menu_present and not self.menu.has_entry(image.key):
                    report.warning(f"{name}: Menu entry missing")
            if len(report.warnings) == warnings_before:
                report.ok(f"{name}: All components OK")
        return report

    # cleanup ---------------------------------------------------------------

    def cleanup(self) -> int:
        """Remove artifacts that belong to no registered image.

        Returns:
            Number of items cleaned
        """
        with operation_context("cleanup") as op_log:
            known = {(image.kind, image.name) for image in self.registry.list_images()}
            cleaned = 0
            cleaned += self._release_inspection_mounts()
            cleaned += self._clean_mount_dirs(known)
            cleaned += self._clean_http_links(known)
            for path in self.boot_files.orphans(known):
                op_log.info(f"Orphaned boot files: {path}")
                shutil.rmtree(path)
                cleaned += 1
            cleaned += self._clean_config_lines(known)
            cleaned += self._release_loop_devices()

            op_log.info(f"Cleanup completed: {cleaned} items cleaned")
            if cleaned:
                self.exporter.reload_exports()
                self._restart_services()
        return cleaned

    def _release_inspection_mounts(self) -> int:
        cleaned = 0
        for mount_point in mount.mounts_under(self.settings.mount_base_dir):
            try:
                mount.unmount(mount_point, timeout=self.settings.command_timeout)
            except UnmountFailedError as exc:
                log.warning(str(exc))
                continue
            log.info(f"Released stale inspection mount {mount_point}")
            cleaned += 1
        return cleaned

    def _clean_mount_dirs(self, known: set[tuple[ImageKind, str]]) -> int:
        cleaned = 0
        for kind in ImageKind:
            nfs_dir = self.settings.nfs_dir(kind)
            if not nfs_dir.is_dir():
                continue
            for mount_dir in sorted(nfs_dir.iterdir()):
                if not mount_dir.is_dir() or (kind, mount_dir.name) in known:
                    continue
                log.info(f"Orphaned mount: {mount_dir}")
                if mount.is_mounted(mount_dir):
                    try:
                        mount.unmount(mount_dir, timeout=self.settings.command_timeout)
                    except UnmountFailedError as exc:
                        log.warning(f"{exc}; keeping {mount_dir}")
                        continue
                try:
                    mount_dir.rmdir()
                except OSError as exc:
                    log.warning(f"Could not remove {mount_dir}: {exc}")
                    continue
                cleaned += 1
        return cleaned

    def _clean_http_links(self, known: set[tuple[ImageKind, str]]) -> int:
        cleaned = 0
        for kind in ImageKind:
            http_dir = self.settings.http_dir(kind)
            if not http_dir.is_dir():
                continue
            for link in sorted(http_dir.iterdir()):
                if (kind, link.name) in known:
                    continue
                if link.is_symlink() or link.is_dir():
                    log.info(f"Orphaned HTTP link: {link}")
                    remove_path(link)
                    cleaned += 1
        return cleaned

    def _orphaned_path(self, path: str, known: set[tuple[ImageKind, str]]) -> bool:
        managed = Path(path)
        for kind in ImageKind:
            if managed.parent == self.settings.nfs_dir(kind):
                return (kind, managed.name) not in known
        return False

    def _clean_config_lines(self, known: set[tuple[ImageKind, str]]) -> int:
        cleaned = 0
        for path in self.exporter.fstab_paths():
            if self._orphaned_path(path, known):
                log.info(f"Orphaned fstab entry: {path}")
                cleaned += self.exporter.remove_fstab_entry(path)
        for path in self.exporter.exported_paths():
            if self._orphaned_path(path, known):
                log.info(f"Orphaned export entry: {path}")
                cleaned += self.exporter.remove_export_entry(path)
        return cleaned

    def _release_loop_devices(self) -> int:
        """Detach loop devices over stored images that nothing has mounted."""
        timeout = self.settings.command_timeout
        storage = self.settings.artifacts_dir.resolve()
        sources = {source for source, _ in mount.read_mounts()}
        cleaned = 0
        for device, backing in mount.list_loop_devices(timeout=timeout):
            if storage not in backing.resolve().parents:
                continue
            device_name = Path(device).name
            in_use = device in sources or any(
                Path(source).name.startswith(f"{device_name}p") for source in sources
            )
            if in_use:
                continue
            log.info(f"Releasing unused loop device {device} ({backing.name})")
            if mount.release_loop_device(device, timeout=timeout):
                cleaned += 1
        return cleaned

    def _restart_services(self) -> None:
        services = [self.settings.tftp_service, self.settings.nfs_service]
        result = commands.run_command(
            ["systemctl", "restart", *services], timeout=self.settings.command_timeout
        )
        if result.returncode != 0:
            log.warning(f"Failed to restart {', '.join(services)}: {result.stderr.strip()}")

    # refresh ---------------------------------------------------------------

    def _image_root(self, image: BootImage) -> AbstractContextManager:
        mount_dir = self.exporter.mount_dir(image)
        if mount.is_mounted(mount_dir):
            return nullcontext(mount_dir)
        return self.inspect(
            image.source_path, image.kind, self.settings.inspection_dir(image.kind) / image.name
        )

    def refresh(self) -> int:
        """Re-detect ISO metadata, restore missing boot files and rebuild the menu.

        Returns:
            Number of menu entries written
        """
        with operation_context("refresh") as op_log:
            images = []
            for image in self.registry.list_images():
                images.append(self._refresh_image(image))
            count = self.menu.refresh_all(images)
            op_log.info(f"Boot menu now lists {count} images")
        return count

    def _refresh_image(self, image: BootImage) -> BootImage:
        redetect = image.kind is ImageKind.ISO
        if not redetect and (not image.has_boot_files or self.boot_files.present(image)):
            return image
        try:
            with self._image_root(image) as root:
                if redetect:
                    detected = image.with_detection(
                        detect(
                            DetectionContext(
                                Path(root), image.source_name or image.display_name, image.kind
                            )
                        )
                    )
                    if detected != image:
                        log.info(f"Updated metadata for {image.display_name}")
                    image = detected
                    self.registry.save(image)
                if image.has_boot_files and not self.boot_files.present(image):
                    self.boot_files.extract(image, Path(root))
        except (MountError, ExtractionError) as exc:
            log.warning(f"Could not refresh {image.display_name}: {exc}")
        return image

