"""Tests for services/boot_files.py - kernel and initrd extraction."""

import os

import pytest

from pxe_image_manager.domain import BootImage, ImageKind
from pxe_image_manager.services.boot_files import BootFiles
from pxe_image_manager.storage.exceptions import ExtractionError
from tests.conftest import ubuntu_server_tree, write_tree


@pytest.fixture
def boot_files(settings):
    return BootFiles(settings)


def ubuntu_image(tmp_path, kind=ImageKind.ISO):
    return BootImage(
        name="ubuntu-24.04-server",
        kind=kind,
        source_path=tmp_path / "ubuntu-24.04-server.iso",
        kernel_path="casper/vmlinuz",
        initrd_path="casper/initrd",
    )


class TestPaths:
    def test_paths_are_namespaced_by_kind(self, boot_files, settings, tmp_path):
        image = ubuntu_image(tmp_path)

        assert boot_files.kernel_file(image) == (
            settings.tftp_root / "kernels" / "iso" / "ubuntu-24.04-server" / "vmlinuz"
        )
        assert boot_files.initrd_file(image) == (
            settings.tftp_root / "initrd" / "iso" / "ubuntu-24.04-server" / "initrd"
        )
        assert boot_files.kernel_dir(image) != boot_files.kernel_dir(
            ubuntu_image(tmp_path, ImageKind.IMG)
        )

    def test_tftp_path(self, boot_files, settings, tmp_path):
        path = boot_files.kernel_file(ubuntu_image(tmp_path))

        assert boot_files.tftp_path(path) == "/kernels/iso/ubuntu-24.04-server/vmlinuz"


class TestExtract:
    """Tests for BootFiles.extract()."""

    def test_copies_kernel_and_initrd(self, boot_files, image_root, tmp_path):
        ubuntu_server_tree(image_root)
        image = ubuntu_image(tmp_path)

        assert boot_files.extract(image, image_root) is True

        assert boot_files.kernel_file(image).read_text() == "kernel"
        assert boot_files.initrd_file(image).read_text() == "initrd"
        assert boot_files.kernel_file(image).stat().st_mode & 0o777 == 0o644
        assert boot_files.present(image)

    def test_follows_links_inside_image(self, boot_files, image_root, tmp_path):
        write_tree(image_root, {"boot/vmlinuz-6.1": "k", "boot/initrd.img-6.1": "i"})
        os.symlink("/boot/vmlinuz-6.1", image_root / "vmlinuz")
        os.symlink("boot/initrd.img-6.1", image_root / "initrd.img")
        image = BootImage(
            "rescue",
            ImageKind.IMG,
            tmp_path / "rescue.img",
            kernel_path="vmlinuz",
            initrd_path="initrd.img",
        )

        boot_files.extract(image, image_root)

        assert boot_files.kernel_file(image).read_text() == "k"
        assert not boot_files.kernel_file(image).is_symlink()

    def test_no_boot_paths_skips(self, boot_files, image_root, tmp_path):
        image = BootImage("tools", ImageKind.IMG, tmp_path / "tools.img")

        assert boot_files.extract(image, image_root) is False
        assert not boot_files.kernel_dir(image).exists()

    def test_missing_initrd_copies_nothing(self, boot_files, image_root, tmp_path):
        """Test a missing source fails before anything is copied."""
        write_tree(image_root, {"casper/vmlinuz": "kernel"})
        image = ubuntu_image(tmp_path)

        with pytest.raises(ExtractionError, match="casper/initrd"):
            boot_files.extract(image, image_root)

        assert not boot_files.kernel_file(image).exists()


class TestRemoveAndOrphans:
    def test_remove(self, boot_files, image_root, tmp_path):
        ubuntu_server_tree(image_root)
        image = ubuntu_image(tmp_path)
        boot_files.extract(image, image_root)

        assert boot_files.remove(image) is True
        assert not boot_files.kernel_dir(image).exists()
        assert not boot_files.initrd_dir(image).exists()
        assert boot_files.remove(image) is False

    def test_orphans(self, boot_files, settings):
        (settings.kernels_dir / "iso" / "kept").mkdir(parents=True)
        (settings.kernels_dir / "iso" / "gone").mkdir(parents=True)
        (settings.initrd_dir / "img" / "kept").mkdir(parents=True)

        orphans = boot_files.orphans([(ImageKind.ISO, "kept")])

        assert orphans == [
            settings.kernels_dir / "iso" / "gone",
            settings.initrd_dir / "img" / "kept",
        ]
