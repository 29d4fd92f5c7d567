"""Tests for storage/registry.py - stored images and sidecars."""

from pathlib import Path

import pytest

from pxe_image_manager.domain import BootImage, ImageKind, ImgType
from pxe_image_manager.storage.registry import (
    Registry,
    format_sidecar,
    parse_sidecar,
    quote_value,
)
from tests.conftest import write_iso


@pytest.fixture
def registry(settings):
    return Registry(settings)


def stored(registry, name, kind, sidecar=None):
    path = registry.image_path(name, kind)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"image")
    if sidecar is not None:
        registry.sidecar_path(name, kind).write_text(sidecar)
    return path


class TestSidecarFormat:
    """Tests for sidecar quoting and parsing."""

    def test_quote_value_escapes_shell_characters(self):
        assert quote_value('a "b" $HOME `x` \\') == '"a \\"b\\" \\$HOME \\`x\\` \\\\"'

    def test_special_characters_survive(self, tmp_path):
        """Test values with quotes and dollars read back unchanged."""
        image = BootImage(
            name="odd",
            kind=ImageKind.ISO,
            source_path=tmp_path / "odd.iso",
            release_name='My "Special" $Release',
            boot_params="boot=casper nfsroot=##PXE_SERVER_IP##:##NFS_ROOT##/iso/##ISO_NAME##",
        )

        values = parse_sidecar(format_sidecar(image))

        assert values["RELEASE_NAME"] == 'My "Special" $Release'
        assert values["BOOT_PARAMS"] == image.boot_params

    def test_iso_sidecar_has_no_img_keys(self, tmp_path):
        text = format_sidecar(BootImage("a", ImageKind.ISO, tmp_path / "a.iso"))

        assert "IMG_TYPE" not in text
        assert text.startswith('DISTRO="unknown"\n')
        assert text.endswith("\n")

    def test_origin_keys_only_when_set(self, tmp_path):
        plain = format_sidecar(BootImage("a", ImageKind.ISO, tmp_path / "a.iso"))
        values = parse_sidecar(
            format_sidecar(
                BootImage(
                    "a", ImageKind.ISO, tmp_path / "a.iso", source_name="A.iso", created_menu=True
                )
            )
        )

        assert "SOURCE_NAME" not in plain
        assert "CREATED_MENU" not in plain
        assert values["SOURCE_NAME"] == "A.iso"
        assert values["CREATED_MENU"] == "yes"

    def test_img_sidecar_keys(self, tmp_path):
        image = BootImage(
            "disk",
            ImageKind.IMG,
            tmp_path / "disk.img",
            img_type=ImgType.PARTITIONED,
            partition_offset=1048576,
        )

        values = parse_sidecar(format_sidecar(image))

        assert values["IMG_TYPE"] == "partitioned"
        assert values["FS_TYPE"] == "unknown"
        assert values["PARTITION_OFFSET"] == "1048576"

    def test_parse_skips_comments_and_garbage(self):
        values = parse_sidecar('# header\nDISTRO="debian"\nnot a pair\nBROKEN="unterminated\n')

        assert values == {"DISTRO": "debian"}


class TestRegistryQueries:
    def test_get_missing_image(self, registry):
        assert registry.get("nothing", ImageKind.ISO) is None

    def test_get_without_sidecar(self, registry):
        """Test an image without a sidecar loads with unknown metadata."""
        stored(registry, "bare", ImageKind.ISO)

        image = registry.get("bare", ImageKind.ISO)

        assert image.distro == "unknown"
        assert image.release_name == "Unknown Linux Distribution"
        assert image.source_path == registry.image_path("bare", ImageKind.ISO)

    def test_get_img_fields(self, registry):
        stored(
            registry,
            "disk",
            ImageKind.IMG,
            'DISTRO="debian"\nIMG_TYPE="filesystem"\nFS_TYPE="ext4"\nPARTITION_OFFSET="0"\n',
        )

        image = registry.get("disk", ImageKind.IMG)

        assert image.distro == "debian"
        assert image.img_type is ImgType.FILESYSTEM
        assert image.fs_type == "ext4"

    def test_bad_img_values_fall_back(self, registry):
        stored(registry, "disk", ImageKind.IMG, 'IMG_TYPE="weird"\nPARTITION_OFFSET="lots"\n')

        image = registry.get("disk", ImageKind.IMG)

        assert image.img_type is ImgType.UNKNOWN
        assert image.partition_offset == 0

    def test_find_returns_every_kind(self, registry):
        stored(registry, "foo", ImageKind.ISO)
        stored(registry, "foo", ImageKind.IMG)

        assert {image.kind for image in registry.find("foo")} == {ImageKind.ISO, ImageKind.IMG}

    def test_list_images_sorted(self, registry):
        for name, kind in [("zeta", ImageKind.ISO), ("alpha", ImageKind.IMG), ("alpha", ImageKind.ISO)]:
            stored(registry, name, kind)
        # Sidecars and partial copies are not images
        (registry.settings.storage_dir(ImageKind.ISO) / ".beta.iso.partial").write_bytes(b"")

        keys = [image.key for image in registry.list_images()]

        assert keys == ["img:alpha", "iso:alpha", "iso:zeta"]
        assert registry.names(ImageKind.ISO) == {"alpha", "zeta"}


class TestRegistryChanges:
    def test_store_copies(self, registry, source_dir):
        source = write_iso(source_dir / "ubuntu.iso")

        target = registry.store(source, ImageKind.ISO)

        assert target == registry.image_path("ubuntu", ImageKind.ISO)
        assert target.read_bytes() == source.read_bytes()
        assert source.exists()
        assert not list(target.parent.glob("*.partial"))

    def test_store_in_place(self, registry):
        path = stored(registry, "here", ImageKind.ISO)

        assert registry.store(path, ImageKind.ISO) == path
        assert path.read_bytes() == b"image"

    def test_store_failure_leaves_nothing(self, registry, source_dir, mocker):
        source = write_iso(source_dir / "broken.iso")
        mocker.patch("shutil.copyfile", side_effect=OSError("disk full"))

        with pytest.raises(OSError):
            registry.store(source, ImageKind.ISO)

        assert not registry.exists("broken", ImageKind.ISO)

    def test_save_and_delete(self, registry):
        path = stored(registry, "x", ImageKind.ISO)
        image = BootImage("x", ImageKind.ISO, path, distro="debian")

        sidecar = registry.save(image)

        assert sidecar == Path(str(path)[: -len(".iso")] + ".info")
        assert registry.get("x", ImageKind.ISO).distro == "debian"
        assert registry.delete(image) is True
        assert not path.exists()
        assert not sidecar.exists()
        assert registry.delete(image) is False

    def test_origin_fields_survive(self, registry):
        path = stored(registry, "ubuntu", ImageKind.ISO)
        image = BootImage(
            "ubuntu",
            ImageKind.ISO,
            path,
            source_name="Ubuntu-22.04-AMD64.iso",
            created_menu=True,
        )

        registry.save(image)
        loaded = registry.get("ubuntu", ImageKind.ISO)

        assert loaded.source_name == "Ubuntu-22.04-AMD64.iso"
        assert loaded.created_menu is True
        assert registry.sidecar_path("ubuntu", ImageKind.ISO).read_text().startswith("DISTRO=")
