"""Tests for storage/mount.py - loop mounts and partition maps."""

from pathlib import Path

import pytest

from pxe_image_manager.domain import ImageKind
from pxe_image_manager.storage import mount
from pxe_image_manager.storage.exceptions import (
    LoopDeviceError,
    MountError,
    UnmountFailedError,
)
from tests.conftest import (
    mbr_entry,
    write_empty_mbr_img,
    write_ext4_img,
    write_iso,
    write_mbr_disk,
)


class TestReadMounts:
    def test_parses_and_unescapes(self, tmp_path):
        """Test octal escapes in /proc/mounts are decoded."""
        proc = tmp_path / "mounts"
        proc.write_text(
            "/dev/sda1 / ext4 rw 0 0\n"
            "/srv/iso/my\\040image.iso /srv/nfs/iso/my\\040image iso9660 ro 0 0\n"
        )

        mounts = mount.read_mounts(proc)

        assert mounts[1] == ("/srv/iso/my image.iso", Path("/srv/nfs/iso/my image"))

    def test_missing_file(self, tmp_path):
        assert mount.read_mounts(tmp_path / "missing") == []

    def test_mounts_under_deepest_first(self, tmp_path):
        proc = tmp_path / "mounts"
        proc.write_text(
            "a /mnt/pxe 0 0\n"
            "b /mnt/pxe/iso 0 0\n"
            "c /mnt/pxe/iso/foo 0 0\n"
            "d /srv/other 0 0\n"
        )

        found = mount.mounts_under(Path("/mnt/pxe"), proc)

        assert found == [Path("/mnt/pxe/iso/foo"), Path("/mnt/pxe/iso")]


class TestMountLoop:
    def test_file_uses_loop_option(self, fake_system, tmp_path):
        mount.mount_loop(tmp_path / "a.img", tmp_path / "mnt", offset=1048576, fs_type="ext4")

        assert fake_system.calls[-1] == [
            "mount",
            "-o",
            "loop,ro,offset=1048576",
            "-t",
            "ext4",
            str(tmp_path / "a.img"),
            str(tmp_path / "mnt"),
        ]

    def test_block_device_is_not_looped(self, fake_system, tmp_path):
        mount.mount_loop(Path("/dev/loop7"), tmp_path / "mnt")

        assert fake_system.calls[-1][:3] == ["mount", "-o", "ro"]

    def test_failure_raises_mount_error(self, fake_system, tmp_path):
        fake_system.failures[("mount",)] = (32, "wrong fs type")

        with pytest.raises(MountError, match="wrong fs type"):
            mount.mount_loop(tmp_path / "a.iso", tmp_path / "mnt")


class TestUnmount:
    def test_lazy(self, fake_system, tmp_path):
        mount.unmount(tmp_path, lazy=True)

        assert fake_system.calls[-1] == ["umount", "-l", str(tmp_path)]

    def test_failure(self, fake_system, tmp_path):
        fake_system.failures[("umount",)] = (32, "target is busy")

        with pytest.raises(UnmountFailedError, match="target is busy"):
            mount.unmount(tmp_path)


class TestLoopDevices:
    def test_attach_loop(self, fake_system, tmp_path):
        fake_system.outputs[("losetup", "--find")] = "/dev/loop3\n"

        assert mount.attach_loop(tmp_path / "a.img") == "/dev/loop3"

    def test_attach_loop_failure(self, fake_system, tmp_path):
        fake_system.failures[("losetup", "--find")] = (1, "no free loop device")

        with pytest.raises(LoopDeviceError, match="no free loop device"):
            mount.attach_loop(tmp_path / "a.img")

    def test_attach_loop_garbage_output(self, fake_system, tmp_path):
        fake_system.outputs[("losetup", "--find")] = "\n"

        with pytest.raises(LoopDeviceError):
            mount.attach_loop(tmp_path / "a.img")

    def test_map_partitions(self, fake_system):
        fake_system.outputs[("kpartx", "-a")] = (
            "add map loop3p1 (253:0): 0 4096 linear 7:3 2048\n"
            "add map loop3p2 (253:1): 0 4096 linear 7:3 6144\n"
        )

        maps = mount.map_partitions("/dev/loop3")

        assert maps == ["/dev/mapper/loop3p1", "/dev/mapper/loop3p2"]

    def test_map_partitions_failure_is_empty(self, fake_system):
        fake_system.failures[("kpartx", "-a")] = (127, "kpartx: command not found")

        assert mount.map_partitions("/dev/loop3") == []

    def test_release_loop_device(self, fake_system):
        assert mount.release_loop_device("/dev/loop3") is True

        assert fake_system.calls == [["kpartx", "-d", "/dev/loop3"], ["losetup", "-d", "/dev/loop3"]]

    def test_list_loop_devices(self, fake_system):
        fake_system.outputs[("losetup", "-l")] = (
            "/dev/loop0 /var/lib/snapd/core.snap\n"
            "/dev/loop7 /srv/artifacts/img/debian.img (deleted)\n"
            "/dev/loop9\n"
        )

        devices = mount.list_loop_devices()

        assert devices == [
            ("/dev/loop0", Path("/var/lib/snapd/core.snap")),
            ("/dev/loop7", Path("/srv/artifacts/img/debian.img")),
        ]


class TestMountForInspection:
    """Tests for the mount_for_inspection() context manager."""

    def test_iso_mount_and_cleanup(self, fake_system, tmp_path):
        image = write_iso(tmp_path / "ubuntu.iso")
        target = tmp_path / "inspect" / "iso" / "ubuntu"

        with mount.mount_for_inspection(image, ImageKind.ISO, target) as root:
            assert root == target
            assert fake_system.is_mounted(target)
            assert fake_system.calls[0][:5] == ["mount", "-o", "loop,ro", "-t", "iso9660"]

        assert not fake_system.is_mounted(target)
        assert not target.exists()

    def test_filesystem_img_is_loop_mounted(self, fake_system, tmp_path):
        image = write_ext4_img(tmp_path / "root.img")
        target = tmp_path / "inspect" / "img" / "root"

        with mount.mount_for_inspection(image, ImageKind.IMG, target):
            pass

        assert fake_system.commands_named("losetup") == []
        assert fake_system.commands_named("mount")[0][:5] == [
            "mount",
            "-o",
            "loop,ro",
            "-t",
            "ext4",
        ]

    def test_zero_partition_img_mounts_raw_device(self, fake_system, tmp_path):
        """Test an empty partition table mounts the loop device itself."""
        image = write_empty_mbr_img(tmp_path / "blank.img")
        target = tmp_path / "inspect" / "img" / "blank"
        fake_system.outputs[("losetup", "--find")] = "/dev/loop7\n"

        with mount.mount_for_inspection(image, ImageKind.IMG, target):
            assert fake_system.commands_named("mount")[0] == [
                "mount",
                "-o",
                "ro",
                "/dev/loop7",
                str(target),
            ]

        assert fake_system.commands_named("kpartx") == [["kpartx", "-d", "/dev/loop7"]]
        assert ["losetup", "-d", "/dev/loop7"] in fake_system.calls

    def test_partitioned_img_mounts_first_map(self, fake_system, tmp_path):
        image = write_mbr_disk(tmp_path / "disk.img", [mbr_entry(0x83, 2048, 4096)], fs_at=2048)
        target = tmp_path / "inspect" / "img" / "disk"
        fake_system.outputs[("losetup", "--find")] = "/dev/loop7\n"
        fake_system.outputs[("kpartx", "-a")] = "add map loop7p1 (253:0): 0 4096 linear 7:7 2048\n"

        with mount.mount_for_inspection(image, ImageKind.IMG, target):
            pass

        assert fake_system.commands_named("mount")[0][-2:] == ["/dev/mapper/loop7p1", str(target)]

    def test_mount_failure_releases_device(self, fake_system, tmp_path):
        """Test a failed mount detaches the loop device and removes the dir."""
        image = write_empty_mbr_img(tmp_path / "blank.img")
        target = tmp_path / "inspect" / "img" / "blank"
        fake_system.outputs[("losetup", "--find")] = "/dev/loop7\n"
        fake_system.failures[("mount",)] = (32, "wrong fs type")

        with pytest.raises(MountError):
            with mount.mount_for_inspection(image, ImageKind.IMG, target):
                pytest.fail("block must not run")

        assert ["losetup", "-d", "/dev/loop7"] in fake_system.calls
        assert not target.exists()

    def test_busy_mount_point_rejected(self, fake_system, tmp_path):
        target = tmp_path / "inspect"
        target.mkdir()
        fake_system.mounted.add(target)

        with pytest.raises(MountError, match="already in use"):
            with mount.mount_for_inspection(write_iso(tmp_path / "a.iso"), ImageKind.ISO, target):
                pass

    def test_unmount_failure_retries_lazily(self, fake_system, tmp_path):
        image = write_iso(tmp_path / "a.iso")
        target = tmp_path / "inspect" / "a"

        with mount.mount_for_inspection(image, ImageKind.ISO, target):
            fake_system.failures[("umount", str(target))] = (32, "busy")

        assert ["umount", "-l", str(target)] in fake_system.calls
