"""Tests for storage/exceptions.py - hierarchy and messages."""

import pytest

from pxe_image_manager.storage.exceptions import (
    AmbiguousImageError,
    CommandError,
    ConfigurationError,
    ExtractionError,
    ImageManagerError,
    ImageNotFoundError,
    LoopDeviceError,
    MenuError,
    MountError,
    NotRootError,
    PreconditionError,
    UnmountFailedError,
    UnsupportedImageError,
)


class TestHierarchy:
    """Tests for exception inheritance."""

    @pytest.mark.parametrize(
        "error",
        [
            NotRootError("add"),
            ImageNotFoundError("foo"),
            UnsupportedImageError("foo.zip", "bad"),
            AmbiguousImageError("foo", ["iso", "img"]),
        ],
    )
    def test_precondition_errors(self, error):
        """Test precondition errors share a base class."""
        assert isinstance(error, PreconditionError)
        assert isinstance(error, ImageManagerError)

    def test_mount_errors(self):
        """Test loop and unmount errors are mount errors."""
        assert isinstance(LoopDeviceError("/x.img", "busy"), MountError)
        assert isinstance(UnmountFailedError("/mnt/x"), MountError)

    def test_other_errors(self):
        assert isinstance(ExtractionError("foo.iso", "casper/vmlinuz"), ImageManagerError)
        assert isinstance(MenuError("bad"), ImageManagerError)
        assert isinstance(CommandError(["ls"], 1), ImageManagerError)


class TestMessages:
    """Tests for exception messages and attributes."""

    def test_configuration_error_lists_keys(self):
        """Test missing keys are enumerated in the message."""
        error = ConfigurationError(["pxe_server_ip", "tftp_root"])

        assert error.missing_keys == ["pxe_server_ip", "tftp_root"]
        assert "pxe_server_ip, tftp_root" in str(error)

    def test_configuration_error_reason(self):
        error = ConfigurationError(reason="bad JSON")

        assert error.missing_keys == []
        assert "bad JSON" in str(error)

    def test_command_error_timeout(self):
        """Test a None return code reads as a timeout."""
        error = CommandError(["mount", "-o", "loop"], None)

        assert "timed out" in str(error)
        assert error.returncode is None

    def test_command_error_output(self):
        error = CommandError(["umount", "/mnt"], 32, "target is busy")

        assert "target is busy" in str(error)
        assert error.command == ["umount", "/mnt"]

    def test_ambiguous_error_names_kinds(self):
        error = AmbiguousImageError("foo", ["iso", "img"])

        assert "iso and img" in str(error)
        assert "--kind" in str(error)

    def test_not_root_error(self):
        assert "'cleanup' must be run as root" in str(NotRootError("cleanup"))

    def test_unmount_failed_reason(self):
        error = UnmountFailedError("/mnt/x", "busy")

        assert str(error) == "Failed to unmount /mnt/x: busy"
