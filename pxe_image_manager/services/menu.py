"""GRUB boot menu maintenance.

Generated entries are wrapped in sentinel comments::

    ### BEGIN PXE-IMAGE iso:ubuntu-24.04-server ###
    menuentry '...' --class linux --id=iso-ubuntu-24.04-server {
        ...
    }
    ### END PXE-IMAGE iso:ubuntu-24.04-server ###

Only sentinel blocks are ever rewritten. Static entries (local boot, tools,
system control) are left alone whatever their labels say.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable, Optional, Union

from pxe_image_manager.config.settings import Settings
from pxe_image_manager.detection import ISO_NAME, NFS_ROOT, PXE_SERVER_IP
from pxe_image_manager.domain import BootImage
from pxe_image_manager.logging import LoggerFactory
from pxe_image_manager.storage import commands
from pxe_image_manager.storage.exceptions import MenuError
from pxe_image_manager.storage.file_lock import locked
from pxe_image_manager.storage.file_utils import (
    atomic_write_text,
    backup_file,
    chown_best_effort,
)

from .boot_files import BootFiles


log = LoggerFactory.for_menu()

INSERTION_MARKER = "# Boot image entries will be automatically added here"
BEGIN_RE = re.compile(r"^### BEGIN PXE-IMAGE (\S+) ###$")
END_RE = re.compile(r"^### END PXE-IMAGE (\S+) ###$")

BASE_MENU_TEMPLATE = """\
# GRUB Configuration for UEFI PXE Boot
# Managed by pxe-image-manager; entries between PXE-IMAGE markers are generated

# Load grubenv for persistent settings
load_env

if [ -z "$timeout" ]; then
    set timeout=@TIMEOUT@
fi
if [ -z "$default" ]; then
    set default="${saved_entry}"
fi

insmod part_gpt
insmod part_msdos
insmod fat
insmod ext2
insmod net
insmod efinet
insmod tftp
insmod http
insmod chain
insmod linux
insmod configfile
insmod normal
insmod test
insmod search
insmod gzio
insmod echo

if [ "${grub_platform}" = "efi" ]; then
    insmod efi_gop
    insmod efi_uga
fi

net_bootp
if [ -z "$net_default_ip" ]; then
    echo "Warning: Network configuration may have failed"
fi

if [ -n "$net_default_gateway" ]; then
    set pxe_server=$net_default_gateway
else
    set pxe_server=@PXE_SERVER_IP@
fi

set root=(tftp,$pxe_server)

# === Boot Images ===
@MARKER@

# === Local Boot Options ===

menuentry 'Boot from local disk' --class os --id=local {
    search --no-floppy --set=root --label / 2>/dev/null
    if [ -n "$root" ]; then
        if [ -f /EFI/BOOT/BOOTX64.EFI ]; then
            chainloader /EFI/BOOT/BOOTX64.EFI
        else
            set root=(hd0)
            chainloader +1
        fi
    else
        set root=(hd0)
        chainloader +1
    fi
    boot
}

# === System Tools ===

menuentry 'Memory Test (EFI)' --class memtest --id=memtest {
    search --no-floppy --set=root --file /tools/memtest86.efi 2>/dev/null
    if [ -n "$root" ] && [ -f /tools/memtest86.efi ]; then
        chainloader /tools/memtest86.efi
        boot
    fi
    echo "Memory test not available"
    echo "Press any key to return to menu..."
    read
}

# === System Information & Control ===

menuentry 'Network Information' --class info --id=netinfo {
    echo "=== Network Configuration ==="
    echo "PXE Server: $pxe_server"
    echo "Client MAC: $net_default_mac"
    echo "Client IP: $net_default_ip"
    echo "Gateway: $net_default_gateway"
    echo ""
    echo "Press any key to return to menu..."
    read
}

submenu 'System Control' --id=control {
    menuentry 'Reboot' --class restart --id=reboot {
        echo "Rebooting system..."
        reboot
    }

    menuentry 'Shutdown' --class shutdown --id=shutdown {
        echo "Shutting down system..."
        halt
    }
}
"""


def begin_sentinel(key: str) -> str:
    return f"### BEGIN PXE-IMAGE {key} ###"


def end_sentinel(key: str) -> str:
    return f"### END PXE-IMAGE {key} ###"


def _grub_quote(value: str) -> str:
    return "'" + value.replace("'", "'\\''") + "'"


def strip_blocks(lines: list[str], keys: Optional[set[str]] = None) -> tuple[list[str], int]:
    """Drop sentinel blocks (all of them, or those in ``keys``).

    Returns:
        (remaining lines, number of blocks dropped)
    """
    kept: list[str] = []
    dropped = 0
    current: Optional[str] = None
    for line in lines:
        stripped = line.strip()
        if current is not None:
            end = END_RE.match(stripped)
            if end and end.group(1) == current:
                current = None
                continue
            if BEGIN_RE.match(stripped) is None and stripped != INSERTION_MARKER:
                continue
            # Unterminated block: stop dropping at the next boundary
            log.warning(f"Menu block {current} has no end marker")
            current = None
        begin = BEGIN_RE.match(stripped)
        if begin and (keys is None or begin.group(1) in keys):
            current = begin.group(1)
            dropped += 1
            continue
        kept.append(line)
    if current is not None:
        log.warning(f"Menu block {current} has no end marker")
    return kept, dropped


def insert_blocks(lines: list[str], blocks: Iterable[list[str]]) -> list[str]:
    """Insert blocks just above the insertion marker, or append them."""
    new_lines = [line for block in blocks for line in block]
    for index, line in enumerate(lines):
        if line.strip() == INSERTION_MARKER:
            return lines[:index] + new_lines + lines[index:]
    return lines + new_lines


class MenuSynchronizer:
    def __init__(self, settings: Settings, boot_files: Optional[BootFiles] = None):
        self.settings = settings
        self.boot_files = boot_files or BootFiles(settings)

    @property
    def menu_file(self) -> Path:
        return self.settings.menu_file

    def base_menu(self) -> str:
        return (
            BASE_MENU_TEMPLATE.replace("@TIMEOUT@", str(self.settings.menu_timeout))
            .replace("@PXE_SERVER_IP@", self.settings.pxe_server_ip or "")
            .replace("@MARKER@", INSERTION_MARKER)
        )

    def ensure_menu(self) -> bool:
        """Write the base menu if none exists. Returns True if it was created."""
        if self.menu_file.exists():
            return False
        atomic_write_text(self.menu_file, self.base_menu(), mode=0o644)
        chown_best_effort(self.menu_file, self.settings.tftp_owner)
        log.info(f"Created base boot menu {self.menu_file}")
        return True

    def _read_lines(self) -> list[str]:
        return self.menu_file.read_text(encoding="utf-8").splitlines()

    def _write_lines(self, lines: list[str]) -> None:
        previous = self.menu_file.read_text(encoding="utf-8")
        backup_file(self.menu_file, keep=self.settings.menu_backup_keep)
        atomic_write_text(self.menu_file, "\n".join(lines) + "\n")
        problem = self.check_syntax()
        if problem:
            atomic_write_text(self.menu_file, previous)
            raise MenuError(f"GRUB syntax check failed, menu left unchanged: {problem}")

    def check_syntax(self) -> Optional[str]:
        """Run grub-script-check when installed. Returns the error text, if any."""
        if not commands.command_available("grub-script-check"):
            return None
        result = commands.run_command(
            ["grub-script-check", str(self.menu_file)],
            timeout=self.settings.command_timeout,
        )
        if result.returncode != 0:
            return result.stderr.strip() or result.stdout.strip() or f"exit {result.returncode}"
        return None

    def reload(self) -> bool:
        service = self.settings.tftp_service
        result = commands.run_command(
            ["systemctl", "restart", service], timeout=self.settings.command_timeout
        )
        if result.returncode != 0:
            log.warning(f"Failed to restart {service}: {result.stderr.strip()}")
            return False
        log.debug(f"Restarted {service}")
        return True

    def render_entry(self, image: BootImage) -> list[str]:
        params = (
            image.boot_params.replace(ISO_NAME, image.name)
            .replace(PXE_SERVER_IP, self.settings.pxe_server_ip or "")
            .replace(NFS_ROOT, str(self.settings.nfs_root))
        )
        title = f"{image.release_name} ({image.display_name})"
        kernel = self.boot_files.tftp_path(self.boot_files.kernel_file(image))
        initrd = self.boot_files.tftp_path(self.boot_files.initrd_file(image))
        linux_line = f"    linux {kernel} {params}".rstrip()
        return [
            begin_sentinel(image.key),
            f"menuentry {_grub_quote(title)} --class linux --id={image.menu_id} {{",
            f"    echo {_grub_quote('Loading ' + title + '...')}",
            linux_line,
            f"    initrd {initrd}",
            "    boot",
            "}",
            end_sentinel(image.key),
        ]

    def _check_bootable(self, image: BootImage) -> None:
        if not image.has_boot_files:
            raise MenuError(f"{image.display_name} has no boot files, no menu entry created")
        if not self.boot_files.kernel_file(image).is_file():
            raise MenuError(
                f"Kernel for {image.display_name} missing at {self.boot_files.kernel_file(image)}"
            )

    def add_entry(self, image: BootImage) -> bool:
        """Add (or replace) the entry for ``image``.

        Returns:
            True if the base menu had to be created first

        Raises:
            MenuError: If the image is not bootable or the menu fails validation
        """
        self._check_bootable(image)
        with locked(self.menu_file, self.settings.lock_dir):
            created = self.ensure_menu()
            lines, _ = strip_blocks(self._read_lines(), {image.key})
            lines = insert_blocks(lines, [self.render_entry(image)])
            self._write_lines(lines)
        log.info(f"Added boot menu entry for {image.display_name}")
        self.reload()
        return created

    def remove_entry(
        self, image_or_key: Union[BootImage, str], discard_unchanged: bool = False
    ) -> bool:
        """Drop the entry for an image or key. Returns False if there was none.

        With ``discard_unchanged`` the menu file itself is deleted when nothing
        but the untouched base menu is left.
        """
        key = image_or_key.key if isinstance(image_or_key, BootImage) else image_or_key
        if not self.menu_file.exists():
            return False
        with locked(self.menu_file, self.settings.lock_dir):
            lines, dropped = strip_blocks(self._read_lines(), {key})
            if not dropped:
                return False
            if discard_unchanged and "\n".join(lines) + "\n" == self.base_menu():
                backup_file(self.menu_file, keep=self.settings.menu_backup_keep)
                self.menu_file.unlink()
                log.info(f"Removed boot menu entry {key} and the now empty {self.menu_file}")
                self.reload()
                return True
            self._write_lines(lines)
        log.info(f"Removed boot menu entry {key}")
        self.reload()
        return True

    def refresh_all(self, images: Iterable[BootImage]) -> int:
        """Rebuild every generated entry from ``images``. Returns the entry count."""
        with locked(self.menu_file, self.settings.lock_dir):
            self.ensure_menu()
            lines, dropped = strip_blocks(self._read_lines())
            blocks = []
            for image in sorted(images, key=lambda i: (i.name, i.kind.value)):
                if image.has_boot_files and self.boot_files.present(image):
                    blocks.append(self.render_entry(image))
                else:
                    log.debug(f"Skipping {image.display_name}: no boot files")
            self._write_lines(insert_blocks(lines, blocks))
        log.info(f"Boot menu rebuilt: {dropped} entries removed, {len(blocks)} written")
        self.reload()
        return len(blocks)

    def entries(self) -> list[str]:
        if not self.menu_file.exists():
            return []
        keys = []
        for line in self._read_lines():
            match = BEGIN_RE.match(line.strip())
            if match:
                keys.append(match.group(1))
        return keys

    def has_entry(self, key: str) -> bool:
        return key in self.entries()
