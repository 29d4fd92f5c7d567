"""Image content probing: filesystem superblocks and partition tables.

Decides how an image has to be mounted without mounting it. Signatures are
read straight from the file; ``blkid`` is only asked about filesystems this
module does not recognise itself.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from pxe_image_manager.domain import ImgType
from pxe_image_manager.logging import LoggerFactory

from . import commands


log = LoggerFactory.for_mount()

SECTOR_SIZE = 512

# Offset of the ISO 9660 primary volume descriptor identifier
ISO9660_OFFSET = 0x8001
ISO9660_MAGIC = b"CD001"

EXT_MAGIC_OFFSET = 1080
EXT_MAGIC = b"\x53\xef"
BTRFS_MAGIC_OFFSET = 0x10040
BTRFS_MAGIC = b"_BHRfS_M"

MBR_SIGNATURE = b"\x55\xaa"
MBR_TABLE_OFFSET = 446
MBR_ENTRY_SIZE = 16
GPT_PROTECTIVE_TYPE = 0xEE
MBR_EXTENDED_TYPES = {0x05, 0x0F, 0x85}
GPT_SIGNATURE = b"EFI PART"
GPT_MAX_ENTRIES = 128

# Enough to cover every signature above
HEADER_READ_SIZE = BTRFS_MAGIC_OFFSET + len(BTRFS_MAGIC)


@dataclass(frozen=True)
class PartitionEntry:
    number: int  # 1-based, as kpartx names the mapping (loop0p1)
    start_sector: int
    sectors: int
    type_id: str  # MBR type byte as hex, or GPT type GUID

    @property
    def offset_bytes(self) -> int:
        return self.start_sector * SECTOR_SIZE


@dataclass(frozen=True)
class ImageProbe:
    img_type: ImgType
    fs_type: str = ""
    table: str = ""  # "mbr", "gpt" or ""
    partitions: list[PartitionEntry] = field(default_factory=list)

    @property
    def first_partition(self) -> Optional[PartitionEntry]:
        return self.partitions[0] if self.partitions else None


def _read_header(path: Path) -> bytes:
    with path.open("rb") as f:
        return f.read(HEADER_READ_SIZE)


def _at(data: bytes, offset: int, length: int) -> bytes:
    return data[offset : offset + length]


def is_iso_image(path: Path) -> bool:
    """Check for the ISO 9660 volume descriptor signature."""
    if not path.is_file():
        return False
    try:
        with path.open("rb") as f:
            f.seek(ISO9660_OFFSET)
            return f.read(len(ISO9660_MAGIC)) == ISO9660_MAGIC
    except OSError:
        return False


def detect_filesystem(data: bytes) -> str:
    """Return a filesystem type from superblock signatures, or ''."""
    if _at(data, ISO9660_OFFSET, 5) == ISO9660_MAGIC:
        return "iso9660"
    if _at(data, 0, 4) == b"XFSB":
        return "xfs"
    if _at(data, 0, 4) == b"hsqs":
        return "squashfs"
    if _at(data, 3, 8) == b"NTFS    ":
        return "ntfs"
    if _at(data, 3, 8) == b"EXFAT   ":
        return "exfat"
    if _at(data, 510, 2) == MBR_SIGNATURE and (
        _at(data, 54, 3) == b"FAT" or _at(data, 82, 5) == b"FAT32"
    ):
        return "vfat"
    if _at(data, EXT_MAGIC_OFFSET, 2) == EXT_MAGIC:
        return "ext4"
    if _at(data, BTRFS_MAGIC_OFFSET, 8) == BTRFS_MAGIC:
        return "btrfs"
    return ""


def parse_mbr(data: bytes) -> list[PartitionEntry]:
    """Parse the four primary MBR entries, skipping empty and extended ones."""
    entries: list[PartitionEntry] = []
    for index in range(4):
        offset = MBR_TABLE_OFFSET + index * MBR_ENTRY_SIZE
        raw = _at(data, offset, MBR_ENTRY_SIZE)
        if len(raw) < MBR_ENTRY_SIZE:
            break
        type_byte = raw[4]
        start, sectors = struct.unpack_from("<II", raw, 8)
        if type_byte == 0 or type_byte in MBR_EXTENDED_TYPES:
            continue
        if start == 0 or sectors == 0:
            continue
        entries.append(
            PartitionEntry(
                number=index + 1,
                start_sector=start,
                sectors=sectors,
                type_id=f"0x{type_byte:02x}",
            )
        )
    return entries


def _is_protective_mbr(data: bytes) -> bool:
    return any(
        data[MBR_TABLE_OFFSET + i * MBR_ENTRY_SIZE + 4] == GPT_PROTECTIVE_TYPE
        for i in range(4)
        if len(data) >= MBR_TABLE_OFFSET + (i + 1) * MBR_ENTRY_SIZE
    )


def parse_gpt(path: Path, header: bytes) -> list[PartitionEntry]:
    """Parse GPT entries referenced by the header at LBA 1."""
    entries_lba, entry_count, entry_size = struct.unpack_from("<QII", header, 72)
    if entry_size < 128 or entry_count == 0:
        return []
    entry_count = min(entry_count, GPT_MAX_ENTRIES)
    with path.open("rb") as f:
        f.seek(entries_lba * SECTOR_SIZE)
        raw = f.read(entry_count * entry_size)

    entries: list[PartitionEntry] = []
    for index in range(entry_count):
        entry = raw[index * entry_size : (index + 1) * entry_size]
        if len(entry) < 56:
            break
        type_guid = entry[0:16]
        if type_guid == b"\x00" * 16:
            continue
        first_lba, last_lba = struct.unpack_from("<QQ", entry, 32)
        if first_lba == 0 or last_lba < first_lba:
            continue
        entries.append(
            PartitionEntry(
                number=index + 1,
                start_sector=first_lba,
                sectors=last_lba - first_lba + 1,
                type_id=type_guid.hex(),
            )
        )
    return entries


def filesystem_at(path: Path, offset: int) -> str:
    """Filesystem type of the superblock starting ``offset`` bytes into ``path``."""
    with path.open("rb") as f:
        f.seek(offset)
        return detect_filesystem(f.read(HEADER_READ_SIZE))


def _blkid_type(path: Path, timeout: Optional[float]) -> str:
    result = commands.run_command(
        ["blkid", "-p", "-o", "value", "-s", "TYPE", str(path)], timeout=timeout
    )
    if result.returncode != 0:
        return ""
    return result.stdout.strip()


def probe_image(path: Path, timeout: Optional[float] = None) -> ImageProbe:
    """Classify an image file as a bare filesystem or a partitioned disk.

    A partition table with no usable entries is still PARTITIONED; the mount
    strategy falls back to the raw device in that case.

    Raises:
        OSError: If the file cannot be read
    """
    data = _read_header(path)

    fs_type = detect_filesystem(data)
    if fs_type:
        log.debug(f"{path.name}: {fs_type} filesystem")
        return ImageProbe(ImgType.FILESYSTEM, fs_type=fs_type)

    table = ""
    partitions: list[PartitionEntry] = []
    gpt_header = _at(data, SECTOR_SIZE, 92)
    if gpt_header[:8] == GPT_SIGNATURE:
        table, partitions = "gpt", parse_gpt(path, gpt_header)
    elif _at(data, 510, 2) == MBR_SIGNATURE:
        if _is_protective_mbr(data):
            # Protective MBR without a readable GPT header
            table = "gpt"
        else:
            table, partitions = "mbr", parse_mbr(data)

    if table:
        log.debug(f"{path.name}: {table.upper()} with {len(partitions)} partitions")
        fs_type = filesystem_at(path, partitions[0].offset_bytes) if partitions else ""
        return ImageProbe(
            ImgType.PARTITIONED, fs_type=fs_type, table=table, partitions=partitions
        )

    fs_type = _blkid_type(path, timeout)
    if fs_type:
        return ImageProbe(ImgType.FILESYSTEM, fs_type=fs_type)
    return ImageProbe(ImgType.UNKNOWN)
