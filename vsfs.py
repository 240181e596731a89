"""
vsfs.py — VSFS on-disk format and image utility.

Defines the fixed layout of a VSFS image, the superblock and inode
records, the allocation bitmap helpers, and a small in-memory image
class used to create and inspect images.

Disk layout (256 KiB = 64 × 4096-byte blocks):
    Block 0        Superblock
    Block 1        Inode bitmap (one bit per inode slot)
    Block 2        Data bitmap (one bit per data block, relative to block 8)
    Blocks 3-7     Inode table (80 inodes × 256 bytes)
    Blocks 8-63    Data region

Superblock (block 0, big-endian):
    +0   magic[2]               u16  (0xD34D)
    +2   block_size[4]          u32  (4096)
    +6   total_blocks[4]        u32  (64)
    +10  inode_bitmap_block[4]  u32  (1)
    +14  data_bitmap_block[4]   u32  (2)
    +18  inode_table_start[4]   u32  (3)
    +22  first_data_block[4]    u32  (8)
    +26  inode_size[4]          u32  (256)
    +30  inode_count[4]         u32  (<= 80)
    +34  reserved               zeroed

Inode (256 bytes, little-endian):
    +0   mode  +4 uid  +8 gid  +12 size
    +16  access_time  +20 creation_time  +24 mod_time  +28 delete_time
    +32  links  +36 block_count  +40 direct
    +44  single_indirect  +48 double_indirect  +52 triple_indirect
    +56  reserved[200]

Bitmaps:
    Bit N of a bitmap is bit N%8 of byte N//8.  A set bit means the
    inode slot / data block is allocated.

The layout constants below are authoritative.  The superblock stored in
an image is checked against them; it is never used to locate anything.
"""

from __future__ import annotations

import struct
import sys
import time
from dataclasses import dataclass, field, fields
from pathlib import Path

# ── Constants ──────────────────────────────────────────────────────────

BLOCK_SIZE = 4096
TOTAL_BLOCKS = 64
MAGIC_NUMBER = 0xD34D

SUPERBLOCK_BLOCK = 0
INODE_BITMAP_BLOCK = 1
DATA_BITMAP_BLOCK = 2
INODE_TABLE_START = 3
INODE_TABLE_BLOCKS = 5
DATA_BLOCK_START = 8

INODE_SIZE = 256
MAX_INODES = (INODE_TABLE_BLOCKS * BLOCK_SIZE) // INODE_SIZE
MAX_DATA_BLOCKS = TOTAL_BLOCKS - DATA_BLOCK_START

SB_STRUCT = struct.Struct(">H8I")
INODE_STRUCT = struct.Struct("<14I")
INODE_RESERVED = INODE_SIZE - INODE_STRUCT.size


# ── Records ────────────────────────────────────────────────────────────

@dataclass
class Superblock:
    """The 34 meaningful bytes of block 0."""
    magic: int
    block_size: int
    total_blocks: int
    inode_bitmap_block: int
    data_bitmap_block: int
    inode_table_start: int
    first_data_block: int
    inode_size: int
    inode_count: int

    @classmethod
    def new(cls, inode_count: int = 0) -> "Superblock":
        """Superblock holding the expected value of every field."""
        return cls(
            magic=MAGIC_NUMBER,
            block_size=BLOCK_SIZE,
            total_blocks=TOTAL_BLOCKS,
            inode_bitmap_block=INODE_BITMAP_BLOCK,
            data_bitmap_block=DATA_BITMAP_BLOCK,
            inode_table_start=INODE_TABLE_START,
            first_data_block=DATA_BLOCK_START,
            inode_size=INODE_SIZE,
            inode_count=inode_count,
        )

    def pack(self) -> bytes:
        """Serialise into a zero-padded block."""
        buf = bytearray(BLOCK_SIZE)
        SB_STRUCT.pack_into(
            buf, 0,
            self.magic,
            self.block_size,
            self.total_blocks,
            self.inode_bitmap_block,
            self.data_bitmap_block,
            self.inode_table_start,
            self.first_data_block,
            self.inode_size,
            self.inode_count,
        )
        return bytes(buf)

    @classmethod
    def unpack(cls, data: bytes) -> "Superblock":
        if len(data) < SB_STRUCT.size:
            raise ValueError(
                f"superblock needs {SB_STRUCT.size} bytes, got {len(data)}")
        return cls(*SB_STRUCT.unpack_from(data, 0))


@dataclass
class Inode:
    """One 256-byte inode slot.

    Only ``direct`` is ever dereferenced by the checker; the three
    indirect pointers are carried through untouched.
    """
    mode: int = 0
    uid: int = 0
    gid: int = 0
    size: int = 0
    access_time: int = 0
    creation_time: int = 0
    mod_time: int = 0
    delete_time: int = 0
    links: int = 0
    block_count: int = 0
    direct: int = 0
    single_indirect: int = 0
    double_indirect: int = 0
    triple_indirect: int = 0
    reserved: bytes = field(default=b"\x00" * INODE_RESERVED, repr=False)

    @property
    def is_valid(self) -> bool:
        """An allocated inode must be linked and not deleted."""
        return self.links > 0 and self.delete_time == 0

    @property
    def indirect_pointers(self) -> tuple[int, int, int]:
        return (self.single_indirect, self.double_indirect,
                self.triple_indirect)

    def pack(self) -> bytes:
        values = [getattr(self, f.name) for f in fields(self)
                  if f.name != "reserved"]
        reserved = bytes(self.reserved[:INODE_RESERVED])
        reserved += b"\x00" * (INODE_RESERVED - len(reserved))
        return INODE_STRUCT.pack(*values) + reserved

    @classmethod
    def unpack(cls, data: bytes) -> "Inode":
        if len(data) < INODE_SIZE:
            raise ValueError(
                f"inode needs {INODE_SIZE} bytes, got {len(data)}")
        values = INODE_STRUCT.unpack_from(data, 0)
        return cls(*values,
                   reserved=bytes(data[INODE_STRUCT.size:INODE_SIZE]))


# ── Layout helpers ─────────────────────────────────────────────────────

def inode_location(slot: int) -> tuple[int, int]:
    """Return (block index, byte offset within block) of inode *slot*."""
    byte_offset = slot * INODE_SIZE
    return (INODE_TABLE_START + byte_offset // BLOCK_SIZE,
            byte_offset % BLOCK_SIZE)


def is_data_block(block: int) -> bool:
    """True if *block* lies inside the data region."""
    return DATA_BLOCK_START <= block < TOTAL_BLOCKS


def _epoch_seconds() -> int:
    """Current Unix epoch in seconds (u32)."""
    return int(time.time()) & 0xFFFFFFFF


# ── Bitmap helpers ─────────────────────────────────────────────────────

def bitmap_get(bmap: bytes | bytearray, index: int) -> bool:
    """Return True if entry *index* is marked allocated."""
    byte_idx, bit_idx = divmod(index, 8)
    if byte_idx >= len(bmap):
        return False
    return bool(bmap[byte_idx] & (1 << bit_idx))


def bitmap_set(bmap: bytearray, index: int):
    """Mark entry *index* as allocated."""
    byte_idx, bit_idx = divmod(index, 8)
    if byte_idx < len(bmap):
        bmap[byte_idx] |= (1 << bit_idx)


def bitmap_clear(bmap: bytearray, index: int):
    """Mark entry *index* as free."""
    byte_idx, bit_idx = divmod(index, 8)
    if byte_idx < len(bmap):
        bmap[byte_idx] &= ~(1 << bit_idx) & 0xFF


# ── Image-level operations ─────────────────────────────────────────────

class VSFSImage:
    """In-memory representation of a VSFS disk image."""

    def __init__(self, data: bytes | bytearray | None = None):
        if data is not None:
            self.img = bytearray(data)
        else:
            self.img = bytearray(TOTAL_BLOCKS * BLOCK_SIZE)

    # ── block I/O ──────────────────────────────────────────────────

    def _block(self, n: int) -> memoryview:
        off = n * BLOCK_SIZE
        return memoryview(self.img)[off : off + BLOCK_SIZE]

    def _write_block(self, n: int, data: bytes | bytearray):
        off = n * BLOCK_SIZE
        self.img[off : off + BLOCK_SIZE] = data[:BLOCK_SIZE]

    # ── superblock ─────────────────────────────────────────────────

    @property
    def superblock(self) -> Superblock:
        return Superblock.unpack(self._block(SUPERBLOCK_BLOCK))

    @superblock.setter
    def superblock(self, sb: Superblock):
        self._write_block(SUPERBLOCK_BLOCK, sb.pack())

    # ── bitmaps ────────────────────────────────────────────────────

    @property
    def inode_bitmap(self) -> bytearray:
        return bytearray(self._block(INODE_BITMAP_BLOCK))

    @inode_bitmap.setter
    def inode_bitmap(self, bmap: bytearray):
        self._write_block(INODE_BITMAP_BLOCK, bmap)

    @property
    def data_bitmap(self) -> bytearray:
        return bytearray(self._block(DATA_BITMAP_BLOCK))

    @data_bitmap.setter
    def data_bitmap(self, bmap: bytearray):
        self._write_block(DATA_BITMAP_BLOCK, bmap)

    # ── inodes ─────────────────────────────────────────────────────

    def read_inode(self, slot: int) -> Inode:
        block, offset = inode_location(slot)
        off = block * BLOCK_SIZE + offset
        return Inode.unpack(self.img[off : off + INODE_SIZE])

    def write_inode(self, slot: int, inode: Inode):
        block, offset = inode_location(slot)
        off = block * BLOCK_SIZE + offset
        self.img[off : off + INODE_SIZE] = inode.pack()

    # ── public API ─────────────────────────────────────────────────

    def format(self, inode_count: int = 0):
        """Initialise a fresh, consistent VSFS on this image."""
        self.img[:] = b"\x00" * len(self.img)
        self.superblock = Superblock.new(inode_count)

    def alloc_inode(self, direct: int = 0, size: int = 0,
                    mode: int = 0o100644, **attrs) -> int:
        """Allocate the lowest free inode slot and return its index.

        The inode gets one link and, when *direct* is a data block,
        that block is marked in the data bitmap.  Extra keyword
        arguments override inode fields as-is, so callers can build
        deliberately broken inodes.
        """
        ibmap = self.inode_bitmap
        for slot in range(MAX_INODES):
            if not bitmap_get(ibmap, slot):
                break
        else:
            raise RuntimeError("Inode table full")

        now = _epoch_seconds()
        inode = Inode(mode=mode, size=size, access_time=now,
                      creation_time=now, mod_time=now, links=1,
                      block_count=1 if direct else 0, direct=direct)
        for name, value in attrs.items():
            if not hasattr(inode, name):
                raise AttributeError(f"Inode has no field {name!r}")
            setattr(inode, name, value)
        self.write_inode(slot, inode)

        bitmap_set(ibmap, slot)
        self.inode_bitmap = ibmap
        if is_data_block(direct):
            dbmap = self.data_bitmap
            bitmap_set(dbmap, direct - DATA_BLOCK_START)
            self.data_bitmap = dbmap

        sb = self.superblock
        sb.inode_count += 1
        self.superblock = sb
        return slot

    def list_inodes(self) -> list[tuple[int, Inode]]:
        """Return (slot, inode) for every slot marked in the inode bitmap."""
        ibmap = self.inode_bitmap
        return [(slot, self.read_inode(slot)) for slot in range(MAX_INODES)
                if bitmap_get(ibmap, slot)]

    def info(self) -> dict:
        """Return superblock metadata and allocation counts."""
        sb = self.superblock
        ibmap = self.inode_bitmap
        dbmap = self.data_bitmap
        return {
            "magic": f"0x{sb.magic:04X}",
            "valid_magic": sb.magic == MAGIC_NUMBER,
            "block_size": sb.block_size,
            "total_blocks": sb.total_blocks,
            "inode_count": sb.inode_count,
            "used_inodes": sum(bitmap_get(ibmap, i) for i in range(MAX_INODES)),
            "used_data_blocks": sum(bitmap_get(dbmap, i)
                                    for i in range(MAX_DATA_BLOCKS)),
            "free_data_blocks": sum(not bitmap_get(dbmap, i)
                                    for i in range(MAX_DATA_BLOCKS)),
        }

    # ── serialisation ──────────────────────────────────────────────

    def save(self, path: str | Path):
        """Write the image to a file."""
        Path(path).write_bytes(self.img)

    @classmethod
    def load(cls, path: str | Path) -> "VSFSImage":
        """Load an image from file."""
        return cls(bytearray(Path(path).read_bytes()))


# ── Convenience functions ──────────────────────────────────────────────

def format_image(path: str | Path, inode_count: int = 0) -> VSFSImage:
    """Create and format a new VSFS disk image."""
    fs = VSFSImage()
    fs.format(inode_count)
    fs.save(path)
    return fs


# ── CLI ────────────────────────────────────────────────────────────────

def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(
        prog="vsfs",
        description="VSFS disk image utility",
    )
    sub = parser.add_subparsers(dest="cmd")

    # format — create a blank formatted image
    p_fmt = sub.add_parser("format", help="Create a blank formatted image")
    p_fmt.add_argument("-o", "--output", default="vsfs.img",
                       help="Output path (default: vsfs.img)")

    # info — show superblock details
    p_info = sub.add_parser("info", help="Show superblock info")
    p_info.add_argument("image", help="Disk image path")

    # ls — list allocated inodes
    p_ls = sub.add_parser("ls", help="List allocated inodes")
    p_ls.add_argument("image", help="Disk image path")

    args = parser.parse_args(argv)

    if args.cmd is None:
        parser.print_help()
        return 0

    if args.cmd == "format":
        format_image(args.output)
        print(f"Formatted {args.output} ({TOTAL_BLOCKS} blocks)")

    elif args.cmd == "info":
        info = VSFSImage.load(args.image).info()
        for k, v in info.items():
            print(f"  {k}: {v}")

    elif args.cmd == "ls":
        entries = VSFSImage.load(args.image).list_inodes()
        if not entries:
            print("(empty)")
            return 0
        print(f"{'Inode':>5}  {'Mode':>7}  {'Size':>8}  {'Links':>5}  {'Direct':>6}")
        print("-" * 40)
        for slot, inode in entries:
            print(f"{slot:>5}  {inode.mode:>7o}  {inode.size:>8}  "
                  f"{inode.links:>5}  {inode.direct:>6}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
