"""
blockdev.py — Block-level access to a VSFS image file.

Reads and writes whole blocks and single inode records against an open
image file.  Every failure (cannot open, short read, short write, bad
block index) raises ImageIOError; nothing is retried.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from vsfs import (
    BLOCK_SIZE, TOTAL_BLOCKS, INODE_SIZE, MAX_INODES,
    Inode, inode_location,
)

logger = logging.getLogger(__name__)


class ImageIOError(Exception):
    """Raised when the image cannot be opened, read, or written."""
    pass


class BlockDevice:
    """A VSFS image file divided into BLOCK_SIZE blocks.

    Opened read-only unless *writable* is set.  Usable as a context
    manager; the file is closed on exit.
    """

    def __init__(self, path: str | Path, writable: bool = False):
        self.path = str(path)
        self.writable = writable
        self.reads = 0
        self.writes = 0
        mode = "r+b" if writable else "rb"
        try:
            self.fd = open(self.path, mode)
        except OSError as e:
            raise ImageIOError(f"cannot open {self.path}: {e.strerror}") from e
        logger.debug("opened %s (%s)", self.path,
                     "read-write" if writable else "read-only")

    def close(self):
        if self.fd is not None:
            self.fd.close()
            self.fd = None

    def __enter__(self) -> "BlockDevice":
        return self

    def __exit__(self, *exc):
        self.close()

    # ── blocks ─────────────────────────────────────────────────────

    def _check_index(self, index: int):
        if not 0 <= index < TOTAL_BLOCKS:
            raise ImageIOError(f"block {index} out of range 0..{TOTAL_BLOCKS - 1}")

    def _check_writable(self):
        if not self.writable:
            raise ImageIOError(f"{self.path} is open read-only")

    def _pwrite(self, offset: int, data: bytes, what: str):
        try:
            self.fd.seek(offset, os.SEEK_SET)
            n = self.fd.write(data)
            self.fd.flush()
        except OSError as e:
            raise ImageIOError(f"write {what} failed: {e}") from e
        if n != len(data):
            raise ImageIOError(
                f"short write on {what}: {n} of {len(data)} bytes")
        self.writes += 1

    def read_block(self, index: int) -> bytes:
        """Read exactly one block."""
        self._check_index(index)
        try:
            self.fd.seek(index * BLOCK_SIZE, os.SEEK_SET)
            data = self.fd.read(BLOCK_SIZE)
        except OSError as e:
            raise ImageIOError(f"read block {index} failed: {e}") from e
        if len(data) != BLOCK_SIZE:
            raise ImageIOError(
                f"short read on block {index}: {len(data)} of {BLOCK_SIZE} bytes")
        self.reads += 1
        return data

    def write_block(self, index: int, data: bytes | bytearray):
        """Write exactly one block."""
        self._check_index(index)
        self._check_writable()
        if len(data) != BLOCK_SIZE:
            raise ImageIOError(
                f"block {index} data must be {BLOCK_SIZE} bytes, got {len(data)}")
        self._pwrite(index * BLOCK_SIZE, bytes(data), f"block {index}")
        logger.debug("wrote block %d", index)

    # ── bitmaps ────────────────────────────────────────────────────

    def load_bitmap(self, index: int) -> bytearray:
        """Read bitmap block *index* as a mutable bit array."""
        return bytearray(self.read_block(index))

    def store_bitmap(self, index: int, bmap: bytearray):
        self.write_block(index, bmap)

    # ── inodes ─────────────────────────────────────────────────────

    def read_inode(self, slot: int) -> Inode:
        """Decode inode *slot* from the block that holds it."""
        if not 0 <= slot < MAX_INODES:
            raise ImageIOError(f"inode {slot} out of range 0..{MAX_INODES - 1}")
        block, offset = inode_location(slot)
        data = self.read_block(block)
        return Inode.unpack(data[offset : offset + INODE_SIZE])

    def write_inode(self, slot: int, inode: Inode):
        """Rewrite only the record of inode *slot*; neighbours are untouched."""
        if not 0 <= slot < MAX_INODES:
            raise ImageIOError(f"inode {slot} out of range 0..{MAX_INODES - 1}")
        self._check_writable()
        block, offset = inode_location(slot)
        self._pwrite(block * BLOCK_SIZE + offset, inode.pack(), f"inode {slot}")
        logger.debug("wrote inode %d (block %d +%d)", slot, block, offset)
