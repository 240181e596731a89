#!/usr/bin/env python3
"""
vsfsck.py — Consistency checker and repairer for VSFS images.

Checks, in order:
  1. Superblock fields against the fixed layout constants.
  2. Every inode marked in the inode bitmap: validity, direct block
     range, duplicate direct blocks, and data bitmap agreement.
  3. Data bitmap bits that no inode references (orphans).

With --fix, each finding is repaired as it is found, the bitmaps and
superblock are written back as whole blocks at the end of the pass,
and the image is checked a second time.  The second pass must come
back clean.

Only the direct block pointer is validated.  Single, double and triple
indirect pointers are never followed or repaired.

Usage:
  python vsfsck.py [-f] [-v] IMAGE
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TextIO

from blockdev import BlockDevice, ImageIOError
from vsfs import (
    BLOCK_SIZE, TOTAL_BLOCKS, MAGIC_NUMBER,
    SUPERBLOCK_BLOCK, INODE_BITMAP_BLOCK, DATA_BITMAP_BLOCK,
    INODE_TABLE_START, DATA_BLOCK_START, INODE_SIZE,
    MAX_INODES, MAX_DATA_BLOCKS,
    Superblock, bitmap_get, bitmap_set, bitmap_clear, is_data_block,
)

logger = logging.getLogger(__name__)

# Finding kinds
SUPERBLOCK_FIELD = "superblock-field"
INVALID_INODE    = "invalid-inode"
INVALID_DIRECT   = "invalid-direct"
DUPLICATE_BLOCK  = "duplicate-block"
UNMARKED_BLOCK   = "unmarked-block"
ORPHAN_BLOCK     = "orphan-block"

# (field, description, expected value); inode_count is bounded separately
SUPERBLOCK_FIELDS = [
    ("magic",              "Invalid magic number",    MAGIC_NUMBER),
    ("block_size",         "Invalid block size",      BLOCK_SIZE),
    ("total_blocks",       "Total blocks incorrect",  TOTAL_BLOCKS),
    ("inode_bitmap_block", "Wrong inode bitmap block", INODE_BITMAP_BLOCK),
    ("data_bitmap_block",  "Wrong data bitmap block", DATA_BITMAP_BLOCK),
    ("inode_table_start",  "Wrong inode table start", INODE_TABLE_START),
    ("first_data_block",   "Wrong data block start",  DATA_BLOCK_START),
    ("inode_size",         "Inode size mismatch",     INODE_SIZE),
]


@dataclass
class Finding:
    """One reported inconsistency."""
    kind: str
    message: str
    index: int | None = None      # inode slot or block number
    field: str | None = None      # superblock field name
    fixed: bool = False

    def line(self) -> str:
        return f" - {self.message}." + (" Fixed." if self.fixed else "")


class UsageMap:
    """Per-data-block reference counts for a single check pass.

    Index 0 is DATA_BLOCK_START.  The first inode to claim a block is
    remembered as its owner.
    """

    def __init__(self, size: int = MAX_DATA_BLOCKS):
        self.counts = [0] * size
        self.owners: dict[int, int] = {}

    def __getitem__(self, index: int) -> int:
        return self.counts[index]

    def __len__(self) -> int:
        return len(self.counts)

    def claim(self, index: int, slot: int):
        if not self.counts[index]:
            self.owners[index] = slot
        self.counts[index] += 1

    def owner(self, index: int) -> int | None:
        return self.owners.get(index)

    def unreferenced(self, index: int) -> bool:
        return self.counts[index] == 0


@dataclass
class Report:
    """Findings from one full check pass."""
    superblock: list[Finding] = field(default_factory=list)
    inodes: list[Finding] = field(default_factory=list)
    fix: bool = False
    recheck: "Report | None" = None

    @property
    def findings(self) -> list[Finding]:
        return self.superblock + self.inodes

    @property
    def clean(self) -> bool:
        return not self.superblock and not self.inodes

    def of_kind(self, kind: str) -> list[Finding]:
        return [f for f in self.findings if f.kind == kind]

    def render(self) -> str:
        lines = ["Superblock Check:"]
        lines += [f.line() for f in self.superblock]
        lines += ["Superblock check completed.", ""]
        lines += ["Inode Consistency Check:"]
        lines += [f.line() for f in self.inodes]
        lines += ["Inode and data block check completed.", ""]
        return "\n".join(lines) + "\n"


# ── Superblock ─────────────────────────────────────────────────────────

def _fmt_value(name: str, value: int) -> str:
    return f"0x{value:04X}" if name == "magic" else str(value)


def check_superblock(sb: Superblock, fix: bool = False) -> list[Finding]:
    """Compare every superblock field to its expected constant.

    In fix mode *sb* is corrected in place; the caller writes it back.
    """
    findings = []
    for name, desc, expected in SUPERBLOCK_FIELDS:
        actual = getattr(sb, name)
        if actual == expected:
            continue
        findings.append(Finding(
            SUPERBLOCK_FIELD,
            f"{desc}: {_fmt_value(name, actual)} "
            f"(expected {_fmt_value(name, expected)})",
            field=name, fixed=fix))
        if fix:
            setattr(sb, name, expected)
            logger.debug("superblock %s: %d -> %d", name, actual, expected)

    if sb.inode_count > MAX_INODES:
        findings.append(Finding(
            SUPERBLOCK_FIELD,
            f"Too many inodes: {sb.inode_count} (max {MAX_INODES})",
            field="inode_count", fixed=fix))
        if fix:
            logger.debug("superblock inode_count: %d -> %d",
                         sb.inode_count, MAX_INODES)
            sb.inode_count = MAX_INODES
    return findings


# ── Inodes and bitmaps ─────────────────────────────────────────────────

def check_inodes(dev: BlockDevice, inode_bmap: bytearray,
                 data_bmap: bytearray, fix: bool = False,
                 usage: UsageMap | None = None
                 ) -> tuple[list[Finding], UsageMap]:
    """Reconcile allocated inodes against both bitmaps.

    Slots are visited in ascending order, so when two inodes share a
    direct block the lower slot keeps it.  In fix mode the bitmaps are
    corrected in memory and a repaired inode is rewritten immediately.
    """
    if usage is None:
        usage = UsageMap()
    findings = []

    for slot in range(MAX_INODES):
        if not bitmap_get(inode_bmap, slot):
            continue

        inode = dev.read_inode(slot)

        if not inode.is_valid:
            findings.append(Finding(
                INVALID_INODE, f"Inode {slot} marked used but is invalid",
                index=slot, fixed=fix))
            if fix:
                bitmap_clear(inode_bmap, slot)
            continue

        if any(inode.indirect_pointers):
            logger.debug("inode %d: indirect pointers %s not checked",
                         slot, inode.indirect_pointers)

        if inode.direct == 0:
            continue

        if not is_data_block(inode.direct):
            findings.append(Finding(
                INVALID_DIRECT,
                f"Inode {slot} direct block is invalid: {inode.direct}",
                index=slot, fixed=fix))
            if fix:
                inode.direct = 0
                dev.write_inode(slot, inode)
            continue

        idx = inode.direct - DATA_BLOCK_START
        if usage[idx]:
            findings.append(Finding(
                DUPLICATE_BLOCK,
                f"Duplicate block usage: block {inode.direct} "
                f"(inode {slot}, already used by inode {usage.owner(idx)})",
                index=slot, fixed=fix))
            if fix:
                inode.direct = 0
                dev.write_inode(slot, inode)
            continue

        usage.claim(idx, slot)

        if not bitmap_get(data_bmap, idx):
            findings.append(Finding(
                UNMARKED_BLOCK,
                f"Inode {slot} uses block {inode.direct} not marked in bitmap",
                index=slot, fixed=fix))
            if fix:
                bitmap_set(data_bmap, idx)

    for idx in range(MAX_DATA_BLOCKS):
        if bitmap_get(data_bmap, idx) and usage.unreferenced(idx):
            block = DATA_BLOCK_START + idx
            findings.append(Finding(
                ORPHAN_BLOCK, f"Block {block} marked used but not referenced",
                index=block, fixed=fix))
            if fix:
                bitmap_clear(data_bmap, idx)

    return findings, usage


# ── Driver ─────────────────────────────────────────────────────────────

def check_image(path: str | Path, fix: bool = False) -> Report:
    """Run one full check pass over the image at *path*.

    Check-only mode opens the image read-only.  Fix mode writes the
    bitmaps back, and the superblock if it changed, after all inodes
    have been scanned.
    """
    with BlockDevice(path, writable=fix) as dev:
        sb = Superblock.unpack(dev.read_block(SUPERBLOCK_BLOCK))
        sb_findings = check_superblock(sb, fix)

        inode_bmap = dev.load_bitmap(INODE_BITMAP_BLOCK)
        data_bmap = dev.load_bitmap(DATA_BITMAP_BLOCK)
        inode_findings, _ = check_inodes(dev, inode_bmap, data_bmap, fix)

        if fix:
            dev.store_bitmap(INODE_BITMAP_BLOCK, inode_bmap)
            dev.store_bitmap(DATA_BITMAP_BLOCK, data_bmap)
            if sb_findings:
                dev.write_block(SUPERBLOCK_BLOCK, sb.pack())

    return Report(sb_findings, inode_findings, fix=fix)


def fsck(path: str | Path, fix: bool = False,
         out: TextIO | None = None) -> Report:
    """Check (and optionally repair) *path*, printing the report.

    In fix mode the image is checked again afterwards and that second
    report is attached as ``recheck``.
    """
    if out is None:
        out = sys.stdout
    report = check_image(path, fix)
    print(report.render(), end="", file=out)
    if not fix:
        return report

    print("All fixes applied and written to image.\n", file=out)
    print("Re-checking filesystem after fixes:\n", file=out)
    report.recheck = check_image(path)
    print(report.recheck.render(), end="", file=out)
    if not report.recheck.clean:
        logger.error("re-check of %s still reports %d finding(s)",
                     path, len(report.recheck.findings))
    return report


# ── CLI ────────────────────────────────────────────────────────────────

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="vsfsck",
        description="Check and repair a VSFS disk image",
    )
    parser.add_argument("image", help="Disk image path")
    parser.add_argument("-f", "--fix", action="store_true",
                        help="Repair inconsistencies, then re-check")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Log block I/O and repairs to stderr")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        fsck(args.image, fix=args.fix)
    except ImageIOError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
