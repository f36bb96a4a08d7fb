import logging
import struct

import attr

from codec import ALIGNMENT, U32, as_buffer
from errors import InvalidMagic, OffsetOutOfRange, TruncatedRecord, UnsupportedVersion

log = logging.getLogger(__name__)

MAGIC = 0x42445446  # b"FTDB" little-endian
HEADER_SIZE = 80

VERSION_PACKED = 1   # no padding between the ACL and chunk sections of an inode
VERSION_ALIGNED = 2  # chunk section starts 16-aligned within the inode record
SUPPORTED_VERSIONS = (VERSION_PACKED, VERSION_ALIGNED)

TABLES = ("inode", "string", "history", "meta")

_FMT = "<IIQQQQQQQQQ"


@attr.s(auto_attribs=True)
class Header:
    """Fixed header at offset 0; every table is located through it"""
    version: int = VERSION_PACKED
    inode_off: int = 0
    inode_len: int = 0
    string_off: int = 0
    string_len: int = 0
    history_off: int = 0
    history_len: int = 0
    meta_off: int = 0
    meta_len: int = 0
    reserved: int = attr.ib(default=0, eq=False)

    def pack(self) -> bytes:
        return struct.pack(
            _FMT,
            MAGIC,
            self.version,
            0,
            self.inode_off,
            self.inode_len,
            self.string_off,
            self.string_len,
            self.history_off,
            self.history_len,
            self.meta_off,
            self.meta_len,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "Header":
        """Decode without validation; see parse()"""
        if len(data) < HEADER_SIZE:
            raise TruncatedRecord(f"Header needs {HEADER_SIZE} bytes, got {len(data)}", 0)
        fields = struct.unpack(_FMT, data[:HEADER_SIZE])
        _, version, reserved, *pairs = fields
        return cls(version, *pairs, reserved=reserved)

    def table(self, name: str):
        """(offset, length) for one of inode, string, history, meta"""
        if name not in TABLES:
            raise KeyError(name)
        return getattr(self, f"{name}_off"), getattr(self, f"{name}_len")

    def tables(self):
        return {name: self.table(name) for name in TABLES}


def parse(source) -> Header:
    """Parse and validate the header of a page file.

    Magic is checked before anything else. Offsets are checked against the
    header size only; whether they fall inside the file is left to the
    component that dereferences them.
    """
    buf = as_buffer(source)
    if len(buf) < 4:
        raise TruncatedRecord(f"Header needs {HEADER_SIZE} bytes, got {len(buf)}", 0)
    magic = U32.unpack(bytes(buf[:4]))[0]
    if magic != MAGIC:
        raise InvalidMagic(magic)

    header = Header.unpack(bytes(buf[:HEADER_SIZE]))
    if header.version not in SUPPORTED_VERSIONS:
        raise UnsupportedVersion(header.version)

    for index, name in enumerate(TABLES):
        offset, _ = header.table(name)
        if offset == 0:
            continue
        if offset < HEADER_SIZE:
            # field position of the offending offset within the header
            raise OffsetOutOfRange(f"{name} table offset {offset:#x} overlaps the header", 16 + index * 16)
        if offset % ALIGNMENT:
            log.debug("%s table at unaligned offset %#x", name, offset)
    return header


def check_range(name: str, offset: int, size: int, file_size: int) -> None:
    """Lazy bounds check performed when a table is first dereferenced"""
    if offset > file_size or offset + size > file_size:
        raise OffsetOutOfRange(
            f"{name} table [{offset:#x}, {offset + size:#x}) lies outside file of {file_size} bytes",
            offset,
        )
