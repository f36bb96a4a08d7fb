"""
Page descriptor (inode) records.

Layout, version 1 (packed):
  name_idx(8) acl_count(8) [flags(1) principal(8)]*acl_count
  chunk_count(8) [offset(8) length(8)]*chunk_count

Version 2 (aligned) inserts zero padding after the ACL section so that
chunk_count starts on a 16-byte boundary measured from the record start.
"""

import logging
from typing import List, Tuple

import attr

import acl
import chunks as chunk_codec
from acl import ACL_ENTRY_SIZE, AclEntry
from chunks import CHUNK_SIZE, Chunk
from codec import ALIGNMENT, RecordReader, align_up, as_buffer, pack_u64
from errors import OffsetOutOfRange, TruncatedRecord, UnsupportedVersion
from header import SUPPORTED_VERSIONS, VERSION_ALIGNED

log = logging.getLogger(__name__)


def _tuple(value) -> tuple:
    return tuple(value)


@attr.s(auto_attribs=True, frozen=True)
class PageDescriptor:
    """On-disk page record; current state comes from replaying the journal"""
    name: int  # string table index
    acl: Tuple[AclEntry, ...] = attr.ib(default=(), converter=_tuple)
    chunks: Tuple[Chunk, ...] = attr.ib(default=(), converter=_tuple)

    @property
    def size(self) -> int:
        return chunk_codec.total_length(self.chunks)


def _check_version(version: int) -> None:
    if version not in SUPPORTED_VERSIONS:
        raise UnsupportedVersion(version, None)


def _acl_padding(acl_count: int, version: int) -> int:
    if version != VERSION_ALIGNED:
        return 0
    used = 16 + acl_count * ACL_ENTRY_SIZE
    return align_up(used, ALIGNMENT) - used


def inode_size(acl_count: int, chunk_count: int, version: int) -> int:
    """Encoded size of a record; independent of the field values"""
    _check_version(version)
    return (
        16
        + acl_count * ACL_ENTRY_SIZE
        + _acl_padding(acl_count, version)
        + 8
        + chunk_count * CHUNK_SIZE
    )


def encode_inode(descriptor: PageDescriptor, version: int) -> bytes:
    _check_version(version)
    data = pack_u64(descriptor.name) + acl.encode_list(descriptor.acl)
    data += b"\x00" * _acl_padding(len(descriptor.acl), version)
    data += chunk_codec.encode_list(descriptor.chunks)
    return data


def read_inode(reader: RecordReader, version: int) -> PageDescriptor:
    """Read one record at the reader's position, advancing past it"""
    _check_version(version)
    start = reader.pos
    name = reader.u64("inode name index")
    acl_list = acl.read_list(reader)
    if version == VERSION_ALIGNED:
        reader.skip_padding(ALIGNMENT, start)
    chunk_list = chunk_codec.read_list(reader)
    return PageDescriptor(name, acl_list, chunk_list)


def decode_inode(data: bytes, version: int, offset: int = 0) -> PageDescriptor:
    """Decode exactly one record; missing or trailing bytes are an error.

    offset is where data sits in the file and only shifts error offsets.
    """
    buf = bytes(data)
    reader = RecordReader(buf)
    try:
        descriptor = read_inode(reader, version)
    except TruncatedRecord as e:
        raise TruncatedRecord(e.message, offset + (e.offset or 0)) from None
    if reader.remaining():
        raise TruncatedRecord(
            f"{reader.remaining()} trailing bytes after inode record", offset + reader.pos
        )
    return descriptor


@attr.s(auto_attribs=True, frozen=True)
class InodeTable:
    """Decoded inode table; record_offsets[i] is where inode i starts"""
    records: Tuple[PageDescriptor, ...] = ()
    record_offsets: Tuple[int, ...] = ()
    end: int = 0

    def __len__(self) -> int:
        return len(self.records)

    def __getitem__(self, index: int) -> PageDescriptor:
        return self.records[index]

    def __iter__(self):
        return iter(self.records)


def decode_table(source, offset: int, count: int, version: int) -> InodeTable:
    """Decode count consecutive records; any bad record aborts the whole table"""
    buf = as_buffer(source)
    if count and offset >= len(buf):
        raise OffsetOutOfRange(f"Inode table offset {offset:#x} past end of file", offset)
    reader = RecordReader(buf, offset)
    records: List[PageDescriptor] = []
    offsets: List[int] = []
    for _ in range(count):
        offsets.append(reader.pos)
        records.append(read_inode(reader, version))
    log.debug("decoded %d inodes from [%#x, %#x)", count, offset, reader.pos)
    return InodeTable(tuple(records), tuple(offsets), reader.pos)


def encode_table(descriptors, version: int) -> bytes:
    return b"".join(encode_inode(d, version) for d in descriptors)
