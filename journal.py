"""
History table: append-only log of page mutations.

Entry layout: target_inode_idx(8) sequence_key(8) op_kind(1) payload
  SET_CHUNKS  chunk_count(8) [offset(8) length(8)]*n
  SET_ACL     acl_count(8) [flags(1) principal(8)]*n
  RENAME      name_idx(8)
  DELETE      (empty)
  CREATE      full inode record in the file's version layout
"""

import enum
import logging
import struct
from typing import List, Optional, Sequence, Tuple

import attr

import acl
import chunks as chunk_codec
import inode
from acl import AclEntry
from chunks import Chunk
from codec import RecordReader, as_buffer, pack_u64
from errors import OffsetOutOfRange, TruncatedRecord
from inode import PageDescriptor

log = logging.getLogger(__name__)

ENTRY_HEADER_SIZE = 17


class OpKind(enum.IntEnum):
    SET_CHUNKS = 1
    SET_ACL = 2
    RENAME = 3
    DELETE = 4
    CREATE = 5


def _tuple(value) -> tuple:
    return tuple(value)


@attr.s(auto_attribs=True, frozen=True)
class HistoryEntry:
    """One journal event.

    offset and position (file offset, append index) are filled in by the
    decoder; they do not take part in equality.
    """
    target: int
    sequence_key: int
    kind: OpKind = attr.ib(converter=OpKind)
    chunks: Tuple[Chunk, ...] = attr.ib(default=(), converter=_tuple)
    acl: Tuple[AclEntry, ...] = attr.ib(default=(), converter=_tuple)
    name: Optional[int] = None
    descriptor: Optional[PageDescriptor] = None
    offset: int = attr.ib(default=0, eq=False)
    position: int = attr.ib(default=0, eq=False)

    @classmethod
    def set_chunks(cls, target: int, sequence_key: int, chunks: Sequence[Chunk]) -> "HistoryEntry":
        return cls(target, sequence_key, OpKind.SET_CHUNKS, chunks=chunks)

    @classmethod
    def set_acl(cls, target: int, sequence_key: int, entries: Sequence[AclEntry]) -> "HistoryEntry":
        return cls(target, sequence_key, OpKind.SET_ACL, acl=entries)

    @classmethod
    def rename(cls, target: int, sequence_key: int, name: int) -> "HistoryEntry":
        return cls(target, sequence_key, OpKind.RENAME, name=name)

    @classmethod
    def delete(cls, target: int, sequence_key: int) -> "HistoryEntry":
        return cls(target, sequence_key, OpKind.DELETE)

    @classmethod
    def create(cls, target: int, sequence_key: int, descriptor: PageDescriptor) -> "HistoryEntry":
        return cls(target, sequence_key, OpKind.CREATE, descriptor=descriptor)

    @property
    def order_key(self) -> Tuple[int, int]:
        """Replay order: sequence key, ties broken by append position"""
        return self.sequence_key, self.position


def encode_entry(entry: HistoryEntry, version: int) -> bytes:
    data = struct.pack("<QQB", entry.target, entry.sequence_key, entry.kind)
    if entry.kind == OpKind.SET_CHUNKS:
        data += chunk_codec.encode_list(entry.chunks)
    elif entry.kind == OpKind.SET_ACL:
        data += acl.encode_list(entry.acl)
    elif entry.kind == OpKind.RENAME:
        data += pack_u64(entry.name)
    elif entry.kind == OpKind.CREATE:
        data += inode.encode_inode(entry.descriptor, version)
    return data


def entry_size(entry: HistoryEntry, version: int) -> int:
    size = ENTRY_HEADER_SIZE
    if entry.kind == OpKind.SET_CHUNKS:
        size += 8 + len(entry.chunks) * chunk_codec.CHUNK_SIZE
    elif entry.kind == OpKind.SET_ACL:
        size += 8 + len(entry.acl) * acl.ACL_ENTRY_SIZE
    elif entry.kind == OpKind.RENAME:
        size += 8
    elif entry.kind == OpKind.CREATE:
        d = entry.descriptor
        size += inode.inode_size(len(d.acl), len(d.chunks), version)
    return size


def read_entry(reader: RecordReader, version: int, position: int = 0) -> HistoryEntry:
    start = reader.pos
    target = reader.u64("history target")
    sequence_key = reader.u64("sequence key")
    kind_pos = reader.pos
    raw_kind = reader.u8("op kind")
    try:
        kind = OpKind(raw_kind)
    except ValueError:
        raise TruncatedRecord(f"Unknown op kind {raw_kind}", kind_pos) from None

    fields = {}
    if kind == OpKind.SET_CHUNKS:
        fields["chunks"] = chunk_codec.read_list(reader)
    elif kind == OpKind.SET_ACL:
        fields["acl"] = acl.read_list(reader)
    elif kind == OpKind.RENAME:
        fields["name"] = reader.u64("rename index")
    elif kind == OpKind.CREATE:
        fields["descriptor"] = inode.read_inode(reader, version)
    return HistoryEntry(target, sequence_key, kind, offset=start, position=position, **fields)


def decode_history(source, offset: int, count: int, version: int) -> List[HistoryEntry]:
    """Decode count entries in append order; a bad entry aborts the table"""
    buf = as_buffer(source)
    if count and offset >= len(buf):
        raise OffsetOutOfRange(f"History table offset {offset:#x} past end of file", offset)
    reader = RecordReader(buf, offset)
    entries = [read_entry(reader, version, position) for position in range(count)]
    log.debug("decoded %d history entries from [%#x, %#x)", count, offset, reader.pos)
    return entries


def encode_history(entries: Sequence[HistoryEntry], version: int) -> bytes:
    return b"".join(encode_entry(e, version) for e in entries)
