import logging
import struct
from typing import List, Optional, Sequence, Tuple

import attr

from codec import RecordReader, as_buffer, pack_u64
from errors import ChunkOutOfRange, ChunkSizeMismatch, OffsetOutOfRange

log = logging.getLogger(__name__)

CHUNK_SIZE = 16


@attr.s(auto_attribs=True, frozen=True)
class Chunk:
    """One contiguous extent of the file holding part of a page"""
    offset: int
    length: int

    def pack(self) -> bytes:
        return struct.pack("<QQ", self.offset, self.length)

    @classmethod
    def unpack(cls, data: bytes) -> "Chunk":
        return cls(*struct.unpack("<QQ", data[:CHUNK_SIZE]))

    @property
    def end(self) -> int:
        return self.offset + self.length


def decode_chunks(data: bytes, count: int) -> List[Chunk]:
    """Decode count chunks from the start of data"""
    return read_list(RecordReader(data), count)


def read_list(reader: RecordReader, count: Optional[int] = None) -> List[Chunk]:
    """Read chunk_count-prefixed chunks, or exactly count chunks if given"""
    if count is None:
        count = reader.u64("chunk count")
    data = reader.take(count * CHUNK_SIZE, "chunk list")
    return [Chunk.unpack(data[i : i + CHUNK_SIZE]) for i in range(0, len(data), CHUNK_SIZE)]


def encode_list(chunks: Sequence[Chunk]) -> bytes:
    return pack_u64(len(chunks)) + b"".join(c.pack() for c in chunks)


def total_length(chunks: Sequence[Chunk]) -> int:
    return sum(c.length for c in chunks)


def gather(source, chunks: Sequence[Chunk]) -> bytes:
    """Concatenate chunk contents in list order into the logical stream"""
    buf = as_buffer(source)
    size = len(buf)
    # validate every chunk before copying anything
    for chunk in chunks:
        if chunk.end > size:
            raise ChunkOutOfRange(chunk, size)
    return b"".join(bytes(buf[c.offset : c.end]) for c in chunks)


@attr.s(auto_attribs=True, frozen=True)
class WritePlan:
    """Ordered (offset, bytes) pieces produced by scatter()"""
    pieces: Tuple[Tuple[int, bytes], ...] = ()

    def __iter__(self):
        return iter(self.pieces)

    def __len__(self) -> int:
        return len(self.pieces)

    @property
    def end(self) -> int:
        return max((off + len(data) for off, data in self.pieces), default=0)

    def apply(self, sink) -> None:
        """Write every piece to a bytearray or a seekable file object"""
        if isinstance(sink, bytearray):
            if len(sink) < self.end:
                sink.extend(b"\x00" * (self.end - len(sink)))
            for offset, data in self.pieces:
                sink[offset : offset + len(data)] = data
            return
        for offset, data in self.pieces:
            sink.seek(offset)
            sink.write(data)


def check_disjoint(chunks: Sequence[Chunk]) -> None:
    """Reject chunk lists in which two chunks share a byte"""
    used = sorted((c for c in chunks if c.length), key=lambda c: c.offset)
    for a, b in zip(used, used[1:]):
        if a.end > b.offset:
            raise OffsetOutOfRange(f"Chunks overlap at {b.offset:#x}", b.offset)


def scatter(data: bytes, chunks: Sequence[Chunk]) -> WritePlan:
    """Split a logical stream across chunks; lengths must match exactly"""
    expected = total_length(chunks)
    if expected != len(data):
        raise ChunkSizeMismatch(expected, len(data))
    check_disjoint(chunks)
    pieces = []
    pos = 0
    for chunk in chunks:
        pieces.append((chunk.offset, bytes(data[pos : pos + chunk.length])))
        pos += chunk.length
    return WritePlan(tuple(pieces))


def split_extent(offset: int, length: int, max_chunk_size: int = 0) -> List[Chunk]:
    """Cut one contiguous allocation into chunks of at most max_chunk_size"""
    if length == 0:
        return []
    if max_chunk_size <= 0:
        return [Chunk(offset, length)]
    result = []
    pos = 0
    while pos < length:
        size = min(max_chunk_size, length - pos)
        result.append(Chunk(offset + pos, size))
        pos += size
    log.debug("split %d bytes at %#x into %d chunks", length, offset, len(result))
    return result
