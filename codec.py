import struct
from typing import Optional, Union

from errors import TruncatedRecord

ALIGNMENT = 16

U8 = struct.Struct("<B")
U32 = struct.Struct("<I")
U64 = struct.Struct("<Q")

Buffer = Union[bytes, bytearray, memoryview]


def align_up(value: int, alignment: int = ALIGNMENT) -> int:
    """Round value up to the next multiple of alignment"""
    if alignment <= 1:
        return value
    return (value + alignment - 1) // alignment * alignment


def pad(data: bytes, alignment: int = ALIGNMENT) -> bytes:
    return data + b"\x00" * (align_up(len(data), alignment) - len(data))


def pack_u64(value: int) -> bytes:
    return U64.pack(value)


def as_buffer(source) -> Buffer:
    """Normalize a byte source (bytes-like or seekable file object) to a buffer.

    File objects are read whole from offset 0; the returned buffer is never
    written to by reader code.
    """
    if hasattr(source, "read") and hasattr(source, "seek"):
        source.seek(0)
        return source.read()
    if isinstance(source, (bytes, bytearray, memoryview)):
        return source
    return memoryview(source)


class RecordReader:
    """Sequential little-endian reader over a buffer.

    Positions are absolute offsets into the buffer so that errors can report
    where they happened.
    """

    def __init__(self, buf: Buffer, offset: int = 0, end: Optional[int] = None):
        self.buf = buf
        self.pos = offset
        self.end = len(buf) if end is None else end

    def remaining(self) -> int:
        return self.end - self.pos

    def take(self, length: int, what: str = "record") -> bytes:
        if length < 0 or self.pos + length > self.end:
            raise TruncatedRecord(
                f"Truncated {what}: need {length} bytes, {max(self.remaining(), 0)} left",
                self.pos,
            )
        data = bytes(self.buf[self.pos : self.pos + length])
        self.pos += length
        return data

    def u8(self, what: str = "u8") -> int:
        return U8.unpack(self.take(1, what))[0]

    def u32(self, what: str = "u32") -> int:
        return U32.unpack(self.take(4, what))[0]

    def u64(self, what: str = "u64") -> int:
        return U64.unpack(self.take(8, what))[0]

    def skip_padding(self, alignment: int, base: int) -> None:
        """Consume zero padding up to the next alignment boundary relative to base"""
        relative = self.pos - base
        gap = align_up(relative, alignment) - relative
        start = self.pos
        padding = self.take(gap, "alignment padding")
        if padding.strip(b"\x00"):
            raise TruncatedRecord("Malformed padding: non-zero bytes", start)
