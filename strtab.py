from typing import Dict, List, Optional, Tuple, Union

import attr

from codec import RecordReader, as_buffer, pack_u64
from errors import OffsetOutOfRange, StringIndexOutOfRange


@attr.s(auto_attribs=True, frozen=True)
class StringTable:
    """Immutable list of byte strings, referenced by 0-based index"""
    strings: Tuple[bytes, ...] = ()
    offset: int = 0

    def __len__(self) -> int:
        return len(self.strings)

    def __iter__(self):
        return iter(self.strings)

    def resolve(self, index: int, at: Optional[int] = None) -> bytes:
        return resolve(self, index, at)

    def index_of(self, value: Union[bytes, str]) -> int:
        if isinstance(value, str):
            value = value.encode("utf-8")
        return self.strings.index(value)


def decode(source, offset: int, count: int) -> StringTable:
    """Decode count length-prefixed strings starting at offset"""
    buf = as_buffer(source)
    if count and offset >= len(buf):
        raise OffsetOutOfRange(f"String table offset {offset:#x} past end of file", offset)
    reader = RecordReader(buf, offset)
    strings = []
    for _ in range(count):
        length = reader.u64("string length")
        strings.append(reader.take(length, "string"))
    return StringTable(tuple(strings), offset)


def resolve(table: StringTable, index: int, at: Optional[int] = None) -> bytes:
    """Look up a string; at is the offset of the referencing field, for errors"""
    if index < 0 or index >= len(table.strings):
        raise StringIndexOutOfRange(index, len(table.strings), at)
    return table.strings[index]


def encode(strings) -> bytes:
    return b"".join(pack_u64(len(s)) + s for s in strings)


class StringTableBuilder:
    """Interning table owned by a single write cycle"""

    def __init__(self):
        self.strings: List[bytes] = []
        self._index: Dict[bytes, int] = {}

    def intern(self, value: Union[bytes, str]) -> int:
        if isinstance(value, str):
            value = value.encode("utf-8")
        index = self._index.get(value)
        if index is None:
            index = len(self.strings)
            self.strings.append(value)
            self._index[value] = index
        return index

    def __len__(self) -> int:
        return len(self.strings)

    def encode(self) -> bytes:
        return encode(self.strings)

    def freeze(self) -> StringTable:
        return StringTable(tuple(self.strings))
