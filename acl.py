import struct
from typing import List, Sequence

import attr

from codec import RecordReader, pack_u64

ACL_ENTRY_SIZE = 9

# Named permission sets; the codec itself treats the flags byte as 8 opaque bits
NONE = 0b000
READ = 0b001
READ_WRITE = 0b011
READ_EXECUTE = 0b101
READ_WRITE_EXECUTE = 0b111

PERMISSION_NAMES = {
    NONE: "none",
    READ: "read",
    READ_WRITE: "read-write",
    READ_EXECUTE: "read-execute",
    READ_WRITE_EXECUTE: "read-write-execute",
}


@attr.s(auto_attribs=True, frozen=True)
class AclEntry:
    flags: int = attr.ib(validator=attr.validators.instance_of(int))
    principal: int = 0  # string table index

    @flags.validator
    def _check_flags(self, attribute, value):
        if not 0 <= value <= 0xFF:
            raise ValueError(f"ACL flags must fit in one byte, got {value}")

    def pack(self) -> bytes:
        return struct.pack("<BQ", self.flags, self.principal)

    @classmethod
    def unpack(cls, data: bytes) -> "AclEntry":
        return cls(*struct.unpack("<BQ", data[:ACL_ENTRY_SIZE]))

    def has(self, bit: int) -> bool:
        return bool(self.flags & (1 << bit))

    @property
    def permission(self) -> str:
        """Named permission set, or 'custom' for any other combination"""
        return PERMISSION_NAMES.get(self.flags, "custom")


def decode_entry(data: bytes) -> AclEntry:
    return AclEntry.unpack(data)


def encode_entry(entry: AclEntry) -> bytes:
    return entry.pack()


def encode_list(entries: Sequence[AclEntry]) -> bytes:
    """acl_count(8) followed by the entries"""
    return pack_u64(len(entries)) + b"".join(e.pack() for e in entries)


def read_list(reader: RecordReader) -> List[AclEntry]:
    count = reader.u64("ACL count")
    data = reader.take(count * ACL_ENTRY_SIZE, "ACL list")
    return [
        AclEntry.unpack(data[i : i + ACL_ENTRY_SIZE])
        for i in range(0, len(data), ACL_ENTRY_SIZE)
    ]
