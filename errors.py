"""
Exception hierarchy for FTDB page files.

Every decode error records the absolute byte offset at which it was detected.
"""

from typing import Optional


class FormatError(ValueError):
    """Base class for all page file errors."""

    def __init__(self, message: str = "", offset: Optional[int] = None):
        self.message = message
        self.offset = offset
        if offset is not None:
            message = f"{message} (at offset {offset:#x})"
        super().__init__(message)


class InvalidMagic(FormatError):
    """Raised when the header does not start with the FTDB magic number."""

    def __init__(self, found: int, offset: int = 0):
        self.found = found
        super().__init__(f"Invalid magic number {found:#010x}", offset)


class UnsupportedVersion(FormatError):
    """Raised for a format version this implementation cannot parse."""

    def __init__(self, version: int, offset: int = 4):
        self.version = version
        super().__init__(f"Unsupported format version {version}", offset)


class OffsetOutOfRange(FormatError):
    """Raised when a table offset points before the header end or past the file end."""


class TruncatedRecord(FormatError):
    """Raised when a record is shorter or longer than its declared counts."""


class StringIndexOutOfRange(FormatError):
    def __init__(self, index: int, count: int, offset: Optional[int] = None):
        self.index = index
        self.count = count
        super().__init__(f"String index {index} out of range for table of {count}", offset)


class ChunkOutOfRange(FormatError):
    def __init__(self, chunk, size: int):
        self.chunk = chunk
        self.size = size
        super().__init__(
            f"Chunk {chunk.offset:#x}+{chunk.length:#x} exceeds source of {size} bytes",
            chunk.offset,
        )


class ChunkSizeMismatch(FormatError):
    """Raised on write when chunk lengths do not add up to the data length."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Chunks hold {expected} bytes but data is {actual} bytes")


class InvalidTransition(FormatError):
    """Raised when a history entry is not legal for the current inode state."""


class JournalSequenceConflict(UserWarning):
    """Two history entries for the same inode share a sequence key."""

    def __init__(self, inode: int, sequence_key: int, offsets):
        self.inode = inode
        self.sequence_key = sequence_key
        self.offsets = tuple(offsets)
        super().__init__(
            f"Inode {inode}: {len(self.offsets)} entries share sequence key {sequence_key}"
        )
