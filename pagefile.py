import logging
from typing import Dict, List, Optional

import chunks as chunk_codec
import header as header_codec
import inode
import journal
import strtab
from codec import as_buffer
from errors import ChunkOutOfRange
from header import Header
from inode import InodeTable, PageDescriptor
from journal import HistoryEntry
from replay import EffectiveDescriptor, ReplayEngine
from strtab import StringTable

log = logging.getLogger(__name__)


class PageFile:
    """Read-only view of a page file image.

    The header is parsed on construction; each table is decoded on first use
    and cached. A table that fails to decode raises every time it is asked
    for, since index references make a partial table unusable.
    """

    def __init__(self, source, warn_conflicts: bool = False):
        self.buf = as_buffer(source)
        self.header: Header = header_codec.parse(self.buf)
        self.version = self.header.version
        self.warn_conflicts = warn_conflicts
        self._strings: Optional[StringTable] = None
        self._inodes: Optional[InodeTable] = None
        self._history: Optional[List[HistoryEntry]] = None
        self._engine: Optional[ReplayEngine] = None

    def __len__(self) -> int:
        return len(self.buf)

    @property
    def strings(self) -> StringTable:
        if self._strings is None:
            offset, count = self.header.table("string")
            self._strings = strtab.decode(self.buf, offset, count)
            log.debug("loaded %d strings", count)
        return self._strings

    @property
    def inodes(self) -> InodeTable:
        if self._inodes is None:
            offset, count = self.header.table("inode")
            self._inodes = inode.decode_table(self.buf, offset, count, self.version)
        return self._inodes

    @property
    def history(self) -> List[HistoryEntry]:
        if self._history is None:
            offset, count = self.header.table("history")
            self._history = journal.decode_history(self.buf, offset, count, self.version)
        return self._history

    @property
    def meta(self) -> bytes:
        offset, length = self.header.table("meta")
        if length == 0:
            return b""
        header_codec.check_range("meta", offset, length, len(self.buf))
        return bytes(self.buf[offset : offset + length])

    @property
    def engine(self) -> ReplayEngine:
        if self._engine is None:
            self._engine = ReplayEngine(self.inodes.records, self.history, self.warn_conflicts)
        return self._engine

    def decode_inode(self, index: int) -> PageDescriptor:
        """Raw on-disk record; journal entries never change it"""
        table = self.inodes
        if not 0 <= index < len(table):
            raise IndexError(f"Inode {index} not in table of {len(table)}")
        return table[index]

    def resolve(self, index: int) -> Optional[EffectiveDescriptor]:
        """Effective descriptor after replaying the journal, None if absent"""
        return self.engine.resolve(index)

    def name_of(self, descriptor) -> bytes:
        return self.strings.resolve(descriptor.name)

    def principal_of(self, entry) -> bytes:
        return self.strings.resolve(entry.principal)

    def read_page(self, index: int) -> bytes:
        """Logical byte stream of a live page"""
        state = self.resolve(index)
        if state is None:
            raise KeyError(f"Inode {index} is absent")
        return chunk_codec.gather(self.buf, state.chunks)

    def pages(self) -> Dict[bytes, int]:
        """Names of live pages mapped to their inode index"""
        return {self.name_of(d): index for index, d in self.engine.resolve_all().items()}

    def find(self, name) -> Optional[EffectiveDescriptor]:
        if isinstance(name, str):
            name = name.encode("utf-8")
        index = self.pages().get(name)
        return None if index is None else self.resolve(index)

    def validate(self) -> None:
        """Decode everything and check every cross reference"""
        strings = self.strings
        for index, record in enumerate(self.inodes):
            at = self.inodes.record_offsets[index]
            strings.resolve(record.name, at)
            for entry in record.acl:
                strings.resolve(entry.principal, at)
        for index, state in self.engine.resolve_all().items():
            strings.resolve(state.name)
            for entry in state.acl:
                strings.resolve(entry.principal)
            for chunk in state.chunks:
                if chunk.end > len(self.buf):
                    raise ChunkOutOfRange(chunk, len(self.buf))
        offset, length = self.header.table("meta")
        header_codec.check_range("meta", offset, length, len(self.buf))


def open_pagefile(path: str, warn_conflicts: bool = False) -> PageFile:
    """Read a page file from disk into memory"""
    with open(path, "rb") as f:
        return PageFile(f.read(), warn_conflicts)
