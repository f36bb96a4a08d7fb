"""
Layout planner: builds a complete page file image in one write cycle.

The header at offset 0 records where every table lives, but table sizes
are only known once their contents are serialized, and chunk offsets of
page data depend on where the tables end. Planning therefore runs in two
passes: size everything, place everything, then serialize with the final
offsets and produce the header last.
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple, Union

import attr

import inode
import journal
from acl import AclEntry
from chunks import CHUNK_SIZE, Chunk, WritePlan, scatter, split_extent
from codec import ALIGNMENT, align_up
from errors import OffsetOutOfRange
from header import HEADER_SIZE, SUPPORTED_VERSIONS, VERSION_PACKED, Header
from inode import PageDescriptor
from journal import HistoryEntry, OpKind
from strtab import StringTableBuilder

log = logging.getLogger(__name__)

Name = Union[str, bytes]


@attr.s(auto_attribs=True)
class _Extent:
    """Chunk list of a page, or page bytes still waiting for an allocation"""
    chunks: Tuple[Chunk, ...] = ()
    data: Optional[bytes] = None
    plan: Optional[WritePlan] = None  # caller-placed data, see add_page()

    @property
    def managed(self) -> bool:
        return self.data is not None and self.plan is None

    def chunk_count(self, max_chunk_size: int) -> int:
        if self.managed:
            return len(split_extent(0, len(self.data), max_chunk_size))
        return len(self.chunks)


@attr.s(auto_attribs=True)
class _Record:
    name: int
    acl: Tuple[AclEntry, ...]
    extent: _Extent

    def descriptor(self) -> PageDescriptor:
        return PageDescriptor(self.name, self.acl, self.extent.chunks)


@attr.s(auto_attribs=True)
class _Pending:
    """A journal entry whose chunk list may not be allocated yet"""
    target: int
    sequence_key: int
    kind: OpKind
    record: Optional[_Record] = None  # CREATE
    extent: Optional[_Extent] = None  # SET_CHUNKS
    acl: Tuple[AclEntry, ...] = ()
    name: Optional[int] = None

    def extents(self) -> List[_Extent]:
        if self.record is not None:
            return [self.record.extent]
        if self.extent is not None:
            return [self.extent]
        return []

    def entry(self) -> HistoryEntry:
        if self.kind == OpKind.CREATE:
            return HistoryEntry.create(self.target, self.sequence_key, self.record.descriptor())
        if self.kind == OpKind.SET_CHUNKS:
            return HistoryEntry.set_chunks(self.target, self.sequence_key, self.extent.chunks)
        return HistoryEntry(self.target, self.sequence_key, self.kind, acl=self.acl, name=self.name)

    def size(self, version: int, max_chunk_size: int) -> int:
        size = journal.ENTRY_HEADER_SIZE
        if self.kind == OpKind.CREATE:
            size += inode.inode_size(
                len(self.record.acl), self.record.extent.chunk_count(max_chunk_size), version
            )
        elif self.kind == OpKind.SET_CHUNKS:
            size += 8 + self.extent.chunk_count(max_chunk_size) * CHUNK_SIZE
        else:
            size = journal.entry_size(self.entry(), version)
        return size


def _best_fit(occupied: List[Tuple[int, int]], start: int, length: int, alignment: int) -> int:
    """Offset of the smallest aligned gap of at least length bytes at or past start.

    occupied holds (offset, end) ranges in any order and may overlap. When no
    gap is large enough the data goes after the last occupied byte.
    """
    best = None
    cursor = start
    for offset, end in sorted(occupied):
        gap_start = align_up(cursor, alignment)
        gap = offset - gap_start
        if gap >= length and (best is None or gap < best[1]):
            best = (gap_start, gap)
        cursor = max(cursor, end)
    if best is not None:
        return best[0]
    return align_up(cursor, alignment)


@attr.s(auto_attribs=True, frozen=True)
class Layout:
    """Result of planning: every byte of the file and where it goes"""
    header: Header
    strings: bytes
    inodes: bytes
    history: bytes
    meta: bytes
    data: Tuple[Tuple[int, bytes], ...]
    size: int

    def segments(self) -> List[Tuple[int, bytes]]:
        """(offset, bytes) after the header, in ascending file order"""
        tables = [
            (self.header.string_off, self.strings),
            (self.header.inode_off, self.inodes),
            (self.header.history_off, self.history),
            (self.header.meta_off, self.meta),
        ]
        return sorted(tables + list(self.data), key=lambda s: s[0])


class LayoutPlanner:
    """Single writer for one page file image.

    Strings are interned as pages and journal entries are added. Page data
    given as bytes is placed by the planner after the meta blob; explicit
    chunk lists are recorded verbatim.
    """

    def __init__(self, version: int = VERSION_PACKED, alignment: int = ALIGNMENT, max_chunk_size: int = 0):
        if version not in SUPPORTED_VERSIONS:
            raise ValueError(f"Unsupported format version {version}")
        if alignment < 1:
            raise ValueError("Alignment must be positive")
        self.version = version
        self.alignment = alignment
        self.max_chunk_size = max_chunk_size
        self.strings = StringTableBuilder()
        self.meta = b""
        self._records: List[_Record] = []
        self._history: List[_Pending] = []
        self._next_sequence = 1
        self._layout: Optional[Layout] = None

    # -- input -------------------------------------------------------------

    def _check_open(self):
        if self._layout is not None:
            raise RuntimeError("Layout already planned; start a new write cycle")

    def acl_entry(self, principal: Name, flags: int) -> AclEntry:
        entry = AclEntry(flags)
        return attr.evolve(entry, principal=self.strings.intern(principal))

    @staticmethod
    def _check_acl(entries) -> List[Tuple[Optional[Name], AclEntry]]:
        """Validate flags; principals are interned separately by _intern_acl()"""
        checked = []
        for item in entries:
            if isinstance(item, AclEntry):
                checked.append((None, item))
            else:
                principal, flags = item
                checked.append((principal, AclEntry(flags)))
        return checked

    def _intern_acl(self, checked) -> Tuple[AclEntry, ...]:
        return tuple(
            entry if principal is None else attr.evolve(entry, principal=self.strings.intern(principal))
            for principal, entry in checked
        )

    @staticmethod
    def _chunks(chunks) -> Tuple[Chunk, ...]:
        return tuple(c if isinstance(c, Chunk) else Chunk(*c) for c in chunks)

    def _extent(self, data: Optional[bytes], chunks) -> _Extent:
        if chunks is None:
            return _Extent(data=bytes(data or b""))
        chunk_list = self._chunks(chunks)
        if data is None:
            return _Extent(chunk_list)
        # fails with ChunkSizeMismatch before anything is recorded
        return _Extent(chunk_list, bytes(data), scatter(data, chunk_list))

    def _record(self, name: Name, acl, data, chunks) -> _Record:
        # everything that can fail runs before the first string is interned
        checked = self._check_acl(acl)
        extent = self._extent(data, chunks)
        return _Record(self.strings.intern(name), self._intern_acl(checked), extent)

    def add_page(self, name: Name, acl: Iterable = (), data: Optional[bytes] = None, chunks=None) -> int:
        """Add a base inode record and return its index.

        data alone is allocated by the planner; chunks alone are recorded as
        given; both together scatter data into the given chunks.
        """
        self._check_open()
        self._records.append(self._record(name, acl, data, chunks))
        return len(self._records) - 1

    def _sequence(self, sequence_key: Optional[int]) -> int:
        if sequence_key is None:
            sequence_key = self._next_sequence
        self._next_sequence = max(self._next_sequence, sequence_key + 1)
        return sequence_key

    def _append(self, pending: _Pending) -> int:
        """Queue a journal entry and return its sequence key"""
        self._check_open()
        self._history.append(pending)
        return pending.sequence_key

    def set_chunks(self, index: int, chunks, sequence_key: Optional[int] = None) -> int:
        return self._append(_Pending(index, self._sequence(sequence_key), OpKind.SET_CHUNKS,
                                     extent=self._extent(None, chunks)))

    def set_data(self, index: int, data: bytes, chunks=None, sequence_key: Optional[int] = None) -> int:
        """Journal new contents for a page; allocated unless chunks are given"""
        extent = self._extent(data, chunks)
        return self._append(_Pending(index, self._sequence(sequence_key), OpKind.SET_CHUNKS, extent=extent))

    def set_acl(self, index: int, acl: Iterable, sequence_key: Optional[int] = None) -> int:
        self._check_open()
        checked = self._check_acl(acl)
        return self._append(_Pending(index, self._sequence(sequence_key), OpKind.SET_ACL,
                                     acl=self._intern_acl(checked)))

    def rename(self, index: int, name: Name, sequence_key: Optional[int] = None) -> int:
        self._check_open()
        return self._append(_Pending(index, self._sequence(sequence_key), OpKind.RENAME,
                                     name=self.strings.intern(name)))

    def delete(self, index: int, sequence_key: Optional[int] = None) -> int:
        return self._append(_Pending(index, self._sequence(sequence_key), OpKind.DELETE))

    def create(self, name: Name, acl: Iterable = (), data: Optional[bytes] = None, chunks=None,
               index: Optional[int] = None, sequence_key: Optional[int] = None) -> int:
        """Journal a page creation; by default it gets the next unused index"""
        self._check_open()
        record = self._record(name, acl, data, chunks)
        if index is None:
            index = max([len(self._records) - 1] + [p.target for p in self._history]) + 1
        self._append(_Pending(index, self._sequence(sequence_key), OpKind.CREATE,
                              record=record))
        return index

    def set_meta(self, data: bytes) -> None:
        self._check_open()
        self.meta = bytes(data)

    # -- planning ----------------------------------------------------------

    def _extents(self) -> List[_Extent]:
        extents = [r.extent for r in self._records]
        for pending in self._history:
            extents.extend(pending.extents())
        return extents

    def plan(self) -> Layout:
        """Place and serialize every table; only the first call does work"""
        if self._layout is not None:
            return self._layout

        version, align = self.version, self.alignment
        extents = self._extents()

        # pass 1: sizes. Chunk counts of planner-owned data depend only on
        # lengths, so table sizes are known before any offset is.
        strings = self.strings.encode()
        inode_size = sum(
            inode.inode_size(len(r.acl), r.extent.chunk_count(self.max_chunk_size), version)
            for r in self._records
        )
        history_size = sum(p.size(version, self.max_chunk_size) for p in self._history)

        cursor = HEADER_SIZE
        offsets: Dict[str, int] = {}
        for name, size in (("string", len(strings)), ("inode", inode_size),
                           ("history", history_size), ("meta", len(self.meta))):
            cursor = align_up(cursor, align)
            offsets[name] = cursor
            cursor += size
            log.debug("placed %s table at %#x (%d bytes)", name, offsets[name], size)
        tables_end = cursor

        pieces: List[Tuple[int, bytes]] = []
        for extent in extents:
            if extent.plan is None:
                continue
            for offset, data in extent.plan:
                if not data:
                    continue
                if offset < tables_end:
                    raise OffsetOutOfRange(
                        f"Page chunk at {offset:#x} overlaps tables ending at {tables_end:#x}", offset
                    )
                pieces.append((offset, data))
                cursor = max(cursor, offset + len(data))
        pieces.sort(key=lambda p: p[0])
        for (a_off, a_data), (b_off, _) in zip(pieces, pieces[1:]):
            if a_off + len(a_data) > b_off:
                raise OffsetOutOfRange(f"Page chunks overlap at {b_off:#x}", b_off)

        # pass 2: allocate planner-owned data into the gaps left by the tables,
        # placed data and chunk lists recorded without data
        occupied = [(offset, offset + len(data)) for offset, data in pieces]
        for extent in extents:
            if extent.managed or extent.plan is not None:
                continue
            occupied.extend((c.offset, c.end) for c in extent.chunks if c.length and c.end > tables_end)
        for extent in extents:
            if not extent.managed or not extent.data:
                continue
            offset = _best_fit(occupied, tables_end, len(extent.data), align)
            extent.chunks = tuple(split_extent(offset, len(extent.data), self.max_chunk_size))
            pieces.append((offset, extent.data))
            occupied.append((offset, offset + len(extent.data)))
            cursor = max(cursor, offset + len(extent.data))

        inodes = inode.encode_table([r.descriptor() for r in self._records], version)
        history = journal.encode_history([p.entry() for p in self._history], version)
        assert len(inodes) == inode_size and len(history) == history_size

        header = Header(
            version=version,
            inode_off=offsets["inode"], inode_len=len(self._records),
            string_off=offsets["string"], string_len=len(self.strings),
            history_off=offsets["history"], history_len=len(self._history),
            meta_off=offsets["meta"], meta_len=len(self.meta),
        )
        self._layout = Layout(header, strings, inodes, history, self.meta, tuple(pieces), cursor)
        log.debug("planned %d byte image: %d pages, %d history entries",
                  cursor, len(self._records), len(self._history))
        return self._layout

    # -- output ------------------------------------------------------------

    def build(self) -> bytes:
        """Whole image in memory; the header is filled in last"""
        layout = self.plan()
        image = bytearray(layout.size)
        for offset, data in layout.segments():
            image[offset : offset + len(data)] = data
        image[:HEADER_SIZE] = layout.header.pack()
        return bytes(image)

    def write_to(self, sink) -> Header:
        """Write sequentially to a seekable sink, then patch the header"""
        layout = self.plan()
        sink.seek(0)
        sink.write(b"\x00" * HEADER_SIZE)
        position = HEADER_SIZE
        for offset, data in layout.segments():
            if not data:
                continue
            sink.write(b"\x00" * (offset - position))
            sink.write(data)
            position = offset + len(data)
        if position < layout.size:
            sink.write(b"\x00" * (layout.size - position))
        if hasattr(sink, "truncate"):
            sink.truncate(layout.size)
        sink.seek(0)
        sink.write(layout.header.pack())
        sink.seek(layout.size)
        return layout.header
