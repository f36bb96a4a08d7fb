"""
Journal replay.

The effective state of a page is a left fold of its history entries over
the on-disk inode record:

  SET_CHUNKS / SET_ACL / RENAME  replace one field of an active page
  DELETE                         active -> absent
  CREATE                         absent -> active, fresh descriptor

Entries are applied in ascending sequence key. Entries sharing a key keep
their append order, so the later-appended one determines the final value.
"""

import functools
import logging
import warnings
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Tuple

import attr

import chunks as chunk_codec
from acl import AclEntry
from chunks import Chunk
from errors import InvalidTransition, JournalSequenceConflict
from inode import PageDescriptor
from journal import HistoryEntry, OpKind

log = logging.getLogger(__name__)


@attr.s(auto_attribs=True, frozen=True)
class EffectiveDescriptor:
    index: int
    name: int  # string table index
    acl: Tuple[AclEntry, ...] = ()
    chunks: Tuple[Chunk, ...] = ()
    created_seq: Optional[int] = None
    modified_seq: Optional[int] = None

    @classmethod
    def from_base(cls, index: int, base: PageDescriptor) -> "EffectiveDescriptor":
        return cls(index, base.name, base.acl, base.chunks)

    @property
    def size(self) -> int:
        return chunk_codec.total_length(self.chunks)

    def as_descriptor(self) -> PageDescriptor:
        return PageDescriptor(self.name, self.acl, self.chunks)


def apply(state: Optional[EffectiveDescriptor], entry: HistoryEntry) -> Optional[EffectiveDescriptor]:
    """One state transition; returns a new value and never mutates state"""
    if state is None:
        if entry.kind != OpKind.CREATE:
            raise InvalidTransition(
                f"{entry.kind.name} on absent inode {entry.target}", entry.offset
            )
        d = entry.descriptor
        return EffectiveDescriptor(
            entry.target, d.name, d.acl, d.chunks,
            created_seq=entry.sequence_key, modified_seq=entry.sequence_key,
        )

    if entry.kind == OpKind.CREATE:
        raise InvalidTransition(f"CREATE on live inode {entry.target}", entry.offset)
    if entry.kind == OpKind.DELETE:
        return None
    if entry.kind == OpKind.SET_CHUNKS:
        changes = {"chunks": entry.chunks}
    elif entry.kind == OpKind.SET_ACL:
        changes = {"acl": entry.acl}
    else:
        changes = {"name": entry.name}
    return attr.evolve(state, modified_seq=entry.sequence_key, **changes)


def fold(base: Optional[EffectiveDescriptor], entries: Sequence[HistoryEntry]) -> Optional[EffectiveDescriptor]:
    """Fold already-ordered entries over a base state"""
    return functools.reduce(apply, entries, base)


def order(entries: Sequence[HistoryEntry]) -> List[HistoryEntry]:
    """Sort by sequence key; sorted() is stable, so ties keep append order"""
    return sorted(entries, key=lambda e: e.sequence_key)


def find_conflicts(index: int, ordered: Sequence[HistoryEntry]) -> List[JournalSequenceConflict]:
    groups = defaultdict(list)
    for entry in ordered:
        groups[entry.sequence_key].append(entry.offset)
    return [
        JournalSequenceConflict(index, key, offsets)
        for key, offsets in sorted(groups.items())
        if len(offsets) > 1
    ]


class ReplayEngine:
    """Resolves effective descriptors from base records and the history table.

    Construction groups and orders entries once; resolve() is pure and can be
    called any number of times, from any number of threads.
    """

    def __init__(
        self,
        inodes: Sequence[PageDescriptor],
        history: Sequence[HistoryEntry],
        warn_conflicts: bool = False,
    ):
        self._inodes = tuple(inodes)
        self.warn_conflicts = warn_conflicts

        grouped: Dict[int, List[HistoryEntry]] = defaultdict(list)
        for entry in history:
            grouped[entry.target].append(entry)
        self._entries: Dict[int, Tuple[HistoryEntry, ...]] = {
            target: tuple(order(entries)) for target, entries in grouped.items()
        }
        self._conflicts: Dict[int, List[JournalSequenceConflict]] = {}
        for target, entries in self._entries.items():
            found = find_conflicts(target, entries)
            if found:
                self._conflicts[target] = found
                log.debug("inode %d has %d sequence key conflicts", target, len(found))

    def entries_for(self, index: int) -> Tuple[HistoryEntry, ...]:
        return self._entries.get(index, ())

    def conflicts(self, index: Optional[int] = None) -> List[JournalSequenceConflict]:
        if index is not None:
            return list(self._conflicts.get(index, ()))
        return [c for target in sorted(self._conflicts) for c in self._conflicts[target]]

    def base(self, index: int) -> Optional[EffectiveDescriptor]:
        """Starting state: the on-disk record, or absent past the inode table"""
        if 0 <= index < len(self._inodes):
            return EffectiveDescriptor.from_base(index, self._inodes[index])
        return None

    def resolve(self, index: int) -> Optional[EffectiveDescriptor]:
        """Effective descriptor for index, or None if the page is absent"""
        if self.warn_conflicts:
            for conflict in self._conflicts.get(index, ()):
                warnings.warn(conflict, stacklevel=2)
        return fold(self.base(index), self.entries_for(index))

    def indices(self) -> List[int]:
        """Every index known to the inode table or the journal"""
        return sorted(set(range(len(self._inodes))) | set(self._entries))

    def resolve_all(self) -> Dict[int, EffectiveDescriptor]:
        """All live pages by index"""
        result = {}
        for index in self.indices():
            state = self.resolve(index)
            if state is not None:
                result[index] = state
        return result
