#!/usr/bin/env python3
"""
Tests for the history table codec and journal replay
"""

import struct
import warnings

import pytest

import journal
from acl import AclEntry
from chunks import Chunk
from errors import InvalidTransition, JournalSequenceConflict, TruncatedRecord
from header import VERSION_ALIGNED, VERSION_PACKED
from inode import PageDescriptor
from journal import HistoryEntry, OpKind
from replay import EffectiveDescriptor, ReplayEngine, fold

BASE = PageDescriptor(0, [AclEntry(1, 1)], [Chunk(64, 128)])

ENTRIES = [
    HistoryEntry.set_chunks(0, 1, [Chunk(256, 64)]),
    HistoryEntry.set_acl(0, 2, [AclEntry(7, 2), AclEntry(0, 3)]),
    HistoryEntry.rename(0, 3, 4),
    HistoryEntry.delete(0, 4),
    HistoryEntry.create(0, 5, PageDescriptor(5, [AclEntry(3, 1)], [Chunk(1, 2)])),
]


class TestHistoryCodec:
    @pytest.mark.parametrize("version", [VERSION_PACKED, VERSION_ALIGNED])
    def test_round_trip(self, version):
        data = journal.encode_history(ENTRIES, version)
        assert len(data) == sum(journal.entry_size(e, version) for e in ENTRIES)
        decoded = journal.decode_history(b"\x00" * 16 + data, 16, len(ENTRIES), version)
        assert decoded == ENTRIES
        assert [e.position for e in decoded] == [0, 1, 2, 3, 4]
        assert decoded[0].offset == 16
        assert decoded[1].offset == 16 + journal.entry_size(ENTRIES[0], version)

    def test_entry_layout(self):
        data = journal.encode_entry(HistoryEntry.rename(2, 9, 7), VERSION_PACKED)
        assert data == struct.pack("<QQBQ", 2, 9, 3, 7)
        assert journal.encode_entry(HistoryEntry.delete(1, 1), VERSION_PACKED) == struct.pack("<QQB", 1, 1, 4)

    def test_unknown_op_kind(self):
        data = struct.pack("<QQB", 0, 1, 9)
        with pytest.raises(TruncatedRecord) as exc:
            journal.decode_history(data, 0, 1, VERSION_PACKED)
        assert exc.value.offset == 16

    def test_truncated_payload_aborts_table(self):
        data = journal.encode_history(ENTRIES, VERSION_PACKED)
        with pytest.raises(TruncatedRecord):
            journal.decode_history(data[:-3], 0, len(ENTRIES), VERSION_PACKED)

    def test_kind_is_converted(self):
        assert HistoryEntry(0, 0, 4).kind is OpKind.DELETE


class TestReplay:
    def test_empty_history_returns_base(self):
        engine = ReplayEngine([BASE], [])
        state = engine.resolve(0)
        assert state.as_descriptor() == BASE
        assert state.created_seq is None and state.modified_seq is None

    def test_set_chunks_replaces_list(self):
        engine = ReplayEngine([BASE], ENTRIES[:1])
        assert engine.resolve(0).chunks == (Chunk(256, 64),)
        assert engine.resolve(0).acl == BASE.acl
        assert engine.resolve(0).modified_seq == 1

    def test_each_transition(self):
        engine = ReplayEngine([BASE], ENTRIES[:3])
        state = engine.resolve(0)
        assert state == EffectiveDescriptor(
            0, 4, (AclEntry(7, 2), AclEntry(0, 3)), (Chunk(256, 64),), None, 3
        )

    def test_delete_then_create(self):
        engine = ReplayEngine([BASE], ENTRIES[:4])
        assert engine.resolve(0) is None
        engine = ReplayEngine([BASE], ENTRIES)
        state = engine.resolve(0)
        assert state.name == 5
        assert state.chunks == (Chunk(1, 2),)
        assert state.created_seq == 5

    def test_sequence_key_orders_not_append_order(self):
        history = [
            HistoryEntry.rename(0, 20, 9),
            HistoryEntry.rename(0, 10, 8),
        ]
        assert ReplayEngine([BASE], history).resolve(0).name == 9

    def test_ties_keep_append_order(self):
        history = [
            HistoryEntry.set_chunks(0, 7, [Chunk(1, 1)]),
            HistoryEntry.set_chunks(0, 7, [Chunk(2, 2)]),
        ]
        engine = ReplayEngine([BASE], history)
        results = {engine.resolve(0).chunks for _ in range(10)}
        assert results == {(Chunk(2, 2),)}
        assert ReplayEngine([BASE], history[::-1]).resolve(0).chunks == (Chunk(1, 1),)

    def test_conflicts_reported(self):
        history = [
            HistoryEntry(0, 7, OpKind.RENAME, name=1, offset=100),
            HistoryEntry(0, 7, OpKind.RENAME, name=2, offset=200),
            HistoryEntry(0, 8, OpKind.RENAME, name=3, offset=300),
        ]
        engine = ReplayEngine([BASE], history)
        (conflict,) = engine.conflicts(0)
        assert conflict.sequence_key == 7
        assert conflict.offsets == (100, 200)
        assert engine.conflicts() == engine.conflicts(0)
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            engine.resolve(0)

    def test_conflicts_warn_when_asked(self):
        history = [HistoryEntry.delete(0, 1), HistoryEntry.create(0, 1, BASE)]
        engine = ReplayEngine([BASE], history, warn_conflicts=True)
        with pytest.warns(JournalSequenceConflict):
            state = engine.resolve(0)
        assert state.as_descriptor() == BASE

    def test_other_inodes_unaffected(self):
        other = PageDescriptor(9)
        engine = ReplayEngine([BASE, other], ENTRIES[:4])
        assert engine.resolve(1).as_descriptor() == other

    def test_journal_only_inode(self):
        history = [HistoryEntry.create(3, 1, PageDescriptor(2, [], [Chunk(0, 4)]))]
        engine = ReplayEngine([BASE], history)
        assert engine.resolve(2) is None
        assert engine.resolve(3).chunks == (Chunk(0, 4),)
        assert engine.indices() == [0, 3]
        assert sorted(engine.resolve_all()) == [0, 3]

    def test_entry_on_absent_inode(self):
        engine = ReplayEngine([], [HistoryEntry(1, 1, OpKind.SET_CHUNKS, offset=77)])
        with pytest.raises(InvalidTransition) as exc:
            engine.resolve(1)
        assert exc.value.offset == 77

    def test_entry_after_delete(self):
        engine = ReplayEngine([BASE], [HistoryEntry.delete(0, 1), HistoryEntry.rename(0, 2, 3)])
        with pytest.raises(InvalidTransition):
            engine.resolve(0)

    def test_create_on_live_inode(self):
        engine = ReplayEngine([BASE], [HistoryEntry.create(0, 1, BASE)])
        with pytest.raises(InvalidTransition):
            engine.resolve(0)

    def test_replay_is_pure(self):
        history = list(ENTRIES)
        engine = ReplayEngine([BASE], history)
        first = engine.resolve(0)
        assert engine.resolve(0) == first
        assert history == ENTRIES
        assert BASE == PageDescriptor(0, [AclEntry(1, 1)], [Chunk(64, 128)])

    def test_fold_without_engine(self):
        base = EffectiveDescriptor.from_base(0, BASE)
        assert fold(base, []) is base
        assert fold(base, ENTRIES[:1]).chunks == (Chunk(256, 64),)
        assert base.chunks == (Chunk(64, 128),)

    def test_size(self):
        assert ReplayEngine([BASE], ENTRIES[:1]).resolve(0).size == 64
