#!/usr/bin/env python3
"""
Tests for the header, string table, ACL and chunk codecs
"""

import io
import struct

import pytest

import acl
import header
import strtab
from chunks import Chunk, WritePlan, decode_chunks, encode_list, gather, scatter, split_extent
from codec import RecordReader, align_up, pad
from errors import (
    ChunkOutOfRange,
    ChunkSizeMismatch,
    InvalidMagic,
    OffsetOutOfRange,
    StringIndexOutOfRange,
    TruncatedRecord,
    UnsupportedVersion,
)
from header import HEADER_SIZE, MAGIC, Header


class TestPrimitives:
    def test_align_up(self):
        assert align_up(0) == 0
        assert align_up(1) == 16
        assert align_up(16) == 16
        assert align_up(81) == 96
        assert align_up(5, 1) == 5

    def test_pad(self):
        assert pad(b"abc") == b"abc" + b"\x00" * 13
        assert pad(b"") == b""

    def test_reader_reports_offset_of_truncation(self):
        reader = RecordReader(b"\x01\x00\x00\x00\x00\x00\x00\x00\x02", 0)
        assert reader.u64() == 1
        with pytest.raises(TruncatedRecord) as exc:
            reader.u64()
        assert exc.value.offset == 8


class TestHeader:
    def test_magic_bytes(self):
        assert Header().pack()[:4] == b"FTDB"
        assert struct.unpack("<I", b"FTDB")[0] == MAGIC

    def test_pack_unpack(self):
        h = Header(version=2, inode_off=96, inode_len=3, string_off=80, string_len=4,
                   history_off=160, history_len=1, meta_off=208, meta_len=10)
        data = h.pack()
        assert len(data) == HEADER_SIZE
        assert header.parse(data) == h

    def test_reserved_written_as_zero_and_ignored(self):
        data = bytearray(Header(string_off=80).pack())
        assert data[8:16] == b"\x00" * 8
        data[8:16] = b"\xff" * 8
        parsed = header.parse(bytes(data))
        assert parsed == Header(string_off=80)
        assert parsed.reserved == 0xFFFFFFFFFFFFFFFF

    def test_invalid_magic(self):
        data = b"XTDB" + Header().pack()[4:]
        with pytest.raises(InvalidMagic) as exc:
            header.parse(data)
        assert exc.value.offset == 0

    def test_magic_checked_before_anything_else(self):
        # short and with a bogus version, but magic still reported first
        with pytest.raises(InvalidMagic):
            header.parse(b"\x00\x00\x00\x00\x09\x00\x00\x00")

    def test_unsupported_version(self):
        with pytest.raises(UnsupportedVersion) as exc:
            header.parse(Header(version=3).pack())
        assert exc.value.version == 3

    def test_short_header(self):
        with pytest.raises(TruncatedRecord):
            header.parse(Header().pack()[:40])

    def test_offset_inside_header(self):
        with pytest.raises(OffsetOutOfRange):
            header.parse(Header(inode_off=40, inode_len=1).pack())

    def test_offsets_past_file_end_are_not_checked_at_parse(self):
        h = header.parse(Header(inode_off=4096, inode_len=1).pack())
        assert h.table("inode") == (4096, 1)

    def test_unaligned_offsets_accepted(self):
        h = header.parse(Header(string_off=81).pack())
        assert h.string_off == 81

    def test_parse_from_file_object(self):
        h = Header(meta_off=80, meta_len=2)
        assert header.parse(io.BytesIO(h.pack() + b"{}")) == h

    def test_tables(self):
        h = Header(inode_off=96, inode_len=1)
        assert h.tables()["inode"] == (96, 1)
        with pytest.raises(KeyError):
            h.table("data")


class TestStringTable:
    def test_decode_and_resolve(self):
        data = b"\xee" * 8 + strtab.encode([b"root", b"", b"alice"])
        table = strtab.decode(data, 8, 3)
        assert list(table) == [b"root", b"", b"alice"]
        assert table.resolve(2) == b"alice"

    def test_index_out_of_range(self):
        table = strtab.decode(strtab.encode([b"root"]), 0, 1)
        with pytest.raises(StringIndexOutOfRange) as exc:
            strtab.resolve(table, 1, at=200)
        assert exc.value.index == 1
        assert exc.value.offset == 200

    def test_truncated_string(self):
        data = strtab.encode([b"root"])[:-1]
        with pytest.raises(TruncatedRecord):
            strtab.decode(data, 0, 1)

    def test_offset_past_end(self):
        with pytest.raises(OffsetOutOfRange):
            strtab.decode(b"\x00" * 16, 64, 1)

    def test_offset_at_end_of_file(self):
        with pytest.raises(OffsetOutOfRange):
            strtab.decode(b"\x00" * 16, 16, 1)
        assert len(strtab.decode(b"\x00" * 16, 16, 0)) == 0

    def test_intern_deduplicates(self):
        builder = strtab.StringTableBuilder()
        assert builder.intern("root") == 0
        assert builder.intern(b"alice") == 1
        assert builder.intern(b"root") == 0
        assert builder.intern("alice") == 1
        assert len(builder) == 2
        assert strtab.decode(builder.encode(), 0, 2) == builder.freeze()

    def test_builders_are_independent(self):
        a = strtab.StringTableBuilder()
        b = strtab.StringTableBuilder()
        a.intern("x")
        assert b.intern("y") == 0


class TestAcl:
    def test_round_trip_every_flag_byte(self):
        for flags in (0, 1, 0b101, 0x80, 0xFF):
            entry = acl.AclEntry(flags, 0x0102030405060708)
            data = acl.encode_entry(entry)
            assert len(data) == acl.ACL_ENTRY_SIZE
            assert data[0] == flags
            assert acl.decode_entry(data) == entry

    def test_flags_must_fit_a_byte(self):
        with pytest.raises(ValueError):
            acl.AclEntry(0x100, 0)

    def test_permission_names(self):
        assert acl.AclEntry(acl.READ_WRITE_EXECUTE, 0).permission == "read-write-execute"
        assert acl.AclEntry(acl.NONE, 0).permission == "none"
        assert acl.AclEntry(0b110, 0).permission == "custom"

    def test_bits(self):
        entry = acl.AclEntry(0b10000001, 0)
        assert entry.has(0) and entry.has(7)
        assert not entry.has(1)

    def test_list(self):
        entries = [acl.AclEntry(1, 2), acl.AclEntry(7, 0)]
        data = acl.encode_list(entries)
        assert len(data) == 8 + 2 * 9
        assert acl.read_list(RecordReader(data)) == entries


class TestChunks:
    def test_decode_chunks(self):
        chunks = [Chunk(64, 128), Chunk(0, 8)]
        data = encode_list(chunks)[8:]
        assert decode_chunks(data, 2) == chunks

    def test_decode_truncated(self):
        with pytest.raises(TruncatedRecord):
            decode_chunks(b"\x00" * 20, 2)

    def test_gather_follows_list_order(self):
        source = b"0123456789"
        assert gather(source, [Chunk(5, 3), Chunk(0, 2)]) == b"56701"
        assert gather(source, []) == b""

    def test_gather_out_of_range(self):
        with pytest.raises(ChunkOutOfRange) as exc:
            gather(b"0123456789", [Chunk(0, 2), Chunk(8, 3)])
        assert exc.value.offset == 8

    def test_gather_end_of_file_is_inclusive(self):
        assert gather(b"0123", [Chunk(2, 2)]) == b"23"

    def test_scatter_then_gather(self):
        data = b"hello world"
        chunks = [Chunk(10, 5), Chunk(0, 6)]
        plan = scatter(data, chunks)
        assert list(plan) == [(10, b"hello"), (0, b" world")]
        sink = bytearray()
        plan.apply(sink)
        assert len(sink) == 15
        assert gather(sink, chunks) == data

    def test_scatter_size_mismatch(self):
        with pytest.raises(ChunkSizeMismatch) as exc:
            scatter(b"abc", [Chunk(0, 2)])
        assert exc.value.expected == 2
        assert exc.value.actual == 3

    def test_scatter_rejects_overlapping_chunks(self):
        with pytest.raises(OffsetOutOfRange) as exc:
            scatter(b"abcd", [Chunk(0, 2), Chunk(0, 2)])
        assert exc.value.offset == 0
        with pytest.raises(OffsetOutOfRange):
            scatter(b"abcdef", [Chunk(10, 3), Chunk(8, 3)])

    def test_scatter_adjacent_and_empty_chunks(self):
        chunks = [Chunk(4, 2), Chunk(4, 0), Chunk(2, 2)]
        sink = bytearray()
        scatter(b"abcd", chunks).apply(sink)
        assert gather(sink, chunks) == b"abcd"

    def test_plan_apply_to_file(self):
        sink = io.BytesIO(b"." * 8)
        scatter(b"ab", [Chunk(6, 1), Chunk(1, 1)]).apply(sink)
        assert sink.getvalue() == b".b....a."

    def test_empty_plan(self):
        assert WritePlan().end == 0
        assert len(scatter(b"", [])) == 0

    def test_split_extent(self):
        assert split_extent(100, 10) == [Chunk(100, 10)]
        assert split_extent(100, 10, 4) == [Chunk(100, 4), Chunk(104, 4), Chunk(108, 2)]
        assert split_extent(100, 0, 4) == []
