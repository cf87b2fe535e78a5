"""
Record Codec tests: register encoding, lenient decoding, version scanning.

Run with: pytest tests/test_codec.py -v
"""

import struct
from dataclasses import replace

import pytest

from bountiful.codec import (
    R_CONTENT,
    R_CREATOR,
    R_DEADLINE,
    R_MIN_SUBMISSIONS,
    R_REWARD,
    R_STATS,
    decode_int,
    decode_long_coll,
    decode_record,
    encode_int,
    encode_long,
    encode_long_coll,
    encode_record,
    encode_registers,
    scan_records,
    try_decode_record,
)
from bountiful.errors import EncodingError
from bountiful.keys import Network
from bountiful.ledger import LedgerBox, Token
from bountiful.records import SubmissionStats
from bountiful.versions import ContractVersion, MintGuard

from conftest import CREATOR, STRANGER, make_record


def _as_ledger_box(candidate, box_id="aa" * 32):
    return LedgerBox(
        box_id=box_id,
        value=candidate.value,
        address=candidate.address,
        tokens=candidate.tokens,
        registers=dict(candidate.registers),
        script=candidate.script,
    )


class TestRegisterValues:

    def test_int_is_four_byte_big_endian(self):
        assert encode_int(1000) == b"\x04" + struct.pack(">i", 1000)
        assert decode_int(encode_int(-5)) == -5

    def test_long_is_eight_byte_big_endian(self):
        assert encode_long(2) == b"\x05" + b"\x00" * 7 + b"\x02"

    def test_stats_are_an_ordered_sequence(self):
        raw = encode_long_coll([3, 1, 2])
        assert raw[:3] == b"\x11\x00\x03"
        assert decode_long_coll(raw) == [3, 1, 2]

    def test_wrong_tag_is_rejected(self):
        with pytest.raises(ValueError):
            decode_int(encode_long(1))

    def test_truncated_collection_is_rejected(self):
        with pytest.raises(ValueError):
            decode_long_coll(encode_long_coll([1, 2, 3])[:-1])


class TestRecordEncoding:

    def test_registers_layout(self, record):
        regs = encode_registers(record)
        assert set(regs) == {R_DEADLINE, R_MIN_SUBMISSIONS, R_STATS, R_REWARD, R_CREATOR, R_CONTENT}
        assert regs[R_CREATOR][1:] == CREATOR.public_key

    def test_encode_then_decode_is_identity(self, record):
        record = replace(record, stats=SubmissionStats(5, 2, 1), deadline=123_456)
        assert decode_record(encode_record(record)) == record

    @pytest.mark.parametrize("version", list(ContractVersion))
    def test_every_version_decodes(self, version):
        record = make_record(version=version)
        decoded = decode_record(encode_record(record))
        assert decoded.version == version
        assert decoded.script == record.script

    def test_box_address_is_the_script_address(self, record):
        candidate = encode_record(record, Network.TESTNET)
        assert candidate.address == record.script.address(Network.TESTNET)
        assert candidate.tokens == (Token(record.token_id, 1),)

    def test_box_id_carried_through(self, record):
        decoded = decode_record(_as_ledger_box(encode_record(record), box_id="bb" * 32))
        assert decoded.box_id == "bb" * 32
        # Ledger identity is not part of record equality.
        assert decoded == record

    def test_unencodable_creator_key(self, record):
        with pytest.raises(EncodingError):
            encode_registers(replace(record, creator_pub_key=b"\x02" * 5))


class TestLenientDecoding:
    """Missing or malformed registers decode to zero values."""

    def test_missing_register_reads_as_zero(self, record):
        candidate = encode_record(record)
        regs = dict(candidate.registers)
        del regs[R_MIN_SUBMISSIONS]
        decoded = decode_record(replace(candidate, registers=regs))
        assert decoded.min_submissions == 0
        assert decoded.deadline == record.deadline

    def test_malformed_register_reads_as_zero(self, record):
        candidate = encode_record(record)
        regs = dict(candidate.registers, **{R_STATS: b"\x11\x00"})
        decoded = decode_record(replace(candidate, registers=regs))
        assert decoded.stats == SubmissionStats()

    def test_short_stats_are_padded(self, record):
        candidate = encode_record(record)
        regs = dict(candidate.registers, **{R_STATS: encode_long_coll([4])})
        assert decode_record(replace(candidate, registers=regs)).stats == SubmissionStats(4, 0, 0)

    def test_missing_token_aborts(self, record):
        candidate = replace(encode_record(record), tokens=())
        with pytest.raises(EncodingError):
            decode_record(candidate)

    def test_foreign_script_aborts(self, record):
        candidate = replace(encode_record(record), script=MintGuard(b"\x00" * 32))
        with pytest.raises(EncodingError):
            decode_record(candidate)

    def test_script_bound_to_other_token_aborts(self, record):
        candidate = replace(encode_record(record), tokens=(Token(b"\x09" * 32, 1),))
        result = try_decode_record(candidate)
        assert not result.ok
        assert result.error.code == "encoding_error"
        with pytest.raises(EncodingError):
            result.unwrap()

    def test_creator_register_must_match_script(self, record):
        candidate = encode_record(record)
        regs = dict(candidate.registers)
        regs[R_CREATOR] = regs[R_CREATOR][:1] + STRANGER.public_key
        with pytest.raises(EncodingError, match="disagrees"):
            decode_record(replace(candidate, registers=regs))

    def test_malformed_creator_register_reads_as_empty(self, record):
        candidate = encode_record(record)
        regs = dict(candidate.registers, **{R_CREATOR: b"\x07\x00"})
        assert decode_record(replace(candidate, registers=regs)).creator_pub_key == b""


class TestScanning:
    """Existing records of every version are found, not only the latest."""

    def test_scan_across_versions(self):
        v10 = _as_ledger_box(encode_record(make_record(version=ContractVersion.V1_0, token_id=b"\x01" * 32)), "01" * 32)
        v11 = _as_ledger_box(encode_record(make_record(version=ContractVersion.V1_1, token_id=b"\x02" * 32)), "02" * 32)
        found = scan_records([v10, v11])
        assert {r.version for r in found} == {ContractVersion.V1_0, ContractVersion.V1_1}

        only_old = scan_records([v10, v11], versions=[ContractVersion.V1_0])
        assert [r.token_id for r in only_old] == [b"\x01" * 32]

    def test_scan_skips_broken_and_multi_token_boxes(self, record):
        good = _as_ledger_box(encode_record(record), "03" * 32)
        broken = replace(good, box_id="04" * 32, tokens=())
        doubled = replace(good, box_id="05" * 32, tokens=(Token(record.token_id, 2),))
        assert [r.box_id for r in scan_records([broken, good, doubled])] == ["03" * 32]
