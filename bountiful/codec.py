"""Record Codec: BountyRecord <-> register encoding of a bounty box.

Each register is a one-byte type tag followed by a big-endian body:

    R4  deadline         0x04  Int32
    R5  min submissions  0x05  Int64
    R6  stats            0x11  UInt16 count, then count x Int64  (total, accepted, rejected)
    R7  reward amount    0x05  Int64
    R8  creator key      0x07  33-byte group element
    R9  content          0x0e  UInt32 length, then bytes

Reads are lenient the way the ledger's own register reads are: a missing or
malformed register yields the field's zero value. The control token and the
contract script are not optional; without them the box is not a bounty and
decoding raises EncodingError.
"""

from __future__ import annotations

import struct
from typing import Callable, Dict, Iterable, List, Optional, TypeVar, Union

from bountiful.errors import EncodingError, Result
from bountiful.keys import GROUP_ELEMENT_SIZE, Network
from bountiful.ledger import BoxCandidate, LedgerBox, Token
from bountiful.observability import BountyLayer, get_logger, timed_operation
from bountiful.records import BountyRecord, ScriptConstants, SubmissionStats
from bountiful.versions import ContractVersion, ScriptIdentity

logger = get_logger("codec", BountyLayer.CODEC)

INT_TAG = 0x04
LONG_TAG = 0x05
GROUP_ELEMENT_TAG = 0x07
BYTES_TAG = 0x0E
LONG_COLL_TAG = 0x11

R_DEADLINE = "R4"
R_MIN_SUBMISSIONS = "R5"
R_STATS = "R6"
R_REWARD = "R7"
R_CREATOR = "R8"
R_CONTENT = "R9"

T = TypeVar("T")


# -----------------------------------------------------------------------------
# Register values
# -----------------------------------------------------------------------------

def encode_int(value: int) -> bytes:
    return bytes([INT_TAG]) + struct.pack(">i", value)


def encode_long(value: int) -> bytes:
    return bytes([LONG_TAG]) + struct.pack(">q", value)


def encode_long_coll(values: Iterable[int]) -> bytes:
    values = list(values)
    return bytes([LONG_COLL_TAG]) + struct.pack(">H", len(values)) + b"".join(
        struct.pack(">q", v) for v in values
    )


def encode_group_element(point: bytes) -> bytes:
    if len(point) != GROUP_ELEMENT_SIZE:
        raise ValueError(f"group element must be {GROUP_ELEMENT_SIZE} bytes")
    return bytes([GROUP_ELEMENT_TAG]) + point


def encode_bytes(data: bytes) -> bytes:
    return bytes([BYTES_TAG]) + struct.pack(">I", len(data)) + bytes(data)


def _body(raw: Optional[bytes], tag: int) -> bytes:
    if not raw or raw[0] != tag:
        raise ValueError(f"expected register tag {tag:#04x}")
    return raw[1:]


def decode_int(raw: Optional[bytes]) -> int:
    body = _body(raw, INT_TAG)
    if len(body) != 4:
        raise ValueError("Int register must hold 4 bytes")
    return struct.unpack(">i", body)[0]


def decode_long(raw: Optional[bytes]) -> int:
    body = _body(raw, LONG_TAG)
    if len(body) != 8:
        raise ValueError("Long register must hold 8 bytes")
    return struct.unpack(">q", body)[0]


def decode_long_coll(raw: Optional[bytes]) -> List[int]:
    body = _body(raw, LONG_COLL_TAG)
    if len(body) < 2:
        raise ValueError("Coll[Long] register is truncated")
    (count,) = struct.unpack(">H", body[:2])
    if len(body) != 2 + 8 * count:
        raise ValueError("Coll[Long] length does not match its count")
    return [struct.unpack(">q", body[2 + 8 * i:10 + 8 * i])[0] for i in range(count)]


def decode_group_element(raw: Optional[bytes]) -> bytes:
    body = _body(raw, GROUP_ELEMENT_TAG)
    if len(body) != GROUP_ELEMENT_SIZE:
        raise ValueError(f"GroupElement register must hold {GROUP_ELEMENT_SIZE} bytes")
    return body


def decode_bytes(raw: Optional[bytes]) -> bytes:
    body = _body(raw, BYTES_TAG)
    if len(body) < 4:
        raise ValueError("Coll[Byte] register is truncated")
    (length,) = struct.unpack(">I", body[:4])
    if len(body) != 4 + length:
        raise ValueError("Coll[Byte] length does not match its header")
    return body[4:]


def _lenient(registers: Dict[str, bytes], name: str, read: Callable[[Optional[bytes]], T], zero: T) -> T:
    raw = registers.get(name)
    if raw is None:
        return zero
    try:
        return read(raw)
    except (ValueError, struct.error) as e:
        logger.debug("Malformed register read as zero value", register=name, error=str(e))
        return zero


def _stats_from(values: List[int]) -> SubmissionStats:
    padded = (list(values) + [0, 0, 0])[:3]
    return SubmissionStats(*padded)


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------

def encode_registers(record: BountyRecord) -> Dict[str, bytes]:
    try:
        return {
            R_DEADLINE: encode_int(record.deadline),
            R_MIN_SUBMISSIONS: encode_long(record.min_submissions),
            R_STATS: encode_long_coll(record.stats.as_tuple()),
            R_REWARD: encode_long(record.reward_amount),
            R_CREATOR: encode_group_element(record.creator_pub_key),
            R_CONTENT: encode_bytes(record.content),
        }
    except (ValueError, struct.error) as e:
        raise EncodingError(f"record cannot be encoded: {e}", token_id=record.token_id.hex()) from e


def encode_record(record: BountyRecord, network: Network = Network.MAINNET) -> BoxCandidate:
    """The box candidate that holds ``record`` under its derived script."""
    script = record.script
    return BoxCandidate(
        value=record.value,
        address=script.address(network),
        tokens=(Token(record.token_id, record.token_amount),),
        registers=encode_registers(record),
        script=script,
    )


def decode_record(box: Union[BoxCandidate, LedgerBox]) -> BountyRecord:
    """Decode a bounty box.

    Raises:
        EncodingError: no control token, the box is not guarded by a
            bounty script for that token, or the creator key register
            names a different key than the script
    """
    if not box.tokens:
        raise EncodingError("box carries no control token", box_id=getattr(box, "box_id", None))
    token = box.tokens[0]
    script = box.script
    if not isinstance(script, ScriptIdentity):
        raise EncodingError("box is not guarded by a bounty script", box_id=getattr(box, "box_id", None))
    if script.token_id != token.token_id:
        raise EncodingError(
            "bounty script is bound to a different token",
            box_id=getattr(box, "box_id", None),
            token_id=token.token_id.hex(),
        )

    regs = box.registers
    creator = _lenient(regs, R_CREATOR, decode_group_element, b"")
    if creator and creator != script.creator_pub_key:
        raise EncodingError(
            "creator key register disagrees with the bounty script",
            box_id=getattr(box, "box_id", None),
            token_id=token.token_id.hex(),
        )
    return BountyRecord(
        token_id=token.token_id,
        value=box.value,
        deadline=_lenient(regs, R_DEADLINE, decode_int, 0),
        min_submissions=_lenient(regs, R_MIN_SUBMISSIONS, decode_long, 0),
        stats=_stats_from(_lenient(regs, R_STATS, decode_long_coll, [])),
        reward_amount=_lenient(regs, R_REWARD, decode_long, 0),
        creator_pub_key=creator,
        content=_lenient(regs, R_CONTENT, decode_bytes, b""),
        constants=ScriptConstants(script.dev_fee_address, script.dev_fee_rate),
        version=script.version,
        token_amount=token.amount,
        box_id=getattr(box, "box_id", None),
    )


def try_decode_record(box: Union[BoxCandidate, LedgerBox]) -> Result[BountyRecord]:
    try:
        return Result.success(decode_record(box))
    except EncodingError as e:
        return Result.failure(e)


@timed_operation(logger, "scan_records")
def scan_records(
    boxes: Iterable[LedgerBox],
    versions: Optional[Iterable[ContractVersion]] = None,
) -> List[BountyRecord]:
    """Decode every bounty box among ``boxes``, across all contract versions.

    Undecodable boxes and boxes whose control token amount is not 1 are
    logged and skipped.
    """
    wanted = set(versions) if versions is not None else set(ContractVersion)
    records: List[BountyRecord] = []
    for box in boxes:
        try:
            record = decode_record(box)
        except EncodingError as e:
            logger.warning("Skipping undecodable box", box_id=box.box_id, error_code=e.code, reason=e.message)
            continue
        if record.token_amount != 1:
            logger.warning("Skipping box with non-unit control token", box_id=box.box_id,
                           token_amount=record.token_amount)
            continue
        if record.version in wanted:
            records.append(record)
    logger.debug("Scanned boxes", found=len(records))
    return records
