"""Content blob stored in a bounty record.

Layout (fixed offsets):

    [0, 32)    submissions root
    [32, 64)   judgments root
    [64, 96)   metadata root
    [96, ..)   payload (UTF-8 JSON describing the bounty)

Only the three digests are committed on the ledger; the documents they
summarize live off-ledger. A blob shorter than 96 bytes predates the roots:
it decodes to all-zero roots with the whole blob as payload.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Set, Tuple

ROOT_SIZE = 32
HEADER_SIZE = 3 * ROOT_SIZE
ZERO_ROOT = bytes(ROOT_SIZE)


class RootSlot(Enum):
    SUBMISSIONS = 0
    JUDGMENTS = 1
    METADATA = 2

    @property
    def offset(self) -> int:
        return self.value * ROOT_SIZE


def _check_digest(digest: bytes) -> bytes:
    if not isinstance(digest, (bytes, bytearray)) or len(digest) != ROOT_SIZE:
        raise ValueError(f"root digest must be exactly {ROOT_SIZE} bytes")
    return bytes(digest)


@dataclass(frozen=True)
class ContentRoots:
    submissions: bytes = ZERO_ROOT
    judgments: bytes = ZERO_ROOT
    metadata: bytes = ZERO_ROOT

    def __post_init__(self):
        for d in (self.submissions, self.judgments, self.metadata):
            _check_digest(d)

    def get(self, slot: RootSlot) -> bytes:
        return self.as_tuple()[slot.value]

    def replace(self, slot: RootSlot, digest: bytes) -> "ContentRoots":
        roots = list(self.as_tuple())
        roots[slot.value] = _check_digest(digest)
        return ContentRoots(*roots)

    def as_tuple(self) -> Tuple[bytes, bytes, bytes]:
        return (self.submissions, self.judgments, self.metadata)


@dataclass(frozen=True)
class BountyContent:
    roots: ContentRoots
    payload: bytes

    def encode(self) -> bytes:
        return encode(self.roots, self.payload)


def encode(roots: ContentRoots, payload: bytes) -> bytes:
    return roots.submissions + roots.judgments + roots.metadata + bytes(payload)


def decode(blob: bytes) -> BountyContent:
    blob = bytes(blob or b"")
    if len(blob) < HEADER_SIZE:
        return BountyContent(roots=ContentRoots(), payload=blob)
    return BountyContent(
        roots=ContentRoots(
            submissions=blob[0:ROOT_SIZE],
            judgments=blob[ROOT_SIZE:2 * ROOT_SIZE],
            metadata=blob[2 * ROOT_SIZE:HEADER_SIZE],
        ),
        payload=blob[HEADER_SIZE:],
    )


def replace(blob: bytes, slot: RootSlot, digest: bytes) -> bytes:
    """Swap one root, keeping the other two roots and the payload as they are."""
    current = decode(blob)
    return encode(current.roots.replace(slot, digest), current.payload)


def replace_payload(blob: bytes, payload: bytes) -> bytes:
    return encode(decode(blob).roots, payload)


def changed_slots(old_blob: bytes, new_blob: bytes) -> Set[RootSlot]:
    old, new = decode(old_blob), decode(new_blob)
    return {s for s in RootSlot if old.roots.get(s) != new.roots.get(s)}


def only_root_changed(
    old_blob: bytes,
    new_blob: bytes,
    slot: RootSlot,
    *,
    payload_may_change: bool = False,
) -> bool:
    """Exactly ``slot`` changed; the other roots (and payload) are byte-identical."""
    if changed_slots(old_blob, new_blob) != {slot}:
        return False
    if payload_may_change:
        return True
    return decode(old_blob).payload == decode(new_blob).payload
