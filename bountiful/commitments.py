"""Digest commitments for off-ledger bounty documents.

Submissions and judgments are append-only sets. Their roots are folded
accumulators, one step per document:

- leaf = BLAKE2b256(0x00 || canonical_json(document))
- root' = BLAKE2b256(0x01 || root || leaf)

Domain separation keeps a leaf from ever being mistaken for an interior
fold. The metadata root commits to the current metadata document only:

- metadata_root = BLAKE2b256(0x02 || canonical_json(metadata))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from bountiful.content import ROOT_SIZE, ZERO_ROOT
from bountiful.core import blake2b256, canonical_json_bytes

LEAF_TAG = b"\x00"
FOLD_TAG = b"\x01"
METADATA_TAG = b"\x02"


def leaf_digest(document: Dict[str, Any]) -> bytes:
    return blake2b256(LEAF_TAG + canonical_json_bytes(document))


def fold_root(prev_root: bytes, leaf: bytes) -> bytes:
    if len(prev_root) != ROOT_SIZE or len(leaf) != ROOT_SIZE:
        raise ValueError("prev_root and leaf must be 32-byte digests")
    return blake2b256(FOLD_TAG + prev_root + leaf)


def fold_documents(documents: Iterable[Dict[str, Any]], start: bytes = ZERO_ROOT) -> bytes:
    """Root after appending every document, in order, to ``start``."""
    root = start
    for doc in documents:
        root = fold_root(root, leaf_digest(doc))
    return root


def metadata_digest(metadata: Dict[str, Any]) -> bytes:
    return blake2b256(METADATA_TAG + canonical_json_bytes(metadata))


@dataclass(frozen=True)
class SubmissionDocument:
    """An off-ledger solution; only its digest reaches the ledger."""
    submission_id: int
    submitter: str
    content: str
    submitted_at_height: int
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "type": "BountySubmission",
            "submission_id": self.submission_id,
            "submitter": self.submitter,
            "content": self.content,
            "submitted_at_height": self.submitted_at_height,
        }
        if self.extra:
            d["extra"] = self.extra
        return d

    def digest(self) -> bytes:
        return leaf_digest(self.to_dict())


@dataclass(frozen=True)
class JudgmentDocument:
    """The creator's verdict on one submission."""
    submission_id: int
    approved: bool
    judged_at_height: int
    notes: str = ""
    winner_address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "type": "BountyJudgment",
            "submission_id": self.submission_id,
            "approved": self.approved,
            "judged_at_height": self.judged_at_height,
        }
        if self.notes:
            d["notes"] = self.notes
        if self.winner_address:
            d["winner_address"] = self.winner_address
        return d

    def digest(self) -> bytes:
        return leaf_digest(self.to_dict())
