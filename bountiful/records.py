"""The bounty record: decoded form of one bounty box.

Records are immutable. A transition never edits one; it derives a successor
with ``dataclasses.replace`` and the ledger consumes the old box.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from bountiful import content as content_model
from bountiful.content import BountyContent, ContentRoots
from bountiful.metadata import BountyMetadata, parse_payload
from bountiful.versions import LATEST_VERSION, ContractVersion, ScriptIdentity


@dataclass(frozen=True)
class SubmissionStats:
    total: int = 0
    accepted: int = 0
    rejected: int = 0

    @property
    def pending(self) -> int:
        return self.total - self.accepted - self.rejected

    def is_consistent(self) -> bool:
        return min(self.as_tuple()) >= 0 and self.accepted + self.rejected <= self.total

    def as_tuple(self) -> Tuple[int, int, int]:
        return (self.total, self.accepted, self.rejected)

    def with_submission(self) -> "SubmissionStats":
        return SubmissionStats(self.total + 1, self.accepted, self.rejected)

    def with_judgment(self, approved: bool) -> "SubmissionStats":
        if approved:
            return SubmissionStats(self.total, self.accepted + 1, self.rejected)
        return SubmissionStats(self.total, self.accepted, self.rejected + 1)


@dataclass(frozen=True)
class ScriptConstants:
    """Compile-time constants of a bounty script besides creator and token."""
    dev_fee_address: str
    dev_fee_rate: int


@dataclass(frozen=True)
class BountyRecord:
    token_id: bytes
    value: int
    deadline: int
    min_submissions: int
    stats: SubmissionStats
    reward_amount: int
    creator_pub_key: bytes
    content: bytes
    constants: ScriptConstants
    version: ContractVersion = LATEST_VERSION
    token_amount: int = 1
    box_id: Optional[str] = field(default=None, compare=False)

    @property
    def script(self) -> ScriptIdentity:
        return ScriptIdentity(
            creator_pub_key=self.creator_pub_key,
            dev_fee_address=self.constants.dev_fee_address,
            dev_fee_rate=self.constants.dev_fee_rate,
            token_id=self.token_id,
            version=self.version,
        )

    @property
    def decoded_content(self) -> BountyContent:
        return content_model.decode(self.content)

    @property
    def roots(self) -> ContentRoots:
        return self.decoded_content.roots

    def metadata(self) -> BountyMetadata:
        return parse_payload(self.token_id, self.decoded_content.payload)

    # Status helpers. "Ended" follows the script: submissions are accepted
    # while height <= deadline.

    def is_ended(self, height: int) -> bool:
        return height > self.deadline

    def is_refundable(self, height: int) -> bool:
        return self.is_ended(height) and (
            self.stats.total < self.min_submissions or self.stats.accepted == 0
        )

    def invariant_violations(self) -> List[str]:
        out: List[str] = []
        if not self.stats.is_consistent():
            out.append(f"inconsistent stats {self.stats.as_tuple()}")
        if self.value < self.reward_amount:
            out.append(f"value {self.value} below reward amount {self.reward_amount}")
        if self.token_amount != 1:
            out.append(f"control token amount is {self.token_amount}, expected 1")
        return out

    def to_dict(self) -> Dict[str, Any]:
        roots = self.roots
        return {
            "box_id": self.box_id,
            "token_id": self.token_id.hex(),
            "token_amount": self.token_amount,
            "value": self.value,
            "deadline": self.deadline,
            "min_submissions": self.min_submissions,
            "stats": {
                "total": self.stats.total,
                "accepted": self.stats.accepted,
                "rejected": self.stats.rejected,
            },
            "reward_amount": self.reward_amount,
            "creator_pub_key": self.creator_pub_key.hex(),
            "roots": {
                "submissions": roots.submissions.hex(),
                "judgments": roots.judgments.hex(),
                "metadata": roots.metadata.hex(),
            },
            "metadata": self.metadata().to_dict(),
            "constants": {
                "dev_fee_address": self.constants.dev_fee_address,
                "dev_fee_rate": self.constants.dev_fee_rate,
            },
            "version": self.version.value,
        }
