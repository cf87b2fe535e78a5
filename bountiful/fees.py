"""Fee arithmetic shared by the validator and the builder.

All amounts are integers in the ledger's smallest unit. The platform fee is
the only division and it floors:

    platform_fee  = reward * rate // denominator        (rate 10 == 1%)
    winner_amount = reward - platform_fee - miner_fee

so ``winner_amount + platform_fee + miner_fee == reward`` holds exactly.
Outputs below the dust threshold ``MIN_BOX_VALUE`` abort the whole
transition. A platform fee of exactly zero is not dust; it has no output.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from bountiful.errors import DustOutput, InvalidPrecondition

# Fixed miner fee baked into the withdrawal script.
MINER_FEE = 1_100_000
# Fee paid by the builder for non-terminal transitions.
RECOMMENDED_TX_FEE = 1_100_000
# The ledger charges a minimum value per serialized byte; a plain payment
# box stays under 100 bytes.
MIN_VALUE_PER_BYTE = 360
PLAIN_BOX_SIZE = 100
# Dust threshold: any output below this is refused.
MIN_BOX_VALUE = MIN_VALUE_PER_BYTE * PLAIN_BOX_SIZE
# Carrying value deposited in a bounty box on top of its reward.
SAFE_MIN_BOX_VALUE = 1_000_000
FEE_DENOMINATOR = 1000
UINT64_MAX = 2**64 - 1


def _require_amount(name: str, amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise InvalidPrecondition(f"{name} must be an integer", **{name: amount})
    if amount < 0:
        raise InvalidPrecondition(f"{name} must not be negative", **{name: amount})
    if amount > UINT64_MAX:
        raise InvalidPrecondition(f"{name} exceeds 64-bit range", **{name: amount})


def platform_fee(reward_amount: int, fee_rate: int, denominator: int = FEE_DENOMINATOR) -> int:
    """floor(reward_amount * fee_rate / denominator)."""
    _require_amount("reward_amount", reward_amount)
    _require_amount("fee_rate", fee_rate)
    if denominator <= 0:
        raise InvalidPrecondition("fee denominator must be positive", denominator=denominator)
    return reward_amount * fee_rate // denominator


def ensure_not_dust(label: str, amount: int, minimum: int = MIN_BOX_VALUE) -> None:
    if amount < minimum:
        raise DustOutput(
            f"{label} output of {amount} is below the minimum box value {minimum}",
            output=label,
            amount=amount,
            minimum=minimum,
        )


@dataclass(frozen=True)
class FeeSplit:
    """How a reward is divided between winner, platform and miner."""
    reward_amount: int
    fee_rate: int
    platform_fee: int
    miner_fee: int
    winner_amount: int

    @property
    def has_platform_output(self) -> bool:
        return self.platform_fee > 0

    def is_conserved(self) -> bool:
        return self.winner_amount + self.platform_fee + self.miner_fee == self.reward_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reward_amount": self.reward_amount,
            "fee_rate": self.fee_rate,
            "platform_fee": self.platform_fee,
            "miner_fee": self.miner_fee,
            "winner_amount": self.winner_amount,
        }


def raw_withdrawal_split(
    reward_amount: int,
    fee_rate: int,
    *,
    miner_fee: int = MINER_FEE,
    denominator: int = FEE_DENOMINATOR,
) -> FeeSplit:
    """Compute the split without dust checks; amounts may be negative.

    The validator compares outputs against this directly, so a reward too
    small to pay out simply never matches.
    """
    pf = platform_fee(reward_amount, fee_rate, denominator)
    return FeeSplit(
        reward_amount=reward_amount,
        fee_rate=fee_rate,
        platform_fee=pf,
        miner_fee=miner_fee,
        winner_amount=reward_amount - pf - miner_fee,
    )


def withdrawal_split(
    reward_amount: int,
    fee_rate: int,
    *,
    miner_fee: int = MINER_FEE,
    denominator: int = FEE_DENOMINATOR,
    min_box_value: int = MIN_BOX_VALUE,
) -> FeeSplit:
    """Compute the withdrawal split, refusing any dust output.

    Raises:
        InvalidPrecondition: negative inputs or the fees exceed the reward
        DustOutput: winner amount or non-zero platform fee below min_box_value
    """
    split = raw_withdrawal_split(
        reward_amount, fee_rate, miner_fee=miner_fee, denominator=denominator,
    )
    if split.winner_amount < 0:
        raise InvalidPrecondition(
            "fees exceed the reward amount",
            reward_amount=reward_amount,
            platform_fee=split.platform_fee,
            miner_fee=miner_fee,
        )
    ensure_not_dust("winner", split.winner_amount, min_box_value)
    if split.platform_fee != 0:
        ensure_not_dust("platform_fee", split.platform_fee, min_box_value)
    return split


def refund_amount(reward_amount: int, value: int, *, full_value: bool) -> int:
    """Amount a refund pays the creator under the given version rule."""
    return value if full_value else reward_amount
