"""
Platform Fee Distribution

Withdrawals pay the platform fee to the dev-fee script. That script holds
fees until a distribution transaction splits them between stakeholders
according to a ``FeeSchedule``: a list of (address, share numerator) pairs
over a fixed denominator. The schedule is configuration, not code, and must
sum exactly to its denominator.

A distribution spends any number of fee boxes and must create exactly one
output per recipient, in schedule order:

    dev_amount  = sum(recipient outputs)
    output_i    = share_i * dev_amount // denominator
    fee        >= MINER_FEE
    dev_amount + fee >= MIN_DISTRIBUTION

The builder keeps dev_amount a multiple of the denominator so the floored
shares add up exactly; the remainder goes to the miner fee.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Sequence, Tuple, Union

from bountiful.core import blake2b256
from bountiful.errors import ConfigError, InvalidPrecondition
from bountiful.fees import MIN_BOX_VALUE, MINER_FEE, ensure_not_dust
from bountiful.keys import Network, proposition_of, script_address
from bountiful.ledger import BoxCandidate, LedgerBox, TransitionContext
from bountiful.observability import BountyLayer, get_logger

logger = get_logger("distribution", BountyLayer.DISTRIBUTION)

MIN_DISTRIBUTION = 5_000_000
SHARE_DENOMINATOR = 100
DEFAULT_SHARES = (32, 32, 32, 4)


@dataclass(frozen=True)
class FeeRecipient:
    address: str
    share: int

    def to_dict(self) -> Dict[str, Any]:
        return {"address": self.address, "share": self.share}


@dataclass(frozen=True)
class FeeSchedule:
    """Stakeholder shares of collected platform fees."""
    recipients: Tuple[FeeRecipient, ...]
    denominator: int = SHARE_DENOMINATOR

    def __post_init__(self):
        errors = self.validate()
        if errors:
            raise ConfigError(f"invalid fee schedule: {errors[0]}", errors=errors)

    def validate(self) -> List[str]:
        errors: List[str] = []
        if self.denominator <= 0:
            errors.append("denominator must be positive")
        if not self.recipients:
            errors.append("at least one recipient is required")
        for r in self.recipients:
            if r.share < 0:
                errors.append(f"share of {r.address} is negative")
            if not proposition_of(r.address):
                errors.append(f"{r.address!r} is not a valid address")
        total = sum(r.share for r in self.recipients)
        if total != self.denominator:
            errors.append(f"shares sum to {total}, expected {self.denominator}")
        return errors

    @classmethod
    def parse(
        cls,
        entries: Iterable[Union[str, Dict[str, Any], Tuple[str, int]]],
        denominator: int = SHARE_DENOMINATOR,
    ) -> "FeeSchedule":
        """Build from ``"address:share"`` strings, dicts or pairs."""
        recipients: List[FeeRecipient] = []
        for entry in entries:
            try:
                if isinstance(entry, str):
                    address, _, share = entry.rpartition(":")
                    recipients.append(FeeRecipient(address.strip(), int(share)))
                elif isinstance(entry, dict):
                    recipients.append(FeeRecipient(str(entry["address"]), int(entry["share"])))
                else:
                    address, share = entry
                    recipients.append(FeeRecipient(str(address), int(share)))
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigError(f"malformed fee recipient entry: {entry!r}") from e
        return cls(recipients=tuple(recipients), denominator=denominator)

    def shares(self, dev_amount: int) -> List[int]:
        return [r.share * dev_amount // self.denominator for r in self.recipients]

    def script(self, miner_fee: int = MINER_FEE, min_distribution: int = MIN_DISTRIBUTION) -> "FeeDistributionScript":
        return FeeDistributionScript(self, miner_fee=miner_fee, min_distribution=min_distribution)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "denominator": self.denominator,
            "recipients": [r.to_dict() for r in self.recipients],
        }


@dataclass(frozen=True)
class FeeDistributionScript:
    """The dev-fee script: spendable only by a valid distribution."""
    schedule: FeeSchedule
    miner_fee: int = MINER_FEE
    min_distribution: int = MIN_DISTRIBUTION

    def to_bytes(self) -> bytes:
        parts = [b"bountiful/dev-fee/v1\x00", struct.pack(">qqq", self.schedule.denominator,
                                                         self.miner_fee, self.min_distribution)]
        for r in self.schedule.recipients:
            prop = proposition_of(r.address)
            parts.append(struct.pack(">H", len(prop)) + prop + struct.pack(">q", r.share))
        return b"".join(parts)

    def script_hash(self) -> bytes:
        return blake2b256(self.to_bytes())

    def address(self, network: Network = Network.MAINNET) -> str:
        return script_address(self.to_bytes(), network)


@dataclass(frozen=True)
class DistributionPlan:
    inputs: Tuple[LedgerBox, ...]
    outputs: Tuple[BoxCandidate, ...]
    fee: int
    dev_amount: int

    @property
    def total(self) -> int:
        return self.dev_amount + self.fee

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inputs": [b.box_id for b in self.inputs],
            "outputs": [o.to_dict() for o in self.outputs],
            "fee": self.fee,
            "dev_amount": self.dev_amount,
        }


def build_fee_distribution(
    fee_boxes: Sequence[LedgerBox],
    script: FeeDistributionScript,
    *,
    min_box_value: int = MIN_BOX_VALUE,
) -> DistributionPlan:
    """Split the value of ``fee_boxes`` between the schedule's recipients.

    Raises:
        InvalidPrecondition: nothing to distribute, or below MIN_DISTRIBUTION
        DustOutput: a non-zero share would be dust
    """
    if not fee_boxes:
        raise InvalidPrecondition("no fee boxes to distribute")
    schedule = script.schedule
    total = sum(b.value for b in fee_boxes)
    if total < script.min_distribution:
        raise InvalidPrecondition(
            f"collected fees {total} are below the minimum distribution {script.min_distribution}",
            total=total,
        )
    distributable = total - script.miner_fee
    dev_amount = distributable - distributable % schedule.denominator
    amounts = schedule.shares(dev_amount)
    outputs: List[BoxCandidate] = []
    for recipient, amount in zip(schedule.recipients, amounts):
        ensure_not_dust(f"share of {recipient.address}", amount, min_box_value)
        outputs.append(BoxCandidate(value=amount, address=recipient.address))
    plan = DistributionPlan(
        inputs=tuple(fee_boxes),
        outputs=tuple(outputs),
        fee=total - dev_amount,
        dev_amount=dev_amount,
    )
    errs = validate_fee_distribution(
        TransitionContext(outputs=plan.outputs, height=0, fee=plan.fee), script,
    )
    if errs:
        raise InvalidPrecondition(f"distribution would be rejected: {errs[0]}", reasons=errs)
    logger.info("Distribution planned", total=total, dev_amount=dev_amount, recipients=len(outputs))
    return plan


def validate_fee_distribution(ctx: TransitionContext, script: FeeDistributionScript) -> List[str]:
    """The dev-fee script's spending condition."""
    schedule = script.schedule
    errs: List[str] = []
    if len(ctx.outputs) != len(schedule.recipients):
        errs.append(f"expected {len(schedule.recipients)} outputs, got {len(ctx.outputs)}")
        return errs
    dev_amount = sum(o.value for o in ctx.outputs)
    if dev_amount + ctx.fee < script.min_distribution:
        errs.append(f"distribution of {dev_amount + ctx.fee} is below {script.min_distribution}")
    if ctx.fee < script.miner_fee:
        errs.append(f"miner fee {ctx.fee} is below {script.miner_fee}")
    for i, (recipient, amount) in enumerate(zip(schedule.recipients, schedule.shares(dev_amount))):
        out = ctx.outputs[i]
        if out.value != amount:
            errs.append(f"OUTPUTS({i}) must pay {amount} to {recipient.address}, pays {out.value}")
        if out.proposition != proposition_of(recipient.address):
            errs.append(f"OUTPUTS({i}) pays the wrong address")
    return errs
