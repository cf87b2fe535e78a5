"""Transition Validator.

The predicate every ledger participant runs when a bounty box is spent. It
sees the spent record, the outputs of the spending transaction, the context
inputs, the current height and the keys that signed; it never sees the
builder's intent. Each action predicate returns the conditions it found
violated, so an empty list means the predicate holds.

A spend is accepted when one of the seven action predicates holds. The
predicates are mutually exclusive: each changes a different field, and the
two terminal actions require opposite statistics.

Creation is checked separately by ``validate_creation`` (and by the mint
guard when the control token first moves into a bounty box): a bounty box is
never spendable merely because it is well formed.

Replication (shared by every non-terminal action): OUTPUTS(0) is guarded by
the same ``ScriptIdentity`` and holds the same control token, deadline,
minimum submissions and creator key, with unchanged value. On top of that,
any field an action does not name as changing must be byte-identical.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from bountiful import content as content_model
from bountiful.codec import decode_record
from bountiful.content import RootSlot
from bountiful.errors import EncodingError
from bountiful.fees import raw_withdrawal_split, refund_amount
from bountiful.keys import p2pk_proposition, proposition_of
from bountiful.ledger import (
    BoxCandidate,
    JudgmentContext,
    LedgerBox,
    TransitionContext,
    WithdrawalContext,
)
from bountiful.metadata import payload_version
from bountiful.observability import BountyLayer, get_logger
from bountiful.records import BountyRecord, SubmissionStats
from bountiful.versions import MintGuard, ScriptIdentity, VersionRules, rules_for

logger = get_logger("validator", BountyLayer.VALIDATOR)


class ActionKind(Enum):
    # MINT and CREATE name builder plans; only the seven below are spends.
    MINT = "mint"
    CREATE = "create"
    SUBMIT_SOLUTION = "submit_solution"
    JUDGE_SUBMISSION = "judge_submission"
    WITHDRAW_REWARD = "withdraw_reward"
    REFUND_BOUNTY = "refund_bounty"
    ADD_FUNDS = "add_funds"
    EXTEND_DEADLINE = "extend_deadline"
    UPDATE_METADATA = "update_metadata"

    @property
    def is_terminal(self) -> bool:
        return self in (ActionKind.WITHDRAW_REWARD, ActionKind.REFUND_BOUNTY)


@dataclass(frozen=True)
class Verdict:
    accepted: bool
    action: Optional[ActionKind] = None
    # Violations per action predicate that was tried and failed.
    reasons: Dict[str, List[str]] = field(default_factory=dict)

    def summary(self) -> List[str]:
        return [f"{action}: {r}" for action, rs in sorted(self.reasons.items()) for r in rs]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "action": self.action.value if self.action else None,
            "reasons": {k: list(v) for k, v in self.reasons.items()},
        }


# Fields compared for replication. ``box_id`` is ledger identity, not data.
RECORD_FIELDS: Tuple[str, ...] = tuple(f.name for f in fields(BountyRecord) if f.name != "box_id")


# -----------------------------------------------------------------------------
# Shared checks
# -----------------------------------------------------------------------------

def check_correct_build(record: BountyRecord) -> List[str]:
    errs: List[str] = []
    if record.token_amount != 1:
        errs.append(f"control token amount must be 1, got {record.token_amount}")
    if record.stats != SubmissionStats():
        errs.append(f"initial stats must be (0, 0, 0), got {record.stats.as_tuple()}")
    if record.value < record.reward_amount:
        errs.append(f"value {record.value} is below the reward amount {record.reward_amount}")
    return errs


def check_replication(
    old: BountyRecord,
    ctx: TransitionContext,
    changing: FrozenSet[str] = frozenset(),
) -> Tuple[Optional[BountyRecord], List[str]]:
    """Decode OUTPUTS(0) as the successor and check it replicates ``old``.

    Every field outside ``changing`` must be identical. Returns the decoded
    successor (None when OUTPUTS(0) is not a bounty box) and the violations.
    """
    out = ctx.output(0)
    if out is None:
        return None, ["OUTPUTS(0) is missing"]
    if out.script != old.script:
        return None, ["OUTPUTS(0) is not guarded by the same bounty script"]
    try:
        new = decode_record(out)
    except EncodingError as e:
        return None, [f"OUTPUTS(0) is not a bounty record: {e.message}"]

    errs: List[str] = []
    for name in RECORD_FIELDS:
        if name in changing:
            continue
        if getattr(old, name) != getattr(new, name):
            errs.append(f"{name} must be replicated unchanged")
    if new.script != old.script:
        errs.append("successor derives a different script")
    errs.extend(new.invariant_violations())
    return new, errs


def _creator_signed(old: BountyRecord, ctx: TransitionContext) -> List[str]:
    if old.creator_pub_key and old.creator_pub_key in ctx.signers:
        return []
    return ["creator signature is missing"]


def _only_root(old: BountyRecord, new: BountyRecord, slot: RootSlot, *, payload_may_change: bool = False) -> List[str]:
    if content_model.only_root_changed(old.content, new.content, slot, payload_may_change=payload_may_change):
        return []
    changed = sorted(s.name.lower() for s in content_model.changed_slots(old.content, new.content))
    return [f"exactly the {slot.name.lower()} root must change (changed: {changed or 'none'})"]


def _not_replicated(old: BountyRecord, ctx: TransitionContext) -> List[str]:
    for i, out in enumerate(ctx.outputs):
        if out.script == old.script or out.token_amount(old.token_id) > 0:
            return [f"OUTPUTS({i}) keeps the bounty alive; a terminal action must consume it"]
    return []


def _pays(out: Optional[BoxCandidate], amount: int, proposition: bytes, label: str, index: int) -> List[str]:
    if out is None:
        return [f"OUTPUTS({index}) paying the {label} is missing"]
    errs: List[str] = []
    if out.value != amount:
        errs.append(f"{label} output must carry {amount}, carries {out.value}")
    if not proposition or out.proposition != proposition:
        errs.append(f"{label} output pays the wrong address")
    return errs


# -----------------------------------------------------------------------------
# Action predicates
# -----------------------------------------------------------------------------

def check_submit_solution(old: BountyRecord, ctx: TransitionContext, rules: VersionRules) -> List[str]:
    errs: List[str] = []
    if ctx.height > old.deadline:
        errs.append(f"deadline {old.deadline} has passed (height {ctx.height})")
    new, rep = check_replication(old, ctx, frozenset({"stats", "content"}))
    errs.extend(rep)
    if new is None:
        return errs
    if new.stats != old.stats.with_submission():
        errs.append(f"stats must become {old.stats.with_submission().as_tuple()}, got {new.stats.as_tuple()}")
    errs.extend(_only_root(old, new, RootSlot.SUBMISSIONS))
    return errs


def check_judge_submission(old: BountyRecord, ctx: TransitionContext, rules: VersionRules) -> List[str]:
    errs = _creator_signed(old, ctx)
    judgment = ctx.context_input(JudgmentContext)
    if judgment is None:
        errs.append("judgment context input is missing")
    new, rep = check_replication(old, ctx, frozenset({"stats", "content"}))
    errs.extend(rep)
    if new is None:
        return errs
    if judgment is not None:
        expected = old.stats.with_judgment(judgment.decision)
        if new.stats != expected:
            errs.append(f"stats must become {expected.as_tuple()}, got {new.stats.as_tuple()}")
    errs.extend(_only_root(old, new, RootSlot.JUDGMENTS))
    return errs


def check_withdraw_reward(old: BountyRecord, ctx: TransitionContext, rules: VersionRules) -> List[str]:
    errs: List[str] = []
    if old.stats.accepted <= 0:
        errs.append("no accepted submission")
    if old.stats.total < old.min_submissions:
        errs.append(f"only {old.stats.total} of {old.min_submissions} required submissions")
    withdrawal = ctx.context_input(WithdrawalContext)
    if withdrawal is None:
        errs.append("withdrawal context input is missing")
        return errs
    unlock = withdrawal.judgment_height + rules.dispute_period
    if ctx.height < unlock:
        errs.append(f"dispute period runs until height {unlock} (height {ctx.height})")

    split = raw_withdrawal_split(
        old.reward_amount,
        old.constants.dev_fee_rate,
        miner_fee=rules.miner_fee,
        denominator=rules.fee_denominator,
    )
    if split.winner_amount <= 0:
        errs.append(f"reward {old.reward_amount} cannot cover the fees")
    errs.extend(_pays(ctx.output(0), split.winner_amount, proposition_of(withdrawal.winner_address), "winner", 0))
    if split.has_platform_output:
        errs.extend(_pays(
            ctx.output(1), split.platform_fee, proposition_of(old.constants.dev_fee_address), "platform fee", 1,
        ))
    errs.extend(_not_replicated(old, ctx))
    return errs


def check_refund_bounty(old: BountyRecord, ctx: TransitionContext, rules: VersionRules) -> List[str]:
    errs: List[str] = []
    if ctx.height <= old.deadline:
        errs.append(f"deadline {old.deadline} has not passed (height {ctx.height})")
    if old.stats.total >= old.min_submissions and old.stats.accepted > 0:
        errs.append("bounty has enough submissions and an accepted one; it cannot be refunded")
    amount = refund_amount(old.reward_amount, old.value, full_value=rules.refund_full_value)
    errs.extend(_pays(ctx.output(0), amount, p2pk_proposition(old.creator_pub_key), "creator refund", 0))
    errs.extend(_not_replicated(old, ctx))
    return errs


def check_add_funds(old: BountyRecord, ctx: TransitionContext, rules: VersionRules) -> List[str]:
    errs = _creator_signed(old, ctx)
    new, rep = check_replication(old, ctx, frozenset({"value", "reward_amount"}))
    errs.extend(rep)
    if new is None:
        return errs
    value_delta = new.value - old.value
    reward_delta = new.reward_amount - old.reward_amount
    if value_delta <= 0:
        errs.append("value must increase")
    if reward_delta <= 0:
        errs.append("reward amount must increase")
    if value_delta != reward_delta:
        errs.append(f"value delta {value_delta} must equal reward delta {reward_delta}")
    return errs


def check_extend_deadline(old: BountyRecord, ctx: TransitionContext, rules: VersionRules) -> List[str]:
    errs = _creator_signed(old, ctx)
    if ctx.height > old.deadline:
        errs.append(f"deadline {old.deadline} has already passed (height {ctx.height})")
    new, rep = check_replication(old, ctx, frozenset({"deadline"}))
    errs.extend(rep)
    if new is not None and new.deadline <= old.deadline:
        errs.append(f"new deadline {new.deadline} must be after {old.deadline}")
    return errs


def check_update_metadata(old: BountyRecord, ctx: TransitionContext, rules: VersionRules) -> List[str]:
    errs = _creator_signed(old, ctx)
    if ctx.height > old.deadline:
        errs.append(f"deadline {old.deadline} has passed (height {ctx.height})")
    new, rep = check_replication(old, ctx, frozenset({"content"}))
    errs.extend(rep)
    if new is None:
        return errs
    errs.extend(_only_root(old, new, RootSlot.METADATA, payload_may_change=True))
    if rules.metadata_version_counter:
        before = payload_version(old.decoded_content.payload)
        after = payload_version(new.decoded_content.payload)
        if after <= before:
            errs.append(f"metadata version must increase past {before}, got {after}")
    return errs


Predicate = Callable[[BountyRecord, TransitionContext, VersionRules], List[str]]

ACTION_PREDICATES: Dict[ActionKind, Predicate] = {
    ActionKind.SUBMIT_SOLUTION: check_submit_solution,
    ActionKind.JUDGE_SUBMISSION: check_judge_submission,
    ActionKind.WITHDRAW_REWARD: check_withdraw_reward,
    ActionKind.REFUND_BOUNTY: check_refund_bounty,
    ActionKind.ADD_FUNDS: check_add_funds,
    ActionKind.EXTEND_DEADLINE: check_extend_deadline,
    ActionKind.UPDATE_METADATA: check_update_metadata,
}


# -----------------------------------------------------------------------------
# Entry points
# -----------------------------------------------------------------------------

def check_action(
    action: ActionKind,
    old: BountyRecord,
    ctx: TransitionContext,
    rules: Optional[VersionRules] = None,
) -> List[str]:
    """Violations of a single action predicate."""
    if action not in ACTION_PREDICATES:
        raise ValueError(f"{action.value} is not a spending action")
    return ACTION_PREDICATES[action](old, ctx, rules or rules_for(old.version))


def validate_transition(
    old: BountyRecord,
    ctx: TransitionContext,
    rules: Optional[VersionRules] = None,
) -> Verdict:
    """Accept the spend of ``old`` when one action predicate holds.

    Rules default to the spent record's own contract version.
    """
    rules = rules or rules_for(old.version)
    reasons: Dict[str, List[str]] = {}
    for action, predicate in ACTION_PREDICATES.items():
        errs = predicate(old, ctx, rules)
        if not errs:
            logger.debug("Transition accepted", action=action.value, token_id=old.token_id.hex())
            return Verdict(accepted=True, action=action)
        reasons[action.value] = errs
    logger.debug("Transition rejected", token_id=old.token_id.hex(), predicates=len(reasons))
    return Verdict(accepted=False, reasons=reasons)


def validate_creation(record: BountyRecord) -> List[str]:
    return check_correct_build(record)


def check_mint_spend(mint_box: LedgerBox, ctx: TransitionContext) -> List[str]:
    """The mint guard releases the whole minted supply into a fresh bounty box.

    OUTPUTS(0) must hold every minted token, be guarded by the bounty script
    the guard was created for, and pass the creation check.
    """
    guard = mint_box.script
    if not isinstance(guard, MintGuard):
        return ["box is not guarded by a mint guard"]
    if not mint_box.tokens:
        return ["mint box carries no token"]
    token = mint_box.tokens[0]
    out = ctx.output(0)
    if out is None:
        return ["OUTPUTS(0) is missing"]

    errs: List[str] = []
    if not out.tokens or out.tokens[0] != token:
        errs.append("OUTPUTS(0) must carry the whole minted supply as its first token")
    if not isinstance(out.script, ScriptIdentity) or out.script.script_hash() != guard.bounty_script_hash:
        errs.append("OUTPUTS(0) is not the bounty script this token was minted for")
        return errs
    try:
        record = decode_record(out)
    except EncodingError as e:
        errs.append(f"OUTPUTS(0) is not a bounty record: {e.message}")
        return errs
    errs.extend(validate_creation(record))
    return errs
