"""Transition Builder.

The off-ledger half of every transition. Given the current record and the
action's parameters, a builder computes the successor record and the exact
outputs the transaction must create, using the same arithmetic and layout
the validator checks. Plans are verified against the validator before they
are returned, so a plan that would be rejected on the ledger is never handed
to the assembler.

Failures are raised as typed errors and nothing is submitted:

- InvalidPrecondition: caller, height, statistics or parameter checks
- DustOutput: an output would fall below the dust threshold

Output layout:

    non-terminal   OUTPUTS(0) = successor bounty box
    withdraw       OUTPUTS(0) = winner, OUTPUTS(1) = platform fee (if > 0)
    refund         OUTPUTS(0) = creator
    mint           OUTPUTS(0) = mint guard holding the new control token
    create         OUTPUTS(0) = initial bounty box

Change, if any, is appended after these by the assembler.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple, Union

from bountiful import content as content_model
from bountiful.codec import encode_record
from bountiful.commitments import JudgmentDocument, SubmissionDocument, fold_root
from bountiful.content import ContentRoots, RootSlot
from bountiful.errors import InvalidPrecondition
from bountiful.fees import (
    RECOMMENDED_TX_FEE,
    SAFE_MIN_BOX_VALUE,
    ensure_not_dust,
    refund_amount,
    withdrawal_split,
)
from bountiful.keys import Network, is_group_element, p2pk_address, proposition_of
from bountiful.ledger import (
    BoxCandidate,
    ContextInput,
    JudgmentContext,
    LedgerBox,
    Token,
    TransitionContext,
    WithdrawalContext,
)
from bountiful.metadata import BountyMetadata, payload_version
from bountiful.observability import BountyLayer, get_logger
from bountiful.records import BountyRecord, ScriptConstants, SubmissionStats
from bountiful.validator import (
    ActionKind,
    check_action,
    check_mint_spend,
    validate_creation,
)
from bountiful.versions import (
    LATEST_VERSION,
    ContractVersion,
    MintGuard,
    ScriptIdentity,
    VersionRules,
    rules_for,
)

logger = get_logger("builder", BountyLayer.BUILDER)

# A bounty's control token is unique: exactly one unit is ever minted.
CONTROL_TOKEN_SUPPLY = 1


@dataclass(frozen=True)
class TransitionPlan:
    """Everything the assembler needs, and nothing it may change.

    ``consumed`` is the record this plan spends (None for mint and create);
    once the transaction confirms it is gone for good. ``successor`` is the
    record that replaces it, or None when the bounty ends.
    """
    action: ActionKind
    outputs: Tuple[BoxCandidate, ...]
    height: int
    consumed: Optional[BountyRecord] = None
    successor: Optional[BountyRecord] = None
    context_inputs: Tuple[ContextInput, ...] = ()
    required_signers: Tuple[bytes, ...] = ()
    fee: int = RECOMMENDED_TX_FEE
    spent_box_id: Optional[str] = None
    # Set by the mint plan: the token it creates.
    minted_token_id: Optional[bytes] = None

    @property
    def is_terminal(self) -> bool:
        return self.action.is_terminal

    @property
    def output_value(self) -> int:
        return sum(o.value for o in self.outputs)

    def context(self) -> TransitionContext:
        return TransitionContext(
            outputs=self.outputs,
            height=self.height,
            context_inputs=self.context_inputs,
            signers=frozenset(self.required_signers),
            fee=self.fee,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "height": self.height,
            "spent_box_id": self.spent_box_id,
            "fee": self.fee,
            "consumed": self.consumed.to_dict() if self.consumed else None,
            "successor": self.successor.to_dict() if self.successor else None,
            "outputs": [o.to_dict() for o in self.outputs],
            "context_inputs": [c.to_dict() for c in self.context_inputs],
            "required_signers": [s.hex() for s in self.required_signers],
        }


# =============================================================================
# HELPERS
# =============================================================================

def _rules(record_or_version: Any, rules: Optional[VersionRules]) -> VersionRules:
    if rules is not None:
        return rules
    version = record_or_version.version if isinstance(record_or_version, BountyRecord) else record_or_version
    return rules_for(version)


def _require(condition: bool, message: str, **details: Any) -> None:
    if not condition:
        raise InvalidPrecondition(message, **details)


def _require_creator(record: BountyRecord, caller_pub_key: Optional[bytes]) -> None:
    _require(
        caller_pub_key is not None and caller_pub_key == record.creator_pub_key,
        "only the bounty creator may perform this action",
        token_id=record.token_id.hex(),
    )


def _require_open(record: BountyRecord, height: int) -> None:
    _require(
        not record.is_ended(height),
        f"deadline {record.deadline} has passed (height {height})",
        token_id=record.token_id.hex(),
        deadline=record.deadline,
        height=height,
    )


def _leaf(document: Union[SubmissionDocument, JudgmentDocument]) -> bytes:
    try:
        return document.digest()
    except ValueError as e:
        raise InvalidPrecondition(f"document cannot be committed: {e}") from e


def _verified(plan: TransitionPlan, consumed: BountyRecord, rules: VersionRules) -> TransitionPlan:
    """Run the validator over the plan; refuse to return a rejected plan."""
    errs = check_action(plan.action, consumed, plan.context(), rules)
    if errs:
        logger.warning("Plan failed self-verification", action=plan.action.value, reasons=errs)
        raise InvalidPrecondition(
            f"{plan.action.value} would be rejected: {errs[0]}",
            action=plan.action.value,
            reasons=errs,
        )
    logger.debug("Plan built", action=plan.action.value, token_id=consumed.token_id.hex())
    return plan


def _successor_plan(
    action: ActionKind,
    record: BountyRecord,
    successor: BountyRecord,
    height: int,
    rules: VersionRules,
    network: Network,
    *,
    context_inputs: Tuple[ContextInput, ...] = (),
    signers: Tuple[bytes, ...] = (),
) -> TransitionPlan:
    successor = replace(successor, box_id=None)
    plan = TransitionPlan(
        action=action,
        outputs=(encode_record(successor, network),),
        height=height,
        consumed=record,
        successor=successor,
        context_inputs=context_inputs,
        required_signers=signers,
        spent_box_id=record.box_id,
    )
    return _verified(plan, record, rules)


# =============================================================================
# CREATION
# =============================================================================

def bounty_script(
    *,
    token_id: bytes,
    creator_pub_key: bytes,
    dev_fee_address: str,
    dev_fee_rate: int,
    version: ContractVersion = LATEST_VERSION,
) -> ScriptIdentity:
    return ScriptIdentity(
        creator_pub_key=creator_pub_key,
        dev_fee_address=dev_fee_address,
        dev_fee_rate=dev_fee_rate,
        token_id=token_id,
        version=version,
    )


def build_mint(
    *,
    funding_box: LedgerBox,
    creator_pub_key: bytes,
    dev_fee_address: str,
    dev_fee_rate: int,
    height: int,
    version: ContractVersion = LATEST_VERSION,
    network: Network = Network.MAINNET,
    carrying_value: int = SAFE_MIN_BOX_VALUE,
) -> TransitionPlan:
    """Mint the control token into a mint guard bound to the future bounty script.

    The token id is the id of the first input, so ``funding_box`` must be
    spent as the transaction's first input.
    """
    _require(is_group_element(creator_pub_key), "creator key is not a valid group element")
    token_id = bytes.fromhex(funding_box.box_id)
    script = bounty_script(
        token_id=token_id,
        creator_pub_key=creator_pub_key,
        dev_fee_address=dev_fee_address,
        dev_fee_rate=dev_fee_rate,
        version=version,
    )
    guard = MintGuard(script.script_hash())
    out = BoxCandidate(
        value=carrying_value,
        address=guard.address(network),
        tokens=(Token(token_id, CONTROL_TOKEN_SUPPLY),),
        script=guard,
    )
    logger.debug("Mint planned", token_id=token_id.hex(), version=version.value)
    return TransitionPlan(
        action=ActionKind.MINT,
        outputs=(out,),
        height=height,
        required_signers=(creator_pub_key,),
        spent_box_id=funding_box.box_id,
        minted_token_id=token_id,
    )


def build_bounty(
    *,
    token_id: bytes,
    creator_pub_key: bytes,
    reward_amount: int,
    deadline: int,
    min_submissions: int,
    metadata: BountyMetadata,
    dev_fee_address: str,
    dev_fee_rate: int,
    height: int,
    version: ContractVersion = LATEST_VERSION,
    rules: Optional[VersionRules] = None,
    network: Network = Network.MAINNET,
    mint_box: Optional[LedgerBox] = None,
    carrying_value: int = SAFE_MIN_BOX_VALUE,
) -> TransitionPlan:
    """Initial bounty record: reward plus carrying value, zero stats.

    When ``mint_box`` is given the plan spends it, and it must satisfy the
    mint guard as well as the creation check.
    """
    rules = _rules(version, rules)
    _require(reward_amount > 0, "reward amount must be positive", reward_amount=reward_amount)
    _require(deadline > height, f"deadline {deadline} must be after the current height {height}")
    _require(min_submissions >= 0, "min submissions must not be negative")
    _require(is_group_element(creator_pub_key), "creator key is not a valid group element")
    _require(
        0 <= dev_fee_rate < rules.fee_denominator,
        f"dev fee rate must be in [0, {rules.fee_denominator})",
        dev_fee_rate=dev_fee_rate,
    )
    _require(bool(proposition_of(dev_fee_address)), "dev fee address is not a valid address")
    # A bounty that could never pay out is refused up front.
    withdrawal_split(
        reward_amount,
        dev_fee_rate,
        miner_fee=rules.miner_fee,
        denominator=rules.fee_denominator,
        min_box_value=rules.min_box_value,
    )
    try:
        payload = metadata.to_payload()
    except ValueError as e:
        raise InvalidPrecondition(str(e)) from e

    record = BountyRecord(
        token_id=token_id,
        value=reward_amount + carrying_value,
        deadline=deadline,
        min_submissions=min_submissions,
        stats=SubmissionStats(),
        reward_amount=reward_amount,
        creator_pub_key=creator_pub_key,
        content=content_model.encode(ContentRoots(metadata=metadata.digest()), payload),
        constants=ScriptConstants(dev_fee_address, dev_fee_rate),
        version=version,
    )
    out = encode_record(record, network)
    plan = TransitionPlan(
        action=ActionKind.CREATE,
        outputs=(out,),
        height=height,
        successor=record,
        required_signers=(creator_pub_key,),
        spent_box_id=mint_box.box_id if mint_box else None,
    )
    errs = validate_creation(record)
    if mint_box is not None:
        errs.extend(check_mint_spend(mint_box, plan.context()))
    if errs:
        raise InvalidPrecondition(f"bounty creation would be rejected: {errs[0]}", reasons=errs)
    logger.info("Bounty planned", token_id=token_id.hex(), reward_amount=reward_amount, deadline=deadline)
    return plan


# =============================================================================
# ACTIONS
# =============================================================================

def build_submit_solution(
    record: BountyRecord,
    submission: SubmissionDocument,
    *,
    height: int,
    rules: Optional[VersionRules] = None,
    network: Network = Network.MAINNET,
) -> TransitionPlan:
    """Anyone may submit while the bounty is open."""
    rules = _rules(record, rules)
    _require_open(record, height)
    # Submission ids are positions in the submissions accumulator.
    _require(
        submission.submission_id == record.stats.total,
        f"submission id must be {record.stats.total}",
        submission_id=submission.submission_id,
    )
    new_root = fold_root(record.roots.submissions, _leaf(submission))
    successor = replace(
        record,
        stats=record.stats.with_submission(),
        content=content_model.replace(record.content, RootSlot.SUBMISSIONS, new_root),
    )
    return _successor_plan(ActionKind.SUBMIT_SOLUTION, record, successor, height, rules, network)


def build_judge_submission(
    record: BountyRecord,
    judgment: JudgmentDocument,
    *,
    caller_pub_key: bytes,
    height: int,
    rules: Optional[VersionRules] = None,
    network: Network = Network.MAINNET,
) -> TransitionPlan:
    rules = _rules(record, rules)
    _require_creator(record, caller_pub_key)
    _require(record.stats.pending > 0, "no submission is waiting for a judgment",
             stats=record.stats.as_tuple())
    _require(
        0 <= judgment.submission_id < record.stats.total,
        f"unknown submission id {judgment.submission_id}",
        total=record.stats.total,
    )
    new_root = fold_root(record.roots.judgments, _leaf(judgment))
    successor = replace(
        record,
        stats=record.stats.with_judgment(judgment.approved),
        content=content_model.replace(record.content, RootSlot.JUDGMENTS, new_root),
    )
    ctx = JudgmentContext(decision=judgment.approved, submission_id=judgment.submission_id)
    return _successor_plan(
        ActionKind.JUDGE_SUBMISSION, record, successor, height, rules, network,
        context_inputs=(ctx,), signers=(caller_pub_key,),
    )


def build_withdraw_reward(
    record: BountyRecord,
    *,
    winner_address: str,
    judgment_height: int,
    height: int,
    rules: Optional[VersionRules] = None,
) -> TransitionPlan:
    """Pay the winner and the platform; the bounty ends."""
    rules = _rules(record, rules)
    _require(record.stats.accepted > 0, "no accepted submission", stats=record.stats.as_tuple())
    _require(
        record.stats.total >= record.min_submissions,
        f"only {record.stats.total} of {record.min_submissions} required submissions",
    )
    unlock = judgment_height + rules.dispute_period
    _require(height >= unlock, f"dispute period runs until height {unlock}", height=height)
    _require(bool(proposition_of(winner_address)), "winner address is not a valid address")

    split = withdrawal_split(
        record.reward_amount,
        record.constants.dev_fee_rate,
        miner_fee=rules.miner_fee,
        denominator=rules.fee_denominator,
        min_box_value=rules.min_box_value,
    )
    outputs: List[BoxCandidate] = [BoxCandidate(split.winner_amount, winner_address)]
    if split.has_platform_output:
        outputs.append(BoxCandidate(split.platform_fee, record.constants.dev_fee_address))

    plan = TransitionPlan(
        action=ActionKind.WITHDRAW_REWARD,
        outputs=tuple(outputs),
        height=height,
        consumed=record,
        context_inputs=(WithdrawalContext(winner_address, judgment_height),),
        fee=split.miner_fee,
        spent_box_id=record.box_id,
    )
    return _verified(plan, record, rules)


def build_refund_bounty(
    record: BountyRecord,
    *,
    height: int,
    rules: Optional[VersionRules] = None,
    network: Network = Network.MAINNET,
) -> TransitionPlan:
    """Return the reward to the creator; callable by anyone once it applies."""
    rules = _rules(record, rules)
    _require(record.is_ended(height), f"deadline {record.deadline} has not passed (height {height})")
    _require(
        record.is_refundable(height),
        "bounty has enough submissions and an accepted one",
        stats=record.stats.as_tuple(),
    )
    _require(
        is_group_element(record.creator_pub_key),
        "creator key register is unreadable; the refund has no payee",
        token_id=record.token_id.hex(),
    )
    amount = refund_amount(record.reward_amount, record.value, full_value=rules.refund_full_value)
    ensure_not_dust("refund", amount, rules.min_box_value)
    plan = TransitionPlan(
        action=ActionKind.REFUND_BOUNTY,
        outputs=(BoxCandidate(amount, p2pk_address(record.creator_pub_key, network)),),
        height=height,
        consumed=record,
        spent_box_id=record.box_id,
    )
    return _verified(plan, record, rules)


def build_add_funds(
    record: BountyRecord,
    amount: int,
    *,
    caller_pub_key: bytes,
    height: int,
    rules: Optional[VersionRules] = None,
    network: Network = Network.MAINNET,
) -> TransitionPlan:
    """Raise value and reward by the same amount."""
    rules = _rules(record, rules)
    _require_creator(record, caller_pub_key)
    _require(amount > 0, "amount must be positive", amount=amount)
    successor = replace(record, value=record.value + amount, reward_amount=record.reward_amount + amount)
    return _successor_plan(
        ActionKind.ADD_FUNDS, record, successor, height, rules, network, signers=(caller_pub_key,),
    )


def build_extend_deadline(
    record: BountyRecord,
    new_deadline: int,
    *,
    caller_pub_key: bytes,
    height: int,
    rules: Optional[VersionRules] = None,
    network: Network = Network.MAINNET,
) -> TransitionPlan:
    rules = _rules(record, rules)
    _require_creator(record, caller_pub_key)
    _require_open(record, height)
    _require(
        new_deadline > record.deadline,
        f"new deadline {new_deadline} must be after {record.deadline}",
    )
    successor = replace(record, deadline=new_deadline)
    return _successor_plan(
        ActionKind.EXTEND_DEADLINE, record, successor, height, rules, network, signers=(caller_pub_key,),
    )


def build_update_metadata(
    record: BountyRecord,
    metadata: BountyMetadata,
    *,
    caller_pub_key: bytes,
    height: int,
    rules: Optional[VersionRules] = None,
    network: Network = Network.MAINNET,
) -> TransitionPlan:
    """Replace the payload and its metadata root.

    The new metadata must carry a higher version counter than the payload on
    the ledger when the contract version enforces one; see
    ``BountyMetadata.bumped``.
    """
    rules = _rules(record, rules)
    _require_creator(record, caller_pub_key)
    _require_open(record, height)
    current = payload_version(record.decoded_content.payload)
    if rules.metadata_version_counter:
        _require(
            metadata.version > current,
            f"metadata version must increase past {current}",
            version=metadata.version,
        )
    try:
        payload = metadata.to_payload()
    except ValueError as e:
        raise InvalidPrecondition(str(e)) from e
    digest = metadata.digest()
    _require(digest != record.roots.metadata, "metadata is unchanged")
    blob = content_model.replace_payload(record.content, payload)
    successor = replace(record, content=content_model.replace(blob, RootSlot.METADATA, digest))
    return _successor_plan(
        ActionKind.UPDATE_METADATA, record, successor, height, rules, network, signers=(caller_pub_key,),
    )
