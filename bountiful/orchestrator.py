"""
Bounty Lifecycle Orchestrator

Sequences the builder against the external collaborators. One call is one
transition:

    ┌────────┐   ┌────────┐   ┌────────┐   ┌─────────┐   ┌──────┐   ┌────────┐
    │ fetch  │──▶│ decode │──▶│ build  │──▶│ assemble│──▶│ sign │──▶│ submit │
    │ ledger │   │ codec  │   │ plan   │   │ + fund  │   │      │   │        │
    └────────┘   └────────┘   └────────┘   └─────────┘   └──────┘   └───┬────┘
                                                                        │
                                              optional confirmation ◀───┘
                                              RecordStore swap

The orchestrator owns no ledger state. The record it reads may be consumed by
somebody else before its transaction lands; the ledger then refuses the spend
and the outcome carries a StaleRecord or LedgerRejected error. Nothing is
retried here: re-fetching and trying again is the caller's decision.

Every public method returns an ActionOutcome and never raises a BountyError.

Example:
    lifecycle = BountyLifecycle(ledger, wallet, SimpleAssembler())
    created = lifecycle.create_bounty(
        reward_amount=50_000_000,
        deadline=ledger.current_height() + 1000,
        min_submissions=1,
        metadata=BountyMetadata(title="Port the parser"),
    )
    if created.ok:
        lifecycle.submit_solution(created.token_id, "https://example.org/pr/1")
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from bountiful import builder
from bountiful.builder import TransitionPlan
from bountiful.codec import decode_record
from bountiful.commitments import JudgmentDocument, SubmissionDocument
from bountiful.config import BountifulConfig, get_config
from bountiful.distribution import DistributionPlan, FeeDistributionScript, build_fee_distribution
from bountiful.errors import BountyError, ConfigError, EncodingError, RecordNotFound
from bountiful.keys import Network
from bountiful.ledger import Ledger, LedgerBox, SignedTransaction, TxAssembler, Wallet, box_id_for
from bountiful.metadata import BountyMetadata
from bountiful.observability import BountyLayer, generate_correlation_id, get_logger, get_tracer, set_correlation_id
from bountiful.records import BountyRecord
from bountiful.store import RecordStore
from bountiful.versions import ContractVersion, VersionRules, rules_for

logger = get_logger("lifecycle", BountyLayer.ORCHESTRATOR)


@dataclass
class ActionOutcome:
    """Result of one life-cycle operation."""
    ok: bool
    action: str
    token_id: Optional[bytes] = None
    tx_id: Optional[str] = None
    plan: Optional[TransitionPlan] = None
    # The successor as it now lives on the ledger; None for terminal actions.
    record: Optional[BountyRecord] = None
    error: Optional[BountyError] = None
    confirmed: bool = False
    # Transactions submitted before the final one (the mint, for create_bounty).
    prior_tx_ids: List[str] = field(default_factory=list)
    completed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def success(
        cls,
        action: str,
        *,
        token_id: Optional[bytes],
        tx_id: str,
        plan: Optional[TransitionPlan] = None,
        record: Optional[BountyRecord] = None,
        confirmed: bool = False,
    ) -> "ActionOutcome":
        return cls(
            ok=True,
            action=action,
            token_id=token_id,
            tx_id=tx_id,
            plan=plan,
            record=record,
            confirmed=confirmed,
        )

    @classmethod
    def failure(cls, action: str, error: BountyError, token_id: Optional[bytes] = None) -> "ActionOutcome":
        return cls(ok=False, action=action, token_id=token_id, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "action": self.action,
            "token_id": self.token_id.hex() if self.token_id else None,
            "tx_id": self.tx_id,
            "prior_tx_ids": list(self.prior_tx_ids),
            "confirmed": self.confirmed,
            "record": self.record.to_dict() if self.record else None,
            "plan": self.plan.to_dict() if self.plan else None,
            "error": self.error.to_dict() if self.error else None,
            "completed_at": self.completed_at,
        }


@dataclass(frozen=True)
class _Submitted:
    tx_id: str
    first_output: Optional[LedgerBox]
    confirmed: bool


class BountyLifecycle:
    """
    Drives bounties through their life cycle on one ledger with one wallet.

    The wallet is the caller: its key signs creator-gated actions, its boxes
    fund fees and deposits, and change comes back to its address.
    """

    def __init__(
        self,
        ledger: Ledger,
        wallet: Wallet,
        assembler: TxAssembler,
        config: Optional[BountifulConfig] = None,
        store: Optional[RecordStore] = None,
    ):
        self.ledger = ledger
        self.wallet = wallet
        self.assembler = assembler
        self.config = config or get_config()
        self.store = store if store is not None else RecordStore()
        self._history: List[ActionOutcome] = []

    @property
    def network(self) -> Network:
        return self.config.ledger_network

    @property
    def history(self) -> List[ActionOutcome]:
        return list(self._history)

    # =========================================================================
    # READS
    # =========================================================================

    def rules(self, version: ContractVersion) -> VersionRules:
        return rules_for(version).with_overrides(min_box_value=self.config.fees.min_box_value.get())

    def fetch(self, token_id: bytes) -> BountyRecord:
        """The live record of a bounty, tracked in the store."""
        return self._load(token_id)[1]

    def _load(self, token_id: bytes) -> Tuple[LedgerBox, BountyRecord]:
        """Fetch and decode the box holding a bounty.

        Raises:
            RecordNotFound: no unspent box holds the token, or the box holding
                it cannot be decoded
        """
        box = self.ledger.fetch_record(token_id)
        if box is None:
            raise RecordNotFound("no live record for bounty", token_id=token_id.hex())
        try:
            record = decode_record(box)
        except EncodingError as e:
            logger.warning("Undecodable bounty box", token_id=token_id.hex(), box_id=box.box_id, error=e.message)
            raise RecordNotFound("bounty box cannot be decoded", token_id=token_id.hex(), box_id=box.box_id) from e
        self.store.track(record)
        return box, record

    # =========================================================================
    # CREATION
    # =========================================================================

    def create_bounty(
        self,
        *,
        reward_amount: int,
        deadline: int,
        min_submissions: int,
        metadata: BountyMetadata,
        dev_fee_address: Optional[str] = None,
        dev_fee_rate: Optional[int] = None,
        version: Optional[ContractVersion] = None,
    ) -> ActionOutcome:
        """Mint the control token, wait for it, then initialize the record."""
        action = "create_bounty"
        correlation = set_correlation_id(generate_correlation_id())
        start = time.monotonic()
        outcome: ActionOutcome
        try:
            with get_tracer().span(action, BountyLayer.ORCHESTRATOR, reward_amount=reward_amount):
                outcome = self._create(
                    reward_amount=reward_amount,
                    deadline=deadline,
                    min_submissions=min_submissions,
                    metadata=metadata,
                    dev_fee_address=dev_fee_address,
                    dev_fee_rate=dev_fee_rate,
                    version=version or self.config.contract_version,
                )
        except BountyError as e:
            outcome = self._failed(action, e)
        finally:
            correlation.var.reset(correlation)
        return self._finish(outcome, start)

    def _create(
        self,
        *,
        reward_amount: int,
        deadline: int,
        min_submissions: int,
        metadata: BountyMetadata,
        dev_fee_address: Optional[str],
        dev_fee_rate: Optional[int],
        version: ContractVersion,
    ) -> ActionOutcome:
        fees = self.config.fees
        if dev_fee_address is None:
            dev_fee_address = self.config.dev_fee_address()
        if dev_fee_rate is None:
            dev_fee_rate = fees.dev_fee_rate.get()
        carrying = fees.carrying_value.get()
        creator = self.wallet.public_key()

        def bounty_plan(token_id: bytes, mint_box: Optional[LedgerBox]) -> TransitionPlan:
            return builder.build_bounty(
                token_id=token_id,
                creator_pub_key=creator,
                reward_amount=reward_amount,
                deadline=deadline,
                min_submissions=min_submissions,
                metadata=metadata,
                dev_fee_address=dev_fee_address,
                dev_fee_rate=dev_fee_rate,
                height=self.ledger.current_height(),
                version=version,
                rules=self.rules(version),
                network=self.network,
                mint_box=mint_box,
                carrying_value=carrying,
            )

        # The mint's first input names the token, so it must be a wallet box.
        funding = self._funding(carrying + fees.tx_fee.get())
        # Refuse bad parameters before anything is spent.
        bounty_plan(bytes.fromhex(funding[0].box_id), None)
        mint = builder.build_mint(
            funding_box=funding[0],
            creator_pub_key=creator,
            dev_fee_address=dev_fee_address,
            dev_fee_rate=dev_fee_rate,
            height=self.ledger.current_height(),
            version=version,
            network=self.network,
            carrying_value=carrying,
        )
        mint = replace(mint, fee=fees.tx_fee.get())
        minted = self._submit(mint, funding, wait=True)
        token_id = mint.minted_token_id
        if minted.first_output is None:
            raise RecordNotFound("mint transaction was not confirmed", tx_id=minted.tx_id)
        logger.info("Control token minted", token_id=token_id.hex(), tx_id=minted.tx_id)

        plan = replace(bounty_plan(token_id, minted.first_output), fee=fees.tx_fee.get())
        outcome = self._execute("create_bounty", plan, minted.first_output)
        outcome.prior_tx_ids.append(minted.tx_id)
        return outcome

    # =========================================================================
    # ACTIONS
    # =========================================================================

    def submit_solution(
        self,
        token_id: bytes,
        content: str,
        *,
        submitter: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> ActionOutcome:
        def plan(record: BountyRecord, height: int) -> TransitionPlan:
            submission = SubmissionDocument(
                submission_id=record.stats.total,
                submitter=submitter or self.wallet.change_address(),
                content=content,
                submitted_at_height=height,
                extra=dict(extra or {}),
            )
            return builder.build_submit_solution(
                record, submission, height=height, rules=self.rules(record.version), network=self.network,
            )
        return self._run("submit_solution", token_id, plan)

    def judge_submission(
        self,
        token_id: bytes,
        submission_id: int,
        approved: bool,
        *,
        notes: str = "",
        winner_address: Optional[str] = None,
    ) -> ActionOutcome:
        def plan(record: BountyRecord, height: int) -> TransitionPlan:
            judgment = JudgmentDocument(
                submission_id=submission_id,
                approved=approved,
                judged_at_height=height,
                notes=notes,
                winner_address=winner_address,
            )
            return builder.build_judge_submission(
                record, judgment, caller_pub_key=self.wallet.public_key(), height=height,
                rules=self.rules(record.version), network=self.network,
            )
        return self._run("judge_submission", token_id, plan)

    def withdraw_reward(self, token_id: bytes, *, winner_address: str, judgment_height: int) -> ActionOutcome:
        def plan(record: BountyRecord, height: int) -> TransitionPlan:
            return builder.build_withdraw_reward(
                record, winner_address=winner_address, judgment_height=judgment_height,
                height=height, rules=self.rules(record.version),
            )
        return self._run("withdraw_reward", token_id, plan)

    def refund_bounty(self, token_id: bytes) -> ActionOutcome:
        def plan(record: BountyRecord, height: int) -> TransitionPlan:
            return builder.build_refund_bounty(
                record, height=height, rules=self.rules(record.version), network=self.network,
            )
        return self._run("refund_bounty", token_id, plan)

    def add_funds(self, token_id: bytes, amount: int) -> ActionOutcome:
        def plan(record: BountyRecord, height: int) -> TransitionPlan:
            return builder.build_add_funds(
                record, amount, caller_pub_key=self.wallet.public_key(), height=height,
                rules=self.rules(record.version), network=self.network,
            )
        return self._run("add_funds", token_id, plan)

    def extend_deadline(self, token_id: bytes, new_deadline: int) -> ActionOutcome:
        def plan(record: BountyRecord, height: int) -> TransitionPlan:
            return builder.build_extend_deadline(
                record, new_deadline, caller_pub_key=self.wallet.public_key(), height=height,
                rules=self.rules(record.version), network=self.network,
            )
        return self._run("extend_deadline", token_id, plan)

    def update_metadata(self, token_id: bytes, metadata: BountyMetadata) -> ActionOutcome:
        def plan(record: BountyRecord, height: int) -> TransitionPlan:
            return builder.build_update_metadata(
                record, metadata, caller_pub_key=self.wallet.public_key(), height=height,
                rules=self.rules(record.version), network=self.network,
            )
        return self._run("update_metadata", token_id, plan)

    # =========================================================================
    # FEE DISTRIBUTION
    # =========================================================================

    def distribution_script(self) -> FeeDistributionScript:
        schedule = self.config.fee_schedule()
        if schedule is None:
            raise ConfigError("no fee recipients configured")
        return schedule.script(min_distribution=self.config.distribution.min_distribution.get())

    def distribute_fees(self, fee_boxes: Sequence[LedgerBox]) -> ActionOutcome:
        """Split collected platform fees between the configured recipients."""
        action = "distribute_fees"
        start = time.monotonic()
        correlation = set_correlation_id(generate_correlation_id())
        try:
            with get_tracer().span(action, BountyLayer.ORCHESTRATOR, boxes=len(fee_boxes)):
                dist: DistributionPlan = build_fee_distribution(
                    fee_boxes, self.distribution_script(), min_box_value=self.config.fees.min_box_value.get(),
                )
                tx = self.assembler.build(
                    list(dist.inputs), list(dist.outputs), dist.fee, self.wallet.change_address(),
                )
                tx_id = self.ledger.submit(self.wallet.sign(tx))
                outcome = ActionOutcome.success(action, token_id=None, tx_id=tx_id)
        except BountyError as e:
            outcome = self._failed(action, e)
        finally:
            correlation.var.reset(correlation)
        return self._finish(outcome, start)

    # =========================================================================
    # PLUMBING
    # =========================================================================

    def _run(
        self,
        action: str,
        token_id: bytes,
        make_plan: Callable[[BountyRecord, int], TransitionPlan],
    ) -> ActionOutcome:
        start = time.monotonic()
        correlation = set_correlation_id(generate_correlation_id())
        try:
            with get_tracer().span(action, BountyLayer.ORCHESTRATOR, token_id=token_id.hex()):
                box, record = self._load(token_id)
                plan = make_plan(record, self.ledger.current_height())
                if not plan.is_terminal:
                    plan = replace(plan, fee=self.config.fees.tx_fee.get())
                outcome = self._execute(action, plan, box)
        except BountyError as e:
            outcome = self._failed(action, e, token_id)
        finally:
            correlation.var.reset(correlation)
        return self._finish(outcome, start)

    def _execute(self, action: str, plan: TransitionPlan, spent: LedgerBox) -> ActionOutcome:
        """Fund, assemble, sign and submit a plan that spends one contract box."""
        needed = plan.output_value + plan.fee - spent.value
        inputs = [spent] + self._funding_for_change(needed)
        submitted = self._submit(plan, inputs, wait=self.config.lifecycle.await_confirmation.get())

        token_id = plan.successor.token_id if plan.successor else plan.consumed.token_id
        record = None
        if plan.successor is not None:
            box_id = submitted.first_output.box_id if submitted.first_output else box_id_for(submitted.tx_id, 0)
            record = replace(plan.successor, box_id=box_id)
        if plan.consumed is not None:
            swapped, _ = self.store.compare_and_swap(token_id, plan.spent_box_id, record)
            if not swapped:
                logger.warning("Tracked record moved while the transition was in flight", token_id=token_id.hex())
        elif record is not None:
            self.store.track(record)
        return ActionOutcome.success(
            action,
            token_id=token_id,
            tx_id=submitted.tx_id,
            plan=plan,
            record=record,
            confirmed=submitted.confirmed,
        )

    def _funding_for_change(self, needed: int) -> List[LedgerBox]:
        """Wallet inputs that cover ``needed`` and leave no dust change.

        Change is either zero or at least the minimum box value.
        """
        minimum = self.config.fees.min_box_value.get()
        if needed > 0:
            return self._funding(needed)
        if 0 < -needed < minimum:
            return self._funding(minimum)
        return []

    def _funding(self, needed: int) -> List[LedgerBox]:
        return self.wallet.funding_inputs(needed + self.config.fees.min_box_value.get())

    def _submit(self, plan: TransitionPlan, inputs: List[LedgerBox], *, wait: bool) -> _Submitted:
        tx = self.assembler.build(
            inputs,
            list(plan.outputs),
            plan.fee,
            self.wallet.change_address(),
            context_inputs=plan.context_inputs,
            signers=plan.required_signers,
        )
        signed: SignedTransaction = self.wallet.sign(tx)
        tx_id = self.ledger.submit(signed)
        logger.info("Transaction submitted", action=plan.action.value, tx_id=tx_id, inputs=len(inputs))
        first_output = None
        if wait:
            first_output = self.ledger.await_confirmation(
                tx_id, self.config.lifecycle.confirmation_timeout.get(),
            )
            if first_output is None:
                logger.warning("Confirmation timed out", tx_id=tx_id)
        return _Submitted(tx_id=tx_id, first_output=first_output, confirmed=first_output is not None)

    def _failed(self, action: str, error: BountyError, token_id: Optional[bytes] = None) -> ActionOutcome:
        logger.warning(
            f"{action} failed",
            error_code=error.code,
            token_id=token_id.hex() if token_id else None,
            details=error.to_dict()["details"],
        )
        return ActionOutcome.failure(action, error, token_id)

    def _finish(self, outcome: ActionOutcome, start: float) -> ActionOutcome:
        duration_ms = (time.monotonic() - start) * 1000
        logger.operation(outcome.action, duration_ms, outcome.ok, tx_id=outcome.tx_id)
        self._history.append(outcome)
        return outcome

    def get_statistics(self) -> Dict[str, Any]:
        by_action: Dict[str, Dict[str, int]] = {}
        for outcome in self._history:
            counts = by_action.setdefault(outcome.action, {"ok": 0, "failed": 0})
            counts["ok" if outcome.ok else "failed"] += 1
        return {
            "operations": len(self._history),
            "failed": sum(1 for o in self._history if not o.ok),
            "by_action": by_action,
            "tracked_records": len(self.store),
            "store_conflicts": self.store.stats.conflicts,
        }
