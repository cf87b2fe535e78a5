"""
Platform fee distribution tests.

Run with: pytest tests/test_distribution.py -v
"""

from dataclasses import replace

import pytest

from bountiful.distribution import (
    DEFAULT_SHARES,
    FeeRecipient,
    FeeSchedule,
    build_fee_distribution,
    validate_fee_distribution,
)
from bountiful.errors import ConfigError, DustOutput, InvalidPrecondition, LedgerRejected
from bountiful.fees import MINER_FEE
from bountiful.ledger import LedgerBox, SignedTransaction, TransitionContext
from bountiful.memory import InMemoryLedger, SimpleAssembler

from conftest import CREATOR, PLATFORM, SOLVER, STRANGER


ADDRESSES = [CREATOR.address(), SOLVER.address(), PLATFORM.address(), STRANGER.address()]


def _fee_boxes(script, *values):
    return [
        LedgerBox(box_id=f"{i + 1:02x}" * 32, value=v, address=script.address(), script=script)
        for i, v in enumerate(values)
    ]


@pytest.fixture
def halves():
    return FeeSchedule.parse([f"{ADDRESSES[0]}:50", f"{ADDRESSES[1]}:50"])


class TestFeeSchedule:

    def test_parse_forms(self):
        a, b = ADDRESSES[:2]
        from_strings = FeeSchedule.parse([f"{a}:60", f"{b}:40"])
        from_dicts = FeeSchedule.parse([{"address": a, "share": 60}, {"address": b, "share": "40"}])
        from_pairs = FeeSchedule.parse([(a, 60), (b, 40)])
        assert from_strings == from_dicts == from_pairs
        assert from_strings.recipients[0] == FeeRecipient(a, 60)

    def test_shares_must_sum_to_denominator(self):
        with pytest.raises(ConfigError, match="shares sum to 90"):
            FeeSchedule.parse([f"{ADDRESSES[0]}:50", f"{ADDRESSES[1]}:40"])

    def test_recipient_address_must_be_valid(self):
        with pytest.raises(ConfigError, match="not a valid address"):
            FeeSchedule.parse(["nowhere:100"])

    def test_malformed_entry(self):
        with pytest.raises(ConfigError, match="malformed"):
            FeeSchedule.parse([f"{ADDRESSES[0]}:lots"])

    def test_empty_schedule(self):
        with pytest.raises(ConfigError):
            FeeSchedule(recipients=())

    def test_custom_denominator(self):
        schedule = FeeSchedule.parse([(ADDRESSES[0], 750), (ADDRESSES[1], 250)], denominator=1000)
        assert schedule.shares(4_000) == [3_000, 1_000]

    def test_script_address_depends_on_schedule(self, halves):
        other = FeeSchedule.parse([f"{ADDRESSES[0]}:40", f"{ADDRESSES[1]}:60"])
        assert halves.script().address() != other.script().address()
        assert halves.script().address() == halves.script().address()


class TestBuildDistribution:

    def test_even_split(self, halves):
        script = halves.script()
        plan = build_fee_distribution(_fee_boxes(script, 3_000_000, 3_000_000), script)
        assert plan.dev_amount == 4_900_000
        assert [o.value for o in plan.outputs] == [2_450_000, 2_450_000]
        assert plan.fee == MINER_FEE
        assert plan.total == 6_000_000

    def test_remainder_goes_to_miner(self, halves):
        script = halves.script()
        plan = build_fee_distribution(_fee_boxes(script, 6_000_050), script)
        assert plan.dev_amount == 4_900_000
        assert plan.fee == MINER_FEE + 50

    def test_default_stakeholder_shares(self):
        schedule = FeeSchedule.parse(list(zip(ADDRESSES, DEFAULT_SHARES)))
        script = schedule.script()
        plan = build_fee_distribution(_fee_boxes(script, 10_000_000), script)
        assert [o.value for o in plan.outputs] == [2_848_000, 2_848_000, 2_848_000, 356_000]
        assert sum(o.value for o in plan.outputs) == plan.dev_amount

    def test_below_minimum(self, halves):
        script = halves.script()
        with pytest.raises(InvalidPrecondition, match="below the minimum distribution"):
            build_fee_distribution(_fee_boxes(script, 4_999_999), script)

    def test_nothing_to_distribute(self, halves):
        with pytest.raises(InvalidPrecondition):
            build_fee_distribution([], halves.script())

    def test_dust_share(self):
        schedule = FeeSchedule.parse([(ADDRESSES[0], 995), (ADDRESSES[1], 5)], denominator=1000)
        script = schedule.script()
        with pytest.raises(DustOutput):
            build_fee_distribution(_fee_boxes(script, 5_000_000), script)


class TestValidateDistribution:

    def test_wrong_output_count(self, halves):
        script = halves.script()
        plan = build_fee_distribution(_fee_boxes(script, 6_000_000), script)
        ctx = TransitionContext(outputs=plan.outputs[:1], height=1, fee=plan.fee)
        assert validate_fee_distribution(ctx, script) == ["expected 2 outputs, got 1"]

    def test_skewed_split(self, halves):
        script = halves.script()
        plan = build_fee_distribution(_fee_boxes(script, 6_000_000), script)
        first, second = plan.outputs
        ctx = TransitionContext(
            outputs=(replace(first, value=first.value + 100), replace(second, value=second.value - 100)),
            height=1,
            fee=plan.fee,
        )
        assert validate_fee_distribution(ctx, script)

    def test_miner_fee_floor(self, halves):
        script = halves.script()
        plan = build_fee_distribution(_fee_boxes(script, 6_000_000), script)
        ctx = TransitionContext(outputs=plan.outputs, height=1, fee=MINER_FEE - 1)
        assert any("miner fee" in e for e in validate_fee_distribution(ctx, script))


class TestDistributionOnLedger:

    def test_script_boxes_are_spendable_only_by_a_distribution(self, halves):
        script = halves.script()
        ledger = InMemoryLedger(height=5)
        address = ledger.register_script(script)
        boxes = [ledger.fund(address, 3_000_000), ledger.fund(address, 3_000_000)]
        assert all(b.script == script for b in boxes)

        plan = build_fee_distribution(boxes, script)
        tx = SimpleAssembler().build(list(plan.inputs), list(plan.outputs), plan.fee, CREATOR.address())
        ledger.submit(SignedTransaction(tx))
        assert ledger.balance(ADDRESSES[0]) == 2_450_000
        assert ledger.balance(ADDRESSES[1]) == 2_450_000

    def test_theft_is_refused(self, halves):
        script = halves.script()
        ledger = InMemoryLedger(height=5)
        box = ledger.fund(ledger.register_script(script), 6_000_000)
        tx = SimpleAssembler().build([box], [], MINER_FEE, STRANGER.address())
        with pytest.raises(LedgerRejected, match="dev-fee script refused"):
            ledger.submit(SignedTransaction(tx))
