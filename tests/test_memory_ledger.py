"""
In-memory ledger, wallet and assembler tests.

The ledger is the enforcement point the lifecycle relies on: proofs, spent
inputs, dust, conservation, token minting and the bounty script itself.

Run with: pytest tests/test_memory_ledger.py -v
"""

from dataclasses import replace

import pytest

from bountiful.codec import decode_record, encode_record
from bountiful.errors import DustOutput, InvalidPrecondition, LedgerRejected, StaleRecord
from bountiful.fees import MIN_BOX_VALUE, RECOMMENDED_TX_FEE
from bountiful.ledger import BoxCandidate, SignedTransaction, Token, UnsignedTransaction
from bountiful.memory import InMemoryLedger, LocalWallet, SimpleAssembler

from conftest import CREATOR, SOLVER, STRANGER


@pytest.fixture
def ledger():
    ledger = InMemoryLedger(height=10)
    ledger.fund(CREATOR.address(), 20_000_000)
    return ledger


@pytest.fixture
def wallet(ledger):
    return LocalWallet(CREATOR, ledger)


def _payment(wallet, amount, to=None):
    inputs = wallet.funding_inputs(amount + RECOMMENDED_TX_FEE)
    return SimpleAssembler().build(
        inputs,
        [BoxCandidate(amount, to or SOLVER.address())],
        RECOMMENDED_TX_FEE,
        wallet.change_address(),
    )


class TestPayments:

    def test_signed_payment_is_applied(self, ledger, wallet):
        tx_id = ledger.submit(wallet.sign(_payment(wallet, 5_000_000)))
        assert ledger.balance(SOLVER.address()) == 5_000_000
        assert ledger.balance(CREATOR.address()) == 20_000_000 - 5_000_000 - RECOMMENDED_TX_FEE
        confirmed = ledger.await_confirmation(tx_id)
        assert confirmed.value == 5_000_000
        assert confirmed.creation_height == 10

    def test_double_spend_is_stale(self, ledger, wallet):
        signed = wallet.sign(_payment(wallet, 5_000_000))
        ledger.submit(signed)
        with pytest.raises(StaleRecord):
            ledger.submit(signed)

    def test_unsigned_input_is_refused(self, ledger, wallet):
        tx = _payment(wallet, 5_000_000)
        with pytest.raises(LedgerRejected, match="not signed by its owner"):
            ledger.submit(SignedTransaction(unsigned=tx, proofs=()))

    def test_foreign_signature_does_not_authorize(self, ledger, wallet):
        tx = _payment(wallet, 5_000_000)
        stranger_signed = SignedTransaction(tx, ((STRANGER.public_key, STRANGER.sign(tx.digest())),))
        with pytest.raises(LedgerRejected):
            ledger.submit(stranger_signed)

    def test_forged_proof_is_refused(self, ledger, wallet):
        tx = _payment(wallet, 5_000_000)
        forged = SignedTransaction(tx, ((CREATOR.public_key, STRANGER.sign(tx.digest())),))
        with pytest.raises(LedgerRejected, match="invalid proof"):
            ledger.submit(forged)

    def test_dust_output_is_refused(self, ledger, wallet):
        inputs = wallet.funding_inputs(1)
        tx = UnsignedTransaction(
            inputs=tuple(inputs),
            outputs=(
                BoxCandidate(1_000, SOLVER.address()),
                BoxCandidate(inputs[0].value - 1_000 - RECOMMENDED_TX_FEE, CREATOR.address()),
            ),
            fee=RECOMMENDED_TX_FEE,
            signers=(CREATOR.public_key,),
        )
        with pytest.raises(LedgerRejected, match="dust"):
            ledger.submit(wallet.sign(tx))

    def test_value_must_be_conserved(self, ledger, wallet):
        inputs = wallet.funding_inputs(1)
        tx = UnsignedTransaction(
            inputs=tuple(inputs),
            outputs=(BoxCandidate(inputs[0].value, SOLVER.address()),),
            fee=RECOMMENDED_TX_FEE,
            signers=(CREATOR.public_key,),
        )
        with pytest.raises(LedgerRejected, match="not conserved"):
            ledger.submit(wallet.sign(tx))

    def test_unknown_input(self, ledger, wallet):
        tx = _payment(wallet, 5_000_000)
        ghost = replace(tx.inputs[0], box_id="ff" * 32)
        tx = replace(tx, inputs=(ghost,))
        with pytest.raises(LedgerRejected, match="unknown input"):
            ledger.submit(wallet.sign(tx))


class TestTokens:

    def test_mint_uses_first_input_id(self, ledger, wallet):
        inputs = wallet.funding_inputs(1)
        token_id = bytes.fromhex(inputs[0].box_id)
        tx = SimpleAssembler().build(
            inputs,
            [BoxCandidate(MIN_BOX_VALUE, CREATOR.address(), tokens=(Token(token_id, 1),))],
            RECOMMENDED_TX_FEE,
            wallet.change_address(),
        )
        tx_id = ledger.submit(wallet.sign(tx))
        assert ledger.await_confirmation(tx_id).tokens == (Token(token_id, 1),)

    def test_token_from_nowhere(self, ledger, wallet):
        inputs = wallet.funding_inputs(1)
        tx = SimpleAssembler().build(
            inputs,
            [BoxCandidate(MIN_BOX_VALUE, CREATOR.address(), tokens=(Token(b"\x42" * 32, 1),))],
            RECOMMENDED_TX_FEE,
            wallet.change_address(),
        )
        with pytest.raises(LedgerRejected, match="without minting"):
            ledger.submit(wallet.sign(tx))


class TestBountyEnforcement:
    """The ledger runs the validator on every spent bounty box."""

    def test_forged_transition_is_refused(self, sim):
        token_id = sim.create().token_id
        box = sim.ledger.fetch_record(token_id)
        record = decode_record(box)
        # A stranger tries to move the deadline without the creator's key.
        forged = replace(record, deadline=record.deadline + 5000)
        tx = UnsignedTransaction(
            inputs=(box,),
            outputs=(encode_record(forged),),
            fee=0,
        )
        with pytest.raises(LedgerRejected, match="bounty script refused") as exc:
            sim.ledger.submit(SignedTransaction(tx))
        assert any("creator signature is missing" in r for r in exc.value.reasons)
        assert sim.ledger.fetch_record(token_id).box_id == box.box_id

    def test_new_bounty_must_be_well_formed(self, sim, record):
        inputs = sim.creator.wallet.funding_inputs(1)
        # A bounty box that claims a reward it does not hold, minted on the spot.
        token_id = bytes.fromhex(inputs[0].box_id)
        bogus = replace(record, token_id=token_id, value=MIN_BOX_VALUE, reward_amount=10_000_000)
        tx = SimpleAssembler().build(
            inputs, [encode_record(bogus)], RECOMMENDED_TX_FEE, sim.creator.wallet.change_address(),
        )
        with pytest.raises(LedgerRejected, match="not a valid new bounty"):
            sim.ledger.submit(sim.creator.wallet.sign(tx))


class TestWallet:

    def test_insufficient_funds(self, wallet):
        with pytest.raises(InvalidPrecondition):
            wallet.funding_inputs(10**12)

    def test_token_boxes_are_not_used_for_funding(self, ledger, wallet):
        ledger.fund(CREATOR.address(), 90_000_000, tokens=(Token(b"\x01" * 32, 1),))
        selected = wallet.funding_inputs(1)
        assert all(not b.tokens for b in selected)

    def test_largest_boxes_first(self, ledger, wallet):
        ledger.fund(CREATOR.address(), 50_000_000)
        assert wallet.funding_inputs(1)[0].value == 50_000_000

    def test_signs_only_when_required(self, wallet):
        tx = UnsignedTransaction(inputs=(), outputs=(), fee=0, signers=(SOLVER.public_key,))
        assert wallet.sign(tx).proofs == ()


class TestAssembler:

    def test_change_output_appended(self, wallet):
        tx = _payment(wallet, 5_000_000)
        assert tx.outputs[0].address == SOLVER.address()
        assert tx.outputs[-1].address == CREATOR.address()
        assert tx.signers == (CREATOR.public_key,)

    def test_exact_inputs_have_no_change(self, wallet):
        inputs = wallet.funding_inputs(1)
        total = sum(b.value for b in inputs)
        tx = SimpleAssembler().build(
            inputs, [BoxCandidate(total - RECOMMENDED_TX_FEE, SOLVER.address())], RECOMMENDED_TX_FEE, "unused",
        )
        assert len(tx.outputs) == 1

    def test_dust_change_is_refused(self, wallet):
        inputs = wallet.funding_inputs(1)
        total = sum(b.value for b in inputs)
        with pytest.raises(DustOutput) as exc:
            SimpleAssembler().build(
                inputs, [BoxCandidate(total - RECOMMENDED_TX_FEE - 10, SOLVER.address())],
                RECOMMENDED_TX_FEE, CREATOR.address(),
            )
        assert exc.value.output == "change"

    def test_shortfall(self, wallet):
        with pytest.raises(InvalidPrecondition):
            SimpleAssembler().build(
                wallet.funding_inputs(1), [BoxCandidate(10**12, SOLVER.address())], 0, CREATOR.address(),
            )
