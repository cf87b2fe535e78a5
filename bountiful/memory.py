"""
In-memory reference collaborators.

A ledger, a wallet and a transaction assembler that satisfy the protocols in
``bountiful.ledger`` without any network. The ledger enforces the same rules
a real node would for bounty boxes: it verifies every proof, refuses spent
inputs, runs the Transition Validator on each spent bounty box and the mint
guard on each spent mint box, checks creation of fresh bounty boxes, and
requires value and token conservation. Used by the tests, the CLI
``simulate`` command, and local experiments.
"""

from __future__ import annotations

import secrets
import threading
from collections import defaultdict
from dataclasses import replace
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

from bountiful.codec import decode_record
from bountiful.distribution import FeeDistributionScript, validate_fee_distribution
from bountiful.errors import DustOutput, EncodingError, InvalidPrecondition, LedgerRejected, StaleRecord
from bountiful.fees import MIN_BOX_VALUE
from bountiful.keys import KeyPair, Network, decode_address, proposition_of, public_key_of, verify_signature
from bountiful.ledger import (
    BoxCandidate,
    ContextInput,
    LedgerBox,
    Script,
    SignedTransaction,
    Token,
    TransitionContext,
    UnsignedTransaction,
    box_id_for,
)
from bountiful.observability import BountyLayer, get_logger
from bountiful.validator import check_mint_spend, validate_creation, validate_transition
from bountiful.versions import ContractVersion, MintGuard, ScriptIdentity, VersionRules, rules_for

logger = get_logger("memory", BountyLayer.LEDGER)


# =============================================================================
# LEDGER
# =============================================================================

class InMemoryLedger:
    """
    Single-node UTXO ledger held in memory.

    Transactions confirm as soon as they are accepted; the height only moves
    when ``advance`` is called.
    """

    def __init__(
        self,
        height: int = 1,
        *,
        min_box_value: int = MIN_BOX_VALUE,
        rules: Optional[Dict[ContractVersion, VersionRules]] = None,
    ):
        self._height = height
        self._min_box_value = min_box_value
        self._rules = dict(rules or {})
        self._unspent: Dict[str, LedgerBox] = {}
        self._spent: Set[str] = set()
        self._boxes: Dict[str, LedgerBox] = {}
        self._confirmed: Dict[str, UnsignedTransaction] = {}
        # Pay-to-script-hash scripts this node can resolve, by proposition.
        self._scripts: Dict[bytes, Script] = {}
        self._lock = threading.RLock()

    # -- chain state --------------------------------------------------------

    def current_height(self) -> int:
        return self._height

    def advance(self, blocks: int = 1) -> int:
        with self._lock:
            self._height += blocks
            return self._height

    def set_height(self, height: int) -> None:
        with self._lock:
            self._height = height

    def rules_for(self, version: ContractVersion) -> VersionRules:
        return self._rules.get(version) or rules_for(version)

    def register_script(self, script: Script, network: Network = Network.MAINNET) -> str:
        """Make boxes paid to the script's address spendable under that script."""
        address = script.address(network)
        self._scripts[proposition_of(address)] = script
        return address

    def fund(self, address: str, value: int, tokens: Tuple[Token, ...] = ()) -> LedgerBox:
        """Create a box out of thin air (genesis allocation)."""
        with self._lock:
            tx_id = secrets.token_hex(32)
            box = LedgerBox.from_candidate(
                BoxCandidate(
                    value=value,
                    address=address,
                    tokens=tokens,
                    script=self._scripts.get(proposition_of(address)),
                ),
                tx_id=tx_id,
                index=0,
                height=self._height,
            )
            self._add(box)
            return box

    def _add(self, box: LedgerBox) -> None:
        self._unspent[box.box_id] = box
        self._boxes[box.box_id] = box

    def box(self, box_id: str) -> Optional[LedgerBox]:
        return self._boxes.get(box_id)

    def is_spent(self, box_id: str) -> bool:
        return box_id in self._spent

    def unspent(self) -> List[LedgerBox]:
        with self._lock:
            return list(self._unspent.values())

    def unspent_for(self, address: str) -> List[LedgerBox]:
        prop = proposition_of(address)
        with self._lock:
            return [b for b in self._unspent.values() if b.proposition == prop]

    def balance(self, address: str) -> int:
        return sum(b.value for b in self.unspent_for(address))

    # -- Ledger protocol ----------------------------------------------------

    def fetch_record(self, token_id: bytes) -> Optional[LedgerBox]:
        with self._lock:
            for box in self._unspent.values():
                if isinstance(box.script, ScriptIdentity) and box.token_amount(token_id) > 0:
                    return box
        return None

    def await_confirmation(self, tx_id: str, timeout: float = 0.0) -> Optional[LedgerBox]:
        with self._lock:
            tx = self._confirmed.get(tx_id)
            if tx is None or not tx.outputs:
                return None
            return self._boxes.get(box_id_for(tx_id, 0))

    def submit(self, tx: SignedTransaction) -> str:
        unsigned = tx.unsigned
        tx_id = unsigned.tx_id
        signers = self._verify_proofs(tx)
        with self._lock:
            inputs = self._resolve_inputs(unsigned)
            ctx = TransitionContext.for_transaction(unsigned, self._height, signers)
            for box in inputs:
                self._check_spend(box, ctx)
            self._check_outputs(unsigned, inputs)
            self._apply(tx_id, unsigned, inputs)
        logger.info("Transaction accepted", tx_id=tx_id, inputs=len(inputs), outputs=len(unsigned.outputs))
        return tx_id

    # -- validation ---------------------------------------------------------

    def _verify_proofs(self, tx: SignedTransaction) -> FrozenSet[bytes]:
        digest = tx.unsigned.digest()
        signers = set()
        for pub, sig in tx.proofs:
            if not verify_signature(pub, digest, sig):
                raise LedgerRejected("invalid proof", public_key=pub.hex())
            signers.add(pub)
        return frozenset(signers)

    def _resolve_inputs(self, tx: UnsignedTransaction) -> List[LedgerBox]:
        ids = [b.box_id for b in tx.inputs]
        if not ids:
            raise LedgerRejected("transaction has no inputs")
        if len(set(ids)) != len(ids):
            raise LedgerRejected("transaction spends the same box twice")
        resolved: List[LedgerBox] = []
        for box_id in ids:
            if box_id in self._spent:
                raise StaleRecord("input was already spent", box_id=box_id)
            box = self._unspent.get(box_id)
            if box is None:
                raise LedgerRejected("unknown input", box_id=box_id)
            resolved.append(box)
        return resolved

    def _check_spend(self, box: LedgerBox, ctx: TransitionContext) -> None:
        script = box.script
        if isinstance(script, ScriptIdentity):
            try:
                record = decode_record(box)
            except EncodingError as e:
                raise LedgerRejected("bounty box cannot be read", box_id=box.box_id, reasons=[e.message]) from e
            verdict = validate_transition(record, ctx, self.rules_for(record.version))
            if not verdict.accepted:
                raise LedgerRejected("bounty script refused the spend", box_id=box.box_id,
                                     reasons=verdict.summary())
            logger.debug("Bounty spend accepted", box_id=box.box_id, action=verdict.action.value)
        elif isinstance(script, MintGuard):
            errs = check_mint_spend(box, ctx)
            if errs:
                raise LedgerRejected("mint guard refused the spend", box_id=box.box_id, reasons=errs)
        elif isinstance(script, FeeDistributionScript):
            errs = validate_fee_distribution(ctx, script)
            if errs:
                raise LedgerRejected("dev-fee script refused the spend", box_id=box.box_id, reasons=errs)
        else:
            owner = public_key_of(box.address)
            if not owner or owner not in ctx.signers:
                raise LedgerRejected("input is not signed by its owner", box_id=box.box_id)

    def _check_outputs(self, tx: UnsignedTransaction, inputs: List[LedgerBox]) -> None:
        if tx.fee < 0:
            raise LedgerRejected("negative fee", fee=tx.fee)
        for i, out in enumerate(tx.outputs):
            if out.value < self._min_box_value:
                raise LedgerRejected(
                    f"OUTPUTS({i}) is dust", value=out.value, minimum=self._min_box_value,
                )
            if out.script is not None and out.address != out.script.address(
                _network_of(out.address)
            ):
                raise LedgerRejected(f"OUTPUTS({i}) address does not match its script")

        value_in = sum(b.value for b in inputs)
        value_out = sum(o.value for o in tx.outputs) + tx.fee
        if value_in != value_out:
            raise LedgerRejected("value is not conserved", inputs=value_in, outputs=value_out)

        tokens_in: Dict[bytes, int] = defaultdict(int)
        for b in inputs:
            for t in b.tokens:
                tokens_in[t.token_id] += t.amount
        tokens_out: Dict[bytes, int] = defaultdict(int)
        for o in tx.outputs:
            for t in o.tokens:
                if t.amount <= 0:
                    raise LedgerRejected("token amounts must be positive")
                tokens_out[t.token_id] += t.amount
        mintable = bytes.fromhex(inputs[0].box_id)
        for token_id, amount in tokens_out.items():
            if token_id != mintable and amount > tokens_in.get(token_id, 0):
                raise LedgerRejected("token created without minting", token_id=token_id.hex())

        # A bounty box that does not continue one of the spent boxes is new and
        # must be well formed.
        spent_scripts = {b.script for b in inputs if isinstance(b.script, ScriptIdentity)}
        for i, out in enumerate(tx.outputs):
            if isinstance(out.script, ScriptIdentity) and out.script not in spent_scripts:
                try:
                    errs = validate_creation(decode_record(out))
                except EncodingError as e:
                    errs = [e.message]
                if errs:
                    raise LedgerRejected(f"OUTPUTS({i}) is not a valid new bounty", reasons=errs)

    def _apply(self, tx_id: str, tx: UnsignedTransaction, inputs: List[LedgerBox]) -> None:
        for box in inputs:
            del self._unspent[box.box_id]
            self._spent.add(box.box_id)
        for i, out in enumerate(tx.outputs):
            if out.script is None and out.proposition in self._scripts:
                out = replace(out, script=self._scripts[out.proposition])
            self._add(LedgerBox.from_candidate(out, tx_id=tx_id, index=i, height=self._height))
        self._confirmed[tx_id] = tx


def _network_of(address: str) -> Network:
    try:
        return decode_address(address)[0]
    except ValueError:
        return Network.MAINNET


# =============================================================================
# WALLET
# =============================================================================

class LocalWallet:
    """Wallet over one key pair whose boxes live on an InMemoryLedger."""

    def __init__(self, keys: KeyPair, ledger: InMemoryLedger, network: Network = Network.MAINNET):
        self.keys = keys
        self.ledger = ledger
        self.network = network

    def change_address(self) -> str:
        return self.keys.address(self.network)

    def public_key(self) -> bytes:
        return self.keys.public_key

    def funding_inputs(self, min_value: int) -> List[LedgerBox]:
        """Token-free boxes, largest first, until min_value is covered."""
        candidates = sorted(
            (b for b in self.ledger.unspent_for(self.change_address()) if not b.tokens),
            key=lambda b: b.value,
            reverse=True,
        )
        selected: List[LedgerBox] = []
        total = 0
        for box in candidates:
            if total >= min_value:
                break
            selected.append(box)
            total += box.value
        if total < min_value:
            raise InvalidPrecondition(
                "wallet cannot cover the transaction", required=min_value, available=total,
            )
        return selected

    def sign(self, tx: UnsignedTransaction) -> SignedTransaction:
        digest = tx.digest()
        proofs: List[Tuple[bytes, bytes]] = []
        if self.keys.public_key in tx.signers:
            proofs.append((self.keys.public_key, self.keys.sign(digest)))
        return SignedTransaction(unsigned=tx, proofs=tuple(proofs))


# =============================================================================
# ASSEMBLER
# =============================================================================

class SimpleAssembler:
    """
    Places the requested outputs first, in order, then one change output.

    Tokens carried by inputs but placed in no output are burned.
    """

    def __init__(self, min_box_value: int = MIN_BOX_VALUE):
        self.min_box_value = min_box_value

    def build(
        self,
        inputs: List[LedgerBox],
        outputs: List[BoxCandidate],
        fee: int,
        change_to: str,
        *,
        context_inputs: Tuple[ContextInput, ...] = (),
        signers: Tuple[bytes, ...] = (),
    ) -> UnsignedTransaction:
        value_in = sum(b.value for b in inputs)
        change = value_in - sum(o.value for o in outputs) - fee
        if change < 0:
            raise InvalidPrecondition("inputs do not cover outputs and fee", shortfall=-change)
        final = list(outputs)
        if change > 0:
            if change < self.min_box_value:
                raise DustOutput(
                    f"change output of {change} is below the minimum box value {self.min_box_value}",
                    output="change",
                    amount=change,
                    minimum=self.min_box_value,
                )
            final.append(BoxCandidate(value=change, address=change_to))

        required: List[bytes] = []
        for key in [public_key_of(b.address) for b in inputs] + list(signers):
            if key and key not in required:
                required.append(key)
        return UnsignedTransaction(
            inputs=tuple(inputs),
            outputs=tuple(final),
            fee=fee,
            context_inputs=tuple(context_inputs),
            signers=tuple(required),
        )
