"""
Bountiful Ledger Model

Data types shared by everything that reads or writes the UTXO ledger, and
the collaborator protocols the lifecycle orchestrator is written against.

A box is never modified. A transaction spends whole boxes and creates new
ones; tokens move with value, and a token id that appears in an output but in
no input is a mint, legal only when it equals the first input's box id.

    ┌───────────────────┐      build       ┌────────────────────┐
    │ TransitionBuilder │ ───────────────▶ │    TxAssembler     │
    └───────────────────┘                  └─────────┬──────────┘
                                                     │ UnsignedTransaction
                                                     ▼
                                           ┌────────────────────┐
                                           │   Wallet.sign()    │
                                           └─────────┬──────────┘
                                                     │ SignedTransaction
                                                     ▼
                                           ┌────────────────────┐
                                           │  Ledger.submit()   │──▶ validator
                                           └────────────────────┘

The in-memory reference collaborators live in ``bountiful.memory``.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, List, Optional, Protocol, Tuple, Union

from bountiful.core import blake2b256, canonical_json_bytes
from bountiful.keys import proposition_of
from bountiful.versions import MintGuard, ScriptIdentity

if TYPE_CHECKING:
    from bountiful.distribution import FeeDistributionScript

Script = Union[ScriptIdentity, MintGuard, "FeeDistributionScript"]


# =============================================================================
# BOXES
# =============================================================================

@dataclass(frozen=True)
class Token:
    token_id: bytes
    amount: int

    def to_dict(self) -> Dict[str, Any]:
        return {"token_id": self.token_id.hex(), "amount": self.amount}


@dataclass(frozen=True)
class BoxCandidate:
    """An output a transaction proposes to create.

    ``script`` is set for contract boxes; plain key-guarded boxes only carry
    their P2PK ``address``.
    """
    value: int
    address: str
    tokens: Tuple[Token, ...] = ()
    registers: Dict[str, bytes] = field(default_factory=dict)
    script: Optional[Script] = None

    @property
    def proposition(self) -> bytes:
        return proposition_of(self.address)

    def token_amount(self, token_id: bytes) -> int:
        return sum(t.amount for t in self.tokens if t.token_id == token_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "address": self.address,
            "tokens": [t.to_dict() for t in self.tokens],
            "registers": {k: v.hex() for k, v in sorted(self.registers.items())},
        }


@dataclass(frozen=True)
class LedgerBox:
    """A box created by a confirmed transaction."""
    box_id: str
    value: int
    address: str
    tokens: Tuple[Token, ...] = ()
    registers: Dict[str, bytes] = field(default_factory=dict)
    script: Optional[Script] = None
    creation_height: int = 0
    tx_id: str = ""
    index: int = 0

    @classmethod
    def from_candidate(
        cls,
        candidate: BoxCandidate,
        *,
        tx_id: str,
        index: int,
        height: int,
    ) -> "LedgerBox":
        return cls(
            box_id=box_id_for(tx_id, index),
            value=candidate.value,
            address=candidate.address,
            tokens=candidate.tokens,
            registers=dict(candidate.registers),
            script=candidate.script,
            creation_height=height,
            tx_id=tx_id,
            index=index,
        )

    def as_candidate(self) -> BoxCandidate:
        return BoxCandidate(
            value=self.value,
            address=self.address,
            tokens=self.tokens,
            registers=dict(self.registers),
            script=self.script,
        )

    @property
    def proposition(self) -> bytes:
        return proposition_of(self.address)

    def token_amount(self, token_id: bytes) -> int:
        return sum(t.amount for t in self.tokens if t.token_id == token_id)

    def to_dict(self) -> Dict[str, Any]:
        d = self.as_candidate().to_dict()
        d.update({
            "box_id": self.box_id,
            "creation_height": self.creation_height,
            "tx_id": self.tx_id,
            "index": self.index,
        })
        return d


def box_id_for(tx_id: str, index: int) -> str:
    return blake2b256(bytes.fromhex(tx_id) + struct.pack(">H", index)).hex()


# =============================================================================
# CONTEXT INPUTS
# =============================================================================

@dataclass(frozen=True)
class JudgmentContext:
    """Read-only input carrying the creator's decision on one submission."""
    decision: bool
    submission_id: int

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": "judgment", "decision": self.decision, "submission_id": self.submission_id}


@dataclass(frozen=True)
class WithdrawalContext:
    """Read-only input naming the winner and the height of the judgment."""
    winner_address: str
    judgment_height: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "withdrawal",
            "winner_address": self.winner_address,
            "judgment_height": self.judgment_height,
        }


ContextInput = Union[JudgmentContext, WithdrawalContext]


# =============================================================================
# TRANSACTIONS
# =============================================================================

@dataclass(frozen=True)
class UnsignedTransaction:
    inputs: Tuple[LedgerBox, ...]
    outputs: Tuple[BoxCandidate, ...]
    fee: int
    context_inputs: Tuple[ContextInput, ...] = ()
    # Keys the transaction must be signed with (P2PK inputs plus any
    # creator signature a contract path requires).
    signers: Tuple[bytes, ...] = ()

    def digest(self) -> bytes:
        """Signing digest over everything except the proofs."""
        return blake2b256(canonical_json_bytes(self.to_dict()))

    @property
    def tx_id(self) -> str:
        return self.digest().hex()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inputs": [b.box_id for b in self.inputs],
            "outputs": [o.to_dict() for o in self.outputs],
            "fee": self.fee,
            "context_inputs": [c.to_dict() for c in self.context_inputs],
            "signers": [s.hex() for s in self.signers],
        }


@dataclass(frozen=True)
class SignedTransaction:
    unsigned: UnsignedTransaction
    # (public key, ECDSA signature over unsigned.digest())
    proofs: Tuple[Tuple[bytes, bytes], ...] = ()

    @property
    def tx_id(self) -> str:
        return self.unsigned.tx_id


@dataclass(frozen=True)
class TransitionContext:
    """What a contract sees when one of its boxes is spent."""
    outputs: Tuple[BoxCandidate, ...]
    height: int
    context_inputs: Tuple[ContextInput, ...] = ()
    signers: FrozenSet[bytes] = frozenset()
    fee: int = 0

    @classmethod
    def for_transaction(
        cls,
        tx: UnsignedTransaction,
        height: int,
        signers: Optional[FrozenSet[bytes]] = None,
    ) -> "TransitionContext":
        return cls(
            outputs=tx.outputs,
            height=height,
            context_inputs=tx.context_inputs,
            signers=frozenset(tx.signers) if signers is None else signers,
            fee=tx.fee,
        )

    def output(self, index: int) -> Optional[BoxCandidate]:
        return self.outputs[index] if index < len(self.outputs) else None

    def context_input(self, kind: type) -> Optional[Any]:
        """The first context input of the given type, if any."""
        for c in self.context_inputs:
            if isinstance(c, kind):
                return c
        return None


# =============================================================================
# COLLABORATOR PROTOCOLS
# =============================================================================

class Ledger(Protocol):
    """Read and write access to the ledger."""

    def fetch_record(self, token_id: bytes) -> Optional[LedgerBox]:
        """The unspent contract box holding the given control token."""
        ...

    def current_height(self) -> int:
        ...

    def submit(self, tx: SignedTransaction) -> str:
        """
        Submit a signed transaction and return its id.

        Raises StaleRecord when an input is already spent and LedgerRejected
        when a contract refuses the spend.
        """
        ...

    def await_confirmation(self, tx_id: str, timeout: float) -> Optional[LedgerBox]:
        """First output of the transaction once confirmed, None on timeout."""
        ...


class Wallet(Protocol):
    """Key custody and funding."""

    def change_address(self) -> str:
        ...

    def public_key(self) -> bytes:
        ...

    def funding_inputs(self, min_value: int) -> List[LedgerBox]:
        """Unspent wallet boxes worth at least min_value in total."""
        ...

    def sign(self, tx: UnsignedTransaction) -> SignedTransaction:
        ...


class TxAssembler(Protocol):
    """Generic transaction assembly: inputs, exact outputs, change, fee."""

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
        ...
