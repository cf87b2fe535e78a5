"""Contract versions and script identity.

A bounty box is guarded by a script compiled from a per-version template and
a handful of constants. The core never handles compiled bytecode: a script
is represented by ``ScriptIdentity``, whose structural equality is what the
validator checks when it requires a successor to keep its predecessor's
script. Only the boundary that talks to a real ledger needs the bytes, and
``to_bytes`` gives it a deterministic encoding to compile or hash.

Several versions are live at once. Records found on the ledger carry their
own version and are validated under that version's rules, never under the
latest one by assumption.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional

from bountiful.core import blake2b256
from bountiful.fees import FEE_DENOMINATOR, MIN_BOX_VALUE, MINER_FEE
from bountiful.keys import Network, script_address

DISPUTE_PERIOD = 720  # ~ 5 days of blocks


class ContractVersion(Enum):
    V1_0 = "v1_0"
    V1_1 = "v1_1"

    @classmethod
    def parse(cls, value: str) -> "ContractVersion":
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"unknown contract version: {value!r}") from None

    @property
    def template_tag(self) -> bytes:
        return f"bountiful/bounty/{self.value}".encode("ascii")

    def template_hash(self) -> str:
        """Hash identifying every box of this version, whatever its constants."""
        return blake2b256(self.template_tag).hex()


LATEST_VERSION = ContractVersion.V1_1


@dataclass(frozen=True)
class VersionRules:
    """Script constants that differ (or could differ) between versions."""
    version: ContractVersion
    fee_denominator: int = FEE_DENOMINATOR
    miner_fee: int = MINER_FEE
    dispute_period: int = DISPUTE_PERIOD
    min_box_value: int = MIN_BOX_VALUE
    # Refund pays the whole box value instead of the nominal reward.
    refund_full_value: bool = False
    # UpdateMetadata must strictly increase the payload's version counter.
    metadata_version_counter: bool = True

    def with_overrides(self, **changes) -> "VersionRules":
        return replace(self, **changes)


VERSION_RULES: Dict[ContractVersion, VersionRules] = {
    ContractVersion.V1_0: VersionRules(ContractVersion.V1_0, refund_full_value=False),
    ContractVersion.V1_1: VersionRules(ContractVersion.V1_1, refund_full_value=True),
}


def rules_for(version: ContractVersion) -> VersionRules:
    return VERSION_RULES[version]


@dataclass(frozen=True)
class ScriptIdentity:
    """Everything a bounty script is compiled from."""
    creator_pub_key: bytes
    dev_fee_address: str
    dev_fee_rate: int
    token_id: bytes
    version: ContractVersion

    def to_bytes(self) -> bytes:
        dev = self.dev_fee_address.encode("utf-8")
        return b"".join([
            self.version.template_tag,
            b"\x00",
            struct.pack(">H", len(self.creator_pub_key)),
            self.creator_pub_key,
            struct.pack(">H", len(dev)),
            dev,
            struct.pack(">q", self.dev_fee_rate),
            struct.pack(">H", len(self.token_id)),
            self.token_id,
        ])

    def script_hash(self) -> bytes:
        return blake2b256(self.to_bytes())

    def address(self, network: Network = Network.MAINNET) -> str:
        return script_address(self.to_bytes(), network)

    def to_dict(self) -> Dict[str, object]:
        return {
            "creator_pub_key": self.creator_pub_key.hex(),
            "dev_fee_address": self.dev_fee_address,
            "dev_fee_rate": self.dev_fee_rate,
            "token_id": self.token_id.hex(),
            "version": self.version.value,
            "script_hash": self.script_hash().hex(),
        }


@dataclass(frozen=True)
class MintGuard:
    """Script holding a freshly minted control token until initialization.

    It only lets the token move, in full, into a box whose script hashes to
    ``bounty_script_hash``.
    """
    bounty_script_hash: bytes

    def to_bytes(self) -> bytes:
        return b"bountiful/mint-guard/v1\x00" + self.bounty_script_hash

    def script_hash(self) -> bytes:
        return blake2b256(self.to_bytes())

    def address(self, network: Network = Network.MAINNET) -> str:
        return script_address(self.to_bytes(), network)


def version_from_template_hash(template_hash: str) -> Optional[ContractVersion]:
    for v in ContractVersion:
        if v.template_hash() == template_hash:
            return v
    return None
