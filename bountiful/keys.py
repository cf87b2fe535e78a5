"""Creator keys, addresses and transaction proofs.

Keys are secp256k1; a public key travels as its 33-byte compressed point (the
ledger's group-element encoding). Proofs over a transaction are ECDSA/SHA-256
signatures of the transaction's signing digest.

Addresses follow the ledger's layout:

    base58( head || content || blake2b256(head || content)[:4] )
    head = network prefix + address type

with type 0x01 (pay-to-public-key, content = 33-byte key) and 0x02
(pay-to-script-hash, content = first 24 bytes of blake2b256(script bytes)).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from bountiful.core import b58decode, b58encode, blake2b256

GROUP_ELEMENT_SIZE = 33
SCRIPT_HASH_SIZE = 24
CHECKSUM_SIZE = 4

P2PK_TYPE = 0x01
P2SH_TYPE = 0x02


class Network(Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"

    @property
    def prefix(self) -> int:
        return {Network.MAINNET: 0x00, Network.TESTNET: 0x10}[self]

    @classmethod
    def from_prefix(cls, prefix: int) -> "Network":
        for n in cls:
            if n.prefix == prefix:
                return n
        raise ValueError(f"unknown network prefix: {prefix:#x}")


@dataclass(frozen=True)
class KeyPair:
    """A secp256k1 signing key and its compressed public point."""
    private_key: ec.EllipticCurvePrivateKey
    public_key: bytes

    @classmethod
    def generate(cls) -> "KeyPair":
        priv = ec.generate_private_key(ec.SECP256K1())
        return cls(private_key=priv, public_key=compress_public_key(priv.public_key()))

    @classmethod
    def from_secret(cls, secret: int) -> "KeyPair":
        priv = ec.derive_private_key(secret, ec.SECP256K1())
        return cls(private_key=priv, public_key=compress_public_key(priv.public_key()))

    def sign(self, message: bytes) -> bytes:
        return self.private_key.sign(message, ec.ECDSA(hashes.SHA256()))

    def address(self, network: Network = Network.MAINNET) -> str:
        return p2pk_address(self.public_key, network)


def compress_public_key(pub: ec.EllipticCurvePublicKey) -> bytes:
    return pub.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint,
    )


def is_group_element(data: bytes) -> bool:
    """True when data is a valid compressed secp256k1 point."""
    if len(data) != GROUP_ELEMENT_SIZE or data[0] not in (0x02, 0x03):
        return False
    try:
        ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), data)
    except ValueError:
        return False
    return True


def verify_signature(public_key: bytes, message: bytes, signature: bytes) -> bool:
    """Verify an ECDSA/SHA-256 signature against a compressed public key."""
    try:
        pub = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), public_key)
        pub.verify(signature, message, ec.ECDSA(hashes.SHA256()))
        return True
    except (InvalidSignature, ValueError):
        return False


def encode_address(network: Network, address_type: int, content: bytes) -> str:
    head = bytes([network.prefix + address_type]) + content
    return b58encode(head + blake2b256(head)[:CHECKSUM_SIZE])


def decode_address(address: str) -> Tuple[Network, int, bytes]:
    """Decode an address into (network, type, content). Raises ValueError."""
    raw = b58decode(address)
    if len(raw) < 1 + CHECKSUM_SIZE:
        raise ValueError("address too short")
    body, checksum = raw[:-CHECKSUM_SIZE], raw[-CHECKSUM_SIZE:]
    if blake2b256(body)[:CHECKSUM_SIZE] != checksum:
        raise ValueError("address checksum mismatch")
    head = body[0]
    return Network.from_prefix(head & 0xF0), head & 0x0F, body[1:]


def p2pk_address(public_key: bytes, network: Network = Network.MAINNET) -> str:
    if len(public_key) != GROUP_ELEMENT_SIZE:
        raise ValueError("public key must be a 33-byte group element")
    return encode_address(network, P2PK_TYPE, public_key)


def script_address(script_bytes: bytes, network: Network = Network.MAINNET) -> str:
    return encode_address(network, P2SH_TYPE, blake2b256(script_bytes)[:SCRIPT_HASH_SIZE])


def proposition_of(address: str) -> bytes:
    """Network-independent spending condition behind an address.

    Two addresses pay the same proposition when this value is equal, whatever
    network prefix they were rendered with. Undecodable addresses map to b"".
    """
    try:
        _, address_type, content = decode_address(address)
    except ValueError:
        return b""
    return bytes([address_type]) + content


def p2pk_proposition(public_key: bytes) -> bytes:
    return bytes([P2PK_TYPE]) + public_key


def public_key_of(address: str) -> bytes:
    """Return the public key behind a P2PK address, or b"" for anything else."""
    prop = proposition_of(address)
    if len(prop) == 1 + GROUP_ELEMENT_SIZE and prop[0] == P2PK_TYPE:
        return prop[1:]
    return b""
