"""Core primitives for the Bountiful stack.

- BLAKE2b-256 digests (the ledger's native hash)
- Canonical JSON serialization (sorted keys, no whitespace, no floats)
- Base58 for addresses
- UTF-8 YAML/JSON file loading
"""

from __future__ import annotations

import hashlib
import json
import pathlib
from typing import Any, Iterator, Tuple

import yaml

PACKAGE_ROOT = pathlib.Path(__file__).resolve().parent

DIGEST_SIZE = 32


def blake2b256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=DIGEST_SIZE).digest()


def load_yaml(path: pathlib.Path) -> Any:
    return yaml.safe_load(pathlib.Path(path).read_text(encoding="utf-8"))


def load_json(path: pathlib.Path) -> Any:
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))


def _leaves(obj: Any, where: str = "$") -> Iterator[Tuple[str, Any]]:
    if isinstance(obj, dict):
        for key, value in obj.items():
            yield from _leaves(value, f"{where}.{key}")
    elif isinstance(obj, (list, tuple)):
        for index, value in enumerate(obj):
            yield from _leaves(value, f"{where}[{index}]")
    else:
        yield where, obj


def canonical_json_bytes(obj: Any) -> bytes:
    """Byte-reproducible JSON encoding used for digest commitments.

    Keys are sorted, separators carry no whitespace and the output is UTF-8.
    Floats are refused: every amount is an integer and float rendering is
    not stable across implementations.
    """
    for where, leaf in _leaves(obj):
        if isinstance(leaf, float):
            raise ValueError(f"Float not allowed in canonical JSON at {where}")
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


# =============================================================================
# BASE58
# =============================================================================

B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_B58_INDEX = {ch: i for i, ch in enumerate(B58_ALPHABET)}


def b58encode(data: bytes) -> str:
    zeros = len(data) - len(data.lstrip(b"\x00"))
    number = int.from_bytes(data, "big")
    digits = []
    while number:
        number, digit = divmod(number, 58)
        digits.append(B58_ALPHABET[digit])
    return B58_ALPHABET[0] * zeros + "".join(reversed(digits))


def b58decode(text: str) -> bytes:
    number = 0
    for ch in text:
        try:
            number = number * 58 + _B58_INDEX[ch]
        except KeyError:
            raise ValueError(f"Invalid base58 character {ch!r}") from None
    zeros = len(text) - len(text.lstrip(B58_ALPHABET[0]))
    body = number.to_bytes((number.bit_length() + 7) // 8, "big")
    return b"\x00" * zeros + body


def hex_or_bytes(value: Any) -> bytes:
    """Accept bytes or a hex string (optionally 0x-prefixed) and return bytes."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return bytes.fromhex(value.strip().lower().removeprefix("0x"))
    raise TypeError(f"expected bytes or hex string, got {type(value).__name__}")
