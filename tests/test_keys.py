"""
Key, signature and address tests.

Run with: pytest tests/test_keys.py -v
"""

import pytest

from bountiful.keys import (
    GROUP_ELEMENT_SIZE,
    P2PK_TYPE,
    P2SH_TYPE,
    KeyPair,
    Network,
    decode_address,
    is_group_element,
    p2pk_address,
    p2pk_proposition,
    proposition_of,
    public_key_of,
    script_address,
    verify_signature,
)


class TestKeys:

    def test_public_key_is_compressed_group_element(self):
        kp = KeyPair.generate()
        assert len(kp.public_key) == GROUP_ELEMENT_SIZE
        assert is_group_element(kp.public_key)

    def test_from_secret_is_deterministic(self):
        assert KeyPair.from_secret(42).public_key == KeyPair.from_secret(42).public_key

    def test_sign_and_verify(self):
        kp = KeyPair.from_secret(7)
        sig = kp.sign(b"digest")
        assert verify_signature(kp.public_key, b"digest", sig)
        assert not verify_signature(kp.public_key, b"other", sig)
        assert not verify_signature(KeyPair.from_secret(8).public_key, b"digest", sig)

    def test_garbage_is_not_a_group_element(self):
        assert not is_group_element(b"\x02" + b"\xff" * 32)
        assert not is_group_element(b"\x05" * 33)
        assert not is_group_element(b"")

    def test_verify_rejects_malformed_key(self):
        assert not verify_signature(b"\x00" * 33, b"m", b"sig")


class TestAddresses:

    def test_p2pk_roundtrip(self):
        kp = KeyPair.from_secret(99)
        addr = p2pk_address(kp.public_key, Network.TESTNET)
        network, address_type, body = decode_address(addr)
        assert network == Network.TESTNET
        assert address_type == P2PK_TYPE
        assert body == kp.public_key
        assert public_key_of(addr) == kp.public_key

    def test_proposition_ignores_network(self):
        kp = KeyPair.from_secret(99)
        main = p2pk_address(kp.public_key, Network.MAINNET)
        test = p2pk_address(kp.public_key, Network.TESTNET)
        assert main != test
        assert proposition_of(main) == proposition_of(test) == p2pk_proposition(kp.public_key)

    def test_script_address_type(self):
        addr = script_address(b"some script")
        _, address_type, body = decode_address(addr)
        assert address_type == P2SH_TYPE
        assert len(body) == 24
        assert public_key_of(addr) == b""

    def test_checksum_detects_corruption(self):
        addr = p2pk_address(KeyPair.from_secret(5).public_key)
        corrupted = addr[:-1] + ("1" if addr[-1] != "1" else "2")
        with pytest.raises(ValueError):
            decode_address(corrupted)
        assert proposition_of(corrupted) == b""

    def test_p2pk_requires_group_element_size(self):
        with pytest.raises(ValueError):
            p2pk_address(b"\x02" * 10)

    def test_network_prefixes(self):
        assert Network.MAINNET.prefix == 0x00
        assert Network.TESTNET.prefix == 0x10
        assert Network.from_prefix(0x10) is Network.TESTNET
        with pytest.raises(ValueError):
            Network.from_prefix(0x20)
