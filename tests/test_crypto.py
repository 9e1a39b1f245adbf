"""
Unit tests for the key agreement and the AES-128-CFB stream cipher.
"""

import warnings

import pytest
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms

from blufi import crypto
from blufi.crypto import CFB, DH_G, DH_P, KeyAgreement, StreamCipher, derive_iv
from blufi.errors import DecryptionFailure, KeyAgreementFailure
from blufi.protocol import parse_negotiation_payload

KEY = bytes.fromhex("000102030405060708090a0b0c0d0e0f")


class TestKeyAgreement:
    """Tests for KeyAgreement"""

    def test_public_value(self, key_agreement):
        """Test the public value is G^s mod P"""
        assert key_agreement.public_value == pow(DH_G, key_agreement._private, DH_P)

    def test_random_exponent_width(self):
        """Test generated private exponents are exactly 1024 bits"""
        assert KeyAgreement()._private.bit_length() == 1024

    def test_fresh_exponent_per_instance(self):
        """Test two instances never share a key pair"""
        assert KeyAgreement().public_value != KeyAgreement().public_value

    def test_shared_key_symmetry(self):
        """Test both sides derive the same session key"""
        a = KeyAgreement()
        b = KeyAgreement()
        key = a.derive_key(b.public_bytes)
        assert key == b.derive_key(a.public_bytes)
        assert len(key) == crypto.KEY_SIZE

    def test_derive_key_is_md5_of_shared_secret(self):
        """Test the key is the MD5 of the big-endian secret without leading zeros"""
        ka = KeyAgreement(private_exponent=5, prime=23, generator=5)
        # 0^5 mod 23 == 0, which serializes to no bytes at all
        assert ka.derive_key(b"\x00") == bytes.fromhex("d41d8cd98f00b204e9800998ecf8427e")

    def test_derive_key_deterministic(self, key_agreement):
        """Test the same exponent and peer value always give the same key"""
        peer = KeyAgreement().public_bytes
        twin = KeyAgreement(private_exponent=key_agreement._private)
        assert key_agreement.derive_key(peer) == twin.derive_key(peer)

    def test_negotiation_payload_layout(self, key_agreement):
        """Test the payload carries P, G and the public value in order"""
        payload = key_agreement.negotiation_payload()
        assert payload[0] == crypto.NEGOTIATION_DATA_MARKER
        assert payload[1:3] == b"\x00\x80"
        assert payload[3:131] == DH_P.to_bytes(128, "big")
        assert payload[131:134] == b"\x00\x01\x02"

        params = parse_negotiation_payload(payload)
        assert params.prime == DH_P
        assert params.generator == DH_G
        assert params.public_value == key_agreement.public_value

    def test_private_exponent_not_in_payload(self, key_agreement):
        """Test the private exponent is never serialized"""
        private = crypto.int_to_bytes(key_agreement._private)
        assert private not in key_agreement.negotiation_payload()

    def test_no_randomness_is_fatal(self, monkeypatch):
        """Test a randomness failure raises KeyAgreementFailure"""
        def no_entropy(size):
            raise NotImplementedError("no entropy source")

        monkeypatch.setattr(crypto.os, "urandom", no_entropy)
        with pytest.raises(KeyAgreementFailure):
            KeyAgreement()


class TestIntSerialization:
    """Tests for the big-endian integer helpers"""

    @pytest.mark.parametrize(
        "value, expected",
        [(0, b""), (1, b"\x01"), (0xABCD, b"\xab\xcd"), (0x010000, b"\x01\x00\x00")],
    )
    def test_int_to_bytes(self, value, expected):
        assert crypto.int_to_bytes(value) == expected

    def test_bytes_to_int(self):
        assert crypto.bytes_to_int(b"\x00\x12\x34") == 0x1234


class TestStreamCipher:
    """Tests for StreamCipher"""

    def test_iv_derivation(self):
        """Test the IV is the sequence byte followed by 15 zero bytes"""
        assert derive_iv(0x12) == b"\x12" + bytes(15)
        assert derive_iv(0) == bytes(16)
        assert derive_iv(0x1FF) == b"\xff" + bytes(15)

    @pytest.mark.parametrize("length", [0, 1, 15, 16, 17, 31, 100, 255])
    def test_round_trip(self, length):
        """Test decrypt(encrypt(p)) == p and output length equals input length"""
        cipher = StreamCipher(KEY)
        plaintext = bytes((i * 7) & 0xFF for i in range(length))
        ciphertext = cipher.encrypt(plaintext, 42)
        assert len(ciphertext) == length
        assert cipher.decrypt(ciphertext, 42) == plaintext

    def test_matches_aes_cfb128(self):
        """Test the output matches AES-128-CFB with the derived IV"""
        plaintext = b"HomeNetwork-5G"
        reference = Cipher(algorithms.AES(KEY), CFB(derive_iv(3))).encryptor()
        assert StreamCipher(KEY).encrypt(plaintext, 3) == reference.update(plaintext) + reference.finalize()

    def test_no_deprecation_warning(self):
        """Test the cipher does not trigger cryptography deprecation warnings"""
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            cipher = StreamCipher(KEY)
            assert cipher.decrypt(cipher.encrypt(b"password", 5), 5) == b"password"

    def test_sequence_changes_keystream(self):
        """Test different sequence numbers produce different ciphertext"""
        cipher = StreamCipher(KEY)
        assert cipher.encrypt(b"password", 1) != cipher.encrypt(b"password", 2)

    def test_sequence_wraparound_reuses_keystream(self):
        """Test sequence 256 reuses the IV of sequence 0, as the wire format requires"""
        cipher = StreamCipher(KEY)
        assert cipher.encrypt(b"password", 0) == cipher.encrypt(b"password", 256)

    def test_wrong_sequence_does_not_decrypt(self):
        cipher = StreamCipher(KEY)
        assert cipher.decrypt(cipher.encrypt(b"password", 1), 2) != b"password"

    def test_invalid_key_size(self):
        with pytest.raises(ValueError, match="Key must be 16 bytes"):
            StreamCipher(b"short")

    def test_primitive_failure_raises_decryption_failure(self, monkeypatch):
        """Test errors from the AES primitive surface as DecryptionFailure"""
        cipher = StreamCipher(KEY)

        def broken(sequence):
            raise RuntimeError("backend unavailable")

        monkeypatch.setattr(cipher, "_cipher", broken)
        with pytest.raises(DecryptionFailure, match="backend unavailable"):
            cipher.decrypt(b"abc", 0)
