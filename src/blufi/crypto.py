"""
Cryptographic primitives for the BluFi security negotiation.

Provides the Diffie-Hellman key agreement over a fixed 1024-bit group,
MD5 reduction of the shared secret to an AES-128 key, and AES-128-CFB
with IVs derived from the frame sequence number.
"""

import logging
import os
import struct
from typing import Optional

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms

try:
    from cryptography.hazmat.decrepit.ciphers.modes import CFB
except ImportError:  # cryptography < 47
    from cryptography.hazmat.primitives.ciphers.modes import CFB

from .errors import DecryptionFailure, EncryptionFailure, KeyAgreementFailure

logger = logging.getLogger(__name__)

# Constants
KEY_SIZE = 16  # 128 bits
IV_SIZE = 16   # AES block size
PRIVATE_KEY_BITS = 1024

# Negotiation data marker (version/type byte preceding P, G and the public value)
NEGOTIATION_DATA_MARKER = 0x01

DH_P = int(
    "cf5cf5c38419a724957ff5dd323b9c45c3cdd261eb740f69aa94b8bb1a5c9640"
    "9153bd76b24222d03274e4725a5406092e9e82e9135c643cae98132b0d95f7d6"
    "5347c68afc1e677da90e51bbab5f5cf429c291b4ba39c6b2dc5e8c7231e46aa7"
    "728e87664532cdf547be20c9a3fa8342be6e34371a27c06f7dc0edddd2f86373",
    16,
)
DH_G = 2


def generate_random_bytes(size: int) -> bytes:
    """Generate cryptographically secure random bytes."""
    try:
        return os.urandom(size)
    except (NotImplementedError, OSError) as e:
        raise KeyAgreementFailure(f"No secure randomness available: {e}") from e


def int_to_bytes(value: int) -> bytes:
    """Serialize a non-negative integer big-endian with no leading zero bytes."""
    return value.to_bytes((value.bit_length() + 7) // 8, "big")


def bytes_to_int(data: bytes) -> int:
    """Parse a big-endian unsigned integer."""
    return int.from_bytes(data, "big")


def md5(data: bytes) -> bytes:
    """Return the 16-byte MD5 digest of ``data``."""
    digest = hashes.Hash(hashes.MD5(), backend=default_backend())
    digest.update(data)
    return digest.finalize()


def _length_prefixed(data: bytes) -> bytes:
    return struct.pack(">H", len(data)) + data


class KeyAgreement:
    """
    Diffie-Hellman key agreement with the device.

    A fresh private exponent is drawn for every instance; only P, G and the
    public value ever leave this object.
    """

    def __init__(
        self,
        private_exponent: Optional[int] = None,
        prime: int = DH_P,
        generator: int = DH_G,
    ):
        """
        Generate a key pair.

        Args:
            private_exponent: Fixed exponent (for reproducible tests); random if omitted
            prime: Group modulus
            generator: Group generator

        Raises:
            KeyAgreementFailure: If no secure randomness is available
        """
        self.prime = prime
        self.generator = generator
        self._private, self.public_value = self.generate(private_exponent)

    def generate(self, private_exponent: Optional[int] = None) -> tuple[int, int]:
        """
        Produce ``(private_exponent, public_value)``.

        The random exponent has exactly 1024 bits (top bit forced).
        """
        if private_exponent is None:
            raw = generate_random_bytes(PRIVATE_KEY_BITS // 8)
            private_exponent = bytes_to_int(raw) | (1 << (PRIVATE_KEY_BITS - 1))
        public_value = pow(self.generator, private_exponent, self.prime)
        return private_exponent, public_value

    @property
    def public_bytes(self) -> bytes:
        return int_to_bytes(self.public_value)

    def negotiation_payload(self) -> bytes:
        """
        Serialize the negotiation data sent to the device.

        Format: [0x01][len(P) u16be][P][len(G) u16be][G][len(pub) u16be][pub]

        The result is larger than one frame and must be chunked by the caller.
        """
        return (
            bytes([NEGOTIATION_DATA_MARKER])
            + _length_prefixed(int_to_bytes(self.prime))
            + _length_prefixed(int_to_bytes(self.generator))
            + _length_prefixed(self.public_bytes)
        )

    def shared_secret(self, peer_public: bytes) -> bytes:
        """Compute ``peer^s mod P`` serialized big-endian."""
        peer = bytes_to_int(peer_public)
        return int_to_bytes(pow(peer, self._private, self.prime))

    def derive_key(self, peer_public: bytes) -> bytes:
        """
        Derive the 16-byte session key from the device's public value.

        Args:
            peer_public: Big-endian public value received from the device

        Returns:
            MD5 digest of the shared secret
        """
        return md5(self.shared_secret(peer_public))

    def __repr__(self) -> str:
        return f"KeyAgreement(public={self.public_bytes.hex()[:16]}...)"


def derive_iv(sequence: int) -> bytes:
    """Build the 16-byte IV for a frame: sequence byte followed by zeros."""
    return bytes([sequence & 0xFF]) + bytes(IV_SIZE - 1)


class StreamCipher:
    """
    AES-128-CFB (128-bit feedback, no padding) keyed by the session key.

    Output length always equals input length.
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise ValueError(f"Key must be {KEY_SIZE} bytes")
        self._key = key

    def _cipher(self, sequence: int) -> Cipher:
        return Cipher(
            algorithms.AES(self._key),
            CFB(derive_iv(sequence)),
            backend=default_backend(),
        )

    def encrypt(self, plaintext: bytes, sequence: int) -> bytes:
        """
        Encrypt a frame payload.

        Raises:
            EncryptionFailure: If the underlying primitive fails
        """
        try:
            encryptor = self._cipher(sequence).encryptor()
            return encryptor.update(plaintext) + encryptor.finalize()
        except Exception as e:
            raise EncryptionFailure(f"AES encryption failed: {e}") from e

    def decrypt(self, ciphertext: bytes, sequence: int) -> bytes:
        """
        Decrypt a frame payload.

        Raises:
            DecryptionFailure: If the underlying primitive fails
        """
        try:
            decryptor = self._cipher(sequence).decryptor()
            return decryptor.update(ciphertext) + decryptor.finalize()
        except Exception as e:
            raise DecryptionFailure(f"AES decryption failed: {e}") from e
