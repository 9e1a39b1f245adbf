"""
CRC16 frame checksum.

CCITT polynomial 0x1021, initial value 0xFFFF, final XOR 0xFFFF
(the "crc-16-genibus" parameter set). The wire format computes it over a
frame with its two leading header bytes excluded, and transmits the result
low byte first.
"""

import struct

import crcmod.predefined

CHECKSUM_SIZE = 2

# Number of leading bytes the device firmware leaves out of the checksum
SKIPPED_LEADING_BYTES = 2

_crc16 = crcmod.predefined.mkCrcFun("crc-16-genibus")


def crc16(data: bytes) -> int:
    """Return the CRC16 register value for ``data`` (skipping its first two bytes)."""
    return _crc16(bytes(data[SKIPPED_LEADING_BYTES:]))


def compute(data: bytes) -> bytes:
    """
    Compute the 2-byte checksum trailer for a frame.

    Args:
        data: Frame header and plaintext payload, starting at header byte 0

    Returns:
        The checksum in wire (little-endian) order
    """
    return struct.pack("<H", crc16(data))


def verify(data: bytes, trailer: bytes) -> bool:
    """Check a received trailer against the checksum of ``data``."""
    return compute(data) == bytes(trailer)
