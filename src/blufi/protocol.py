"""
BluFi frame format and payload definitions.

Frame format:
    [Type/Subtype (1B)][FrameControl (1B)][Sequence (1B)][Length (1B)]
    [Payload (Length B)][CRC16 (2B, only if FrameControl.CHECKSUM)]

Byte 0 packs ``(subtype << 2) | type``. Length counts the plaintext payload;
for fragment frames it includes the 2-byte total-length prefix.
"""

import struct
from dataclasses import dataclass
from enum import IntEnum, IntFlag
from typing import Optional, Union

from . import checksum
from .crypto import NEGOTIATION_DATA_MARKER, bytes_to_int
from .errors import MalformedFrame

HEADER_SIZE = 4
MAX_PAYLOAD_SIZE = 0xFF

# Payload chunk size used when splitting large messages into fragments
FRAGMENT_CHUNK_SIZE = 80
FRAGMENT_PREFIX_SIZE = 2

# Negotiation payload marker announcing the total negotiation data length
NEGOTIATION_LENGTH_MARKER = 0x00


class FrameType(IntEnum):
    """Frame types (low 2 bits of header byte 0)."""
    CONTROL = 0x00
    DATA = 0x01


class ControlSubtype(IntEnum):
    """Control frame subtypes."""
    ACK = 0x00
    SECURITY_MODE = 0x01
    OPMODE = 0x02
    CONNECT_AP = 0x03
    DISCONNECT_AP = 0x04
    GET_STATUS = 0x05
    DEAUTHENTICATE = 0x06
    GET_VERSION = 0x07
    DISCONNECT_BLE = 0x08
    GET_WIFI_LIST = 0x09


class DataSubtype(IntEnum):
    """Data frame subtypes."""
    NEGOTIATE = 0x00
    STA_BSSID = 0x01
    STA_SSID = 0x02
    STA_PASSWORD = 0x03
    CONNECTION_STATUS = 0x0F
    VERSION = 0x10
    WIFI_LIST = 0x11
    ERROR = 0x12
    CUSTOM_DATA = 0x13


class FrameControl(IntFlag):
    """Frame control flag bits (header byte 1)."""
    NONE = 0x00
    ENCRYPTED = 0x01
    CHECKSUM = 0x02
    DIRECTION = 0x04  # set on frames sent by the device
    ACK_REQUIRED = 0x08
    FRAGMENT = 0x10


class SecurityMode(IntFlag):
    """Security mode payload bits for data frames."""
    NONE = 0x00
    CHECKSUM = 0x01
    ENCRYPTION = 0x02


class OpMode(IntEnum):
    """Wi-Fi operating modes."""
    NULL = 0x00
    STA = 0x01
    SOFTAP = 0x02
    SOFTAP_STA = 0x03


class ErrorCode(IntEnum):
    """Error codes reported by the device in ERROR data frames."""
    SEQUENCE_ERROR = 0x00
    CHECKSUM_ERROR = 0x01
    DECRYPT_ERROR = 0x02
    ENCRYPT_ERROR = 0x03
    INIT_SECURITY_ERROR = 0x04
    DH_MALLOC_ERROR = 0x05
    DH_PARAM_ERROR = 0x06
    READ_PARAM_ERROR = 0x07
    MAKE_PUBLIC_ERROR = 0x08
    DATA_FORMAT_ERROR = 0x09
    CALC_MD5_ERROR = 0x0A
    WIFI_SCAN_FAIL = 0x0B
    MSG_STATE_ERROR = 0x0C

    def to_message(self) -> str:
        """Convert error code to user-friendly message."""
        messages = {
            ErrorCode.SEQUENCE_ERROR: "Sequence number mismatch",
            ErrorCode.CHECKSUM_ERROR: "Checksum error",
            ErrorCode.DECRYPT_ERROR: "Device failed to decrypt",
            ErrorCode.ENCRYPT_ERROR: "Device failed to encrypt",
            ErrorCode.INIT_SECURITY_ERROR: "Security initialization failed",
            ErrorCode.DH_MALLOC_ERROR: "Device out of memory during negotiation",
            ErrorCode.DH_PARAM_ERROR: "Invalid negotiation parameters",
            ErrorCode.READ_PARAM_ERROR: "Device failed to read parameters",
            ErrorCode.MAKE_PUBLIC_ERROR: "Device failed to make public key",
            ErrorCode.DATA_FORMAT_ERROR: "Data format error",
            ErrorCode.CALC_MD5_ERROR: "Device failed to compute key hash",
            ErrorCode.WIFI_SCAN_FAIL: "Wi-Fi scan failed",
            ErrorCode.MSG_STATE_ERROR: "Message out of state",
        }
        return messages.get(self, f"Unknown error: {self}")


def describe_error(code: int) -> str:
    """Describe a raw device error code, known or not."""
    try:
        return ErrorCode(code).to_message()
    except ValueError:
        return f"Unknown error code: {code:#04x}"


@dataclass
class Frame:
    """
    A single BluFi frame.

    ``payload`` is exactly what travels on the wire: ciphertext when
    ENCRYPTED is set. ``checksum`` holds the received trailer, if any.
    """
    frame_type: int
    subtype: int
    flags: FrameControl
    sequence: int
    payload: bytes = b""
    checksum: Optional[bytes] = None

    @property
    def has_encryption(self) -> bool:
        return bool(self.flags & FrameControl.ENCRYPTED)

    @property
    def has_checksum(self) -> bool:
        return bool(self.flags & FrameControl.CHECKSUM)

    @property
    def requires_ack(self) -> bool:
        return bool(self.flags & FrameControl.ACK_REQUIRED)

    @property
    def is_fragment(self) -> bool:
        return bool(self.flags & FrameControl.FRAGMENT)

    @property
    def header(self) -> bytes:
        """The 4 header bytes."""
        return header_bytes(self.frame_type, self.subtype, self.flags, self.sequence, len(self.payload))

    def build(self) -> bytes:
        """Build frame bytes, using the stored checksum trailer if present."""
        data = self.header + self.payload
        if self.has_checksum:
            data += self.checksum if self.checksum is not None else checksum.compute(data)
        return data

    @classmethod
    def parse(cls, data: bytes) -> "Frame":
        """Parse a frame from raw bytes. See ``decode``."""
        return decode(data)


def header_bytes(frame_type: int, subtype: int, flags: int, sequence: int, length: int) -> bytes:
    """Pack the 4-byte frame header."""
    if not 0 <= length <= MAX_PAYLOAD_SIZE:
        raise ValueError(f"Payload too long: {length} bytes (max {MAX_PAYLOAD_SIZE})")
    return bytes([
        ((subtype & 0x3F) << 2) | (frame_type & 0x03),
        flags & 0xFF,
        sequence & 0xFF,
        length,
    ])


def encode(
    frame_type: int,
    subtype: int,
    flags: int,
    sequence: int,
    payload: bytes = b"",
    with_checksum: bool = False,
    plaintext: Optional[bytes] = None,
) -> bytes:
    """
    Encode a frame.

    The codec performs no cryptography: when ENCRYPTED is set, ``payload``
    must already be ciphertext and ``plaintext`` should carry the original
    bytes so the checksum is computed before encryption.

    Args:
        frame_type: FrameType value
        subtype: 6-bit subtype
        flags: FrameControl bits (CHECKSUM is added when with_checksum is set)
        sequence: Sequence number
        payload: Wire payload
        with_checksum: Append a CRC16 trailer
        plaintext: Unencrypted payload used for the checksum (defaults to payload)

    Returns:
        Frame bytes
    """
    if with_checksum:
        flags |= FrameControl.CHECKSUM
    header = header_bytes(frame_type, subtype, flags, sequence, len(payload))
    data = header + payload
    if flags & FrameControl.CHECKSUM:
        data += checksum.compute(header + (payload if plaintext is None else plaintext))
    return data


def decode(data: bytes) -> Frame:
    """
    Decode a frame's header, payload and checksum trailer.

    Args:
        data: Raw frame bytes from the transport

    Returns:
        Frame with the (possibly encrypted) payload

    Raises:
        MalformedFrame: If the buffer is too short or its length is inconsistent
    """
    if len(data) <= HEADER_SIZE:
        raise MalformedFrame(f"Frame too short: {len(data)} bytes")

    flags = FrameControl(data[1])
    length = data[3]
    trailer = checksum.CHECKSUM_SIZE if flags & FrameControl.CHECKSUM else 0
    expected = HEADER_SIZE + length + trailer
    if len(data) != expected:
        raise MalformedFrame(
            f"Frame length mismatch: {len(data)} bytes, expected {expected} "
            f"(declared payload {length})"
        )

    payload_end = HEADER_SIZE + length
    return Frame(
        frame_type=data[0] & 0x03,
        subtype=data[0] >> 2,
        flags=flags,
        sequence=data[2],
        payload=bytes(data[HEADER_SIZE:payload_end]),
        checksum=bytes(data[payload_end:]) if trailer else None,
    )


# =============================================================================
# Fragmentation
# =============================================================================


def split_fragments(payload: bytes, chunk_size: int = FRAGMENT_CHUNK_SIZE) -> list[tuple[bytes, bool]]:
    """
    Split a message into frame payloads.

    Every chunk but the last is prefixed with the total message length
    (little-endian) and marked as a fragment.

    Returns:
        List of (frame_payload, is_fragment) tuples
    """
    if len(payload) <= chunk_size:
        return [(payload, False)]

    total = struct.pack("<H", len(payload))
    chunks = [payload[i:i + chunk_size] for i in range(0, len(payload), chunk_size)]
    return [(total + chunk, True) for chunk in chunks[:-1]] + [(chunks[-1], False)]


def strip_fragment_prefix(payload: bytes) -> bytes:
    """Remove the total-length prefix from a fragment frame payload."""
    if len(payload) < FRAGMENT_PREFIX_SIZE:
        raise MalformedFrame(f"Fragment payload too short: {len(payload)} bytes")
    return payload[FRAGMENT_PREFIX_SIZE:]


# =============================================================================
# Payloads
# =============================================================================


def negotiation_length_payload(total: int) -> bytes:
    """Build the negotiation length announcement: [0x00][total u16be]."""
    return bytes([NEGOTIATION_LENGTH_MARKER]) + struct.pack(">H", total)


def security_mode_payload(mode: SecurityMode) -> bytes:
    """Build the security mode payload (data frame bits in the low nibble)."""
    return bytes([int(mode) & 0x0F])


@dataclass
class NegotiationParams:
    """Decoded negotiation data: [version][len P][P][len G][G][len pub][pub]."""
    version: int
    prime: int
    generator: int
    public_value: int

    @classmethod
    def parse(cls, data: bytes) -> "NegotiationParams":
        if len(data) < 1:
            raise MalformedFrame("Empty negotiation payload")
        if data[0] != NEGOTIATION_DATA_MARKER:
            raise MalformedFrame(f"Unexpected negotiation marker: {data[0]:#04x}")

        values = []
        offset = 1
        for name in ("P", "G", "public value"):
            if offset + 2 > len(data):
                raise MalformedFrame(f"Negotiation payload truncated before {name} length")
            (size,) = struct.unpack_from(">H", data, offset)
            offset += 2
            if offset + size > len(data):
                raise MalformedFrame(f"Negotiation payload truncated in {name}")
            values.append(bytes_to_int(data[offset:offset + size]))
            offset += size

        return cls(data[0], *values)


def parse_negotiation_payload(data: bytes) -> NegotiationParams:
    """Decode the payload produced by ``KeyAgreement.negotiation_payload()``."""
    return NegotiationParams.parse(data)


@dataclass
class WifiEntry:
    """One access point from a Wi-Fi scan list."""
    ssid: str
    rssi: int


def parse_wifi_list(data: bytes) -> tuple[list[WifiEntry], bool]:
    """
    Parse a Wi-Fi scan list payload.

    Format: repeated [Length (1B)][RSSI (1B, signed)][SSID (Length - 1 B)]

    Returns:
        Tuple of (entries, truncated). ``truncated`` is True when an entry's
        declared length overran the buffer and parsing stopped there.
    """
    entries = []
    idx = 0
    while idx < len(data):
        length = data[idx]
        end = idx + length + 1
        if length < 1 or end > len(data):
            return entries, True
        rssi = struct.unpack_from("b", data, idx + 1)[0]
        try:
            ssid = data[idx + 2:end].decode("utf-8")
        except UnicodeDecodeError:
            ssid = None
        if ssid is not None:
            entries.append(WifiEntry(ssid=ssid, rssi=rssi))
        idx = end
    return entries, False


@dataclass
class DeviceStatus:
    """
    Wi-Fi connection status report (CONNECTION_STATUS data frame).

    Format: [OpMode (1B)][STA state (1B)][SoftAP connections (1B)]
            then optional [Subtype (1B)][Length (1B)][Value] entries
    """
    opmode: int
    sta_state: int
    softap_connections: int
    bssid: Optional[str] = None
    ssid: Optional[str] = None

    @property
    def sta_connected(self) -> bool:
        return self.sta_state == 0

    @classmethod
    def parse(cls, data: bytes) -> "DeviceStatus":
        if len(data) < 3:
            raise MalformedFrame(f"Status report too short: {len(data)} bytes")

        status = cls(opmode=data[0], sta_state=data[1], softap_connections=data[2])
        idx = 3
        while idx + 2 <= len(data):
            subtype, length = data[idx], data[idx + 1]
            value = data[idx + 2:idx + 2 + length]
            if len(value) != length:
                break
            if subtype == DataSubtype.STA_BSSID and length == 6:
                status.bssid = ":".join(f"{b:02x}" for b in value)
            elif subtype == DataSubtype.STA_SSID:
                status.ssid = value.decode("utf-8", errors="replace")
            idx += 2 + length
        return status


@dataclass
class VersionInfo:
    """Protocol version reported by the device."""
    major: int
    minor: int

    @classmethod
    def parse(cls, data: bytes) -> "VersionInfo":
        if len(data) < 2:
            raise MalformedFrame(f"Version report too short: {len(data)} bytes")
        return cls(major=data[0], minor=data[1])


def as_error_code(code: int) -> Union[ErrorCode, int]:
    """Map a raw byte to ErrorCode, keeping unknown codes as ints."""
    try:
        return ErrorCode(code)
    except ValueError:
        return code
