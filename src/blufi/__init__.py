"""
BluFi Wi-Fi provisioning over Bluetooth Low Energy.

This package implements the controller (central) side of the BluFi
protocol: Diffie-Hellman key negotiation, AES-128-CFB frame encryption,
CRC16 checksums, frame fragmentation, and a bleak-based BLE transport.
"""

__version__ = "0.1.0"

from .checksum import compute as compute_checksum
from .crypto import (
    KeyAgreement,
    StreamCipher,
    derive_iv,
    DH_P,
    DH_G,
    KEY_SIZE,
    IV_SIZE,
)
from .errors import (
    BluFiError,
    MalformedFrame,
    ChecksumMismatch,
    UnsupportedFrame,
    ProtocolStateError,
    DecryptionFailure,
    EncryptionFailure,
    KeyAgreementFailure,
    TransportError,
)
from .protocol import (
    Frame,
    FrameType,
    FrameControl,
    ControlSubtype,
    DataSubtype,
    SecurityMode,
    OpMode,
    ErrorCode,
    WifiEntry,
    DeviceStatus,
    VersionInfo,
    NegotiationParams,
    encode,
    decode,
    split_fragments,
    parse_negotiation_payload,
    parse_wifi_list,
    FRAGMENT_CHUNK_SIZE,
)
from .events import (
    Event,
    NegotiationComplete,
    WifiList,
    DeviceError,
    DeviceInfo,
    VersionReport,
    CustomData,
    Ack,
    FrameDropped,
    SessionReset,
)
from .state import SessionState, ProtocolSession
from .client import (
    BluFiClient,
    ClientConfig,
    Result,
    BLUFI_SERVICE_UUID,
    BLUFI_WRITE_CHAR_UUID,
    BLUFI_NOTIFY_CHAR_UUID,
)

__all__ = [
    # Version
    "__version__",
    # Checksum
    "compute_checksum",
    # Crypto
    "KeyAgreement",
    "StreamCipher",
    "derive_iv",
    "DH_P",
    "DH_G",
    "KEY_SIZE",
    "IV_SIZE",
    # Errors
    "BluFiError",
    "MalformedFrame",
    "ChecksumMismatch",
    "UnsupportedFrame",
    "ProtocolStateError",
    "DecryptionFailure",
    "EncryptionFailure",
    "KeyAgreementFailure",
    "TransportError",
    # Protocol
    "Frame",
    "FrameType",
    "FrameControl",
    "ControlSubtype",
    "DataSubtype",
    "SecurityMode",
    "OpMode",
    "ErrorCode",
    "WifiEntry",
    "DeviceStatus",
    "VersionInfo",
    "NegotiationParams",
    "encode",
    "decode",
    "split_fragments",
    "parse_negotiation_payload",
    "parse_wifi_list",
    "FRAGMENT_CHUNK_SIZE",
    # Events
    "Event",
    "NegotiationComplete",
    "WifiList",
    "DeviceError",
    "DeviceInfo",
    "VersionReport",
    "CustomData",
    "Ack",
    "FrameDropped",
    "SessionReset",
    # Session
    "SessionState",
    "ProtocolSession",
    # Client
    "BluFiClient",
    "ClientConfig",
    "Result",
    "BLUFI_SERVICE_UUID",
    "BLUFI_WRITE_CHAR_UUID",
    "BLUFI_NOTIFY_CHAR_UUID",
]
