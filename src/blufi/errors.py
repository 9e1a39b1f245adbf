"""
Exception taxonomy for the BluFi protocol engine.

Frame-level errors (MalformedFrame, ChecksumMismatch, UnsupportedFrame) are
recovered inside the session and surfaced as FrameDropped events. Cipher
errors force a session reset. KeyAgreementFailure is fatal.
"""


class BluFiError(Exception):
    """Base class for all BluFi errors."""

    pass


class MalformedFrame(BluFiError, ValueError):
    """Raised when a buffer is too short or its declared length is inconsistent."""

    pass


class ChecksumMismatch(BluFiError):
    """Raised when a frame's CRC16 trailer does not match its contents."""

    def __init__(self, expected: bytes, received: bytes):
        super().__init__(
            f"Checksum mismatch: expected {expected.hex()}, received {received.hex()}"
        )
        self.expected = expected
        self.received = received


class UnsupportedFrame(BluFiError):
    """Raised for a well-formed frame whose (type, subtype) has no handler."""

    def __init__(self, frame_type: int, subtype: int):
        super().__init__(f"Unsupported frame type={frame_type:#x} subtype={subtype:#04x}")
        self.frame_type = frame_type
        self.subtype = subtype


class DecryptionFailure(BluFiError):
    """Raised when an inbound payload cannot be decrypted."""

    pass


class EncryptionFailure(BluFiError):
    """Raised when an outbound payload cannot be encrypted."""

    pass


class KeyAgreementFailure(BluFiError):
    """Raised when key material cannot be generated (no randomness)."""

    pass


class TransportError(BluFiError):
    """Raised by the BLE transport when a device cannot be reached or written."""

    pass


class ProtocolStateError(BluFiError):
    """Raised for a frame that is not valid in the session's current state."""

    pass
