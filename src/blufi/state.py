"""
Session state machine for the BluFi controller side.

States:
    IDLE -> NEGOTIATING -> SECURED
    any state -> IDLE on reset (disconnect, cipher failure)

The session never performs I/O: inbound notifications are passed to
``receive()``, which returns events, and outbound frames are queued until the
transport drains them with ``take_outgoing()``.
"""

import logging
from collections import deque
from enum import Enum, auto
from typing import Optional

from . import checksum
from . import protocol
from .crypto import KeyAgreement, StreamCipher
from .errors import (
    BluFiError,
    ChecksumMismatch,
    DecryptionFailure,
    EncryptionFailure,
    MalformedFrame,
    ProtocolStateError,
    UnsupportedFrame,
)
from .events import (
    Ack,
    CustomData,
    DeviceError,
    DeviceInfo,
    Event,
    FrameDropped,
    NegotiationComplete,
    SessionReset,
    VersionReport,
    WifiList,
)
from .protocol import (
    ControlSubtype,
    DataSubtype,
    DeviceStatus,
    Frame,
    FrameControl,
    FrameType,
    OpMode,
    SecurityMode,
    VersionInfo,
)

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Session state machine states."""
    IDLE = auto()
    NEGOTIATING = auto()
    SECURED = auto()


class ProtocolSession:
    """
    Drives the BluFi protocol for one device connection.

    Owns the key agreement, the stream cipher, the outbound sequence
    counter and the inbound reassembly buffer. None of these are shared
    between sessions; create one session per connection.
    """

    def __init__(self, chunk_size: int = protocol.FRAGMENT_CHUNK_SIZE):
        """
        Initialize an IDLE session.

        Args:
            chunk_size: Maximum message bytes per fragment frame
        """
        self.chunk_size = chunk_size
        self.state = SessionState.IDLE
        self._key_agreement: Optional[KeyAgreement] = None
        self._cipher: Optional[StreamCipher] = None
        self._sequence = 0
        self._reassembly = bytearray()
        self._outbox: deque[bytes] = deque()

    @property
    def sequence(self) -> int:
        """Sequence number the next outbound frame will use."""
        return self._sequence

    @property
    def is_secured(self) -> bool:
        return self.state == SessionState.SECURED

    def take_outgoing(self) -> list[bytes]:
        """Remove and return all queued outbound frames, oldest first."""
        frames = list(self._outbox)
        self._outbox.clear()
        return frames

    def reset(self, reason: str = "disconnected") -> None:
        """Discard all negotiation and session state and return to IDLE."""
        self._key_agreement = None
        self._cipher = None
        self._sequence = 0
        self._reassembly.clear()
        self._outbox.clear()
        self.state = SessionState.IDLE
        logger.info(f"Session reset ({reason}), state: IDLE")

    # =========================================================================
    # Outbound
    # =========================================================================

    def _next_sequence(self) -> int:
        seq = self._sequence
        self._sequence = (self._sequence + 1) & 0xFF
        return seq

    def _send(
        self,
        frame_type: FrameType,
        subtype: int,
        payload: bytes = b"",
        with_checksum: bool = True,
        encrypt: bool = False,
        fragment: bool = False,
    ) -> int:
        """
        Build one frame and queue it.

        The checksum is computed over the plaintext; only the payload is
        encrypted.

        Returns:
            The sequence number used
        """
        if len(payload) > protocol.MAX_PAYLOAD_SIZE:
            raise ValueError(f"Payload too long: {len(payload)} bytes (max {protocol.MAX_PAYLOAD_SIZE})")

        seq = self._next_sequence()
        flags = FrameControl.NONE
        if fragment:
            flags |= FrameControl.FRAGMENT

        wire_payload = payload
        if encrypt and self._cipher is not None:
            flags |= FrameControl.ENCRYPTED
            try:
                wire_payload = self._cipher.encrypt(payload, seq)
            except EncryptionFailure as e:
                logger.error(f"Encryption failed for seq {seq}: {e}")
                self.reset("encryption failure")
                raise

        data = protocol.encode(
            frame_type, subtype, flags, seq, wire_payload,
            with_checksum=with_checksum, plaintext=payload,
        )
        self._outbox.append(data)
        logger.debug(f"Queued frame type={frame_type} subtype={subtype:#04x} seq={seq} ({len(data)} bytes): {data.hex()}")
        return seq

    def _send_message(
        self,
        frame_type: FrameType,
        subtype: int,
        payload: bytes,
        encrypt: bool = False,
    ) -> list[int]:
        """Queue a message, splitting it into fragment frames if needed."""
        return [
            self._send(frame_type, subtype, chunk, encrypt=encrypt, fragment=is_fragment)
            for chunk, is_fragment in protocol.split_fragments(payload, self.chunk_size)
        ]

    def _send_ack(self, peer_sequence: int) -> int:
        return self._send(FrameType.CONTROL, ControlSubtype.ACK, bytes([peer_sequence]), with_checksum=False)

    def start_negotiation(self, key_agreement: Optional[KeyAgreement] = None) -> None:
        """
        Begin the key negotiation.

        Queues the negotiation length announcement followed by the
        negotiation data, chunked into fragment frames.

        Args:
            key_agreement: Pre-generated key pair; a fresh one is generated if omitted

        Raises:
            KeyAgreementFailure: If no secure randomness is available
        """
        if self.state != SessionState.IDLE:
            logger.warning(f"Negotiation requested in state {self.state.name}, ignoring")
            return

        self._key_agreement = key_agreement or KeyAgreement()
        negotiation_data = self._key_agreement.negotiation_payload()
        self.state = SessionState.NEGOTIATING
        logger.info(f"Starting negotiation ({len(negotiation_data)} bytes), state: NEGOTIATING")

        self._send(
            FrameType.DATA, DataSubtype.NEGOTIATE,
            protocol.negotiation_length_payload(len(negotiation_data)),
        )
        self._send_message(FrameType.DATA, DataSubtype.NEGOTIATE, negotiation_data)

    def set_opmode(self, opmode: OpMode) -> int:
        """Set the device's Wi-Fi operating mode."""
        return self._send(FrameType.CONTROL, ControlSubtype.OPMODE, bytes([opmode]))

    def set_station(self, ssid: str, password: str, confidential: bool = True) -> list[int]:
        """
        Configure station mode, send the credentials and connect.

        Args:
            ssid: Access point name
            password: Access point passphrase
            confidential: Encrypt the credentials once the session is secured

        Returns:
            Sequence numbers of the queued frames
        """
        ssid_bytes = ssid.encode("utf-8")
        password_bytes = password.encode("utf-8")
        for name, value in (("SSID", ssid_bytes), ("Password", password_bytes)):
            if len(value) > protocol.MAX_PAYLOAD_SIZE:
                raise ValueError(f"{name} too long: {len(value)} bytes")

        if confidential and not self.is_secured:
            logger.warning("Sending Wi-Fi credentials over an unsecured session")

        return [
            self.set_opmode(OpMode.STA),
            self._send(FrameType.DATA, DataSubtype.STA_SSID, ssid_bytes, encrypt=confidential),
            self._send(FrameType.DATA, DataSubtype.STA_PASSWORD, password_bytes, encrypt=confidential),
            self.connect_ap(),
        ]

    def connect_ap(self) -> int:
        return self._send(FrameType.CONTROL, ControlSubtype.CONNECT_AP)

    def disconnect_ap(self) -> int:
        return self._send(FrameType.CONTROL, ControlSubtype.DISCONNECT_AP)

    def trigger_device_info(self) -> int:
        """Request a Wi-Fi connection status report."""
        return self._send(FrameType.CONTROL, ControlSubtype.GET_STATUS)

    def trigger_wifi_list(self) -> int:
        """Request a Wi-Fi scan."""
        return self._send(FrameType.CONTROL, ControlSubtype.GET_WIFI_LIST)

    def trigger_version(self) -> int:
        return self._send(FrameType.CONTROL, ControlSubtype.GET_VERSION)

    def disconnect_ble(self) -> int:
        """Ask the device to drop the BLE link."""
        return self._send(FrameType.CONTROL, ControlSubtype.DISCONNECT_BLE)

    def send_custom_data(self, data: bytes, confidential: bool = True) -> list[int]:
        """Send application data, fragmented if larger than one chunk."""
        return self._send_message(FrameType.DATA, DataSubtype.CUSTOM_DATA, bytes(data), encrypt=confidential)

    # =========================================================================
    # Inbound
    # =========================================================================

    def receive(self, data: bytes) -> list[Event]:
        """
        Process one inbound frame.

        Args:
            data: Raw notification bytes from the transport

        Returns:
            Events produced by this frame (empty while a fragmented message
            is still being reassembled)
        """
        logger.debug(f"Received frame ({len(data)} bytes): {bytes(data).hex()}")

        try:
            frame = protocol.decode(data)
        except MalformedFrame as e:
            logger.warning(f"Dropping malformed frame: {e}")
            self._reassembly.clear()
            return [FrameDropped(e)]

        # The header is intact once decode succeeds
        if frame.requires_ack:
            self._send_ack(frame.sequence)

        payload = frame.payload
        if frame.has_encryption:
            try:
                payload = self._decrypt(frame)
            except DecryptionFailure as e:
                logger.error(f"Decryption failed for seq {frame.sequence}: {e}")
                self.reset("decryption failure")
                return [SessionReset(str(e))]

        if frame.has_checksum and not checksum.verify(frame.header + payload, frame.checksum):
            error = ChecksumMismatch(expected=checksum.compute(frame.header + payload), received=frame.checksum)
            logger.warning(f"Dropping frame seq {frame.sequence}: {error}")
            self._reassembly.clear()
            return [FrameDropped(error)]

        if frame.is_fragment:
            try:
                self._reassembly += protocol.strip_fragment_prefix(payload)
            except MalformedFrame as e:
                logger.warning(f"Dropping fragment seq {frame.sequence}: {e}")
                self._reassembly.clear()
                return [FrameDropped(e)]
            logger.debug(f"Buffered fragment seq {frame.sequence} ({len(self._reassembly)} bytes so far)")
            return []

        message = bytes(self._reassembly) + payload
        self._reassembly.clear()

        try:
            return self._dispatch(frame, message)
        except BluFiError as e:
            logger.warning(f"Dropping frame seq {frame.sequence}: {e}")
            return [FrameDropped(e)]

    def _decrypt(self, frame: Frame) -> bytes:
        if self._cipher is None:
            raise DecryptionFailure(f"Encrypted frame seq {frame.sequence} received without a session key")
        return self._cipher.decrypt(frame.payload, frame.sequence)

    def _dispatch(self, frame: Frame, message: bytes) -> list[Event]:
        """Map a complete message to events by (type, subtype)."""
        if frame.frame_type == FrameType.CONTROL:
            if frame.subtype == ControlSubtype.ACK:
                if not message:
                    raise MalformedFrame("Empty ACK payload")
                return [Ack(seq=message[0])]
        elif frame.frame_type == FrameType.DATA:
            if frame.subtype == DataSubtype.NEGOTIATE:
                return self._handle_negotiation_reply(message)
            elif frame.subtype == DataSubtype.WIFI_LIST:
                return self._handle_wifi_list(message)
            elif frame.subtype == DataSubtype.ERROR:
                if not message:
                    raise MalformedFrame("Empty error report")
                code = protocol.as_error_code(message[0])
                logger.warning(f"Device reported error {int(code):#04x}: {protocol.describe_error(int(code))}")
                return [DeviceError(code=code)]
            elif frame.subtype == DataSubtype.CONNECTION_STATUS:
                return [DeviceInfo(info=DeviceStatus.parse(message))]
            elif frame.subtype == DataSubtype.VERSION:
                return [VersionReport(version=VersionInfo.parse(message))]
            elif frame.subtype == DataSubtype.CUSTOM_DATA:
                return [CustomData(data=message)]

        raise UnsupportedFrame(frame.frame_type, frame.subtype)

    def _handle_negotiation_reply(self, message: bytes) -> list[Event]:
        """Derive the session key from the device's public value and secure the session."""
        if self.state != SessionState.NEGOTIATING or self._key_agreement is None:
            raise ProtocolStateError(f"Negotiation reply in state {self.state.name}")
        if not message:
            raise MalformedFrame("Empty negotiation reply")

        key = self._key_agreement.derive_key(message)
        self._cipher = StreamCipher(key)
        self._key_agreement = None

        self._send(
            FrameType.CONTROL, ControlSubtype.SECURITY_MODE,
            protocol.security_mode_payload(SecurityMode.CHECKSUM | SecurityMode.ENCRYPTION),
        )
        self.state = SessionState.SECURED
        logger.info("Negotiated AES key, state: SECURED")
        return [NegotiationComplete()]

    def _handle_wifi_list(self, message: bytes) -> list[Event]:
        entries, truncated = protocol.parse_wifi_list(message)
        if truncated:
            logger.warning(f"Wi-Fi list truncated after {len(entries)} entries")
        logger.info(f"Received Wi-Fi list with {len(entries)} entries")
        return [WifiList(entries=entries, truncated=truncated)]
