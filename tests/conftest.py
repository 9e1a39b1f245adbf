"""
Shared fixtures for the BluFi test suite.

Provides a simulated BluFi device that speaks the peripheral side of the
protocol well enough to negotiate a key, decrypt and checksum-verify the
frames a session sends, and produce device frames for the session to parse.
"""

from typing import Callable, Optional

import pytest

from blufi import checksum, protocol
from blufi.crypto import KeyAgreement, StreamCipher, int_to_bytes
from blufi.protocol import DataSubtype, Frame, FrameControl, FrameType
from blufi.state import ProtocolSession

# Fixed exponent so key material is reproducible across runs
TEST_PRIVATE_EXPONENT = int("a5" * 128, 16)


class FakeDevice:
    """Peripheral side of the BluFi protocol, for tests only."""

    def __init__(self):
        self.sequence = 0
        self.cipher: Optional[StreamCipher] = None
        self.key: Optional[bytes] = None
        self.params: Optional[protocol.NegotiationParams] = None
        self.key_agreement: Optional[KeyAgreement] = None
        self.buffer = bytearray()
        self.received: list[tuple[Frame, bytes]] = []
        self.on_message: Optional[Callable[[Frame, bytes], list[bytes]]] = None

    def frame(
        self,
        frame_type: int,
        subtype: int,
        payload: bytes = b"",
        encrypt: bool = False,
        with_checksum: bool = True,
        flags: FrameControl = FrameControl.DIRECTION,
    ) -> bytes:
        """Build a device-to-phone frame."""
        seq = self.sequence
        self.sequence = (self.sequence + 1) & 0xFF
        wire = payload
        if encrypt:
            flags |= FrameControl.ENCRYPTED
            wire = self.cipher.encrypt(payload, seq)
        return protocol.encode(frame_type, subtype, flags, seq, wire, with_checksum=with_checksum, plaintext=payload)

    def fragmented(self, subtype: int, payload: bytes, chunk_size: int = 80, encrypt: bool = False) -> list[bytes]:
        """Build the frames for a data message split into fragments."""
        frames = []
        for chunk, is_fragment in protocol.split_fragments(payload, chunk_size):
            flags = FrameControl.DIRECTION | (FrameControl.FRAGMENT if is_fragment else FrameControl.NONE)
            frames.append(self.frame(FrameType.DATA, subtype, chunk, encrypt=encrypt, flags=flags))
        return frames

    def receive(self, data: bytes) -> list[bytes]:
        """Consume one phone-to-device frame and return any reply frames."""
        frame = protocol.decode(data)
        payload = frame.payload
        if frame.has_encryption:
            payload = self.cipher.decrypt(payload, frame.sequence)
        if frame.has_checksum:
            assert checksum.compute(frame.header + payload) == frame.checksum
        if frame.is_fragment:
            self.buffer += payload[2:]
            return []

        message = bytes(self.buffer) + payload
        self.buffer.clear()
        self.received.append((frame, message))

        if frame.frame_type == FrameType.DATA and frame.subtype == DataSubtype.NEGOTIATE and message[:1] == b"\x01":
            self.params = protocol.parse_negotiation_payload(message)
            self.key_agreement = KeyAgreement(prime=self.params.prime, generator=self.params.generator)
            self.key = self.key_agreement.derive_key(int_to_bytes(self.params.public_value))
            self.cipher = StreamCipher(self.key)
            return [self.frame(FrameType.DATA, DataSubtype.NEGOTIATE, self.key_agreement.public_bytes)]

        if self.on_message is not None:
            return self.on_message(frame, message) or []
        return []

    def messages(self, frame_type: int, subtype: int) -> list[bytes]:
        """Complete messages received with the given type and subtype."""
        return [m for f, m in self.received if f.frame_type == frame_type and f.subtype == subtype]


def exchange(session: ProtocolSession, device: FakeDevice) -> list:
    """Deliver the session's queued frames to the device and feed replies back."""
    events = []
    while True:
        frames = session.take_outgoing()
        if not frames:
            return events
        for data in frames:
            for reply in device.receive(data):
                events.extend(session.receive(reply))


@pytest.fixture
def key_agreement() -> KeyAgreement:
    """Key pair with a fixed private exponent."""
    return KeyAgreement(private_exponent=TEST_PRIVATE_EXPONENT)


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice()


@pytest.fixture
def session() -> ProtocolSession:
    return ProtocolSession()


@pytest.fixture
def secured_session(session: ProtocolSession, device: FakeDevice) -> ProtocolSession:
    """A session that has completed key negotiation with ``device``."""
    session.start_negotiation()
    exchange(session, device)
    assert session.is_secured
    return session


@pytest.fixture
def run_exchange() -> Callable[[ProtocolSession, FakeDevice], list]:
    return exchange
