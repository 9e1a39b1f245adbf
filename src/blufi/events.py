"""
Typed events emitted by ProtocolSession while processing inbound frames.
"""

from dataclasses import dataclass, field
from typing import Union

from .errors import BluFiError
from .protocol import DeviceStatus, ErrorCode, VersionInfo, WifiEntry, describe_error


@dataclass(frozen=True)
class NegotiationComplete:
    """The session key was derived and the security mode announced."""
    pass


@dataclass(frozen=True)
class WifiList:
    """Result of a Wi-Fi scan. ``truncated`` is set if a malformed entry cut the list short."""
    entries: list[WifiEntry] = field(default_factory=list)
    truncated: bool = False


@dataclass(frozen=True)
class DeviceError:
    """Error code reported by the device."""
    code: Union[ErrorCode, int]

    @property
    def message(self) -> str:
        return describe_error(int(self.code))


@dataclass(frozen=True)
class DeviceInfo:
    """Wi-Fi connection status reported by the device."""
    info: DeviceStatus


@dataclass(frozen=True)
class VersionReport:
    """Protocol version reported by the device."""
    version: VersionInfo


@dataclass(frozen=True)
class CustomData:
    """Application data sent by the device."""
    data: bytes


@dataclass(frozen=True)
class Ack:
    """The device acknowledged the frame with sequence ``seq``."""
    seq: int


@dataclass(frozen=True)
class FrameDropped:
    """An inbound frame was rejected and discarded."""
    error: BluFiError


@dataclass(frozen=True)
class SessionReset:
    """The session dropped its key material and returned to IDLE."""
    reason: str


Event = Union[
    NegotiationComplete,
    WifiList,
    DeviceError,
    DeviceInfo,
    VersionReport,
    CustomData,
    Ack,
    FrameDropped,
    SessionReset,
]
