"""
BLE GATT client for BluFi provisioning.

Uses the bleak library to connect to a BluFi device, feeds notifications
into a ProtocolSession and writes the frames it queues.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, TypeVar

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.exc import BleakError

from .errors import TransportError
from .events import (
    CustomData,
    DeviceError,
    DeviceInfo,
    Event,
    FrameDropped,
    NegotiationComplete,
    SessionReset,
    WifiList,
)
from .state import ProtocolSession

logger = logging.getLogger(__name__)

# GATT UUIDs (ESP-IDF BluFi profile)
BLUFI_SERVICE_UUID = "0000ffff-0000-1000-8000-00805f9b34fb"
BLUFI_WRITE_CHAR_UUID = "0000ff01-0000-1000-8000-00805f9b34fb"
BLUFI_NOTIFY_CHAR_UUID = "0000ff02-0000-1000-8000-00805f9b34fb"

# Timeouts (seconds)
SCAN_TIMEOUT = 10.0
RESPONSE_TIMEOUT = 10.0

E = TypeVar("E")


@dataclass
class ClientConfig:
    """Client configuration."""
    name: Optional[str] = None      # advertised name to match
    address: Optional[str] = None   # device address (skips name matching)
    scan_timeout: float = SCAN_TIMEOUT
    response_timeout: float = RESPONSE_TIMEOUT
    write_with_response: bool = True


@dataclass
class Result:
    """Operation result."""
    success: bool
    message: str
    event: Optional[Event] = None


class BluFiClient:
    """
    BLE transport for a single BluFi device.

    Each client owns one ProtocolSession; the session is reset whenever
    the link goes down.
    """

    def __init__(self, config: ClientConfig, session: Optional[ProtocolSession] = None):
        self.config = config
        self.session = session or ProtocolSession()
        self.client: Optional[BleakClient] = None
        self.device: Optional[BLEDevice] = None
        self._events: asyncio.Queue[Event] = asyncio.Queue()
        self._write_lock = asyncio.Lock()

    # =========================================================================
    # Connection
    # =========================================================================

    async def scan(self) -> BLEDevice:
        """
        Find the target device.

        Raises:
            TransportError: If no matching device is found
        """
        if self.config.address:
            logger.info(f"Scanning for device {self.config.address}...")
            device = await BleakScanner.find_device_by_address(
                self.config.address, timeout=self.config.scan_timeout
            )
        else:
            logger.info(f"Scanning for BluFi devices (service: {BLUFI_SERVICE_UUID})...")
            device = await BleakScanner.find_device_by_filter(
                self._matches,
                timeout=self.config.scan_timeout,
            )

        if device is None:
            logger.error("No BluFi device found")
            raise TransportError("No BluFi device found")

        logger.info(f"Found device: {device.name} ({device.address})")
        self.device = device
        return device

    def _matches(self, device: BLEDevice, adv) -> bool:
        if self.config.name is not None:
            return (adv.local_name or device.name) == self.config.name
        return BLUFI_SERVICE_UUID in [s.lower() for s in (adv.service_uuids or [])]

    async def connect(self) -> None:
        """Connect, subscribe to notifications and run the key negotiation."""
        if self.device is None:
            await self.scan()

        logger.info(f"Connecting to {self.device.address}...")
        self.client = BleakClient(self.device, disconnected_callback=self._on_disconnect)
        try:
            await self.client.connect()
            await self.client.start_notify(BLUFI_NOTIFY_CHAR_UUID, self._notification_handler)
        except BleakError as e:
            logger.error(f"Connection failed: {e}")
            self.session.reset("connection failed")
            raise TransportError(f"Connection failed: {e}") from e
        logger.info("Connected, starting security negotiation")

        self.session.start_negotiation()
        await self.flush()
        event = await self.wait_for(NegotiationComplete)
        if not isinstance(event, NegotiationComplete):
            raise TransportError(f"Negotiation failed: {self._result(event, '').message}")

    async def disconnect(self) -> None:
        """Disconnect from the device and reset the session."""
        if self.client and self.client.is_connected:
            await self.client.disconnect()
        self.session.reset("disconnected")

    async def __aenter__(self) -> "BluFiClient":
        try:
            await self.connect()
        except BaseException:
            await self.disconnect()
            raise
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    def _on_disconnect(self, client: BleakClient) -> None:
        logger.info("Device disconnected")
        self.session.reset("link lost")
        self._events.put_nowait(SessionReset("link lost"))

    # =========================================================================
    # Frame I/O
    # =========================================================================

    def _notification_handler(
        self,
        characteristic: BleakGATTCharacteristic,
        data: bytearray,
    ) -> None:
        """Handle incoming notifications."""
        logger.debug(f"Notification received ({len(data)} bytes): {data.hex()}")
        for event in self.session.receive(bytes(data)):
            self._events.put_nowait(event)
        if self.client is not None:
            # ACKs and the security mode frame are queued while handling the notification
            self._flush_in_background()

    async def flush(self) -> None:
        """Write every frame the session has queued."""
        if self.client is None:
            raise TransportError("Not connected")
        # Frames must reach the device in sequence order
        async with self._write_lock:
            for frame in self.session.take_outgoing():
                logger.debug(f"Writing frame ({len(frame)} bytes): {frame.hex()}")
                try:
                    await self.client.write_gatt_char(
                        BLUFI_WRITE_CHAR_UUID,
                        frame,
                        response=self.config.write_with_response,
                    )
                except BleakError as e:
                    logger.error(f"Write failed: {e}")
                    raise TransportError(f"Write failed: {e}") from e

    def _flush_in_background(self) -> None:
        task = asyncio.ensure_future(self.flush())
        task.add_done_callback(self._log_flush_error)

    @staticmethod
    def _log_flush_error(task: "asyncio.Future[None]") -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background write failed: {task.exception()}")

    async def wait_for(self, *event_types: type[E], timeout: Optional[float] = None) -> E:
        """
        Wait for the next event of one of ``event_types``.

        Unrelated events are logged and skipped. A DeviceError or
        SessionReset is returned as soon as it arrives so callers can stop
        waiting for a reply that will not come.

        Raises:
            TransportError: If nothing matching arrives before the timeout
        """
        timeout = self.config.response_timeout if timeout is None else timeout
        accepted = tuple(event_types) + (DeviceError, SessionReset)
        try:
            return await asyncio.wait_for(self._next_event(accepted), timeout=timeout)
        except asyncio.TimeoutError as e:
            names = ", ".join(t.__name__ for t in event_types)
            raise TransportError(f"Timed out waiting for {names}") from e

    async def _next_event(self, accepted: tuple[type, ...]) -> Event:
        while True:
            event = await self._events.get()
            if isinstance(event, accepted):
                return event
            if isinstance(event, FrameDropped):
                logger.warning(f"Frame dropped: {event.error}")
            else:
                logger.debug(f"Skipping event {event}")

    # =========================================================================
    # Flows
    # =========================================================================

    async def scan_wifi(self) -> Result:
        """Ask the device to scan for access points."""
        self.session.trigger_wifi_list()
        await self.flush()
        event = await self.wait_for(WifiList)
        return self._result(event, f"Found {len(getattr(event, 'entries', []))} networks")

    async def device_info(self) -> Result:
        """Request the device's Wi-Fi connection status."""
        self.session.trigger_device_info()
        await self.flush()
        event = await self.wait_for(DeviceInfo)
        return self._result(event, "Status received")

    async def provision(self, ssid: str, password: str) -> Result:
        """Send station credentials and wait for the connection status report."""
        logger.info(f"Provisioning SSID {ssid!r}")
        self.session.set_station(ssid, password)
        await self.flush()
        event = await self.wait_for(DeviceInfo)
        if isinstance(event, DeviceInfo) and not event.info.sta_connected:
            return Result(success=False, message=f"Station not connected (state {event.info.sta_state})", event=event)
        return self._result(event, f"Connected to {ssid}")

    async def send_custom(self, data: bytes, expect_reply: bool = False) -> Result:
        """Send custom data, optionally waiting for the device's reply."""
        self.session.send_custom_data(data)
        await self.flush()
        if not expect_reply:
            return Result(success=True, message=f"Sent {len(data)} bytes")
        event = await self.wait_for(CustomData)
        return self._result(event, "Reply received")

    @staticmethod
    def _result(event: Event, message: str) -> Result:
        if isinstance(event, DeviceError):
            return Result(success=False, message=event.message, event=event)
        if isinstance(event, SessionReset):
            return Result(success=False, message=f"Session reset: {event.reason}", event=event)
        return Result(success=True, message=message, event=event)
