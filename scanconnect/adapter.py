#
# scan-connect - keep finding one BLE peripheral, connect, rescan on drop
#
# AdapterPort implementation on top of bleak.  Everything runs on the
# asyncio event loop that is current when the adapter methods are called,
# so scan and link callbacks reach the state machine one at a time.
#

"""Bleak-backed radio adapter."""

import asyncio
import sys
from typing import Callable, Optional, Set

try:
    from bleak import BleakClient, BleakScanner
    from bleak.backends.device import BLEDevice
    from bleak.backends.scanner import AdvertisementData
    from bleak.exc import BleakError
except ImportError:
    print("Error: 'bleak' is not installed.")
    print("Install dependencies with:  pip install ble-scanconnect")
    sys.exit(1)

from scanconnect.loop import (
    STATUS_GATT_ERROR,
    STATUS_SUCCESS,
    ConnectFailed,
    DiscoveredDevice,
    LinkState,
)

DEFAULT_SCAN_PAUSE = 1.0         # seconds between duty-cycled scan windows
DEFAULT_CONNECT_TIMEOUT = 10.0   # seconds, passed through to BleakClient


class BleakAdapter:
    """Scan and connect through bleak.

    ``scan_duration=None`` scans continuously.  With a duration set, the
    scanner runs for *scan_duration* seconds, rests for *scan_pause*
    seconds, and repeats until ``stop_scan()``.
    """

    def __init__(self, adapter: Optional[str] = None, active: bool = False,
                 scan_duration: Optional[float] = None,
                 scan_pause: float = DEFAULT_SCAN_PAUSE,
                 connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
                 on_error: Optional[Callable[[str], None]] = None):
        self.adapter = adapter
        self.active = active
        self.scan_duration = scan_duration
        self.scan_pause = scan_pause
        self.connect_timeout = connect_timeout
        self.on_error = on_error
        self._powered = False
        self._scan_task: Optional[asyncio.Task] = None
        self._stopping_scan: Optional[asyncio.Task] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._client: Optional[BleakClient] = None
        self._tasks: Set[asyncio.Task] = set()
        # Most recent advertiser only; a match triggers connect() straight
        # from the detection callback, so this is the target by then.
        self._last_device: Optional[BLEDevice] = None

    # ------------------------------------------------------------------
    # Power probe
    # ------------------------------------------------------------------

    def _scanner_kwargs(self) -> dict:
        kwargs: dict = {}
        if self.active:
            kwargs["scanning_mode"] = "active"
        if self.adapter:
            kwargs["adapter"] = self.adapter
        return kwargs

    async def probe(self) -> bool:
        """Start and stop a scanner once to find out whether the radio works."""
        scanner = BleakScanner(**self._scanner_kwargs())
        try:
            await scanner.start()
            await scanner.stop()
        except (BleakError, OSError) as e:
            self._report(f"adapter probe failed: {e}")
            self._powered = False
        else:
            self._powered = True
        return self._powered

    def is_powered(self) -> bool:
        return self._powered

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def start_scan(self, on_discovered: Callable[[DiscoveredDevice], None],
                   on_failed: Optional[Callable[[str], None]] = None) -> bool:
        if not self._powered:
            return False
        self._last_device = None
        if self._scan_task is not None and not self._scan_task.done():
            self._scan_task.cancel()
        self._scan_task = self._spawn(self._run_scanner(on_discovered, on_failed))
        return True

    def stop_scan(self) -> bool:
        if self._scan_task is None:
            return False
        self._scan_task.cancel()
        self._stopping_scan, self._scan_task = self._scan_task, None
        return True

    async def _run_scanner(self, on_discovered: Callable[[DiscoveredDevice], None],
                           on_failed: Optional[Callable[[str], None]]):
        def detection_callback(device: BLEDevice, adv: AdvertisementData):
            addr = (device.address or "").upper()
            self._last_device = device
            on_discovered(DiscoveredDevice(addr, adv.rssi, adv))

        scanner = BleakScanner(detection_callback=detection_callback,
                               **self._scanner_kwargs())
        running = False
        try:
            while True:
                await scanner.start()
                running = True
                if self.scan_duration is None:
                    await asyncio.Event().wait()
                else:
                    await asyncio.sleep(self.scan_duration)
                await scanner.stop()
                running = False
                await asyncio.sleep(self.scan_pause)
        except asyncio.CancelledError:
            pass
        except (BleakError, OSError) as e:
            self._report(f"scan error: {e}")
            if on_failed is not None:
                on_failed(str(e))
        finally:
            if running:
                try:
                    await scanner.stop()
                except (BleakError, OSError) as e:
                    self._report(f"scanner stop failed: {e}")

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self, identifier: str,
                on_state_change: Callable[[LinkState, int], None]) -> bool:
        if self._connect_task is not None and not self._connect_task.done():
            return False
        self._connect_task = self._spawn(self._run_connect(identifier, on_state_change))
        return True

    def disconnect(self) -> None:
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        if self._client is not None:
            self._spawn(self._disconnect_client(self._client))

    async def _disconnect_client(self, client: BleakClient):
        try:
            await client.disconnect()
        except (BleakError, OSError) as e:
            self._report(f"disconnect failed: {e}")

    async def _open_client(self, identifier: str,
                           on_state_change: Callable[[LinkState, int], None]) -> BleakClient:
        def disconnected_callback(client: BleakClient):
            if self._client is client:
                self._client = None
                on_state_change(LinkState.DISCONNECTED, STATUS_SUCCESS)

        kwargs: dict = {"disconnected_callback": disconnected_callback,
                        "timeout": self.connect_timeout}
        if self.adapter:
            kwargs["adapter"] = self.adapter
        device = self._last_device
        if device is None or (device.address or "").upper() != identifier.upper():
            device = identifier
        client = BleakClient(device, **kwargs)
        try:
            await client.connect()
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise ConnectFailed(identifier, STATUS_GATT_ERROR, str(e)) from e
        return client

    async def _run_connect(self, identifier: str,
                           on_state_change: Callable[[LinkState, int], None]):
        # The radio must be out of scanning before a connection starts.
        stopping, self._stopping_scan = self._stopping_scan, None
        if stopping is not None and not stopping.done():
            await asyncio.wait({stopping})
        try:
            client = await self._open_client(identifier, on_state_change)
        except ConnectFailed as e:
            self._report(str(e))
            on_state_change(LinkState.DISCONNECTED, e.status)
            return
        self._client = client
        on_state_change(LinkState.CONNECTED, STATUS_SUCCESS)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self):
        """Cancel outstanding work and drop any live link."""
        client, self._client = self._client, None
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if client is not None:
            await self._disconnect_client(client)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _report(self, message: str):
        if self.on_error is not None:
            self.on_error(message)
