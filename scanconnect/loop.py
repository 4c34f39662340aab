#
# scan-connect - keep finding one BLE peripheral, connect, rescan on drop
#
# The scan/connect lifecycle for a single target address, written as a pure
# transition function plus a thin stateful driver that executes its effects
# against an adapter and reports every transition to a sink.
#

"""Scan-then-connect state machine for a single BLE peripheral."""

import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Tuple

# Connection status codes delivered with link-state callbacks
STATUS_SUCCESS = 0
STATUS_GATT_ERROR = 133  # generic GATT failure, what most stacks report


def _timestamp() -> str:
    """Return an ISO 8601 timestamp with timezone offset."""
    return datetime.now().astimezone().strftime("%Y-%m-%dT%H:%M:%S%z")


# ------------------------------------------------------------------
# Errors
# ------------------------------------------------------------------

class ScanConnectError(Exception):
    """Base class for scan/connect errors."""


class AdapterUnavailable(ScanConnectError):
    """The Bluetooth adapter is off, missing, or refused to scan."""


class ConnectFailed(ScanConnectError):
    """A single connection attempt failed; the loop resumes scanning."""

    def __init__(self, identifier: str, status: int = STATUS_GATT_ERROR,
                 detail: str = ""):
        self.identifier = identifier
        self.status = status
        self.detail = detail
        msg = f"connect to {identifier} failed (status {status})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class CallbackAfterStop(ScanConnectError):
    """An adapter callback arrived after the loop stopped or restarted."""


# ------------------------------------------------------------------
# Data model
# ------------------------------------------------------------------

class ScanState(Enum):
    IDLE = "Idle"
    SCANNING = "Scanning"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    DISCONNECTED = "Disconnected"


class LinkState(Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class Effect(Enum):
    """Adapter requests a transition asks the driver to issue, in order."""

    START_SCAN = "start_scan"
    STOP_SCAN = "stop_scan"
    CONNECT = "connect"
    DISCONNECT = "disconnect"


@dataclass(frozen=True)
class DiscoveredDevice:
    """One advertisement as reported by the adapter."""

    identifier: str
    signal_strength: Optional[int] = None
    raw_advertisement: Any = None


@dataclass(frozen=True)
class Transition:
    state: ScanState
    effects: Tuple[Effect, ...] = ()
    reason: str = ""


@dataclass(frozen=True)
class TransitionRecord:
    """Structured log entry emitted for every state change."""

    timestamp: str
    from_state: ScanState
    to_state: ScanState
    reason: str

    def as_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "reason": self.reason,
        }

    def line(self) -> str:
        return (f"{self.timestamp}  {self.from_state.value} -> "
                f"{self.to_state.value}  ({self.reason})")


# Events fed to transition().  Adapter callbacks are the ones that can
# arrive late, after stop().

@dataclass(frozen=True)
class Start:
    pass


@dataclass(frozen=True)
class Stop:
    pass


@dataclass(frozen=True)
class Discovered:
    device: DiscoveredDevice


@dataclass(frozen=True)
class LinkChanged:
    link: LinkState
    status: int = STATUS_SUCCESS


@dataclass(frozen=True)
class ConnectRefused:
    pass


@dataclass(frozen=True)
class Rescan:
    pass


@dataclass(frozen=True)
class ScanRefused:
    detail: str = ""


_ADAPTER_CALLBACKS = (Discovered, LinkChanged, ScanRefused)


class AdapterPort(Protocol):
    """What the loop needs from a radio."""

    def is_powered(self) -> bool: ...

    def start_scan(self, on_discovered: Callable[[DiscoveredDevice], None],
                   on_failed: Callable[[str], None]) -> bool: ...

    def stop_scan(self) -> bool: ...

    def connect(self, identifier: str,
                on_state_change: Callable[[LinkState, int], None]) -> bool: ...

    def disconnect(self) -> None: ...


class UiSink(Protocol):
    def log_event(self, line: str) -> None: ...


# ------------------------------------------------------------------
# Pure transition function
# ------------------------------------------------------------------

def transition(state: ScanState, event, target: str) -> Optional[Transition]:
    """Map ``(state, event)`` to the next state and the effects to issue.

    Returns None when the event does not change anything in *state* (a
    non-matching advertisement, a duplicate match while connecting, ...).
    Raises :class:`CallbackAfterStop` for adapter callbacks arriving while
    the loop is idle.
    """
    if isinstance(event, _ADAPTER_CALLBACKS) and state is ScanState.IDLE:
        raise CallbackAfterStop(f"{type(event).__name__} while idle")

    if isinstance(event, Start):
        if state is not ScanState.IDLE:
            return None
        return Transition(ScanState.SCANNING, (Effect.START_SCAN,), "start")

    if isinstance(event, Stop):
        if state is ScanState.SCANNING:
            return Transition(ScanState.IDLE, (Effect.STOP_SCAN,), "stop")
        if state in (ScanState.CONNECTING, ScanState.CONNECTED):
            return Transition(ScanState.IDLE, (Effect.DISCONNECT,), "stop")
        return None

    if isinstance(event, Discovered):
        if state is not ScanState.SCANNING:
            return None
        if event.device.identifier != target:
            return None
        reason = f"matched {target}"
        if event.device.signal_strength is not None:
            reason += f" at {event.device.signal_strength} dBm"
        return Transition(ScanState.CONNECTING,
                          (Effect.STOP_SCAN, Effect.CONNECT), reason)

    if isinstance(event, LinkChanged):
        if state not in (ScanState.CONNECTING, ScanState.CONNECTED):
            return None
        if event.link is LinkState.CONNECTED:
            if state is ScanState.CONNECTED:
                return None
            if event.status != STATUS_SUCCESS:
                return Transition(ScanState.DISCONNECTED, (),
                                  f"connect failed (status {event.status})")
            return Transition(ScanState.CONNECTED, (), "link up")
        if state is ScanState.CONNECTING:
            return Transition(ScanState.DISCONNECTED, (),
                              f"connect failed (status {event.status})")
        return Transition(ScanState.DISCONNECTED, (),
                          f"link down (status {event.status})")

    if isinstance(event, ConnectRefused):
        if state is not ScanState.CONNECTING:
            return None
        return Transition(ScanState.DISCONNECTED, (), "connect refused by adapter")

    if isinstance(event, Rescan):
        if state is not ScanState.DISCONNECTED:
            return None
        return Transition(ScanState.SCANNING, (Effect.START_SCAN,), "resume scanning")

    if isinstance(event, ScanRefused):
        if state is not ScanState.SCANNING:
            return None
        reason = "scan refused by adapter"
        if event.detail:
            reason += f": {event.detail}"
        return Transition(ScanState.IDLE, (), reason)

    raise TypeError(f"unknown event: {event!r}")


# ------------------------------------------------------------------
# Driver
# ------------------------------------------------------------------

class ScanConnectLoop:
    """Keep scanning for *target*; connect on sight; rescan after a drop.

    All entry points, including adapter callbacks, are serialized through
    one re-entrant lock so an adapter may call back from inside ``connect``
    or ``start_scan``.  Callbacks are bound to the session (one per
    ``start()``) they were issued under; anything from an older session is
    ignored.
    """

    def __init__(self, target: str, adapter: AdapterPort, sink: UiSink,
                 on_transition: Optional[Callable[[TransitionRecord], None]] = None,
                 on_connected: Optional[Callable[["ScanConnectLoop"], None]] = None,
                 trace_advertisements: bool = False):
        self._target = target
        self._adapter = adapter
        self._sink = sink
        self._on_transition = on_transition
        self._on_connected = on_connected
        self.trace_advertisements = trace_advertisements
        self._state = ScanState.IDLE
        self._session = 0
        self._lock = threading.RLock()
        # Counters
        self.connect_attempts = 0
        self.connections = 0
        self.disconnections = 0
        self.ignored_callbacks = 0
        self.advertisements = 0

    @property
    def target(self) -> str:
        return self._target

    @property
    def state(self) -> ScanState:
        return self._state

    # ------------------------------------------------------------------
    # Caller API
    # ------------------------------------------------------------------

    def start(self):
        """Begin scanning.  Raises AdapterUnavailable and stays idle when
        the adapter is off or refuses to scan."""
        with self._lock:
            if self._state is not ScanState.IDLE:
                return
            if not self._adapter.is_powered():
                raise AdapterUnavailable("Bluetooth adapter is not powered on")
            self._session += 1
            # Idle -> Scanning is committed before start_scan runs.
            self._apply(transition(self._state, Start(), self._target))
            if self._state is ScanState.IDLE:
                raise AdapterUnavailable("Bluetooth adapter refused to start scanning")

    def stop(self):
        with self._lock:
            step = transition(self._state, Stop(), self._target)
            if step is None:
                return
            self._session += 1
            self._apply(step)

    def release(self) -> bool:
        """Drop a live connection; scanning resumes once link-down arrives."""
        with self._lock:
            if self._state is not ScanState.CONNECTED:
                return False
            self._sink.log_event(f"{_timestamp()}  releasing {self._target}")
            self._adapter.disconnect()
            return True

    # ------------------------------------------------------------------
    # Adapter callbacks
    # ------------------------------------------------------------------

    def _bind_discovered(self, session: int) -> Callable[[DiscoveredDevice], None]:
        def on_discovered(device: DiscoveredDevice):
            self._handle(session, Discovered(device))
        return on_discovered

    def _bind_scan_failed(self, session: int) -> Callable[[str], None]:
        def on_failed(detail: str = ""):
            self._handle(session, ScanRefused(detail))
        return on_failed

    def _bind_link(self, session: int) -> Callable[[LinkState, int], None]:
        def on_state_change(link: LinkState, status: int = STATUS_SUCCESS):
            self._handle(session, LinkChanged(link, status))
        return on_state_change

    def _handle(self, session: int, event):
        with self._lock:
            try:
                if session != self._session:
                    raise CallbackAfterStop(
                        f"{type(event).__name__} from session {session}")
                if isinstance(event, Discovered) and self._state is ScanState.SCANNING:
                    self.advertisements += 1
                    if self.trace_advertisements:
                        dev = event.device
                        rssi = dev.signal_strength if dev.signal_strength is not None else "?"
                        self._sink.log_event(f"{_timestamp()}  seen {dev.identifier}  {rssi} dBm")
                step = transition(self._state, event, self._target)
            except CallbackAfterStop:
                self.ignored_callbacks += 1
                return
            if step is not None:
                self._apply(step)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _commit(self, step: Transition):
        record = TransitionRecord(_timestamp(), self._state, step.state, step.reason)
        self._state = step.state
        self._sink.log_event(record.line())
        if self._on_transition is not None:
            self._on_transition(record)

    def _follow(self, event):
        step = transition(self._state, event, self._target)
        if step is not None:
            self._apply(step)

    def _apply(self, step: Transition):
        self._commit(step)

        for effect in step.effects:
            if effect is Effect.START_SCAN:
                if not self._adapter.start_scan(self._bind_discovered(self._session),
                                                self._bind_scan_failed(self._session)):
                    if self._state is ScanState.SCANNING:
                        self._follow(ScanRefused())
                    return
            elif effect is Effect.STOP_SCAN:
                self._adapter.stop_scan()
            elif effect is Effect.CONNECT:
                self.connect_attempts += 1
                if not self._adapter.connect(self._target, self._bind_link(self._session)):
                    self._follow(ConnectRefused())
                    return
            elif effect is Effect.DISCONNECT:
                self._adapter.disconnect()

        if step.state is ScanState.CONNECTED:
            self.connections += 1
            if self._on_connected is not None:
                self._on_connected(self)
        elif step.state is ScanState.DISCONNECTED:
            self.disconnections += 1
            self._follow(Rescan())
