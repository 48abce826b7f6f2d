"""
Reconciliation engine: folds bus events, document-store documents and local
optimistic writes into one DeviceSnapshot plus a bounded temperature history.

Precedence, highest first:

1. Bus presence (last-will) owns ``presence``; OFFLINE forces the device
   network to ERROR.
2. Live bus data (temperatures, heater status, link telemetry) proves the
   device is up: ONLINE and CONNECTED.
3. Per field, the later effective timestamp wins; on equal or missing
   timestamps the bus wins over the document store.
4. Local optimistic writes apply at once and yield to the next confirmed
   value from either transport.

The engine is the only writer of its state. It is not thread-safe; all calls
must come from the event loop thread.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Tuple

from .data_models import (
    BusLinkState,
    Channel,
    Connectivity,
    DeviceSnapshot,
    HeaterState,
    LinkState,
    Presence,
    ScheduleSettings,
    Temperatures,
    TimeSeriesSample,
)
from .events import (
    ConnectivityChange,
    EngineEvent,
    HeaterStatus,
    Link,
    LinkTelemetry,
    PresenceEvent,
    Source,
    StoreDocument,
    TargetTemperature,
    TelemetryField,
    TemperatureReading,
    TransportFailure,
)
from .exceptions import StaleEventError

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[DeviceSnapshot], None]

HEATER_STATE = "heater_state"
TARGET_TEMPERATURE = "target_temperature"
SIGNAL_STRENGTH = "signal_strength"
UPTIME = "uptime"
WIFI_STATUS = "wifi_status"
DEVICE_NETWORK = "device_network"
PRESENCE = "presence"
SCHEDULE = "schedule"


def temperature_key(channel: Channel) -> str:
    return f"temperature.{channel.value}"


class TimeSeries:
    """Append-only history with ring-buffer eviction of the oldest sample"""

    def __init__(self, capacity: int = 500):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._samples: Deque[TimeSeriesSample] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._samples.maxlen

    def append(self, sample: TimeSeriesSample):
        self._samples.append(sample)

    def latest(self) -> Optional[TimeSeriesSample]:
        return self._samples[-1] if self._samples else None

    def samples(self) -> Tuple[TimeSeriesSample, ...]:
        return tuple(self._samples)

    def clear(self):
        self._samples.clear()

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[TimeSeriesSample]:
        return iter(tuple(self._samples))


@dataclass(frozen=True)
class _Stamp:
    source: Source
    timestamp: Optional[float]


class ReconciliationEngine:
    """Owns the device snapshot and history for one dashboard session"""

    def __init__(self, history_capacity: int = 500,
                 clock: Callable[[], float] = time.time,
                 max_errors: int = 100):
        self._clock = clock
        self.history = TimeSeries(history_capacity)

        self._temperatures: Dict[Channel, Optional[float]] = {channel: None for channel in Channel}
        self._heater_state: Optional[HeaterState] = None
        self._target_temperature: Optional[float] = None
        self._signal_strength: Optional[int] = None
        self._uptime: Optional[int] = None
        self._wifi_status: Optional[str] = None
        self._schedule: Optional[ScheduleSettings] = None
        self._presence: Optional[Presence] = None
        self._device_network = LinkState.CONNECTING
        self._cloud_link = LinkState.CONNECTING
        self._bus_link = BusLinkState.DISCONNECTED
        self._last_update: Optional[float] = None
        self._reboot_count = 0
        self._errors: Deque[Dict[str, Any]] = deque(maxlen=max_errors)

        self._stamps: Dict[str, _Stamp] = {}
        self._listeners: List[SnapshotListener] = []
        self._handlers: Dict[type, Callable[[Any], None]] = {
            TemperatureReading: self._fold_temperature,
            HeaterStatus: self._fold_heater_status,
            TargetTemperature: self._fold_target_temperature,
            LinkTelemetry: self._fold_telemetry,
            PresenceEvent: self._fold_presence,
            StoreDocument: self._fold_document,
            ConnectivityChange: self._fold_connectivity,
            TransportFailure: self._fold_failure,
        }

    # Public API

    def process(self, event: EngineEvent) -> bool:
        """Fold one event into the snapshot; returns True if anything changed"""
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.warning(f"Ignoring unsupported event type {type(event).__name__}")
            return False
        return self._apply(handler, event)

    def apply_local_target_temperature(self, value: float) -> bool:
        """Optimistically show a user-commanded set-point"""
        return self._apply(self._fold_local_target, value)

    def apply_local_schedule(self, schedule: ScheduleSettings) -> bool:
        """Optimistically show a user-edited schedule"""
        return self._apply(self._fold_local_schedule, schedule)

    def snapshot(self) -> DeviceSnapshot:
        """Immutable copy of the current state"""
        return DeviceSnapshot(
            temperatures=Temperatures(
                red=self._temperatures[Channel.RED],
                blue=self._temperatures[Channel.BLUE],
                green=self._temperatures[Channel.GREEN],
            ),
            heater_state=self._heater_state,
            target_temperature=self._target_temperature,
            connectivity=Connectivity(
                device_network=self._device_network,
                cloud_link=self._cloud_link,
                bus_link=self._bus_link,
            ),
            signal_strength=self._visible_signal_strength(),
            uptime_seconds=self._uptime,
            presence=self._presence,
            last_update_timestamp=self._last_update,
            wifi_status=self._wifi_status,
            schedule=self._schedule,
            reboot_count=self._reboot_count,
            last_error=self._errors[-1]["message"] if self._errors else None,
        )

    def series(self) -> Tuple[TimeSeriesSample, ...]:
        return self.history.samples()

    @property
    def errors(self) -> List[Dict[str, Any]]:
        return list(self._errors)

    def provenance(self) -> Dict[str, Dict[str, Any]]:
        """Which source last set each field, and when"""
        return {
            key: {"source": stamp.source.value, "timestamp": stamp.timestamp}
            for key, stamp in sorted(self._stamps.items())
        }

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        """Call ``listener`` with a fresh snapshot after every change"""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # Folding

    def _apply(self, fold: Callable[[Any], None], argument: Any) -> bool:
        before = self.snapshot()
        history_before = len(self.history), self.history.latest()
        fold(argument)
        self._enforce_invariants()
        after = self.snapshot()
        changed = after != before or (len(self.history), self.history.latest()) != history_before
        if changed:
            self._notify(after)
        return changed

    def _fold_temperature(self, event: TemperatureReading):
        self._mark_live(event.timestamp)
        if self._claim(temperature_key(event.channel), Source.BUS, event.timestamp):
            self._temperatures[event.channel] = event.value
            self._advance(event.timestamp)
            self._append_sample(event.timestamp)

    def _fold_heater_status(self, event: HeaterStatus):
        self._mark_live(event.timestamp)
        if self._claim(HEATER_STATE, Source.BUS, event.timestamp):
            self._heater_state = event.state
            self._advance(event.timestamp)

    def _fold_target_temperature(self, event: TargetTemperature):
        # Not proof of liveness: the echo may be our own publish.
        if self._claim(TARGET_TEMPERATURE, Source.BUS, event.timestamp):
            self._target_temperature = event.value
            self._advance(event.timestamp)

    def _fold_telemetry(self, event: LinkTelemetry):
        self._mark_live(event.timestamp)
        accepted = False
        if event.field == TelemetryField.RSSI:
            accepted = self._claim(SIGNAL_STRENGTH, Source.BUS, event.timestamp)
            if accepted:
                self._signal_strength = int(event.value)
        elif event.field == TelemetryField.UPTIME:
            accepted = self._claim(UPTIME, Source.BUS, event.timestamp)
            if accepted:
                self._set_uptime(int(event.value))
        elif event.field == TelemetryField.WIFI:
            accepted = self._claim(WIFI_STATUS, Source.BUS, event.timestamp)
            if accepted:
                self._wifi_status = str(event.value)
        if accepted:
            self._advance(event.timestamp)

    def _fold_presence(self, event: PresenceEvent):
        self._stamps[PRESENCE] = _Stamp(Source.BUS, event.timestamp)
        if event.online:
            self._presence = Presence.ONLINE
        else:
            if self._presence != Presence.OFFLINE:
                logger.warning("Device reported offline (last will)")
            self._presence = Presence.OFFLINE
            self._stamps[DEVICE_NETWORK] = _Stamp(Source.BUS, event.timestamp)
            self._device_network = LinkState.ERROR
        self._advance(event.timestamp)

    def _fold_document(self, doc: StoreDocument):
        ts = doc.timestamp
        now = self._clock()
        if ts is not None and ts > now:
            # Written by a clock ahead of ours; never outrank data received now.
            logger.debug(f"Clamping future {doc.collection!r} timestamp {ts} to {now}")
            ts = now
        accepted = False

        temperature_changed = False
        for channel, value in doc.temperatures.items():
            if self._claim(temperature_key(channel), Source.STORE, ts):
                self._temperatures[channel] = value
                temperature_changed = True
        accepted |= temperature_changed

        if doc.heater_state is not None and self._claim(HEATER_STATE, Source.STORE, ts):
            self._heater_state = doc.heater_state
            accepted = True
        if doc.target_temperature is not None and self._claim(TARGET_TEMPERATURE, Source.STORE, ts):
            self._target_temperature = doc.target_temperature
            accepted = True
        if doc.rssi is not None and self._claim(SIGNAL_STRENGTH, Source.STORE, ts):
            self._signal_strength = doc.rssi
            accepted = True
        if doc.uptime is not None and self._claim(UPTIME, Source.STORE, ts):
            self._set_uptime(doc.uptime)
            accepted = True
        if doc.wifi_status is not None and self._claim(WIFI_STATUS, Source.STORE, ts):
            self._wifi_status = doc.wifi_status
            accepted = True
        if doc.device_network is not None and self._claim(DEVICE_NETWORK, Source.STORE, ts):
            self._device_network = doc.device_network
            accepted = True
        if doc.schedule is not None and self._claim(SCHEDULE, Source.STORE, ts):
            self._schedule = doc.schedule
            accepted = True

        if doc.presence is not None:
            stamp = self._stamps.get(PRESENCE)
            # The bus last-will is authoritative; documents only fill the gap.
            if stamp is None or stamp.source != Source.BUS:
                self._stamps[PRESENCE] = _Stamp(Source.STORE, ts)
                self._presence = doc.presence
                accepted = True

        if accepted:
            self._advance(ts)
        if temperature_changed:
            self._append_sample(ts)

    def _fold_connectivity(self, event: ConnectivityChange):
        if event.link == Link.BUS:
            self._bus_link = BusLinkState(event.state.value)
        else:
            self._cloud_link = LinkState(event.state.value)
        logger.info(f"{event.link.value} link: {event.state.value}")

    def _fold_failure(self, event: TransportFailure):
        self._errors.append({
            "link": event.link.value,
            "message": event.message,
            "terminal": event.terminal,
            "timestamp": self._clock(),
        })
        if event.link == Link.BUS:
            if event.terminal:
                self._bus_link = BusLinkState.ERROR
        else:
            self._cloud_link = LinkState.ERROR

    def _fold_local_target(self, value: float):
        self._claim(TARGET_TEMPERATURE, Source.LOCAL, self._clock())
        self._target_temperature = float(value)

    def _fold_local_schedule(self, schedule: ScheduleSettings):
        self._claim(SCHEDULE, Source.LOCAL, self._clock())
        self._schedule = schedule

    # Helpers

    def _claim(self, key: str, source: Source, timestamp: Optional[float]) -> bool:
        """Record ``source`` as owner of ``key`` unless the current value is fresher"""
        try:
            self._check_fresh(key, source, timestamp)
        except StaleEventError as e:
            logger.debug(f"Discarding stale value: {e}")
            return False
        self._stamps[key] = _Stamp(source, timestamp)
        return True

    def _check_fresh(self, key: str, source: Source, timestamp: Optional[float]):
        prior = self._stamps.get(key)
        if prior is None or prior.source == Source.LOCAL or source == Source.LOCAL:
            return
        if timestamp is not None and prior.timestamp is not None:
            if timestamp > prior.timestamp:
                return
            if timestamp == prior.timestamp and (source == Source.BUS or prior.source != Source.BUS):
                return
        elif source == Source.BUS or prior.source != Source.BUS:
            return
        raise StaleEventError(
            f"{key} from {source.value} at {timestamp} is older than "
            f"{prior.source.value} value at {prior.timestamp}"
        )

    def _mark_live(self, timestamp: float):
        """Live data from the bus proves the device is up"""
        if self._presence != Presence.ONLINE:
            logger.info("Device is online (live bus data)")
        self._stamps[PRESENCE] = _Stamp(Source.BUS, timestamp)
        self._stamps[DEVICE_NETWORK] = _Stamp(Source.BUS, timestamp)
        self._presence = Presence.ONLINE
        self._device_network = LinkState.CONNECTED

    def _set_uptime(self, seconds: int):
        if self._uptime is not None and seconds < self._uptime:
            self._reboot_count += 1
            logger.info(f"Device reboot detected (uptime {self._uptime}s -> {seconds}s)")
        self._uptime = seconds

    def _advance(self, timestamp: Optional[float]):
        if timestamp is None:
            return
        if self._last_update is None or timestamp > self._last_update:
            self._last_update = timestamp

    def _append_sample(self, timestamp: Optional[float]):
        self.history.append(TimeSeriesSample(
            timestamp=timestamp if timestamp is not None else self._clock(),
            temperatures=Temperatures(
                red=self._temperatures[Channel.RED],
                blue=self._temperatures[Channel.BLUE],
                green=self._temperatures[Channel.GREEN],
            ),
            heater_state=self._heater_state,
            target_temperature=self._target_temperature,
        ))

    def _enforce_invariants(self):
        if self._presence == Presence.OFFLINE:
            self._device_network = LinkState.ERROR

    def _visible_signal_strength(self) -> Optional[int]:
        if self._signal_strength is None or self._device_network != LinkState.CONNECTED:
            return None
        stamp = self._stamps.get(SIGNAL_STRENGTH)
        if stamp is not None and stamp.source == Source.BUS and self._bus_link != BusLinkState.CONNECTED:
            return None
        return self._signal_strength

    def _notify(self, snapshot: DeviceSnapshot):
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Error in snapshot listener: {e}")
