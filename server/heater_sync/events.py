"""
Typed events consumed by the reconciliation engine.

Bus events are produced by ``TopicMap.parse``; document events by
``document_store.parse_document``; connectivity and failure events by the
transport adapters.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Union

from .data_models import Channel, HeaterState, LinkState, BusLinkState, Presence, ScheduleSettings


class Source(str, Enum):
    """Where a field value came from"""
    BUS = "bus"
    STORE = "store"
    LOCAL = "local"


class Link(str, Enum):
    """Transport links owned by the adapters"""
    CLOUD = "cloud"
    BUS = "bus"


class TelemetryField(str, Enum):
    RSSI = "rssi"
    UPTIME = "uptime"
    WIFI = "wifi"


@dataclass(frozen=True)
class TemperatureReading:
    channel: Channel
    value: float
    timestamp: float


@dataclass(frozen=True)
class HeaterStatus:
    state: HeaterState
    timestamp: float


@dataclass(frozen=True)
class TargetTemperature:
    value: float
    timestamp: float


@dataclass(frozen=True)
class LinkTelemetry:
    field: TelemetryField
    value: Union[int, str]
    timestamp: float


@dataclass(frozen=True)
class PresenceEvent:
    online: bool
    timestamp: float


@dataclass(frozen=True)
class StoreDocument:
    """Coerced view of one document-store read or change notification.

    Every field is optional: None means the document did not carry it, which
    the engine treats as "unknown" rather than zero.
    """
    collection: str
    timestamp: Optional[float] = None
    temperatures: Dict[Channel, float] = field(default_factory=dict)
    heater_state: Optional[HeaterState] = None
    target_temperature: Optional[float] = None
    rssi: Optional[int] = None
    uptime: Optional[int] = None
    wifi_status: Optional[str] = None
    device_network: Optional[LinkState] = None
    presence: Optional[Presence] = None
    schedule: Optional[ScheduleSettings] = None


@dataclass(frozen=True)
class ConnectivityChange:
    link: Link
    state: Union[LinkState, BusLinkState]


@dataclass(frozen=True)
class TransportFailure:
    link: Link
    message: str
    terminal: bool = False


BusEvent = Union[TemperatureReading, HeaterStatus, TargetTemperature, LinkTelemetry, PresenceEvent]
EngineEvent = Union[BusEvent, StoreDocument, ConnectivityChange, TransportFailure]
