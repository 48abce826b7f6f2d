"""
Data models for the heater sync core.
"""

import math
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Optional, Tuple


class Channel(str, Enum):
    """Temperature sensor channel"""
    RED = "red"
    BLUE = "blue"
    GREEN = "green"


class HeaterState(str, Enum):
    """Heater state as reported by the device"""
    OFF = "OFF"
    ON = "ON"
    ONE_ELEMENT_ON = "ONE_ELEMENT_ON"
    BOTH_ELEMENTS_FAULTED = "BOTH_ELEMENTS_FAULTED"


class LinkState(str, Enum):
    """State of the device radio link or the document-store link"""
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"


class BusLinkState(str, Enum):
    """State of the message-bus link"""
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"


class Presence(str, Enum):
    """Device presence derived from the bus last-will topic"""
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"


@dataclass(frozen=True)
class Temperatures:
    """Per-channel readings in degrees Celsius; None means never reported."""
    red: Optional[float] = None
    blue: Optional[float] = None
    green: Optional[float] = None

    @property
    def average(self) -> Optional[float]:
        """Mean of the channels that have reported, derived on every access."""
        values = [v for v in (self.red, self.blue, self.green) if v is not None]
        if not values:
            return None
        return math.fsum(values) / len(values)

    def get(self, channel: Channel) -> Optional[float]:
        return getattr(self, channel.value)


@dataclass(frozen=True)
class Connectivity:
    """Composite of the three independent link states"""
    device_network: LinkState = LinkState.CONNECTING
    cloud_link: LinkState = LinkState.CONNECTING
    bus_link: BusLinkState = BusLinkState.DISCONNECTED


@dataclass(frozen=True)
class ScheduleRule:
    """One daily heating rule"""
    enabled: bool = False
    time: str = "07:00"
    target_temperature: float = 22.0


@dataclass(frozen=True)
class ScheduleSettings:
    """User-authored AM/PM heating schedule"""
    am: ScheduleRule = field(default_factory=lambda: ScheduleRule(time="07:00"))
    pm: ScheduleRule = field(default_factory=lambda: ScheduleRule(time="19:30"))

    def to_document(self) -> Dict[str, Any]:
        """Flat document shape stored under the control collection."""
        return {
            "amEnabled": self.am.enabled,
            "amScheduledTime": self.am.time,
            "amTemperature": self.am.target_temperature,
            "pmEnabled": self.pm.enabled,
            "pmScheduledTime": self.pm.time,
            "pmTemperature": self.pm.target_temperature,
        }

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "ScheduleSettings":
        """Build from the flat document shape; missing keys keep defaults."""
        defaults = cls()
        return cls(
            am=ScheduleRule(
                enabled=bool(data.get("amEnabled", defaults.am.enabled)),
                time=str(data.get("amScheduledTime", defaults.am.time)),
                target_temperature=float(data.get("amTemperature", defaults.am.target_temperature)),
            ),
            pm=ScheduleRule(
                enabled=bool(data.get("pmEnabled", defaults.pm.enabled)),
                time=str(data.get("pmScheduledTime", defaults.pm.time)),
                target_temperature=float(data.get("pmTemperature", defaults.pm.target_temperature)),
            ),
        )


@dataclass(frozen=True)
class DeviceSnapshot:
    """The single current-state record handed to the presentation layer"""
    temperatures: Temperatures = field(default_factory=Temperatures)
    heater_state: Optional[HeaterState] = None
    target_temperature: Optional[float] = None
    connectivity: Connectivity = field(default_factory=Connectivity)
    signal_strength: Optional[int] = None
    uptime_seconds: Optional[int] = None
    presence: Optional[Presence] = None
    last_update_timestamp: Optional[float] = None
    wifi_status: Optional[str] = None
    schedule: Optional[ScheduleSettings] = None
    reboot_count: int = 0
    last_error: Optional[str] = None

    def age_seconds(self, now: float) -> Optional[float]:
        """Seconds since the freshest contributing event, None if nothing arrived."""
        if self.last_update_timestamp is None:
            return None
        return max(0.0, now - self.last_update_timestamp)

    def is_stale(self, now: float, max_age_seconds: float) -> bool:
        age = self.age_seconds(now)
        return age is None or age > max_age_seconds


@dataclass(frozen=True)
class TimeSeriesSample:
    """One point of the in-memory temperature history"""
    timestamp: float
    temperatures: Temperatures
    heater_state: Optional[HeaterState]
    target_temperature: Optional[float]


@dataclass
class PublishResult:
    """Outcome of fanning a command out to both transports"""
    cloud_written: bool = False
    bus_written: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.cloud_written and self.bus_written


def _default_client_id() -> str:
    return f"heater_dashboard_{secrets.token_hex(4)}"


@dataclass
class DashboardConfig:
    """Configuration for a dashboard session"""
    mqtt_broker: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_transport: str = "tcp"
    mqtt_websocket_path: str = "/mqtt"
    mqtt_tls: bool = False
    mqtt_client_id: str = field(default_factory=_default_client_id)
    topic_namespace: str = "esp32"
    presence_namespace: Optional[str] = None
    keepalive: int = 60
    reconnect_period: float = 5.0
    connect_timeout: float = 30.0
    max_connect_attempts: int = 5
    database_url: str = "http://localhost:9000"
    api_key: Optional[str] = None
    control_path: str = "control"
    system_path: str = "system"
    sensors_path: str = "sensors"
    schedule_path: str = "control/schedule"
    target_temperature_path: str = "control/target_temperature"
    status_poll_seconds: float = 120.0
    watch_retry_seconds: float = 5.0
    history_capacity: int = 500
    log_level: str = "INFO"

    @property
    def presence_topic_namespace(self) -> str:
        return self.presence_namespace or self.topic_namespace

    def collection_paths(self) -> Tuple[str, str, str]:
        return (self.sensors_path, self.system_path, self.control_path)
