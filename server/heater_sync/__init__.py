"""
Heater Sync

Reconciles live state of an ESP32 heater controller from an MQTT broker and
a Firebase Realtime Database into one coherent snapshot for a dashboard.
"""

__version__ = "1.0.0"
__author__ = "Heater Dashboard Team"

from .data_models import (
    Channel,
    HeaterState,
    LinkState,
    BusLinkState,
    Presence,
    Temperatures,
    Connectivity,
    DeviceSnapshot,
    TimeSeriesSample,
    ScheduleRule,
    ScheduleSettings,
    PublishResult,
    DashboardConfig
)
from .exceptions import (
    HeaterSyncError,
    TransportConnectError,
    MalformedPayloadError,
    WriteError,
    WritePermissionError,
    TransientWriteError,
    ValidationError,
    StaleEventError
)
from .mqtt_manager import MQTTManager
from .document_store import DocumentStore
from .engine import ReconciliationEngine, TimeSeries
from .schedule import SchedulePublisher
from .bridge import HeaterDashboardBridge

__all__ = [
    "HeaterDashboardBridge",
    "ReconciliationEngine",
    "TimeSeries",
    "MQTTManager",
    "DocumentStore",
    "SchedulePublisher",
    "Channel",
    "HeaterState",
    "LinkState",
    "BusLinkState",
    "Presence",
    "Temperatures",
    "Connectivity",
    "DeviceSnapshot",
    "TimeSeriesSample",
    "ScheduleRule",
    "ScheduleSettings",
    "PublishResult",
    "DashboardConfig",
    "HeaterSyncError",
    "TransportConnectError",
    "MalformedPayloadError",
    "WriteError",
    "WritePermissionError",
    "TransientWriteError",
    "ValidationError",
    "StaleEventError"
]
