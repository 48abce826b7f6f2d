"""
Message-bus topic contract and payload decoding.

Every inbound message is decoded into exactly one typed event or rejected.
Nothing here guesses: an unknown topic yields None, a payload that does not
fit its topic raises MalformedPayloadError.
"""

import logging
import math
import re
from typing import Any, List, Optional, Tuple

from .data_models import Channel, HeaterState
from .events import (
    BusEvent,
    HeaterStatus,
    LinkTelemetry,
    PresenceEvent,
    TargetTemperature,
    TelemetryField,
    TemperatureReading,
)
from .exceptions import MalformedPayloadError

logger = logging.getLogger(__name__)

TEMPERATURE_PREFIX = "sensors/temperature/"
HEATER_TOPICS = ("system/heater", "system/heaterStatus", "sensors/heaterStatus")
RSSI_TOPIC = "system/wifi_rssi"
UPTIME_TOPIC = "system/uptime"
WIFI_TOPIC = "system/wifi"
TARGET_TOPIC = "control/targetTemperature"
MODE_TOPIC = "control/mode"
SCHEDULE_TOPIC = "control/schedule"
PRESENCE_TOPIC = "system/status"

_HEATER_WORDS = {
    "ON": HeaterState.ON,
    "OFF": HeaterState.OFF,
    "ONE_ON": HeaterState.ONE_ELEMENT_ON,
    "BOTH_BLOWN": HeaterState.BOTH_ELEMENTS_FAULTED,
    "ONE_ELEMENT_ON": HeaterState.ONE_ELEMENT_ON,
    "BOTH_ELEMENTS_FAULTED": HeaterState.BOTH_ELEMENTS_FAULTED,
    # legacy boolean encodings
    "TRUE": HeaterState.ON,
    "FALSE": HeaterState.OFF,
    "1": HeaterState.ON,
    "0": HeaterState.OFF,
}

_UPTIME_CLOCK = re.compile(r"^(\d+):([0-5]\d):([0-5]\d)$")


def decode_float(text: str) -> float:
    """Parse a decimal reading, rejecting blanks and non-finite values."""
    try:
        value = float(text)
    except (TypeError, ValueError):
        raise MalformedPayloadError(f"not a number: {text!r}")
    if not math.isfinite(value):
        raise MalformedPayloadError(f"non-finite number: {text!r}")
    return value


def decode_heater_state(value: Any) -> HeaterState:
    """Map the device's heater encodings (including legacy booleans) to HeaterState."""
    if isinstance(value, bool):
        return HeaterState.ON if value else HeaterState.OFF
    if isinstance(value, HeaterState):
        return value
    state = _HEATER_WORDS.get(str(value).strip().upper())
    if state is None:
        raise MalformedPayloadError(f"unknown heater state: {value!r}")
    return state


def decode_uptime(value: Any) -> int:
    """Uptime arrives either as integer seconds or as ``HH:MM:SS``."""
    text = str(value).strip()
    match = _UPTIME_CLOCK.match(text)
    if match:
        hours, minutes, seconds = (int(part) for part in match.groups())
        return hours * 3600 + minutes * 60 + seconds
    seconds_value = decode_float(text)
    if seconds_value < 0:
        raise MalformedPayloadError(f"negative uptime: {text!r}")
    return int(seconds_value)


def decode_rssi(value: Any) -> int:
    return int(round(decode_float(str(value).strip())))


class TopicMap:
    """Builds and parses topics for one device namespace"""

    def __init__(self, namespace: str = "esp32", presence_namespace: Optional[str] = None):
        self.namespace = namespace.strip("/")
        self.presence_namespace = (presence_namespace or namespace).strip("/")

    def subscriptions(self) -> List[Tuple[str, int]]:
        """Fixed topic set subscribed on every successful connect"""
        ns = self.namespace
        topics = [(f"{ns}/{TEMPERATURE_PREFIX}{channel.value}", 0) for channel in Channel]
        topics += [(f"{ns}/{topic}", 1) for topic in HEATER_TOPICS]
        topics += [
            (f"{ns}/{RSSI_TOPIC}", 0),
            (f"{ns}/{UPTIME_TOPIC}", 0),
            (f"{ns}/{WIFI_TOPIC}", 1),
            (f"{ns}/{TARGET_TOPIC}", 1),
            (f"{self.presence_namespace}/{PRESENCE_TOPIC}", 1),
        ]
        return topics

    def topic(self, suffix: str) -> str:
        return f"{self.namespace}/{suffix}"

    def schedule_field(self, period: str, name: str) -> str:
        return f"{self.namespace}/{SCHEDULE_TOPIC}/{period}/{name}"

    def parse(self, topic: str, payload: bytes, timestamp: float) -> Optional[BusEvent]:
        """Decode one inbound message.

        Returns None for topics outside the contract. Raises
        MalformedPayloadError when the payload does not fit its topic.
        """
        try:
            text = payload.decode("utf-8").strip()
        except UnicodeDecodeError:
            raise MalformedPayloadError(f"payload on {topic} is not UTF-8")

        if topic == f"{self.presence_namespace}/{PRESENCE_TOPIC}":
            word = text.lower()
            if word not in ("online", "offline"):
                raise MalformedPayloadError(f"unknown presence value: {text!r}")
            return PresenceEvent(online=(word == "online"), timestamp=timestamp)

        prefix = f"{self.namespace}/"
        if not topic.startswith(prefix):
            return None
        suffix = topic[len(prefix):]

        if suffix.startswith(TEMPERATURE_PREFIX):
            try:
                channel = Channel(suffix[len(TEMPERATURE_PREFIX):])
            except ValueError:
                return None
            return TemperatureReading(channel=channel, value=decode_float(text), timestamp=timestamp)

        if suffix in HEATER_TOPICS:
            return HeaterStatus(state=decode_heater_state(text), timestamp=timestamp)

        if suffix == TARGET_TOPIC:
            return TargetTemperature(value=decode_float(text), timestamp=timestamp)

        if suffix == RSSI_TOPIC:
            return LinkTelemetry(field=TelemetryField.RSSI, value=decode_rssi(text), timestamp=timestamp)

        if suffix == UPTIME_TOPIC:
            return LinkTelemetry(field=TelemetryField.UPTIME, value=decode_uptime(text), timestamp=timestamp)

        if suffix == WIFI_TOPIC:
            if not text:
                raise MalformedPayloadError("empty wifi status")
            return LinkTelemetry(field=TelemetryField.WIFI, value=text, timestamp=timestamp)

        return None
