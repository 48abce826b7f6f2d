"""
Unit tests for topic parsing and payload decoding.
"""
import pytest

from heater_sync.data_models import Channel, HeaterState
from heater_sync.events import (
    HeaterStatus,
    LinkTelemetry,
    PresenceEvent,
    TargetTemperature,
    TelemetryField,
    TemperatureReading,
)
from heater_sync.exceptions import MalformedPayloadError
from heater_sync.topics import TopicMap, decode_heater_state, decode_uptime


class TestTopicMap:
    """Test cases for TopicMap."""

    @pytest.fixture
    def topics(self):
        return TopicMap("esp32")

    def test_subscriptions(self, topics):
        """Test the fixed subscription set and its QoS levels."""
        subs = dict(topics.subscriptions())

        assert subs["esp32/sensors/temperature/red"] == 0
        assert subs["esp32/sensors/temperature/blue"] == 0
        assert subs["esp32/sensors/temperature/green"] == 0
        assert subs["esp32/system/heater"] == 1
        assert subs["esp32/system/wifi_rssi"] == 0
        assert subs["esp32/system/uptime"] == 0
        assert subs["esp32/system/wifi"] == 1
        assert subs["esp32/control/targetTemperature"] == 1
        assert subs["esp32/system/status"] == 1

    def test_separate_presence_namespace(self):
        """Test that the last-will topic can live in another namespace."""
        topics = TopicMap("esp32", presence_namespace="devices/heater")
        assert ("devices/heater/system/status", 1) in topics.subscriptions()

        event = topics.parse("devices/heater/system/status", b"offline", 5.0)
        assert event == PresenceEvent(online=False, timestamp=5.0)

    def test_parse_temperature(self, topics):
        """Test temperature readings."""
        event = topics.parse("esp32/sensors/temperature/red", b"21.4", 100.0)
        assert event == TemperatureReading(channel=Channel.RED, value=21.4, timestamp=100.0)

    @pytest.mark.parametrize("payload", [b"NaN", b"", b"abc", b"inf", b"  "])
    def test_parse_temperature_malformed(self, topics, payload):
        """Test that non-numeric and non-finite readings are rejected."""
        with pytest.raises(MalformedPayloadError):
            topics.parse("esp32/sensors/temperature/blue", payload, 100.0)

    def test_parse_non_utf8(self, topics):
        with pytest.raises(MalformedPayloadError):
            topics.parse("esp32/sensors/temperature/blue", b"\xff\xfe", 100.0)

    @pytest.mark.parametrize("topic", [
        "esp32/system/heater",
        "esp32/system/heaterStatus",
        "esp32/sensors/heaterStatus",
    ])
    def test_parse_heater_topics(self, topics, topic):
        """Test the heater status topic and its legacy aliases."""
        event = topics.parse(topic, b"ONE_ON", 1.0)
        assert event == HeaterStatus(state=HeaterState.ONE_ELEMENT_ON, timestamp=1.0)

    def test_parse_target_temperature(self, topics):
        event = topics.parse("esp32/control/targetTemperature", b"22.5", 3.0)
        assert event == TargetTemperature(value=22.5, timestamp=3.0)

    def test_parse_telemetry(self, topics):
        """Test rssi, uptime and wifi telemetry."""
        assert topics.parse("esp32/system/wifi_rssi", b"-55", 1.0) == LinkTelemetry(
            field=TelemetryField.RSSI, value=-55, timestamp=1.0
        )
        assert topics.parse("esp32/system/uptime", b"01:02:03", 1.0) == LinkTelemetry(
            field=TelemetryField.UPTIME, value=3723, timestamp=1.0
        )
        assert topics.parse("esp32/system/wifi", b"CONNECTED", 1.0) == LinkTelemetry(
            field=TelemetryField.WIFI, value="CONNECTED", timestamp=1.0
        )

    def test_parse_empty_wifi(self, topics):
        with pytest.raises(MalformedPayloadError):
            topics.parse("esp32/system/wifi", b"", 1.0)

    def test_parse_presence(self, topics):
        """Test last-will presence values, case-insensitively."""
        assert topics.parse("esp32/system/status", b"ONLINE", 2.0) == PresenceEvent(online=True, timestamp=2.0)
        assert topics.parse("esp32/system/status", b"offline", 2.0) == PresenceEvent(online=False, timestamp=2.0)
        with pytest.raises(MalformedPayloadError):
            topics.parse("esp32/system/status", b"sleeping", 2.0)

    def test_unknown_topics_ignored(self, topics):
        """Test that topics outside the contract yield no event."""
        assert topics.parse("other/sensors/temperature/red", b"21.0", 1.0) is None
        assert topics.parse("esp32/sensors/temperature/purple", b"21.0", 1.0) is None
        assert topics.parse("esp32/control/unknown", b"1", 1.0) is None

    def test_schedule_topics(self, topics):
        assert topics.topic("control/mode") == "esp32/control/mode"
        assert topics.schedule_field("am", "time") == "esp32/control/schedule/am/time"


class TestDecoders:
    """Test cases for the payload decoders."""

    @pytest.mark.parametrize("value,expected", [
        ("ON", HeaterState.ON),
        ("off", HeaterState.OFF),
        ("ONE_ON", HeaterState.ONE_ELEMENT_ON),
        ("BOTH_BLOWN", HeaterState.BOTH_ELEMENTS_FAULTED),
        ("1", HeaterState.ON),
        ("0", HeaterState.OFF),
        ("true", HeaterState.ON),
        (True, HeaterState.ON),
        (False, HeaterState.OFF),
    ])
    def test_decode_heater_state(self, value, expected):
        assert decode_heater_state(value) == expected

    def test_decode_heater_state_unknown(self):
        with pytest.raises(MalformedPayloadError):
            decode_heater_state("WARM")

    def test_decode_uptime(self):
        """Test both uptime encodings."""
        assert decode_uptime("3600") == 3600
        assert decode_uptime(12.7) == 12
        assert decode_uptime("100:00:00") == 360000
        with pytest.raises(MalformedPayloadError):
            decode_uptime("-5")
        with pytest.raises(MalformedPayloadError):
            decode_uptime("soon")
