"""
Fans user commands (heating schedule, set-point, mode) out to both transports.

The document-store write and the bus publish are independent side effects:
the second is attempted whatever happened to the first, and the returned
PublishResult says exactly which landed.
"""

import logging
import math
import re
from typing import Any, List, Optional, Tuple

from .data_models import PublishResult, ScheduleRule, ScheduleSettings
from .document_store import DocumentStore
from .engine import ReconciliationEngine
from .exceptions import TransientWriteError, ValidationError, WritePermissionError
from .mqtt_manager import MQTTManager
from .topics import MODE_TOPIC, SCHEDULE_TOPIC, TARGET_TOPIC

logger = logging.getLogger(__name__)

MIN_TEMPERATURE = 5.0
MAX_TEMPERATURE = 50.0
HEATER_MODES = ("auto", "manual")

_TIME_OF_DAY = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def validate_temperature(value: Any, field: str = "temperature") -> float:
    """Reject anything that is not a finite number in [5, 50] degrees C"""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{field} must be a number", field=field)
    if not math.isfinite(value) or not MIN_TEMPERATURE <= value <= MAX_TEMPERATURE:
        raise ValidationError(
            f"{field} must be between {MIN_TEMPERATURE:g} and {MAX_TEMPERATURE:g} °C, got {value}",
            field=field,
        )
    return float(value)


def validate_time(value: Any, field: str = "time") -> str:
    if not isinstance(value, str) or not _TIME_OF_DAY.match(value):
        raise ValidationError(f"{field} must be a 24-hour HH:MM time, got {value!r}", field=field)
    return value


def validate_schedule(schedule: ScheduleSettings):
    """Validate both rules; enabled or not, both are sent"""
    for period, rule in (("am", schedule.am), ("pm", schedule.pm)):
        validate_time(rule.time, field=f"{period}Time")
        validate_temperature(rule.target_temperature, field=f"{period}Temperature")


class SchedulePublisher:
    """Validates commands and writes them to the store and the bus"""

    def __init__(self, store: DocumentStore, mqtt: MQTTManager,
                 engine: Optional[ReconciliationEngine] = None,
                 schedule_path: str = "control/schedule",
                 target_path: str = "control/target_temperature",
                 transient_retries: int = 1):
        self.store = store
        self.mqtt = mqtt
        self.engine = engine
        self.schedule_path = schedule_path
        self.target_path = target_path
        self.transient_retries = transient_retries

    async def publish(self, schedule: ScheduleSettings) -> PublishResult:
        """Validate and send a schedule; raises ValidationError before any I/O"""
        validate_schedule(schedule)
        if self.engine is not None:
            self.engine.apply_local_schedule(schedule)

        result = PublishResult()
        await self._write_cloud(self.schedule_path, schedule.to_document(), result)
        result.bus_written = await self._publish_all(self.bus_messages(schedule))
        self._note_bus_failure(result)

        logger.info(f"Schedule published (cloud={result.cloud_written}, bus={result.bus_written})")
        return result

    async def publish_target_temperature(self, value: float) -> PublishResult:
        """Validate and send a new set-point"""
        target = validate_temperature(value, field="targetTemperature")
        if self.engine is not None:
            self.engine.apply_local_target_temperature(target)

        result = PublishResult()
        await self._write_cloud(self.target_path, target, result)
        result.bus_written = await self.mqtt.publish(self.mqtt.topics.topic(TARGET_TOPIC), str(target), qos=1)
        self._note_bus_failure(result)

        logger.info(f"Target temperature {target} published (cloud={result.cloud_written}, bus={result.bus_written})")
        return result

    async def publish_mode(self, mode: str) -> bool:
        """Switch the heater between automatic and manual control (bus only)"""
        if mode not in HEATER_MODES:
            raise ValidationError(f"mode must be one of {', '.join(HEATER_MODES)}, got {mode!r}", field="mode")
        return await self.mqtt.publish(self.mqtt.topics.topic(MODE_TOPIC), mode, qos=1)

    def bus_messages(self, schedule: ScheduleSettings) -> List[Tuple[str, Any]]:
        """One structured message plus flattened scalar fields per rule"""
        topics = self.mqtt.topics
        messages: List[Tuple[str, Any]] = [(topics.topic(SCHEDULE_TOPIC), schedule.to_document())]
        for period, rule in (("am", schedule.am), ("pm", schedule.pm)):
            messages.extend(self._rule_messages(period, rule))
        return messages

    def _rule_messages(self, period: str, rule: ScheduleRule) -> List[Tuple[str, Any]]:
        topics = self.mqtt.topics
        return [
            (topics.schedule_field(period, "time"), rule.time),
            (topics.schedule_field(period, "temperature"), str(float(rule.target_temperature))),
            (topics.schedule_field(period, "enabled"), "true" if rule.enabled else "false"),
        ]

    async def _publish_all(self, messages: List[Tuple[str, Any]]) -> bool:
        results = []
        for topic, payload in messages:
            results.append(await self.mqtt.publish(topic, payload, qos=1))
        return all(results)

    async def _write_cloud(self, path: str, document: Any, result: PublishResult):
        attempts = 1 + max(0, self.transient_retries)
        for attempt in range(1, attempts + 1):
            try:
                await self.store.write(path, document)
            except WritePermissionError as e:
                logger.error(f"Write to {path!r} rejected: {e}")
                result.error = (f"Permission denied writing {path!r}; "
                                "check the dashboard credentials and database rules")
                return
            except TransientWriteError as e:
                logger.warning(f"Write to {path!r} failed (attempt {attempt}/{attempts}): {e}")
                result.error = str(e)
                continue
            result.cloud_written = True
            result.error = None
            return

    @staticmethod
    def _note_bus_failure(result: PublishResult):
        if not result.bus_written and result.error is None:
            result.error = "Message bus not connected; command not delivered to the device"
