"""
Dashboard session coordinator

Wires the MQTT manager and the document store into one reconciliation
engine, runs the background tasks of a session, and exposes the commands
and snapshot accessors the presentation layer uses.
"""

import asyncio
import logging
import time
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple

from .data_models import (
    BusLinkState,
    DashboardConfig,
    DeviceSnapshot,
    LinkState,
    PublishResult,
    ScheduleSettings,
    TimeSeriesSample,
)
from .document_store import DocumentStore, parse_document
from .engine import ReconciliationEngine
from .events import ConnectivityChange, Link, TransportFailure
from .exceptions import TransportConnectError
from .mqtt_manager import MQTTManager
from .schedule import SchedulePublisher
from .timeutils import format_age, utc_isoformat
from .topics import TopicMap

logger = logging.getLogger(__name__)


class HeaterDashboardBridge:
    """Main session coordinator class"""

    def __init__(self, config: DashboardConfig,
                 mqtt: Optional[MQTTManager] = None,
                 store: Optional[DocumentStore] = None,
                 engine: Optional[ReconciliationEngine] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self._clock = clock

        self.engine = engine or ReconciliationEngine(history_capacity=config.history_capacity, clock=clock)
        self.mqtt = mqtt or MQTTManager(
            config.mqtt_broker,
            config.mqtt_port,
            config.mqtt_username,
            config.mqtt_password,
            client_id=config.mqtt_client_id,
            topics=TopicMap(config.topic_namespace, config.presence_topic_namespace),
            transport=config.mqtt_transport,
            websocket_path=config.mqtt_websocket_path,
            use_tls=config.mqtt_tls,
            keepalive=config.keepalive,
            reconnect_period=config.reconnect_period,
            connect_timeout=config.connect_timeout,
            max_attempts=config.max_connect_attempts,
            clock=clock,
        )
        self.store = store or DocumentStore(
            config.database_url,
            api_key=config.api_key,
            watch_retry_seconds=config.watch_retry_seconds,
            clock=clock,
        )
        self.publisher = SchedulePublisher(
            self.store,
            self.mqtt,
            self.engine,
            schedule_path=config.schedule_path,
            target_path=config.target_temperature_path,
        )

        # State
        self.running = False
        self._background_tasks: List[asyncio.Task] = []
        self._unsubscribes: List[Callable[[], None]] = []
        self._setup_event_handlers()

    def _setup_event_handlers(self):
        """Route adapter notifications into the engine"""
        self.store.add_connection_callback(self._on_cloud_connectivity)
        self.store.add_error_callback(self._on_cloud_error)

    async def start(self):
        """Start the session"""
        if self.running:
            logger.warning("Session already running")
            return

        logger.info("Starting heater dashboard session...")
        self.running = True

        await self.mqtt.connect(
            on_event=self.engine.process,
            on_connectivity=self._on_bus_connectivity,
            on_error=self._on_bus_error,
        )

        self._background_tasks.append(asyncio.create_task(self._cloud_task()))
        if self.config.status_poll_seconds > 0:
            self._background_tasks.append(asyncio.create_task(self._status_poll_task()))

        logger.info("Session background tasks started")

    async def stop(self):
        """Stop the session; the last snapshot stays readable"""
        logger.info("Stopping heater dashboard session...")
        self.running = False

        for task in self._background_tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks = []

        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes = []

        await self.mqtt.disconnect()
        await self.store.close()
        self.engine.process(ConnectivityChange(Link.BUS, BusLinkState.DISCONNECTED))

    # Background tasks

    async def _cloud_task(self):
        """Authenticate, load the initial documents, then keep live watches open"""
        while self.running:
            try:
                await self.store.authenticate()
                await self._load_initial_documents()
                break
            except TransportConnectError as e:
                logger.warning(f"Document store unavailable: {e}")
                self.engine.process(TransportFailure(Link.CLOUD, str(e)))
                await asyncio.sleep(self.config.watch_retry_seconds)

        if not self.running:
            return
        for path in (self.config.control_path, self.config.sensors_path):
            self._unsubscribes.append(self.store.watch(path, partial(self._on_document, path)))

    async def _load_initial_documents(self):
        for path in self.config.collection_paths():
            raw = await self.store.read_once(path)
            self._on_document(path, raw)

    async def _status_poll_task(self):
        """Periodically re-read the device telemetry document"""
        while self.running:
            await asyncio.sleep(self.config.status_poll_seconds)
            try:
                await self.refresh()
            except TransportConnectError as e:
                logger.warning(f"Status poll failed: {e}")
                self.engine.process(TransportFailure(Link.CLOUD, str(e)))

    async def refresh(self):
        """Fetch the telemetry document now"""
        raw = await self.store.read_once(self.config.system_path)
        self._on_document(self.config.system_path, raw)

    # Adapter callbacks

    def _on_document(self, path: str, raw: Any):
        doc = parse_document(path, raw)
        if doc is None:
            logger.debug(f"No data at path: {path}")
            return
        self.engine.process(doc)

    def _on_bus_connectivity(self, state: BusLinkState):
        self.engine.process(ConnectivityChange(Link.BUS, state))

    def _on_bus_error(self, error: TransportConnectError):
        self.engine.process(TransportFailure(Link.BUS, str(error), terminal=error.terminal))

    def _on_cloud_connectivity(self, state: LinkState):
        self.engine.process(ConnectivityChange(Link.CLOUD, state))

    def _on_cloud_error(self, error: Exception):
        self.engine.process(TransportFailure(Link.CLOUD, str(error)))

    # Commands

    async def publish_schedule(self, schedule: ScheduleSettings) -> PublishResult:
        return await self.publisher.publish(schedule)

    async def set_target_temperature(self, value: float) -> PublishResult:
        return await self.publisher.publish_target_temperature(value)

    async def set_mode(self, mode: str) -> bool:
        return await self.publisher.publish_mode(mode)

    async def reconnect_bus(self):
        """Explicit retry after the bus gave up reconnecting"""
        logger.info("Manual MQTT reconnect requested")
        await self.mqtt.reconnect()

    # Read side

    def snapshot(self) -> DeviceSnapshot:
        return self.engine.snapshot()

    def series(self) -> Tuple[TimeSeriesSample, ...]:
        return self.engine.series()

    def add_listener(self, listener: Callable[[DeviceSnapshot], None]) -> Callable[[], None]:
        return self.engine.add_listener(listener)

    def test_bus_connection(self) -> Dict[str, Any]:
        """Report whether the bus session is usable"""
        details = self.mqtt.status_report()
        details["timestamp"] = utc_isoformat(self._clock())
        if self.mqtt.connected:
            return {"success": True, "details": details}
        return {
            "success": False,
            "error": details["last_error"] or f"MQTT link is {details['state']}",
            "details": details,
        }

    def connection_report(self) -> Dict[str, Any]:
        """Summary of all links, freshness and recent failures"""
        snapshot = self.engine.snapshot()
        now = self._clock()
        identity = self.store.identity
        return {
            "device_network": snapshot.connectivity.device_network.value,
            "cloud_link": snapshot.connectivity.cloud_link.value,
            "bus_link": snapshot.connectivity.bus_link.value,
            "presence": snapshot.presence.value if snapshot.presence else None,
            "last_update": (utc_isoformat(snapshot.last_update_timestamp)
                            if snapshot.last_update_timestamp is not None else None),
            "age": format_age(snapshot.age_seconds(now)),
            "bus": self.mqtt.status_report(),
            "cloud": {
                "state": self.store.state.value,
                "uid": identity.uid if identity else None,
            },
            "recent_errors": self.engine.errors[-10:],
            "provenance": self.engine.provenance(),
        }
