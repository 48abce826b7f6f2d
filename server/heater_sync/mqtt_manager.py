"""
MQTT client management for the heater sync core.

paho runs its network loop on its own thread. Every paho callback is handed
back to the asyncio loop with ``call_soon_threadsafe`` and tagged with the
generation of the client that produced it, so the engine only ever sees
callbacks from the current client, on the loop thread.
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

import paho.mqtt.client as mqtt

from .data_models import BusLinkState
from .events import BusEvent
from .exceptions import MalformedPayloadError, TransportConnectError
from .topics import TopicMap

logger = logging.getLogger(__name__)

EventCallback = Callable[[BusEvent], None]
ConnectivityCallback = Callable[[BusLinkState], None]
ErrorCallback = Callable[[TransportConnectError], None]


def paho_client_factory(client_id: str, userdata: int, transport: str) -> mqtt.Client:
    """Create the underlying paho client for one connection attempt"""
    return mqtt.Client(
        mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id,
        userdata=userdata,
        transport=transport,
    )


class MQTTManager:
    """Owns one long-lived broker session with a bounded reconnect policy"""

    def __init__(self, broker: str, port: int = 1883,
                 username: Optional[str] = None,
                 password: Optional[str] = None,
                 client_id: str = "heater_dashboard",
                 topics: Optional[TopicMap] = None,
                 transport: str = "tcp",
                 websocket_path: str = "/mqtt",
                 use_tls: bool = False,
                 keepalive: int = 60,
                 reconnect_period: float = 5.0,
                 connect_timeout: float = 30.0,
                 max_attempts: int = 5,
                 client_factory: Callable[[str, int, str], Any] = paho_client_factory,
                 clock: Callable[[], float] = time.time):
        self.broker = broker
        self.port = port
        self.username = username
        self.password = password
        self.client_id = client_id
        self.topics = topics or TopicMap()
        self.transport = transport
        self.websocket_path = websocket_path
        self.use_tls = use_tls
        self.keepalive = keepalive
        self.reconnect_period = reconnect_period
        self.connect_timeout = connect_timeout
        self.max_attempts = max_attempts
        self._client_factory = client_factory
        self._clock = clock

        self.state = BusLinkState.DISCONNECTED
        self.attempts = 0
        self.last_error: Optional[str] = None
        self.messages_received = 0
        self.messages_dropped = 0

        self._client = None
        self._generation = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._session_task: Optional[asyncio.Task] = None
        self._connack: Optional[asyncio.Future] = None
        self._on_event: Optional[EventCallback] = None
        self._on_connectivity: Optional[ConnectivityCallback] = None
        self._on_error: Optional[ErrorCallback] = None

    @property
    def connected(self) -> bool:
        return self.state == BusLinkState.CONNECTED

    @property
    def terminal(self) -> bool:
        """True once the retry cap was hit and automatic retry stopped"""
        return (self.state == BusLinkState.ERROR
                and self.attempts >= self.max_attempts
                and (self._session_task is None or self._session_task.done()))

    async def connect(self, on_event: EventCallback,
                      on_connectivity: Optional[ConnectivityCallback] = None,
                      on_error: Optional[ErrorCallback] = None):
        """Start a broker session; a no-op while one is already running"""
        self._on_event = on_event
        self._on_connectivity = on_connectivity
        self._on_error = on_error

        if self._session_task is not None and not self._session_task.done():
            logger.debug("MQTT session already in progress")
            return
        if self.connected:
            return

        self._loop = asyncio.get_running_loop()
        self.attempts = 0
        self._session_task = self._loop.create_task(self._run_session())
        logger.info(f"Connecting to MQTT broker at {self.broker}:{self.port}")

    async def reconnect(self):
        """Drop the current session and start a fresh one (explicit user retry)"""
        if self._on_event is None:
            raise RuntimeError("reconnect() called before connect()")
        callbacks = (self._on_event, self._on_connectivity, self._on_error)
        await self._teardown()
        self.state = BusLinkState.DISCONNECTED
        await self.connect(*callbacks)

    async def disconnect(self):
        """Release the session; safe to call repeatedly and from torn-down callers"""
        self._on_event = None
        self._on_connectivity = None
        self._on_error = None
        await self._teardown()
        self.state = BusLinkState.DISCONNECTED

    async def publish(self, topic: str, payload: Any, qos: int = 0, retain: bool = False) -> bool:
        """Fire-and-forget publish; False immediately when not connected"""
        if not self.connected or self._client is None:
            logger.warning(f"Cannot publish to {topic} - not connected to broker")
            return False

        if isinstance(payload, (dict, list)):
            message = json.dumps(payload)
        else:
            message = str(payload)

        try:
            result = self._client.publish(topic, message, qos, retain)
        except Exception as e:
            logger.error(f"Error publishing to {topic}: {e}")
            return False

        if result.rc == mqtt.MQTT_ERR_SUCCESS:
            logger.debug(f"Published to {topic}: {message}")
            return True
        logger.error(f"Failed to publish to {topic}: {result.rc}")
        return False

    def status_report(self) -> Dict[str, Any]:
        """Connection diagnostics for the dashboard's connection test"""
        return {
            "broker": f"{self.broker}:{self.port}",
            "transport": self.transport,
            "state": self.state.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "terminal": self.terminal,
            "last_error": self.last_error,
            "messages_received": self.messages_received,
            "messages_dropped": self.messages_dropped,
        }

    # Session lifecycle (loop thread)

    async def _run_session(self):
        while True:
            self.attempts += 1
            self._set_state(BusLinkState.CONNECTING)
            try:
                await asyncio.wait_for(self._attempt(), timeout=self.connect_timeout)
            except (OSError, asyncio.TimeoutError, TransportConnectError, ValueError) as e:
                self.last_error = str(e) or e.__class__.__name__
                logger.warning(
                    f"MQTT connect attempt {self.attempts}/{self.max_attempts} failed: {self.last_error}"
                )
                await self._release_client()
                self._set_state(BusLinkState.ERROR)
                if self.attempts >= self.max_attempts:
                    break
                await asyncio.sleep(self.reconnect_period)
                continue

            self.attempts = 0
            self.last_error = None
            self._set_state(BusLinkState.CONNECTED)
            logger.info("Connected to MQTT broker")
            return

        message = f"MQTT broker unreachable after {self.attempts} attempts; automatic retry stopped"
        logger.error(message)
        self._report_error(TransportConnectError(message, attempts=self.attempts, terminal=True))

    async def _attempt(self):
        self._generation += 1
        token = self._generation
        client = self._client_factory(self.client_id, token, self.transport)
        self._client = client

        if self.username and self.password:
            client.username_pw_set(self.username, self.password)
        if self.transport == "websockets":
            client.ws_set_options(path=self.websocket_path)
        if self.use_tls:
            client.tls_set()
        client.connect_timeout = self.connect_timeout

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_log = self._on_log

        self._connack = self._loop.create_future()
        await self._loop.run_in_executor(None, client.connect, self.broker, self.port, self.keepalive)
        client.loop_start()

        reason_code = await self._connack
        if reason_code.is_failure:
            raise TransportConnectError(f"broker refused connection: {reason_code}")

        subscriptions = self.topics.subscriptions()
        client.subscribe(subscriptions)
        for topic, qos in subscriptions:
            logger.debug(f"Subscribed to {topic} (qos {qos})")

    async def _restart_session(self):
        await self._release_client()
        self.attempts = 0
        await self._run_session()

    async def _teardown(self):
        # Invalidate every callback already queued from the old client.
        self._generation += 1
        task = self._session_task
        self._session_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._release_client()

    async def _release_client(self):
        client = self._client
        self._client = None
        if self._connack is not None and not self._connack.done():
            self._connack.cancel()
        self._connack = None
        if client is None:
            return
        loop = self._loop or asyncio.get_running_loop()
        await loop.run_in_executor(None, self._stop_client, client)

    @staticmethod
    def _stop_client(client):
        try:
            client.disconnect()
            client.loop_stop()
        except Exception as e:
            logger.debug(f"Ignoring error while stopping MQTT client: {e}")

    def _set_state(self, state: BusLinkState):
        if state == self.state:
            return
        self.state = state
        if self._on_connectivity is None:
            return
        try:
            self._on_connectivity(state)
        except Exception as e:
            logger.error(f"Error in connectivity callback: {e}")

    def _report_error(self, error: TransportConnectError):
        if self._on_error is None:
            return
        try:
            self._on_error(error)
        except Exception as e:
            logger.error(f"Error in error callback: {e}")

    # paho callbacks (network thread)

    def _threadsafe(self, callback, *args):
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(callback, *args)

    def _on_log(self, client, userdata, level, buf):
        """MQTT client logging callback"""
        logger.debug(f"MQTT: {buf}")

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        self._threadsafe(self._handle_connack, userdata, reason_code)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        self._threadsafe(self._handle_disconnect, userdata, reason_code)

    def _on_message(self, client, userdata, msg):
        self._threadsafe(self._handle_message, userdata, msg.topic, bytes(msg.payload))

    # Handlers (loop thread)

    def _handle_connack(self, token: int, reason_code):
        if token != self._generation:
            logger.debug("Dropping CONNACK from superseded MQTT client")
            return
        if self._connack is not None and not self._connack.done():
            self._connack.set_result(reason_code)

    def _handle_disconnect(self, token: int, reason_code):
        if token != self._generation:
            return
        if self._connack is not None and not self._connack.done():
            self._connack.set_exception(
                TransportConnectError(f"connection closed before CONNACK: {reason_code}")
            )
            return
        if not self.connected:
            return

        logger.warning(f"Disconnected from MQTT broker ({reason_code}), reconnecting")
        self._generation += 1
        self._set_state(BusLinkState.CONNECTING)
        self._session_task = self._loop.create_task(self._restart_session())

    def _handle_message(self, token: int, topic: str, payload: bytes):
        if token != self._generation:
            return
        self.messages_received += 1
        try:
            event = self.topics.parse(topic, payload, self._clock())
        except MalformedPayloadError as e:
            self.messages_dropped += 1
            logger.warning(f"Dropping malformed message on {topic}: {e}")
            return
        if event is None:
            logger.debug(f"No handler for topic: {topic}")
            return
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception as e:
            logger.error(f"Error in message handler for {topic}: {e}")
