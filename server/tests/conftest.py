"""
Test configuration and fixtures for heater sync tests.
"""
import asyncio
import json
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from heater_sync.document_store import DocumentStore, apply_put
from heater_sync.engine import ReconciliationEngine


class FakePahoClient:
    """Stands in for paho's Client; drives callbacks synchronously"""

    def __init__(self, broker: "FakeBroker", client_id: str, userdata: int, transport: str):
        self.broker = broker
        self.client_id = client_id
        self.userdata = userdata
        self.transport = transport
        self.credentials = None
        self.tls = False
        self.ws_options = None
        self.connect_timeout = None
        self.loop_started = False
        self.loop_stopped = False
        self.disconnected = False
        self.subscriptions: List = []
        self.published: List = []
        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None
        self.on_log = None

    def username_pw_set(self, username, password):
        self.credentials = (username, password)

    def ws_set_options(self, path="/mqtt", headers=None):
        self.ws_options = path

    def tls_set(self):
        self.tls = True

    def connect(self, host, port, keepalive):
        if self.broker.unreachable:
            raise ConnectionRefusedError(f"{host}:{port} refused")
        return 0

    def loop_start(self):
        self.loop_started = True
        if self.broker.auto_connack:
            self.ack(refused=self.broker.refuse)

    def loop_stop(self):
        self.loop_stopped = True

    def disconnect(self):
        self.disconnected = True

    def subscribe(self, topics):
        self.subscriptions.extend(topics)
        return (0, 1)

    def publish(self, topic, payload, qos=0, retain=False):
        self.published.append((topic, payload, qos, retain))
        return SimpleNamespace(rc=0)

    # Test helpers

    def ack(self, refused: bool = False):
        self.on_connect(self, self.userdata, {}, SimpleNamespace(is_failure=refused), None)

    def deliver(self, topic: str, payload: str):
        message = SimpleNamespace(topic=topic, payload=payload.encode())
        self.on_message(self, self.userdata, message)

    def drop(self):
        self.on_disconnect(self, self.userdata, {}, SimpleNamespace(is_failure=True), None)


class FakeBroker:
    """Factory for FakePahoClient with switchable broker behaviour"""

    def __init__(self):
        self.clients: List[FakePahoClient] = []
        self.unreachable = False
        self.refuse = False
        self.auto_connack = True

    def factory(self, client_id: str, userdata: int, transport: str) -> FakePahoClient:
        client = FakePahoClient(self, client_id, userdata, transport)
        self.clients.append(client)
        return client

    @property
    def latest(self) -> FakePahoClient:
        return self.clients[-1]


class FakeFirebase:
    """In-process emulation of anonymous sign-in and the realtime database REST API"""

    def __init__(self):
        self.data: Any = None
        self.sign_ups = 0
        self.refreshes = 0
        self.require_auth = False
        self.denied_paths = set()
        self.write_failures: Dict[str, int] = {}
        self.raw_bodies: Dict[str, bytes] = {}
        self.requests: List = []
        self._tokens = set()
        self._streams: Dict[str, List[asyncio.Queue]] = {}

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/v1/accounts:signUp", self.sign_up)
        app.router.add_post("/v1/token", self.refresh)
        app.router.add_route("*", "/db/{path:.*}", self.document)
        return app

    def get(self, path: str) -> Any:
        node = self.data
        for key in [k for k in path.split("/") if k]:
            if not isinstance(node, dict) or key not in node:
                return None
            node = node[key]
        return node

    def set(self, path: str, value: Any):
        self.data = apply_put(self.data, path, value)

    def push(self, path: str, event: str, data: Any):
        """Send an event to every stream watching ``path`` or one of its ancestors"""
        for watched, queues in self._streams.items():
            if path != watched and not path.startswith(f"{watched}/"):
                continue
            relative = path[len(watched):] or "/"
            for queue in queues:
                queue.put_nowait((event, {"path": relative, "data": data}))

    def push_raw(self, path: str, event: str, payload: Any):
        for queue in self._streams.get(path, []):
            queue.put_nowait((event, payload))

    def push_bytes(self, path: str, chunk: bytes):
        """Write ``chunk`` to the stream verbatim"""
        for queue in self._streams.get(path, []):
            queue.put_nowait(chunk)

    def stream_count(self, path: str) -> int:
        return len(self._streams.get(path, []))

    def close_streams(self):
        for queues in self._streams.values():
            for queue in queues:
                queue.put_nowait(None)

    async def sign_up(self, request):
        self.sign_ups += 1
        await asyncio.sleep(0.01)
        token = f"id-token-{self.sign_ups}"
        self._tokens.add(token)
        return web.json_response({
            "localId": f"anon-{self.sign_ups}",
            "idToken": token,
            "refreshToken": f"refresh-{self.sign_ups}",
            "expiresIn": "3600",
        })

    async def refresh(self, request):
        self.refreshes += 1
        form = await request.post()
        token = f"id-token-refreshed-{self.refreshes}"
        self._tokens.add(token)
        return web.json_response({
            "user_id": "anon-1",
            "id_token": token,
            "refresh_token": form["refresh_token"],
            "expires_in": "3600",
        })

    async def document(self, request):
        path = request.match_info["path"]
        if path.endswith(".json"):
            path = path[:-len(".json")]
        path = path.strip("/")
        auth = request.query.get("auth")
        self.requests.append((request.method, path, auth))

        if self.require_auth and auth not in self._tokens:
            return web.json_response({"error": "Permission denied"}, status=401)

        if request.method == "GET":
            if request.headers.get("Accept") == "text/event-stream":
                return await self._stream(request, path)
            if path in self.raw_bodies:
                return web.Response(body=self.raw_bodies[path], content_type="text/html")
            return web.json_response(self.get(path))

        if request.method == "PUT":
            if path in self.denied_paths:
                return web.json_response({"error": "Permission denied"}, status=401)
            if self.write_failures.get(path, 0) > 0:
                self.write_failures[path] -= 1
                return web.json_response({"error": "Service Unavailable"}, status=503)
            body = await request.json()
            self.set(path, body)
            self.push(path, "put", body)
            return web.json_response(body)

        return web.json_response({"error": "Method not allowed"}, status=405)

    async def _stream(self, request, path: str):
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        queue: asyncio.Queue = asyncio.Queue()
        self._streams.setdefault(path, []).append(queue)
        try:
            await self._send(response, "put", {"path": "/", "data": self.get(path)})
            while True:
                item = await queue.get()
                if item is None:
                    break
                if isinstance(item, bytes):
                    await response.write(item)
                else:
                    await self._send(response, *item)
        finally:
            self._streams[path].remove(queue)
        return response

    @staticmethod
    async def _send(response, event: str, data: Any):
        await response.write(f"event: {event}\ndata: {json.dumps(data)}\n\n".encode())


@pytest.fixture
def clock():
    """Controllable epoch clock"""
    state = {"now": 1_700_000_000.0}

    def now() -> float:
        return state["now"]

    now.state = state
    return now


@pytest.fixture
def engine(clock):
    """Fresh reconciliation engine on the test clock."""
    return ReconciliationEngine(clock=clock)


@pytest.fixture
def fake_broker():
    return FakeBroker()


@pytest.fixture
def wait_until():
    """Poll a condition while letting the event loop run."""

    async def _wait(predicate, timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)

    return _wait


@pytest_asyncio.fixture
async def firebase():
    """Running fake Firebase server; yields (fake, base_url)."""
    fake = FakeFirebase()
    server = TestServer(fake.app())
    await server.start_server()
    base_url = str(server.make_url("")).rstrip("/")
    yield fake, base_url
    fake.close_streams()
    await server.close()


@pytest_asyncio.fixture
async def document_store(firebase, clock):
    """DocumentStore pointed at the fake server with anonymous sign-in enabled."""
    fake, base_url = firebase
    store = DocumentStore(
        f"{base_url}/db",
        api_key="test-api-key",
        auth_url=f"{base_url}/v1",
        token_url=f"{base_url}/v1",
        watch_retry_seconds=0.05,
        clock=clock,
    )
    yield store
    await store.close()


@pytest.fixture
def sample_system_document():
    """Telemetry document as the device writes it."""
    return {
        "wifi": "CONNECTED",
        "rssi": -70,
        "uptime": 3600,
        "status": "online",
        "heaterStatus": "ONE_ON",
        "lastUpdated": 1_700_000_010,
    }


@pytest.fixture
def sample_sensors_document():
    return {
        "temperature": {"red": 21.5, "blue": 22.5, "green": 23.5},
        "timestamp": 1_700_000_005,
    }


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


def pytest_collection_modifyitems(config, items):
    """Add markers to tests based on file location."""
    for item in items:
        path = str(item.fspath).replace("\\", "/")
        if "/unit/" in path:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in path:
            item.add_marker(pytest.mark.integration)
