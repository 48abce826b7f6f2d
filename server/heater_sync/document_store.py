"""
Document-store client for the heater sync core.

Talks to a Firebase Realtime Database over its REST interface: anonymous
identity from the Identity Toolkit, one-shot ``GET``, full-document ``PUT``
and live watches over the server-sent event stream. Documents are returned
as plain JSON values; ``parse_document`` coerces them into a StoreDocument.
"""

import asyncio
import copy
import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import aiohttp

from .data_models import Channel, LinkState, Presence, ScheduleSettings
from .events import StoreDocument
from .exceptions import (
    MalformedPayloadError,
    TransientWriteError,
    TransportConnectError,
    WritePermissionError,
)
from .timeutils import coerce_epoch_seconds
from .topics import decode_heater_state, decode_uptime

logger = logging.getLogger(__name__)

DEFAULT_AUTH_URL = "https://identitytoolkit.googleapis.com/v1"
DEFAULT_TOKEN_URL = "https://securetoken.googleapis.com/v1"

# Refresh the ID token this long before the store would reject it.
TOKEN_EXPIRY_MARGIN = 60.0

_PERMISSION_STATUSES = (401, 403)


@dataclass
class Identity:
    """Anonymous identity used to scope reads and writes"""
    uid: str
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: float = math.inf

    def expired(self, now: float) -> bool:
        return now >= self.expires_at - TOKEN_EXPIRY_MARGIN


@dataclass(eq=False)
class _Watch:
    path: str
    on_change: Callable[[Any], None]
    active: bool = True
    document: Any = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class DocumentStore:
    """Reads, writes and watches documents in the hierarchical store"""

    def __init__(self, database_url: str,
                 api_key: Optional[str] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 auth_url: str = DEFAULT_AUTH_URL,
                 token_url: str = DEFAULT_TOKEN_URL,
                 request_timeout: Optional[float] = None,
                 watch_retry_seconds: float = 5.0,
                 clock: Callable[[], float] = time.time):
        self.database_url = database_url.rstrip("/")
        self.api_key = api_key
        self.auth_url = auth_url.rstrip("/")
        self.token_url = token_url.rstrip("/")
        self.watch_retry_seconds = watch_retry_seconds
        self._clock = clock
        self._session = session
        self._owns_session = session is None
        self._request_kwargs: Dict[str, Any] = {}
        if request_timeout:
            self._request_kwargs["timeout"] = aiohttp.ClientTimeout(total=request_timeout)

        self.state = LinkState.CONNECTING
        self._identity: Optional[Identity] = None
        self._auth_task: Optional[asyncio.Future] = None
        self._watches: Set[_Watch] = set()
        self._connection_callbacks: List[Callable[[LinkState], None]] = []
        self._error_callbacks: List[Callable[[Exception], None]] = []

    def add_connection_callback(self, callback: Callable[[LinkState], None]):
        """Add callback for store reachability changes"""
        self._connection_callbacks.append(callback)

    def add_error_callback(self, callback: Callable[[Exception], None]):
        """Add callback for failures that happen off the caller's stack (watches)"""
        self._error_callbacks.append(callback)

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    async def authenticate(self) -> Identity:
        """Return a valid identity; concurrent callers share one sign-in"""
        identity = self._identity
        if identity is not None and not identity.expired(self._clock()):
            return identity
        if self._auth_task is None or self._auth_task.done():
            self._auth_task = asyncio.ensure_future(self._sign_in(identity))
        return await asyncio.shield(self._auth_task)

    async def read_once(self, path: str) -> Any:
        """Fetch the document at ``path``; None when absent"""
        identity = await self.authenticate()
        try:
            async with self._get_session().get(
                self._url(path), params=self._params(identity), **self._request_kwargs
            ) as resp:
                resp.raise_for_status()
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._set_state(LinkState.ERROR)
            raise TransportConnectError(f"read of {path!r} failed: {e}") from e
        except ValueError as e:
            self._set_state(LinkState.ERROR)
            raise TransportConnectError(f"read of {path!r} returned a body that is not JSON: {e}") from e

        self._set_state(LinkState.CONNECTED)
        logger.debug(f"Read {path!r}: {data}")
        return data

    async def write(self, path: str, document: Any):
        """Replace the document at ``path``.

        Raises WritePermissionError when the store's rules reject the write
        and TransientWriteError for everything that may clear on retry.
        """
        try:
            identity = await self.authenticate()
        except TransportConnectError as e:
            raise TransientWriteError(str(e), path=path) from e

        try:
            async with self._get_session().put(
                self._url(path), params=self._params(identity), json=document, **self._request_kwargs
            ) as resp:
                if resp.status in _PERMISSION_STATUSES:
                    self._set_state(LinkState.CONNECTED)
                    raise WritePermissionError(
                        f"permission denied writing {path!r}", path=path, status=resp.status
                    )
                if resp.status >= 400:
                    raise TransientWriteError(
                        f"write of {path!r} failed with HTTP {resp.status}", path=path, status=resp.status
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._set_state(LinkState.ERROR)
            raise TransientWriteError(f"write of {path!r} failed: {e}", path=path) from e

        self._set_state(LinkState.CONNECTED)
        logger.info(f"Wrote document at {path!r}")

    def watch(self, path: str, on_change: Callable[[Any], None]) -> Callable[[], None]:
        """Stream changes of ``path`` to ``on_change``; returns the unsubscribe function"""
        watch = _Watch(path=path, on_change=on_change)
        watch.task = asyncio.get_running_loop().create_task(self._run_watch(watch))
        self._watches.add(watch)

        def unsubscribe():
            watch.active = False
            self._watches.discard(watch)
            if watch.task is not None and not watch.task.done():
                watch.task.cancel()

        return unsubscribe

    async def close(self):
        """Cancel all watches and release the HTTP session"""
        watches = list(self._watches)
        self._watches.clear()
        for watch in watches:
            watch.active = False
            if watch.task is not None and not watch.task.done():
                watch.task.cancel()
        await asyncio.gather(*(w.task for w in watches if w.task is not None), return_exceptions=True)
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # Authentication

    async def _sign_in(self, previous: Optional[Identity]) -> Identity:
        if not self.api_key:
            identity = Identity(uid="anonymous")
            self._identity = identity
            return identity

        try:
            identity = None
            if previous is not None and previous.refresh_token:
                try:
                    identity = await self._refresh(previous)
                except aiohttp.ClientResponseError as e:
                    logger.info(f"Token refresh rejected ({e.status}), signing in again")
            if identity is None:
                identity = await self._sign_up()
        except (aiohttp.ClientError, asyncio.TimeoutError, KeyError, ValueError) as e:
            self._set_state(LinkState.ERROR)
            raise TransportConnectError(f"anonymous sign-in failed: {e}") from e

        self._identity = identity
        logger.info(f"Authenticated with document store as {identity.uid}")
        return identity

    async def _sign_up(self) -> Identity:
        async with self._get_session().post(
            f"{self.auth_url}/accounts:signUp",
            params={"key": self.api_key},
            json={"returnSecureToken": True},
            **self._request_kwargs,
        ) as resp:
            resp.raise_for_status()
            body = await resp.json(content_type=None)
        return Identity(
            uid=body["localId"],
            id_token=body["idToken"],
            refresh_token=body.get("refreshToken"),
            expires_at=self._clock() + float(body.get("expiresIn", 3600)),
        )

    async def _refresh(self, previous: Identity) -> Identity:
        async with self._get_session().post(
            f"{self.token_url}/token",
            params={"key": self.api_key},
            data={"grant_type": "refresh_token", "refresh_token": previous.refresh_token},
            **self._request_kwargs,
        ) as resp:
            resp.raise_for_status()
            body = await resp.json(content_type=None)
        return Identity(
            uid=body.get("user_id", previous.uid),
            id_token=body["id_token"],
            refresh_token=body.get("refresh_token", previous.refresh_token),
            expires_at=self._clock() + float(body.get("expires_in", 3600)),
        )

    # Watches

    async def _run_watch(self, watch: _Watch):
        while watch.active:
            try:
                identity = await self.authenticate()
                reconnect_now = await self._stream(watch, identity)
            except (aiohttp.ClientError, asyncio.TimeoutError, TransportConnectError) as e:
                logger.warning(f"Watch on {watch.path!r} interrupted: {e}")
                self._set_state(LinkState.ERROR)
                reconnect_now = False
            if not watch.active:
                break
            if not reconnect_now:
                await asyncio.sleep(self.watch_retry_seconds)
        logger.debug(f"Watch on {watch.path!r} stopped")

    async def _stream(self, watch: _Watch, identity: Identity) -> bool:
        """Consume one event stream; True means reopen immediately"""
        async with self._get_session().get(
            self._url(watch.path),
            params=self._params(identity),
            headers={"Accept": "text/event-stream"},
            timeout=aiohttp.ClientTimeout(total=None, sock_read=None),
        ) as resp:
            if resp.status in _PERMISSION_STATUSES:
                watch.active = False
                self._set_state(LinkState.CONNECTED)
                self._report_error(TransportConnectError(f"permission denied watching {watch.path!r}"))
                return False
            resp.raise_for_status()
            self._set_state(LinkState.CONNECTED)
            logger.info(f"Watching {watch.path!r}")

            event_name: Optional[str] = None
            data_lines: List[str] = []
            corrupt = False
            async for raw in resp.content:
                try:
                    line = raw.decode("utf-8").rstrip("\r\n")
                except UnicodeDecodeError:
                    logger.warning(f"Dropping undecodable stream line on {watch.path!r}")
                    corrupt = True
                    continue
                if not line:
                    if event_name is not None and corrupt:
                        logger.warning(f"Dropping corrupt {event_name} event on {watch.path!r}")
                    elif event_name is not None:
                        keep_reading = self._dispatch(watch, event_name, "\n".join(data_lines))
                        if not keep_reading:
                            return watch.active
                    event_name, data_lines, corrupt = None, [], False
                    continue
                if line.startswith(":"):
                    continue
                key, _, value = line.partition(":")
                if value.startswith(" "):
                    value = value[1:]
                if key == "event":
                    event_name = value
                elif key == "data":
                    data_lines.append(value)

        # Server closed the stream cleanly.
        return False

    def _dispatch(self, watch: _Watch, event_name: str, data_text: str) -> bool:
        if event_name == "keep-alive":
            return True
        if event_name in ("put", "patch"):
            try:
                path, data = decode_change(event_name, data_text)
            except MalformedPayloadError as e:
                logger.warning(f"Dropping {event_name} event on {watch.path!r}: {e}")
                return True
            if event_name == "put":
                watch.document = apply_put(watch.document, path, data)
            else:
                watch.document = apply_patch(watch.document, path, data)
            self._notify_watch(watch)
            return True
        if event_name == "auth_revoked":
            logger.info(f"Credential expired while watching {watch.path!r}, re-authenticating")
            self._identity = None
            return False
        if event_name == "cancel":
            watch.active = False
            self._report_error(TransportConnectError(f"watch on {watch.path!r} cancelled by the store: {data_text}"))
            return False
        logger.debug(f"Ignoring stream event {event_name!r}")
        return True

    def _notify_watch(self, watch: _Watch):
        if not watch.active:
            return
        try:
            watch.on_change(watch.document)
        except Exception as e:
            logger.error(f"Error in watch callback for {watch.path!r}: {e}")

    # Helpers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _url(self, path: str) -> str:
        return f"{self.database_url}/{path.strip('/')}.json"

    @staticmethod
    def _params(identity: Identity) -> Dict[str, str]:
        if identity.id_token:
            return {"auth": identity.id_token}
        return {}

    def _set_state(self, state: LinkState):
        if state == self.state:
            return
        self.state = state
        logger.info(f"Document store link: {state.value}")
        for callback in self._connection_callbacks:
            try:
                callback(state)
            except Exception as e:
                logger.error(f"Error in connection callback: {e}")

    def _report_error(self, error: Exception):
        logger.error(str(error))
        for callback in self._error_callbacks:
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Error in error callback: {e}")


def decode_change(event_name: str, data_text: str) -> Tuple[str, Any]:
    """Parse the data of a put or patch event into (path, data).

    Raises MalformedPayloadError when the message does not have the shape the
    event requires: a string path, and for patch an object of children.
    """
    try:
        message = json.loads(data_text)
    except ValueError:
        raise MalformedPayloadError(f"data is not JSON: {data_text[:80]!r}")
    if not isinstance(message, dict) or not isinstance(message.get("path"), str):
        raise MalformedPayloadError("missing or non-string path")
    data = message.get("data")
    if event_name == "patch":
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise MalformedPayloadError(f"patch data must be an object, got {type(data).__name__}")
    return message["path"], data


def apply_put(document: Any, path: str, data: Any) -> Any:
    """Return ``document`` with ``data`` stored at the relative ``path``"""
    keys = [key for key in path.split("/") if key]
    if not keys:
        return copy.deepcopy(data)
    root = copy.deepcopy(document) if isinstance(document, dict) else {}
    node = root
    for key in keys[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    if data is None:
        node.pop(keys[-1], None)
    else:
        node[keys[-1]] = copy.deepcopy(data)
    return root


def apply_patch(document: Any, path: str, data: Dict[str, Any]) -> Any:
    """Merge the children in ``data`` below ``path``"""
    base = path.rstrip("/")
    for key, value in data.items():
        document = apply_put(document, f"{base}/{key}", value)
    return document


# Document coercion

_WIFI_WORDS = {
    "CONNECTED": LinkState.CONNECTED,
    "CONNECTING": LinkState.CONNECTING,
    "ERROR": LinkState.ERROR,
    "DISCONNECTED": LinkState.ERROR,
    "FAILED": LinkState.ERROR,
}


def _number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _temperatures(data: Dict[str, Any]) -> Dict[Channel, float]:
    readings: Dict[Channel, float] = {}
    nested = data.get("temperature")
    sensors = data.get("sensors") if isinstance(data.get("sensors"), dict) else {}
    for channel in Channel:
        candidates = [
            data.get(f"temperature_{channel.value}"),
            sensors.get(f"temperature_{channel.value}"),
        ]
        if isinstance(nested, dict):
            candidates.insert(0, nested.get(channel.value))
        for candidate in candidates:
            value = _number(candidate)
            if value is not None:
                readings[channel] = value
                break
    return readings


def parse_document(collection: str, raw: Any) -> Optional[StoreDocument]:
    """Coerce a raw document into a StoreDocument; None when absent or not an object.

    Numeric fields are parsed leniently; anything missing or unparseable is
    left as None ("unknown"), never defaulted to zero.
    """
    if not isinstance(raw, dict):
        return None

    wifi = raw.get("wifi")
    wifi_status: Optional[str] = None
    rssi_value = raw.get("rssi")
    if isinstance(wifi, dict):
        wifi_status = wifi.get("status")
        if rssi_value is None:
            rssi_value = wifi.get("rssi")
    elif isinstance(wifi, str):
        wifi_status = wifi
    if wifi_status is not None:
        wifi_status = str(wifi_status).strip() or None
    device_network = _WIFI_WORDS.get(wifi_status.upper()) if wifi_status else None

    heater_raw = _first(raw, "heaterStatus", "heater_status", "heater")
    heater_state = None
    if heater_raw is not None and not isinstance(heater_raw, dict):
        try:
            heater_state = decode_heater_state(heater_raw)
        except MalformedPayloadError as e:
            logger.debug(f"Ignoring heater field in {collection!r}: {e}")

    uptime = None
    uptime_raw = raw.get("uptime")
    if uptime_raw is not None and not isinstance(uptime_raw, bool):
        try:
            uptime = decode_uptime(uptime_raw)
        except MalformedPayloadError as e:
            logger.debug(f"Ignoring uptime field in {collection!r}: {e}")

    rssi = _number(rssi_value)

    presence = None
    status = raw.get("status")
    if isinstance(status, str) and status.lower() in ("online", "offline"):
        presence = Presence.ONLINE if status.lower() == "online" else Presence.OFFLINE

    schedule = None
    schedule_raw = raw.get("schedule") if isinstance(raw.get("schedule"), dict) else None
    if schedule_raw is None and "amEnabled" in raw:
        schedule_raw = raw
    if schedule_raw is not None:
        try:
            schedule = ScheduleSettings.from_document(schedule_raw)
        except (TypeError, ValueError) as e:
            logger.debug(f"Ignoring schedule in {collection!r}: {e}")

    return StoreDocument(
        collection=collection,
        timestamp=coerce_epoch_seconds(_first(raw, "lastUpdated", "last_update", "lastUpdate", "timestamp")),
        temperatures=_temperatures(raw),
        heater_state=heater_state,
        target_temperature=_number(_first(raw, "target_temperature", "targetTemperature")),
        rssi=int(round(rssi)) if rssi is not None else None,
        uptime=uptime,
        wifi_status=wifi_status,
        device_network=device_network,
        presence=presence,
        schedule=schedule,
    )
