"""Real-time push channel to the synclink server.

This module provides:
- RealtimeChannel: Reconnecting WebSocket client with an outbound send queue
- ChannelEvent / ChannelEventType: Tagged events delivered to listeners
- ConnectionState: Channel state machine

Architecture:
    Server ─push─► RealtimeChannel ─► listeners (watch command)
                        ▲
    send_message() ─────┘ (queued while not connected)

Frames are JSON objects {"event": name, "data": {...}}. The channel runs
its own asyncio loop in a daemon thread; the public methods are plain
synchronous calls that are safe from any thread. Listeners are invoked
from the channel thread.

On every (re)connect, project subscriptions are re-sent first, then the
messages queued while disconnected are flushed in FIFO order, and only
then does the channel report CONNECTED.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import ssl
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from synclink.client.api import AuthenticationError

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

    from synclink.client.auth import AuthService
    from synclink.core.config import ServerConfig

logger = logging.getLogger(__name__)

DEFAULT_MAX_RECONNECT_ATTEMPTS = 10
DEFAULT_INITIAL_DELAY = 1.0  # seconds
DEFAULT_MAX_DELAY = 30.0  # seconds
DEFAULT_OPEN_TIMEOUT = 30.0  # seconds


class ConnectionState(Enum):
    """Lifecycle of a RealtimeChannel."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class ChannelEventType(Enum):
    """Events delivered to channel listeners.

    Server-pushed events carry their wire name as value.
    """

    FILE_CREATED = "file:created"
    FILE_UPDATED = "file:updated"
    FILE_DELETED = "file:deleted"
    PROJECT_UPDATE = "project:update"
    SYNC_REQUEST = "sync:request"
    NOTIFICATION = "notification"
    MESSAGE = "message"
    # Lifecycle
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


_SERVER_EVENTS = {
    t.value: t
    for t in (
        ChannelEventType.FILE_CREATED,
        ChannelEventType.FILE_UPDATED,
        ChannelEventType.FILE_DELETED,
        ChannelEventType.PROJECT_UPDATE,
        ChannelEventType.SYNC_REQUEST,
        ChannelEventType.NOTIFICATION,
        ChannelEventType.MESSAGE,
    )
}


@dataclass
class ChannelEvent:
    """A channel notification.

    Attributes:
        type: Event kind.
        data: Server payload, or details for lifecycle events.
        name: Wire event name (differs from type.value for unknown server events).
        error: Set for ERROR events.
    """

    type: ChannelEventType
    data: dict[str, Any] = field(default_factory=dict)
    name: str = ""
    error: BaseException | None = None


ChannelListener = Callable[[ChannelEvent], None]


class RealtimeChannel:
    """Reconnecting WebSocket channel for server-pushed updates.

    Usage:
        channel = RealtimeChannel(config.server, auth)
        channel.add_listener(on_event)
        channel.connect("project-id")
        channel.subscribe_to_project("project-id")
        channel.notify_file_change("project-id", "src/a.txt", "update")
        ...
        channel.disconnect()
    """

    def __init__(
        self,
        config: ServerConfig,
        auth: AuthService,
        *,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        open_timeout: float = DEFAULT_OPEN_TIMEOUT,
    ) -> None:
        """Initialize the channel.

        Args:
            config: Server configuration with the WebSocket URL.
            auth: Token provider for the connection.
            max_reconnect_attempts: Failed attempts in a row before giving up.
            initial_delay: First reconnect delay; doubles up to max_delay.
            max_delay: Upper bound for the reconnect delay.
            open_timeout: Timeout for the opening handshake.
        """
        self._config = config
        self._auth = auth
        self._max_attempts = max_reconnect_attempts
        self._initial_delay = initial_delay
        self._max_delay = max_delay
        self._open_timeout = open_timeout

        self._lock = threading.RLock()
        self._state = ConnectionState.DISCONNECTED
        self._project_id: str | None = None
        self._subscriptions: set[str] = set()
        self._send_queue: deque[tuple[str, dict[str, Any]]] = deque()
        self._listeners: list[ChannelListener] = []
        self._connected_event = threading.Event()

        self._ws: ClientConnection | None = None
        self._should_run = False
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_event: asyncio.Event | None = None

    # === Properties ===

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def connected(self) -> bool:
        """Check if currently connected."""
        return self.state is ConnectionState.CONNECTED

    @property
    def project_id(self) -> str | None:
        """Project the connection is scoped to."""
        return self._project_id

    @property
    def subscriptions(self) -> set[str]:
        with self._lock:
            return set(self._subscriptions)

    @property
    def pending_messages(self) -> int:
        """Number of outbound messages waiting for a connection."""
        with self._lock:
            return len(self._send_queue)

    @property
    def ws_url(self) -> str:
        """WebSocket URL including the project scope."""
        url = self._config.ws_url
        if self._project_id:
            url = f"{url}?{urlencode({'projectId': self._project_id})}"
        return url

    # === Listeners ===

    def add_listener(self, listener: ChannelListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: ChannelListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _emit(self, event: ChannelEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Channel listener failed on %s", event.type.value)

    def _set_state(self, state: ConnectionState) -> None:
        with self._lock:
            self._state = state
            if state is ConnectionState.CONNECTED:
                self._connected_event.set()
            else:
                self._connected_event.clear()

    # === Lifecycle ===

    def connect(self, project_id: str | None = None, timeout: float | None = None) -> bool:
        """Start connecting in the background.

        Connecting with a different project scope tears down the current
        connection first. Calling again with the same scope is a no-op.

        Args:
            project_id: Optional project to scope the connection to.
            timeout: Seconds to wait for CONNECTED; don't wait if None.

        Returns:
            True if connected when returning.
        """
        with self._lock:
            running = self._thread is not None and self._thread.is_alive()
            same_scope = project_id is None or project_id == self._project_id

        if running and not same_scope:
            self.disconnect()
            running = False

        if not running:
            with self._lock:
                if project_id is not None:
                    self._project_id = project_id
                self._should_run = True
                self._set_state(ConnectionState.CONNECTING)
                self._thread = threading.Thread(
                    target=self._run_loop,
                    name="RealtimeChannel",
                    daemon=True,
                )
                self._thread.start()
            logger.debug("RealtimeChannel connecting to %s", self._config.ws_url)

        if timeout is not None:
            self._connected_event.wait(timeout)
        return self.connected

    def disconnect(self) -> None:
        """Close the connection and stop reconnecting.

        Queued messages and subscriptions are kept for the next connect().
        """
        with self._lock:
            self._should_run = False
            thread = self._thread
            loop = self._loop

        if loop is not None and loop.is_running():
            with contextlib.suppress(RuntimeError, TimeoutError):
                asyncio.run_coroutine_threadsafe(self._shutdown(), loop).result(timeout=2.0)

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)

        with self._lock:
            self._thread = None
            was = self._state
            self._set_state(ConnectionState.DISCONNECTED)
        if was is not ConnectionState.DISCONNECTED:
            self._emit(ChannelEvent(ChannelEventType.DISCONNECTED, {"reason": "client disconnect"}))
        logger.info("RealtimeChannel disconnected")

    async def _shutdown(self) -> None:
        if self._stop_event:
            self._stop_event.set()
        if self._ws:
            with contextlib.suppress(WebSocketException):
                await self._ws.close()

    def _run_loop(self) -> None:
        """Run the async event loop in a thread."""
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        with self._lock:
            self._loop = loop
        self._stop_event = asyncio.Event()
        try:
            loop.run_until_complete(self._connection_loop())
        finally:
            with self._lock:
                self._loop = None
            loop.close()
            self._stop_event = None

    def _ssl_context(self) -> ssl.SSLContext | None:
        if not self._config.ws_url.startswith("wss://"):
            return None
        context = ssl.create_default_context()
        if not self._config.verify_ssl:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    async def _open(self) -> ClientConnection:
        """Open the WebSocket with a fresh bearer token."""
        loop = asyncio.get_running_loop()
        token = await loop.run_in_executor(None, self._auth.get_access_token)
        return await ws_connect(
            self.ws_url,
            additional_headers={"Authorization": f"Bearer {token}"},
            ssl=self._ssl_context(),
            open_timeout=self._open_timeout,
            close_timeout=5,
        )

    async def _connection_loop(self) -> None:
        """Connect, listen, and reconnect with exponential delay."""
        attempts = 0
        delay = self._initial_delay
        reconnect = False

        while self._should_run:
            try:
                self._ws = await self._open()
            except AuthenticationError as e:
                logger.error("RealtimeChannel authentication failed: %s", e)
                self._emit(ChannelEvent(ChannelEventType.ERROR, error=e))
                break
            except (WebSocketException, OSError, TimeoutError) as e:
                logger.debug("RealtimeChannel connection error: %s", e)
                self._emit(ChannelEvent(ChannelEventType.ERROR, error=e))
            else:
                attempts = 0
                delay = self._initial_delay
                try:
                    await self._on_open(reconnect)
                    reconnect = True
                    await self._listen()
                except ConnectionClosed as e:
                    logger.warning("RealtimeChannel connection lost: %s", e)
                finally:
                    self._ws = None

            if not self._should_run:
                break

            attempts += 1
            if attempts > self._max_attempts:
                logger.error(
                    "RealtimeChannel giving up after %d reconnection attempts",
                    self._max_attempts,
                )
                break

            self._set_state(ConnectionState.RECONNECTING)
            self._emit(
                ChannelEvent(ChannelEventType.RECONNECTING, {"attempt": attempts, "delay": delay})
            )
            logger.info("RealtimeChannel reconnecting in %.0fs (attempt %d)", delay, attempts)
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),  # type: ignore[union-attr]
                    timeout=delay,
                )
                break
            except TimeoutError:
                pass
            delay = min(delay * 2, self._max_delay)

        with self._lock:
            self._should_run = False
            was = self._state
            self._set_state(ConnectionState.DISCONNECTED)
        if was is not ConnectionState.DISCONNECTED:
            self._emit(ChannelEvent(ChannelEventType.DISCONNECTED, {"reason": "stopped"}))

    async def _on_open(self, reconnect: bool) -> None:
        """Restore subscriptions, flush queued messages, then go CONNECTED."""
        assert self._ws is not None
        subscribed: set[str] = set()
        flushed = 0
        while True:
            # CONNECTED is set under the lock, only once nothing is left to send
            with self._lock:
                missing = sorted(self._subscriptions - subscribed)
                if not missing and not self._send_queue:
                    self._set_state(ConnectionState.CONNECTED)
                    break
                item = None if missing else self._send_queue.popleft()

            if item is None:
                await self._ws.send(_encode("subscribe:project", {"projectId": missing[0]}))
                subscribed.add(missing[0])
                continue

            event, data = item
            try:
                await self._ws.send(_encode(event, data))
            except ConnectionClosed:
                with self._lock:
                    self._send_queue.appendleft((event, data))
                raise
            flushed += 1

        if flushed:
            logger.debug("Flushed %d queued messages", flushed)
        logger.info("RealtimeChannel %s", "reconnected" if reconnect else "connected")
        self._emit(ChannelEvent(ChannelEventType.CONNECTED, {"reconnected": reconnect}))

    async def _listen(self) -> None:
        assert self._ws is not None
        async for message in self._ws:
            if isinstance(message, bytes):
                message = message.decode("utf-8")
            self._handle_message(message)
        logger.info("Connection closed by server")

    def _handle_message(self, message: str) -> None:
        """Turn one incoming frame into a ChannelEvent."""
        try:
            frame = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("Invalid message received: %s", message[:100])
            return
        if not isinstance(frame, dict) or "event" not in frame:
            logger.warning("Message without event name: %s", message[:100])
            return

        name = str(frame["event"])
        data = frame.get("data")
        if not isinstance(data, dict):
            data = {"value": data}

        event_type = _SERVER_EVENTS.get(name, ChannelEventType.MESSAGE)
        logger.debug("Received %s event: %s", name, data)
        self._emit(ChannelEvent(event_type, data, name=name))

    # === Outbound ===

    def send_message(self, event: str, data: dict[str, Any]) -> None:
        """Send a message now, or queue it until the channel is connected.

        Queuing triggers a connection attempt if none is running.
        """
        with self._lock:
            loop = self._loop
            if self._state is ConnectionState.CONNECTED and loop is not None:
                asyncio.run_coroutine_threadsafe(self._send_now(event, data), loop)
                return
            self._send_queue.append((event, data))
            idle = self._thread is None or not self._thread.is_alive()
        logger.debug("Message queued (%s)", event)
        if idle:
            self.connect()

    async def _send_now(self, event: str, data: dict[str, Any]) -> None:
        ws = self._ws
        try:
            if ws is None:
                raise ConnectionError("no open connection")
            await ws.send(_encode(event, data))
            logger.debug("Message sent (%s)", event)
        except (ConnectionClosed, ConnectionError) as e:
            logger.debug("Send of %s failed, requeueing: %s", event, e)
            with self._lock:
                self._send_queue.append((event, data))

    def subscribe_to_project(self, project_id: str) -> None:
        """Receive updates for a project, now and after every reconnect."""
        with self._lock:
            self._subscriptions.add(project_id)
            connected = self._state is ConnectionState.CONNECTED
            idle = self._thread is None or not self._thread.is_alive()
        if connected:
            self.send_message("subscribe:project", {"projectId": project_id})
        elif idle:
            self.connect()
        logger.debug("Subscribed to project %s updates", project_id)

    def unsubscribe_from_project(self, project_id: str) -> None:
        with self._lock:
            if project_id not in self._subscriptions:
                return
            self._subscriptions.discard(project_id)
            connected = self._state is ConnectionState.CONNECTED
        if connected:
            self.send_message("unsubscribe:project", {"projectId": project_id})
        logger.debug("Unsubscribed from project %s updates", project_id)

    def notify_file_change(self, project_id: str, path: str, operation: str) -> None:
        """Tell the server about a local change.

        Args:
            project_id: Project ID.
            path: Path relative to the project root.
            operation: "create", "update" or "delete".
        """
        self.send_message(
            "file:change",
            {
                "projectId": project_id,
                "path": path,
                "operation": operation,
                "source": "client",
                "timestamp": int(time.time() * 1000),
            },
        )

    def request_sync(self, project_id: str) -> None:
        """Ask the server to start a sync of the project."""
        self.send_message("sync:request", {"projectId": project_id})


def _encode(event: str, data: dict[str, Any]) -> str:
    return json.dumps({"event": event, "data": data})
