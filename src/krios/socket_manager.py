import enum
import functools
import logging
import threading
import typing as t

import socketio

from krios.config import KriosConfig, get_config
from krios.session import Session
from krios.socket_events import USERS_GET_ONLINE

log = logging.getLogger(__name__)

Handler = t.Callable[[t.Any], None]
ConnectionListener = t.Callable[["ConnectionState"], None]

# values of socketio.Client.reason passed to the disconnect handler
SERVER_DISCONNECT = "server disconnect"
CLIENT_DISCONNECT = "client disconnect"

_AUTH_HINTS = {
    "User not found or inactive": "user may not be synced yet, will retry automatically",
    "Authentication error": "token may be invalid, a fresh token is sent on the next attempt",
}


class ConnectionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"


class SocketManager:
    """Wraps the Socket.IO client: lifecycle, named event fan-out and emit.

    The channel is not room scoped; any number of handlers may subscribe to
    the same event name and all of them receive every payload.

    Parameters
    ----------
    url : str
        Server URL the Socket.IO client connects to.
    session : Session
        Source of the bearer token, read on every connection attempt.
    config : KriosConfig | None
        Reconnection tunables. Defaults to the global configuration.
    sio : socketio.Client | None
        Pre-built client, mainly for tests.
    """

    def __init__(
        self,
        url: str,
        session: Session,
        config: KriosConfig | None = None,
        sio: socketio.Client | None = None,
    ):
        self.url = url
        self.session = session
        self.config = config or get_config()
        self.sio = sio or socketio.Client(
            reconnection=True,
            reconnection_attempts=self.config.reconnection_attempts,
            reconnection_delay=self.config.reconnection_delay,
            reconnection_delay_max=self.config.reconnection_delay_max,
        )
        self._state = ConnectionState.IDLE
        self._lock = threading.RLock()
        self._handlers: dict[str, list[Handler]] = {}
        self._bound_events: set[str] = set()
        self._connection_listeners: list[ConnectionListener] = []
        self._snapshot_requests: list[tuple[str, t.Any]] = [(USERS_GET_ONLINE, None)]
        self._register_handlers()

    def _register_handlers(self):
        self.sio.on("connect", self._on_connect)
        self.sio.on("disconnect", self._on_disconnect)
        self.sio.on("connect_error", self._on_connect_error)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def _auth(self) -> dict:
        return {"token": self.session.token}

    def _connect_client(self) -> None:
        self.sio.connect(
            self.url,
            auth=self._auth,
            transports=["websocket", "polling"],
            wait=True,
            wait_timeout=self.config.socket_timeout,
        )

    def connect(self, credential: str | None = None) -> bool:
        """Connect to the server.

        Errors never propagate: a failed attempt leaves the manager in
        ``DISCONNECTED`` and notifies the connection listeners.

        Parameters
        ----------
        credential : str | None
            Bearer token. Stored on the session when given.

        Returns
        -------
        bool
            True if the channel is connected afterwards.
        """
        if credential is not None:
            self.session.token = credential
        with self._lock:
            if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
                log.debug(f"connect() ignored while {self._state.value}")
                return self._state is ConnectionState.CONNECTED
            self._set_state(ConnectionState.CONNECTING)
        try:
            self._connect_client()
        except (socketio.exceptions.ConnectionError, ValueError) as e:
            log.warning(f"Socket connection to {self.url} failed: {e}")
            self._set_state(ConnectionState.DISCONNECTED)
            return False
        return self.connected

    def disconnect(self) -> None:
        """Close the channel on behalf of the client. No reconnect follows."""
        self._set_state(ConnectionState.DISCONNECTED)
        if self.sio.connected:
            self.sio.disconnect()
            log.info("Socket disconnected by client")

    def add_snapshot_request(self, event: str, payload: t.Any = None) -> None:
        """Register an event emitted after every (re)connect to resync state."""
        if (event, payload) not in self._snapshot_requests:
            self._snapshot_requests.append((event, payload))

    def add_connection_listener(self, listener: ConnectionListener) -> None:
        with self._lock:
            if listener not in self._connection_listeners:
                self._connection_listeners.append(listener)

    def remove_connection_listener(self, listener: ConnectionListener) -> None:
        with self._lock:
            if listener in self._connection_listeners:
                self._connection_listeners.remove(listener)

    def subscribe(self, event: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.setdefault(event, [])
            if handler not in handlers:
                handlers.append(handler)
            if event not in self._bound_events:
                self.sio.on(event, functools.partial(self._dispatch, event))
                self._bound_events.add(event)

    def unsubscribe(self, event: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

    def handler_count(self, event: str) -> int:
        with self._lock:
            return len(self._handlers.get(event, []))

    def emit(self, event: str, payload: t.Any = None) -> bool:
        """Send an event. Dropped (not queued) while not connected.

        Returns
        -------
        bool
            True if the event was handed to the Socket.IO client.
        """
        if not self.connected:
            log.debug(f"Dropping '{event}' while {self._state.value}")
            return False
        try:
            if payload is None:
                self.sio.emit(event)
            else:
                self.sio.emit(event, payload)
        except socketio.exceptions.SocketIOError as e:
            log.debug(f"Dropping '{event}': {e}")
            return False
        return True

    def _dispatch(self, event: str, *args) -> None:
        payload = args[0] if args else {}
        with self._lock:
            handlers = list(self._handlers.get(event, []))
        for handler in handlers:
            try:
                handler(payload)
            except Exception as e:
                log.error(f"Error in handler for '{event}': {e}", exc_info=True)

    def _set_state(self, state: ConnectionState) -> None:
        with self._lock:
            if state is self._state:
                return
            log.debug(f"Socket state {self._state.value} -> {state.value}")
            self._state = state
            listeners = list(self._connection_listeners)
        for listener in listeners:
            try:
                listener(state)
            except Exception as e:
                log.error(f"Error in connection listener: {e}", exc_info=True)

    def _on_connect(self):
        log.info(f"Connected to {self.url}")
        self._set_state(ConnectionState.CONNECTED)
        # Anything missed while offline is only recoverable from a fresh snapshot
        for event, payload in list(self._snapshot_requests):
            self.emit(event, payload)

    def _on_disconnect(self, reason: str | None = None):
        log.info(f"Socket disconnected: {reason}")
        if self._state is ConnectionState.DISCONNECTED or reason == CLIENT_DISCONNECT:
            self._set_state(ConnectionState.DISCONNECTED)
        elif reason == SERVER_DISCONNECT:
            # socketio does not reconnect after a server-side disconnect
            self._set_state(ConnectionState.RECONNECTING)
            self.sio.start_background_task(self._retry_once)
        else:
            self._set_state(ConnectionState.RECONNECTING)

    def _retry_once(self):
        if self._state is not ConnectionState.RECONNECTING:
            return
        try:
            self._connect_client()
        except (socketio.exceptions.ConnectionError, ValueError) as e:
            log.warning(f"Reconnect after server disconnect failed: {e}")
            self._set_state(ConnectionState.DISCONNECTED)

    def _on_connect_error(self, data=None):
        message = data.get("message") if isinstance(data, dict) else data
        hint = _AUTH_HINTS.get(message)
        if hint:
            log.warning(f"Socket auth failed ({message}): {hint}")
        else:
            log.warning(f"Socket connection error: {message}")
        if self._state is ConnectionState.CONNECTED:
            self._set_state(ConnectionState.RECONNECTING)
