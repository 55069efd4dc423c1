import dataclasses
import logging
import time
import typing as t
from concurrent.futures import ThreadPoolExecutor

import socketio

from krios.api_manager import APIManager
from krios.chat_manager import ChatTranscript
from krios.config import KriosConfig, get_config
from krios.coordinator import RoomCoordinator
from krios.exceptions import RequestError, RoomLoadError
from krios.models import UserRef
from krios.mutation import Executor
from krios.notification_manager import UnreadCounter
from krios.presence_manager import Presence
from krios.room_manager import RoomStore
from krios.session import Session
from krios.socket_manager import SocketManager

log = logging.getLogger(__name__)


@dataclasses.dataclass
class Krios:
    """Real-time client state for one authenticated Krios session.

    Parameters
    ----------
    user
        The authenticated user, as a ``UserRef`` or its wire dict.
    token
        Bearer credential for REST and the push channel.
    config
        Client configuration. Defaults to the global ``KriosConfig``.
    executor
        Runs background REST calls. A thread pool owned by the client is
        created if omitted.
    sio
        Pre-built Socket.IO client, mainly for tests.
    api
        Pre-built REST client, mainly for tests.
    clock
        Monotonic time source used to throttle foreground refreshes.

    Examples
    --------
    >>> with Krios(user={"_id": "u1", "username": "alice"}, token=token) as client:
    ...     client.connect()
    ...     room = client.open_room("r1")
    ...     room.apply_local_task_complete("t1")
    """

    user: UserRef | dict
    token: str | None = None
    config: KriosConfig | None = None
    executor: Executor | None = None
    sio: socketio.Client | None = None
    api: APIManager | None = None
    clock: t.Callable[[], float] = time.monotonic

    room: RoomStore | None = dataclasses.field(default=None, init=False)
    chat: ChatTranscript | None = dataclasses.field(default=None, init=False)
    _owns_executor: bool = dataclasses.field(default=False, init=False, repr=False)
    _last_foreground_at: float | None = dataclasses.field(
        default=None, init=False, repr=False
    )

    def __post_init__(self):
        self.config = self.config or get_config()
        logging.getLogger("krios").setLevel(self.config.log_level.upper())

        if not isinstance(self.user, UserRef):
            self.user = UserRef.model_validate(self.user)
        self.session = Session(user=self.user, token=self.token)

        if self.api is None:
            self.api = APIManager(
                url=self.config.api_url,
                token_getter=lambda: self.session.token,
                timeout=self.config.request_timeout,
                cache_ttl=self.config.cache_ttl,
            )
        if self.executor is None:
            self.executor = ThreadPoolExecutor(
                max_workers=self.config.max_workers, thread_name_prefix="krios"
            )
            self._owns_executor = True

        self.socket = SocketManager(
            url=self.config.api_url, session=self.session, config=self.config, sio=self.sio
        )
        self.unread = UnreadCounter(
            self.api,
            self.session,
            executor=self.executor,
            min_interval=self.config.unread_min_interval,
            clock=self.clock,
        )
        self.unread.bind(self.socket)
        self.presence = Presence(self.session)
        self.presence.bind(self.socket)
        self.coordinator = RoomCoordinator(self.socket)

        # teardown runs in reverse order
        if self._owns_executor:
            self.session.on_logout(lambda: self.executor.shutdown(wait=False))
        self.session.on_logout(self.socket.disconnect)
        self.session.on_logout(self.close_room)

    @property
    def connected(self) -> bool:
        return self.socket.connected

    def connect(self) -> bool:
        """Open the push channel and fetch the unread count."""
        connected = self.socket.connect(self.session.token)
        self._refresh_unread(force=True)
        return connected

    def disconnect(self) -> None:
        self.socket.disconnect()

    def open_room(self, room_id: str) -> RoomStore:
        """Start viewing a room; the previously viewed room is closed first.

        Raises
        ------
        RoomLoadError
            If the room cannot be loaded. No room is open afterwards.
        """
        self.close_room()
        chat = ChatTranscript(
            self.api, self.session, self.executor, page_size=self.config.chat_page_size
        )
        room = RoomStore(self.api, self.session, self.executor, chat=chat)
        self.coordinator.attach(room_id, room, chat)
        try:
            room.load(room_id)
        except RoomLoadError:
            self.coordinator.detach()
            raise
        self.room, self.chat = room, chat
        return room

    def close_room(self) -> None:
        self.coordinator.detach()
        self.room = None
        self.chat = None

    def send_typing(self, is_typing: bool) -> bool:
        return self.coordinator.send_typing(is_typing)

    def on_foreground(self) -> bool:
        """Resynchronize after the app returns to the foreground.

        Throttled to once per ``foreground_min_interval``.

        Returns
        -------
        bool
            True if a refresh was started.
        """
        now = self.clock()
        if (
            self._last_foreground_at is not None
            and now - self._last_foreground_at < self.config.foreground_min_interval
        ):
            log.debug("Foreground refresh throttled")
            return False
        self._last_foreground_at = now
        if self.room is not None:
            self.room.refresh()
        self._refresh_unread()
        return True

    def _refresh_unread(self, force: bool = False) -> None:
        try:
            self.unread.refresh(force=force)
        except RequestError as e:
            log.warning(f"Error refreshing unread count: {e}")

    def mark_notifications_read(self) -> None:
        self.unread.mark_all_read()

    def logout(self) -> None:
        """Tear down the room, the push channel and all session state."""
        self.session.logout()

    def __enter__(self) -> "Krios":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.logout()
