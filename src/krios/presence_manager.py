import logging
import threading
import typing as t

from pydantic import ValidationError

from krios.mutation import notify
from krios.session import Session
from krios.socket_events import USERS_GET_ONLINE, USERS_ONLINE, UserStatus

if t.TYPE_CHECKING:
    from krios.socket_manager import SocketManager

log = logging.getLogger(__name__)


class Presence:
    """Set of users currently online.

    The full list arrives as the answer to ``users:getOnline``, which the
    transport re-sends after every (re)connect; ``user:status`` events keep
    it current in between.
    """

    def __init__(self, session: Session):
        self.session = session
        self._online: set[str] = set()
        self._lock = threading.Lock()
        self._listeners: list[t.Callable[[], None]] = []
        self._socket: "SocketManager | None" = None
        session.on_logout(self.reset)

    @property
    def online(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._online)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._online

    def add_listener(self, listener: t.Callable[[], None]) -> None:
        self._listeners.append(listener)

    def set_online(self, user_ids: t.Iterable[t.Any]) -> None:
        ids = {str(user_id) for user_id in user_ids if user_id is not None}
        with self._lock:
            changed = ids != self._online
            self._online = ids
        if changed:
            notify(self._listeners)

    def set_status(self, event: UserStatus) -> None:
        with self._lock:
            before = len(self._online)
            if event.is_online:
                self._online.add(event.user_id)
            else:
                self._online.discard(event.user_id)
            changed = before != len(self._online)
        if changed:
            notify(self._listeners)

    def refresh(self) -> bool:
        """Ask the server for the full online list."""
        if self._socket is None:
            return False
        return self._socket.emit(USERS_GET_ONLINE)

    def reset(self) -> None:
        self.set_online(())

    def _handle_online(self, payload: t.Any) -> None:
        if not isinstance(payload, list):
            log.warning(f"Malformed '{USERS_ONLINE}' payload dropped: {payload!r}")
            return
        self.set_online(payload)

    def _handle_status(self, payload: t.Any) -> None:
        try:
            event = UserStatus.model_validate(payload)
        except ValidationError as e:
            log.warning(f"Malformed '{UserStatus.EVENT}' payload dropped: {e}")
            return
        self.set_status(event)

    def bind(self, socket: "SocketManager") -> None:
        self.unbind()
        self._socket = socket
        socket.subscribe(USERS_ONLINE, self._handle_online)
        socket.subscribe(UserStatus.EVENT, self._handle_status)

    def unbind(self) -> None:
        if self._socket is None:
            return
        self._socket.unsubscribe(USERS_ONLINE, self._handle_online)
        self._socket.unsubscribe(UserStatus.EVENT, self._handle_status)
        self._socket = None
