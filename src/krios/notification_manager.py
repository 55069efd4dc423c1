import logging
import threading
import time
import typing as t

from pydantic import ValidationError

from krios.api_manager import APIManager
from krios.exceptions import RateLimitError, RequestError
from krios.mutation import Executor, notify
from krios.session import Session
from krios.socket_events import NotificationNew, NotificationUnreadCount

if t.TYPE_CHECKING:
    from krios.socket_manager import SocketManager

log = logging.getLogger(__name__)


class UnreadCounter:
    """Session-wide unread notification count.

    The count is pushed by the server and, as a fallback, polled over REST no
    more often than ``min_interval`` seconds.

    Parameters
    ----------
    api : APIManager
        REST collaborator.
    session : Session
        The counter resets itself when the session logs out.
    executor : Executor | None
        Runs ``mark_all_read`` requests. Without one they run inline.
    min_interval : float
        Minimum seconds between two non-forced fetches.
    clock : Callable[[], float]
        Monotonic time source.
    """

    def __init__(
        self,
        api: APIManager,
        session: Session,
        executor: Executor | None = None,
        min_interval: float = 30.0,
        clock: t.Callable[[], float] = time.monotonic,
    ):
        self.api = api
        self.session = session
        self.executor = executor
        self.min_interval = min_interval
        self.clock = clock
        self._count = 0
        self._last_fetch_at: float | None = None
        self._fetch_in_flight = False
        # bumped by every authoritative overwrite that is not a fetch
        self._generation = 0
        self._lock = threading.Lock()
        self._listeners: list[t.Callable[[int], None]] = []
        self._bound: list[tuple[str, t.Callable]] = []
        session.on_logout(self.reset)

    @property
    def count(self) -> int:
        return self._count

    @property
    def last_fetch_at(self) -> float | None:
        return self._last_fetch_at

    @property
    def fetch_in_flight(self) -> bool:
        return self._fetch_in_flight

    def add_listener(self, listener: t.Callable[[int], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: t.Callable[[int], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _set_count(self, count: int) -> None:
        with self._lock:
            self._generation += 1
            changed = count != self._count
            self._count = count
        if changed:
            notify(self._listeners, count)

    def refresh(self, force: bool = False) -> bool:
        """Fetch the count from the server unless throttled.

        Parameters
        ----------
        force : bool
            Ignore the minimum interval. A fetch already in flight still wins.

        Returns
        -------
        bool
            True if a fetch ran and updated the count.

        Raises
        ------
        RequestError
            For failures other than rate limiting.
        """
        with self._lock:
            if self._fetch_in_flight:
                log.debug("Unread count fetch already in flight")
                return False
            now = self.clock()
            if (
                not force
                and self._last_fetch_at is not None
                and now - self._last_fetch_at < self.min_interval
            ):
                log.debug("Unread count fetch throttled")
                return False
            self._fetch_in_flight = True
            generation = self._generation
        try:
            count = self.api.get_unread_count()
        except RateLimitError as e:
            log.debug(f"Unread count fetch rate limited: {e}")
            return False
        finally:
            with self._lock:
                self._fetch_in_flight = False
        with self._lock:
            if generation != self._generation:
                log.debug("Discarding unread count fetched before a newer update")
                return False
            self._last_fetch_at = self.clock()
            count = max(0, count)
            changed = count != self._count
            self._count = count
        if changed:
            notify(self._listeners, count)
        return True

    def on_push_count(self, count: int) -> None:
        with self._lock:
            self._last_fetch_at = self.clock()
        self._set_count(max(0, count))

    def on_push_increment(self) -> None:
        with self._lock:
            self._count += 1
            count = self._count
        notify(self._listeners, count)

    def clear(self) -> None:
        self._set_count(0)

    def mark_all_read(self) -> None:
        """Zero the badge now and tell the server in the background."""
        self.clear()
        if self.executor is None:
            self._mark_all_read()
        else:
            self.executor.submit(self._mark_all_read)

    def _mark_all_read(self) -> None:
        try:
            self.api.mark_all_read()
        except RequestError as e:
            log.warning(f"Error marking notifications as read: {e}")

    def reset(self) -> None:
        with self._lock:
            self._last_fetch_at = None
            self._fetch_in_flight = False
        self._set_count(0)

    # -- push channel ------------------------------------------------------

    def _handle_new(self, payload: t.Any) -> None:
        self.on_push_increment()

    def _handle_count(self, payload: t.Any) -> None:
        try:
            event = NotificationUnreadCount.model_validate(payload)
        except ValidationError as e:
            log.warning(f"Malformed '{NotificationUnreadCount.EVENT}' payload dropped: {e}")
            return
        self.on_push_count(event.unread_count)

    def bind(self, socket: "SocketManager") -> None:
        """Subscribe to the notification events of the push channel."""
        self.unbind(socket)
        self._bound = [
            (NotificationNew.EVENT, self._handle_new),
            (NotificationUnreadCount.EVENT, self._handle_count),
        ]
        for event, handler in self._bound:
            socket.subscribe(event, handler)

    def unbind(self, socket: "SocketManager") -> None:
        for event, handler in self._bound:
            socket.unsubscribe(event, handler)
        self._bound = []
