import logging
import threading
import typing as t
import uuid
from concurrent.futures import Future

from pydantic import ValidationError

from krios.api_manager import APIManager
from krios.exceptions import RequestError
from krios.models import ChatMessage, MessageType, ReplyRef
from krios.mutation import Executor, MutationOutcome, MutationResult, notify, resolved
from krios.session import Session
from krios.socket_events import ChatTyping
from krios.utils.time import utc_now

log = logging.getLogger(__name__)


class ChatTranscript:
    """Chat history of the viewed room plus optimistically sent messages.

    Messages are kept in creation order. A message sent by the current user
    is appended right away under a temporary id and later swapped in place
    for the server's copy, so it never jumps around in the transcript.

    Parameters
    ----------
    api : APIManager
        REST collaborator.
    session : Session
        Identifies the current user.
    executor : Executor
        Runs the background send requests.
    page_size : int
        Number of messages fetched per history page.
    """

    def __init__(
        self,
        api: APIManager,
        session: Session,
        executor: Executor,
        page_size: int = 50,
    ):
        self.api = api
        self.session = session
        self.executor = executor
        self.page_size = page_size
        self.room_id: str | None = None
        self.has_more = True
        self._messages: list[ChatMessage] = []
        self._typing: dict[str, str | None] = {}
        # messages pushed while a load of that room is fetching
        self._arrivals: dict[str, list[ChatMessage]] = {}
        self._loads_in_flight: dict[str, int] = {}
        self._lock = threading.RLock()
        self._listeners: list[t.Callable[[], None]] = []
        self._error_listeners: list[t.Callable[[Exception], None]] = []

    @property
    def messages(self) -> list[ChatMessage]:
        """A copy of the transcript in display order."""
        with self._lock:
            return list(self._messages)

    @property
    def typing_users(self) -> dict[str, str | None]:
        """Users currently typing, mapped to their display names."""
        with self._lock:
            return dict(self._typing)

    def add_listener(self, listener: t.Callable[[], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: t.Callable[[], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def add_error_listener(self, listener: t.Callable[[Exception], None]) -> None:
        self._error_listeners.append(listener)

    def _changed(self) -> None:
        notify(self._listeners)

    def _index_of(self, message_id: str) -> int | None:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        return None

    def _fetch_page(self, room_id: str, before: str | None, bypass_cache: bool):
        raw = self.api.get_messages(
            room_id, limit=self.page_size, before=before, bypass_cache=bypass_cache
        )
        page = [ChatMessage.model_validate(item) for item in raw]
        page.sort(key=lambda message: message.created_at)
        return page, len(raw) >= self.page_size

    def load(self, room_id: str, silent: bool = False) -> bool:
        """Replace the transcript with the latest history page.

        Failures are logged and leave the transcript as it was.

        Returns
        -------
        bool
            True if the history was loaded.
        """
        with self._lock:
            self._loads_in_flight[room_id] = self._loads_in_flight.get(room_id, 0) + 1
            self._arrivals.setdefault(room_id, [])
        try:
            return self._load(room_id, silent)
        finally:
            with self._lock:
                self._loads_in_flight[room_id] -= 1
                if not self._loads_in_flight[room_id]:
                    del self._loads_in_flight[room_id]
                    del self._arrivals[room_id]

    def _load(self, room_id: str, silent: bool) -> bool:
        try:
            page, has_more = self._fetch_page(room_id, None, bypass_cache=silent)
        except (RequestError, ValidationError) as e:
            log.warning(f"Error loading chat of room '{room_id}': {e}")
            with self._lock:
                if room_id != self.room_id:
                    self.room_id = room_id
                    self._messages = []
                    self._typing.clear()
            return False
        with self._lock:
            # keep messages still being sent when refreshing the same room
            pending = [m for m in self._messages if m.pending] if room_id == self.room_id else []
            known = {m.id for m in page}
            arrived = [m for m in self._arrivals[room_id] if m.id not in known]
            self.room_id = room_id
            self.has_more = has_more
            self._messages = page + arrived + pending
            self._typing.clear()
        self._changed()
        return True

    def load_older(self, limit: int | None = None) -> int:
        """Prepend the page before the oldest loaded message.

        Returns
        -------
        int
            Number of messages added.
        """
        room_id = self.room_id
        if room_id is None or not self.has_more:
            return 0
        with self._lock:
            oldest = next((m for m in self._messages if not m.is_temporary), None)
        before = oldest.created_at.isoformat() if oldest is not None else None
        try:
            raw = self.api.get_messages(room_id, limit=limit or self.page_size, before=before)
            page = sorted(
                (ChatMessage.model_validate(item) for item in raw),
                key=lambda message: message.created_at,
            )
        except (RequestError, ValidationError) as e:
            log.warning(f"Error loading older chat of room '{room_id}': {e}")
            return 0
        with self._lock:
            if room_id != self.room_id:
                return 0
            known = {m.id for m in self._messages}
            older = [m for m in page if m.id not in known]
            self._messages[:0] = older
            self.has_more = len(raw) >= (limit or self.page_size)
        if older:
            self._changed()
        return len(older)

    def append_optimistic(
        self, text: str, reply_to: ReplyRef | None = None
    ) -> "Future[MutationResult]":
        """Show a message immediately and send it in the background.

        Parameters
        ----------
        text : str
            Message body. Blank messages are not sent.
        reply_to : ReplyRef | None
            Message this one replies to.

        Returns
        -------
        Future[MutationResult]
            Resolves once the server confirmed or rejected the message.
        """
        text = text.strip()
        room_id = self.room_id
        if not text or room_id is None:
            return resolved(MutationOutcome.NOOP)
        message = ChatMessage(
            room_id=room_id,
            sender=self.session.user,
            text=text,
            reply_to=reply_to,
            pending=True,
        )
        with self._lock:
            self._messages.append(message)
        self._changed()
        return self.executor.submit(self._send, room_id, message.id, text, reply_to)

    def _send(
        self, room_id: str, temp_id: str, text: str, reply_to: ReplyRef | None
    ) -> MutationResult:
        try:
            confirmed = ChatMessage.model_validate(self.api.send_message(room_id, text, reply_to))
        except (RequestError, ValidationError, KeyError) as e:
            log.error(f"Error sending message to room '{room_id}': {e}")
            with self._lock:
                index = self._index_of(temp_id)
                if index is not None:
                    del self._messages[index]
            self._changed()
            notify(self._error_listeners, e)
            return MutationResult(MutationOutcome.FAILED, e)

        with self._lock:
            index = self._index_of(temp_id)
            if index is not None:
                if self._index_of(confirmed.id) is not None:
                    del self._messages[index]
                else:
                    self._messages[index] = confirmed
        self._changed()
        return MutationResult(MutationOutcome.CONFIRMED)

    def _record(self, message: ChatMessage) -> None:
        arrivals = self._arrivals.get(message.room_id)
        if arrivals is not None and all(m.id != message.id for m in arrivals):
            arrivals.append(message)

    def append_remote(self, message: ChatMessage) -> bool:
        """Append a pushed message unless it is an own echo or already known.

        Messages without a room id, or for another room, are rejected.
        """
        if self.session.is_self(message.sender_id):
            log.debug(f"Ignoring own chat message '{message.id}'")
            return False
        with self._lock:
            self._record(message)
            if message.room_id is None or message.room_id != self.room_id:
                log.debug(f"Dropping chat message '{message.id}' for room '{message.room_id}'")
                return False
            if self._index_of(message.id) is not None:
                log.debug(f"Chat message '{message.id}' already in transcript")
                return False
            self._messages.append(message)
            if message.sender_id is not None:
                self._typing.pop(message.sender_id, None)
        self._changed()
        return True

    def append_system(self, text: str) -> ChatMessage:
        """Append a locally generated system line, e.g. a task completion."""
        message = ChatMessage(
            id=f"sys-{uuid.uuid4().hex}",
            room_id=self.room_id,
            text=text,
            created_at=utc_now(),
            message_type=MessageType.SYSTEM,
        )
        with self._lock:
            self._record(message)
            self._messages.append(message)
        self._changed()
        return message

    def set_typing(self, event: ChatTyping) -> bool:
        if self.session.is_self(event.user_id):
            return False
        with self._lock:
            if event.is_typing:
                if self._typing.get(event.user_id, ...) == event.username:
                    return False
                self._typing[event.user_id] = event.username
            elif self._typing.pop(event.user_id, ...) is ...:
                return False
        self._changed()
        return True

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()
            self._typing.clear()
            self.room_id = None
            self.has_more = True
        self._changed()
