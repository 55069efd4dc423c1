import functools
import logging
import threading
import typing as t

from pydantic import ValidationError

from krios.chat_manager import ChatTranscript
from krios.exceptions import RemovedFromRoom
from krios.room_manager import RoomStore
from krios.socket_events import (
    CHAT_TYPING,
    ROOM_JOIN,
    ROOM_LEAVE,
    ChatMessageReceived,
    ChatTyping,
    MemberJoined,
    MemberKicked,
    MemberLeft,
    RoomDeleted,
    RoomUpdated,
    TaskCompleted,
    TaskCreated,
    TaskDeleted,
    TaskUncompleted,
    TaskUpdated,
)
from krios.socket_manager import ConnectionState, SocketManager

log = logging.getLogger(__name__)

EventModel = type[t.Any]


class RoomCoordinator:
    """Routes push events of the attached room into its stores.

    At most one room is attached at a time. Attaching a new room first tears
    down every subscription of the previous one, so late events for the old
    room never reach the new stores.

    Parameters
    ----------
    socket : SocketManager
        Transport delivering the push events.
    """

    def __init__(self, socket: SocketManager):
        self.socket = socket
        self.room_id: str | None = None
        self.room_store: RoomStore | None = None
        self.chat_store: ChatTranscript | None = None
        self._subscriptions: list[tuple[str, t.Callable]] = []
        self._lock = threading.RLock()

    @property
    def attached(self) -> bool:
        return self.room_id is not None

    def _routes(self) -> list[tuple[EventModel, t.Callable[[t.Any], t.Any]]]:
        room, chat = self.room_store, self.chat_store
        return [
            (TaskCompleted, self._on_task_completed),
            (TaskUncompleted, room.apply_remote_task_uncompleted),
            (TaskCreated, room.apply_task_created),
            (TaskUpdated, room.apply_task_updated),
            (TaskDeleted, room.apply_task_deleted),
            (MemberJoined, room.apply_member_joined),
            (MemberLeft, room.apply_member_left),
            (MemberKicked, room.apply_member_kicked),
            (RoomUpdated, room.apply_room_updated),
            (RoomDeleted, room.apply_room_deleted),
            (ChatMessageReceived, lambda event: chat.append_remote(event.message)),
            (ChatTyping, chat.set_typing),
        ]

    def attach(self, room_id: str, room_store: RoomStore, chat_store: ChatTranscript) -> None:
        """Route the events of ``room_id`` into the given stores."""
        with self._lock:
            self.detach()
            self.room_id = room_id
            self.room_store = room_store
            self.chat_store = chat_store
            for model, apply in self._routes():
                handler = functools.partial(self._handle, room_id, model, apply)
                self.socket.subscribe(model.EVENT, handler)
                self._subscriptions.append((model.EVENT, handler))
            self.socket.add_connection_listener(self._on_connection_changed)
            room_store.add_removed_listener(self._on_removed)
        self.socket.emit(ROOM_JOIN, room_id)
        log.info(f"Attached to room '{room_id}'")

    def detach(self) -> None:
        """Stop routing events and leave the room's broadcast channel."""
        with self._lock:
            room_id = self.room_id
            if room_id is None:
                return
            for event, handler in self._subscriptions:
                self.socket.unsubscribe(event, handler)
            self._subscriptions = []
            self.socket.remove_connection_listener(self._on_connection_changed)
            if self.room_store is not None:
                self.room_store.remove_removed_listener(self._on_removed)
            self.room_id = None
            self.room_store = None
            self.chat_store = None
        self.socket.emit(ROOM_LEAVE, room_id)
        log.info(f"Detached from room '{room_id}'")

    def send_typing(self, is_typing: bool) -> bool:
        if self.room_id is None:
            return False
        return self.socket.emit(CHAT_TYPING, {"roomId": self.room_id, "isTyping": is_typing})

    def _handle(
        self, room_id: str, model: EventModel, apply: t.Callable[[t.Any], t.Any], payload: t.Any
    ) -> None:
        try:
            event = model.model_validate(payload)
        except ValidationError as e:
            log.warning(f"Malformed '{model.EVENT}' payload dropped: {e}")
            return
        with self._lock:
            if self.room_id != room_id:
                return
            event_room = event.room_id
            if event_room is not None and event_room != room_id:
                log.debug(f"Ignoring '{model.EVENT}' for room '{event_room}'")
                return
            apply(event)

    def _on_task_completed(self, event: TaskCompleted) -> None:
        self.room_store.apply_remote_task_completed(event)
        name = event.username or "A member"
        self.chat_store.append_system(f"{name} completed a task (+{event.points or 0})")

    def _on_connection_changed(self, state: ConnectionState) -> None:
        if state is not ConnectionState.CONNECTED:
            return
        with self._lock:
            room_id, room_store = self.room_id, self.room_store
        if room_id is None:
            return
        # events broadcast while offline are lost; rejoin and reload
        self.socket.emit(ROOM_JOIN, room_id)
        room_store.refresh()

    def _on_removed(self, removed: RemovedFromRoom) -> None:
        if removed.room_id == self.room_id:
            self.detach()
