import dataclasses
import functools
import logging
import threading
import typing as t
from concurrent.futures import Future

from pydantic import ValidationError

from krios.api_manager import APIManager
from krios.exceptions import RemovedFromRoom, RequestError, RoomLoadError
from krios.models import Completion, Member, MemberRole, Room, Task
from krios.mutation import Executor, MutationOutcome, MutationResult, notify, resolved
from krios.session import Session
from krios.socket_events import (
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

if t.TYPE_CHECKING:
    from krios.chat_manager import ChatTranscript

log = logging.getLogger(__name__)

_ROOM_METADATA = (
    "name",
    "description",
    "is_public",
    "max_members",
    "join_code",
    "chat_retention_days",
)


@dataclasses.dataclass
class _PendingTaskMutation:
    """A local completion change whose REST call has not settled yet."""

    completed: bool
    completion: Completion
    points: int


def _journaled(apply):
    """Record a remote merge so that a load in flight for its room can replay it."""

    @functools.wraps(apply)
    def wrapper(self: "RoomStore", event) -> bool:
        self._record(apply, event)
        return apply(self, event)

    return wrapper


class RoomStore:
    """Holds the currently viewed Room and merges every change into it.

    Changes arrive from local optimistic mutations, from their REST
    confirmations and from push events. Every remote merge is idempotent by
    entity id, and events originating from the current user are dropped
    because the optimistic path already applied them.

    Parameters
    ----------
    api : APIManager
        REST collaborator.
    session : Session
        Identifies the current user.
    executor : Executor
        Runs the background REST calls of optimistic mutations.
    chat : ChatTranscript | None
        Transcript loaded together with the room.
    """

    def __init__(
        self,
        api: APIManager,
        session: Session,
        executor: Executor,
        chat: "ChatTranscript | None" = None,
    ):
        self.api = api
        self.session = session
        self.executor = executor
        self.chat = chat
        self._room: Room | None = None
        self._removed: RemovedFromRoom | None = None
        self._pending: dict[str, _PendingTaskMutation] = {}
        # remote merges seen while a load of that room is fetching
        self._journals: dict[str, list[tuple[t.Callable, t.Any]]] = {}
        self._loads_in_flight: dict[str, int] = {}
        self._lock = threading.RLock()
        self._listeners: list[t.Callable[[], None]] = []
        self._error_listeners: list[t.Callable[[Exception], None]] = []
        self._removed_listeners: list[t.Callable[[RemovedFromRoom], None]] = []

    # -- observation -------------------------------------------------------

    @property
    def room(self) -> Room | None:
        """The live Room. Treat as read-only; use ``snapshot()`` to keep a copy."""
        return self._room

    @property
    def room_id(self) -> str | None:
        return self._room.id if self._room is not None else None

    @property
    def removed(self) -> RemovedFromRoom | None:
        return self._removed

    def snapshot(self) -> Room | None:
        with self._lock:
            return self._room.model_copy(deep=True) if self._room is not None else None

    def my_points(self) -> int:
        with self._lock:
            member = self._room.get_member(self.session.user_id) if self._room else None
            return member.points if member is not None else 0

    def add_listener(self, listener: t.Callable[[], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: t.Callable[[], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def add_error_listener(self, listener: t.Callable[[Exception], None]) -> None:
        self._error_listeners.append(listener)

    def add_removed_listener(self, listener: t.Callable[[RemovedFromRoom], None]) -> None:
        self._removed_listeners.append(listener)

    def remove_removed_listener(self, listener: t.Callable[[RemovedFromRoom], None]) -> None:
        if listener in self._removed_listeners:
            self._removed_listeners.remove(listener)

    def _changed(self) -> None:
        notify(self._listeners)

    # -- loading -----------------------------------------------------------

    def load(self, room_id: str, silent: bool = False) -> Room | None:
        """Fetch the room, today's tasks and the chat history.

        Parameters
        ----------
        room_id : str
            Room to load. Replaces whatever room was loaded before.
        silent : bool
            Background refresh: bypass the response cache and keep the
            current state if the room cannot be fetched.

        Returns
        -------
        Room | None
            The loaded room. None for a failed silent refresh or when the
            room was left or removed while it was being fetched.

        Raises
        ------
        RoomLoadError
            If the room itself cannot be fetched (not raised when silent).
        """
        with self._lock:
            self._loads_in_flight[room_id] = self._loads_in_flight.get(room_id, 0) + 1
            self._journals.setdefault(room_id, [])
            removed = self._removed
        try:
            return self._load(room_id, silent, removed)
        finally:
            with self._lock:
                self._loads_in_flight[room_id] -= 1
                if not self._loads_in_flight[room_id]:
                    del self._loads_in_flight[room_id]
                    del self._journals[room_id]

    def _load(self, room_id: str, silent: bool, removed: RemovedFromRoom | None) -> Room | None:
        try:
            room = Room.model_validate(self.api.get_room(room_id, bypass_cache=silent))
        except (RequestError, ValidationError, KeyError) as e:
            if silent:
                log.warning(f"Silent refresh of room '{room_id}' failed: {e}")
                return None
            with self._lock:
                self._room = None
            self._changed()
            raise RoomLoadError(room_id, e) from e

        tasks = self._fetch_tasks(room_id, silent)
        with self._lock:
            current = self._removed
            if current is not None and current is not removed and current.room_id == room_id:
                log.info(f"Dropping load of room '{room_id}' removed while fetching")
                return None
            if tasks is not None:
                room.tasks = tasks
            elif silent and self._room is not None and self._room.id == room_id:
                room.tasks = self._room.tasks
            self._reapply_pending(room)
            self._room = room
            self._removed = None
            journal = list(self._journals[room_id])
        for apply, event in journal:
            apply(self, event)
        if journal:
            log.debug(f"Replayed {len(journal)} events received while loading '{room_id}'")
        self._changed()
        if self.room is not room:
            return None

        if self.chat is not None:
            self.chat.load(room_id, silent=silent)
        log.info(f"Loaded room '{room_id}' with {len(room.tasks)} tasks")
        return room

    def refresh(self) -> Future:
        """Schedule a silent reload of the current room."""
        room_id = self.room_id
        if room_id is None:
            future: Future = Future()
            future.set_result(None)
            return future
        return self.executor.submit(self.load, room_id, True)

    def _fetch_tasks(self, room_id: str, silent: bool) -> list[Task] | None:
        """Today's tasks with completions, or None if the response is unusable.

        A payload carrying a ``tasks`` key is authoritative even when the list
        is empty. A failed request or a payload without the key is not.
        """
        try:
            payload = self.api.get_tasks(room_id, bypass_cache=silent)
        except RequestError as e:
            log.warning(f"Error loading tasks of room '{room_id}', using room tasks: {e}")
            return None
        if payload.get("success") is False or "tasks" not in payload:
            log.warning(f"Partial tasks response for room '{room_id}' ignored")
            return None
        try:
            return [Task.model_validate(task) for task in payload["tasks"] or []]
        except ValidationError as e:
            log.warning(f"Malformed tasks response for room '{room_id}': {e}")
            return None

    def _reapply_pending(self, room: Room) -> None:
        """Overlay in-flight optimistic mutations onto freshly fetched data."""
        me = self.session.user_id
        for task_id, pending in self._pending.items():
            task = room.get_task(task_id)
            if task is None:
                continue
            if pending.completed and task.add_completion(pending.completion.model_copy()):
                pending.points = self._adjust_points(room, me, task.points)
            elif not pending.completed and task.remove_completion(me) is not None:
                pending.points = self._adjust_points(room, me, -task.points)

    def invalidate(self, removed: RemovedFromRoom) -> None:
        """Drop the room for good and tell listeners why."""
        with self._lock:
            if self._room is None or self._room.id != removed.room_id:
                return
            self._room = None
            self._removed = removed
            self._pending.clear()
        log.info(str(removed))
        notify(self._removed_listeners, removed)
        self._changed()

    # -- helpers -----------------------------------------------------------

    def _record(self, apply: t.Callable, event: t.Any) -> None:
        with self._lock:
            journal = self._journals.get(event.room_id)
            if journal is not None:
                journal.append((apply, event))

    def _current(self, room_id: str) -> Room | None:
        room = self._room
        if room is None or room.id != room_id:
            return None
        return room

    @staticmethod
    def _adjust_points(room: Room, user_id: str, delta: int) -> int:
        """Add ``delta`` to a member's points, never below zero.

        Returns
        -------
        int
            The delta actually applied, so it can be inverted exactly.
        """
        member = room.get_member(user_id)
        if member is None or delta == 0:
            return 0
        new_points = max(0, member.points + delta)
        applied = new_points - member.points
        member.points = new_points
        return applied

    def _report(self, error: Exception) -> None:
        notify(self._error_listeners, error)

    # -- local optimistic mutations ---------------------------------------

    def apply_local_task_complete(self, task_id: str) -> "Future[MutationResult]":
        """Mark a task completed by the current user right away.

        The REST call runs in the background; on failure the completion and
        the credited points are taken back and error listeners are notified.

        Returns
        -------
        Future[MutationResult]
            ``NOOP`` if nothing changed (unknown task, already completed or
            a request for the task still in flight).
        """
        user = self.session.user
        with self._lock:
            room = self._room
            task = room.get_task(task_id) if room is not None else None
            if task is None or task_id in self._pending or task.is_completed_by(user.id):
                log.debug(f"Local completion of task '{task_id}' skipped")
                return resolved(MutationOutcome.NOOP)
            completion = Completion(
                user_id=user.id,
                username=user.username,
                avatar=user.avatar,
                points=task.points,
            )
            task.add_completion(completion)
            applied = self._adjust_points(room, user.id, task.points)
            self._pending[task_id] = _PendingTaskMutation(True, completion, applied)
            room_id = room.id
        self._changed()
        return self.executor.submit(self._settle, room_id, task_id, True)

    def apply_local_task_uncomplete(self, task_id: str) -> "Future[MutationResult]":
        """Withdraw the current user's completion of a task right away.

        Mirror image of :meth:`apply_local_task_complete`.
        """
        me = self.session.user_id
        with self._lock:
            room = self._room
            task = room.get_task(task_id) if room is not None else None
            if task is None or task_id in self._pending or not task.is_completed_by(me):
                log.debug(f"Local uncompletion of task '{task_id}' skipped")
                return resolved(MutationOutcome.NOOP)
            completion = task.remove_completion(me)
            applied = self._adjust_points(room, me, -task.points)
            self._pending[task_id] = _PendingTaskMutation(False, completion, applied)
            room_id = room.id
        self._changed()
        return self.executor.submit(self._settle, room_id, task_id, False)

    def _settle(self, room_id: str, task_id: str, completed: bool) -> MutationResult:
        try:
            if completed:
                self.api.complete_task(room_id, task_id)
            else:
                self.api.uncomplete_task(room_id, task_id)
        except RequestError as e:
            action = "completing" if completed else "uncompleting"
            log.error(f"Error {action} task '{task_id}' in room '{room_id}': {e}")
            self._rollback(room_id, task_id)
            self._report(e)
            return MutationResult(MutationOutcome.FAILED, e)
        with self._lock:
            self._pending.pop(task_id, None)
        return MutationResult(MutationOutcome.CONFIRMED)

    def _rollback(self, room_id: str, task_id: str) -> None:
        me = self.session.user_id
        with self._lock:
            pending = self._pending.pop(task_id, None)
            room = self._current(room_id)
            task = room.get_task(task_id) if room is not None else None
            if pending is None or task is None:
                return
            if pending.completed and task.remove_completion(me) is not None:
                self._adjust_points(room, me, -pending.points)
            elif not pending.completed and task.add_completion(pending.completion):
                self._adjust_points(room, me, -pending.points)
        self._changed()

    # -- remote events -----------------------------------------------------

    @_journaled
    def apply_remote_task_completed(self, event: TaskCompleted) -> bool:
        """Merge another member's completion. Returns True if state changed."""
        if self.session.is_self(event.user_id):
            log.debug(f"Ignoring own completion event for task '{event.task_id}'")
            return False
        with self._lock:
            room = self._current(event.room_id)
            task = room.get_task(event.task_id) if room is not None else None
            if task is None:
                return False
            points = event.points or 0
            completion = Completion(
                user_id=event.user_id,
                username=event.username,
                avatar=event.avatar,
                points=points,
            )
            if not task.add_completion(completion):
                log.debug(f"User '{event.user_id}' already in completedBy of '{task.id}'")
                return False
            self._adjust_points(room, event.user_id, points)
        self._changed()
        return True

    @_journaled
    def apply_remote_task_uncompleted(self, event: TaskUncompleted) -> bool:
        """Withdraw another member's completion. Returns True if state changed.

        Without a delta in the event, the points recorded on the removed
        completion entry are taken back.
        """
        if self.session.is_self(event.user_id):
            log.debug(f"Ignoring own uncompletion event for task '{event.task_id}'")
            return False
        with self._lock:
            room = self._current(event.room_id)
            task = room.get_task(event.task_id) if room is not None else None
            if task is None:
                return False
            removed = task.remove_completion(event.user_id)
            if removed is None:
                return False
            points = event.points if event.points is not None else removed.points
            self._adjust_points(room, event.user_id, -points)
        self._changed()
        return True

    @_journaled
    def apply_member_joined(self, event: MemberJoined) -> bool:
        with self._lock:
            room = self._current(event.room_id)
            if room is None:
                return False
            member = Member(user=event.user, role=MemberRole.MEMBER, points=0, streak=0)
            if not room.add_member(member):
                log.debug(f"Member '{event.user.id}' already in room '{room.id}'")
                return False
        self._changed()
        return True

    @_journaled
    def apply_member_left(self, event: MemberLeft) -> bool:
        if self.session.is_self(event.user_id):
            self.invalidate(RemovedFromRoom(event.room_id, "left"))
            return True
        return self._remove_member(event.room_id, event.user_id)

    @_journaled
    def apply_member_kicked(self, event: MemberKicked) -> bool:
        if self.session.is_self(event.user_id):
            self.invalidate(RemovedFromRoom(event.room_id, "kicked"))
            return True
        return self._remove_member(event.room_id, event.user_id)

    def _remove_member(self, room_id: str, user_id: str) -> bool:
        with self._lock:
            room = self._current(room_id)
            if room is None or room.remove_member(user_id) is None:
                return False
        self._changed()
        return True

    @_journaled
    def apply_task_created(self, event: TaskCreated) -> bool:
        with self._lock:
            room = self._current(event.room_id)
            if room is None or not room.add_task(event.task):
                return False
        self._changed()
        return True

    @_journaled
    def apply_task_updated(self, event: TaskUpdated) -> bool:
        """Replace a task's fields in place, keeping the local CompletedBy."""
        with self._lock:
            room = self._current(event.room_id)
            if room is None:
                return False
            existing = room.get_task(event.task.id)
            if existing is None:
                room.add_task(event.task)
            else:
                updated = event.task.model_copy(update={"completed_by": existing.completed_by})
                room.tasks[room.tasks.index(existing)] = updated
        self._changed()
        return True

    @_journaled
    def apply_task_deleted(self, event: TaskDeleted) -> bool:
        with self._lock:
            room = self._current(event.room_id)
            if room is None or room.remove_task(event.task_id) is None:
                return False
            self._pending.pop(event.task_id, None)
        self._changed()
        return True

    @_journaled
    def apply_room_updated(self, event: RoomUpdated) -> bool:
        """Refresh room metadata; members and tasks stay as they are."""
        with self._lock:
            room = self._current(event.room_id)
            if room is None:
                return False
            for name in _ROOM_METADATA:
                setattr(room, name, getattr(event.room, name))
            if event.room.owner_id is not None and event.room.owner_id != room.owner_id:
                room.owner_id = event.room.owner_id
                for member in room.members:
                    member.role = (
                        MemberRole.OWNER if member.user_id == room.owner_id else MemberRole.MEMBER
                    )
        self._changed()
        return True

    def apply_room_deleted(self, event: RoomDeleted) -> bool:
        if self._current(event.room_id) is None:
            return False
        self.invalidate(RemovedFromRoom(event.room_id, "disbanded"))
        return True
