"""Tests for the room state store.

Covers loading, optimistic task mutations with rollback, and the idempotent
merge of push events.
"""

import copy
from unittest.mock import MagicMock

import pytest

from krios.exceptions import NotFoundError, RemovedFromRoom, RoomLoadError, ServerError
from krios.models import CompletionStatus, Task, UserRef
from krios.mutation import MutationOutcome
from krios.room_manager import RoomStore
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

from conftest import BOB, ME, OWNER, ROOM_ID


def points(store: RoomStore, user_id: str) -> int:
    return store.room.get_member(user_id).points


def completed(task_id: str, user_id: str = BOB, pts: int | None = 3, room_id: str = ROOM_ID):
    return TaskCompleted(room_id=room_id, task_id=task_id, user_id=user_id, points=pts)


class TestLoad:
    """Tests for RoomStore.load and refresh."""

    def test_load_merges_tasks_with_completion(self, store, api):
        room = store.room

        assert room.id == ROOM_ID
        assert room.get_task("t1").is_completed_by(BOB)
        assert room.get_task("t2").completed_by == {}
        api.get_messages.assert_called_once()

    def test_load_failure_leaves_store_empty(self, api, session, executor):
        api.get_room.side_effect = NotFoundError("Room not found", status=404)
        room_store = RoomStore(api, session, executor)

        with pytest.raises(RoomLoadError) as exc_info:
            room_store.load(ROOM_ID)

        assert room_store.room is None
        assert exc_info.value.room_id == ROOM_ID
        assert isinstance(exc_info.value.cause, NotFoundError)

    def test_tasks_failure_uses_room_tasks(self, api, session, executor):
        """Test that a failed tasks request falls back to the room's tasks."""
        api.get_tasks.side_effect = ServerError("down", status=500)
        room_store = RoomStore(api, session, executor)

        room_store.load(ROOM_ID)

        assert [t.id for t in room_store.room.tasks] == ["t1", "t2"]
        assert room_store.room.get_task("t1").completed_by == {}

    def test_silent_failure_keeps_room(self, store, api):
        api.get_room.side_effect = ServerError("down", status=500)

        assert store.load(ROOM_ID, silent=True) is None

        assert store.room.id == ROOM_ID
        assert store.room.get_task("t1").is_completed_by(BOB)

    def test_silent_load_bypasses_cache(self, store, api):
        store.load(ROOM_ID, silent=True)

        assert api.get_room.call_args.kwargs["bypass_cache"] is True
        assert api.get_tasks.call_args.kwargs["bypass_cache"] is True

    def test_silent_partial_response_keeps_tasks(self, store, api):
        """Test that a tasks response without a list does not wipe tasks."""
        api.get_tasks.side_effect = lambda room_id, bypass_cache=False: {"success": True}

        store.load(ROOM_ID, silent=True)

        assert store.room.get_task("t1").is_completed_by(BOB)

    def test_empty_task_list_is_authoritative(self, store, api):
        api.get_tasks.side_effect = lambda room_id, bypass_cache=False: {
            "success": True,
            "tasks": [],
        }

        store.load(ROOM_ID, silent=True)

        assert store.room.tasks == []

    def test_event_during_reload_is_replayed(self, store, api, tasks_payload):
        """Test that a completion pushed while the reload is fetching is not lost."""

        def fetch(room_id, bypass_cache=False):
            store.apply_remote_task_completed(completed("t2", user_id=OWNER))
            return copy.deepcopy(tasks_payload)

        api.get_tasks.side_effect = fetch

        store.load(ROOM_ID, silent=True)

        assert store.room.get_task("t2").is_completed_by(OWNER)
        assert points(store, OWNER) == 23

    def test_event_during_first_load_is_replayed(self, api, session, executor):
        room_store = RoomStore(api, session, executor)
        event = MemberJoined(room_id=ROOM_ID, user=UserRef(id="u-new", username="nina"))

        def fetch(room_id, bypass_cache=False):
            assert room_store.apply_member_joined(event) is False
            return {"success": True, "tasks": []}

        api.get_tasks.side_effect = fetch

        room_store.load(ROOM_ID)

        assert room_store.room.get_member("u-new") is not None

    def test_kicked_during_reload_drops_result(self, store, api, tasks_payload):
        def fetch(room_id, bypass_cache=False):
            store.apply_member_kicked(MemberKicked(room_id=ROOM_ID, user_id=ME))
            return copy.deepcopy(tasks_payload)

        api.get_tasks.side_effect = fetch

        assert store.load(ROOM_ID, silent=True) is None

        assert store.room is None
        assert store.removed.reason == "kicked"

    def test_refresh_runs_in_background(self, store, api, executor):
        future = store.refresh()

        assert api.get_room.call_count == 1
        executor.run_all()
        assert future.result() is not None
        assert api.get_room.call_count == 2

    def test_listeners_notified(self, store):
        listener = MagicMock()
        store.add_listener(listener)

        store.apply_remote_task_completed(completed("t2"))

        listener.assert_called_once_with()


class TestLocalMutations:
    """Tests for optimistic completion and its confirmation or rollback."""

    def test_complete_applies_immediately(self, store, api, executor):
        future = store.apply_local_task_complete("t2")

        task = store.room.get_task("t2")
        assert task.completion_status(ME) is CompletionStatus.COMPLETED
        assert task.completed_by[ME].username == "me"
        assert points(store, ME) == 13
        assert not future.done()

        executor.run_all()

        assert future.result().outcome is MutationOutcome.CONFIRMED
        api.complete_task.assert_called_once_with(ROOM_ID, "t2")
        assert points(store, ME) == 13

    def test_double_complete_is_noop(self, store, api, executor):
        """Test that completing a task twice sends one request."""
        store.apply_local_task_complete("t2")
        second = store.apply_local_task_complete("t2")

        assert second.result().outcome is MutationOutcome.NOOP
        executor.run_all()
        third = store.apply_local_task_complete("t2")

        assert third.result().outcome is MutationOutcome.NOOP
        assert api.complete_task.call_count == 1
        assert points(store, ME) == 13

    def test_unknown_task_is_noop(self, store, executor):
        assert store.apply_local_task_complete("nope").result().outcome is MutationOutcome.NOOP
        assert executor.pending == 0

    def test_complete_failure_rolls_back(self, store, api, executor):
        """Test that a rejected completion restores the pre-call state."""
        errors = MagicMock()
        store.add_error_listener(errors)
        api.complete_task.side_effect = ServerError("down", status=500)

        future = store.apply_local_task_complete("t2")
        executor.run_all()

        result = future.result()
        assert result.outcome is MutationOutcome.FAILED
        assert isinstance(result.error, ServerError)
        assert not store.room.get_task("t2").is_completed_by(ME)
        assert points(store, ME) == 10
        errors.assert_called_once_with(result.error)

    def test_uncomplete_failure_restores_completion(self, store, api, executor):
        store.apply_local_task_complete("t2")
        executor.run_all()
        api.uncomplete_task.side_effect = ServerError("down", status=500)

        future = store.apply_local_task_uncomplete("t2")
        assert points(store, ME) == 10
        assert not store.room.get_task("t2").is_completed_by(ME)
        executor.run_all()

        assert future.result().outcome is MutationOutcome.FAILED
        assert store.room.get_task("t2").is_completed_by(ME)
        assert points(store, ME) == 13

    def test_uncomplete_not_completed_is_noop(self, store, api):
        assert store.apply_local_task_uncomplete("t2").result().outcome is MutationOutcome.NOOP
        api.uncomplete_task.assert_not_called()

    def test_rollback_inverts_clamped_delta(self, store, api, executor):
        """Test that rollback restores the exact pre-call points."""
        store.apply_local_task_complete("t1")
        executor.run_all()
        store.room.get_member(ME).points = 2
        api.uncomplete_task.side_effect = ServerError("down", status=500)

        store.apply_local_task_uncomplete("t1")
        assert points(store, ME) == 0
        executor.run_all()

        assert points(store, ME) == 2

    def test_rollback_keeps_concurrent_remote_change(self, store, api, executor):
        """Test that only the local change is undone, not other members' events."""
        api.complete_task.side_effect = ServerError("down", status=500)

        store.apply_local_task_complete("t2")
        store.apply_remote_task_completed(completed("t2", user_id=BOB, pts=3))
        executor.run_all()

        task = store.room.get_task("t2")
        assert set(task.completed_by) == {BOB}
        assert points(store, BOB) == 8
        assert points(store, ME) == 10

    def test_pending_survives_silent_reload(self, store, executor):
        """Test that a reload before the request settles keeps the local change."""
        store.apply_local_task_complete("t2")

        store.load(ROOM_ID, silent=True)

        assert store.room.get_task("t2").is_completed_by(ME)
        assert points(store, ME) == 13
        executor.run_all()
        assert points(store, ME) == 13

    def test_reload_with_server_state_counts_once(
        self, store, executor, room_payload, tasks_payload
    ):
        """Test that a reload already reflecting the change does not credit twice."""
        store.apply_local_task_complete("t2")
        room_payload["members"][1]["points"] = 13
        tasks_payload["tasks"][1]["completedBy"] = [{"userId": ME}]

        store.load(ROOM_ID, silent=True)

        assert points(store, ME) == 13
        executor.run_all()
        assert points(store, ME) == 13


class TestRemoteEvents:
    """Tests for merging push events."""

    def test_self_echo_is_ignored(self, store, executor):
        """Test that the broadcast of the own completion changes nothing."""
        store.apply_local_task_complete("t2")

        assert store.apply_remote_task_completed(completed("t2", user_id=ME)) is False
        executor.run_all()

        assert points(store, ME) == 13
        assert len(store.room.get_task("t2").completed_by) == 1

    def test_self_echo_after_failure_does_not_resurrect(self, store, api, executor):
        api.complete_task.side_effect = ServerError("down", status=500)
        store.apply_local_task_complete("t2")
        executor.run_all()

        store.apply_remote_task_completed(completed("t2", user_id=ME))

        assert not store.room.get_task("t2").is_completed_by(ME)
        assert points(store, ME) == 10

    def test_self_echo_before_failed_settle_rolls_back(self, store, api, executor):
        """Test that an own echo arriving before the rejection does not pin the change."""
        api.complete_task.side_effect = ServerError("down", status=500)
        future = store.apply_local_task_complete("t2")

        assert store.apply_remote_task_completed(completed("t2", user_id=ME)) is False
        executor.run_all()

        assert future.result().outcome is MutationOutcome.FAILED
        assert not store.room.get_task("t2").is_completed_by(ME)
        assert points(store, ME) == 10

    def test_remote_completion_is_idempotent(self, store):
        event = completed("t2", user_id=OWNER, pts=3)

        assert store.apply_remote_task_completed(event) is True
        assert store.apply_remote_task_completed(event) is False

        assert points(store, OWNER) == 23
        assert store.room.get_task("t2").completed_by[OWNER].points == 3

    def test_remote_completion_without_points(self, store):
        store.apply_remote_task_completed(completed("t2", user_id=OWNER, pts=None))

        assert store.room.get_task("t2").is_completed_by(OWNER)
        assert points(store, OWNER) == 20

    def test_remote_uncompletion_uses_recorded_points(self, store):
        """Test that an uncompletion without delta reverses the loaded completion."""
        event = TaskUncompleted(room_id=ROOM_ID, task_id="t1", user_id=BOB)

        assert store.apply_remote_task_uncompleted(event) is True
        assert store.apply_remote_task_uncompleted(event) is False

        assert not store.room.get_task("t1").is_completed_by(BOB)
        assert points(store, BOB) == 0

    def test_points_clamped_at_zero(self, store):
        event = TaskUncompleted(room_id=ROOM_ID, task_id="t1", user_id=BOB, points=100)

        store.apply_remote_task_uncompleted(event)

        assert points(store, BOB) == 0

    def test_event_for_other_room_is_ignored(self, store):
        assert store.apply_remote_task_completed(completed("t2", room_id="other")) is False
        assert not store.room.get_task("t2").is_completed_by(BOB)

    def test_unknown_task_is_ignored(self, store):
        assert store.apply_remote_task_completed(completed("nope")) is False

    def test_member_joined_is_idempotent(self, store):
        event = MemberJoined(room_id=ROOM_ID, user=UserRef(id="u-new", username="nina"))

        assert store.apply_member_joined(event) is True
        assert store.apply_member_joined(event) is False

        member = store.room.get_member("u-new")
        assert member.points == 0
        assert len(store.room.members) == 4

    def test_member_left(self, store):
        event = MemberLeft(room_id=ROOM_ID, user_id=BOB)

        assert store.apply_member_left(event) is True
        assert store.apply_member_left(event) is False
        assert store.room.get_member(BOB) is None

    def test_member_kicked_other(self, store):
        assert store.apply_member_kicked(MemberKicked(room_id=ROOM_ID, user_id=BOB)) is True
        assert store.room.get_member(BOB) is None
        assert store.removed is None

    def test_kicked_self_invalidates(self, store):
        """Test that being kicked drops the room and fires the terminal signal."""
        removed = MagicMock()
        store.add_removed_listener(removed)

        store.apply_member_kicked(MemberKicked.model_validate({"roomId": ROOM_ID, "oderId": ME}))

        assert store.room is None
        assert store.removed.reason == "kicked"
        signal = removed.call_args.args[0]
        assert isinstance(signal, RemovedFromRoom)
        assert signal.room_id == ROOM_ID

    def test_left_self_invalidates(self, store):
        store.apply_member_left(MemberLeft(room_id=ROOM_ID, user_id=ME))

        assert store.room is None
        assert store.removed.reason == "left"

    def test_task_created_is_idempotent(self, store):
        event = TaskCreated(room_id=ROOM_ID, task=Task(id="t3", title="Read", points=2))

        assert store.apply_task_created(event) is True
        assert store.apply_task_created(event) is False
        assert [t.id for t in store.room.tasks] == ["t1", "t2", "t3"]

    def test_task_deleted_is_idempotent(self, store):
        event = TaskDeleted(room_id=ROOM_ID, task_id="t1")

        assert store.apply_task_deleted(event) is True
        assert store.apply_task_deleted(event) is False
        assert store.room.get_task("t1") is None

    def test_task_updated_keeps_completions(self, store):
        event = TaskUpdated(room_id=ROOM_ID, task=Task(id="t1", title="Drink more water", points=6))

        store.apply_task_updated(event)

        task = store.room.get_task("t1")
        assert task.title == "Drink more water"
        assert task.points == 6
        assert task.is_completed_by(BOB)
        assert [t.id for t in store.room.tasks] == ["t1", "t2"]

    def test_room_updated_keeps_members_and_tasks(self, store, room_payload):
        room_payload["name"] = "Evening routine"
        room_payload["isPublic"] = False
        room_payload["members"] = []
        room_payload["tasks"] = []

        store.apply_room_updated(RoomUpdated.model_validate({"room": room_payload}))

        assert store.room.name == "Evening routine"
        assert not store.room.is_public
        assert len(store.room.members) == 3
        assert len(store.room.tasks) == 2

    def test_room_deleted(self, store):
        removed = MagicMock()
        store.add_removed_listener(removed)

        assert store.apply_room_deleted(RoomDeleted(room_id=ROOM_ID)) is True

        assert store.room is None
        assert removed.call_args.args[0].reason == "disbanded"
