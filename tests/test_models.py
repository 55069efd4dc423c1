"""Tests for the wire models of the Room aggregate and chat messages."""

import pytest
from pydantic import ValidationError

from krios.models import (
    ChatMessage,
    Completion,
    CompletionStatus,
    Member,
    MemberRole,
    MessageType,
    Room,
    Task,
    Visibility,
)
from krios.socket_events import MemberKicked, TaskCompleted

from conftest import BOB, ME, OWNER, ROOM_ID


class TestRoom:
    """Tests for Room parsing and membership invariants."""

    def test_parse_server_payload(self, room_payload) -> None:
        """Test that populated and plain user references both parse."""
        room = Room.model_validate(room_payload)

        assert room.id == ROOM_ID
        assert room.owner_id == OWNER
        assert room.max_members == 10
        assert room.visibility is Visibility.PUBLIC
        assert [m.user_id for m in room.members] == [OWNER, ME, BOB]
        assert room.get_member(BOB).user.username is None
        assert room.get_member(BOB).streak == 1

    def test_duplicate_members_are_dropped(self, room_payload) -> None:
        """Test that members are unique by user id, first entry wins."""
        room_payload["members"].append({"userId": ME, "role": "member", "points": 99})

        room = Room.model_validate(room_payload)

        assert len(room.members) == 3
        assert room.get_member(ME).points == 10

    def test_exactly_one_owner(self, room_payload) -> None:
        """Test that only the owner id carries the owner role."""
        room_payload["members"][1]["role"] = "owner"

        room = Room.model_validate(room_payload)

        owners = [m for m in room.members if m.role is MemberRole.OWNER]
        assert [m.user_id for m in owners] == [OWNER]

    def test_owner_inferred_from_role(self, room_payload) -> None:
        """Test that a missing owner field is taken from the owner member."""
        del room_payload["owner"]

        room = Room.model_validate(room_payload)

        assert room.owner_id == OWNER

    def test_add_member_is_idempotent(self, room_payload) -> None:
        room = Room.model_validate(room_payload)

        assert room.add_member(Member.model_validate({"userId": "u-new"})) is True
        assert room.add_member(Member.model_validate({"userId": "u-new"})) is False
        assert len(room.members) == 4

    def test_add_task_is_idempotent(self, room_payload) -> None:
        room = Room.model_validate(room_payload)

        assert room.add_task(Task(id="t1", title="Other")) is False
        assert room.get_task("t1").title == "Drink water"

    def test_null_fields_are_defaulted(self) -> None:
        room = Room.model_validate({"_id": "r", "description": None, "tasks": None})

        assert room.description == ""
        assert room.tasks == []
        assert room.owner_id is None


class TestTask:
    """Tests for CompletedBy handling."""

    def test_completed_by_list_is_keyed_by_user(self, tasks_payload) -> None:
        task = Task.model_validate(tasks_payload["tasks"][0])

        assert set(task.completed_by) == {BOB}
        assert task.completed_by[BOB].username == "bob"
        assert task.completed_by[BOB].completed_at.tzinfo is not None

    def test_completion_keeps_populated_user_fields(self) -> None:
        completion = Completion.model_validate(
            {"userId": {"_id": BOB, "username": "bob", "avatar": "b.png"}}
        )

        assert completion.user_id == BOB
        assert completion.username == "bob"
        assert completion.avatar == "b.png"

    def test_completion_flat_username_wins(self) -> None:
        completion = Completion.model_validate(
            {"userId": {"_id": BOB, "username": "old"}, "username": "bob"}
        )

        assert completion.username == "bob"

    def test_loaded_completion_records_task_points(self, tasks_payload) -> None:
        """Test that loaded completions remember the points they credited."""
        task = Task.model_validate(tasks_payload["tasks"][0])

        assert task.completed_by[BOB].points == 5

    def test_duplicate_completion_entries_collapse(self) -> None:
        task = Task.model_validate(
            {
                "_id": "t",
                "title": "x",
                "completedBy": [{"userId": BOB}, {"userId": {"_id": BOB}}],
            }
        )

        assert len(task.completed_by) == 1

    def test_completion_status(self) -> None:
        task = Task(id="t", title="x")

        assert task.completion_status(ME) is CompletionStatus.NOT_COMPLETED
        assert task.add_completion(Completion(user_id=ME)) is True
        assert task.add_completion(Completion(user_id=ME)) is False
        assert task.completion_status(ME) is CompletionStatus.COMPLETED
        assert task.remove_completion(ME) is not None
        assert task.remove_completion(ME) is None

    def test_points_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            Task(id="t", title="x", points=0)


class TestChatMessage:
    """Tests for ChatMessage parsing."""

    def test_parse_server_message(self) -> None:
        message = ChatMessage.model_validate(
            {
                "_id": "m1",
                "roomId": ROOM_ID,
                "userId": {"_id": BOB, "username": "bob"},
                "message": "hello",
                "messageType": "system",
                "replyTo": {"_id": "m0", "message": "hi"},
                "createdAt": "2026-01-01T08:00:00Z",
            }
        )

        assert message.id == "m1"
        assert message.sender_id == BOB
        assert message.text == "hello"
        assert message.message_type is MessageType.SYSTEM
        assert message.reply_to.id == "m0"
        assert not message.is_temporary

    def test_unknown_message_type_is_text(self) -> None:
        message = ChatMessage.model_validate({"_id": "m1", "message": "x", "messageType": "nudge"})

        assert message.message_type is MessageType.TEXT

    def test_new_message_has_temporary_id(self) -> None:
        message = ChatMessage(text="hi")

        assert message.is_temporary
        assert "pending" not in message.model_dump()


class TestEvents:
    """Tests for push event payloads."""

    def test_kicked_accepts_misspelled_key(self) -> None:
        event = MemberKicked.model_validate({"roomId": ROOM_ID, "oderId": ME})

        assert event.user_id == ME

    def test_task_completed(self) -> None:
        event = TaskCompleted.model_validate(
            {"roomId": ROOM_ID, "taskId": "t1", "userId": BOB, "points": 5, "leaderboard": []}
        )

        assert event.room_id == ROOM_ID
        assert event.points == 5

    def test_missing_required_field(self) -> None:
        with pytest.raises(ValidationError):
            TaskCompleted.model_validate({"roomId": ROOM_ID, "userId": BOB})
