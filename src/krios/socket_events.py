"""Pydantic models for Socket.IO events.

Each model carries the wire event name in ``EVENT`` so handlers and emitters
never repeat string literals.
"""

import typing as t

from pydantic import AliasChoices, Field, field_validator

from krios.models import ChatMessage, Room, Task, UserRef, WireModel

# =============================================================================
# Server -> client
# =============================================================================


class RoomEvent(WireModel):
    """Base for events scoped to one room."""

    EVENT: t.ClassVar[str] = ""

    room_id: str

    @field_validator("room_id", mode="before")
    @classmethod
    def _room_id(cls, value: t.Any) -> t.Any:
        if isinstance(value, dict):
            return value.get("_id") or value.get("id")
        return value


class TaskCompleted(RoomEvent):
    EVENT: t.ClassVar[str] = "task:completed"

    task_id: str
    user_id: str
    username: str | None = None
    avatar: str | None = None
    points: int | None = Field(default=None, ge=0)


class TaskUncompleted(RoomEvent):
    EVENT: t.ClassVar[str] = "task:uncompleted"

    task_id: str
    user_id: str
    points: int | None = Field(default=None, ge=0)


class TaskCreated(RoomEvent):
    EVENT: t.ClassVar[str] = "task:created"

    task: Task


class TaskUpdated(RoomEvent):
    EVENT: t.ClassVar[str] = "task:updated"

    task: Task


class TaskDeleted(RoomEvent):
    EVENT: t.ClassVar[str] = "task:deleted"

    task_id: str


class MemberJoined(RoomEvent):
    EVENT: t.ClassVar[str] = "member:joined"

    user: UserRef


class MemberLeft(RoomEvent):
    EVENT: t.ClassVar[str] = "member:left"

    user_id: str
    username: str | None = None


class MemberKicked(RoomEvent):
    EVENT: t.ClassVar[str] = "member:kicked"

    # the server emits the misspelled "oderId" key
    user_id: str = Field(validation_alias=AliasChoices("userId", "oderId", "user_id"))
    username: str | None = None


class ChatTyping(RoomEvent):
    EVENT: t.ClassVar[str] = "chat:typing"

    user_id: str
    username: str | None = None
    is_typing: bool = True


class RoomDeleted(RoomEvent):
    EVENT: t.ClassVar[str] = "room:deleted"


class ChatMessageReceived(WireModel):
    EVENT: t.ClassVar[str] = "chat:message"

    message: ChatMessage

    @property
    def room_id(self) -> str | None:
        return self.message.room_id


class RoomUpdated(WireModel):
    EVENT: t.ClassVar[str] = "room:updated"

    room: Room

    @property
    def room_id(self) -> str:
        return self.room.id


class NotificationNew(WireModel):
    EVENT: t.ClassVar[str] = "notification:new"


class NotificationUnreadCount(WireModel):
    EVENT: t.ClassVar[str] = "notification:unreadCount"

    unread_count: int = Field(ge=0)


class UserStatus(WireModel):
    EVENT: t.ClassVar[str] = "user:status"

    user_id: str
    is_online: bool


USERS_ONLINE = "users:online"

# =============================================================================
# Client -> server
# =============================================================================

ROOM_JOIN = "room:join"
ROOM_LEAVE = "room:leave"
USERS_GET_ONLINE = "users:getOnline"
CHAT_TYPING = "chat:typing"
