"""Client-side models of the Room aggregate and chat messages.

The server speaks camelCase JSON with Mongo-style ``_id`` keys and embeds
user references either as plain id strings or as populated objects. The
validators below normalize both shapes so the stores only ever deal with
one representation.
"""

import typing as t
import uuid
from datetime import datetime
from enum import Enum

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from krios.utils.time import ensure_aware, utc_now

TEMP_ID_PREFIX = "temp-"


class MemberRole(str, Enum):
    MEMBER = "member"
    OWNER = "owner"


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class CompletionStatus(str, Enum):
    """Completion of a task from the point of view of one user."""

    NOT_COMPLETED = "not-completed"
    COMPLETED = "completed"


class MessageType(str, Enum):
    TEXT = "text"
    SYSTEM = "system"


def _id_field(**kwargs) -> t.Any:
    return Field(validation_alias=AliasChoices("_id", "id"), serialization_alias="_id", **kwargs)


def _coerce_user_ref(value: t.Any) -> t.Any:
    """Accept ``"abc"``, ``{"_id": "abc"}`` and ``{"id": "abc"}``."""
    if isinstance(value, str):
        return {"_id": value}
    return value


def _coerce_user_id(value: t.Any) -> t.Any:
    if isinstance(value, dict):
        return value.get("_id") or value.get("id")
    return value


class WireModel(BaseModel):
    """Base for all models parsed from server payloads."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        coerce_numbers_to_str=True,
    )


class UserRef(WireModel):
    """Reference to a user with the display fields the views need."""

    id: str = _id_field()
    username: str | None = None
    avatar: str | None = None


class Member(WireModel):
    user: UserRef = Field(alias="userId")
    role: MemberRole = MemberRole.MEMBER
    points: int = Field(default=0, ge=0)
    streak: int = Field(default=0, ge=0)

    @field_validator("user", mode="before")
    @classmethod
    def _user(cls, value: t.Any) -> t.Any:
        return _coerce_user_ref(value)

    @field_validator("points", "streak", mode="before")
    @classmethod
    def _none_is_zero(cls, value: t.Any) -> t.Any:
        return 0 if value is None else value

    @property
    def user_id(self) -> str:
        return self.user.id


class Completion(WireModel):
    """One entry of a task's CompletedBy set."""

    user_id: str
    username: str | None = None
    avatar: str | None = None
    completed_at: datetime = Field(default_factory=utc_now)
    # Points credited for this completion, used to reverse it later.
    points: int = Field(default=0, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _populated_user(cls, data: t.Any) -> t.Any:
        """Take the display fields from a populated ``userId`` object."""
        if not isinstance(data, dict):
            return data
        user = data.get("userId", data.get("user_id"))
        if not isinstance(user, dict):
            return data
        data = dict(data)
        for key in ("username", "avatar"):
            if data.get(key) is None and user.get(key) is not None:
                data[key] = user[key]
        return data

    @field_validator("user_id", mode="before")
    @classmethod
    def _user_id(cls, value: t.Any) -> t.Any:
        return _coerce_user_id(value)

    @field_validator("completed_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return ensure_aware(value)


class Task(WireModel):
    id: str = _id_field()
    title: str
    description: str = ""
    points: int = Field(default=1, ge=1)
    frequency: str = "daily"
    is_active: bool = True
    completed_by: dict[str, Completion] = Field(default_factory=dict)

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, value: t.Any) -> t.Any:
        return "" if value is None else value

    @field_validator("completed_by", mode="before")
    @classmethod
    def _completed_by(cls, value: t.Any) -> t.Any:
        """Key completions by user id; the first entry per user wins."""
        if value is None:
            return {}
        if isinstance(value, dict):
            return value
        entries: dict[str, t.Any] = {}
        for entry in value:
            if isinstance(entry, Completion):
                user_id = entry.user_id
            elif isinstance(entry, dict):
                user_id = _coerce_user_id(entry.get("userId", entry.get("user_id")))
            else:
                continue
            if user_id is None or str(user_id) in entries:
                continue
            entries[str(user_id)] = entry
        return entries

    @model_validator(mode="after")
    def _credited_points(self) -> "Task":
        # the server credits the task's value; listings don't repeat it per entry
        for completion in self.completed_by.values():
            if completion.points == 0:
                completion.points = self.points
        return self

    def completion_status(self, user_id: str) -> CompletionStatus:
        if user_id in self.completed_by:
            return CompletionStatus.COMPLETED
        return CompletionStatus.NOT_COMPLETED

    def is_completed_by(self, user_id: str) -> bool:
        return self.completion_status(user_id) is CompletionStatus.COMPLETED

    def add_completion(self, completion: Completion) -> bool:
        """Insert a completion. Returns False if the user already completed."""
        if completion.user_id in self.completed_by:
            return False
        self.completed_by[completion.user_id] = completion
        return True

    def remove_completion(self, user_id: str) -> Completion | None:
        return self.completed_by.pop(user_id, None)


class Room(WireModel):
    """The Room aggregate: metadata, members and today's tasks."""

    id: str = _id_field()
    name: str = ""
    description: str = ""
    is_public: bool = True
    owner_id: str | None = Field(
        default=None, validation_alias=AliasChoices("owner", "ownerId", "owner_id")
    )
    max_members: int = Field(default=50, ge=1)
    join_code: str | None = None
    chat_retention_days: int | None = None
    members: list[Member] = Field(default_factory=list)
    tasks: list[Task] = Field(default_factory=list)

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, value: t.Any) -> t.Any:
        return "" if value is None else value

    @field_validator("owner_id", mode="before")
    @classmethod
    def _owner(cls, value: t.Any) -> t.Any:
        return _coerce_user_id(value)

    @field_validator("tasks", mode="before")
    @classmethod
    def _tasks(cls, value: t.Any) -> t.Any:
        return [] if value is None else value

    @model_validator(mode="after")
    def _normalize_members(self) -> "Room":
        """De-duplicate members by user id and keep exactly one owner."""
        seen: set[str] = set()
        members = []
        for member in self.members:
            if member.user_id in seen:
                continue
            seen.add(member.user_id)
            members.append(member)
        if self.owner_id is None:
            owner = next((m for m in members if m.role is MemberRole.OWNER), None)
            if owner is not None:
                self.owner_id = owner.user_id
        for member in members:
            member.role = (
                MemberRole.OWNER if member.user_id == self.owner_id else MemberRole.MEMBER
            )
        self.members = members
        return self

    @property
    def visibility(self) -> Visibility:
        return Visibility.PUBLIC if self.is_public else Visibility.PRIVATE

    def get_member(self, user_id: str) -> Member | None:
        return next((m for m in self.members if m.user_id == user_id), None)

    def add_member(self, member: Member) -> bool:
        """Append a member. Returns False if the user is already a member."""
        if self.get_member(member.user_id) is not None:
            return False
        if member.user_id != self.owner_id:
            member.role = MemberRole.MEMBER
        self.members.append(member)
        return True

    def remove_member(self, user_id: str) -> Member | None:
        member = self.get_member(user_id)
        if member is not None:
            self.members.remove(member)
        return member

    def get_task(self, task_id: str) -> Task | None:
        return next((task for task in self.tasks if task.id == task_id), None)

    def add_task(self, task: Task) -> bool:
        if self.get_task(task.id) is not None:
            return False
        self.tasks.append(task)
        return True

    def remove_task(self, task_id: str) -> Task | None:
        task = self.get_task(task_id)
        if task is not None:
            self.tasks.remove(task)
        return task


class ReplyRef(WireModel):
    id: str | None = _id_field(default=None)
    message: str | None = None


class ChatMessage(WireModel):
    id: str = _id_field(default_factory=lambda: f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}")
    room_id: str | None = None
    sender: UserRef | None = Field(default=None, alias="userId")
    text: str = Field(default="", validation_alias=AliasChoices("message", "content", "text"))
    created_at: datetime = Field(default_factory=utc_now)
    message_type: MessageType = Field(
        default=MessageType.TEXT, validation_alias=AliasChoices("messageType", "type")
    )
    reply_to: ReplyRef | None = None
    pending: bool = Field(default=False, exclude=True)

    @field_validator("sender", mode="before")
    @classmethod
    def _sender(cls, value: t.Any) -> t.Any:
        return _coerce_user_ref(value)

    @field_validator("message_type", mode="before")
    @classmethod
    def _message_type(cls, value: t.Any) -> t.Any:
        if value not in (MessageType.TEXT.value, MessageType.SYSTEM.value, None):
            return MessageType.TEXT.value
        return value or MessageType.TEXT.value

    @field_validator("created_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @property
    def sender_id(self) -> str | None:
        return self.sender.id if self.sender is not None else None

    @property
    def is_temporary(self) -> bool:
        return self.id.startswith(TEMP_ID_PREFIX)
