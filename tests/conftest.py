import copy
import typing as t
from concurrent.futures import Future
from unittest.mock import MagicMock

import pytest
import socketio

from krios.api_manager import APIManager
from krios.chat_manager import ChatTranscript
from krios.config import KriosConfig
from krios.models import UserRef
from krios.room_manager import RoomStore
from krios.session import Session
from krios.socket_manager import SocketManager

ME = "u-me"
OWNER = "u-owner"
BOB = "u-bob"
ROOM_ID = "room-1"


class ManualExecutor:
    """Executor that only runs submitted calls when told to.

    Lets tests decide exactly when a background REST call settles relative
    to push events.
    """

    def __init__(self):
        self.queue: list[tuple[t.Callable, tuple, dict, Future]] = []

    def submit(self, fn, /, *args, **kwargs) -> Future:
        future: Future = Future()
        self.queue.append((fn, args, kwargs, future))
        return future

    @property
    def pending(self) -> int:
        return len(self.queue)

    def run_next(self) -> Future:
        fn, args, kwargs, future = self.queue.pop(0)
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def run_all(self) -> None:
        while self.queue:
            self.run_next()


def fire(sio: MagicMock, event: str, *args) -> None:
    """Deliver a server event to the handler registered on the mocked client."""
    sio.handlers[event](*args)


@pytest.fixture
def config() -> KriosConfig:
    return KriosConfig(api_url="http://krios.test", cache_ttl=0, log_level="DEBUG")


@pytest.fixture
def me() -> UserRef:
    return UserRef(id=ME, username="me", avatar="me.png")


@pytest.fixture
def session(me) -> Session:
    return Session(user=me, token="token-1")


@pytest.fixture
def executor() -> ManualExecutor:
    return ManualExecutor()


@pytest.fixture
def sio() -> MagicMock:
    """A socketio.Client stand-in that records handlers and connects instantly."""
    client = MagicMock(spec=socketio.Client)
    client.handlers = {}
    client.connected = False

    def on(event, handler=None, namespace=None):
        client.handlers[event] = handler

    def connect(*args, **kwargs):
        client.connected = True
        client.handlers["connect"]()

    def disconnect():
        client.connected = False

    client.on.side_effect = on
    client.connect.side_effect = connect
    client.disconnect.side_effect = disconnect
    client.start_background_task.side_effect = lambda fn, *a, **kw: fn(*a, **kw)
    return client


@pytest.fixture
def socket(sio, session, config) -> SocketManager:
    return SocketManager(url=config.api_url, session=session, config=config, sio=sio)


@pytest.fixture
def room_payload() -> dict:
    """A room as returned by ``GET /rooms/{id}``."""
    return {
        "_id": ROOM_ID,
        "name": "Morning routine",
        "description": "Small habits",
        "isPublic": True,
        "owner": {"_id": OWNER, "username": "olive"},
        "maxMembers": 10,
        "joinCode": "ABC123",
        "members": [
            {"userId": {"_id": OWNER, "username": "olive"}, "role": "owner", "points": 20},
            {"userId": {"_id": ME, "username": "me"}, "role": "member", "points": 10},
            {"userId": BOB, "role": "member", "points": 5, "streak": 1},
        ],
        "tasks": [
            {"_id": "t1", "title": "Drink water", "points": 5},
            {"_id": "t2", "title": "Stretch", "points": 3},
        ],
    }


@pytest.fixture
def tasks_payload() -> dict:
    """Today's tasks as returned by ``GET /rooms/{id}/tasks``."""
    return {
        "success": True,
        "tasks": [
            {
                "_id": "t1",
                "title": "Drink water",
                "points": 5,
                "completedBy": [
                    {
                        "userId": {"_id": BOB, "username": "bob"},
                        "completedAt": "2026-01-01T08:00:00Z",
                    }
                ],
            },
            {"_id": "t2", "title": "Stretch", "points": 3, "completedBy": []},
        ],
    }


@pytest.fixture
def api(room_payload, tasks_payload) -> MagicMock:
    mock = MagicMock(spec=APIManager)
    mock.get_room.side_effect = lambda room_id, bypass_cache=False: {
        **copy.deepcopy(room_payload),
        "_id": room_id,
    }
    mock.get_tasks.side_effect = lambda room_id, bypass_cache=False: copy.deepcopy(
        tasks_payload
    )
    mock.get_messages.return_value = []
    mock.get_unread_count.return_value = 0
    return mock


@pytest.fixture
def chat(api, session, executor) -> ChatTranscript:
    return ChatTranscript(api, session, executor, page_size=50)


@pytest.fixture
def store(api, session, executor, chat) -> RoomStore:
    """A RoomStore with ROOM_ID loaded."""
    room_store = RoomStore(api, session, executor, chat=chat)
    room_store.load(ROOM_ID)
    return room_store
