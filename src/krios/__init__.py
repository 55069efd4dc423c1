"""Krios real-time client: room, chat and notification state kept in sync."""
import importlib.metadata
import logging

from krios.chat_manager import ChatTranscript
from krios.client import Krios
from krios.config import KriosConfig, get_config
from krios.coordinator import RoomCoordinator
from krios.exceptions import KriosException, RemovedFromRoom, RequestError, RoomLoadError
from krios.models import ChatMessage, CompletionStatus, Member, Room, Task, UserRef
from krios.mutation import MutationOutcome, MutationResult
from krios.notification_manager import UnreadCounter
from krios.presence_manager import Presence
from krios.room_manager import RoomStore
from krios.session import Session
from krios.socket_manager import ConnectionState, SocketManager

__all__ = [
    "ChatMessage",
    "ChatTranscript",
    "CompletionStatus",
    "ConnectionState",
    "Krios",
    "KriosConfig",
    "KriosException",
    "Member",
    "MutationOutcome",
    "MutationResult",
    "Presence",
    "RemovedFromRoom",
    "RequestError",
    "Room",
    "RoomCoordinator",
    "RoomLoadError",
    "RoomStore",
    "Session",
    "SocketManager",
    "Task",
    "UnreadCounter",
    "UserRef",
    "get_config",
]

log = logging.getLogger(__name__)
handler = logging.StreamHandler()
formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
handler.setFormatter(formatter)
log.addHandler(handler)

try:
    __version__ = importlib.metadata.version("krios-client")
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.0.0"
