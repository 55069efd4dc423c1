import dataclasses
import logging
import threading
import typing as t

import requests
from cachetools import TTLCache

from krios.exceptions import (
    AuthenticationError,
    NotFoundError,
    PermissionDenied,
    RateLimitError,
    RequestError,
    ServerError,
)
from krios.models import ReplyRef

log = logging.getLogger(__name__)

_STATUS_EXCEPTIONS: dict[int, type[RequestError]] = {
    401: AuthenticationError,
    403: PermissionDenied,
    404: NotFoundError,
    429: RateLimitError,
}


@dataclasses.dataclass
class APIManager:
    """Authenticated REST calls against the Krios API.

    GET responses listed as cacheable are kept for ``cache_ttl`` seconds and
    dropped by prefix whenever a mutation touches the same resource.

    Parameters
    ----------
    url : str
        Server base URL; requests go to ``{url}/api``.
    token_getter : Callable[[], str | None]
        Returns the current bearer token. Read on every request.
    timeout : float
        Per-request timeout in seconds.
    cache_ttl : float
        Lifetime of cached GET responses. 0 disables caching.
    """

    url: str
    token_getter: t.Callable[[], str | None] = lambda: None
    timeout: float = 30.0
    cache_ttl: float = 30.0
    http: requests.Session = dataclasses.field(default_factory=requests.Session)

    _cache: TTLCache | None = dataclasses.field(default=None, init=False, repr=False)
    _cache_lock: threading.Lock = dataclasses.field(
        default_factory=threading.Lock, init=False, repr=False
    )

    def __post_init__(self):
        self.url = self.url.rstrip("/")
        if self.cache_ttl > 0:
            self._cache = TTLCache(maxsize=256, ttl=self.cache_ttl)

    def _get_headers(self) -> dict:
        """Build headers for API requests.

        Returns
        -------
        dict
            Headers dictionary with the Authorization bearer token
        """
        headers = {"Content-Type": "application/json"}
        token = self.token_getter()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _raise_for_error_type(self, response: requests.Response) -> None:
        """Convert API error responses to the matching RequestError subclass.

        Parameters
        ----------
        response : requests.Response
            The HTTP response object

        Raises
        ------
        RequestError
            Or one of its subclasses, based on the status code
        """
        if response.ok:
            return
        try:
            payload = response.json()
            message = payload.get("message") or payload.get("error") or response.text
        except (ValueError, AttributeError):
            message = response.text or response.reason or "Request failed"

        status = response.status_code
        if status >= 500:
            exc_type = ServerError
        else:
            exc_type = _STATUS_EXCEPTIONS.get(status, RequestError)
        raise exc_type(message, status=status)

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self.http.request(
                method,
                f"{self.url}/api{path}",
                headers=self._get_headers(),
                timeout=self.timeout,
                **kwargs,
            )
        except requests.RequestException as e:
            raise RequestError(f"Network error during {method} {path}: {e}") from e

        self._raise_for_error_type(response)
        if not response.content:
            return {}
        return response.json()

    def _get(self, path: str, params: dict | None = None, bypass_cache: bool = False) -> dict:
        key = (path, tuple(sorted((params or {}).items())))
        if self._cache is not None and not bypass_cache:
            with self._cache_lock:
                cached = self._cache.get(key)
            if cached is not None:
                return cached

        data = self._request("GET", path, params=params)
        if self._cache is not None:
            with self._cache_lock:
                self._cache[key] = data
        return data

    def invalidate_cache(self, prefix: str = "") -> None:
        """Drop cached GET responses whose path starts with ``prefix``."""
        if self._cache is None:
            return
        with self._cache_lock:
            for key in [k for k in self._cache if k[0].startswith(prefix)]:
                self._cache.pop(key, None)
        log.debug(f"Cache cleared: {prefix or '<all>'}")

    # -- rooms -------------------------------------------------------------

    def get_room(self, room_id: str, bypass_cache: bool = False) -> dict:
        """Fetch room metadata and members.

        Returns
        -------
        dict
            The ``room`` object of the response.
        """
        data = self._get(f"/rooms/{room_id}", bypass_cache=bypass_cache)
        return data["room"]

    def get_tasks(self, room_id: str, bypass_cache: bool = False) -> dict:
        """Fetch today's tasks including who completed them.

        The full payload is returned so callers can tell an authoritative
        empty ``tasks`` list apart from a response without one.
        """
        return self._get(f"/rooms/{room_id}/tasks", bypass_cache=bypass_cache)

    def complete_task(self, room_id: str, task_id: str) -> dict:
        data = self._request("POST", f"/rooms/{room_id}/tasks/{task_id}/complete")
        self.invalidate_cache(f"/rooms/{room_id}")
        return data

    def uncomplete_task(self, room_id: str, task_id: str) -> dict:
        data = self._request("DELETE", f"/rooms/{room_id}/tasks/{task_id}/complete")
        self.invalidate_cache(f"/rooms/{room_id}")
        return data

    # -- chat --------------------------------------------------------------

    def get_messages(
        self,
        room_id: str,
        limit: int = 50,
        before: str | None = None,
        bypass_cache: bool = False,
    ) -> list[dict]:
        """Fetch a page of chat history in chronological order.

        Parameters
        ----------
        room_id : str
            Room to read.
        limit : int
            Maximum number of messages.
        before : str | None
            ISO timestamp; only messages created before it are returned.
        """
        params: dict[str, t.Any] = {"limit": limit}
        if before is not None:
            params["before"] = before
        data = self._get(f"/rooms/{room_id}/chat", params=params, bypass_cache=bypass_cache)
        return data.get("messages") or []

    def send_message(self, room_id: str, text: str, reply_to: ReplyRef | None = None) -> dict:
        payload: dict[str, t.Any] = {"message": text, "replyToId": None, "replyToText": None}
        if reply_to is not None:
            payload["replyToId"] = reply_to.id
            payload["replyToText"] = reply_to.message
        data = self._request("POST", f"/rooms/{room_id}/chat", json=payload)
        self.invalidate_cache(f"/rooms/{room_id}/chat")
        return data["message"]

    # -- notifications -----------------------------------------------------

    def get_unread_count(self) -> int:
        data = self._request("GET", "/notifications/unread-count")
        return int(data.get("unreadCount") or 0)

    def mark_all_read(self) -> None:
        self._request("PUT", "/notifications/read-all")
        self.invalidate_cache("/notifications")
