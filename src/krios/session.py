import dataclasses
import logging
import typing as t

from krios.models import UserRef

log = logging.getLogger(__name__)


@dataclasses.dataclass
class Session:
    """Authenticated session context shared by the transport and all stores.

    The stores read the current user from here to recognize self-echoes and
    the transport reads the bearer token on every connection attempt, so a
    refreshed token is picked up without reconnecting by hand.

    Parameters
    ----------
    user : UserRef
        The authenticated user.
    token : str | None
        Bearer credential for REST calls and the Socket.IO handshake.
    """

    user: UserRef
    token: str | None = None
    _teardown: list[t.Callable[[], None]] = dataclasses.field(
        default_factory=list, init=False, repr=False
    )
    _active: bool = dataclasses.field(default=True, init=False)

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def active(self) -> bool:
        return self._active

    def is_self(self, user_id: str | None) -> bool:
        return user_id is not None and user_id == self.user.id

    def on_logout(self, callback: t.Callable[[], None]) -> None:
        """Register a callback run (in reverse registration order) on logout."""
        self._teardown.append(callback)

    def logout(self) -> None:
        """Run all teardown callbacks and drop the credential.

        Teardown callbacks must not raise; a failing callback is logged and
        the remaining ones still run.
        """
        if not self._active:
            return
        self._active = False
        while self._teardown:
            callback = self._teardown.pop()
            try:
                callback()
            except Exception as e:
                log.error(f"Error during session teardown in {callback!r}: {e}", exc_info=True)
        self.token = None
        log.info(f"Session for user '{self.user.id}' closed")
