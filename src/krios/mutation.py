"""Outcome of an optimistic mutation once its background request settles."""

import dataclasses
import enum
import logging
import typing as t
from concurrent.futures import Future

log = logging.getLogger(__name__)


class MutationOutcome(str, enum.Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    NOOP = "noop"


@dataclasses.dataclass(frozen=True)
class MutationResult:
    outcome: MutationOutcome
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is not MutationOutcome.FAILED


class Executor(t.Protocol):
    """Anything with ``concurrent.futures.Executor.submit`` semantics."""

    def submit(self, fn: t.Callable[..., t.Any], /, *args, **kwargs) -> Future: ...


def resolved(outcome: MutationOutcome, error: Exception | None = None) -> "Future[MutationResult]":
    """A future that is already settled, for mutations that never hit the network."""
    future: Future[MutationResult] = Future()
    future.set_result(MutationResult(outcome, error))
    return future


def notify(listeners: t.Iterable[t.Callable[..., None]], *args) -> None:
    """Call every listener, logging instead of propagating listener errors."""
    for listener in list(listeners):
        try:
            listener(*args)
        except Exception as e:
            log.error(f"Error in listener {listener!r}: {e}", exc_info=True)
