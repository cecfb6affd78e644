"""Retry policy for failed pushes.

A :class:`PushErrorHandler` decides whether a failed attempt is retried and
how long to wait first. The decision is kept separate from the sleep itself:
:func:`build_retrying` turns a handler into a ``tenacity.Retrying`` whose
sleep is the push's cancellation token, so a shutdown cuts a backoff short.
"""

from __future__ import annotations

import logging
from abc import ABC
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from tenacity import RetryCallState, Retrying, before_sleep_log
from tenacity.retry import retry_base
from tenacity.wait import wait_base

from .cancellation import CancellationToken
from .errors import FailedReadingReply, FailedToConnect, FailedWriting, GsaRejectedFeed, PushInterrupted

logger = logging.getLogger(__name__)


class FailureKind(str, Enum):
    CONNECT = "connect"
    WRITE = "write"
    READ_REPLY = "read_reply"
    REJECTED = "rejected"
    GET_DOC_IDS = "get_doc_ids"


_TRANSIENT_KINDS = frozenset({FailureKind.CONNECT, FailureKind.WRITE, FailureKind.READ_REPLY, FailureKind.GET_DOC_IDS})


@dataclass(frozen=True)
class PushFailure:
    """One failed attempt: what went wrong and the exception that said so."""

    kind: FailureKind
    cause: BaseException

    @property
    def transient(self) -> bool:
        return self.kind in _TRANSIENT_KINDS

    @classmethod
    def from_exception(cls, exc: BaseException) -> Optional["PushFailure"]:
        """Classify a transmission exception, or ``None`` if it is not one."""
        if isinstance(exc, FailedToConnect):
            return cls(FailureKind.CONNECT, exc)
        if isinstance(exc, FailedWriting):
            return cls(FailureKind.WRITE, exc)
        if isinstance(exc, FailedReadingReply):
            return cls(FailureKind.READ_REPLY, exc)
        if isinstance(exc, GsaRejectedFeed):
            return cls(FailureKind.REJECTED, exc)
        return None


class PushErrorHandler(ABC):
    """Policy consulted after every failed attempt.

    ``ntries`` counts attempts so far, starting at 1 for the first failure.
    Subclasses override the per-kind hooks, or :meth:`should_retry` as a
    whole. The defaults never retry.
    """

    def should_retry(self, failure: PushFailure, ntries: int) -> bool:
        hook = {
            FailureKind.CONNECT: self.handle_failed_to_connect,
            FailureKind.WRITE: self.handle_failed_writing,
            FailureKind.READ_REPLY: self.handle_failed_reading_reply,
            FailureKind.REJECTED: self.handle_rejected,
            FailureKind.GET_DOC_IDS: self.handle_failed_to_get_doc_ids,
        }[failure.kind]
        return hook(failure.cause, ntries)

    def backoff_seconds(self, failure: PushFailure, ntries: int) -> float:
        return 0.0

    def handle_failed_to_connect(self, cause: BaseException, ntries: int) -> bool:
        return False

    def handle_failed_writing(self, cause: BaseException, ntries: int) -> bool:
        return False

    def handle_failed_reading_reply(self, cause: BaseException, ntries: int) -> bool:
        return False

    def handle_rejected(self, cause: BaseException, ntries: int) -> bool:
        return False

    def handle_failed_to_get_doc_ids(self, cause: BaseException, ntries: int) -> bool:
        return False


class BackoffPushErrorHandler(PushErrorHandler):
    """Retries transient failures with a linearly growing pause."""

    def __init__(self, maximum_tries: int = 12, sleep_seconds: float = 5.0) -> None:
        if maximum_tries < 0:
            raise ValueError("maximum_tries must be non-negative")
        if sleep_seconds < 0:
            raise ValueError("sleep_seconds must be non-negative")
        self.maximum_tries = maximum_tries
        self.sleep_seconds = sleep_seconds

    def _transient(self, cause: BaseException, ntries: int) -> bool:
        return ntries <= self.maximum_tries

    handle_failed_to_connect = _transient
    handle_failed_writing = _transient
    handle_failed_reading_reply = _transient
    handle_failed_to_get_doc_ids = _transient

    def backoff_seconds(self, failure: PushFailure, ntries: int) -> float:
        return self.sleep_seconds * ntries

    def __repr__(self) -> str:
        return f"BackoffPushErrorHandler(maximum_tries={self.maximum_tries}, sleep_seconds={self.sleep_seconds})"


class NoRetryPushErrorHandler(PushErrorHandler):
    """Gives up on the first failure."""


def default_handler() -> PushErrorHandler:
    return BackoffPushErrorHandler(maximum_tries=12, sleep_seconds=5.0)


def no_retry_handler() -> PushErrorHandler:
    return NoRetryPushErrorHandler()


def _failure_for(retry_state: RetryCallState, default_kind: Optional[FailureKind]) -> Optional[PushFailure]:
    outcome = retry_state.outcome
    if outcome is None or not outcome.failed:
        return None
    exc = outcome.exception()
    if isinstance(exc, PushInterrupted):
        return None
    failure = PushFailure.from_exception(exc)
    if failure is None and default_kind is not None and isinstance(exc, Exception):
        failure = PushFailure(default_kind, exc)
    return failure


class retry_if_handler_allows(retry_base):
    """Retry strategy that delegates the decision to a push error handler."""

    def __init__(self, handler: PushErrorHandler, default_kind: Optional[FailureKind] = None) -> None:
        self._handler = handler
        self._default_kind = default_kind

    def __call__(self, retry_state: RetryCallState) -> bool:
        failure = _failure_for(retry_state, self._default_kind)
        if failure is None:
            return False
        allowed = self._handler.should_retry(failure, retry_state.attempt_number)
        if not allowed:
            logger.warning(
                "Giving up after %d attempt(s) on %s failure: %s",
                retry_state.attempt_number,
                failure.kind.value,
                failure.cause,
            )
        return allowed


class wait_handler_backoff(wait_base):
    """Wait strategy that asks the push error handler for the pause length."""

    def __init__(self, handler: PushErrorHandler, default_kind: Optional[FailureKind] = None) -> None:
        self._handler = handler
        self._default_kind = default_kind

    def __call__(self, retry_state: RetryCallState) -> float:
        failure = _failure_for(retry_state, self._default_kind)
        if failure is None:
            return 0.0
        return float(self._handler.backoff_seconds(failure, retry_state.attempt_number))


def build_retrying(
    handler: PushErrorHandler,
    cancellation: CancellationToken,
    default_kind: Optional[FailureKind] = None,
) -> Retrying:
    """Create the retry loop for one batch or one listing.

    Exceptions the handler does not classify propagate on the first attempt.
    ``default_kind`` classifies any other ``Exception``; listings use
    ``GET_DOC_IDS`` so that lister errors reach the handler too.
    """
    return Retrying(
        retry=retry_if_handler_allows(handler, default_kind),
        wait=wait_handler_backoff(handler, default_kind),
        sleep=cancellation.sleep,
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
