"""Exception hierarchy for the feed adaptor."""

from __future__ import annotations

from typing import Optional


class FeedAdaptorError(Exception):
    """Base class for all errors raised by the adaptor."""


class InvalidConfiguration(FeedAdaptorError):
    """Raised when the adaptor configuration cannot be used."""


class TransmissionError(FeedAdaptorError):
    """A feed could not be delivered because of an I/O problem.

    The underlying exception is available as ``cause`` (and ``__cause__`` when
    raised with ``from``).
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class FailedToConnect(TransmissionError):
    """Opening the connection to the appliance failed."""


class FailedWriting(TransmissionError):
    """The connection was opened but sending the request body failed."""


class FailedReadingReply(TransmissionError):
    """The request was sent but the reply could not be read or was not a 200."""


class GsaRejectedFeed(FeedAdaptorError):
    """The appliance answered, but with something other than ``Success``."""

    def __init__(self, reply: str) -> None:
        super().__init__(f"GSA reply: {reply!r}")
        self.reply = reply


class PushInterrupted(FeedAdaptorError):
    """The push was cancelled while sleeping or enumerating."""
