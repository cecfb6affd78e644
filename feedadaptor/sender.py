"""Sends feed files to the appliance and reads its reply.

A feed is POSTed as ``multipart/form-data`` to the appliance's feed port. The
reply is a short plain-text token; only ``Success`` means the feed was
accepted.
"""

from __future__ import annotations

import logging
import re
import zlib
from http.client import BadStatusLine
from typing import Iterator, Optional

import requests
from urllib3.exceptions import ConnectTimeoutError, NewConnectionError

from .errors import FailedReadingReply, FailedToConnect, FailedWriting, GsaRejectedFeed

logger = logging.getLogger(__name__)

DATASOURCE_FORMAT = re.compile(r"[a-zA-Z_][a-zA-Z0-9_-]*")
GROUPSOURCE_FORMAT = re.compile(r"[a-zA-Z_][a-zA-Z0-9_-]{0,9}")

# Escaped feed XML never contains "<<": every literal "<" in content is "&lt;".
BOUNDARY = "<<"
CRLF = "\r\n"

# The appliance only accepts compressed request bodies up to 1 MB.
MAX_COMPRESSED_MESSAGE_SIZE = 1024 * 1024

FEED_PORT = 19900
SECURE_FEED_PORT = 19902


def make_handler_url(host: str, secure: bool, path: str, port: Optional[int] = None) -> str:
    if not host or not path:
        raise ValueError("host and path are required")
    if secure:
        return f"https://{host}:{port or SECURE_FEED_PORT}/{path}"
    return f"http://{host}:{port or FEED_PORT}/{path}"


def _causes(exc: BaseException) -> Iterator[BaseException]:
    """Walk the wrapped exceptions requests and urllib3 leave behind."""
    seen = set()
    pending = [exc]
    while pending:
        current = pending.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        for candidate in (getattr(current, "reason", None), current.__cause__, current.__context__, *current.args):
            if isinstance(candidate, BaseException):
                pending.append(candidate)


def _is_connect_failure(exc: BaseException) -> bool:
    return any(isinstance(cause, (NewConnectionError, ConnectTimeoutError)) for cause in _causes(exc))


def _is_reply_failure(exc: BaseException) -> bool:
    return any(isinstance(cause, BadStatusLine) for cause in _causes(exc))


def _gzip_chunks(message: bytes, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
    # A generator body makes requests use chunked transfer encoding.
    compressor = zlib.compressobj(wbits=31)
    for start in range(0, len(message), chunk_size):
        chunk = compressor.compress(message[start:start + chunk_size])
        if chunk:
            yield chunk
    yield compressor.flush()


class GsaFeedFileSender:
    """Takes an XML feed file, sends it to the appliance and checks the reply."""

    def __init__(
        self,
        host: str,
        secure: bool = False,
        encoding: str = "UTF-8",
        port: Optional[int] = None,
        connect_timeout: float = 30.0,
        read_timeout: float = 180.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        "".encode(encoding)  # fail fast on an unknown charset
        self._feed_url = make_handler_url(host, secure, "xmlfeed", port)
        self._groups_url = make_handler_url(host, secure, "xmlgroups", port)
        self._encoding = encoding
        self._timeout = (connect_timeout, read_timeout)
        self._session = session or requests.Session()

    @property
    def feed_url(self) -> str:
        return self._feed_url

    @property
    def groups_url(self) -> str:
        return self._groups_url

    @staticmethod
    def _post_parameter(name: str, mimetype: str, value: str) -> str:
        return (
            f"--{BOUNDARY}{CRLF}"
            f'Content-Disposition: form-data; name="{name}"{CRLF}'
            f"Content-Type: {mimetype}{CRLF}"
            f"{CRLF}{value}{CRLF}"
        )

    def build_metadata_and_url_message(self, datasource: str, feed_type: str, xml_document: str) -> bytes:
        body = (
            self._post_parameter("datasource", "text/plain", datasource)
            + self._post_parameter("feedtype", "text/plain", feed_type)
            + self._post_parameter("data", "text/xml", xml_document)
            + f"--{BOUNDARY}--{CRLF}"
        )
        return body.encode(self._encoding)

    def build_groups_message(self, groupsource: str, xml_document: str) -> bytes:
        body = (
            self._post_parameter("groupsource", "text/plain", groupsource)
            + self._post_parameter("data", "text/xml", xml_document)
            + f"--{BOUNDARY}--{CRLF}"
        )
        return body.encode(self._encoding)

    def send_metadata_and_url(
        self,
        datasource: str,
        xml_document: str,
        use_compression: bool = True,
        feed_type: str = "metadata-and-url",
    ) -> None:
        """Send a feed with the given datasource name.

        Datasource names are limited to ``[a-zA-Z_][a-zA-Z0-9_-]*``.
        """
        if not DATASOURCE_FORMAT.fullmatch(datasource or ""):
            raise ValueError(f"Data source contains illegal characters: {datasource!r}")
        message = self.build_metadata_and_url_message(datasource, feed_type, xml_document)
        self._send_message(self._feed_url, message, use_compression)

    def send_groups(self, groupsource: str, xml_document: str, use_compression: bool = True) -> None:
        """Send group definitions; group sources are at most ten characters."""
        if not GROUPSOURCE_FORMAT.fullmatch(groupsource or ""):
            raise ValueError(f"Group source is invalid: {groupsource!r}")
        message = self.build_groups_message(groupsource, xml_document)
        self._send_message(self._groups_url, message, use_compression)

    def _send_message(self, url: str, message: bytes, use_compression: bool) -> None:
        if len(message) >= MAX_COMPRESSED_MESSAGE_SIZE:
            use_compression = False
        headers = {"Content-Type": f"multipart/form-data; boundary={BOUNDARY}"}
        if use_compression:
            # The appliance accepts gzip, but there is no way to ask first.
            headers["Content-Encoding"] = "gzip"
            body = _gzip_chunks(message)
        else:
            body = message

        logger.debug("Posting %d bytes to %s (compressed=%s)", len(message), url, use_compression)
        try:
            response = self._session.post(url, data=body, headers=headers, timeout=self._timeout)
        except (requests.exceptions.ConnectTimeout, requests.exceptions.SSLError) as exc:
            raise FailedToConnect(f"could not connect to {url}", exc) from exc
        except requests.exceptions.ReadTimeout as exc:
            raise FailedReadingReply(f"timed out waiting for reply from {url}", exc) from exc
        except requests.exceptions.ConnectionError as exc:
            if _is_connect_failure(exc):
                raise FailedToConnect(f"could not connect to {url}", exc) from exc
            if _is_reply_failure(exc):
                raise FailedReadingReply(f"connection closed before reply from {url}", exc) from exc
            raise FailedWriting(f"failed sending feed to {url}", exc) from exc
        except (requests.exceptions.ChunkedEncodingError, requests.exceptions.ContentDecodingError) as exc:
            raise FailedReadingReply(f"could not read reply from {url}", exc) from exc

        try:
            if response.status_code != 200:
                raise FailedReadingReply(f"unexpected HTTP status {response.status_code} from {url}")
            try:
                text = response.content.decode(self._encoding)
            except UnicodeDecodeError as exc:
                raise FailedReadingReply(f"undecodable reply from {url}", exc) from exc
        finally:
            response.close()
        self._handle_reply("".join(text.splitlines()))

    @staticmethod
    def _handle_reply(reply: str) -> None:
        if reply == "Success":
            logger.info("success message received")
            return
        raise GsaRejectedFeed(reply)
