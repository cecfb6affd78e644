"""Conversion between DocIds and the URLs used for them in feed files."""

from __future__ import annotations

import re
from typing import Optional
from urllib.parse import quote, unquote, urlsplit

from .models import DocId

# Runs of dots get two extra dots so "/./" and "/../" survive URL normalisation.
_DOTS_ONLY = re.compile(r"^\.+$")
_ESCAPED_DOTS = re.compile(r"^\.{3,}$")


def _encode_segment(segment: str) -> str:
    if _DOTS_ONLY.match(segment):
        segment += ".."
    return quote(segment, safe="")


def _decode_segment(segment: str) -> str:
    if _ESCAPED_DOTS.match(segment):
        segment = segment[:-2]
    return unquote(segment, errors="strict")


class DocIdCodec:
    """Encodes DocIds into appliance-visible URLs and back.

    In the default mode every ``/``-separated segment of the unique id is
    percent-encoded and appended to the base document URL. When
    ``doc_id_is_url`` is set the unique id already is a URL and passes through
    untouched.
    """

    def __init__(self, base_doc_url: str, doc_id_is_url: bool = False) -> None:
        if base_doc_url is None:
            raise TypeError("base_doc_url must not be None")
        parts = urlsplit(base_doc_url)
        if not doc_id_is_url and (not parts.scheme or not parts.netloc):
            raise ValueError(f"base_doc_url must be an absolute URL: {base_doc_url!r}")
        if not base_doc_url.endswith("/"):
            base_doc_url += "/"
        self._base_doc_url = base_doc_url
        self._base_path = urlsplit(base_doc_url).path
        self._doc_id_is_url = doc_id_is_url

    @property
    def base_doc_url(self) -> str:
        return self._base_doc_url

    @property
    def doc_id_is_url(self) -> bool:
        return self._doc_id_is_url

    def encode(self, doc_id: DocId) -> str:
        if self._doc_id_is_url:
            return doc_id.unique_id
        encoded = "/".join(_encode_segment(s) for s in doc_id.unique_id.split("/"))
        return self._base_doc_url + encoded

    def encode_with_fragment(self, doc_id: DocId, fragment: Optional[str]) -> str:
        url = self.encode(doc_id)
        if fragment is None:
            return url
        return f"{url}#{quote(fragment, safe='')}"

    def decode(self, url: str) -> DocId:
        """Given a URL that was used in a feed file, convert it back to a DocId."""
        if self._doc_id_is_url:
            return DocId(url)
        path = urlsplit(url).path
        if not path.startswith(self._base_path):
            raise ValueError(f"URL does not refer to a DocId: {url!r}")
        encoded = path[len(self._base_path):]
        return DocId("/".join(_decode_segment(s) for s in encoded.split("/")))
