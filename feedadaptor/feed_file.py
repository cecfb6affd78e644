"""Builds metadata-and-url and group definition feed files.

The layout follows the appliance feeds guide: a ``<gsafeed>`` root holding a
``<header>`` and one ``<group>`` with a ``<record>`` per document and an
``<acl>`` per named resource. Output is produced directly as text so that the
same batch always renders to byte-identical XML.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Callable, Iterable, List, Optional, Sequence, Tuple
from xml.sax.saxutils import escape

from .codec import DocIdCodec
from .models import DEFAULT_NAMESPACE, Acl, AclItem, GroupDefinition, Principal, PushItem, Record

logger = logging.getLogger(__name__)

FEED_TYPE_METADATA_AND_URL = "metadata-and-url"
FEED_TYPE_INCREMENTAL = "incremental"
FEED_TYPES = (FEED_TYPE_METADATA_AND_URL, FEED_TYPE_INCREMENTAL)

DOCTYPE = '<!DOCTYPE gsafeed PUBLIC "-//Google//DTD GSA Feeds//EN" "gsafeed.dtd">'
DEFAULT_COMMENT = "GSA EasyConnector"

_TEXT_ENTITIES = {'"': "&quot;", "'": "&apos;", "\r": "&#13;"}
# Parsers normalise whitespace inside attribute values, so it is escaped too.
_ATTR_ENTITIES = dict(_TEXT_ENTITIES, **{"\n": "&#10;", "\t": "&#9;"})
_ILLEGAL_XML_CHARS = re.compile("[^\u0009\u000a\u000d\u0020-\ud7ff\ue000-\ufffd\U00010000-\U0010ffff]")

AclTransform = Callable[[Acl], Acl]
Attributes = Sequence[Tuple[str, Optional[str]]]


def _check_legal(value: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"feed values must be str, got {value!r}")
    match = _ILLEGAL_XML_CHARS.search(value)
    if match:
        raise ValueError(f"character {match.group()!r} cannot be represented in XML: {value!r}")
    return value


def escape_text(value: str) -> str:
    return escape(_check_legal(value), _TEXT_ENTITIES)


def escape_attribute(value: str) -> str:
    return escape(_check_legal(value), _ATTR_ENTITIES)


def format_last_modified(value: datetime) -> str:
    """RFC 822 date in GMT, as the appliance expects for ``last-modified``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


class _XmlWriter:
    """Minimal indenting writer; attributes with a ``None`` value are skipped."""

    def __init__(self) -> None:
        self._lines: List[str] = []
        self._depth = 0

    def _indent(self) -> str:
        return "  " * self._depth

    @staticmethod
    def _attrs(attributes: Attributes) -> str:
        return "".join(
            f' {name}="{escape_attribute(value)}"' for name, value in attributes if value is not None
        )

    def raw(self, line: str) -> None:
        self._lines.append(line)

    def comment(self, text: str) -> None:
        if "--" in text or text.endswith("-"):
            raise ValueError(f"comment cannot contain '--' or end with '-': {text!r}")
        self._lines.append(f"{self._indent()}<!--{_check_legal(text)}-->")

    def open(self, tag: str, attributes: Attributes = ()) -> None:
        self._lines.append(f"{self._indent()}<{tag}{self._attrs(attributes)}>")
        self._depth += 1

    def close(self, tag: str) -> None:
        self._depth -= 1
        self._lines.append(f"{self._indent()}</{tag}>")

    def empty(self, tag: str, attributes: Attributes = ()) -> None:
        self._lines.append(f"{self._indent()}<{tag}{self._attrs(attributes)}/>")

    def text(self, tag: str, value: str, attributes: Attributes = ()) -> None:
        self._lines.append(f"{self._indent()}<{tag}{self._attrs(attributes)}>{escape_text(value)}</{tag}>")

    def getvalue(self) -> str:
        return "\n".join(self._lines) + "\n"


class GsaFeedFileMaker:
    """Makes XML feed files from batches of push items."""

    def __init__(
        self,
        codec: DocIdCodec,
        acl_transform: Optional[AclTransform] = None,
        separate_closing_record_tag: bool = False,
        use_auth_method_workaround: bool = False,
        crawl_immediately_override: Optional[bool] = None,
        crawl_once_override: Optional[bool] = None,
        comments: Iterable[str] = (),
    ) -> None:
        self._codec = codec
        self._acl_transform = acl_transform
        self._separate_closing_record_tag = separate_closing_record_tag
        self._use_auth_method_workaround = use_auth_method_workaround
        self._crawl_immediately_override = crawl_immediately_override
        self._crawl_once_override = crawl_once_override
        # At least one comment keeps the document from being mistaken for empty.
        self._comments = tuple(comments) or (DEFAULT_COMMENT,)

    def make_metadata_and_url_xml(
        self,
        datasource: str,
        items: Sequence[PushItem],
        feed_type: str = FEED_TYPE_METADATA_AND_URL,
    ) -> str:
        """Render one batch into a complete feed document."""
        if feed_type not in FEED_TYPES:
            raise ValueError(f"unsupported feed type: {feed_type!r}")
        writer = _XmlWriter()
        writer.raw('<?xml version="1.0" encoding="UTF-8" standalone="no"?>')
        writer.raw(DOCTYPE)
        writer.open("gsafeed")
        for comment in self._comments:
            writer.comment(comment)
        writer.open("header")
        writer.text("datasource", datasource)
        writer.text("feedtype", feed_type)
        writer.close("header")
        writer.open("group")
        for item in items:
            if isinstance(item, Record):
                self._write_record(writer, item)
            elif isinstance(item, AclItem):
                self._write_named_resource(writer, item)
            else:
                raise TypeError(f"Unable to process class: {type(item).__name__}")
        writer.close("group")
        writer.close("gsafeed")
        return writer.getvalue()

    def _record_attributes(self, record: Record) -> Attributes:
        attributes: List[Tuple[str, Optional[str]]] = [
            ("url", self._codec.encode(record.doc_id)),
            ("displayurl", record.result_link),
            ("action", record.action.value),
            ("mimetype", "text/plain"),  # required by the DTD, ignored by the appliance
        ]
        if record.last_modified is not None:
            attributes.append(("last-modified", format_last_modified(record.last_modified)))
        if record.lock:
            attributes.append(("lock", "true"))
        if self._crawl_immediately_override is not None:
            attributes.append(("crawl-immediately", str(self._crawl_immediately_override).lower()))
        elif record.crawl_immediately:
            attributes.append(("crawl-immediately", "true"))
        if self._crawl_once_override is not None:
            attributes.append(("crawl-once", str(self._crawl_once_override).lower()))
        elif record.crawl_once:
            attributes.append(("crawl-once", "true"))
        if self._use_auth_method_workaround:
            attributes.append(("authmethod", "httpsso"))
        return attributes

    def _write_record(self, writer: _XmlWriter, record: Record) -> None:
        attributes = self._record_attributes(record)
        has_children = record.acl is not None or bool(record.metadata)
        if not has_children:
            if self._separate_closing_record_tag:
                # Some appliance versions fail to parse self-closing records.
                writer.text("record", " ", attributes)
            else:
                writer.empty("record", attributes)
            return
        writer.open("record", attributes)
        if record.acl is not None:
            self._write_acl(writer, record.acl, url=None)
        if record.metadata:
            writer.open("metadata")
            for name, content in record.metadata:
                writer.empty("meta", [("name", name), ("content", content)])
            writer.close("metadata")
        writer.close("record")

    def _write_named_resource(self, writer: _XmlWriter, item: AclItem) -> None:
        url = self._codec.encode_with_fragment(item.doc_id, item.fragment)
        self._write_acl(writer, item.acl, url=url)

    def _write_acl(self, writer: _XmlWriter, acl: Acl, url: Optional[str]) -> None:
        if self._acl_transform is not None:
            acl = self._acl_transform(acl)
        inherit_from = None
        if acl.inherit_from is not None:
            inherit_from = self._codec.encode_with_fragment(acl.inherit_from, acl.inherit_from_fragment)
        inheritance_type = None
        if acl.inheritance_type.common_form != "leaf-node":
            inheritance_type = acl.inheritance_type.common_form
        attributes = [("url", url), ("inheritance-type", inheritance_type), ("inherit-from", inherit_from)]
        principals = list(acl.principals())
        if not principals:
            writer.empty("acl", attributes)
            return
        writer.open("acl", attributes)
        for access, principal in principals:
            self._write_principal(writer, access, principal, acl.is_case_sensitive_for(principal))
        writer.close("acl")

    @staticmethod
    def _write_principal(writer: _XmlWriter, access: str, principal: Principal, case_sensitive: bool) -> None:
        namespace = None if principal.namespace == DEFAULT_NAMESPACE else principal.namespace
        case_type = None if case_sensitive else "everything-case-insensitive"
        writer.text(
            "principal",
            principal.name,
            [
                ("scope", principal.scope),
                ("access", access),
                ("namespace", namespace),
                ("case-sensitivity-type", case_type),
            ],
        )

    def make_group_definitions_xml(self, groups: Sequence[GroupDefinition], case_sensitive: bool) -> str:
        """Render group memberships for the groups endpoint."""
        case_type = "EVERYTHING_CASE_SENSITIVE" if case_sensitive else "EVERYTHING_CASE_INSENSITIVE"
        writer = _XmlWriter()
        writer.raw('<?xml version="1.0" encoding="UTF-8" standalone="no"?>')
        writer.open("xmlgroups")
        for comment in self._comments:
            writer.comment(comment)
        for definition in groups:
            writer.open("membership")
            writer.text(
                "principal",
                definition.group.name,
                [("namespace", definition.group.namespace), ("scope", "GROUP")],
            )
            if definition.members:
                writer.open("members")
                for member in definition.members:
                    writer.text(
                        "principal",
                        member.name,
                        [
                            ("namespace", member.namespace),
                            ("scope", member.scope.upper()),
                            ("case-sensitivity-type", case_type),
                        ],
                    )
                writer.close("members")
            else:
                writer.empty("members")
            writer.close("membership")
        writer.close("xmlgroups")
        return writer.getvalue()
